"""
Change Loop

Drives a change from request to approved plan by generating a proposal,
specs and tasks with one agent and challenging them with another, with
per-change SQLite state.
"""

__version__ = "0.1.0"

# Configuration
from changeloop.config import Settings

# Usage tracking
from changeloop.costs import ModelPricing, TokenUsage, UsageLedger, UsageRecord

# Errors
from changeloop.errors import ChangeloopError, ErrorKind

# Agents
from changeloop.invoker import AgentInvoker, AgentResult, CliAgentInvoker, ResumeMode
from changeloop.role_config import Provider, Role, RoleConfig

# Session continuity
from changeloop.sessions import SessionResolver, find_session_index

# Lifecycle
from changeloop.state import Phase, PhaseStateMachine
from changeloop.storage import ChangeStorage
from changeloop.task_graph import TaskGraph

# Reviews
from changeloop.verdict import Issue, Review, Severity, Verdict, parse_review

# Driver
from changeloop.workflow.base import Agents, CycleOutcome, CyclePolicy, OutcomeKind
from changeloop.workflow.cycle import ChangeStatus, run_challenge, run_cycle, status

__all__ = [
    # Version
    "__version__",
    # Config
    "Settings",
    # Usage
    "ModelPricing",
    "TokenUsage",
    "UsageLedger",
    "UsageRecord",
    # Errors
    "ChangeloopError",
    "ErrorKind",
    # Agents
    "AgentInvoker",
    "AgentResult",
    "CliAgentInvoker",
    "ResumeMode",
    "Provider",
    "Role",
    "RoleConfig",
    # Sessions
    "SessionResolver",
    "find_session_index",
    # Lifecycle
    "Phase",
    "PhaseStateMachine",
    "ChangeStorage",
    "TaskGraph",
    # Reviews
    "Issue",
    "Review",
    "Severity",
    "Verdict",
    "parse_review",
    # Driver
    "Agents",
    "CycleOutcome",
    "CyclePolicy",
    "OutcomeKind",
    "ChangeStatus",
    "run_cycle",
    "run_challenge",
    "status",
]
