"""
Base workflow abstractions for the change cycle.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum, StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..config import settings
from ..errors import ChangeloopError, ErrorKind
from ..role_config import Provider
from ..storage import ChangeStorage

if TYPE_CHECKING:
    from ..invoker import AgentInvoker
    from ..sessions import SessionResolver


class WorkflowStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STOPPED = "stopped"  # reached a terminal cycle outcome


class OutcomeKind(StrEnum):
    APPROVED = "approved"
    REJECTED = "rejected"
    EXHAUSTED = "exhausted"
    ERROR = "error"


@dataclass(frozen=True)
class CycleOutcome:
    """Terminal result of one ``run_cycle`` invocation."""

    kind: OutcomeKind
    issue_count: int = 0
    error_kind: ErrorKind | None = None
    step: str | None = None
    message: str = ""

    @classmethod
    def approved(cls) -> CycleOutcome:
        return cls(OutcomeKind.APPROVED)

    @classmethod
    def rejected(cls) -> CycleOutcome:
        return cls(OutcomeKind.REJECTED)

    @classmethod
    def exhausted(cls, issue_count: int) -> CycleOutcome:
        return cls(OutcomeKind.EXHAUSTED, issue_count=issue_count)

    @classmethod
    def error(cls, kind: ErrorKind, step: str, message: str) -> CycleOutcome:
        return cls(OutcomeKind.ERROR, error_kind=kind, step=step, message=message)

    @property
    def ok(self) -> bool:
        return self.kind == OutcomeKind.APPROVED

    def describe(self) -> str:
        if self.kind == OutcomeKind.EXHAUSTED:
            return f"exhausted with {self.issue_count} open issue(s)"
        if self.kind == OutcomeKind.ERROR:
            return f"{self.error_kind} error in {self.step}: {self.message}"
        return self.kind.value


@dataclass
class CyclePolicy:
    max_retries: int = 2
    retry_delay_seconds: float = 5.0
    planning_iterations: int = 3
    self_review_iterations: int = 1

    @classmethod
    def from_settings(cls) -> CyclePolicy:
        return cls(
            max_retries=settings.max_retries,
            retry_delay_seconds=settings.retry_delay_seconds,
            planning_iterations=settings.planning_iterations,
            self_review_iterations=settings.self_review_iterations,
        )


@dataclass
class Agents:
    generator: AgentInvoker
    critic: AgentInvoker
    implementer: AgentInvoker | None = None
    critic_name: str = "codex"
    generator_provider: Provider = Provider.GEMINI
    critic_provider: Provider = Provider.CODEX


@dataclass
class WorkflowContext:
    """Context passed through workflow execution.

    Holds no database session: steps open one after each agent call returns.
    """

    project_root: Path
    change_id: str
    agents: Agents
    resolver: SessionResolver
    policy: CyclePolicy = field(default_factory=CyclePolicy)
    description: str = ""
    state: dict[str, Any] = field(default_factory=dict)

    @property
    def storage(self) -> ChangeStorage:
        return ChangeStorage(self.project_root, self.change_id)

    @property
    def change_dir(self) -> Path:
        return settings.change_dir(self.change_id, self.project_root)

    def get(self, key: str, default: Any = None) -> Any:
        return self.state.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.state[key] = value


@dataclass
class WorkflowResult:
    """Result of a workflow step."""

    status: WorkflowStatus
    output: Any = None
    error: ChangeloopError | None = None
    step: str | None = None

    @classmethod
    def success(cls, output: Any = None) -> WorkflowResult:
        return cls(status=WorkflowStatus.COMPLETED, output=output)

    @classmethod
    def failed(cls, error: ChangeloopError, step: str) -> WorkflowResult:
        return cls(status=WorkflowStatus.FAILED, error=error, step=step)

    @classmethod
    def stopped(cls, outcome: CycleOutcome) -> WorkflowResult:
        return cls(status=WorkflowStatus.STOPPED, output=outcome)

    def to_outcome(self) -> CycleOutcome | None:
        if self.status == WorkflowStatus.STOPPED:
            return self.output
        if self.status == WorkflowStatus.FAILED and self.error is not None:
            # Retry failures name the exact agent call, e.g. "generate:tasks"
            step = getattr(self.error, "step", None) or self.step or "unknown"
            return CycleOutcome.error(self.error.kind, step, self.error.message)
        return None


class WorkflowStep(ABC):
    """Base class for a workflow step."""

    name: str
    description: str = ""

    @abstractmethod
    async def execute(self, ctx: WorkflowContext) -> WorkflowResult:
        pass

    async def on_start(self, ctx: WorkflowContext) -> None:
        del ctx

    async def on_complete(self, ctx: WorkflowContext, result: WorkflowResult) -> None:
        del ctx
        del result

    async def on_error(self, ctx: WorkflowContext, error: ChangeloopError) -> None:
        del ctx
        del error


async def _run_step(step: WorkflowStep, ctx: WorkflowContext) -> WorkflowResult:
    await step.on_start(ctx)
    try:
        result = await step.execute(ctx)
    except ChangeloopError as exc:
        await step.on_error(ctx, exc)
        return WorkflowResult.failed(exc, step.name)
    await step.on_complete(ctx, result)
    return result


class SequentialWorkflow(WorkflowStep):
    """Executes steps in sequence, stopping at the first non-completed result."""

    def __init__(self, name: str, steps: list[WorkflowStep]):
        self.name = name
        self.steps = steps

    async def execute(self, ctx: WorkflowContext) -> WorkflowResult:
        for step in self.steps:
            result = await _run_step(step, ctx)
            if result.status != WorkflowStatus.COMPLETED:
                return result
        return WorkflowResult.success()


class LoopWorkflow(WorkflowStep):
    """Executes steps in a loop until one of them fails or stops the cycle."""

    def __init__(self, name: str, steps: list[WorkflowStep], max_iterations: int = 3):
        self.name = name
        self.steps = steps
        self.max_iterations = max_iterations

    async def execute(self, ctx: WorkflowContext) -> WorkflowResult:
        for iteration in range(1, self.max_iterations + 1):
            ctx.state["current_iteration"] = iteration
            for step in self.steps:
                result = await _run_step(step, ctx)
                if result.status != WorkflowStatus.COMPLETED:
                    return result

        return WorkflowResult.success(
            output={"iterations": self.max_iterations, "max_reached": True}
        )
