"""
Change cycle driver.

``run_cycle`` takes a change from request to an approved (or rejected)
plan:

1. generate whatever of proposal, specs and tasks is missing (each followed
   by one self-review);
2. validate structure locally;
3. critique, apply the verdict, and on NEEDS_REVISION resume the
   generator's original session to revise, up to ``planning_iterations``
   critiques.

A change whose artifacts all exist gets no agent calls at all; its outcome
is read back from persisted state.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from rich.console import Console

from .. import db
from ..config import settings
from ..costs import UsageLedger, UsageTotals
from ..errors import ChangeExistsError, ChangeloopError, ChangeNotFoundError, ErrorKind
from ..invoker import CliAgentInvoker
from ..role_config import Provider, Role
from ..sessions import SessionResolver
from ..state import Phase, PhaseStateMachine
from ..storage import ChangeStorage
from ..validation import validate_change
from ..verdict import Verdict
from .base import (
    Agents,
    CycleOutcome,
    CyclePolicy,
    LoopWorkflow,
    SequentialWorkflow,
    WorkflowContext,
    WorkflowResult,
)
from .cycle_steps import ChallengeStep, GenerateArtifactsStep, ReviseStep, ValidateStructureStep

console = Console()

_CHANGE_ID_RE = re.compile(r"^[a-z0-9][a-z0-9-]*$")


@dataclass
class ChangeStatus:
    change_id: str
    phase: Phase
    iteration: int
    description: str = ""
    session_id: str | None = None
    last_action: str | None = None
    usage: UsageTotals = field(default_factory=UsageTotals)
    latest_review: str | None = None
    artifacts: dict[str, bool] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "change_id": self.change_id,
            "phase": self.phase.value,
            "iteration": self.iteration,
            "description": self.description,
            "session_id": self.session_id,
            "last_action": self.last_action,
            "usage_summary": self.usage.to_dict(),
            "latest_review": self.latest_review,
            "artifacts": self.artifacts,
        }


def _root(project_root: Path | None) -> Path:
    return project_root if project_root is not None else settings.project_root


def require_state(storage: ChangeStorage) -> None:
    """Fail before touching the database of a change that was never created."""
    if not db.state_db_path(storage.change_dir).exists():
        raise ChangeNotFoundError(f"Change not found: {storage.change_id}")


def default_agents(project_root: Path) -> Agents:
    generator = CliAgentInvoker(Role.GENERATOR, project_root)
    critic = CliAgentInvoker(Role.CRITIC, project_root)
    return Agents(
        generator=generator,
        critic=critic,
        implementer=CliAgentInvoker(Role.IMPLEMENTER, project_root),
        critic_name=critic.provider.value,
        generator_provider=generator.provider,
        critic_provider=critic.provider,
    )


def require_resumable_generator(agents: Agents) -> None:
    """Revisions resume the generator session by listing index, which only gemini supports."""
    if agents.generator_provider != Provider.GEMINI:
        raise ChangeloopError(
            f"Generator provider {agents.generator_provider.value} cannot resume a session by index; "
            "set ROLE_GENERATOR_PROVIDER=gemini"
        )


def build_cycle_workflow(policy: CyclePolicy) -> SequentialWorkflow:
    return SequentialWorkflow(
        "cycle",
        [
            GenerateArtifactsStep(),
            ValidateStructureStep(),
            critique_loop(policy),
        ],
    )


def critique_loop(policy: CyclePolicy) -> LoopWorkflow:
    return LoopWorkflow(
        "critique",
        [ChallengeStep(), ReviseStep()],
        max_iterations=policy.planning_iterations,
    )


async def create_change(
    change_id: str, description: str, *, project_root: Path | None = None
) -> ChangeStatus:
    if not _CHANGE_ID_RE.match(change_id):
        raise ChangeloopError(
            f"Invalid change id {change_id!r}: use lowercase letters, digits and dashes"
        )
    storage = ChangeStorage(_root(project_root), change_id)
    if db.state_db_path(storage.change_dir).exists():
        raise ChangeExistsError(f"Change already exists: {change_id}")

    async with db.get_session(storage.change_dir) as session:
        await db.create_change(session, change_id, description)
        await db.log_event(session, change_id, "create", "completed", message=description)
    return await status(change_id, project_root=project_root)


async def outcome_from_state(storage: ChangeStorage, policy: CyclePolicy) -> CycleOutcome:
    """Outcome of a change whose artifacts already exist. Reads only.

    A PROPOSED change only counts as exhausted once the critique budget is
    spent; an interrupted round is reported as needing `changeloop challenge`.
    """
    async with db.get_session(storage.change_dir) as session:
        machine = await PhaseStateMachine.load(session, storage.change_id)
        phase = machine.current_phase()
        latest = await db.get_latest_review(session, storage.change_id, kind="challenge")

    if phase == Phase.REJECTED:
        return CycleOutcome.rejected()

    result = validate_change(storage)
    if not result.ok:
        return CycleOutcome.error(
            ErrorKind.VALIDATION, "validate", "; ".join(str(e) for e in result.errors)
        )
    if phase != Phase.PROPOSED:
        return CycleOutcome.approved()
    if latest is None or latest.verdict != Verdict.NEEDS_REVISION.value or not latest.issues:
        return CycleOutcome.error(
            ErrorKind.STATE,
            "challenge",
            "Artifacts exist but the change has no applied critique; run `changeloop challenge`",
        )
    # Review iterations count critiques within one round, starting at 1
    critiques = latest.iteration
    if critiques < policy.planning_iterations:
        return CycleOutcome.error(
            ErrorKind.STATE,
            "challenge",
            f"Critique round interrupted after {critiques} of {policy.planning_iterations} "
            "critiques; run `changeloop challenge`",
        )
    return CycleOutcome.exhausted(len(latest.issues))


def _finish(result: WorkflowResult, ctx: WorkflowContext) -> CycleOutcome:
    outcome = result.to_outcome()
    if outcome is not None:
        return outcome
    review = ctx.get("last_review")
    return CycleOutcome.exhausted(len(review.issues) if review is not None else 0)


async def _context(
    storage: ChangeStorage,
    agents: Agents | None,
    resolver: SessionResolver | None,
    policy: CyclePolicy | None,
) -> tuple[WorkflowContext, Phase]:
    require_state(storage)
    async with db.get_session(storage.change_dir) as session:
        machine = await PhaseStateMachine.load(session, storage.change_id)
        phase = machine.current_phase()
        description = machine.change.description

    ctx = WorkflowContext(
        project_root=storage.project_root,
        change_id=storage.change_id,
        agents=agents or default_agents(storage.project_root),
        resolver=resolver or SessionResolver(storage.project_root),
        policy=policy or CyclePolicy.from_settings(),
        description=description,
    )
    require_resumable_generator(ctx.agents)
    return ctx, phase


async def run_cycle(
    change_id: str,
    *,
    project_root: Path | None = None,
    agents: Agents | None = None,
    resolver: SessionResolver | None = None,
    policy: CyclePolicy | None = None,
) -> CycleOutcome:
    storage = ChangeStorage(_root(project_root), change_id)
    ctx, phase = await _context(storage, agents, resolver, policy)

    if phase != Phase.PROPOSED or all(storage.exists(n) for n in storage.required_artifacts()):
        console.print("[dim]All artifacts present; validating only[/dim]")
        return await outcome_from_state(storage, ctx.policy)

    result = await build_cycle_workflow(ctx.policy).execute(ctx)
    return _finish(result, ctx)


async def run_challenge(
    change_id: str,
    *,
    project_root: Path | None = None,
    agents: Agents | None = None,
    resolver: SessionResolver | None = None,
    policy: CyclePolicy | None = None,
) -> CycleOutcome:
    """Critique existing artifacts again, revising until approved or out of budget."""
    storage = ChangeStorage(_root(project_root), change_id)
    ctx, phase = await _context(storage, agents, resolver, policy)
    if phase != Phase.PROPOSED:
        return CycleOutcome.error(
            ErrorKind.STATE,
            "challenge",
            f"Only proposed changes can be challenged; {change_id} is {phase.value}",
        )

    workflow = SequentialWorkflow("challenge", [ValidateStructureStep(), critique_loop(ctx.policy)])
    result = await workflow.execute(ctx)
    return _finish(result, ctx)


async def status(change_id: str, *, project_root: Path | None = None) -> ChangeStatus:
    storage = ChangeStorage(_root(project_root), change_id)
    require_state(storage)
    async with db.get_session(storage.change_dir) as session:
        machine = await PhaseStateMachine.load(session, change_id)
        totals = await UsageLedger(session, change_id).totals()
        latest = await db.get_latest_review(session, change_id, kind="challenge")
        change = machine.change
        return ChangeStatus(
            change_id=change_id,
            phase=machine.current_phase(),
            iteration=change.iteration,
            description=change.description,
            session_id=change.session_id,
            last_action=change.last_action,
            usage=totals,
            latest_review=latest.verdict if latest is not None else None,
            artifacts={name: storage.exists(name) for name in storage.required_artifacts()},
        )


async def list_changes(*, project_root: Path | None = None) -> list[ChangeStatus]:
    changes_root = _root(project_root) / settings.changes_dir
    if not changes_root.is_dir():
        return []
    result = []
    for change_dir in sorted(p for p in changes_root.iterdir() if p.is_dir()):
        if db.state_db_path(change_dir).exists():
            result.append(await status(change_dir.name, project_root=project_root))
    return result
