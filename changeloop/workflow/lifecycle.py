"""
Post-planning lifecycle: implementation, archiving and manual re-entry.
"""

from __future__ import annotations

from pathlib import Path

from rich.console import Console

from .. import db
from ..config import settings
from ..costs import UsageLedger
from ..errors import ChangeloopError, InvalidTransitionError
from ..invoker import AgentInvoker, CliAgentInvoker
from ..prompts import agent_env, implementation_prompt
from ..role_config import Provider, Role
from ..state import Phase, PhaseStateMachine
from ..storage import TASKS, ChangeStorage
from ..task_graph import TaskGraph
from .base import CyclePolicy
from .cycle import ChangeStatus, require_state, status
from .cycle_steps import call_agent

console = Console()


def _storage(change_id: str, project_root: Path | None) -> ChangeStorage:
    storage = ChangeStorage(project_root if project_root is not None else settings.project_root, change_id)
    require_state(storage)
    return storage


async def run_implementation(
    change_id: str,
    *,
    project_root: Path | None = None,
    implementer: AgentInvoker | None = None,
    implementer_provider: Provider = Provider.CLAUDE,
    policy: CyclePolicy | None = None,
) -> ChangeStatus:
    """Hand the pending tasks of an approved plan to the implementer.

    The change moves to IMPLEMENTING once the implementer has run, and to
    COMPLETE when tasks.md reports every task done.
    """
    storage = _storage(change_id, project_root)
    policy = policy or CyclePolicy.from_settings()

    async with db.get_session(storage.change_dir) as session:
        machine = await PhaseStateMachine.load(session, change_id)
        phase = machine.current_phase()
    if phase not in (Phase.CHALLENGED, Phase.IMPLEMENTING):
        raise InvalidTransitionError(phase.value, Phase.IMPLEMENTING.value)

    graph = TaskGraph.from_file(storage.path(TASKS))
    pending = [f"{t.id} {t.title} ({t.file})" for t in graph.pending()]
    if not pending:
        console.print("[dim]No pending tasks[/dim]")
    else:
        console.print(f"[cyan]Implementing {len(pending)} task(s)...[/cyan]")
        if implementer is None:
            cli_agent = CliAgentInvoker(Role.IMPLEMENTER, storage.project_root)
            agent, implementer_provider = cli_agent, cli_agent.provider
        else:
            agent = implementer
        result = await call_agent(
            agent,
            implementation_prompt(storage, pending),
            step="implement",
            policy=policy,
            env=agent_env(implementer_provider, storage.change_dir),
        )
        async with db.get_session(storage.change_dir) as session:
            await UsageLedger(session, change_id).record_usage("implement", result.usage)

    graph = TaskGraph.from_file(storage.path(TASKS))
    done, total = graph.progress()
    async with db.get_session(storage.change_dir) as session:
        machine = await PhaseStateMachine.load(session, change_id)
        if machine.current_phase() == Phase.CHALLENGED:
            await machine.start_implementation()
        if graph.all_done():
            await machine.complete()
        await machine.set_last_action(f"implementation {done}/{total} tasks done")
        await db.log_event(
            session, change_id, "implement", "completed", details={"done": done, "total": total}
        )

    console.print(f"[green]✓ {done}/{total} tasks done[/green]")
    return await status(change_id, project_root=project_root)


async def archive_change(change_id: str, *, project_root: Path | None = None) -> ChangeStatus:
    storage = _storage(change_id, project_root)
    async with db.get_session(storage.change_dir) as session:
        machine = await PhaseStateMachine.load(session, change_id)
        await machine.archive()
        await machine.set_last_action("archived")
        await db.log_event(session, change_id, "archive", "completed")
    return await status(change_id, project_root=project_root)


async def reenter_change(change_id: str, *, project_root: Path | None = None) -> ChangeStatus:
    """Reopen a rejected change. Iteration and stored session are reset."""
    storage = _storage(change_id, project_root)
    async with db.get_session(storage.change_dir) as session:
        machine = await PhaseStateMachine.load(session, change_id)
        if machine.current_phase() != Phase.REJECTED:
            raise ChangeloopError(f"Only rejected changes can be reopened; {change_id} is {machine.current_phase()}")
        await machine.reenter()
        await machine.set_last_action("reopened after rejection")
        await db.log_event(session, change_id, "reenter", "completed")
    return await status(change_id, project_root=project_root)
