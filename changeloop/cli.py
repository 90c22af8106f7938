"""Main CLI entry point for changeloop."""

import asyncio
import json
import logging
from collections.abc import Awaitable
from pathlib import Path
from typing import TypeVar

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from . import __version__, db
from .config import settings
from .workflow.base import CycleOutcome, OutcomeKind
from .workflow.cycle import ChangeStatus, create_change, list_changes, run_challenge, run_cycle, status
from .workflow.lifecycle import archive_change, reenter_change, run_implementation

console = Console()

T = TypeVar("T")

_OUTCOME_STYLES = {
    OutcomeKind.APPROVED: "green",
    OutcomeKind.REJECTED: "red",
    OutcomeKind.EXHAUSTED: "yellow",
    OutcomeKind.ERROR: "red",
}


def _run(coro: Awaitable[T]) -> T:
    async def runner() -> T:
        try:
            return await coro
        finally:
            await db.dispose_engines()

    return asyncio.run(runner())


def _print_outcome(change_id: str, outcome: CycleOutcome) -> None:
    style = _OUTCOME_STYLES[outcome.kind]
    lines = [f"Outcome: [{style}]{outcome.kind.value}[/{style}]"]
    if outcome.kind == OutcomeKind.EXHAUSTED:
        lines.append(f"Open issues: {outcome.issue_count}")
        lines.append("Run `changeloop challenge` to continue, or edit the artifacts by hand.")
    if outcome.kind == OutcomeKind.ERROR:
        lines.append(f"Step: {outcome.step}")
        lines.append(f"Kind: {outcome.error_kind}")
        lines.append(f"Error: {outcome.message}")
    console.print(Panel("\n".join(lines), title=f"Change: {change_id}"))


def _print_status(change: ChangeStatus) -> None:
    usage = change.usage
    console.print(
        Panel(
            f"[bold]{change.description or change.change_id}[/bold]\n\n"
            f"Phase: [cyan]{change.phase.value}[/cyan]\n"
            f"Iteration: {change.iteration}\n"
            f"Latest review: {change.latest_review or '-'}\n"
            f"Last action: {change.last_action or '-'}\n"
            f"Session: {change.session_id or '-'}",
            title=f"Change: {change.change_id}",
        )
    )

    table = Table(title="Artifacts")
    table.add_column("Artifact", style="cyan")
    table.add_column("Present")
    for name, present in change.artifacts.items():
        table.add_row(name, "[green]yes[/green]" if present else "[red]no[/red]")
    console.print(table)

    console.print(
        f"Usage: {usage.calls} call(s), {usage.tokens_in:,} in / {usage.tokens_out:,} out, "
        f"${usage.cost:.4f}"
    )


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--project-root",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Project root (defaults to CHANGELOOP_PROJECT_ROOT or the current directory)",
)
@click.option("-v", "--verbose", is_flag=True, help="Show debug logging")
@click.pass_context
def main(ctx: click.Context, project_root: Path | None, verbose: bool) -> None:
    """Plan changes with generator and critic agents.

    Proposal, specs and tasks are generated, challenged and revised until the
    critic approves them.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )
    ctx.obj = project_root if project_root is not None else settings.project_root


@main.command()
@click.argument("change_id")
@click.argument("description")
@click.pass_obj
def new(project_root: Path, change_id: str, description: str) -> None:
    """Create a change.

    CHANGE_ID: Identifier for the change (e.g., add-retries)
    DESCRIPTION: What the change should accomplish
    """
    change = _run(create_change(change_id, description, project_root=project_root))
    console.print(f"[green]✓ Created change {change.change_id}[/green]")


@main.command()
@click.argument("change_id")
@click.pass_obj
def cycle(project_root: Path, change_id: str) -> None:
    """Generate missing artifacts, then challenge and revise until approved.

    CHANGE_ID: The change identifier
    """
    outcome = _run(run_cycle(change_id, project_root=project_root))
    _print_outcome(change_id, outcome)
    raise SystemExit(0 if outcome.ok else 1)


@main.command()
@click.argument("change_id")
@click.pass_obj
def challenge(project_root: Path, change_id: str) -> None:
    """Challenge existing artifacts again.

    CHANGE_ID: The change identifier
    """
    outcome = _run(run_challenge(change_id, project_root=project_root))
    _print_outcome(change_id, outcome)
    raise SystemExit(0 if outcome.ok else 1)


@main.command("status")
@click.argument("change_id")
@click.option("--json", "as_json", is_flag=True, help="Print machine-readable JSON")
@click.pass_obj
def status_cmd(project_root: Path, change_id: str, as_json: bool) -> None:
    """Show phase, iteration and usage of a change.

    CHANGE_ID: The change identifier
    """
    change = _run(status(change_id, project_root=project_root))
    if as_json:
        click.echo(json.dumps(change.to_dict(), indent=2))
        return
    _print_status(change)


@main.command("list")
@click.pass_obj
def list_cmd(project_root: Path) -> None:
    """List all changes."""
    changes = _run(list_changes(project_root=project_root))
    if not changes:
        console.print("[dim]No changes found[/dim]")
        return

    table = Table(title="Changes")
    table.add_column("Change", style="cyan")
    table.add_column("Phase")
    table.add_column("Iteration")
    table.add_column("Latest review")
    table.add_column("Cost")
    for change in changes:
        table.add_row(
            change.change_id,
            change.phase.value,
            str(change.iteration),
            change.latest_review or "-",
            f"${change.usage.cost:.4f}",
        )
    console.print(table)


@main.command()
@click.argument("change_id")
@click.pass_obj
def implement(project_root: Path, change_id: str) -> None:
    """Implement the pending tasks of an approved change.

    CHANGE_ID: The change identifier
    """
    change = _run(run_implementation(change_id, project_root=project_root))
    console.print(f"Phase: [cyan]{change.phase.value}[/cyan]")


@main.command()
@click.argument("change_id")
@click.pass_obj
def archive(project_root: Path, change_id: str) -> None:
    """Archive a completed change.

    CHANGE_ID: The change identifier
    """
    _run(archive_change(change_id, project_root=project_root))
    console.print(f"[green]✓ Archived {change_id}[/green]")


@main.command()
@click.argument("change_id")
@click.pass_obj
def reenter(project_root: Path, change_id: str) -> None:
    """Reopen a rejected change for a new planning round.

    CHANGE_ID: The change identifier
    """
    _run(reenter_change(change_id, project_root=project_root))
    console.print(f"[green]✓ {change_id} is proposed again[/green]")


if __name__ == "__main__":
    main()
