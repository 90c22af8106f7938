"""
Change-cycle workflow steps: generation, validation, critique and revision.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Callable

from rich.console import Console

from .. import db
from ..costs import UsageLedger
from ..errors import (
    ChangeloopError,
    ConsistencyError,
    EmptyOutputError,
    InvokeError,
    RetriesExhaustedError,
    SessionResolveError,
    VerdictError,
)
from ..invoker import AgentInvoker, AgentResult, ResumeMode
from ..prompts import agent_env, critique_prompt, generation_prompt, revision_prompt, self_review_prompt
from ..state import PhaseStateMachine
from ..storage import CHALLENGE, PROPOSAL, ChangeStorage
from ..validation import validate_change
from ..verdict import Review, Verdict, parse_review, render_review
from .base import CycleOutcome, CyclePolicy, WorkflowContext, WorkflowResult, WorkflowStep

console = Console()
logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"\A\s*```(?:markdown|md)?\s*\n(?P<body>.*?)\n```\s*\Z", re.DOTALL)


def strip_fences(text: str) -> str:
    """Drop a single markdown fence wrapping a whole document."""
    match = _FENCE_RE.match(text)
    return match.group("body") if match else text


def review_to_dicts(review: Review) -> list[dict[str, str | None]]:
    return [
        {"severity": i.severity.value, "description": i.description, "location": i.location}
        for i in review.issues
    ]


async def call_agent(
    invoker: AgentInvoker,
    prompt: str,
    *,
    step: str,
    policy: CyclePolicy,
    env: dict[str, str] | None = None,
    resume: ResumeMode = ResumeMode(),
    accept: Callable[[AgentResult], bool] | None = None,
) -> AgentResult:
    """Invoke an agent, retrying failed or empty calls with a fixed delay."""
    attempts = policy.max_retries + 1
    last_error: ChangeloopError | None = None
    for attempt in range(1, attempts + 1):
        try:
            result = await invoker.invoke(prompt, env=env, resume=resume)
            if accept is not None and not accept(result):
                raise EmptyOutputError(f"{step} returned no usable output")
            return result
        except (InvokeError, EmptyOutputError) as exc:
            last_error = exc
            if attempt < attempts:
                console.print(
                    f"[yellow]{step} failed (attempt {attempt}/{attempts}): {exc.message}; "
                    f"retrying in {policy.retry_delay_seconds}s[/yellow]"
                )
                await asyncio.sleep(policy.retry_delay_seconds)

    assert last_error is not None
    raise RetriesExhaustedError(step, attempts, last_error)


class ChangeStep(WorkflowStep):
    """Workflow step that records its lifecycle in the change's execution log."""

    async def on_start(self, ctx: WorkflowContext) -> None:
        ctx.set(f"{self.name}_started", time.monotonic())
        async with db.get_session(ctx.change_dir) as session:
            await db.log_event(session, ctx.change_id, self.name, "started")

    def _elapsed_ms(self, ctx: WorkflowContext) -> int | None:
        started = ctx.get(f"{self.name}_started")
        return int((time.monotonic() - started) * 1000) if started is not None else None

    async def on_complete(self, ctx: WorkflowContext, result: WorkflowResult) -> None:
        outcome = result.to_outcome()
        async with db.get_session(ctx.change_dir) as session:
            await db.log_event(
                session,
                ctx.change_id,
                self.name,
                "completed",
                message=outcome.describe() if outcome else None,
                duration_ms=self._elapsed_ms(ctx),
            )

    async def on_error(self, ctx: WorkflowContext, error: ChangeloopError) -> None:
        console.print(f"[red]✗ {self.name}: {error.message}[/red]")
        async with db.get_session(ctx.change_dir) as session:
            await db.log_event(
                session,
                ctx.change_id,
                self.name,
                "failed",
                message=error.message,
                details={"kind": error.kind.value},
                duration_ms=self._elapsed_ms(ctx),
            )


class GenerateArtifactsStep(ChangeStep):
    """Generate every missing artifact, then self-review it once."""

    name = "generate"
    description = "Generate proposal, specs and tasks that do not exist yet"

    async def execute(self, ctx: WorkflowContext) -> WorkflowResult:
        storage = ctx.storage
        generated: list[str] = []

        if storage.exists(PROPOSAL):
            console.print(f"[dim]• {PROPOSAL} exists, skipping[/dim]")
        else:
            await self._generate(ctx, storage, PROPOSAL)
            generated.append(PROPOSAL)

        # The spec list is only known once the proposal exists
        for name in storage.required_artifacts()[1:]:
            if storage.exists(name):
                console.print(f"[dim]• {name} exists, skipping[/dim]")
                continue
            await self._generate(ctx, storage, name)
            generated.append(name)

        ctx.set("generated", generated)
        return WorkflowResult.success(output=generated)

    async def _generate(self, ctx: WorkflowContext, storage: ChangeStorage, name: str) -> None:
        console.print(f"[cyan]Generating {name}...[/cyan]")
        step = f"generate:{name}"
        result = await call_agent(
            ctx.agents.generator,
            generation_prompt(storage, name, ctx.description),
            step=step,
            policy=ctx.policy,
            env=agent_env(ctx.agents.generator_provider, ctx.change_dir),
            accept=lambda r: storage.exists(name) or bool(r.output.strip()),
        )
        if not storage.exists(name):
            storage.write(name, strip_fences(result.output).strip() + "\n")

        async with db.get_session(ctx.change_dir) as session:
            await UsageLedger(session, ctx.change_id).record_usage(step, result.usage)
            machine = await PhaseStateMachine.load(session, ctx.change_id)
            if name == PROPOSAL and result.session_id:
                await machine.set_session_id(result.session_id)
            await machine.set_last_action(f"generated {name}")
        console.print(f"[green]✓ {name} written[/green]")

        for _ in range(min(ctx.policy.self_review_iterations, 1)):
            await self._self_review(ctx, storage, name)

    async def _self_review(self, ctx: WorkflowContext, storage: ChangeStorage, name: str) -> None:
        step = f"self-review:{name}"
        result = await call_agent(
            ctx.agents.generator,
            self_review_prompt(storage, name),
            step=step,
            policy=ctx.policy,
            env=agent_env(ctx.agents.generator_provider, ctx.change_dir),
        )
        review = parse_review(result.output)
        if review.verdict == Verdict.UNKNOWN:
            logger.warning("Self-review of %s returned no review marker; treating as pass", name)
            console.print(f"[yellow]⚠ self-review of {name}: no review marker, treating as pass[/yellow]")
        elif review.verdict == Verdict.NEEDS_REVISION:
            console.print(f"[yellow]self-review revised {name}[/yellow]")
        else:
            console.print(f"[green]✓ self-review of {name}: {review.verdict.value}[/green]")

        async with db.get_session(ctx.change_dir) as session:
            await UsageLedger(session, ctx.change_id).record_usage(step, result.usage)
            machine = await PhaseStateMachine.load(session, ctx.change_id)
            await db.add_review(
                session,
                machine.change,
                artifact=name,
                kind="self-review",
                verdict=review.verdict.value,
                issues=review_to_dicts(review),
                raw_text=result.output,
                iteration=machine.iteration,
            )


class ValidateStructureStep(ChangeStep):
    name = "validate"
    description = "Check artifact structure locally before critique"

    async def execute(self, ctx: WorkflowContext) -> WorkflowResult:
        result = validate_change(ctx.storage)
        for warning in result.warnings:
            console.print(f"[yellow]⚠ {warning}[/yellow]")
        result.raise_for_errors()
        return WorkflowResult.success(output=result)


class ChallengeStep(ChangeStep):
    """Run the critic and apply its verdict."""

    name = "challenge"
    description = "Critique the plan and apply the verdict"

    async def execute(self, ctx: WorkflowContext) -> WorkflowResult:
        iteration = ctx.get("current_iteration", 1)
        storage = ctx.storage
        console.print(f"[cyan]Challenging {ctx.change_id} (iteration {iteration})...[/cyan]")

        result = await call_agent(
            ctx.agents.critic,
            critique_prompt(storage, iteration, ctx.agents.critic_name),
            step=self.name,
            policy=ctx.policy,
            env=agent_env(ctx.agents.critic_provider, ctx.change_dir),
            accept=lambda r: bool(r.output.strip()),
        )
        review = parse_review(result.output)
        applicable = review.verdict != Verdict.UNKNOWN and review.is_consistent

        async with db.get_session(ctx.change_dir) as session:
            await UsageLedger(session, ctx.change_id).record_usage(self.name, result.usage)
            machine = await PhaseStateMachine.load(session, ctx.change_id)
            await db.add_review(
                session,
                machine.change,
                artifact=PROPOSAL,
                kind="challenge",
                verdict=review.verdict.value,
                issues=review_to_dicts(review),
                raw_text=result.output,
                iteration=iteration,
            )
            if applicable:
                await machine.apply_verdict(review.verdict)
            await machine.set_last_action(f"challenge {iteration}: {review.verdict.value}")

        if review.verdict == Verdict.UNKNOWN:
            raise VerdictError("Critique output contains no review verdict")
        if not review.is_consistent:
            raise ConsistencyError(
                f"Critic returned {review.verdict.value} without listing any issues"
            )

        storage.append(
            CHALLENGE,
            render_review(review, iteration=iteration, reviewer=ctx.agents.critic_name) + "\n\n",
        )
        ctx.set("last_review", review)

        if review.verdict == Verdict.APPROVED:
            console.print("[green]✓ Plan approved[/green]")
            return WorkflowResult.stopped(CycleOutcome.approved())
        if review.verdict == Verdict.REJECTED:
            console.print("[red]✗ Plan rejected[/red]")
            return WorkflowResult.stopped(CycleOutcome.rejected())

        console.print(f"[yellow]Revision requested: {len(review.issues)} issue(s)[/yellow]")
        return WorkflowResult.success(output=review)


class ReviseStep(ChangeStep):
    """Resume the generator's session to address the latest critique."""

    name = "revise"
    description = "Revise artifacts in the original generator session"

    async def execute(self, ctx: WorkflowContext) -> WorkflowResult:
        iteration = ctx.get("current_iteration", 1)
        review: Review = ctx.get("last_review")
        if iteration >= ctx.policy.planning_iterations:
            return WorkflowResult.stopped(CycleOutcome.exhausted(len(review.issues)))

        async with db.get_session(ctx.change_dir) as session:
            machine = await PhaseStateMachine.load(session, ctx.change_id)
            session_id = machine.session_id
        if not session_id:
            raise SessionResolveError("No generator session recorded for this change")

        index = await ctx.resolver.resolve(session_id)
        console.print(f"[cyan]Revising in session #{index} (iteration {iteration})...[/cyan]")

        storage = ctx.storage
        step = f"revise:{iteration}"
        result = await call_agent(
            ctx.agents.generator,
            revision_prompt(storage, render_review(review, iteration=iteration)),
            step=step,
            policy=ctx.policy,
            env=agent_env(ctx.agents.generator_provider, ctx.change_dir),
            resume=ResumeMode.by_index(index),
        )

        async with db.get_session(ctx.change_dir) as session:
            await UsageLedger(session, ctx.change_id).record_usage(step, result.usage)
            machine = await PhaseStateMachine.load(session, ctx.change_id)
            await machine.increment_iteration()
            await machine.set_last_action(f"revised after challenge {iteration}")
        return WorkflowResult.success(output=result)
