from dataclasses import dataclass, field
from pathlib import Path

import pytest

from changeloop.costs import TokenUsage
from changeloop.errors import ChangeloopError, InvalidTransitionError
from changeloop.invoker import AgentResult, ResumeMode
from changeloop.state import Phase
from changeloop.storage import TASKS, ChangeStorage
from changeloop.workflow.cycle import create_change, run_cycle
from changeloop.workflow.lifecycle import archive_change, reenter_change, run_implementation

from conftest import APPROVED_REVIEW, FakeCritic, make_agents

CHANGE_ID = "add-retries"


@dataclass
class FakeImplementer:
    """Marks every task done in tasks.md, like a well-behaved implementer."""

    tasks_path: Path
    prompts: list[str] = field(default_factory=list)

    async def invoke(
        self, prompt: str, env: dict[str, str] | None = None, resume: ResumeMode = ResumeMode()
    ) -> AgentResult:
        self.prompts.append(prompt)
        content = self.tasks_path.read_text(encoding="utf-8")
        self.tasks_path.write_text(content.replace("status: pending", "status: done"), encoding="utf-8")
        return AgentResult(
            output="Implemented.",
            usage=TokenUsage(input_tokens=2000, output_tokens=800, model="claude-sonnet-4-5"),
        )


async def _approved_change(project_root, generator, resolver, policy) -> ChangeStorage:
    await create_change(CHANGE_ID, "Retry failed agent calls", project_root=project_root)
    agents = make_agents(generator, FakeCritic([APPROVED_REVIEW]))
    await run_cycle(CHANGE_ID, project_root=project_root, agents=agents, resolver=resolver, policy=policy)
    return ChangeStorage(project_root, CHANGE_ID)


@pytest.mark.asyncio
async def test_implementation_completes_and_archives(project_root, generator, resolver, policy) -> None:
    storage = await _approved_change(project_root, generator, resolver, policy)
    implementer = FakeImplementer(storage.path(TASKS))

    state = await run_implementation(
        CHANGE_ID, project_root=project_root, implementer=implementer, policy=policy
    )

    assert state.phase == Phase.COMPLETE
    assert state.last_action == "implementation 2/2 tasks done"
    assert state.usage.calls == 8
    # Pending tasks are listed in dependency order
    prompt = implementer.prompts[0]
    assert prompt.index("1.1 Add retry settings") < prompt.index("2.1 Retry agent calls")

    archived = await archive_change(CHANGE_ID, project_root=project_root)
    assert archived.phase == Phase.ARCHIVED


@pytest.mark.asyncio
async def test_partial_implementation_stays_implementing(project_root, generator, resolver, policy) -> None:
    storage = await _approved_change(project_root, generator, resolver, policy)

    @dataclass
    class LazyImplementer:
        async def invoke(self, prompt, env=None, resume=ResumeMode()) -> AgentResult:
            content = storage.read(TASKS)
            storage.write(TASKS, content.replace("status: pending", "status: done", 1))
            return AgentResult(output="Did one.", usage=TokenUsage(10, 10, "claude-sonnet-4-5"))

    state = await run_implementation(
        CHANGE_ID, project_root=project_root, implementer=LazyImplementer(), policy=policy
    )

    assert state.phase == Phase.IMPLEMENTING
    with pytest.raises(InvalidTransitionError):
        await archive_change(CHANGE_ID, project_root=project_root)


@pytest.mark.asyncio
async def test_implementation_requires_approved_plan(project_root, policy) -> None:
    await create_change(CHANGE_ID, "Retry failed agent calls", project_root=project_root)
    implementer = FakeImplementer(project_root / "unused.md")

    with pytest.raises(InvalidTransitionError):
        await run_implementation(CHANGE_ID, project_root=project_root, implementer=implementer, policy=policy)
    assert implementer.prompts == []


@pytest.mark.asyncio
async def test_reenter_requires_rejected_change(project_root) -> None:
    await create_change(CHANGE_ID, "Retry failed agent calls", project_root=project_root)

    with pytest.raises(ChangeloopError, match="Only rejected changes"):
        await reenter_change(CHANGE_ID, project_root=project_root)
