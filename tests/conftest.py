"""Shared test fixtures and fakes for pytest."""

import re
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from changeloop.costs import TokenUsage
from changeloop.errors import SessionNotFound
from changeloop.invoker import AgentResult, ResumeMode
from changeloop.workflow.base import Agents, CyclePolicy

PROPOSAL_MD = """# Add retries to agent calls

## Why
Agent CLIs fail transiently and a single failure aborts the whole cycle.

## What Changes
- Retry failed agent calls with a fixed delay

## Impact
- Affected specs: retry-policy
"""

SPEC_MD = """# Retry policy

## Overview
Failed agent calls are retried.

## Requirements
### R1: Fixed delay
Retries wait a fixed delay.

## Acceptance Criteria
- WHEN a call fails THEN it is retried
"""

TASKS_MD = """---
id: add-retries
type: tasks
layers:
  data:
    task_count: 1
  logic:
    task_count: 1
---

# Tasks

### 1.1 Add retry settings
```yaml
id: "1.1"
action: MODIFY
file: changeloop/config.py
spec_ref: retry-policy
status: pending
depends_on: []
```

### 2.1 Retry agent calls
```yaml
id: "2.1"
action: MODIFY
file: changeloop/invoker.py
spec_ref: "retry-policy#R1"
status: pending
depends_on: ["1.1"]
```
"""

APPROVED_REVIEW = """Everything checks out.

<review status="approved" iteration="1" reviewer="codex">
## Summary
The plan is complete.

## Issues
None.

## Verdict
APPROVED
</review>
"""

NEEDS_REVISION_REVIEW = """<review status="needs_revision" iteration="1" reviewer="codex">
## Summary
Two gaps.

## Issues
### Missing retry limit
- **Severity**: High
- **Description**: The spec never bounds the number of retries
- **Location**: specs/retry-policy.md

### Vague delay
- **Severity**: Low
- **Description**: The delay value is not given
- **Location**: specs/retry-policy.md

## Verdict
NEEDS_REVISION

## Next Steps
Bound the retries.
</review>
"""

REJECTED_REVIEW = """<review status="rejected" iteration="1" reviewer="codex">
## Issues
### Wrong layer
- **Severity**: High
- **Description**: Retries belong in the driver, not the invoker
- **Location**: proposal.md

## Verdict
REJECTED
</review>
"""

SESSION_ID = "3f2b8c1e-0d4a-4b7e-9a51-6c2f1e0b9d77"

_SPEC_TARGET_RE = re.compile(r"Write the spec `(?P<spec>[^`]+)`")


def usage(model: str = "gemini-2.5-pro") -> TokenUsage:
    return TokenUsage(input_tokens=1000, output_tokens=500, model=model, duration_ms=10)


@dataclass
class Call:
    kind: str
    prompt: str
    env: dict[str, str] | None
    resume: ResumeMode


@dataclass
class FakeGenerator:
    """Answers generation, self-review and revision prompts like the generator CLI."""

    self_review_output: str = "Looks fine.\n<review>PASS</review>"
    session_id: str = SESSION_ID
    failures: list[Exception] = field(default_factory=list)
    calls: list[Call] = field(default_factory=list)

    def kinds(self, kind: str) -> list[Call]:
        return [c for c in self.calls if c.kind == kind]

    async def invoke(
        self, prompt: str, env: dict[str, str] | None = None, resume: ResumeMode = ResumeMode()
    ) -> AgentResult:
        if "## Review Feedback" in prompt:
            kind, output = "revise", "Revised the spec."
        elif "## Task\n\nReview `" in prompt:
            kind, output = "self-review", self.self_review_output
        elif "Write the proposal" in prompt:
            kind, output = "generate", PROPOSAL_MD
        elif "Write the tasks" in prompt:
            kind, output = "generate", TASKS_MD
        elif match := _SPEC_TARGET_RE.search(prompt):
            kind, output = "generate", SPEC_MD.replace("Retry policy", match.group("spec"))
        else:
            raise AssertionError(f"Unexpected prompt: {prompt[:200]}")

        self.calls.append(Call(kind, prompt, env, resume))
        if self.failures:
            raise self.failures.pop(0)
        return AgentResult(output=output, usage=usage(), session_id=self.session_id)


@dataclass
class FakeCritic:
    """Returns scripted review outputs in order, repeating the last one."""

    outputs: list[str]
    calls: list[Call] = field(default_factory=list)

    async def invoke(
        self, prompt: str, env: dict[str, str] | None = None, resume: ResumeMode = ResumeMode()
    ) -> AgentResult:
        self.calls.append(Call("challenge", prompt, env, resume))
        output = self.outputs.pop(0) if len(self.outputs) > 1 else self.outputs[0]
        return AgentResult(output=output, usage=usage("gpt-5.2-codex"))


@dataclass
class FakeResolver:
    index: int = 2
    known: set[str] = field(default_factory=lambda: {SESSION_ID})
    calls: list[str] = field(default_factory=list)

    async def resolve(self, session_id: str) -> int:
        self.calls.append(session_id)
        if session_id not in self.known:
            raise SessionNotFound(session_id)
        return self.index


@pytest.fixture
def project_root(tmp_path: Path) -> Path:
    """Isolated project root for one test."""
    return tmp_path


@pytest.fixture
def policy() -> CyclePolicy:
    return CyclePolicy(
        max_retries=2,
        retry_delay_seconds=0,
        planning_iterations=3,
        self_review_iterations=1,
    )


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def resolver() -> FakeResolver:
    return FakeResolver()


def make_agents(generator: FakeGenerator, critic: FakeCritic) -> Agents:
    return Agents(generator=generator, critic=critic, critic_name="codex")
