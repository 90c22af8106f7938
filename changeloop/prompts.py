"""Prompt builders for the generator, critic and implementer roles."""

from __future__ import annotations

from pathlib import Path

from .role_config import Provider
from .storage import PROPOSAL, SPEC_PREFIX, TASKS, ChangeStorage

# Per-change instruction files picked up by the agent CLIs when present
_CONTEXT_FILES: dict[Provider, tuple[str, str]] = {
    Provider.GEMINI: ("GEMINI_SYSTEM_MD", "GEMINI.md"),
    Provider.CODEX: ("CODEX_INSTRUCTIONS_FILE", "AGENTS.md"),
}

_FORMAT_RULES = {
    PROPOSAL: """\
Structure:
- `# <title>` heading
- `## Why` motivation
- `## What Changes` bullet list
- `## Impact` section containing the line `- Affected specs: <comma-separated spec ids>`
  (use short kebab-case ids such as `auth-flow`; write `none` if no spec is needed)""",
    TASKS: """\
Structure:
- YAML frontmatter between `---` lines with `id: <change id>`, `type: tasks` and a
  `layers:` mapping using only the names data, logic, integration, testing
- one `### <id> <title>` heading per task followed by a fenced ```yaml block with
  `id` (e.g. "1.2", the number before the dot is the layer: 1 data, 2 logic,
  3 integration, 4 testing), `action` (CREATE, MODIFY or DELETE), `file`,
  `spec_ref` (a spec id from the proposal), `status: pending` and `depends_on`
  (ids of tasks in LOWER layers only)""",
}

_SPEC_RULES = """\
Structure:
- `# <spec title>` heading
- `## Overview`
- `## Requirements` with one `### R<n>: <name>` block per requirement
- `## Acceptance Criteria` with WHEN/THEN scenarios"""

_REVIEW_FORMAT = """\
Finish your answer with exactly one review block:

<review status="approved|needs_revision|rejected" iteration="{iteration}" reviewer="{reviewer}">
## Summary
<overall assessment>

## Issues
### <short issue title>
- **Severity**: High|Medium|Low
- **Description**: <what is wrong>
- **Location**: <file and section>

## Verdict
APPROVED|NEEDS_REVISION|REJECTED

## Next Steps
<recommendations>
</review>

- approved: complete, consistent and ready for implementation
- needs_revision: concrete content problems; list every one under Issues
- rejected: fundamental design problems that require starting over"""


def agent_env(provider: Provider, change_dir: Path) -> dict[str, str]:
    """Environment pointing the agent at the change's instruction file, if any."""
    entry = _CONTEXT_FILES.get(provider)
    if entry is None:
        return {}
    env_key, filename = entry
    path = change_dir / filename
    return {env_key: str(path)} if path.is_file() else {}


def _artifact_label(name: str) -> str:
    if name.startswith(SPEC_PREFIX):
        return f"spec `{name[len(SPEC_PREFIX):]}`"
    return name


def generation_prompt(storage: ChangeStorage, name: str, description: str) -> str:
    target = storage.path(name)
    rules = _SPEC_RULES if name.startswith(SPEC_PREFIX) else _FORMAT_RULES[name]

    context = ""
    if name != PROPOSAL and storage.exists(PROPOSAL):
        context = f"\n## Proposal\n\n{storage.read(PROPOSAL)}\n"
    if name == TASKS:
        for spec_id in storage.spec_ids():
            spec_name = f"{SPEC_PREFIX}{spec_id}"
            if storage.exists(spec_name):
                context += f"\n## Spec {spec_id}\n\n{storage.read(spec_name)}\n"

    return f"""## Change ID
{storage.change_id}

## User Request
{description}
{context}
## Task

Write the {_artifact_label(name)} for this change to `{target}`.
Analyze the codebase first and keep the document specific to this project.

{rules}

If you cannot write files, reply with the complete markdown document and nothing else.
"""


def self_review_prompt(storage: ChangeStorage, name: str) -> str:
    return f"""## Change ID
{storage.change_id}

## Task

Review `{storage.path(name)}` against the change request. Fix any problem you
find directly in the file.

When done, end your reply with `<review>PASS</review>` if the document needed no
changes, or `<review>NEEDS_REVISION</review>` if you had to fix something.
"""


def _bundle(storage: ChangeStorage) -> str:
    parts = []
    for name in storage.required_artifacts():
        if storage.exists(name):
            parts.append(f"### {storage.path(name).relative_to(storage.change_dir)}\n\n{storage.read(name)}")
    return "\n\n".join(parts)


def critique_prompt(storage: ChangeStorage, iteration: int, reviewer: str) -> str:
    return f"""## Change ID
{storage.change_id}

## Documents

{_bundle(storage)}

## Task

Challenge this plan. Look for content and logic problems only; structure has
already been validated:
- completeness: requirements or scenarios missing
- consistency: specs disagree with the proposal, tasks miss requirements
- feasibility: the design cannot be implemented as written
- clarity: requirements are ambiguous or untestable
- dependencies: task ordering is wrong or prerequisites are missing

{_REVIEW_FORMAT.format(iteration=iteration, reviewer=reviewer)}
"""


def revision_prompt(storage: ChangeStorage, review_block: str) -> str:
    return f"""## Change ID
{storage.change_id}

## Review Feedback

{review_block}

## Task

Address every issue above by editing the affected files under
`{storage.change_dir}` (proposal.md, specs/*.md, tasks.md). Keep the existing
structure, keep `Affected specs:` in sync with the spec files, and only change
what the feedback asks for.
"""


def implementation_prompt(storage: ChangeStorage, pending: list[str]) -> str:
    task_list = "\n".join(f"- {task}" for task in pending) or "- (all tasks)"
    return f"""## Change ID
{storage.change_id}

## Plan

{_bundle(storage)}

## Task

Implement the pending tasks below in dependency order:
{task_list}

After finishing each task, set its `status` to `done` in `{storage.path(TASKS)}`.
"""
