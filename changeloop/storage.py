"""File storage for change artifacts."""

from __future__ import annotations

import re
from pathlib import Path

from .config import settings

PROPOSAL = "proposal"
TASKS = "tasks"
CHALLENGE = "challenge"
SPEC_PREFIX = "specs/"

_FIXED_FILES = {
    PROPOSAL: "proposal.md",
    TASKS: "tasks.md",
    CHALLENGE: "CHALLENGE.md",
}

_AFFECTED_SPECS_RE = re.compile(
    r"^\s*[-*]?\s*\**Affected specs\**\s*:\**\s*(?P<value>.+?)\s*$",
    re.IGNORECASE | re.MULTILINE,
)
_SPEC_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def spec_artifact(spec_id: str) -> str:
    return f"{SPEC_PREFIX}{spec_id}"


def parse_affected_specs(proposal: str) -> list[str]:
    """Spec ids listed on the proposal's ``Affected specs:`` line.

    >>> parse_affected_specs("- Affected specs: `auth`, [session-store]")
    ['auth', 'session-store']
    """
    match = _AFFECTED_SPECS_RE.search(proposal)
    if not match:
        return []

    value = match.group("value").strip()
    if value.lower() in ("none", "n/a", "[]", "-"):
        return []

    spec_ids: list[str] = []
    for raw in value.split(","):
        spec_id = raw.strip().strip("[]`'\"*").strip()
        if spec_id.endswith(".md"):
            spec_id = spec_id[: -len(".md")]
        if spec_id.startswith(SPEC_PREFIX):
            spec_id = spec_id[len(SPEC_PREFIX) :]
        if spec_id and _SPEC_ID_RE.match(spec_id) and spec_id not in spec_ids:
            spec_ids.append(spec_id)
    return spec_ids


class ChangeStorage:
    """Artifacts of one change, rooted at an explicit project root.

    Existence is always read from disk so edits made outside the tool
    between runs are picked up.
    """

    def __init__(self, project_root: Path, change_id: str):
        self.project_root = project_root
        self.change_id = change_id
        self.change_dir = settings.change_dir(change_id, project_root)

    def path(self, name: str) -> Path:
        if name in _FIXED_FILES:
            return self.change_dir / _FIXED_FILES[name]
        if name.startswith(SPEC_PREFIX):
            spec_id = name[len(SPEC_PREFIX) :]
            if not _SPEC_ID_RE.match(spec_id):
                raise ValueError(f"Invalid spec id: {spec_id!r}")
            return self.change_dir / "specs" / f"{spec_id}.md"
        raise ValueError(f"Unknown artifact: {name!r}")

    def exists(self, name: str) -> bool:
        return self.path(name).is_file()

    def read(self, name: str) -> str:
        return self.path(name).read_text(encoding="utf-8")

    def write(self, name: str, content: str) -> Path:
        target = self.path(name)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        return target

    def append(self, name: str, content: str) -> Path:
        target = self.path(name)
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("a", encoding="utf-8") as fh:
            fh.write(content)
        return target

    def spec_ids(self) -> list[str]:
        """Spec ids named by the proposal, or [] when there is no proposal yet."""
        if not self.exists(PROPOSAL):
            return []
        return parse_affected_specs(self.read(PROPOSAL))

    def required_artifacts(self) -> list[str]:
        """Required artifacts in generation order.

        The spec list depends on the proposal, so call again after the
        proposal is written.
        """
        return [PROPOSAL, *(spec_artifact(s) for s in self.spec_ids()), TASKS]
