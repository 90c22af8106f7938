"""Local structural validation of a change's artifacts.

Only structure is checked here: files present and non-empty, headings,
references between proposal, specs and tasks. Whether the content is any
good is the critic's job.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from .errors import TaskGraphError, ValidationFailedError
from .storage import PROPOSAL, TASKS, ChangeStorage, spec_artifact
from .task_graph import TaskGraph


@dataclass
class ValidationIssue:
    level: Literal["error", "warning"]
    artifact: str
    message: str

    def __str__(self) -> str:
        return f"{self.artifact}: {self.message}"


@dataclass
class ValidationResult:
    issues: list[ValidationIssue] = field(default_factory=list)

    @property
    def errors(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.level == "error"]

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.level == "warning"]

    @property
    def ok(self) -> bool:
        return not self.errors

    def error(self, artifact: str, message: str) -> None:
        self.issues.append(ValidationIssue("error", artifact, message))

    def warning(self, artifact: str, message: str) -> None:
        self.issues.append(ValidationIssue("warning", artifact, message))

    def raise_for_errors(self) -> None:
        if self.errors:
            raise ValidationFailedError([str(e) for e in self.errors])


def _has_heading(content: str) -> bool:
    return any(line.startswith("#") for line in content.splitlines())


def validate_change(storage: ChangeStorage) -> ValidationResult:
    result = ValidationResult()

    if not storage.exists(PROPOSAL):
        result.error(PROPOSAL, "missing")
        return result

    proposal = storage.read(PROPOSAL)
    if not proposal.strip():
        result.error(PROPOSAL, "empty")
    elif not _has_heading(proposal):
        result.error(PROPOSAL, "no markdown heading")

    spec_ids = storage.spec_ids()
    for spec_id in spec_ids:
        name = spec_artifact(spec_id)
        if not storage.exists(name):
            result.error(name, "listed in proposal but missing")
        elif not storage.read(name).strip():
            result.error(name, "empty")

    specs_dir = storage.change_dir / "specs"
    if specs_dir.is_dir():
        for path in sorted(specs_dir.glob("*.md")):
            if path.stem not in spec_ids:
                result.warning(spec_artifact(path.stem), "not listed in proposal's affected specs")

    if not storage.exists(TASKS):
        result.error(TASKS, "missing")
        return result

    try:
        graph = TaskGraph.parse(storage.read(TASKS))
    except TaskGraphError as exc:
        result.error(TASKS, exc.message)
        return result

    for task in graph.tasks:
        if not task.spec_ref:
            continue
        ref_spec = task.spec_ref.split("#", 1)[0].strip()
        if ref_spec.startswith("specs/"):
            ref_spec = ref_spec[len("specs/") :]
        ref_spec = ref_spec.removesuffix(".md")
        if ref_spec and ref_spec not in spec_ids:
            result.error(TASKS, f"task {task.id} references unknown spec {task.spec_ref!r}")

    return result
