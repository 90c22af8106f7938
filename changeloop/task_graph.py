"""Layered task graph parsed from a change's tasks.md.

tasks.md carries YAML frontmatter declaring the layers in use and one
fenced ``yaml`` block per task::

    ---
    id: add-retries
    type: tasks
    layers:
      data: {task_count: 1}
      logic: {task_count: 1}
    ---

    ### 1.1 Add retry column
    ```yaml
    id: "1.1"
    action: MODIFY
    file: src/models.py
    spec_ref: retry-policy
    status: pending
    depends_on: []
    ```

The number before the first dot of a task id is its layer. A task may only
depend on tasks of strictly lower layers.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

import yaml

from .errors import TaskGraphError

logger = logging.getLogger(__name__)

LAYER_NAMES: dict[int, str] = {1: "data", 2: "logic", 3: "integration", 4: "testing"}
LAYER_ORDER: dict[str, int] = {name: order for order, name in LAYER_NAMES.items()}

_FRONTMATTER_RE = re.compile(r"\A\s*---\s*\n(?P<body>.*?)\n---\s*(?:\n|\Z)", re.DOTALL)
_YAML_BLOCK_RE = re.compile(r"```ya?ml\s*\n(?P<body>.*?)```", re.DOTALL)
_HEADING_RE = re.compile(r"^#+\s+(?P<title>.+?)\s*$", re.MULTILINE)


class TaskStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    BLOCKED = "blocked"


class TaskAction(StrEnum):
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"


_STATUS_ALIASES = {
    "pending": TaskStatus.PENDING,
    "todo": TaskStatus.PENDING,
    "in_progress": TaskStatus.IN_PROGRESS,
    "inprogress": TaskStatus.IN_PROGRESS,
    "done": TaskStatus.DONE,
    "complete": TaskStatus.DONE,
    "completed": TaskStatus.DONE,
    "blocked": TaskStatus.BLOCKED,
}


@dataclass
class Task:
    id: str
    layer: int
    title: str
    file: str
    action: TaskAction
    spec_ref: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    depends_on: list[str] = field(default_factory=list)

    @property
    def done(self) -> bool:
        return self.status == TaskStatus.DONE


@dataclass
class Layer:
    name: str
    order: int
    tasks: list[Task] = field(default_factory=list)


@dataclass
class TaskGraph:
    layers: list[Layer]

    @classmethod
    def from_file(cls, path: Path) -> TaskGraph:
        return cls.parse(path.read_text(encoding="utf-8"))

    @classmethod
    def parse(cls, content: str) -> TaskGraph:
        declared = _declared_layers(content)
        tasks = _parse_tasks(content)

        by_order: dict[int, Layer] = {}
        for order in declared:
            by_order[order] = Layer(name=LAYER_NAMES.get(order, f"layer-{order}"), order=order)
        for task in tasks:
            if task.layer not in by_order:
                if declared:
                    raise TaskGraphError(f"Task {task.id} belongs to undeclared layer {task.layer}")
                by_order[task.layer] = Layer(
                    name=LAYER_NAMES.get(task.layer, f"layer-{task.layer}"), order=task.layer
                )
            by_order[task.layer].tasks.append(task)

        graph = cls(layers=[by_order[o] for o in sorted(by_order)])
        graph.validate()
        return graph

    @property
    def tasks(self) -> list[Task]:
        return [task for layer in self.layers for task in layer.tasks]

    def get(self, task_id: str) -> Task | None:
        return next((t for t in self.tasks if t.id == task_id), None)

    def validate(self) -> None:
        """Reject duplicate ids, unknown dependencies, cycles and layer inversions."""
        index: dict[str, Task] = {}
        for task in self.tasks:
            if task.id in index:
                raise TaskGraphError(f"Duplicate task id: {task.id}")
            index[task.id] = task

        for task in self.tasks:
            for dep in task.depends_on:
                if dep not in index:
                    raise TaskGraphError(f"Task {task.id} depends on unknown task {dep}")

        cycle = _find_cycle(index)
        if cycle:
            raise TaskGraphError("Task dependency cycle: " + " -> ".join(cycle))

        for task in self.tasks:
            for dep in task.depends_on:
                if index[dep].layer >= task.layer:
                    raise TaskGraphError(
                        f"Task {task.id} (layer {task.layer}) depends on {dep} "
                        f"(layer {index[dep].layer}); dependencies must be in a lower layer"
                    )

    def execution_order(self) -> list[Task]:
        """Tasks layer by layer, each after its dependencies."""
        ordered: list[Task] = []
        seen: set[str] = set()
        for layer in self.layers:
            remaining = list(layer.tasks)
            while remaining:
                ready = [t for t in remaining if all(d in seen for d in t.depends_on)]
                if not ready:
                    # validate() guarantees dependencies point to lower layers
                    ready = remaining[:1]
                for task in ready:
                    ordered.append(task)
                    seen.add(task.id)
                    remaining.remove(task)
        return ordered

    def pending(self) -> list[Task]:
        return [t for t in self.execution_order() if not t.done]

    def progress(self) -> tuple[int, int]:
        tasks = self.tasks
        return sum(1 for t in tasks if t.done), len(tasks)

    def all_done(self) -> bool:
        done, total = self.progress()
        return total > 0 and done == total


def _declared_layers(content: str) -> list[int]:
    match = _FRONTMATTER_RE.match(content)
    if not match:
        return []
    try:
        frontmatter = yaml.safe_load(match.group("body")) or {}
    except yaml.YAMLError as exc:
        raise TaskGraphError(f"Invalid tasks.md frontmatter: {exc}") from exc
    if not isinstance(frontmatter, dict):
        raise TaskGraphError("tasks.md frontmatter must be a mapping")

    layers = frontmatter.get("layers")
    if not layers:
        return []
    if isinstance(layers, dict):
        names = list(layers)
    elif isinstance(layers, list):
        names = [item.get("name") if isinstance(item, dict) else item for item in layers]
    else:
        raise TaskGraphError("tasks.md 'layers' must be a mapping or a list")

    orders: list[int] = []
    for name in names:
        order = LAYER_ORDER.get(str(name).lower())
        if order is None:
            raise TaskGraphError(f"Unknown layer in tasks.md frontmatter: {name}")
        orders.append(order)
    return sorted(set(orders))


def _parse_tasks(content: str) -> list[Task]:
    body_start = 0
    frontmatter = _FRONTMATTER_RE.match(content)
    if frontmatter:
        body_start = frontmatter.end()

    tasks: list[Task] = []
    for match in _YAML_BLOCK_RE.finditer(content, body_start):
        try:
            data = yaml.safe_load(match.group("body"))
        except yaml.YAMLError as exc:
            logger.warning("Skipping unparsable yaml block in tasks.md: %s", exc)
            continue
        if not isinstance(data, dict) or "id" not in data:
            continue
        headings = list(_HEADING_RE.finditer(content, body_start, match.start()))
        title = headings[-1].group("title") if headings else str(data["id"])
        tasks.append(_task_from_block(data, title))

    if not tasks:
        raise TaskGraphError("No tasks found in tasks.md")
    return tasks


def _task_from_block(data: dict[str, Any], title: str) -> Task:
    task_id = str(data["id"])
    prefix = task_id.split(".", 1)[0]
    if not prefix.isdigit():
        raise TaskGraphError(f"Task id {task_id!r} does not start with a layer number")

    action_raw = str(data.get("action", "")).strip().lower()
    try:
        action = TaskAction(action_raw)
    except ValueError as exc:
        raise TaskGraphError(f"Task {task_id} has invalid action {data.get('action')!r}") from exc

    status_raw = str(data.get("status") or "pending").strip().lower().replace("-", "_")
    status = _STATUS_ALIASES.get(status_raw)
    if status is None:
        raise TaskGraphError(f"Task {task_id} has invalid status {data.get('status')!r}")

    depends_on = data.get("depends_on") or []
    if isinstance(depends_on, str):
        depends_on = [depends_on]

    file = data.get("file")
    if not file:
        raise TaskGraphError(f"Task {task_id} has no file")

    return Task(
        id=task_id,
        layer=int(prefix),
        title=title.removeprefix(task_id).strip() or task_id,
        file=str(file),
        action=action,
        spec_ref=str(data["spec_ref"]) if data.get("spec_ref") else None,
        status=status,
        depends_on=[str(d) for d in depends_on],
    )


def _find_cycle(index: dict[str, Task]) -> list[str] | None:
    visiting: set[str] = set()
    visited: set[str] = set()
    stack: list[str] = []

    def visit(task_id: str) -> list[str] | None:
        if task_id in visiting:
            return stack[stack.index(task_id) :] + [task_id]
        if task_id in visited:
            return None
        visiting.add(task_id)
        stack.append(task_id)
        for dep in index[task_id].depends_on:
            found = visit(dep)
            if found:
                return found
        stack.pop()
        visiting.remove(task_id)
        visited.add(task_id)
        return None

    for task_id in index:
        found = visit(task_id)
        if found:
            return found
    return None
