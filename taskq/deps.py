"""Dependency resolution and ordering.

Resolution on the live path is exact: a reference matches a task when it is
the task's id, its exact name, or (case-insensitively) its slug.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from graphlib import CycleError, TopologicalSorter

from .errors import DependencyCycleError
from .models import TaskRecord


@dataclass
class DoneIndex:
    """Identity set of tasks a dependency can resolve against."""

    ids: set[str] = field(default_factory=set)
    names: set[str] = field(default_factory=set)
    slugs: set[str] = field(default_factory=set)

    @classmethod
    def from_tasks(cls, tasks: Iterable[TaskRecord]) -> DoneIndex:
        index = cls()
        for task in tasks:
            index.add(task)
        return index

    def add(self, task: TaskRecord) -> None:
        self.ids.add(task.id)
        self.names.add(task.name)
        self.slugs.add(task.slug)

    def __len__(self) -> int:
        return len(self.ids)


def resolve_dependency(ref: str, done: DoneIndex) -> bool:
    """True if ``ref`` exactly names a task in ``done``."""
    if ref in done.ids or ref in done.names:
        return True
    return ref.lower() in done.slugs


def unmet_dependencies(task: TaskRecord, done: DoneIndex) -> list[str]:
    return [ref for ref in task.dependencies if not resolve_dependency(ref, done)]


def is_eligible(task: TaskRecord, done: DoneIndex) -> bool:
    return not unmet_dependencies(task, done)


def find_dependency(ref: str, tasks: Iterable[TaskRecord]) -> TaskRecord | None:
    """Return the task ``ref`` points at, using the same exact rules."""
    lowered = ref.lower()
    for task in tasks:
        if ref == task.id or ref == task.name or lowered == task.slug:
            return task
    return None


def build_graph(tasks: list[TaskRecord]) -> dict[str, set[str]]:
    """Map task id → ids of the tasks it depends on.

    References that resolve to nothing in ``tasks`` are left out.
    """
    graph: dict[str, set[str]] = {}
    for task in tasks:
        deps: set[str] = set()
        for ref in task.dependencies:
            target = find_dependency(ref, tasks)
            if target is not None:
                deps.add(target.id)
        graph[task.id] = deps
    return graph


def topological_order(graph: dict[str, set[str]]) -> list[str]:
    """Return topologically sorted node list. Raises on cycle."""
    if not graph:
        return []
    ts = TopologicalSorter(graph)
    try:
        return list(ts.static_order())
    except CycleError as e:
        raise DependencyCycleError(f"Dependency cycle detected: {e.args[1]}") from e
