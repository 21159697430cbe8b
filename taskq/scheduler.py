"""Scheduler: pick the next task an agent should work on."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .deps import is_eligible
from .models import ACTIVE_STATUSES, TaskRecord, TaskStatus
from .store import Snapshot


class SelectionMode(str, Enum):
    PREFER_ANALYSED = "prefer-analysed"
    ANALYSED = "analysed"
    TODO = "todo"


_POOLS: dict[SelectionMode, tuple[TaskStatus, ...]] = {
    SelectionMode.PREFER_ANALYSED: (TaskStatus.ANALYSED, TaskStatus.TODO),
    SelectionMode.ANALYSED: (TaskStatus.ANALYSED,),
    SelectionMode.TODO: (TaskStatus.TODO,),
}


@dataclass
class NextTask:
    task: TaskRecord | None
    source_status: TaskStatus | None = None
    blocked_count: int = 0
    counts: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task": self.task.to_dict() if self.task else None,
            "source_status": self.source_status.value if self.source_status else None,
            "blocked_count": self.blocked_count,
            "counts": self.counts,
        }


def eligible_tasks(candidates: list[TaskRecord], snap: Snapshot) -> list[TaskRecord]:
    """Candidates whose every dependency is done, sorted by (priority, id)."""
    done = snap.done_index()
    ready = [t for t in candidates if is_eligible(t, done)]
    ready.sort(key=lambda t: (t.priority, t.id))
    return ready


def get_next(
    snap: Snapshot, mode: SelectionMode | str = SelectionMode.PREFER_ANALYSED
) -> NextTask:
    """Select the single most urgent eligible task.

    Pools are tried in order (analysed before todo in the default mode). When
    nothing is eligible the result carries how many candidates are blocked and
    the size of every non-terminal status, so callers can tell "nothing to do"
    from "everything is blocked".
    """
    mode = SelectionMode(mode)
    all_counts = snap.counts()
    counts = {s.value: all_counts[s.value] for s in ACTIVE_STATUSES}

    blocked = 0
    for status in _POOLS[mode]:
        candidates = snap.by_status(status)
        ready = eligible_tasks(candidates, snap)
        if ready:
            return NextTask(task=ready[0], source_status=status, counts=counts)
        blocked += len(candidates)

    return NextTask(task=None, blocked_count=blocked, counts=counts)
