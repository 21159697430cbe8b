"""Core data models for taskq."""

from __future__ import annotations

import re
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    TODO = "todo"
    ANALYSING = "analysing"
    NEEDS_INPUT = "needs-input"
    ANALYSED = "analysed"
    IN_PROGRESS = "in-progress"
    DONE = "done"
    SPLIT = "split"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


# Fixed scan order; also the set of status directories under the task base.
STATUS_ORDER: tuple[TaskStatus, ...] = (
    TaskStatus.TODO,
    TaskStatus.ANALYSING,
    TaskStatus.NEEDS_INPUT,
    TaskStatus.ANALYSED,
    TaskStatus.IN_PROGRESS,
    TaskStatus.DONE,
    TaskStatus.SPLIT,
    TaskStatus.SKIPPED,
    TaskStatus.CANCELLED,
)

TERMINAL_STATUSES = frozenset(
    {TaskStatus.DONE, TaskStatus.SPLIT, TaskStatus.SKIPPED, TaskStatus.CANCELLED}
)

ACTIVE_STATUSES: tuple[TaskStatus, ...] = tuple(
    s for s in STATUS_ORDER if s not in TERMINAL_STATUSES
)

# Dependencies given at creation time may point at any of these.
DEPENDABLE_STATUSES: tuple[TaskStatus, ...] = ACTIVE_STATUSES + (TaskStatus.DONE,)


class Category(str, Enum):
    CORE = "core"
    FEATURE = "feature"
    ENHANCEMENT = "enhancement"
    BUGFIX = "bugfix"
    INFRASTRUCTURE = "infrastructure"
    UI_UX = "ui-ux"


class Effort(str, Enum):
    XS = "XS"
    S = "S"
    M = "M"
    L = "L"
    XL = "XL"


EFFORT_DAYS: dict[Effort, float] = {
    Effort.XS: 1.0,
    Effort.S: 2.5,
    Effort.M: 5.0,
    Effort.L: 10.0,
    Effort.XL: 15.0,
}


class WhisperPriority(str, Enum):
    NORMAL = "normal"
    URGENT = "urgent"
    ABORT = "abort"


DEFAULT_PRIORITY = 50

_SLUG_STRIP_RE = re.compile(r"[^a-z0-9\s-]")
_SLUG_SPACE_RE = re.compile(r"\s+")
_SLUG_DASH_RE = re.compile(r"-{2,}")


def slugify(name: str) -> str:
    """Lowercase, drop non-alphanumerics, turn whitespace into hyphens."""
    slug = _SLUG_STRIP_RE.sub("", name.lower()).strip()
    slug = _SLUG_SPACE_RE.sub("-", slug)
    return _SLUG_DASH_RE.sub("-", slug).strip("-")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class TaskRecord:
    """A single unit of agent work, stored as one JSON document."""

    # Identity
    id: str
    name: str
    description: str = ""

    # Classification & scheduling
    category: Category = Category.FEATURE
    priority: int = DEFAULT_PRIORITY
    effort: Effort = Effort.M
    dependencies: list[str] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)
    steps: list[str] = field(default_factory=list)

    # Denormalized hint; the directory a record lives in is authoritative.
    status: TaskStatus = TaskStatus.TODO

    # Lifecycle timestamps
    created_at: str | None = None
    updated_at: str | None = None
    started_at: str | None = None
    analysis_started_at: str | None = None
    analysis_completed_at: str | None = None
    completed_at: str | None = None

    # Analysis
    analysis: dict[str, Any] | None = None
    analysed_by: str | None = None

    # needs-input / split side flows
    pending_question: dict[str, Any] | None = None
    questions_resolved: list[dict[str, Any]] = field(default_factory=list)
    split_proposal: dict[str, Any] | None = None
    child_tasks: list[str] = field(default_factory=list)
    parent_task_id: str | None = None

    # Side-state bookkeeping
    skip_history: list[dict[str, Any]] = field(default_factory=list)
    cancel_reason: str | None = None

    # Completion details
    commit_sha: str | None = None
    files_created: list[str] = field(default_factory=list)
    files_modified: list[str] = field(default_factory=list)
    files_deleted: list[str] = field(default_factory=list)

    # Keys written by other tools; preserved on rewrite.
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def slug(self) -> str:
        return slugify(self.name)

    @property
    def effort_days(self) -> float:
        return EFFORT_DAYS[self.effort]

    @property
    def filename(self) -> str:
        slug = self.slug[:60].rstrip("-") or "task"
        return f"{slug}-{self.id[:8]}.json"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = dict(self.extra)
        for f in fields(self):
            if f.name == "extra":
                continue
            value = getattr(self, f.name)
            data[f.name] = value.value if isinstance(value, Enum) else value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskRecord:
        """Build a record from a stored document.

        Raises ``ValueError``/``KeyError``/``TypeError`` on documents that
        cannot be interpreted; callers scanning the store treat those as
        corrupt files.
        """
        if not isinstance(data, dict):
            raise TypeError(f"expected a JSON object, got {type(data).__name__}")
        known = {f.name for f in fields(cls)} - {"extra"}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs["id"] = str(data["id"])
        kwargs["name"] = str(data["name"])
        if "category" in kwargs:
            kwargs["category"] = Category(kwargs["category"])
        if "effort" in kwargs:
            kwargs["effort"] = Effort(kwargs["effort"])
        if "status" in kwargs:
            kwargs["status"] = TaskStatus(kwargs["status"])
        if "priority" in kwargs:
            kwargs["priority"] = int(kwargs["priority"])
        for list_field in (
            "dependencies", "acceptance_criteria", "steps", "questions_resolved",
            "child_tasks", "skip_history", "files_created", "files_modified",
            "files_deleted",
        ):
            if kwargs.get(list_field) is None:
                kwargs.pop(list_field, None)
        kwargs["extra"] = {k: v for k, v in data.items() if k not in known}
        return cls(**kwargs)


@dataclass
class SteeringMessage:
    """One operator instruction ("whisper") in a process's log."""

    instruction: str
    priority: WhisperPriority = WhisperPriority.NORMAL
    timestamp: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "instruction": self.instruction,
            "priority": self.priority.value,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SteeringMessage:
        if not isinstance(data, dict):
            raise TypeError(f"expected a JSON object, got {type(data).__name__}")
        return cls(
            instruction=str(data["instruction"]),
            priority=WhisperPriority(data.get("priority", "normal")),
            timestamp=str(data.get("timestamp", "")),
        )


@dataclass
class ProcessStatusRecord:
    """Last known state of one agent process, written on every heartbeat."""

    id: str
    type: str = "agent"
    status: str = "running"
    pid: int | None = None
    started_at: str = ""
    last_heartbeat: str = ""
    last_whisper_index: int = 0
    heartbeat_status: str = ""
    heartbeat_next_action: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProcessStatusRecord:
        if not isinstance(data, dict):
            raise TypeError(f"expected a JSON object, got {type(data).__name__}")
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        kwargs["last_whisper_index"] = int(kwargs.get("last_whisper_index") or 0)
        return cls(**kwargs)
