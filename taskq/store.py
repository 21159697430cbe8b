"""Filesystem-backed task store: one JSON document per task, one directory per status.

Nothing is cached between calls. Every read goes through :func:`scan`, which
walks all status directories fresh, so a process never acts on a view another
process has already invalidated.
"""

from __future__ import annotations

import logging
import re
import uuid
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from filelock import FileLock, Timeout

from .deps import DoneIndex, find_dependency, is_eligible
from .errors import NotFoundError, NotFoundInExpectedStatus, ValidationError
from .fsio import atomic_write_json, read_json
from .models import (
    ACTIVE_STATUSES,
    DEFAULT_PRIORITY,
    DEPENDABLE_STATUSES,
    STATUS_ORDER,
    Category,
    Effort,
    TaskRecord,
    TaskStatus,
    utc_now,
)

logger = logging.getLogger(__name__)

_TASK_ID_RE = re.compile(r"^[A-Za-z0-9-]+$")


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------

@dataclass
class ScanWarning:
    path: str
    message: str


@dataclass
class Snapshot:
    """Everything one scan found. Pure data; holds no handles."""

    tasks: list[TaskRecord] = field(default_factory=list)
    paths: dict[str, Path] = field(default_factory=dict)
    # Losing copies of ids found in more than one directory.
    duplicates: dict[str, list[Path]] = field(default_factory=dict)
    warnings: list[ScanWarning] = field(default_factory=list)

    def get(self, task_id: str) -> TaskRecord | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def by_status(self, *statuses: TaskStatus) -> list[TaskRecord]:
        wanted = set(statuses)
        return [t for t in self.tasks if t.status in wanted]

    def done_index(self) -> DoneIndex:
        return DoneIndex.from_tasks(self.by_status(TaskStatus.DONE))

    def counts(self) -> dict[str, int]:
        counts = {s.value: 0 for s in STATUS_ORDER}
        for task in self.tasks:
            counts[task.status.value] += 1
        return counts


def status_dir(base_dir: Path, status: TaskStatus) -> Path:
    return base_dir / status.value


def scan(base_dir: str | Path) -> Snapshot:
    """Read every task document under ``base_dir``.

    Each record's status is taken from the directory it was found in.
    Unreadable or malformed documents are skipped with a warning. When the
    same id appears twice (a move interrupted between writing the new file
    and removing the old one) the copy with the newest ``updated_at`` wins.
    """
    base_dir = Path(base_dir)
    snap = Snapshot()
    found: dict[str, tuple[TaskRecord, Path]] = {}

    for status in STATUS_ORDER:
        directory = status_dir(base_dir, status)
        if not directory.is_dir():
            continue
        for path in sorted(directory.glob("*.json")):
            try:
                task = TaskRecord.from_dict(read_json(path))
            except FileNotFoundError:
                # Moved by another process between listing and reading.
                logger.debug("Task file vanished during scan: %s", path)
                continue
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning("Skipping unreadable task file %s: %s", path, e)
                snap.warnings.append(ScanWarning(path=str(path), message=str(e)))
                continue

            if task.status != status:
                logger.debug(
                    "Task %s says status=%s but lives in %s/",
                    task.id, task.status.value, status.value,
                )
                task.status = status

            previous = found.get(task.id)
            if previous is not None:
                kept, dropped = _newer(previous, (task, path))
                msg = f"Duplicate task id {task.id}; using {kept[1]}, ignoring {dropped[1]}"
                logger.warning(msg)
                snap.warnings.append(ScanWarning(path=str(dropped[1]), message=msg))
                snap.duplicates.setdefault(task.id, []).append(dropped[1])
                found[task.id] = kept
            else:
                found[task.id] = (task, path)

    for task, path in found.values():
        snap.tasks.append(task)
        snap.paths[task.id] = path
    logger.debug("Scanned %s: %d tasks", base_dir, len(snap.tasks))
    return snap


def _newer(a: tuple[TaskRecord, Path], b: tuple[TaskRecord, Path]):
    if (b[0].updated_at or "") > (a[0].updated_at or ""):
        return b, a
    return a, b


# ---------------------------------------------------------------------------
# Read-only views over a snapshot
# ---------------------------------------------------------------------------

def _as_set(value, enum_cls) -> set | None:
    if value is None:
        return None
    if isinstance(value, (str, enum_cls)):
        value = [value]
    try:
        return {enum_cls(v) for v in value}
    except ValueError as e:
        raise ValidationError(enum_cls.__name__.lower(), str(e)) from e


def filter_tasks(
    snap: Snapshot,
    status=None,
    category=None,
    effort=None,
    min_priority: int | None = None,
    max_priority: int | None = None,
    limit: int | None = None,
) -> list[TaskRecord]:
    """Filter a snapshot; result sorted by ascending priority, then id."""
    statuses = _as_set(status, TaskStatus)
    categories = _as_set(category, Category)
    efforts = _as_set(effort, Effort)

    result = []
    for task in snap.tasks:
        if statuses is not None and task.status not in statuses:
            continue
        if categories is not None and task.category not in categories:
            continue
        if efforts is not None and task.effort not in efforts:
            continue
        if min_priority is not None and task.priority < min_priority:
            continue
        if max_priority is not None and task.priority > max_priority:
            continue
        result.append(task)

    result.sort(key=lambda t: (t.priority, t.id))
    if limit is not None:
        if limit < 0:
            raise ValidationError("limit", "limit must be non-negative")
        result = result[:limit]
    return result


def remaining_effort(snap: Snapshot) -> dict[str, Any]:
    """Estimated days left across every task not yet in a terminal state."""
    by_status = {s.value: 0.0 for s in ACTIVE_STATUSES}
    by_effort = {e.value: 0 for e in Effort}
    for task in snap.by_status(*ACTIVE_STATUSES):
        by_status[task.status.value] += task.effort_days
        by_effort[task.effort.value] += 1
    return {
        "total_days": sum(by_status.values()),
        "task_count": sum(by_effort.values()),
        "by_status": by_status,
        "by_effort": by_effort,
    }


def compute_stats(snap: Snapshot) -> dict[str, Any]:
    counts = snap.counts()
    done_index = snap.done_index()
    blocked = [
        t for t in snap.by_status(TaskStatus.TODO, TaskStatus.ANALYSED)
        if not is_eligible(t, done_index)
    ]
    # Split parents are replaced by their children; cancelled work never counts.
    countable = len(snap.tasks) - counts["split"] - counts["cancelled"]
    completion = round(100.0 * counts["done"] / countable, 1) if countable else 0.0
    return {
        "total": len(snap.tasks),
        "counts": counts,
        "by_category": dict(Counter(t.category.value for t in snap.tasks)),
        "blocked": len(blocked),
        "completion_percent": completion,
        "remaining_effort_days": remaining_effort(snap)["total_days"],
    }


def _hours_since(timestamp: str | None, now: datetime) -> float | None:
    if not timestamp:
        return None
    try:
        then = datetime.fromisoformat(timestamp)
    except ValueError:
        return None
    if then.tzinfo is None:
        then = then.replace(tzinfo=timezone.utc)
    return (now - then).total_seconds() / 3600


def action_required(
    snap: Snapshot,
    question_timeout_hours: float | None = None,
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """Tasks waiting on a human: open questions and split proposals.

    With ``question_timeout_hours`` set, each question item carries an
    ``overdue`` flag.
    """
    now = now or datetime.now(timezone.utc)
    items = []
    for task in filter_tasks(snap, status=TaskStatus.NEEDS_INPUT):
        if task.split_proposal:
            items.append({
                "type": "split",
                "task_id": task.id,
                "task_name": task.name,
                "split_proposal": task.split_proposal,
            })
        elif task.pending_question:
            item = {
                "type": "question",
                "task_id": task.id,
                "task_name": task.name,
                "pending_question": task.pending_question,
            }
            if question_timeout_hours is not None:
                waited = _hours_since(task.pending_question.get("asked_at"), now)
                item["overdue"] = waited is not None and waited >= question_timeout_hours
            items.append(item)
    return items


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _require_text(fields: dict, name: str) -> str:
    value = fields.get(name)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(name, f"{name} is required")
    return value.strip()


def _string_list(fields: dict, name: str) -> list[str]:
    value = fields.get(name)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValidationError(name, f"{name} must be a list of strings")
    return [v for v in value if v.strip()]


def build_task(
    fields: dict[str, Any],
    known: Iterable[TaskRecord],
    taken_ids: set[str] | None = None,
    parent_task_id: str | None = None,
) -> TaskRecord:
    """Validate creation fields and build a new todo record (nothing written).

    ``known`` is the pool dependencies may resolve against. A
    ``parent_task_id`` key in ``fields`` is ignored; only split approval
    links children to a parent, through the keyword argument.
    """
    if not isinstance(fields, dict):
        raise ValidationError("task", "task must be an object")

    name = _require_text(fields, "name")
    description = _require_text(fields, "description")

    raw_category = fields.get("category")
    if raw_category is None:
        raise ValidationError("category", "category is required")
    try:
        category = Category(raw_category)
    except ValueError:
        allowed = ", ".join(c.value for c in Category)
        raise ValidationError(
            "category", f"Invalid category '{raw_category}' (expected one of: {allowed})"
        ) from None

    raw_effort = fields.get("effort") or Effort.M.value
    try:
        effort = Effort(raw_effort)
    except ValueError:
        allowed = ", ".join(e.value for e in Effort)
        raise ValidationError(
            "effort", f"Invalid effort '{raw_effort}' (expected one of: {allowed})"
        ) from None

    priority = fields.get("priority", DEFAULT_PRIORITY)
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise ValidationError("priority", "priority must be an integer")

    dependencies = _string_list(fields, "dependencies")
    known = list(known)
    for ref in dependencies:
        if find_dependency(ref, known) is None:
            raise ValidationError(
                "dependencies", f"Dependency '{ref}' does not match any task id, name or slug"
            )

    taken_ids = taken_ids or set()
    task_id = str(uuid.uuid4())
    while task_id in taken_ids:
        task_id = str(uuid.uuid4())

    now = utc_now()
    return TaskRecord(
        id=task_id,
        name=name,
        description=description,
        category=category,
        priority=priority,
        effort=effort,
        dependencies=dependencies,
        acceptance_criteria=_string_list(fields, "acceptance_criteria"),
        steps=_string_list(fields, "steps"),
        status=TaskStatus.TODO,
        created_at=now,
        updated_at=now,
        parent_task_id=parent_task_id,
    )


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------

@dataclass
class BulkError:
    index: int
    message: str
    field: str | None = None
    code: str = ValidationError.code

    def to_dict(self) -> dict[str, Any]:
        return {"index": self.index, "code": self.code, "field": self.field, "message": self.message}


@dataclass
class BulkResult:
    created: list[TaskRecord] = field(default_factory=list)
    errors: list[BulkError] = field(default_factory=list)


class TaskStore:
    """Repository over a task-base directory. Holds no cached state."""

    def __init__(self, base_dir: str | Path, lock_timeout: float = 10.0):
        self.base_dir = Path(base_dir)
        self.lock_timeout = lock_timeout

    def init(self) -> None:
        for status in STATUS_ORDER:
            status_dir(self.base_dir, status).mkdir(parents=True, exist_ok=True)

    def exists(self) -> bool:
        return self.base_dir.is_dir()

    # ---------------------------------------------------------------
    # Queries
    # ---------------------------------------------------------------

    def scan(self) -> Snapshot:
        return scan(self.base_dir)

    def list(self, **filters) -> list[TaskRecord]:
        return filter_tasks(self.scan(), **filters)

    def get_by_id(self, task_id: str) -> TaskRecord:
        task = self.scan().get(task_id)
        if task is None:
            raise NotFoundError(task_id)
        return task

    def get_stats(self) -> dict[str, Any]:
        return compute_stats(self.scan())

    def get_remaining_effort(self) -> dict[str, Any]:
        return remaining_effort(self.scan())

    def list_action_required(self, question_timeout_hours: float | None = None) -> list[dict[str, Any]]:
        return action_required(self.scan(), question_timeout_hours)

    # ---------------------------------------------------------------
    # Creation
    # ---------------------------------------------------------------

    def create(self, fields: dict[str, Any]) -> TaskRecord:
        snap = self.scan()
        task = build_task(
            fields,
            snap.by_status(*DEPENDABLE_STATUSES),
            taken_ids={t.id for t in snap.tasks},
        )
        self._write_new(task)
        return task

    def create_bulk(
        self, entries: list[dict[str, Any]], parent_task_id: str | None = None
    ) -> BulkResult:
        """Create each entry independently; failures are reported per entry.

        Later entries may depend on earlier ones in the same batch.
        """
        if not isinstance(entries, list):
            raise ValidationError("tasks", "tasks must be a list")

        snap = self.scan()
        known = snap.by_status(*DEPENDABLE_STATUSES)
        taken = {t.id for t in snap.tasks}
        result = BulkResult()

        for index, entry in enumerate(entries, start=1):
            try:
                task = build_task(entry, known, taken_ids=taken, parent_task_id=parent_task_id)
                self._write_new(task)
            except ValidationError as e:
                logger.info("Bulk entry %d rejected: %s", index, e.message)
                result.errors.append(BulkError(index=index, field=e.field, message=e.message))
                continue
            except OSError as e:
                logger.error("Bulk entry %d could not be written: %s", index, e)
                result.errors.append(BulkError(index=index, message=str(e), code="IO_ERROR"))
                continue
            known.append(task)
            taken.add(task.id)
            result.created.append(task)

        return result

    def _write_new(self, task: TaskRecord) -> None:
        path = status_dir(self.base_dir, task.status) / task.filename
        atomic_write_json(path, task.to_dict())
        logger.info("Created task %s (%s) in %s/", task.id, task.name, task.status.value)

    def discard(self, task: TaskRecord) -> None:
        """Remove a task written by this process that must not survive."""
        status_dir(self.base_dir, task.status).joinpath(task.filename).unlink(missing_ok=True)
        logger.info("Discarded task %s (%s)", task.id, task.name)

    # ---------------------------------------------------------------
    # Mutation
    # ---------------------------------------------------------------

    @property
    def lock_dir(self) -> Path:
        return self.base_dir / ".locks"

    def _lock(self, task_id: str) -> FileLock:
        if not task_id or not _TASK_ID_RE.match(task_id):
            raise NotFoundError(task_id)
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        return FileLock(str(self.lock_dir / f"{task_id}.lock"), timeout=self.lock_timeout)

    def prune_locks(self) -> int:
        """Delete lock files of ids no task document carries any more.

        Ids are never reused, so such a lock can only guard a NotFoundError.
        Each file is taken without waiting before removal; busy ones are kept.
        """
        if not self.lock_dir.is_dir():
            return 0
        live = {t.id for t in self.scan().tasks}
        removed = 0
        for path in sorted(self.lock_dir.glob("*.lock")):
            if path.stem in live:
                continue
            try:
                with FileLock(str(path), timeout=0):
                    path.unlink(missing_ok=True)
            except Timeout:
                logger.debug("Lock %s busy; kept", path)
                continue
            removed += 1
        if removed:
            logger.info("Pruned %d stale lock file(s) in %s", removed, self.lock_dir)
        return removed

    def _locate(self, task_id: str) -> tuple[TaskRecord, Path, list[Path]]:
        snap = self.scan()
        task = snap.get(task_id)
        if task is None:
            raise NotFoundError(task_id)
        return task, snap.paths[task_id], snap.duplicates.get(task_id, [])

    @staticmethod
    def _retire(new_path: Path, old_paths: Iterable[Path]) -> None:
        for path in old_paths:
            if path != new_path:
                path.unlink(missing_ok=True)

    def transition(
        self,
        task_id: str,
        from_statuses: Iterable[TaskStatus | str],
        to_status: TaskStatus | str,
        mutate: Callable[[TaskRecord], None] | None = None,
        *,
        idempotent: bool = False,
    ) -> TaskRecord:
        """Move a task between status directories, applying ``mutate`` on the way.

        The new document is fully written (temp file + rename) before the old
        one is removed. A task already in ``to_status`` is returned untouched
        when ``idempotent`` is set. A task found elsewhere raises
        :class:`NotFoundInExpectedStatus`.

        ``mutate`` runs under the task lock, after the status check; if it
        raises, nothing is written. Stale copies left by an interrupted move
        are removed along with the old document.
        """
        sources = tuple(TaskStatus(s) for s in from_statuses)
        target = TaskStatus(to_status)

        with self._lock(task_id):
            task, old_path, stale = self._locate(task_id)

            if task.status == target and idempotent:
                logger.debug("Task %s already %s", task_id, target.value)
                return task
            if task.status not in sources:
                raise NotFoundInExpectedStatus(task_id, sources, task.status)

            previous = task.status
            if mutate is not None:
                mutate(task)
            task.status = target
            task.updated_at = utc_now()

            new_path = status_dir(self.base_dir, target) / task.filename
            atomic_write_json(new_path, task.to_dict())
            self._retire(new_path, [old_path, *stale])

        logger.info("Task %s: %s -> %s", task_id, previous.value, target.value)
        return task

    def update(self, task_id: str, mutate: Callable[[TaskRecord], None]) -> TaskRecord:
        """Rewrite a task in place without changing its status."""
        with self._lock(task_id):
            task, old_path, stale = self._locate(task_id)
            mutate(task)
            task.updated_at = utc_now()
            new_path = status_dir(self.base_dir, task.status) / task.filename
            atomic_write_json(new_path, task.to_dict())
            self._retire(new_path, [old_path, *stale])
        logger.info("Task %s updated", task_id)
        return task
