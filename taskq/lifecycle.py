"""Task lifecycle operations, each a single TaskStore.transition."""

from __future__ import annotations

import logging
from typing import Any

from .errors import ValidationError
from .models import ACTIVE_STATUSES, DEPENDABLE_STATUSES, TaskRecord, TaskStatus, utc_now
from .store import TaskStore, build_task

logger = logging.getLogger(__name__)

S = TaskStatus


def _require_text(value: Any, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(field, f"{field} is required")
    return value.strip()


def _optional_list(value: Any, field: str) -> list[str] | None:
    if value is None:
        return None
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ValidationError(field, f"{field} must be a list of strings")
    return value


# -------------------------------------------------------------------
# Analysis
# -------------------------------------------------------------------

def mark_analysing(store: TaskStore, task_id: str) -> TaskRecord:
    """todo → analysing. Re-entry keeps the original analysis_started_at."""

    def mutate(task: TaskRecord) -> None:
        task.analysis_started_at = utc_now()

    return store.transition(task_id, [S.TODO], S.ANALYSING, mutate, idempotent=True)


def mark_analysed(
    store: TaskStore,
    task_id: str,
    analysis: dict[str, Any],
    analysed_by: str | None = None,
) -> TaskRecord:
    if not isinstance(analysis, dict):
        raise ValidationError("analysis", "analysis must be an object")

    def mutate(task: TaskRecord) -> None:
        task.analysis = analysis
        task.analysed_by = analysed_by
        task.analysis_completed_at = utc_now()

    return store.transition(task_id, [S.ANALYSING], S.ANALYSED, mutate, idempotent=True)


def mark_needs_input(
    store: TaskStore,
    task_id: str,
    question: str,
    options: list[str] | None = None,
) -> TaskRecord:
    question = _require_text(question, "question")
    options = _optional_list(options, "options") or []

    def mutate(task: TaskRecord) -> None:
        task.pending_question = {
            "question": question,
            "options": options,
            "asked_at": utc_now(),
        }

    return store.transition(task_id, [S.ANALYSING], S.NEEDS_INPUT, mutate)


def answer_question(
    store: TaskStore,
    task_id: str,
    answer: str | list[str],
    custom_text: str | None = None,
) -> TaskRecord:
    """needs-input → analysing, recording the answer in questions_resolved."""
    if isinstance(answer, list):
        if not answer or not all(isinstance(a, str) for a in answer):
            raise ValidationError("answer", "answer must be a string or a list of strings")
    elif not custom_text:
        answer = _require_text(answer, "answer")

    def mutate(task: TaskRecord) -> None:
        if not task.pending_question:
            raise ValidationError("answer", f"Task '{task.id}' has no pending question")
        task.questions_resolved.append({
            "question": task.pending_question.get("question"),
            "answer": answer,
            "custom_text": custom_text,
            "answered_at": utc_now(),
        })
        task.pending_question = None

    return store.transition(task_id, [S.NEEDS_INPUT], S.ANALYSING, mutate)


# -------------------------------------------------------------------
# Split
# -------------------------------------------------------------------

def propose_split(
    store: TaskStore,
    task_id: str,
    reason: str,
    sub_tasks: list[dict[str, Any]],
) -> TaskRecord:
    """Park an analysing task in needs-input with a split proposal for approval."""
    reason = _require_text(reason, "reason")
    if not isinstance(sub_tasks, list) or not sub_tasks:
        raise ValidationError("sub_tasks", "sub_tasks must be a non-empty list")
    for i, sub in enumerate(sub_tasks, start=1):
        if not isinstance(sub, dict):
            raise ValidationError(f"sub_tasks[{i}]", "sub-task must be an object")
        _require_text(sub.get("name"), f"sub_tasks[{i}].name")

    def mutate(task: TaskRecord) -> None:
        task.split_proposal = {
            "reason": reason,
            "sub_tasks": sub_tasks,
            "proposed_at": utc_now(),
        }

    return store.transition(task_id, [S.ANALYSING], S.NEEDS_INPUT, mutate)


def _child_fields(parent: TaskRecord, sub: dict[str, Any]) -> dict[str, Any]:
    fields = {
        "description": f"Split from '{parent.name}'",
        "category": parent.category.value,
        "priority": parent.priority,
        "dependencies": list(parent.dependencies),
    }
    fields.update(sub)
    return fields


def approve_split(store: TaskStore, task_id: str, approved: bool) -> TaskRecord:
    """Resolve a split proposal.

    Approved: children are created in todo and the parent moves to split.
    Rejected: the proposal is dropped and the parent returns to analysing.

    Everything happens under the parent's lock, so of two concurrent
    approvals only one creates children; the other sees the parent already
    split. Children are removed again if the parent cannot be moved.
    """

    def _require_proposal(task: TaskRecord) -> dict[str, Any]:
        if not task.split_proposal:
            raise ValidationError("split_proposal", f"Task '{task_id}' has no split proposal")
        return task.split_proposal

    if not approved:
        def clear(task: TaskRecord) -> None:
            _require_proposal(task)
            task.split_proposal = None

        return store.transition(task_id, [S.NEEDS_INPUT], S.ANALYSING, clear)

    created: list[TaskRecord] = []

    def finish(task: TaskRecord) -> None:
        proposal = _require_proposal(task)
        entries = [_child_fields(task, sub) for sub in proposal.get("sub_tasks", [])]

        # Validate every child up front so a bad entry creates nothing.
        pool = store.scan().by_status(*DEPENDABLE_STATUSES)
        for i, entry in enumerate(entries, start=1):
            try:
                pool.append(build_task(entry, pool))
            except ValidationError as e:
                raise ValidationError(f"sub_tasks[{i}].{e.field}", e.message) from e

        result = store.create_bulk(entries, parent_task_id=task.id)
        created.extend(result.created)
        if result.errors:
            first = result.errors[0]
            raise ValidationError(f"sub_tasks[{first.index}].{first.field}", first.message)

        task.child_tasks = [t.id for t in result.created]
        task.split_proposal = dict(proposal, approved_at=utc_now())

    try:
        parent = store.transition(task_id, [S.NEEDS_INPUT], S.SPLIT, finish)
    except Exception:
        for child in created:
            store.discard(child)
        raise
    logger.info("Task %s split into %d children", task_id, len(parent.child_tasks))
    return parent


# -------------------------------------------------------------------
# Execution
# -------------------------------------------------------------------

def mark_in_progress(store: TaskStore, task_id: str) -> TaskRecord:
    def mutate(task: TaskRecord) -> None:
        if not task.started_at:
            task.started_at = utc_now()

    return store.transition(
        task_id, [S.TODO, S.ANALYSED], S.IN_PROGRESS, mutate, idempotent=True
    )


def mark_done(
    store: TaskStore,
    task_id: str,
    commit_sha: str | None = None,
    files_created: list[str] | None = None,
    files_modified: list[str] | None = None,
    files_deleted: list[str] | None = None,
) -> TaskRecord:
    """in-progress → done. completed_at is written once and never replaced."""
    files_created = _optional_list(files_created, "files_created")
    files_modified = _optional_list(files_modified, "files_modified")
    files_deleted = _optional_list(files_deleted, "files_deleted")

    def mutate(task: TaskRecord) -> None:
        if not task.completed_at:
            task.completed_at = utc_now()
        if commit_sha:
            task.commit_sha = commit_sha
        if files_created is not None:
            task.files_created = files_created
        if files_modified is not None:
            task.files_modified = files_modified
        if files_deleted is not None:
            task.files_deleted = files_deleted

    return store.transition(task_id, [S.IN_PROGRESS], S.DONE, mutate, idempotent=True)


# -------------------------------------------------------------------
# Side states
# -------------------------------------------------------------------

def mark_skipped(store: TaskStore, task_id: str, reason: str) -> TaskRecord:
    reason = _require_text(reason, "reason")

    def mutate(task: TaskRecord) -> None:
        task.skip_history.append({"skipped_at": utc_now(), "reason": reason})

    return store.transition(task_id, ACTIVE_STATUSES, S.SKIPPED, mutate)


def mark_cancelled(store: TaskStore, task_id: str, reason: str | None = None) -> TaskRecord:
    def mutate(task: TaskRecord) -> None:
        task.cancel_reason = reason

    return store.transition(task_id, ACTIVE_STATUSES, S.CANCELLED, mutate, idempotent=True)


def requeue(store: TaskStore, task_id: str) -> TaskRecord:
    """skipped/cancelled → todo. skip_history is kept."""

    def mutate(task: TaskRecord) -> None:
        task.started_at = None
        task.cancel_reason = None

    return store.transition(task_id, [S.SKIPPED, S.CANCELLED], S.TODO, mutate)
