"""Tool dispatch: named operations in, uniform result envelopes out.

The transport (MCP server, CLI, HTTP) is not our concern; it hands a tool name
and an argument mapping to :meth:`ToolDispatcher.dispatch` and relays the
returned envelope::

    {status, summary, data, warnings[], errors[], audit{timestamp, duration_ms, source}}
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from filelock import Timeout

from . import lifecycle
from .config import AnalysisConfig
from .errors import InvalidParameterError, ProjectNotFoundError, TaskqError
from .models import EFFORT_DAYS, Effort, TaskRecord, WhisperPriority, utc_now
from .notifier import Notifier
from .scheduler import SelectionMode, get_next
from .steering import SteeringChannel
from .store import (
    Snapshot,
    TaskStore,
    action_required,
    compute_stats,
    filter_tasks,
    remaining_effort,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------

@dataclass
class ToolResult:
    """What a handler returns; the dispatcher wraps it into an Envelope."""

    summary: str
    data: Any = None
    warnings: list[str] = field(default_factory=list)


@dataclass
class Envelope:
    summary: str = ""
    data: Any = None
    warnings: list[str] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    audit: dict[str, Any] = field(default_factory=dict)

    @property
    def status(self) -> str:
        if self.errors:
            return "error"
        if self.warnings:
            return "warning"
        return "ok"

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "summary": self.summary,
            "data": self.data,
            "warnings": self.warnings,
            "errors": self.errors,
            "audit": self.audit,
        }


# ---------------------------------------------------------------------------
# Argument helpers
# ---------------------------------------------------------------------------

def _int_arg(args: dict, name: str, default: int | None = None) -> int | None:
    value = args.get(name)
    if value is None:
        return default
    if isinstance(value, bool):
        raise InvalidParameterError(name, f"{name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidParameterError(name, f"{name} must be an integer") from None


def _bool_arg(args: dict, name: str) -> bool:
    value = args.get(name)
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    raise InvalidParameterError(name, f"{name} must be true or false")


def _snapshot_warnings(snap: Snapshot) -> list[str]:
    return [f"Skipped {w.path}: {w.message}" for w in snap.warnings]


def _task_data(task: TaskRecord) -> dict[str, Any]:
    data = task.to_dict()
    data["slug"] = task.slug
    return data


# ---------------------------------------------------------------------------
# Task tools
# ---------------------------------------------------------------------------

def _task_create(d: ToolDispatcher, args: dict) -> ToolResult:
    task = d.store.create(args)
    return ToolResult(f"Created task '{task.name}' ({task.id})", _task_data(task))


def _task_create_bulk(d: ToolDispatcher, args: dict) -> ToolResult:
    result = d.store.create_bulk(args["tasks"])
    failures = [e.to_dict() for e in result.errors]
    warnings = [f"Task #{e['index']} not created: {e['message']}" for e in failures]
    summary = f"Created {len(result.created)} task(s), {len(failures)} failed"
    data = {"created": [_task_data(t) for t in result.created], "errors": failures}
    if failures and not result.created:
        raise _BulkFailed(summary, data)
    return ToolResult(summary, data, warnings)


class _BulkFailed(TaskqError):
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, data: dict):
        super().__init__(message)
        self.data = data

    def details(self) -> dict:
        return {"entries": self.data["errors"]}


def _task_list(d: ToolDispatcher, args: dict) -> ToolResult:
    snap = d.store.scan()
    tasks = filter_tasks(
        snap,
        status=args.get("status"),
        category=args.get("category"),
        effort=args.get("effort"),
        min_priority=_int_arg(args, "min_priority"),
        max_priority=_int_arg(args, "max_priority"),
        limit=_int_arg(args, "limit"),
    )
    return ToolResult(
        f"{len(tasks)} task(s)",
        {"tasks": [_task_data(t) for t in tasks], "count": len(tasks)},
        _snapshot_warnings(snap),
    )


def _task_get_next(d: ToolDispatcher, args: dict) -> ToolResult:
    mode = args.get("mode") or d.default_mode
    try:
        mode = SelectionMode(mode)
    except ValueError:
        raise InvalidParameterError("mode", f"Unknown selection mode '{mode}'") from None
    snap = d.store.scan()
    result = get_next(snap, mode)
    if result.task is not None:
        summary = f"Next task: '{result.task.name}' ({result.source_status.value})"
    elif result.blocked_count:
        summary = f"No eligible task; {result.blocked_count} blocked by dependencies"
    else:
        summary = "No tasks waiting"
    data = result.to_dict()
    data["split_suggested"] = (
        result.task is not None and result.task.effort_days >= d.split_threshold_days
    )
    return ToolResult(summary, data, _snapshot_warnings(snap))


def _task_get_stats(d: ToolDispatcher, args: dict) -> ToolResult:
    snap = d.store.scan()
    stats = compute_stats(snap)
    summary = f"{stats['total']} tasks, {stats['completion_percent']}% complete"
    return ToolResult(summary, stats, _snapshot_warnings(snap))


def _task_get_remaining_effort(d: ToolDispatcher, args: dict) -> ToolResult:
    snap = d.store.scan()
    effort = remaining_effort(snap)
    summary = f"{effort['total_days']:g} day(s) across {effort['task_count']} task(s)"
    return ToolResult(summary, effort, _snapshot_warnings(snap))


def _task_list_action_required(d: ToolDispatcher, args: dict) -> ToolResult:
    snap = d.store.scan()
    items = action_required(snap, d.analysis.question_timeout_hours)
    return ToolResult(
        f"{len(items)} item(s) awaiting input",
        {"items": items, "count": len(items)},
        _snapshot_warnings(snap),
    )


def _task_get_by_id(d: ToolDispatcher, args: dict) -> ToolResult:
    task = d.store.get_by_id(args["task_id"])
    return ToolResult(f"Task '{task.name}' is {task.status.value}", _task_data(task))


def _transitioned(d: ToolDispatcher, task: TaskRecord, event: str | None = None) -> ToolResult:
    if event:
        d.notifier.notify_task(event, task)
    return ToolResult(f"Task '{task.name}' is {task.status.value}", _task_data(task))


def _task_mark_analysing(d: ToolDispatcher, args: dict) -> ToolResult:
    return _transitioned(d, lifecycle.mark_analysing(d.store, args["task_id"]))


def _task_mark_analysed(d: ToolDispatcher, args: dict) -> ToolResult:
    task = lifecycle.mark_analysed(
        d.store, args["task_id"], args["analysis"], analysed_by=args.get("analysed_by")
    )
    return _transitioned(d, task)


def _task_mark_needs_input(d: ToolDispatcher, args: dict) -> ToolResult:
    task = lifecycle.mark_needs_input(
        d.store, args["task_id"], args["question"], options=args.get("options")
    )
    return _transitioned(d, task, "task.needs_input")


def _task_answer_question(d: ToolDispatcher, args: dict) -> ToolResult:
    task = lifecycle.answer_question(
        d.store, args["task_id"], args.get("answer"), custom_text=args.get("custom_text")
    )
    return _transitioned(d, task)


def _task_propose_split(d: ToolDispatcher, args: dict) -> ToolResult:
    task = lifecycle.propose_split(
        d.store, args["task_id"], args["reason"], args["sub_tasks"]
    )
    if d.analysis.auto_approve_splits:
        task = lifecycle.approve_split(d.store, task.id, approved=True)
        return _transitioned(d, task)
    return _transitioned(d, task, "task.needs_input")


def _task_approve_split(d: ToolDispatcher, args: dict) -> ToolResult:
    task = lifecycle.approve_split(d.store, args["task_id"], _bool_arg(args, "approved"))
    return _transitioned(d, task)


def _task_mark_in_progress(d: ToolDispatcher, args: dict) -> ToolResult:
    return _transitioned(d, lifecycle.mark_in_progress(d.store, args["task_id"]))


def _task_mark_done(d: ToolDispatcher, args: dict) -> ToolResult:
    task = lifecycle.mark_done(
        d.store,
        args["task_id"],
        commit_sha=args.get("commit_sha"),
        files_created=args.get("files_created"),
        files_modified=args.get("files_modified"),
        files_deleted=args.get("files_deleted"),
    )
    return _transitioned(d, task, "task.done")


def _task_mark_skipped(d: ToolDispatcher, args: dict) -> ToolResult:
    task = lifecycle.mark_skipped(d.store, args["task_id"], args["reason"])
    return _transitioned(d, task, "task.skipped")


def _task_mark_cancelled(d: ToolDispatcher, args: dict) -> ToolResult:
    task = lifecycle.mark_cancelled(d.store, args["task_id"], args.get("reason"))
    return _transitioned(d, task, "task.cancelled")


def _task_requeue(d: ToolDispatcher, args: dict) -> ToolResult:
    return _transitioned(d, lifecycle.requeue(d.store, args["task_id"]))


# ---------------------------------------------------------------------------
# Steering tools
# ---------------------------------------------------------------------------

def _steering_whisper(d: ToolDispatcher, args: dict) -> ToolResult:
    process_id = args["process_id"]
    message = d.steering.send(
        process_id, args["instruction"], args.get("priority") or WhisperPriority.NORMAL
    )
    if message.priority == WhisperPriority.ABORT:
        d.notifier.post("steering.abort", {
            "process_id": process_id, "instruction": message.instruction,
        })
    data = {"process_id": process_id, **message.to_dict()}
    return ToolResult(f"Whisper sent to {process_id}", data)


def _steering_heartbeat(d: ToolDispatcher, args: dict) -> ToolResult:
    result = d.steering.heartbeat(
        args["process_id"],
        status=args.get("status") or "",
        next_action=args.get("next_action") or "",
        pid=_int_arg(args, "pid"),
        process_type=args.get("process_type"),
    )
    if result.whisper_count:
        summary = f"{result.whisper_count} new whisper(s)"
    else:
        summary = "No new whispers"
    return ToolResult(summary, result.to_dict())


def _steering_list_processes(d: ToolDispatcher, args: dict) -> ToolResult:
    records = d.steering.list_processes()
    return ToolResult(
        f"{len(records)} process(es)",
        {"processes": [r.to_dict() for r in records], "count": len(records)},
    )


# ---------------------------------------------------------------------------
# Registration table
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Tool:
    handler: Callable[[ToolDispatcher, dict], ToolResult]
    required: tuple[str, ...] = ()
    uses_store: bool = True


TOOLS: dict[str, Tool] = {
    "task_create": Tool(_task_create),
    "task_create_bulk": Tool(_task_create_bulk, ("tasks",)),
    "task_list": Tool(_task_list),
    "task_get_next": Tool(_task_get_next),
    "task_get_stats": Tool(_task_get_stats),
    "task_get_remaining_effort": Tool(_task_get_remaining_effort),
    "task_list_action_required": Tool(_task_list_action_required),
    "task_get_by_id": Tool(_task_get_by_id, ("task_id",)),
    "task_mark_analysing": Tool(_task_mark_analysing, ("task_id",)),
    "task_mark_analysed": Tool(_task_mark_analysed, ("task_id", "analysis")),
    "task_mark_needs_input": Tool(_task_mark_needs_input, ("task_id", "question")),
    "task_answer_question": Tool(_task_answer_question, ("task_id",)),
    "task_propose_split": Tool(_task_propose_split, ("task_id", "reason", "sub_tasks")),
    "task_approve_split": Tool(_task_approve_split, ("task_id", "approved")),
    "task_mark_in_progress": Tool(_task_mark_in_progress, ("task_id",)),
    "task_mark_done": Tool(_task_mark_done, ("task_id",)),
    "task_mark_skipped": Tool(_task_mark_skipped, ("task_id", "reason")),
    "task_mark_cancelled": Tool(_task_mark_cancelled, ("task_id",)),
    "task_requeue": Tool(_task_requeue, ("task_id",)),
    "steering_whisper": Tool(_steering_whisper, ("process_id", "instruction"), uses_store=False),
    "steering_heartbeat": Tool(_steering_heartbeat, ("process_id",), uses_store=False),
    "steering_list_processes": Tool(_steering_list_processes, uses_store=False),
}


class ToolDispatcher:
    def __init__(
        self,
        store: TaskStore,
        steering: SteeringChannel,
        notifier: Notifier | None = None,
        source: str = "rpc",
        default_mode: SelectionMode | str = SelectionMode.PREFER_ANALYSED,
        analysis: AnalysisConfig | None = None,
    ):
        self.store = store
        self.steering = steering
        self.notifier = notifier or Notifier()
        self.source = source
        self.default_mode = SelectionMode(default_mode)
        self.analysis = analysis or AnalysisConfig()
        self.split_threshold_days = EFFORT_DAYS[Effort(self.analysis.split_threshold_effort)]

    @staticmethod
    def tool_names() -> list[str]:
        return sorted(TOOLS)

    def dispatch(self, name: str, args: dict[str, Any] | None = None) -> Envelope:
        """Run one tool. Never raises; failures come back in ``errors``."""
        started = time.monotonic()
        timestamp = utc_now()
        env = Envelope()

        try:
            tool = TOOLS.get(name)
            if tool is None:
                raise InvalidParameterError("tool", f"Unknown tool '{name}'")
            args = {} if args is None else args
            if not isinstance(args, dict):
                raise InvalidParameterError("arguments", "arguments must be an object")
            missing = [a for a in tool.required if args.get(a) is None or args.get(a) == ""]
            if missing:
                raise InvalidParameterError(
                    missing[0], f"Missing required argument(s): {', '.join(missing)}"
                )
            if tool.uses_store and not self.store.exists():
                raise ProjectNotFoundError(self.store.base_dir)

            result = tool.handler(self, args)
            env.summary = result.summary
            env.data = result.data
            env.warnings.extend(result.warnings)
        except _BulkFailed as e:
            env.summary = e.message
            env.data = e.data
            env.errors.append({"code": e.code, "message": e.message, **e.details()})
        except TaskqError as e:
            env.summary = e.message
            env.errors.append({"code": e.code, "message": e.message, **e.details()})
        except Timeout as e:
            env.summary = f"Timed out waiting for lock {e.lock_file}"
            env.errors.append({"code": "IO_ERROR", "message": env.summary, "path": e.lock_file})
        except OSError as e:
            env.summary = str(e)
            env.errors.append({"code": "IO_ERROR", "message": str(e), "path": e.filename})
        except Exception as e:
            logger.exception("Tool %s failed", name)
            env.summary = f"Internal error: {e}"
            env.errors.append({"code": "INTERNAL_ERROR", "message": str(e)})

        if env.errors:
            logger.info("Tool %s failed: %s", name, env.errors[0]["code"])

        env.audit = {
            "timestamp": timestamp,
            "duration_ms": round((time.monotonic() - started) * 1000, 2),
            "source": self.source,
        }
        return env
