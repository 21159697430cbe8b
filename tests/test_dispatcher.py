"""Tests for tool dispatch and result envelopes."""

import json

import pytest

from taskq.config import AnalysisConfig
from taskq.dispatcher import TOOLS, ToolDispatcher
from taskq.notifier import Notifier
from taskq.store import TaskStore


def _create(dispatcher, name, **kw):
    args = {"name": name, "description": f"Do {name}", "category": "feature", **kw}
    env = dispatcher.dispatch("task_create", args)
    assert env.ok, env.errors
    return env.data


# --- Envelope shape ---

def test_envelope_shape(dispatcher):
    env = dispatcher.dispatch("task_list", {})
    out = env.to_dict()
    assert set(out) == {"status", "summary", "data", "warnings", "errors", "audit"}
    assert out["status"] == "ok"
    assert out["audit"]["source"] == "test"
    assert out["audit"]["duration_ms"] >= 0
    json.dumps(out)


def test_unknown_tool(dispatcher):
    env = dispatcher.dispatch("task_explode", {})
    assert env.status == "error"
    assert env.errors[0]["code"] == "INVALID_PARAMETER"


def test_missing_required_argument(dispatcher):
    env = dispatcher.dispatch("task_get_by_id", {})
    assert env.errors[0]["code"] == "INVALID_PARAMETER"
    assert env.errors[0]["parameter"] == "task_id"


def test_project_not_found(tmp_path, steering):
    d = ToolDispatcher(TaskStore(tmp_path / "missing"), steering)
    env = d.dispatch("task_list", {})
    assert env.errors[0]["code"] == "PROJECT_NOT_FOUND"


def test_steering_tools_need_no_store(tmp_path, steering):
    d = ToolDispatcher(TaskStore(tmp_path / "missing"), steering)
    env = d.dispatch("steering_whisper", {"process_id": "agent-1", "instruction": "hi"})
    assert env.ok


def test_every_tool_registered():
    for name in (
        "task_create", "task_create_bulk", "task_list", "task_get_next",
        "task_get_stats", "task_get_by_id", "task_mark_analysing",
        "task_mark_analysed", "task_mark_in_progress", "task_mark_done",
        "task_mark_skipped", "steering_whisper", "steering_heartbeat",
    ):
        assert name in TOOLS


# --- Task tools ---

def test_create_and_get(dispatcher):
    created = _create(dispatcher, "Setup DB")
    env = dispatcher.dispatch("task_get_by_id", {"task_id": created["id"]})
    assert env.data["name"] == "Setup DB"
    assert env.data["slug"] == "setup-db"


def test_validation_error_code(dispatcher):
    env = dispatcher.dispatch("task_create", {"name": "x", "description": "y", "category": "misc"})
    assert env.errors[0]["code"] == "VALIDATION_ERROR"
    assert env.errors[0]["field"] == "category"


def test_not_found_code(dispatcher):
    env = dispatcher.dispatch("task_get_by_id", {"task_id": "nope"})
    assert env.errors[0]["code"] == "NOT_FOUND"


def test_wrong_status_code(dispatcher):
    created = _create(dispatcher, "A")
    env = dispatcher.dispatch("task_mark_done", {"task_id": created["id"]})
    err = env.errors[0]
    assert err["code"] == "NOT_FOUND_IN_EXPECTED_STATUS"
    assert err["expected"] == ["in-progress"]
    assert err["status"] == "todo"


def test_bulk_partial_is_warning(dispatcher):
    """Some entries fail: status warning, failures listed with 1-based index."""
    env = dispatcher.dispatch("task_create_bulk", {"tasks": [
        {"name": "A", "description": "a", "category": "core"},
        {"name": "B", "description": "b"},
    ]})
    assert env.status == "warning"
    assert len(env.data["created"]) == 1
    assert env.data["errors"][0]["index"] == 2


def test_bulk_all_failed_is_error(dispatcher):
    env = dispatcher.dispatch("task_create_bulk", {"tasks": [{"name": "B"}]})
    assert env.status == "error"
    assert env.errors[0]["code"] == "VALIDATION_ERROR"
    assert env.errors[0]["entries"][0]["index"] == 1


def test_list_reports_corrupt_files_as_warnings(dispatcher, store):
    _create(dispatcher, "A")
    (store.base_dir / "todo" / "junk.json").write_text("{")
    env = dispatcher.dispatch("task_list", {})
    assert env.status == "warning"
    assert env.data["count"] == 1


def test_get_next_invalid_mode(dispatcher):
    env = dispatcher.dispatch("task_get_next", {"mode": "random"})
    assert env.errors[0]["code"] == "INVALID_PARAMETER"


def test_full_lifecycle(dispatcher):
    """todo → analysing → analysed → in-progress → done through tools."""
    task_id = _create(dispatcher, "Ship it")["id"]
    for tool, extra in [
        ("task_mark_analysing", {}),
        ("task_mark_analysed", {"analysis": {"plan": "easy"}}),
        ("task_mark_in_progress", {}),
        ("task_mark_done", {"commit_sha": "deadbeef"}),
    ]:
        env = dispatcher.dispatch(tool, {"task_id": task_id, **extra})
        assert env.ok, env.errors
    assert env.data["status"] == "done"
    stats = dispatcher.dispatch("task_get_stats", {}).data
    assert stats["completion_percent"] == 100.0


def test_next_after_dependency_done(dispatcher):
    a = _create(dispatcher, "Setup DB", priority=10)
    _create(dispatcher, "API", priority=1, dependencies=["Setup DB"])
    env = dispatcher.dispatch("task_get_next", {})
    assert env.data["task"]["name"] == "Setup DB"
    dispatcher.dispatch("task_mark_in_progress", {"task_id": a["id"]})
    dispatcher.dispatch("task_mark_done", {"task_id": a["id"]})
    env = dispatcher.dispatch("task_get_next", {})
    assert env.data["task"]["name"] == "API"


def test_approve_split_accepts_string_bool(dispatcher):
    task_id = _create(dispatcher, "Big")["id"]
    dispatcher.dispatch("task_mark_analysing", {"task_id": task_id})
    dispatcher.dispatch("task_propose_split", {
        "task_id": task_id, "reason": "too big", "sub_tasks": [{"name": "Half"}],
    })
    env = dispatcher.dispatch("task_approve_split", {"task_id": task_id, "approved": "true"})
    assert env.ok, env.errors
    assert env.data["status"] == "split"



def test_create_ignores_parent_task_id(dispatcher):
    parent = _create(dispatcher, "Parent")
    child = _create(dispatcher, "Child", parent_task_id=parent["id"])
    assert child["parent_task_id"] is None


# --- Analysis settings ---

def _split_ready(d, name="Big"):
    task_id = _create(d, name)["id"]
    d.dispatch("task_mark_analysing", {"task_id": task_id})
    return task_id


def test_auto_approve_splits(store, steering):
    """With auto-approval the proposal goes straight to split."""
    d = ToolDispatcher(store, steering, analysis=AnalysisConfig(auto_approve_splits=True))
    task_id = _split_ready(d)
    env = d.dispatch("task_propose_split", {
        "task_id": task_id, "reason": "too big", "sub_tasks": [{"name": "A"}, {"name": "B"}],
    })
    assert env.ok, env.errors
    assert env.data["status"] == "split"
    assert len(env.data["child_tasks"]) == 2
    assert d.dispatch("task_list_action_required", {}).data["count"] == 0


def test_proposal_waits_without_auto_approve(dispatcher):
    task_id = _split_ready(dispatcher)
    env = dispatcher.dispatch("task_propose_split", {
        "task_id": task_id, "reason": "too big", "sub_tasks": [{"name": "A"}],
    })
    assert env.data["status"] == "needs-input"


@pytest.mark.parametrize("effort, threshold, expected", [
    ("XL", "XL", True),
    ("M", "XL", False),
    ("L", "M", True),
])
def test_get_next_flags_split_candidates(store, steering, effort, threshold, expected):
    d = ToolDispatcher(store, steering, analysis=AnalysisConfig(split_threshold_effort=threshold))
    _create(d, "Job", effort=effort)
    env = d.dispatch("task_get_next", {})
    assert env.data["split_suggested"] is expected


def test_get_next_empty_queue_not_split_candidate(dispatcher):
    assert dispatcher.dispatch("task_get_next", {}).data["split_suggested"] is False


def test_action_required_overdue_with_timeout(store, steering, put_task):
    put_task("Stale", status="needs-input",
             pending_question={"question": "?", "asked_at": "2020-01-01T00:00:00+00:00"})
    d = ToolDispatcher(store, steering, analysis=AnalysisConfig(question_timeout_hours=1))
    items = d.dispatch("task_list_action_required", {}).data["items"]
    assert items[0]["overdue"] is True


# --- Steering tools ---

def test_whisper_then_heartbeat(dispatcher):
    for i in range(3):
        dispatcher.dispatch("steering_whisper", {"process_id": "agent-1", "instruction": f"w{i}"})
    env = dispatcher.dispatch("steering_heartbeat", {"process_id": "agent-1"})
    assert env.data["whisper_count"] == 3
    env = dispatcher.dispatch("steering_heartbeat", {"process_id": "agent-1"})
    assert env.data["whisper_count"] == 0


def test_bad_process_id(dispatcher):
    env = dispatcher.dispatch("steering_whisper", {"process_id": "../x", "instruction": "hi"})
    assert env.errors[0]["code"] == "VALIDATION_ERROR"


def test_corrupt_process_record_is_io_error(dispatcher, steering):
    dispatcher.dispatch("steering_heartbeat", {"process_id": "agent-1"})
    (steering.processes_dir / "agent-1.json").write_text("{")
    env = dispatcher.dispatch("steering_heartbeat", {"process_id": "agent-1"})
    assert env.errors[0]["code"] == "IO_ERROR"


# --- Notifications ---

def test_done_fires_webhook(store, steering, httpx_mock):
    httpx_mock.add_response(status_code=200)
    notifier = Notifier("https://hook.example.com/cb", ["task.done"])
    d = ToolDispatcher(store, steering, notifier)
    task_id = _create(d, "Ship")["id"]
    d.dispatch("task_mark_in_progress", {"task_id": task_id})
    d.dispatch("task_mark_done", {"task_id": task_id})
    body = json.loads(httpx_mock.get_request().content)
    assert body == {"event": "task.done", "task_id": task_id, "name": "Ship", "status": "done"}
