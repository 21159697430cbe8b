"""Tests for data models."""

import pytest

from taskq.models import (
    ACTIVE_STATUSES,
    DEPENDABLE_STATUSES,
    TERMINAL_STATUSES,
    Category,
    Effort,
    ProcessStatusRecord,
    SteeringMessage,
    TaskRecord,
    TaskStatus,
    WhisperPriority,
    slugify,
)


# --- slugify ---

def test_slugify_basic():
    """Lowercase, punctuation dropped, spaces become hyphens."""
    assert slugify("Setup DB") == "setup-db"
    assert slugify("Add JWT auth (v2)!") == "add-jwt-auth-v2"


def test_slugify_collapses_dashes():
    """Runs of whitespace and hyphens collapse to one hyphen."""
    assert slugify("  a  --  b  ") == "a-b"


# --- Status groups ---

def test_status_groups_partition():
    """Every status is either active or terminal, never both."""
    assert set(ACTIVE_STATUSES) | TERMINAL_STATUSES == set(TaskStatus)
    assert not set(ACTIVE_STATUSES) & TERMINAL_STATUSES


def test_dependable_includes_done_not_cancelled():
    """Creation-time dependencies may point at done tasks but not cancelled ones."""
    assert TaskStatus.DONE in DEPENDABLE_STATUSES
    assert TaskStatus.CANCELLED not in DEPENDABLE_STATUSES


# --- TaskRecord ---

def test_task_roundtrip_preserves_unknown_keys():
    """Keys written by other tools survive from_dict → to_dict."""
    data = {
        "id": "abc12345-0000", "name": "Setup DB", "category": "core",
        "effort": "L", "status": "todo", "priority": 10, "custom_flag": True,
    }
    task = TaskRecord.from_dict(data)
    assert task.category == Category.CORE
    assert task.effort == Effort.L
    assert task.extra == {"custom_flag": True}
    out = task.to_dict()
    assert out["custom_flag"] is True
    assert out["category"] == "core"
    assert out["status"] == "todo"


def test_task_from_dict_rejects_bad_enum():
    """Unknown category is a ValueError."""
    with pytest.raises(ValueError):
        TaskRecord.from_dict({"id": "x", "name": "y", "category": "nope"})


def test_task_from_dict_requires_id():
    """Missing id is a KeyError."""
    with pytest.raises(KeyError):
        TaskRecord.from_dict({"name": "y"})


def test_task_from_dict_rejects_non_object():
    """A JSON array is not a task."""
    with pytest.raises(TypeError):
        TaskRecord.from_dict(["not", "a", "task"])


def test_task_filename_uses_slug_and_id_prefix():
    """Filename is <slug>-<first 8 of id>.json."""
    task = TaskRecord(id="0123456789abcdef", name="Setup DB")
    assert task.filename == "setup-db-01234567.json"


def test_task_filename_falls_back_for_symbol_names():
    """A name with no slug characters still gets a usable filename."""
    task = TaskRecord(id="0123456789abcdef", name="???")
    assert task.filename == "task-01234567.json"


def test_effort_days():
    assert TaskRecord(id="a", name="a", effort=Effort.XS).effort_days == 1.0
    assert TaskRecord(id="a", name="a", effort=Effort.XL).effort_days == 15.0


# --- Steering models ---

def test_steering_message_defaults_to_normal():
    msg = SteeringMessage.from_dict({"instruction": "stop"})
    assert msg.priority == WhisperPriority.NORMAL


def test_process_record_roundtrip():
    rec = ProcessStatusRecord(id="agent-1", pid=42, last_whisper_index=3)
    again = ProcessStatusRecord.from_dict(rec.to_dict())
    assert again == rec
