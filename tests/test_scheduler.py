"""Tests for next-task selection."""

from taskq.models import TaskStatus
from taskq.scheduler import SelectionMode, get_next


def test_prefers_analysed_over_todo(store, put_task):
    """An analysed task wins even with a worse priority."""
    put_task("Todo", priority=1)
    put_task("Analysed", priority=90, status="analysed")
    result = get_next(store.scan())
    assert result.task.name == "Analysed"
    assert result.source_status == TaskStatus.ANALYSED


def test_lowest_priority_number_first(store, put_task):
    put_task("Later", priority=60)
    put_task("Sooner", priority=5)
    assert get_next(store.scan(), SelectionMode.TODO).task.name == "Sooner"


def test_blocked_task_skipped(store, put_task):
    """A task waiting on an unfinished dependency is not picked."""
    put_task("Setup DB", priority=50, status="in-progress")
    put_task("API", priority=1, dependencies=["Setup DB"])
    put_task("Docs", priority=80)
    assert get_next(store.scan()).task.name == "Docs"


def test_dependency_done_unblocks(store, put_task):
    put_task("Setup DB", status="done")
    put_task("API", priority=1, dependencies=["setup-db"])
    assert get_next(store.scan()).task.name == "API"


def test_near_miss_name_stays_blocked(store, put_task):
    """'Setup Db' does not resolve to a done task named 'Setup DB'."""
    put_task("Setup DB", status="done")
    put_task("API", dependencies=["Setup Db"])
    result = get_next(store.scan())
    assert result.task is None
    assert result.blocked_count == 1


def test_all_blocked_reports_counts(store, put_task):
    put_task("A", dependencies=["Missing"])
    put_task("B", status="analysed", dependencies=["Missing"])
    put_task("C", status="in-progress")
    result = get_next(store.scan())
    assert result.task is None
    assert result.blocked_count == 2
    assert result.counts["in-progress"] == 1
    assert "done" not in result.counts


def test_empty_queue(store):
    result = get_next(store.scan())
    assert result.task is None
    assert result.blocked_count == 0


def test_analysed_mode_ignores_todo(store, put_task):
    put_task("Todo")
    result = get_next(store.scan(), "analysed")
    assert result.task is None
    assert result.blocked_count == 0


def test_ties_broken_by_id(store, put_task):
    put_task("Second", id="bbbb-0000")
    put_task("First", id="aaaa-0000")
    assert get_next(store.scan()).task.name == "First"
