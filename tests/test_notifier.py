"""Tests for webhook notifications."""

import json

import httpx as httpx_lib

from taskq.models import TaskRecord, TaskStatus
from taskq.notifier import Notifier


def _task():
    return TaskRecord(id="t-001", name="Auth", status=TaskStatus.DONE)


def test_sends_webhook(httpx_mock):
    """Sends correct webhook POST."""
    httpx_mock.add_response(status_code=200)

    notifier = Notifier(webhook_url="https://hook.example.com/cb", events=["task.done"])
    notifier.notify_task("task.done", _task())

    req = httpx_mock.get_request()
    body = json.loads(req.content)
    assert body["event"] == "task.done"
    assert body["task_id"] == "t-001"
    assert body["status"] == "done"


def test_filters_unsubscribed_events():
    """Events not in list → no request sent (no httpx_mock needed since no request)."""
    notifier = Notifier(webhook_url="https://hook.example.com/cb", events=["task.skipped"])
    notifier.notify_task("task.done", _task())
    assert notifier._client is None


def test_no_webhook_noop():
    """No webhook configured → silent noop."""
    notifier = Notifier(webhook_url="", events=["task.done"])
    assert not notifier.enabled_for("task.done")
    notifier.notify_task("task.done", _task())


def test_webhook_failure_silent(httpx_mock):
    """Webhook failure → no crash."""
    httpx_mock.add_exception(httpx_lib.ConnectError("unreachable"))
    notifier = Notifier(webhook_url="https://hook.example.com/cb", events=["task.done"])
    notifier.notify_task("task.done", _task())


def test_webhook_http_error_silent(httpx_mock):
    """Non-2xx response is logged, not raised."""
    httpx_mock.add_response(status_code=500)
    notifier = Notifier(webhook_url="https://hook.example.com/cb", events=["steering.abort"])
    notifier.post("steering.abort", {"process_id": "agent-1"})
    notifier.close()
