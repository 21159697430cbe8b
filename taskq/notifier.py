"""Webhook notifications."""

from __future__ import annotations

import logging

import httpx

from .models import TaskRecord

logger = logging.getLogger(__name__)

DEFAULT_EVENTS = [
    "task.done", "task.needs_input", "task.skipped", "task.cancelled", "steering.abort",
]


class Notifier:
    """Send webhook notifications for task and steering events."""

    def __init__(
        self,
        webhook_url: str = "",
        events: list[str] | None = None,
        client: httpx.Client | None = None,
    ):
        self.webhook_url = webhook_url
        self.events = events if events is not None else list(DEFAULT_EVENTS)
        self._client = client

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=10)
        return self._client

    def enabled_for(self, event: str) -> bool:
        return bool(self.webhook_url) and event in self.events

    def notify_task(self, event: str, task: TaskRecord) -> None:
        self.post(event, {
            "task_id": task.id,
            "name": task.name,
            "status": task.status.value,
        })

    def post(self, event: str, payload: dict) -> None:
        if not self.enabled_for(event):
            return
        body = {"event": event, **payload}
        try:
            response = self.client.post(self.webhook_url, json=body)
            response.raise_for_status()
        except httpx.HTTPError as e:
            # Notification failure must not fail the operation that fired it
            logger.warning("Webhook %s failed for %s: %s", self.webhook_url, event, e)

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
