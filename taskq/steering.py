"""Steering channel: operator whispers and agent heartbeats.

Layout under the control directory::

    processes/<process-id>.json           last known status + whisper cursor
    processes/<process-id>.whisper.jsonl  append-only instruction log

Each heartbeat returns the log entries past the process's cursor and moves
the cursor to the end of the log, so every whisper reaches its process once
(given one poller per process id).
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from filelock import FileLock

from .errors import NotFoundError, ValidationError
from .fsio import append_line, atomic_write_json, read_complete_lines, read_json
from .models import ProcessStatusRecord, SteeringMessage, WhisperPriority, utc_now

logger = logging.getLogger(__name__)

_PROCESS_ID_RE = re.compile(r"^[A-Za-z0-9._-]+$")


@dataclass
class HeartbeatResult:
    process: ProcessStatusRecord
    whispers: list[SteeringMessage] = field(default_factory=list)

    @property
    def whisper_count(self) -> int:
        return len(self.whispers)

    def to_dict(self) -> dict[str, Any]:
        return {
            "process_id": self.process.id,
            "whispers": [w.to_dict() for w in self.whispers],
            "whisper_count": self.whisper_count,
        }


def _check_process_id(process_id: str) -> str:
    if (
        not isinstance(process_id, str)
        or not _PROCESS_ID_RE.match(process_id)
        or process_id.startswith(".")
    ):
        raise ValidationError("process_id", f"Invalid process id: {process_id!r}")
    return process_id


class SteeringChannel:
    def __init__(self, control_dir: str | Path, lock_timeout: float = 10.0):
        self.control_dir = Path(control_dir)
        self.processes_dir = self.control_dir / "processes"
        self.lock_timeout = lock_timeout

    def _record_path(self, process_id: str) -> Path:
        return self.processes_dir / f"{process_id}.json"

    def _log_path(self, process_id: str) -> Path:
        return self.processes_dir / f"{process_id}.whisper.jsonl"

    def _lock(self, process_id: str) -> FileLock:
        self.processes_dir.mkdir(parents=True, exist_ok=True)
        return FileLock(
            str(self.processes_dir / f".{process_id}.lock"), timeout=self.lock_timeout
        )

    # ---------------------------------------------------------------
    # Operator side
    # ---------------------------------------------------------------

    def send(
        self,
        process_id: str,
        instruction: str,
        priority: WhisperPriority | str = WhisperPriority.NORMAL,
    ) -> SteeringMessage:
        """Append one whisper to the process's log."""
        _check_process_id(process_id)
        if not isinstance(instruction, str) or not instruction.strip():
            raise ValidationError("instruction", "instruction is required")
        try:
            priority = WhisperPriority(priority)
        except ValueError:
            allowed = ", ".join(p.value for p in WhisperPriority)
            raise ValidationError(
                "priority", f"Invalid priority '{priority}' (expected one of: {allowed})"
            ) from None

        message = SteeringMessage(
            instruction=instruction.strip(), priority=priority, timestamp=utc_now()
        )
        append_line(
            self._log_path(process_id),
            json.dumps(message.to_dict(), ensure_ascii=False),
        )
        logger.info("Whisper -> %s [%s]", process_id, priority.value)
        return message

    # ---------------------------------------------------------------
    # Agent side
    # ---------------------------------------------------------------

    def heartbeat(
        self,
        process_id: str,
        status: str = "",
        next_action: str = "",
        pid: int | None = None,
        process_type: str | None = None,
    ) -> HeartbeatResult:
        """Record liveness and collect whispers sent since the last heartbeat."""
        _check_process_id(process_id)

        with self._lock(process_id):
            record = self._load_record(process_id)
            now = utc_now()
            if record is None:
                record = ProcessStatusRecord(
                    id=process_id,
                    type=process_type or process_id.split("-", 1)[0],
                    status="running",
                    pid=pid if pid is not None else os.getpid(),
                    started_at=now,
                )
                logger.info("Registered process %s", process_id)

            lines = read_complete_lines(self._log_path(process_id))
            cursor = min(record.last_whisper_index, len(lines))
            whispers = []
            for offset, line in enumerate(lines[cursor:], start=cursor):
                if not line.strip():
                    continue
                try:
                    whispers.append(SteeringMessage.from_dict(json.loads(line)))
                except (ValueError, KeyError, TypeError) as e:
                    logger.warning(
                        "Skipping malformed whisper %s:%d: %s", process_id, offset + 1, e
                    )

            record.status = "running"
            record.last_heartbeat = now
            record.last_whisper_index = len(lines)
            record.heartbeat_status = status or ""
            record.heartbeat_next_action = next_action or ""
            if pid is not None:
                record.pid = pid
            if process_type:
                record.type = process_type
            atomic_write_json(self._record_path(process_id), record.to_dict())

        if whispers:
            logger.info("Delivered %d whisper(s) to %s", len(whispers), process_id)
        return HeartbeatResult(process=record, whispers=whispers)

    # ---------------------------------------------------------------
    # Observability
    # ---------------------------------------------------------------

    def _load_record(self, process_id: str) -> ProcessStatusRecord | None:
        path = self._record_path(process_id)
        if not path.exists():
            return None
        try:
            return ProcessStatusRecord.from_dict(read_json(path))
        except (ValueError, TypeError) as e:
            raise OSError(f"Corrupt process record {path}: {e}") from e

    def get_process(self, process_id: str) -> ProcessStatusRecord:
        _check_process_id(process_id)
        record = self._load_record(process_id)
        if record is None:
            raise NotFoundError(process_id)
        return record

    def list_processes(self) -> list[ProcessStatusRecord]:
        if not self.processes_dir.is_dir():
            return []
        records = []
        for path in sorted(self.processes_dir.glob("*.json")):
            try:
                records.append(ProcessStatusRecord.from_dict(read_json(path)))
            except FileNotFoundError:
                continue
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning("Skipping unreadable process record %s: %s", path, e)
        return records

    def pending_count(self, process_id: str) -> int:
        """Whispers sent but not yet collected by a heartbeat."""
        _check_process_id(process_id)
        record = self._load_record(process_id)
        cursor = record.last_whisper_index if record else 0
        return max(0, len(read_complete_lines(self._log_path(process_id))) - cursor)
