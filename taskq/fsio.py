"""Filesystem primitives: atomic JSON writes and single-call line appends."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any


def read_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


def atomic_write_json(path: Path, data: Any) -> None:
    """Write ``data`` to ``path`` via a temp file in the same directory.

    Readers see either the previous content or the complete new document,
    never a partial one.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    content = json.dumps(data, indent=2, ensure_ascii=False) + "\n"
    fd, temp_path = tempfile.mkstemp(
        suffix=".tmp",
        prefix="." + path.stem + "_",
        dir=path.parent,
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except BaseException:
        Path(temp_path).unlink(missing_ok=True)
        raise


def append_line(path: Path, line: str) -> None:
    """Append one line with a single write on an O_APPEND descriptor."""
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = (line.rstrip("\n") + "\n").encode("utf-8")
    fd = os.open(path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o644)
    try:
        written = os.write(fd, payload)
    finally:
        os.close(fd)
    if written != len(payload):
        raise OSError(f"Short write to {path}: {written}/{len(payload)} bytes")


def read_complete_lines(path: Path) -> list[str]:
    """Return the newline-terminated lines of ``path``.

    A trailing fragment without a newline belongs to an append still in
    flight and is left out.
    """
    if not path.exists():
        return []
    raw = path.read_bytes().decode("utf-8", errors="replace")
    parts = raw.split("\n")
    return parts[:-1]
