"""Command history for server terminals.

Each execute call (navigation included) becomes one JSON object per line in
``$AUDIT_LOG_DIR/commands.jsonl``. The file outlives terminal sessions, so
``GET /servers/{id}/terminal/history`` can still show what ran on a server
after a restart.

Writes are serialized by ``_lock``. If the file cannot be written the error
is logged and the command response goes out regardless.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_LOG_DIR = Path(os.getenv("AUDIT_LOG_DIR", "/tmp/server-bridge/logs"))
_LOG_FILE = _LOG_DIR / "commands.jsonl"
_lock = threading.Lock()


def log_command(
    *,
    server_id: str,
    command: str,
    mode: str,
    ok: bool,
    cwd: str,
    duration_ms: float | None = None,
    exit_code: int | None = None,
    error: str | None = None,
) -> None:
    """Record one execute call; ``mode`` is ``navigate`` or ``execute``."""
    record: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "server_id": server_id,
        "command": command,
        "mode": mode,
        "ok": ok,
        "cwd": cwd,
    }
    if duration_ms is not None:
        record["duration_ms"] = round(duration_ms, 2)
    if exit_code is not None:
        record["exit_code"] = exit_code
    if error:
        record["error"] = error

    line = json.dumps(record, separators=(",", ":"))
    with _lock:
        try:
            _LOG_DIR.mkdir(parents=True, exist_ok=True)
            with open(_LOG_FILE, "a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as e:
            logger.error("Command history not written to %s: %s", _LOG_FILE, e)


def read_records(server_id: str | None = None, limit: int | None = None) -> list[dict]:
    """Latest records, oldest first, optionally for one server only."""
    with _lock:
        if not _LOG_FILE.exists():
            return []
        text = _LOG_FILE.read_text(encoding="utf-8")

    records = []
    for line in text.splitlines():
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("Skipping malformed history line in %s", _LOG_FILE)
            continue
        if server_id is None or record.get("server_id") == server_id:
            records.append(record)
    if limit is not None:
        records = records[-limit:] if limit > 0 else []
    return records
