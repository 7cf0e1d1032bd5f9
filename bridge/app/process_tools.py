"""Best-effort process inspection for server workspaces.

There is no supervisor here. A server counts as "running" if a process we
launched for it is still alive, or if any process on the host mentions the
server id on its command line (``pgrep -f``). Stopping does the same in
reverse. Callers only see the narrow ``ProcessInspector`` interface so the
heuristic can be replaced without touching them.
"""

from __future__ import annotations

import logging
import os
import re
import signal
import subprocess
import threading
from contextlib import suppress
from typing import Protocol

logger = logging.getLogger(__name__)

# Files whose presence marks a workspace as a runnable server.
ENTRY_POINT_FILES = ("package.json", "index.js", "main.py", "app.js")

_PROBE_TIMEOUT = 10


class ProcessInspector(Protocol):
    def is_running(self, server_id: str) -> bool: ...

    def terminate(self, server_id: str) -> bool: ...


class LocalProcessInspector:
    """Tracks processes it launched; falls back to pgrep name matching."""

    def __init__(self) -> None:
        self._launched: dict[str, subprocess.Popen] = {}
        self._lock = threading.Lock()

    def launch(self, server_id: str, command: str, cwd: str, log_path: str) -> int:
        """Start ``command`` detached in ``cwd``, appending output to ``log_path``."""
        with open(log_path, "ab") as log:
            proc = subprocess.Popen(
                command,
                shell=True,
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        with self._lock:
            self._launched[server_id] = proc
        logger.info("Launched %r for server %s (pid %d)", command, server_id, proc.pid)
        return proc.pid

    def _tracked(self, server_id: str) -> subprocess.Popen | None:
        with self._lock:
            proc = self._launched.get(server_id)
            if proc is not None and proc.poll() is not None:
                del self._launched[server_id]
                return None
            return proc

    def is_running(self, server_id: str) -> bool:
        if self._tracked(server_id) is not None:
            return True
        return bool(_matching_pids(server_id))

    def terminate(self, server_id: str) -> bool:
        """Signal everything belonging to ``server_id``. True if anything was hit."""
        hit = False
        proc = self._tracked(server_id)
        if proc is not None:
            with suppress(ProcessLookupError, PermissionError):
                os.killpg(proc.pid, signal.SIGTERM)
                hit = True
            with suppress(subprocess.TimeoutExpired):
                proc.wait(timeout=5)
            with self._lock:
                self._launched.pop(server_id, None)

        try:
            pids = _matching_pids(server_id)
        except FileNotFoundError:
            logger.warning("pgrep not available; only tracked processes were stopped")
            return hit
        for pid in pids:
            with suppress(ProcessLookupError, PermissionError):
                os.kill(pid, signal.SIGTERM)
                hit = True
        logger.info("Terminate %s: %s", server_id, "signalled" if hit else "no process found")
        return hit


def _matching_pids(server_id: str) -> list[int]:
    """Pids whose command line mentions ``server_id``, never our own."""
    p = subprocess.run(
        ["pgrep", "-f", re.escape(server_id)],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        timeout=_PROBE_TIMEOUT,
    )
    own = os.getpid()
    return [int(tok) for tok in p.stdout.split() if tok.isdigit() and int(tok) != own]


def server_status(server_id: str, server_path: str, inspector: ProcessInspector) -> str:
    """running | stopped | inactive | unknown. A hint, not an authority."""
    try:
        if inspector.is_running(server_id):
            return "running"
        if any(os.path.exists(os.path.join(server_path, f)) for f in ENTRY_POINT_FILES):
            return "stopped"
        return "inactive"
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning("Status check failed for %s: %s", server_id, e)
        return "unknown"


def list_processes(server_id: str) -> list[dict]:
    """Processes whose ``ps aux`` line mentions ``server_id``."""
    p = subprocess.run(
        ["ps", "aux"],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        timeout=_PROBE_TIMEOUT,
    )
    processes = []
    for line in p.stdout.splitlines()[1:]:
        if server_id not in line:
            continue
        parts = line.split(None, 10)
        if len(parts) < 11:
            continue
        processes.append({
            "pid": parts[1],
            "cpu": parts[2],
            "memory": parts[3],
            "command": parts[10],
        })
    return processes
