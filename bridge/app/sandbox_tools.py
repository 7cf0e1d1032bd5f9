"""Command execution for server workspaces.

A stateless HTTP API pretending to be a shell: ``cd`` is emulated against
the per-server ``SessionRegistry`` without spawning anything, every other
command runs in a subprocess rooted at the session's working directory.

Shell access is intentionally NOT confined to the workspace the way file
operations are. Once a working directory is established it is trusted, and
an absolute ``cd`` may leave the workspace. Deployments that want no shell
interpretation at all can select ``BRIDGE_EXECUTOR=argv``.
"""

from __future__ import annotations

import logging
import os
import shlex
import signal
import stat
import subprocess
import threading
import time
from contextlib import suppress
from dataclasses import dataclass
from typing import IO

from .audit_log import log_command, read_records
from .errors import ValidationError
from .sessions import Session, SessionRegistry
from .workspace_tools import ensure_server_directory, get_server_path

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

COMMAND_TIMEOUT = float(os.getenv("COMMAND_TIMEOUT", "30"))
MAX_OUTPUT_BYTES = int(os.getenv("MAX_OUTPUT_BYTES", str(10 * 1024 * 1024)))
EXECUTOR = os.getenv("BRIDGE_EXECUTOR", "shell").lower()
SHELL = os.getenv("BRIDGE_SHELL", "/bin/sh")

_READ_CHUNK = 64 * 1024
_PIPE_GRACE = 2.0


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------

@dataclass
class CommandResult:
    """Outcome of one subprocess run."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    error: str | None = None
    timed_out: bool = False
    overflowed: bool = False

    @property
    def success(self) -> bool:
        # Lenient: a nonzero exit that printed something is still a success,
        # plenty of CLIs exit nonzero on warnings.
        if self.timed_out or self.overflowed:
            return False
        if self.exit_code == 0 and self.error is None:
            return True
        return bool(self.stdout or self.stderr)


def _kill_group(proc: subprocess.Popen) -> None:
    with suppress(ProcessLookupError, PermissionError):
        os.killpg(proc.pid, signal.SIGKILL)


class _Capture:
    """Drains one pipe on a thread, keeping at most ``limit`` bytes."""

    def __init__(self, name: str, stream: IO[bytes], limit: int, on_overflow):
        self.name = name
        self.buf = bytearray()
        self.overflowed = False
        self._stream = stream
        self._limit = limit
        self._on_overflow = on_overflow
        self._thread = threading.Thread(target=self._drain, daemon=True)
        self._thread.start()

    def _drain(self) -> None:
        try:
            while True:
                chunk = self._stream.read1(_READ_CHUNK)
                if not chunk:
                    break
                room = self._limit - len(self.buf)
                self.buf.extend(chunk[:max(room, 0)])
                if len(chunk) > room:
                    self.overflowed = True
                    self._on_overflow()
                    break
        finally:
            self._stream.close()

    def join(self, timeout: float | None = None) -> None:
        self._thread.join(timeout)

    def alive(self) -> bool:
        return self._thread.is_alive()

    def text(self) -> str:
        return self.buf.decode("utf-8", errors="replace")


class CommandExecutor:
    """Runs a command string to completion in a working directory.

    Subclasses decide how the string becomes an argument vector.
    """

    name = "base"

    def __init__(self, timeout: float | None = None, max_output: int | None = None):
        self.timeout = COMMAND_TIMEOUT if timeout is None else timeout
        self.max_output = MAX_OUTPUT_BYTES if max_output is None else max_output

    def argv(self, command: str) -> list[str]:
        raise NotImplementedError

    def run(self, command: str, cwd: str) -> CommandResult:
        try:
            argv = self.argv(command)
        except ValueError as e:
            return CommandResult(error=f"Could not parse command: {e}")

        try:
            proc = subprocess.Popen(
                argv,
                cwd=cwd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            logger.warning("Failed to spawn %r in %s: %s", command, cwd, e)
            return CommandResult(error=f"Failed to start command: {e}")

        out = _Capture("stdout", proc.stdout, self.max_output, lambda: _kill_group(proc))
        err = _Capture("stderr", proc.stderr, self.max_output, lambda: _kill_group(proc))

        timed_out = False
        try:
            proc.wait(timeout=self.timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            _kill_group(proc)
            proc.wait()
        for capture in (out, err):
            # Background children can hold the pipe open after the shell exits.
            capture.join(_PIPE_GRACE)
            if capture.alive():
                _kill_group(proc)
                capture.join()

        result = CommandResult(
            stdout=out.text(),
            stderr=err.text(),
            exit_code=None if (timed_out or proc.returncode < 0) else proc.returncode,
            timed_out=timed_out,
        )
        overflow = next((c for c in (out, err) if c.overflowed), None)
        if timed_out:
            result.error = f"Command timed out after {self.timeout:g}s: {command}"
        elif overflow is not None:
            result.overflowed = True
            result.error = f"{overflow.name} maxBuffer length exceeded ({self.max_output} bytes)"
        elif proc.returncode < 0:
            result.error = f"Command terminated by signal {-proc.returncode}: {command}"
        elif proc.returncode != 0:
            result.error = f"Command failed with exit code {proc.returncode}: {command}"
        return result


class ShellExecutor(CommandExecutor):
    """Hands the whole string to ``/bin/sh -c``: pipes, globs, ``&&`` all work."""

    name = "shell"

    def __init__(self, shell: str | None = None, **kwargs):
        super().__init__(**kwargs)
        self.shell = shell or SHELL

    def argv(self, command: str) -> list[str]:
        return [self.shell, "-c", command]


class ArgvExecutor(CommandExecutor):
    """Splits with POSIX lexing and executes without any shell."""

    name = "argv"

    def argv(self, command: str) -> list[str]:
        args = shlex.split(command)
        if not args:
            raise ValueError("empty command")
        return args


_EXECUTORS = {"shell": ShellExecutor, "argv": ArgvExecutor}


def build_executor(name: str | None = None, **kwargs) -> CommandExecutor:
    name = (name or EXECUTOR).lower()
    if name not in _EXECUTORS:
        raise ValueError(f"Unknown executor {name!r}; expected one of {sorted(_EXECUTORS)}")
    return _EXECUTORS[name](**kwargs)


def sandbox_run(command: str, cwd: str | None = None, timeout: float | None = None) -> CommandResult:
    """One-off shell command for internal lookups (journalctl, df, free)."""
    return ShellExecutor(timeout=timeout).run(command, cwd or os.getcwd())


# ---------------------------------------------------------------------------
# Navigation
# ---------------------------------------------------------------------------

def is_navigation(command: str) -> bool:
    stripped = command.strip()
    return stripped == "cd" or stripped.startswith("cd ")


def parse_cd_target(command: str) -> str:
    target = command.strip()[2:].strip() or "~"
    if len(target) >= 2 and target[0] == target[-1] and target[0] in ("'", '"'):
        target = target[1:-1]
    return target


def resolve_cd_target(target: str, base_dir: str, server_path: str) -> str:
    if target == "~":
        return server_path
    if target.startswith("~/"):
        return os.path.normpath(os.path.join(server_path, target[2:]))
    if target == "..":
        return os.path.dirname(base_dir)
    if os.path.isabs(target):
        return os.path.normpath(target)
    return os.path.normpath(os.path.join(base_dir, target))


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class CommandEngine:
    """Executes commands for servers against their remembered working directory."""

    def __init__(self, sessions: SessionRegistry, executor: CommandExecutor | None = None):
        self.sessions = sessions
        self.executor = executor or build_executor()

    def session_info(self, server_id: str) -> dict:
        session = self.sessions.get(server_id, get_server_path(server_id))
        return session.to_dict()

    def history(self, server_id: str, limit: int = 50) -> list[dict]:
        """Most recent commands run on ``server_id``, oldest first."""
        get_server_path(server_id)
        if limit < 1:
            raise ValidationError("limit must be a positive integer")
        return read_records(server_id=server_id, limit=limit)

    def execute(self, server_id: str, command: str | None, cwd: str | None = ".") -> dict:
        if not command or not command.strip():
            raise ValidationError("Command is required")
        server_path = ensure_server_directory(server_id)

        t0 = time.monotonic()
        with self.sessions.lock(server_id):
            session = self.sessions.get(server_id, server_path)
            base_dir = os.path.normpath(os.path.join(session.cwd, cwd or "."))
            if is_navigation(command):
                mode = "navigate"
                response = self._navigate(server_id, session, base_dir, server_path, command)
            else:
                mode = "execute"
                response = self._run(server_id, session, base_dir, command)

        log_command(
            server_id=server_id,
            command=command,
            mode=mode,
            ok=response["success"],
            cwd=response["cwd"],
            duration_ms=(time.monotonic() - t0) * 1000,
            exit_code=response["exitCode"],
            error=response["error"] or (response["stderr"] if not response["success"] else None),
        )
        return response

    def _navigate(
        self,
        server_id: str,
        session: Session,
        base_dir: str,
        server_path: str,
        command: str,
    ) -> dict:
        target = parse_cd_target(command)
        new_dir = resolve_cd_target(target, base_dir, server_path)
        try:
            st = os.stat(new_dir)
        except OSError:
            return _response(False, stderr=f"cd: no such file or directory: {target}", cwd=session.cwd)
        if not stat.S_ISDIR(st.st_mode):
            return _response(False, stderr=f"cd: not a directory: {target}", cwd=session.cwd)

        self.sessions.put(server_id, Session(cwd=new_dir))
        logger.debug("Server %s cwd -> %s", server_id, new_dir)
        return _response(True, cwd=new_dir)

    def _run(self, server_id: str, session: Session, base_dir: str, command: str) -> dict:
        if not os.path.isdir(base_dir):
            # Spawning would fail anyway; keep the stored cwd pointing at a real directory.
            return _response(
                False,
                cwd=session.cwd,
                error=f"Working directory does not exist: {base_dir}",
            )

        result = self.executor.run(command, base_dir)
        self.sessions.put(server_id, Session(cwd=base_dir))
        if result.timed_out or result.overflowed:
            logger.warning("Command on %s aborted: %s", server_id, result.error)
        return _response(
            result.success,
            stdout=result.stdout,
            stderr=result.stderr,
            cwd=base_dir,
            error=result.error,
            exit_code=result.exit_code,
        )


def _response(
    success: bool,
    *,
    cwd: str,
    stdout: str = "",
    stderr: str = "",
    error: str | None = None,
    exit_code: int | None = None,
) -> dict:
    return {
        "success": bool(success),
        "stdout": stdout,
        "stderr": stderr,
        "cwd": cwd,
        "error": error,
        "exitCode": exit_code,
    }
