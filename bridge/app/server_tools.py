"""Server workspace management: create, list, inspect, delete, start/stop, logs."""

from __future__ import annotations

import json
import logging
import os
import shlex
import shutil
from datetime import datetime, timezone

from . import workspace_tools
from .errors import ValidationError
from .process_tools import LocalProcessInspector, ProcessInspector, server_status
from .sandbox_tools import sandbox_run
from .sessions import SessionRegistry
from .workspace_tools import (
    ensure_server_directory,
    require_server_directory,
    sanitize_server_name,
)

logger = logging.getLogger(__name__)

DEFAULT_START_COMMAND = "npm start"
LOG_SOURCES = (os.path.join("logs", "app.log"), "server.log", "output.log")
START_LOG = "output.log"
ACTIONS = ("start", "stop", "restart")


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _created(st: os.stat_result) -> str:
    # st_birthtime only exists on some platforms
    return _iso(getattr(st, "st_birthtime", st.st_ctime))


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

def _basic_template(server_id: str, name: str) -> dict[str, str]:
    return {"README.md": f"# {name}\n\nWelcome to your new server!\n"}


def _nodejs_template(server_id: str, name: str) -> dict[str, str]:
    package = {
        "name": server_id,
        "version": "1.0.0",
        "main": "index.js",
        "scripts": {"start": "node index.js"},
    }
    return {
        "package.json": json.dumps(package, indent=2),
        "index.js": '// Welcome to your new Node.js server!\nconsole.log("Hello World!");\n',
    }


def _python_template(server_id: str, name: str) -> dict[str, str]:
    return {
        "main.py": '# Welcome to your new Python server!\nprint("Hello World!")\n',
        "requirements.txt": "# Add your Python dependencies here\n",
    }


TEMPLATES = {
    "basic": _basic_template,
    "nodejs": _nodejs_template,
    "python": _python_template,
}


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------

def list_servers(inspector: ProcessInspector) -> list[dict]:
    base = workspace_tools.SERVERS_PATH
    os.makedirs(base, exist_ok=True)
    servers = []
    for name in sorted(os.listdir(base)):
        server_path = os.path.join(base, name)
        if name.startswith(".") or not os.path.isdir(server_path):
            continue
        st = os.stat(server_path)
        servers.append({
            "id": name,
            "name": name,
            "path": server_path,
            "status": server_status(name, server_path, inspector),
            "created": _created(st),
        })
    return servers


def create_server(name: str | None, template: str | None = "basic") -> dict:
    if not name or not name.strip():
        raise ValidationError("Server name is required")
    template = template or "basic"
    if template not in TEMPLATES:
        raise ValidationError(
            "Invalid template",
            f"Unknown template {template!r}; use one of: {', '.join(TEMPLATES)}",
        )

    server_id = sanitize_server_name(name)
    server_path = ensure_server_directory(server_id)
    for filename, content in TEMPLATES[template](server_id, name).items():
        with open(os.path.join(server_path, filename), "w", encoding="utf-8") as f:
            f.write(content)
    logger.info("Created server %s from template %s", server_id, template)
    return {
        "id": server_id,
        "name": name,
        "path": server_path,
        "template": template,
    }


def get_server(server_id: str, inspector: ProcessInspector) -> dict:
    server_path = require_server_directory(server_id)
    file_count = 0
    total_size = 0
    for root, _dirs, files in os.walk(server_path):
        for f in files:
            file_count += 1
            try:
                total_size += os.lstat(os.path.join(root, f)).st_size
            except FileNotFoundError:
                continue
    st = os.stat(server_path)
    return {
        "id": server_id,
        "name": server_id,
        "path": server_path,
        "status": server_status(server_id, server_path, inspector),
        "created": _created(st),
        "modified": _iso(st.st_mtime),
        "fileCount": file_count,
        "totalSize": total_size,
    }


def delete_server(server_id: str, sessions: SessionRegistry) -> dict:
    server_path = require_server_directory(server_id)
    sessions.evict(server_id)
    shutil.rmtree(server_path)
    logger.info("Deleted server %s", server_id)
    return {"message": "Server deleted successfully"}


# ---------------------------------------------------------------------------
# Actions & logs
# ---------------------------------------------------------------------------

def server_action(
    server_id: str,
    action: str | None,
    command: str | None,
    inspector: LocalProcessInspector,
) -> dict:
    if action not in ACTIONS:
        raise ValidationError("Invalid action. Use: start, stop, or restart")
    server_path = require_server_directory(server_id)
    command = command or DEFAULT_START_COMMAND

    stopped = None
    if action in ("stop", "restart"):
        stopped = inspector.terminate(server_id)
    if action == "stop":
        return {
            "success": stopped,
            "message": f"Server stop {'successful' if stopped else 'failed'}",
            "output": "",
            "error": "" if stopped else f"No running process found for {server_id}",
        }

    pid = inspector.launch(server_id, command, server_path, os.path.join(server_path, START_LOG))
    return {
        "success": True,
        "message": f"Server {action} successful",
        "output": f"Started {command!r} (pid {pid}); output goes to {START_LOG}",
        "error": "",
        "pid": pid,
    }


def get_logs(server_id: str, lines: int = 100) -> str:
    if lines < 1:
        raise ValidationError("lines must be a positive integer")
    server_path = require_server_directory(server_id)

    logs = ""
    for rel in LOG_SOURCES:
        log_file = os.path.join(server_path, rel)
        if not os.path.isfile(log_file):
            continue
        with open(log_file, "rb") as f:
            content = f.read().decode("utf-8", errors="replace")
        logs += f"=== {os.path.basename(log_file)} ===\n{content}\n\n"

    if not logs:
        result = sandbox_run(
            f"journalctl -u {shlex.quote(server_id)} -n {lines} --no-pager",
            cwd=server_path,
        )
        logs = result.stdout if result.exit_code == 0 and result.stdout else "No logs available"

    return "\n".join(logs.rstrip("\n").split("\n")[-lines:])
