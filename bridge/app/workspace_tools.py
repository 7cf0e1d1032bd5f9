"""Workspace resolution, path containment and file operations.

Every server workspace lives at ``SERVERS_PATH/<server_id>``. File operations
resolve the caller's relative path with ``confine`` before touching storage;
shell execution (see ``sandbox_tools``) deliberately does not.
"""

from __future__ import annotations

import io
import logging
import os
import re
import shutil
import zipfile
from datetime import datetime, timezone

from .errors import AccessDenied, BridgeError, NotFound, StorageError, ValidationError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

SERVERS_PATH = os.path.abspath(os.getenv("SERVERS_PATH", "/tmp/servers"))
STRICT_PATHS = os.getenv("BRIDGE_STRICT_PATHS", "false").lower() == "true"

_UNSAFE_NAME_CHARS = re.compile(r"[^a-z0-9-]")


# ---------------------------------------------------------------------------
# Workspace resolver
# ---------------------------------------------------------------------------

def sanitize_server_name(name: str) -> str:
    """Turn a display name into a server id: lowercase, digits and hyphens."""
    return _UNSAFE_NAME_CHARS.sub("-", name.lower())


def get_server_path(server_id: str) -> str:
    """Return the root directory for ``server_id`` without creating it."""
    if (
        not server_id
        or server_id in (".", "..")
        or "/" in server_id
        or "\\" in server_id
        or "\0" in server_id
    ):
        raise ValidationError("Invalid server id", f"Invalid server id: {server_id!r}")
    return os.path.join(SERVERS_PATH, server_id)


def ensure_server_directory(server_id: str) -> str:
    """Return the root directory for ``server_id``, creating it on first access."""
    server_path = get_server_path(server_id)
    if os.path.isdir(server_path):
        return server_path
    try:
        os.makedirs(server_path, exist_ok=True)
    except OSError as e:
        raise StorageError("Failed to create server directory", str(e)) from e
    logger.info("Created server directory %s", server_path)
    return server_path


def require_server_directory(server_id: str) -> str:
    """Return the root directory for an existing server, else raise NotFound."""
    server_path = get_server_path(server_id)
    if not os.path.isdir(server_path):
        raise NotFound("Server not found", f"Server '{server_id}' not found")
    return server_path


# ---------------------------------------------------------------------------
# Path containment guard
# ---------------------------------------------------------------------------

def is_within(root: str, path: str) -> bool:
    """True if ``path`` is ``root`` or below it, compared by whole segments."""
    root = root.rstrip(os.sep) or os.sep
    if path == root:
        return True
    prefix = root if root.endswith(os.sep) else root + os.sep
    return path.startswith(prefix)


def confine(root: str, requested: str, strict: bool | None = None) -> str:
    """Resolve ``requested`` against ``root`` and refuse anything outside it.

    Resolution is lexical by default, so a symlink inside the workspace can
    still point elsewhere. With ``strict`` (or ``BRIDGE_STRICT_PATHS``) both
    sides go through ``realpath`` first.
    """
    if "\0" in requested:
        raise ValidationError("Invalid path", "Path contains a NUL byte")
    if strict is None:
        strict = STRICT_PATHS
    root = os.path.normpath(os.path.abspath(root))
    full = os.path.normpath(os.path.join(root, requested))
    if strict:
        root = os.path.realpath(root)
        full = os.path.realpath(full)
    if not is_within(root, full):
        raise AccessDenied(
            "Access denied: Path outside server directory",
            f"Path traversal blocked: {requested}",
        )
    return full


# ---------------------------------------------------------------------------
# Directory service
# ---------------------------------------------------------------------------

def _iso_mtime(st: os.stat_result) -> str:
    return datetime.fromtimestamp(st.st_mtime, tz=timezone.utc).isoformat()


def _stat(path: str) -> os.stat_result:
    try:
        return os.stat(path)
    except FileNotFoundError:
        # dangling symlink
        return os.lstat(path)


def _relative(server_path: str, full: str) -> str:
    rel = os.path.relpath(full, server_path)
    return "." if rel == os.curdir else rel


def list_files(server_id: str, path: str = ".") -> dict:
    server_path = ensure_server_directory(server_id)
    full = confine(server_path, path)
    if not os.path.exists(full):
        raise NotFound("Path not found", f"No such directory: {path}")
    if not os.path.isdir(full):
        raise ValidationError("Not a directory", f"Not a directory: {path}")

    files = []
    with os.scandir(full) as it:
        for entry in it:
            st = _stat(entry.path)
            files.append({
                "name": entry.name,
                "type": "directory" if entry.is_dir() else "file",
                "size": st.st_size,
                "modified": _iso_mtime(st),
                "path": _relative(server_path, entry.path),
            })
    files.sort(key=lambda f: (f["type"] != "directory", f["name"]))
    return {"files": files, "currentPath": _relative(server_path, full)}


def read_file(server_id: str, path: str) -> dict:
    if not path:
        raise ValidationError("Path is required")
    server_path = ensure_server_directory(server_id)
    full = confine(server_path, path)
    if not os.path.exists(full):
        raise NotFound("File not found", f"No such file: {path}")
    if os.path.isdir(full):
        raise ValidationError("Path is a directory", f"Is a directory: {path}")
    with open(full, "rb") as f:
        data = f.read()
    st = os.stat(full)
    return {
        "content": data.decode("utf-8", errors="replace"),
        "size": st.st_size,
        "modified": _iso_mtime(st),
    }


def write_file(
    server_id: str,
    path: str,
    content: str | None,
    create_directories: bool = False,
) -> dict:
    if not path:
        raise ValidationError("Path is required")
    server_path = ensure_server_directory(server_id)
    full = confine(server_path, path)
    if full == os.path.normpath(server_path):
        raise ValidationError("Path is a directory", f"Is a directory: {path}")
    parent = os.path.dirname(full)
    if create_directories:
        os.makedirs(parent, exist_ok=True)
    elif not os.path.isdir(parent):
        raise NotFound(
            "Parent directory does not exist",
            f"No such directory: {_relative(server_path, parent)}",
        )
    with open(full, "w", encoding="utf-8") as f:
        f.write(content or "")
    st = os.stat(full)
    logger.debug("Wrote %d bytes to %s", st.st_size, full)
    return {
        "message": "File saved successfully",
        "size": st.st_size,
        "modified": _iso_mtime(st),
    }


def delete_path(server_id: str, path: str) -> dict:
    if not path:
        raise ValidationError("Path is required")
    server_path = ensure_server_directory(server_id)
    full = confine(server_path, path)
    if full == os.path.normpath(server_path):
        raise AccessDenied(
            "Access denied: Cannot delete the server root",
            "Use DELETE /servers/{id} to remove a server",
        )
    if not os.path.lexists(full):
        raise NotFound("Path not found", f"No such file or directory: {path}")
    is_dir = os.path.isdir(full) and not os.path.islink(full)
    if is_dir:
        shutil.rmtree(full)
    else:
        os.unlink(full)
    logger.info("Deleted %s", full)
    return {"message": f"{'Directory' if is_dir else 'File'} deleted successfully"}


def make_directory(server_id: str, path: str) -> dict:
    if not path:
        raise ValidationError("Path is required")
    server_path = ensure_server_directory(server_id)
    full = confine(server_path, path)
    os.makedirs(full, exist_ok=True)
    return {
        "message": "Directory created successfully",
        "path": _relative(server_path, full),
    }


# ---------------------------------------------------------------------------
# Upload ingestion
# ---------------------------------------------------------------------------

def _extract_archive(data: bytes, extract_path: str) -> int:
    """Extract a zip payload into ``extract_path``, overwriting existing entries."""
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        members = zf.infolist()
        for member in members:
            confine(extract_path, member.filename, strict=False)
        os.makedirs(extract_path, exist_ok=True)
        zf.extractall(extract_path)
    return len(members)


def upload_files(
    server_id: str,
    files: list[tuple[str, bytes]],
    target_path: str = ".",
) -> dict:
    """Store uploaded items under ``target_path``; zip archives are extracted.

    ``files`` is a list of ``(filename, data)`` pairs. Each item gets its own
    outcome entry; a broken archive is reported, not raised.
    """
    if not files:
        raise ValidationError("No files uploaded")
    server_path = ensure_server_directory(server_id)
    target_dir = confine(server_path, target_path or ".")

    uploaded = []
    for filename, data in files:
        name = os.path.basename(filename or "")
        if not name or name in (".", ".."):
            uploaded.append({
                "name": filename,
                "type": "file",
                "error": "Invalid file name",
                "size": len(data),
            })
            continue

        if name.lower().endswith(".zip"):
            extract_path = os.path.join(target_dir, os.path.splitext(name)[0])
            try:
                count = _extract_archive(data, extract_path)
            except (zipfile.BadZipFile, BridgeError, OSError) as e:
                detail = e.detail if isinstance(e, BridgeError) else str(e)
                logger.warning("Failed to extract %s: %s", name, detail)
                uploaded.append({
                    "name": name,
                    "type": "file",
                    "error": f"Failed to extract ZIP: {detail}",
                    "size": len(data),
                })
                continue
            uploaded.append({
                "name": name,
                "type": "archive",
                "extracted": True,
                "extractPath": _relative(server_path, extract_path),
                "entries": count,
                "size": len(data),
            })
        else:
            file_path = os.path.join(target_dir, name)
            os.makedirs(target_dir, exist_ok=True)
            with open(file_path, "wb") as f:
                f.write(data)
            uploaded.append({
                "name": name,
                "type": "file",
                "path": _relative(server_path, file_path),
                "size": len(data),
            })

    logger.info("Uploaded %d file(s) to %s", len(files), target_dir)
    return {"message": f"Uploaded {len(files)} file(s)", "files": uploaded}
