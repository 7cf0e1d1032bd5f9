import hmac
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, File, Form, Header, Query, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import workspace_tools
from .errors import AccessDenied, BridgeError, translate_errors
from .process_tools import LocalProcessInspector, list_processes
from .sandbox_tools import CommandEngine
from .server_tools import (
    create_server,
    delete_server,
    get_logs,
    get_server,
    list_servers,
    server_action,
)
from .sessions import SessionRegistry
from .system_tools import system_info, uptime
from .workspace_tools import (
    delete_path,
    get_server_path,
    list_files,
    make_directory,
    read_file,
    upload_files,
    write_file,
)

logger = logging.getLogger(__name__)

API_KEY = os.getenv("API_KEY", "")
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "10000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Log the effective configuration once at startup."""
    logger.info("Server bridge starting; servers path: %s", workspace_tools.SERVERS_PATH)
    logger.info("Command executor: %s", app.state.engine.executor.name)
    if not API_KEY:
        logger.error("API_KEY is not set: every endpoint except /health will answer 403")
    yield
    logger.info("Server bridge shutting down")


app = FastAPI(title="Server Bridge", version="0.1.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Per-instance state: sessions die with the process.
sessions = SessionRegistry()
inspector = LocalProcessInspector()
engine = CommandEngine(sessions)
app.state.sessions = sessions
app.state.inspector = inspector
app.state.engine = engine


# ---------------------------------------------------------------------------
# Envelope & error handlers
# ---------------------------------------------------------------------------

def _ok(payload: dict | None = None, **extra) -> dict:
    return {"success": True, **(payload or {}), **extra}


@app.exception_handler(BridgeError)
async def _bridge_error(request, exc: BridgeError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=exc.to_envelope())


@app.exception_handler(RequestValidationError)
async def _request_invalid(request, exc: RequestValidationError):
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors()
    )
    return JSONResponse(
        status_code=400,
        content={"success": False, "message": "Invalid request", "error": problems},
    )


@app.exception_handler(StarletteHTTPException)
async def _http_error(request, exc: StarletteHTTPException):
    message = "Endpoint not found" if exc.status_code == 404 else str(exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": message, "error": str(exc.detail)},
    )


@app.exception_handler(Exception)
async def _unhandled(request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"success": False, "message": "Internal server error", "error": str(exc)},
    )


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

def auth(authorization: str | None = Header(default=None)):
    if not API_KEY:
        raise AccessDenied("Forbidden: Invalid API Key", "No API key is configured on the server")
    expected = f"Bearer {API_KEY}".encode("utf-8")
    # headers arrive latin-1 decoded; compare_digest only accepts ASCII str
    if authorization is None or not hmac.compare_digest(authorization.encode("utf-8"), expected):
        raise AccessDenied("Forbidden: Invalid API Key", "Missing or invalid bearer token")


api = APIRouter(dependencies=[Depends(auth)])


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class ExecuteRequest(BaseModel):
    command: Optional[str] = None
    cwd: Optional[str] = "."


class WriteFileRequest(BaseModel):
    path: Optional[str] = None
    content: Optional[str] = ""
    createDirectories: bool = False


class DirectoryRequest(BaseModel):
    path: Optional[str] = None


class CreateServerRequest(BaseModel):
    name: Optional[str] = None
    template: Optional[str] = "basic"


class ActionRequest(BaseModel):
    action: Optional[str] = None
    command: Optional[str] = None


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@app.get("/health")
def health():
    return {
        "success": True,
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": uptime(),
    }


# ---------------------------------------------------------------------------
# Terminal
# ---------------------------------------------------------------------------

@api.post("/servers/{server_id}/execute")
def execute(server_id: str, req: ExecuteRequest):
    with translate_errors("Server error"):
        return engine.execute(server_id, req.command, req.cwd)


@api.get("/servers/{server_id}/terminal/session")
def terminal_session(server_id: str):
    with translate_errors("Failed to read session"):
        return _ok(engine.session_info(server_id))


@api.get("/servers/{server_id}/terminal/history")
def terminal_history(server_id: str, limit: int = Query(50)):
    with translate_errors("Failed to read command history"):
        return _ok(history=engine.history(server_id, limit))


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------

@api.get("/servers/{server_id}/files")
def files_list(server_id: str, path: str = Query(".")):
    with translate_errors("Failed to list files"):
        return _ok(list_files(server_id, path))


@api.get("/servers/{server_id}/files/content")
def files_read(server_id: str, path: Optional[str] = Query(None)):
    with translate_errors("Failed to read file"):
        return _ok(read_file(server_id, path))


@api.post("/servers/{server_id}/files")
def files_write(server_id: str, req: WriteFileRequest):
    with translate_errors("Failed to save file"):
        return _ok(write_file(server_id, req.path, req.content, req.createDirectories))


@api.delete("/servers/{server_id}/files")
def files_delete(server_id: str, path: Optional[str] = Query(None)):
    with translate_errors("Failed to delete"):
        return _ok(delete_path(server_id, path))


@api.post("/servers/{server_id}/directories")
def directories_create(server_id: str, req: DirectoryRequest):
    with translate_errors("Failed to create directory"):
        return _ok(make_directory(server_id, req.path))


@api.post("/servers/{server_id}/upload")
def upload(
    server_id: str,
    files: Optional[list[UploadFile]] = File(None),
    targetPath: str = Form("."),
):
    with translate_errors("Upload failed"):
        items = [(f.filename, f.file.read()) for f in files or []]
        return _ok(upload_files(server_id, items, targetPath))


# ---------------------------------------------------------------------------
# Servers
# ---------------------------------------------------------------------------

@api.get("/servers")
def servers_list():
    with translate_errors("Failed to list servers"):
        return _ok(servers=list_servers(inspector))


@api.post("/servers")
def servers_create(req: CreateServerRequest):
    with translate_errors("Failed to create server"):
        server = create_server(req.name, req.template)
        return _ok(message="Server created successfully", server=server)


@api.get("/servers/{server_id}")
def servers_get(server_id: str):
    with translate_errors("Failed to get server"):
        return _ok(server=get_server(server_id, inspector))


@api.delete("/servers/{server_id}")
def servers_delete(server_id: str):
    with translate_errors("Failed to delete server"):
        return _ok(delete_server(server_id, sessions))


@api.post("/servers/{server_id}/actions")
def servers_action(server_id: str, req: ActionRequest):
    with translate_errors("Failed to execute action"):
        return server_action(server_id, req.action, req.command, inspector)


@api.get("/servers/{server_id}/logs")
def servers_logs(server_id: str, lines: int = Query(100)):
    with translate_errors("Failed to get logs"):
        return _ok(logs=get_logs(server_id, lines))


@api.get("/servers/{server_id}/processes")
def servers_processes(server_id: str):
    with translate_errors("Failed to get processes"):
        get_server_path(server_id)
        return _ok(processes=list_processes(server_id))


# ---------------------------------------------------------------------------
# System
# ---------------------------------------------------------------------------

@api.get("/system/info")
def system():
    with translate_errors("Failed to get system info"):
        return _ok(system=system_info())


app.include_router(api)


def main() -> None:
    """Run the bridge under uvicorn."""
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host=HOST, port=PORT)


if __name__ == "__main__":
    main()
