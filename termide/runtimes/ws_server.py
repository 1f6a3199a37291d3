from __future__ import annotations

import asyncio
import codecs
import contextlib
import json
import logging
import os
import tempfile
from typing import Any

from dotenv import load_dotenv
from fastapi import FastAPI, File, Form, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field, ValidationError

from termide.config import (
    db_file,
    debug_endpoints_enabled,
    max_upload_bytes,
    projects_dir,
    uploads_dir,
)
from termide.errors import (
    IOFailure,
    NotFoundError,
    PathEscapeError,
    RemoteCreateError,
    SandboxError,
    SpawnError,
    UnsupportedKindError,
)
from termide.github import backup as github_backup
from termide.projects.store import ProjectsDb
from termide.runtimes.engine import RunEngine
from termide.runtimes.events import RunEvent, RunFinished, RunOutput, RunSpawned, RunStatus
from termide.sandbox_files.archive import ZIP_MEDIA_TYPE, archive_filename, stream_project_zip
from termide.sandbox_files.policy import require_file_target, sanitize_project_id
from termide.sandbox_files.project_fs import ProjectFs

load_dotenv()

app = FastAPI(title="termide")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)
logger = logging.getLogger(__name__)

_engine: RunEngine | None = None
_projects_db: ProjectsDb | None = None

_ERROR_STATUS: dict[type[SandboxError], int] = {
    PathEscapeError: 400,
    NotFoundError: 404,
    UnsupportedKindError: 415,
    IOFailure: 500,
    SpawnError: 500,
}

_UPLOAD_COPY_BLOCK = 1024 * 1024


class RunStatusResponse(BaseModel):
    ok: bool = True
    run_id: str
    status: str
    pid: int | None = None
    exit_code: int | None = None
    reason: str | None = None


class WsInbound(BaseModel):
    type: str = ""
    data: dict[str, Any] = Field(default_factory=dict)


class TermRunRequest(BaseModel):
    cmd: str
    cwd: str | None = None
    project: str | None = None
    path: str | None = None


class TermKillRequest(BaseModel):
    run_id: str | None = None


def _get_engine() -> RunEngine:
    global _engine
    if _engine is None:
        _engine = RunEngine()
    return _engine


def _get_projects_db() -> ProjectsDb:
    global _projects_db
    path = db_file()
    if _projects_db is None or _projects_db.path != path:
        _projects_db = ProjectsDb(path)
        _projects_db.load()
    return _projects_db


def _error_response(exc: SandboxError) -> JSONResponse:
    status = 500
    for cls, code in _ERROR_STATUS.items():
        if isinstance(exc, cls):
            status = code
            break
    if status >= 500:
        logger.warning("request failed: %s", exc)
    return JSONResponse(
        {"ok": False, "error": exc.code, "message": str(exc)}, status_code=status
    )


def _bad_request(message: str) -> JSONResponse:
    return JSONResponse({"ok": False, "message": message}, status_code=400)


async def _json_body(request: Request) -> dict[str, Any]:
    body: Any
    try:
        body = await request.json()
    except Exception:
        body = {}
    if not isinstance(body, dict):
        body = {}
    return body


def _project_fs(project: Any) -> ProjectFs:
    return ProjectFs.for_project(str(project) if project else None)


@app.on_event("startup")
async def _startup() -> None:
    os.makedirs(projects_dir(), exist_ok=True)
    os.makedirs(uploads_dir(), exist_ok=True)
    _get_projects_db()
    logger.info("projects folder: %s", projects_dir())


@app.on_event("shutdown")
async def _shutdown() -> None:
    if _engine is not None:
        await _engine.shutdown()


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/api/project/create")
async def api_create_project(request: Request) -> JSONResponse:
    body = await _json_body(request)
    project = body.get("project")
    if not project:
        return _bad_request("project required")
    username = body.get("username")

    try:
        fs = _project_fs(project)
        path = fs.ensure_root()
    except SandboxError as exc:
        return _error_response(exc)

    _get_projects_db().add_project(
        str(project), username=str(username) if username else None
    )
    return JSONResponse({"ok": True, "project": project, "path": path})


@app.get("/api/projects")
async def api_list_projects() -> JSONResponse:
    projects = _get_projects_db().list_projects()
    return JSONResponse(
        {
            "ok": True,
            "projects": [
                {"name": p.name, "username": p.username, "created_at": p.created_at}
                for p in projects
            ],
        }
    )


@app.post("/api/files/list")
async def api_files_list(request: Request) -> JSONResponse:
    body = await _json_body(request)
    try:
        fs = _project_fs(body.get("project"))
        files = await asyncio.to_thread(fs.ls)
    except SandboxError as exc:
        return _error_response(exc)
    return JSONResponse({"ok": True, "files": files})


@app.post("/api/files/read")
async def api_files_read(request: Request) -> JSONResponse:
    body = await _json_body(request)
    filepath = body.get("filepath")
    if not filepath:
        return _bad_request("filepath required")
    try:
        fs = _project_fs(body.get("project"))
        data = fs.read(str(filepath))
    except SandboxError as exc:
        return _error_response(exc)
    return JSONResponse(
        {"ok": True, "content": data.decode("utf-8", errors="replace")}
    )


@app.post("/api/files/save")
async def api_files_save(request: Request) -> JSONResponse:
    body = await _json_body(request)
    filepath = body.get("filepath")
    if not filepath:
        return _bad_request("filepath required")
    content = body.get("content")
    try:
        fs = _project_fs(body.get("project"))
        full = fs.write(str(filepath), str(content) if content is not None else "")
    except SandboxError as exc:
        return _error_response(exc)
    return JSONResponse({"ok": True, "message": "saved", "path": full})


@app.post("/api/files/delete")
async def api_files_delete(request: Request) -> JSONResponse:
    body = await _json_body(request)
    filepath = body.get("filepath")
    if not filepath:
        return _bad_request("filepath required")
    try:
        fs = _project_fs(body.get("project"))
        fs.rm(str(filepath))
    except SandboxError as exc:
        return _error_response(exc)
    return JSONResponse({"ok": True, "message": "deleted"})


def _spool_upload(upload: UploadFile, *, limit: int) -> str:
    os.makedirs(uploads_dir(), exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(prefix="upload-", dir=uploads_dir())
    total = 0
    try:
        with os.fdopen(fd, "wb") as out:
            while True:
                block = upload.file.read(_UPLOAD_COPY_BLOCK)
                if not block:
                    break
                total += len(block)
                if total > limit:
                    raise ValueError("upload too large")
                out.write(block)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_path)
        raise
    return tmp_path


@app.post("/api/upload")
async def api_upload(
    file: UploadFile | None = File(None),
    project: str | None = Form(None),
) -> JSONResponse:
    if file is None or not file.filename:
        return _bad_request("file required")
    try:
        fs = _project_fs(project)
        fs.upload_target(file.filename)
    except SandboxError as exc:
        return _error_response(exc)

    try:
        tmp_path = await asyncio.to_thread(_spool_upload, file, limit=max_upload_bytes())
    except ValueError:
        return JSONResponse(
            {"ok": False, "message": "file too large"}, status_code=413
        )

    try:
        dest = await asyncio.to_thread(fs.place_upload, file.filename, tmp_path)
    except SandboxError as exc:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_path)
        return _error_response(exc)
    return JSONResponse(
        {"ok": True, "message": "uploaded", "filename": os.path.basename(dest)}
    )


@app.get("/api/project/download/{project}")
async def api_project_download(project: str):
    try:
        fs = _project_fs(project)
        chunks = stream_project_zip(fs)
    except SandboxError as exc:
        if isinstance(exc, NotFoundError):
            return JSONResponse(
                {"ok": False, "message": "project not found"}, status_code=404
            )
        return _error_response(exc)

    filename = archive_filename(sanitize_project_id(project))
    return StreamingResponse(
        chunks,
        media_type=ZIP_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/api/run")
async def api_run_file(request: Request) -> JSONResponse:
    body = await _json_body(request)
    filepath = body.get("filepath")
    if not filepath:
        return _bad_request("filepath required")
    try:
        fs = _project_fs(body.get("project"))
        full = fs.resolve(str(filepath))
        require_file_target(fs.root, full)
        run_id = await _get_engine().start_file(full)
    except SandboxError as exc:
        return _error_response(exc)
    return JSONResponse({"ok": True, "run_id": run_id})


@app.post("/api/run/{run_id}/kill")
async def api_kill_run(run_id: str) -> JSONResponse:
    _get_engine().kill(run_id)
    return JSONResponse({"ok": True})


@app.get("/api/run/{run_id}", response_model=RunStatusResponse)
async def api_get_run(run_id: str):
    info = _get_engine().get(run_id)
    if info is None:
        return JSONResponse({"ok": False, "message": "not found"}, status_code=404)
    return RunStatusResponse(
        run_id=info.run_id,
        status=info.status.value,
        pid=info.pid,
        exit_code=info.exit_code,
        reason=info.reason,
    )


@app.post("/api/backup/github")
async def api_backup_github(request: Request) -> JSONResponse:
    body = await _json_body(request)
    project = body.get("project")
    token = body.get("token")
    if not project or not token:
        return _bad_request("project & token required")

    try:
        fs = _project_fs(project)
    except SandboxError as exc:
        return _error_response(exc)
    if not fs.exists():
        return JSONResponse({"ok": False, "message": "project not found"}, status_code=404)

    try:
        result = await asyncio.to_thread(
            github_backup.backup_project,
            fs.root,
            project=str(project),
            token=str(token),
        )
    except RemoteCreateError as exc:
        return JSONResponse(
            {
                "ok": False,
                "message": "github create repo failed",
                "details": exc.payload,
            },
            status_code=502,
        )
    except Exception as exc:
        logger.exception("backup error")
        return JSONResponse({"ok": False, "message": str(exc)}, status_code=500)

    payload = result.to_dict()
    return JSONResponse(
        {
            "ok": True,
            "message": "backup completed",
            "repo": result.remote_url,
            "steps": payload["steps"],
        }
    )


@app.get("/api/debug/projects_dir")
async def api_debug_projects_dir() -> JSONResponse:
    if not debug_endpoints_enabled():
        return JSONResponse({"ok": False, "message": "not found"}, status_code=404)
    base = projects_dir()
    entries = sorted(os.listdir(base)) if os.path.isdir(base) else []
    return JSONResponse({"ok": True, "projectsDir": base, "list": entries})


class _TextDecoders:
    """Incremental UTF-8 decoding per (run, stream); chunks may split characters."""

    def __init__(self) -> None:
        self._by_key: dict[tuple[str, str], codecs.IncrementalDecoder] = {}

    def decode(self, run_id: str, stream: str, data: bytes) -> str:
        key = (run_id, stream)
        dec = self._by_key.get(key)
        if dec is None:
            dec = codecs.getincrementaldecoder("utf-8")(errors="replace")
            self._by_key[key] = dec
        return dec.decode(data)

    def flush(self, run_id: str) -> list[tuple[str, str]]:
        out: list[tuple[str, str]] = []
        for key in [k for k in self._by_key if k[0] == run_id]:
            tail = self._by_key.pop(key).decode(b"", final=True)
            if tail:
                out.append((key[1], tail))
        return out


def _ws_message(mtype: str, data: dict[str, Any]) -> dict[str, Any]:
    return {"type": mtype, "data": data}


def _event_messages(event: RunEvent, decoders: _TextDecoders) -> list[dict[str, Any]]:
    if isinstance(event, RunSpawned):
        return [_ws_message("term:spawned", {"run_id": event.run_id, "pid": event.pid})]
    if isinstance(event, RunOutput):
        text = decoders.decode(event.run_id, event.stream, event.data)
        if not text:
            return []
        return [
            _ws_message(
                "term:data",
                {"run_id": event.run_id, "type": event.stream, "text": text},
            )
        ]
    if isinstance(event, RunFinished):
        out = [
            _ws_message("term:data", {"run_id": event.run_id, "type": stream, "text": text})
            for stream, text in decoders.flush(event.run_id)
        ]
        if event.status is RunStatus.FAILED:
            out.append(
                _ws_message(
                    "term:error", {"run_id": event.run_id, "message": event.reason or "failed"}
                )
            )
        out.append(
            _ws_message(
                "term:exit",
                {
                    "run_id": event.run_id,
                    "code": event.exit_code,
                    "killed": event.killed,
                    "status": event.status.value,
                },
            )
        )
        return out
    return []


async def _forward_events(ws: WebSocket, events, owned: set[str]) -> None:
    decoders = _TextDecoders()
    async for event in events:
        if isinstance(event, RunFinished):
            owned.discard(event.run_id)
        for msg in _event_messages(event, decoders):
            try:
                await ws.send_json(msg)
            except Exception:
                logger.debug("ws send failed; stopping event forwarding")
                return


async def _ws_term_run(
    ws: WebSocket, engine: RunEngine, data: dict[str, Any], owned: set[str]
) -> None:
    try:
        req = TermRunRequest.model_validate(data)
    except ValidationError:
        req = None
    if req is None or not req.cmd.strip():
        await ws.send_json(_ws_message("term:error", {"message": "cmd required"}))
        return
    try:
        # `cwd` names a project, as sent by the browser terminal.
        fs = _project_fs(req.cwd or req.project)
        workdir = fs.resolve(req.path) if req.path else fs.root
        await asyncio.to_thread(os.makedirs, workdir, exist_ok=True)
        run_id = await engine.start_command(req.cmd, cwd=workdir)
    except SpawnError as exc:
        if exc.run_id:
            # The run's FAILED event reaches this socket through the bus.
            return
        await ws.send_json(_ws_message("term:error", {"message": str(exc)}))
        return
    except SandboxError as exc:
        await ws.send_json(_ws_message("term:error", {"message": str(exc)}))
        return
    except OSError as exc:
        await ws.send_json(_ws_message("term:error", {"message": str(exc)}))
        return
    owned.add(run_id)


@app.websocket("/ws")
async def websocket_ws(ws: WebSocket) -> None:
    await ws.accept()
    client = getattr(ws, "client", None)
    logger.info("[ws] client connected %s", client)

    engine = _get_engine()
    events = engine.bus.subscribe()
    owned: set[str] = set()
    forwarder = asyncio.create_task(_forward_events(ws, events, owned))

    try:
        while True:
            try:
                raw = await ws.receive_text()
            except WebSocketDisconnect:
                return

            try:
                msg = WsInbound.model_validate(json.loads(raw))
            except (ValueError, ValidationError):
                continue

            mtype = msg.type
            if mtype == "term:run":
                await _ws_term_run(ws, engine, msg.data, owned)
            elif mtype == "term:kill":
                try:
                    run_id = TermKillRequest.model_validate(msg.data).run_id
                except ValidationError:
                    run_id = None
                targets = [run_id] if run_id else list(owned)
                for rid in targets:
                    engine.kill(rid)
            else:
                await ws.send_json(
                    _ws_message("term:error", {"message": f"unknown message type: {mtype}"})
                )
    finally:
        events.close()
        forwarder.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await forwarder
        logger.info("[ws] client disconnected %s", client)
