#!/usr/bin/env python3
"""Bulk Reconcile Server (FastAPI).

Local service in front of the reconciler.
- Preview or commit a bulk upload as a background job
- One run at a time per scope key
- Direct identifier validation against a roster
- Stored submissions and run history

Default host is 127.0.0.1 (localhost-only).
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import tempfile
import threading
import time
import traceback
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from bulk_reconcile.reconcile_engine import (
    APP_NAME,
    DEFAULT_DB,
    DEFAULT_IDENTIFIER_FIELD,
    DEFAULT_LOG_FILE,
    DEFAULT_SINK_DIR,
    DEFAULT_WORK_DIR,
    Engine,
    ReconcileConfig,
    ReconcileError,
)
from bulk_reconcile.submission_store import (
    Recipient,
    SinkPolicy,
    load_roster,
    now_utc_iso,
    parse_size_to_bytes,
    recipient_from_row,
)


# ------------------------------- Logging ------------------------------------ #


def configure_logging(log_file: Path) -> logging.Logger:
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
    except OSError:
        log_file = Path(tempfile.gettempdir()) / APP_NAME / "server.log"
        log_file.parent.mkdir(parents=True, exist_ok=True)
    logger = logging.getLogger(f"{APP_NAME}_server")
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")

    fh = logging.FileHandler(log_file, encoding="utf-8")
    fh.setFormatter(formatter)
    logger.addHandler(fh)

    sh = logging.StreamHandler()
    sh.setFormatter(formatter)
    logger.addHandler(sh)
    return logger


LOGGER = configure_logging(Path(tempfile.gettempdir()) / APP_NAME / "server.log")
APP_LOOP: asyncio.AbstractEventLoop | None = None


# ---------------------------- API Models ------------------------------------ #


class RunUploadRequest(BaseModel):
    scope_key: str = Field(default="default", min_length=1, pattern=r"^[A-Za-z0-9_.-]+$")
    draft_dir: str
    identifier_field: str = DEFAULT_IDENTIFIER_FIELD
    commit: bool = False
    roster_file: str | None = None
    recipients: list[dict[str, Any]] | None = None
    wait: bool = False


class LookupRequest(BaseModel):
    token: str
    identifier_field: str = DEFAULT_IDENTIFIER_FIELD
    roster_file: str | None = None
    recipients: list[dict[str, Any]] | None = None


# ---------------------------- Response Helpers ------------------------------ #


def api_ok(data: Any, *, meta: dict[str, Any] | None = None, warnings: list[str] | None = None) -> JSONResponse:
    body = {
        "status": "ok",
        "timestamp": now_utc_iso(),
        "meta": meta or {},
        "warnings": warnings or [],
        "data": data,
    }
    return JSONResponse(body)


def api_error(code: str, message: str, status_code: int = 400, details: dict[str, Any] | None = None) -> JSONResponse:
    body = {
        "status": "error",
        "timestamp": now_utc_iso(),
        "error": {
            "code": code,
            "message": message,
            "details": details or {},
        },
    }
    return JSONResponse(body, status_code=status_code)


# -------------------------- Basic Rate Limiter ------------------------------ #


class BasicRateLimiter:
    """In-memory fixed-window limiter for safety on local service."""

    def __init__(self, max_requests: int = 120, window_seconds: int = 60):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._hits: dict[str, list[float]] = {}
        self._lock = threading.Lock()

    def allow(self, key: str) -> bool:
        now = time.time()
        with self._lock:
            arr = self._hits.setdefault(key, [])
            threshold = now - self.window_seconds
            while arr and arr[0] < threshold:
                arr.pop(0)
            if len(arr) >= self.max_requests:
                return False
            arr.append(now)
            return True


RATE_LIMITER = BasicRateLimiter()


# ------------------------------- Job Manager -------------------------------- #


@dataclass
class JobState:
    job_id: str
    job_type: str
    scope_key: str | None = None
    status: str = "queued"
    created_at: str = field(default_factory=now_utc_iso)
    updated_at: str = field(default_factory=now_utc_iso)
    progress: dict[str, Any] = field(default_factory=lambda: {"phase": "queued", "pct": 0.0})
    result: dict[str, Any] | None = None
    error: dict[str, Any] | None = None


class JobManager:
    """Background runs on a thread pool; runs sharing a scope key never overlap."""

    def __init__(self, max_workers: int = 4):
        self.executor = ThreadPoolExecutor(max_workers=max_workers)
        self._jobs: dict[str, JobState] = {}
        self._subs: dict[str, set[asyncio.Queue]] = {}
        self._scope_locks: dict[str, threading.Lock] = {}
        self._lock = threading.Lock()

    def create_job(self, job_type: str, scope_key: str | None = None) -> JobState:
        job = JobState(job_id=uuid.uuid4().hex, job_type=job_type, scope_key=scope_key)
        with self._lock:
            self._jobs[job.job_id] = job
            self._subs[job.job_id] = set()
        return job

    def get(self, job_id: str) -> JobState | None:
        with self._lock:
            return self._jobs.get(job_id)

    def scope_lock(self, scope_key: str) -> threading.Lock:
        with self._lock:
            return self._scope_locks.setdefault(scope_key, threading.Lock())

    def subscribe(self, job_id: str) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=100)
        with self._lock:
            self._subs.setdefault(job_id, set()).add(q)
        return q

    def unsubscribe(self, job_id: str, q: asyncio.Queue) -> None:
        with self._lock:
            if job_id in self._subs:
                self._subs[job_id].discard(q)

    def _notify(self, job_id: str, payload: dict[str, Any]) -> None:
        with self._lock:
            queues = list(self._subs.get(job_id, set()))

        for q in queues:
            if APP_LOOP and APP_LOOP.is_running():
                APP_LOOP.call_soon_threadsafe(_queue_put_nowait_safe, q, payload)
            else:
                _queue_put_nowait_safe(q, payload)

    def update_progress(self, job_id: str, progress: dict[str, Any]) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return
            job.progress = progress
            job.updated_at = now_utc_iso()

        self._notify(job_id, {"event": "progress", "job_id": job_id, "progress": progress})

    def _set_status(self, job_id: str, status: str) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return
            job.status = status
            job.updated_at = now_utc_iso()

        self._notify(job_id, {"event": "status", "job_id": job_id, "status": status})

    def _set_result(self, job_id: str, result: dict[str, Any]) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return
            job.result = result
            job.status = "completed"
            job.updated_at = now_utc_iso()

        self._notify(job_id, {"event": "completed", "job_id": job_id, "result": result})

    def _set_error(self, job_id: str, code: str, message: str, status_code: int, tb: str = "") -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return
            job.error = {"code": code, "message": message, "status_code": status_code, "traceback": tb}
            job.status = "failed"
            job.updated_at = now_utc_iso()

        self._notify(job_id, {"event": "failed", "job_id": job_id, "error": {"code": code, "message": message}})

    def submit(self, job: JobState, func: Callable[[Callable[[dict[str, Any]], None]], dict[str, Any]]) -> Future:
        def runner() -> None:
            lock = self.scope_lock(job.scope_key) if job.scope_key else contextlib.nullcontext()
            with lock:
                self._set_status(job.job_id, "running")
                try:
                    result = func(lambda p: self.update_progress(job.job_id, p))
                    self._set_result(job.job_id, result)
                except ReconcileError as exc:
                    self._set_error(job.job_id, exc.code, str(exc), exc.status_code)
                except Exception as exc:  # pylint: disable=broad-except
                    LOGGER.error("job_failed job=%s err=%s", job.job_id, exc)
                    self._set_error(job.job_id, "JOB_EXECUTION_ERROR", str(exc), 500, traceback.format_exc())

        return self.executor.submit(runner)


def _queue_put_nowait_safe(q: asyncio.Queue, payload: dict[str, Any]) -> None:
    try:
        q.put_nowait(payload)
    except asyncio.QueueFull:
        with contextlib.suppress(asyncio.QueueEmpty):
            _ = q.get_nowait()
        with contextlib.suppress(asyncio.QueueFull):
            q.put_nowait(payload)


JOBS = JobManager(max_workers=max(2, (os.cpu_count() or 4) // 2))


# ------------------------------- App Setup ---------------------------------- #


def resolve_writable_path(preferred: Path, fallback_name: str) -> Path:
    """Return preferred path when writable, otherwise fallback in /tmp."""
    try:
        preferred.parent.mkdir(parents=True, exist_ok=True)
        probe = preferred.parent / ".write_probe"
        probe.touch(exist_ok=True)
        probe.unlink(missing_ok=True)
        return preferred
    except OSError:
        fallback = Path(tempfile.gettempdir()) / APP_NAME / fallback_name
        fallback.parent.mkdir(parents=True, exist_ok=True)
        return fallback


def sink_policy_from_env() -> SinkPolicy:
    max_files = os.getenv("BULK_RECONCILE_MAX_FILES")
    max_size = os.getenv("BULK_RECONCILE_MAX_FILE_SIZE")
    accepted = os.getenv("BULK_RECONCILE_ACCEPT_EXT", "")
    return SinkPolicy(
        max_files=int(max_files) if max_files else None,
        max_file_bytes=parse_size_to_bytes(max_size) if max_size else None,
        accepted_extensions={e.strip() for e in accepted.split(",") if e.strip()},
    )


WORK_DIR = resolve_writable_path(Path(os.getenv("BULK_RECONCILE_WORK_DIR", str(DEFAULT_WORK_DIR))) / ".keep", "scopes/.keep").parent
SINK_DIR = resolve_writable_path(Path(os.getenv("BULK_RECONCILE_SINK_DIR", str(DEFAULT_SINK_DIR))) / ".keep", "submissions/.keep").parent
DB_PATH = resolve_writable_path(Path(os.getenv("BULK_RECONCILE_DB", str(DEFAULT_DB))), "bulk_reconcile.db")
LOG_FILE = resolve_writable_path(Path(os.getenv("BULK_RECONCILE_LOG", str(DEFAULT_LOG_FILE))), "actions.log")
ROSTER_FILE = os.getenv("BULK_RECONCILE_ROSTER")
SINK_POLICY = sink_policy_from_env()


@contextmanager
def engine_session():
    engine = Engine(
        work_dir=WORK_DIR,
        db_path=DB_PATH,
        sink_dir=SINK_DIR,
        log_file=LOG_FILE,
        policy=SINK_POLICY,
    )
    try:
        yield engine
    finally:
        engine.close()


def resolve_recipients(inline: list[dict[str, Any]] | None, roster_file: str | None) -> list[Recipient]:
    if inline is not None:
        return [recipient_from_row(row) for row in inline]
    chosen = roster_file or ROSTER_FILE
    if not chosen:
        raise ValueError("A roster is required: pass recipients, roster_file, or set BULK_RECONCILE_ROSTER")
    return load_roster(Path(chosen))


app = FastAPI(
    title="Bulk Reconcile Server",
    version="1.0.0",
    description="Match bulk uploads to recipients and replace their submissions.",
)


@app.on_event("startup")
async def _on_startup():
    global APP_LOOP
    APP_LOOP = asyncio.get_running_loop()


app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost", "http://127.0.0.1"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def rate_limit_middleware(request: Request, call_next):
    client = request.client.host if request.client else "unknown"
    if not RATE_LIMITER.allow(client):
        return api_error("RATE_LIMITED", "Too many requests; slow down.", status_code=429)
    return await call_next(request)


@app.exception_handler(ReconcileError)
async def reconcile_error_handler(_: Request, exc: ReconcileError):
    LOGGER.warning("request_rejected code=%s err=%s", exc.code, exc)
    return api_error(exc.code, str(exc), status_code=exc.status_code)


@app.exception_handler(ValueError)
async def value_error_handler(_: Request, exc: ValueError):
    return api_error("INVALID_REQUEST", str(exc), status_code=400)


@app.exception_handler(FileNotFoundError)
async def not_found_handler(_: Request, exc: FileNotFoundError):
    return api_error("NOT_FOUND", str(exc), status_code=404)


@app.exception_handler(Exception)
async def unhandled_exception_handler(_: Request, exc: Exception):
    LOGGER.exception("Unhandled server error: %s", exc)
    return api_error("INTERNAL_SERVER_ERROR", str(exc), status_code=500)


# ---------------------------- Job Endpoints --------------------------------- #


@app.get("/api/v1/jobs/{job_id}", summary="Get job status/progress")
async def get_job(job_id: str):
    job = JOBS.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return api_ok(asdict(job))


@app.get("/api/v1/jobs/{job_id}/result", summary="Get job result")
async def get_job_result(job_id: str):
    job = JOBS.get(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    if job.status not in {"completed", "failed"}:
        return api_ok({"job_id": job_id, "status": job.status, "progress": job.progress})
    return api_ok({"job_id": job_id, "status": job.status, "result": job.result, "error": job.error})


@app.websocket("/api/v1/ws/jobs/{job_id}")
async def ws_job_progress(websocket: WebSocket, job_id: str):
    await websocket.accept()
    job = JOBS.get(job_id)
    if not job:
        await websocket.send_json({"status": "error", "message": "job not found"})
        await websocket.close()
        return

    q = JOBS.subscribe(job_id)
    try:
        await websocket.send_json({"event": "connected", "job_id": job_id})
        await websocket.send_json({"event": "snapshot", "job": asdict(job)})
        if job.status in {"completed", "failed"}:
            return

        while True:
            payload = await q.get()
            await websocket.send_json(payload)
            current = JOBS.get(job_id)
            if current and current.status in {"completed", "failed"}:
                break
    except WebSocketDisconnect:
        pass
    finally:
        JOBS.unsubscribe(job_id, q)
        with contextlib.suppress(RuntimeError):
            await websocket.close()


# ------------------------------ Upload APIs --------------------------------- #


@app.post("/api/v1/uploads/run", summary="Preview or commit a bulk upload")
async def run_upload(req: RunUploadRequest):
    draft = Path(req.draft_dir).expanduser()
    if not draft.is_dir():
        raise ValueError(f"Upload directory not found: {draft}")
    recipients = resolve_recipients(req.recipients, req.roster_file)
    config = ReconcileConfig(
        scope_key=req.scope_key,
        draft_dir=draft,
        identifier_field=req.identifier_field,
        commit=req.commit,
    )
    job = JOBS.create_job("upload", scope_key=req.scope_key)

    def runner(progress_cb: Callable[[dict[str, Any]], None]) -> dict[str, Any]:
        with engine_session() as eng:
            result = eng.run(config, recipients, progress_cb)
            LOGGER.info(
                "upload completed job=%s scope=%s recipients=%s unmatched=%s",
                job.job_id,
                config.scope_key,
                len(result["recipients"]),
                len(result["unmatched_paths"]),
            )
            return result

    future = JOBS.submit(job, runner)
    meta = {"type": "upload", "commit": req.commit}
    if not req.wait:
        return api_ok({"job_id": job.job_id, "status": job.status}, meta=meta)

    await asyncio.wrap_future(future)
    done = JOBS.get(job.job_id)
    if done is None or done.status != "completed":
        err = (done.error if done else None) or {}
        return api_error(
            err.get("code", "JOB_EXECUTION_ERROR"),
            err.get("message", "Upload run failed"),
            status_code=int(err.get("status_code", 500)),
            details={"job_id": job.job_id},
        )
    warnings = [f"{len(done.result['unmatched_paths'])} unmatched file(s); staging kept"] if done.result["unmatched_paths"] else []
    return api_ok(done.result, meta={**meta, "job_id": job.job_id}, warnings=warnings)


@app.post("/api/v1/identifiers/lookup", summary="Resolve one identifier to a recipient")
async def lookup_identifier(req: LookupRequest):
    recipients = resolve_recipients(req.recipients, req.roster_file)
    with engine_session() as eng:
        recipient = eng.lookup(recipients, req.identifier_field, req.token)
    return api_ok({"field": req.identifier_field, "recipient": recipient})


@app.post("/api/v1/scopes/{scope_key}/clear", summary="Delete the staging area of a scope")
async def clear_scope(scope_key: str):
    lock = JOBS.scope_lock(scope_key)
    if not lock.acquire(blocking=False):
        return api_error("SCOPE_BUSY", f"A run is in progress for scope {scope_key}", status_code=409)
    try:
        with engine_session() as eng:
            return api_ok(eng.clean(scope_key))
    finally:
        lock.release()


@app.get("/api/v1/submissions/{recipient_id}", summary="Current submission of a recipient")
async def get_submission(recipient_id: str):
    with engine_session() as eng:
        submission = eng.sink.get_submission(recipient_id)
    if submission is None:
        return api_error("NOT_FOUND", f"No submission stored for recipient {recipient_id}", status_code=404)
    return api_ok(submission)


@app.get("/api/v1/runs", summary="Recorded runs, newest first")
async def list_runs(scope_key: str | None = None, limit: int = 20):
    with engine_session() as eng:
        runs = eng.sink.list_runs(scope_key, limit=limit)
    return api_ok(runs, meta={"count": len(runs)})


@app.get("/healthz", summary="Liveness endpoint")
async def healthz():
    return api_ok({"service": "bulk-reconcile-server", "healthy": True})


@app.get("/", summary="Service index")
async def root_index():
    return api_ok(
        {
            "service": "bulk-reconcile-server",
            "version": "1.0.0",
            "openapi": "/docs",
            "core_endpoints": [
                "/api/v1/uploads/run",
                "/api/v1/identifiers/lookup",
                "/api/v1/scopes/{scope_key}/clear",
                "/api/v1/jobs/{job_id}",
                "/api/v1/jobs/{job_id}/result",
                "/api/v1/submissions/{recipient_id}",
                "/api/v1/runs",
            ],
            "note": "Default deployment should bind to 127.0.0.1 only for local safety.",
        }
    )


# --------------------------------- Runner ---------------------------------- #


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run Bulk Reconcile FastAPI server")
    parser.add_argument("--host", default=os.getenv("BULK_RECONCILE_HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("BULK_RECONCILE_PORT", "8002")))
    parser.add_argument("--reload", action="store_true")
    return parser.parse_args()


def main() -> None:
    import uvicorn

    args = parse_args()
    LOGGER.info("Starting Bulk Reconcile Server host=%s port=%s", args.host, args.port)
    uvicorn.run(
        "bulk_reconcile.reconcile_server:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
    )


if __name__ == "__main__":
    main()
