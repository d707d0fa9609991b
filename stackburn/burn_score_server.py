#!/usr/bin/env python3
"""StackBurn local server (FastAPI).

Local service around the scanner and the burn score engine.
- Background scan and duplicate jobs with REST + WebSocket progress
- Cooperative job cancellation (partial, consistent results)
- Burn score, categories and Markdown report endpoints
- Cloud / repository listing summarizers
- Caller-owned remote source sessions with expiry

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
import traceback
import uuid
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable

from fastapi import APIRouter, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from .burn_score_engine import BurnScoreEngine, BurnScorePolicy, render_markdown_report
from .local_scan_engine import APP_NAME, LocalScanner, ScanConfig, detect_duplicates, now_utc_iso, scan_directory
from .remote_sources import (
    DEFAULT_SESSION_TTL,
    STALE_REPO_DAYS,
    SessionExpired,
    SessionNotFound,
    SessionStore,
    summarize_drive_files,
    summarize_repositories,
)
from .source_payloads import SOURCE_CLOUD, SOURCE_CODE_HOSTING, PayloadError

# ------------------------------- Logging ------------------------------------ #


def configure_logging(log_file: Path) -> logging.Logger:
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
    except OSError:
        log_file = Path(tempfile.gettempdir()) / APP_NAME / "server.log"
        log_file.parent.mkdir(parents=True, exist_ok=True)
    logger = logging.getLogger(f"{APP_NAME}.server")
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


LOGGER = configure_logging(Path(os.getenv("STACKBURN_LOG", str(Path(tempfile.gettempdir()) / APP_NAME / "server.log"))))


# ---------------------------- API Models ------------------------------------ #


class ScanRequest(BaseModel):
    roots: list[str] = Field(default_factory=lambda: [str(Path.cwd())])
    workers: int = Field(default=1, ge=1, le=32)
    follow_symlinks: bool = False
    include_hidden: bool = False


class BurnScoreRequest(BaseModel):
    # left untyped so a non-object payload is reported per source
    local: Any = None
    cloud: Any = None
    code_hosting: Any = None
    local_job_id: str | None = None
    strict: bool = False


class ReportRequest(BurnScoreRequest):
    result: dict[str, Any] | None = None
    top_n: int = Field(default=5, ge=1, le=50)


class DriveListingRequest(BaseModel):
    files: list[dict[str, Any]] = Field(default_factory=list)
    session_id: str | None = None


class RepoListingRequest(BaseModel):
    repos: list[dict[str, Any]] = Field(default_factory=list)
    stale_days: int = Field(default=STALE_REPO_DAYS, ge=0)
    session_id: str | None = None


class SessionRequest(BaseModel):
    source: str
    token: str
    ttl_seconds: int | None = Field(default=None, gt=0)


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


# ------------------------------- Job Manager -------------------------------- #


TERMINAL_STATUSES = {"completed", "failed", "cancelled"}
MAX_FINISHED_JOBS = 200


@dataclass
class JobState:
    job_id: str
    job_type: str
    status: str = "queued"
    created_at: str = field(default_factory=now_utc_iso)
    updated_at: str = field(default_factory=now_utc_iso)
    progress: dict[str, Any] = field(default_factory=lambda: {"phase": "queued", "pct": 0.0})
    cancel_requested: bool = False
    result: dict[str, Any] | None = None
    error: dict[str, Any] | None = None


JobFunc = Callable[[Callable[[dict[str, Any]], None], Callable[[], bool]], dict[str, Any]]


class JobManager:
    def __init__(self, max_workers: int = 4, max_finished: int = MAX_FINISHED_JOBS):
        if max_finished < 1:
            raise ValueError("max_finished must be >= 1")
        self.executor = ThreadPoolExecutor(max_workers=max_workers)
        self.loop: asyncio.AbstractEventLoop | None = None
        self.max_finished = max_finished
        self._jobs: dict[str, JobState] = {}
        self._cancel: dict[str, threading.Event] = {}
        self._subs: dict[str, set[asyncio.Queue]] = {}
        # terminal jobs, oldest first; running jobs are never evicted
        self._finished: deque[str] = deque()
        self._lock = threading.Lock()

    def create_job(self, job_type: str) -> JobState:
        job = JobState(job_id=uuid.uuid4().hex, job_type=job_type)
        with self._lock:
            self._jobs[job.job_id] = job
            self._cancel[job.job_id] = threading.Event()
            self._subs[job.job_id] = set()
        return job

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def _mark_finished_locked(self, job_id: str) -> None:
        self._finished.append(job_id)
        while len(self._finished) > self.max_finished:
            old = self._finished.popleft()
            self._jobs.pop(old, None)
            self._cancel.pop(old, None)
            self._subs.pop(old, None)
            LOGGER.info("job_evicted job=%s", old)

    def get(self, job_id: str) -> JobState | None:
        with self._lock:
            return self._jobs.get(job_id)

    def require(self, job_id: str) -> JobState:
        job = self.get(job_id)
        if not job:
            raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
        return job

    def cancel(self, job_id: str) -> JobState:
        job = self.require(job_id)
        with self._lock:
            if job.status not in TERMINAL_STATUSES:
                job.cancel_requested = True
                job.updated_at = now_utc_iso()
                self._cancel[job_id].set()
        LOGGER.info("job_cancel_requested job=%s status=%s", job_id, job.status)
        return job

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
            if self.loop and self.loop.is_running():
                self.loop.call_soon_threadsafe(_queue_put_nowait_safe, q, payload)
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
            job.status = "cancelled" if result.get("cancelled") else "completed"
            job.updated_at = now_utc_iso()
            status = job.status
            self._mark_finished_locked(job_id)

        self._notify(job_id, {"event": status, "job_id": job_id, "result": result})

    def _set_error(self, job_id: str, code: str, message: str, tb: str = "") -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if not job:
                return
            job.error = {"code": code, "message": message, "traceback": tb}
            job.status = "failed"
            job.updated_at = now_utc_iso()
            self._mark_finished_locked(job_id)

        self._notify(job_id, {"event": "failed", "job_id": job_id, "error": {"code": code, "message": message}})

    def submit(self, job: JobState, func: JobFunc) -> None:
        self._set_status(job.job_id, "running")
        cancel_event = self._cancel[job.job_id]

        def runner() -> None:
            try:
                result = func(lambda p: self.update_progress(job.job_id, p), cancel_event.is_set)
                self._set_result(job.job_id, result)
            except Exception as exc:  # pylint: disable=broad-except
                LOGGER.error("job_failed job=%s type=%s err=%s", job.job_id, job.job_type, exc)
                self._set_error(job.job_id, "JOB_EXECUTION_ERROR", str(exc), traceback.format_exc())

        self.executor.submit(runner)

    def shutdown(self) -> None:
        with self._lock:
            for ev in self._cancel.values():
                ev.set()
        self.executor.shutdown(wait=False, cancel_futures=True)


def _queue_put_nowait_safe(q: asyncio.Queue, payload: dict[str, Any]) -> None:
    try:
        q.put_nowait(payload)
    except asyncio.QueueFull:
        # drop the oldest event, keep the latest
        with contextlib.suppress(asyncio.QueueEmpty):
            q.get_nowait()
        with contextlib.suppress(asyncio.QueueFull):
            q.put_nowait(payload)


# ------------------------------- Validators --------------------------------- #


def build_scan_config(req: ScanRequest) -> ScanConfig:
    cfg = ScanConfig(
        roots=list(req.roots),
        workers=req.workers,
        follow_symlinks=req.follow_symlinks,
        include_hidden=req.include_hidden,
    )
    # fail fast with 400 instead of inside the job
    cfg.roots = LocalScanner(cfg).normalize_roots()
    return cfg


def resolve_local_payload(jobs: JobManager, req: BurnScoreRequest) -> Any:
    if not req.local_job_id:
        return req.local
    if req.local is not None:
        raise ValueError("Provide either local or local_job_id, not both")
    job = jobs.require(req.local_job_id)
    if job.job_type != "scan":
        raise ValueError(f"Job {job.job_id} is a {job.job_type} job, not a scan")
    if job.status not in {"completed", "cancelled"} or job.result is None:
        raise ValueError(f"Scan job {job.job_id} has not finished (status={job.status})")
    return job.result


def check_session(sessions: SessionStore, session_id: str | None, source: str) -> None:
    if not session_id:
        return
    session = sessions.get(session_id)
    if session.source != source:
        raise ValueError(f"Session {session_id} belongs to {session.source}, not {source}")


# ------------------------------- Routes ------------------------------------- #


router = APIRouter()


def _jobs(request: Request) -> JobManager:
    return request.app.state.jobs


def _sessions(request: Request) -> SessionStore:
    return request.app.state.sessions


def _engine(request: Request) -> BurnScoreEngine:
    return request.app.state.engine


@router.get("/healthz", summary="Liveness endpoint")
async def healthz(request: Request):
    return api_ok({"service": APP_NAME, "alive": True, "sessions": len(_sessions(request))})


@router.get("/api/v1/jobs/{job_id}", summary="Get job status/progress")
async def get_job(job_id: str, request: Request):
    return api_ok(asdict(_jobs(request).require(job_id)))


@router.get("/api/v1/jobs/{job_id}/result", summary="Get job result")
async def get_job_result(job_id: str, request: Request):
    job = _jobs(request).require(job_id)
    if job.status not in TERMINAL_STATUSES:
        return api_ok({"job_id": job_id, "status": job.status, "progress": job.progress})
    return api_ok({"job_id": job_id, "status": job.status, "result": job.result, "error": job.error})


@router.post("/api/v1/jobs/{job_id}/cancel", summary="Request cooperative cancellation")
async def cancel_job(job_id: str, request: Request):
    job = _jobs(request).cancel(job_id)
    return api_ok({"job_id": job_id, "status": job.status, "cancel_requested": job.cancel_requested})


@router.websocket("/api/v1/ws/jobs/{job_id}")
async def ws_job_progress(websocket: WebSocket, job_id: str):
    jobs: JobManager = websocket.app.state.jobs
    await websocket.accept()
    job = jobs.get(job_id)
    if not job:
        await websocket.send_json({"status": "error", "message": "job not found"})
        await websocket.close()
        return

    q = jobs.subscribe(job_id)
    try:
        await websocket.send_json({"event": "connected", "job_id": job_id})
        await websocket.send_json({"event": "snapshot", "job": asdict(job)})

        while True:
            current = jobs.get(job_id)
            if current and current.status in TERMINAL_STATUSES and q.empty():
                break
            payload = await q.get()
            await websocket.send_json(payload)
    except WebSocketDisconnect:
        pass
    finally:
        jobs.unsubscribe(job_id, q)
        with contextlib.suppress(RuntimeError):
            await websocket.close()


@router.post("/api/v1/local/scans/start", summary="Start a local scan job")
async def start_scan(req: ScanRequest, request: Request):
    cfg = build_scan_config(req)
    jobs = _jobs(request)
    job = jobs.create_job("scan")

    def runner(progress_cb: Callable[[dict[str, Any]], None], cancel_flag: Callable[[], bool]) -> dict[str, Any]:
        result = scan_directory(cfg.roots, config=cfg, cancel_flag=cancel_flag, progress_cb=progress_cb)
        LOGGER.info("scan_job_done job=%s files=%s cancelled=%s", job.job_id, result["total_files"], result["cancelled"])
        return result

    jobs.submit(job, runner)
    return api_ok({"job_id": job.job_id, "status": job.status}, meta={"type": "scan", "roots": cfg.roots})


@router.post("/api/v1/local/duplicates", summary="Start a duplicate detection job")
async def start_duplicates(req: ScanRequest, request: Request):
    cfg = build_scan_config(req)
    jobs = _jobs(request)
    job = jobs.create_job("duplicates")

    def runner(progress_cb: Callable[[dict[str, Any]], None], cancel_flag: Callable[[], bool]) -> dict[str, Any]:
        groups = detect_duplicates(cfg.roots, config=cfg, cancel_flag=cancel_flag, progress_cb=progress_cb)
        return {
            "roots": cfg.roots,
            "cancelled": cancel_flag(),
            "groups": len(groups),
            "wasted_bytes": sum(g.wasted_size for g in groups),
            "duplicates": [g.to_dict() for g in groups],
        }

    jobs.submit(job, runner)
    return api_ok({"job_id": job.job_id, "status": job.status}, meta={"type": "duplicates", "roots": cfg.roots})


def _calculate(request: Request, req: BurnScoreRequest):
    local = resolve_local_payload(_jobs(request), req)
    return _engine(request).calculate(local=local, cloud=req.cloud, code_hosting=req.code_hosting, strict=req.strict)


@router.post("/api/v1/burn-score", summary="Calculate the burn score")
async def burn_score(req: BurnScoreRequest, request: Request):
    result = _calculate(request, req)
    return api_ok(result.to_dict(), meta={"sources": sorted(result.category_scores)}, warnings=result.warnings)


@router.post("/api/v1/burn-score/categories", summary="Merged file categories only")
async def burn_score_categories(req: BurnScoreRequest, request: Request):
    result = _calculate(request, req)
    return api_ok(result.file_categories.to_dict(), warnings=result.warnings)


@router.post("/api/v1/burn-score/report", summary="Render a Markdown report")
async def burn_score_report(req: ReportRequest, request: Request):
    if req.result is not None:
        data, warnings = req.result, []
    else:
        result = _calculate(request, req)
        data, warnings = result.to_dict(), result.warnings
    return api_ok({"markdown": render_markdown_report(data, top_n=req.top_n)}, warnings=warnings)


@router.post("/api/v1/sources/cloud/summarize", summary="Condense a cloud file listing")
async def summarize_cloud(req: DriveListingRequest, request: Request):
    check_session(_sessions(request), req.session_id, SOURCE_CLOUD)
    return api_ok(summarize_drive_files(req.files), meta={"source": SOURCE_CLOUD})


@router.post("/api/v1/sources/code-hosting/summarize", summary="Condense a repository listing")
async def summarize_code_hosting(req: RepoListingRequest, request: Request):
    check_session(_sessions(request), req.session_id, SOURCE_CODE_HOSTING)
    payload = summarize_repositories(req.repos, stale_days=req.stale_days)
    return api_ok(payload, meta={"source": SOURCE_CODE_HOSTING}, warnings=payload["warnings"])


@router.post("/api/v1/sessions", summary="Open a remote source session")
async def create_session(req: SessionRequest, request: Request):
    session = _sessions(request).create(req.source, req.token, ttl_seconds=req.ttl_seconds)
    return api_ok(session.describe())


@router.get("/api/v1/sessions/{session_id}", summary="Describe a session")
async def get_session(session_id: str, request: Request):
    return api_ok(_sessions(request).get(session_id).describe())


@router.delete("/api/v1/sessions/{session_id}", summary="Revoke a session")
async def revoke_session(session_id: str, request: Request):
    if not _sessions(request).revoke(session_id):
        raise SessionNotFound(f"Unknown session: {session_id}")
    return api_ok({"session_id": session_id, "revoked": True})


# ------------------------------ App Factory --------------------------------- #


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(PayloadError)
    async def payload_error_handler(_: Request, exc: PayloadError):
        return api_error("INVALID_PAYLOAD", exc.message, status_code=422, details={"source": exc.source})

    @app.exception_handler(SessionExpired)
    async def session_expired_handler(_: Request, exc: SessionExpired):
        return api_error("SESSION_EXPIRED", str(exc), status_code=401)

    @app.exception_handler(SessionNotFound)
    async def session_not_found_handler(_: Request, exc: SessionNotFound):
        return api_error("SESSION_NOT_FOUND", str(exc), status_code=404)

    @app.exception_handler(ValueError)
    async def value_error_handler(_: Request, exc: ValueError):
        return api_error("INVALID_REQUEST", str(exc), status_code=400)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(_: Request, exc: RequestValidationError):
        return api_error("INVALID_REQUEST", "Request body failed validation", status_code=422,
                         details={"errors": [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in exc.errors()]})

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(_: Request, exc: StarletteHTTPException):
        code = "NOT_FOUND" if exc.status_code == 404 else "HTTP_ERROR"
        return api_error(code, str(exc.detail), status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(_: Request, exc: Exception):
        LOGGER.exception("Unhandled server error: %s", exc)
        return api_error("INTERNAL_SERVER_ERROR", str(exc), status_code=500)


def create_app(
    policy: BurnScorePolicy | None = None,
    session_ttl: int | None = None,
    max_workers: int | None = None,
    max_finished_jobs: int | None = None,
) -> FastAPI:
    if policy is None:
        policy_file = os.getenv("STACKBURN_POLICY_FILE")
        policy = BurnScorePolicy.from_file(policy_file) if policy_file else BurnScorePolicy()
    ttl = session_ttl or int(os.getenv("STACKBURN_SESSION_TTL", str(DEFAULT_SESSION_TTL)))
    jobs = JobManager(
        max_workers=max_workers or max(2, (os.cpu_count() or 4) // 2),
        max_finished=max_finished_jobs or int(os.getenv("STACKBURN_MAX_JOBS", str(MAX_FINISHED_JOBS))),
    )

    @contextlib.asynccontextmanager
    async def lifespan(_: FastAPI):
        jobs.loop = asyncio.get_running_loop()
        LOGGER.info("server_started session_ttl=%s", ttl)
        try:
            yield
        finally:
            jobs.shutdown()

    app = FastAPI(
        title="StackBurn Server",
        version="1.0.0",
        description="Local digital clutter scanning and burn score API.",
        lifespan=lifespan,
    )
    app.state.jobs = jobs
    app.state.sessions = SessionStore(ttl_seconds=ttl)
    app.state.engine = BurnScoreEngine(policy)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost", "http://127.0.0.1", "tauri://localhost"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)
    app.include_router(router)
    return app


app = create_app()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the StackBurn FastAPI server")
    parser.add_argument("--host", default=os.getenv("STACKBURN_HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("STACKBURN_PORT", "8765")))
    parser.add_argument("--reload", action="store_true")
    return parser.parse_args(argv)


def main() -> None:
    import uvicorn

    args = parse_args()
    LOGGER.info("Starting StackBurn server host=%s port=%s", args.host, args.port)
    uvicorn.run(
        "stackburn.burn_score_server:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
    )


if __name__ == "__main__":
    main()
