from __future__ import annotations
import asyncio
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import orjson
from fastapi import FastAPI, File, HTTPException, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, ORJSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from .broadcast import ProgressBroadcaster
from .config import Settings, settings as default_settings
from .errors import PackagingError
from .logging_config import logger, setup_logging
from .models import JobStatus
from .platforms.base import PlatformPackager
from .platforms.registry import build_registry
from .storage import SessionStore, zip_directory
from .versioning import VersionGate
from .worker import JobQueue

VERSION = "0.1.0"


class SubmitRequest(BaseModel):
    session_id: str
    platforms: list[str] = Field(default_factory=list)
    options: dict = Field(default_factory=dict)
    priority: int = 5


class BulkJobConfig(BaseModel):
    platforms: list[str] = Field(default_factory=list)
    options: dict = Field(default_factory=dict)
    priority: int = 5


class BulkSubmitRequest(BaseModel):
    session_id: str
    jobs: list[BulkJobConfig] = Field(default_factory=list)


@dataclass
class Services:
    settings: Settings
    sessions: SessionStore
    broadcaster: ProgressBroadcaster
    gate: VersionGate
    jobs: JobQueue
    packagers: dict[str, PlatformPackager]


def build_services(settings: Settings, packagers: Optional[dict[str, PlatformPackager]] = None) -> Services:
    settings.ensure_dirs()
    sessions = SessionStore(settings)
    broadcaster = ProgressBroadcaster(settings.SUBSCRIBER_QUEUE_SIZE)
    gate = VersionGate(settings.PLATFORM_VERSIONS)
    packagers = packagers if packagers is not None else build_registry(settings)
    jobs = JobQueue(settings, sessions, broadcaster, gate, packagers)
    return Services(settings, sessions, broadcaster, gate, jobs, packagers)


def create_app(settings: Optional[Settings] = None, packagers: Optional[dict[str, PlatformPackager]] = None) -> FastAPI:
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.LOG_DIR:
            setup_logging(settings.LOG_DIR)
        services = build_services(settings, packagers)
        logger.info("Starting packaging service")
        logger.info(f"OUTPUT_DIR_BASE: {settings.OUTPUT_DIR_BASE}")
        logger.info(f"MAX_CONCURRENT_JOBS: {settings.MAX_CONCURRENT_JOBS}")
        logger.info(f"UNIT_TIMEOUT_SECONDS: {settings.UNIT_TIMEOUT_SECONDS}")
        logger.info(f"PLATFORMS: {', '.join(services.packagers)}")
        services.sessions.load_existing()
        services.jobs.start_workers()
        app.state.services = services
        yield
        logger.info("Stopping packaging service")
        services.jobs.shutdown()
        services.broadcaster.close_all()

    app = FastAPI(title="Build Packaging API", version=VERSION, default_response_class=ORJSONResponse, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.CORS_ORIGINS),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(PackagingError)
    async def packaging_error_handler(request: Request, exc: PackagingError):
        return ORJSONResponse(status_code=exc.status_code, content=exc.to_dict())

    def services_of(request: Request) -> Services:
        return request.app.state.services

    @app.get("/health")
    async def health(request: Request):
        """Health check endpoint."""
        s = services_of(request)
        return {"status": "ok", "version": VERSION, "python": sys.executable, "jobs": s.jobs.stats()}

    @app.get("/platforms")
    def platforms(request: Request):
        s = services_of(request)
        breakers = s.jobs.breaker.state()
        out = []
        for tag, packager in s.packagers.items():
            info = packager.info()
            info["current_version"] = s.gate.get_version(tag)
            info["circuit"] = breakers.get(tag, {"recent_failures": 0, "open": False})
            out.append(info)
        return {"platforms": out, "versions": s.gate.all_versions()}

    # sessions

    @app.post("/upload")
    def upload(request: Request, file: UploadFile = File(...)):
        s = services_of(request)
        session = s.sessions.create(file.file, file.filename or "build.zip")
        return session.to_dict()

    @app.get("/sessions")
    def list_sessions(request: Request):
        return [x.to_dict() for x in services_of(request).sessions.list()]

    @app.get("/sessions/{session_id}")
    def get_session(request: Request, session_id: str):
        return services_of(request).sessions.get(session_id).to_dict()

    @app.delete("/sessions/{session_id}")
    def delete_session(request: Request, session_id: str):
        services_of(request).sessions.remove(session_id)
        return {"deleted": True}

    # jobs

    @app.post("/jobs", status_code=202)
    def submit(request: Request, body: SubmitRequest):
        job = services_of(request).jobs.submit(body.session_id, body.platforms, body.options, priority=body.priority)
        return {"job_id": job.job_id, "status": job.status.value, "platforms": job.platforms}

    @app.post("/jobs/bulk", status_code=202)
    def submit_bulk(request: Request, body: BulkSubmitRequest):
        jobs = services_of(request).jobs.submit_bulk(body.session_id, [c.model_dump() for c in body.jobs])
        return {
            "session_id": body.session_id,
            "total_jobs": len(jobs),
            "jobs": [{"job_id": j.job_id, "status": j.status.value, "platforms": j.platforms} for j in jobs],
        }

    @app.get("/jobs")
    def list_jobs(request: Request, status: Optional[JobStatus] = None, limit: int = 50):
        return [j.snapshot() for j in services_of(request).jobs.list(status=status, limit=limit)]

    @app.get("/jobs/history")
    def job_history(request: Request, limit: int = 50):
        return [j.snapshot() for j in services_of(request).jobs.history(limit)]

    @app.get("/jobs/history/{index}/reprocess")
    def reprocess_from_history(request: Request, index: int):
        return services_of(request).jobs.reprocess(index)

    @app.get("/jobs/{job_id}")
    def get_job(request: Request, job_id: str):
        return services_of(request).jobs.snapshot(job_id)

    @app.get("/status/{job_id}")
    def status(request: Request, job_id: str):
        snap = services_of(request).jobs.snapshot(job_id)
        return {k: snap[k] for k in ("status", "partial", "progress", "message", "started_at", "finished_at")}

    @app.post("/jobs/{job_id}/cancel", status_code=202)
    def cancel(request: Request, job_id: str):
        job = services_of(request).jobs.cancel(job_id)
        return {"job_id": job_id, "cancel_requested": True, "status": job.status.value}

    @app.post("/jobs/{job_id}/retry", status_code=202)
    def retry(request: Request, job_id: str):
        job = services_of(request).jobs.retry(job_id)
        return {"job_id": job.job_id, "retry_of": job_id, "status": job.status.value}

    @app.get("/jobs/{job_id}/reprocess")
    def reprocess(request: Request, job_id: str):
        return services_of(request).jobs.reprocess(job_id)

    @app.delete("/jobs/{job_id}")
    def delete_job(request: Request, job_id: str):
        services_of(request).jobs.remove(job_id)
        return {"deleted": True}

    @app.get("/logs/{job_id}", response_class=PlainTextResponse)
    def logs(request: Request, job_id: str):
        job = services_of(request).jobs.get(job_id)
        if not job.log_path or not Path(job.log_path).exists():
            raise HTTPException(404, "log not found")
        return Path(job.log_path).read_text(encoding="utf-8", errors="replace")

    @app.get("/jobs/{job_id}/results")
    def results(request: Request, job_id: str):
        snap = services_of(request).jobs.snapshot(job_id)
        files = []
        for platform, result in snap["results"].items():
            for artifact in result["artifacts"]:
                files.append({
                    "platform": platform,
                    "type": artifact["type"],
                    "filename": artifact["filename"],
                    "size_bytes": artifact["size"],
                    "download_url": f"/download/{job_id}/{platform}/{artifact['filename']}",
                })
        return files

    @app.get("/download/{job_id}/all.zip")
    def download_all(request: Request, job_id: str):
        job = services_of(request).jobs.get(job_id)
        if not job.output_dir:
            raise HTTPException(404, "job has no output")
        if not job.status.terminal:
            raise HTTPException(409, f"job is {job.status.value}")
        zip_path = job.output_dir / "all.zip"
        zip_directory(job.output_dir, zip_path)
        return FileResponse(zip_path, filename=f"packages_{job_id}.zip")

    @app.get("/download/{job_id}/{filename:path}")
    def download_file(request: Request, job_id: str, filename: str):
        job = services_of(request).jobs.get(job_id)
        if not job.output_dir:
            raise HTTPException(404, "job has no output")
        target = (job.output_dir / filename).resolve()
        # prevent path traversal
        if not target.is_relative_to(job.output_dir.resolve()):
            raise HTTPException(400, "invalid path")
        if not target.exists() or not target.is_file():
            raise HTTPException(404, "file not found")
        return FileResponse(target, filename=target.name)

    # live progress

    @app.websocket("/ws")
    async def progress_channel(websocket: WebSocket, job_id: Optional[str] = None):
        s: Services = websocket.app.state.services
        await websocket.accept()

        async def wait_for_disconnect():
            try:
                while True:
                    await websocket.receive_text()
            except WebSocketDisconnect:
                return

        with s.broadcaster.subscribe(job_id) as sub:
            await websocket.send_text(orjson.dumps({"type": "connected", "job_id": job_id}).decode())
            client = asyncio.create_task(wait_for_disconnect())
            try:
                while not client.done() and not sub.closed:
                    event = await run_in_threadpool(sub.get, 0.5)
                    if event is not None:
                        await websocket.send_text(orjson.dumps(event).decode())
            except (WebSocketDisconnect, RuntimeError):
                pass
            finally:
                client.cancel()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=default_settings.HOST, port=default_settings.PORT)
