from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Callable, List, Literal, Optional

from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from chunkflow.config import resolve_config
from chunkflow.engine import Engine
from chunkflow.errors import (
    EngineInternalError,
    InvalidJobStateError,
    JobNotFoundError,
    SubscriberLimitError,
)
from chunkflow.ingest import parse_payloads
from chunkflow.models import EngineConfig
from chunkflow.queue.models import Job, ProgressEvent

logger = logging.getLogger(__name__)

ContentType = Literal["company", "person", "news"]


# --- Pydantic Models for Requests/Responses ---
class JobCreate(BaseModel):
    payloads: List[str] = Field(..., description="One payload (URL) per work item")
    contentType: ContentType = "company"  # noqa: N815
    fileName: Optional[str] = None  # noqa: N815
    start: bool = True


class RetryRequest(BaseModel):
    itemIds: Optional[List[str]] = None  # noqa: N815


class JobResponse(BaseModel):
    id: str
    status: str
    totalItems: int  # noqa: N815
    processedCount: int  # noqa: N815
    failedCount: int  # noqa: N815
    progress: float
    contentType: str  # noqa: N815
    fileName: Optional[str] = None  # noqa: N815
    error: Optional[str] = None
    createdAt: str  # noqa: N815
    updatedAt: str  # noqa: N815


def _job_to_response(job: Job) -> dict:
    return JobResponse(
        id=job.id,
        status=job.status.value,
        totalItems=job.total_items,
        processedCount=job.processed_count,
        failedCount=job.failed_count,
        progress=round(job.progress_pct, 2),
        contentType=job.content_type,
        fileName=job.file_name,
        error=job.error,
        createdAt=job.created_at.isoformat(),
        updatedAt=job.updated_at.isoformat(),
    ).model_dump()


def _event_to_sse(event: ProgressEvent) -> str:
    return f"data: {event.model_dump_json()}\n\n"


async def _call(fn: Callable, *args, **kwargs):
    """Run a blocking engine call off the event loop, mapping typed errors."""
    try:
        return await asyncio.to_thread(fn, *args, **kwargs)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidJobStateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except EngineInternalError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


def create_app(engine: Optional[Engine] = None, config: Optional[EngineConfig] = None) -> FastAPI:
    """Build the job-control API.

    An engine passed in is used as-is and left running on shutdown; otherwise
    one is built from ``config`` (or the resolved config files) and owned by
    the app lifespan.
    """
    owns_engine = engine is None
    if engine is None:
        engine = Engine(config or resolve_config())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if owns_engine:
            engine.start()
        yield
        if owns_engine:
            engine.shutdown()

    app = FastAPI(title="chunkflow", lifespan=lifespan)
    app.state.engine = engine
    controller = engine.controller

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # For dev
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check():
        queue_stats = await asyncio.to_thread(engine.queue.stats)
        return {
            "status": "ok",
            "workers": engine.pool.n_workers,
            "workersRunning": engine.pool.running,
            "queue": queue_stats,
        }

    @app.get("/jobs")
    async def list_jobs(limit: int = 100):
        """List jobs, most recent first."""
        jobs = await _call(controller.list_jobs, limit)
        return [_job_to_response(job) for job in jobs]

    @app.post("/jobs", status_code=status.HTTP_201_CREATED)
    async def create_job(job_data: JobCreate):
        job = await _call(
            engine.submit,
            job_data.payloads,
            file_name=job_data.fileName,
            content_type=job_data.contentType,
            start=job_data.start,
        )
        return _job_to_response(job)

    @app.post("/jobs/upload", status_code=status.HTTP_201_CREATED)
    async def upload_job(
        file: UploadFile = File(...),
        contentType: ContentType = Form("company"),  # noqa: N803
        start: bool = Form(True),
    ):
        """Create a job from an uploaded CSV (``url`` column) or text file."""
        raw = await file.read()
        try:
            payloads = parse_payloads(raw.decode("utf-8-sig"))
        except UnicodeDecodeError:
            raise HTTPException(status_code=400, detail="File must be UTF-8 text")
        if not payloads:
            raise HTTPException(status_code=400, detail="No payloads found in file")

        upload_dir = Path(engine.config.database.artifact_dir)
        upload_dir.mkdir(parents=True, exist_ok=True)
        suffix = Path(file.filename or "").suffix or ".csv"
        artifact = upload_dir / f"{uuid.uuid4()}{suffix}"
        artifact.write_bytes(raw)

        job = await _call(
            engine.submit,
            payloads,
            file_name=file.filename,
            content_type=contentType,
            artifact_path=str(artifact),
            start=start,
        )
        return _job_to_response(job)

    @app.get("/jobs/{job_id}")
    async def get_job(job_id: str):
        snapshot = await _call(controller.get_status, job_id)
        body = _job_to_response(snapshot.job)
        body["live"] = snapshot.progress.model_dump()
        return body

    @app.get("/jobs/{job_id}/items")
    async def list_items(job_id: str, offset: int = 0, limit: int = 100):
        items = await _call(controller.list_items, job_id, offset=offset, limit=limit)
        return [
            {
                "id": item.id,
                "position": item.position,
                "payload": item.payload,
                "status": item.status.value,
                "result": item.result,
                "error": item.error,
                "retryCount": item.retry_count,
            }
            for item in items
        ]

    @app.post("/jobs/{job_id}/start")
    async def start_job(job_id: str):
        job = await _call(controller.start, job_id)
        return _job_to_response(job)

    @app.post("/jobs/{job_id}/stop")
    async def stop_job(job_id: str):
        stopped = await _call(controller.stop, job_id)
        return {"id": job_id, "stopped": stopped}

    @app.post("/jobs/{job_id}/resume")
    async def resume_job(job_id: str):
        resumed = await _call(controller.resume, job_id)
        return {"id": job_id, "resumed": resumed}

    @app.post("/jobs/{job_id}/retry")
    async def retry_job(job_id: str, data: Optional[RetryRequest] = None):
        item_ids = data.itemIds if data else None
        count = await _call(controller.retry_failed, job_id, item_ids)
        return {"id": job_id, "retried": count}

    @app.delete("/jobs/{job_id}")
    async def delete_job(job_id: str):
        """Delete a job, its items and its stored upload."""
        await _call(controller.delete, job_id)
        return {"status": "deleted", "id": job_id}

    async def event_generator(job_id: str, request: Request) -> AsyncGenerator[str, None]:
        """
        SSE generator: current snapshot first, then broadcaster events until a
        terminal event or client disconnect.
        """
        try:
            sub = engine.broadcaster.subscribe(job_id, replay=False)
        except SubscriberLimitError as e:
            yield f'event: error\ndata: {{"detail": "{e}"}}\n\n'
            return

        try:
            try:
                snapshot = await _call(controller.get_status, job_id)
            except HTTPException:
                return
            first = ProgressEvent.from_progress(job_id, snapshot.job.status, snapshot.progress)
            yield _event_to_sse(first)
            if first.is_terminal:
                return

            while True:
                if await request.is_disconnected():
                    break
                event = await asyncio.to_thread(sub.get, 1.0)
                if event is None:
                    if sub.closed:
                        break
                    continue
                yield _event_to_sse(event)
                if event.is_terminal:
                    break
        finally:
            sub.close()

    @app.get("/jobs/{job_id}/events")
    async def job_events(job_id: str, request: Request):
        await _call(controller.get_status, job_id)
        return StreamingResponse(event_generator(job_id, request), media_type="text/event-stream")

    return app
