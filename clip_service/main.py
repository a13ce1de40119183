from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from uuid import UUID

from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.responses import FileResponse, JSONResponse
from starlette.background import BackgroundTask
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile

from clip_service.config import Settings, get_settings
from clip_service.errors import JobNotFoundError, QueueUnavailableError, ValidationError
from clip_service.models.api import CreateClipResponse, ErrorResponse, HealthResponse, JobStatusResponse
from clip_service.models.domain import ClipJobState
from clip_service.queue.queue import BaseQueue, KafkaQueue, LocalQueue
from clip_service.services.clip_service import ClipService
from clip_service.services.intake import UploadedMedia
from clip_service.storage.repository import ClipJobRepository

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

log = logging.getLogger(__name__)


def build_queue(settings: Settings, service: ClipService) -> BaseQueue:
    if settings.kafka_enabled:
        return KafkaQueue(
            bootstrap_servers=settings.kafka_bootstrap_servers,
            topic=settings.kafka_topic,
            group_id=settings.kafka_group_id,
            processor=service.process_job,
            worker_count=settings.worker_count,
            # A render may hold the poll loop up to the encoder timeout.
            max_poll_interval_ms=int((settings.render_timeout_seconds + 60) * 1000),
        )
    return LocalQueue(processor=service.process_job, worker_count=settings.worker_count)


def build_service(settings: Settings) -> ClipService:
    service = ClipService(repo=ClipJobRepository(), settings=settings)
    service.bind_queue(build_queue(settings, service))
    return service


def create_app(settings: Settings | None = None, service: ClipService | None = None) -> FastAPI:
    settings = settings or get_settings()
    service = service or build_service(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        service.start()
        try:
            yield
        finally:
            service.shutdown()

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.clip_service = service
    _register_routes(app)
    return app


def get_clip_service(request: Request) -> ClipService:
    return request.app.state.clip_service


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=message).model_dump())


def _register_routes(app: FastAPI) -> None:
    @app.post("/api/create-clip", response_model=CreateClipResponse)
    async def create_clip(request: Request, service: ClipService = Depends(get_clip_service)):
        uploads: list[UploadedMedia] = []
        metadata: dict[str, str] = {}
        try:
            form = await request.form()
            for key, value in form.multi_items():
                if isinstance(value, UploadFile):
                    uploads.append(
                        UploadedMedia(
                            filename=value.filename or key,
                            data=await value.read(),
                            content_type=value.content_type,
                        )
                    )
                else:
                    metadata[key] = value
            job = await run_in_threadpool(service.create_job, uploads, metadata)
        except ValidationError as exc:
            log.warning("clip request rejected", extra={"error": str(exc)})
            return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))
        except QueueUnavailableError:
            log.error("job queue unavailable", exc_info=True)
            return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Job queue unavailable")
        except Exception:
            log.exception("error processing request")
            return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Error processing request")
        body = CreateClipResponse(job_id=job.id, session_id=job.session_id)
        return JSONResponse(content=body.model_dump(mode="json", by_alias=True))

    @app.get("/api/create-clip")
    def get_clip(
        job_id: str | None = Query(default=None, alias="jobId"),
        service: ClipService = Depends(get_clip_service),
    ):
        if not job_id:
            return _error(status.HTTP_400_BAD_REQUEST, "Job ID is required")
        try:
            parsed_id = UUID(job_id)
            job = service.get_job(parsed_id)
            if job.state != ClipJobState.COMPLETED:
                state, error = service.client_status(job)
                return JobStatusResponse(status=state, error=error).model_dump(exclude_none=True)
            job = service.take_result(parsed_id)
        except (ValueError, JobNotFoundError):
            return _error(status.HTTP_404_NOT_FOUND, "Job not found")

        clip_path = job.result.clip_path if job.result else None
        if not clip_path or not os.path.isfile(clip_path):
            log.warning("completed clip artifact missing", extra={"job_id": job_id})
            return JobStatusResponse(status="failed", error="Clip creation failed").model_dump()
        return FileResponse(
            clip_path,
            media_type="video/mp4",
            filename=job.result.file_name or os.path.basename(clip_path),
            background=BackgroundTask(service.release_result, job),
        )

    @app.get("/healthz", response_model=HealthResponse)
    def healthz(service: ClipService = Depends(get_clip_service)) -> HealthResponse:
        return HealthResponse(
            queue=service.queue.name if service.queue is not None else "none",
            captions=service.caption_font is not None,
            webhook=service.webhook.enabled(),
        )


app = create_app()


def serve() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run("clip_service.main:app", host=settings.host, port=settings.port)
