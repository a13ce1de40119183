from __future__ import annotations

import logging
import os
import pathlib
from datetime import datetime
from typing import Mapping, Optional, Sequence
from uuid import UUID, uuid4

from clip_service.clients.s3_storage import S3StorageClient
from clip_service.clients.webhook import WebhookClient
from clip_service.config import Settings
from clip_service.errors import (
    JobNotFoundError,
    QueueUnavailableError,
    RenderError,
    WebhookDeliveryError,
)
from clip_service.models.api import WebhookPayload
from clip_service.models.domain import ClipJob, ClipJobState, ClipResult
from clip_service.queue.queue import BaseQueue
from clip_service.render.executor import RenderExecutor, RenderProgress
from clip_service.render.plan import build_render_plan, resolve_caption_font
from clip_service.services.cleanup import CleanupManager
from clip_service.services.intake import MediaIntake, UploadedMedia
from clip_service.storage.repository import ClipJobRepository

CLIENT_FAILURE_MESSAGE = "Clip creation failed"


class ClipService:
    def __init__(
        self,
        repo: ClipJobRepository,
        settings: Settings,
        intake: MediaIntake | None = None,
        executor: RenderExecutor | None = None,
        cleanup: CleanupManager | None = None,
        webhook: WebhookClient | None = None,
        storage: S3StorageClient | None = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.repo = repo
        self.queue: BaseQueue | None = None
        self.settings = settings
        self.log = logger or logging.getLogger(__name__)
        self.output_root = pathlib.Path(settings.output_dir)
        self.intake = intake or MediaIntake(settings, logger=self.log)
        self.executor = executor or RenderExecutor(
            ffmpeg_binary=settings.ffmpeg_binary,
            timeout_seconds=settings.render_timeout_seconds,
            progress_log_interval=settings.progress_log_interval_seconds,
            logger=self.log,
        )
        self.cleanup = cleanup or CleanupManager(
            temp_root=settings.temp_dir,
            retention_seconds=settings.output_retention_seconds,
            logger=self.log,
        )
        self.webhook = webhook or WebhookClient(
            url=settings.webhook_url,
            timeout=settings.webhook_timeout_seconds,
            logger=self.log,
        )
        self.storage = storage or S3StorageClient(
            bucket=settings.s3_bucket,
            access_key=settings.s3_access_key,
            secret_key=settings.s3_secret_key,
            endpoint_url=settings.s3_endpoint_url,
            region_name=settings.s3_region,
            public_url=settings.s3_public_url,
            addressing_style=settings.s3_addressing_style,
        )
        self.caption_font = resolve_caption_font(settings.caption_font_path, *settings.caption_font_fallbacks)
        if self.caption_font:
            self.log.info("using caption font", extra={"path": self.caption_font})
        else:
            self.log.warning(
                "caption font not found, text overlays disabled",
                extra={"candidates": [settings.caption_font_path, *settings.caption_font_fallbacks]},
            )
        if not self.webhook.enabled():
            self.log.warning("webhook url not configured, completion notifications disabled")

    def bind_queue(self, queue: BaseQueue) -> None:
        self.queue = queue

    def start(self) -> None:
        pathlib.Path(self.settings.temp_dir).mkdir(parents=True, exist_ok=True)
        self.output_root.mkdir(parents=True, exist_ok=True)
        if self.queue is not None:
            self.queue.start()

    def shutdown(self) -> None:
        if self.queue is not None:
            self.queue.stop()
        self.cleanup.cancel_all()

    def create_job(self, uploads: Sequence[UploadedMedia], metadata: Mapping[str, str]) -> ClipJob:
        session_id = str(uuid4())
        self.log.info("starting new clip creation session", extra={"session_id": session_id})
        media_items = self.intake.persist(session_id, uploads, metadata)
        job = ClipJob(
            id=uuid4(),
            session_id=session_id,
            media_items=media_items,
            output_path=str(self.output_root / f"{session_id}.mp4"),
        )
        self.repo.save(job)
        try:
            if self.queue is None:
                raise QueueUnavailableError("no job queue is bound")
            self.queue.enqueue(job)
        except QueueUnavailableError:
            self.repo.delete(job.id)
            self.cleanup.delete_inputs(job)
            raise
        self.log.info(
            "clip creation job queued",
            extra={"job_id": str(job.id), "session_id": session_id, "media_item_count": len(media_items)},
        )
        return job

    def get_job(self, job_id: UUID) -> ClipJob:
        job = self.repo.get(job_id)
        if not job:
            raise JobNotFoundError("Job not found")
        return job

    def take_result(self, job_id: UUID) -> ClipJob:
        """Hand a completed job's artifact to exactly one caller and forget the job.

        The expiry timer stays armed until the stream finishes, so an abandoned
        download still has its file deleted after the grace window.
        """
        job = self.repo.take_completed(job_id)
        if job is None:
            raise JobNotFoundError("Job not found")
        return job

    def release_result(self, job: ClipJob) -> None:
        if job.result and job.result.clip_path:
            self.cleanup.delete_path(job.result.clip_path)
            self.cleanup.cancel(job.id)
            self.log.info("clip artifact streamed and deleted", extra={"job_id": str(job.id)})

    def process_job(self, job: ClipJob) -> ClipResult | None:
        self.repo.add_if_absent(job)
        claimed = self.repo.claim(job.id)
        if claimed is None:
            self.log.info("skipping job that is not queued", extra={"job_id": str(job.id)})
            return None
        self.log.info("processing clip job", extra={"job_id": str(job.id), "session_id": job.session_id})
        try:
            return self._pipeline(claimed)
        except Exception as exc:
            self.log.exception("clip job failed", extra={"job_id": str(job.id)})
            self._finish(claimed, ClipResult(success=False, error=str(exc)))
            return claimed.result
        finally:
            self.cleanup.delete_inputs(claimed)
            self.cleanup.schedule(claimed.id, lambda: self._expire(claimed.id, claimed.output_path))

    def _pipeline(self, job: ClipJob) -> ClipResult:
        result = self._render(job)
        if result.success:
            result.clip_url = self._publish(job)
        self._finish(job, result)
        if result.success:
            self._notify(job, result)
        return result

    def _render(self, job: ClipJob) -> ClipResult:
        plan = build_render_plan(job.media_items, caption_font=self.caption_font)
        pathlib.Path(job.output_path).parent.mkdir(parents=True, exist_ok=True)
        progress = RenderProgress(listener=lambda percent: self.repo.set_progress(job.id, percent))
        try:
            duration = self.executor.run(plan, job.output_path, job_id=str(job.id), progress=progress)
        except RenderError as exc:
            self.log.error(
                "error processing clip job",
                extra={"job_id": str(job.id), "session_id": job.session_id, "error": str(exc)},
            )
            self.cleanup.delete_path(job.output_path)
            return ClipResult(success=False, error=str(exc))
        return ClipResult(
            success=True,
            clip_path=job.output_path,
            file_name=os.path.basename(job.output_path),
            file_size=os.path.getsize(job.output_path),
            duration=duration,
        )

    def _publish(self, job: ClipJob) -> str | None:
        if not self.storage.is_configured():
            return None
        key = f"{self.settings.storage_folder_prefix}/{job.session_id}.mp4"
        try:
            return self.storage.upload_file(job.output_path, key)
        except ValueError:
            self.log.warning("clip upload to object storage failed", extra={"job_id": str(job.id)}, exc_info=True)
            return None

    def _finish(self, job: ClipJob, result: ClipResult) -> None:
        job.result = result
        job.finished_at = datetime.utcnow()
        if result.success:
            job.state = ClipJobState.COMPLETED
            job.progress = 100.0
            job.error = None
            self.log.info("clip job processed successfully", extra={"job_id": str(job.id)})
        else:
            job.state = ClipJobState.FAILED
            job.error = result.error
            self.log.error("job failed", extra={"job_id": str(job.id), "error": result.error})
        self.repo.save(job)

    def _notify(self, job: ClipJob, result: ClipResult) -> None:
        if not self.webhook.enabled():
            return
        payload = WebhookPayload(
            clip_url=result.clip_url,
            clip_path=None if result.clip_url else result.clip_path,
            session_id=job.session_id,
            file_size=result.file_size or 0,
            duration=result.duration or job.total_duration,
            date_created=(job.finished_at or datetime.utcnow()).isoformat(),
            media_item_count=len(job.media_items),
        )
        try:
            self.webhook.notify(payload)
        except WebhookDeliveryError:
            self.log.warning("webhook delivery failed", extra={"job_id": str(job.id)}, exc_info=True)

    def _expire(self, job_id: UUID, output_path: str) -> None:
        self.cleanup.delete_path(output_path)
        if self.repo.delete(job_id) is not None:
            self.log.info("clip job expired", extra={"job_id": str(job_id)})

    @staticmethod
    def client_status(job: ClipJob) -> tuple[str, str | None]:
        if job.state == ClipJobState.FAILED:
            return "failed", CLIENT_FAILURE_MESSAGE
        return "processing", None
