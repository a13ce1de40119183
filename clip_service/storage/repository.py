from __future__ import annotations

from datetime import datetime
from threading import Lock
from typing import Dict, List
from uuid import UUID

from clip_service.models.domain import ClipJob, ClipJobState


class ClipJobRepository:
    """Job records keyed by id. Callers always receive deep copies."""

    def __init__(self) -> None:
        self._jobs: Dict[UUID, ClipJob] = {}
        self._lock = Lock()

    def save(self, job: ClipJob) -> ClipJob:
        with self._lock:
            job.updated_at = datetime.utcnow()
            self._jobs[job.id] = job.model_copy(deep=True)
        return job

    def add_if_absent(self, job: ClipJob) -> bool:
        with self._lock:
            if job.id in self._jobs:
                return False
            self._jobs[job.id] = job.model_copy(deep=True)
            return True

    def get(self, job_id: UUID) -> ClipJob | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def list(self) -> List[ClipJob]:
        with self._lock:
            return [job.model_copy(deep=True) for job in self._jobs.values()]

    def claim(self, job_id: UUID) -> ClipJob | None:
        """Move a queued job to active. Redelivered or unknown jobs yield None."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state != ClipJobState.QUEUED:
                return None
            job.state = ClipJobState.ACTIVE
            job.updated_at = datetime.utcnow()
            return job.model_copy(deep=True)

    def set_progress(self, job_id: UUID, percent: float) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is not None and job.state == ClipJobState.ACTIVE:
                job.progress = percent

    def take_completed(self, job_id: UUID) -> ClipJob | None:
        """Remove and return a completed job so that only one caller gets its artifact."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state != ClipJobState.COMPLETED:
                return None
            return self._jobs.pop(job_id)

    def delete(self, job_id: UUID) -> ClipJob | None:
        with self._lock:
            return self._jobs.pop(job_id, None)
