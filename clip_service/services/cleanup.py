from __future__ import annotations

import logging
import pathlib
import shutil
import threading
from typing import Callable, Dict, Optional, Set
from uuid import UUID

from clip_service.errors import CleanupError
from clip_service.models.domain import ClipJob


class CleanupManager:
    """Deletes job inputs and outputs. Deletion failures are logged, never raised.

    Deleting something that is already gone is a no-op, so every method here
    can be called any number of times.
    """

    def __init__(
        self,
        temp_root: str | pathlib.Path,
        retention_seconds: float = 300.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.temp_root = pathlib.Path(temp_root)
        self.retention_seconds = retention_seconds
        self.log = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._timers: Dict[UUID, threading.Timer] = {}
        self._inputs_cleaned: Set[UUID] = set()

    def delete_inputs(self, job: ClipJob) -> bool:
        with self._lock:
            if job.id in self._inputs_cleaned:
                self.log.debug("inputs already cleaned", extra={"job_id": str(job.id)})
                return False
            self._inputs_cleaned.add(job.id)
        for item in job.media_items:
            self.delete_path(item.source_path)
        session_dir = self.temp_root / job.session_id
        if session_dir.is_dir():
            try:
                shutil.rmtree(session_dir)
            except OSError as exc:
                self._report(CleanupError(str(session_dir), str(exc)), job.id)
        self.log.info("temp inputs deleted", extra={"job_id": str(job.id), "session_id": job.session_id})
        return True

    def delete_path(self, path: str | None) -> bool:
        if not path:
            return False
        try:
            _unlink(path)
        except CleanupError as exc:
            self._report(exc)
            return False
        except FileNotFoundError:
            return False
        return True

    def schedule(self, job_id: UUID, action: Callable[[], None], delay: float | None = None) -> threading.Timer:
        """Run ``action`` once after the retention window; rescheduling replaces the pending timer."""
        timer = threading.Timer(self.retention_seconds if delay is None else delay, self._fire, args=(job_id, action))
        timer.daemon = True
        with self._lock:
            previous = self._timers.pop(job_id, None)
            self._timers[job_id] = timer
        if previous is not None:
            previous.cancel()
        timer.start()
        return timer

    def cancel(self, job_id: UUID) -> None:
        with self._lock:
            timer = self._timers.pop(job_id, None)
        if timer is not None:
            timer.cancel()

    def cancel_all(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    def pending(self) -> int:
        with self._lock:
            return len(self._timers)

    def _fire(self, job_id: UUID, action: Callable[[], None]) -> None:
        with self._lock:
            self._timers.pop(job_id, None)
        try:
            action()
        except Exception:
            self.log.warning("scheduled cleanup failed", extra={"job_id": str(job_id)}, exc_info=True)

    def _report(self, exc: CleanupError, job_id: UUID | None = None) -> None:
        self.log.warning(
            "error cleaning up file",
            extra={"path": exc.path, "job_id": str(job_id) if job_id else None},
            exc_info=exc,
        )


def _unlink(path: str) -> None:
    try:
        pathlib.Path(path).unlink()
    except FileNotFoundError:
        raise
    except OSError as exc:
        raise CleanupError(path, str(exc)) from exc
