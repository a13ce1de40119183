from __future__ import annotations

import json
import logging
import threading
from queue import Queue
from typing import Callable, List, Optional

from kafka import KafkaConsumer, KafkaProducer
from kafka.errors import KafkaError

from clip_service.errors import QueueUnavailableError
from clip_service.models.domain import ClipJob

JobProcessor = Callable[[ClipJob], None]

_STOP = object()


class BaseQueue:
    name = "base"

    def start(self) -> None: ...  # pragma: no cover

    def stop(self) -> None: ...  # pragma: no cover

    def enqueue(self, job: ClipJob) -> None: ...  # pragma: no cover


def _run_guarded(processor: JobProcessor, job: ClipJob, log: logging.Logger) -> None:
    try:
        processor(job)
    except Exception:
        log.exception("clip job processor raised", extra={"job_id": str(job.id)})


class LocalQueue(BaseQueue):
    """In-process queue drained by a fixed pool of daemon worker threads."""

    name = "local"

    def __init__(
        self,
        processor: JobProcessor,
        worker_count: int = 1,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._processor = processor
        self._worker_count = max(1, worker_count)
        self._queue: Queue = Queue()
        self._threads: List[threading.Thread] = []
        self._stopped = False
        self.log = logger or logging.getLogger(__name__)

    def start(self) -> None:
        if self._threads:
            return
        self._stopped = False
        for index in range(self._worker_count):
            thread = threading.Thread(target=self._run, name=f"clip-worker-{index}", daemon=True)
            thread.start()
            self._threads.append(thread)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stopped = True
        for _ in self._threads:
            self._queue.put(_STOP)
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []

    def enqueue(self, job: ClipJob) -> None:
        if self._stopped:
            raise QueueUnavailableError("local queue is stopped")
        self._queue.put(job)

    def _run(self) -> None:
        while True:
            job = self._queue.get()
            try:
                if job is _STOP:
                    return
                _run_guarded(self._processor, job, self.log)
            finally:
                self._queue.task_done()


class KafkaQueue(BaseQueue):
    """Durable queue: the job snapshot travels as JSON, offsets commit after processing.

    The producer is created on first use and again after a failed attempt, and
    each consumer thread rebuilds its consumer after broker errors, so the
    queue recovers once the broker becomes reachable.
    """

    name = "kafka"

    def __init__(
        self,
        bootstrap_servers: str,
        topic: str,
        group_id: str,
        processor: JobProcessor,
        worker_count: int = 1,
        send_timeout: float = 10.0,
        max_poll_interval_ms: int = 300_000,
        retry_backoff: float = 5.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._bootstrap_servers = bootstrap_servers
        self._topic = topic
        self._group_id = group_id
        self._processor = processor
        self._worker_count = max(1, worker_count)
        self._send_timeout = send_timeout
        self._max_poll_interval_ms = max_poll_interval_ms
        self._retry_backoff = retry_backoff
        self._producer: KafkaProducer | None = None
        self._producer_lock = threading.Lock()
        self._threads: List[threading.Thread] = []
        self._stop_event = threading.Event()
        self.log = logger or logging.getLogger(__name__)

    def start(self) -> None:
        self._stop_event.clear()
        try:
            self._ensure_producer()
        except QueueUnavailableError:
            self.log.warning(
                "kafka producer unavailable",
                extra={"bootstrap_servers": self._bootstrap_servers},
                exc_info=True,
            )
        for index in range(self._worker_count):
            thread = threading.Thread(target=self._consume, name=f"clip-consumer-{index}", daemon=True)
            thread.start()
            self._threads.append(thread)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        with self._producer_lock:
            if self._producer is not None:
                try:
                    self._producer.flush()
                    self._producer.close()
                except KafkaError:
                    self.log.debug("kafka producer close failed", exc_info=True)
                self._producer = None

    def enqueue(self, job: ClipJob) -> None:
        producer = self._ensure_producer()
        payload = {"job": job.model_dump(mode="json")}
        try:
            producer.send(self._topic, payload).get(timeout=self._send_timeout)
        except KafkaError as exc:
            raise QueueUnavailableError(f"kafka enqueue failed: {exc}") from exc

    def _ensure_producer(self) -> KafkaProducer:
        with self._producer_lock:
            if self._producer is None:
                try:
                    self._producer = KafkaProducer(
                        bootstrap_servers=self._bootstrap_servers,
                        value_serializer=lambda value: json.dumps(value).encode("utf-8"),
                    )
                except KafkaError as exc:
                    raise QueueUnavailableError(f"kafka broker is not reachable: {exc}") from exc
            return self._producer

    def _consume(self) -> None:
        while not self._stop_event.is_set():
            try:
                consumer = KafkaConsumer(
                    self._topic,
                    bootstrap_servers=self._bootstrap_servers,
                    group_id=self._group_id,
                    auto_offset_reset="earliest",
                    enable_auto_commit=False,
                    max_poll_records=1,
                    max_poll_interval_ms=self._max_poll_interval_ms,
                )
            except KafkaError:
                self.log.error(
                    "kafka consumer unavailable",
                    extra={"retry_in": self._retry_backoff},
                    exc_info=True,
                )
                self._stop_event.wait(self._retry_backoff)
                continue
            try:
                self._drain(consumer)
            except KafkaError:
                self.log.warning("kafka consumer failed, reconnecting", exc_info=True)
                self._stop_event.wait(self._retry_backoff)
            finally:
                consumer.close()

    def _drain(self, consumer: KafkaConsumer) -> None:
        while not self._stop_event.is_set():
            batches = consumer.poll(timeout_ms=500)
            for records in batches.values():
                for message in records:
                    self._handle(message)
            if batches:
                try:
                    consumer.commit()
                except KafkaError:
                    # Uncommitted jobs are redelivered and skipped once already claimed.
                    self.log.warning("kafka offset commit failed", exc_info=True)

    def _handle(self, message) -> None:
        try:
            job = ClipJob.model_validate(json.loads(message.value)["job"])
        except (KeyError, TypeError, ValueError):
            self.log.warning("dropping malformed job message", extra={"offset": message.offset})
            return
        _run_guarded(self._processor, job, self.log)
