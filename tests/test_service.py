import json
import logging
import os
import threading
import time

import httpx
import pytest

from clip_service.clients.webhook import WebhookClient
from clip_service.errors import JobNotFoundError, QueueUnavailableError
from clip_service.models.domain import ClipJobState
from clip_service.queue.queue import BaseQueue
from clip_service.services.clip_service import ClipService
from clip_service.services.intake import UploadedMedia
from clip_service.storage.repository import ClipJobRepository


class RecordingQueue(BaseQueue):
    name = "recording"

    def __init__(self, available=True):
        self.available = available
        self.jobs = []

    def enqueue(self, job):
        if not self.available:
            raise QueueUnavailableError("broker down")
        self.jobs.append(job)


class FakeStorage:
    def __init__(self):
        self.uploads = []

    def is_configured(self):
        return True

    def upload_file(self, local_path, path, content_type="video/mp4"):
        self.uploads.append((local_path, path))
        return f"https://cdn.example.test/{path}"


class ExplodingExecutor:
    def run(self, plan, output_path, job_id="", progress=None):
        raise RuntimeError("unexpected pipeline crash")


@pytest.fixture
def hook_calls():
    return []


def _webhook(hook_calls, status_code=200):
    def handler(request):
        hook_calls.append(json.loads(request.content))
        return httpx.Response(status_code)

    return WebhookClient("https://hooks.example.test/clip", transport=httpx.MockTransport(handler))


def _service(settings, encoder, hook_calls=None, queue=None, **kwargs):
    settings = settings.model_copy(update={"ffmpeg_binary": encoder.path})
    if hook_calls is not None:
        kwargs.setdefault("webhook", _webhook(hook_calls))
    service = ClipService(repo=ClipJobRepository(), settings=settings, **kwargs)
    service.bind_queue(queue or RecordingQueue())
    return service


def _uploads(png_bytes, count=2):
    uploads = [UploadedMedia(filename=f"pic{i}.png", data=png_bytes) for i in range(count)]
    metadata = {}
    for i in range(count):
        metadata[f"type{i}"] = "image"
        metadata[f"duration{i}"] = "4"
        metadata[f"text{i}"] = f"caption {i}" if i == 0 else ""
    return uploads, metadata


def test_successful_job_reports_and_cleans_up(settings, make_encoder, png_bytes, hook_calls):
    encoder = make_encoder("ok")
    queue = RecordingQueue()
    service = _service(settings, encoder, hook_calls, queue=queue)

    job = service.create_job(*_uploads(png_bytes))
    assert queue.jobs[0].id == job.id
    assert service.get_job(job.id).state == ClipJobState.QUEUED

    result = service.process_job(job)

    assert result.success
    assert result.duration == pytest.approx(8.0)
    stored = service.get_job(job.id)
    assert stored.state == ClipJobState.COMPLETED
    assert stored.progress == 100.0
    assert os.path.isfile(job.output_path)
    assert not os.path.exists(service.intake.session_dir(job.session_id))

    assert len(hook_calls) == 1
    body = hook_calls[0]
    assert body["clipPath"] == job.output_path
    assert body["sessionId"] == job.session_id
    assert body["fileSize"] == os.path.getsize(job.output_path)
    assert body["duration"] == pytest.approx(8.0)
    assert body["mediaItemCount"] == 2
    assert "dateCreated" in body

    assert "drawtext" in " ".join(encoder.argv())
    service.shutdown()


def test_result_is_handed_out_once(settings, make_encoder, png_bytes):
    service = _service(settings, make_encoder("ok"))
    job = service.create_job(*_uploads(png_bytes, count=1))
    service.process_job(job)

    taken = service.take_result(job.id)
    assert taken.result.clip_path == job.output_path
    with pytest.raises(JobNotFoundError):
        service.take_result(job.id)
    with pytest.raises(JobNotFoundError):
        service.get_job(job.id)

    service.release_result(taken)
    assert not os.path.exists(job.output_path)
    service.release_result(taken)
    assert service.cleanup.pending() == 0


def test_encoder_failure_marks_job_failed(settings, make_encoder, png_bytes, hook_calls):
    service = _service(settings, make_encoder("fail"), hook_calls)
    job = service.create_job(*_uploads(png_bytes))

    result = service.process_job(job)

    assert not result.success
    stored = service.get_job(job.id)
    assert stored.state == ClipJobState.FAILED
    assert "Conversion failed!" in stored.error
    assert service.client_status(stored) == ("failed", "Clip creation failed")
    assert hook_calls == []
    assert not os.path.exists(service.intake.session_dir(job.session_id))
    assert not os.path.exists(job.output_path)
    service.shutdown()


def test_unexpected_pipeline_error_is_captured(settings, make_encoder, png_bytes):
    service = _service(settings, make_encoder("ok"), executor=ExplodingExecutor())
    job = service.create_job(*_uploads(png_bytes))

    result = service.process_job(job)

    assert not result.success
    assert result.error == "unexpected pipeline crash"
    assert service.get_job(job.id).state == ClipJobState.FAILED
    assert not os.path.exists(service.intake.session_dir(job.session_id))
    service.shutdown()


def test_webhook_failure_does_not_fail_job(settings, make_encoder, png_bytes, hook_calls):
    service = _service(settings, make_encoder("ok"), webhook=_webhook(hook_calls, status_code=500))
    job = service.create_job(*_uploads(png_bytes))

    result = service.process_job(job)

    assert result.success
    assert len(hook_calls) == 1
    assert service.get_job(job.id).state == ClipJobState.COMPLETED
    service.shutdown()


def test_redelivered_job_is_not_rendered_twice(settings, make_encoder, png_bytes):
    service = _service(settings, make_encoder("ok"))
    job = service.create_job(*_uploads(png_bytes))

    assert service.process_job(job).success
    assert service.process_job(job) is None
    service.shutdown()


def test_queue_unavailable_creates_no_job(settings, make_encoder, png_bytes):
    service = _service(settings, make_encoder("ok"), queue=RecordingQueue(available=False))

    with pytest.raises(QueueUnavailableError):
        service.create_job(*_uploads(png_bytes))

    assert service.repo.list() == []
    assert os.listdir(settings.temp_dir) == []


def test_missing_font_still_completes_without_captions(settings, make_encoder, png_bytes, tmp_path):
    encoder = make_encoder("ok")
    settings = settings.model_copy(update={"caption_font_path": str(tmp_path / "missing.ttf")})
    service = _service(settings, encoder)
    job = service.create_job(*_uploads(png_bytes))

    assert service.process_job(job).success
    assert "drawtext" not in " ".join(encoder.argv())
    service.shutdown()


def test_published_clip_url_goes_to_webhook(settings, make_encoder, png_bytes, hook_calls):
    storage = FakeStorage()
    service = _service(settings, make_encoder("ok"), hook_calls, storage=storage)
    job = service.create_job(*_uploads(png_bytes))

    result = service.process_job(job)

    assert storage.uploads == [(job.output_path, f"clips/{job.session_id}.mp4")]
    assert result.clip_url == f"https://cdn.example.test/clips/{job.session_id}.mp4"
    assert hook_calls[0]["clipUrl"] == result.clip_url
    assert "clipPath" not in hook_calls[0]
    service.shutdown()


def test_job_and_output_expire_after_retention(settings, make_encoder, png_bytes):
    settings = settings.model_copy(update={"output_retention_seconds": 0.1})
    service = _service(settings, make_encoder("ok"))
    job = service.create_job(*_uploads(png_bytes))
    service.process_job(job)

    expired = threading.Event()
    for _ in range(50):
        if service.repo.get(job.id) is None:
            expired.set()
            break
        expired.wait(0.05)

    assert expired.is_set()
    assert not os.path.exists(job.output_path)


def test_abandoned_download_still_expires(settings, make_encoder, png_bytes):
    settings = settings.model_copy(update={"output_retention_seconds": 0.2})
    service = _service(settings, make_encoder("ok"))
    job = service.create_job(*_uploads(png_bytes, count=1))
    service.process_job(job)

    taken = service.take_result(job.id)
    assert os.path.isfile(taken.result.clip_path)

    deadline = time.monotonic() + 5
    while os.path.exists(job.output_path) and time.monotonic() < deadline:
        time.sleep(0.05)
    assert not os.path.exists(job.output_path)
    assert service.cleanup.pending() == 0


def test_caption_font_falls_back_to_next_candidate(settings, font_file, tmp_path, caplog):
    settings = settings.model_copy(
        update={
            "caption_font_path": str(tmp_path / "missing.ttf"),
            "caption_font_fallbacks": [str(tmp_path / "also-missing.ttf"), font_file],
        }
    )
    with caplog.at_level(logging.INFO):
        service = ClipService(repo=ClipJobRepository(), settings=settings)

    assert service.caption_font == font_file
    assert "using caption font" in caplog.text
