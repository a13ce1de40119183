import os
import time
import uuid

import pytest
from fastapi.testclient import TestClient

from clip_service.main import build_service, create_app


@pytest.fixture
def make_client(settings, make_encoder):
    def factory(mode="ok", **overrides):
        overrides.setdefault("ffmpeg_binary", make_encoder(mode).path)
        app_settings = settings.model_copy(update=overrides)
        service = build_service(app_settings)
        return TestClient(create_app(app_settings, service)), service

    return factory


def _form(png_bytes, count=2):
    files = {}
    data = {}
    for i in range(count):
        files[f"file{i}"] = (f"pic{i}.png", png_bytes, "image/png")
        data[f"type{i}"] = "image"
        data[f"text{i}"] = "Hello" if i == 0 else ""
        data[f"duration{i}"] = "3.5"
    return files, data


def _poll(client, job_id, attempts=100):
    for _ in range(attempts):
        resp = client.get("/api/create-clip", params={"jobId": job_id})
        if resp.headers["content-type"] != "application/json" or resp.json().get("status") != "processing":
            return resp
        time.sleep(0.05)
    raise AssertionError("job did not finish")


def test_clip_flow_with_local_queue(make_client, png_bytes):
    client, service = make_client("ok")
    with client:
        files, data = _form(png_bytes)
        create_resp = client.post("/api/create-clip", files=files, data=data)
        assert create_resp.status_code == 200
        body = create_resp.json()
        assert body["success"] is True
        job_id = body["jobId"]
        session_id = body["sessionId"]

        clip_resp = _poll(client, job_id)
        assert clip_resp.status_code == 200
        assert clip_resp.headers["content-type"] == "video/mp4"
        assert clip_resp.headers["content-disposition"] == f'attachment; filename="{session_id}.mp4"'
        assert clip_resp.content.startswith(b"\x00\x00\x00\x18ftyp")

        again = client.get("/api/create-clip", params={"jobId": job_id})
        assert again.status_code == 404
        assert again.json() == {"error": "Job not found"}

        output_path = os.path.join(service.settings.output_dir, f"{session_id}.mp4")
        assert not os.path.exists(output_path)
        assert not os.path.exists(os.path.join(service.settings.temp_dir, session_id))


def test_failed_render_reports_polite_status(make_client, png_bytes):
    client, _ = make_client("fail")
    with client:
        files, data = _form(png_bytes, count=1)
        job_id = client.post("/api/create-clip", files=files, data=data).json()["jobId"]

        resp = _poll(client, job_id)
        assert resp.status_code == 200
        assert resp.json() == {"status": "failed", "error": "Clip creation failed"}


def test_processing_status_while_rendering(make_client, png_bytes):
    client, _ = make_client("hang", render_timeout_seconds=3)
    with client:
        files, data = _form(png_bytes, count=1)
        job_id = client.post("/api/create-clip", files=files, data=data).json()["jobId"]

        resp = client.get("/api/create-clip", params={"jobId": job_id})
        assert resp.status_code == 200
        assert resp.json() == {"status": "processing"}

        resp = _poll(client, job_id)
        assert resp.json()["status"] == "failed"


def test_zero_files_rejected(make_client):
    client, service = make_client()
    with client:
        resp = client.post("/api/create-clip", data={"type0": "image"})
        assert resp.status_code == 500
        assert resp.json() == {"error": "No files were uploaded"}
        assert service.repo.list() == []


def test_unknown_and_missing_job_ids(make_client):
    client, _ = make_client()
    with client:
        assert client.get("/api/create-clip", params={"jobId": str(uuid.uuid4())}).status_code == 404
        assert client.get("/api/create-clip", params={"jobId": "not-a-uuid"}).status_code == 404
        missing = client.get("/api/create-clip")
        assert missing.status_code == 400
        assert missing.json() == {"error": "Job ID is required"}


def test_healthz(make_client, tmp_path):
    client, _ = make_client(caption_font_path=str(tmp_path / "missing.ttf"))
    with client:
        resp = client.get("/healthz")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "queue": "local", "captions": False, "webhook": False}
