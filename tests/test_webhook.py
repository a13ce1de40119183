import json

import httpx
import pytest

from clip_service.clients.webhook import WebhookClient
from clip_service.errors import WebhookDeliveryError
from clip_service.models.api import WebhookPayload


def _payload(**overrides):
    values = {
        "clip_path": "/srv/output/abc.mp4",
        "session_id": "abc",
        "file_size": 2048,
        "duration": 9.5,
        "date_created": "2024-05-01T10:00:00",
        "media_item_count": 3,
    }
    values.update(overrides)
    return WebhookPayload(**values)


def test_posts_camel_case_json():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, str(request.url), json.loads(request.content)))
        return httpx.Response(200)

    client = WebhookClient("https://hooks.example.test/clip", transport=httpx.MockTransport(handler))
    client.notify(_payload())

    method, url, body = seen[0]
    assert method == "POST"
    assert url == "https://hooks.example.test/clip"
    assert body == {
        "clipPath": "/srv/output/abc.mp4",
        "sessionId": "abc",
        "fileSize": 2048,
        "duration": 9.5,
        "dateCreated": "2024-05-01T10:00:00",
        "mediaItemCount": 3,
    }


def test_clip_url_replaces_clip_path():
    body = _payload(clip_path=None, clip_url="https://cdn.example.test/clips/abc.mp4").to_json()
    assert body["clipUrl"] == "https://cdn.example.test/clips/abc.mp4"
    assert "clipPath" not in body


def test_http_error_raises_delivery_error():
    transport = httpx.MockTransport(lambda request: httpx.Response(502))
    client = WebhookClient("https://hooks.example.test/clip", transport=transport)
    with pytest.raises(WebhookDeliveryError):
        client.notify(_payload())


def test_connection_error_raises_delivery_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    client = WebhookClient("https://hooks.example.test/clip", transport=httpx.MockTransport(handler))
    with pytest.raises(WebhookDeliveryError):
        client.notify(_payload())


def test_disabled_without_url():
    client = WebhookClient("  ")
    assert not client.enabled()
    with pytest.raises(WebhookDeliveryError):
        client.notify(_payload())
