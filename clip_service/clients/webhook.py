from __future__ import annotations

import logging
from typing import Optional

import httpx

from clip_service.errors import WebhookDeliveryError
from clip_service.models.api import WebhookPayload


class WebhookClient:
    def __init__(
        self,
        url: str | None,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.url = (url or "").strip()
        self.timeout = timeout
        self._transport = transport
        self.log = logger or logging.getLogger(__name__)

    def enabled(self) -> bool:
        return bool(self.url)

    def notify(self, payload: WebhookPayload) -> None:
        """POST the payload once. Any transport or HTTP error becomes WebhookDeliveryError."""
        if not self.enabled():
            raise WebhookDeliveryError("webhook url is not configured")
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(self.url, json=payload.to_json())
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise WebhookDeliveryError(f"webhook delivery failed: {exc}") from exc
        self.log.info(
            "webhook notified",
            extra={"session_id": payload.session_id, "status_code": response.status_code},
        )
