"""Transports that hand queued deliveries to the outside world."""
from __future__ import annotations

import json
import logging
from typing import Any, Protocol, runtime_checkable

import httpx

logger = logging.getLogger(__name__)


class SinkError(Exception):
    """A delivery attempt failed; the worker records it and may retry."""


@runtime_checkable
class NotificationSink(Protocol):
    def send(self, user_id: str, title: str, body: str, data: dict[str, Any], tag: str) -> None:
        """Deliver one message or raise ``SinkError``."""


class LoggingSink:
    """Writes deliveries to the application log. Default for local setups."""

    def __init__(self, logger_name: str = "readshare.deliveries") -> None:
        self._logger = logging.getLogger(logger_name)

    def send(self, user_id: str, title: str, body: str, data: dict[str, Any], tag: str) -> None:
        self._logger.info(
            "Notification delivered",
            extra={"recipient_user_id": user_id, "title": title, "tag": tag, "kind": data.get("type")},
        )

    def close(self) -> None:
        return None


def _response_error_reason(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except (ValueError, json.JSONDecodeError):
        payload = {}
    if isinstance(payload, dict):
        reason = payload.get("reason") or payload.get("error")
        if isinstance(reason, str) and reason.strip():
            return f"http_{response.status_code}: {reason.strip()}"
    return f"http_{response.status_code}"


class WebhookSink:
    """POSTs each delivery as JSON to a push gateway."""

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = 10.0,
        token: str | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        if not url.startswith(("http://", "https://")):
            raise ValueError("webhook url must start with http:// or https://")
        self.url = url
        self._token = token
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout_seconds)

    def _headers(self, tag: str) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "X-Notification-Tag": tag}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def send(self, user_id: str, title: str, body: str, data: dict[str, Any], tag: str) -> None:
        payload = {"user_id": user_id, "title": title, "body": body, "data": data, "tag": tag}
        try:
            response = self._client.post(self.url, json=payload, headers=self._headers(tag))
        except httpx.TimeoutException as exc:
            raise SinkError("webhook timed out") from exc
        except httpx.HTTPError as exc:
            raise SinkError(f"webhook transport error: {exc}") from exc
        if response.status_code >= 400:
            raise SinkError(_response_error_reason(response))
        logger.debug("Webhook delivery accepted", extra={"recipient_user_id": user_id, "status_code": response.status_code})

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


def build_sink(settings: Any) -> NotificationSink:
    """Pick the sink named by ``NOTIFICATION_SINK``."""

    if settings.NOTIFICATION_SINK == "webhook":
        if not settings.NOTIFICATION_WEBHOOK_URL:
            raise RuntimeError("NOTIFICATION_WEBHOOK_URL is required when NOTIFICATION_SINK=webhook")
        return WebhookSink(
            settings.NOTIFICATION_WEBHOOK_URL,
            timeout_seconds=settings.SINK_TIMEOUT_SECONDS,
            token=settings.NOTIFICATION_WEBHOOK_TOKEN,
        )
    return LoggingSink()


__all__ = ["NotificationSink", "SinkError", "LoggingSink", "WebhookSink", "build_sink"]
