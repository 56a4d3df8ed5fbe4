"""Outbound user notifications (push/email gateway)."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Protocol

import httpx
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class Notification(BaseModel):
    """A message for one user.

    ``idempotency_key`` is stable across retries of the step that sends it,
    so receivers can drop duplicates of at-least-once delivery.
    """

    user_id: str
    kind: str
    title: str
    body: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)
    idempotency_key: str


class Notifier(Protocol):
    async def send(self, notification: Notification) -> None:
        """Deliver ``notification``; raise to have the calling step retried."""


class LogNotifier:
    """Writes notifications to the log; keeps them for inspection in tests."""

    def __init__(self) -> None:
        self.sent: list[Notification] = []

    async def send(self, notification: Notification) -> None:
        self.sent.append(notification)
        logger.info(
            f"Notify {notification.user_id} [{notification.kind}] {notification.title}"
        )


class WebhookNotifier:
    """POSTs notifications as JSON to a delivery gateway."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def send(self, notification: Notification) -> None:
        client = self._get_client()
        response = await client.post(
            self.url,
            json=notification.model_dump(mode="json"),
            headers={"Idempotency-Key": notification.idempotency_key},
        )
        # 5xx and 429 propagate as retryable, other 4xx fail the step for good
        response.raise_for_status()
        logger.debug(f"Delivered {notification.kind} notification to {notification.user_id}")
