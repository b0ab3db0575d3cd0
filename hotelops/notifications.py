"""Notification dispatch for ticket and booking side effects.

Delivery itself belongs to an external provider. This module only hands the
message over, and every hand-over is best-effort: a failed dispatch is logged and
reported as ``False``, never raised into the operation that triggered it.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol
from uuid import UUID

import httpx

from hotelops.core.best_effort import run_best_effort

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Notification:
    kind: str
    channel: str
    hotel_id: UUID | None = None
    recipient: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> dict[str, Any]:
        data = asdict(self)
        data["hotel_id"] = str(self.hotel_id) if self.hotel_id else None
        return data


class NotificationDispatcher(Protocol):
    async def dispatch(self, notification: Notification) -> None: ...


class LoggingNotificationDispatcher:
    """Dispatcher used when no delivery endpoint is configured."""

    async def dispatch(self, notification: Notification) -> None:
        logger.info(
            "Notification %s via %s for hotel %s",
            notification.kind,
            notification.channel,
            notification.hotel_id,
        )


class WebhookNotificationDispatcher:
    """Post notifications to a delivery service over HTTP."""

    def __init__(self, url: str, *, timeout: float = 5.0, client: httpx.AsyncClient | None = None) -> None:
        self._url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def dispatch(self, notification: Notification) -> None:
        response = await self._client.post(self._url, json=notification.to_json())
        response.raise_for_status()

    async def close(self) -> None:
        await self._client.aclose()


async def send_best_effort(dispatcher: NotificationDispatcher | None, notification: Notification) -> bool:
    if dispatcher is None:
        return False
    return await run_best_effort(f"notify:{notification.kind}", dispatcher.dispatch, notification)
