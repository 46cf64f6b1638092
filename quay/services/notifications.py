"""Outbound notifications (permission grants, received uploads).

Delivery is fire-and-forget: the dispatcher schedules a task after the
triggering transaction has committed, and a failed delivery is logged, never
raised. Email rendering happens downstream of the webhook.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from functools import lru_cache
from typing import Any

import structlog

from quay.config import NotificationConfig, get_settings
from quay.services.http import http_client_manager
from quay.utils.datetime import utcnow

logger = structlog.get_logger()


@dataclass
class Notification:
    """A notification to deliver."""

    event: str  # permission.granted | upload.received | batch.completed
    recipient: str
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=lambda: utcnow().isoformat())


class Notifier(ABC):
    """Delivers notifications to an external sender."""

    @abstractmethod
    async def send(self, notification: Notification) -> None:
        ...


class LogNotifier(Notifier):
    """Notifier that only logs (no webhook configured)."""

    async def send(self, notification: Notification) -> None:
        logger.info(
            "notification.logged",
            event=notification.event,
            recipient=notification.recipient,
        )


class WebhookNotifier(Notifier):
    """POSTs notifications as JSON to a webhook using the shared HTTP client."""

    def __init__(self, url: str, timeout_seconds: float = 5.0) -> None:
        self._url = url
        self._timeout = timeout_seconds

    async def send(self, notification: Notification) -> None:
        response = await http_client_manager.client.post(
            self._url,
            json=asdict(notification),
            timeout=self._timeout,
        )
        response.raise_for_status()


class NotificationDispatcher:
    """Schedules deliveries without blocking the caller."""

    def __init__(self, notifier: Notifier) -> None:
        self._notifier = notifier
        self._pending: set[asyncio.Task] = set()
        self._log = logger.bind(service="notifications")

    def dispatch(self, notification: Notification) -> None:
        """Schedule delivery on the running loop and return immediately."""
        task = asyncio.create_task(self._deliver(notification))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, notification: Notification) -> None:
        try:
            await self._notifier.send(notification)
            self._log.debug(
                "notification.sent",
                event=notification.event,
                recipient=notification.recipient,
            )
        except Exception as e:
            self._log.warning(
                "notification.failed",
                event=notification.event,
                recipient=notification.recipient,
                error=str(e),
            )

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


def build_notifier(config: NotificationConfig) -> Notifier:
    if config.webhook_url:
        return WebhookNotifier(config.webhook_url, timeout_seconds=config.timeout_seconds)
    return LogNotifier()


@lru_cache
def get_notification_dispatcher() -> NotificationDispatcher:
    """Get the process-wide dispatcher."""
    return NotificationDispatcher(build_notifier(get_settings().notifications))
