"""Shared httpx.AsyncClient for outbound webhooks.

One pooled client is opened in the FastAPI lifespan and reused by every
WebhookNotifier delivery.
"""

from __future__ import annotations

import httpx
import structlog

logger = structlog.get_logger()


class HTTPClientManager:
    """Owns the lifecycle of one pooled httpx.AsyncClient.

    Usage:
        await http_client_manager.startup()
        response = await http_client_manager.client.post(url, json=payload)
        await http_client_manager.shutdown()
    """

    def __init__(
        self,
        *,
        max_connections: int = 50,
        max_keepalive_connections: int = 10,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._limits = httpx.Limits(
            max_connections=max_connections,
            max_keepalive_connections=max_keepalive_connections,
        )
        self._timeout = httpx.Timeout(timeout_seconds)
        self._client: httpx.AsyncClient | None = None
        self._log = logger.bind(component="http_client")

    @property
    def client(self) -> httpx.AsyncClient:
        """The shared client.

        Raises:
            RuntimeError: If startup() has not been called
        """
        if self._client is None:
            raise RuntimeError("HTTP client not initialized. Call startup() first.")
        return self._client

    @property
    def is_started(self) -> bool:
        return self._client is not None

    async def startup(self) -> None:
        if self._client is not None:
            self._log.warning("http_client.already_started")
            return
        self._client = httpx.AsyncClient(limits=self._limits, timeout=self._timeout)
        self._log.info("http_client.started")

    async def shutdown(self) -> None:
        if self._client is None:
            return
        await self._client.aclose()
        self._client = None
        self._log.info("http_client.shutdown")


# Global singleton instance
http_client_manager = HTTPClientManager()
