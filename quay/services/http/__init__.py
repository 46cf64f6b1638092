"""Shared outbound HTTP client."""

from quay.services.http.client import HTTPClientManager, http_client_manager

__all__ = ["HTTPClientManager", "http_client_manager"]
