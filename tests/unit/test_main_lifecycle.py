"""Unit tests for app lifecycle wiring in quay.main."""

from __future__ import annotations

from types import SimpleNamespace

import pytest
import uvicorn

from quay import main as main_module
from quay.config import get_settings


async def test_lifespan_wires_startup_and_shutdown_in_order(monkeypatch: pytest.MonkeyPatch):
    events: list[str] = []

    def _recorder(name: str):
        async def record() -> None:
            events.append(name)

        return record

    class FakeHTTPClientManager:
        async def startup(self) -> None:
            events.append("http_startup")

        async def shutdown(self) -> None:
            events.append("http_shutdown")

    class FakeDispatcher:
        async def drain(self) -> None:
            events.append("notifications_drain")

    monkeypatch.setattr(main_module, "init_db", _recorder("init_db"))
    monkeypatch.setattr(main_module, "close_db", _recorder("close_db"))
    monkeypatch.setattr(main_module, "init_gc_scheduler", _recorder("init_gc_scheduler"))
    monkeypatch.setattr(main_module, "shutdown_gc_scheduler", _recorder("shutdown_gc_scheduler"))
    monkeypatch.setattr(main_module, "http_client_manager", FakeHTTPClientManager())
    monkeypatch.setattr(main_module, "get_notification_dispatcher", lambda: FakeDispatcher())

    app = SimpleNamespace(state=SimpleNamespace())
    async with main_module.lifespan(app):
        events.append("inside")

    assert events == [
        "init_db",
        "http_startup",
        "init_gc_scheduler",
        "inside",
        "shutdown_gc_scheduler",
        "notifications_drain",
        "http_shutdown",
        "close_db",
    ]


def test_run_serves_on_configured_address(monkeypatch: pytest.MonkeyPatch):
    calls: list[tuple[object, dict]] = []
    monkeypatch.setenv("QUAY_SERVER__PORT", "9100")
    get_settings.cache_clear()
    monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))

    main_module.run()

    assert calls == [(main_module.app, {"host": "0.0.0.0", "port": 9100})]
