"""Shared fixtures: isolated settings, in-memory SQLite, fake blob store."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

from quay.concurrency import locks
from quay.config import get_settings
from quay.db.session import configure_engine
from quay.managers.workspace import WorkspaceManager
from quay.models import StorageCounter
from quay.services.notifications import NotificationDispatcher, get_notification_dispatcher
from quay.services.quota import get_upload_rate_limiter, get_usage_cache
from quay.storage import get_blob_store
from quay.utils.datetime import utcnow
from tests.fakes import FakeBlobStore, RecordingNotifier

OWNER_ID = "owner-1"
OWNER_EMAIL = "owner@example.com"


async def seed_usage(session, owner_id: str, bytes_used: int, *, age_seconds: int = 0) -> None:
    """Write an owner's storage counter directly, last changed age_seconds ago."""
    await session.merge(
        StorageCounter(
            owner_id=owner_id,
            bytes_used=bytes_used,
            updated_at=utcnow() - timedelta(seconds=age_seconds),
        )
    )
    await session.commit()


def _clear_caches() -> None:
    get_settings.cache_clear()
    get_usage_cache.cache_clear()
    get_upload_rate_limiter.cache_clear()
    get_blob_store.cache_clear()
    get_notification_dispatcher.cache_clear()


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path):
    """Fresh settings, caches and lock map for every test."""
    monkeypatch.setenv("QUAY_CONFIG_FILE", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("QUAY_STORAGE__ROOT_PATH", str(tmp_path / "blobs"))
    monkeypatch.setenv("QUAY_DATABASE__URL", f"sqlite+aiosqlite:///{tmp_path / 'quay.db'}")
    monkeypatch.setenv("QUAY_GC__ENABLED", "false")
    monkeypatch.setenv("QUAY_SECURITY__PASSWORD_HASH_ITERATIONS", "1000")
    monkeypatch.setattr(locks, "_destination_locks", {})
    monkeypatch.setattr(locks, "_destination_locks_lock", asyncio.Lock())
    _clear_caches()
    yield
    _clear_caches()


@pytest.fixture
async def db_engine():
    """In-memory SQLite engine with tables and triggers."""
    engine = configure_engine(create_async_engine("sqlite+aiosqlite:///:memory:", echo=False))
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db_session(db_engine):
    """Create in-memory SQLite database and session."""
    async_session_factory = sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with async_session_factory() as session:
        yield session


@pytest.fixture
async def file_session_factory(tmp_path):
    """Session factory over a file database (separate connections per session)."""
    engine = configure_engine(
        create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'concurrent.db'}")
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def blob_store() -> FakeBlobStore:
    return FakeBlobStore()


@pytest.fixture
async def workspace(db_session):
    """The default owner's workspace."""
    return await WorkspaceManager(db_session).create(OWNER_ID)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def dispatcher(notifier) -> NotificationDispatcher:
    return NotificationDispatcher(notifier)
