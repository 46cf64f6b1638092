"""Unit tests for UploadManager.

Covers the reserve/transfer/complete flow for personal, link and generated
link uploads, and the admission limits in front of it.
"""

from __future__ import annotations

import asyncio

import pytest
from sqlmodel import select

from quay.config import MB, get_settings
from quay.errors import (
    ConflictError,
    ContextError,
    ForbiddenError,
    NotFoundError,
    QuotaExceededError,
    RateLimitedError,
    ValidationError,
)
from quay.managers.folder import FolderManager
from quay.managers.link import LinkManager, LinkSpec
from quay.managers.naming import UploadTarget
from quay.managers.upload import UploadManager
from quay.managers.workspace import WorkspaceManager
from quay.models import File, Folder, PendingUpload
from quay.services.access import AccessResolver
from quay.services.quota import get_upload_rate_limiter
from quay.validators.context import Context
from quay.validators.shapes import PersonalUpload
from tests.conftest import OWNER_EMAIL, OWNER_ID


@pytest.fixture
def configure(monkeypatch):
    """Override settings through the environment."""

    def apply(**env: str) -> None:
        for key, value in env.items():
            monkeypatch.setenv(key, value)
        get_settings.cache_clear()
        get_upload_rate_limiter.cache_clear()

    return apply


@pytest.fixture
def uploads(db_session, blob_store, dispatcher) -> UploadManager:
    return UploadManager(db_session, blob_store, dispatcher=dispatcher)


async def _create_link(db_session, **spec) -> object:
    spec.setdefault("slug", "inbox")
    return await LinkManager(db_session).create_link_with_root_folder(
        OWNER_ID, OWNER_EMAIL, LinkSpec(**spec)
    )


async def _pending_rows(db_session) -> list[PendingUpload]:
    result = await db_session.execute(select(PendingUpload))
    return list(result.scalars().all())


async def _send(uploads: UploadManager, pending: PendingUpload, data: bytes, **scope) -> File:
    await uploads.upload_chunk(pending.id, 0, data, **scope)
    completed = await uploads.complete_upload(pending.id, **scope)
    return completed.file


class TestPersonalUpload:
    async def test_full_flow(self, db_session, workspace, blob_store, uploads):
        pending = await uploads.request_upload(
            OWNER_ID, "report.pdf", 5, mime_type="application/pdf"
        )

        assert pending.file_name == "report.pdf"
        assert pending.workspace_id == workspace.id
        assert blob_store.initiate_calls == [pending.storage_path]

        await uploads.upload_chunk(pending.id, 0, b"hello", owner_id=OWNER_ID)
        completed = await uploads.complete_upload(pending.id, owner_id=OWNER_ID, checksum="abc")

        file = completed.file
        assert completed.owner_id == OWNER_ID
        assert (file.workspace_id, file.link_id, file.batch_id) == (workspace.id, None, None)
        assert file.file_size == 5
        assert file.checksum == "abc"
        assert blob_store.blobs[file.storage_path] == b"hello"
        assert await _pending_rows(db_session) == []

    async def test_reserved_names_are_not_reused(self, workspace, uploads):
        first = await uploads.request_upload(OWNER_ID, "report.pdf", 5)
        second = await uploads.request_upload(OWNER_ID, "report.pdf", 5)

        assert first.file_name == "report.pdf"
        assert second.file_name == "report (1).pdf"
        assert first.storage_path != second.storage_path

    async def test_existing_file_forces_new_name(self, workspace, uploads):
        first = await uploads.request_upload(OWNER_ID, "report.pdf", 1)
        await _send(uploads, first, b"x")

        second = await uploads.request_upload(OWNER_ID, "report.pdf", 1)

        assert second.file_name == "report (1).pdf"

    async def test_name_is_sanitized(self, workspace, uploads):
        pending = await uploads.request_upload(OWNER_ID, "a/b:c.txt", 1)
        assert pending.file_name == "a_b_c.txt"
        assert pending.original_name == "a/b:c.txt"

    async def test_reserve_upload_name_sanitizes_then_resolves(
        self, workspace, blob_store, uploads
    ):
        target = UploadTarget(
            owner_id=OWNER_ID,
            context=Context.workspace(workspace.id),
            folder_id=None,
            shape=PersonalUpload(workspace_id=workspace.id),
        )
        blob_store.seed(target.path_for("a_b.txt"))

        assert await uploads.reserve_upload_name(target, "a/b.txt") == "a_b (1).txt"

    async def test_upload_into_folder(self, db_session, workspace, uploads):
        folder = await FolderManager(db_session).create(OWNER_ID, "Docs")
        pending = await uploads.request_upload(OWNER_ID, "a.txt", 1, folder_id=folder.id)
        file = await _send(uploads, pending, b"x")
        assert file.folder_id == folder.id
        assert f"/folders/{folder.id}/" in file.storage_path

    async def test_link_folder_rejected(self, db_session, workspace, uploads):
        link = await _create_link(db_session)
        result = await db_session.execute(select(Folder).where(Folder.link_id == link.id))
        root = result.scalars().one()

        with pytest.raises(ContextError):
            await uploads.request_upload(OWNER_ID, "a.txt", 1, folder_id=root.id)

    async def test_too_large_denied_before_reservation(
        self, db_session, workspace, blob_store, uploads
    ):
        with pytest.raises(QuotaExceededError) as exc_info:
            await uploads.request_upload(OWNER_ID, "big.bin", 5 * MB + 1)

        assert exc_info.value.details["reason"] == "file_too_large"
        assert blob_store.initiate_calls == []
        assert await _pending_rows(db_session) == []

    async def test_rate_limited(self, db_session, blob_store, configure):
        configure(QUAY_QUOTA__RATE_LIMIT__MAX_UPLOADS="2")
        await WorkspaceManager(db_session).create(OWNER_ID)
        uploads = UploadManager(db_session, blob_store)

        await uploads.request_upload(OWNER_ID, "1.txt", 1)
        await uploads.request_upload(OWNER_ID, "2.txt", 1)
        with pytest.raises(RateLimitedError) as exc_info:
            await uploads.request_upload(OWNER_ID, "3.txt", 1)

        assert exc_info.value.details["reason"] == "rate_limited"
        assert exc_info.value.details["retry_after"] > 0

    async def test_negative_size_rejected(self, workspace, uploads):
        with pytest.raises(ValidationError):
            await uploads.request_upload(OWNER_ID, "a.txt", -1)

    async def test_incomplete_upload_not_committed(self, db_session, workspace, uploads):
        pending = await uploads.request_upload(OWNER_ID, "a.txt", 10)
        await uploads.upload_chunk(pending.id, 0, b"12345")

        with pytest.raises(ValidationError):
            await uploads.complete_upload(pending.id)

        assert len(await _pending_rows(db_session)) == 1
        result = await db_session.execute(select(File))
        assert result.scalars().all() == []

    async def test_abort_releases_the_name(self, db_session, workspace, blob_store, uploads):
        pending = await uploads.request_upload(OWNER_ID, "a.txt", 10)

        await uploads.abort_upload(pending.id, owner_id=OWNER_ID)

        assert blob_store.abort_calls == [pending.id]
        assert await _pending_rows(db_session) == []
        again = await uploads.request_upload(OWNER_ID, "a.txt", 10)
        assert again.file_name == "a.txt"

    async def test_other_owner_cannot_complete(self, db_session, workspace, uploads):
        pending = await uploads.request_upload(OWNER_ID, "a.txt", 1)
        with pytest.raises(NotFoundError):
            await uploads.complete_upload(pending.id, owner_id="owner-2")


class TestConcurrentReservation:
    async def test_same_name_gets_distinct_destinations(self, file_session_factory, blob_store):
        async with file_session_factory() as setup:
            await WorkspaceManager(setup).create(OWNER_ID)

        async with file_session_factory() as first, file_session_factory() as second:
            results = await asyncio.gather(
                UploadManager(first, blob_store).request_upload(OWNER_ID, "report.pdf", 3),
                UploadManager(second, blob_store).request_upload(OWNER_ID, "report.pdf", 3),
            )

        assert sorted(p.file_name for p in results) == ["report (1).pdf", "report.pdf"]
        assert len({p.storage_path for p in results}) == 2


class TestLinkUpload:
    async def test_custom_link_flow(self, db_session, workspace, uploads, dispatcher, notifier):
        link = await _create_link(db_session, name="Inbox")
        batch = await uploads.open_batch("inbox", uploader_name="Ana", uploader_email="ANA@x.io")
        assert batch.target_folder_id is None
        assert batch.uploader_email == "ana@x.io"

        pending = await uploads.request_link_upload(batch.id, "scan.pdf", 4)
        file = await _send(uploads, pending, b"scan", batch_id=batch.id)

        result = await db_session.execute(select(Folder).where(Folder.link_id == link.id))
        root = result.scalar_one()
        assert (file.workspace_id, file.link_id, file.batch_id) == (None, link.id, batch.id)
        assert file.folder_id == root.id
        assert file.uploader_name == "Ana"
        assert file.storage_path.startswith(f"links/{OWNER_ID}/{link.id}/")

        closed = await uploads.complete_batch(batch.id)
        assert closed.status == "completed"
        assert closed.total_files == 1
        assert closed.total_size == 4

        await dispatcher.drain()
        assert notifier.events() == ["upload.received", "batch.completed"]
        assert {n.recipient for n in notifier.sent} == {OWNER_EMAIL}

    async def test_closed_batch_refuses_files(self, db_session, workspace, uploads):
        await _create_link(db_session)
        batch = await uploads.open_batch("inbox", uploader_name="Ana")
        await uploads.complete_batch(batch.id)

        with pytest.raises(ConflictError):
            await uploads.request_link_upload(batch.id, "late.pdf", 1)

    async def test_generated_link_lands_in_source_folder(self, db_session, workspace, uploads):
        folder = await FolderManager(db_session).create(OWNER_ID, "Tax")
        link = await LinkManager(db_session).link_existing_folder(OWNER_ID, OWNER_EMAIL, folder.id)

        batch = await uploads.open_batch(link.slug, uploader_name="Ana")
        assert batch.target_folder_id == folder.id
        pending = await uploads.request_link_upload(batch.id, "w2.pdf", 2)
        file = await _send(uploads, pending, b"w2")

        assert (file.workspace_id, file.link_id, file.batch_id) == (workspace.id, None, batch.id)
        assert file.folder_id == folder.id

    async def test_notifications_can_be_disabled(
        self, db_session, workspace, uploads, dispatcher, notifier
    ):
        await _create_link(db_session, link_config={"notify_on_upload": False})
        batch = await uploads.open_batch("inbox", uploader_name="Ana")
        pending = await uploads.request_link_upload(batch.id, "a.txt", 1)
        await _send(uploads, pending, b"x")
        await dispatcher.drain()
        assert notifier.sent == []

    async def test_unknown_slug(self, workspace, uploads):
        with pytest.raises(NotFoundError):
            await uploads.open_batch("missing", uploader_name="Ana")


class TestLinkAccess:
    async def test_inactive_link(self, db_session, workspace, uploads):
        link = await _create_link(db_session)
        await LinkManager(db_session).deactivate(link.id, OWNER_ID)

        with pytest.raises(ForbiddenError) as exc_info:
            await uploads.open_batch("inbox", uploader_name="Ana")
        assert exc_info.value.details["reason"] == "link_inactive"

    async def test_expired_link(self, db_session, workspace, uploads):
        await _create_link(db_session, link_config={"expires_at": "2001-01-01T00:00:00"})
        with pytest.raises(ForbiddenError) as exc_info:
            await uploads.open_batch("inbox", uploader_name="Ana")
        assert exc_info.value.details["reason"] == "link_expired"

    async def test_password(self, db_session, workspace, uploads):
        await _create_link(db_session, password="open sesame")

        with pytest.raises(ForbiddenError):
            await uploads.open_batch("inbox", uploader_name="Ana", password="wrong")
        batch = await uploads.open_batch("inbox", uploader_name="Ana", password="open sesame")
        assert batch.link_id is not None

    async def test_private_link_needs_permission(self, db_session, workspace, uploads):
        link = await _create_link(db_session, is_public=False)

        with pytest.raises(ForbiddenError) as exc_info:
            await uploads.open_batch("inbox", uploader_name="Ana", uploader_email="ana@x.io")
        assert exc_info.value.details["reason"] == "not_permitted"

        await AccessResolver(db_session).grant(link.id, OWNER_ID, "ana@x.io")
        batch = await uploads.open_batch("inbox", uploader_name="Ana", uploader_email="ana@x.io")
        assert batch.uploader_email == "ana@x.io"

    async def test_required_name(self, db_session, workspace, uploads):
        await _create_link(db_session, link_config={"requires_name": True})
        with pytest.raises(ValidationError):
            await uploads.open_batch("inbox", uploader_name="  ")

    async def test_anonymous_default_name(self, db_session, workspace, uploads):
        await _create_link(db_session)
        batch = await uploads.open_batch("inbox")
        assert batch.uploader_name == "Anonymous"


class TestLinkLimits:
    async def test_link_file_size_limit(self, db_session, workspace, uploads):
        await _create_link(db_session, max_file_size=10)
        batch = await uploads.open_batch("inbox", uploader_name="Ana")

        with pytest.raises(QuotaExceededError) as exc_info:
            await uploads.request_link_upload(batch.id, "a.bin", 11)
        assert exc_info.value.details["reason"] == "file_too_large"

    async def test_link_file_count_includes_pending(self, db_session, workspace, uploads):
        await _create_link(db_session, max_files=1)
        batch = await uploads.open_batch("inbox", uploader_name="Ana")
        await uploads.request_link_upload(batch.id, "a.txt", 1)

        with pytest.raises(QuotaExceededError) as exc_info:
            await uploads.request_link_upload(batch.id, "b.txt", 1)
        assert exc_info.value.details["reason"] == "link_file_limit"

    async def test_batch_file_limit(self, db_session, blob_store, configure):
        configure(QUAY_UPLOAD__MAX_FILES_PER_BATCH="2")
        await WorkspaceManager(db_session).create(OWNER_ID)
        await _create_link(db_session)
        uploads = UploadManager(db_session, blob_store)
        batch = await uploads.open_batch("inbox", uploader_name="Ana")

        first = await uploads.request_link_upload(batch.id, "a.txt", 1)
        await _send(uploads, first, b"a")
        await uploads.request_link_upload(batch.id, "b.txt", 1)

        with pytest.raises(QuotaExceededError) as exc_info:
            await uploads.request_link_upload(batch.id, "c.txt", 1)
        assert exc_info.value.details["reason"] == "batch_file_limit"

    async def test_batch_size_limit(self, db_session, blob_store, configure):
        configure(QUAY_UPLOAD__MAX_BATCH_SIZE_BYTES="10")
        await WorkspaceManager(db_session).create(OWNER_ID)
        await _create_link(db_session)
        uploads = UploadManager(db_session, blob_store)
        batch = await uploads.open_batch("inbox", uploader_name="Ana")
        await uploads.request_link_upload(batch.id, "a.bin", 6)

        with pytest.raises(QuotaExceededError) as exc_info:
            await uploads.request_link_upload(batch.id, "b.bin", 5)
        assert exc_info.value.details["reason"] == "batch_size_limit"

    async def test_batch_rows_track_totals(self, db_session, workspace, uploads):
        await _create_link(db_session)
        batch = await uploads.open_batch("inbox", uploader_name="Ana")
        for name in ("a.txt", "b.txt"):
            pending = await uploads.request_link_upload(batch.id, name, 2)
            await _send(uploads, pending, b"xy")

        stored = await uploads.get_batch(batch.id)
        assert (stored.total_files, stored.total_size) == (2, 4)
