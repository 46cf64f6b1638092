"""Unit tests for individual GC tasks."""

from __future__ import annotations

from datetime import timedelta

from sqlmodel import select

from quay.managers.link import LinkManager, LinkSpec
from quay.models import Batch, File, PendingUpload, StorageCounter
from quay.services.gc.tasks import (
    ExpiredUploadGC,
    OrphanBlobGC,
    OrphanRecordGC,
    StorageReconcileGC,
)
from quay.services.quota import QuotaService
from quay.utils.datetime import utcnow
from tests.conftest import OWNER_EMAIL, OWNER_ID, seed_usage


def _file(workspace_id: str, file_id: str, *, size: int = 0, **extra) -> File:
    return File(
        id=file_id,
        workspace_id=workspace_id,
        file_name=f"{file_id}.txt",
        original_name=f"{file_id}.txt",
        file_size=size,
        storage_path=f"workspaces/{OWNER_ID}/{workspace_id}/{file_id}.txt",
        **extra,
    )


async def _file_ids(db_session) -> set[str]:
    result = await db_session.execute(select(File.id))
    return set(result.scalars().all())


class TestExpiredUploadGC:
    async def _pending(self, db_session, workspace, session_id: str, *, expired: bool) -> None:
        offset = timedelta(minutes=-5 if expired else 5)
        db_session.add(
            PendingUpload(
                id=session_id,
                owner_id=OWNER_ID,
                workspace_id=workspace.id,
                file_name="a.txt",
                original_name="a.txt",
                storage_path=f"pending/{session_id}",
                expected_size=10,
                expires_at=utcnow() + offset,
            )
        )
        await db_session.commit()

    async def test_purges_expired_sessions(self, db_session, blob_store):
        session = await blob_store.initiate_upload("workspaces/a.txt", expected_size=10)
        blob_store.expire_session(session.session_id)

        result = await ExpiredUploadGC(db_session, blob_store).run()

        assert result.cleaned_count == 1
        assert blob_store.sessions == {}

    async def test_expired_pending_row_aborted_and_removed(
        self, db_session, workspace, blob_store
    ):
        session = await blob_store.initiate_upload("pending/x", expected_size=10)
        await self._pending(db_session, workspace, session.session_id, expired=True)
        await self._pending(db_session, workspace, "up-live", expired=False)

        result = await ExpiredUploadGC(db_session, blob_store).run()

        assert result.success
        assert result.cleaned_count == 1
        assert blob_store.abort_calls == [session.session_id]
        remaining = await db_session.execute(select(PendingUpload.id))
        assert remaining.scalars().all() == ["up-live"]


class TestOrphanRecordGC:
    async def test_removes_flagged_rows(self, db_session, workspace, blob_store):
        orphan = _file(workspace.id, "file-orphan", requires_cleanup=True)
        db_session.add_all([orphan, _file(workspace.id, "file-ok")])
        await db_session.commit()
        path = orphan.storage_path
        blob_store.seed(path)

        result = await OrphanRecordGC(db_session, blob_store).run()

        assert result.cleaned_count == 1
        assert path not in blob_store.blobs
        assert await _file_ids(db_session) == {"file-ok"}

    async def test_blob_failure_keeps_row(self, db_session, workspace, blob_store):
        orphan = _file(workspace.id, "file-orphan", requires_cleanup=True)
        db_session.add(orphan)
        await db_session.commit()
        blob_store.fail_delete_paths.add(orphan.storage_path)

        result = await OrphanRecordGC(db_session, blob_store).run()

        assert not result.success
        assert result.cleaned_count == 0
        assert await _file_ids(db_session) == {"file-orphan"}


class TestStorageReconcileGC:
    async def _counter(self, db_session) -> int:
        result = await db_session.execute(
            select(StorageCounter.bytes_used).where(StorageCounter.owner_id == OWNER_ID)
        )
        return result.scalar_one()

    async def test_corrects_drift(self, db_session, workspace):
        link = await LinkManager(db_session).create_link_with_root_folder(
            OWNER_ID, OWNER_EMAIL, LinkSpec(slug="inbox")
        )
        db_session.add(Batch(id="bat-1", link_id=link.id, uploader_name="Ana"))
        await db_session.flush()
        db_session.add_all(
            [
                _file(workspace.id, "file-1", size=100),
                File(
                    id="file-2",
                    link_id=link.id,
                    batch_id="bat-1",
                    file_name="scan.pdf",
                    original_name="scan.pdf",
                    file_size=50,
                    storage_path="links/scan.pdf",
                ),
            ]
        )
        await db_session.commit()
        await seed_usage(db_session, OWNER_ID, 999, age_seconds=3600)

        result = await StorageReconcileGC(db_session).run()

        assert result.cleaned_count == 1
        assert await self._counter(db_session) == 150

    async def test_rows_awaiting_cleanup_are_not_billed(self, db_session, workspace):
        db_session.add_all(
            [
                _file(workspace.id, "file-live", size=30),
                _file(workspace.id, "file-orphan", size=100, requires_cleanup=True),
            ]
        )
        await db_session.commit()
        await seed_usage(db_session, OWNER_ID, 0, age_seconds=3600)

        result = await StorageReconcileGC(db_session).run()

        assert result.cleaned_count == 1
        assert await self._counter(db_session) == 30

    async def test_missing_counter_created(self, db_session, workspace):
        db_session.add(_file(workspace.id, "file-1", size=30))
        await db_session.commit()

        result = await StorageReconcileGC(db_session).run()

        assert result.cleaned_count == 1
        assert await self._counter(db_session) == 30

    async def test_recent_counter_left_alone(self, db_session, workspace):
        await seed_usage(db_session, OWNER_ID, 999)

        result = await StorageReconcileGC(db_session).run()

        assert result.skipped_count == 1
        assert await self._counter(db_session) == 999

    async def test_counter_changed_mid_cycle_is_kept(self, db_session, workspace):
        db_session.add(_file(workspace.id, "file-1", size=30))
        await db_session.commit()
        await seed_usage(db_session, OWNER_ID, 0, age_seconds=3600)
        quota = QuotaService(db_session)
        settled_before = utcnow() - timedelta(seconds=60)

        await quota.adjust_usage(OWNER_ID, 30, operation="upload", file_id="file-1")

        assert not await quota.reconcile_usage(OWNER_ID, settled_before=settled_before)
        assert await self._counter(db_session) == 30

    async def test_matching_counter_untouched(self, db_session, workspace):
        db_session.add(_file(workspace.id, "file-1", size=30))
        await db_session.commit()
        await seed_usage(db_session, OWNER_ID, 30, age_seconds=3600)

        result = await StorageReconcileGC(db_session).run()

        assert result.cleaned_count == 0
        assert result.skipped_count == 0


class TestOrphanBlobGC:
    async def test_deletes_old_unreferenced_blobs(self, db_session, workspace, blob_store):
        known = _file(workspace.id, "file-1")
        db_session.add(known)
        await db_session.commit()
        blob_store.seed(known.storage_path, age_seconds=7200)
        blob_store.seed("workspaces/stray-old.txt", age_seconds=7200)
        blob_store.seed("workspaces/stray-new.txt", age_seconds=60)

        result = await OrphanBlobGC(db_session, blob_store, grace_seconds=3600).run()

        assert result.cleaned_count == 1
        assert result.skipped_count == 1
        assert set(blob_store.blobs) == {known.storage_path, "workspaces/stray-new.txt"}

    async def test_pending_upload_paths_are_known(self, db_session, workspace, blob_store):
        db_session.add(
            PendingUpload(
                id="up-1",
                owner_id=OWNER_ID,
                workspace_id=workspace.id,
                file_name="a.txt",
                original_name="a.txt",
                storage_path="workspaces/a.txt",
                expected_size=1,
                expires_at=utcnow() + timedelta(hours=1),
            )
        )
        await db_session.commit()
        blob_store.seed("workspaces/a.txt", age_seconds=7200)

        result = await OrphanBlobGC(db_session, blob_store, grace_seconds=3600).run()

        assert result.cleaned_count == 0
        assert "workspaces/a.txt" in blob_store.blobs
