"""Unit tests for FileManager.

Deletion is blob first, database second; these tests inject failures on
either side through FakeBlobStore and a broken row delete.
"""

from __future__ import annotations

import uuid

import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import select

from quay.config import MB
from quay.errors import ContextError, InfrastructureError, NotFoundError, QuotaExceededError
from quay.managers.file import FileManager
from quay.managers.folder import FolderManager
from quay.managers.link import LinkManager, LinkSpec
from quay.models import Batch, File, Folder
from quay.storage.paths import blob_path
from quay.validators.context import Context
from tests.conftest import OWNER_EMAIL, OWNER_ID


@pytest.fixture
def files(db_session, blob_store) -> FileManager:
    return FileManager(db_session, blob_store)


@pytest.fixture
def add_file(db_session, workspace, blob_store):
    """Insert a personal file row with its blob."""

    async def add(name: str, *, folder_id: str | None = None, size: int = 3) -> File:
        path = blob_path(OWNER_ID, Context.workspace(workspace.id), folder_id, name)
        blob_store.seed(path, b"x" * size)
        file = File(
            id=f"file-{uuid.uuid4().hex[:8]}",
            folder_id=folder_id,
            workspace_id=workspace.id,
            file_name=name,
            original_name=name,
            file_size=size,
            storage_path=path,
        )
        db_session.add(file)
        await db_session.commit()
        return file

    return add


def _break_row_delete(monkeypatch, manager: FileManager) -> None:
    async def broken(file_ids):
        raise OperationalError("DELETE FROM files", {}, Exception("database unavailable"))

    monkeypatch.setattr(manager, "_delete_rows", broken)


async def _file_ids(db_session) -> set[str]:
    result = await db_session.execute(select(File.id))
    return set(result.scalars().all())


class TestDeleteFile:
    async def test_blob_then_row(self, db_session, blob_store, files, add_file):
        file = await add_file("a.txt", size=7)

        deletion = await files.delete_file(file.id, OWNER_ID)

        assert deletion.freed_bytes == 7
        assert deletion.orphaned is False
        assert blob_store.delete_calls == [file.storage_path]
        assert file.storage_path not in blob_store.blobs
        assert await _file_ids(db_session) == set()

    async def test_blob_failure_leaves_row(self, db_session, blob_store, files, add_file):
        file = await add_file("a.txt")
        blob_store.fail_delete_paths.add(file.storage_path)

        with pytest.raises(InfrastructureError):
            await files.delete_file(file.id, OWNER_ID)

        assert await _file_ids(db_session) == {file.id}

    async def test_missing_blob_still_deletes_row(self, db_session, blob_store, files, add_file):
        file = await add_file("a.txt")
        del blob_store.blobs[file.storage_path]

        await files.delete_file(file.id, OWNER_ID)

        assert await _file_ids(db_session) == set()

    async def test_row_failure_reported_as_orphan(
        self, db_session, blob_store, files, add_file, monkeypatch
    ):
        file = await add_file("a.txt")
        file_id, path = file.id, file.storage_path
        _break_row_delete(monkeypatch, files)

        deletion = await files.delete_file(file_id, OWNER_ID)

        assert deletion.orphaned is True
        assert path not in blob_store.blobs
        stored = await db_session.get(File, file_id)
        assert stored.requires_cleanup is True

    async def test_unknown_file(self, workspace, files):
        with pytest.raises(NotFoundError):
            await files.delete_file("file-missing", OWNER_ID)


class TestBulkDelete:
    async def test_partial_failure(self, db_session, blob_store, files, add_file):
        created = [await add_file(f"{n}.txt", size=n + 1) for n in range(5)]
        ids = [f.id for f in created]
        paths = [f.storage_path for f in created]
        for path in paths[1:3]:
            blob_store.fail_delete_paths.add(path)

        result = await files.bulk_delete(ids, OWNER_ID)

        assert result.deleted_count == 3
        assert result.failed_ids == ids[1:3]
        assert result.orphaned_ids == []
        assert result.freed_bytes == 1 + 4 + 5
        assert await _file_ids(db_session) == set(ids[1:3])
        assert [await blob_store.exists(path) for path in paths] == [
            False,
            True,
            True,
            False,
            False,
        ]

    async def test_unknown_id_deletes_nothing(self, db_session, blob_store, files, add_file):
        file = await add_file("a.txt")

        with pytest.raises(NotFoundError):
            await files.bulk_delete([file.id, "file-missing"], OWNER_ID)

        assert blob_store.delete_calls == []
        assert await _file_ids(db_session) == {file.id}

    async def test_orphans_counted_as_deleted(
        self, db_session, blob_store, files, add_file, monkeypatch
    ):
        first = await add_file("a.txt")
        second = await add_file("b.txt")
        ids = [first.id, second.id]
        _break_row_delete(monkeypatch, files)

        result = await files.bulk_delete(ids, OWNER_ID)

        assert result.deleted_count == 2
        assert sorted(result.orphaned_ids) == sorted(ids)
        flagged = await db_session.execute(select(File).where(File.requires_cleanup.is_(True)))
        assert len(flagged.scalars().all()) == 2

    async def test_duplicate_ids_collapsed(self, blob_store, files, add_file):
        file = await add_file("a.txt")
        result = await files.bulk_delete([file.id, file.id], OWNER_ID)
        assert result.deleted_count == 1
        assert blob_store.delete_calls == [file.storage_path]

    async def test_empty_request(self, workspace, files):
        result = await files.bulk_delete([], OWNER_ID)
        assert result.deleted_count == 0


class TestRenameAndMove:
    async def test_rename_collision_numbered(self, files, add_file):
        await add_file("b.txt")
        file = await add_file("a.txt")

        renamed = await files.rename(file.id, OWNER_ID, "b.txt")

        assert renamed.file_name == "b (1).txt"
        # The blob is not moved
        assert renamed.storage_path.endswith("/a.txt")

    async def test_move_into_folder(self, db_session, files, add_file):
        folder = await FolderManager(db_session).create(OWNER_ID, "Docs")
        await add_file("a.txt", folder_id=folder.id)
        loose = await add_file("a.txt")

        moved = await files.move(loose.id, OWNER_ID, folder.id)

        assert moved.folder_id == folder.id
        assert moved.file_name == "a (1).txt"

    async def test_move_into_link_folder_rejected(self, db_session, files, add_file):
        link = await LinkManager(db_session).create_link_with_root_folder(
            OWNER_ID, OWNER_EMAIL, LinkSpec(slug="inbox")
        )
        result = await db_session.execute(select(Folder).where(Folder.link_id == link.id))
        root = result.scalar_one()
        file = await add_file("a.txt")

        with pytest.raises(ContextError):
            await files.move(file.id, OWNER_ID, root.id)


class TestCopyToWorkspace:
    @pytest.fixture
    async def link_file(self, db_session, workspace, blob_store) -> File:
        link = await LinkManager(db_session).create_link_with_root_folder(
            OWNER_ID, OWNER_EMAIL, LinkSpec(slug="inbox")
        )
        db_session.add(Batch(id="bat-1", link_id=link.id, uploader_name="Ana"))
        await db_session.flush()
        path = blob_path(OWNER_ID, Context.link(link.id), None, "scan.pdf")
        blob_store.seed(path, b"scan")
        file = File(
            id="file-link",
            link_id=link.id,
            batch_id="bat-1",
            file_name="scan.pdf",
            original_name="scan.pdf",
            file_size=4,
            storage_path=path,
        )
        db_session.add(file)
        await db_session.commit()
        return file

    async def test_copy_creates_personal_file(self, workspace, blob_store, files, link_file):
        copy = await files.copy_to_workspace(link_file.id, OWNER_ID)

        assert (copy.workspace_id, copy.link_id, copy.batch_id) == (workspace.id, None, None)
        assert copy.file_name == "scan.pdf"
        assert copy.file_size == 4
        assert blob_store.blobs[copy.storage_path] == b"scan"
        assert copy.storage_path.startswith(f"workspaces/{OWNER_ID}/{workspace.id}/")

    async def test_copy_collision_numbered(self, files, add_file, link_file):
        await add_file("scan.pdf")
        copy = await files.copy_to_workspace(link_file.id, OWNER_ID)
        assert copy.file_name == "scan (1).pdf"

    async def test_copy_failure_writes_no_row(self, db_session, blob_store, files, link_file):
        blob_store.fail_copy = True

        with pytest.raises(InfrastructureError):
            await files.copy_to_workspace(link_file.id, OWNER_ID)

        assert await _file_ids(db_session) == {link_file.id}

    async def test_copy_counts_against_quota(self, db_session, files, link_file):
        link_file.file_size = 6 * MB
        await db_session.commit()

        with pytest.raises(QuotaExceededError):
            await files.copy_to_workspace(link_file.id, OWNER_ID)
