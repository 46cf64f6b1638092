"""Unit tests for NameReserver duplicate detection."""

from __future__ import annotations

from datetime import timedelta

import pytest

from quay.errors import NameCollisionExhaustedError
from quay.managers import naming
from quay.managers.naming import NameReserver
from quay.models import File, PendingUpload
from quay.storage.paths import blob_path
from quay.utils.datetime import utcnow
from quay.validators.context import Context
from tests.conftest import OWNER_ID


def _file(workspace_id: str, name: str, file_id: str = "file-1") -> File:
    return File(
        id=file_id,
        workspace_id=workspace_id,
        file_name=name,
        original_name=name,
        storage_path=f"seeded/{file_id}/{name}",
    )


class TestResolve:
    async def test_free_name_kept(self, db_session, workspace, blob_store):
        reserver = NameReserver(db_session, blob_store)
        name = await reserver.resolve(
            OWNER_ID, Context.workspace(workspace.id), None, "report.pdf"
        )
        assert name == "report.pdf"

    async def test_database_hit_numbers_the_name(self, db_session, workspace, blob_store):
        db_session.add(_file(workspace.id, "report.pdf"))
        await db_session.commit()
        context = Context.workspace(workspace.id)

        name = await NameReserver(db_session, blob_store).resolve(
            OWNER_ID, context, None, "report.pdf"
        )

        assert name == "report (1).pdf"
        # Names the database already holds are never looked up in the blob store
        assert blob_path(OWNER_ID, context, None, "report.pdf") not in blob_store.exists_calls

    async def test_blob_hit_numbers_the_name(self, db_session, workspace, blob_store):
        context = Context.workspace(workspace.id)
        blob_store.seed(blob_path(OWNER_ID, context, None, "report.pdf"))

        name = await NameReserver(db_session, blob_store).resolve(
            OWNER_ID, context, None, "report.pdf"
        )

        assert name == "report (1).pdf"

    async def test_hit_in_both_layers_numbers_the_name(self, db_session, workspace, blob_store):
        context = Context.workspace(workspace.id)
        db_session.add(_file(workspace.id, "report.pdf"))
        await db_session.commit()
        blob_store.seed(blob_path(OWNER_ID, context, None, "report.pdf"))

        name = await NameReserver(db_session, blob_store).resolve(
            OWNER_ID, context, None, "report.pdf"
        )

        assert name == "report (1).pdf"

    async def test_layers_are_checked_for_every_candidate(
        self, db_session, workspace, blob_store
    ):
        context = Context.workspace(workspace.id)
        db_session.add(_file(workspace.id, "report.pdf"))
        await db_session.commit()
        blob_store.seed(blob_path(OWNER_ID, context, None, "report.pdf"))
        blob_store.seed(blob_path(OWNER_ID, context, None, "report (1).pdf"))

        name = await NameReserver(db_session, blob_store).resolve(
            OWNER_ID, context, None, "report.pdf"
        )

        assert name == "report (2).pdf"

    async def test_pending_upload_counts_as_taken(self, db_session, workspace, blob_store):
        context = Context.workspace(workspace.id)
        db_session.add(
            PendingUpload(
                id="up-1",
                owner_id=OWNER_ID,
                workspace_id=workspace.id,
                file_name="report.pdf",
                original_name="report.pdf",
                storage_path=blob_path(OWNER_ID, context, None, "report.pdf"),
                expected_size=10,
                expires_at=utcnow() + timedelta(hours=1),
            )
        )
        await db_session.commit()

        name = await NameReserver(db_session, blob_store).resolve(
            OWNER_ID, context, None, "report.pdf"
        )

        assert name == "report (1).pdf"

    async def test_other_folder_does_not_collide(self, db_session, workspace, blob_store):
        db_session.add(_file(workspace.id, "report.pdf"))
        await db_session.commit()

        name = await NameReserver(db_session, blob_store).resolve(
            OWNER_ID, Context.workspace(workspace.id), "fld-other", "report.pdf"
        )

        assert name == "report.pdf"

    async def test_renamed_file_does_not_collide_with_itself(self, db_session, workspace):
        db_session.add(_file(workspace.id, "report.pdf"))
        await db_session.commit()

        name = await NameReserver(db_session).resolve(
            OWNER_ID,
            Context.workspace(workspace.id),
            None,
            "report.pdf",
            exclude_file_id="file-1",
        )

        assert name == "report.pdf"


class TestExhaustion:
    async def test_timestamp_fallback(self, db_session, workspace, blob_store, monkeypatch):
        for index, name in enumerate(["a.txt", "a (1).txt", "a (2).txt"]):
            db_session.add(_file(workspace.id, name, file_id=f"file-{index}"))
        await db_session.commit()
        monkeypatch.setattr(naming, "epoch_millis", lambda: 1700000000000)

        name = await NameReserver(db_session, blob_store, max_attempts=2).resolve(
            OWNER_ID, Context.workspace(workspace.id), None, "a.txt"
        )

        assert name == "a-1700000000000.txt"

    async def test_exhausted_when_fallback_taken(
        self, db_session, workspace, blob_store, monkeypatch
    ):
        names = ["a.txt", "a (1).txt", "a-1700000000000.txt"]
        for index, name in enumerate(names):
            db_session.add(_file(workspace.id, name, file_id=f"file-{index}"))
        await db_session.commit()
        monkeypatch.setattr(naming, "epoch_millis", lambda: 1700000000000)

        with pytest.raises(NameCollisionExhaustedError):
            await NameReserver(db_session, blob_store, max_attempts=1).resolve(
                OWNER_ID, Context.workspace(workspace.id), None, "a.txt"
            )
