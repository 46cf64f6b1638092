"""Unit tests for LinkManager.

Covers transactional creation, slug races, folder sharing and link removal.
"""

from __future__ import annotations

import pytest
from sqlmodel import select

from quay.errors import (
    ConflictError,
    ContextError,
    ForbiddenError,
    NotFoundError,
    SlugTakenError,
    ValidationError,
)
from quay.managers.folder import FolderManager
from quay.managers.link import LinkManager, LinkSpec
from quay.managers.workspace import WorkspaceManager
from quay.models import Batch, File, Folder, Link, Permission
from quay.services.access import verify_password
from tests.conftest import OWNER_EMAIL, OWNER_ID


@pytest.fixture
def link_manager(db_session, dispatcher) -> LinkManager:
    return LinkManager(db_session, dispatcher)


async def _rows(session, model, *where):
    result = await session.execute(select(model).where(*where))
    return list(result.scalars().all())


class TestCreateLink:
    async def test_creates_link_owner_permission_and_root_folder(
        self, db_session, workspace, link_manager
    ):
        link = await link_manager.create_link_with_root_folder(
            OWNER_ID, OWNER_EMAIL, LinkSpec(slug="tax-docs", name="Tax Docs")
        )

        assert link.slug == "tax-docs"
        assert link.workspace_id == workspace.id
        permissions = await _rows(db_session, Permission, Permission.link_id == link.id)
        assert [(p.email, p.role, p.is_verified) for p in permissions] == [
            (OWNER_EMAIL, "owner", True)
        ]
        folders = await _rows(db_session, Folder, Folder.link_id == link.id)
        assert len(folders) == 1
        assert folders[0].name == "Tax Docs"
        assert folders[0].parent_folder_id is None

    async def test_failure_rolls_back_everything(
        self, db_session, workspace, link_manager, monkeypatch
    ):
        async def broken(link, owner_email):
            raise RuntimeError("permission insert failed")

        monkeypatch.setattr(link_manager, "_insert_owner_permission", broken)

        with pytest.raises(RuntimeError):
            await link_manager.create_link_with_root_folder(
                OWNER_ID, OWNER_EMAIL, LinkSpec(slug="tax-docs")
            )

        assert await _rows(db_session, Link) == []
        assert await _rows(db_session, Permission) == []
        assert await _rows(db_session, Folder) == []

    async def test_editors_deduplicated_and_notified(
        self, db_session, workspace, link_manager, dispatcher, notifier
    ):
        link = await link_manager.create_link_with_root_folder(
            OWNER_ID,
            OWNER_EMAIL,
            LinkSpec(
                slug="team",
                editor_emails=["Ed@Example.com", OWNER_EMAIL, "ed@example.com"],
            ),
        )
        await dispatcher.drain()

        editors = await _rows(
            db_session, Permission, Permission.link_id == link.id, Permission.role == "editor"
        )
        assert [p.email for p in editors] == ["ed@example.com"]
        assert notifier.events() == ["permission.granted"]
        assert notifier.sent[0].recipient == "ed@example.com"

    async def test_password_is_hashed(self, workspace, link_manager):
        link = await link_manager.create_link_with_root_folder(
            OWNER_ID, OWNER_EMAIL, LinkSpec(slug="secret", password="hunter2")
        )
        assert link.password_hash != "hunter2"
        assert verify_password("hunter2", link.password_hash)

    async def test_taken_slug_rejected(self, workspace, link_manager):
        await link_manager.create_link_with_root_folder(
            OWNER_ID, OWNER_EMAIL, LinkSpec(slug="taken")
        )
        with pytest.raises(SlugTakenError):
            await link_manager.create_link_with_root_folder(
                OWNER_ID, OWNER_EMAIL, LinkSpec(slug="taken")
            )

    async def test_one_base_link_per_workspace(self, workspace, link_manager):
        await link_manager.create_link_with_root_folder(
            OWNER_ID, OWNER_EMAIL, LinkSpec(slug="me", link_type="base")
        )
        with pytest.raises(ConflictError):
            await link_manager.create_link_with_root_folder(
                OWNER_ID, OWNER_EMAIL, LinkSpec(slug="me-too", link_type="base")
            )

    async def test_generated_type_not_created_directly(self, workspace, link_manager):
        with pytest.raises(ValidationError):
            await link_manager.create_link_with_root_folder(
                OWNER_ID, OWNER_EMAIL, LinkSpec(slug="gen", link_type="generated")
            )

    async def test_non_positive_limits_rejected(self, workspace, link_manager):
        with pytest.raises(ValidationError):
            await link_manager.create_link_with_root_folder(
                OWNER_ID, OWNER_EMAIL, LinkSpec(slug="limits", max_files=0)
            )

    async def test_requires_workspace(self, db_session, link_manager):
        with pytest.raises(NotFoundError):
            await link_manager.create_link_with_root_folder(
                "nobody", "nobody@example.com", LinkSpec(slug="nobody")
            )


class TestSlugRace:
    async def test_losing_writer_gets_slug_taken(self, file_session_factory, monkeypatch):
        async with file_session_factory() as first, file_session_factory() as second:
            await WorkspaceManager(first).create("owner-a")
            await WorkspaceManager(second).create("owner-b")
            winner = LinkManager(first)
            loser = LinkManager(second)

            # The loser's pre-check runs before the winner commits
            original = loser.is_slug_available
            checks: list[str] = []

            async def stale_check(slug):
                checks.append(slug)
                if len(checks) == 1:
                    return True
                return await original(slug)

            monkeypatch.setattr(loser, "is_slug_available", stale_check)

            await winner.create_link_with_root_folder(
                "owner-a", "a@example.com", LinkSpec(slug="contested")
            )
            with pytest.raises(SlugTakenError):
                await loser.create_link_with_root_folder(
                    "owner-b", "b@example.com", LinkSpec(slug="contested")
                )

            links = await _rows(second, Link)
            assert [link.slug for link in links] == ["contested"]
            permissions = await _rows(second, Permission)
            assert [p.email for p in permissions] == ["a@example.com"]
            folders = await _rows(second, Folder)
            assert len(folders) == 1


class TestLinkExistingFolder:
    async def test_shares_folder_with_derived_slug(self, db_session, workspace, link_manager):
        folder = await FolderManager(db_session).create(OWNER_ID, "Tax Docs")

        link = await link_manager.link_existing_folder(OWNER_ID, OWNER_EMAIL, folder.id)

        assert link.link_type == "generated"
        assert link.slug == "tax-docs-link"
        assert link.source_folder_id == folder.id
        assert link.name == "Tax Docs Link"
        # Generated links have no folder tree of their own
        assert await _rows(db_session, Folder, Folder.link_id == link.id) == []
        owners = await _rows(db_session, Permission, Permission.link_id == link.id)
        assert [p.role for p in owners] == ["owner"]

    async def test_derived_slug_skips_taken_candidates(
        self, db_session, workspace, link_manager
    ):
        await link_manager.create_link_with_root_folder(
            OWNER_ID, OWNER_EMAIL, LinkSpec(slug="photos-link")
        )
        folder = await FolderManager(db_session).create(OWNER_ID, "Photos")

        link = await link_manager.link_existing_folder(OWNER_ID, OWNER_EMAIL, folder.id)

        assert link.slug == "photos-link-2"

    async def test_folder_shared_once(self, db_session, workspace, link_manager):
        folder = await FolderManager(db_session).create(OWNER_ID, "Photos")
        await link_manager.link_existing_folder(OWNER_ID, OWNER_EMAIL, folder.id)

        with pytest.raises(ConflictError):
            await link_manager.link_existing_folder(OWNER_ID, OWNER_EMAIL, folder.id)

    async def test_link_folders_cannot_be_shared(self, db_session, workspace, link_manager):
        link = await link_manager.create_link_with_root_folder(
            OWNER_ID, OWNER_EMAIL, LinkSpec(slug="inbox")
        )
        root = (await _rows(db_session, Folder, Folder.link_id == link.id))[0]

        with pytest.raises(ContextError):
            await link_manager.link_existing_folder(OWNER_ID, OWNER_EMAIL, root.id)

    async def test_attaches_inactive_link(self, db_session, workspace, link_manager):
        folder = await FolderManager(db_session).create(OWNER_ID, "Photos")
        link = await link_manager.create_link_with_root_folder(
            OWNER_ID, OWNER_EMAIL, LinkSpec(slug="old-link")
        )
        await link_manager.deactivate(link.id, OWNER_ID)

        attached = await link_manager.link_existing_folder(
            OWNER_ID, OWNER_EMAIL, folder.id, link_id=link.id
        )

        assert attached.id == link.id
        assert attached.link_type == "generated"
        assert attached.source_folder_id == folder.id
        assert attached.is_active is True

    async def test_active_link_cannot_be_attached(self, db_session, workspace, link_manager):
        folder = await FolderManager(db_session).create(OWNER_ID, "Photos")
        link = await link_manager.create_link_with_root_folder(
            OWNER_ID, OWNER_EMAIL, LinkSpec(slug="busy")
        )
        with pytest.raises(ConflictError):
            await link_manager.link_existing_folder(
                OWNER_ID, OWNER_EMAIL, folder.id, link_id=link.id
            )


class TestUpdateAndDeactivate:
    async def test_update_fields_and_slug(self, workspace, link_manager):
        link = await link_manager.create_link_with_root_folder(
            OWNER_ID, OWNER_EMAIL, LinkSpec(slug="before")
        )

        updated = await link_manager.update(
            link.id,
            OWNER_ID,
            {"slug": "after", "name": "Renamed", "max_files": 5, "password": "pw"},
        )

        assert updated.slug == "after"
        assert updated.name == "Renamed"
        assert updated.max_files == 5
        assert verify_password("pw", updated.password_hash)

    async def test_password_removed_with_none(self, workspace, link_manager):
        link = await link_manager.create_link_with_root_folder(
            OWNER_ID, OWNER_EMAIL, LinkSpec(slug="pw", password="pw")
        )
        updated = await link_manager.update(link.id, OWNER_ID, {"password": None})
        assert updated.password_hash is None

    async def test_config_update_keeps_password(self, workspace, link_manager):
        link = await link_manager.create_link_with_root_folder(
            OWNER_ID, OWNER_EMAIL, LinkSpec(slug="pw", password="pw")
        )
        updated = await link_manager.update(
            link.id, OWNER_ID, {"link_config": {"custom_message": "Hi"}}
        )
        assert updated.link_config["custom_message"] == "Hi"
        assert updated.password_hash is not None

    async def test_update_to_taken_slug(self, workspace, link_manager):
        await link_manager.create_link_with_root_folder(OWNER_ID, OWNER_EMAIL, LinkSpec(slug="a"))
        link = await link_manager.create_link_with_root_folder(
            OWNER_ID, OWNER_EMAIL, LinkSpec(slug="b")
        )
        with pytest.raises(SlugTakenError):
            await link_manager.update(link.id, OWNER_ID, {"slug": "a"})

    async def test_deactivate(self, workspace, link_manager):
        link = await link_manager.create_link_with_root_folder(
            OWNER_ID, OWNER_EMAIL, LinkSpec(slug="off")
        )
        deactivated = await link_manager.deactivate(link.id, OWNER_ID)
        assert deactivated.is_active is False
        assert await link_manager.list(OWNER_ID, include_inactive=False) == []
        assert [item.id for item in await link_manager.list(OWNER_ID)] == [link.id]

    async def test_other_owner_cannot_see_link(self, db_session, workspace, link_manager):
        await WorkspaceManager(db_session).create("owner-2")
        link = await link_manager.create_link_with_root_folder(
            OWNER_ID, OWNER_EMAIL, LinkSpec(slug="mine")
        )
        with pytest.raises(NotFoundError):
            await link_manager.get(link.id, "owner-2")


class TestDeleteLink:
    async def test_content_rehomed_into_workspace(self, db_session, workspace, link_manager):
        link = await link_manager.create_link_with_root_folder(
            OWNER_ID, OWNER_EMAIL, LinkSpec(slug="inbox", name="Inbox")
        )
        root = (await _rows(db_session, Folder, Folder.link_id == link.id))[0]
        child = await FolderManager(db_session).create(
            OWNER_ID, "Week 1", parent_folder_id=root.id
        )
        db_session.add(Batch(id="bat-1", link_id=link.id, uploader_name="Ana"))
        await db_session.flush()
        db_session.add(
            File(
                id="file-1",
                folder_id=child.id,
                link_id=link.id,
                batch_id="bat-1",
                file_name="a.pdf",
                original_name="a.pdf",
                file_size=10,
                storage_path="links/x/a.pdf",
            )
        )
        await db_session.commit()

        removal = await link_manager.delete(link.id, OWNER_ID)

        assert removal.rehomed_folders == 2
        assert removal.rehomed_files == 1
        assert await db_session.get(Link, link.id) is None
        assert await _rows(db_session, Permission, Permission.link_id == link.id) == []
        assert await _rows(db_session, Batch) == []
        folders = await _rows(db_session, Folder)
        assert {(f.workspace_id, f.link_id) for f in folders} == {(workspace.id, None)}
        moved = await db_session.get(File, "file-1")
        assert (moved.workspace_id, moved.link_id, moved.batch_id) == (workspace.id, None, None)
        assert moved.folder_id == child.id

    async def test_base_link_cannot_be_deleted(self, workspace, link_manager):
        link = await link_manager.create_link_with_root_folder(
            OWNER_ID, OWNER_EMAIL, LinkSpec(slug="me", link_type="base")
        )
        with pytest.raises(ForbiddenError):
            await link_manager.delete(link.id, OWNER_ID)
