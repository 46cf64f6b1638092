"""Cross-row invariants enforced by the database.

CHECK constraints and partial unique indexes live on the models. Rules that
need to look at another row are installed here as triggers, emitted after
``metadata.create_all`` for SQLite and PostgreSQL:

- folder context must equal its parent folder's context
- file context must equal its folder's context
- batch target folder must match the link type
- generated links must point at a folder in the link's own workspace
- the owner permission cannot be removed or demoted while its link exists

Each rule is also checked by the application (quay.validators) before the
write is attempted.
"""

from __future__ import annotations

from sqlalchemy import DDL, event
from sqlmodel import SQLModel

# ---- SQLite ----
# One CREATE TRIGGER per DDL statement; the sqlite3 driver runs one at a time.

_FOLDER_PARENT_CHECK = """
BEGIN
    SELECT RAISE(ABORT, 'folder context must match parent folder context')
    WHERE NOT EXISTS (
        SELECT 1 FROM folders p
        WHERE p.id = NEW.parent_folder_id
          AND p.workspace_id IS NEW.workspace_id
          AND p.link_id IS NEW.link_id
    );
END
"""

_FILE_FOLDER_CHECK = """
BEGIN
    SELECT RAISE(ABORT, 'file context must match folder context')
    WHERE NOT EXISTS (
        SELECT 1 FROM folders f
        WHERE f.id = NEW.folder_id
          AND f.workspace_id IS NEW.workspace_id
          AND f.link_id IS NEW.link_id
    );
END
"""

_BATCH_TARGET_CHECK = """
BEGIN
    SELECT RAISE(ABORT, 'batch target folder does not match link type')
    WHERE EXISTS (
        SELECT 1 FROM links l
        WHERE l.id = NEW.link_id
          AND (
              (l.link_type IN ('base', 'custom') AND NEW.target_folder_id IS NOT NULL)
              OR (l.link_type = 'generated'
                  AND (NEW.target_folder_id IS NULL
                       OR NEW.target_folder_id IS NOT l.source_folder_id))
          )
    );
END
"""

_GENERATED_SOURCE_CHECK = """
BEGIN
    SELECT RAISE(ABORT, 'generated link source must be a folder of its workspace')
    WHERE NOT EXISTS (
        SELECT 1 FROM folders f
        WHERE f.id = NEW.source_folder_id
          AND f.workspace_id = NEW.workspace_id
          AND f.link_id IS NULL
    );
END
"""

SQLITE_TRIGGERS = [
    "CREATE TRIGGER IF NOT EXISTS folders_context_inherit_insert "
    "BEFORE INSERT ON folders WHEN NEW.parent_folder_id IS NOT NULL" + _FOLDER_PARENT_CHECK,
    "CREATE TRIGGER IF NOT EXISTS folders_context_inherit_update "
    "BEFORE UPDATE OF parent_folder_id, workspace_id, link_id ON folders "
    "WHEN NEW.parent_folder_id IS NOT NULL" + _FOLDER_PARENT_CHECK,
    "CREATE TRIGGER IF NOT EXISTS files_folder_context_insert "
    "BEFORE INSERT ON files WHEN NEW.folder_id IS NOT NULL" + _FILE_FOLDER_CHECK,
    "CREATE TRIGGER IF NOT EXISTS files_folder_context_update "
    "BEFORE UPDATE OF folder_id, workspace_id, link_id ON files "
    "WHEN NEW.folder_id IS NOT NULL" + _FILE_FOLDER_CHECK,
    "CREATE TRIGGER IF NOT EXISTS batches_target_folder_insert "
    "BEFORE INSERT ON batches" + _BATCH_TARGET_CHECK,
    "CREATE TRIGGER IF NOT EXISTS batches_target_folder_update "
    "BEFORE UPDATE OF target_folder_id, link_id ON batches" + _BATCH_TARGET_CHECK,
    "CREATE TRIGGER IF NOT EXISTS links_generated_source_insert "
    "BEFORE INSERT ON links WHEN NEW.link_type = 'generated'" + _GENERATED_SOURCE_CHECK,
    "CREATE TRIGGER IF NOT EXISTS links_generated_source_update "
    "BEFORE UPDATE OF link_type, source_folder_id, workspace_id ON links "
    "WHEN NEW.link_type = 'generated'" + _GENERATED_SOURCE_CHECK,
    """
    CREATE TRIGGER IF NOT EXISTS permissions_owner_delete
    BEFORE DELETE ON permissions WHEN OLD.role = 'owner'
    BEGIN
        SELECT RAISE(ABORT, 'owner permission cannot be removed while the link exists')
        WHERE EXISTS (SELECT 1 FROM links WHERE id = OLD.link_id);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS permissions_owner_demote
    BEFORE UPDATE OF role ON permissions
    WHEN OLD.role = 'owner' AND NEW.role != 'owner'
    BEGIN
        SELECT RAISE(ABORT, 'owner permission cannot be demoted');
    END
    """,
]

# ---- PostgreSQL ----
# Raised with SQLSTATE 23514 (check_violation) so drivers report IntegrityError.

POSTGRES_TRIGGERS = [
    """
    CREATE OR REPLACE FUNCTION quay_check_folder_context() RETURNS trigger AS $$
    BEGIN
        IF NEW.parent_folder_id IS NOT NULL AND NOT EXISTS (
            SELECT 1 FROM folders p
            WHERE p.id = NEW.parent_folder_id
              AND p.workspace_id IS NOT DISTINCT FROM NEW.workspace_id
              AND p.link_id IS NOT DISTINCT FROM NEW.link_id
        ) THEN
            RAISE EXCEPTION 'folder context must match parent folder context'
                USING ERRCODE = 'check_violation';
        END IF;
        RETURN NEW;
    END;
    $$ LANGUAGE plpgsql
    """,
    "DROP TRIGGER IF EXISTS folders_context_inherit ON folders",
    "CREATE TRIGGER folders_context_inherit BEFORE INSERT OR UPDATE "
    "OF parent_folder_id, workspace_id, link_id ON folders "
    "FOR EACH ROW EXECUTE FUNCTION quay_check_folder_context()",
    """
    CREATE OR REPLACE FUNCTION quay_check_file_folder_context() RETURNS trigger AS $$
    BEGIN
        IF NEW.folder_id IS NOT NULL AND NOT EXISTS (
            SELECT 1 FROM folders f
            WHERE f.id = NEW.folder_id
              AND f.workspace_id IS NOT DISTINCT FROM NEW.workspace_id
              AND f.link_id IS NOT DISTINCT FROM NEW.link_id
        ) THEN
            RAISE EXCEPTION 'file context must match folder context'
                USING ERRCODE = 'check_violation';
        END IF;
        RETURN NEW;
    END;
    $$ LANGUAGE plpgsql
    """,
    "DROP TRIGGER IF EXISTS files_folder_context ON files",
    "CREATE TRIGGER files_folder_context BEFORE INSERT OR UPDATE "
    "OF folder_id, workspace_id, link_id ON files "
    "FOR EACH ROW EXECUTE FUNCTION quay_check_file_folder_context()",
    """
    CREATE OR REPLACE FUNCTION quay_check_batch_target() RETURNS trigger AS $$
    DECLARE
        l RECORD;
    BEGIN
        SELECT link_type, source_folder_id INTO l FROM links WHERE id = NEW.link_id;
        IF FOUND AND (
            (l.link_type IN ('base', 'custom') AND NEW.target_folder_id IS NOT NULL)
            OR (l.link_type = 'generated'
                AND NEW.target_folder_id IS DISTINCT FROM l.source_folder_id)
        ) THEN
            RAISE EXCEPTION 'batch target folder does not match link type'
                USING ERRCODE = 'check_violation';
        END IF;
        RETURN NEW;
    END;
    $$ LANGUAGE plpgsql
    """,
    "DROP TRIGGER IF EXISTS batches_target_folder ON batches",
    "CREATE TRIGGER batches_target_folder BEFORE INSERT OR UPDATE "
    "OF target_folder_id, link_id ON batches "
    "FOR EACH ROW EXECUTE FUNCTION quay_check_batch_target()",
    """
    CREATE OR REPLACE FUNCTION quay_check_generated_source() RETURNS trigger AS $$
    BEGIN
        IF NEW.link_type = 'generated' AND NOT EXISTS (
            SELECT 1 FROM folders f
            WHERE f.id = NEW.source_folder_id
              AND f.workspace_id = NEW.workspace_id
              AND f.link_id IS NULL
        ) THEN
            RAISE EXCEPTION 'generated link source must be a folder of its workspace'
                USING ERRCODE = 'check_violation';
        END IF;
        RETURN NEW;
    END;
    $$ LANGUAGE plpgsql
    """,
    "DROP TRIGGER IF EXISTS links_generated_source ON links",
    "CREATE TRIGGER links_generated_source BEFORE INSERT OR UPDATE "
    "OF link_type, source_folder_id, workspace_id ON links "
    "FOR EACH ROW EXECUTE FUNCTION quay_check_generated_source()",
    """
    CREATE OR REPLACE FUNCTION quay_protect_owner_permission() RETURNS trigger AS $$
    BEGIN
        IF TG_OP = 'UPDATE' THEN
            IF OLD.role = 'owner' AND NEW.role <> 'owner' THEN
                RAISE EXCEPTION 'owner permission cannot be demoted'
                    USING ERRCODE = 'check_violation';
            END IF;
            RETURN NEW;
        END IF;
        IF OLD.role = 'owner' AND EXISTS (SELECT 1 FROM links WHERE id = OLD.link_id) THEN
            RAISE EXCEPTION 'owner permission cannot be removed while the link exists'
                USING ERRCODE = 'check_violation';
        END IF;
        RETURN OLD;
    END;
    $$ LANGUAGE plpgsql
    """,
    "DROP TRIGGER IF EXISTS permissions_owner_guard ON permissions",
    "CREATE TRIGGER permissions_owner_guard BEFORE UPDATE OF role OR DELETE ON permissions "
    "FOR EACH ROW EXECUTE FUNCTION quay_protect_owner_permission()",
]


def install(metadata=SQLModel.metadata) -> None:
    """Register trigger DDL to run after ``metadata.create_all``."""
    for statement in SQLITE_TRIGGERS:
        event.listen(metadata, "after_create", DDL(statement).execute_if(dialect="sqlite"))
    for statement in POSTGRES_TRIGGERS:
        event.listen(metadata, "after_create", DDL(statement).execute_if(dialect="postgresql"))


install()
