"""Structural classification of database integrity errors.

Drivers report constraint failures as ``IntegrityError`` wrapping the DBAPI
exception. The kind of violation is read from the driver's error code, never
from the message text:

- sqlite3 (3.11+): ``sqlite_errorname``, e.g. ``SQLITE_CONSTRAINT_UNIQUE``
- asyncpg / psycopg: SQLSTATE via ``pgcode`` / ``sqlstate``, e.g. ``23505``
"""

from __future__ import annotations

from sqlalchemy.exc import IntegrityError

# SQLSTATE codes
PG_UNIQUE_VIOLATION = "23505"
PG_CHECK_VIOLATION = "23514"
PG_FOREIGN_KEY_VIOLATION = "23503"

SQLITE_UNIQUE = {"SQLITE_CONSTRAINT_UNIQUE", "SQLITE_CONSTRAINT_PRIMARYKEY"}
SQLITE_RULE = {"SQLITE_CONSTRAINT_CHECK", "SQLITE_CONSTRAINT_TRIGGER"}
SQLITE_REFERENCE = {"SQLITE_CONSTRAINT_FOREIGNKEY"}


def _codes(exc: IntegrityError) -> tuple[str | None, str | None]:
    """Return (sqlite_errorname, sqlstate) for the wrapped driver error."""
    orig = exc.orig
    sqlite_name = getattr(orig, "sqlite_errorname", None)
    sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if sqlstate is None and orig is not None and orig.__cause__ is not None:
        sqlstate = getattr(orig.__cause__, "sqlstate", None)
    return sqlite_name, sqlstate


def is_unique_violation(exc: IntegrityError) -> bool:
    """Whether the error is a unique / primary key violation."""
    sqlite_name, sqlstate = _codes(exc)
    return sqlite_name in SQLITE_UNIQUE or sqlstate == PG_UNIQUE_VIOLATION


def is_rule_violation(exc: IntegrityError) -> bool:
    """Whether the error comes from a CHECK constraint or invariant trigger."""
    sqlite_name, sqlstate = _codes(exc)
    return sqlite_name in SQLITE_RULE or sqlstate == PG_CHECK_VIOLATION


def is_reference_violation(exc: IntegrityError) -> bool:
    """Whether the error is a foreign key violation."""
    sqlite_name, sqlstate = _codes(exc)
    return sqlite_name in SQLITE_REFERENCE or sqlstate == PG_FOREIGN_KEY_VIOLATION
