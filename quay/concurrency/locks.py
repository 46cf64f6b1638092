"""Destination-level in-memory locks for upload name reservation.

A destination is one folder (or context root). Holding its lock from the
first name check until the upload session is opened keeps two concurrent
uploads of ``report.pdf`` from both settling on ``report (1).pdf``.

Note: These locks only work within a single process. Across instances the
blob store still refuses to open a second session on an occupied path, and
pending_uploads.storage_path is unique.
"""

from __future__ import annotations

import asyncio

# Key: destination key (context + folder), Value: asyncio.Lock
_destination_locks: dict[str, asyncio.Lock] = {}
_destination_locks_lock = asyncio.Lock()


def destination_key(context_key: str, folder_id: str | None) -> str:
    """Lock key for a folder within a context (None = context root)."""
    return f"{context_key}:{folder_id or '-'}"


async def get_destination_lock(key: str) -> asyncio.Lock:
    """Get or create the lock for a destination.

    Args:
        key: Destination key from destination_key()

    Returns:
        asyncio.Lock for the destination
    """
    async with _destination_locks_lock:
        if key not in _destination_locks:
            _destination_locks[key] = asyncio.Lock()
        return _destination_locks[key]


async def forget_destination_locks(keys: set[str]) -> None:
    """Drop locks for destinations that no longer exist (deleted folders)."""
    async with _destination_locks_lock:
        for key in keys:
            _destination_locks.pop(key, None)


def get_lock_count() -> int:
    """Get current number of locks (for testing/metrics)."""
    return len(_destination_locks)
