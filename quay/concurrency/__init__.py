"""In-process concurrency helpers."""

from quay.concurrency.locks import (
    destination_key,
    forget_destination_locks,
    get_destination_lock,
    get_lock_count,
)

__all__ = ["destination_key", "forget_destination_locks", "get_destination_lock", "get_lock_count"]
