"""Shared async and filesystem helpers."""

from codex_store.utils.concurrency import (
    capped_backoff_seconds,
    run_with_timeout,
    wait_until,
)
from codex_store.utils.fs import atomic_write

__all__ = [
    "atomic_write",
    "capped_backoff_seconds",
    "run_with_timeout",
    "wait_until",
]
