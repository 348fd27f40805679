"""Async helpers for bounded waits and retry pacing."""

from __future__ import annotations

import asyncio
import inspect
from contextlib import suppress
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")


def capped_backoff_seconds(attempt: int, *, base_delay_ms: int, max_delay_ms: int) -> float:
    """Delay before retry number ``attempt`` (0-based): ``min(base * 2**attempt, max)``."""

    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    return min(base_delay_ms * (2**attempt), max_delay_ms) / 1000.0


async def wait_until(
    predicate: Callable[[], bool],
    *,
    poll_interval_seconds: float,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> None:
    """Poll ``predicate`` until it holds; callers bound the wait with ``run_with_timeout``."""

    if poll_interval_seconds <= 0:
        raise ValueError("poll_interval_seconds must be > 0")
    while not predicate():
        await sleep(poll_interval_seconds)


async def run_with_timeout(coroutine: Awaitable[T], timeout_seconds: float) -> T:
    """Await ``coroutine``, cancelling it and raising ``TimeoutError`` past the bound.

    Cancelling the caller cancels the wrapped work too; it is awaited before
    the cancellation propagates.
    """
    if timeout_seconds <= 0:
        _close_unscheduled_coroutine(coroutine)
        raise ValueError("timeout_seconds must be > 0")

    task: asyncio.Task[T] = asyncio.create_task(_await_value(coroutine))
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout_seconds)
    except asyncio.CancelledError:
        await _cancel_and_wait(task)
        raise
    if task in done:
        return task.result()
    await _cancel_and_wait(task)
    raise TimeoutError(f"operation timed out after {timeout_seconds} seconds")


async def _cancel_and_wait(task: asyncio.Task[T]) -> None:
    task.cancel()
    with suppress(asyncio.CancelledError):
        await task


async def _await_value(awaitable: Awaitable[T]) -> T:
    return await awaitable


def _close_unscheduled_coroutine(awaitable: Awaitable[object]) -> None:
    # Raw coroutine objects that never get scheduled must be closed explicitly.
    if inspect.iscoroutine(awaitable):
        awaitable.close()


__all__ = [
    "capped_backoff_seconds",
    "run_with_timeout",
    "wait_until",
]
