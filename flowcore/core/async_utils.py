"""Bridge from the synchronous engine to async collaborators."""

from __future__ import annotations

import asyncio
from typing import Coroutine, TypeVar

import anyio

T = TypeVar("T")


def run_async(coro: Coroutine[object, object, T], *, timeout: float | None = None) -> T:
    """
    Await ``coro`` from sync code, optionally bounded by ``timeout`` seconds.

    Inside an AnyIO worker thread (e.g. the scheduler job handler) the call is
    sent to the owning event loop. Anywhere else without a running loop
    (event bus workers, the CLI, tests) a private loop is started.

    Raises TimeoutError once the deadline passes, and RuntimeError when
    called from a thread that is already running an event loop.
    """
    started = False

    async def _runner() -> T:
        nonlocal started
        started = True
        if timeout is None:
            return await coro
        with anyio.fail_after(timeout):
            return await coro

    try:
        return anyio.from_thread.run(_runner)
    except RuntimeError:
        # The collaborator itself raised; do not run it a second time
        if started:
            raise

    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return anyio.run(_runner)
    coro.close()
    raise RuntimeError("run_async called from async context; use await instead")
