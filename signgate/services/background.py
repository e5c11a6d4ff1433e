"""
signgate/services/background.py

Best-effort background dispatch for side effects that must never
block or fail a request: quota accounting, "last used" stamps and
alert notifications.

Contract: a dispatched job may be lost (queue full, process exit,
exception). Failures are logged and counted, never raised to the
caller that dispatched them.
"""

from __future__ import annotations

import asyncio
from typing import Any, Coroutine

from signgate.utils.logger import get_logger
from signgate.utils.metrics import background_task_failures_total

logger = get_logger(__name__)

DEFAULT_MAX_PENDING = 1000


class BackgroundDispatcher:
    """
    Runs fire-and-forget coroutines as tracked asyncio tasks.

    Strong references to the tasks are kept until they finish so the
    event loop cannot garbage-collect them mid-flight. `drain()` is
    called on shutdown to give pending work a bounded chance to land.
    """

    def __init__(self, max_pending: int = DEFAULT_MAX_PENDING) -> None:
        self._max_pending = max_pending
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def dispatch(self, name: str, coro: Coroutine[Any, Any, Any]) -> None:
        """Schedule `coro` without waiting for it."""
        if len(self._tasks) >= self._max_pending:
            coro.close()
            background_task_failures_total.labels(task=name).inc()
            logger.warning(f"Background queue full ({self._max_pending}); dropped {name}")
            return

        task = asyncio.create_task(self._run(name, coro), name=f"signgate:{name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait for pending jobs, cancelling whatever is left after `timeout`."""
        if not self._tasks:
            return
        pending = list(self._tasks)
        _, still_pending = await asyncio.wait(pending, timeout=timeout)
        for task in still_pending:
            task.cancel()
        if still_pending:
            logger.warning(f"Cancelled {len(still_pending)} background job(s) on shutdown")
        await asyncio.gather(*still_pending, return_exceptions=True)

    async def _run(self, name: str, coro: Coroutine[Any, Any, Any]) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            background_task_failures_total.labels(task=name).inc()
            logger.error(f"Background job {name} failed: {exc}")
