"""
tests/unit/test_background.py

Unit tests for BackgroundDispatcher.
"""

from __future__ import annotations

import asyncio

import pytest

from signgate.services.background import BackgroundDispatcher


class TestDispatch:
    @pytest.mark.asyncio
    async def test_job_runs_after_dispatch(self):
        done = asyncio.Event()

        async def job():
            done.set()

        dispatcher = BackgroundDispatcher()
        dispatcher.dispatch("job", job())
        await asyncio.wait_for(done.wait(), timeout=1)

    @pytest.mark.asyncio
    async def test_failures_never_reach_caller(self):
        async def broken():
            raise RuntimeError("boom")

        dispatcher = BackgroundDispatcher()
        dispatcher.dispatch("broken", broken())
        await dispatcher.drain()
        assert dispatcher.pending == 0

    @pytest.mark.asyncio
    async def test_full_queue_drops_job(self):
        gate = asyncio.Event()
        ran = []

        async def blocked():
            await gate.wait()

        async def extra():
            ran.append(True)

        dispatcher = BackgroundDispatcher(max_pending=1)
        dispatcher.dispatch("blocked", blocked())
        dispatcher.dispatch("extra", extra())
        gate.set()
        await dispatcher.drain()
        assert ran == []

    @pytest.mark.asyncio
    async def test_drain_cancels_stragglers(self):
        async def forever():
            await asyncio.sleep(3600)

        dispatcher = BackgroundDispatcher()
        dispatcher.dispatch("forever", forever())
        await dispatcher.drain(timeout=0.01)
        await asyncio.sleep(0)
        assert dispatcher.pending == 0
