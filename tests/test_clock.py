from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

import pytest
from telegram.ext import Application

from vetting.clock import TimerService


@asynccontextmanager
async def running_timers():
    app = Application.builder().token("123456:TEST-TOKEN").build()
    await app.job_queue.start()
    try:
        yield TimerService(app.job_queue)
    finally:
        await app.job_queue.stop(wait=False)


@pytest.mark.asyncio
async def test_timer_fires_once_and_clears():
    fired = []

    async def callback(session_id, kind):
        fired.append((session_id, kind))

    async with running_timers() as timers:
        timers.arm("c:u:1", "reminder", 0.05, callback)
        assert timers.pending("c:u:1") == ["reminder"]

        await asyncio.sleep(0.4)
        assert fired == [("c:u:1", "reminder")]
        assert timers.pending("c:u:1") == []


@pytest.mark.asyncio
async def test_rearm_replaces_and_cancel_stops():
    fired = []

    async def callback(session_id, kind):
        fired.append((session_id, kind))

    async with running_timers() as timers:
        timers.arm("c:u:1", "reminder", 0.05, callback)
        timers.arm("c:u:1", "reminder", 0.1, callback)
        timers.arm("c:u:1", "expiry", 0.05, callback)
        timers.cancel("c:u:1", "expiry")
        timers.arm("c:u:10", "response", 0.05, callback)
        timers.cancel("c:u:10")
        assert timers.pending("c:u:1") == ["reminder"]
        assert timers.pending("c:u:10") == []

        await asyncio.sleep(0.4)
        assert fired == [("c:u:1", "reminder")]


@pytest.mark.asyncio
async def test_cancel_all_leaves_other_jobs_alone():
    async def callback(session_id, kind):
        pass

    async def sweep(context):
        pass

    async with running_timers() as timers:
        timers.job_queue.run_repeating(sweep, interval=60, name="sweep")
        timers.arm("c:u:1", "expiry", 30, callback)
        timers.arm("c:u:2", "reminder", 30, callback)

        timers.cancel_all()

        assert timers.pending("c:u:1") == []
        assert timers.pending("c:u:2") == []
        assert len(timers.job_queue.get_jobs_by_name("sweep")) == 1


@pytest.mark.asyncio
async def test_failing_callback_is_logged_not_raised(caplog):
    async def callback(session_id, kind):
        raise RuntimeError("boom")

    async with running_timers() as timers:
        timers.arm("c:u:1", "expiry", 0.0, callback)
        await asyncio.sleep(0.3)

    assert "Timer callback failed for c:u:1/expiry" in caplog.text
