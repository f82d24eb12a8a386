import asyncio
from datetime import datetime, timezone

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI

from leadcapture import jobs

pytestmark = pytest.mark.asyncio


async def test_scheduled_sweep_runs_on_the_event_loop(monkeypatch):
    from leadcapture import main

    swept = []

    async def sweep(services):
        swept.append(services)

    monkeypatch.setattr(jobs, "run_sweep", sweep)
    services = object()
    app = FastAPI()
    app.state.services = services
    sched = main._schedule_jobs(app, AsyncIOScheduler())
    try:
        assert {job.id for job in sched.get_jobs()} == {"ghost-buster", "weekly-digest", "lead-retention"}
        sched.get_job("ghost-buster").modify(next_run_time=datetime.now(timezone.utc))
        for _ in range(60):
            if swept:
                break
            await asyncio.sleep(0.05)
    finally:
        sched.shutdown(wait=False)

    assert swept == [services]


async def test_scheduling_twice_keeps_one_job_each():
    from leadcapture import main

    app = FastAPI()
    app.state.services = object()
    sched = AsyncIOScheduler()
    try:
        main._schedule_jobs(app, sched)
        main._schedule_jobs(app, sched)
        assert len(sched.get_jobs()) == 3
    finally:
        sched.shutdown(wait=False)
