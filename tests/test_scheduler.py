import asyncio

import pytest

from aurelia.background_workers.scheduler import JobScheduler


class CountingJob:
    def __init__(self, fail_first: int = 0, sleep: float = 0.0):
        self.calls = 0
        self.fail_first = fail_first
        self.sleep = sleep

    async def __call__(self):
        self.calls += 1
        if self.sleep:
            await asyncio.sleep(self.sleep)
        if self.calls <= self.fail_first:
            raise RuntimeError("tick failed")
        return {"calls": self.calls}


async def wait_for_calls(job: CountingJob, n: int, timeout: float = 2.0):
    async def _poll():
        while job.calls < n:
            await asyncio.sleep(0.005)
    await asyncio.wait_for(_poll(), timeout)


@pytest.mark.asyncio
async def test_run_now_returns_result():
    scheduler = JobScheduler()
    job = CountingJob()
    scheduler.register("reconciliation", 300, job)

    assert await scheduler.run_now("reconciliation") == {"calls": 1}
    assert scheduler.jobs["reconciliation"].last_result == {"calls": 1}
    with pytest.raises(KeyError):
        await scheduler.run_now("missing")


@pytest.mark.asyncio
async def test_register_rejects_duplicates_and_bad_intervals():
    scheduler = JobScheduler()
    scheduler.register("a", 1, CountingJob())
    with pytest.raises(ValueError):
        scheduler.register("a", 1, CountingJob())
    with pytest.raises(ValueError):
        scheduler.register("b", 0, CountingJob())


@pytest.mark.asyncio
async def test_failing_tick_does_not_stop_the_loop():
    scheduler = JobScheduler()
    job = CountingJob(fail_first=2)
    scheduler.register("flaky", 0.01, job)
    scheduler.start()
    assert scheduler.running

    await wait_for_calls(job, 4)
    await scheduler.shutdown(timeout=1)

    assert not scheduler.running
    assert scheduler.jobs["flaky"].last_result["calls"] >= 3
    assert scheduler.jobs["flaky"].task.done()


@pytest.mark.asyncio
async def test_shutdown_stops_new_ticks():
    scheduler = JobScheduler()
    job = CountingJob()
    scheduler.register("quick", 0.01, job)
    scheduler.start()
    await wait_for_calls(job, 1)

    await scheduler.shutdown(timeout=1)
    seen = job.calls
    await asyncio.sleep(0.05)
    assert job.calls == seen


@pytest.mark.asyncio
async def test_shutdown_cancels_ticks_past_the_timeout():
    scheduler = JobScheduler()
    job = CountingJob(sleep=10)
    scheduler.register("slow", 0.01, job)
    scheduler.start()
    await wait_for_calls(job, 1)

    await asyncio.wait_for(scheduler.shutdown(timeout=0.05), timeout=2)

    assert scheduler.jobs["slow"].task.cancelled()
