import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional

from aurelia.background_workers.constants import logger
from aurelia.metrics.payment_metrics import JOB_DURATION_SECONDS, JOB_RUNS_TOTAL

JobFn = Callable[[], Awaitable[Any]]


class PeriodicJob:
    def __init__(self, name: str, interval_seconds: float, job: JobFn):
        self.name = name
        self.interval_seconds = interval_seconds
        self.job = job
        self.task: Optional[asyncio.Task] = None
        self.last_result: Any = None
        self._run_lock = asyncio.Lock()

    async def run_once(self) -> Any:
        # a manual trigger and a tick never overlap for the same job
        async with self._run_lock:
            with JOB_DURATION_SECONDS.labels(job=self.name).time():
                try:
                    result = await self.job()
                except Exception:
                    JOB_RUNS_TOTAL.labels(job=self.name, outcome="error").inc()
                    raise
            JOB_RUNS_TOTAL.labels(job=self.name, outcome="ok").inc()
            self.last_result = result
            return result


class JobScheduler:
    """
    Runs registered jobs on fixed intervals, each in its own asyncio task.

    shutdown() sets the stop event so no new tick starts, then waits for the
    in-flight ticks up to the timeout before cancelling them.
    """

    def __init__(self):
        self.jobs: Dict[str, PeriodicJob] = {}
        self._stop = asyncio.Event()
        self._started = False

    def register(self, name: str, interval_seconds: float, job: JobFn) -> PeriodicJob:
        if name in self.jobs:
            raise ValueError(f"job {name} already registered")
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        pj = PeriodicJob(name, interval_seconds, job)
        self.jobs[name] = pj
        if self._started:
            pj.task = asyncio.create_task(self._loop(pj), name=f"job:{name}")
        return pj

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._stop.clear()
        for pj in self.jobs.values():
            pj.task = asyncio.create_task(self._loop(pj), name=f"job:{pj.name}")
            logger.info("scheduler.job.started", extra={"job": pj.name, "interval_seconds": pj.interval_seconds})

    @property
    def running(self) -> bool:
        return self._started and not self._stop.is_set()

    async def run_now(self, name: str) -> Any:
        pj = self.jobs.get(name)
        if pj is None:
            raise KeyError(name)
        logger.info("scheduler.job.manual_run", extra={"job": name})
        return await pj.run_once()

    async def _loop(self, pj: PeriodicJob) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=pj.interval_seconds)
                break
            except asyncio.TimeoutError:
                pass
            try:
                result = await pj.run_once()
                logger.info("scheduler.job.tick", extra={"job": pj.name, "result": result})
            except Exception:
                logger.exception("scheduler.job.failed", extra={"job": pj.name})

    async def shutdown(self, timeout: float = 30.0) -> None:
        self._stop.set()
        tasks = [pj.task for pj in self.jobs.values() if pj.task is not None]
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=timeout)
            for t in pending:
                logger.warning("scheduler.job.cancelled", extra={"job": t.get_name()})
                t.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        self._started = False
        logger.info("scheduler.stopped", extra={"jobs": list(self.jobs)})
