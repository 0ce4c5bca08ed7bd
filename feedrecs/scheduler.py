"""Periodic maintenance jobs run inside the serving process."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

log = logging.getLogger(__name__)


@dataclass
class Job:
    name: str
    every: float
    fn: Callable[[], Awaitable[object]]
    runs: int = 0
    failures: int = 0
    last_result: object = None
    last_error: Optional[str] = None
    last_duration: float = 0.0


@dataclass
class Scheduler:
    jobs: List[Job] = field(default_factory=list)
    _tasks: Dict[str, asyncio.Task] = field(default_factory=dict)

    def add(self, name: str, every: float, fn: Callable[[], Awaitable[object]]) -> Job:
        job = Job(name=name, every=every, fn=fn)
        self.jobs.append(job)
        return job

    async def run_once(self, job: Job) -> bool:
        """Run one job; errors are logged and counted, never propagated."""
        t0 = time.perf_counter()
        try:
            job.last_result = await job.fn()
            job.last_error = None
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            job.failures += 1
            job.last_error = repr(e)
            log.exception(f"Scheduled job {job.name} failed")
            return False
        finally:
            job.runs += 1
            job.last_duration = time.perf_counter() - t0

    async def _loop(self, job: Job) -> None:
        while True:
            await asyncio.sleep(job.every)
            ok = await self.run_once(job)
            if ok:
                log.info(f"Job {job.name} done in {job.last_duration:.2f}s: {job.last_result}")

    def start(self) -> None:
        for job in self.jobs:
            if job.every <= 0:
                log.info(f"Job {job.name} disabled")
                continue
            if job.name not in self._tasks:
                self._tasks[job.name] = asyncio.get_running_loop().create_task(self._loop(job), name=f"job-{job.name}")
        log.info(f"Scheduler started {len(self._tasks)} jobs")

    async def stop(self) -> None:
        for task in self._tasks.values():
            task.cancel()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()

    def stats(self) -> dict:
        return {
            job.name: {
                "every": job.every,
                "runs": job.runs,
                "failures": job.failures,
                "last_error": job.last_error,
                "last_duration": round(job.last_duration, 3),
            }
            for job in self.jobs
        }


def build_scheduler(service, settings) -> Scheduler:
    """Wire the maintenance jobs of a RecommendationService."""
    sched = Scheduler()
    sched.add("rebuild_index", settings.rebuild_every, service.force_rebuild_index)
    sched.add("recompute_profiles", settings.recompute_every, service.updater.recompute_stale)

    async def _warm():
        service.warmer.cleanup_inactive()
        return await service.warmer.warm_cycle()

    sched.add("warm_cache", settings.warm_every, _warm)
    sched.add("engagement_scores", settings.engagement_every, service.refresh_engagement_scores)
    sched.add("prune_interactions", settings.prune_every, service.interactions.prune)
    return sched
