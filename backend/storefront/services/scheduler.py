"""
APScheduler Configuration for Background Jobs

Two interval jobs keep the pipeline moving without a request:
- Pending delivery queue: one delivery attempt per pending grant
- Expiry sweep: cancels pending transactions whose payment window closed

Jobs are bound to the service container's instances, so they live in the
in-memory job store and are re-registered at every startup.
"""
import logging
from typing import Awaitable, Callable

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)


class BackgroundJobs:
    """
    Owns one AsyncIOScheduler per application instance.

    Configuration:
    - AsyncIOExecutor so jobs run on the application's event loop
    - Coalesce: True (missed runs collapse into one)
    - Max instances: 1 per job (a slow pass never overlaps the next)
    """

    def __init__(self):
        self._scheduler = AsyncIOScheduler(
            jobstores={'default': MemoryJobStore()},
            executors={'default': AsyncIOExecutor()},
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
                'misfire_grace_time': 60
            },
            timezone='UTC'
        )

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def add_interval_job(
        self,
        job_id: str,
        job_func: Callable[[], Awaitable[object]],
        interval_seconds: int
    ) -> str:
        """Register (or replace) a periodic job."""
        self._scheduler.add_job(
            job_func,
            trigger=IntervalTrigger(seconds=interval_seconds),
            id=job_id,
            name=job_id,
            replace_existing=True
        )
        logger.info(f"Added background job: {job_id}, interval={interval_seconds}s")
        return job_id

    def get_job(self, job_id: str):
        return self._scheduler.get_job(job_id)

    def start(self) -> None:
        """Start the scheduler; call from the FastAPI lifespan."""
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info(f"Scheduler started. Jobs: {len(self._scheduler.get_jobs())}")
        else:
            logger.warning("Scheduler already running")

    def shutdown(self, wait: bool = True) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info(f"Scheduler shutdown (wait={wait})")
