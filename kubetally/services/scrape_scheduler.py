"""Scrape scheduler: one independent recurring APScheduler job per polled target."""

import logging
import random
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from kubetally.services import metrics

logger = logging.getLogger(__name__)

PollFunc = Callable[[], Awaitable[object]]


@dataclass(frozen=True)
class WatchedTarget:
    """A registered target and the job id used to cancel it."""

    target_id: str
    poll_fn: PollFunc
    interval: float
    job_id: str
    first_run_at: datetime


class ScrapeScheduler:
    """Owns the scrape jobs of every watched target.

    Each target gets its own interval job. The first run is delayed by a random
    fraction of the interval so that many nodes added at once do not poll in
    lockstep. Removing a target before its first run means it never runs; a poll
    already in flight is allowed to finish.
    """

    def __init__(self, scheduler: AsyncIOScheduler, disable_jitter: bool = False) -> None:
        """Initialize the scrape scheduler.

        Args:
            scheduler: APScheduler instance the jobs are registered on
            disable_jitter: Run each target's first poll immediately
        """
        self.scheduler = scheduler
        self.disable_jitter = disable_jitter
        self._targets: dict[str, WatchedTarget] = {}
        self._lock = threading.Lock()

    def add_target(self, target_id: str, poll_fn: PollFunc, interval: float) -> bool:
        """Register a target unless it is already registered.

        Args:
            target_id: Unique target id, e.g. ``node/worker-1``
            poll_fn: Coroutine function performing one poll
            interval: Seconds between polls

        Returns:
            True if a new job was scheduled, False if the target already existed
        """
        with self._lock:
            if target_id in self._targets:
                return False

            delay = 0.0 if self.disable_jitter else random.random() * interval
            first_run_at = datetime.now(UTC) + timedelta(seconds=delay)
            job_id = f"scrape:{target_id}"

            self.scheduler.add_job(
                self._run_target,
                IntervalTrigger(seconds=interval, start_date=first_run_at),
                args=[target_id, poll_fn],
                id=job_id,
                name=f"Scrape {target_id}",
                next_run_time=first_run_at,
                replace_existing=True,
                max_instances=1,  # polls of one target never overlap
                coalesce=True,
                misfire_grace_time=max(int(interval), 1),
            )
            self._targets[target_id] = WatchedTarget(
                target_id=target_id,
                poll_fn=poll_fn,
                interval=interval,
                job_id=job_id,
                first_run_at=first_run_at,
            )
            metrics.scrape_targets.set(len(self._targets))

        logger.info(f"New scraping target added: {target_id} (first run in {delay:.1f}s)")
        return True

    def remove_target(self, target_id: str) -> bool:
        """Cancel and forget a target.

        Returns:
            True if the target was registered
        """
        with self._lock:
            target = self._targets.pop(target_id, None)
            if target is not None:
                try:
                    self.scheduler.remove_job(target.job_id)
                except JobLookupError:
                    logger.debug(f"Scrape job {target.job_id} already gone")
            metrics.scrape_targets.set(len(self._targets))

        logger.info(f"Scraping target removed: {target_id}")
        return target is not None

    def targets(self) -> list[str]:
        with self._lock:
            return sorted(self._targets)

    def get_target(self, target_id: str) -> WatchedTarget | None:
        with self._lock:
            return self._targets.get(target_id)

    def shutdown(self) -> None:
        """Remove every target."""
        for target_id in self.targets():
            self.remove_target(target_id)

    async def _run_target(self, target_id: str, poll_fn: PollFunc) -> None:
        """Execute one poll; a failure is logged and the next tick proceeds as usual."""
        try:
            await poll_fn()
            metrics.scrapes_total.labels(status="success").inc()
        except Exception as e:
            metrics.scrapes_total.labels(status="error").inc()
            logger.error(f"Scraping target {target_id} failed: {e}", exc_info=True)
