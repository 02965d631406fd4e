"""Collector: builds and runs the scraping and reconciliation pipeline."""

import asyncio
import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kubetally.db import AsyncSessionLocal
from kubetally.services.identity_cache import WorkloadIdentityCache
from kubetally.services.informer import PollingInformer
from kubetally.services.kinds import ObjectKind
from kubetally.services.kube_client import KubeClient
from kubetally.services.node_scraper import NodeScraper
from kubetally.services.object_reconciler import (
    NodeHook,
    ObjectHook,
    ObjectReconciler,
    PodHook,
    ReconcileSweeper,
)
from kubetally.services.scrape_scheduler import ScrapeScheduler
from kubetally.services.settings_service import SettingsService

logger = logging.getLogger(__name__)


class Collector:
    """Owns the scheduler, the identity cache and one informer/reconciler per kind.

    Created once at startup and kept on the application state.
    """

    def __init__(
        self,
        client: KubeClient,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
    ) -> None:
        self.client = client
        self.session_factory = session_factory
        self.identity_cache = WorkloadIdentityCache()
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.scrape_scheduler: Optional[ScrapeScheduler] = None
        self.informers: dict[ObjectKind, PollingInformer] = {}
        self.reconcilers: dict[ObjectKind, ObjectReconciler] = {}
        self.sweeper: Optional[ReconcileSweeper] = None
        self.scrape_interval = 60
        self.resync_interval = 60
        self.sweep_interval = 300

    def _scraper_for(self, node_name: str) -> NodeScraper:
        return NodeScraper(
            node_name,
            self.client,
            self.identity_cache,
            session_factory=self.session_factory,
            interval=self.scrape_interval,
        )

    def build(self, scheduler: AsyncIOScheduler, disable_jitter: bool = False) -> None:
        """Wire informers, reconcilers and hooks onto ``scheduler`` without starting it."""
        self.scheduler = scheduler
        self.scrape_scheduler = ScrapeScheduler(scheduler, disable_jitter=disable_jitter)

        hooks: dict[ObjectKind, list[ObjectHook]] = {
            ObjectKind.POD: [PodHook(self.identity_cache)],
            ObjectKind.NODE: [
                NodeHook(self.scrape_scheduler, self._scraper_for, self.scrape_interval)
            ],
        }

        for kind in ObjectKind:
            informer = PollingInformer(kind, self.client.list_objects)
            reconciler = ObjectReconciler(
                kind,
                informer.list_uids,
                session_factory=self.session_factory,
                hooks=hooks.get(kind, ()),
            )
            informer.add_handler(reconciler)
            self.informers[kind] = informer
            self.reconcilers[kind] = reconciler

        self.sweeper = ReconcileSweeper(list(self.reconcilers.values()))

    async def start(self) -> None:
        """Load intervals from settings, schedule every job and start the scheduler."""
        async with self.session_factory() as db:
            self.scrape_interval = await SettingsService.get_int(db, "scrape_interval", default=60)
            self.resync_interval = await SettingsService.get_int(
                db, "informer_resync_interval", default=60
            )
            self.sweep_interval = await SettingsService.get_int(db, "sweep_interval", default=300)
            disable_jitter = await SettingsService.get_bool(db, "disable_scrape_jitter", default=False)

        self.build(AsyncIOScheduler(), disable_jitter=disable_jitter)

        for kind in (ObjectKind.POD, ObjectKind.NODE, ObjectKind.JOB, ObjectKind.REPLICA_SET):
            self.informers[kind].schedule(self.scheduler, self.resync_interval)
        self.sweeper.schedule(self.scheduler, self.sweep_interval)

        self.scheduler.start()
        logger.info(
            f"Collector started: scrape every {self.scrape_interval}s, "
            f"resync every {self.resync_interval}s, sweep every {self.sweep_interval}s"
        )

    async def stop(self) -> None:
        """Cancel every job and close the API client."""
        if self.scrape_scheduler is not None:
            self.scrape_scheduler.shutdown()
        if self.scheduler is not None and self.scheduler.running:
            try:
                self.scheduler.shutdown(wait=False)
                # Give event loop a chance to process shutdown
                await asyncio.sleep(0)
                logger.info("Collector scheduler stopped")
            except RuntimeError as e:
                logger.error(f"Scheduler shutdown error: {e}")
        await self.client.close()

    def get_status(self) -> dict:
        """Scheduler state, scrape targets and informer sync state."""
        return {
            "running": bool(self.scheduler and self.scheduler.running),
            "scrape_targets": self.scrape_scheduler.targets() if self.scrape_scheduler else [],
            "informers": {
                kind.value: informer.has_synced for kind, informer in self.informers.items()
            },
            "known_pods": len(self.identity_cache),
        }
