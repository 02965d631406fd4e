"""Object lifecycle reconciler: mirrors cluster objects into the snapshot table."""

import logging
from collections.abc import Callable, Iterable, Sequence
from datetime import UTC, datetime
from typing import Any, Protocol

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kubetally.db import AsyncSessionLocal
from kubetally.exceptions import ClusterAPIError
from kubetally.services import metrics, object_store, pod_inventory
from kubetally.services.identity_cache import WorkloadIdentityCache
from kubetally.services.kinds import ObjectKind
from kubetally.services.node_scraper import NodeScraper
from kubetally.services.scrape_scheduler import ScrapeScheduler

logger = logging.getLogger(__name__)


class ObjectHook(Protocol):
    """Kind-specific side effects run in the same transaction as the snapshot write."""

    async def on_upsert(self, db: AsyncSession, obj: dict[str, Any]) -> None: ...

    async def on_delete(self, db: AsyncSession, obj: dict[str, Any]) -> None: ...


class PodHook:
    """Keeps the identity cache and the pod inventory in step with pod notifications."""

    def __init__(self, identity_cache: WorkloadIdentityCache) -> None:
        self.identity_cache = identity_cache

    async def on_upsert(self, db: AsyncSession, obj: dict[str, Any]) -> None:
        metadata = obj.get("metadata") or {}
        self.identity_cache.store(metadata.get("namespace", ""), metadata.get("name", ""), metadata["uid"])
        await pod_inventory.upsert_pod(db, obj)

    async def on_delete(self, db: AsyncSession, obj: dict[str, Any]) -> None:
        metadata = obj.get("metadata") or {}
        await pod_inventory.upsert_pod(db, obj)
        await pod_inventory.mark_pod_deleted(db, metadata["uid"])
        self.identity_cache.compare_and_delete(
            metadata.get("namespace", ""), metadata.get("name", ""), metadata["uid"]
        )


class NodeHook:
    """Starts a scrape target for every node and stops it when the node goes away."""

    def __init__(
        self,
        scrape_scheduler: ScrapeScheduler,
        scraper_factory: Callable[[str], NodeScraper],
        interval: float,
    ) -> None:
        self.scrape_scheduler = scrape_scheduler
        self.scraper_factory = scraper_factory
        self.interval = interval

    @staticmethod
    def target_id(node_name: str) -> str:
        return f"node/{node_name}"

    async def on_upsert(self, db: AsyncSession, obj: dict[str, Any]) -> None:
        node_name = (obj.get("metadata") or {}).get("name")
        if not node_name:
            logger.error("Node notification without a name, not scraping it")
            return
        target_id = self.target_id(node_name)
        if self.scrape_scheduler.get_target(target_id) is not None:
            return
        scraper = self.scraper_factory(node_name)
        self.scrape_scheduler.add_target(target_id, scraper.scrape, self.interval)

    async def on_delete(self, db: AsyncSession, obj: dict[str, Any]) -> None:
        node_name = (obj.get("metadata") or {}).get("name")
        if not node_name:
            logger.error("Node delete notification without a name")
            return
        self.scrape_scheduler.remove_target(self.target_id(node_name))


class ObjectReconciler:
    """Snapshot writer for one object kind.

    Add and update notifications replace the stored snapshot; delete
    notifications and sweeps only ever set the deletion timestamp.
    """

    def __init__(
        self,
        kind: ObjectKind,
        listing: Callable[[], Iterable[str]],
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        hooks: Sequence[ObjectHook] = (),
    ) -> None:
        """Initialize the reconciler.

        Args:
            kind: Kind handled by this reconciler
            listing: Returns the UIDs currently present in the cluster; raises
                ClusterAPIError when no trustworthy listing is available
            session_factory: Session factory for snapshot writes
            hooks: Kind-specific side effects
        """
        self.kind = kind
        self.listing = listing
        self.session_factory = session_factory
        self.hooks = list(hooks)

    async def on_add(self, obj: dict[str, Any]) -> None:
        await self.upsert(obj)

    async def on_update(self, old_obj: dict[str, Any], new_obj: dict[str, Any]) -> None:
        await self.upsert(new_obj)

    async def on_delete(self, obj: dict[str, Any]) -> None:
        """Soft-delete the snapshot of a deleted object.

        Raises:
            SQLAlchemyError: If the write fails (logged, transaction rolled back)
        """
        try:
            uid = object_store.object_uid(obj)
        except ValueError as e:
            logger.error(f"Cannot delete {self.kind.value} snapshot: {e}")
            return

        async with self.session_factory() as db:
            try:
                deleted = await object_store.soft_delete_object(db, uid)
                for hook in self.hooks:
                    await hook.on_delete(db, obj)
                await db.commit()
            except SQLAlchemyError as e:
                logger.error(f"Database error deleting {self.kind.value} {uid}: {e}")
                await db.rollback()
                raise

        if deleted:
            metrics.objects_soft_deleted_total.labels(kind=self.kind.value, source="notification").inc()
            logger.debug(f"Soft-deleted {self.kind.value} {uid}")

    async def upsert(self, obj: dict[str, Any]) -> None:
        """Write the full snapshot of an added or updated object.

        Raises:
            SQLAlchemyError: If the write fails (logged, transaction rolled back)
        """
        try:
            object_store.object_uid(obj)
        except ValueError as e:
            logger.error(f"Cannot store {self.kind.value} snapshot: {e}")
            return

        async with self.session_factory() as db:
            try:
                uid = await object_store.upsert_object(db, self.kind, obj)
                for hook in self.hooks:
                    await hook.on_upsert(db, obj)
                await db.commit()
            except SQLAlchemyError as e:
                logger.error(f"Database error upserting {self.kind.value}: {e}")
                await db.rollback()
                raise

        metrics.objects_upserted_total.labels(kind=self.kind.value).inc()
        logger.debug(f"Upserted {self.kind.value} {uid}")

    async def sweep(self) -> int:
        """Soft-delete stored snapshots whose object is absent from the live listing.

        Returns:
            Number of snapshots marked deleted

        Raises:
            ClusterAPIError: If the live listing is unavailable
            SQLAlchemyError: If the update fails
        """
        present = set(self.listing())

        async with self.session_factory() as db:
            try:
                swept = await object_store.soft_delete_missing(db, self.kind, present)
                await db.commit()
            except SQLAlchemyError as e:
                logger.error(f"Database error sweeping {self.kind.value} snapshots: {e}")
                await db.rollback()
                raise

        if swept:
            metrics.objects_soft_deleted_total.labels(kind=self.kind.value, source="sweep").inc(swept)
            logger.info(f"Deleted {swept} stale {self.kind.value} snapshots ({len(present)} live)")
        return swept


class ReconcileSweeper:
    """Periodic garbage collection across all reconciled kinds."""

    JOB_ID = "reconcile_sweep"

    def __init__(self, reconcilers: Sequence[ObjectReconciler]) -> None:
        self.reconcilers = list(reconcilers)

    def schedule(self, scheduler: AsyncIOScheduler, interval: float) -> None:
        """Register the sweep job; the first run happens immediately."""
        scheduler.add_job(
            self.run,
            "interval",
            seconds=interval,
            id=self.JOB_ID,
            name="Object Snapshot Sweep",
            next_run_time=datetime.now(UTC),
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.info(f"Object sweep scheduled every {interval}s")

    async def run(self) -> dict[str, int]:
        """Sweep every kind; a failure for one kind does not stop the others.

        Returns:
            Dict of kind -> snapshots deleted, for kinds that were swept
        """
        results: dict[str, int] = {}
        for reconciler in self.reconcilers:
            kind = reconciler.kind.value
            try:
                results[kind] = await reconciler.sweep()
                metrics.sweeps_total.labels(kind=kind, status="success").inc()
            except ClusterAPIError as e:
                metrics.sweeps_total.labels(kind=kind, status="skipped").inc()
                logger.warning(f"Skipping {kind} sweep: {e}")
            except SQLAlchemyError as e:
                metrics.sweeps_total.labels(kind=kind, status="error").inc()
                logger.error(f"Sweep of {kind} snapshots failed: {e}")
        return results
