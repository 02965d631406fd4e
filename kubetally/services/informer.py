"""Polling informer: periodic full listings turned into add/update/delete notifications."""

import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime
from typing import Any, Optional, Protocol

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from kubetally.exceptions import ClusterAPIError, ListingNotReadyError
from kubetally.services.kinds import ObjectKind

logger = logging.getLogger(__name__)

Lister = Callable[[ObjectKind], Awaitable[list[dict[str, Any]]]]


class NotificationHandler(Protocol):
    async def on_add(self, obj: dict[str, Any]) -> None: ...

    async def on_update(self, old_obj: dict[str, Any], new_obj: dict[str, Any]) -> None: ...

    async def on_delete(self, obj: dict[str, Any]) -> None: ...


def _uid(obj: dict[str, Any]) -> Optional[str]:
    return (obj.get("metadata") or {}).get("uid")


def _resource_version(obj: dict[str, Any]) -> Optional[str]:
    return (obj.get("metadata") or {}).get("resourceVersion")


class PollingInformer:
    """Keeps the last listing of one kind and notifies handlers of changes.

    Delivery is at-least-once: a handler failure is logged and the notification
    is repeated on every resync until all handlers accept it. A failed listing
    keeps the previous one.
    """

    def __init__(
        self,
        kind: ObjectKind,
        lister: Lister,
        handlers: Sequence[NotificationHandler] = (),
    ) -> None:
        self.kind = kind
        self.lister = lister
        self.handlers = list(handlers)
        self._store: dict[str, dict[str, Any]] = {}
        self._synced = False
        # uid -> (method, object) of notifications awaiting redelivery
        self._pending: dict[str, tuple[str, dict[str, Any]]] = {}

    @property
    def job_id(self) -> str:
        return f"informer:{self.kind.value}"

    @property
    def has_synced(self) -> bool:
        return self._synced

    @property
    def pending_redelivery(self) -> int:
        return len(self._pending)

    def add_handler(self, handler: NotificationHandler) -> None:
        self.handlers.append(handler)

    def get(self, uid: str) -> Optional[dict[str, Any]]:
        return self._store.get(uid)

    def list_uids(self) -> set[str]:
        """UIDs present in the last successful listing.

        Raises:
            ListingNotReadyError: If no listing has completed yet
        """
        if not self._synced:
            raise ListingNotReadyError(self.kind.value)
        return set(self._store)

    def schedule(self, scheduler: AsyncIOScheduler, interval: float) -> None:
        """Register the resync job; the first listing happens immediately."""
        scheduler.add_job(
            self.resync,
            "interval",
            seconds=interval,
            id=self.job_id,
            name=f"List {self.kind.value} objects",
            next_run_time=datetime.now(UTC),
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    async def resync(self) -> Optional[dict[str, int]]:
        """List the kind once and dispatch the differences to the handlers.

        Notifications that failed on an earlier resync are delivered again,
        even when the object itself has not changed since.

        Returns:
            Dict with added/updated/deleted/redelivered counts, or None if the listing failed
        """
        try:
            items = await self.lister(self.kind)
        except ClusterAPIError as e:
            logger.warning(f"Listing {self.kind.value} objects failed: {e}")
            return None

        current: dict[str, dict[str, Any]] = {}
        for item in items:
            uid = _uid(item)
            if not uid:
                logger.warning(f"Skipping {self.kind.value} without metadata.uid")
                continue
            current[uid] = item

        previous = self._store
        self._store = current
        first_sync = not self._synced
        self._synced = True

        pending = self._pending
        self._pending = {}

        stats = {"added": 0, "updated": 0, "deleted": 0, "redelivered": 0}
        for uid, obj in current.items():
            old = previous.get(uid)
            if old is None:
                await self._deliver(uid, "on_add", obj)
                stats["added"] += 1
            elif _resource_version(old) != _resource_version(obj):
                await self._deliver(uid, "on_update", old, obj)
                stats["updated"] += 1
            elif uid in pending:
                if pending[uid][0] == "on_add":
                    await self._deliver(uid, "on_add", obj)
                else:
                    await self._deliver(uid, "on_update", obj, obj)
                stats["redelivered"] += 1

        for uid, old in previous.items():
            if uid not in current:
                await self._deliver(uid, "on_delete", old)
                stats["deleted"] += 1

        # deletes whose object is still gone
        for uid, (method, obj) in pending.items():
            if method == "on_delete" and uid not in current and uid not in previous:
                await self._deliver(uid, "on_delete", obj)
                stats["redelivered"] += 1

        if first_sync:
            logger.info(f"Initial {self.kind.value} listing synced: {len(current)} objects")
        elif any(stats.values()):
            logger.debug(
                f"{self.kind.value} resync: {stats['added']} added, "
                f"{stats['updated']} updated, {stats['deleted']} deleted, "
                f"{stats['redelivered']} redelivered"
            )
        if self._pending:
            logger.warning(
                f"{len(self._pending)} {self.kind.value} notifications failed, retrying on next resync"
            )
        return stats

    async def _deliver(self, uid: str, method: str, *args: dict[str, Any]) -> None:
        """Notify every handler; remember the object for redelivery if any handler failed."""
        failed = False
        for handler in self.handlers:
            try:
                await getattr(handler, method)(*args)
            except Exception as e:
                failed = True
                logger.error(f"{self.kind.value} {method} handler failed for {uid}: {e}", exc_info=True)
        if failed:
            self._pending[uid] = (method, args[-1])
