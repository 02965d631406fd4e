"""Tests for the object lifecycle reconciler and sweeper."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from kubetally.exceptions import ListingNotReadyError
from kubetally.models import ObjectSnapshot, Pod
from kubetally.services import object_store
from kubetally.services.identity_cache import WorkloadIdentityCache
from kubetally.services.informer import PollingInformer
from kubetally.services.kinds import ObjectKind
from kubetally.services.object_reconciler import (
    NodeHook,
    ObjectReconciler,
    PodHook,
    ReconcileSweeper,
)
from kubetally.services.scrape_scheduler import ScrapeScheduler


async def snapshots(db, kind: ObjectKind | None = None) -> list[ObjectSnapshot]:
    query = select(ObjectSnapshot).order_by(ObjectSnapshot.uid)
    if kind is not None:
        query = query.where(ObjectSnapshot.kind == kind.value)
    result = await db.execute(query.execution_options(populate_existing=True))
    return list(result.scalars().all())


async def pod_row(db, uid: str) -> Pod:
    result = await db.execute(
        select(Pod).where(Pod.pod_uid == uid).execution_options(populate_existing=True)
    )
    return result.scalar_one()


@pytest.fixture
def live_uids():
    """Mutable live listing shared with the reconcilers under test."""
    return set()


@pytest.fixture
def pod_reconciler(session_factory, live_uids):
    return ObjectReconciler(
        ObjectKind.POD, lambda: live_uids, session_factory=session_factory
    )


class TestSnapshotWrites:
    """Test add, update and delete notifications."""

    async def test_add_stores_full_snapshot(self, db, pod_reconciler, make_pod):
        """Test an added object is stored with its metadata, spec and status."""
        await pod_reconciler.on_add(make_pod("web-1", "uid-1", labels={"app": "web"}))

        (row,) = await snapshots(db)
        assert row.uid == "uid-1"
        assert row.kind == "Pod"
        assert row.namespace == "default"
        assert row.name == "web-1"
        assert row.object_metadata["labels"] == {"app": "web"}
        assert row.spec["nodeName"] == "node-1"
        assert row.status["phase"] == "Running"
        assert (row.controller_kind, row.controller_name, row.controller_uid) == (
            "ReplicaSet",
            "web-7d4b9",
            "uid-1-owner",
        )
        assert row.deleted_at is None

    async def test_update_replaces_snapshot(self, db, pod_reconciler, make_pod):
        """Test an update overwrites the stored fields of the same UID."""
        old = make_pod("web-1", "uid-1")
        new = make_pod("web-1", "uid-1", node="node-2", resource_version="2")
        await pod_reconciler.on_add(old)
        await pod_reconciler.on_update(old, new)

        (row,) = await snapshots(db)
        assert row.spec["nodeName"] == "node-2"
        assert row.object_metadata["resourceVersion"] == "2"

    async def test_delete_sets_deleted_at_once(self, db, pod_reconciler, make_pod):
        """Test deletes are monotonic: a second delete keeps the first timestamp."""
        pod = make_pod("web-1", "uid-1")
        await pod_reconciler.on_add(pod)
        await pod_reconciler.on_delete(pod)
        (row,) = await snapshots(db)
        first_deleted_at = row.deleted_at
        assert first_deleted_at is not None

        await pod_reconciler.on_delete(pod)
        (row,) = await snapshots(db)
        assert row.deleted_at == first_deleted_at

    async def test_readd_with_new_uid_keeps_both_rows(self, db, pod_reconciler, make_pod):
        """Test a pod recreated under the same name gets its own row."""
        old = make_pod("web-1", "uid-old")
        await pod_reconciler.on_add(old)
        await pod_reconciler.on_delete(old)
        await pod_reconciler.on_add(make_pod("web-1", "uid-new"))

        rows = await snapshots(db)
        assert [(r.uid, r.deleted_at is None) for r in rows] == [
            ("uid-new", True),
            ("uid-old", False),
        ]

    async def test_soft_deleted_uid_is_not_resurrected(self, db, pod_reconciler, make_pod):
        """Test a later update of a deleted UID refreshes data but stays deleted."""
        pod = make_pod("web-1", "uid-1")
        await pod_reconciler.on_add(pod)
        await pod_reconciler.on_delete(pod)
        await pod_reconciler.on_update(pod, make_pod("web-1", "uid-1", node="node-9"))

        (row,) = await snapshots(db)
        assert row.deleted_at is not None
        assert row.spec["nodeName"] == "node-9"

    async def test_object_without_uid_is_skipped(self, db, pod_reconciler):
        """Test malformed objects are logged and ignored."""
        await pod_reconciler.on_add({"metadata": {"name": "broken"}})
        await pod_reconciler.on_delete({"metadata": {"name": "broken"}})

        assert await snapshots(db) == []

    async def test_storage_error_is_surfaced(self, make_pod):
        """Test database errors reach the caller after rollback."""
        session = MagicMock()
        session.execute = AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("locked")))
        session.rollback = AsyncMock()
        session.get_bind.return_value.dialect.name = "sqlite"

        class Factory:
            def __call__(self):
                return self

            async def __aenter__(self):
                return session

            async def __aexit__(self, *exc):
                return False

        reconciler = ObjectReconciler(ObjectKind.POD, set, session_factory=Factory())
        with pytest.raises(OperationalError):
            await reconciler.on_add(make_pod("web-1", "uid-1"))
        session.rollback.assert_awaited_once()


class TestSweep:
    """Test garbage collection against the live listing."""

    async def test_sweep_deletes_missing_objects(self, db, pod_reconciler, live_uids, make_pod):
        """Test rows absent from the listing are soft-deleted."""
        for i in range(3):
            await pod_reconciler.on_add(make_pod(f"web-{i}", f"uid-{i}"))
        live_uids.update({"uid-0", "uid-2"})

        assert await pod_reconciler.sweep() == 1
        rows = {r.uid: r.deleted_at for r in await snapshots(db)}
        assert rows["uid-1"] is not None
        assert rows["uid-0"] is None and rows["uid-2"] is None

    async def test_empty_listing_sweep_is_idempotent(
        self, db, pod_reconciler, session_factory, make_pod, make_node
    ):
        """Test an empty listing deletes every live row of the kind exactly once."""
        node_reconciler = ObjectReconciler(
            ObjectKind.NODE, lambda: {"node-uid"}, session_factory=session_factory
        )
        await node_reconciler.on_add(make_node("node-1", "node-uid"))
        for i in range(4):
            await pod_reconciler.on_add(make_pod(f"web-{i}", f"uid-{i}"))

        assert await pod_reconciler.sweep() == 4
        first = {r.uid: r.deleted_at for r in await snapshots(db, ObjectKind.POD)}

        assert await pod_reconciler.sweep() == 0
        second = {r.uid: r.deleted_at for r in await snapshots(db, ObjectKind.POD)}
        assert first == second

        (node,) = await snapshots(db, ObjectKind.NODE)
        assert node.deleted_at is None

    async def test_sweep_handles_more_rows_than_one_chunk(
        self, db, pod_reconciler, make_pod, monkeypatch
    ):
        """Test stale UIDs are updated in several batches."""
        monkeypatch.setattr(object_store, "SOFT_DELETE_CHUNK", 2)
        for i in range(5):
            await pod_reconciler.on_add(make_pod(f"web-{i}", f"uid-{i}"))

        assert await pod_reconciler.sweep() == 5
        assert await object_store.active_object_count(db, ObjectKind.POD) == 0

    async def test_sweeper_skips_unsynced_kinds(self, db, session_factory, make_pod):
        """Test a kind whose listing never completed is left alone."""
        informer = PollingInformer(ObjectKind.POD, AsyncMock(return_value=[]))
        reconciler = ObjectReconciler(
            ObjectKind.POD, informer.list_uids, session_factory=session_factory
        )
        await reconciler.on_add(make_pod("web-1", "uid-1"))

        with pytest.raises(ListingNotReadyError):
            await reconciler.sweep()

        results = await ReconcileSweeper([reconciler]).run()
        assert results == {}
        (row,) = await snapshots(db)
        assert row.deleted_at is None

    async def test_sweeper_continues_after_failing_kind(self, db, session_factory, make_node):
        """Test one kind's failure does not stop the others."""
        broken = ObjectReconciler(
            ObjectKind.POD,
            MagicMock(side_effect=ListingNotReadyError("Pod")),
            session_factory=session_factory,
        )
        nodes = ObjectReconciler(ObjectKind.NODE, set, session_factory=session_factory)
        await nodes.on_add(make_node("node-1", "node-uid"))

        results = await ReconcileSweeper([broken, nodes]).run()

        assert results == {"Node": 1}

    def test_sweeper_schedules_immediate_first_run(self):
        """Test the sweep job is registered with an immediate first run."""
        scheduler = MagicMock()
        sweeper = ReconcileSweeper([])

        sweeper.schedule(scheduler, 300)

        kwargs = scheduler.add_job.call_args.kwargs
        assert kwargs["id"] == "reconcile_sweep"
        assert kwargs["seconds"] == 300
        assert kwargs["next_run_time"] is not None
        assert kwargs["max_instances"] == 1


class TestPodHook:
    """Test identity cache and pod inventory maintenance."""

    @pytest.fixture
    def cache(self):
        return WorkloadIdentityCache()

    @pytest.fixture
    def reconciler(self, session_factory, cache):
        return ObjectReconciler(
            ObjectKind.POD, set, session_factory=session_factory, hooks=[PodHook(cache)]
        )

    async def test_add_populates_cache_and_inventory(self, db, reconciler, cache, make_pod):
        """Test a pod add makes it resolvable and records its requests."""
        pod = make_pod("web-1", "uid-1", cpu="250m", memory="1Gi", labels={"app": "web"})
        pod["spec"]["initContainers"] = [
            {"name": "init", "resources": {"requests": {"cpu": "1", "memory": "64Mi"}}}
        ]
        await reconciler.on_add(pod)

        assert cache.load("default", "web-1") == "uid-1"
        row = await pod_row(db, "uid-1")
        assert row.node_name == "node-1"
        assert row.controller_kind == "ReplicaSet"
        assert row.controller_name == "web-7d4b9"
        assert row.request_cpu_cores == pytest.approx(1.0)
        assert row.request_memory_bytes == pytest.approx(1024**3)
        assert row.labels == {"app": "web"}
        assert row.deleted_at is None

    async def test_delete_clears_cache_and_marks_pod(self, db, reconciler, cache, make_pod):
        """Test a pod delete unresolves it and stamps its deletion."""
        pod = make_pod("web-1", "uid-1")
        await reconciler.on_add(pod)
        await reconciler.on_delete(pod)

        assert cache.load("default", "web-1") is None
        row = await pod_row(db, "uid-1")
        assert row.deleted_at is not None

    async def test_late_delete_keeps_replacement_resolvable(self, reconciler, cache, make_pod):
        """Test deleting the old pod after its replacement arrived keeps the new UID."""
        old = make_pod("web-1", "uid-old")
        await reconciler.on_add(old)
        await reconciler.on_add(make_pod("web-1", "uid-new"))
        await reconciler.on_delete(old)

        assert cache.load("default", "web-1") == "uid-new"


class TestNodeHook:
    """Test scrape target management from node notifications."""

    @pytest.fixture
    def scrape_scheduler(self):
        return MagicMock(spec=ScrapeScheduler)

    @pytest.fixture
    def reconciler(self, session_factory, scrape_scheduler):
        factory = MagicMock()
        hook = NodeHook(scrape_scheduler, factory, interval=30)
        return ObjectReconciler(
            ObjectKind.NODE, set, session_factory=session_factory, hooks=[hook]
        ), factory

    async def test_node_add_starts_scraping(self, reconciler, scrape_scheduler, make_node):
        """Test a new node gets a scrape target."""
        node_reconciler, factory = reconciler
        scrape_scheduler.get_target.return_value = None

        await node_reconciler.on_add(make_node("node-1", "node-uid"))

        factory.assert_called_once_with("node-1")
        scrape_scheduler.add_target.assert_called_once_with(
            "node/node-1", factory.return_value.scrape, 30
        )

    async def test_node_update_keeps_existing_target(self, reconciler, scrape_scheduler, make_node):
        """Test updates of a scraped node do not build a new scraper."""
        node_reconciler, factory = reconciler
        scrape_scheduler.get_target.return_value = MagicMock()

        await node_reconciler.on_update(
            make_node("node-1", "node-uid"), make_node("node-1", "node-uid", resource_version="2")
        )

        factory.assert_not_called()
        scrape_scheduler.add_target.assert_not_called()

    async def test_node_delete_stops_scraping(self, reconciler, scrape_scheduler, make_node):
        """Test a deleted node's target is removed."""
        node_reconciler, _ = reconciler
        node = make_node("node-1", "node-uid")
        scrape_scheduler.get_target.return_value = None
        await node_reconciler.on_add(node)

        await node_reconciler.on_delete(node)

        scrape_scheduler.remove_target.assert_called_once_with("node/node-1")


class TestNotificationRedelivery:
    """Test a pod whose first write failed becomes resolvable on a later resync."""

    async def test_failed_add_recovers_on_unchanged_listing(
        self, db, session_factory, make_pod, monkeypatch
    ):
        """Test a database error on add is healed by the next listing."""
        cache = WorkloadIdentityCache()
        reconciler = ObjectReconciler(
            ObjectKind.POD,
            lambda: set(),
            session_factory=session_factory,
            hooks=[PodHook(cache)],
        )
        informer = PollingInformer(
            ObjectKind.POD, AsyncMock(return_value=[make_pod("web-1", "uid-1")]), [reconciler]
        )

        real_upsert = object_store.upsert_object
        attempts = 0

        async def flaky_upsert(*args, **kwargs):
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise OperationalError("INSERT", {}, Exception("database is locked"))
            return await real_upsert(*args, **kwargs)

        monkeypatch.setattr(object_store, "upsert_object", flaky_upsert)

        await informer.resync()
        assert cache.load("default", "web-1") is None

        await informer.resync()

        assert attempts == 2
        assert cache.load("default", "web-1") == "uid-1"
        assert (await pod_row(db, "uid-1")).name == "web-1"
        assert [s.uid for s in await snapshots(db, ObjectKind.POD)] == ["uid-1"]
        assert informer.pending_redelivery == 0
