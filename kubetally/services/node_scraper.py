"""Per-node usage delta engine: counters to rates, rates to hourly buckets."""

import logging
import threading
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kubetally.db import AsyncSessionLocal
from kubetally.services import metrics, usage_store
from kubetally.services.identity_cache import WorkloadIdentityCache, WorkloadKey
from kubetally.services.kube_client import CounterSample, NodeMetrics
from kubetally.services.usage_store import UsageReading, hour_bucket

logger = logging.getLogger(__name__)


class MetricsSource(Protocol):
    async def node_metrics(self, node_name: str) -> NodeMetrics: ...


class NodeScraper:
    """Scrapes one node and folds its pods' usage into hourly buckets.

    CPU arrives as cumulative seconds, so a rate needs the previous sample of
    the same pod on this node. The previous samples and the rates derived from
    them are replaced together after every poll.
    """

    def __init__(
        self,
        node_name: str,
        source: MetricsSource,
        identity_cache: WorkloadIdentityCache,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        interval: float = 60.0,
    ) -> None:
        self.node_name = node_name
        self.source = source
        self.identity_cache = identity_cache
        self.session_factory = session_factory
        self.interval = interval
        self._previous_samples: dict[WorkloadKey, CounterSample] = {}
        self._previous_rates: dict[WorkloadKey, CounterSample] = {}
        self._lock = threading.Lock()

    @property
    def has_history(self) -> bool:
        with self._lock:
            return bool(self._previous_samples)

    def cpu_rates(
        self, current: dict[WorkloadKey, CounterSample]
    ) -> dict[WorkloadKey, CounterSample]:
        """Turn cumulative CPU seconds into average cores since the previous poll.

        A pod seen for the first time yields nothing. When the kubelet has not
        refreshed a pod's counter since the last poll (same timestamp), the rate
        computed last time is repeated rather than reporting zero usage.
        """
        with self._lock:
            rates: dict[WorkloadKey, CounterSample] = {}
            for key, sample in current.items():
                previous = self._previous_samples.get(key)
                if previous is None:
                    continue

                if previous.timestamp_ms != sample.timestamp_ms:
                    elapsed_seconds = (sample.timestamp_ms - previous.timestamp_ms) / 1000
                    rates[key] = CounterSample(
                        value=(sample.value - previous.value) / elapsed_seconds,
                        timestamp_ms=sample.timestamp_ms,
                    )
                    continue

                previous_rate = self._previous_rates.get(key)
                if previous_rate is not None:
                    rates[key] = previous_rate

            self._previous_samples = dict(current)
            self._previous_rates = rates
        return rates

    def _resolve(
        self, samples: dict[WorkloadKey, CounterSample], metric: str
    ) -> list[UsageReading]:
        """Attach pod UIDs, dropping pods the inventory has not caught up with yet."""
        readings = []
        for key, sample in samples.items():
            pod_uid = self.identity_cache.load(key.namespace, key.name)
            if pod_uid is None:
                logger.warning(
                    f"No UID known for pod {key.namespace}/{key.name} on node "
                    f"{self.node_name}, dropping {metric} sample"
                )
                metrics.samples_dropped_total.labels(reason="unknown_pod").inc()
                continue
            readings.append(
                UsageReading(
                    pod_uid=pod_uid,
                    timestamp=hour_bucket(sample.timestamp_ms),
                    value=sample.value,
                )
            )
        return readings

    async def scrape(self) -> dict:
        """Poll the node once and persist the resulting readings.

        Returns:
            Dict with the number of CPU and memory readings written

        Raises:
            MetricsSourceError: If the node's metrics endpoint fails
            SQLAlchemyError: If the bucket upserts fail (transaction rolled back)
        """
        node_metrics = await self.source.node_metrics(self.node_name)

        cpu_readings = self._resolve(self.cpu_rates(node_metrics.cpu_seconds_total), "cpu")
        memory_readings = self._resolve(node_metrics.memory_working_set_bytes, "memory")

        stats = {"cpu": 0, "memory": 0}
        if not cpu_readings and not memory_readings:
            return stats

        async with self.session_factory() as db:
            try:
                stats["cpu"] = await usage_store.upsert_cpu(db, cpu_readings)
                stats["memory"] = await usage_store.upsert_memory(
                    db, memory_readings, sample_seconds=self.interval
                )
                await db.commit()
            except SQLAlchemyError as e:
                logger.error(f"Database error storing usage for node {self.node_name}: {e}")
                await db.rollback()
                raise

        metrics.samples_written_total.labels(metric="cpu").inc(stats["cpu"])
        metrics.samples_written_total.labels(metric="memory").inc(stats["memory"])
        if stats["cpu"]:
            logger.info(f"Updated pod CPU usage on node {self.node_name}: {stats['cpu']} pods")
        if stats["memory"]:
            logger.info(f"Updated pod memory usage on node {self.node_name}: {stats['memory']} pods")
        return stats
