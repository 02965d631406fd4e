"""Idempotent hourly bucket upserts for pod CPU and memory usage."""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import case, or_
from sqlalchemy.ext.asyncio import AsyncSession

from kubetally.models.pod_usage_hourly import PodUsageHourly
from kubetally.utils.upsert import insert_for

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageReading:
    """One value destined for the bucket of ``pod_uid`` at hour ``timestamp``."""

    pod_uid: str
    timestamp: datetime
    value: float


def hour_bucket(timestamp_ms: int) -> datetime:
    """Truncate a millisecond epoch timestamp down to its UTC hour."""
    moment = datetime.fromtimestamp(timestamp_ms / 1000, tz=UTC)
    return moment.replace(minute=0, second=0, microsecond=0)


def _fold(table, excluded, prefix: str) -> dict:
    """SET clause folding one reading into the running stats for ``prefix``.

    A row created by the other metric has zero readings for this one; the
    first reading then seeds min and max instead of comparing against the
    placeholder zeros.
    """
    readings = table.c[f"{prefix}_total_readings"]
    current_max = table.c[f"{prefix}_max"]
    current_min = table.c[f"{prefix}_min"]
    new_max = excluded[f"{prefix}_max"]
    new_min = excluded[f"{prefix}_min"]
    first = readings == 0
    return {
        f"{prefix}_total_readings": readings + 1,
        f"{prefix}_max": case((or_(first, new_max > current_max), new_max), else_=current_max),
        f"{prefix}_min": case((or_(first, new_min < current_min), new_min), else_=current_min),
        f"{prefix}_total": table.c[f"{prefix}_total"] + excluded[f"{prefix}_total"],
    }


def _seed(prefix: str, reading: UsageReading) -> dict:
    return {
        "pod_uid": reading.pod_uid,
        "timestamp": reading.timestamp,
        f"{prefix}_max": reading.value,
        f"{prefix}_min": reading.value,
        f"{prefix}_total": reading.value,
        f"{prefix}_total_readings": 1,
    }


async def upsert_cpu(db: AsyncSession, readings: list[UsageReading]) -> int:
    """Fold CPU core rates into their hourly buckets.

    Args:
        db: Database session (caller commits)
        readings: One rate per pod

    Returns:
        Number of readings applied
    """
    if not readings:
        return 0

    table = PodUsageHourly.__table__
    stmt = insert_for(db, table)
    stmt = stmt.on_conflict_do_update(
        index_elements=[table.c.pod_uid, table.c.timestamp],
        set_=_fold(table, stmt.excluded, "cpu_cores"),
    )
    await db.execute(stmt, [_seed("cpu_cores", reading) for reading in readings])
    return len(readings)


async def upsert_memory(
    db: AsyncSession, readings: list[UsageReading], sample_seconds: float
) -> int:
    """Fold memory working set readings into their hourly buckets.

    Each reading also credits ``sample_seconds`` of observed lifetime to the
    bucket, which the aggregation queries use as the pod's weight for the hour.

    Args:
        db: Database session (caller commits)
        readings: One gauge value per pod
        sample_seconds: Scrape interval the reading stands for

    Returns:
        Number of readings applied
    """
    if not readings:
        return 0

    table = PodUsageHourly.__table__
    stmt = insert_for(db, table)
    set_ = _fold(table, stmt.excluded, "memory_bytes")
    set_["sample_seconds"] = table.c.sample_seconds + stmt.excluded.sample_seconds
    stmt = stmt.on_conflict_do_update(
        index_elements=[table.c.pod_uid, table.c.timestamp],
        set_=set_,
    )
    rows = []
    for reading in readings:
        row = _seed("memory_bytes", reading)
        row["sample_seconds"] = sample_seconds
        rows.append(row)
    await db.execute(stmt, rows)
    return len(readings)
