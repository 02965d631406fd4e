"""Pod rows: resource requests, controller owner and lifecycle timestamps."""

import logging
from datetime import UTC, datetime
from typing import Any, Optional

from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession

from kubetally.models.pod import Pod
from kubetally.services.object_store import controller_of, object_uid
from kubetally.utils.quantity import parse_quantity
from kubetally.utils.upsert import insert_for

logger = logging.getLogger(__name__)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp from object metadata, returning None if absent."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Ignoring unparsable timestamp: {value}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def pod_requests(spec: dict[str, Any]) -> tuple[float, float]:
    """Effective (cpu cores, memory bytes) requested by a pod spec.

    Regular containers run together so their requests add up; init containers
    run one at a time before them, so each only needs to fit on its own.
    """
    cpu = 0.0
    memory = 0.0
    for container in spec.get("containers") or []:
        requests = (container.get("resources") or {}).get("requests") or {}
        cpu += parse_quantity(requests.get("cpu"))
        memory += parse_quantity(requests.get("memory"))
    for container in spec.get("initContainers") or []:
        requests = (container.get("resources") or {}).get("requests") or {}
        cpu = max(cpu, parse_quantity(requests.get("cpu")))
        memory = max(memory, parse_quantity(requests.get("memory")))
    return cpu, memory


async def upsert_pod(db: AsyncSession, obj: dict[str, Any]) -> str:
    """Insert or refresh the inventory row of a pod object.

    Returns:
        The pod UID
    """
    metadata = obj.get("metadata") or {}
    spec = obj.get("spec") or {}
    status = obj.get("status") or {}
    uid = object_uid(obj)
    controller_uid, controller_kind, controller_name = controller_of(metadata)
    request_cpu, request_memory = pod_requests(spec)

    values = {
        "pod_uid": uid,
        "namespace": metadata.get("namespace", ""),
        "name": metadata.get("name", ""),
        "node_name": spec.get("nodeName") or "",
        "controller_kind": controller_kind,
        "controller_name": controller_name,
        "controller_uid": controller_uid,
        "request_cpu_cores": request_cpu,
        "request_memory_bytes": request_memory,
        "labels": metadata.get("labels") or {},
        "created_at": parse_timestamp(metadata.get("creationTimestamp")),
        "started_at": parse_timestamp(status.get("startTime")),
        "deleted_at": parse_timestamp(metadata.get("deletionTimestamp")),
    }

    table = Pod.__table__
    stmt = insert_for(db, table).values(values)
    set_ = {key: stmt.excluded[key] for key in values if key != "pod_uid"}
    # a deletion timestamp, once known, is kept
    set_["deleted_at"] = func.coalesce(table.c.deleted_at, stmt.excluded.deleted_at)
    stmt = stmt.on_conflict_do_update(index_elements=[table.c.pod_uid], set_=set_)
    await db.execute(stmt)
    return uid


async def mark_pod_deleted(db: AsyncSession, pod_uid: str) -> bool:
    """Stamp a pod as deleted now unless it already carries a deletion time."""
    result = await db.execute(
        update(Pod)
        .where(Pod.pod_uid == pod_uid, Pod.deleted_at.is_(None))
        .values(deleted_at=datetime.now(UTC))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0
