"""Snapshot table writes: upserts and monotonic soft-deletes."""

import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from kubetally.models.object_snapshot import ObjectSnapshot
from kubetally.services.kinds import ObjectKind
from kubetally.utils.upsert import insert_for

logger = logging.getLogger(__name__)

# Keeps IN lists well under SQLite's bound parameter limit
SOFT_DELETE_CHUNK = 500


def object_uid(obj: dict[str, Any]) -> str:
    """Return ``metadata.uid`` of a Kubernetes object.

    Raises:
        ValueError: If the object carries no UID
    """
    uid = (obj.get("metadata") or {}).get("uid")
    if not uid:
        raise ValueError("object has no metadata.uid")
    return uid


def controller_of(metadata: dict[str, Any]) -> tuple[Optional[str], str, str]:
    """Return (uid, kind, name) of the owner reference marked as controller."""
    for ref in metadata.get("ownerReferences") or []:
        if ref.get("controller"):
            return ref.get("uid"), ref.get("kind", ""), ref.get("name", "")
    return None, "", ""


async def upsert_object(db: AsyncSession, kind: ObjectKind, obj: dict[str, Any]) -> str:
    """Insert or fully replace the snapshot of ``obj``.

    kind, namespace, name, controller, metadata, spec and status are overwritten; the
    deletion timestamp is left untouched so a soft-deleted row stays deleted.

    Returns:
        The object's UID
    """
    metadata = obj.get("metadata") or {}
    uid = object_uid(obj)
    controller_uid, controller_kind, controller_name = controller_of(metadata)

    table = ObjectSnapshot.__table__
    columns = table.c
    metadata_column = ObjectSnapshot.object_metadata.property.columns[0]

    stmt = insert_for(db, table).values(
        {
            columns.uid: uid,
            columns.kind: kind.value,
            columns.namespace: metadata.get("namespace", ""),
            columns.name: metadata.get("name", ""),
            columns.controller_kind: controller_kind,
            columns.controller_name: controller_name,
            columns.controller_uid: controller_uid,
            metadata_column: metadata,
            columns.spec: obj.get("spec"),
            columns.status: obj.get("status"),
        }
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[columns.uid],
        set_={
            columns.kind: stmt.excluded.kind,
            columns.namespace: stmt.excluded.namespace,
            columns.name: stmt.excluded.name,
            columns.controller_kind: stmt.excluded.controller_kind,
            columns.controller_name: stmt.excluded.controller_name,
            columns.controller_uid: stmt.excluded.controller_uid,
            metadata_column: stmt.excluded[metadata_column.key],
            columns.spec: stmt.excluded.spec,
            columns.status: stmt.excluded.status,
            columns.updated_at: func.now(),
        },
    )
    await db.execute(stmt)
    logger.debug(f"Upserted {kind.value} {metadata.get('namespace', '')}/{metadata.get('name', '')} ({uid})")
    return uid


async def soft_delete_object(db: AsyncSession, uid: str, deleted_at: Optional[datetime] = None) -> bool:
    """Mark one snapshot deleted unless it already is.

    Returns:
        True if a live row was marked
    """
    result = await db.execute(
        update(ObjectSnapshot)
        .where(ObjectSnapshot.uid == uid, ObjectSnapshot.deleted_at.is_(None))
        .values(deleted_at=deleted_at or datetime.now(UTC))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


async def live_uids(db: AsyncSession, kind: ObjectKind) -> set[str]:
    """UIDs of every stored, not yet deleted snapshot of ``kind``."""
    result = await db.execute(
        select(ObjectSnapshot.uid).where(
            ObjectSnapshot.kind == kind.value, ObjectSnapshot.deleted_at.is_(None)
        )
    )
    return set(result.scalars().all())


async def soft_delete_missing(db: AsyncSession, kind: ObjectKind, present: Iterable[str]) -> int:
    """Soft-delete every live snapshot of ``kind`` whose UID is not in ``present``.

    Args:
        db: Database session (caller commits)
        kind: Kind being swept
        present: UIDs currently present in the cluster

    Returns:
        Number of snapshots marked deleted by this call
    """
    stale = sorted((await live_uids(db, kind)) - set(present))
    if not stale:
        return 0

    now = datetime.now(UTC)
    swept = 0
    for start in range(0, len(stale), SOFT_DELETE_CHUNK):
        chunk = stale[start:start + SOFT_DELETE_CHUNK]
        result = await db.execute(
            update(ObjectSnapshot)
            .where(
                ObjectSnapshot.kind == kind.value,
                ObjectSnapshot.uid.in_(chunk),
                ObjectSnapshot.deleted_at.is_(None),
            )
            .values(deleted_at=now)
            .execution_options(synchronize_session=False)
        )
        swept += result.rowcount
    return swept


async def active_object_count(db: AsyncSession, kind: Optional[ObjectKind] = None) -> int:
    query = select(func.count()).select_from(ObjectSnapshot).where(ObjectSnapshot.deleted_at.is_(None))
    if kind is not None:
        query = query.where(ObjectSnapshot.kind == kind.value)
    result = await db.execute(query)
    return result.scalar_one()
