"""System status API endpoints."""

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from kubetally import __version__
from kubetally.db import get_db
from kubetally.services import object_store
from kubetally.services.kinds import ObjectKind

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/status")
async def get_system_status(request: Request, db: AsyncSession = Depends(get_db)):
    """Collector state and live object counts per kind."""
    collector = getattr(request.app.state, "collector", None)
    live_objects = {kind.value: await object_store.active_object_count(db, kind) for kind in ObjectKind}
    return {
        "version": __version__,
        "collector": collector.get_status() if collector else {"running": False},
        "live_objects": live_objects,
    }
