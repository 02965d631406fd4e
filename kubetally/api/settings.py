"""Settings API endpoints."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from kubetally.db import get_db
from kubetally.schemas import SettingSchema, SettingUpdate
from kubetally.services.settings_service import SettingsService
from kubetally.utils.error_handling import safe_error_response

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/", response_model=List[SettingSchema])
async def get_all_settings(
    category: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
) -> List[SettingSchema]:
    """Get all settings, optionally filtered by category."""
    return await SettingsService.get_all(db, category)


@router.get("/{key}", response_model=SettingSchema)
async def get_setting(key: str, db: AsyncSession = Depends(get_db)) -> SettingSchema:
    """Get a specific setting by key."""
    setting = await SettingsService.get_setting(db, key)
    if not setting:
        raise HTTPException(status_code=404, detail=f"Setting '{key}' not found")
    return setting


@router.put("/{key}", response_model=SettingSchema)
async def update_setting(
    key: str,
    update: SettingUpdate,
    db: AsyncSession = Depends(get_db),
) -> SettingSchema:
    """Update a setting value.

    Interval changes take effect when the collector next starts; prices apply
    to the next aggregation request.
    """
    if key not in SettingsService.DEFAULTS:
        raise HTTPException(status_code=404, detail=f"Setting '{key}' not found")

    try:
        setting = await SettingsService.set(db, key, update.value)
    except SQLAlchemyError as e:
        safe_error_response(logger, e, "Failed to update setting")
    logger.info(f"Setting '{key}' updated")
    return setting
