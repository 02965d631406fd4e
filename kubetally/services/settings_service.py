"""Settings service for database-first configuration."""

import logging
import os
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kubetally.models import Setting

logger = logging.getLogger(__name__)


class SettingsService:
    """Manage application settings in database."""

    # Default settings with descriptions
    DEFAULTS: Dict[str, Dict[str, Any]] = {
        # Scraping
        "scrape_interval": {
            "value": "60",
            "category": "scraping",
            "description": "Seconds between resource metric scrapes of each node",
        },
        "disable_scrape_jitter": {
            "value": os.getenv("KUBETALLY_DISABLE_SCRAPE_JITTER", "false"),
            "category": "scraping",
            "description": "Start node scrapes immediately instead of after a random delay (deterministic testing)",
        },
        # Reconciliation
        "informer_resync_interval": {
            "value": "60",
            "category": "reconciliation",
            "description": "Seconds between full listings of each watched object kind",
        },
        "sweep_interval": {
            "value": "300",
            "category": "reconciliation",
            "description": "Seconds between sweeps that soft-delete objects missing from the live listing",
        },
        # Pricing
        "cpu_core_hour_price": {
            "value": "0.031611",
            "category": "pricing",
            "description": "Price of one CPU core for one hour",
        },
        "memory_gb_hour_price": {
            "value": "0.004237",
            "category": "pricing",
            "description": "Price of one GiB of memory for one hour",
        },
    }

    @staticmethod
    async def init_defaults(db: AsyncSession) -> None:
        """Initialize default settings if they don't exist."""
        for key, config in SettingsService.DEFAULTS.items():
            result = await db.execute(select(Setting).where(Setting.key == key))
            if not result.scalar_one_or_none():
                setting = Setting(
                    key=key,
                    value=config["value"],
                    category=config["category"],
                    description=config["description"],
                )
                db.add(setting)

        await db.commit()

    @staticmethod
    async def get_setting(db: AsyncSession, key: str) -> Optional[Setting]:
        """Get the stored setting row for ``key``, or None."""
        result = await db.execute(select(Setting).where(Setting.key == key))
        return result.scalar_one_or_none()

    @classmethod
    async def get(cls, db: AsyncSession, key: str, default: Optional[str] = None) -> Optional[str]:
        """Get setting value by key.

        Args:
            db: Database session
            key: Setting key
            default: Default value if setting not found

        Returns:
            Setting value or default
        """
        setting = await cls.get_setting(db, key)

        if not setting:
            return default

        return setting.value

    @staticmethod
    async def get_bool(db: AsyncSession, key: str, default: bool = False) -> bool:
        """Get setting as boolean."""
        value = await SettingsService.get(db, key)
        if value is None:
            return default
        return value.lower() in ("true", "1", "yes", "on")

    @staticmethod
    async def get_int(db: AsyncSession, key: str, default: int = 0) -> int:
        """Get setting as integer."""
        value = await SettingsService.get(db, key)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            return default

    @staticmethod
    async def get_float(db: AsyncSession, key: str, default: float = 0.0) -> float:
        """Get setting as float."""
        value = await SettingsService.get(db, key)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError:
            return default

    @classmethod
    async def set(cls, db: AsyncSession, key: str, value: str) -> Setting:
        """Set setting value.

        Args:
            db: Database session
            key: Setting key
            value: Setting value

        Returns:
            Updated Setting object
        """
        result = await db.execute(select(Setting).where(Setting.key == key))
        setting = result.scalar_one_or_none()

        config = cls.DEFAULTS.get(key, {})

        if setting:
            setting.value = value
        else:
            setting = Setting(
                key=key,
                value=value,
                category=config.get("category", "general"),
                description=config.get("description", ""),
            )
            db.add(setting)

        await db.commit()
        await db.refresh(setting)
        return setting

    @staticmethod
    async def get_all(db: AsyncSession, category: Optional[str] = None) -> list[Setting]:
        """Get all settings, optionally filtered by category."""
        query = select(Setting)
        if category:
            query = query.where(Setting.category == category)
        result = await db.execute(query.order_by(Setting.category, Setting.key))
        return list(result.scalars().all())
