"""Pydantic schemas for settings."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class SettingSchema(BaseModel):
    """Setting response schema."""

    key: str
    value: str
    category: str
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class SettingUpdate(BaseModel):
    """Setting update request."""

    value: str = Field(..., min_length=0)
