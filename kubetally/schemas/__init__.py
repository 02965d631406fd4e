"""Pydantic schemas for API requests and responses."""

from kubetally.schemas.setting import SettingSchema, SettingUpdate
from kubetally.schemas.workload import WorkloadAggResponse

__all__ = ["SettingSchema", "SettingUpdate", "WorkloadAggResponse"]
