"""Database models for kubetally."""

from kubetally.models.setting import Setting
from kubetally.models.object_snapshot import ObjectSnapshot
from kubetally.models.pod import Pod
from kubetally.models.pod_usage_hourly import PodUsageHourly

__all__ = [
    "Setting",
    "ObjectSnapshot",
    "Pod",
    "PodUsageHourly",
]
