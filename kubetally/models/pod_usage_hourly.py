"""Hourly usage buckets folded from node scrapes."""

from typing import Optional

from sqlalchemy import Column, DateTime, Float, Integer, String

from kubetally.db import Base


class PodUsageHourly(Base):
    """Running min/max/total/count of CPU cores and memory bytes for one pod-hour.

    Rows are only ever created or incremented by the upserts in
    services/usage_store.py.
    """

    __tablename__ = "pod_usage_hourly"

    pod_uid = Column(String(36), primary_key=True)
    # Sample timestamp truncated to the UTC hour
    timestamp = Column(DateTime(timezone=True), primary_key=True)

    cpu_cores_max = Column(Float, nullable=False, default=0.0)
    cpu_cores_min = Column(Float, nullable=False, default=0.0)
    cpu_cores_total = Column(Float, nullable=False, default=0.0)
    cpu_cores_total_readings = Column(Integer, nullable=False, default=0)

    memory_bytes_max = Column(Float, nullable=False, default=0.0)
    memory_bytes_min = Column(Float, nullable=False, default=0.0)
    memory_bytes_total = Column(Float, nullable=False, default=0.0)
    memory_bytes_total_readings = Column(Integer, nullable=False, default=0)

    # Seconds of observed lifetime within the hour (scrape interval per memory reading)
    sample_seconds = Column(Float, nullable=False, default=0.0)

    @property
    def cpu_cores_avg(self) -> Optional[float]:
        if not self.cpu_cores_total_readings:
            return None
        return self.cpu_cores_total / self.cpu_cores_total_readings

    @property
    def memory_bytes_avg(self) -> Optional[float]:
        if not self.memory_bytes_total_readings:
            return None
        return self.memory_bytes_total / self.memory_bytes_total_readings

    @property
    def hours(self) -> float:
        return min(self.sample_seconds, 3600.0) / 3600.0

    def __repr__(self):
        return f"<PodUsageHourly(pod_uid={self.pod_uid}, timestamp={self.timestamp})>"
