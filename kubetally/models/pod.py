"""Pod inventory used as the dimension source for usage aggregation."""

from sqlalchemy import JSON, Column, DateTime, Float, Index, String

from kubetally.db import Base


class Pod(Base):
    """Scheduling-relevant facts about a pod, kept current from pod notifications."""

    __tablename__ = "pods"

    pod_uid = Column(String(36), primary_key=True)
    namespace = Column(String, nullable=False)
    name = Column(String, nullable=False)
    node_name = Column(String, nullable=False, default="")

    # Owner reference flagged as controller (ReplicaSet, Job, StatefulSet, ...)
    controller_kind = Column(String, nullable=False, default="")
    controller_name = Column(String, nullable=False, default="")
    controller_uid = Column(String(36), nullable=True)

    request_cpu_cores = Column(Float, nullable=False, default=0.0)
    request_memory_bytes = Column(Float, nullable=False, default=0.0)
    labels = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_pods_namespace_name", "namespace", "name"),
    )

    def __repr__(self):
        return f"<Pod(uid={self.pod_uid}, name={self.namespace}/{self.name})>"
