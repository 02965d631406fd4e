"""Latest known state of every observed cluster object."""

from sqlalchemy import JSON, Column, DateTime, Index, String
from sqlalchemy.sql import func

from kubetally.db import Base


class ObjectSnapshot(Base):
    """Snapshot of one Kubernetes object, soft-deleted once it disappears.

    metadata/spec/status are replaced wholesale on every update. deleted_at is
    only ever set, never cleared.
    """

    __tablename__ = "objects"

    uid = Column(String(36), primary_key=True)
    kind = Column(String, nullable=False)
    namespace = Column(String, nullable=False, default="")
    name = Column(String, nullable=False)

    # Owner reference flagged as controller, e.g. the Deployment of a ReplicaSet
    controller_kind = Column(String, nullable=False, default="")
    controller_name = Column(String, nullable=False, default="")
    controller_uid = Column(String(36), nullable=True)

    # "metadata" is reserved on declarative classes
    object_metadata = Column("metadata", JSON, nullable=False, default=dict)
    spec = Column(JSON, nullable=True)
    status = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_objects_kind_deleted", "kind", "deleted_at"),
        Index("idx_objects_namespace_name", "namespace", "name"),
    )

    @property
    def is_live(self) -> bool:
        return self.deleted_at is None

    def __repr__(self):
        return f"<ObjectSnapshot(kind={self.kind}, uid={self.uid}, name={self.namespace}/{self.name})>"
