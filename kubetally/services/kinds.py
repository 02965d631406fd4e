"""Closed set of Kubernetes object kinds kubetally keeps snapshots of."""

from enum import Enum


class ObjectKind(str, Enum):
    """Watched kinds; values match the objects' ``kind`` field."""

    POD = "Pod"
    NODE = "Node"
    JOB = "Job"
    REPLICA_SET = "ReplicaSet"
