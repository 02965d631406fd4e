"""Custom exceptions for kubetally."""


class KubetallyError(Exception):
    """Base class for errors raised by kubetally services."""
    pass


class ClusterAPIError(KubetallyError):
    """Raised when the Kubernetes API server cannot be reached or returns an error.

    Scoped to a single listing call or poll; callers log it and let the next
    scheduled iteration retry.
    """
    pass


class MetricsSourceError(ClusterAPIError):
    """Raised when a node's resource metrics endpoint fails or returns garbage."""

    def __init__(self, node_name: str, message: str):
        self.node_name = node_name
        super().__init__(f"node {node_name}: {message}")


class ListingNotReadyError(ClusterAPIError):
    """Raised when a kind's in-memory listing has not completed its first sync.

    A sweep against an unsynced listing would soft-delete every stored row of
    that kind, so the sweep skips the kind instead.
    """

    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"listing for {kind} has not synced yet")


class QueryValidationError(KubetallyError):
    """Raised when an aggregation request is malformed or unsafe.

    Raised before any SQL text is built, so no partial query is ever executed.
    """
    pass
