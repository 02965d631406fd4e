"""In-memory (namespace, name) -> pod UID mapping shared by reconciler and scrapers."""

import threading
from typing import NamedTuple, Optional


class WorkloadKey(NamedTuple):
    """Pod identity as reported by the kubelet resource metrics endpoint."""

    namespace: str
    name: str


class WorkloadIdentityCache:
    """Thread-safe cache resolving metric sample keys to pod UIDs.

    Lookups are plain dict reads and never wait on writers. Writers serialize
    on a short lock so compare-and-delete is atomic per key.
    """

    def __init__(self) -> None:
        self._uids: dict[WorkloadKey, str] = {}
        self._lock = threading.Lock()

    def load(self, namespace: str, name: str) -> Optional[str]:
        return self._uids.get(WorkloadKey(namespace, name))

    def store(self, namespace: str, name: str, uid: str) -> None:
        with self._lock:
            self._uids[WorkloadKey(namespace, name)] = uid

    def compare_and_delete(self, namespace: str, name: str, uid: str) -> bool:
        """Remove the entry only if it still points at ``uid``.

        A pod recreated under the same name stores its new UID before the old
        pod's delete notification may arrive; that newer entry must survive.
        """
        key = WorkloadKey(namespace, name)
        with self._lock:
            if self._uids.get(key) != uid:
                return False
            del self._uids[key]
            return True

    def __len__(self) -> int:
        return len(self._uids)
