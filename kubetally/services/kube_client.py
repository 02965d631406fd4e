"""Kubernetes API access: object listings and kubelet resource metrics."""

import asyncio
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Optional

import urllib3.exceptions
from kubernetes import client, config
from kubernetes.client.rest import ApiException
from prometheus_client.parser import text_string_to_metric_families

from kubetally.exceptions import ClusterAPIError, MetricsSourceError
from kubetally.services.identity_cache import WorkloadKey
from kubetally.services.kinds import ObjectKind
from kubetally.utils.retry import async_retry

logger = logging.getLogger(__name__)

LIST_PAGE_SIZE = 500
RESOURCE_METRICS_PATH = "metrics/resource"

CPU_METRIC = "pod_cpu_usage_seconds_total"
MEMORY_METRIC = "pod_memory_working_set_bytes"


@dataclass(frozen=True)
class CounterSample:
    """Point-in-time reading of a pod metric, timestamped by the kubelet."""

    value: float
    timestamp_ms: int


@dataclass
class NodeMetrics:
    """Per-pod resource readings from one node's /metrics/resource endpoint."""

    cpu_seconds_total: dict[WorkloadKey, CounterSample] = field(default_factory=dict)
    memory_working_set_bytes: dict[WorkloadKey, CounterSample] = field(default_factory=dict)


def parse_resource_metrics(payload: str) -> NodeMetrics:
    """Extract pod CPU counters and memory gauges from Prometheus text exposition.

    Counter families lose their ``_total`` suffix in the parser, so samples are
    matched by sample name rather than family name.

    Raises:
        ValueError: If the payload is not valid exposition format
    """
    result = NodeMetrics()
    for family in text_string_to_metric_families(payload):
        for sample in family.samples:
            if sample.name == CPU_METRIC:
                target = result.cpu_seconds_total
            elif sample.name == MEMORY_METRIC:
                target = result.memory_working_set_bytes
            else:
                continue

            if sample.timestamp is None:
                logger.debug(f"Skipping {sample.name} sample without timestamp: {sample.labels}")
                continue

            key = WorkloadKey(
                namespace=sample.labels.get("namespace", ""),
                name=sample.labels.get("pod", ""),
            )
            target[key] = CounterSample(
                value=float(sample.value),
                timestamp_ms=int(round(float(sample.timestamp) * 1000)),
            )
    return result


def load_api_client() -> client.ApiClient:
    """Build an API client from the environment or the pod's service account.

    ``KUBE_API_URL`` (with optional ``KUBE_TOKEN`` and ``KUBE_CA_CERT``) points
    kubetally at an explicit API server; otherwise the in-cluster service
    account configuration is loaded.

    Raises:
        ClusterAPIError: If no configuration is available
    """
    api_url = os.getenv("KUBE_API_URL")
    if api_url:
        configuration = client.Configuration()
        configuration.host = api_url
        token = os.getenv("KUBE_TOKEN")
        if token:
            configuration.api_key = {"authorization": token}
            configuration.api_key_prefix = {"authorization": "Bearer"}
        ca_cert = os.getenv("KUBE_CA_CERT")
        if ca_cert:
            configuration.ssl_ca_cert = ca_cert
        logger.info(f"Using Kubernetes API server {api_url}")
        return client.ApiClient(configuration)

    try:
        config.load_incluster_config()
    except config.ConfigException as e:
        raise ClusterAPIError(f"in-cluster configuration unavailable: {e}") from e
    logger.info("Loaded in-cluster Kubernetes configuration")
    return client.ApiClient()


class KubeClient:
    """Async facade over the blocking Kubernetes client; calls run in worker threads."""

    def __init__(
        self,
        api_client: Optional[client.ApiClient] = None,
        timeout: float = 30.0,
    ) -> None:
        self.api_client = api_client or load_api_client()
        self.timeout = timeout
        self.core = client.CoreV1Api(self.api_client)
        self.batch = client.BatchV1Api(self.api_client)
        self.apps = client.AppsV1Api(self.api_client)

    async def close(self) -> None:
        self.api_client.close()

    def _lister(self, kind: ObjectKind) -> Callable[..., Any]:
        listers = {
            ObjectKind.POD: self.core.list_pod_for_all_namespaces,
            ObjectKind.NODE: self.core.list_node,
            ObjectKind.JOB: self.batch.list_job_for_all_namespaces,
            ObjectKind.REPLICA_SET: self.apps.list_replica_set_for_all_namespaces,
        }
        return listers[kind]

    @async_retry(max_attempts=3, exceptions=(urllib3.exceptions.HTTPError,))
    async def _call(self, method: Callable[..., Any], *args, **kwargs) -> Any:
        """Run one API call off the event loop; connection failures are retried, API errors are not."""
        return await asyncio.to_thread(method, *args, _request_timeout=self.timeout, **kwargs)

    async def list_objects(self, kind: ObjectKind) -> list[dict[str, Any]]:
        """List every object of ``kind`` across all namespaces, following pagination.

        Objects are returned in their JSON form (camelCase keys).

        Raises:
            ClusterAPIError: If any page cannot be fetched
        """
        lister = self._lister(kind)
        items: list[dict[str, Any]] = []
        params: dict[str, Any] = {"limit": LIST_PAGE_SIZE}
        try:
            while True:
                page = await self._call(lister, **params)
                items.extend(self.api_client.sanitize_for_serialization(item) for item in page.items or [])
                continue_token = page.metadata._continue if page.metadata else None
                if not continue_token:
                    break
                params = {"limit": LIST_PAGE_SIZE, "_continue": continue_token}
        except ApiException as e:
            raise ClusterAPIError(f"listing {kind.value} failed with HTTP {e.status}") from e
        except urllib3.exceptions.HTTPError as e:
            raise ClusterAPIError(f"listing {kind.value} failed: {e}") from e

        return items

    async def node_metrics(self, node_name: str) -> NodeMetrics:
        """Fetch and parse the kubelet resource metrics of one node via the API server proxy.

        Raises:
            MetricsSourceError: If the endpoint is unreachable or the payload cannot be parsed
        """
        try:
            response = await self._call(
                self.core.connect_get_node_proxy_with_path,
                node_name,
                RESOURCE_METRICS_PATH,
                _preload_content=False,
            )
        except ApiException as e:
            raise MetricsSourceError(node_name, f"HTTP {e.status}") from e
        except urllib3.exceptions.HTTPError as e:
            raise MetricsSourceError(node_name, str(e)) from e

        try:
            return parse_resource_metrics(response.data.decode("utf-8"))
        except ValueError as e:
            raise MetricsSourceError(node_name, f"invalid metrics payload: {e}") from e
