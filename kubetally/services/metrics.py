"""Prometheus metrics for kubetally."""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Info,
    generate_latest,
)

from kubetally import __version__

# Application info
app_info = Info("kubetally_app", "kubetally application information")
app_info.info({"version": __version__, "name": "kubetally"})

# Scrape metrics
scrapes_total = Counter(
    "kubetally_scrapes_total", "Node scrapes performed", ["status"]
)
scrape_targets = Gauge(
    "kubetally_scrape_targets", "Nodes with an active scrape job"
)
samples_written_total = Counter(
    "kubetally_samples_written_total", "Usage samples folded into hourly buckets", ["metric"]
)
samples_dropped_total = Counter(
    "kubetally_samples_dropped_total", "Usage samples dropped before persistence", ["reason"]
)

# Object reconciliation metrics
objects_upserted_total = Counter(
    "kubetally_objects_upserted_total", "Object snapshots written", ["kind"]
)
objects_soft_deleted_total = Counter(
    "kubetally_objects_soft_deleted_total", "Object snapshots marked deleted", ["kind", "source"]
)
sweeps_total = Counter(
    "kubetally_sweeps_total", "Reconciliation sweeps per kind", ["kind", "status"]
)


def render_latest() -> tuple[bytes, str]:
    """Return the current exposition payload and its content type."""
    return generate_latest(), CONTENT_TYPE_LATEST
