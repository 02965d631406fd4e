"""kubetally - Kubernetes pod usage and cost collector."""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from kubetally import __version__
from kubetally.db import AsyncSessionLocal, init_db
from kubetally.exceptions import ClusterAPIError
from kubetally.services.collector import Collector
from kubetally.services.kube_client import KubeClient
from kubetally.services.metrics import render_latest
from kubetally.services.settings_service import SettingsService

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# Filter to exclude health check endpoints from access logs
class EndpointFilter(logging.Filter):
    """Filter to exclude specific endpoints from Granian access logs."""

    def __init__(self, excluded_paths: list[str]) -> None:
        super().__init__()
        self.excluded_paths = excluded_paths

    def filter(self, record: logging.LogRecord) -> bool:
        """Return False if the log record is for an excluded endpoint."""
        message = record.getMessage()
        return not any(path in message for path in self.excluded_paths)


logging.getLogger("granian.access").addFilter(EndpointFilter(["/health", "/metrics"]))


def collector_enabled() -> bool:
    return os.getenv("KUBETALLY_COLLECTOR_ENABLED", "true").lower() != "false"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    logger.info(f"Starting kubetally {__version__}...")

    await init_db()
    logger.info("Database initialized")

    async with AsyncSessionLocal() as db:
        await SettingsService.init_defaults(db)
    logger.info("Default settings initialized")

    collector = None
    if collector_enabled():
        try:
            collector = Collector(KubeClient())
        except ClusterAPIError as e:
            logger.error(f"No Kubernetes configuration, collector not started: {e}")
        else:
            await collector.start()
    else:
        logger.warning("Collector disabled by KUBETALLY_COLLECTOR_ENABLED, serving stored data only")
    app.state.collector = collector

    yield

    if collector is not None:
        await collector.stop()
    logger.info("Shutting down kubetally...")


app = FastAPI(
    title="kubetally",
    description="Per-pod resource usage and cost aggregation for Kubernetes",
    version=__version__,
    lifespan=lifespan,
)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Log unhandled errors with full details and return a generic message."""
    logger.error(
        f"Unhandled exception: {type(exc).__name__}: {exc}",
        exc_info=True,
        extra={"path": request.url.path, "method": request.method},
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "An internal error occurred."},
    )


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "kubetally"}


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    payload, content_type = render_latest()
    return Response(content=payload, media_type=content_type)


from kubetally.api import api_router  # noqa: E402

app.include_router(api_router)
