"""Workload aggregation API endpoints."""

import logging
from datetime import UTC, datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from kubetally.db import get_db
from kubetally.exceptions import QueryValidationError
from kubetally.schemas import WorkloadAggResponse
from kubetally.services.workload_query import WorkloadAggRequest, workload_agg
from kubetally.utils.error_handling import safe_error_response

logger = logging.getLogger(__name__)
router = APIRouter()

DEFAULT_COLUMNS = [
    "namespace",
    "controller_kind",
    "controller_name",
    "request_cpu_cores",
    "used_cpu_cores",
    "request_memory_bytes",
    "used_memory_bytes",
    "total_cost",
]


def _truncate_hour(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).replace(minute=0, second=0, microsecond=0)


def resolve_window(
    start: Optional[datetime], end: Optional[datetime], hours: Optional[int]
) -> tuple[datetime, datetime]:
    """Turn the query's window parameters into an hour-aligned (start, end).

    Either both ``start`` and ``end`` are given, or a trailing window of
    ``hours`` (default 24) ending at the current hour is used.
    """
    if (start is None) != (end is None):
        raise HTTPException(status_code=400, detail="start and end must be given together")
    if start is not None and hours is not None:
        raise HTTPException(status_code=400, detail="hours and start/end are mutually exclusive")

    if start is None:
        end = _truncate_hour(datetime.now(UTC))
        start = end - timedelta(hours=hours or 24)
    return _truncate_hour(start), _truncate_hour(end)


@router.get("/", response_model=WorkloadAggResponse)
async def get_workloads(
    cols: Optional[str] = Query(None, description="Comma separated output columns"),
    order_by: str = Query("", description="Column with optional ' asc' or ' desc' suffix"),
    start: Optional[datetime] = Query(None, description="Window start (ISO 8601)"),
    end: Optional[datetime] = Query(None, description="Window end, exclusive (ISO 8601)"),
    hours: Optional[int] = Query(None, ge=1, le=24 * 366, description="Trailing window length"),
    db: AsyncSession = Depends(get_db),
) -> WorkloadAggResponse:
    """Aggregate pod usage and cost over a time window."""
    columns = [col.strip() for col in cols.split(",")] if cols else list(DEFAULT_COLUMNS)
    window_start, window_end = resolve_window(start, end, hours)
    request = WorkloadAggRequest(
        cols=columns, order_by=order_by, start=window_start, end=window_end
    )

    try:
        result = await workload_agg(db, request)
    except QueryValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SQLAlchemyError as e:
        safe_error_response(logger, e, "Failed to aggregate workload usage")

    return WorkloadAggResponse(
        columns=result.columns, rows=result.rows, sql=result.sql, args=result.args
    )
