"""Workload aggregation: user-selected dimensions and metrics over hourly usage.

The statement is assembled from fixed fragments. Label keys are the only
caller-supplied text that reaches the SQL, and only after matching
``LABEL_KEY_PATTERN``; every value (time window, prices) is a bound parameter.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import DateTime, Float, bindparam, text
from sqlalchemy.ext.asyncio import AsyncSession

from kubetally.exceptions import QueryValidationError
from kubetally.services.settings_service import SettingsService

logger = logging.getLogger(__name__)

LABEL_PREFIX = "label_"
LABEL_KEY_PATTERN = re.compile(r"[a-zA-Z0-9]([a-zA-Z0-9_.-]*[a-zA-Z0-9])?")

# Output order of the fixed columns, independent of request order
COLUMNS = (
    "timestamp",
    "date",
    "namespace",
    "controller_kind",
    "controller_name",
    "name",
    "node_name",
    "request_cpu_cores",
    "used_cpu_cores",
    "request_memory_bytes",
    "used_memory_bytes",
    "hours",
    "cpu_cost",
    "memory_cost",
    "total_cost",
)

DIMENSIONS = frozenset(
    {"timestamp", "date", "namespace", "controller_kind", "controller_name", "name", "node_name"}
)
AVERAGED = frozenset(
    {"request_cpu_cores", "used_cpu_cores", "request_memory_bytes", "used_memory_bytes"}
)
COSTS = frozenset({"cpu_cost", "memory_cost", "total_cost"})

GIB = 1024 ** 3

WINDOW = "NULLIF(CAST(:window_hours AS DOUBLE PRECISION), 0)"
CPU_PRICE = "CAST(:cpu_core_hour_price AS DOUBLE PRECISION)"
MEMORY_PRICE = "CAST(:memory_gb_hour_price AS DOUBLE PRECISION)"

CPU_CORE_HOURS = (
    "sum(CASE WHEN request_cpu_cores > cpu_cores_avg THEN request_cpu_cores "
    "ELSE cpu_cores_avg END * hours)"
)
MEMORY_GIB_HOURS = (
    "sum(CASE WHEN request_memory_bytes > memory_bytes_avg THEN request_memory_bytes "
    f"ELSE memory_bytes_avg END * hours / {GIB}.0)"
)

# One row per pod-hour with the pod's dimensions and its exposure in the hour.
# Pods owned by a ReplicaSet or Job report that owner's controller (Deployment,
# CronJob) when the owner snapshot has one.
USAGE_SOURCE = (
    "SELECT u.timestamp AS bucket_start, "
    "p.namespace AS namespace, "
    "COALESCE(o.controller_kind, p.controller_kind) AS controller_kind, "
    "COALESCE(o.controller_name, p.controller_name) AS controller_name, "
    "p.name AS name, "
    "p.node_name AS node_name, "
    "p.labels AS labels, "
    "p.request_cpu_cores AS request_cpu_cores, "
    "p.request_memory_bytes AS request_memory_bytes, "
    "CASE WHEN u.cpu_cores_total_readings > 0 "
    "THEN u.cpu_cores_total / u.cpu_cores_total_readings ELSE 0 END AS cpu_cores_avg, "
    "CASE WHEN u.memory_bytes_total_readings > 0 "
    "THEN u.memory_bytes_total / u.memory_bytes_total_readings ELSE 0 END AS memory_bytes_avg, "
    "CASE WHEN u.sample_seconds > 3600 THEN 1.0 ELSE u.sample_seconds / 3600.0 END AS hours "
    "FROM pod_usage_hourly AS u JOIN pods AS p ON p.pod_uid = u.pod_uid "
    "LEFT JOIN objects AS o ON o.uid = p.controller_uid "
    "AND o.kind IN ('ReplicaSet', 'Job') AND o.controller_kind <> '' "
    "WHERE u.timestamp >= :start AND u.timestamp < :end"
)


def _rounded(expression: str) -> str:
    return f"round(CAST({expression} AS NUMERIC), 2)"


METRIC_EXPRESSIONS = {
    "request_cpu_cores": _rounded(f"sum(request_cpu_cores * hours) / {WINDOW}"),
    "used_cpu_cores": _rounded(f"sum(cpu_cores_avg * hours) / {WINDOW}"),
    "request_memory_bytes": _rounded(f"sum(request_memory_bytes * hours) / {WINDOW}"),
    "used_memory_bytes": _rounded(f"sum(memory_bytes_avg * hours) / {WINDOW}"),
    "hours": _rounded("sum(hours)"),
    "cpu_cost": _rounded(f"{CPU_CORE_HOURS} * {CPU_PRICE}"),
    "memory_cost": _rounded(f"{MEMORY_GIB_HOURS} * {MEMORY_PRICE}"),
    "total_cost": _rounded(f"{CPU_CORE_HOURS} * {CPU_PRICE} + {MEMORY_GIB_HOURS} * {MEMORY_PRICE}"),
}

DIALECT_DIMENSIONS = {
    "postgresql": {
        "timestamp": "to_char(bucket_start AT TIME ZONE 'UTC', 'YYYY-MM-DD\"T\"HH24:MI:SS\"Z\"')",
        "date": "to_char(bucket_start AT TIME ZONE 'UTC', 'YYYY-MM-DD')",
    },
    "sqlite": {
        "timestamp": "strftime('%Y-%m-%dT%H:%M:%SZ', bucket_start)",
        "date": "date(bucket_start)",
    },
}


@dataclass(frozen=True)
class Pricing:
    """Unit prices used by the cost columns."""

    cpu_core_hour_price: float = 0.031611
    memory_gb_hour_price: float = 0.004237

    @classmethod
    async def from_settings(cls, db: AsyncSession) -> "Pricing":
        return cls(
            cpu_core_hour_price=await SettingsService.get_float(
                db, "cpu_core_hour_price", cls.cpu_core_hour_price
            ),
            memory_gb_hour_price=await SettingsService.get_float(
                db, "memory_gb_hour_price", cls.memory_gb_hour_price
            ),
        )


@dataclass
class WorkloadAggRequest:
    cols: list[str]
    start: datetime
    end: datetime
    order_by: str = ""


@dataclass
class WorkloadAggResult:
    columns: list[str]
    rows: list[list[str]]
    sql: str
    args: dict[str, Any] = field(default_factory=dict)


def _utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def _label_key(column: str) -> str:
    """Return the label key of a ``label_<key>`` column, rejecting unsafe keys."""
    key = column[len(LABEL_PREFIX):]
    if not LABEL_KEY_PATTERN.fullmatch(key):
        raise QueryValidationError(f"invalid label: {key}")
    return key


def _label_expression(dialect: str, key: str) -> str:
    if dialect == "postgresql":
        return f"labels ->> '{key}'"
    return f"json_extract(labels, '$.\"{key}\"')"


def _split_order_by(order_by: str) -> tuple[str, str]:
    """Split ``"<column> [asc|desc]"`` into the column and its SQL direction."""
    column = order_by.strip()
    direction = "ASC"
    lowered = column.lower()
    for suffix in (" desc", " asc"):
        if lowered.endswith(suffix):
            direction = suffix.strip().upper()
            column = column[: -len(suffix)].strip()
            break
    return column, direction


def validate_request(request: WorkloadAggRequest) -> tuple[list[str], list[str], str, str]:
    """Check a request without building any SQL.

    Returns:
        Tuple of (fixed columns in output order, label columns in request
        order, order-by column or "", order direction)

    Raises:
        QueryValidationError: On an unknown column, unsafe label, order-by
            column that is not selected, or an inverted time window
    """
    requested = list(dict.fromkeys(col.strip() for col in request.cols if col and col.strip()))
    if not requested:
        raise QueryValidationError("no columns selected")

    labels = []
    for col in requested:
        if col.startswith(LABEL_PREFIX):
            _label_key(col)
            labels.append(col)
        elif col not in COLUMNS:
            raise QueryValidationError(f"invalid column: {col}")
    fixed = [col for col in COLUMNS if col in requested]

    order_column, direction = _split_order_by(request.order_by or "")
    if order_column:
        if order_column.startswith(LABEL_PREFIX):
            _label_key(order_column)
        elif order_column not in COLUMNS:
            raise QueryValidationError(f"invalid order by: {request.order_by}")
        if order_column not in requested:
            raise QueryValidationError(f"order by column is not selected: {order_column}")

    if _utc(request.start) > _utc(request.end):
        raise QueryValidationError("start time is after end time")

    return fixed, labels, order_column, direction


def build_workload_query(
    request: WorkloadAggRequest, dialect: str, pricing: Pricing = Pricing()
) -> tuple[str, dict[str, Any]]:
    """Build the aggregation statement for ``request``.

    Averaged metrics are weighted by each pod's exposure in its hour and
    divided by the window length, so they read as "average over the window".
    ``hours`` and the cost columns are totals over the window.

    Args:
        request: Columns, order and time window
        dialect: ``postgresql`` or ``sqlite``
        pricing: Unit prices for the cost columns

    Returns:
        Tuple of (SQL text, bound parameters); identical inputs give
        identical output

    Raises:
        QueryValidationError: If the request is invalid
    """
    if dialect not in DIALECT_DIMENSIONS:
        raise QueryValidationError(f"unsupported database dialect: {dialect}")

    fixed, labels, order_column, direction = validate_request(request)
    start = _utc(request.start)
    end = _utc(request.end)

    dimensions = DIALECT_DIMENSIONS[dialect]
    select_list = []
    group_by = []
    for col in fixed:
        if col in DIMENSIONS:
            expression = dimensions.get(col, col)
            group_by.append(expression)
        else:
            expression = METRIC_EXPRESSIONS[col]
        select_list.append(f'{expression} AS "{col}"')

    for col in labels:
        expression = _label_expression(dialect, _label_key(col))
        select_list.append(f"coalesce({expression}, '') AS \"{col}\"")
        group_by.append(expression)

    sql = f"SELECT {', '.join(select_list)} FROM ({USAGE_SOURCE}) AS usage_hourly"
    if group_by:
        sql += f" GROUP BY {', '.join(group_by)}"
    if order_column:
        sql += f' ORDER BY "{order_column}" {direction}'

    params: dict[str, Any] = {"start": start, "end": end}
    if AVERAGED & set(fixed):
        params["window_hours"] = (end - start).total_seconds() / 3600
    if {"cpu_cost", "total_cost"} & set(fixed):
        params["cpu_core_hour_price"] = pricing.cpu_core_hour_price
    if {"memory_cost", "total_cost"} & set(fixed):
        params["memory_gb_hour_price"] = pricing.memory_gb_hour_price
    return sql, params


def format_cell(value: Any) -> str:
    """Render one result value for display."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float, Decimal)):
        formatted = f"{float(value):.2f}"
        return formatted.rstrip("0").rstrip(".")
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


async def workload_agg(
    db: AsyncSession, request: WorkloadAggRequest, pricing: Pricing | None = None
) -> WorkloadAggResult:
    """Run the aggregation for ``request`` and format every cell as a string.

    Raises:
        QueryValidationError: If the request is invalid (no query is executed)
        SQLAlchemyError: If the query fails
    """
    if pricing is None:
        pricing = await Pricing.from_settings(db)

    dialect = db.get_bind().dialect.name
    sql, params = build_workload_query(request, dialect, pricing)
    logger.info(f"Workload aggregation SQL: {sql} args={params}")

    statement = text(sql).bindparams(
        *(
            bindparam(name, type_=DateTime(timezone=True) if name in ("start", "end") else Float())
            for name in params
        )
    )
    result = await db.execute(statement, params)
    columns = list(result.keys())
    rows = [[format_cell(value) for value in row] for row in result.all()]
    return WorkloadAggResult(columns=columns, rows=rows, sql=sql, args=params)
