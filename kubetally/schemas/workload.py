"""Pydantic schemas for workload aggregation."""

from typing import Any

from pydantic import BaseModel, Field


class WorkloadAggResponse(BaseModel):
    """Aggregated table plus the statement that produced it."""

    columns: list[str]
    rows: list[list[str]]
    sql: str = Field(..., description="Executed SQL text")
    args: dict[str, Any] = Field(default_factory=dict, description="Bound parameters in order")

    model_config = {"from_attributes": True}
