from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from .tenant import TenantContext


class Granularity(str, Enum):
    HOUR = "hour"
    DAY = "day"
    WEEK = "week"

    @property
    def span(self) -> timedelta:
        if self is Granularity.HOUR:
            return timedelta(hours=1)
        if self is Granularity.DAY:
            return timedelta(days=1)
        return timedelta(weeks=1)


class Aggregation(str, Enum):
    SUM = "sum"
    AVG = "avg"
    MIN = "min"
    MAX = "max"


class MetricEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    tenant: TenantContext
    metric: str = Field(..., min_length=1)
    value: float
    timestamp: datetime


class Bucket(BaseModel):
    model_config = ConfigDict(frozen=True)

    bucket_start: datetime
    value: float


class AggregateSummary(BaseModel):
    metric: str
    granularity: Granularity
    count: int = 0
    total: float = 0.0
    average: float | None = None
    minimum: float | None = None
    maximum: float | None = None
