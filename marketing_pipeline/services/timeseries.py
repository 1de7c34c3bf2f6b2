from __future__ import annotations

import math
from bisect import bisect_left, bisect_right
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable, Sequence

from ..core.logging import get_logger
from ..schemas.tenant import TenantContext
from ..schemas.timeseries import AggregateSummary, Aggregation, Bucket, Granularity, MetricEvent

logger = get_logger(name=__name__)

_EPOCH_MONDAY = datetime(1970, 1, 5, tzinfo=timezone.utc)


def channel_metric(channel: str, measure: str) -> str:
    """Metric name used for a per-channel measure, e.g. ``google.roas``."""
    return f"{channel}.{measure}"


def _as_utc(timestamp: datetime) -> datetime:
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc)


def bucket_start(timestamp: datetime, granularity: Granularity) -> datetime:
    moment = _as_utc(timestamp)
    if granularity is Granularity.HOUR:
        return moment.replace(minute=0, second=0, microsecond=0)
    day = moment.replace(hour=0, minute=0, second=0, microsecond=0)
    if granularity is Granularity.DAY:
        return day
    weeks = (day - _EPOCH_MONDAY) // timedelta(weeks=1)
    return _EPOCH_MONDAY + timedelta(weeks=weeks)


@dataclass(slots=True)
class _BucketStats:
    count: int = 0
    total: float = 0.0
    minimum: float = math.inf
    maximum: float = -math.inf

    def add(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.minimum = min(self.minimum, value)
        self.maximum = max(self.maximum, value)

    def value(self, aggregation: Aggregation) -> float:
        if aggregation is Aggregation.SUM:
            return self.total
        if aggregation is Aggregation.AVG:
            return self.total / self.count
        if aggregation is Aggregation.MIN:
            return self.minimum
        return self.maximum


@dataclass(slots=True)
class _BucketSeries:
    starts: list[datetime] = field(default_factory=list)
    stats: list[_BucketStats] = field(default_factory=list)

    def add(self, start: datetime, value: float) -> None:
        index = bisect_left(self.starts, start)
        if index == len(self.starts) or self.starts[index] != start:
            self.starts.insert(index, start)
            self.stats.insert(index, _BucketStats())
        self.stats[index].add(value)

    def window(self, start: datetime, end: datetime) -> range:
        return range(bisect_left(self.starts, start), bisect_right(self.starts, end))


class TimeSeriesAggregator:
    """Per-tenant metric store that pre-aggregates fixed-granularity buckets on ingest.

    Each configured granularity keeps sorted bucket starts alongside running count, sum,
    min and max, so range queries are two binary searches plus a slice. Raw points are
    retained per tenant and metric for re-aggregation.
    """

    def __init__(self, granularities: Iterable[Granularity | str] | None = None) -> None:
        selected = granularities if granularities is not None else list(Granularity)
        self._granularities = tuple(dict.fromkeys(Granularity(item) for item in selected))
        if not self._granularities:
            raise ValueError("at least one granularity is required")
        self._series: dict[tuple[str, str, Granularity], _BucketSeries] = {}
        self._raw: dict[tuple[str, str], list[tuple[datetime, float]]] = {}

    @property
    def granularities(self) -> tuple[Granularity, ...]:
        return self._granularities

    def ingest(self, tenant: TenantContext, metric: str, value: float, timestamp: datetime) -> None:
        value = float(value)
        if not math.isfinite(value):
            raise ValueError(f"metric value must be finite, got {value!r}")
        moment = _as_utc(timestamp)
        key = tenant.tenant_key
        self._raw.setdefault((key, metric), []).append((moment, value))
        for granularity in self._granularities:
            series = self._series.setdefault((key, metric, granularity), _BucketSeries())
            series.add(bucket_start(moment, granularity), value)

    def ingest_event(self, event: MetricEvent) -> None:
        self.ingest(event.tenant, event.metric, event.value, event.timestamp)

    def bulk_ingest(self, events: Iterable[MetricEvent]) -> int:
        count = 0
        for event in events:
            self.ingest_event(event)
            count += 1
        logger.debug("timeseries_bulk_ingested", events=count)
        return count

    def query(
        self,
        tenant: TenantContext,
        metric: str,
        granularity: Granularity | str,
        start: datetime,
        end: datetime,
        aggregation: Aggregation | str = Aggregation.SUM,
    ) -> list[Bucket]:
        """Return buckets whose start lies in ``[bucket(start), end]``; empty when nothing matches."""
        granularity = Granularity(granularity)
        aggregation = Aggregation(aggregation)
        series = self._series.get((tenant.tenant_key, metric, granularity))
        if series is None:
            return []
        lower = bucket_start(start, granularity)
        upper = _as_utc(end)
        if upper < lower:
            return []
        return [
            Bucket(bucket_start=series.starts[index], value=series.stats[index].value(aggregation))
            for index in series.window(lower, upper)
        ]

    def values(
        self,
        tenant: TenantContext,
        metric: str,
        granularity: Granularity | str,
        start: datetime,
        end: datetime,
        aggregation: Aggregation | str = Aggregation.SUM,
    ) -> list[float]:
        return [bucket.value for bucket in self.query(tenant, metric, granularity, start, end, aggregation)]

    def summary(
        self,
        tenant: TenantContext,
        metric: str,
        granularity: Granularity | str,
        start: datetime,
        end: datetime,
    ) -> AggregateSummary:
        granularity = Granularity(granularity)
        result = AggregateSummary(metric=metric, granularity=granularity)
        series = self._series.get((tenant.tenant_key, metric, granularity))
        if series is None:
            return result
        lower = bucket_start(start, granularity)
        upper = _as_utc(end)
        selected: Sequence[_BucketStats] = [series.stats[index] for index in series.window(lower, upper)]
        if not selected:
            return result
        count = sum(item.count for item in selected)
        total = sum(item.total for item in selected)
        return AggregateSummary(
            metric=metric,
            granularity=granularity,
            count=count,
            total=total,
            average=total / count,
            minimum=min(item.minimum for item in selected),
            maximum=max(item.maximum for item in selected),
        )

    def metrics(self, tenant: TenantContext) -> list[str]:
        key = tenant.tenant_key
        return sorted({metric for tenant_key, metric in self._raw if tenant_key == key})

    def raw_points(self, tenant: TenantContext, metric: str) -> list[tuple[datetime, float]]:
        return sorted(self._raw.get((tenant.tenant_key, metric), []))
