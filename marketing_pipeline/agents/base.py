from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Protocol, Sequence

from ..schemas.agents import (
    AgentResult,
    AuditResult,
    BudgetAllocation,
    CreativeResult,
    PlatformConstraints,
    ResearchResult,
    RewriteHint,
)
from ..schemas.forecast import Forecast
from ..schemas.tasks import ChannelSnapshot
from ..schemas.tenant import TenantContext


@dataclass(slots=True)
class ChannelHistory:
    """Aggregated daily series for one channel, oldest first."""

    roas: Sequence[float] = field(default_factory=tuple)
    spend: Sequence[float] = field(default_factory=tuple)


class ResearchAgent(Protocol):
    async def analyze(
        self,
        tenant: TenantContext,
        series: Mapping[str, Sequence[float]],
        forecasts: Mapping[str, Forecast],
        *,
        snapshot: Mapping[str, ChannelSnapshot] | None = None,
    ) -> AgentResult[ResearchResult]:
        ...


class StrategyAgent(Protocol):
    async def propose(
        self,
        tenant: TenantContext,
        research: ResearchResult,
        snapshot: Mapping[str, ChannelSnapshot],
        *,
        history: Mapping[str, ChannelHistory] | None = None,
        max_variance_pct: float | None = None,
    ) -> AgentResult[BudgetAllocation]:
        ...


class CreativeAgent(Protocol):
    async def generate(
        self,
        tenant: TenantContext,
        allocation: BudgetAllocation,
        platform_constraints: Mapping[str, PlatformConstraints],
        *,
        research: ResearchResult | None = None,
        hints: Sequence[RewriteHint] = (),
        platforms: Sequence[str] | None = None,
    ) -> AgentResult[CreativeResult]:
        ...


class AuditorAgent(Protocol):
    async def audit(self, tenant: TenantContext, creative: CreativeResult) -> AgentResult[AuditResult]:
        ...


def bounded_confidence(value: float) -> float:
    return round(max(0.0, min(100.0, value)), 2)
