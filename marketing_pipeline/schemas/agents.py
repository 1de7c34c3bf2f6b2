from __future__ import annotations

from enum import Enum
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from .forecast import BudgetImpact


class AgentKind(str, Enum):
    RESEARCH = "research"
    STRATEGY = "strategy"
    CREATIVE = "creative"
    AUDIT = "audit"


# ──────────────────────────────────────────────────────────────────────────────
# Research
# ──────────────────────────────────────────────────────────────────────────────


class FindingKind(str, Enum):
    OPPORTUNITY = "opportunity"
    RISK = "risk"
    ANOMALY = "anomaly"


class StatisticName(str, Enum):
    Z_SCORE = "z_score"
    IQR_BOUNDS = "iqr_bounds"
    TREND_DEVIATION = "trend_deviation"


class FindingStatistic(BaseModel):
    name: StatisticName
    value: float
    lower: float | None = None
    upper: float | None = None


class Finding(BaseModel):
    kind: FindingKind
    channel: str
    metric: str = "roas"
    magnitude: float
    score: float = Field(..., ge=0.0, le=1.0)
    statistic: FindingStatistic | None = None
    observed: float | None = None
    description: str = ""


class ResearchResult(BaseModel):
    findings: list[Finding] = Field(default_factory=list)
    summary: str = ""
    heuristic_only: bool = False
    dropped_findings: int = Field(0, ge=0)

    def for_channel(self, channel: str) -> list[Finding]:
        return [finding for finding in self.findings if finding.channel == channel]


# ──────────────────────────────────────────────────────────────────────────────
# Strategy
# ──────────────────────────────────────────────────────────────────────────────


class ScenarioSet(BaseModel):
    pessimistic: float
    expected: float
    optimistic: float


class ChannelAllocation(BaseModel):
    channel: str
    current_spend: float = Field(..., ge=0.0)
    proposed_spend: float = Field(..., ge=0.0)
    delta: float
    clamped: bool = False
    scenarios: ScenarioSet
    effective_roas: float = 0.0
    synergy_lift: float = 0.0
    projection: BudgetImpact | None = None


class BudgetAllocation(BaseModel):
    channels: list[ChannelAllocation] = Field(default_factory=list)
    scenarios: ScenarioSet
    trials: int = Field(0, ge=0)
    clamped_channels: list[str] = Field(default_factory=list)
    rationale: str = ""
    unallocated: float = 0.0

    def get(self, channel: str) -> ChannelAllocation | None:
        for allocation in self.channels:
            if allocation.channel == channel:
                return allocation
        return None

    def deltas(self) -> dict[str, float]:
        return {allocation.channel: allocation.delta for allocation in self.channels}


# ──────────────────────────────────────────────────────────────────────────────
# Creative
# ──────────────────────────────────────────────────────────────────────────────


class PlatformConstraints(BaseModel):
    model_config = ConfigDict(frozen=True)

    headline_max: int = Field(..., ge=1)
    body_max: int = Field(..., ge=1)
    max_assets: int = Field(1, ge=0)


DEFAULT_PLATFORM_CONSTRAINTS: dict[str, PlatformConstraints] = {
    "google": PlatformConstraints(headline_max=30, body_max=90, max_assets=1),
    "meta": PlatformConstraints(headline_max=40, body_max=125, max_assets=10),
    "tiktok": PlatformConstraints(headline_max=60, body_max=100, max_assets=1),
    "linkedin": PlatformConstraints(headline_max=70, body_max=300, max_assets=9),
    "twitter": PlatformConstraints(headline_max=50, body_max=280, max_assets=4),
    "pinterest": PlatformConstraints(headline_max=100, body_max=500, max_assets=1),
}

FALLBACK_PLATFORM_CONSTRAINTS = PlatformConstraints(headline_max=30, body_max=90, max_assets=1)


class CreativeSource(str, Enum):
    MODEL = "model"
    TEMPLATE = "template"


class CreativeVariant(BaseModel):
    platform: str
    headline: str
    body: str
    call_to_action: str = ""
    assets: list[str] = Field(default_factory=list)
    constraints: PlatformConstraints
    score: float = Field(0.0, ge=0.0, le=1.0)

    def limit_violations(self) -> list[str]:
        """Return human readable breaches of the platform's hard limits."""
        problems: list[str] = []
        if len(self.headline) > self.constraints.headline_max:
            problems.append(f"headline has {len(self.headline)} chars (max {self.constraints.headline_max})")
        if len(self.body) > self.constraints.body_max:
            problems.append(f"body has {len(self.body)} chars (max {self.constraints.body_max})")
        if len(self.assets) > self.constraints.max_assets:
            problems.append(f"{len(self.assets)} assets (max {self.constraints.max_assets})")
        return problems


class CreativeResult(BaseModel):
    variants: list[CreativeVariant] = Field(default_factory=list)
    dropped: int = Field(0, ge=0)
    source: CreativeSource = CreativeSource.MODEL


# ──────────────────────────────────────────────────────────────────────────────
# Audit
# ──────────────────────────────────────────────────────────────────────────────


class AuditVerdict(str, Enum):
    PASS = "PASS"
    FAIL = "FAIL"
    NEEDS_REWRITE = "NEEDS_REWRITE"


class ViolationSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Violation(BaseModel):
    rule_id: str
    severity: ViolationSeverity
    message: str
    text: str | None = None
    variant_index: int | None = None


class RewriteHint(BaseModel):
    rule_id: str
    message: str
    term: str | None = None
    variant_index: int | None = None


class AuditResult(BaseModel):
    verdict: AuditVerdict
    publish_lock: bool = False
    violations: list[Violation] = Field(default_factory=list)
    rewrite_hints: list[RewriteHint] = Field(default_factory=list)
    risk_score: float = Field(0.0, ge=0.0, le=100.0)
    reasoning: list[str] = Field(default_factory=list)


# ──────────────────────────────────────────────────────────────────────────────
# Result wrapper
# ──────────────────────────────────────────────────────────────────────────────

PayloadT = TypeVar("PayloadT", bound=BaseModel)


class AgentResult(BaseModel, Generic[PayloadT]):
    """Tagged agent output; degraded conditions are reported here rather than raised."""

    model_config = ConfigDict(frozen=True)

    kind: AgentKind
    payload: PayloadT
    confidence: float = Field(..., ge=0.0, le=100.0)
    degraded: bool = False
    notes: list[str] = Field(default_factory=list)


ResearchOutcome = AgentResult[ResearchResult]
StrategyOutcome = AgentResult[BudgetAllocation]
CreativeOutcome = AgentResult[CreativeResult]
AuditOutcome = AgentResult[AuditResult]
