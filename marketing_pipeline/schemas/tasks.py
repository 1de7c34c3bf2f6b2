from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .agents import AuditResult, BudgetAllocation, CreativeResult, ResearchResult
from .decisions import PipelineState
from .tenant import TenantContext

MAX_VARIANCE_PCT = 0.35


class Objective(str, Enum):
    OPTIMIZE_BUDGET = "OPTIMIZE_BUDGET"
    LAUNCH_CREATIVE = "LAUNCH_CREATIVE"
    AUDIT_ONLY = "AUDIT_ONLY"


class ChannelSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    spend: float = Field(..., ge=0.0)
    revenue: float = Field(0.0, ge=0.0)
    conversions: float = Field(0.0, ge=0.0)

    @property
    def roas(self) -> float:
        if self.spend <= 0:
            return 0.0
        return self.revenue / self.spend


class TaskConstraints(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_variance_pct: float = Field(MAX_VARIANCE_PCT, gt=0.0, le=MAX_VARIANCE_PCT)
    deadline: datetime | None = None


class OrchestratorTask(BaseModel):
    model_config = ConfigDict(frozen=True)

    task_id: str = Field(..., min_length=1)
    tenant: TenantContext
    objective: Objective
    constraints: TaskConstraints = Field(default_factory=TaskConstraints)
    snapshot: dict[str, ChannelSnapshot] = Field(default_factory=dict)
    creative: CreativeResult | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def _check_objective_inputs(self) -> "OrchestratorTask":
        if self.objective is Objective.AUDIT_ONLY and self.creative is None:
            raise ValueError("AUDIT_ONLY tasks require a creative to audit")
        if self.objective is not Objective.AUDIT_ONLY and not self.snapshot:
            raise ValueError("a live channel snapshot is required")
        return self


class TaskHandle(BaseModel):
    model_config = ConfigDict(frozen=True)

    task_id: str
    tenant_key: str
    submitted_at: datetime


class TaskPending(BaseModel):
    task_id: str
    tenant_key: str
    submitted_at: datetime
    state: PipelineState | None = None


class TaskResult(BaseModel):
    task_id: str
    tenant_key: str
    objective: Objective
    state: PipelineState
    research: ResearchResult | None = None
    allocation: BudgetAllocation | None = None
    creative: CreativeResult | None = None
    audit: AuditResult | None = None
    applied_deltas: dict[str, float] = Field(default_factory=dict)
    rounds: int = 0
    degraded_stages: list[str] = Field(default_factory=list)
    review_ticket_id: str | None = None
    log_entries: int = 0
    reason: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    completed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
