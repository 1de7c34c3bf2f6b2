from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .agents import AuditVerdict


class PipelineState(str, Enum):
    RESEARCH = "RESEARCH"
    STRATEGY = "STRATEGY"
    CREATIVE = "CREATIVE"
    AUDIT = "AUDIT"
    NEGOTIATE = "NEGOTIATE"
    APPROVED = "APPROVED"
    ESCALATED = "ESCALATED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {
        PipelineState.APPROVED,
        PipelineState.ESCALATED,
        PipelineState.REJECTED,
        PipelineState.CANCELLED,
    }
)


class DecisionEvent(str, Enum):
    ADVANCED = "advanced"
    GATE_FAILED = "gate_failed"
    BUDGET_CLAMPED = "budget_clamped"
    NEGOTIATION_REQUESTED = "negotiation_requested"
    NEGOTIATION_EXHAUSTED = "negotiation_exhausted"
    REWRITE_UNAVAILABLE = "rewrite_unavailable"
    APPROVED = "approved"
    REJECTED = "rejected"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    CANCELLED = "cancelled"
    REVIEW_RESOLVED = "review_resolved"
    REVIEW_DISMISSED = "review_dismissed"

    @property
    def is_review(self) -> bool:
        return self in (DecisionEvent.REVIEW_RESOLVED, DecisionEvent.REVIEW_DISMISSED)

    @property
    def is_transition(self) -> bool:
        return self is not DecisionEvent.BUDGET_CLAMPED and not self.is_review


class DecisionLogEntry(BaseModel):
    """One immutable record in a task's decision log."""

    model_config = ConfigDict(frozen=True)

    task_id: str
    sequence: int = Field(..., ge=0)
    tenant_key: str
    objective: str
    stage: PipelineState
    event: DecisionEvent
    next_state: PipelineState
    input_digest: str
    output: dict[str, Any] = Field(default_factory=dict)
    confidence: float | None = None
    degraded: bool = False
    threshold: float | None = None
    round: int = Field(0, ge=0)
    max_rounds: int = Field(3, ge=1)
    verdict: AuditVerdict | None = None
    publish_lock: bool | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ReplayResult(BaseModel):
    task_id: str
    terminal_state: PipelineState | None
    consistent: bool
    transitions: int = 0
    rounds: int = 0
    clamped_channels: list[str] = Field(default_factory=list)
    review_outcome: DecisionEvent | None = None
    mismatches: list[str] = Field(default_factory=list)
