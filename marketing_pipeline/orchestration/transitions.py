from __future__ import annotations

from dataclasses import dataclass

from ..schemas.agents import AuditVerdict
from ..schemas.decisions import DecisionEvent, PipelineState
from ..schemas.tasks import Objective


@dataclass(frozen=True, slots=True)
class StageOutcome:
    """Everything the transition rules look at after a stage (or a checkpoint) completes."""

    stage: PipelineState
    objective: Objective
    confidence: float | None = None
    threshold: float | None = None
    verdict: AuditVerdict | None = None
    publish_lock: bool = False
    round: int = 0
    max_rounds: int = 3
    cancelled: bool = False
    deadline_passed: bool = False


@dataclass(frozen=True, slots=True)
class Transition:
    next_state: PipelineState
    event: DecisionEvent


def _gate_passed(outcome: StageOutcome) -> bool:
    if outcome.confidence is None or outcome.threshold is None:
        return False
    return outcome.confidence >= outcome.threshold


def next_state(outcome: StageOutcome) -> Transition:
    """Pure transition function shared by the live pipeline and log replay."""
    if outcome.stage.is_terminal:
        raise ValueError(f"{outcome.stage.value} is terminal and has no transitions")
    if outcome.cancelled:
        return Transition(PipelineState.CANCELLED, DecisionEvent.CANCELLED)
    if outcome.deadline_passed:
        return Transition(PipelineState.ESCALATED, DecisionEvent.DEADLINE_EXCEEDED)

    stage = outcome.stage
    if stage is PipelineState.RESEARCH:
        if _gate_passed(outcome):
            return Transition(PipelineState.STRATEGY, DecisionEvent.ADVANCED)
        return Transition(PipelineState.ESCALATED, DecisionEvent.GATE_FAILED)

    if stage is PipelineState.STRATEGY:
        if _gate_passed(outcome):
            return Transition(PipelineState.CREATIVE, DecisionEvent.ADVANCED)
        return Transition(PipelineState.ESCALATED, DecisionEvent.GATE_FAILED)

    if stage in {PipelineState.CREATIVE, PipelineState.NEGOTIATE}:
        return Transition(PipelineState.AUDIT, DecisionEvent.ADVANCED)

    if outcome.verdict is None:
        raise ValueError("an audit outcome requires a verdict")
    if outcome.verdict is AuditVerdict.FAIL or outcome.publish_lock:
        return Transition(PipelineState.REJECTED, DecisionEvent.REJECTED)
    if outcome.verdict is AuditVerdict.NEEDS_REWRITE:
        if outcome.objective is Objective.AUDIT_ONLY:
            return Transition(PipelineState.ESCALATED, DecisionEvent.REWRITE_UNAVAILABLE)
        if outcome.round >= outcome.max_rounds:
            return Transition(PipelineState.ESCALATED, DecisionEvent.NEGOTIATION_EXHAUSTED)
        return Transition(PipelineState.NEGOTIATE, DecisionEvent.NEGOTIATION_REQUESTED)
    if _gate_passed(outcome):
        return Transition(PipelineState.APPROVED, DecisionEvent.APPROVED)
    return Transition(PipelineState.ESCALATED, DecisionEvent.GATE_FAILED)
