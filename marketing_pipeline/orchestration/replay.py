from __future__ import annotations

from typing import Iterable

from ..schemas.decisions import DecisionEvent, DecisionLogEntry, PipelineState, ReplayResult
from ..schemas.tasks import Objective
from .transitions import StageOutcome, next_state


def outcome_from_entry(entry: DecisionLogEntry) -> StageOutcome:
    return StageOutcome(
        stage=entry.stage,
        objective=Objective(entry.objective),
        confidence=entry.confidence,
        threshold=entry.threshold,
        verdict=entry.verdict,
        publish_lock=bool(entry.publish_lock),
        round=entry.round,
        max_rounds=entry.max_rounds,
        cancelled=entry.event is DecisionEvent.CANCELLED,
        deadline_passed=entry.event is DecisionEvent.DEADLINE_EXCEEDED,
    )


def replay(entries: Iterable[DecisionLogEntry]) -> ReplayResult:
    """Re-run the transition rules over a task's logged inputs and compare with the log.

    A single review outcome may follow an ESCALATED terminal entry; it is reported, not replayed.
    """
    ordered = sorted(entries, key=lambda entry: entry.sequence)
    if not ordered:
        return ReplayResult(task_id="", terminal_state=None, consistent=False, mismatches=["log is empty"])

    task_id = ordered[0].task_id
    mismatches: list[str] = []
    clamped: list[str] = []
    current: PipelineState | None = None
    transitions = 0
    rounds = 0
    previous_sequence: int | None = None
    review_outcome: DecisionEvent | None = None

    for entry in ordered:
        if entry.task_id != task_id:
            mismatches.append(f"entry {entry.sequence} belongs to task {entry.task_id}")
            continue
        if previous_sequence is not None and entry.sequence == previous_sequence:
            mismatches.append(f"duplicate sequence {entry.sequence}")
        previous_sequence = entry.sequence
        rounds = max(rounds, entry.round)

        if entry.event.is_review:
            if current is not PipelineState.ESCALATED:
                mismatches.append(f"entry {entry.sequence}: review outcome logged outside an escalation")
            elif review_outcome is not None:
                mismatches.append(f"entry {entry.sequence}: escalation was already reviewed")
            else:
                review_outcome = entry.event
            continue
        if current is not None and current.is_terminal:
            mismatches.append(f"entry {entry.sequence} follows terminal state {current.value}")
            continue
        if current is not None and entry.stage is not current:
            mismatches.append(f"entry {entry.sequence} logged at {entry.stage.value}, expected {current.value}")

        if not entry.event.is_transition:
            channel = entry.output.get("channel")
            if channel and channel not in clamped:
                clamped.append(str(channel))
            current = entry.stage
            continue

        try:
            expected = next_state(outcome_from_entry(entry))
        except ValueError as exc:
            mismatches.append(f"entry {entry.sequence}: {exc}")
            current = entry.next_state
            continue
        if expected.next_state is not entry.next_state or expected.event is not entry.event:
            mismatches.append(
                f"entry {entry.sequence}: replay gives {expected.next_state.value}/{expected.event.value}, "
                f"log has {entry.next_state.value}/{entry.event.value}"
            )
        current = expected.next_state
        transitions += 1

    terminal = current if current is not None and current.is_terminal else None
    if terminal is None:
        mismatches.append("log does not reach a terminal state")
    return ReplayResult(
        task_id=task_id,
        terminal_state=terminal,
        consistent=not mismatches,
        transitions=transitions,
        rounds=rounds,
        clamped_channels=clamped,
        review_outcome=review_outcome,
        mismatches=mismatches,
    )
