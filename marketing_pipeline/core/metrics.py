from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

STAGE_LATENCY_SECONDS = Histogram(
    "marketing_pipeline_stage_latency_seconds",
    "Latency for each pipeline stage execution",
    labelnames=("stage",),
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, float("inf")),
)

PIPELINE_TRANSITIONS_TOTAL = Counter(
    "marketing_pipeline_transitions_total",
    "State machine transitions grouped by source stage and next state",
    labelnames=("stage", "next_state"),
)

PIPELINE_OUTCOMES_TOTAL = Counter(
    "marketing_pipeline_outcomes_total",
    "Terminal task outcomes grouped by objective",
    labelnames=("objective", "state"),
)

PIPELINE_ACTIVE_GAUGE = Gauge(
    "marketing_pipeline_tasks_active",
    "Pipeline tasks currently in flight",
)

PIPELINE_TASK_LATENCY_SECONDS = Histogram(
    "marketing_pipeline_task_latency_seconds",
    "End-to-end task runtime",
    labelnames=("objective",),
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, float("inf")),
)

BUDGET_CLAMPS_TOTAL = Counter(
    "marketing_pipeline_budget_clamps_total",
    "Channel proposals clamped by the circuit breaker",
    labelnames=("channel",),
)

NEGOTIATION_ROUNDS = Histogram(
    "marketing_pipeline_negotiation_rounds",
    "Creative/Audit rounds consumed per task",
    buckets=(0, 1, 2, 3, 4),
)

AGENT_DEGRADED_TOTAL = Counter(
    "marketing_pipeline_agent_degraded_total",
    "Agent results produced in degraded mode",
    labelnames=("agent",),
)

AUDIT_VERDICTS_TOTAL = Counter(
    "marketing_pipeline_audit_verdicts_total",
    "Auditor verdicts grouped by outcome",
    labelnames=("verdict",),
)

INFERENCE_CALLS_TOTAL = Counter(
    "marketing_pipeline_inference_calls_total",
    "Inference attempts grouped by outcome",
    labelnames=("outcome",),
)

REVIEW_TICKETS_GAUGE = Gauge(
    "marketing_pipeline_review_tickets",
    "Current review ticket counts by status",
    labelnames=("status",),
)


def observe_stage_latency(*, stage: str, latency: float) -> None:
    STAGE_LATENCY_SECONDS.labels(stage=stage).observe(latency)


def increment_transition(*, stage: str, next_state: str) -> None:
    PIPELINE_TRANSITIONS_TOTAL.labels(stage=stage, next_state=next_state).inc()


def mark_task_started() -> None:
    PIPELINE_ACTIVE_GAUGE.inc()


def mark_task_finished(*, objective: str, state: str, latency: float) -> None:
    PIPELINE_ACTIVE_GAUGE.dec()
    PIPELINE_OUTCOMES_TOTAL.labels(objective=objective, state=state).inc()
    PIPELINE_TASK_LATENCY_SECONDS.labels(objective=objective).observe(latency)


def increment_budget_clamp(*, channel: str) -> None:
    BUDGET_CLAMPS_TOTAL.labels(channel=channel).inc()


def observe_negotiation_rounds(*, rounds: int) -> None:
    NEGOTIATION_ROUNDS.observe(rounds)


def increment_degraded(*, agent: str) -> None:
    AGENT_DEGRADED_TOTAL.labels(agent=agent).inc()


def increment_audit_verdict(*, verdict: str) -> None:
    AUDIT_VERDICTS_TOTAL.labels(verdict=verdict).inc()


def record_inference_attempt(*, outcome: str) -> None:
    INFERENCE_CALLS_TOTAL.labels(outcome=outcome).inc()


def record_review_ticket_counts(counts: dict[str, int]) -> None:
    for status, count in counts.items():
        REVIEW_TICKETS_GAUGE.labels(status=status).set(count)


def render_latest() -> tuple[bytes, str]:
    """Prometheus exposition payload and its content type."""
    return generate_latest(), CONTENT_TYPE_LATEST
