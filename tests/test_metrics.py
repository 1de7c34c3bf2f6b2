from __future__ import annotations

from marketing_pipeline.core.metrics import (
    increment_audit_verdict,
    increment_budget_clamp,
    increment_transition,
    observe_negotiation_rounds,
    record_review_ticket_counts,
    render_latest,
)


def test_exposition_includes_pipeline_series() -> None:
    increment_transition(stage="RESEARCH", next_state="STRATEGY")
    increment_budget_clamp(channel="google")
    increment_audit_verdict(verdict="PASS")
    observe_negotiation_rounds(rounds=2)
    record_review_ticket_counts({"open": 3, "in_review": 0})

    payload, content_type = render_latest()
    body = payload.decode("utf-8")

    assert content_type.startswith("text/plain")
    assert 'marketing_pipeline_transitions_total{next_state="STRATEGY",stage="RESEARCH"}' in body
    assert 'marketing_pipeline_budget_clamps_total{channel="google"}' in body
    assert 'marketing_pipeline_audit_verdicts_total{verdict="PASS"}' in body
    assert "marketing_pipeline_negotiation_rounds_bucket" in body
    assert 'marketing_pipeline_review_tickets{status="open"} 3.0' in body
