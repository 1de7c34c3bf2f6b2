from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from marketing_pipeline.core.errors import PersistenceFailure, ReviewClosed
from marketing_pipeline.orchestration.circuit_breaker import BudgetLedger
from marketing_pipeline.orchestration.pipeline import Orchestrator
from marketing_pipeline.orchestration.replay import replay
from marketing_pipeline.orchestration.review import ReviewManager, ReviewStatus
from marketing_pipeline.schemas.agents import AuditVerdict
from marketing_pipeline.schemas.decisions import DecisionEvent, DecisionLogEntry, PipelineState
from marketing_pipeline.schemas.tasks import Objective, OrchestratorTask, TaskConstraints
from marketing_pipeline.services.bootstrap import build_orchestrator
from marketing_pipeline.services.decision_log import DecisionLogger, DecisionLogStore, InMemoryDecisionLogStore
from marketing_pipeline.services.timeseries import TimeSeriesAggregator, channel_metric
from tests.helpers.stubs import (
    FailingChatClient,
    FailingDecisionLogStore,
    StubAuditor,
    StubCreative,
    StubResearcher,
    StubStrategist,
    make_creative,
    make_settings,
    make_tenant,
    snapshot,
)


def _task(
    objective: Objective = Objective.OPTIMIZE_BUDGET,
    *,
    task_id: str = "task-1",
    tenant=None,
    **kwargs: Any,
) -> OrchestratorTask:
    kwargs.setdefault("snapshot", snapshot(google=(10_000.0, 3.0), meta=(5_000.0, 2.0)))
    return OrchestratorTask(task_id=task_id, tenant=tenant or make_tenant(), objective=objective, **kwargs)


def _pipeline(
    *,
    researcher: StubResearcher | None = None,
    strategist: StubStrategist | None = None,
    creative: StubCreative | None = None,
    auditor: StubAuditor | None = None,
    store: DecisionLogStore | None = None,
    ledger: BudgetLedger | None = None,
    review_manager: ReviewManager | None = None,
) -> Orchestrator:
    return Orchestrator(
        researcher=researcher or StubResearcher(),
        strategist=strategist or StubStrategist(),
        creative=creative or StubCreative(),
        auditor=auditor or StubAuditor(),
        decision_logger=DecisionLogger(store or InMemoryDecisionLogStore()),
        ledger=ledger,
        review_manager=review_manager or ReviewManager(),
        settings=make_settings(),
    )


async def _log(orchestrator: Orchestrator, task_id: str = "task-1") -> list[DecisionLogEntry]:
    return await orchestrator.decision_logger.read_all(task_id)


@pytest.mark.asyncio
async def test_oversized_delta_is_clamped_and_logged_without_touching_confidence() -> None:
    orchestrator = _pipeline(strategist=StubStrategist({"google": 4_500.0}, confidence=80.0))

    result = await orchestrator.run(_task())

    assert result.state is PipelineState.APPROVED
    assert result.applied_deltas["google"] == pytest.approx(3_500.0)
    assert result.allocation.get("google").clamped is True
    assert result.audit.publish_lock is False

    entries = await _log(orchestrator)
    clamps = [entry for entry in entries if entry.event is DecisionEvent.BUDGET_CLAMPED]
    assert len(clamps) == 1
    assert clamps[0].output["channel"] == "google"
    assert clamps[0].output["applied"] == pytest.approx(3_500.0)
    strategy = next(entry for entry in entries if entry.stage is PipelineState.STRATEGY and entry.event.is_transition)
    assert strategy.confidence == 80.0
    assert strategy.next_state is PipelineState.CREATIVE
    assert result.log_entries == len(entries) == 5
    assert orchestrator.ledger.committed(result.tenant_key, "google") == pytest.approx(3_500.0)


@pytest.mark.asyncio
async def test_low_research_confidence_escalates_before_strategy() -> None:
    strategist = StubStrategist()
    reviews = ReviewManager()
    orchestrator = _pipeline(researcher=StubResearcher(confidence=40.0), strategist=strategist, review_manager=reviews)

    result = await orchestrator.run(_task())

    assert result.state is PipelineState.ESCALATED
    assert strategist.calls == 0
    entries = await _log(orchestrator)
    assert [(entry.stage, entry.event) for entry in entries] == [(PipelineState.RESEARCH, DecisionEvent.GATE_FAILED)]
    ticket = await reviews.get_ticket_for_task("task-1")
    assert ticket is not None
    assert str(ticket.ticket_id) == result.review_ticket_id
    assert ticket.status is ReviewStatus.OPEN
    assert ticket.tenant_key == result.tenant_key
    assert "below threshold" in (ticket.summary or "")


@pytest.mark.asyncio
async def test_rewrite_rewrite_fail_is_rejected_with_publish_lock() -> None:
    creative = StubCreative()
    auditor = StubAuditor([AuditVerdict.NEEDS_REWRITE, AuditVerdict.NEEDS_REWRITE, AuditVerdict.FAIL])
    orchestrator = _pipeline(creative=creative, auditor=auditor)

    result = await orchestrator.run(_task(Objective.LAUNCH_CREATIVE))

    assert result.state is PipelineState.REJECTED
    assert result.rounds == 3
    assert result.audit.publish_lock is True
    assert result.applied_deltas == {}
    assert creative.calls == 3
    assert creative.hints[0] == []
    assert creative.hints[1][0].message.startswith("round 1")
    assert orchestrator.ledger.committed(result.tenant_key, "google") == 0.0
    events = [entry.event for entry in await _log(orchestrator)]
    assert events.count(DecisionEvent.NEGOTIATION_REQUESTED) == 2
    assert events[-1] is DecisionEvent.REJECTED


@pytest.mark.asyncio
async def test_negotiation_is_capped_at_three_rounds() -> None:
    auditor = StubAuditor([AuditVerdict.NEEDS_REWRITE])
    orchestrator = _pipeline(auditor=auditor)

    result = await orchestrator.run(_task())

    assert result.state is PipelineState.ESCALATED
    assert auditor.calls == 3
    assert result.rounds == 3
    entries = await _log(orchestrator)
    assert entries[-1].event is DecisionEvent.NEGOTIATION_EXHAUSTED
    assert max(entry.round for entry in entries) == 3


@pytest.mark.asyncio
async def test_low_confidence_pass_escalates() -> None:
    orchestrator = _pipeline(auditor=StubAuditor([AuditVerdict.PASS], confidence=40.0))

    result = await orchestrator.run(_task())

    assert result.state is PipelineState.ESCALATED
    assert (await _log(orchestrator))[-1].event is DecisionEvent.GATE_FAILED


@pytest.mark.asyncio
async def test_strategy_gate_failure_releases_channel_locks() -> None:
    creative = StubCreative()
    orchestrator = _pipeline(strategist=StubStrategist(confidence=30.0), creative=creative)

    result = await orchestrator.run(_task())

    assert result.state is PipelineState.ESCALATED
    assert creative.calls == 0
    assert orchestrator.ledger.held_channels(result.tenant_key) == []


@pytest.mark.asyncio
async def test_audit_only_task_starts_at_audit() -> None:
    researcher = StubResearcher()
    orchestrator = _pipeline(researcher=researcher)

    result = await orchestrator.run(
        _task(Objective.AUDIT_ONLY, snapshot={}, creative=make_creative())
    )

    assert result.state is PipelineState.APPROVED
    assert researcher.calls == 0
    assert result.applied_deltas == {}
    entries = await _log(orchestrator)
    assert [entry.stage for entry in entries] == [PipelineState.AUDIT]


@pytest.mark.asyncio
async def test_audit_only_rewrite_escalates() -> None:
    orchestrator = _pipeline(auditor=StubAuditor([AuditVerdict.NEEDS_REWRITE]))

    result = await orchestrator.run(_task(Objective.AUDIT_ONLY, snapshot={}, creative=make_creative()))

    assert result.state is PipelineState.ESCALATED
    assert (await _log(orchestrator))[-1].event is DecisionEvent.REWRITE_UNAVAILABLE


@pytest.mark.asyncio
async def test_creative_targets_depend_on_objective() -> None:
    launch = StubCreative()
    optimize = StubCreative()
    deltas = {"google": 1_000.0, "meta": -1_000.0}

    await _pipeline(strategist=StubStrategist(deltas), creative=launch).run(_task(Objective.LAUNCH_CREATIVE))
    await _pipeline(strategist=StubStrategist(deltas), creative=optimize).run(_task(Objective.OPTIMIZE_BUDGET))

    assert launch.platforms[0] == ["google", "meta"]
    assert optimize.platforms[0] == ["google"]


@pytest.mark.asyncio
async def test_cancel_before_start_writes_a_cancelled_entry() -> None:
    orchestrator = _pipeline()
    cancel = asyncio.Event()
    cancel.set()

    result = await orchestrator.run(_task(), cancel_event=cancel)

    assert result.state is PipelineState.CANCELLED
    entries = await _log(orchestrator)
    assert [(entry.stage, entry.event) for entry in entries] == [(PipelineState.RESEARCH, DecisionEvent.CANCELLED)]


@pytest.mark.asyncio
async def test_cancel_between_stages_stops_before_the_next_agent() -> None:
    strategist = StubStrategist()
    orchestrator = _pipeline(strategist=strategist)
    cancel = asyncio.Event()

    def listener(entry: DecisionLogEntry) -> None:
        if entry.next_state is PipelineState.STRATEGY:
            cancel.set()

    result = await orchestrator.run(_task(), cancel_event=cancel, listener=listener)

    assert result.state is PipelineState.CANCELLED
    assert strategist.calls == 0
    entries = await _log(orchestrator)
    assert entries[-1].stage is PipelineState.STRATEGY
    assert entries[-1].event is DecisionEvent.CANCELLED
    assert orchestrator.ledger.held_channels(result.tenant_key) == []


@pytest.mark.asyncio
async def test_passed_deadline_escalates() -> None:
    deadline = datetime.now(timezone.utc) - timedelta(minutes=1)
    orchestrator = _pipeline()

    result = await orchestrator.run(_task(constraints=TaskConstraints(deadline=deadline)))

    assert result.state is PipelineState.ESCALATED
    assert (await _log(orchestrator))[0].event is DecisionEvent.DEADLINE_EXCEEDED
    assert "deadline" in (result.reason or "")


@pytest.mark.asyncio
async def test_failed_log_write_raises_instead_of_finishing() -> None:
    orchestrator = _pipeline(store=FailingDecisionLogStore(fail_after=0))

    with pytest.raises(PersistenceFailure) as info:
        await orchestrator.run(_task())

    assert info.value.task_id == "task-1"


@pytest.mark.asyncio
async def test_failed_write_after_locking_releases_locks() -> None:
    orchestrator = _pipeline(
        strategist=StubStrategist({"google": 4_500.0}),
        store=FailingDecisionLogStore(fail_after=1),
    )

    with pytest.raises(PersistenceFailure):
        await orchestrator.run(_task())

    tenant_key = make_tenant().tenant_key
    assert orchestrator.ledger.held_channels(tenant_key) == []
    assert orchestrator.ledger.committed(tenant_key, "google") == 0.0


@pytest.mark.asyncio
async def test_later_task_on_updated_spend_gets_full_headroom() -> None:
    ledger = BudgetLedger()
    first = _pipeline(strategist=StubStrategist({"google": 3_500.0}), ledger=ledger)
    second = _pipeline(strategist=StubStrategist({"google": 4_725.0}), ledger=ledger)

    approved = await first.run(_task(task_id="task-a"))
    later = await second.run(
        _task(task_id="task-b", snapshot=snapshot(google=(13_500.0, 3.0), meta=(5_000.0, 2.0)))
    )

    assert approved.applied_deltas["google"] == pytest.approx(3_500.0)
    assert later.state is PipelineState.APPROVED
    assert later.applied_deltas["google"] == pytest.approx(4_725.0)
    assert ledger.committed(make_tenant().tenant_key, "google") == pytest.approx(4_725.0)
    assert ledger.held_channels(make_tenant().tenant_key) == []


@pytest.mark.asyncio
async def test_concurrent_tasks_share_the_combined_variance_bound() -> None:
    ledger = BudgetLedger()
    first = _pipeline(strategist=StubStrategist({"google": 3_000.0}), ledger=ledger)
    second = _pipeline(strategist=StubStrategist({"google": 3_000.0}), ledger=ledger)

    results = await asyncio.gather(first.run(_task(task_id="task-a")), second.run(_task(task_id="task-b")))

    applied = sorted(result.applied_deltas["google"] for result in results)
    assert applied == pytest.approx([500.0, 3_000.0])
    assert ledger.committed(make_tenant().tenant_key, "google") == pytest.approx(3_500.0)


@pytest.mark.asyncio
async def test_tenants_do_not_share_budget_headroom() -> None:
    ledger = BudgetLedger()
    orchestrator = _pipeline(strategist=StubStrategist({"google": 3_000.0}), ledger=ledger)

    results = await asyncio.gather(
        orchestrator.run(_task(task_id="task-a")),
        orchestrator.run(_task(task_id="task-b", tenant=make_tenant(brand_id="brand-2"))),
    )

    assert [result.applied_deltas["google"] for result in results] == pytest.approx([3_000.0, 3_000.0])


@pytest.mark.asyncio
async def test_log_replay_matches_the_live_run() -> None:
    auditor = StubAuditor([AuditVerdict.NEEDS_REWRITE, AuditVerdict.PASS])
    orchestrator = _pipeline(strategist=StubStrategist({"google": 4_500.0}), auditor=auditor)

    result = await orchestrator.run(_task())
    replayed = replay(await _log(orchestrator))

    assert replayed.consistent is True
    assert replayed.terminal_state is result.state is PipelineState.APPROVED
    assert replayed.rounds == result.rounds == 2
    assert replayed.clamped_channels == ["google"]


def _seed_history(aggregator: TimeSeriesAggregator, tenant, channels: dict[str, tuple[float, float]]) -> None:
    now = datetime.now(timezone.utc)
    for channel, (spend, roas) in channels.items():
        for day in range(1, 15):
            moment = now - timedelta(days=day)
            aggregator.ingest(tenant, channel_metric(channel, "roas"), roas, moment)
            aggregator.ingest(tenant, channel_metric(channel, "spend"), spend, moment)


@pytest.mark.asyncio
async def test_unreachable_inference_still_reaches_a_terminal_state() -> None:
    settings = make_settings()
    tenant = make_tenant()
    aggregator = TimeSeriesAggregator()
    _seed_history(aggregator, tenant, {"google": (10_000.0, 3.0), "meta": (10_000.0, 2.0)})
    client = FailingChatClient()
    orchestrator = build_orchestrator(settings, inference_client=client, aggregator=aggregator)

    result = await orchestrator.run(
        _task(
            Objective.LAUNCH_CREATIVE,
            tenant=tenant,
            snapshot=snapshot(google=(10_000.0, 3.0), meta=(10_000.0, 2.0)),
        )
    )

    assert result.state.is_terminal
    assert result.state is PipelineState.APPROVED
    assert sorted(result.degraded_stages) == ["audit", "creative", "research", "strategy"]
    assert client.calls > 0
    for item in result.allocation.channels:
        assert abs(item.delta) <= 0.35 * item.current_spend + 1e-6
    stage_entries = [entry for entry in await _log(orchestrator) if entry.event is not DecisionEvent.BUDGET_CLAMPED]
    assert all(entry.degraded for entry in stage_entries)
    assert replay(await _log(orchestrator)).consistent is True


def _reviewed_pipeline(**kwargs: Any) -> tuple[Orchestrator, ReviewManager]:
    store = InMemoryDecisionLogStore()
    ledger = BudgetLedger()
    reviews = ReviewManager(decision_logger=DecisionLogger(store), ledger=ledger)
    return _pipeline(store=store, ledger=ledger, review_manager=reviews, **kwargs), reviews


@pytest.mark.asyncio
async def test_resolved_escalation_is_logged_and_commits_its_budget() -> None:
    orchestrator, reviews = _reviewed_pipeline(
        strategist=StubStrategist({"google": 2_000.0}),
        auditor=StubAuditor([AuditVerdict.PASS], confidence=40.0),
    )
    result = await orchestrator.run(_task())
    assert result.state is PipelineState.ESCALATED
    assert orchestrator.ledger.committed(result.tenant_key, "google") == 0.0

    ticket = await reviews.get_ticket_for_task("task-1")
    assert ticket is not None
    await reviews.resolve(ticket.ticket_id, reviewer="alice", summary="spend approved manually")

    entries = await _log(orchestrator)
    assert entries[-1].event is DecisionEvent.REVIEW_RESOLVED
    assert entries[-1].sequence == entries[-2].sequence + 1
    assert entries[-1].output["reviewer"] == "alice"
    assert entries[-1].output["applied_deltas"]["google"] == pytest.approx(2_000.0)
    assert orchestrator.ledger.committed(result.tenant_key, "google") == pytest.approx(2_000.0)
    assert orchestrator.ledger.held_channels(result.tenant_key) == []
    replayed = replay(entries)
    assert replayed.consistent is True
    assert replayed.terminal_state is PipelineState.ESCALATED
    assert replayed.review_outcome is DecisionEvent.REVIEW_RESOLVED

    with pytest.raises(ReviewClosed):
        await reviews.dismiss(ticket.ticket_id, reviewer="bob")


@pytest.mark.asyncio
async def test_dismissed_escalation_is_logged_without_committing() -> None:
    orchestrator, reviews = _reviewed_pipeline(
        strategist=StubStrategist({"google": 2_000.0}),
        auditor=StubAuditor([AuditVerdict.PASS], confidence=40.0),
    )
    result = await orchestrator.run(_task())
    ticket = await reviews.get_ticket_for_task("task-1")
    assert ticket is not None

    dismissed = await reviews.dismiss(ticket.ticket_id, reviewer="bob")

    entries = await _log(orchestrator)
    assert dismissed.status is ReviewStatus.DISMISSED
    assert entries[-1].event is DecisionEvent.REVIEW_DISMISSED
    assert entries[-1].output["applied_deltas"] == {}
    assert orchestrator.ledger.committed(result.tenant_key, "google") == 0.0
    assert replay(entries).review_outcome is DecisionEvent.REVIEW_DISMISSED
