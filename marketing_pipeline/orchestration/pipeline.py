from __future__ import annotations

import asyncio
import time
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping

from ..agents.base import AuditorAgent, ChannelHistory, CreativeAgent, ResearchAgent, StrategyAgent
from ..core.config import Settings, get_settings
from ..core.logging import get_logger, task_log_context
from ..core.metrics import (
    increment_budget_clamp,
    increment_degraded,
    increment_transition,
    mark_task_finished,
    mark_task_started,
    observe_negotiation_rounds,
    observe_stage_latency,
)
from ..schemas.agents import (
    DEFAULT_PLATFORM_CONSTRAINTS,
    AgentResult,
    AuditResult,
    BudgetAllocation,
    CreativeResult,
    PlatformConstraints,
    ResearchResult,
    ScenarioSet,
)
from ..schemas.decisions import DecisionEvent, DecisionLogEntry, PipelineState
from ..schemas.tasks import Objective, OrchestratorTask, TaskResult
from ..schemas.timeseries import Aggregation, Granularity
from ..services.decision_log import DecisionLogger
from ..services.forecasting import ROIPredictionEngine
from ..services.timeseries import TimeSeriesAggregator, channel_metric
from ..utils.json_encoding import input_digest
from .circuit_breaker import BudgetLedger, LedgerDecision
from .review import ReviewManager
from .transitions import StageOutcome, next_state

logger = get_logger(name=__name__)

TransitionListener = Callable[[DecisionLogEntry], None]
Clock = Callable[[], datetime]


def _as_utc(moment: datetime) -> datetime:
    return moment.replace(tzinfo=timezone.utc) if moment.tzinfo is None else moment


@dataclass
class _TaskRun:
    """Mutable bookkeeping for a single task; never shared between tasks."""

    task: OrchestratorTask
    cancel_event: asyncio.Event
    locks: AsyncExitStack
    listener: TransitionListener | None = None
    state: PipelineState = PipelineState.RESEARCH
    sequence: int = 0
    round: int = 0
    history: dict[str, ChannelHistory] = field(default_factory=dict)
    research: ResearchResult | None = None
    allocation: BudgetAllocation | None = None
    creative: CreativeResult | None = None
    audit: AuditResult | None = None
    applied_deltas: dict[str, float] = field(default_factory=dict)
    degraded_stages: list[str] = field(default_factory=list)
    reason: str | None = None
    review_ticket_id: str | None = None

    @property
    def tenant_key(self) -> str:
        return self.task.tenant.tenant_key

    def next_sequence(self) -> int:
        value = self.sequence
        self.sequence += 1
        return value


class Orchestrator:
    """Fixed Research -> Strategy -> Creative <-> Audit state machine.

    Every transition, budget clamp and escalation is written to the decision log before
    the pipeline moves on; a failed write aborts the task with ``PersistenceFailure``.
    Channel locks are held from STRATEGY until the task is terminal so concurrent tasks
    for the same tenant see each other's committed budget deltas.
    """

    def __init__(
        self,
        *,
        researcher: ResearchAgent,
        strategist: StrategyAgent,
        creative: CreativeAgent,
        auditor: AuditorAgent,
        decision_logger: DecisionLogger,
        aggregator: TimeSeriesAggregator | None = None,
        forecaster: ROIPredictionEngine | None = None,
        ledger: BudgetLedger | None = None,
        review_manager: ReviewManager | None = None,
        settings: Settings | None = None,
        platform_constraints: Mapping[str, PlatformConstraints] | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._researcher = researcher
        self._strategist = strategist
        self._creative = creative
        self._auditor = auditor
        self._decision_logger = decision_logger
        self._aggregator = aggregator or TimeSeriesAggregator(self._settings.aggregator.granularities)
        self._forecaster = forecaster or ROIPredictionEngine(self._settings.forecast)
        self._ledger = ledger or BudgetLedger()
        self._review_manager = review_manager
        self._platform_constraints = dict(platform_constraints or DEFAULT_PLATFORM_CONSTRAINTS)
        self._clock: Clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def ledger(self) -> BudgetLedger:
        return self._ledger

    @property
    def decision_logger(self) -> DecisionLogger:
        return self._decision_logger

    async def run(
        self,
        task: OrchestratorTask,
        *,
        cancel_event: asyncio.Event | None = None,
        listener: TransitionListener | None = None,
    ) -> TaskResult:
        started = time.perf_counter()
        final_state = "failed"
        mark_task_started()
        with task_log_context(task_id=task.task_id, tenant_key=task.tenant.tenant_key):
            logger.info("pipeline_started", objective=task.objective.value, channels=sorted(task.snapshot))
            try:
                async with AsyncExitStack() as locks:
                    run = _TaskRun(
                        task=task,
                        cancel_event=cancel_event or asyncio.Event(),
                        locks=locks,
                        listener=listener,
                    )
                    await self._drive(run)
                    await self._finalize(run)
                final_state = run.state.value
            finally:
                mark_task_finished(
                    objective=task.objective.value,
                    state=final_state,
                    latency=time.perf_counter() - started,
                )
            logger.info("pipeline_finished", state=run.state.value, rounds=run.round, reason=run.reason)
        return self._result(run)

    async def _drive(self, run: _TaskRun) -> None:
        if run.task.objective is Objective.AUDIT_ONLY:
            run.state = PipelineState.AUDIT
            run.creative = run.task.creative
            run.round = 1

        handlers = {
            PipelineState.RESEARCH: self._research,
            PipelineState.STRATEGY: self._strategy,
            PipelineState.CREATIVE: self._generate,
            PipelineState.NEGOTIATE: self._generate,
            PipelineState.AUDIT: self._audit,
        }
        while not run.state.is_terminal:
            if await self._interrupted(run):
                break
            await handlers[run.state](run)

    async def _interrupted(self, run: _TaskRun) -> bool:
        if run.cancel_event.is_set():
            await self._transition(
                run,
                self._outcome(run, cancelled=True),
                inputs={"checkpoint": run.state.value},
            )
            return True
        deadline = run.task.constraints.deadline
        if deadline is not None and self._clock() >= _as_utc(deadline):
            await self._transition(
                run,
                self._outcome(run, deadline_passed=True),
                inputs={"checkpoint": run.state.value, "deadline": deadline},
            )
            return True
        return False

    # Stages -------------------------------------------------------------------------

    async def _research(self, run: _TaskRun) -> None:
        task = run.task
        started = time.perf_counter()
        series = self._load_history(run)
        forecasts = {channel: self._forecaster.predict(history.roas, horizon=1) for channel, history in series.items()}
        result = await self._researcher.analyze(
            task.tenant,
            {channel: list(history.roas) for channel, history in series.items()},
            forecasts,
            snapshot=task.snapshot,
        )
        observe_stage_latency(stage="research", latency=time.perf_counter() - started)
        self._note_degraded(run, result)
        run.research = result.payload
        await self._transition(
            run,
            self._outcome(run, confidence=result.confidence, threshold=self._settings.gating.research_threshold),
            inputs={
                "snapshot": task.snapshot,
                "series": {channel: list(history.roas) for channel, history in series.items()},
            },
            result=result,
        )

    async def _strategy(self, run: _TaskRun) -> None:
        task = run.task
        await run.locks.enter_async_context(self._ledger.hold(run.tenant_key, task.snapshot))
        if await self._interrupted(run):
            return

        started = time.perf_counter()
        research = run.research or ResearchResult()
        result = await self._strategist.propose(
            task.tenant,
            research,
            task.snapshot,
            history=run.history,
            max_variance_pct=task.constraints.max_variance_pct,
        )
        observe_stage_latency(stage="strategy", latency=time.perf_counter() - started)
        self._note_degraded(run, result)

        cap_pct = min(task.constraints.max_variance_pct, self._settings.strategy.variance_cap)
        allocation = result.payload
        adjusted = []
        clamped_channels = list(allocation.clamped_channels)
        for item in allocation.channels:
            decision = self._ledger.evaluate(
                run.tenant_key,
                item.channel,
                baseline=item.current_spend,
                proposed=item.delta,
                cap_pct=cap_pct,
            )
            if item.clamped or decision.clamped:
                await self._record_clamp(run, decision, cap_pct=cap_pct, by_strategist=item.clamped)
                if item.channel not in clamped_channels:
                    clamped_channels.append(item.channel)
            adjusted.append(
                item.model_copy(
                    update={
                        "delta": decision.applied,
                        "proposed_spend": item.current_spend + decision.applied,
                        "clamped": item.clamped or decision.clamped,
                    }
                )
            )
            run.applied_deltas[item.channel] = decision.applied
        run.allocation = allocation.model_copy(update={"channels": adjusted, "clamped_channels": clamped_channels})

        await self._transition(
            run,
            self._outcome(run, confidence=result.confidence, threshold=self._settings.gating.strategy_threshold),
            inputs={"research": research, "snapshot": task.snapshot, "cap_pct": cap_pct},
            result=result,
            output=run.allocation.model_dump(mode="json"),
        )

    async def _generate(self, run: _TaskRun) -> None:
        negotiating = run.state is PipelineState.NEGOTIATE
        run.round = run.round + 1 if negotiating else 1
        hints = run.audit.rewrite_hints if negotiating and run.audit is not None else []
        allocation = run.allocation or BudgetAllocation(
            scenarios=ScenarioSet(pessimistic=0.0, expected=0.0, optimistic=0.0)
        )
        platforms = self._target_platforms(run.task.objective, allocation)

        started = time.perf_counter()
        result = await self._creative.generate(
            run.task.tenant,
            allocation,
            self._platform_constraints,
            research=run.research,
            hints=hints,
            platforms=platforms,
        )
        observe_stage_latency(stage="creative", latency=time.perf_counter() - started)
        self._note_degraded(run, result)
        run.creative = result.payload
        await self._transition(
            run,
            self._outcome(run, confidence=result.confidence),
            inputs={"platforms": platforms, "hints": hints, "round": run.round},
            result=result,
        )

    async def _audit(self, run: _TaskRun) -> None:
        creative = run.creative or CreativeResult()
        started = time.perf_counter()
        result = await self._auditor.audit(run.task.tenant, creative)
        observe_stage_latency(stage="audit", latency=time.perf_counter() - started)
        self._note_degraded(run, result)
        run.audit = result.payload
        await self._transition(
            run,
            self._outcome(
                run,
                confidence=result.confidence,
                threshold=self._settings.gating.audit_threshold,
                verdict=result.payload.verdict,
                publish_lock=result.payload.publish_lock,
            ),
            inputs={"creative": creative, "round": run.round},
            result=result,
        )

    # Logging ------------------------------------------------------------------------

    def _outcome(self, run: _TaskRun, **values: Any) -> StageOutcome:
        return StageOutcome(
            stage=run.state,
            objective=run.task.objective,
            round=run.round,
            max_rounds=self._settings.negotiation.max_rounds,
            **values,
        )

    async def _transition(
        self,
        run: _TaskRun,
        outcome: StageOutcome,
        *,
        inputs: Any,
        result: AgentResult[Any] | None = None,
        output: dict[str, Any] | None = None,
    ) -> None:
        transition = next_state(outcome)
        if output is None:
            output = result.model_dump(mode="json") if result is not None else {}
        entry = DecisionLogEntry(
            task_id=run.task.task_id,
            sequence=run.next_sequence(),
            tenant_key=run.tenant_key,
            objective=run.task.objective.value,
            stage=outcome.stage,
            event=transition.event,
            next_state=transition.next_state,
            input_digest=input_digest(inputs),
            output=output,
            confidence=outcome.confidence,
            degraded=result.degraded if result is not None else False,
            threshold=outcome.threshold,
            round=outcome.round,
            max_rounds=outcome.max_rounds,
            verdict=outcome.verdict,
            publish_lock=outcome.publish_lock if outcome.verdict is not None else None,
            timestamp=self._clock(),
        )
        await self._decision_logger.append(entry)
        increment_transition(stage=outcome.stage.value, next_state=transition.next_state.value)
        logger.info(
            "pipeline_transition",
            stage=outcome.stage.value,
            next_state=transition.next_state.value,
            decision=transition.event.value,
            confidence=outcome.confidence,
            threshold=outcome.threshold,
            round=outcome.round,
        )
        if transition.next_state.is_terminal:
            run.reason = self._describe(outcome, transition.event)
        run.state = transition.next_state
        if run.listener is not None:
            run.listener(entry)

    async def _record_clamp(
        self,
        run: _TaskRun,
        decision: LedgerDecision,
        *,
        cap_pct: float,
        by_strategist: bool,
    ) -> None:
        entry = DecisionLogEntry(
            task_id=run.task.task_id,
            sequence=run.next_sequence(),
            tenant_key=run.tenant_key,
            objective=run.task.objective.value,
            stage=run.state,
            event=DecisionEvent.BUDGET_CLAMPED,
            next_state=run.state,
            input_digest=input_digest(decision.to_dict()),
            output={**decision.to_dict(), "cap_pct": cap_pct, "strategist_clamped": by_strategist},
            round=run.round,
            max_rounds=self._settings.negotiation.max_rounds,
            timestamp=self._clock(),
        )
        await self._decision_logger.append(entry)
        if decision.clamped:
            increment_budget_clamp(channel=decision.channel)
        logger.info(
            "pipeline_budget_clamped",
            channel=decision.channel,
            proposed=decision.proposed,
            committed=decision.committed,
            applied=decision.applied,
        )
        if run.listener is not None:
            run.listener(entry)

    # Helpers ------------------------------------------------------------------------

    def _load_history(self, run: _TaskRun) -> dict[str, ChannelHistory]:
        task = run.task
        end = _as_utc(task.created_at)
        start = end - timedelta(days=self._settings.research.lookback_days)
        history: dict[str, ChannelHistory] = {}
        for channel in sorted(task.snapshot):
            history[channel] = ChannelHistory(
                roas=self._aggregator.values(
                    task.tenant, channel_metric(channel, "roas"), Granularity.DAY, start, end, Aggregation.AVG
                ),
                spend=self._aggregator.values(
                    task.tenant, channel_metric(channel, "spend"), Granularity.DAY, start, end, Aggregation.SUM
                ),
            )
        run.history = history
        return history

    @staticmethod
    def _baselines(run: _TaskRun) -> dict[str, float]:
        return {channel: data.spend for channel, data in run.task.snapshot.items()}

    @staticmethod
    def _target_platforms(objective: Objective, allocation: BudgetAllocation) -> list[str]:
        if objective is Objective.OPTIMIZE_BUDGET:
            return [item.channel for item in allocation.channels if item.proposed_spend > 0 and item.delta >= 0]
        return [item.channel for item in allocation.channels if item.proposed_spend > 0]

    @staticmethod
    def _note_degraded(run: _TaskRun, result: AgentResult[Any]) -> None:
        if not result.degraded:
            return
        increment_degraded(agent=result.kind.value)
        if result.kind.value not in run.degraded_stages:
            run.degraded_stages.append(result.kind.value)

    @staticmethod
    def _describe(outcome: StageOutcome, event: DecisionEvent) -> str:
        if event is DecisionEvent.GATE_FAILED:
            return (
                f"{outcome.stage.value} confidence {outcome.confidence} below threshold {outcome.threshold}"
            )
        if event is DecisionEvent.NEGOTIATION_EXHAUSTED:
            return f"no passing creative after {outcome.round} round(s)"
        if event is DecisionEvent.REWRITE_UNAVAILABLE:
            return "supplied creative needs a rewrite"
        if event is DecisionEvent.DEADLINE_EXCEEDED:
            return f"deadline passed during {outcome.stage.value}"
        if event is DecisionEvent.CANCELLED:
            return f"cancelled during {outcome.stage.value}"
        if event is DecisionEvent.REJECTED:
            return "creative failed the hard blocklist"
        return "approved"

    async def _finalize(self, run: _TaskRun) -> None:
        observe_negotiation_rounds(rounds=run.round)
        if run.state is PipelineState.APPROVED and run.task.objective is not Objective.AUDIT_ONLY:
            self._ledger.commit(run.tenant_key, run.applied_deltas, baselines=self._baselines(run))
        if run.state is PipelineState.ESCALATED and self._review_manager is not None:
            ticket = await self._review_manager.ensure_ticket(
                task_id=run.task.task_id,
                tenant_key=run.tenant_key,
                summary=run.reason,
                payload={
                    "objective": run.task.objective.value,
                    "reason": run.reason,
                    "rounds": run.round,
                    "audit": run.audit.model_dump(mode="json") if run.audit is not None else None,
                    "allocation": run.allocation.model_dump(mode="json") if run.allocation is not None else None,
                    "applied_deltas": dict(run.applied_deltas),
                    "baselines": self._baselines(run),
                },
                sources=[run.task.objective.value, *run.degraded_stages],
            )
            run.review_ticket_id = str(ticket.ticket_id)

    def _result(self, run: _TaskRun) -> TaskResult:
        approved = run.state is PipelineState.APPROVED and run.task.objective is not Objective.AUDIT_ONLY
        return TaskResult(
            task_id=run.task.task_id,
            tenant_key=run.tenant_key,
            objective=run.task.objective,
            state=run.state,
            research=run.research,
            allocation=run.allocation,
            creative=run.creative,
            audit=run.audit,
            applied_deltas=dict(run.applied_deltas) if approved else {},
            rounds=run.round,
            degraded_stages=list(run.degraded_stages),
            review_ticket_id=run.review_ticket_id,
            log_entries=run.sequence,
            reason=run.reason,
            completed_at=self._clock(),
        )
