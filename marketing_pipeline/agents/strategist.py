from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Sequence

import numpy as np

from ..core.config import StrategySettings
from ..core.errors import BudgetCapExceeded, InferenceError
from ..core.logging import get_logger
from ..core.metrics import increment_budget_clamp
from ..orchestration.circuit_breaker import enforce_cap
from ..schemas.agents import (
    AgentKind,
    AgentResult,
    BudgetAllocation,
    ChannelAllocation,
    FindingKind,
    ResearchResult,
    ScenarioSet,
)
from ..schemas.forecast import BudgetImpact
from ..schemas.tasks import ChannelSnapshot
from ..schemas.tenant import TenantContext
from ..services.forecasting import ROIPredictionEngine
from ..services.llm import InferenceService
from .base import ChannelHistory, bounded_confidence

logger = get_logger(name=__name__)

_MIN_HISTORY = 3
_RESIDUAL_TOLERANCE = 0.01


@dataclass(slots=True)
class _ChannelModel:
    channel: str
    current: float
    base_roas: float
    volatility: float
    synergy_lift: float

    @property
    def effective_roas(self) -> float:
        return self.base_roas * (1.0 + self.synergy_lift)


def _correlation(left: Sequence[float], right: Sequence[float]) -> float:
    size = min(len(left), len(right))
    if size < _MIN_HISTORY:
        return 0.0
    a = np.asarray(left[-size:], dtype=float)
    b = np.asarray(right[-size:], dtype=float)
    if np.std(a) == 0 or np.std(b) == 0:
        return 0.0
    return float(np.corrcoef(a, b)[0, 1])


def bounded_split(
    current: Mapping[str, float],
    target: Mapping[str, float],
    *,
    cap_pct: float,
    weights: Mapping[str, float],
    passes: int = 5,
) -> tuple[dict[str, float], list[str], float]:
    """Clamp per-channel deltas to ``cap_pct`` of current spend and re-place the freed budget.

    Returns ``(deltas, clamped_channels, unallocated)``; ``unallocated`` is budget that no
    channel had headroom to absorb (negative when cuts could not be fully funded).
    """
    deltas: dict[str, float] = {}
    clamped: list[str] = []
    for channel, spend in current.items():
        proposed = target[channel] - spend
        try:
            deltas[channel] = enforce_cap(channel, proposed, cap_pct * spend)
        except BudgetCapExceeded as exc:
            logger.info("strategy_budget_clamped", channel=channel, proposed=exc.proposed, applied=exc.applied)
            increment_budget_clamp(channel=channel)
            clamped.append(channel)
            deltas[channel] = exc.applied

    for _ in range(passes):
        residual = -sum(deltas.values())
        if abs(residual) < _RESIDUAL_TOLERANCE:
            break
        if residual > 0:
            room = {c: cap_pct * current[c] - deltas[c] for c in deltas}
        else:
            room = {c: deltas[c] + cap_pct * current[c] for c in deltas}
        room = {c: value for c, value in room.items() if value > _RESIDUAL_TOLERANCE}
        if not room:
            break
        total_weight = sum(max(weights.get(c, 0.0), 1e-9) for c in room)
        for channel, headroom in room.items():
            share = max(weights.get(channel, 0.0), 1e-9) / total_weight
            move = min(headroom, abs(residual) * share)
            deltas[channel] += move if residual > 0 else -move

    return deltas, clamped, -sum(deltas.values())


@dataclass
class MonteCarloStrategist:
    """Budget reallocation by Monte Carlo simulation over a concave response curve.

    Revenue on a channel follows ``roas * x0 * (x / x0) ** beta`` so the optimal split for a
    sampled set of ROAS values is ``x ~ x0 * roas ** (1 / (1 - beta))``. The proposal is the
    mean of the per-trial optima, bounded by the variance cap.
    When a forecaster is set, each channel with history also carries a revenue projection at
    its proposed spend.
    """

    settings: StrategySettings
    llm: InferenceService | None = None
    forecaster: ROIPredictionEngine | None = None
    name: str = "strategist"

    async def propose(
        self,
        tenant: TenantContext,
        research: ResearchResult,
        snapshot: Mapping[str, ChannelSnapshot],
        *,
        history: Mapping[str, ChannelHistory] | None = None,
        max_variance_pct: float | None = None,
    ) -> AgentResult[BudgetAllocation]:
        history = history or {}
        settings = self.settings
        cap_pct = min(settings.variance_cap, max_variance_pct or settings.variance_cap)
        models = self._channel_models(research, snapshot, history)
        if not models:
            logger.warning("strategy_no_funded_channels", tenant=tenant.tenant_key)
            return AgentResult[BudgetAllocation](
                kind=AgentKind.STRATEGY,
                payload=BudgetAllocation(
                    scenarios=ScenarioSet(pessimistic=0.0, expected=0.0, optimistic=0.0),
                    rationale="No channel has live spend to reallocate.",
                ),
                confidence=0.0,
                degraded=True,
                notes=["no funded channels"],
            )

        channels = [model.channel for model in models]
        current = np.array([model.current for model in models])
        effective = np.array([model.effective_roas for model in models])
        volatility = np.array([model.volatility for model in models])
        budget = float(current.sum())
        beta = settings.elasticity

        rng = np.random.default_rng(settings.seed)
        shocks = rng.standard_normal((settings.monte_carlo_trials, len(models)))
        samples = effective[None, :] * np.maximum(0.0, 1.0 + volatility[None, :] * shocks)
        weights = current[None, :] * np.power(samples, 1.0 / (1.0 - beta))
        totals = weights.sum(axis=1, keepdims=True)
        shares = np.where(totals > 0, weights / np.where(totals > 0, totals, 1.0), current / budget)
        target = budget * shares.mean(axis=0)

        deltas, clamped, unallocated = bounded_split(
            dict(zip(channels, current.tolist())),
            dict(zip(channels, target.tolist())),
            cap_pct=cap_pct,
            weights={model.channel: model.effective_roas * model.current for model in models},
            passes=settings.redistribution_passes,
        )
        proposed = np.array([max(0.0, model.current + deltas[model.channel]) for model in models])

        ratio = np.where(current > 0, proposed / current, 1.0)
        channel_roas = samples * np.power(np.maximum(ratio, 1e-9), beta - 1.0)[None, :]
        portfolio = (samples * current[None, :] * np.power(ratio, beta)[None, :]).sum(axis=1) / budget
        portfolio_scenarios = _scenarios(portfolio)

        allocations = [
            ChannelAllocation(
                channel=model.channel,
                current_spend=model.current,
                proposed_spend=float(proposed[index]),
                delta=float(proposed[index] - model.current),
                clamped=model.channel in clamped,
                scenarios=_scenarios(channel_roas[:, index]),
                effective_roas=float(model.effective_roas * max(ratio[index], 1e-9) ** (beta - 1.0)),
                synergy_lift=model.synergy_lift,
                projection=self._projection(history.get(model.channel), float(proposed[index])),
            )
            for index, model in enumerate(models)
        ]

        spread = (portfolio_scenarios.optimistic - portfolio_scenarios.pessimistic) / max(
            portfolio_scenarios.expected, 1e-9
        )
        confidence = 100.0 * (0.3 + 0.7 * max(0.0, 1.0 - 0.5 * spread))
        if research.heuristic_only:
            confidence -= 10.0

        allocation = BudgetAllocation(
            channels=allocations,
            scenarios=portfolio_scenarios,
            trials=settings.monte_carlo_trials,
            clamped_channels=clamped,
            unallocated=unallocated,
        )
        rationale, narrated = await self._rationale(tenant, allocation)
        notes = [] if narrated else ["rationale generated heuristically"]
        if clamped:
            notes.append(f"clamped to {cap_pct:.0%}: {', '.join(clamped)}")
        logger.info(
            "strategy_proposed",
            tenant=tenant.tenant_key,
            channels=len(allocations),
            clamped=clamped,
            expected_roas=portfolio_scenarios.expected,
        )
        return AgentResult[BudgetAllocation](
            kind=AgentKind.STRATEGY,
            payload=allocation.model_copy(update={"rationale": rationale}),
            confidence=bounded_confidence(confidence),
            degraded=not narrated,
            notes=notes,
        )

    def _channel_models(
        self,
        research: ResearchResult,
        snapshot: Mapping[str, ChannelSnapshot],
        history: Mapping[str, ChannelHistory],
    ) -> list[_ChannelModel]:
        settings = self.settings
        funded = sorted(channel for channel, data in snapshot.items() if data.spend > 0)
        total = sum(snapshot[channel].spend for channel in funded)
        models: list[_ChannelModel] = []
        for channel in funded:
            data = snapshot[channel]
            roas = data.roas
            for finding in research.for_channel(channel):
                if finding.kind is FindingKind.OPPORTUNITY:
                    roas *= 1.0 + settings.finding_adjustment * finding.score
                elif finding.kind is FindingKind.RISK:
                    roas *= 1.0 - settings.finding_adjustment * finding.score

            past = history.get(channel)
            volatility = settings.default_volatility
            if past is not None and len(past.roas) >= _MIN_HISTORY and float(np.mean(past.roas)) > 0:
                volatility = float(np.std(past.roas, ddof=1) / np.mean(past.roas))

            lift = 0.0
            for partner in funded:
                if partner == channel:
                    continue
                coefficient = settings.synergy_overrides.get(f"{channel}>{partner}")
                if coefficient is None:
                    partner_history = history.get(partner)
                    correlation = 0.0
                    if past is not None and partner_history is not None:
                        correlation = _correlation(partner_history.spend, past.roas)
                    coefficient = max(0.0, correlation) * settings.max_synergy_lift
                lift += coefficient * snapshot[partner].spend / total
            models.append(
                _ChannelModel(
                    channel=channel,
                    current=data.spend,
                    base_roas=max(roas, 0.0),
                    volatility=volatility,
                    synergy_lift=lift,
                )
            )
        return models

    def _projection(self, past: ChannelHistory | None, proposed_spend: float) -> BudgetImpact | None:
        if self.forecaster is None or past is None or not past.spend:
            return None
        revenue = [roas * spend for roas, spend in zip(past.roas, past.spend)]
        return self.forecaster.budget_impact(past.spend, revenue, proposed_spend)

    async def _rationale(self, tenant: TenantContext, allocation: BudgetAllocation) -> tuple[str, bool]:
        moves = sorted(allocation.channels, key=lambda item: item.delta, reverse=True)
        fallback = "; ".join(
            f"{item.channel} {item.delta:+,.0f} (ROAS p50 {item.scenarios.expected:.2f})" for item in moves
        )
        fallback = f"Shift budget toward higher simulated ROAS: {fallback}."
        if self.llm is None:
            return fallback, False
        prompt = (
            f"Brand: {tenant.brand_name}\n"
            f"Proposed moves: {fallback}\n"
            f"Portfolio ROAS p10/mean/p90: {allocation.scenarios.pessimistic:.2f}/"
            f"{allocation.scenarios.expected:.2f}/{allocation.scenarios.optimistic:.2f}\n"
            "Explain this reallocation in two sentences for a marketing lead."
        )
        try:
            return await self.llm.generate(prompt), True
        except InferenceError as exc:
            logger.info("strategy_rationale_fallback", tenant=tenant.tenant_key, error=str(exc))
            return fallback, False


def _scenarios(values: np.ndarray) -> ScenarioSet:
    low, high = np.percentile(values, [10, 90])
    return ScenarioSet(pessimistic=float(low), expected=float(np.mean(values)), optimistic=float(high))
