from __future__ import annotations

import pytest

from marketing_pipeline.agents.base import ChannelHistory
from marketing_pipeline.agents.strategist import MonteCarloStrategist, bounded_split
from marketing_pipeline.core.config import StrategySettings
from marketing_pipeline.schemas.agents import AgentKind, ResearchResult
from marketing_pipeline.services.forecasting import ROIPredictionEngine
from tests.helpers.stubs import ScriptedChatClient, make_inference, make_tenant, snapshot


def _strategist(**overrides) -> MonteCarloStrategist:
    values = {"seed": 11, "monte_carlo_trials": 500}
    values.update(overrides)
    return MonteCarloStrategist(StrategySettings(**values))


def test_split_clamps_deltas_to_the_variance_cap() -> None:
    deltas, clamped, unallocated = bounded_split(
        {"google": 10_000.0, "meta": 10_000.0},
        {"google": 14_500.0, "meta": 5_500.0},
        cap_pct=0.35,
        weights={"google": 1.0, "meta": 1.0},
    )

    assert deltas == pytest.approx({"google": 3_500.0, "meta": -3_500.0})
    assert sorted(clamped) == ["google", "meta"]
    assert unallocated == pytest.approx(0.0)


def test_split_redistributes_freed_budget_within_headroom() -> None:
    current = {"a": 10_000.0, "b": 10_000.0, "c": 10_000.0}
    deltas, clamped, unallocated = bounded_split(
        current,
        {"a": 16_000.0, "b": 9_000.0, "c": 5_000.0},
        cap_pct=0.35,
        weights={"a": 1.0, "b": 1.0, "c": 1.0},
    )

    assert clamped == ["a", "c"]
    assert deltas["a"] == pytest.approx(3_500.0)
    assert deltas["b"] == pytest.approx(-500.0)
    assert deltas["c"] == pytest.approx(-3_000.0)
    assert unallocated == pytest.approx(0.0, abs=0.01)
    for channel, delta in deltas.items():
        assert abs(delta) <= 0.35 * current[channel] + 1e-6


@pytest.mark.asyncio
async def test_proposal_moves_budget_toward_higher_roas_within_cap() -> None:
    live = snapshot(google=(10_000.0, 4.0), meta=(10_000.0, 1.0))

    result = await _strategist().propose(make_tenant(), ResearchResult(), live)

    allocation = result.payload
    assert result.kind is AgentKind.STRATEGY
    assert allocation.get("google").delta == pytest.approx(3_500.0)
    assert allocation.get("meta").delta == pytest.approx(-3_500.0)
    assert "google" in allocation.clamped_channels
    for item in allocation.channels:
        assert abs(item.delta) <= 0.35 * item.current_spend + 1e-6
        assert item.scenarios.pessimistic <= item.scenarios.expected <= item.scenarios.optimistic
    assert allocation.scenarios.pessimistic <= allocation.scenarios.expected <= allocation.scenarios.optimistic
    assert allocation.trials == 500
    assert result.degraded is True
    assert 0.0 < result.confidence <= 100.0


@pytest.mark.asyncio
async def test_task_variance_limit_tightens_the_cap() -> None:
    live = snapshot(google=(10_000.0, 4.0), meta=(10_000.0, 1.0))

    result = await _strategist().propose(make_tenant(), ResearchResult(), live, max_variance_pct=0.1)

    for item in result.payload.channels:
        assert abs(item.delta) <= 1_000.0 + 1e-6


@pytest.mark.asyncio
async def test_no_funded_channels_yields_zero_confidence() -> None:
    live = snapshot(google=(0.0, 0.0))

    result = await _strategist().propose(make_tenant(), ResearchResult(), live)

    assert result.confidence == 0.0
    assert result.degraded is True
    assert result.payload.channels == []


@pytest.mark.asyncio
async def test_heuristic_research_lowers_confidence() -> None:
    live = snapshot(google=(10_000.0, 3.0), meta=(8_000.0, 2.0))

    baseline = await _strategist().propose(make_tenant(), ResearchResult(), live)
    heuristic = await _strategist().propose(make_tenant(), ResearchResult(heuristic_only=True), live)

    assert baseline.confidence - heuristic.confidence == pytest.approx(10.0, abs=0.02)


@pytest.mark.asyncio
async def test_synergy_override_lifts_effective_roas() -> None:
    live = snapshot(google=(5_000.0, 2.0), meta=(5_000.0, 2.0))
    strategist = _strategist(synergy_overrides={"google>meta": 0.2})

    result = await strategist.propose(make_tenant(), ResearchResult(), live)

    assert result.payload.get("google").synergy_lift == pytest.approx(0.1)
    assert result.payload.get("meta").synergy_lift == pytest.approx(0.0)


@pytest.mark.asyncio
async def test_history_sets_volatility_and_correlated_synergy() -> None:
    live = snapshot(google=(5_000.0, 2.0), meta=(5_000.0, 2.0))
    history = {
        "google": ChannelHistory(roas=[2.0, 2.2, 2.4, 2.6], spend=[100.0, 100.0, 100.0, 100.0]),
        "meta": ChannelHistory(roas=[2.0, 2.0, 2.0, 2.0], spend=[50.0, 60.0, 70.0, 80.0]),
    }

    result = await _strategist().propose(make_tenant(), ResearchResult(), live, history=history)

    assert result.payload.get("google").synergy_lift == pytest.approx(0.05)
    assert result.payload.get("meta").synergy_lift == pytest.approx(0.0)


@pytest.mark.asyncio
async def test_rationale_comes_from_inference_when_available() -> None:
    client = ScriptedChatClient(["Shift spend to Google where returns are strongest."])
    strategist = MonteCarloStrategist(StrategySettings(seed=3, monte_carlo_trials=200), llm=make_inference(client))
    live = snapshot(google=(10_000.0, 3.0), meta=(10_000.0, 2.0))

    result = await strategist.propose(make_tenant(), ResearchResult(), live)

    assert result.degraded is False
    assert result.payload.rationale == "Shift spend to Google where returns are strongest."


@pytest.mark.asyncio
async def test_forecaster_projects_revenue_at_the_proposed_spend() -> None:
    live = snapshot(google=(5_000.0, 2.0), meta=(5_000.0, 2.0), tiktok=(1_000.0, 1.0))
    history = {
        "google": ChannelHistory(roas=[2.0, 2.2, 2.4, 2.6], spend=[100.0, 100.0, 100.0, 100.0]),
        "meta": ChannelHistory(roas=[2.0, 2.0, 2.0, 2.0], spend=[50.0, 60.0, 70.0, 80.0]),
    }
    strategist = MonteCarloStrategist(
        StrategySettings(seed=11, monte_carlo_trials=500), forecaster=ROIPredictionEngine()
    )

    result = await strategist.propose(make_tenant(), ResearchResult(), live, history=history)

    meta = result.payload.get("meta")
    assert meta.projection is not None
    assert meta.projection.proposed_spend == pytest.approx(meta.proposed_spend)
    assert meta.projection.expected_roas == pytest.approx(2.0)
    assert meta.projection.degraded is False
    assert result.payload.get("google").projection.degraded is True
    assert result.payload.get("tiktok").projection is None


@pytest.mark.asyncio
async def test_projection_is_skipped_without_a_forecaster() -> None:
    history = {"meta": ChannelHistory(roas=[2.0, 2.0, 2.0, 2.0], spend=[50.0, 60.0, 70.0, 80.0])}

    result = await _strategist().propose(
        make_tenant(), ResearchResult(), snapshot(google=(5_000.0, 3.0), meta=(5_000.0, 2.0)), history=history
    )

    assert all(item.projection is None for item in result.payload.channels)
