from __future__ import annotations

import asyncio

import pytest

from marketing_pipeline.core.errors import BudgetCapExceeded
from marketing_pipeline.orchestration.circuit_breaker import BudgetLedger, clamp, enforce_cap


def test_clamp_is_symmetric_and_reports_movement() -> None:
    assert clamp(4_500.0, 3_500.0) == (3_500.0, True)
    assert clamp(-4_500.0, 3_500.0) == (-3_500.0, True)
    assert clamp(1_000.0, 3_500.0) == (1_000.0, False)
    assert clamp(3_500.0, 3_500.0) == (3_500.0, False)


def test_enforce_cap_raises_with_the_clamped_value() -> None:
    with pytest.raises(BudgetCapExceeded) as info:
        enforce_cap("google", 4_500.0, 3_500.0)

    assert info.value.channel == "google"
    assert info.value.proposed == 4_500.0
    assert info.value.applied == 3_500.0
    assert enforce_cap("google", 100.0, 3_500.0) == 100.0


def test_ledger_clamps_a_single_oversized_proposal() -> None:
    ledger = BudgetLedger()

    decision = ledger.evaluate("org:brand", "google", baseline=10_000.0, proposed=4_500.0, cap_pct=0.35)

    assert decision.applied == pytest.approx(3_500.0)
    assert decision.clamped is True
    assert decision.committed == 0.0


def test_ledger_accounts_for_committed_deltas() -> None:
    ledger = BudgetLedger()
    ledger.commit("org:brand", {"google": 3_000.0}, baselines={"google": 10_000.0})

    decision = ledger.evaluate("org:brand", "google", baseline=10_000.0, proposed=3_000.0, cap_pct=0.35)

    assert decision.committed == 3_000.0
    assert decision.applied == pytest.approx(500.0)
    assert decision.clamped is True


def test_ledger_is_scoped_per_tenant() -> None:
    ledger = BudgetLedger()
    ledger.commit("org:brand-a", {"google": 3_000.0}, baselines={"google": 10_000.0})

    decision = ledger.evaluate("org:brand-b", "google", baseline=10_000.0, proposed=3_000.0, cap_pct=0.35)

    assert decision.applied == 3_000.0
    assert decision.clamped is False


@pytest.mark.asyncio
async def test_concurrent_holders_are_serialized_against_the_ledger() -> None:
    ledger = BudgetLedger()
    applied: list[float] = []

    async def propose() -> None:
        async with ledger.hold("org:brand", ["meta", "google"]):
            decision = ledger.evaluate("org:brand", "google", baseline=10_000.0, proposed=3_000.0, cap_pct=0.35)
            await asyncio.sleep(0)
            ledger.commit("org:brand", {"google": decision.applied}, baselines={"google": 10_000.0})
            applied.append(decision.applied)

    await asyncio.gather(propose(), propose())

    assert applied == pytest.approx([3_000.0, 500.0])
    assert ledger.committed("org:brand", "google") == pytest.approx(3_500.0)


@pytest.mark.asyncio
async def test_locks_are_acquired_in_sorted_order() -> None:
    ledger = BudgetLedger()
    order: list[str] = []

    async def worker(name: str, channels: list[str]) -> None:
        async with ledger.hold("org:brand", channels):
            order.append(name)
            await asyncio.sleep(0.01)

    await asyncio.wait_for(
        asyncio.gather(worker("first", ["google", "meta"]), worker("second", ["meta", "google"])),
        timeout=1.0,
    )

    assert sorted(order) == ["first", "second"]
    assert ledger.held_channels("org:brand") == []


def test_commitments_are_released_once_live_spend_moves() -> None:
    ledger = BudgetLedger()
    ledger.commit("org:brand", {"google": 3_500.0}, baselines={"google": 10_000.0})

    decision = ledger.evaluate("org:brand", "google", baseline=13_500.0, proposed=4_725.0, cap_pct=0.35)

    assert decision.committed == 0.0
    assert decision.applied == pytest.approx(4_725.0)
    assert decision.clamped is False
    assert ledger.committed("org:brand", "google") == 0.0


def test_zero_deltas_are_not_recorded() -> None:
    ledger = BudgetLedger()
    ledger.commit("org:brand", {"google": 0.0, "meta": -500.0}, baselines={"google": 10_000.0, "meta": 5_000.0})

    assert ledger.committed("org:brand", "google") == 0.0
    assert ledger.committed("org:brand", "meta") == -500.0


@pytest.mark.asyncio
async def test_locks_are_dropped_once_nobody_holds_or_waits() -> None:
    ledger = BudgetLedger()
    entered = asyncio.Event()
    release = asyncio.Event()

    async def holder() -> None:
        async with ledger.hold("org:brand", ["google"]):
            entered.set()
            await release.wait()

    async def waiter() -> None:
        async with ledger.hold("org:brand", ["google", "meta"]):
            pass

    first = asyncio.create_task(holder())
    await entered.wait()
    second = asyncio.create_task(waiter())
    await asyncio.sleep(0)

    assert ledger.held_channels("org:brand") == ["google"]

    release.set()
    await asyncio.wait_for(asyncio.gather(first, second), timeout=1.0)

    assert ledger.held_channels("org:brand") == []
