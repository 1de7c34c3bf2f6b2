from __future__ import annotations

import asyncio
import math
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Iterable, Mapping

from ..core.errors import BudgetCapExceeded
from ..core.logging import get_logger

logger = get_logger(name=__name__)

_EPSILON = 1e-9


def clamp(proposed: float, cap: float) -> tuple[float, bool]:
    """Clamp ``proposed`` into ``[-cap, cap]`` and report whether it moved."""
    bound = abs(cap)
    if proposed > bound + _EPSILON:
        return bound, True
    if proposed < -bound - _EPSILON:
        return -bound, True
    return proposed, False


def enforce_cap(channel: str, proposed: float, cap: float) -> float:
    """Return ``proposed`` when it is within ``cap``; otherwise raise with the clamped value."""
    applied, was_clamped = clamp(proposed, cap)
    if was_clamped:
        raise BudgetCapExceeded(channel, proposed=proposed, applied=applied)
    return applied


@dataclass(frozen=True, slots=True)
class LedgerDecision:
    channel: str
    baseline: float
    proposed: float
    committed: float
    applied: float
    clamped: bool

    def to_dict(self) -> dict[str, float | str | bool]:
        return {
            "channel": self.channel,
            "baseline": self.baseline,
            "proposed": self.proposed,
            "committed": self.committed,
            "applied": self.applied,
            "clamped": self.clamped,
        }


@dataclass(frozen=True, slots=True)
class _Commitment:
    baseline: float
    delta: float


class BudgetLedger:
    """Committed budget deltas per tenant and channel, plus the locks that serialize them.

    A channel's lock is held by a task from STRATEGY until the task reaches a terminal
    state, so each proposal is evaluated against everything committed before it:
    ``applied = clamp(committed + proposed, cap * baseline) - committed``.

    A commitment is recorded with the spend it was applied against. Once a task arrives
    with a different current spend for that channel the change is live and the commitment
    no longer counts against the cap. Locks are dropped when no task holds or awaits them.
    """

    def __init__(self) -> None:
        self._committed: dict[tuple[str, str], list[_Commitment]] = {}
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._holders: dict[tuple[str, str], int] = {}

    @asynccontextmanager
    async def hold(self, tenant_key: str, channels: Iterable[str]) -> AsyncIterator[None]:
        """Acquire every channel lock in sorted order and release them on exit."""
        keys = [(tenant_key, channel) for channel in sorted(set(channels))]
        for key in keys:
            self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with AsyncExitStack() as stack:
                for key in keys:
                    await stack.enter_async_context(self._lock(key))
                yield
        finally:
            for key in keys:
                remaining = self._holders[key] - 1
                if remaining:
                    self._holders[key] = remaining
                else:
                    del self._holders[key]
                    self._locks.pop(key, None)

    def held_channels(self, tenant_key: str) -> list[str]:
        """Channels with a task holding or waiting on their lock."""
        return sorted(channel for key, channel in self._locks if key == tenant_key)

    def committed(self, tenant_key: str, channel: str) -> float:
        return sum(item.delta for item in self._committed.get((tenant_key, channel), ()))

    def evaluate(
        self,
        tenant_key: str,
        channel: str,
        *,
        baseline: float,
        proposed: float,
        cap_pct: float,
    ) -> LedgerDecision:
        self._release_live(tenant_key, channel, baseline)
        committed = self.committed(tenant_key, channel)
        combined, clamped = clamp(committed + proposed, cap_pct * baseline)
        applied = combined - committed
        if clamped:
            logger.info(
                "ledger_delta_clamped",
                tenant=tenant_key,
                channel=channel,
                proposed=proposed,
                committed=committed,
                applied=applied,
            )
        return LedgerDecision(
            channel=channel,
            baseline=baseline,
            proposed=proposed,
            committed=committed,
            applied=applied,
            clamped=clamped,
        )

    def commit(self, tenant_key: str, deltas: Mapping[str, float], *, baselines: Mapping[str, float]) -> None:
        for channel, delta in deltas.items():
            if abs(delta) <= _EPSILON:
                continue
            commitment = _Commitment(baseline=baselines[channel], delta=delta)
            self._committed.setdefault((tenant_key, channel), []).append(commitment)
        logger.info("ledger_committed", tenant=tenant_key, channels=sorted(deltas))

    def _lock(self, key: tuple[str, str]) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _release_live(self, tenant_key: str, channel: str, baseline: float) -> None:
        key = (tenant_key, channel)
        pending = self._committed.get(key)
        if not pending:
            return
        kept = [item for item in pending if math.isclose(item.baseline, baseline, abs_tol=_EPSILON)]
        if len(kept) == len(pending):
            return
        logger.info(
            "ledger_commitments_released",
            tenant=tenant_key,
            channel=channel,
            released=len(pending) - len(kept),
            baseline=baseline,
        )
        if kept:
            self._committed[key] = kept
        else:
            del self._committed[key]
