from __future__ import annotations

from typing import Iterable, Mapping, Protocol

from ..schemas.tenant import HistoricalWinner, TenantContext


class TenantDataProvider(Protocol):
    async def get_historical_winners(self, tenant: TenantContext) -> list[HistoricalWinner]:
        ...


class InMemoryTenantDataProvider:
    """Read-only winners keyed by tenant key, falling back to the tenant context's own list."""

    def __init__(self, winners: Mapping[str, Iterable[HistoricalWinner]] | None = None) -> None:
        self._winners = {key: tuple(items) for key, items in (winners or {}).items()}

    async def get_historical_winners(self, tenant: TenantContext) -> list[HistoricalWinner]:
        stored = self._winners.get(tenant.tenant_key)
        if stored is None:
            return list(tenant.historical_winners)
        return list(stored)
