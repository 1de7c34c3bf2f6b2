from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class HistoricalWinner(BaseModel):
    """A past campaign that beat the tenant's benchmarks on a platform."""

    model_config = ConfigDict(frozen=True)

    platform: str = Field(..., min_length=1)
    campaign_type: str = "conversion"
    roas: float = Field(..., ge=0.0)
    cpa: float | None = Field(default=None, ge=0.0)
    spend: float = Field(default=0.0, ge=0.0)
    headline: str | None = None
    learnings: tuple[str, ...] = ()


class TenantContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    org_id: str = Field(..., min_length=1)
    brand_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    brand_name: str = Field(..., min_length=1)
    brand_voice: str | None = None
    blocked_terms: tuple[str, ...] = ()
    historical_winners: tuple[HistoricalWinner, ...] = ()

    @property
    def tenant_key(self) -> str:
        return f"{self.org_id}:{self.brand_id}"
