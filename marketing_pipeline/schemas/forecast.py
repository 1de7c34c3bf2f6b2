from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ForecastMethod(str, Enum):
    HOLT_WINTERS = "holt_winters"
    LINEAR_REGRESSION = "linear_regression"
    NAIVE = "naive"


class Forecast(BaseModel):
    model_config = ConfigDict(frozen=True)

    expected: float
    lower_bound: float
    upper_bound: float
    method: ForecastMethod
    horizon: int = Field(..., ge=1)
    degraded: bool = False
    points_used: int = Field(0, ge=0)

    @property
    def width(self) -> float:
        return self.upper_bound - self.lower_bound

    @property
    def confidence(self) -> float:
        """Relative tightness of the interval in [0, 1]; 1 means a zero-width interval."""
        scale = max(abs(self.expected), 1e-9)
        return max(0.0, 1.0 - min(1.0, self.width / (2.0 * scale)))


class BudgetImpact(BaseModel):
    model_config = ConfigDict(frozen=True)

    proposed_spend: float
    expected_revenue: float
    lower_revenue: float
    upper_revenue: float
    expected_roas: float
    lower_roas: float
    upper_roas: float
    degraded: bool = False
    points_used: int = 0
