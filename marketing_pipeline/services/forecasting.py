from __future__ import annotations

import math
from dataclasses import dataclass
from statistics import fmean, pstdev
from typing import Sequence

from ..core.config import ForecastSettings
from ..core.logging import get_logger
from ..schemas.forecast import BudgetImpact, Forecast, ForecastMethod

logger = get_logger(name=__name__)


@dataclass(slots=True)
class _LinearFit:
    slope: float
    intercept: float
    residual_std: float
    x_mean: float
    sxx: float
    n: int

    def predict(self, x: float) -> float:
        return self.intercept + self.slope * x

    def half_width(self, x: float, z_value: float) -> float:
        leverage = (x - self.x_mean) ** 2 / self.sxx if self.sxx > 0 else 0.0
        return z_value * self.residual_std * math.sqrt(1.0 + 1.0 / self.n + leverage)


def _fit_line(xs: Sequence[float], ys: Sequence[float], fallback_std: float) -> _LinearFit:
    n = len(xs)
    x_mean = fmean(xs)
    y_mean = fmean(ys)
    sxx = sum((x - x_mean) ** 2 for x in xs)
    if sxx == 0:
        slope = 0.0
    else:
        slope = sum((x - x_mean) * (y - y_mean) for x, y in zip(xs, ys)) / sxx
    intercept = y_mean - slope * x_mean
    if n > 2:
        sse = sum((y - (intercept + slope * x)) ** 2 for x, y in zip(xs, ys))
        residual_std = math.sqrt(sse / (n - 2))
    else:
        residual_std = fallback_std
    return _LinearFit(slope=slope, intercept=intercept, residual_std=residual_std, x_mean=x_mean, sxx=sxx, n=n)


class ROIPredictionEngine:
    """Point forecasts with prediction intervals for short marketing series.

    Series with at least two full seasonal cycles use additive Holt-Winters; anything
    shorter falls back to ordinary least squares over the index. The engine never refuses
    to forecast: sparse input yields a degraded, widened interval instead.
    """

    def __init__(self, settings: ForecastSettings | None = None) -> None:
        self._settings = settings or ForecastSettings()

    @property
    def settings(self) -> ForecastSettings:
        return self._settings

    def predict(self, series: Sequence[float], horizon: int = 1) -> Forecast:
        if horizon < 1:
            raise ValueError("horizon must be at least 1")
        values = [float(value) for value in series if math.isfinite(value)]
        settings = self._settings
        n = len(values)
        degraded = n < settings.min_points

        if n == 0:
            spread = settings.fallback_spread * math.sqrt(horizon)
            return Forecast(
                expected=0.0,
                lower_bound=-spread,
                upper_bound=spread,
                method=ForecastMethod.NAIVE,
                horizon=horizon,
                degraded=True,
                points_used=0,
            )

        if n >= 2 * settings.season_length:
            expected, half_width = self._holt_winters(values, horizon)
            method = ForecastMethod.HOLT_WINTERS
        elif n == 1:
            expected = values[0]
            half_width = settings.z_value * settings.fallback_spread * math.sqrt(horizon)
            method = ForecastMethod.NAIVE
        else:
            fit = _fit_line(range(n), values, settings.fallback_spread)
            x = n - 1 + horizon
            expected = fit.predict(x)
            half_width = fit.half_width(x, settings.z_value)
            method = ForecastMethod.LINEAR_REGRESSION

        if degraded:
            half_width *= settings.degraded_widening
        return Forecast(
            expected=expected,
            lower_bound=expected - half_width,
            upper_bound=expected + half_width,
            method=method,
            horizon=horizon,
            degraded=degraded,
            points_used=n,
        )

    def budget_impact(
        self,
        spend: Sequence[float],
        revenue: Sequence[float],
        proposed_spend: float,
    ) -> BudgetImpact:
        """Project revenue at ``proposed_spend`` by regressing revenue on spend."""
        pairs = [
            (float(x), float(y))
            for x, y in zip(spend, revenue)
            if math.isfinite(x) and math.isfinite(y) and x > 0
        ]
        settings = self._settings
        degraded = len(pairs) < settings.min_points
        if not pairs:
            return BudgetImpact(
                proposed_spend=proposed_spend,
                expected_revenue=0.0,
                lower_revenue=0.0,
                upper_revenue=0.0,
                expected_roas=0.0,
                lower_roas=0.0,
                upper_roas=0.0,
                degraded=True,
                points_used=0,
            )

        xs = [pair[0] for pair in pairs]
        ys = [pair[1] for pair in pairs]
        ratios = [y / x for x, y in pairs]
        if len(pairs) < 3 or pstdev(xs) == 0:
            roas = fmean(ratios)
            spread = pstdev(ratios) if len(ratios) > 1 else settings.fallback_spread
            expected = roas * proposed_spend
            half_width = settings.z_value * spread * proposed_spend
            degraded = True
        else:
            fit = _fit_line(xs, ys, settings.fallback_spread)
            expected = fit.predict(proposed_spend)
            half_width = fit.half_width(proposed_spend, settings.z_value)
        if degraded:
            half_width *= settings.degraded_widening

        lower = max(0.0, expected - half_width)
        upper = max(lower, expected + half_width)
        expected = max(0.0, expected)
        divisor = proposed_spend if proposed_spend > 0 else math.inf
        return BudgetImpact(
            proposed_spend=proposed_spend,
            expected_revenue=expected,
            lower_revenue=lower,
            upper_revenue=upper,
            expected_roas=expected / divisor,
            lower_roas=lower / divisor,
            upper_roas=upper / divisor,
            degraded=degraded,
            points_used=len(pairs),
        )

    def _holt_winters(self, values: Sequence[float], horizon: int) -> tuple[float, float]:
        settings = self._settings
        m = settings.season_length
        alpha, beta, gamma = settings.alpha, settings.beta, settings.gamma

        first_cycle = fmean(values[:m])
        second_cycle = fmean(values[m : 2 * m])
        level = first_cycle
        trend = (second_cycle - first_cycle) / m
        seasonals = [value - first_cycle for value in values[:m]]

        residuals: list[float] = []
        for index, value in enumerate(values):
            season = seasonals[index % m]
            if index >= m:
                residuals.append(value - (level + trend + season))
            previous_level = level
            level = alpha * (value - season) + (1 - alpha) * (level + trend)
            trend = beta * (level - previous_level) + (1 - beta) * trend
            seasonals[index % m] = gamma * (value - level) + (1 - gamma) * season

        expected = level + horizon * trend + seasonals[(len(values) + horizon - 1) % m]
        sigma = pstdev(residuals) if len(residuals) > 1 else settings.fallback_spread
        sigma = max(sigma, settings.fallback_spread * settings.min_sigma_ratio)
        logger.debug("holt_winters_fitted", points=len(values), sigma=sigma, horizon=horizon)
        return expected, settings.z_value * sigma * math.sqrt(horizon)
