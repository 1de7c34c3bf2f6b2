from __future__ import annotations

import pytest

from marketing_pipeline.core.config import ForecastSettings
from marketing_pipeline.schemas.forecast import ForecastMethod
from marketing_pipeline.services.forecasting import ROIPredictionEngine


def test_empty_series_gives_a_degraded_naive_forecast() -> None:
    forecast = ROIPredictionEngine().predict([])

    assert forecast.method is ForecastMethod.NAIVE
    assert forecast.degraded is True
    assert forecast.expected == 0.0
    assert (forecast.lower_bound, forecast.upper_bound) == (-1.0, 1.0)


def test_single_point_repeats_the_last_value() -> None:
    forecast = ROIPredictionEngine().predict([2.5])

    assert forecast.method is ForecastMethod.NAIVE
    assert forecast.expected == 2.5
    assert forecast.width == pytest.approx(2 * 1.96 * 2.0)


def test_short_series_uses_linear_regression() -> None:
    forecast = ROIPredictionEngine().predict([1.0, 2.0, 3.0, 4.0, 5.0], horizon=2)

    assert forecast.method is ForecastMethod.LINEAR_REGRESSION
    assert forecast.expected == pytest.approx(7.0)
    assert forecast.width == pytest.approx(0.0, abs=1e-9)
    assert forecast.degraded is False
    assert forecast.confidence == pytest.approx(1.0)


def test_two_full_seasons_use_holt_winters() -> None:
    pattern = [1.0, 2.0, 3.0, 4.0, 5.0, 6.0, 7.0]
    forecast = ROIPredictionEngine().predict(pattern * 3)

    assert forecast.method is ForecastMethod.HOLT_WINTERS
    assert forecast.expected == pytest.approx(1.0)
    assert forecast.lower_bound <= forecast.expected <= forecast.upper_bound


def test_sparse_series_widens_the_interval() -> None:
    series = [1.0, 2.0, 4.0]
    widened = ROIPredictionEngine().predict(series)
    plain = ROIPredictionEngine(ForecastSettings(degraded_widening=1.0)).predict(series)

    assert widened.degraded is True
    assert widened.expected == pytest.approx(plain.expected)
    assert widened.width == pytest.approx(2.0 * plain.width)


def test_non_finite_points_are_ignored() -> None:
    forecast = ROIPredictionEngine().predict([1.0, float("nan"), 2.0, 3.0, 4.0, float("inf")])

    assert forecast.points_used == 4
    assert forecast.expected == pytest.approx(5.0)


def test_horizon_must_be_positive() -> None:
    with pytest.raises(ValueError):
        ROIPredictionEngine().predict([1.0, 2.0], horizon=0)


def test_periodic_series_keeps_a_positive_interval() -> None:
    forecast = ROIPredictionEngine().predict([1.0, 2.0, 3.0, 4.0, 5.0, 6.0, 7.0] * 3)

    assert forecast.width == pytest.approx(2 * 1.96 * 0.05)


@pytest.mark.parametrize(
    "series",
    [
        [1.0, 2.5, 2.8, 4.4, 5.1],
        [3.0, 5.0, 4.0, 6.5, 7.0, 5.5, 2.0, 3.4, 5.2, 4.1, 6.0, 7.3, 5.1, 2.2, 3.1, 4.8, 4.3, 6.6, 6.9, 5.7, 2.4],
        [1.0, 2.0, 4.0],
        [2.5],
        [],
    ],
    ids=["linear", "holt_winters", "sparse", "single_point", "empty"],
)
def test_interval_never_narrows_with_horizon(series: list[float]) -> None:
    engine = ROIPredictionEngine()

    widths = [engine.predict(series, horizon).width for horizon in range(1, 6)]

    assert all(later >= earlier for earlier, later in zip(widths, widths[1:]))
    assert widths[-1] > 0


def test_budget_impact_regresses_revenue_on_spend() -> None:
    spend = [100.0, 200.0, 300.0, 400.0, 500.0]
    revenue = [3 * value for value in spend]

    impact = ROIPredictionEngine().budget_impact(spend, revenue, proposed_spend=600.0)

    assert impact.expected_revenue == pytest.approx(1800.0)
    assert impact.expected_roas == pytest.approx(3.0)
    assert impact.degraded is False


def test_budget_impact_without_history_is_degraded() -> None:
    impact = ROIPredictionEngine().budget_impact([], [], proposed_spend=500.0)

    assert impact.degraded is True
    assert impact.expected_revenue == 0.0
