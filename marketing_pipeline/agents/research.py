from __future__ import annotations

import math
from dataclasses import dataclass
from statistics import fmean, median, quantiles, stdev
from typing import Mapping, Sequence

from ..core.config import ResearchSettings
from ..core.errors import DataUnavailable, InferenceError
from ..core.logging import get_logger
from ..schemas.agents import (
    AgentKind,
    AgentResult,
    Finding,
    FindingKind,
    FindingStatistic,
    ResearchResult,
    StatisticName,
)
from ..schemas.forecast import Forecast
from ..schemas.tasks import ChannelSnapshot
from ..schemas.tenant import HistoricalWinner, TenantContext
from ..services.llm import InferenceService
from ..services.tenants import TenantDataProvider
from .base import bounded_confidence

logger = get_logger(name=__name__)

MAX_PLAUSIBLE_MAGNITUDE = 10.0
_NEUTRAL_SIMILARITY = 0.5
_TOLERANCE = 1e-6


def _relative(value: float, reference: float) -> float:
    if abs(reference) < 1e-9:
        return value - reference
    return (value - reference) / abs(reference)


def _smooth(values: Sequence[float], alpha: float) -> list[float]:
    smoothed = [values[0]]
    for value in values[1:]:
        smoothed.append(alpha * value + (1 - alpha) * smoothed[-1])
    return smoothed


def _contains(values: Sequence[float], observed: float) -> bool:
    return any(math.isclose(value, observed, rel_tol=1e-9, abs_tol=1e-9) for value in values)


@dataclass
class StatisticalResearcher:
    """Situational analysis over per-channel ROAS series.

    Anomalies come from IQR fences, risks and opportunities from the z-score of the
    latest residual against an exponentially smoothed series, and forward-looking
    opportunities from forecast uplift weighted by similarity to the tenant's past winners.
    Every finding is re-derived from the raw series before it is reported.
    """

    settings: ResearchSettings
    llm: InferenceService | None = None
    tenant_data: TenantDataProvider | None = None
    name: str = "researcher"

    async def analyze(
        self,
        tenant: TenantContext,
        series: Mapping[str, Sequence[float]],
        forecasts: Mapping[str, Forecast],
        *,
        snapshot: Mapping[str, ChannelSnapshot] | None = None,
    ) -> AgentResult[ResearchResult]:
        snapshot = snapshot or {}
        try:
            usable = self._usable_series(series)
        except DataUnavailable as exc:
            logger.info("research_data_unavailable", tenant=tenant.tenant_key, reason=str(exc))
            return self._heuristic_result(snapshot, reason=str(exc))

        candidates: list[Finding] = []
        for channel, values in usable.items():
            candidates.extend(self._iqr_findings(channel, values))
            trend = self._trend_finding(channel, values)
            if trend is not None:
                candidates.append(trend)

        winners = await self._winners(tenant)
        candidates.extend(self._opportunities(usable, forecasts, winners))

        verified = [finding for finding in candidates if self._fact_check(finding, usable[finding.channel])]
        dropped = len(candidates) - len(verified)
        if dropped:
            logger.info("research_findings_dropped", tenant=tenant.tenant_key, dropped=dropped)
        verified.sort(key=lambda finding: finding.score, reverse=True)
        findings = verified[: self.settings.max_findings]

        channels = set(series) | set(snapshot)
        coverage = len(usable) / max(1, len(channels))
        qualities = [
            forecasts[channel].confidence * (0.5 if forecasts[channel].degraded else 1.0)
            for channel in usable
            if channel in forecasts
        ]
        quality = fmean(qualities) if qualities else _NEUTRAL_SIMILARITY
        confidence = 100.0 * (0.35 + 0.45 * coverage + 0.2 * quality) - 3.0 * dropped

        notes: list[str] = []
        summary, narrated = await self._narrate(tenant, findings)
        if not narrated:
            notes.append("narrative summary generated from template")

        return AgentResult[ResearchResult](
            kind=AgentKind.RESEARCH,
            payload=ResearchResult(
                findings=findings,
                summary=summary,
                heuristic_only=False,
                dropped_findings=dropped,
            ),
            confidence=bounded_confidence(confidence),
            degraded=not narrated,
            notes=notes,
        )

    def _usable_series(self, series: Mapping[str, Sequence[float]]) -> dict[str, list[float]]:
        usable: dict[str, list[float]] = {}
        for channel, values in series.items():
            finite = [float(value) for value in values if math.isfinite(value)]
            if len(finite) >= self.settings.min_points:
                usable[channel] = finite
        if not usable:
            raise DataUnavailable(f"no channel has {self.settings.min_points} or more data points")
        return usable

    def _iqr_findings(self, channel: str, values: Sequence[float]) -> list[Finding]:
        q1, _, q3 = quantiles(values, n=4, method="inclusive")
        spread = q3 - q1
        lower = q1 - self.settings.iqr_multiplier * spread
        upper = q3 + self.settings.iqr_multiplier * spread
        centre = median(values)
        findings: list[Finding] = []
        for value in values:
            if lower <= value <= upper:
                continue
            excess = value - upper if value > upper else lower - value
            findings.append(
                Finding(
                    kind=FindingKind.ANOMALY,
                    channel=channel,
                    magnitude=_relative(value, centre),
                    score=min(1.0, excess / max(spread, 1e-9)),
                    statistic=FindingStatistic(name=StatisticName.IQR_BOUNDS, value=value, lower=lower, upper=upper),
                    observed=value,
                    description=f"{channel} ROAS {value:.2f} outside [{lower:.2f}, {upper:.2f}]",
                )
            )
        return findings

    def _latest_deviation(self, values: Sequence[float]) -> tuple[float, float]:
        """Return (z-score, relative magnitude) of the latest one-step residual."""
        smoothed = _smooth(values, self.settings.smoothing_alpha)
        residuals = [values[index] - smoothed[index - 1] for index in range(1, len(values))]
        history, latest = residuals[:-1], residuals[-1]
        centre = fmean(history)
        sigma = stdev(history) if len(history) > 1 else 0.0
        if abs(latest - centre) < 1e-12:
            z_score = 0.0
        else:
            floor = 1e-6 * max(1.0, abs(fmean(values)))
            z_score = (latest - centre) / max(sigma, floor)
        return z_score, _relative(values[-1], smoothed[-2])

    def _trend_finding(self, channel: str, values: Sequence[float]) -> Finding | None:
        threshold = self.settings.z_threshold
        z_score, magnitude = self._latest_deviation(values)
        if abs(z_score) <= threshold:
            return None
        kind = FindingKind.OPPORTUNITY if z_score > 0 else FindingKind.RISK
        direction = "above" if z_score > 0 else "below"
        return Finding(
            kind=kind,
            channel=channel,
            magnitude=magnitude,
            score=min(1.0, abs(z_score) / (2 * threshold)),
            statistic=FindingStatistic(name=StatisticName.Z_SCORE, value=z_score, lower=-threshold, upper=threshold),
            observed=values[-1],
            description=f"{channel} latest ROAS {values[-1]:.2f} is {abs(z_score):.1f} sigma {direction} trend",
        )

    def _opportunities(
        self,
        usable: Mapping[str, Sequence[float]],
        forecasts: Mapping[str, Forecast],
        winners: Sequence[HistoricalWinner],
    ) -> list[Finding]:
        findings: list[Finding] = []
        for channel, values in usable.items():
            forecast = forecasts.get(channel)
            latest = values[-1]
            if forecast is None or abs(latest) < 1e-9:
                continue
            uplift = (forecast.expected - latest) / abs(latest)
            if uplift <= 0:
                continue
            similarity = _winner_similarity(channel, latest, winners)
            findings.append(
                Finding(
                    kind=FindingKind.OPPORTUNITY,
                    channel=channel,
                    magnitude=uplift,
                    score=min(1.0, forecast.confidence * similarity * min(uplift, 1.0)),
                    statistic=FindingStatistic(
                        name=StatisticName.TREND_DEVIATION,
                        value=forecast.expected,
                        lower=forecast.lower_bound,
                        upper=forecast.upper_bound,
                    ),
                    observed=latest,
                    description=f"{channel} forecast ROAS {forecast.expected:.2f} vs {latest:.2f} now",
                )
            )
        return findings

    def _fact_check(self, finding: Finding, values: Sequence[float]) -> bool:
        if finding.observed is None or not _contains(values, finding.observed):
            return False
        if abs(finding.magnitude) > MAX_PLAUSIBLE_MAGNITUDE:
            return False
        if finding.kind is FindingKind.OPPORTUNITY and finding.magnitude <= 0:
            return False
        if finding.kind is FindingKind.RISK and finding.magnitude >= 0:
            return False
        statistic = finding.statistic
        if statistic is None:
            return False
        if statistic.name is StatisticName.IQR_BOUNDS:
            expected = _relative(finding.observed, median(values))
            return math.isclose(expected, finding.magnitude, rel_tol=1e-6, abs_tol=_TOLERANCE)
        if not math.isclose(finding.observed, values[-1], rel_tol=1e-9, abs_tol=1e-9):
            return False
        if statistic.name is StatisticName.Z_SCORE:
            _, expected = self._latest_deviation(values)
            return math.isclose(expected, finding.magnitude, rel_tol=1e-6, abs_tol=_TOLERANCE)
        return True

    async def _winners(self, tenant: TenantContext) -> list[HistoricalWinner]:
        if self.tenant_data is None:
            return list(tenant.historical_winners)
        return await self.tenant_data.get_historical_winners(tenant)

    def _heuristic_result(
        self,
        snapshot: Mapping[str, ChannelSnapshot],
        *,
        reason: str,
    ) -> AgentResult[ResearchResult]:
        findings: list[Finding] = []
        total_spend = sum(channel.spend for channel in snapshot.values())
        for channel, data in sorted(snapshot.items()):
            if data.spend > 0 and data.roas < 1.0:
                findings.append(
                    Finding(
                        kind=FindingKind.RISK,
                        channel=channel,
                        magnitude=data.roas - 1.0,
                        score=min(1.0, 1.0 - data.roas),
                        observed=data.roas,
                        description=f"{channel} is unprofitable at ROAS {data.roas:.2f}",
                    )
                )
            share = data.spend / total_spend if total_spend > 0 else 0.0
            if share > self.settings.concentration_share:
                findings.append(
                    Finding(
                        kind=FindingKind.RISK,
                        channel=channel,
                        metric="spend_share",
                        magnitude=-share,
                        score=min(1.0, share),
                        observed=share,
                        description=f"{channel} holds {share:.0%} of spend",
                    )
                )
        findings.sort(key=lambda finding: finding.score, reverse=True)
        ceiling = self.settings.degraded_ceiling
        confidence = ceiling if findings else ceiling / 2
        summary = (
            f"Historical data unavailable ({reason}); "
            f"{len(findings)} rule-based signal(s) derived from the live snapshot."
        )
        return AgentResult[ResearchResult](
            kind=AgentKind.RESEARCH,
            payload=ResearchResult(findings=findings[: self.settings.max_findings], summary=summary, heuristic_only=True),
            confidence=bounded_confidence(min(confidence, ceiling)),
            degraded=True,
            notes=[reason],
        )

    async def _narrate(self, tenant: TenantContext, findings: Sequence[Finding]) -> tuple[str, bool]:
        fallback = _template_summary(findings)
        if self.llm is None:
            return fallback, False
        lines = "\n".join(f"- [{finding.kind.value}] {finding.description}" for finding in findings[:6])
        prompt = (
            f"Brand: {tenant.brand_name}\n"
            f"Findings:\n{lines or '- no significant signals'}\n\n"
            "Write a two sentence situational summary for the media buyer. Do not invent numbers."
        )
        try:
            return await self.llm.generate(prompt), True
        except InferenceError as exc:
            logger.info("research_narrative_fallback", tenant=tenant.tenant_key, error=str(exc))
            return fallback, False


def _winner_similarity(channel: str, roas: float, winners: Sequence[HistoricalWinner]) -> float:
    matches = [winner for winner in winners if winner.platform == channel]
    if not matches:
        return _NEUTRAL_SIMILARITY
    best = 0.0
    for winner in matches:
        high = max(roas, winner.roas)
        if high > 0:
            best = max(best, min(roas, winner.roas) / high)
    return best


def _template_summary(findings: Sequence[Finding]) -> str:
    if not findings:
        return "No statistically significant anomalies, risks or opportunities detected."
    counts = {kind: sum(1 for finding in findings if finding.kind is kind) for kind in FindingKind}
    top = findings[0]
    return (
        f"{counts[FindingKind.OPPORTUNITY]} opportunity, {counts[FindingKind.RISK]} risk and "
        f"{counts[FindingKind.ANOMALY]} anomaly signal(s). Strongest: {top.description}."
    )
