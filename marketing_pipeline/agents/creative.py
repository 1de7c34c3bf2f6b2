from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Mapping, Sequence

from pydantic import BaseModel, Field

from ..core.config import CreativeSettings
from ..core.errors import InferenceError
from ..core.logging import get_logger
from ..schemas.agents import (
    DEFAULT_PLATFORM_CONSTRAINTS,
    FALLBACK_PLATFORM_CONSTRAINTS,
    AgentKind,
    AgentResult,
    BudgetAllocation,
    CreativeResult,
    CreativeSource,
    CreativeVariant,
    FindingKind,
    PlatformConstraints,
    ResearchResult,
    RewriteHint,
)
from ..schemas.tenant import TenantContext
from ..services.llm import InferenceService
from .base import bounded_confidence

logger = get_logger(name=__name__)

_HEADLINE_TEMPLATES = (
    "{brand}: built for you",
    "Discover {brand}",
    "Why teams choose {brand}",
    "See what's new at {brand}",
)
_BODY_TEMPLATES = (
    "{brand} helps you get more from every visit. {angle}",
    "Join customers who rely on {brand}. {angle}",
)
_CALLS_TO_ACTION = ("Learn More", "Shop Now", "Get Started", "See Details")
_REPEATED_PUNCTUATION = re.compile(r"([!?])[!?]+")
_SHOUTING = re.compile(r"\b[A-Z]{4,}\b")


class _DraftCopy(BaseModel):
    headline: str = Field(..., min_length=1)
    body: str = Field(..., min_length=1)
    call_to_action: str = ""


def _trim(text: str, limit: int) -> str:
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    cut = text[:limit].rsplit(" ", 1)[0].rstrip(" ,;:-")
    return cut or text[:limit]


def _scrub(text: str, terms: Sequence[str]) -> str:
    for term in terms:
        text = re.sub(rf"(?<!\w){re.escape(term)}(?!\w)", "", text, flags=re.IGNORECASE)
    text = _REPEATED_PUNCTUATION.sub(r"\1", text)
    text = _SHOUTING.sub(lambda match: match.group(0).capitalize(), text)
    return " ".join(text.split())


def _score(variant: CreativeVariant, brand_name: str) -> float:
    limits = variant.constraints
    fill = min(1.0, len(variant.headline) / limits.headline_max)
    branded = 1.0 if brand_name.lower() in f"{variant.headline} {variant.body}".lower() else 0.0
    has_cta = 1.0 if variant.call_to_action else 0.0
    return round(0.4 * fill + 0.35 * branded + 0.25 * has_cta, 4)


@dataclass
class PlatformCreative:
    """Platform-constrained ad copy generator.

    Drafts come from the inference client when it is reachable; a draft that breaks a
    platform's hard limits is regenerated up to ``max_regenerations`` times and then dropped.
    When inference is unavailable every platform gets deterministic template copy instead.
    """

    settings: CreativeSettings
    llm: InferenceService | None = None
    name: str = "creative"

    async def generate(
        self,
        tenant: TenantContext,
        allocation: BudgetAllocation,
        platform_constraints: Mapping[str, PlatformConstraints],
        *,
        research: ResearchResult | None = None,
        hints: Sequence[RewriteHint] = (),
        platforms: Sequence[str] | None = None,
    ) -> AgentResult[CreativeResult]:
        targets = list(platforms) if platforms is not None else [
            item.channel for item in allocation.channels if item.proposed_spend > 0
        ]
        limits = {platform: self._constraints(platform, platform_constraints) for platform in targets}
        avoid = sorted({hint.term for hint in hints if hint.term})

        if self.llm is not None and targets:
            try:
                variants, dropped = await self._from_model(tenant, limits, research, hints)
            except InferenceError as exc:
                logger.info("creative_template_fallback", tenant=tenant.tenant_key, error=str(exc))
            else:
                return self._result(tenant, variants, dropped, CreativeSource.MODEL, degraded=False)

        variants = self._from_templates(tenant, limits, research, avoid)
        notes = "inference unavailable" if self.llm is not None else "no inference client configured"
        return self._result(tenant, variants, 0, CreativeSource.TEMPLATE, degraded=True, notes=[notes])

    @staticmethod
    def _constraints(platform: str, overrides: Mapping[str, PlatformConstraints]) -> PlatformConstraints:
        return overrides.get(platform) or DEFAULT_PLATFORM_CONSTRAINTS.get(platform) or FALLBACK_PLATFORM_CONSTRAINTS

    async def _from_model(
        self,
        tenant: TenantContext,
        limits: Mapping[str, PlatformConstraints],
        research: ResearchResult | None,
        hints: Sequence[RewriteHint],
    ) -> tuple[list[CreativeVariant], int]:
        variants: list[CreativeVariant] = []
        dropped = 0
        angle = _angle(research)
        hint_lines = "\n".join(f"- {hint.message}" for hint in hints)
        for platform, constraints in limits.items():
            for index in range(self.settings.variants_per_platform):
                feedback: list[str] = []
                accepted: CreativeVariant | None = None
                for attempt in range(self.settings.max_regenerations + 1):
                    prompt = (
                        f"Write ad copy variant {index + 1} for {tenant.brand_name} on {platform}.\n"
                        f"Brand voice: {tenant.brand_voice or 'clear, confident, friendly'}\n"
                        f"Angle: {angle}\n"
                        f"Hard limits: headline <= {constraints.headline_max} chars, "
                        f"body <= {constraints.body_max} chars.\n"
                        + (f"Reviewer feedback to address:\n{hint_lines}\n" if hint_lines else "")
                        + (f"Previous draft problems: {'; '.join(feedback)}\n" if feedback else "")
                        + 'Respond with JSON: {"headline": "...", "body": "...", "call_to_action": "..."}'
                    )
                    draft = await self.llm.generate_json(prompt, _DraftCopy, temperature=self.settings.temperature)
                    candidate = CreativeVariant(
                        platform=platform,
                        headline=draft.headline.strip(),
                        body=draft.body.strip(),
                        call_to_action=draft.call_to_action.strip(),
                        assets=[f"{platform}:primary"][: constraints.max_assets],
                        constraints=constraints,
                    )
                    feedback = candidate.limit_violations()
                    if not feedback:
                        accepted = candidate
                        break
                    logger.debug(
                        "creative_draft_rejected",
                        platform=platform,
                        attempt=attempt + 1,
                        problems=feedback,
                    )
                if accepted is None:
                    dropped += 1
                    logger.info("creative_variant_dropped", platform=platform, tenant=tenant.tenant_key)
                    continue
                variants.append(accepted.model_copy(update={"score": _score(accepted, tenant.brand_name)}))
        return variants, dropped

    def _from_templates(
        self,
        tenant: TenantContext,
        limits: Mapping[str, PlatformConstraints],
        research: ResearchResult | None,
        avoid: Sequence[str],
    ) -> list[CreativeVariant]:
        brand = tenant.brand_name
        angle = _angle(research)
        variants: list[CreativeVariant] = []
        for platform, constraints in limits.items():
            for index in range(self.settings.variants_per_platform):
                headline = _HEADLINE_TEMPLATES[index % len(_HEADLINE_TEMPLATES)].format(brand=brand)
                body = _BODY_TEMPLATES[index % len(_BODY_TEMPLATES)].format(brand=brand, angle=angle)
                variant = CreativeVariant(
                    platform=platform,
                    headline=_trim(_scrub(headline, avoid), constraints.headline_max),
                    body=_trim(_scrub(body, avoid), constraints.body_max),
                    call_to_action=_CALLS_TO_ACTION[index % len(_CALLS_TO_ACTION)],
                    assets=[f"{platform}:primary"][: constraints.max_assets],
                    constraints=constraints,
                )
                variants.append(variant.model_copy(update={"score": _score(variant, brand)}))
        return variants

    def _result(
        self,
        tenant: TenantContext,
        variants: list[CreativeVariant],
        dropped: int,
        source: CreativeSource,
        *,
        degraded: bool,
        notes: list[str] | None = None,
    ) -> AgentResult[CreativeResult]:
        if variants:
            mean_score = sum(variant.score for variant in variants) / len(variants)
            confidence = 100.0 * (0.5 + 0.5 * mean_score) * (0.8 if degraded else 1.0)
        else:
            confidence = 0.0
        logger.info(
            "creative_generated",
            tenant=tenant.tenant_key,
            variants=len(variants),
            dropped=dropped,
            source=source.value,
        )
        return AgentResult[CreativeResult](
            kind=AgentKind.CREATIVE,
            payload=CreativeResult(variants=variants, dropped=dropped, source=source),
            confidence=bounded_confidence(confidence),
            degraded=degraded,
            notes=notes or [],
        )


def _angle(research: ResearchResult | None) -> str:
    if research is not None:
        for finding in research.findings:
            if finding.kind is FindingKind.OPPORTUNITY:
                return "Made for the way you work."
        if research.findings:
            return "Simple to start and easy to love."
    return "Quality you can count on."
