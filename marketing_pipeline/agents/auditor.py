from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable

from pydantic import BaseModel, Field

from ..core.config import AuditorSettings
from ..core.errors import ComplianceViolation, HardPolicyViolation, InferenceError
from ..core.logging import get_logger
from ..core.metrics import increment_audit_verdict
from ..schemas.agents import (
    AgentKind,
    AgentResult,
    AuditResult,
    AuditVerdict,
    CreativeResult,
    CreativeVariant,
    RewriteHint,
    Violation,
    ViolationSeverity,
)
from ..schemas.tenant import TenantContext
from ..services.llm import InferenceService
from .base import bounded_confidence

logger = get_logger(name=__name__)

BRAND_SAFETY_TERMS: tuple[str, ...] = (
    "guaranteed results",
    "risk-free",
    "100% success",
    "no risk",
    "#1",
    "best in class",
    "cure",
    "heal",
    "financial freedom",
    "get rich",
    "miracle",
    "secret",
    "shocking truth",
    "act now or else",
    "once in a lifetime",
    "as seen on tv",
    "free gift",
    "winner",
    "double your",
    "triple your",
    "unlimited",
)

UNVERIFIED_CLAIMS: tuple[str, ...] = (
    "fda approved",
    "clinically proven",
    "doctor recommended",
    "scientifically proven",
    "certified",
    "licensed",
    "patented",
)

PLATFORM_POLICY_TERMS: dict[str, tuple[str, ...]] = {
    "google": ("click here", "call now", "buy now directly"),
    "meta": ("facebook", "instagram", "meta", "fb"),
    "tiktok": ("link in bio", "swipe up", "dm for details"),
    "linkedin": ("connect now", "follow for more"),
}

OFF_VOICE_PHRASES: tuple[str, ...] = ("lol", "omg", "dirt cheap", "insane deal", "hurry hurry")

_SEVERITY_WEIGHT = {
    ViolationSeverity.LOW: 5.0,
    ViolationSeverity.MEDIUM: 15.0,
    ViolationSeverity.HIGH: 30.0,
    ViolationSeverity.CRITICAL: 60.0,
}
_REPEATED_PUNCTUATION = re.compile(r"[!?]{2,}")
_SHOUTING = re.compile(r"\b[A-Z]{4,}\b")


def _term_pattern(term: str) -> re.Pattern[str]:
    return re.compile(rf"(?<!\w){re.escape(term)}(?!\w)", re.IGNORECASE)


def _variant_text(variant: CreativeVariant) -> str:
    return " ".join(part for part in (variant.headline, variant.body, variant.call_to_action) if part)


class _ToneReview(BaseModel):
    on_voice: bool
    issues: list[str] = Field(default_factory=list)


@dataclass(slots=True)
class _Findings:
    violations: list[Violation] = field(default_factory=list)
    hints: list[RewriteHint] = field(default_factory=list)
    reasoning: list[str] = field(default_factory=list)

    def add(
        self,
        rule_id: str,
        severity: ViolationSeverity,
        message: str,
        *,
        text: str | None = None,
        variant_index: int | None = None,
        hint: str | None = None,
    ) -> None:
        self.violations.append(
            Violation(rule_id=rule_id, severity=severity, message=message, text=text, variant_index=variant_index)
        )
        if hint is not None:
            self.hints.append(RewriteHint(rule_id=rule_id, message=hint, term=text, variant_index=variant_index))


@dataclass
class ComplianceAuditor:
    """Compliance gate for generated creatives.

    Checks run in a fixed order: the hard blocklist first (any hit fails the creative and
    sets the publish lock), then tone and brand voice, then structural platform limits.
    The latter two request a rewrite with hints rather than failing outright.
    """

    settings: AuditorSettings
    llm: InferenceService | None = None
    name: str = "auditor"

    async def audit(self, tenant: TenantContext, creative: CreativeResult) -> AgentResult[AuditResult]:
        findings = _Findings()
        degraded = False
        try:
            self._check_blocklist(tenant, creative, findings)
            degraded = await self._check_tone(tenant, creative, findings)
            self._check_structure(creative, findings)
            if findings.violations:
                raise ComplianceViolation(f"{len(findings.violations)} issue(s) need a rewrite")
        except HardPolicyViolation as exc:
            findings.reasoning.append(str(exc))
            result = self._build(AuditVerdict.FAIL, findings, publish_lock=True, degraded=degraded)
        except ComplianceViolation as exc:
            findings.reasoning.append(str(exc))
            result = self._build(AuditVerdict.NEEDS_REWRITE, findings, publish_lock=False, degraded=degraded)
        else:
            findings.reasoning.append("no blocklist, tone or structural issues found")
            result = self._build(AuditVerdict.PASS, findings, publish_lock=False, degraded=degraded)

        increment_audit_verdict(verdict=result.payload.verdict.value)
        logger.info(
            "auditor_verdict",
            tenant=tenant.tenant_key,
            verdict=result.payload.verdict.value,
            publish_lock=result.payload.publish_lock,
            risk_score=result.payload.risk_score,
            violations=[violation.rule_id for violation in result.payload.violations],
            reasoning=result.payload.reasoning,
            degraded=result.degraded,
        )
        return result

    def _blocklist(self, tenant: TenantContext, platform: str) -> Iterable[tuple[str, str, ViolationSeverity]]:
        for term in PLATFORM_POLICY_TERMS.get(platform, ()):
            yield f"platform_policy.{platform}", term, ViolationSeverity.HIGH
        for term in BRAND_SAFETY_TERMS:
            yield "brand_safety", term, ViolationSeverity.CRITICAL
        for term in UNVERIFIED_CLAIMS:
            yield "unverified_claim", term, ViolationSeverity.CRITICAL
        for term in (*tenant.blocked_terms, *self.settings.extra_blocklist):
            yield "tenant_blocklist", term, ViolationSeverity.HIGH

    def _check_blocklist(self, tenant: TenantContext, creative: CreativeResult, findings: _Findings) -> None:
        for index, variant in enumerate(creative.variants):
            text = _variant_text(variant)
            for rule_id, term, severity in self._blocklist(tenant, variant.platform):
                if _term_pattern(term).search(text):
                    findings.add(
                        rule_id,
                        severity,
                        f"'{term}' is not allowed on {variant.platform}",
                        text=term,
                        variant_index=index,
                        hint=f"Remove '{term}'",
                    )
        if findings.violations:
            terms = sorted({violation.text or "" for violation in findings.violations})
            raise HardPolicyViolation(f"blocklisted terms present: {', '.join(terms)}")

    async def _check_tone(self, tenant: TenantContext, creative: CreativeResult, findings: _Findings) -> bool:
        """Run the tone check; returns True when the heuristic path had to be used."""
        if self.llm is not None and creative.variants:
            copy = "\n".join(f"{index}: {_variant_text(variant)}" for index, variant in enumerate(creative.variants))
            prompt = (
                f"Brand voice guidelines for {tenant.brand_name}: {tenant.brand_voice or 'professional and friendly'}\n"
                f"Ad copy:\n{copy}\n"
                'Respond with JSON: {"on_voice": true|false, "issues": ["..."]}'
            )
            try:
                review = await self.llm.generate_json(prompt, _ToneReview)
            except InferenceError as exc:
                logger.info("auditor_tone_fallback", tenant=tenant.tenant_key, error=str(exc))
            else:
                if not review.on_voice:
                    for issue in review.issues or ["copy does not match the brand voice"]:
                        findings.add("tone.brand_voice", ViolationSeverity.MEDIUM, issue, hint=issue)
                self._heuristic_tone(creative, findings)
                return False
        self._heuristic_tone(creative, findings)
        return True

    def _heuristic_tone(self, creative: CreativeResult, findings: _Findings) -> None:
        for index, variant in enumerate(creative.variants):
            text = _variant_text(variant)
            shouting = _SHOUTING.findall(text)
            if len(shouting) > self.settings.caps_word_limit:
                findings.add(
                    "tone.shouting",
                    ViolationSeverity.LOW,
                    f"{len(shouting)} all-caps words",
                    variant_index=index,
                    hint="Use sentence case instead of all-caps words",
                )
            if _REPEATED_PUNCTUATION.search(text):
                findings.add(
                    "tone.punctuation",
                    ViolationSeverity.LOW,
                    "repeated punctuation",
                    variant_index=index,
                    hint="Use a single exclamation or question mark",
                )
            for phrase in OFF_VOICE_PHRASES:
                if _term_pattern(phrase).search(text):
                    findings.add(
                        "tone.off_voice",
                        ViolationSeverity.MEDIUM,
                        f"'{phrase}' is off brand voice",
                        text=phrase,
                        variant_index=index,
                        hint=f"Replace '{phrase}' with on-voice wording",
                    )

    def _check_structure(self, creative: CreativeResult, findings: _Findings) -> None:
        if not creative.variants:
            findings.add("structure.empty", ViolationSeverity.HIGH, "creative has no variants", hint="Provide at least one variant")
            return
        for index, variant in enumerate(creative.variants):
            if not variant.headline.strip() or not variant.body.strip():
                findings.add(
                    "structure.missing_copy",
                    ViolationSeverity.HIGH,
                    "headline and body are required",
                    variant_index=index,
                    hint="Write both a headline and body",
                )
            for problem in variant.limit_violations():
                findings.add(
                    "structure.platform_limits",
                    ViolationSeverity.MEDIUM,
                    f"{variant.platform}: {problem}",
                    variant_index=index,
                    hint=f"Shorten the {variant.platform} copy: {problem}",
                )

    def _build(
        self,
        verdict: AuditVerdict,
        findings: _Findings,
        *,
        publish_lock: bool,
        degraded: bool,
    ) -> AgentResult[AuditResult]:
        risk_score = min(100.0, sum(_SEVERITY_WEIGHT[violation.severity] for violation in findings.violations))
        if verdict is AuditVerdict.FAIL:
            confidence = 95.0
        else:
            confidence = 95.0 - 0.5 * risk_score - (10.0 if degraded else 0.0)
        return AgentResult[AuditResult](
            kind=AgentKind.AUDIT,
            payload=AuditResult(
                verdict=verdict,
                publish_lock=publish_lock,
                violations=list(findings.violations),
                rewrite_hints=list(findings.hints),
                risk_score=risk_score,
                reasoning=list(findings.reasoning),
            ),
            confidence=bounded_confidence(confidence),
            degraded=degraded,
            notes=["tone checked heuristically"] if degraded else [],
        )
