"""
Deterministic risk classification of screening findings.

Rules:
- requires_review = pep OR sanctions OR identity verification failed
  OR (adverse media AND match count > adverse_media_threshold)
- tier = provider tier, escalated to HIGH on pep or sanctions
- alert category = RISK_ESCALATION for pep, sanctions or identity
  verification failure; ADVERSE_MEDIA when adverse media is the only cause
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from database.models import CaseReason, RiskTier
from screening.provider import ProviderResult

logger = logging.getLogger(__name__)

DEFAULT_ADVERSE_MEDIA_THRESHOLD = 2


@dataclass(frozen=True)
class ClassifiedResult:
    """Classifier output handed to case escalation"""
    requires_review: bool
    tier: RiskTier
    findings: Tuple[str, ...]
    category: Optional[CaseReason] = None
    pep: bool = False
    sanctions: bool = False
    adverse_media: bool = False
    identity_verification_failed: bool = False

    @property
    def match_count(self) -> int:
        return len(self.findings)

    def alert_summary(self) -> str:
        """Human-readable list of the alert conditions that fired."""
        parts = []
        if self.pep:
            parts.append("PEP match detected")
        if self.sanctions:
            parts.append("Sanctions list match found")
        if self.identity_verification_failed:
            parts.append("Identity verification failed")
        if self.adverse_media:
            parts.append("Adverse media references identified")
        return ", ".join(parts) or "No alerts"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requiresReview": self.requires_review,
            "tier": self.tier.value,
            "category": self.category.value if self.category else None,
            "findings": list(self.findings),
        }


class RiskClassifier:
    """Turns provider findings into a tier and a review decision."""

    def __init__(self, adverse_media_threshold: int = DEFAULT_ADVERSE_MEDIA_THRESHOLD):
        if adverse_media_threshold < 0:
            raise ValueError("adverse_media_threshold cannot be negative")
        self.adverse_media_threshold = adverse_media_threshold

    def classify(self, result: ProviderResult) -> ClassifiedResult:
        findings = tuple(result.findings)
        adverse_media_alert = (
            result.adverse_media and len(findings) > self.adverse_media_threshold
        )
        requires_review = (
            result.pep
            or result.sanctions
            or result.identity_verification_failed
            or adverse_media_alert
        )

        tier = result.risk_tier
        if result.pep or result.sanctions:
            tier = RiskTier.HIGH

        category = None
        if result.pep or result.sanctions or result.identity_verification_failed:
            category = CaseReason.RISK_ESCALATION
        elif adverse_media_alert:
            category = CaseReason.ADVERSE_MEDIA

        return ClassifiedResult(
            requires_review=requires_review,
            tier=tier,
            findings=findings,
            category=category,
            pep=result.pep,
            sanctions=result.sanctions,
            adverse_media=result.adverse_media,
            identity_verification_failed=result.identity_verification_failed,
        )
