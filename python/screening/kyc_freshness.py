"""
KYC freshness evaluation and verification reuse.

Two independent questions are answered here:
- can_reuse: may a prior passing verification stand in for a new one
  right now (fixed window, independent of risk tier)
- should_refresh: is it time to proactively re-verify (tier-dependent)

The two can disagree; a HIGH-tier entity verified 65 days ago may be
reused but is also due for refresh.

KycFreshnessEvaluator is pure. KycReuseService loads history through the
repositories and records reuse decisions in the audit trail.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from database.models import AuditAction, KycOutcome, RiskTier, ensure_utc, utcnow
from database.repositories import (
    DealRepository, EntityRepository, KycRepository, NotFoundError
)

logger = logging.getLogger(__name__)

VALID_DAYS = 90
REVIEW_DAYS = 365

DEFAULT_REFRESH_DAYS = {
    RiskTier.HIGH: 60,
    RiskTier.MEDIUM: 180,
    RiskTier.LOW: 365,
}

KYC_SOURCE_CURRENT_DEAL = "current_deal"
KYC_SOURCE_PREVIOUS_DEAL = "previous_deal"
KYC_SOURCE_ENTITY_PROFILE = "entity_profile"


@dataclass(frozen=True)
class KycStatus:
    """Reuse and refresh status of an entity's verification"""
    has_valid_kyc: bool
    last_kyc_date: Optional[datetime] = None
    days_ago: Optional[int] = None
    can_reuse: bool = False
    refresh_required: bool = True
    kyc_source: str = KYC_SOURCE_ENTITY_PROFILE
    kyc_record_id: Optional[UUID] = None
    deal_id: Optional[UUID] = None
    deal_address: Optional[str] = None
    entity_id: Optional[UUID] = None
    entity_name: Optional[str] = None
    risk_tier: Optional[RiskTier] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "has_valid_kyc": self.has_valid_kyc,
            "last_kyc_date": self.last_kyc_date.isoformat() if self.last_kyc_date else None,
            "days_ago": self.days_ago,
            "can_reuse": self.can_reuse,
            "refresh_required": self.refresh_required,
            "kyc_source": self.kyc_source,
            "kyc_record_id": str(self.kyc_record_id) if self.kyc_record_id else None,
            "deal_address": self.deal_address,
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "entity_name": self.entity_name,
            "risk_tier": self.risk_tier.value if self.risk_tier else None,
        }


class KycFreshnessEvaluator:
    """Pure evaluation over an entity's verification history."""

    def __init__(
        self,
        reuse_window_days: int = VALID_DAYS,
        review_window_days: int = REVIEW_DAYS,
        refresh_days: Optional[Dict[Any, int]] = None
    ):
        self.reuse_window_days = reuse_window_days
        self.review_window_days = review_window_days
        self.refresh_days = dict(DEFAULT_REFRESH_DAYS)
        for tier, days in (refresh_days or {}).items():
            self.refresh_days[RiskTier(tier)] = days

    @classmethod
    def from_config(cls, kyc_config) -> 'KycFreshnessEvaluator':
        return cls(
            reuse_window_days=kyc_config.reuse_window_days,
            review_window_days=kyc_config.review_window_days,
            refresh_days=kyc_config.refresh_days,
        )

    @staticmethod
    def days_between(now: datetime, then: datetime) -> int:
        """Whole days elapsed; records stamped in the future count as 0."""
        return max(0, (ensure_utc(now) - ensure_utc(then)).days)

    def evaluate(
        self,
        history: Iterable[Any],
        risk_tier: Optional[RiskTier] = None,
        now: Optional[datetime] = None,
        current_deal_id: Optional[UUID] = None
    ) -> KycStatus:
        """
        Compute KycStatus from verification history.

        Args:
            history: Records exposing outcome, created_at, id and deal_id
            risk_tier: Entity tier, echoed into the status
            now: Evaluation instant (defaults to current UTC time)
            current_deal_id: Deal being assessed, used to label the source

        Returns:
            KycStatus
        """
        passing = [r for r in history if r.outcome == KycOutcome.PASS]
        if not passing:
            return KycStatus(
                has_valid_kyc=False,
                can_reuse=False,
                refresh_required=True,
                risk_tier=risk_tier,
            )

        latest = max(passing, key=lambda r: ensure_utc(r.created_at))
        last_date = ensure_utc(latest.created_at)
        days_ago = self.days_between(now or utcnow(), last_date)

        record_deal_id = getattr(latest, "deal_id", None)
        if current_deal_id is not None and record_deal_id == current_deal_id:
            source = KYC_SOURCE_CURRENT_DEAL
        elif record_deal_id is not None:
            source = KYC_SOURCE_PREVIOUS_DEAL
        else:
            source = KYC_SOURCE_ENTITY_PROFILE

        return KycStatus(
            has_valid_kyc=True,
            last_kyc_date=last_date,
            days_ago=days_ago,
            can_reuse=days_ago <= self.reuse_window_days,
            refresh_required=days_ago > self.review_window_days,
            kyc_source=source,
            kyc_record_id=latest.id,
            deal_id=record_deal_id,
            risk_tier=risk_tier,
        )

    def should_refresh(self, status: KycStatus, risk_tier: RiskTier) -> bool:
        """Tier-dependent staleness check, orthogonal to can_reuse."""
        if not status.has_valid_kyc:
            return True
        return status.days_ago > self.refresh_days[RiskTier(risk_tier)]

    def refresh_priority(self, status: KycStatus, risk_tier: RiskTier) -> RiskTier:
        """Worklist priority for an entity due for refresh."""
        if not status.has_valid_kyc:
            return RiskTier.HIGH
        if risk_tier == RiskTier.HIGH or status.days_ago > self.review_window_days:
            return RiskTier.HIGH
        if risk_tier == RiskTier.MEDIUM or status.days_ago > self.refresh_days[RiskTier.MEDIUM]:
            return RiskTier.MEDIUM
        return RiskTier.LOW


@dataclass(frozen=True)
class RefreshItem:
    """Entry in the KYC refresh worklist"""
    entity_id: UUID
    entity_name: str
    risk_tier: RiskTier
    priority: RiskTier
    status: KycStatus

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_id": str(self.entity_id),
            "entity_name": self.entity_name,
            "risk_tier": self.risk_tier.value,
            "priority": self.priority.value,
            "kyc_status": self.status.to_dict(),
        }


class KycReuseService:
    """
    Persistence-backed KYC reuse queries.

    Usage:
        with db_provider.session_scope() as session:
            service = KycReuseService(session, evaluator, audit_recorder)
            status = service.get_kyc_status(entity_id, deal_id)
    """

    def __init__(
        self,
        session: Session,
        evaluator: Optional[KycFreshnessEvaluator] = None,
        audit_recorder=None
    ):
        self.session = session
        self.evaluator = evaluator or KycFreshnessEvaluator()
        self.audit_recorder = audit_recorder
        self._entities = EntityRepository(session)
        self._kyc = KycRepository(session)
        self._deals = DealRepository(session)

    def get_kyc_status(
        self,
        entity_id: UUID,
        current_deal_id: Optional[UUID] = None,
        now: Optional[datetime] = None
    ) -> KycStatus:
        """
        KycStatus for an entity, optionally in the context of a deal.

        Raises:
            EntityNotFoundError: If entity not found
        """
        entity = self._entities.require(entity_id)
        status = self.evaluator.evaluate(
            self._kyc.history(entity.id),
            risk_tier=entity.risk_tier,
            now=now,
            current_deal_id=current_deal_id,
        )

        deal_address = None
        if status.deal_id is not None:
            deal = self._deals.get_by_id(status.deal_id)
            deal_address = deal.address if deal else None

        return replace(
            status,
            entity_id=entity.id,
            entity_name=entity.display_name or "Unknown",
            deal_address=deal_address,
        )

    def should_refresh_kyc(self, status: KycStatus, risk_tier: RiskTier) -> bool:
        return self.evaluator.should_refresh(status, risk_tier)

    def get_deal_kyc_status(
        self,
        deal_id: UUID,
        now: Optional[datetime] = None
    ) -> Dict[UUID, KycStatus]:
        """
        KycStatus for every party of a deal linked to an entity.

        Raises:
            DealNotFoundError: If deal not found
        """
        deal = self._deals.require(deal_id)

        statuses: Dict[UUID, KycStatus] = {}
        for party in deal.parties:
            if party.entity_id is None or party.entity_id in statuses:
                continue
            try:
                statuses[party.entity_id] = self.get_kyc_status(party.entity_id, deal.id, now=now)
            except NotFoundError as e:
                logger.error(f"Error getting KYC status for entity {party.entity_id}: {e}")
        return statuses

    def entities_needing_refresh(
        self,
        org_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> List[RefreshItem]:
        """
        Entities due for re-verification, most urgent first.

        Sorted by priority, then by staleness (never-verified first).
        """
        items = []
        for entity in self._entities.list_active(org_id):
            status = self.get_kyc_status(entity.id, now=now)
            if not self.evaluator.should_refresh(status, entity.risk_tier):
                continue
            items.append(RefreshItem(
                entity_id=entity.id,
                entity_name=status.entity_name,
                risk_tier=entity.risk_tier,
                priority=self.evaluator.refresh_priority(status, entity.risk_tier),
                status=status,
            ))

        def sort_key(item: RefreshItem):
            staleness = item.status.days_ago if item.status.has_valid_kyc else float("inf")
            return (-item.priority.rank, -staleness)

        return sorted(items, key=sort_key)

    def record_kyc_reuse(
        self,
        entity_id: UUID,
        deal_id: UUID,
        kyc_record_id: UUID,
        actor_id: Optional[str] = None
    ) -> None:
        """
        Record that a prior verification was reused for a deal.

        Raises:
            EntityNotFoundError: If entity not found
        """
        entity = self._entities.require(entity_id)
        if self.audit_recorder is None:
            logger.warning("No audit recorder configured; KYC reuse for %s not recorded", entity_id)
            return
        self.audit_recorder.record(
            AuditAction.KYC_REUSED,
            "Entity",
            str(entity.id),
            {
                "dealId": str(deal_id),
                "originalKycCheckId": str(kyc_record_id),
                "reason": "Valid KYC found and reused",
            },
            actor_id=actor_id,
            org_id=entity.org_id,
        )
