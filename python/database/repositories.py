"""
Repository Pattern for KYC Screening Database Operations

Provides clean data access layer with proper typing and error handling.
Repositories flush but never commit; transaction boundaries belong to the caller.
"""

import logging
from typing import List, Optional, Dict, Any, Tuple, Iterable
from uuid import UUID
from datetime import datetime

from sqlalchemy import select, func, and_, case
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError, IntegrityError

from database.models import (
    Entity,
    Deal,
    Party,
    User,
    KycRecord,
    ScreeningRecord,
    Case,
    CaseNote,
    AuditEvent,
    KycOutcome,
    RiskTier,
    CaseReason,
    CaseStatus,
    CasePriority,
    PartyRole,
    UserRole,
    utcnow,
)

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class NotFoundError(RepositoryError):
    """Raised when a record is not found."""
    pass


class EntityNotFoundError(NotFoundError):
    """Raised when an entity is not found."""
    pass


class CaseNotFoundError(NotFoundError):
    """Raised when a case is not found."""
    pass


class DealNotFoundError(NotFoundError):
    """Raised when a deal is not found."""
    pass


class DuplicateRecordError(RepositoryError):
    """Raised when attempting to create a duplicate record."""
    pass


class PersistenceError(RepositoryError):
    """Raised when a primary record cannot be written."""
    pass


def _as_uuid(value) -> Optional[UUID]:
    """Accept UUIDs or their string form for primary key lookups."""
    if value is None or isinstance(value, UUID):
        return value
    return UUID(str(value))


def _flush(session: Session, what: str) -> None:
    try:
        session.flush()
    except IntegrityError as e:
        raise DuplicateRecordError(f"{what} violates a constraint: {e.orig}") from e
    except SQLAlchemyError as e:
        raise PersistenceError(f"Failed to write {what}: {e}") from e


# Key attributes whose change warrants re-screening
ENTITY_FIELDS = (
    "kind", "full_name", "legal_name", "date_of_birth", "country",
    "org_identifier", "industry", "jurisdiction", "org_id",
)


# ============================================
# ENTITY REPOSITORY
# ============================================

class EntityRepository:
    """Repository for entity operations."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, entity_data: Dict[str, Any]) -> Entity:
        """
        Create a new entity.

        Args:
            entity_data: Dictionary containing entity fields

        Returns:
            Created Entity instance
        """
        data = {k: v for k, v in entity_data.items() if k in ENTITY_FIELDS or k == "risk_tier"}
        entity = Entity(**data)
        self.session.add(entity)
        _flush(self.session, "entity")

        logger.debug(f"Created entity: {entity.id} ({entity.display_name})")
        return entity

    def get_by_id(self, entity_id: UUID) -> Optional[Entity]:
        """Get entity by ID."""
        return self.session.get(Entity, _as_uuid(entity_id))

    def require(self, entity_id: UUID) -> Entity:
        """
        Get entity by ID or raise.

        Raises:
            EntityNotFoundError: If entity not found
        """
        entity = self.get_by_id(entity_id)
        if entity is None:
            raise EntityNotFoundError(f"Entity not found: {entity_id}")
        return entity

    def update(
        self,
        entity_id: UUID,
        updates: Dict[str, Any]
    ) -> Tuple[Entity, List[str]]:
        """
        Update identifying fields of an entity.

        Risk tier is not updatable here; it only moves through classification.

        Args:
            entity_id: UUID of entity to update
            updates: Dictionary of fields to update

        Returns:
            Tuple of (updated entity, names of fields whose value changed)

        Raises:
            EntityNotFoundError: If entity not found
        """
        entity = self.require(entity_id)

        changed = []
        for key, value in updates.items():
            if key not in ENTITY_FIELDS:
                continue
            if getattr(entity, key) != value:
                setattr(entity, key, value)
                changed.append(key)

        if changed:
            _flush(self.session, "entity")
        return entity, changed

    def set_risk_tier(self, entity: Entity, tier: RiskTier) -> None:
        entity.risk_tier = tier
        _flush(self.session, "entity risk tier")

    def mark_screened(self, entity: Entity, record: ScreeningRecord) -> None:
        """Point the entity at its most recent screening record."""
        entity.last_screening_id = record.id
        entity.last_screened_at = record.created_at
        _flush(self.session, "entity screening reference")

    def supersede(self, entity_id: UUID, replacement_id: UUID) -> Entity:
        entity = self.require(entity_id)
        entity.superseded_by_id = replacement_id
        _flush(self.session, "entity supersession")
        return entity

    def select_stale(self, cutoff: Optional[datetime], limit: int) -> List[UUID]:
        """
        Select entity ids due for batch screening.

        Entities never screened come first, then oldest screening first.
        Superseded entities are skipped.

        Args:
            cutoff: Entities screened at or after this instant are excluded
            limit: Maximum number of ids to return

        Returns:
            Ordered list of entity ids
        """
        never_screened_first = case((Entity.last_screened_at.is_(None), 0), else_=1)

        query = select(Entity.id).where(Entity.superseded_by_id.is_(None))
        if cutoff is not None:
            query = query.where(
                (Entity.last_screened_at.is_(None)) | (Entity.last_screened_at < cutoff)
            )
        query = query.order_by(
            never_screened_first,
            Entity.last_screened_at.asc(),
            Entity.created_at.asc()
        ).limit(limit)

        return list(self.session.execute(query).scalars().all())

    def list_active(self, org_id: Optional[str] = None) -> List[Entity]:
        query = select(Entity).where(Entity.superseded_by_id.is_(None))
        if org_id:
            query = query.where(Entity.org_id == org_id)
        query = query.order_by(Entity.created_at.asc())
        return list(self.session.execute(query).scalars().all())


# ============================================
# KYC REPOSITORY
# ============================================

class KycRepository:
    """Repository for identity verification records."""

    def __init__(self, session: Session):
        self.session = session

    def create(
        self,
        entity_id: UUID,
        outcome: KycOutcome,
        document_type: Optional[str] = None,
        deal_id: Optional[UUID] = None,
        party_id: Optional[UUID] = None,
        created_at: Optional[datetime] = None
    ) -> KycRecord:
        """
        Append a verification attempt and point the entity at it.

        Raises:
            EntityNotFoundError: If entity not found
        """
        entity = EntityRepository(self.session).require(entity_id)

        record = KycRecord(
            entity_id=entity.id,
            outcome=outcome,
            document_type=document_type,
            deal_id=deal_id,
            party_id=party_id,
            created_at=created_at or utcnow()
        )
        self.session.add(record)
        _flush(self.session, "KYC record")

        entity.last_kyc_id = record.id
        _flush(self.session, "entity KYC reference")
        return record

    def history(self, entity_id: UUID) -> List[KycRecord]:
        """All verification attempts for an entity, oldest first."""
        query = (
            select(KycRecord)
            .where(KycRecord.entity_id == _as_uuid(entity_id))
            .order_by(KycRecord.created_at.asc())
        )
        return list(self.session.execute(query).scalars().all())

    def get_by_id(self, record_id: UUID) -> Optional[KycRecord]:
        return self.session.get(KycRecord, _as_uuid(record_id))


# ============================================
# SCREENING REPOSITORY
# ============================================

class ScreeningRepository:
    """Repository for screening records."""

    def __init__(self, session: Session):
        self.session = session

    def create(
        self,
        entity_id: UUID,
        pep: bool,
        sanctions: bool,
        adverse_media: bool,
        identity_verification_failed: bool,
        provider_tier: RiskTier,
        findings: Iterable[str],
        raw_payload: Optional[Dict[str, Any]] = None,
        trigger: Optional[str] = None
    ) -> ScreeningRecord:
        """
        Persist one screening attempt's findings.

        Raises:
            PersistenceError: If the record cannot be written
        """
        record = ScreeningRecord(
            entity_id=entity_id,
            pep=pep,
            sanctions=sanctions,
            adverse_media=adverse_media,
            identity_verification_failed=identity_verification_failed,
            provider_tier=provider_tier,
            findings=list(findings),
            raw_payload=raw_payload,
            trigger=trigger,
            created_at=utcnow()
        )
        self.session.add(record)
        _flush(self.session, "screening record")
        return record

    def latest(self, entity_id: UUID) -> Optional[ScreeningRecord]:
        query = (
            select(ScreeningRecord)
            .where(ScreeningRecord.entity_id == _as_uuid(entity_id))
            .order_by(ScreeningRecord.created_at.desc())
            .limit(1)
        )
        return self.session.execute(query).scalars().first()

    def list_for_entity(self, entity_id: UUID) -> List[ScreeningRecord]:
        query = (
            select(ScreeningRecord)
            .where(ScreeningRecord.entity_id == _as_uuid(entity_id))
            .order_by(ScreeningRecord.created_at.desc())
        )
        return list(self.session.execute(query).scalars().all())

    def count_for_entity(self, entity_id: UUID) -> int:
        query = select(func.count()).select_from(ScreeningRecord).where(
            ScreeningRecord.entity_id == _as_uuid(entity_id)
        )
        return self.session.execute(query).scalar_one()


# ============================================
# CASE REPOSITORY
# ============================================

class CaseRepository:
    """Repository for compliance cases and their notes."""

    def __init__(self, session: Session):
        self.session = session

    def create(
        self,
        entity_id: UUID,
        title: str,
        reason: CaseReason,
        priority: CasePriority,
        auto_created: bool = False,
        deal_id: Optional[UUID] = None,
        created_by_id: Optional[UUID] = None,
        assigned_to_id: Optional[UUID] = None,
        org_id: Optional[str] = None
    ) -> Case:
        """
        Open a new case in OPEN status.

        Raises:
            PersistenceError: If the case cannot be written
        """
        case_row = Case(
            entity_id=entity_id,
            title=title,
            reason=reason,
            status=CaseStatus.OPEN,
            priority=priority,
            auto_created=auto_created,
            deal_id=deal_id,
            created_by_id=created_by_id,
            assigned_to_id=assigned_to_id,
            org_id=org_id
        )
        self.session.add(case_row)
        _flush(self.session, "case")
        return case_row

    def get_by_id(self, case_id: UUID) -> Optional[Case]:
        return self.session.get(Case, _as_uuid(case_id))

    def require(self, case_id: UUID) -> Case:
        case_row = self.get_by_id(case_id)
        if case_row is None:
            raise CaseNotFoundError(f"Case not found: {case_id}")
        return case_row

    def find_open_auto_case(
        self,
        entity_id: UUID,
        reasons: Iterable[CaseReason]
    ) -> Optional[Case]:
        """
        Find the oldest auto-created case on an entity still awaiting review.

        Args:
            entity_id: Owning entity
            reasons: Reason categories that may absorb the new finding

        Returns:
            Matching Case or None
        """
        query = (
            select(Case)
            .where(
                and_(
                    Case.entity_id == _as_uuid(entity_id),
                    Case.auto_created.is_(True),
                    Case.status.in_([CaseStatus.OPEN, CaseStatus.UNDER_REVIEW]),
                    Case.reason.in_(list(reasons)),
                )
            )
            .order_by(Case.created_at.asc())
            .limit(1)
        )
        return self.session.execute(query).scalars().first()

    def add_note(self, case_row: Case, text: str, author: str = "system") -> CaseNote:
        """
        Append a note to the case timeline.

        Raises:
            PersistenceError: If the note cannot be written
        """
        note = CaseNote(case_id=case_row.id, author=author, text=text, created_at=utcnow())
        case_row.notes.append(note)
        case_row.updated_at = utcnow()
        _flush(self.session, "case note")
        return note

    def set_status(self, case_row: Case, status: CaseStatus) -> Case:
        case_row.status = status
        if status == CaseStatus.CLOSED:
            case_row.closed_at = utcnow()
        _flush(self.session, "case status")
        return case_row

    def list_cases(
        self,
        entity_id: Optional[UUID] = None,
        status: Optional[CaseStatus] = None,
        org_id: Optional[str] = None,
        offset: int = 0,
        limit: int = 50
    ) -> Tuple[List[Case], int]:
        """
        List cases with filters, newest first.

        Returns:
            Tuple of (cases list, total count)
        """
        conditions = []
        if entity_id:
            conditions.append(Case.entity_id == _as_uuid(entity_id))
        if status:
            conditions.append(Case.status == status)
        if org_id:
            conditions.append(Case.org_id == org_id)

        count_query = select(func.count()).select_from(Case)
        if conditions:
            count_query = count_query.where(and_(*conditions))
        total = self.session.execute(count_query).scalar_one()

        query = select(Case)
        if conditions:
            query = query.where(and_(*conditions))
        query = query.order_by(Case.created_at.desc()).offset(offset).limit(limit)

        return list(self.session.execute(query).scalars().all()), total

    def count_for_entity(self, entity_id: UUID) -> int:
        query = select(func.count()).select_from(Case).where(Case.entity_id == _as_uuid(entity_id))
        return self.session.execute(query).scalar_one()


# ============================================
# AUDIT REPOSITORY
# ============================================

class AuditRepository:
    """Repository for audit event operations."""

    def __init__(self, session: Session):
        self.session = session

    def log(
        self,
        action: str,
        subject_type: str,
        subject_id: str,
        payload: Optional[Dict[str, Any]] = None,
        actor_id: Optional[str] = None,
        org_id: Optional[str] = None,
        case_id: Optional[str] = None,
        timestamp: Optional[datetime] = None
    ) -> AuditEvent:
        """
        Append an audit event.

        Args:
            action: Action code
            subject_type: Type of subject (entity, case, deal, settings)
            subject_id: ID of subject
            payload: JSON snapshot of the decision
            actor_id: Acting user, None for system-initiated actions
            org_id: Owning organisation
            case_id: Related case, if any
            timestamp: Event time (defaults to now)

        Returns:
            Created AuditEvent
        """
        audit_event = AuditEvent(
            action=action,
            subject_type=subject_type,
            subject_id=subject_id,
            payload=payload,
            actor_id=actor_id,
            org_id=org_id,
            case_id=case_id,
            timestamp=timestamp or utcnow()
        )

        self.session.add(audit_event)
        self.session.flush()
        return audit_event

    def search(
        self,
        subject_type: Optional[str] = None,
        subject_id: Optional[str] = None,
        action: Optional[str] = None,
        actor_id: Optional[str] = None,
        org_id: Optional[str] = None,
        case_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        offset: int = 0,
        limit: int = 50
    ) -> Tuple[List[AuditEvent], int]:
        """
        Search audit events with filters, newest first.

        Args:
            subject_type: Filter by subject type
            subject_id: Filter by subject id
            action: Filter by action code
            actor_id: Filter by actor
            org_id: Filter by organisation
            case_id: Filter by related case
            start_date: Start of date range (inclusive)
            end_date: End of date range (inclusive)
            offset: Pagination offset
            limit: Maximum results

        Returns:
            Tuple of (events list, total count)
        """
        conditions = []

        if subject_type:
            conditions.append(AuditEvent.subject_type == subject_type)
        if subject_id:
            conditions.append(AuditEvent.subject_id == subject_id)
        if action:
            conditions.append(AuditEvent.action == action)
        if actor_id:
            conditions.append(AuditEvent.actor_id == actor_id)
        if org_id:
            conditions.append(AuditEvent.org_id == org_id)
        if case_id:
            conditions.append(AuditEvent.case_id == case_id)
        if start_date:
            conditions.append(AuditEvent.timestamp >= start_date)
        if end_date:
            conditions.append(AuditEvent.timestamp <= end_date)

        # Count query
        count_query = select(func.count()).select_from(AuditEvent)
        if conditions:
            count_query = count_query.where(and_(*conditions))
        total = self.session.execute(count_query).scalar_one()

        # Data query
        query = select(AuditEvent)
        if conditions:
            query = query.where(and_(*conditions))
        query = query.order_by(
            AuditEvent.timestamp.desc(), AuditEvent.id.desc()
        ).offset(offset).limit(limit)

        events = list(self.session.execute(query).scalars().all())
        return events, total

    def trail(
        self,
        subject_id: str,
        case_ids: Iterable[str] = (),
        limit: int = 50
    ) -> List[AuditEvent]:
        """Events about a subject or any of its cases, newest first."""
        case_ids = list(case_ids)
        condition = AuditEvent.subject_id == subject_id
        if case_ids:
            condition = condition | AuditEvent.case_id.in_(case_ids) | AuditEvent.subject_id.in_(case_ids)

        query = (
            select(AuditEvent)
            .where(condition)
            .order_by(AuditEvent.timestamp.desc(), AuditEvent.id.desc())
            .limit(limit)
        )
        return list(self.session.execute(query).scalars().all())


# ============================================
# USER AND DEAL REPOSITORIES
# ============================================

class UserRepository:
    """Repository for staff users."""

    def __init__(self, session: Session):
        self.session = session

    def create(
        self,
        name: str,
        email: str,
        role: UserRole,
        org_id: Optional[str] = None,
        is_active: bool = True
    ) -> User:
        user = User(name=name, email=email, role=role, org_id=org_id, is_active=is_active)
        self.session.add(user)
        _flush(self.session, "user")
        return user

    def get_by_id(self, user_id: UUID) -> Optional[User]:
        return self.session.get(User, _as_uuid(user_id))

    def first_active_by_role(self, role: UserRole, org_id: Optional[str] = None) -> Optional[User]:
        """Earliest-created active user holding the role."""
        query = select(User).where(and_(User.role == role, User.is_active.is_(True)))
        if org_id:
            query = query.where(User.org_id == org_id)
        query = query.order_by(User.created_at.asc()).limit(1)
        return self.session.execute(query).scalars().first()


class DealRepository:
    """Repository for deals and their parties."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, address: str, org_id: Optional[str] = None) -> Deal:
        deal = Deal(address=address, org_id=org_id)
        self.session.add(deal)
        _flush(self.session, "deal")
        return deal

    def add_party(
        self,
        deal: Deal,
        entity_id: Optional[UUID],
        role: PartyRole,
        doc_type: Optional[str] = None
    ) -> Party:
        party = Party(deal_id=deal.id, entity_id=entity_id, role=role, doc_type=doc_type)
        deal.parties.append(party)
        _flush(self.session, "party")
        return party

    def get_by_id(self, deal_id: UUID) -> Optional[Deal]:
        return self.session.get(Deal, _as_uuid(deal_id))

    def require(self, deal_id: UUID) -> Deal:
        deal = self.get_by_id(deal_id)
        if deal is None:
            raise DealNotFoundError(f"Deal not found: {deal_id}")
        return deal
