"""
SQLAlchemy ORM Models for the KYC Screening & Escalation Engine

This module defines the database schema for compliance screening:
- UUID primary keys for distributed systems compatibility
- Portable column types (PostgreSQL in production, SQLite in tests)
- Append-only verification, screening and audit records
- Timestamps stored in UTC with microsecond precision

Tables:
1. entities - Individuals and organisations under KYC obligations
2. deals - Real-estate transactions
3. parties - Links an entity to a deal as BUYER or SELLER
4. users - Staff members (DIRECTOR, COMPLIANCE, AGENT)
5. kyc_records - Identity verification attempts (immutable)
6. screening_records - Screening provider results (immutable)
7. cases - Compliance investigation units
8. case_notes - Ordered note timeline for a case
9. audit_events - Append-only decision ledger (immutable)
"""

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    String, Boolean, DateTime, Text, ForeignKey, Index, Enum, JSON, Uuid, event
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship, declarative_base, Mapped, mapped_column

# Base class for all models
Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime read from the database to aware UTC.

    SQLite drops tzinfo on round-trip; all stored values are UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ImmutableRecordError(Exception):
    """Raised when an append-only record is updated or deleted."""
    pass


# ============================================
# ENUMS
# ============================================

class EntityKind(str, PyEnum):
    """Type of entity under KYC obligations"""
    INDIVIDUAL = "INDIVIDUAL"
    ORGANISATION = "ORGANISATION"


class RiskTier(str, PyEnum):
    """Entity risk tier"""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]


_TIER_RANK = {RiskTier.LOW: 0, RiskTier.MEDIUM: 1, RiskTier.HIGH: 2}


class KycOutcome(str, PyEnum):
    """Outcome of an identity verification attempt"""
    PASS = "PASS"
    FAIL = "FAIL"
    MANUAL = "MANUAL"


class CaseReason(str, PyEnum):
    """Why a compliance case was opened"""
    THRESHOLD = "THRESHOLD"
    RISK_ESCALATION = "RISK_ESCALATION"
    ADVERSE_MEDIA = "ADVERSE_MEDIA"
    MANUAL = "MANUAL"


class CaseStatus(str, PyEnum):
    """Case lifecycle, forward-only"""
    OPEN = "OPEN"
    UNDER_REVIEW = "UNDER_REVIEW"
    SUBMITTED = "SUBMITTED"
    CLOSED = "CLOSED"

    @property
    def order(self) -> int:
        return _STATUS_ORDER[self]


_STATUS_ORDER = {
    CaseStatus.OPEN: 0,
    CaseStatus.UNDER_REVIEW: 1,
    CaseStatus.SUBMITTED: 2,
    CaseStatus.CLOSED: 3,
}


class CasePriority(str, PyEnum):
    """Case handling priority"""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    URGENT = "URGENT"


class PartyRole(str, PyEnum):
    """Role of an entity within a deal"""
    BUYER = "BUYER"
    SELLER = "SELLER"


class UserRole(str, PyEnum):
    """Staff role, drives permissions"""
    DIRECTOR = "DIRECTOR"
    COMPLIANCE = "COMPLIANCE"
    AGENT = "AGENT"


class AuditAction(str, PyEnum):
    """Known audit action codes"""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    KYC_CHECK = "KYC_CHECK"
    KYC_REUSED = "KYC_REUSED"
    AUTO_SCREENING = "AUTO_SCREENING"
    AUTO_SCREEN_FAILED = "AUTO_SCREEN_FAILED"
    CASE_CREATED = "CASE_CREATED"
    CASE_NOTE_ADDED = "CASE_NOTE_ADDED"
    CASE_STATUS_CHANGE = "CASE_STATUS_CHANGE"
    AUTOMATION_SETTINGS_UPDATED = "AUTOMATION_SETTINGS_UPDATED"


# ============================================
# MIXIN CLASSES
# ============================================

class TimestampMixin:
    """Mixin for created_at and updated_at timestamps"""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False
    )


# ============================================
# CORE ENTITY MODELS
# ============================================

class Entity(Base, TimestampMixin):
    """
    Individual or organisation subject to KYC.

    Never deleted; a replacement record is linked through superseded_by_id.
    risk_tier is only changed by screening classification.
    """
    __tablename__ = "entities"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    kind: Mapped[EntityKind] = mapped_column(
        Enum(EntityKind, name="entity_kind"),
        nullable=False,
        default=EntityKind.INDIVIDUAL
    )

    # Identifying attributes
    full_name: Mapped[Optional[str]] = mapped_column(String(300), nullable=True, index=True)
    legal_name: Mapped[Optional[str]] = mapped_column(String(300), nullable=True, index=True)
    date_of_birth: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    country: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    org_identifier: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Screening hints
    industry: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    jurisdiction: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Owning organisation (tenant)
    org_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)

    risk_tier: Mapped[RiskTier] = mapped_column(
        Enum(RiskTier, name="risk_tier"),
        nullable=False,
        default=RiskTier.LOW
    )

    # References to most recent outcomes
    last_screened_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    last_screening_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    last_kyc_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    superseded_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("entities.id"), nullable=True
    )

    kyc_records: Mapped[List["KycRecord"]] = relationship(
        "KycRecord",
        back_populates="entity",
        order_by="KycRecord.created_at",
        lazy="selectin"
    )
    screening_records: Mapped[List["ScreeningRecord"]] = relationship(
        "ScreeningRecord",
        back_populates="entity",
        order_by="ScreeningRecord.created_at",
        lazy="select"
    )

    __table_args__ = (
        Index('ix_entity_org_screened', 'org_id', 'last_screened_at'),
    )

    @property
    def display_name(self) -> str:
        return self.full_name or self.legal_name or ""

    def __repr__(self) -> str:
        return f"<Entity(id={self.id}, name='{self.display_name}', tier={self.risk_tier})>"

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "kind": EntityKind(self.kind).value,
            "full_name": self.full_name,
            "legal_name": self.legal_name,
            "date_of_birth": self.date_of_birth,
            "country": self.country,
            "org_identifier": self.org_identifier,
            "industry": self.industry,
            "jurisdiction": self.jurisdiction,
            "org_id": self.org_id,
            "risk_tier": RiskTier(self.risk_tier).value,
            "last_screened_at": (
                ensure_utc(self.last_screened_at).isoformat() if self.last_screened_at else None
            ),
            "last_screening_id": str(self.last_screening_id) if self.last_screening_id else None,
            "last_kyc_id": str(self.last_kyc_id) if self.last_kyc_id else None,
            "superseded_by_id": str(self.superseded_by_id) if self.superseded_by_id else None,
        }


class Deal(Base, TimestampMixin):
    """Real-estate transaction with buyer and seller parties."""
    __tablename__ = "deals"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    address: Mapped[str] = mapped_column(String(500), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="ACTIVE")
    org_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)

    parties: Mapped[List["Party"]] = relationship(
        "Party",
        back_populates="deal",
        lazy="selectin"
    )

    def __repr__(self) -> str:
        return f"<Deal(id={self.id}, address='{self.address}')>"


class Party(Base, TimestampMixin):
    """Entity participating in a deal."""
    __tablename__ = "parties"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    deal_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("deals.id"), nullable=False, index=True
    )
    entity_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("entities.id"), nullable=True, index=True
    )
    role: Mapped[PartyRole] = mapped_column(Enum(PartyRole, name="party_role"), nullable=False)
    doc_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    deal: Mapped["Deal"] = relationship("Deal", back_populates="parties")
    entity: Mapped[Optional["Entity"]] = relationship("Entity")

    def __repr__(self) -> str:
        return f"<Party(deal_id={self.deal_id}, entity_id={self.entity_id}, role={self.role})>"


class User(Base, TimestampMixin):
    """Staff member; COMPLIANCE users are default case reviewers."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str] = mapped_column(String(300), nullable=False, unique=True)
    role: Mapped[UserRole] = mapped_column(Enum(UserRole, name="user_role"), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    org_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email='{self.email}', role={self.role})>"


# ============================================
# VERIFICATION AND SCREENING MODELS
# ============================================

class KycRecord(Base):
    """
    One identity verification attempt.

    Immutable - no updates or deletes allowed.
    """
    __tablename__ = "kyc_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    entity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("entities.id"), nullable=False, index=True
    )
    deal_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("deals.id"), nullable=True, index=True
    )
    party_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("parties.id"), nullable=True
    )
    outcome: Mapped[KycOutcome] = mapped_column(
        Enum(KycOutcome, name="kyc_outcome"), nullable=False
    )
    document_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False, index=True
    )

    entity: Mapped["Entity"] = relationship("Entity", back_populates="kyc_records")

    __table_args__ = (
        Index('ix_kyc_entity_outcome_date', 'entity_id', 'outcome', 'created_at'),
    )

    def __repr__(self) -> str:
        return f"<KycRecord(id={self.id}, entity_id={self.entity_id}, outcome={self.outcome})>"


class ScreeningRecord(Base):
    """
    Findings of one screening attempt, persisted verbatim from the provider.

    Immutable - no updates or deletes allowed.
    """
    __tablename__ = "screening_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    entity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("entities.id"), nullable=False, index=True
    )

    # Provider flags
    pep: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    sanctions: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    adverse_media: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    identity_verification_failed: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    provider_tier: Mapped[RiskTier] = mapped_column(
        Enum(RiskTier, name="risk_tier"), nullable=False
    )

    findings: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    raw_payload: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    trigger: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False, index=True
    )

    entity: Mapped["Entity"] = relationship("Entity", back_populates="screening_records")

    def __repr__(self) -> str:
        return (
            f"<ScreeningRecord(id={self.id}, entity_id={self.entity_id}, "
            f"pep={self.pep}, sanctions={self.sanctions})>"
        )


# ============================================
# CASE MODELS
# ============================================

class Case(Base, TimestampMixin):
    """
    Compliance investigation unit.

    At most one auto-created, non-CLOSED case per entity and alert category.
    """
    __tablename__ = "cases"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    entity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("entities.id"), nullable=False, index=True
    )
    deal_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("deals.id"), nullable=True
    )

    title: Mapped[str] = mapped_column(String(300), nullable=False)
    reason: Mapped[CaseReason] = mapped_column(
        Enum(CaseReason, name="case_reason"), nullable=False
    )
    status: Mapped[CaseStatus] = mapped_column(
        Enum(CaseStatus, name="case_status"),
        nullable=False,
        default=CaseStatus.OPEN,
        index=True
    )
    priority: Mapped[CasePriority] = mapped_column(
        Enum(CasePriority, name="case_priority"),
        nullable=False,
        default=CasePriority.MEDIUM
    )
    auto_created: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Null creator means system-initiated
    created_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    assigned_to_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True, index=True
    )
    org_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    notes: Mapped[List["CaseNote"]] = relationship(
        "CaseNote",
        back_populates="case",
        order_by="CaseNote.created_at",
        cascade="all, delete-orphan",
        lazy="selectin"
    )

    __table_args__ = (
        Index('ix_case_entity_status', 'entity_id', 'status'),
    )

    def __repr__(self) -> str:
        return f"<Case(id={self.id}, reason={self.reason}, status={self.status})>"

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "entity_id": str(self.entity_id),
            "deal_id": str(self.deal_id) if self.deal_id else None,
            "title": self.title,
            "reason": self.reason.value,
            "status": self.status.value,
            "priority": self.priority.value,
            "auto_created": self.auto_created,
            "created_by_id": str(self.created_by_id) if self.created_by_id else None,
            "assigned_to_id": str(self.assigned_to_id) if self.assigned_to_id else None,
            "created_at": ensure_utc(self.created_at).isoformat() if self.created_at else None,
            "closed_at": ensure_utc(self.closed_at).isoformat() if self.closed_at else None,
            "notes": [note.to_dict() for note in self.notes],
        }


class CaseNote(Base):
    """Timestamped entry in a case timeline."""
    __tablename__ = "case_notes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    case_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("cases.id", ondelete="CASCADE"), nullable=False, index=True
    )
    author: Mapped[str] = mapped_column(String(100), nullable=False, default="system")
    text: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    case: Mapped["Case"] = relationship("Case", back_populates="notes")

    def to_dict(self) -> dict:
        return {
            "by": self.author,
            "at": ensure_utc(self.created_at).isoformat(),
            "text": self.text,
        }


# ============================================
# AUDIT MODELS
# ============================================

class AuditEvent(Base):
    """
    Append-only decision ledger.

    Subjects are referenced by id only; there is no ownership relation.
    Immutable - no updates or deletes allowed.
    """
    __tablename__ = "audit_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        index=True
    )

    action: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    subject_type: Mapped[str] = mapped_column(String(50), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(100), nullable=False)
    case_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)

    payload: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    # Null actor means system-initiated
    actor_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    org_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)

    __table_args__ = (
        Index('ix_audit_subject', 'subject_type', 'subject_id'),
        Index('ix_audit_timestamp_action', 'timestamp', 'action'),
    )

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "timestamp": ensure_utc(self.timestamp).isoformat(),
            "action": self.action,
            "subject_type": self.subject_type,
            "subject_id": self.subject_id,
            "case_id": self.case_id,
            "payload": self.payload or {},
            "actor_id": self.actor_id,
            "org_id": self.org_id,
        }

    def __repr__(self) -> str:
        return f"<AuditEvent(id={self.id}, action={self.action}, subject='{self.subject_type}')>"


# ============================================
# IMMUTABILITY GUARDS
# ============================================

def _reject_mutation(mapper, connection, target) -> None:
    raise ImmutableRecordError(
        f"{type(target).__name__} {target.id} is append-only and cannot be modified"
    )


for _model in (KycRecord, ScreeningRecord, AuditEvent):
    event.listen(_model, "before_update", _reject_mutation)
    event.listen(_model, "before_delete", _reject_mutation)


# ============================================
# HELPER FUNCTIONS
# ============================================

def normalize_name(name: str) -> str:
    """
    Normalize a name for lookups and provider fixtures.

    Removes accents, converts to lowercase, collapses whitespace to underscores.

    Args:
        name: The name to normalize (can be None)

    Returns:
        Normalized name string, or empty string if name is None/empty
    """
    import unicodedata
    import re

    if not name:
        return ""

    normalized = unicodedata.normalize('NFD', name)
    normalized = ''.join(c for c in normalized if unicodedata.category(c) != 'Mn')
    normalized = re.sub(r'[^\w\s]', ' ', normalized)
    normalized = re.sub(r'\s+', '_', normalized.strip())
    return normalized.lower()
