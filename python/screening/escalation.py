"""
Case escalation: open a new compliance case, merge into an open one, or do nothing.

Escalation runs in its own unit of work after the screening record has
been committed. Case rows and notes are primary records: persistence
failures propagate. The audit event describing the escalation is written
after commit through the AuditRecorder and never fails the caller.

Case status is forward-only:
    OPEN -> UNDER_REVIEW -> SUBMITTED -> CLOSED
Skipping ahead is allowed; moving backwards or staying put is rejected.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from database.connection import DatabaseSessionProvider
from database.models import (
    AuditAction, CasePriority, CaseReason, CaseStatus, RiskTier, UserRole
)
from database.monitoring import record_escalation
from database.repositories import CaseRepository, EntityRepository, UserRepository
from screening.exceptions import InvalidStateTransitionError
from screening.risk_classifier import ClassifiedResult

logger = logging.getLogger(__name__)

PRIORITY_BY_TIER = {
    RiskTier.HIGH: CasePriority.URGENT,
    RiskTier.MEDIUM: CasePriority.HIGH,
    RiskTier.LOW: CasePriority.MEDIUM,
}

# Open case categories that may absorb a new alert of a given category
MERGE_TARGETS = {
    CaseReason.RISK_ESCALATION: (CaseReason.RISK_ESCALATION,),
    CaseReason.ADVERSE_MEDIA: (CaseReason.RISK_ESCALATION, CaseReason.ADVERSE_MEDIA),
}

NOTE_PREVIEW_LENGTH = 100

ACTION_NONE = "NONE"
ACTION_CREATED = "CREATED"
ACTION_UPDATED = "UPDATED"

ReviewerResolver = Callable[[Session, Optional[str]], Optional[UUID]]


def first_compliance_reviewer(session: Session, org_id: Optional[str] = None) -> Optional[UUID]:
    """Default reviewer: first active COMPLIANCE user of the organisation."""
    user = UserRepository(session).first_active_by_role(UserRole.COMPLIANCE, org_id)
    return user.id if user else None


def validate_transition(current: CaseStatus, requested: CaseStatus) -> None:
    """
    Check a case status change.

    Raises:
        InvalidStateTransitionError: If requested is not strictly ahead of current
    """
    if requested.order <= current.order:
        raise InvalidStateTransitionError(current, requested)


@dataclass(frozen=True)
class EscalationOutcome:
    """What escalation did for one classified result"""
    action: str = ACTION_NONE
    case_id: Optional[UUID] = None
    reason: Optional[CaseReason] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "caseId": str(self.case_id) if self.case_id else None,
            "reason": self.reason.value if self.reason else None,
        }


class CaseEscalationEngine:
    """
    Decides and applies case escalation for classified screening results.

    Usage:
        engine = CaseEscalationEngine(db_provider, audit_recorder)
        outcome = engine.escalate(entity_id, classified)
    """

    def __init__(
        self,
        db_provider: DatabaseSessionProvider,
        audit_recorder,
        reviewer_resolver: Optional[ReviewerResolver] = None
    ):
        self.db_provider = db_provider
        self.audit_recorder = audit_recorder
        self.reviewer_resolver = reviewer_resolver or first_compliance_reviewer

    # ============================================
    # ESCALATION
    # ============================================

    def escalate(
        self,
        entity_id: UUID,
        classified: ClassifiedResult,
        deal_id: Optional[UUID] = None
    ) -> EscalationOutcome:
        """
        Open or update a case for a classified result.

        Args:
            entity_id: Screened entity
            classified: RiskClassifier output
            deal_id: Optional deal context for a new case

        Returns:
            EscalationOutcome

        Raises:
            EntityNotFoundError: If entity not found
            PersistenceError: If the case or note cannot be written
        """
        if not classified.requires_review or classified.category is None:
            return EscalationOutcome()

        with self.db_provider.get_unit_of_work() as uow:
            entity = EntityRepository(uow.session).require(entity_id)
            cases = CaseRepository(uow.session)
            existing = cases.find_open_auto_case(entity.id, MERGE_TARGETS[classified.category])

            if existing is not None:
                text = self._note_text(classified)
                cases.add_note(existing, text)
                outcome = EscalationOutcome(ACTION_UPDATED, existing.id, existing.reason)
                org_id = existing.org_id
            else:
                title = f"Auto-Screening Alert - {entity.display_name or 'Unknown'}"
                priority = PRIORITY_BY_TIER[classified.tier]
                reviewer_id = self.reviewer_resolver(uow.session, entity.org_id)
                case_row = cases.create(
                    entity_id=entity.id,
                    title=title,
                    reason=classified.category,
                    priority=priority,
                    auto_created=True,
                    deal_id=deal_id,
                    assigned_to_id=reviewer_id,
                    org_id=entity.org_id,
                )
                text = self._note_text(classified)
                cases.add_note(case_row, text)
                outcome = EscalationOutcome(ACTION_CREATED, case_row.id, case_row.reason)
                org_id = entity.org_id
            uow.commit()

        record_escalation(outcome.action.lower())
        logger.info(
            f"Escalation for entity {entity_id}: {outcome.action} case {outcome.case_id} "
            f"({classified.category.value})"
        )

        if outcome.action == ACTION_CREATED:
            self.audit_recorder.record(
                AuditAction.CASE_CREATED,
                "Case",
                str(outcome.case_id),
                {
                    "entityId": str(entity_id),
                    "title": title,
                    "reason": outcome.reason.value,
                    "priority": priority.value,
                    "autoCreated": True,
                    "assignedTo": str(reviewer_id) if reviewer_id else None,
                },
                org_id=org_id,
                case_id=outcome.case_id,
            )
        else:
            self.audit_recorder.record(
                AuditAction.CASE_NOTE_ADDED,
                "Case",
                str(outcome.case_id),
                {"entityId": str(entity_id), "notePreview": text[:NOTE_PREVIEW_LENGTH]},
                org_id=org_id,
                case_id=outcome.case_id,
            )
        return outcome

    @staticmethod
    def _note_text(classified: ClassifiedResult) -> str:
        text = f"New screening results: {classified.alert_summary()}"
        if classified.findings:
            text += "; findings: " + "; ".join(classified.findings)
        return text

    # ============================================
    # CASE WORKFLOW
    # ============================================

    def change_status(
        self,
        case_id: UUID,
        new_status: CaseStatus,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Move a case forward in its workflow.

        Raises:
            CaseNotFoundError: If case not found
            InvalidStateTransitionError: If the move is not forward
        """
        new_status = CaseStatus(new_status)
        with self.db_provider.get_unit_of_work() as uow:
            cases = CaseRepository(uow.session)
            case_row = cases.require(case_id)
            old_status = case_row.status
            validate_transition(old_status, new_status)
            cases.set_status(case_row, new_status)
            uow.commit()
            result = case_row.to_dict()
            org_id = case_row.org_id

        logger.info(f"Case {case_id} moved {old_status.value} -> {new_status.value}")
        self.audit_recorder.record(
            AuditAction.CASE_STATUS_CHANGE,
            "Case",
            str(case_id),
            {"oldStatus": old_status.value, "newStatus": new_status.value, "reason": reason},
            actor_id=actor_id,
            org_id=org_id,
            case_id=case_id,
        )
        return result

    def add_note(
        self,
        case_id: UUID,
        text: str,
        author: str = "system",
        actor_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Append a note to a case timeline.

        Raises:
            CaseNotFoundError: If case not found
            ValueError: If text is empty
        """
        if not text or not text.strip():
            raise ValueError("Note text cannot be empty")

        with self.db_provider.get_unit_of_work() as uow:
            cases = CaseRepository(uow.session)
            case_row = cases.require(case_id)
            note = cases.add_note(case_row, text.strip(), author=author)
            uow.commit()
            result = note.to_dict()
            org_id = case_row.org_id

        self.audit_recorder.record(
            AuditAction.CASE_NOTE_ADDED,
            "Case",
            str(case_id),
            {"notePreview": text.strip()[:NOTE_PREVIEW_LENGTH]},
            actor_id=actor_id,
            org_id=org_id,
            case_id=case_id,
        )
        return result

    def list_cases(
        self,
        entity_id: Optional[UUID] = None,
        status: Optional[CaseStatus] = None,
        org_id: Optional[str] = None,
        offset: int = 0,
        limit: int = 50
    ) -> Tuple[List[Dict[str, Any]], int]:
        """List cases newest first as dictionaries, with the total count."""
        with self.db_provider.session_scope() as session:
            rows, total = CaseRepository(session).list_cases(
                entity_id=entity_id, status=status, org_id=org_id, offset=offset, limit=limit
            )
            return [row.to_dict() for row in rows], total
