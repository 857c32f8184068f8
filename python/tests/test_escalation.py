"""
Tests for case escalation and the case workflow.
"""

import uuid

import pytest

from database.models import (
    AuditAction, CasePriority, CaseReason, CaseStatus, RiskTier, UserRole
)
from database.repositories import CaseNotFoundError, CaseRepository, PersistenceError
from screening.escalation import (
    ACTION_CREATED,
    ACTION_NONE,
    ACTION_UPDATED,
    CaseEscalationEngine,
    validate_transition,
)
from screening.exceptions import InvalidStateTransitionError
from screening.provider import ProviderResult
from screening.risk_classifier import RiskClassifier


def classify(**kwargs):
    return RiskClassifier(adverse_media_threshold=2).classify(ProviderResult(**kwargs))


PEP = dict(pep=True, risk_tier=RiskTier.MEDIUM, findings=("PEP Match: Government Official",))
ADVERSE = dict(
    adverse_media=True,
    risk_tier=RiskTier.MEDIUM,
    findings=("Adverse Media: a", "Adverse Media: b", "Adverse Media: c"),
)


# ============================================
# ESCALATION DECISIONS
# ============================================

class TestEscalate:
    """Tests for opening, merging and skipping cases."""

    def test_no_review_no_case(self, escalation_engine, factory):
        entity_id = factory.entity("Sarah Smith")
        outcome = escalation_engine.escalate(entity_id, classify(risk_tier=RiskTier.LOW))
        assert outcome.action == ACTION_NONE
        assert outcome.case_id is None
        assert factory.cases_for(entity_id) == []
        assert factory.audit_events() == []

    def test_pep_opens_urgent_case(self, escalation_engine, factory):
        reviewer = factory.user("Casey Reviewer", UserRole.COMPLIANCE)
        entity_id = factory.entity("Viktor Petrov")

        outcome = escalation_engine.escalate(entity_id, classify(**PEP))

        assert outcome.action == ACTION_CREATED
        cases = factory.cases_for(entity_id)
        assert len(cases) == 1
        case = cases[0]
        assert case["id"] == str(outcome.case_id)
        assert case["reason"] == CaseReason.RISK_ESCALATION.value
        assert case["priority"] == CasePriority.URGENT.value
        assert case["status"] == CaseStatus.OPEN.value
        assert case["auto_created"] is True
        assert case["created_by_id"] is None
        assert case["assigned_to_id"] == str(reviewer)
        assert case["title"] == "Auto-Screening Alert - Viktor Petrov"
        assert len(case["notes"]) == 1
        assert case["notes"][0]["by"] == "system"
        assert "PEP match detected" in case["notes"][0]["text"]

    def test_case_created_audit_event(self, escalation_engine, factory):
        entity_id = factory.entity("Viktor Petrov", org_id="org-a")
        outcome = escalation_engine.escalate(entity_id, classify(**PEP))

        events = factory.audit_events(AuditAction.CASE_CREATED)
        assert len(events) == 1
        event = events[0]
        assert event["subject_type"] == "Case"
        assert event["subject_id"] == str(outcome.case_id)
        assert event["case_id"] == str(outcome.case_id)
        assert event["actor_id"] is None
        assert event["org_id"] == "org-a"
        assert event["payload"]["entityId"] == str(entity_id)
        assert event["payload"]["priority"] == "URGENT"
        assert event["payload"]["autoCreated"] is True

    @pytest.mark.parametrize("tier,priority", [
        (RiskTier.MEDIUM, CasePriority.HIGH),
        (RiskTier.LOW, CasePriority.MEDIUM),
    ])
    def test_priority_follows_tier(self, escalation_engine, factory, tier, priority):
        entity_id = factory.entity("Jordan Lee")
        escalation_engine.escalate(
            entity_id, classify(identity_verification_failed=True, risk_tier=tier)
        )
        assert factory.cases_for(entity_id)[0]["priority"] == priority.value

    def test_no_reviewer_leaves_case_unassigned(self, escalation_engine, factory):
        factory.user("Agent Only", UserRole.AGENT)
        factory.user("Inactive", UserRole.COMPLIANCE, is_active=False)
        entity_id = factory.entity("Viktor Petrov")
        escalation_engine.escalate(entity_id, classify(**PEP))
        assert factory.cases_for(entity_id)[0]["assigned_to_id"] is None

    def test_reviewer_from_same_org(self, escalation_engine, factory):
        factory.user("Other Org", UserRole.COMPLIANCE, org_id="org-b")
        ours = factory.user("Our Reviewer", UserRole.COMPLIANCE, org_id="org-a")
        entity_id = factory.entity("Viktor Petrov", org_id="org-a")
        escalation_engine.escalate(entity_id, classify(**PEP))
        assert factory.cases_for(entity_id)[0]["assigned_to_id"] == str(ours)

    def test_custom_reviewer_resolver(self, db_provider, audit_recorder, factory):
        reviewer = factory.user("Designated", UserRole.DIRECTOR)
        engine = CaseEscalationEngine(
            db_provider, audit_recorder, reviewer_resolver=lambda session, org_id: reviewer
        )
        entity_id = factory.entity("Viktor Petrov")
        engine.escalate(entity_id, classify(**PEP))
        assert factory.cases_for(entity_id)[0]["assigned_to_id"] == str(reviewer)

    def test_second_alert_merges_into_open_case(self, escalation_engine, factory):
        """A new adverse-media alert appends to the open RISK_ESCALATION case."""
        entity_id = factory.entity("Viktor Petrov")
        first = escalation_engine.escalate(entity_id, classify(**PEP))
        second = escalation_engine.escalate(entity_id, classify(**ADVERSE))

        assert second.action == ACTION_UPDATED
        assert second.case_id == first.case_id
        cases = factory.cases_for(entity_id)
        assert len(cases) == 1
        assert len(cases[0]["notes"]) == 2
        assert "Adverse media references identified" in cases[0]["notes"][1]["text"]

        note_events = factory.audit_events(AuditAction.CASE_NOTE_ADDED)
        assert len(note_events) == 1
        assert len(note_events[0]["payload"]["notePreview"]) <= 100

    def test_merges_into_case_under_review(self, escalation_engine, factory):
        entity_id = factory.entity("Viktor Petrov")
        first = escalation_engine.escalate(entity_id, classify(**PEP))
        escalation_engine.change_status(first.case_id, CaseStatus.UNDER_REVIEW)

        second = escalation_engine.escalate(entity_id, classify(**PEP))
        assert second.action == ACTION_UPDATED
        assert len(factory.cases_for(entity_id)) == 1

    def test_risk_alert_does_not_merge_into_adverse_media_case(self, escalation_engine, factory):
        entity_id = factory.entity("James Chen")
        first = escalation_engine.escalate(entity_id, classify(**ADVERSE))
        second = escalation_engine.escalate(entity_id, classify(**PEP))

        assert first.reason == CaseReason.ADVERSE_MEDIA
        assert second.action == ACTION_CREATED
        assert second.case_id != first.case_id
        assert len(factory.cases_for(entity_id)) == 2

    @pytest.mark.parametrize("status", [CaseStatus.SUBMITTED, CaseStatus.CLOSED])
    def test_new_case_when_previous_past_review(self, escalation_engine, factory, status):
        entity_id = factory.entity("Viktor Petrov")
        first = escalation_engine.escalate(entity_id, classify(**PEP))
        escalation_engine.change_status(first.case_id, status)

        second = escalation_engine.escalate(entity_id, classify(**PEP))
        assert second.action == ACTION_CREATED
        assert len(factory.cases_for(entity_id)) == 2

    def test_manual_case_not_merged(self, escalation_engine, factory):
        entity_id = factory.entity("Viktor Petrov")
        factory.case(entity_id, CaseReason.RISK_ESCALATION, auto_created=False)

        outcome = escalation_engine.escalate(entity_id, classify(**PEP))
        assert outcome.action == ACTION_CREATED
        assert len(factory.cases_for(entity_id)) == 2

    def test_persistence_failure_propagates(self, escalation_engine, factory, monkeypatch):
        entity_id = factory.entity("Viktor Petrov")

        def broken_create(self, *args, **kwargs):
            raise PersistenceError("Failed to write case: disk full")

        monkeypatch.setattr(CaseRepository, "create", broken_create)
        with pytest.raises(PersistenceError):
            escalation_engine.escalate(entity_id, classify(**PEP))
        assert factory.audit_events(AuditAction.CASE_CREATED) == []


# ============================================
# CASE WORKFLOW
# ============================================

class TestCaseWorkflow:
    """Tests for forward-only status changes and notes."""

    @pytest.mark.parametrize("current,requested", [
        (CaseStatus.OPEN, CaseStatus.UNDER_REVIEW),
        (CaseStatus.OPEN, CaseStatus.CLOSED),
        (CaseStatus.UNDER_REVIEW, CaseStatus.SUBMITTED),
        (CaseStatus.SUBMITTED, CaseStatus.CLOSED),
    ])
    def test_forward_transitions(self, current, requested):
        validate_transition(current, requested)

    @pytest.mark.parametrize("current,requested", [
        (CaseStatus.OPEN, CaseStatus.OPEN),
        (CaseStatus.UNDER_REVIEW, CaseStatus.OPEN),
        (CaseStatus.CLOSED, CaseStatus.UNDER_REVIEW),
        (CaseStatus.SUBMITTED, CaseStatus.SUBMITTED),
    ])
    def test_backward_transitions_rejected(self, current, requested):
        with pytest.raises(InvalidStateTransitionError):
            validate_transition(current, requested)

    def test_change_status_records_audit(self, escalation_engine, factory):
        entity_id = factory.entity("Viktor Petrov")
        case_id = factory.case(entity_id)

        result = escalation_engine.change_status(
            case_id, CaseStatus.UNDER_REVIEW, actor_id="user-7", reason="Reviewing documents"
        )

        assert result["status"] == "UNDER_REVIEW"
        events = factory.audit_events(AuditAction.CASE_STATUS_CHANGE)
        assert len(events) == 1
        assert events[0]["actor_id"] == "user-7"
        assert events[0]["payload"] == {
            "oldStatus": "OPEN", "newStatus": "UNDER_REVIEW", "reason": "Reviewing documents"
        }

    def test_close_sets_closed_at(self, escalation_engine, factory):
        case_id = factory.case(factory.entity("Viktor Petrov"))
        result = escalation_engine.change_status(case_id, "CLOSED")
        assert result["status"] == "CLOSED"
        assert result["closed_at"] is not None

    def test_invalid_transition_leaves_case_unchanged(self, escalation_engine, factory):
        entity_id = factory.entity("Viktor Petrov")
        case_id = factory.case(entity_id)
        escalation_engine.change_status(case_id, CaseStatus.SUBMITTED)

        with pytest.raises(InvalidStateTransitionError):
            escalation_engine.change_status(case_id, CaseStatus.UNDER_REVIEW)

        assert factory.cases_for(entity_id)[0]["status"] == "SUBMITTED"
        assert len(factory.audit_events(AuditAction.CASE_STATUS_CHANGE)) == 1

    def test_unknown_case(self, escalation_engine):
        with pytest.raises(CaseNotFoundError):
            escalation_engine.change_status(uuid.uuid4(), CaseStatus.CLOSED)

    def test_add_note(self, escalation_engine, factory):
        case_id = factory.case(factory.entity("Viktor Petrov"))
        note = escalation_engine.add_note(case_id, "  Called client  ", author="user-3", actor_id="user-3")

        assert note["text"] == "Called client"
        assert note["by"] == "user-3"
        events = factory.audit_events(AuditAction.CASE_NOTE_ADDED)
        assert events[0]["payload"]["notePreview"] == "Called client"

    def test_empty_note_rejected(self, escalation_engine, factory):
        case_id = factory.case(factory.entity("Viktor Petrov"))
        with pytest.raises(ValueError):
            escalation_engine.add_note(case_id, "   ")

    def test_list_cases_filters(self, escalation_engine, factory):
        a = factory.entity("Viktor Petrov")
        b = factory.entity("James Chen")
        escalation_engine.escalate(a, classify(**PEP))
        closed = escalation_engine.escalate(b, classify(**PEP))
        escalation_engine.change_status(closed.case_id, CaseStatus.CLOSED)

        cases, total = escalation_engine.list_cases(status=CaseStatus.OPEN)
        assert total == 1
        assert cases[0]["entity_id"] == str(a)

        cases, total = escalation_engine.list_cases(entity_id=b)
        assert total == 1
        assert cases[0]["status"] == "CLOSED"
