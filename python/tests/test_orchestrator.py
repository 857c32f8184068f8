"""
Tests for screening orchestration: lifecycle triggers, batch sweeps,
failure handling and automation settings.
"""

import threading
import time
from datetime import timedelta

import pytest

from database.models import AuditAction, CasePriority, CaseReason, RiskTier, utcnow
from database.repositories import (
    CaseRepository, EntityNotFoundError, EntityRepository, PersistenceError
)
from screening.audit_recorder import AuditQuery
from screening.exceptions import ProviderError
from screening.orchestrator import (
    AutomationSettings,
    BatchScreeningWorker,
    EntityLockRegistry,
    ScreeningTrigger,
)


def actions(factory, action, entity_id=None):
    return factory.audit_events(action=action, subject_id=entity_id)


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not predicate() and time.monotonic() < deadline:
        time.sleep(0.02)
    return predicate()


# ============================================
# LIFECYCLE TRIGGERS
# ============================================

class TestLifecycleTriggers:
    """Tests for CREATE and UPDATE triggers."""

    def test_create_screens_entity(self, orchestrator, provider, factory):
        created, outcome = orchestrator.create_entity(
            {"kind": "INDIVIDUAL", "full_name": "Sarah Smith", "country": "AU"},
            actor_id="agent-1",
            org_id="org-a",
        )

        assert created["org_id"] == "org-a"
        assert outcome.trigger == ScreeningTrigger.CREATE
        assert outcome.success is True
        assert provider.calls[0].name == "Sarah Smith"
        assert provider.calls[0].country == "AU"

        entity = factory.get_entity(created["id"])
        assert entity["last_screening_id"] == str(outcome.screening_id)
        assert entity["last_screened_at"] is not None

        assert len(actions(factory, AuditAction.CREATE, created["id"])) == 1
        screened = actions(factory, AuditAction.AUTO_SCREENING, created["id"])
        assert len(screened) == 1
        assert screened[0]["actor_id"] == "agent-1"
        assert screened[0]["org_id"] == "org-a"
        assert screened[0]["payload"]["trigger"] == "CREATE"

    def test_create_with_toggle_off(self, orchestrator, provider, factory):
        orchestrator.update_settings({"auto_screen_on_create": False})

        created, outcome = orchestrator.create_entity({"full_name": "Sarah Smith"})

        assert outcome is None
        assert provider.calls == []
        assert actions(factory, AuditAction.AUTO_SCREENING) == []
        assert factory.get_entity(created["id"])["last_screened_at"] is None

    def test_key_attribute_change_rescreens(self, orchestrator, provider, factory):
        entity_id = factory.entity("Sarah Smith")

        updated, changed, outcome = orchestrator.update_entity(entity_id, {"full_name": "Sarah Jones"})

        assert changed == ["full_name"]
        assert updated["full_name"] == "Sarah Jones"
        assert outcome.trigger == ScreeningTrigger.UPDATE
        assert provider.calls[-1].name == "Sarah Jones"
        assert len(actions(factory, AuditAction.UPDATE, entity_id)) == 1

    def test_non_key_attribute_change_does_not_rescreen(self, orchestrator, provider, factory):
        entity_id = factory.entity("Sarah Smith")

        _, changed, outcome = orchestrator.update_entity(entity_id, {"industry": "Mining"})

        assert changed == ["industry"]
        assert outcome is None
        assert provider.calls == []

    def test_unchanged_value_does_not_rescreen(self, orchestrator, provider, factory):
        entity_id = factory.entity("Sarah Smith")

        _, changed, outcome = orchestrator.update_entity(entity_id, {"full_name": "Sarah Smith"})

        assert changed == []
        assert outcome is None
        assert actions(factory, AuditAction.UPDATE) == []

    def test_update_with_toggle_off(self, orchestrator, provider, factory):
        orchestrator.update_settings({"auto_screen_on_update": False})
        entity_id = factory.entity("Sarah Smith")

        _, _, outcome = orchestrator.update_entity(entity_id, {"full_name": "Sarah Jones"})

        assert outcome is None
        assert provider.calls == []

    def test_custom_key_attributes(self, orchestrator, factory):
        orchestrator.update_settings({"key_attributes": ["industry"]})
        entity_id = factory.entity("Sarah Smith")

        _, _, outcome = orchestrator.update_entity(entity_id, {"industry": "Mining"})
        assert outcome is not None

        _, _, outcome = orchestrator.update_entity(entity_id, {"full_name": "Sarah Jones"})
        assert outcome is None

    def test_update_unknown_entity(self, orchestrator):
        with pytest.raises(EntityNotFoundError):
            orchestrator.update_entity("00000000-0000-0000-0000-000000000000", {"full_name": "X"})


# ============================================
# CLASSIFICATION AND ESCALATION
# ============================================

class TestScreeningOutcome:
    """Tests for what a successful attempt persists and escalates."""

    def test_clean_result_no_case(self, orchestrator, factory):
        entity_id = factory.entity("Sarah Smith")

        outcome = orchestrator.screen_entity(entity_id)

        assert outcome.classified.requires_review is False
        assert outcome.tier_changed is False
        assert outcome.escalation.action == "NONE"
        assert factory.cases_for(entity_id) == []

    def test_pep_match_opens_urgent_case(self, orchestrator, provider, factory, pep_result):
        """Provider reports a PEP: one URGENT risk escalation case."""
        factory.user("Casey Reviewer")
        entity_id = factory.entity("Viktor Petrov")
        provider.set("Viktor Petrov", pep_result)

        outcome = orchestrator.screen_entity(entity_id, actor_id="agent-1")

        assert outcome.previous_tier == RiskTier.LOW
        assert outcome.classified.tier == RiskTier.HIGH
        assert outcome.tier_changed is True
        assert factory.get_entity(entity_id)["risk_tier"] == "HIGH"

        cases = factory.cases_for(entity_id)
        assert len(cases) == 1
        assert cases[0]["reason"] == CaseReason.RISK_ESCALATION.value
        assert cases[0]["priority"] == CasePriority.URGENT.value
        assert cases[0]["auto_created"] is True

        screened = actions(factory, AuditAction.AUTO_SCREENING, entity_id)
        assert len(screened) == 1
        payload = screened[0]["payload"]
        assert payload["riskScore"] == "HIGH"
        assert payload["previousTier"] == "LOW"
        assert payload["pep"] is True
        assert payload["newMatches"] == list(pep_result.findings)
        assert payload["escalation"]["action"] == "CREATED"
        assert screened[0]["case_id"] == cases[0]["id"]

    def test_rescreen_merges_into_open_case(
        self, orchestrator, provider, factory, pep_result, adverse_media_result
    ):
        """A new adverse media match on an entity with an open case appends a note."""
        entity_id = factory.entity("Viktor Petrov")
        provider.set("Viktor Petrov", pep_result)
        first = orchestrator.screen_entity(entity_id)

        provider.set("Viktor Petrov", adverse_media_result)
        second = orchestrator.screen_entity(entity_id)

        assert second.escalation.action == "UPDATED"
        assert second.escalation.case_id == first.escalation.case_id

        cases = factory.cases_for(entity_id)
        assert len(cases) == 1
        assert len(cases[0]["notes"]) == 2
        assert len(actions(factory, AuditAction.AUTO_SCREENING, entity_id)) == 2
        assert len(actions(factory, AuditAction.CASE_CREATED)) == 1

    def test_each_attempt_appends_screening_record(self, orchestrator, factory):
        entity_id = factory.entity("Sarah Smith")

        first = orchestrator.screen_entity(entity_id)
        second = orchestrator.screen_entity(entity_id)

        assert first.screening_id != second.screening_id
        assert factory.get_entity(entity_id)["last_screening_id"] == str(second.screening_id)

    def test_outcome_to_dict(self, orchestrator, factory):
        entity_id = factory.entity("Sarah Smith")
        data = orchestrator.screen_entity(entity_id).to_dict()

        assert data["entity_id"] == str(entity_id)
        assert data["trigger"] == "MANUAL"
        assert data["success"] is True
        assert data["result"]["tier"] == "LOW"
        assert data["escalation"] == {"action": "NONE", "caseId": None, "reason": None}
        assert data["error"] is None


# ============================================
# FAILURES
# ============================================

class TestScreeningFailures:
    """Every failed attempt leaves exactly one AUTO_SCREEN_FAILED event."""

    def test_provider_error_on_create_is_swallowed(self, orchestrator, provider, factory, ops_logger):
        provider.set("Sarah Smith", ProviderError("service unavailable"))

        created, outcome = orchestrator.create_entity({"full_name": "Sarah Smith"})

        assert outcome.success is False
        assert "service unavailable" in outcome.error
        failed = actions(factory, AuditAction.AUTO_SCREEN_FAILED, created["id"])
        assert len(failed) == 1
        assert failed[0]["payload"]["trigger"] == "CREATE"
        assert failed[0]["payload"]["errorType"] == "ProviderError"
        assert actions(factory, AuditAction.AUTO_SCREENING) == []
        ops_logger.log_provider_failure.assert_called_once()

        entity = factory.get_entity(created["id"])
        assert entity["last_screened_at"] is None
        assert entity["risk_tier"] == "LOW"

    def test_failure_visible_to_owning_org(self, orchestrator, provider, audit_recorder):
        provider.set("Sarah Smith", ProviderError("service unavailable"))

        created, _ = orchestrator.create_entity({"full_name": "Sarah Smith"}, org_id="org-a")

        own = audit_recorder.query(
            AuditQuery(org_id="org-a", action=AuditAction.AUTO_SCREEN_FAILED.value)
        )
        other = audit_recorder.query(
            AuditQuery(org_id="org-b", action=AuditAction.AUTO_SCREEN_FAILED.value)
        )
        assert own.total == 1
        assert own.events[0]["subject_id"] == created["id"]
        assert other.total == 0

    def test_manual_failure_carries_entity_org(self, orchestrator, provider, factory):
        entity_id = factory.entity("Sarah Smith", org_id="org-b")
        provider.set("Sarah Smith", ProviderError("service unavailable"))

        with pytest.raises(ProviderError):
            orchestrator.screen_entity(entity_id)

        failed, = actions(factory, AuditAction.AUTO_SCREEN_FAILED, entity_id)
        assert failed["org_id"] == "org-b"

    def test_manual_screen_reraises(self, orchestrator, provider, factory):
        entity_id = factory.entity("Sarah Smith")
        provider.set("Sarah Smith", ProviderError("service unavailable"))

        with pytest.raises(ProviderError):
            orchestrator.screen_entity(entity_id)

        assert len(actions(factory, AuditAction.AUTO_SCREEN_FAILED, entity_id)) == 1

    def test_unexpected_provider_exception_wrapped(self, orchestrator, provider, factory):
        entity_id = factory.entity("Sarah Smith")
        provider.set("Sarah Smith", RuntimeError("boom"))

        with pytest.raises(ProviderError, match="RuntimeError"):
            orchestrator.screen_entity(entity_id)

    def test_provider_timeout(self, orchestrator, provider, factory):
        orchestrator.update_settings({"provider_timeout_seconds": 0.1})
        provider.delay = 0.5
        entity_id = factory.entity("Sarah Smith")

        outcome = orchestrator.on_entity_created(entity_id)

        assert outcome.success is False
        assert "timed out" in outcome.error
        failed = actions(factory, AuditAction.AUTO_SCREEN_FAILED, entity_id)
        assert len(failed) == 1
        assert failed[0]["payload"]["errorType"] == "ProviderTimeoutError"
        assert actions(factory, AuditAction.AUTO_SCREENING) == []

    def test_unknown_entity(self, orchestrator, factory):
        missing = "00000000-0000-0000-0000-000000000000"

        with pytest.raises(EntityNotFoundError):
            orchestrator.screen_entity(missing)

        assert len(actions(factory, AuditAction.AUTO_SCREEN_FAILED, missing)) == 1

    def test_case_persistence_failure_fails_attempt(
        self, orchestrator, provider, factory, pep_result, monkeypatch
    ):
        def broken_create(self, *args, **kwargs):
            raise PersistenceError("Failed to create case: disk full")

        monkeypatch.setattr(CaseRepository, "create", broken_create)
        entity_id = factory.entity("Viktor Petrov")
        provider.set("Viktor Petrov", pep_result)

        outcome = orchestrator.on_entity_created(entity_id)

        assert outcome.success is False
        assert len(actions(factory, AuditAction.AUTO_SCREEN_FAILED, entity_id)) == 1
        assert actions(factory, AuditAction.AUTO_SCREENING) == []
        # The screening record was committed before escalation
        assert factory.get_entity(entity_id)["last_screening_id"] is not None


# ============================================
# BATCH
# ============================================

class TestBatchScreening:
    """Tests for scheduled sweeps over stale entities."""

    def test_batch_respects_cap(self, orchestrator, provider, factory):
        orchestrator.update_settings({"batch_size": 2})
        for i in range(5):
            factory.entity(f"Person {i}")

        summary = orchestrator.run_batch()

        assert summary.selected == 2
        assert summary.screened == 2
        assert len(provider.calls) == 2
        assert summary.finished_at is not None

    def test_never_screened_first(self, orchestrator, provider, factory):
        orchestrator.update_settings({"batch_size": 1})
        screened = factory.entity("Already Screened")
        orchestrator.screen_entity(screened)
        fresh = factory.entity("Never Screened")
        provider.calls.clear()

        orchestrator.run_batch()

        assert [c.entity_id for c in provider.calls] == [str(fresh)]

    def test_interval_excludes_recently_screened(self, orchestrator, provider, factory):
        orchestrator.update_settings({"batch_interval_hours": 24, "batch_size": 10})
        for i in range(3):
            factory.entity(f"Person {i}")

        assert orchestrator.run_batch().screened == 3
        assert orchestrator.run_batch().selected == 0

        later = utcnow() + timedelta(hours=25)
        assert orchestrator.run_batch(now=later).selected == 3

    def test_cap_across_runs(self, orchestrator, factory):
        orchestrator.update_settings({"batch_interval_hours": 24, "batch_size": 2})
        ids = {factory.entity(f"Person {i}") for i in range(3)}

        first = orchestrator.run_batch()
        second = orchestrator.run_batch()
        third = orchestrator.run_batch()

        assert (first.selected, second.selected, third.selected) == (2, 1, 0)
        assert all(factory.get_entity(i)["last_screened_at"] for i in ids)

    def test_failed_entity_reselected(self, orchestrator, provider, factory, ops_logger):
        orchestrator.update_settings({"batch_interval_hours": 24})
        factory.entity("Sarah Smith")
        bad = factory.entity("Bad Record")
        provider.set("Bad Record", ProviderError("malformed"))

        summary = orchestrator.run_batch()
        assert (summary.screened, summary.failed) == (1, 1)
        assert len(actions(factory, AuditAction.AUTO_SCREEN_FAILED, bad)) == 1
        assert len(actions(factory, AuditAction.AUTO_SCREENING)) == 1

        provider.calls.clear()
        again = orchestrator.run_batch()
        assert again.selected == 1
        assert [c.entity_id for c in provider.calls] == [str(bad)]

    def test_entity_screened_after_selection_is_skipped(
        self, orchestrator, provider, factory, db_provider
    ):
        orchestrator.update_settings({"batch_interval_hours": 24})
        alpha = factory.entity("Alpha One")
        beta = factory.entity("Beta Two")
        now = utcnow()
        with db_provider.session_scope() as session:
            entities = EntityRepository(session)
            entities.require(alpha).last_screened_at = now - timedelta(hours=72)
            entities.require(beta).last_screened_at = now - timedelta(hours=48)

        scripted_screen = provider.screen

        def screen_beta_meanwhile(request):
            if request.name == "Alpha One":
                orchestrator.screen_entity(beta)
            return scripted_screen(request)

        provider.screen = screen_beta_meanwhile

        summary = orchestrator.run_batch()

        assert [c.name for c in provider.calls] == ["Beta Two", "Alpha One"]
        assert (summary.selected, summary.screened, summary.skipped) == (2, 1, 1)
        assert summary.to_dict()["skipped"] == 1
        assert len(actions(factory, AuditAction.AUTO_SCREENING, beta)) == 1
        assert actions(factory, AuditAction.AUTO_SCREEN_FAILED) == []

    def test_batch_counts_escalations(self, orchestrator, provider, factory, pep_result):
        factory.entity("Viktor Petrov")
        factory.entity("Sarah Smith")
        provider.set("Viktor Petrov", pep_result)

        summary = orchestrator.run_batch()

        assert summary.flagged == 1
        assert summary.cases_opened == 1
        assert summary.to_dict()["cases_updated"] == 0

    def test_superseded_entities_skipped(self, orchestrator, provider, factory, db_provider):
        old = factory.entity("Sarah Smith")
        new = factory.entity("Sarah Smith-Jones")
        with db_provider.session_scope() as session:
            EntityRepository(session).supersede(old, new)

        orchestrator.run_batch()

        assert [c.entity_id for c in provider.calls] == [str(new)]

    def test_cancel_before_start(self, orchestrator, provider, factory, ops_logger):
        factory.entity("Sarah Smith")
        cancel = threading.Event()
        cancel.set()

        summary = orchestrator.run_batch(cancel_event=cancel)

        assert summary.cancelled is True
        assert summary.screened == 0
        assert provider.calls == []
        ops_logger.log_batch_aborted.assert_called_once_with(0, 1, "cancelled")


# ============================================
# SETTINGS
# ============================================

class TestAutomationSettings:
    """Tests for the immutable settings snapshot."""

    def test_defaults(self):
        settings = AutomationSettings()
        assert settings.auto_screen_on_create is True
        assert settings.auto_screen_on_update is True
        assert settings.batch_interval_hours is None
        assert settings.batch_size == 50
        assert "full_name" in settings.key_attributes

    @pytest.mark.parametrize("changes", [
        {"batch_size": 0},
        {"batch_interval_hours": 0},
        {"batch_delay_seconds": -1},
        {"provider_timeout_seconds": 0},
        {"adverse_media_threshold": -1},
        {"no_such_setting": True},
    ])
    def test_invalid_changes(self, changes):
        with pytest.raises(ValueError):
            AutomationSettings().with_changes(changes)

    def test_update_replaces_snapshot_and_audits(self, orchestrator, settings, factory):
        updated = orchestrator.update_settings(
            {"batch_size": 10, "auto_screen_on_update": False}, actor_id="admin-1"
        )

        assert orchestrator.settings is updated
        assert settings.batch_size == 50
        assert updated.batch_size == 10

        events = actions(factory, AuditAction.AUTOMATION_SETTINGS_UPDATED)
        assert len(events) == 1
        assert events[0]["actor_id"] == "admin-1"
        assert events[0]["payload"]["before"]["batch_size"] == 50
        assert events[0]["payload"]["after"]["auto_screen_on_update"] is False

    def test_invalid_update_keeps_settings(self, orchestrator, factory):
        before = orchestrator.settings
        with pytest.raises(ValueError):
            orchestrator.update_settings({"batch_size": -5})
        assert orchestrator.settings is before
        assert actions(factory, AuditAction.AUTOMATION_SETTINGS_UPDATED) == []

    def test_to_dict(self):
        data = AutomationSettings(key_attributes=("full_name",)).to_dict()
        assert data["key_attributes"] == ["full_name"]
        assert data["provider_timeout_seconds"] == 10.0


# ============================================
# CONCURRENCY
# ============================================

class TestEntityLockRegistry:
    """Tests for per-entity serialization."""

    def test_lock_released_and_forgotten(self):
        registry = EntityLockRegistry()
        with registry.hold("e-1"):
            assert len(registry) == 1
        assert len(registry) == 0

    def test_same_entity_serialized(self):
        registry = EntityLockRegistry()
        entered = threading.Event()

        def contender():
            with registry.hold("e-1"):
                entered.set()

        with registry.hold("e-1"):
            thread = threading.Thread(target=contender)
            thread.start()
            assert entered.wait(0.2) is False
        thread.join(2)
        assert entered.is_set()

    def test_different_entities_independent(self):
        registry = EntityLockRegistry()
        entered = threading.Event()

        def other():
            with registry.hold("e-2"):
                entered.set()

        with registry.hold("e-1"):
            thread = threading.Thread(target=other)
            thread.start()
            assert entered.wait(2) is True
        thread.join(2)


class TestBatchScreeningWorker:
    """Tests for the background sweep thread."""

    def test_idle_without_interval(self, orchestrator, provider, factory):
        factory.entity("Sarah Smith")
        worker = BatchScreeningWorker(orchestrator, poll_seconds=0.05)

        worker.start()
        time.sleep(0.2)
        worker.stop()

        assert provider.calls == []
        assert worker.last_summary is None
        assert worker.is_running is False

    def test_runs_batch_with_interval(self, orchestrator, factory):
        orchestrator.update_settings({"batch_interval_hours": 12})
        factory.entity("Sarah Smith")
        worker = BatchScreeningWorker(orchestrator, poll_seconds=0.05)

        worker.start()
        deadline = time.monotonic() + 5
        while worker.last_summary is None and time.monotonic() < deadline:
            time.sleep(0.05)
        worker.stop()

        assert worker.last_summary is not None
        assert worker.last_summary.screened == 1

    def test_interval_change_applies_to_pending_wait(self, orchestrator, provider, factory):
        orchestrator.update_settings({"batch_interval_hours": 24})
        factory.entity("Sarah Smith")
        worker = BatchScreeningWorker(orchestrator, poll_seconds=0.05)

        worker.start()
        try:
            assert wait_until(lambda: worker.last_summary is not None)
            first = worker.last_summary
            factory.entity("James Chen")
            orchestrator.update_settings({"batch_interval_hours": 0.0001})
            assert wait_until(lambda: worker.last_summary is not first)
        finally:
            worker.stop()

        assert "James Chen" in [c.name for c in provider.calls]

    def test_disabling_interval_stops_sweeps(self, orchestrator, provider, factory):
        orchestrator.update_settings({"batch_interval_hours": 0.0001})
        factory.entity("Sarah Smith")
        worker = BatchScreeningWorker(orchestrator, poll_seconds=0.05)

        worker.start()
        try:
            assert wait_until(lambda: worker.last_summary is not None)
            orchestrator.update_settings({"batch_interval_hours": None})
            time.sleep(0.1)
            calls = len(provider.calls)
            time.sleep(0.6)
        finally:
            worker.stop()

        assert len(provider.calls) == calls
