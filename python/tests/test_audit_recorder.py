"""
Tests for the best-effort audit recorder.

Covers inline and queued writes, drop and failure policy, and the
read-side queries.
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from database.models import AuditAction, CaseStatus, utcnow
from database.repositories import AuditRepository
from screening.audit_recorder import AuditQuery, AuditRecorder


@pytest.fixture
def async_recorder(db_provider, ops_logger):
    recorder = AuditRecorder(db_provider, ops_logger=ops_logger, async_writes=True, queue_size=2)
    yield recorder
    recorder.stop()


# ============================================
# WRITE SIDE
# ============================================

class TestInlineWrites:
    """Tests for writes on the caller's thread."""

    def test_record_persists_event(self, audit_recorder, factory):
        entity_id = uuid.uuid4()
        assert audit_recorder.record(
            AuditAction.AUTO_SCREENING,
            "Entity",
            entity_id,
            {"riskScore": "HIGH"},
            actor_id="user-1",
            org_id="org-a",
        ) is True

        events = factory.audit_events()
        assert len(events) == 1
        event = events[0]
        assert event["action"] == "AUTO_SCREENING"
        assert event["subject_type"] == "Entity"
        assert event["subject_id"] == str(entity_id)
        assert event["payload"] == {"riskScore": "HIGH"}
        assert event["actor_id"] == "user-1"
        assert event["org_id"] == "org-a"
        assert event["case_id"] is None

    def test_payload_values_coerced(self, audit_recorder, factory):
        case_id = uuid.uuid4()
        when = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        audit_recorder.record(
            "CUSTOM",
            "Case",
            case_id,
            {"status": CaseStatus.OPEN, "caseId": case_id, "at": when, "tags": ("a", "b")},
            case_id=case_id,
        )
        payload = factory.audit_events()[0]["payload"]
        assert payload == {
            "status": "OPEN",
            "caseId": str(case_id),
            "at": when.isoformat(),
            "tags": ["a", "b"],
        }

    def test_system_actions_have_no_actor(self, audit_recorder, factory):
        audit_recorder.record(AuditAction.CASE_CREATED, "Case", "c-1")
        event = factory.audit_events()[0]
        assert event["actor_id"] is None
        assert event["payload"] == {}

    def test_write_failure_is_swallowed(self, audit_recorder, ops_logger, monkeypatch):
        def broken_log(self, *args, **kwargs):
            raise OperationalError("INSERT", {}, Exception("database is locked"))

        monkeypatch.setattr(AuditRepository, "log", broken_log)

        assert audit_recorder.record(AuditAction.UPDATE, "Entity", "e-1") is False
        assert audit_recorder.failed == 1
        ops_logger.log_audit_write_failed.assert_called_once()
        action, subject_id, _ = ops_logger.log_audit_write_failed.call_args.args
        assert (action, subject_id) == ("UPDATE", "e-1")

    def test_unserializable_payload_is_swallowed(self, audit_recorder, factory):
        assert audit_recorder.record("CUSTOM", "Entity", "e-1", {"obj": object()}) is False
        assert audit_recorder.failed == 1
        assert factory.audit_events() == []

    def test_events_are_immutable(self, audit_recorder, db_provider):
        audit_recorder.record(AuditAction.CREATE, "Entity", "e-1")
        with pytest.raises(Exception):
            with db_provider.session_scope() as session:
                event, = AuditRepository(session).search()[0]
                event.action = "TAMPERED"


class TestQueuedWrites:
    """Tests for the bounded background channel."""

    def test_flush_writes_queued_events(self, async_recorder, factory):
        for i in range(2):
            assert async_recorder.record(AuditAction.UPDATE, "Entity", f"e-{i}") is True
        async_recorder.flush()
        assert len(factory.audit_events()) == 2
        assert async_recorder.queue_depth == 0

    def test_full_queue_drops_without_blocking(self, async_recorder, ops_logger, factory, monkeypatch):
        # Keep the writer from starting so the queue fills deterministically
        monkeypatch.setattr(async_recorder, "start", lambda: None)

        assert async_recorder.record(AuditAction.UPDATE, "Entity", "e-1") is True
        assert async_recorder.record(AuditAction.UPDATE, "Entity", "e-2") is True
        assert async_recorder.record(AuditAction.UPDATE, "Entity", "e-3") is False

        assert async_recorder.dropped == 1
        assert async_recorder.queue_depth == 2
        ops_logger.log_audit_event_dropped.assert_called_once_with("UPDATE", "e-3", 2)

        monkeypatch.undo()
        async_recorder.start()
        async_recorder.flush()
        assert sorted(e["subject_id"] for e in factory.audit_events()) == ["e-1", "e-2"]

    def test_timestamp_reflects_decision_time(self, async_recorder, factory, monkeypatch):
        monkeypatch.setattr(async_recorder, "start", lambda: None)
        before = utcnow()
        async_recorder.record(AuditAction.UPDATE, "Entity", "e-1")
        after = utcnow()

        monkeypatch.undo()
        async_recorder.start()
        async_recorder.flush()

        stamped = datetime.fromisoformat(factory.audit_events()[0]["timestamp"])
        assert before <= stamped <= after

    def test_stop_drains_queue(self, async_recorder, factory):
        async_recorder.record(AuditAction.CREATE, "Entity", "e-1")
        async_recorder.record(AuditAction.UPDATE, "Entity", "e-1")
        async_recorder.stop()
        assert len(factory.audit_events()) == 2

    def test_inline_mode_has_no_writer(self, audit_recorder):
        audit_recorder.start()
        assert audit_recorder._writer is None
        assert audit_recorder.queue_depth == 0

    def test_invalid_queue_size(self, db_provider, ops_logger):
        with pytest.raises(ValueError):
            AuditRecorder(db_provider, ops_logger=ops_logger, queue_size=0)

    def test_from_config(self, db_provider, ops_logger):
        class Cfg:
            async_writes = False
            queue_size = 25

        recorder = AuditRecorder.from_config(db_provider, Cfg(), ops_logger=ops_logger)
        assert recorder.async_writes is False
        assert recorder.queue_size == 25


# ============================================
# READ SIDE
# ============================================

class TestAuditQuery:
    """Tests for filtering and paginating the ledger."""

    def test_newest_first_with_pagination(self, audit_recorder):
        for i in range(5):
            audit_recorder.record(AuditAction.UPDATE, "Entity", f"e-{i}")

        page = audit_recorder.query(offset=0, limit=2)
        assert page.total == 5
        assert [e["subject_id"] for e in page.events] == ["e-4", "e-3"]
        assert page.has_more is True

        last = audit_recorder.query(offset=4, limit=2)
        assert [e["subject_id"] for e in last.events] == ["e-0"]
        assert last.has_more is False
        assert last.to_dict()["pagination"] == {
            "total": 5, "limit": 2, "offset": 4, "has_more": False
        }

    def test_filters(self, audit_recorder):
        audit_recorder.record(AuditAction.CREATE, "Entity", "e-1", actor_id="u-1", org_id="org-a")
        audit_recorder.record(AuditAction.UPDATE, "Entity", "e-1", actor_id="u-2", org_id="org-a")
        audit_recorder.record(AuditAction.CASE_CREATED, "Case", "c-1", org_id="org-b")

        assert audit_recorder.query(AuditQuery(action="CREATE")).total == 1
        assert audit_recorder.query(AuditQuery(subject_type="Entity")).total == 2
        assert audit_recorder.query(AuditQuery(subject_id="e-1", actor_id="u-2")).total == 1
        assert audit_recorder.query(AuditQuery(org_id="org-b")).total == 1

    def test_date_range(self, audit_recorder):
        audit_recorder.record(AuditAction.CREATE, "Entity", "e-1")
        now = utcnow()

        assert audit_recorder.query(AuditQuery(start_date=now - timedelta(hours=1))).total == 1
        assert audit_recorder.query(AuditQuery(start_date=now + timedelta(hours=1))).total == 0
        assert audit_recorder.query(AuditQuery(end_date=now - timedelta(hours=1))).total == 0

    def test_entity_trail_includes_case_events(self, audit_recorder, factory):
        entity_id = factory.entity("Viktor Petrov")
        case_id = factory.case(entity_id)
        other = factory.entity("Sarah Smith")

        audit_recorder.record(AuditAction.CREATE, "Entity", entity_id)
        audit_recorder.record(AuditAction.CASE_STATUS_CHANGE, "Case", case_id, case_id=case_id)
        audit_recorder.record(AuditAction.CREATE, "Entity", other)

        trail = audit_recorder.entity_trail(str(entity_id))
        assert [e["action"] for e in trail] == ["CASE_STATUS_CHANGE", "CREATE"]
        assert all(e["subject_id"] != str(other) for e in trail)
