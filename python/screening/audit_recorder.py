"""
Best-effort, append-only decision ledger.

Writes never propagate errors to the caller: the compliance workflow
stays available even when the audit trail cannot be written. Failures
and drops go to the operational log and to Prometheus counters.

Two write modes:
- inline: each event is written in its own unit of work on the
  caller's thread
- async: events go through a bounded queue drained by one writer
  thread; a full queue drops the event instead of blocking

Events are timestamped when record() is called, so ordering reflects
decision time even when the write happens later.
"""

import logging
import queue
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from database.connection import DatabaseSessionProvider
from database.models import utcnow
from database.monitoring import (
    query_timer,
    record_audit_drop,
    record_audit_write_failure,
    set_audit_queue_depth,
)
from database.repositories import AuditRepository, CaseRepository
from ops_logger import OperationalLogger, get_ops_logger

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1000


def _jsonable(value: Any) -> Any:
    """Coerce a payload value into JSON-serializable form."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(v) for v in value]
    return value


@dataclass(frozen=True)
class AuditRecord:
    """One event waiting to be written"""
    action: str
    subject_type: str
    subject_id: str
    payload: Dict[str, Any]
    actor_id: Optional[str] = None
    org_id: Optional[str] = None
    case_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class AuditQuery:
    """Read-side filters; all optional"""
    subject_type: Optional[str] = None
    subject_id: Optional[str] = None
    action: Optional[str] = None
    actor_id: Optional[str] = None
    org_id: Optional[str] = None
    case_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


@dataclass
class AuditPage:
    """One page of audit events, newest first"""
    events: List[Dict[str, Any]]
    total: int
    offset: int
    limit: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.events) < self.total

    def to_dict(self) -> Dict[str, Any]:
        return {
            "events": self.events,
            "pagination": {
                "total": self.total,
                "limit": self.limit,
                "offset": self.offset,
                "has_more": self.has_more,
            },
        }


class AuditRecorder:
    """
    Records decisions without ever failing the operation being recorded.

    Usage:
        recorder = AuditRecorder(db_provider, async_writes=True)
        recorder.start()
        recorder.record(AuditAction.AUTO_SCREENING, "Entity", str(entity.id), payload)
        ...
        recorder.stop()
    """

    def __init__(
        self,
        db_provider: DatabaseSessionProvider,
        ops_logger: Optional[OperationalLogger] = None,
        async_writes: bool = True,
        queue_size: int = DEFAULT_QUEUE_SIZE
    ):
        if queue_size < 1:
            raise ValueError("queue_size must be at least 1")
        self.db_provider = db_provider
        self.ops_logger = ops_logger or get_ops_logger()
        self.async_writes = async_writes
        self.queue_size = queue_size
        self._queue: "queue.Queue[AuditRecord]" = queue.Queue(maxsize=queue_size)
        self._stop_event = threading.Event()
        self._writer: Optional[threading.Thread] = None
        self._start_lock = threading.Lock()
        self.dropped = 0
        self.failed = 0

    @classmethod
    def from_config(cls, db_provider, audit_config, ops_logger=None) -> 'AuditRecorder':
        return cls(
            db_provider,
            ops_logger=ops_logger,
            async_writes=audit_config.async_writes,
            queue_size=audit_config.queue_size,
        )

    # ============================================
    # WRITE SIDE
    # ============================================

    def start(self) -> None:
        """Start the writer thread (async mode only)."""
        if not self.async_writes:
            return
        with self._start_lock:
            if self._writer is not None and self._writer.is_alive():
                return
            self._stop_event.clear()
            self._writer = threading.Thread(
                target=self._run, name="audit-writer", daemon=True
            )
            self._writer.start()
            logger.info("Audit writer started (queue_size=%d)", self.queue_size)

    def record(
        self,
        action,
        subject_type: str,
        subject_id: str,
        payload: Optional[Dict[str, Any]] = None,
        actor_id: Optional[str] = None,
        org_id: Optional[str] = None,
        case_id: Optional[str] = None
    ) -> bool:
        """
        Append one immutable audit event, best-effort.

        Args:
            action: Action code (AuditAction or string)
            subject_type: Type of subject (Entity, Case, Deal, Settings)
            subject_id: Subject id
            payload: JSON snapshot of the decision
            actor_id: Acting user, None for system-initiated actions
            org_id: Owning organisation
            case_id: Related case, if any

        Returns:
            True if the event was written (inline) or accepted (async),
            False if it was dropped or failed. Never raises.
        """
        try:
            item = AuditRecord(
                action=str(_jsonable(action)),
                subject_type=subject_type,
                subject_id=str(subject_id),
                payload=_jsonable(payload or {}),
                actor_id=str(actor_id) if actor_id is not None else None,
                org_id=str(org_id) if org_id is not None else None,
                case_id=str(case_id) if case_id is not None else None,
            )
        except Exception as e:
            self._report_failure(str(_jsonable(action)), str(subject_id), e)
            return False

        if not self.async_writes:
            return self._write(item)

        if self._writer is None or not self._writer.is_alive():
            self.start()

        try:
            self._queue.put_nowait(item)
        except queue.Full:
            self.dropped += 1
            record_audit_drop()
            self.ops_logger.log_audit_event_dropped(item.action, item.subject_id, self.queue_size)
            return False

        set_audit_queue_depth(self._queue.qsize())
        return True

    def _write(self, item: AuditRecord) -> bool:
        try:
            with self.db_provider.get_unit_of_work() as uow:
                AuditRepository(uow.session).log(
                    action=item.action,
                    subject_type=item.subject_type,
                    subject_id=item.subject_id,
                    payload=item.payload,
                    actor_id=item.actor_id,
                    org_id=item.org_id,
                    case_id=item.case_id,
                    timestamp=item.timestamp,
                )
                uow.commit()
            return True
        except Exception as e:
            self._report_failure(item.action, item.subject_id, e)
            return False

    def _report_failure(self, action: str, subject_id: str, error: Exception) -> None:
        self.failed += 1
        record_audit_write_failure()
        logger.error(f"Audit write failed for {action} on {subject_id}: {error}")
        self.ops_logger.log_audit_write_failed(action, subject_id, str(error))

    def _run(self) -> None:
        while not (self._stop_event.is_set() and self._queue.empty()):
            try:
                item = self._queue.get(timeout=0.2)
            except queue.Empty:
                continue
            try:
                self._write(item)
            finally:
                self._queue.task_done()
                set_audit_queue_depth(self._queue.qsize())

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    def flush(self) -> None:
        """Block until every accepted event has been written or failed."""
        if self.async_writes and self._writer is not None and self._writer.is_alive():
            self._queue.join()

    def stop(self, timeout: float = 5.0) -> None:
        """Drain the queue and stop the writer thread."""
        self._stop_event.set()
        if self._writer is not None:
            self._writer.join(timeout)
            if self._writer.is_alive():
                logger.warning("Audit writer did not stop within %.1fs", timeout)
            self._writer = None

    # ============================================
    # READ SIDE
    # ============================================

    def query(
        self,
        filters: Optional[AuditQuery] = None,
        offset: int = 0,
        limit: int = 50
    ) -> AuditPage:
        """
        Search the ledger, newest first.

        Args:
            filters: Optional AuditQuery
            offset: Pagination offset
            limit: Page size

        Returns:
            AuditPage
        """
        filters = filters or AuditQuery()
        with self.db_provider.session_scope() as session:
            with query_timer("audit_search"):
                events, total = AuditRepository(session).search(
                    subject_type=filters.subject_type,
                    subject_id=filters.subject_id,
                    action=filters.action,
                    actor_id=filters.actor_id,
                    org_id=filters.org_id,
                    case_id=filters.case_id,
                    start_date=filters.start_date,
                    end_date=filters.end_date,
                    offset=offset,
                    limit=limit,
                )
            return AuditPage(
                events=[e.to_dict() for e in events],
                total=total,
                offset=offset,
                limit=limit,
            )

    def entity_trail(self, entity_id, limit: int = 50) -> List[Dict[str, Any]]:
        """Events about an entity and about any of its cases, newest first."""
        with self.db_provider.session_scope() as session:
            entity_id = uuid.UUID(str(entity_id))
            cases, _ = CaseRepository(session).list_cases(entity_id=entity_id, limit=1000)
            events = AuditRepository(session).trail(
                str(entity_id), [str(c.id) for c in cases], limit=limit
            )
            return [e.to_dict() for e in events]
