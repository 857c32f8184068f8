"""
Screening orchestration over lifecycle triggers.

Triggers:
- CREATE: entity onboarded (if auto_screen_on_create)
- UPDATE: a key identifying attribute changed (if auto_screen_on_update)
- BATCH: scheduled sweep over entities whose last screening is stale
- MANUAL: user-initiated single-entity screening

Each attempt runs under a per-entity lock:
    provider call -> ScreeningRecord committed -> classification
    -> tier persisted if changed -> case escalation -> audit event

Automated triggers never raise; failures only appear in the audit trail
as AUTO_SCREEN_FAILED. Manual screening re-raises after auditing.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import UUID

from database.connection import DatabaseSessionProvider
from database.models import AuditAction, EntityKind, RiskTier, ensure_utc, utcnow
from database.monitoring import observe_provider_latency, record_screening_attempt
from database.repositories import EntityRepository, ScreeningRepository
from ops_logger import OperationalLogger, get_ops_logger
from screening.escalation import ACTION_CREATED, ACTION_UPDATED, EscalationOutcome
from screening.exceptions import ProviderError, ProviderTimeoutError
from screening.provider import ProviderRequest, ProviderResult, ScreeningProvider
from screening.risk_classifier import ClassifiedResult, RiskClassifier

logger = logging.getLogger(__name__)

DEFAULT_KEY_ATTRIBUTES = (
    "full_name", "legal_name", "date_of_birth", "org_identifier", "country"
)


class ScreeningTrigger(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    BATCH = "BATCH"
    MANUAL = "MANUAL"


# ============================================
# AUTOMATION SETTINGS
# ============================================

@dataclass(frozen=True)
class AutomationSettings:
    """Immutable snapshot of automation settings; replaced as a whole on update"""
    auto_screen_on_create: bool = True
    auto_screen_on_update: bool = True
    batch_interval_hours: Optional[float] = None
    batch_size: int = 50
    batch_delay_seconds: float = 0.1
    provider_timeout_seconds: float = 10.0
    adverse_media_threshold: int = 2
    key_attributes: Tuple[str, ...] = DEFAULT_KEY_ATTRIBUTES

    def __post_init__(self):
        if self.batch_interval_hours is not None and self.batch_interval_hours <= 0:
            raise ValueError("batch_interval_hours must be positive or None")
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.batch_delay_seconds < 0:
            raise ValueError("batch_delay_seconds cannot be negative")
        if self.provider_timeout_seconds <= 0:
            raise ValueError("provider_timeout_seconds must be positive")
        if self.adverse_media_threshold < 0:
            raise ValueError("adverse_media_threshold cannot be negative")
        object.__setattr__(self, "key_attributes", tuple(self.key_attributes))

    @classmethod
    def from_config(cls, automation_config, screening_config=None) -> 'AutomationSettings':
        values = dict(
            auto_screen_on_create=automation_config.auto_screen_on_create,
            auto_screen_on_update=automation_config.auto_screen_on_update,
            batch_interval_hours=automation_config.batch_interval_hours,
            batch_size=automation_config.batch_size,
            batch_delay_seconds=automation_config.batch_delay_seconds,
            key_attributes=tuple(automation_config.key_attributes),
        )
        if screening_config is not None:
            values["provider_timeout_seconds"] = screening_config.provider_timeout_seconds
            values["adverse_media_threshold"] = screening_config.adverse_media_threshold
        return cls(**values)

    def with_changes(self, changes: Dict[str, Any]) -> 'AutomationSettings':
        """
        New snapshot with the given fields replaced.

        Raises:
            ValueError: On unknown fields or invalid values
        """
        known = {f.name for f in fields(self)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown automation settings: {', '.join(sorted(unknown))}")
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["key_attributes"] = list(self.key_attributes)
        return data


# ============================================
# PER-ENTITY SERIALIZATION
# ============================================

class EntityLockRegistry:
    """One lock per entity id, created on demand and released when unused."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, list] = {}

    @contextmanager
    def hold(self, entity_id):
        key = str(entity_id)
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


# ============================================
# RESULTS
# ============================================

@dataclass
class ScreeningOutcome:
    """Result of one screening attempt"""
    entity_id: UUID
    trigger: ScreeningTrigger
    success: bool
    screening_id: Optional[UUID] = None
    classified: Optional[ClassifiedResult] = None
    previous_tier: Optional[RiskTier] = None
    tier_changed: bool = False
    escalation: EscalationOutcome = field(default_factory=EscalationOutcome)
    error: Optional[str] = None
    org_id: Optional[str] = None
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_id": str(self.entity_id),
            "trigger": self.trigger.value,
            "success": self.success,
            "screening_id": str(self.screening_id) if self.screening_id else None,
            "result": self.classified.to_dict() if self.classified else None,
            "previous_tier": self.previous_tier.value if self.previous_tier else None,
            "tier_changed": self.tier_changed,
            "escalation": self.escalation.to_dict(),
            "error": self.error,
            "skipped": self.skipped,
        }


@dataclass
class BatchSummary:
    """Counters for one batch sweep"""
    selected: int = 0
    screened: int = 0
    failed: int = 0
    flagged: int = 0
    cases_opened: int = 0
    cases_updated: int = 0
    skipped: int = 0
    cancelled: bool = False
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    def add(self, outcome: ScreeningOutcome) -> None:
        if outcome.skipped:
            self.skipped += 1
            return
        if not outcome.success:
            self.failed += 1
            return
        self.screened += 1
        if outcome.classified is not None and outcome.classified.requires_review:
            self.flagged += 1
        if outcome.escalation.action == ACTION_CREATED:
            self.cases_opened += 1
        elif outcome.escalation.action == ACTION_UPDATED:
            self.cases_updated += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "selected": self.selected,
            "screened": self.screened,
            "failed": self.failed,
            "flagged": self.flagged,
            "cases_opened": self.cases_opened,
            "cases_updated": self.cases_updated,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


# ============================================
# ORCHESTRATOR
# ============================================

class ScreeningOrchestrator:
    """
    Coordinates lifecycle triggers, provider calls, classification,
    escalation and audit.

    Usage:
        orchestrator = ScreeningOrchestrator(
            db_provider, provider, escalation_engine, audit_recorder,
            settings=AutomationSettings.from_config(config.automation, config.screening)
        )
        entity, outcome = orchestrator.create_entity({"full_name": "James Chen"})
        summary = orchestrator.run_batch()
    """

    def __init__(
        self,
        db_provider: DatabaseSessionProvider,
        provider: ScreeningProvider,
        escalation_engine,
        audit_recorder,
        settings: Optional[AutomationSettings] = None,
        ops_logger: Optional[OperationalLogger] = None,
        max_provider_workers: int = 4
    ):
        self.db_provider = db_provider
        self.provider = provider
        self.escalation_engine = escalation_engine
        self.audit_recorder = audit_recorder
        self.ops_logger = ops_logger or get_ops_logger()
        self._settings = settings or AutomationSettings()
        self._settings_lock = threading.Lock()
        self._locks = EntityLockRegistry()
        self._executor = ThreadPoolExecutor(
            max_workers=max_provider_workers,
            thread_name_prefix="screening-provider"
        )
        self._stop_event = threading.Event()

    # ============================================
    # SETTINGS
    # ============================================

    @property
    def settings(self) -> AutomationSettings:
        return self._settings

    def update_settings(
        self,
        changes: Dict[str, Any],
        actor_id: Optional[str] = None,
        org_id: Optional[str] = None
    ) -> AutomationSettings:
        """
        Replace the automation settings snapshot (last write wins).

        Raises:
            ValueError: On unknown fields or invalid values
        """
        with self._settings_lock:
            before = self._settings
            after = before.with_changes(changes)
            self._settings = after

        logger.info(f"Automation settings updated by {actor_id or 'system'}: {sorted(changes)}")
        self.audit_recorder.record(
            AuditAction.AUTOMATION_SETTINGS_UPDATED,
            "Settings",
            "automation",
            {"before": before.to_dict(), "after": after.to_dict()},
            actor_id=actor_id,
            org_id=org_id,
        )
        return after

    # ============================================
    # LIFECYCLE ENTRY POINTS
    # ============================================

    def create_entity(
        self,
        data: Dict[str, Any],
        actor_id: Optional[str] = None,
        org_id: Optional[str] = None
    ) -> Tuple[Dict[str, Any], Optional[ScreeningOutcome]]:
        """
        Onboard an entity and fire the CREATE trigger.

        Returns:
            Tuple of (entity dict as created, screening outcome or None)

        Raises:
            PersistenceError: If the entity cannot be written
        """
        data = dict(data)
        if org_id is not None:
            data["org_id"] = org_id
        if "kind" in data:
            data["kind"] = EntityKind(data["kind"])

        with self.db_provider.get_unit_of_work() as uow:
            entity = EntityRepository(uow.session).create(data)
            uow.commit()
            created = entity.to_dict()
            entity_id = entity.id

        self.audit_recorder.record(
            AuditAction.CREATE,
            "Entity",
            str(entity_id),
            {"kind": created["kind"], "name": created["full_name"] or created["legal_name"]},
            actor_id=actor_id,
            org_id=created["org_id"],
        )
        return created, self.on_entity_created(entity_id, actor_id=actor_id, org_id=created["org_id"])

    def update_entity(
        self,
        entity_id: UUID,
        updates: Dict[str, Any],
        actor_id: Optional[str] = None
    ) -> Tuple[Dict[str, Any], List[str], Optional[ScreeningOutcome]]:
        """
        Apply attribute edits and fire the UPDATE trigger.

        Returns:
            Tuple of (entity dict, changed field names, screening outcome or None)

        Raises:
            EntityNotFoundError: If entity not found
        """
        updates = dict(updates)
        if "kind" in updates:
            updates["kind"] = EntityKind(updates["kind"])

        with self.db_provider.get_unit_of_work() as uow:
            entity, changed = EntityRepository(uow.session).update(entity_id, updates)
            uow.commit()
            updated = entity.to_dict()

        if changed:
            self.audit_recorder.record(
                AuditAction.UPDATE,
                "Entity",
                str(entity_id),
                {"changedFields": changed},
                actor_id=actor_id,
                org_id=updated["org_id"],
            )
        return updated, changed, self.on_entity_updated(
            entity_id, changed, actor_id=actor_id, org_id=updated["org_id"]
        )

    def on_entity_created(
        self,
        entity_id: UUID,
        actor_id: Optional[str] = None,
        org_id: Optional[str] = None
    ) -> Optional[ScreeningOutcome]:
        """CREATE trigger; never raises."""
        if not self.settings.auto_screen_on_create:
            logger.debug("Auto-screen on create disabled; skipping %s", entity_id)
            return None
        return self._attempt(entity_id, ScreeningTrigger.CREATE, actor_id=actor_id, org_id=org_id)

    def on_entity_updated(
        self,
        entity_id: UUID,
        changed_fields: Iterable[str],
        actor_id: Optional[str] = None,
        org_id: Optional[str] = None
    ) -> Optional[ScreeningOutcome]:
        """UPDATE trigger; only key attribute changes re-screen. Never raises."""
        settings = self.settings
        if not settings.auto_screen_on_update:
            logger.debug("Auto-screen on update disabled; skipping %s", entity_id)
            return None
        if not set(changed_fields) & set(settings.key_attributes):
            return None
        return self._attempt(entity_id, ScreeningTrigger.UPDATE, actor_id=actor_id, org_id=org_id)

    def screen_entity(
        self,
        entity_id: UUID,
        actor_id: Optional[str] = None
    ) -> ScreeningOutcome:
        """
        User-initiated screening of one entity.

        Raises:
            EntityNotFoundError: If entity not found
            ProviderError: If the provider fails or times out
            PersistenceError: If a primary record cannot be written
        """
        return self._attempt(entity_id, ScreeningTrigger.MANUAL, actor_id=actor_id, raise_errors=True)

    # ============================================
    # BATCH
    # ============================================

    def run_batch(
        self,
        now: Optional[datetime] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> BatchSummary:
        """
        Screen stale entities sequentially, oldest first.

        With no batch interval configured every entity is eligible.
        Setting cancel_event stops the sweep between entities.

        Returns:
            BatchSummary
        """
        settings = self.settings
        cancel = cancel_event or self._stop_event
        now = now or utcnow()
        cutoff = None
        if settings.batch_interval_hours is not None:
            cutoff = now - timedelta(hours=settings.batch_interval_hours)

        with self.db_provider.session_scope() as session:
            entity_ids = EntityRepository(session).select_stale(cutoff, settings.batch_size)

        summary = BatchSummary(selected=len(entity_ids))
        logger.info(f"Batch screening selected {len(entity_ids)} entities (cutoff={cutoff})")

        for index, entity_id in enumerate(entity_ids):
            if index > 0 and settings.batch_delay_seconds:
                cancel.wait(settings.batch_delay_seconds)
            if cancel.is_set():
                summary.cancelled = True
                self.ops_logger.log_batch_aborted(index, len(entity_ids), "cancelled")
                break
            summary.add(self._attempt(entity_id, ScreeningTrigger.BATCH, cutoff=cutoff))

        summary.finished_at = utcnow()
        logger.info(
            f"Batch screening done: {summary.screened} screened, {summary.failed} failed, "
            f"{summary.flagged} flagged"
        )
        return summary

    # ============================================
    # SINGLE ATTEMPT
    # ============================================

    def _attempt(
        self,
        entity_id: UUID,
        trigger: ScreeningTrigger,
        actor_id: Optional[str] = None,
        org_id: Optional[str] = None,
        cutoff: Optional[datetime] = None,
        raise_errors: bool = False
    ) -> ScreeningOutcome:
        settings = self.settings
        # Filled with the entity's org once it has been read
        scope = {"org_id": org_id}
        try:
            with self._locks.hold(entity_id):
                outcome = self._screen_locked(entity_id, trigger, settings, scope, cutoff)
        except Exception as e:
            record_screening_attempt(trigger.value, "failed")
            logger.error(f"Screening failed for entity {entity_id} ({trigger.value}): {e}")
            if isinstance(e, ProviderError):
                self.ops_logger.log_provider_failure(str(entity_id), trigger.value, str(e))
            self.audit_recorder.record(
                AuditAction.AUTO_SCREEN_FAILED,
                "Entity",
                str(entity_id),
                {"error": str(e), "errorType": type(e).__name__, "trigger": trigger.value},
                actor_id=actor_id,
                org_id=scope["org_id"],
            )
            if raise_errors:
                raise
            return ScreeningOutcome(
                entity_id, trigger, success=False, error=str(e), org_id=scope["org_id"]
            )

        if outcome.skipped:
            logger.info(f"Entity {entity_id} was screened after batch selection; skipping")
            return outcome

        record_screening_attempt(trigger.value, "success")
        classified = outcome.classified
        self.audit_recorder.record(
            AuditAction.AUTO_SCREENING,
            "Entity",
            str(entity_id),
            {
                "riskScore": classified.tier.value,
                "previousTier": outcome.previous_tier.value,
                "pep": classified.pep,
                "sanctions": classified.sanctions,
                "adverseMedia": classified.adverse_media,
                "identityVerificationFailed": classified.identity_verification_failed,
                "newMatches": list(classified.findings),
                "requiresReview": classified.requires_review,
                "trigger": trigger.value,
                "screeningId": str(outcome.screening_id),
                "escalation": outcome.escalation.to_dict(),
            },
            actor_id=actor_id,
            org_id=outcome.org_id,
            case_id=outcome.escalation.case_id,
        )
        return outcome

    def _screen_locked(
        self,
        entity_id: UUID,
        trigger: ScreeningTrigger,
        settings: AutomationSettings,
        scope: Dict[str, Any],
        cutoff: Optional[datetime] = None
    ) -> ScreeningOutcome:
        with self.db_provider.get_unit_of_work() as uow:
            entity = EntityRepository(uow.session).require(entity_id)
            scope["org_id"] = entity.org_id
            last_screened = ensure_utc(entity.last_screened_at)
            if cutoff is not None and last_screened is not None and last_screened >= cutoff:
                return ScreeningOutcome(
                    entity_id, trigger, success=True, skipped=True, org_id=entity.org_id
                )
            request = ProviderRequest.from_entity(entity)

        result = self._call_provider(request, settings.provider_timeout_seconds)

        with self.db_provider.get_unit_of_work() as uow:
            entities = EntityRepository(uow.session)
            entity = entities.require(entity_id)
            record = ScreeningRepository(uow.session).create(
                entity_id=entity.id,
                pep=result.pep,
                sanctions=result.sanctions,
                adverse_media=result.adverse_media,
                identity_verification_failed=result.identity_verification_failed,
                provider_tier=result.risk_tier,
                findings=result.findings,
                raw_payload=result.raw or result.to_dict(),
                trigger=trigger.value,
            )
            entities.mark_screened(entity, record)
            uow.commit()

            classified = RiskClassifier(settings.adverse_media_threshold).classify(result)
            previous_tier = RiskTier(entity.risk_tier)
            tier_changed = classified.tier != previous_tier
            if tier_changed:
                entities.set_risk_tier(entity, classified.tier)
                uow.commit()
                logger.info(
                    f"Entity {entity_id} risk tier {previous_tier.value} -> {classified.tier.value}"
                )
            screening_id = record.id
            org_id = entity.org_id

        escalation = self.escalation_engine.escalate(entity_id, classified)

        return ScreeningOutcome(
            entity_id=entity_id,
            trigger=trigger,
            success=True,
            screening_id=screening_id,
            classified=classified,
            previous_tier=previous_tier,
            tier_changed=tier_changed,
            escalation=escalation,
            org_id=org_id,
        )

    def _call_provider(self, request: ProviderRequest, timeout: float) -> ProviderResult:
        started = time.perf_counter()
        future = self._executor.submit(self.provider.screen, request)
        try:
            result = future.result(timeout=timeout)
        except FutureTimeoutError:
            future.cancel()
            raise ProviderTimeoutError(timeout)
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(f"Screening provider raised {type(e).__name__}: {e}") from e
        finally:
            observe_provider_latency(time.perf_counter() - started)

        if not isinstance(result, ProviderResult):
            raise ProviderError(f"Screening provider returned {type(result).__name__}")
        return result

    def shutdown(self, wait: bool = True) -> None:
        """Cancel any running batch and release provider workers."""
        self._stop_event.set()
        self._executor.shutdown(wait=wait)


# ============================================
# BATCH WORKER
# ============================================

class BatchScreeningWorker:
    """
    Long-lived thread running batch sweeps at the configured interval.

    Idles while batch_interval_hours is None. The interval is re-read every
    poll_seconds, so settings changes apply to the pending wait. stop()
    cancels a sweep in progress between entities.
    """

    def __init__(self, orchestrator: ScreeningOrchestrator, poll_seconds: float = 60.0):
        self.orchestrator = orchestrator
        self.poll_seconds = poll_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.last_summary: Optional[BatchSummary] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="batch-screening", daemon=True)
        self._thread.start()
        logger.info("Batch screening worker started")

    def stop(self, timeout: float = 10.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Batch screening worker stopped")

    def _sweep_due(self, last_sweep: Optional[float]) -> bool:
        hours = self.orchestrator.settings.batch_interval_hours
        if hours is None:
            return False
        return last_sweep is None or time.monotonic() - last_sweep >= hours * 3600

    def _run(self) -> None:
        last_sweep = None
        while not self._stop.is_set():
            if not self._sweep_due(last_sweep):
                self._stop.wait(self.poll_seconds)
                continue
            last_sweep = time.monotonic()
            try:
                self.last_summary = self.orchestrator.run_batch(cancel_event=self._stop)
            except Exception as e:
                logger.exception(f"Batch screening run failed: {e}")
                self.orchestrator.ops_logger.log_batch_aborted(0, 0, str(e))
