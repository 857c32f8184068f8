"""
Shared fixtures for the KYC screening engine tests.

Uses a file-backed SQLite database per test so the background audit
writer and provider threads can open their own connections.
"""

import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine

from database.connection import create_test_provider
from database.models import (
    CasePriority, CaseReason, EntityKind, KycOutcome, PartyRole, RiskTier, UserRole
)
from database.repositories import (
    AuditRepository,
    CaseRepository,
    DealRepository,
    EntityRepository,
    KycRepository,
    UserRepository,
)
from ops_logger import OperationalLogger
from screening.audit_recorder import AuditRecorder
from screening.escalation import CaseEscalationEngine
from screening.orchestrator import AutomationSettings, ScreeningOrchestrator
from screening.provider import ProviderRequest, ProviderResult, ScreeningProvider


class ScriptedProvider(ScreeningProvider):
    """Provider double answering from a per-name script."""

    name = "scripted"

    def __init__(self, default: Optional[ProviderResult] = None):
        self.default = default or ProviderResult(risk_tier=RiskTier.LOW)
        self.script: Dict[str, Any] = {}
        self.calls: List[ProviderRequest] = []
        self.delay = 0.0

    def set(self, name: str, outcome) -> None:
        """Answer for a name: a ProviderResult, or an exception to raise."""
        self.script[name] = outcome

    def screen(self, request: ProviderRequest) -> ProviderResult:
        self.calls.append(request)
        if self.delay:
            time.sleep(self.delay)
        outcome = self.script.get(request.name, self.default)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def pep_result():
    return ProviderResult(
        pep=True,
        risk_tier=RiskTier.MEDIUM,
        findings=("PEP Match: Viktor Petrov - Government Official",),
    )


@pytest.fixture
def adverse_media_result():
    """Adverse media with more matches than the default threshold of 2."""
    return ProviderResult(
        adverse_media=True,
        risk_tier=RiskTier.MEDIUM,
        findings=(
            "Adverse Media: Financial Review - Offshore fund links",
            "Adverse Media: Daily Courier - Tax investigation",
            "Adverse Media: Business Wire - Regulator inquiry",
        ),
    )


class DataFactory:
    """Creates committed rows and reads back audit events."""

    def __init__(self, db_provider):
        self.db_provider = db_provider

    def entity(self, full_name: str = "Sarah Smith", **fields) -> uuid.UUID:
        data = {"kind": EntityKind.INDIVIDUAL, "full_name": full_name}
        data.update(fields)
        with self.db_provider.session_scope() as session:
            return EntityRepository(session).create(data).id

    def organisation(self, legal_name: str, **fields) -> uuid.UUID:
        return self.entity(full_name=None, kind=EntityKind.ORGANISATION, legal_name=legal_name, **fields)

    def user(
        self,
        name: str = "Casey Reviewer",
        role: UserRole = UserRole.COMPLIANCE,
        org_id: Optional[str] = None,
        is_active: bool = True
    ) -> uuid.UUID:
        email = f"{uuid.uuid4().hex[:8]}@agency.example"
        with self.db_provider.session_scope() as session:
            return UserRepository(session).create(
                name, email, role, org_id=org_id, is_active=is_active
            ).id

    def kyc(
        self,
        entity_id: uuid.UUID,
        days_ago: int,
        outcome: KycOutcome = KycOutcome.PASS,
        deal_id: Optional[uuid.UUID] = None,
        now: Optional[datetime] = None
    ) -> uuid.UUID:
        now = now or datetime.now(timezone.utc)
        with self.db_provider.session_scope() as session:
            return KycRepository(session).create(
                entity_id,
                outcome,
                document_type="PASSPORT",
                deal_id=deal_id,
                created_at=now - timedelta(days=days_ago),
            ).id

    def deal(self, address: str = "12 Harbour St", parties=()) -> uuid.UUID:
        """Create a deal; parties is a list of (entity_id, PartyRole)."""
        with self.db_provider.session_scope() as session:
            deals = DealRepository(session)
            deal = deals.create(address)
            for entity_id, role in parties:
                deals.add_party(deal, entity_id, PartyRole(role))
            return deal.id

    def case(
        self,
        entity_id: uuid.UUID,
        reason: CaseReason = CaseReason.RISK_ESCALATION,
        auto_created: bool = True
    ) -> uuid.UUID:
        with self.db_provider.session_scope() as session:
            return CaseRepository(session).create(
                entity_id, "Existing case", reason, CasePriority.HIGH, auto_created=auto_created
            ).id

    def get_entity(self, entity_id: uuid.UUID) -> Dict[str, Any]:
        with self.db_provider.session_scope() as session:
            return EntityRepository(session).require(entity_id).to_dict()

    def cases_for(self, entity_id: uuid.UUID) -> List[Dict[str, Any]]:
        with self.db_provider.session_scope() as session:
            rows, _ = CaseRepository(session).list_cases(entity_id=entity_id, limit=100)
            return [row.to_dict() for row in rows]

    def audit_events(
        self,
        action: Optional[str] = None,
        subject_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        with self.db_provider.session_scope() as session:
            events, _ = AuditRepository(session).search(
                action=getattr(action, "value", action),
                subject_id=str(subject_id) if subject_id else None,
                limit=1000,
            )
            return [e.to_dict() for e in events]


# ============================================
# DATABASE
# ============================================

@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )
    yield engine
    engine.dispose()


@pytest.fixture
def db_provider(engine):
    provider = create_test_provider(engine=engine)
    provider.init()
    provider.create_tables()
    yield provider
    provider.close()


@pytest.fixture
def factory(db_provider):
    return DataFactory(db_provider)


# ============================================
# ENGINE COMPONENTS
# ============================================

@pytest.fixture
def ops_logger():
    return MagicMock(spec=OperationalLogger)


@pytest.fixture
def audit_recorder(db_provider, ops_logger):
    recorder = AuditRecorder(db_provider, ops_logger=ops_logger, async_writes=False)
    yield recorder
    recorder.stop()


@pytest.fixture
def escalation_engine(db_provider, audit_recorder):
    return CaseEscalationEngine(db_provider, audit_recorder)


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def settings():
    return AutomationSettings(batch_delay_seconds=0, provider_timeout_seconds=2.0)


@pytest.fixture
def orchestrator(db_provider, provider, escalation_engine, audit_recorder, settings, ops_logger):
    orchestrator = ScreeningOrchestrator(
        db_provider,
        provider,
        escalation_engine,
        audit_recorder,
        settings=settings,
        ops_logger=ops_logger,
    )
    yield orchestrator
    orchestrator.shutdown()
