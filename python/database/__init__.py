"""
Database Package for the KYC Screening & Escalation Engine

This package provides:
- SQLAlchemy ORM models for entities, verification, screening, cases and audit
- Session provider with auto-commit scopes and explicit units of work
- Repository pattern for data access
- Alembic integration for migrations
- Performance monitoring and Prometheus metrics
"""

from database.models import (
    Base,
    Entity,
    Deal,
    Party,
    User,
    KycRecord,
    ScreeningRecord,
    Case,
    CaseNote,
    AuditEvent,
    EntityKind,
    RiskTier,
    KycOutcome,
    CaseReason,
    CaseStatus,
    CasePriority,
    PartyRole,
    UserRole,
    AuditAction,
    ImmutableRecordError,
)
from database.connection import (
    DatabaseSessionProvider,
    DatabaseSettings,
    UnitOfWork,
    create_test_provider,
)
from database.monitoring import (
    query_timer,
    get_db_metrics,
    reset_metrics,
    check_health,
    HealthStatus,
)

__all__ = [
    # Base
    'Base',
    # Models
    'Entity',
    'Deal',
    'Party',
    'User',
    'KycRecord',
    'ScreeningRecord',
    'Case',
    'CaseNote',
    'AuditEvent',
    # Enums
    'EntityKind',
    'RiskTier',
    'KycOutcome',
    'CaseReason',
    'CaseStatus',
    'CasePriority',
    'PartyRole',
    'UserRole',
    'AuditAction',
    'ImmutableRecordError',
    # Database provider
    'DatabaseSessionProvider',
    'DatabaseSettings',
    'UnitOfWork',
    'create_test_provider',
    # Monitoring
    'query_timer',
    'get_db_metrics',
    'reset_metrics',
    'check_health',
    'HealthStatus',
]
