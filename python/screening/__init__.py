"""
Compliance Screening & Escalation Engine

Components, leaves first:
- KycFreshnessEvaluator: verification reuse and refresh decisions
- ScreeningProvider: external screening contract
- RiskClassifier: findings to risk tier and review flag
- CaseEscalationEngine: open, merge or skip compliance cases
- AuditRecorder: best-effort decision ledger
- ScreeningOrchestrator: lifecycle triggers tying it all together
"""

from screening.exceptions import (
    EngineError,
    ProviderError,
    ProviderTimeoutError,
    InvalidStateTransitionError,
    PermissionDeniedError,
)
from screening.kyc_freshness import (
    KycFreshnessEvaluator,
    KycReuseService,
    KycStatus,
    RefreshItem,
)
from screening.provider import (
    ScreeningProvider,
    HttpScreeningProvider,
    StaticScreeningProvider,
    ProviderRequest,
    ProviderResult,
    create_provider,
)
from screening.risk_classifier import RiskClassifier, ClassifiedResult
from screening.escalation import CaseEscalationEngine, EscalationOutcome
from screening.audit_recorder import AuditRecorder, AuditQuery, AuditPage
from screening.orchestrator import (
    ScreeningOrchestrator,
    ScreeningOutcome,
    ScreeningTrigger,
    AutomationSettings,
    BatchSummary,
    BatchScreeningWorker,
)

__all__ = [
    'EngineError',
    'ProviderError',
    'ProviderTimeoutError',
    'InvalidStateTransitionError',
    'PermissionDeniedError',
    'KycFreshnessEvaluator',
    'KycReuseService',
    'KycStatus',
    'RefreshItem',
    'ScreeningProvider',
    'HttpScreeningProvider',
    'StaticScreeningProvider',
    'ProviderRequest',
    'ProviderResult',
    'create_provider',
    'RiskClassifier',
    'ClassifiedResult',
    'CaseEscalationEngine',
    'EscalationOutcome',
    'AuditRecorder',
    'AuditQuery',
    'AuditPage',
    'ScreeningOrchestrator',
    'ScreeningOutcome',
    'ScreeningTrigger',
    'AutomationSettings',
    'BatchSummary',
    'BatchScreeningWorker',
]
