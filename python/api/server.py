"""
FastAPI KYC Screening & Escalation API Server

REST endpoints over the compliance screening engine: entity lifecycle
triggers, manual screening, KYC reuse status, batch sweeps, automation
settings, case workflow and the audit trail.

Identity is supplied by the upstream session layer through headers:
X-User-Id, X-Org-Id and X-User-Role.

Usage:
    uvicorn api.server:app --reload --port 8000
"""

import os
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Security
from fastapi.security import APIKeyHeader

import rbac
from api.middleware import (
    RequestLoggingMiddleware,
    setup_cors,
    setup_exception_handlers,
)
from api.models import (
    AuditListResponse,
    AutomationSettingsResponse,
    AutomationSettingsUpdate,
    BatchSummaryResponse,
    CaseListResponse,
    CaseNoteRequest,
    CaseStatusRequest,
    DealKycStatusResponse,
    EntityCreateRequest,
    EntityResponse,
    EntityUpdateRequest,
    ErrorResponse,
    HealthResponse,
    KycStatusResponse,
    RefreshQueueResponse,
    ScreeningOutcomeResponse,
)
from config_manager import ConfigManager, ConfigurationError, get_config
from database.connection import DatabaseSessionProvider, DatabaseSettings
from database.models import CaseStatus, UserRole
from database.monitoring import check_health
from ops_logger import get_ops_logger
from screening.audit_recorder import AuditQuery, AuditRecorder
from screening.escalation import CaseEscalationEngine
from screening.exceptions import PermissionDeniedError
from screening.kyc_freshness import KycFreshnessEvaluator, KycReuseService
from screening.orchestrator import (
    AutomationSettings,
    BatchScreeningWorker,
    ScreeningOrchestrator,
)
from screening.provider import create_provider

logger = logging.getLogger(__name__)

# Environment variables with defaults
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "8000"))
CONFIG_PATH = os.getenv("CONFIG_PATH", "config.yaml")
API_KEY = os.getenv("API_KEY", "")  # Required for authenticated endpoints

# Global state
_config: Optional[ConfigManager] = None
_db_provider: Optional[DatabaseSessionProvider] = None
_audit_recorder: Optional[AuditRecorder] = None
_escalation_engine: Optional[CaseEscalationEngine] = None
_orchestrator: Optional[ScreeningOrchestrator] = None
_kyc_evaluator: Optional[KycFreshnessEvaluator] = None
_batch_worker: Optional[BatchScreeningWorker] = None
_startup_time: Optional[datetime] = None

# API Key security scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

ERROR_RESPONSES = {
    401: {"model": ErrorResponse, "description": "Missing API key"},
    403: {"model": ErrorResponse, "description": "Invalid API key or insufficient role"},
    404: {"model": ErrorResponse, "description": "Not found"},
    422: {"model": ErrorResponse, "description": "Validation error"},
}


async def verify_api_key(api_key: Optional[str] = Security(api_key_header)) -> str:
    """Verify API key for protected endpoints.

    If API_KEY environment variable is not set, authentication is disabled.
    """
    if not API_KEY:
        # API key not configured - allow all requests (development mode)
        return "dev-mode"

    if not api_key:
        raise HTTPException(
            status_code=401, detail="Missing API key. Provide X-API-Key header."
        )

    if api_key != API_KEY:
        raise HTTPException(status_code=403, detail="Invalid API key")

    return api_key


# ============================================
# IDENTITY
# ============================================

@dataclass(frozen=True)
class Actor:
    """Acting user as supplied by the session layer"""
    user_id: Optional[str]
    org_id: Optional[str]
    role: UserRole


def get_actor(
    x_user_id: Optional[str] = Header(default=None),
    x_org_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
    api_key: str = Depends(verify_api_key),
) -> Actor:
    """Build the acting identity; a missing role is treated as AGENT."""
    role = (x_user_role or UserRole.AGENT.value).upper()
    if not rbac.is_valid_role(role):
        raise HTTPException(status_code=400, detail=f"Unknown role: {x_user_role}")
    return Actor(user_id=x_user_id, org_id=x_org_id, role=UserRole(role))


def require(permission: rbac.Permission):
    """Dependency factory enforcing one permission."""
    def checker(actor: Actor = Depends(get_actor)) -> Actor:
        if not rbac.can_perform(actor.role, permission):
            raise PermissionDeniedError(actor.role, permission.key)
        return actor
    return checker


# ============================================
# COMPONENT DEPENDENCIES
# ============================================

def _not_ready(component: str):
    raise HTTPException(
        status_code=503, detail=f"{component} not initialized. Service is starting up."
    )


def get_orchestrator() -> ScreeningOrchestrator:
    if _orchestrator is None:
        _not_ready("Screening orchestrator")
    return _orchestrator


def get_escalation_engine() -> CaseEscalationEngine:
    if _escalation_engine is None:
        _not_ready("Case escalation")
    return _escalation_engine


def get_audit_recorder() -> AuditRecorder:
    if _audit_recorder is None:
        _not_ready("Audit recorder")
    return _audit_recorder


def get_db_provider() -> DatabaseSessionProvider:
    if _db_provider is None:
        _not_ready("Database")
    return _db_provider


def get_kyc_evaluator() -> KycFreshnessEvaluator:
    global _kyc_evaluator
    if _kyc_evaluator is None:
        _kyc_evaluator = KycFreshnessEvaluator()
    return _kyc_evaluator


def build_components(config: ConfigManager, db_provider: DatabaseSessionProvider) -> dict:
    """
    Wire engine components from configuration.

    Returns:
        Dictionary with audit_recorder, escalation_engine, orchestrator,
        kyc_evaluator and batch_worker
    """
    ops_logger = get_ops_logger(log_dir=config.logging.operations_log_dir)
    audit_recorder = AuditRecorder.from_config(db_provider, config.audit, ops_logger=ops_logger)
    escalation_engine = CaseEscalationEngine(db_provider, audit_recorder)
    orchestrator = ScreeningOrchestrator(
        db_provider,
        create_provider(config.screening),
        escalation_engine,
        audit_recorder,
        settings=AutomationSettings.from_config(config.automation, config.screening),
        ops_logger=ops_logger,
    )
    return {
        "audit_recorder": audit_recorder,
        "escalation_engine": escalation_engine,
        "orchestrator": orchestrator,
        "kyc_evaluator": KycFreshnessEvaluator.from_config(config.kyc),
        "batch_worker": BatchScreeningWorker(orchestrator),
    }


# Create FastAPI application
app = FastAPI(
    title="KYC Screening & Escalation API",
    description="Compliance screening, KYC reuse, case escalation and audit trail",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

# Setup middleware
setup_cors(app)
app.add_middleware(RequestLoggingMiddleware)
setup_exception_handlers(app)


@app.on_event("startup")
async def startup():
    """Load configuration, connect to the database and start background workers."""
    global _config, _db_provider, _audit_recorder, _escalation_engine
    global _orchestrator, _kyc_evaluator, _batch_worker, _startup_time

    logger.info("Starting KYC Screening API...")

    try:
        _config = get_config(CONFIG_PATH)
        logging.basicConfig(
            level=getattr(logging, _config.logging.level.upper(), logging.INFO),
            format=_config.logging.format,
        )
        logger.info(f"Configuration loaded from {CONFIG_PATH}")

        _db_provider = DatabaseSessionProvider(
            settings=DatabaseSettings.from_config(_config.database)
        )
        _db_provider.init()

        components = build_components(_config, _db_provider)
        _audit_recorder = components["audit_recorder"]
        _escalation_engine = components["escalation_engine"]
        _orchestrator = components["orchestrator"]
        _kyc_evaluator = components["kyc_evaluator"]
        _batch_worker = components["batch_worker"]

        _audit_recorder.start()
        _batch_worker.start()
        _startup_time = datetime.now(timezone.utc)
        logger.info("API ready")

    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        raise
    except Exception as e:
        logger.error(f"Startup error: {e}")
        raise


@app.on_event("shutdown")
async def shutdown():
    """Stop workers, drain the audit queue and close connections."""
    logger.info("Shutting down KYC Screening API...")
    if _batch_worker is not None:
        _batch_worker.stop()
    if _orchestrator is not None:
        _orchestrator.shutdown()
    if _audit_recorder is not None:
        _audit_recorder.stop()
    if _db_provider is not None:
        _db_provider.close()


# ============================================
# ENTITIES
# ============================================

@app.post(
    "/api/v1/entities",
    response_model=EntityResponse,
    status_code=201,
    responses=ERROR_RESPONSES,
    summary="Onboard an entity",
    description="Create an entity; screens it automatically when auto_screen_on_create is enabled",
)
def create_entity(
    request: EntityCreateRequest,
    actor: Actor = Depends(require(rbac.ENTITY_CREATE)),
    orchestrator: ScreeningOrchestrator = Depends(get_orchestrator),
):
    request.require_name()
    entity, outcome = orchestrator.create_entity(
        request.model_dump(exclude_none=True),
        actor_id=actor.user_id,
        org_id=actor.org_id,
    )
    return EntityResponse(
        entity=entity,
        screening=outcome.to_dict() if outcome else None,
    )


@app.patch(
    "/api/v1/entities/{entity_id}",
    response_model=EntityResponse,
    responses=ERROR_RESPONSES,
    summary="Update an entity",
    description="Edit attributes; re-screens only when a key identifying attribute changed",
)
def update_entity(
    entity_id: UUID,
    request: EntityUpdateRequest,
    actor: Actor = Depends(require(rbac.ENTITY_UPDATE)),
    orchestrator: ScreeningOrchestrator = Depends(get_orchestrator),
):
    entity, changed, outcome = orchestrator.update_entity(
        entity_id,
        request.model_dump(exclude_unset=True),
        actor_id=actor.user_id,
    )
    return EntityResponse(
        entity=entity,
        changed_fields=changed,
        screening=outcome.to_dict() if outcome else None,
    )


@app.post(
    "/api/v1/entities/{entity_id}/screen",
    response_model=ScreeningOutcomeResponse,
    responses={**ERROR_RESPONSES, 502: {"model": ErrorResponse, "description": "Provider failure"}},
    summary="Screen an entity now",
    description="Manual screening; provider and persistence errors are returned to the caller",
)
def screen_entity(
    entity_id: UUID,
    actor: Actor = Depends(require(rbac.ENTITY_SCREEN)),
    orchestrator: ScreeningOrchestrator = Depends(get_orchestrator),
):
    outcome = orchestrator.screen_entity(entity_id, actor_id=actor.user_id)
    return outcome.to_dict()


@app.get(
    "/api/v1/entities/{entity_id}/audit-trail",
    responses=ERROR_RESPONSES,
    summary="Entity audit trail",
)
def entity_audit_trail(
    entity_id: UUID,
    limit: int = Query(default=50, ge=1, le=500),
    actor: Actor = Depends(require(rbac.AUDIT_READ)),
    audit_recorder: AuditRecorder = Depends(get_audit_recorder),
):
    return {"entity_id": str(entity_id), "events": audit_recorder.entity_trail(entity_id, limit=limit)}


# ============================================
# KYC
# ============================================

def _kyc_status_response(status, evaluator: KycFreshnessEvaluator) -> KycStatusResponse:
    return KycStatusResponse(
        **status.to_dict(),
        should_refresh=evaluator.should_refresh(status, status.risk_tier),
    )


@app.get(
    "/api/v1/entities/{entity_id}/kyc-status",
    response_model=KycStatusResponse,
    responses=ERROR_RESPONSES,
    summary="KYC reuse status",
)
def entity_kyc_status(
    entity_id: UUID,
    deal_id: Optional[UUID] = Query(default=None),
    actor: Actor = Depends(require(rbac.ENTITY_READ)),
    db_provider: DatabaseSessionProvider = Depends(get_db_provider),
    evaluator: KycFreshnessEvaluator = Depends(get_kyc_evaluator),
):
    with db_provider.session_scope() as session:
        status = KycReuseService(session, evaluator).get_kyc_status(entity_id, deal_id)
    return _kyc_status_response(status, evaluator)


@app.get(
    "/api/v1/deals/{deal_id}/kyc-status",
    response_model=DealKycStatusResponse,
    responses=ERROR_RESPONSES,
    summary="KYC status of every party to a deal",
)
def deal_kyc_status(
    deal_id: UUID,
    actor: Actor = Depends(require(rbac.DEAL_READ)),
    db_provider: DatabaseSessionProvider = Depends(get_db_provider),
    evaluator: KycFreshnessEvaluator = Depends(get_kyc_evaluator),
):
    with db_provider.session_scope() as session:
        statuses = KycReuseService(session, evaluator).get_deal_kyc_status(deal_id)
    return DealKycStatusResponse(
        deal_id=str(deal_id),
        parties={str(eid): _kyc_status_response(s, evaluator) for eid, s in statuses.items()},
    )


@app.post(
    "/api/v1/deals/{deal_id}/parties/{entity_id}/reuse-kyc",
    response_model=KycStatusResponse,
    responses={**ERROR_RESPONSES, 409: {"model": ErrorResponse, "description": "No reusable KYC"}},
    summary="Reuse a prior verification for a deal",
)
def reuse_kyc(
    deal_id: UUID,
    entity_id: UUID,
    actor: Actor = Depends(require(rbac.DEAL_UPDATE)),
    db_provider: DatabaseSessionProvider = Depends(get_db_provider),
    evaluator: KycFreshnessEvaluator = Depends(get_kyc_evaluator),
    audit_recorder: AuditRecorder = Depends(get_audit_recorder),
):
    with db_provider.session_scope() as session:
        service = KycReuseService(session, evaluator, audit_recorder)
        status = service.get_kyc_status(entity_id, deal_id)
    if not status.can_reuse:
        raise HTTPException(status_code=409, detail="No reusable KYC verification for this entity")

    with db_provider.session_scope() as session:
        KycReuseService(session, evaluator, audit_recorder).record_kyc_reuse(
            entity_id, deal_id, status.kyc_record_id, actor_id=actor.user_id
        )
    return _kyc_status_response(status, evaluator)


@app.get(
    "/api/v1/kyc/refresh-queue",
    response_model=RefreshQueueResponse,
    summary="Entities due for KYC refresh",
)
def kyc_refresh_queue(
    actor: Actor = Depends(require(rbac.ENTITY_READ)),
    db_provider: DatabaseSessionProvider = Depends(get_db_provider),
    evaluator: KycFreshnessEvaluator = Depends(get_kyc_evaluator),
):
    with db_provider.session_scope() as session:
        items = KycReuseService(session, evaluator).entities_needing_refresh(actor.org_id)
    return RefreshQueueResponse(total=len(items), items=[item.to_dict() for item in items])


# ============================================
# AUTOMATION
# ============================================

@app.post(
    "/api/v1/screening/batch",
    response_model=BatchSummaryResponse,
    responses=ERROR_RESPONSES,
    summary="Run one batch screening sweep",
)
def run_batch(
    actor: Actor = Depends(require(rbac.ADMIN_AUTOMATION)),
    orchestrator: ScreeningOrchestrator = Depends(get_orchestrator),
):
    return orchestrator.run_batch().to_dict()


@app.get(
    "/api/v1/automation/settings",
    response_model=AutomationSettingsResponse,
    summary="Current automation settings",
)
def get_automation_settings(
    actor: Actor = Depends(get_actor),
    orchestrator: ScreeningOrchestrator = Depends(get_orchestrator),
):
    return orchestrator.settings.to_dict()


@app.put(
    "/api/v1/automation/settings",
    response_model=AutomationSettingsResponse,
    responses=ERROR_RESPONSES,
    summary="Update automation settings",
)
def update_automation_settings(
    request: AutomationSettingsUpdate,
    actor: Actor = Depends(require(rbac.ADMIN_AUTOMATION)),
    orchestrator: ScreeningOrchestrator = Depends(get_orchestrator),
):
    changes = request.model_dump(exclude_unset=True)
    # Nullable only for batch_interval_hours
    changes = {k: v for k, v in changes.items() if v is not None or k == "batch_interval_hours"}
    settings = orchestrator.update_settings(changes, actor_id=actor.user_id, org_id=actor.org_id)
    return settings.to_dict()


# ============================================
# CASES
# ============================================

@app.get(
    "/api/v1/cases",
    response_model=CaseListResponse,
    summary="List compliance cases",
)
def list_cases(
    entity_id: Optional[UUID] = Query(default=None),
    status: Optional[CaseStatus] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    actor: Actor = Depends(require(rbac.CASE_READ)),
    engine: CaseEscalationEngine = Depends(get_escalation_engine),
):
    cases, total = engine.list_cases(
        entity_id=entity_id, status=status, org_id=actor.org_id, offset=offset, limit=limit
    )
    return CaseListResponse(cases=cases, total=total, limit=limit, offset=offset)


@app.post(
    "/api/v1/cases/{case_id}/status",
    responses={**ERROR_RESPONSES, 409: {"model": ErrorResponse, "description": "Invalid transition"}},
    summary="Move a case forward",
)
def change_case_status(
    case_id: UUID,
    request: CaseStatusRequest,
    actor: Actor = Depends(require(rbac.CASE_UPDATE)),
    engine: CaseEscalationEngine = Depends(get_escalation_engine),
):
    if request.status == CaseStatus.CLOSED and not rbac.can_perform(actor.role, rbac.CASE_CLOSE):
        raise PermissionDeniedError(actor.role, rbac.CASE_CLOSE.key)
    return engine.change_status(
        case_id, request.status, actor_id=actor.user_id, reason=request.reason
    )


@app.post(
    "/api/v1/cases/{case_id}/notes",
    status_code=201,
    responses=ERROR_RESPONSES,
    summary="Add a note to a case",
)
def add_case_note(
    case_id: UUID,
    request: CaseNoteRequest,
    actor: Actor = Depends(require(rbac.CASE_UPDATE)),
    engine: CaseEscalationEngine = Depends(get_escalation_engine),
):
    return engine.add_note(
        case_id, request.text, author=actor.user_id or "unknown", actor_id=actor.user_id
    )


# ============================================
# AUDIT
# ============================================

@app.get(
    "/api/v1/audit",
    response_model=AuditListResponse,
    summary="Query the audit trail",
    description="Newest first; filters are optional",
)
def query_audit(
    entity_type: Optional[str] = Query(default=None, max_length=50),
    entity_id: Optional[str] = Query(default=None, max_length=100),
    action: Optional[str] = Query(default=None, max_length=64),
    user_id: Optional[str] = Query(default=None, max_length=100),
    start_date: Optional[datetime] = Query(default=None),
    end_date: Optional[datetime] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    actor: Actor = Depends(require(rbac.AUDIT_READ)),
    audit_recorder: AuditRecorder = Depends(get_audit_recorder),
):
    filters = AuditQuery(
        subject_type=entity_type,
        subject_id=entity_id,
        action=action,
        actor_id=user_id,
        org_id=actor.org_id,
        start_date=start_date,
        end_date=end_date,
    )
    return audit_recorder.query(filters, offset=offset, limit=limit).to_dict()


# ============================================
# HEALTH
# ============================================

@app.get(
    "/api/v1/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Database connectivity, audit channel and worker status",
)
def health_check():
    """Always returns HTTP 200; problems are reported in the body."""
    uptime_seconds = None
    if _startup_time:
        uptime_seconds = int((datetime.now(timezone.utc) - _startup_time).total_seconds())

    try:
        if _db_provider is None:
            raise RuntimeError("Database not initialized")
        db_status = check_health(_db_provider.engine, _db_provider.session_factory)
        return HealthResponse(
            status="healthy" if db_status.healthy else "degraded",
            database=db_status.to_dict(),
            audit_queue_depth=_audit_recorder.queue_depth if _audit_recorder else 0,
            audit_events_dropped=_audit_recorder.dropped if _audit_recorder else 0,
            batch_worker_running=bool(_batch_worker and _batch_worker.is_running),
            uptime_seconds=uptime_seconds,
        )
    except Exception as e:
        return HealthResponse(status="error", uptime_seconds=uptime_seconds, error_message=str(e))


# Root redirect to docs
@app.get("/", include_in_schema=False)
async def root():
    """Redirect root to API documentation."""
    from fastapi.responses import RedirectResponse

    return RedirectResponse(url="/api/docs")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT)
