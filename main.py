"""
Campaign Access Guard API

FastAPI application exposing:
- POST /login/check            → throttle decision
- POST /login/record           → 204
- POST /login                  → throttled login via identity provider
- POST /session/activity       → 204
- POST /session/logout         → 204
- GET  /sessions               → active sessions
- POST /consent/grant|revoke   → consent record
- GET  /consent/history|state  → consent history / per-purpose state
- GET  /alerts                 → security alerts
- POST /alerts/{id}/resolve    → resolved alert
- GET  /security/summary       → dashboard feed counts
"""

from contextlib import asynccontextmanager
import logging
import os
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from guard import __version__
from guard.config import GuardConfig
from guard.errors import (
    AlertNotFound,
    InvalidIdentifier,
    SessionExpired,
    SinkUnavailable,
    UnknownSession,
)
from guard.models import ConsentPurpose
from guard.schemas.inputs import (
    ConsentGrantPayload,
    ConsentRevokePayload,
    LoginCheckPayload,
    LoginPayload,
    LoginRecordPayload,
    SessionActivityPayload,
    SessionLogoutPayload,
)
from guard.schemas.outputs import (
    ConsentRecordResponse,
    ConsentStateResponse,
    LoginResponse,
    SecurityAlertResponse,
    SecuritySummaryResponse,
    SessionResponse,
    ThrottleDecisionResponse,
)
from guard.service import AccessGuardService
from persistence.audit_sink import InMemoryAuditSink, SupabaseAuditSink


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


# =============================================================================
# Application State
# =============================================================================

class AppState:
    """Application state container."""
    service: Optional[AccessGuardService] = None


state = AppState()


def build_service() -> AccessGuardService:
    """Assemble the service from GUARD_* / SUPABASE_* / REDIS_* settings."""
    config = GuardConfig.from_env()
    if os.getenv("SUPABASE_URL") and os.getenv("SUPABASE_KEY"):
        sink = SupabaseAuditSink()
    else:
        logger.warning("Supabase credentials missing, audit events kept in memory")
        sink = InMemoryAuditSink()
    return AccessGuardService.from_config(config, sink=sink)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    logger.info("Starting Access Guard API...")
    if state.service is None:
        state.service = build_service()
    state.service.start()
    logger.info("Access Guard ready")

    yield

    # Shutdown
    logger.info("Shutting down Access Guard API...")
    state.service.stop()
    state.service = None


# =============================================================================
# FastAPI Application
# =============================================================================

app = FastAPI(
    title="Campaign Access Guard",
    description="Login throttling, session expiry, consent tracking and security alerts",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


# =============================================================================
# Health Check
# =============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": __version__}


# =============================================================================
# Login Endpoints
# =============================================================================

# Service calls block on locks, Redis and audit retries; handlers stay sync
# so FastAPI runs them in its threadpool.

@app.post("/login/check", response_model=ThrottleDecisionResponse)
def login_check(payload: LoginCheckPayload):
    """Advisory gate: may credentials be submitted for this identifier now?"""
    try:
        decision = state.service.check_login(payload.identifier)
    except InvalidIdentifier as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return ThrottleDecisionResponse.model_validate(decision)


@app.post("/login/record", status_code=status.HTTP_204_NO_CONTENT)
def login_record(payload: LoginRecordPayload, request: Request):
    """Record the identity provider's verdict for an attempt."""
    try:
        state.service.record_login(
            payload.identifier,
            payload.success,
            subject_id=payload.subject_id,
            source_ip=_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    except InvalidIdentifier as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/login", response_model=LoginResponse)
def login(payload: LoginPayload, request: Request):
    """Throttle check, identity provider, outcome record and session start."""
    if state.service.identity_provider is None:
        raise HTTPException(
            status_code=status.HTTP_501_NOT_IMPLEMENTED,
            detail="No identity provider configured"
        )
    try:
        outcome = state.service.authenticate(
            payload.identifier,
            payload.credential,
            source_ip=_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    except InvalidIdentifier as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if not outcome.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"Too many failed attempts, retry in {outcome.wait_seconds}s",
            headers={"Retry-After": str(outcome.wait_seconds)},
        )
    return LoginResponse(
        allowed=outcome.allowed,
        success=outcome.success,
        wait_seconds=outcome.wait_seconds,
        subject_id=outcome.subject_id,
        session_id=outcome.session.session_id if outcome.session else None,
    )


# =============================================================================
# Session Endpoints
# =============================================================================

@app.post("/session/activity", status_code=status.HTTP_204_NO_CONTENT)
def session_activity(payload: SessionActivityPayload):
    """Refresh the idle timer of an active session."""
    try:
        state.service.sessions.track_activity(payload.session_id, payload.signal)
    except UnknownSession as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except SessionExpired as e:
        raise HTTPException(status_code=status.HTTP_410_GONE, detail=str(e))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/session/logout", status_code=status.HTTP_204_NO_CONTENT)
def session_logout(payload: SessionLogoutPayload):
    try:
        state.service.logout(payload.session_id)
    except UnknownSession as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/sessions", response_model=List[SessionResponse])
def list_sessions(subject_id: Optional[str] = None):
    return [
        SessionResponse.model_validate(s)
        for s in state.service.sessions.active_sessions(subject_id)
    ]


# =============================================================================
# Consent Endpoints
# =============================================================================

@app.post("/consent/grant", response_model=ConsentRecordResponse)
def consent_grant(payload: ConsentGrantPayload):
    try:
        record = state.service.consent.grant(payload.subject_id, payload.purpose, payload.version)
    except SinkUnavailable as e:
        logger.error(f"Consent grant refused: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Consent could not be recorded, try again"
        )
    return ConsentRecordResponse.model_validate(record)


@app.post("/consent/revoke", response_model=Optional[ConsentRecordResponse])
def consent_revoke(payload: ConsentRevokePayload):
    try:
        record = state.service.consent.revoke(payload.subject_id, payload.purpose)
    except SinkUnavailable as e:
        logger.error(f"Consent revoke refused: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Consent could not be recorded, try again"
        )
    return ConsentRecordResponse.model_validate(record) if record else None


@app.get("/consent/history", response_model=List[ConsentRecordResponse])
def consent_history(subject_id: str, purpose: Optional[ConsentPurpose] = None):
    return [
        ConsentRecordResponse.model_validate(r)
        for r in state.service.consent.history(subject_id, purpose)
    ]


@app.get("/consent/state", response_model=List[ConsentStateResponse])
def consent_state(subject_id: str):
    return [
        ConsentStateResponse(
            purpose=purpose,
            status=current.status,
            active=current.active,
            record=ConsentRecordResponse.model_validate(current.record) if current.record else None,
        )
        for purpose, current in state.service.consent.current_states(subject_id).items()
    ]


# =============================================================================
# Alert Endpoints
# =============================================================================

@app.get("/alerts", response_model=List[SecurityAlertResponse])
def list_alerts(resolved: Optional[bool] = None):
    return [
        SecurityAlertResponse.model_validate(a)
        for a in state.service.anomaly.alerts(resolved=resolved)
    ]


@app.post("/alerts/{alert_id}/resolve", response_model=SecurityAlertResponse)
def resolve_alert(alert_id: str):
    try:
        alert = state.service.anomaly.resolve(alert_id)
    except AlertNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return SecurityAlertResponse.model_validate(alert)


@app.get("/security/summary", response_model=SecuritySummaryResponse)
def security_summary():
    try:
        summary = state.service.summary()
    except SinkUnavailable as e:
        logger.error(f"Summary unavailable: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Audit log unavailable"
        )
    return SecuritySummaryResponse.model_validate(summary)


# =============================================================================
# Entry Point
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
