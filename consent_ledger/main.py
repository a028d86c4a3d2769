"""
Consent Ledger - FastAPI Application
Consent lifecycle, approval workflow, processing decisions and audit access
"""

import secrets
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .config import configure_logging, get_ledger_config
from .constants import SERVICE_NAME, SERVICE_VERSION, ErrorCodes
from .consent.models import TransitionOutcome
from .consent.schemas import CreateConsentRequest, ProcessRequest, RevokeSemanticRequest
from .consent.service import ConsentService, get_consent_service
from .exceptions import ConsentLedgerError
from .jobs import create_sweep_scheduler

logger = structlog.get_logger()

# Initialize services
consent_service: Optional[ConsentService] = None
sweep_scheduler = None

_ERROR_STATUS = {
    ErrorCodes.INVALID_INPUT: 400,
    ErrorCodes.NOT_FOUND: 404,
    ErrorCodes.STORAGE_FAILURE: 503,
}

_INVALID_TOKEN_MESSAGE = "Invalid, expired, or already-used approval token"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    global consent_service, sweep_scheduler

    settings = get_ledger_config()
    configure_logging(settings.log_level)
    logger.info("Starting Consent Ledger", version=SERVICE_VERSION)

    try:
        # Initialize services only if not already provided (for testing/injection)
        if consent_service is None:
            consent_service = get_consent_service()

        if settings.sweep_enabled and sweep_scheduler is None:
            sweep_scheduler = create_sweep_scheduler(consent_service, settings.sweep_interval_minutes)
            sweep_scheduler.start()

        logger.info("Consent services initialized successfully")

    except Exception as e:
        logger.error("Failed to initialize consent services", error=str(e))
        raise

    yield

    if sweep_scheduler is not None:
        sweep_scheduler.shutdown(wait=False)
        sweep_scheduler = None
    logger.info("Shutting down Consent Ledger")


# Create FastAPI app
app = FastAPI(
    title="Consent Ledger",
    description="Versioned consent lifecycle with a tamper-evident audit ledger",
    version=SERVICE_VERSION,
    lifespan=lifespan
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    issues = [
        {
            "path": ".".join(str(part) for part in error["loc"] if part != "body"),
            "message": error["msg"],
        }
        for error in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"error": "Validation failed", "issues": issues})


@app.exception_handler(ConsentLedgerError)
async def ledger_exception_handler(request: Request, exc: ConsentLedgerError):
    status_code = _ERROR_STATUS.get(exc.error_code, 500)
    if status_code >= 500:
        logger.error("Request failed", path=request.url.path, **exc.to_dict())
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def get_service() -> ConsentService:
    if consent_service is None:
        raise HTTPException(status_code=503, detail="Consent service not available")
    return consent_service


def require_admin_key(x_api_key: Optional[str] = Header(default=None)) -> None:
    """Guard for audit endpoints; the key must match exactly"""
    expected = get_ledger_config().admin_api_key
    if not expected:
        raise HTTPException(status_code=401, detail="Unauthorized: ADMIN_API_KEY not configured")
    if x_api_key is None or not secrets.compare_digest(x_api_key.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized: Invalid API key")


@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {
        "status": "UP",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "components": {
            "consent_service": consent_service is not None,
            "sweep_scheduler": sweep_scheduler is not None,
        },
    }


# =============================================================================
# CONSENT LIFECYCLE
# =============================================================================

@app.post("/consents", status_code=201)
def create_consent(request: CreateConsentRequest, service: ConsentService = Depends(get_service)):
    """Create the next consent version for (user, purpose)"""
    consent = service.request_consent(request)
    response = {
        "consent_id": consent.consent_id,
        "version": consent.version,
        "status": consent.status.value,
    }
    if consent.approval_token:
        # Delivered to the data principal out of band; the API only hands it over
        response["approval_token"] = consent.approval_token
        response["approval_expires_at"] = consent.approval_expires_at.isoformat()
        response["message"] = "Consent awaiting approval"
    return response


@app.get("/consents/{consent_id}")
def get_consent(consent_id: str, service: ConsentService = Depends(get_service)):
    """Get one consent version; an elapsed ACTIVE version is expired first"""
    return service.get_consent(consent_id).public_view()


@app.post("/consents/revoke")
def revoke_latest_active(request: RevokeSemanticRequest, service: ConsentService = Depends(get_service)):
    """Revoke whatever version currently authorizes (user, purpose)"""
    result = service.revoke_latest_active(request.user_id, request.purpose)
    if not result.applied:
        return {"status": TransitionOutcome.NO_ACTIVE_CONSENT.value, "purpose": request.purpose}

    return {
        "status": "REVOKED",
        "purpose": request.purpose,
        "consent_id": result.consent.consent_id,
        "version": result.consent.version,
    }


@app.post("/consents/{consent_id}/revoke")
def revoke_consent(consent_id: str, service: ConsentService = Depends(get_service)):
    """Revoke one specific version"""
    result = service.revoke(consent_id)
    if not result.applied:
        return JSONResponse(
            status_code=409,
            content={
                "error": result.outcome.value,
                "message": "Consent is not active",
                "consent_id": consent_id,
                "status": result.consent.status.value,
            },
        )
    return {"consent_id": consent_id, "status": "REVOKED"}


@app.post("/consents/approve/{token}")
def approve_consent(token: str, service: ConsentService = Depends(get_service)):
    """Approve a pending request with its single-use token"""
    result = service.approve(token)
    if result.outcome == TransitionOutcome.TOKEN_NOT_FOUND:
        return JSONResponse(status_code=400, content={"error": _INVALID_TOKEN_MESSAGE})
    if not result.applied:
        content = {"error": result.outcome.value, "message": "Consent could not be approved"}
        if result.consent is not None:
            content["consent_id"] = result.consent.consent_id
            content["status"] = result.consent.status.value
        return JSONResponse(status_code=409, content=content)

    return {
        "status": "APPROVED",
        "consent_id": result.consent.consent_id,
        "version": result.consent.version,
        "superseded": [consent.consent_id for consent in result.side_effects],
    }


@app.post("/consents/reject/{token}")
def reject_consent(token: str, service: ConsentService = Depends(get_service)):
    """Reject a pending request with its single-use token"""
    result = service.reject(token)
    if result.outcome == TransitionOutcome.TOKEN_NOT_FOUND:
        return JSONResponse(status_code=400, content={"error": _INVALID_TOKEN_MESSAGE})
    if not result.applied:
        return JSONResponse(
            status_code=409,
            content={"error": result.outcome.value, "message": "Consent could not be rejected"},
        )

    return {
        "status": "REJECTED",
        "consent_id": result.consent.consent_id,
        "siblings_rejected": [consent.consent_id for consent in result.side_effects],
    }


# =============================================================================
# PROCESSING DECISIONS
# =============================================================================

@app.post("/process")
def process(request: ProcessRequest, service: ConsentService = Depends(get_service)):
    """
    Decide whether processing may proceed.

    Enforcement always uses the latest ACTIVE version for (user, purpose);
    historical versions are never evaluated.
    """
    outcome = service.process(request)
    if not outcome.allowed:
        return JSONResponse(status_code=403, content={"error": outcome.decision.reason_code})

    return {
        "status": "PROCESSING_ALLOWED",
        "consent_id": outcome.consent.consent_id,
        "version": outcome.consent.version,
    }


# =============================================================================
# AUDIT
# =============================================================================

@app.get("/audit", dependencies=[Depends(require_admin_key)])
def get_audit_log(
    user_id: Optional[str] = Query(default=None),
    consent_id: Optional[str] = Query(default=None),
    limit: Optional[int] = Query(default=None, ge=1, le=10000),
    service: ConsentService = Depends(get_service)
):
    """Audit entries in chain order"""
    entries = service.get_audit_entries(user_id=user_id, consent_id=consent_id, limit=limit)
    return [entry.model_dump(mode="json") for entry in entries]


@app.get("/audit/verify", dependencies=[Depends(require_admin_key)])
def verify_audit_log(service: ConsentService = Depends(get_service)):
    """Walk the full hash chain and report the first divergent entry, if any"""
    return service.verify_audit_chain().model_dump()


# =============================================================================
# ROOT ENDPOINT
# =============================================================================

@app.get("/")
def root():
    """Root endpoint"""
    return {
        "message": "Consent Ledger",
        "version": SERVICE_VERSION,
        "status": "operational",
        "features": {
            "versioned_consents": True,
            "approval_workflow": True,
            "policy_decisions": True,
            "hash_chained_audit": True,
            "expiry_sweep": get_ledger_config().sweep_enabled,
        }
    }

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
