"""
ParkLedger - FastAPI Server

Thin HTTP adapter over the session lifecycle and account operations.
Authentication happens upstream: requests arrive with a service key in
X-API-Key and the authenticated account email in X-Email.

Endpoints:
- PUT  /driver/session         - Start a session
- POST /driver/session/stop    - Stop a session (cost estimate)
- POST /driver/session/pay     - Settle a stopped session
- GET  /driver/session/active  - Active session with live charges
- GET  /driver/balance         - Driver balance
- GET  /owner/balance          - Owner balance
- GET  /owner/profile          - Owner profile
- GET  /owner/payment-policy   - Read payment policy
- POST /owner/payment-policy   - Set payment policy
- POST /owner/location         - Set location
- GET  /owner/payment/verify   - Has a session been paid
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
import os
import structlog

from fastapi import FastAPI, HTTPException, Depends, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from core.accounts import AccountManager
from core.lifecycle import SessionLifecycleManager
from core.results import ErrorType, OperationResult
from persistence.database import Database

logger = structlog.get_logger()

VERSION = "1.0.0"

# Upper bounds that fit the NUMERIC policy columns
MAX_RATE_PER_MINUTE = Decimal("1000000")
MAX_THRESHOLD_MINUTES = Decimal("10000000")


# ============================================================================
# Pydantic Models
# ============================================================================

class StopSessionRequest(BaseModel):
    """Request to stop a session."""
    session_id: str = Field(..., description="Session to stop")
    parking_owner_email: str = Field(..., description="Owner the session was started with")


class PaySessionRequest(BaseModel):
    """Request to settle a session."""
    session_id: str = Field(..., description="Stopped session to pay")


class PaymentPolicyRequest(BaseModel):
    """Owner payment policy update."""
    rate_per_minute: Decimal = Field(..., gt=0, le=MAX_RATE_PER_MINUTE, description="Base rate per minute")
    penalty_threshold_minutes: Optional[Decimal] = Field(None, ge=0, le=MAX_THRESHOLD_MINUTES, description="Minutes before the penalty applies (default 360)")
    penalty_rate_per_minute: Optional[Decimal] = Field(None, gt=0, le=MAX_RATE_PER_MINUTE, description="Penalty rate per minute (default 10x base)")


class LocationRequest(BaseModel):
    """Owner location update."""
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    uptime_seconds: float


# ============================================================================
# Application State
# ============================================================================

class AppState:
    """Application state container."""

    def __init__(self, database_url: Optional[str] = None):
        self.db = Database(database_url)
        self.db.initialize()
        self.lifecycle = SessionLifecycleManager(self.db)
        self.accounts = AccountManager(self.db)
        self.start_time = datetime.now(timezone.utc)


# ============================================================================
# Application Factory
# ============================================================================

def create_app(database_url: Optional[str] = None) -> FastAPI:
    """Create and configure the FastAPI application."""

    @asynccontextmanager
    async def lifespan(application: FastAPI):
        """Application lifespan handler."""
        logger.info("parkledger_starting", version=VERSION)
        application.state.parkledger = AppState(database_url)
        yield
        application.state.parkledger.db.close()
        logger.info("parkledger_stopping")

    application = FastAPI(
        title="ParkLedger",
        description="Parking-session lifecycle and billing between drivers and parking-space owners.",
        version=VERSION,
        lifespan=lifespan,
    )

    # CORS middleware
    application.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_routes(application)
    return application


# ============================================================================
# Dependencies
# ============================================================================

def get_state(request: Request) -> AppState:
    """Get application state."""
    state = getattr(request.app.state, "parkledger", None)
    if state is None:
        raise HTTPException(status_code=503, detail="Application not initialized")
    return state


def verify_api_key(x_api_key: str = Header(..., alias="X-API-Key")) -> str:
    """Verify API key."""
    expected = os.environ.get("API_KEY", "dev-key-change-in-production")
    if x_api_key != expected:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


def get_principal(x_email: str = Header(..., alias="X-Email")) -> str:
    """Authenticated account email, set by the upstream auth layer."""
    return x_email


STATUS_BY_ERROR = {
    ErrorType.NO_ERROR: 200,
    ErrorType.NOT_EXIST: 404,
    ErrorType.DUPL: 409,
    ErrorType.UNKNOWN: 500,
}


def respond(result: OperationResult, success_status: int = 200) -> JSONResponse:
    """Render a tagged result, mapping its error type to an HTTP status."""
    status = success_status if result.ok else STATUS_BY_ERROR[result.type]
    return JSONResponse(status_code=status, content=result.to_dict())


# ============================================================================
# Endpoints
# ============================================================================

def register_routes(application: FastAPI) -> None:

    @application.get("/health", response_model=HealthResponse, tags=["System"])
    async def health_check(state: AppState = Depends(get_state)):
        """Health check endpoint."""
        uptime = (datetime.now(timezone.utc) - state.start_time).total_seconds()
        return HealthResponse(status="healthy", version=VERSION, uptime_seconds=uptime)

    @application.put("/driver/session", tags=["Driver"])
    def start_session(
        parking_owner_email: str = Query(..., alias="parkingOwnerEmail"),
        driver_email: str = Depends(get_principal),
        state: AppState = Depends(get_state),
        api_key: str = Depends(verify_api_key),
    ):
        """
        Start a parking session.

        409 means the driver already has an active session; the body carries
        that session so the client can resume it.
        """
        return respond(state.lifecycle.start_session(driver_email, parking_owner_email), 201)

    @application.post("/driver/session/stop", tags=["Driver"])
    def stop_session(
        request: StopSessionRequest,
        driver_email: str = Depends(get_principal),
        state: AppState = Depends(get_state),
        api_key: str = Depends(verify_api_key),
    ):
        """Stop an active session and return its duration and estimated cost."""
        result = state.lifecycle.stop_session(request.session_id, driver_email, request.parking_owner_email)
        return respond(result)

    @application.post("/driver/session/pay", tags=["Driver"])
    def pay_session(
        request: PaySessionRequest,
        driver_email: str = Depends(get_principal),
        state: AppState = Depends(get_state),
        api_key: str = Depends(verify_api_key),
    ):
        """Settle a stopped session. Safe to retry."""
        return respond(state.lifecycle.pay_session(request.session_id, driver_email))

    @application.get("/driver/session/active", tags=["Driver"])
    def active_session(
        driver_email: str = Depends(get_principal),
        state: AppState = Depends(get_state),
        api_key: str = Depends(verify_api_key),
    ):
        return respond(state.lifecycle.get_active_session(driver_email))

    @application.get("/driver/balance", tags=["Driver"])
    def driver_balance(
        driver_email: str = Depends(get_principal),
        state: AppState = Depends(get_state),
        api_key: str = Depends(verify_api_key),
    ):
        return respond(state.accounts.get_driver_balance(driver_email))

    @application.get("/owner/balance", tags=["Owner"])
    def owner_balance(
        owner_email: str = Depends(get_principal),
        state: AppState = Depends(get_state),
        api_key: str = Depends(verify_api_key),
    ):
        return respond(state.accounts.get_owner_balance(owner_email))

    @application.get("/owner/profile", tags=["Owner"])
    def owner_profile(
        owner_email: str = Depends(get_principal),
        state: AppState = Depends(get_state),
        api_key: str = Depends(verify_api_key),
    ):
        return respond(state.accounts.get_owner_profile(owner_email))

    @application.get("/owner/payment-policy", tags=["Owner"])
    def get_payment_policy(
        owner_email: str = Depends(get_principal),
        state: AppState = Depends(get_state),
        api_key: str = Depends(verify_api_key),
    ):
        return respond(state.accounts.get_payment_policy(owner_email))

    @application.post("/owner/payment-policy", tags=["Owner"])
    def set_payment_policy(
        request: PaymentPolicyRequest,
        owner_email: str = Depends(get_principal),
        state: AppState = Depends(get_state),
        api_key: str = Depends(verify_api_key),
    ):
        try:
            result = state.accounts.set_payment_policy(
                owner_email,
                request.rate_per_minute,
                request.penalty_threshold_minutes,
                request.penalty_rate_per_minute,
            )
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return respond(result, 201)

    @application.post("/owner/location", tags=["Owner"])
    def set_location(
        request: LocationRequest,
        owner_email: str = Depends(get_principal),
        state: AppState = Depends(get_state),
        api_key: str = Depends(verify_api_key),
    ):
        return respond(state.accounts.set_location(owner_email, request.lat, request.lon), 201)

    @application.get("/owner/payment/verify", tags=["Owner"])
    def verify_payment(
        session_id: str = Query(..., alias="sessionID"),
        state: AppState = Depends(get_state),
        api_key: str = Depends(verify_api_key),
    ):
        """Whether a session has been paid."""
        return respond(state.accounts.verify_payment_status(session_id))


app = create_app()
