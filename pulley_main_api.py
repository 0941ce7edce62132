"""
Pulley Protocol - FastAPI Application
Operations surface: health, protocol state, inbound relay callback, metrics
"""

from fastapi import Depends, FastAPI, HTTPException, Request, Security, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field
from typing import Dict, List, Optional
from contextlib import asynccontextmanager
import hmac
import logging

from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from pulley_config_v1 import ApiConfig, ProtocolConfig
from pulley_enforcement_v1 import (
    InsufficientBalance,
    InsufficientFunds,
    InsufficientReserveFund,
    InsufficientReserves,
    InsufficientTokens,
    InvalidMessageType,
    InvalidSourceChain,
    InvariantViolation,
    NotPermitted,
    PulleyError,
    ReentrantCall,
    RequestAlreadyProcessed,
    RequestNotFound,
    TransferFailed,
    ValidationError
)
from pulley_messaging_v1 import CrossChainPayload, MessageType
from pulley_protocol_v1 import PulleyProtocol
import pulley_metrics as metrics

logger = logging.getLogger("Pulley.API")

DEFAULT_ASSETS = ["USDC", "USDT"]

# ============================================
# PYDANTIC MODELS (API DTOs)
# ============================================

class InboundMessageRequest(BaseModel):
    message_type: int = Field(..., ge=1, le=3)
    request_id: str = Field(..., min_length=1)
    success: bool
    pnl: int = 0

    class Config:
        json_schema_extra = {
            "example": {
                "message_type": 1,
                "request_id": "5f1c0e9a7b2d...",
                "success": True,
                "pnl": 1200
            }
        }

class RequestResponse(BaseModel):
    request_id: str
    destination_id: str
    message_type: str
    asset: str
    amount: int
    status: str
    processed: bool
    success: Optional[bool] = None
    pnl: Optional[int] = None

class ProviderResponse(BaseModel):
    address: str
    assets_deposited: int
    pulley_tokens_owned: int
    token_balance: int
    active: bool

class HealthResponse(BaseModel):
    status: str
    version: str
    health_score: float
    total_invariant_checks: int
    failed_checks: int
    pending_requests: int
    ledger_integrity: bool

# ============================================
# APPLICATION LIFECYCLE
# ============================================

class AppState:
    """Global application state."""
    def __init__(self, config: Optional[ProtocolConfig] = None, api_config: Optional[ApiConfig] = None):
        self.config = config or ProtocolConfig.for_assets(DEFAULT_ASSETS)
        self.api_config = api_config or ApiConfig.from_env()
        self.protocol = PulleyProtocol(self.config)

app_state = AppState()

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    logger.info("🚀 Pulley protocol API starting...")
    logger.info(f"✅ Components wired: engine={app_state.protocol.engine.identity}, "
                f"ledger={app_state.protocol.ledger.identity}, allocator={app_state.protocol.allocator.identity}")
    yield
    logger.info("🛑 Pulley protocol API shutting down...")

# ============================================
# FASTAPI APPLICATION
# ============================================

app = FastAPI(
    title="Pulley Protocol",
    description="Insurance-backed trading ledger with cross-chain allocation",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.middleware("http")
async def count_requests(request: Request, call_next):
    response = await call_next(request)
    metrics.record_api_request(request.url.path, request.method, response.status_code)
    return response

# ============================================
# ERROR MAPPING
# ============================================

ERROR_STATUS = [
    (RequestNotFound, status.HTTP_404_NOT_FOUND),
    (RequestAlreadyProcessed, status.HTTP_409_CONFLICT),
    (InvalidSourceChain, status.HTTP_403_FORBIDDEN),
    (NotPermitted, status.HTTP_403_FORBIDDEN),
    (InvalidMessageType, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    ((InsufficientReserveFund, InsufficientReserves, InsufficientTokens,
      InsufficientBalance, InsufficientFunds), status.HTTP_409_CONFLICT),
    ((TransferFailed, ReentrantCall), status.HTTP_409_CONFLICT),
]

def status_for(exc: PulleyError) -> int:
    for error_types, code in ERROR_STATUS:
        if isinstance(exc, error_types):
            return code
    return status.HTTP_400_BAD_REQUEST

@app.exception_handler(PulleyError)
async def pulley_error_handler(request: Request, exc: PulleyError):
    code = status_for(exc)
    logger.warning(f"{type(exc).__name__} on {request.url.path}: {exc}")
    return JSONResponse(status_code=code, content={"error": type(exc).__name__, "detail": str(exc)})

@app.exception_handler(InvariantViolation)
async def invariant_violation_handler(request: Request, exc: InvariantViolation):
    logger.error(f"Invariant violation: {exc}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "InvariantViolation", "detail": f"System invariant violated: {exc}"}
    )

# ============================================
# AUTHENTICATION
# ============================================

operator_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)
relay_key_header = APIKeyHeader(name="X-Relay-Key", auto_error=False)

def _identity_for(presented: Optional[str], keys: Dict[str, str]) -> Optional[str]:
    if not presented:
        return None
    for key, identity in keys.items():
        if hmac.compare_digest(presented.encode(), key.encode()):
            return identity
    return None

def _unauthorized(scheme: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Missing or unknown credentials",
        headers={"WWW-Authenticate": scheme}
    )

async def operator_identity(api_key: Optional[str] = Security(operator_key_header)) -> str:
    """Protocol identity the presented operator key acts as."""
    identity = _identity_for(api_key, app_state.api_config.operator_keys)
    if identity is None:
        raise _unauthorized("X-API-Key")
    return identity

async def relay_origin(relay_key: Optional[str] = Security(relay_key_header)) -> str:
    """Remote venue the presented relay key belongs to; responses are attributed to it."""
    origin = _identity_for(relay_key, app_state.api_config.relay_keys)
    if origin is None:
        raise _unauthorized("X-Relay-Key")
    return origin

# ============================================
# API ENDPOINTS
# ============================================

@app.get("/", tags=["Health"])
async def root():
    """Root endpoint."""
    return {
        "service": "Pulley Protocol",
        "version": "1.0.0",
        "status": "operational"
    }

@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """System health check."""
    health = app_state.protocol.get_system_health()
    metrics.system_health_gauge.set(health['health_score'])

    return HealthResponse(
        status="healthy" if health['health_score'] >= 0.95 else "degraded",
        version="1.0.0",
        health_score=health['health_score'],
        total_invariant_checks=health['total_invariant_checks'],
        failed_checks=health['failed_checks'],
        pending_requests=health['pending_requests'],
        ledger_integrity=health['ledger_integrity']
    )

@app.get("/api/v1/state", tags=["State"])
async def get_state() -> Dict:
    """Token, engine, ledger and allocator aggregates."""
    return app_state.protocol.get_state()

@app.get("/api/v1/providers/{address}", response_model=ProviderResponse, tags=["State"])
async def get_provider(address: str):
    provider = app_state.protocol.engine.get_provider(address)

    if not provider:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Provider {address} not found"
        )

    return ProviderResponse(
        address=provider.address,
        assets_deposited=provider.assets_deposited,
        pulley_tokens_owned=provider.pulley_tokens_owned,
        token_balance=app_state.protocol.token.balance_of(address),
        active=provider.is_active
    )

def _request_response(request) -> RequestResponse:
    return RequestResponse(
        request_id=request.request_id,
        destination_id=request.destination_id,
        message_type=request.message_type.name,
        asset=request.asset,
        amount=request.amount,
        status=request.status.value,
        processed=request.processed,
        success=request.success,
        pnl=request.pnl
    )

@app.get("/api/v1/cross-chain/requests", response_model=List[RequestResponse], tags=["Cross-Chain"])
async def list_requests(pending_only: bool = False):
    allocator = app_state.protocol.allocator
    requests = allocator.get_pending_requests() if pending_only else list(allocator.requests.values())
    return [_request_response(r) for r in requests]

@app.get("/api/v1/cross-chain/requests/{request_id}", response_model=RequestResponse, tags=["Cross-Chain"])
async def get_request(request_id: str):
    request = app_state.protocol.allocator.get_request(request_id)

    if not request:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Request {request_id} not found"
        )

    return _request_response(request)

@app.post("/api/v1/cross-chain/messages", response_model=RequestResponse, tags=["Cross-Chain"])
async def receive_message(message: InboundMessageRequest, origin: str = Depends(relay_origin)):
    """
    Inbound relay callback.

    The origin comes from the relay key, never from the body. The relay
    identity is the acting caller; a duplicate delivery of the same request
    id is rejected with 409.
    """
    payload = CrossChainPayload(
        message_type=MessageType(message.message_type),
        data={'request_id': message.request_id, 'success': message.success, 'pnl': message.pnl}
    )
    request = app_state.protocol.relay.deliver(origin, payload)
    return _request_response(request)

@app.post("/api/v1/upkeep", tags=["Operations"])
async def run_upkeep(caller: str = Depends(operator_identity)) -> Dict[str, int]:
    """Sweep qualifying pool balances if upkeep is due. Acts as the key's identity."""
    return app_state.protocol.run_upkeep(caller)

@app.get("/metrics", tags=["Observability"])
async def metrics_endpoint():
    """Prometheus metrics endpoint."""
    return Response(
        content=generate_latest(metrics.metrics_registry),
        media_type=CONTENT_TYPE_LATEST
    )

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "pulley_main_api:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
