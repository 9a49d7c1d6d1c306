import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from . import config
from .concurrency import RateLimiter
from .errors import (
    ConflictError, Expired, IntegrityError, KeyDerivationError, NotFound, NotVerified,
    SignatureInvalid, UnavailableError, ValidationError, VoterIDError,
)
from .logging_config import audit_log, configure_logging, set_request_id
from .models import HealthResponse, IssueRequest, IssueResponse, RedeemRequest, RegisterRequest, VerifyRequest
from .service import VoterIDService
from .util import constant_time_compare

logger = logging.getLogger(__name__)

register_limiter = RateLimiter(config.REGISTER_RPM)
redeem_limiter = RateLimiter(config.REDEEM_RPM)
SERVICE: Optional[VoterIDService] = None


@asynccontextmanager
async def lifespan(_app: FastAPI):
    global SERVICE
    configure_logging(level="DEBUG" if config.is_debug() else "INFO")
    if SERVICE is None:
        SERVICE = VoterIDService.from_config()
    yield
    SERVICE.close()
    SERVICE = None


app = FastAPI(title="VoterID", lifespan=lifespan)


def service() -> VoterIDService:
    if SERVICE is None:
        raise HTTPException(503, "SERVICE_NOT_READY")
    return SERVICE


def status_for(err: VoterIDError) -> int:
    if isinstance(err, ValidationError):
        return 400
    if isinstance(err, NotFound):
        return 404
    if isinstance(err, ConflictError):
        return 409
    if isinstance(err, (SignatureInvalid, Expired, NotVerified)):
        return 403
    if isinstance(err, UnavailableError):
        return 503
    if isinstance(err, (IntegrityError, KeyDerivationError)):
        return 500
    return 400


@app.exception_handler(VoterIDError)
async def _voterid_error(request: Request, exc: VoterIDError):
    code = status_for(exc)
    if code >= 500:
        logger.error("%s on %s: %s", exc.code, request.url.path, exc.message)
    body = {"detail": exc.code, "message": exc.message}
    expires_at = getattr(exc, "expires_at", None)
    if expires_at is not None:
        body["expires_at"] = expires_at
    return JSONResponse(status_code=code, content=body)


@app.middleware("http")
async def _request_id(request: Request, call_next):
    rid = set_request_id(request.headers.get("x-request-id"))
    response = await call_next(request)
    response.headers["x-request-id"] = rid
    return response


def _limit(limiter: RateLimiter, request: Request, endpoint: str) -> None:
    client_id = request.client.host if request.client else "unknown"
    if not limiter.allow(f"{endpoint}:{client_id}"):
        audit_log.rate_limit_exceeded(client_id, endpoint)
        raise HTTPException(429, "RATE_LIMIT")


@app.get("/health", response_model=HealthResponse)
def health():
    checks = config.validate_config()
    errors = [name for name, ok in checks.items() if not ok]
    if SERVICE is None:
        errors.append("service")
    return HealthResponse(status="ok" if not errors else "degraded", env=config.ENV, config=checks, errors=errors)


@app.post("/voters", status_code=201)
def register_voter(req: RegisterRequest, request: Request):
    _limit(register_limiter, request, "register")
    profile = req.profile.model_dump(exclude_none=True) if req.profile else None
    return service().register(req.name, req.national_id, profile)


@app.post("/voters/{identity_key}/verify")
def verify_voter(identity_key: str, req: Optional[VerifyRequest] = None,
                 x_admin_token: Optional[str] = Header(default=None)):
    if not config.ADMIN_TOKEN:
        raise HTTPException(403, "ADMIN_DISABLED")
    if not x_admin_token or not constant_time_compare(x_admin_token, config.ADMIN_TOKEN):
        audit_log.security_event("ADMIN_TOKEN_REJECTED", severity="medium", endpoint="verify")
        raise HTTPException(403, "ADMIN_TOKEN_INVALID")
    verified_by = req.verified_by if req else None
    return service().verify(identity_key, verified_by)


@app.post("/voters/{identity_key}/credential", response_model=IssueResponse)
def issue_credential(identity_key: str, req: Optional[IssueRequest] = None):
    svc = service()
    credential = svc.issue_credential(identity_key, req.ttl_seconds if req else None)
    artifact_url = None
    if svc.issuer.objects is not None:
        artifact_url = svc.render_credential(credential)
    return IssueResponse(credential=credential, artifact_url=artifact_url)


@app.post("/credentials/redeem")
def redeem_credential(req: RedeemRequest, request: Request):
    _limit(redeem_limiter, request, "redeem")
    return service().redeem(req.credential)


@app.get("/voters/{identity_key}/status")
def voter_status(identity_key: str):
    return service().status(identity_key)


@app.get("/ledger/proof")
def ledger_proof():
    return service().ledger_proof()
