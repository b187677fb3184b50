"""
BallotGuard Server

FastAPI front end over the vote-integrity core.

Security Properties:
- One authoritative decision point: every vote goes through VoteLedger.cast_vote
- Login throttling is per client (X-Client-Id, else client address)
- Callers are identified by a login session id, never by a client-supplied
  principal id
- Storage degradation fails closed (503) instead of accepting unchecked votes
- Every login, vote, throttle and anomaly lands in the security audit sink
"""

from __future__ import annotations

import base64
import binascii
import logging
import math
import os
import threading
from collections import OrderedDict
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .anomaly import AnomalyDetector, SecurityMonitor
from .audit_log import AuditSink, MemoryAuditSink, TamperEvidentAuditLog
from .auth import AttemptGuard, LoginService
from .clock import Clock, SystemClock
from .config import PolicyConfig, db_path_from_env
from .crypto import Ed25519KeyPair, create_key_pair, load_signing_key_from_file
from .errors import (
    BG_E_BAD_REQUEST,
    BG_E_CEREMONY_ABORTED,
    BG_E_LOCKDOWN_ACTIVE,
    BG_E_NOT_AUTHENTICATED,
    BG_E_RATE_LIMITED,
    BallotGuardError,
    CeremonyError,
    EligibilityDenied,
    TooManyAttempts,
    invalid_session,
    validation_error,
)
from .identity import DEFAULT_HASH_ITERATIONS, IdentityStore
from .ledger import VoteLedger
from .lockdown import StorageLockdownError
from .metrics import (
    instrument_fastapi,
    record_alert,
    record_factor,
    record_login,
    record_rate_limited,
    record_vote,
    set_lockdown_active,
)
from .models import Alert, FactorKind, ImageEvidence
from .ops_stats import OPS_STATS
from .orchestrator import VerificationOrchestrator
from .ratelimit import RateLimiter, parse_rate_limit
from .store import BallotStore
from .verifier import CredentialVerifier, Decision, LikenessSensor, PlatformAuthenticator

logger = logging.getLogger("ballotguard")


def _http_exc(status: int, code: str, message: str, *, retryable: bool = False, **details: Any) -> HTTPException:
    """Create an HTTPException with a stable error envelope in `detail`."""
    detail: Dict[str, Any] = {"code": code, "message": message, "retryable": bool(retryable)}
    if details:
        detail["details"] = details
    return HTTPException(status, detail)


def _env_flag(name: str, default: str = "") -> bool:
    return (os.getenv(name, default) or "").strip().lower() in ("1", "true", "yes", "on")


def build_audit_sink_from_env(db_path: str) -> AuditSink:
    """Pick the security audit sink.

    A signing key (BG_AUDIT_SIGNING_KEY_FILE, or an ephemeral key when
    BG_ALLOW_EPHEMERAL_SIGNING_KEYS=1) enables the tamper-evident JSONL log at
    BG_AUDIT_LOG_PATH (default: next to the database). Without a key the log
    is kept in memory, which production (BG_ENV=prod) refuses.
    """
    key: Optional[Ed25519KeyPair] = None
    key_file = (os.getenv("BG_AUDIT_SIGNING_KEY_FILE", "") or "").strip()
    if key_file:
        key = load_signing_key_from_file(key_file, key_id="audit")
        if key is None:
            raise RuntimeError(f"BG_AUDIT_SIGNING_KEY_FILE={key_file} could not be loaded")
    elif _env_flag("BG_ALLOW_EPHEMERAL_SIGNING_KEYS"):
        key = create_key_pair("audit-ephemeral")
        logger.warning("Using an ephemeral audit signing key; the log cannot be verified after restart")

    if key is None:
        env = (os.getenv("BG_ENV", "dev") or "dev").strip().lower()
        if env in ("prod", "production"):
            raise RuntimeError(
                "No audit signing key configured. Set BG_AUDIT_SIGNING_KEY_FILE "
                "(generate one with `ballotguard keygen`)."
            )
        logger.warning("No audit signing key configured; security log kept in memory only")
        return MemoryAuditSink()

    audit_path = (os.getenv("BG_AUDIT_LOG_PATH", "") or "").strip() or str(Path(db_path).with_suffix(".audit.jsonl"))
    return TamperEvidentAuditLog(audit_path, key)


def _record_alert(alert: Alert) -> None:
    OPS_STATS.record_alert(alert.kind)
    record_alert(alert.kind, alert.severity.value)


class BallotGuard:
    """Wires the identity, verification, ledger and monitoring components together."""

    def __init__(
        self,
        store: Optional[BallotStore] = None,
        audit: Optional[AuditSink] = None,
        policy: Optional[PolicyConfig] = None,
        clock: Optional[Clock] = None,
        authenticator: Optional[PlatformAuthenticator] = None,
        sensor: Optional[LikenessSensor] = None,
        likeness_decision: Optional[Decision] = None,
        document_decision: Optional[Decision] = None,
        hash_iterations: int = DEFAULT_HASH_ITERATIONS,
        max_guards: int = 20000,
    ):
        self.policy = policy or PolicyConfig.from_env()
        self.clock = clock or SystemClock()
        self.store = store or BallotStore(db_path=db_path_from_env())
        self.audit = audit if audit is not None else build_audit_sink_from_env(self.store.db_path)

        p = self.policy
        self.identity = IdentityStore(
            self.store, self.clock, session_ttl_seconds=p.login_session_ttl_seconds, hash_iterations=hash_iterations,
        )
        self.login_service = LoginService(self.identity, self.audit, self.clock)
        self.verifier = CredentialVerifier(
            self.identity,
            authenticator=authenticator,
            sensor=sensor,
            likeness_decision=likeness_decision,
            document_decision=document_decision,
            clock=self.clock,
            timeout_seconds=p.ceremony_timeout_seconds,
        )
        self.orchestrator = VerificationOrchestrator(
            self.identity,
            self.store,
            self.clock,
            max_factor_attempts=p.max_factor_attempts,
            session_ttl_seconds=p.verification_session_ttl_seconds,
        )
        self.ledger = VoteLedger(
            self.store,
            self.identity,
            self.audit,
            self.clock,
            max_votes_per_window=p.max_votes_per_window,
            rate_window_seconds=p.vote_rate_window_seconds,
            min_verification_factors=p.min_verification_factors,
        )
        self.detector = AnomalyDetector(
            rapid_window_seconds=p.rapid_vote_window_seconds,
            rapid_threshold=p.rapid_vote_threshold,
            cluster_threshold=p.origin_cluster_threshold,
            clock=self.clock,
        )
        self.monitor = SecurityMonitor(self.ledger.snapshot, self.audit, self.detector, self.clock, on_alert=_record_alert)

        self._max_guards = int(max_guards)
        self._guards: "OrderedDict[str, AttemptGuard]" = OrderedDict()
        self._guards_lock = threading.Lock()

    def guard_for(self, client_id: str) -> AttemptGuard:
        """Per-client attempt guard; least recently used guards are dropped past ``max_guards``."""
        key = client_id or "_anon"
        with self._guards_lock:
            guard = self._guards.get(key)
            if guard is None:
                guard = AttemptGuard(
                    client_id=key,
                    max_failed=self.policy.max_failed_logins,
                    window_seconds=self.policy.login_attempt_window_seconds,
                    clock=self.clock,
                )
                self._guards[key] = guard
                while len(self._guards) > self._max_guards:
                    self._guards.popitem(last=False)
            else:
                self._guards.move_to_end(key)
            return guard


# ---------------------------
# Request/Response Models
# ---------------------------

class RegisterPrincipalRequest(BaseModel):
    display_name: str = Field(..., min_length=1, max_length=200)
    contact_handle: str = Field(..., min_length=3, max_length=320)
    secret: str = Field(..., min_length=8, max_length=1024)


class LoginRequest(BaseModel):
    contact_handle: str = Field(..., min_length=1, max_length=320)
    secret: str = Field(..., min_length=1, max_length=1024)


class EnrollCredentialRequest(BaseModel):
    credential_id: str = Field(..., min_length=1, max_length=256)
    public_key_hex: str = Field(..., min_length=64, max_length=64)


class PossessionRequest(BaseModel):
    challenge_id: str
    credential_id: str
    signature_hex: str


class ImageUpload(BaseModel):
    image_b64: str = ""
    content_type: str = "image/jpeg"


class DocumentRequest(ImageUpload):
    document_number: str = ""


class VoteRequest(BaseModel):
    option: str = Field(..., min_length=1, max_length=200)


def _decode_image(upload: ImageUpload, clock: Clock) -> Optional[ImageEvidence]:
    if not upload.image_b64:
        return None
    try:
        raw = base64.b64decode(upload.image_b64, validate=True)
    except (binascii.Error, ValueError):
        raise validation_error(BG_E_BAD_REQUEST, "image_b64 is not valid base64") from None
    return ImageEvidence(image=raw, content_type=upload.content_type, captured_at=clock.now())


def _client_host(req: Request) -> str:
    if req.client and req.client.host:
        return req.client.host
    return "unknown"


def create_app(guard: Optional[BallotGuard] = None) -> FastAPI:
    """Create FastAPI application with BallotGuard endpoints."""
    from . import __version__ as bg_version

    bg = guard or BallotGuard()

    app = FastAPI(
        title="BallotGuard",
        description="Vote integrity and identity assurance service",
        version=bg_version,
    )

    @app.exception_handler(BallotGuardError)
    async def _bg_error_handler(request: Request, exc: BallotGuardError):
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict())

    @app.exception_handler(StorageLockdownError)
    async def _lockdown_handler(request: Request, exc: StorageLockdownError):
        OPS_STATS.record_storage_lockdown()
        set_lockdown_active(True)
        retry_after = max(1, int(math.ceil(exc.retry_after)))
        return JSONResponse(
            status_code=503,
            content={
                "code": BG_E_LOCKDOWN_ACTIVE,
                "message": "LOCKDOWN_ACTIVE",
                "retryable": True,
                "http_status": 503,
                "details": {"retry_after": retry_after},
            },
            headers={"Retry-After": str(retry_after)},
        )

    # ---------------------------
    # Operator authorization (stats, monitor, confirm, metrics)
    # ---------------------------
    stats_token = (os.getenv("BG_STATS_TOKEN", "") or "").strip()
    env = str(os.getenv("BG_ENV", "dev")).strip().lower()
    prod_default = env in ("prod", "production")
    raw_require = os.getenv("BG_STATS_REQUIRE_AUTH")
    if raw_require is None:
        stats_require_auth = prod_default
    else:
        stats_require_auth = str(raw_require).strip().lower() in ("1", "true", "yes", "on")

    def _authorize_operator(req: Request) -> bool:
        # If auth is required but no token is configured, deny (fail closed).
        if stats_require_auth and not stats_token:
            return False
        if not stats_require_auth:
            return True
        authz = (req.headers.get("Authorization") or "").strip()
        if authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == stats_token:
            return True
        return (req.headers.get("X-Stats-Token") or "").strip() == stats_token

    def _require_operator(req: Request) -> None:
        if not _authorize_operator(req):
            raise HTTPException(401, "OPERATOR_UNAUTHORIZED")

    instrument_fastapi(app, authorize=_authorize_operator)

    # ---------------------------
    # Request size + rate limiting
    # ---------------------------
    try:
        max_request_bytes = int(os.getenv("BG_MAX_REQUEST_BYTES", "8388608") or "8388608")
    except ValueError:
        max_request_bytes = 8388608

    @app.middleware("http")
    async def _limit_request_size(req: Request, call_next):
        cl = req.headers.get("content-length")
        if cl is not None:
            try:
                too_large = int(cl) > max_request_bytes
            except ValueError:
                # malformed: fail closed
                return JSONResponse(status_code=400, content={"detail": "BAD_CONTENT_LENGTH"})
            if too_large:
                return JSONResponse(status_code=413, content={"detail": "REQUEST_TOO_LARGE"})
        return await call_next(req)

    def _build_limiter(env_name: str, default_spec: str) -> Optional[RateLimiter]:
        spec = os.getenv(env_name, default_spec).strip()
        if not spec or spec in ("0", "off", "disabled", "false"):
            return None
        try:
            cap, refill = parse_rate_limit(spec)
        except ValueError as e:
            logger.warning("Invalid rate limit %s=%r: %s (disabled)", env_name, spec, e)
            return None
        return RateLimiter(capacity=cap, refill_rate_per_sec=refill)

    login_limiter = _build_limiter("BG_RATE_LIMIT_LOGIN", "30/m")
    vote_limiter = _build_limiter("BG_RATE_LIMIT_VOTE", "60/m")

    def _client_key(req: Request, x_client_id: Optional[str]) -> str:
        if x_client_id and x_client_id.strip():
            return f"c:{x_client_id.strip()[:128]}"
        return f"ip:{_client_host(req)}"

    def _throttle(limiter: Optional[RateLimiter], key: str, endpoint: str) -> None:
        if limiter is not None and not limiter.allow(key):
            OPS_STATS.record_rate_limited(endpoint)
            record_rate_limited(endpoint)
            raise _http_exc(429, BG_E_RATE_LIMITED, "RATE_LIMITED", retryable=True)

    def _session_id(authorization: Optional[str], x_session_id: Optional[str]) -> Optional[str]:
        if x_session_id and x_session_id.strip():
            return x_session_id.strip()
        authz = (authorization or "").strip()
        if authz.lower().startswith("bearer "):
            return authz.split(" ", 1)[1].strip() or None
        return None

    def current_principal(
        authorization: Optional[str] = Header(None),
        x_session_id: Optional[str] = Header(None, alias="X-Session-Id"),
    ) -> str:
        sid = _session_id(authorization, x_session_id)
        principal_id = bg.identity.session_principal(sid) if sid else None
        if not principal_id:
            raise _http_exc(401, BG_E_NOT_AUTHENTICATED, "login session required")
        return principal_id

    def _own_session(session_id: str, principal_id: str) -> None:
        snap = bg.orchestrator.state(session_id)
        if snap.principal_id != principal_id:
            # Do not reveal other principals' sessions.
            raise invalid_session(session_id)

    # ---------------------------
    # Identity
    # ---------------------------

    @app.post("/v1/principals", status_code=201)
    async def register_principal(request: RegisterPrincipalRequest):
        principal = bg.identity.register_principal(request.display_name, request.contact_handle, request.secret)
        return principal.as_dict()

    @app.post("/v1/principals/{principal_id}/confirm")
    async def confirm_principal(principal_id: str, http_request: Request):
        _require_operator(http_request)
        return bg.identity.confirm(principal_id).as_dict()

    @app.post("/v1/login")
    async def login(
        http_request: Request,
        request: LoginRequest,
        x_client_id: Optional[str] = Header(None, alias="X-Client-Id"),
    ):
        client_key = _client_key(http_request, x_client_id)
        _throttle(login_limiter, client_key, "login")
        guard_obj = bg.guard_for(client_key)
        try:
            result = bg.login_service.login(
                guard_obj, request.contact_handle, request.secret, origin=_client_host(http_request),
            )
        except TooManyAttempts:
            OPS_STATS.record_login("blocked")
            record_login("blocked")
            raise
        except EligibilityDenied:
            OPS_STATS.record_login("unverified")
            record_login("unverified")
            raise
        except BallotGuardError:
            OPS_STATS.record_login("failed")
            record_login("failed")
            raise
        OPS_STATS.record_login("ok")
        record_login("ok")
        return result.as_dict()

    @app.post("/v1/logout")
    async def logout(
        authorization: Optional[str] = Header(None),
        x_session_id: Optional[str] = Header(None, alias="X-Session-Id"),
    ):
        sid = _session_id(authorization, x_session_id)
        ended = bg.login_service.logout(sid) if sid else False
        return {"logged_out": bool(ended)}

    @app.post("/v1/credentials", status_code=201)
    async def enroll_credential(request: EnrollCredentialRequest, principal_id: str = Depends(current_principal)):
        record = bg.verifier.enroll_credential(principal_id, request.credential_id, request.public_key_hex)
        return record.as_dict()

    # ---------------------------
    # Verification
    # ---------------------------

    async def _run(session_id: str, factor: FactorKind, ceremony) -> Dict[str, Any]:
        try:
            await bg.orchestrator.run_factor(session_id, factor, ceremony)
        except CeremonyError as e:
            outcome = "aborted" if e.code == BG_E_CEREMONY_ABORTED else "fail"
            OPS_STATS.record_factor(factor.value, outcome)
            record_factor(factor.value, outcome)
            raise
        OPS_STATS.record_factor(factor.value, "pass")
        record_factor(factor.value, "pass")
        return bg.orchestrator.state(session_id).as_dict()

    @app.post("/v1/verification/sessions", status_code=201)
    async def start_verification(principal_id: str = Depends(current_principal)):
        sid = bg.orchestrator.start_session(principal_id)
        return bg.orchestrator.state(sid).as_dict()

    @app.get("/v1/verification/sessions/{session_id}")
    async def verification_state(session_id: str, principal_id: str = Depends(current_principal)):
        _own_session(session_id, principal_id)
        return bg.orchestrator.state(session_id).as_dict()

    @app.post("/v1/verification/sessions/{session_id}/possession/challenge")
    async def possession_challenge(session_id: str, principal_id: str = Depends(current_principal)):
        _own_session(session_id, principal_id)
        return bg.verifier.begin_authentication(principal_id).as_dict()

    @app.post("/v1/verification/sessions/{session_id}/possession")
    async def possession(session_id: str, request: PossessionRequest, principal_id: str = Depends(current_principal)):
        _own_session(session_id, principal_id)
        try:
            signature = bytes.fromhex(request.signature_hex)
        except ValueError:
            raise validation_error(BG_E_BAD_REQUEST, "signature_hex is not valid hex") from None

        async def _complete():
            return bg.verifier.complete_authentication(request.challenge_id, request.credential_id, signature)

        return await _run(session_id, FactorKind.POSSESSION, _complete())

    @app.post("/v1/verification/sessions/{session_id}/likeness")
    async def likeness(session_id: str, request: ImageUpload, principal_id: str = Depends(current_principal)):
        _own_session(session_id, principal_id)
        image = _decode_image(request, bg.clock)
        if image is None:
            raise validation_error(BG_E_BAD_REQUEST, "image is required")
        return await _run(session_id, FactorKind.LIKENESS, bg.verifier.assess_likeness(image))

    @app.post("/v1/verification/sessions/{session_id}/document")
    async def document(session_id: str, request: DocumentRequest, principal_id: str = Depends(current_principal)):
        _own_session(session_id, principal_id)
        image = _decode_image(request, bg.clock)
        return await _run(session_id, FactorKind.DOCUMENT, bg.verifier.submit_document(request.document_number, image))

    @app.post("/v1/verification/sessions/{session_id}/skip")
    async def skip(session_id: str, principal_id: str = Depends(current_principal)):
        _own_session(session_id, principal_id)
        bg.orchestrator.skip(session_id)
        return bg.orchestrator.state(session_id).as_dict()

    @app.post("/v1/verification/sessions/{session_id}/finalize")
    async def finalize(session_id: str, principal_id: str = Depends(current_principal)):
        _own_session(session_id, principal_id)
        already = bg.orchestrator.state(session_id).finalized
        outcome = bg.orchestrator.finalize(session_id)
        if not already:
            OPS_STATS.record_verification(outcome.passed_count)
        return outcome.as_dict()

    # ---------------------------
    # Ballots
    # ---------------------------

    @app.get("/v1/ballots/{ballot_id}/eligibility")
    async def eligibility(ballot_id: str, principal_id: str = Depends(current_principal)):
        return bg.ledger.check_eligibility(principal_id, ballot_id).as_dict()

    @app.post("/v1/ballots/{ballot_id}/votes", status_code=201)
    async def cast_vote(
        ballot_id: str,
        request: VoteRequest,
        http_request: Request,
        principal_id: str = Depends(current_principal),
    ):
        _throttle(vote_limiter, principal_id, "vote")
        try:
            record = bg.ledger.cast_vote(principal_id, ballot_id, request.option, origin=_client_host(http_request))
        except EligibilityDenied as e:
            OPS_STATS.record_vote(e.reason)
            record_vote(e.reason)
            raise
        OPS_STATS.record_vote("ok")
        record_vote("ok")
        return record.as_dict()

    @app.get("/v1/ballots/{ballot_id}/tally")
    async def tally(ballot_id: str):
        return {"ballot_id": ballot_id, "counts": bg.ledger.tally(ballot_id)}

    # ---------------------------
    # Operations
    # ---------------------------

    @app.get("/v1/security/monitor")
    async def security_monitor(http_request: Request):
        _require_operator(http_request)
        return bg.monitor.poll().as_dict()

    @app.get("/v1/stats")
    async def stats(http_request: Request):
        if stats_require_auth and not _authorize_operator(http_request):
            raise HTTPException(401, "STATS_UNAUTHORIZED")
        lockdown = bg.store.circuit.is_lockdown_active()
        set_lockdown_active(lockdown)
        return OPS_STATS.snapshot(extra={"lockdown_active": lockdown})

    @app.get("/v1/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": bg_version,
            "lockdown_active": bg.store.circuit.is_lockdown_active(),
        }

    return app


def main(argv=None) -> int:
    """
    Main entry point for the ballotguard-server command.

    Usage:
        ballotguard-server                    # Start on default port 8000
        ballotguard-server --port 9000        # Start on custom port
        ballotguard-server --host 127.0.0.1   # Bind to localhost only
    """
    import argparse

    import uvicorn

    parser = argparse.ArgumentParser(
        description="BallotGuard - vote integrity service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
    BG_DB_PATH                       Path to SQLite database (default: ballotguard.db)
    BG_AUDIT_LOG_PATH                Tamper-evident security log (default: <db>.audit.jsonl)
    BG_AUDIT_SIGNING_KEY_FILE        Audit signing key (hex seed, mode 0600)
    BG_ALLOW_EPHEMERAL_SIGNING_KEYS  Demo only: generate a throwaway audit key
    BG_PROXY_HEADERS                 If set (1/true), trust X-Forwarded-* headers
        """,
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")
    parser.add_argument("--proxy-headers", action="store_true", help="Trust X-Forwarded-* headers (for reverse proxy)")
    args = parser.parse_args(argv)

    app = create_app()
    logger.info("Starting BallotGuard on %s:%s", args.host, args.port)

    proxy_headers = args.proxy_headers or _env_flag("BG_PROXY_HEADERS")
    uvicorn.run(app, host=args.host, port=args.port, reload=args.reload, proxy_headers=proxy_headers)
    return 0


if __name__ == "__main__":
    import sys
    sys.exit(main() or 0)
