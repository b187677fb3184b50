"""Session/Attempt Guard and login.

``AttemptGuard`` throttles one client scope (a browser, an HTTP client id)
after repeated failed logins. Guards are plain objects owned by the caller;
there is no module-level attempt state.

``LoginService`` is the only path that issues login sessions. Order of checks:

1. guard check (a blocked client never reaches the Identity Store)
2. secret check (failure counts as an attempt)
3. verified check (an unverified principal is refused without counting)
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .audit_log import AuditSink
from .clock import Clock, SystemClock
from .errors import (
    BG_E_AUTH_FAILED,
    BG_E_NOT_VERIFIED,
    BG_E_TOO_MANY_ATTEMPTS,
    AuthenticationFailed,
    EligibilityDenied,
    TooManyAttempts,
)
from .identity import IdentityStore, LoginSession
from .models import LogKind, Principal, SecurityLogEntry

logger = logging.getLogger("ballotguard.auth")


class AttemptGuard:
    """Failed-login counter for a single client scope."""

    def __init__(
        self,
        client_id: str = "",
        max_failed: int = 3,
        window_seconds: int = 900,
        clock: Optional[Clock] = None,
    ):
        self.client_id = client_id
        self.max_failed = int(max_failed)
        self.window_seconds = int(window_seconds)
        self.clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._failures: List[datetime] = []

    def _prune(self, now: datetime) -> None:
        cutoff = now - timedelta(seconds=self.window_seconds)
        self._failures = [t for t in self._failures if t > cutoff]

    def record_attempt(self, succeeded: bool) -> int:
        """Record a login outcome. Success clears the counter. Returns the current count."""
        with self._lock:
            if succeeded:
                self._failures.clear()
                return 0
            now = self.clock.now()
            self._prune(now)
            self._failures.append(now)
            return len(self._failures)

    def attempts_in_window(self) -> int:
        with self._lock:
            self._prune(self.clock.now())
            return len(self._failures)

    def reset(self) -> None:
        with self._lock:
            self._failures.clear()

    def is_blocked(self) -> bool:
        return self.attempts_in_window() >= self.max_failed

    def retry_after_seconds(self) -> int:
        """Seconds until the oldest counted failure leaves the window."""
        with self._lock:
            now = self.clock.now()
            self._prune(now)
            if len(self._failures) < self.max_failed:
                return 0
            oldest = self._failures[0]
        remaining = (oldest + timedelta(seconds=self.window_seconds) - now).total_seconds()
        return max(1, int(remaining + 0.999))

    def check(self) -> None:
        """Raise TooManyAttempts when the client has used up its failed attempts."""
        if self.is_blocked():
            raise TooManyAttempts(
                code=BG_E_TOO_MANY_ATTEMPTS,
                message="too many failed login attempts",
                retryable=True,
                http_status=429,
                details={"retry_after_seconds": self.retry_after_seconds()},
            )


@dataclass(frozen=True)
class LoginResult:
    principal: Principal
    session: LoginSession

    def as_dict(self) -> Dict[str, Any]:
        return {
            "principal": self.principal.as_dict(),
            "session_id": self.session.session_id,
            "expires_at": self.session.expires_at.isoformat(),
        }


class LoginService:
    def __init__(self, identity: IdentityStore, audit: AuditSink, clock: Optional[Clock] = None):
        self.identity = identity
        self.audit = audit
        self.clock = clock or identity.clock

    def _log(self, kind: LogKind, message: str, principal_id: Optional[str] = None, **metadata: Any) -> None:
        self.audit.append(
            SecurityLogEntry(
                kind=kind,
                message=message,
                timestamp=self.clock.now(),
                principal_id=principal_id,
                metadata={k: v for k, v in metadata.items() if v is not None} or None,
            )
        )

    def login(
        self,
        guard: AttemptGuard,
        contact_handle: str,
        secret: str,
        origin: Optional[str] = None,
    ) -> LoginResult:
        try:
            guard.check()
        except TooManyAttempts:
            logger.warning("Blocked login for client %s", guard.client_id or "-")
            self._log(
                LogKind.RATE_LIMIT,
                "login blocked after repeated failures",
                scope="login",
                client=guard.client_id or None,
                origin=origin,
                attempts=guard.attempts_in_window(),
            )
            raise

        principal = self.identity.check_secret(contact_handle, secret)
        if principal is None:
            count = guard.record_attempt(False)
            if count >= guard.max_failed:
                self._log(
                    LogKind.RATE_LIMIT,
                    "login attempts exhausted",
                    scope="login",
                    client=guard.client_id or None,
                    origin=origin,
                    attempts=count,
                )
            raise AuthenticationFailed(
                code=BG_E_AUTH_FAILED,
                message="invalid credentials",
                http_status=401,
                details={"attempts_remaining": max(0, guard.max_failed - count)},
            )

        if not principal.verified:
            raise EligibilityDenied(
                code=BG_E_NOT_VERIFIED,
                message="contact handle not confirmed",
                http_status=403,
                details={"reason": "NOT_VERIFIED"},
            )

        guard.record_attempt(True)
        session = self.identity.create_login_session(principal.id)
        self._log(LogKind.LOGIN, "login succeeded", principal_id=principal.id, origin=origin)
        logger.info("Principal %s logged in", principal.id)
        return LoginResult(principal=principal, session=session)

    def logout(self, session_id: str) -> bool:
        return self.identity.end_session(session_id)
