"""Stable error taxonomy for BallotGuard.

Every failure path in the core raises a subclass of ``BallotGuardError`` with a
machine-readable ``code``. The class tells callers how to react:

- ValidationError: malformed input; fix and resubmit.
- EligibilityDenied: a named eligibility reason; surfaced verbatim, never
  retried automatically.
- CeremonyError: device/sensor/permission failure in a verification factor;
  the caller may retry or skip the factor.
- RateLimitedError / TooManyAttempts: recoverable only after the window elapses.
- InvalidSession / InvalidState: protocol errors; abort the current operation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Validation
BG_E_BAD_REQUEST = "BG_E_BAD_REQUEST"
BG_E_INVALID_FORMAT = "BG_E_INVALID_FORMAT"
BG_E_MISSING_DOCUMENT = "BG_E_MISSING_DOCUMENT"
BG_E_DOCUMENT_TOO_LARGE = "BG_E_DOCUMENT_TOO_LARGE"
BG_E_IMAGE_TOO_LARGE = "BG_E_IMAGE_TOO_LARGE"
BG_E_UNKNOWN_PRINCIPAL = "BG_E_UNKNOWN_PRINCIPAL"
BG_E_DUPLICATE_CONTACT = "BG_E_DUPLICATE_CONTACT"

# Eligibility
BG_E_NOT_AUTHENTICATED = "BG_E_NOT_AUTHENTICATED"
BG_E_NOT_VERIFIED = "BG_E_NOT_VERIFIED"
BG_E_INSUFFICIENT_VERIFICATION = "BG_E_INSUFFICIENT_VERIFICATION"
BG_E_ALREADY_VOTED = "BG_E_ALREADY_VOTED"
BG_E_RATE_LIMITED = "BG_E_RATE_LIMITED"

# Verification ceremonies
BG_E_UNSUPPORTED_PLATFORM = "BG_E_UNSUPPORTED_PLATFORM"
BG_E_CEREMONY_ABORTED = "BG_E_CEREMONY_ABORTED"
BG_E_NO_CREDENTIAL = "BG_E_NO_CREDENTIAL"
BG_E_CEREMONY_FAILED = "BG_E_CEREMONY_FAILED"
BG_E_CEREMONY_TIMEOUT = "BG_E_CEREMONY_TIMEOUT"
BG_E_SENSOR_UNAVAILABLE = "BG_E_SENSOR_UNAVAILABLE"
BG_E_CAPTURE_ERROR = "BG_E_CAPTURE_ERROR"
BG_E_LIKENESS_REJECTED = "BG_E_LIKENESS_REJECTED"
BG_E_DOCUMENT_REJECTED = "BG_E_DOCUMENT_REJECTED"

# Login / attempts
BG_E_AUTH_FAILED = "BG_E_AUTH_FAILED"
BG_E_TOO_MANY_ATTEMPTS = "BG_E_TOO_MANY_ATTEMPTS"
BG_E_FACTOR_ATTEMPTS_EXHAUSTED = "BG_E_FACTOR_ATTEMPTS_EXHAUSTED"

# Protocol
BG_E_INVALID_SESSION = "BG_E_INVALID_SESSION"
BG_E_INVALID_STATE = "BG_E_INVALID_STATE"

# Storage
BG_E_LOCKDOWN_ACTIVE = "BG_E_LOCKDOWN_ACTIVE"


@dataclass
class BallotGuardError(Exception):
    """Base exception with a stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ValidationError(BallotGuardError):
    pass


class EligibilityDenied(BallotGuardError):
    """Vote refused for a named eligibility reason (see ``ledger.IneligibleReason``)."""

    @property
    def reason(self) -> str:
        return str(self.details.get("reason", self.code))


class RateLimitedError(EligibilityDenied):
    pass


class CeremonyError(BallotGuardError):
    pass


class AuthenticationFailed(BallotGuardError):
    pass


class TooManyAttempts(BallotGuardError):
    pass


class InvalidSession(BallotGuardError):
    pass


class InvalidState(BallotGuardError):
    pass


def validation_error(code: str, message: str, *, http_status: int = 400, **details: Any) -> ValidationError:
    return ValidationError(code=code, message=message, http_status=http_status, details=details)


def ceremony_error(code: str, message: str, **details: Any) -> CeremonyError:
    return CeremonyError(code=code, message=message, retryable=True, http_status=422, details=details)


def invalid_session(session_id: str, message: str = "unknown or terminal session") -> InvalidSession:
    return InvalidSession(
        code=BG_E_INVALID_SESSION, message=message, http_status=409, details={"session_id": session_id}
    )


def invalid_state(message: str, **details: Any) -> InvalidState:
    return InvalidState(code=BG_E_INVALID_STATE, message=message, http_status=409, details=details)
