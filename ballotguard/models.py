"""Core data model shared by the identity, verification and ledger modules."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class Role(Enum):
    VOTER = "voter"
    ADMIN = "admin"


class FactorKind(Enum):
    """Independent verification mechanisms, in the order they are run."""
    POSSESSION = "possession"
    LIKENESS = "likeness"
    DOCUMENT = "document"


FACTOR_ORDER: Tuple[FactorKind, ...] = (FactorKind.POSSESSION, FactorKind.LIKENESS, FactorKind.DOCUMENT)


class FactorOutcome(Enum):
    PASS = "pass"
    FAIL = "fail"


class LogKind(Enum):
    LOGIN = "login"
    VOTE = "vote"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    RATE_LIMIT = "rate_limit"


class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class Principal:
    id: str
    display_name: str
    contact_handle: str
    verified: bool = False
    role: Role = Role.VOTER
    created_at: Optional[datetime] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "contact_handle": self.contact_handle,
            "verified": bool(self.verified),
            "role": self.role.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass(frozen=True)
class CredentialRecord:
    """Possession-factor credential. ``public_material`` is an Ed25519 public key (hex)."""
    credential_id: str
    principal_id: str
    public_material: str
    usage_counter: int
    created_at: datetime

    def as_dict(self) -> Dict[str, Any]:
        return {
            "credential_id": self.credential_id,
            "principal_id": self.principal_id,
            "public_material": self.public_material,
            "usage_counter": int(self.usage_counter),
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class Evidence:
    """Opaque proof artifact produced by a successful factor check.

    ``token`` is a SHA-256 digest over the factor-specific material; ``detail``
    carries non-sensitive metadata (credential id, image size, last digits).
    """
    factor: FactorKind
    token: str
    captured_at: datetime
    detail: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "factor": self.factor.value,
            "token": self.token,
            "captured_at": self.captured_at.isoformat(),
            "detail": dict(self.detail),
        }


@dataclass(frozen=True)
class ImageEvidence:
    """A captured still image (raw bytes plus content type)."""
    image: bytes
    content_type: str
    captured_at: datetime

    @property
    def size(self) -> int:
        return len(self.image)


@dataclass(frozen=True)
class VerificationFactorResult:
    factor: FactorKind
    outcome: FactorOutcome
    evidence: Optional[Evidence]
    captured_at: datetime

    @property
    def passed(self) -> bool:
        return self.outcome is FactorOutcome.PASS

    def as_dict(self) -> Dict[str, Any]:
        return {
            "factor": self.factor.value,
            "outcome": self.outcome.value,
            "evidence": self.evidence.as_dict() if self.evidence else None,
            "captured_at": self.captured_at.isoformat(),
        }


@dataclass(frozen=True)
class VoteRecord:
    voter_id: str
    ballot_id: str
    option: str
    cast_at: datetime
    origin: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            "voter_id": self.voter_id,
            "ballot_id": self.ballot_id,
            "option": self.option,
            "cast_at": self.cast_at.isoformat(),
            "origin": self.origin,
        }


@dataclass(frozen=True)
class SecurityLogEntry:
    kind: LogKind
    message: str
    timestamp: datetime
    principal_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "kind": self.kind.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "principal_id": self.principal_id,
        }
        if self.metadata:
            d["metadata"] = dict(self.metadata)
        return d


@dataclass(frozen=True)
class Alert:
    kind: str
    message: str
    severity: Severity
    subject: str = ""

    def as_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "severity": self.severity.value,
            "subject": self.subject,
        }
