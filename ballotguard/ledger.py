"""Vote Ledger: eligibility decisions and the append-only vote record.

Eligibility is evaluated in a fixed order and short-circuits on the first
failure:

1. NOT_AUTHENTICATED / NOT_VERIFIED / INSUFFICIENT_VERIFICATION
2. ALREADY_VOTED
3. RATE_LIMITED

Both entry points normalize the ballot id the same way. ``cast_vote`` re-runs
the checks and appends under a striped (voter, ballot) lock and a single write
transaction, so a granted vote and the appended record can never disagree and
at most one vote exists per pair.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .audit_log import AuditSink
from .clock import Clock
from .errors import (
    BG_E_ALREADY_VOTED,
    BG_E_BAD_REQUEST,
    BG_E_INSUFFICIENT_VERIFICATION,
    BG_E_NOT_AUTHENTICATED,
    BG_E_NOT_VERIFIED,
    BG_E_RATE_LIMITED,
    EligibilityDenied,
    RateLimitedError,
    validation_error,
)
from .identity import IdentityStore
from .models import LogKind, SecurityLogEntry, VoteRecord
from .store import BallotStore

logger = logging.getLogger("ballotguard.ledger")

UNKNOWN_ORIGIN = "unknown"
LOCK_STRIPES = 64


class IneligibleReason(Enum):
    NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
    NOT_VERIFIED = "NOT_VERIFIED"
    INSUFFICIENT_VERIFICATION = "INSUFFICIENT_VERIFICATION"
    ALREADY_VOTED = "ALREADY_VOTED"
    RATE_LIMITED = "RATE_LIMITED"


_REASON_ERRORS = {
    IneligibleReason.NOT_AUTHENTICATED: (BG_E_NOT_AUTHENTICATED, 401, "not authenticated"),
    IneligibleReason.NOT_VERIFIED: (BG_E_NOT_VERIFIED, 403, "contact handle not confirmed"),
    IneligibleReason.INSUFFICIENT_VERIFICATION: (BG_E_INSUFFICIENT_VERIFICATION, 403, "identity verification incomplete"),
    IneligibleReason.ALREADY_VOTED: (BG_E_ALREADY_VOTED, 409, "already voted on this ballot"),
    IneligibleReason.RATE_LIMITED: (BG_E_RATE_LIMITED, 429, "vote rate limit reached"),
}


@dataclass(frozen=True)
class Eligibility:
    allowed: bool
    reason: Optional[IneligibleReason] = None

    def __bool__(self) -> bool:
        return self.allowed

    def as_dict(self) -> Dict[str, Any]:
        return {"allowed": self.allowed, "reason": self.reason.value if self.reason else None}


ELIGIBLE = Eligibility(allowed=True)


def eligibility_error(reason: IneligibleReason) -> EligibilityDenied:
    code, status, message = _REASON_ERRORS[reason]
    cls = RateLimitedError if reason is IneligibleReason.RATE_LIMITED else EligibilityDenied
    return cls(
        code=code,
        message=message,
        retryable=reason is IneligibleReason.RATE_LIMITED,
        http_status=status,
        details={"reason": reason.value},
    )


class VoteLedger:
    def __init__(
        self,
        store: BallotStore,
        identity: IdentityStore,
        audit: AuditSink,
        clock: Optional[Clock] = None,
        max_votes_per_window: int = 5,
        rate_window_seconds: int = 3600,
        min_verification_factors: int = 0,
    ):
        self.store = store
        self.identity = identity
        self.audit = audit
        self.clock = clock or identity.clock
        self.max_votes_per_window = int(max_votes_per_window)
        self.rate_window_seconds = int(rate_window_seconds)
        self.min_verification_factors = int(min_verification_factors)
        self._stripes: Tuple[threading.Lock, ...] = tuple(threading.Lock() for _ in range(LOCK_STRIPES))

    def _pair_lock(self, principal_id: str, ballot_id: str) -> threading.Lock:
        # Unrelated pairs may share a stripe; the store transaction still decides.
        return self._stripes[hash((principal_id, ballot_id)) % len(self._stripes)]

    @staticmethod
    def _ballot_id(ballot_id: str) -> str:
        ballot_id = (ballot_id or "").strip()
        if not ballot_id:
            raise validation_error(BG_E_BAD_REQUEST, "ballot_id is required")
        return ballot_id

    def _window_start(self, now: datetime) -> datetime:
        return now - timedelta(seconds=self.rate_window_seconds)

    def _principal_reason(self, principal_id: str) -> Optional[IneligibleReason]:
        principal = self.identity.get(principal_id)
        if principal is None or not self.identity.is_authenticated(principal_id):
            return IneligibleReason.NOT_AUTHENTICATED
        if not principal.verified:
            return IneligibleReason.NOT_VERIFIED
        if self.min_verification_factors > 0:
            latest = self.store.latest_verification(principal_id)
            if latest is None or latest["passed_count"] < self.min_verification_factors:
                return IneligibleReason.INSUFFICIENT_VERIFICATION
        return None

    def check_eligibility(self, principal_id: str, ballot_id: str) -> Eligibility:
        """Read-only eligibility decision for (principal, ballot)."""
        ballot_id = self._ballot_id(ballot_id)
        reason = self._principal_reason(principal_id)
        if reason is not None:
            return Eligibility(allowed=False, reason=reason)
        limit = self.store.vote_limit_reason(
            principal_id, ballot_id, self._window_start(self.clock.now()), self.max_votes_per_window,
        )
        if limit is not None:
            return Eligibility(allowed=False, reason=IneligibleReason(limit))
        return ELIGIBLE

    def _log(self, kind: LogKind, message: str, principal_id: str, **metadata: Any) -> None:
        self.audit.append(
            SecurityLogEntry(
                kind=kind,
                message=message,
                timestamp=self.clock.now(),
                principal_id=principal_id,
                metadata=metadata or None,
            )
        )

    def _deny(self, principal_id: str, ballot_id: str, reason: IneligibleReason) -> EligibilityDenied:
        if reason is IneligibleReason.RATE_LIMITED:
            self._log(LogKind.RATE_LIMIT, "vote rate limit reached", principal_id, scope="vote", ballot_id=ballot_id)
        logger.info("Vote by %s on %s denied: %s", principal_id, ballot_id, reason.value)
        return eligibility_error(reason)

    def cast_vote(self, principal_id: str, ballot_id: str, option: str, origin: Optional[str] = None) -> VoteRecord:
        """Append a vote if eligible; raise EligibilityDenied with the reason otherwise."""
        ballot_id = self._ballot_id(ballot_id)
        option = (option or "").strip()
        if not option:
            raise validation_error(BG_E_BAD_REQUEST, "option is required")

        with self._pair_lock(principal_id, ballot_id):
            reason = self._principal_reason(principal_id)
            if reason is not None:
                raise self._deny(principal_id, ballot_id, reason)

            now = self.clock.now()
            record = VoteRecord(
                voter_id=principal_id,
                ballot_id=ballot_id,
                option=option,
                cast_at=now,
                origin=(origin or "").strip() or UNKNOWN_ORIGIN,
            )
            limit = self.store.insert_vote_checked(record, self._window_start(now), self.max_votes_per_window)
            if limit is not None:
                raise self._deny(principal_id, ballot_id, IneligibleReason(limit))

        self._log(LogKind.VOTE, "vote recorded", principal_id, ballot_id=ballot_id, origin=record.origin)
        logger.info("Vote recorded: %s on %s", principal_id, ballot_id)
        return record

    def records(self, ballot_id: Optional[str] = None) -> List[VoteRecord]:
        return self.store.list_votes(ballot_id=ballot_id)

    def snapshot(self) -> Tuple[VoteRecord, ...]:
        """Immutable view of every vote, for the anomaly detector."""
        return tuple(self.store.list_votes())

    def tally(self, ballot_id: str) -> Dict[str, int]:
        return self.store.tally(ballot_id)
