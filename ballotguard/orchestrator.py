"""Verification Orchestrator.

Explicit state machine over the three factors:

    IDLE -> FACTOR_POSSESSION -> FACTOR_LIKENESS -> FACTOR_DOCUMENT -> COMPLETE

- a pass records the result and advances; a pass on the document factor
  completes the session
- a fail records the result (latest attempt wins) and stays put; the caller
  retries or skips
- an abort (user cancelled) records nothing and is not an attempt
- skip jumps straight to COMPLETE and marks every factor without a pass as
  skipped
- finalize freezes the outcome; the first call persists it, later calls
  return the same outcome
- sessions are dropped once they outlive the session TTL, counted from
  finalization (or from the start while still open)

The orchestrator is the only writer of ``VerificationFactorResult``.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Dict, List, Optional, Tuple, Union

from .clock import Clock
from .errors import (
    BG_E_CEREMONY_ABORTED,
    BG_E_FACTOR_ATTEMPTS_EXHAUSTED,
    CeremonyError,
    TooManyAttempts,
    invalid_session,
    invalid_state,
)
from .identity import IdentityStore
from .models import FACTOR_ORDER, Evidence, FactorKind, FactorOutcome, ImageEvidence, VerificationFactorResult
from .store import BallotStore
from .verifier import likeness_evidence

logger = logging.getLogger("ballotguard.orchestrator")


class SessionState(Enum):
    IDLE = "idle"
    FACTOR_POSSESSION = "factor_possession"
    FACTOR_LIKENESS = "factor_likeness"
    FACTOR_DOCUMENT = "factor_document"
    COMPLETE = "complete"


_STATE_FOR_FACTOR = {
    FactorKind.POSSESSION: SessionState.FACTOR_POSSESSION,
    FactorKind.LIKENESS: SessionState.FACTOR_LIKENESS,
    FactorKind.DOCUMENT: SessionState.FACTOR_DOCUMENT,
}
_FACTOR_FOR_STATE = {v: k for k, v in _STATE_FOR_FACTOR.items()}


@dataclass(frozen=True)
class VerificationOutcome:
    session_id: str
    principal_id: str
    fully_verified: bool
    passed_count: int
    skipped: Tuple[FactorKind, ...]
    finalized_at: datetime

    def as_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "principal_id": self.principal_id,
            "fully_verified": self.fully_verified,
            "passed_count": self.passed_count,
            "skipped": [f.value for f in self.skipped],
            "finalized_at": self.finalized_at.isoformat(),
        }


@dataclass
class VerificationSession:
    session_id: str
    principal_id: str
    started_at: datetime
    state: SessionState = SessionState.IDLE
    results: Dict[FactorKind, VerificationFactorResult] = field(default_factory=dict)
    attempts: Dict[FactorKind, int] = field(default_factory=dict)
    skipped: List[FactorKind] = field(default_factory=list)
    outcome: Optional[VerificationOutcome] = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def current_factor(self) -> Optional[FactorKind]:
        return _FACTOR_FOR_STATE.get(self.state)

    def passed(self) -> List[FactorKind]:
        return [f for f in FACTOR_ORDER if f in self.results and self.results[f].passed]

    @property
    def fully_verified(self) -> bool:
        return len(self.passed()) == len(FACTOR_ORDER)


@dataclass(frozen=True)
class SessionSnapshot:
    session_id: str
    principal_id: str
    state: SessionState
    results: Tuple[VerificationFactorResult, ...]
    attempts: Dict[str, int]
    skipped: Tuple[FactorKind, ...]
    started_at: datetime
    finalized: bool

    @property
    def current_factor(self) -> Optional[FactorKind]:
        return _FACTOR_FOR_STATE.get(self.state)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "principal_id": self.principal_id,
            "state": self.state.value,
            "current_factor": self.current_factor.value if self.current_factor else None,
            "results": [r.as_dict() for r in self.results],
            "attempts": dict(self.attempts),
            "skipped": [f.value for f in self.skipped],
            "started_at": self.started_at.isoformat(),
            "finalized": self.finalized,
        }


class VerificationOrchestrator:
    def __init__(
        self,
        identity: IdentityStore,
        store: BallotStore,
        clock: Optional[Clock] = None,
        max_factor_attempts: int = 3,
        session_ttl_seconds: int = 900,
    ):
        self.identity = identity
        self.store = store
        self.clock = clock or identity.clock
        self.max_factor_attempts = int(max_factor_attempts)
        self.session_ttl = timedelta(seconds=int(session_ttl_seconds))
        self._lock = threading.Lock()
        self._sessions: Dict[str, VerificationSession] = {}

    def _expired(self, session: VerificationSession, now: datetime) -> bool:
        since = session.outcome.finalized_at if session.outcome is not None else session.started_at
        return now - since >= self.session_ttl

    def _evict_expired(self) -> int:
        now = self.clock.now()
        with self._lock:
            stale = [sid for sid, s in self._sessions.items() if self._expired(s, now)]
            for sid in stale:
                del self._sessions[sid]
        if stale:
            logger.debug("Evicted %d verification sessions", len(stale))
        return len(stale)

    def _get(self, session_id: str) -> VerificationSession:
        now = self.clock.now()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None and self._expired(session, now):
                del self._sessions[session_id]
                session = None
        if session is None:
            raise invalid_session(session_id)
        return session

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    @staticmethod
    def _require_open(session: VerificationSession) -> FactorKind:
        factor = session.current_factor()
        if factor is None:
            raise invalid_session(session.session_id, "session is complete")
        return factor

    def _require_turn(self, session: VerificationSession, factor: FactorKind) -> None:
        current = self._require_open(session)
        if factor is not current:
            raise invalid_state(
                f"expected {current.value} factor, got {factor.value}",
                session_id=session.session_id,
                expected=current.value,
                got=factor.value,
            )
        if session.attempts.get(factor, 0) >= self.max_factor_attempts:
            raise TooManyAttempts(
                code=BG_E_FACTOR_ATTEMPTS_EXHAUSTED,
                message=f"{factor.value} factor attempts exhausted; skip to continue",
                retryable=False,
                http_status=429,
                details={"session_id": session.session_id, "factor": factor.value},
            )

    def _snapshot(self, session: VerificationSession) -> SessionSnapshot:
        return SessionSnapshot(
            session_id=session.session_id,
            principal_id=session.principal_id,
            state=session.state,
            results=tuple(session.results[f] for f in FACTOR_ORDER if f in session.results),
            attempts={f.value: n for f, n in session.attempts.items()},
            skipped=tuple(session.skipped),
            started_at=session.started_at,
            finalized=session.outcome is not None,
        )

    def start_session(self, principal_id: str) -> str:
        self.identity.require(principal_id)
        self._evict_expired()
        session = VerificationSession(
            session_id=f"vs_{secrets.token_hex(12)}",
            principal_id=principal_id,
            started_at=self.clock.now(),
        )
        # IDLE is never observable: the session opens on the first factor.
        session.state = _STATE_FOR_FACTOR[FACTOR_ORDER[0]]
        with self._lock:
            self._sessions[session.session_id] = session
        logger.info("Verification session %s started for %s", session.session_id, principal_id)
        return session.session_id

    def record_factor_outcome(
        self,
        session_id: str,
        factor: FactorKind,
        outcome: FactorOutcome,
        evidence: Optional[Evidence] = None,
    ) -> SessionState:
        session = self._get(session_id)
        with session.lock:
            self._require_turn(session, factor)
            now = self.clock.now()
            session.attempts[factor] = session.attempts.get(factor, 0) + 1
            session.results[factor] = VerificationFactorResult(
                factor=factor,
                outcome=outcome,
                evidence=evidence if outcome is FactorOutcome.PASS else None,
                captured_at=now,
            )
            if outcome is FactorOutcome.PASS:
                idx = FACTOR_ORDER.index(factor)
                if idx + 1 < len(FACTOR_ORDER):
                    session.state = _STATE_FOR_FACTOR[FACTOR_ORDER[idx + 1]]
                else:
                    session.state = SessionState.COMPLETE
            logger.debug("Session %s: %s -> %s", session_id, factor.value, outcome.value)
            return session.state

    def abort_factor(self, session_id: str) -> SessionState:
        """User cancelled the current factor: nothing is recorded."""
        session = self._get(session_id)
        with session.lock:
            self._require_open(session)
            return session.state

    async def run_factor(
        self,
        session_id: str,
        factor: FactorKind,
        ceremony: Awaitable[Union[Evidence, ImageEvidence]],
    ) -> SessionState:
        """Await a verifier ceremony and record its outcome.

        A CeremonyError is recorded as a fail and then re-raised, except a
        user cancel, which aborts the factor like task cancellation does.
        ValidationError propagates with nothing recorded.
        """
        session = self._get(session_id)
        try:
            with session.lock:
                self._require_turn(session, factor)
        except BaseException:
            if asyncio.iscoroutine(ceremony):
                ceremony.close()
            raise

        try:
            result = await ceremony
        except CeremonyError as e:
            if e.code == BG_E_CEREMONY_ABORTED:
                self.abort_factor(session_id)
                raise
            self.record_factor_outcome(session_id, factor, FactorOutcome.FAIL)
            raise
        except asyncio.CancelledError:
            self.abort_factor(session_id)
            raise

        evidence = likeness_evidence(result) if isinstance(result, ImageEvidence) else result
        return self.record_factor_outcome(session_id, factor, FactorOutcome.PASS, evidence)

    def skip(self, session_id: str) -> SessionState:
        session = self._get(session_id)
        with session.lock:
            current = self._require_open(session)
            for factor in FACTOR_ORDER[FACTOR_ORDER.index(current):]:
                result = session.results.get(factor)
                if (result is None or not result.passed) and factor not in session.skipped:
                    session.skipped.append(factor)
            session.state = SessionState.COMPLETE
            logger.info("Session %s skipped %s", session_id, [f.value for f in session.skipped])
            return session.state

    def finalize(self, session_id: str) -> VerificationOutcome:
        session = self._get(session_id)
        with session.lock:
            if session.outcome is not None:
                return session.outcome
            if session.state is not SessionState.COMPLETE:
                raise invalid_state("session is not complete", session_id=session_id, state=session.state.value)
            passed = session.passed()
            outcome = VerificationOutcome(
                session_id=session.session_id,
                principal_id=session.principal_id,
                fully_verified=len(passed) == len(FACTOR_ORDER),
                passed_count=len(passed),
                skipped=tuple(session.skipped),
                finalized_at=self.clock.now(),
            )
            record = outcome.as_dict()
            record["results"] = [session.results[f].as_dict() for f in FACTOR_ORDER if f in session.results]
            self.store.insert_verification_outcome(
                session.session_id,
                session.principal_id,
                outcome.passed_count,
                outcome.fully_verified,
                record,
                outcome.finalized_at,
            )
            session.outcome = outcome
        logger.info(
            "Session %s finalized: passed=%s fully_verified=%s",
            session_id, outcome.passed_count, outcome.fully_verified,
        )
        return outcome

    def state(self, session_id: str) -> SessionSnapshot:
        session = self._get(session_id)
        with session.lock:
            return self._snapshot(session)
