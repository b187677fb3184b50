"""
Persistent storage for BallotGuard state.

One SQLite database holds principals, possession credentials, login sessions,
the vote ledger and finalized verification outcomes.

Storage properties:
- WAL mode with synchronous=FULL
- Every operation goes through ``_db``/``_tx`` so storage degradation trips
  the circuit breaker and fails closed
- ``votes`` has PRIMARY KEY (voter_id, ballot_id); the vote check-and-append
  runs inside a single ``BEGIN IMMEDIATE`` transaction
- Votes and outcomes are insert-only; no code path updates or deletes them
"""

from __future__ import annotations

import json
import logging
import secrets
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .clock import _parse_iso_utc
from .errors import BG_E_DUPLICATE_CONTACT, BG_E_UNKNOWN_PRINCIPAL, validation_error
from .lockdown import DbCircuitBreaker
from .models import CredentialRecord, Principal, Role, VoteRecord

logger = logging.getLogger("ballotguard.store")

# Reasons returned by the ledger-limit checks (see ledger.IneligibleReason).
REASON_ALREADY_VOTED = "ALREADY_VOTED"
REASON_RATE_LIMITED = "RATE_LIMITED"


def _ts(dt: datetime) -> str:
    """Fixed-width UTC timestamp; sorts lexicographically in SQL."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _dt(value: str) -> datetime:
    parsed = _parse_iso_utc(value)
    if parsed is None:
        raise ValueError(f"corrupt timestamp in store: {value!r}")
    return parsed


class BallotStore:
    """SQLite-backed store behind the identity, ledger and orchestrator contracts."""

    def __init__(self, db_path: str = "ballotguard.db", circuit: Optional[DbCircuitBreaker] = None):
        self.db_path = str(db_path)
        self.circuit = circuit or DbCircuitBreaker()
        self._init_db()

    @contextmanager
    def _db(self, op_name: str) -> Iterator[sqlite3.Connection]:
        """DB connection wrapper with circuit breaker (fail-closed)."""
        with self.circuit.guarded(op_name):
            conn = sqlite3.connect(self.db_path, timeout=float(self.circuit.config.connect_timeout_seconds))
            try:
                with conn:
                    yield conn
            finally:
                conn.close()

    @contextmanager
    def _tx(self, op_name: str) -> Iterator[sqlite3.Connection]:
        """Write transaction that takes the database write lock up front.

        Reads issued inside see a state no other writer can change before
        commit, so check-then-insert sequences are atomic.
        """
        with self.circuit.guarded(op_name):
            conn = sqlite3.connect(
                self.db_path,
                timeout=float(self.circuit.config.connect_timeout_seconds),
                isolation_level=None,
            )
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
            finally:
                conn.close()

    def _init_db(self) -> None:
        with self._db("init") as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = FULL")
            conn.execute("PRAGMA busy_timeout = 5000")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS principals (
                principal_id TEXT PRIMARY KEY,
                display_name TEXT NOT NULL,
                contact_handle TEXT NOT NULL UNIQUE,
                secret_hash TEXT NOT NULL,
                verified INTEGER NOT NULL DEFAULT 0,
                role TEXT NOT NULL,
                created_at_utc TEXT NOT NULL
            )
            """)

            conn.execute("""
            CREATE TABLE IF NOT EXISTS credentials (
                credential_id TEXT PRIMARY KEY,
                principal_id TEXT NOT NULL,
                public_material TEXT NOT NULL,
                usage_counter INTEGER NOT NULL DEFAULT 0,
                created_at_utc TEXT NOT NULL
            )
            """)

            conn.execute("""
            CREATE TABLE IF NOT EXISTS login_sessions (
                session_id TEXT PRIMARY KEY,
                principal_id TEXT NOT NULL,
                created_at_utc TEXT NOT NULL,
                expires_at_utc TEXT NOT NULL
            )
            """)

            conn.execute("""
            CREATE TABLE IF NOT EXISTS votes (
                voter_id TEXT NOT NULL,
                ballot_id TEXT NOT NULL,
                option TEXT NOT NULL,
                cast_at_utc TEXT NOT NULL,
                origin TEXT NOT NULL,
                PRIMARY KEY (voter_id, ballot_id)
            )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_votes_voter_time ON votes (voter_id, cast_at_utc)")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS verification_outcomes (
                session_id TEXT PRIMARY KEY,
                principal_id TEXT NOT NULL,
                passed_count INTEGER NOT NULL,
                fully_verified INTEGER NOT NULL,
                outcome_json TEXT NOT NULL,
                finalized_at_utc TEXT NOT NULL
            )
            """)

    # ---------------------------
    # Principals
    # ---------------------------

    @staticmethod
    def _row_to_principal(row: Tuple[Any, ...]) -> Principal:
        return Principal(
            id=row[0],
            display_name=row[1],
            contact_handle=row[2],
            verified=bool(row[3]),
            role=Role(row[4]),
            created_at=_dt(row[5]),
        )

    def insert_principal(self, principal: Principal, secret_hash: str) -> None:
        try:
            with self._db("insert_principal") as conn:
                conn.execute(
                    "INSERT INTO principals (principal_id, display_name, contact_handle, secret_hash, "
                    "verified, role, created_at_utc) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        principal.id,
                        principal.display_name,
                        principal.contact_handle,
                        secret_hash,
                        1 if principal.verified else 0,
                        principal.role.value,
                        _ts(principal.created_at),
                    ),
                )
        except sqlite3.IntegrityError:
            raise validation_error(
                BG_E_DUPLICATE_CONTACT, "contact handle already registered", http_status=409,
            ) from None

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._db("get_principal") as conn:
            row = conn.execute(
                "SELECT principal_id, display_name, contact_handle, verified, role, created_at_utc "
                "FROM principals WHERE principal_id = ?",
                (principal_id,),
            ).fetchone()
        return self._row_to_principal(row) if row else None

    def get_principal_by_contact(self, contact_handle: str) -> Optional[Tuple[Principal, str]]:
        """Return (principal, secret_hash) for a contact handle."""
        with self._db("get_principal_by_contact") as conn:
            row = conn.execute(
                "SELECT principal_id, display_name, contact_handle, verified, role, created_at_utc, secret_hash "
                "FROM principals WHERE contact_handle = ?",
                (contact_handle,),
            ).fetchone()
        if not row:
            return None
        return self._row_to_principal(row[:6]), str(row[6])

    def list_principals(self) -> List[Principal]:
        with self._db("list_principals") as conn:
            rows = conn.execute(
                "SELECT principal_id, display_name, contact_handle, verified, role, created_at_utc "
                "FROM principals ORDER BY created_at_utc"
            ).fetchall()
        return [self._row_to_principal(r) for r in rows]

    def update_principal(self, principal_id: str, *, verified: Optional[bool] = None, role: Optional[Role] = None) -> None:
        sets: List[str] = []
        args: List[Any] = []
        if verified is not None:
            sets.append("verified = ?")
            args.append(1 if verified else 0)
        if role is not None:
            sets.append("role = ?")
            args.append(role.value)
        if not sets:
            return
        with self._db("update_principal") as conn:
            cur = conn.execute(
                f"UPDATE principals SET {', '.join(sets)} WHERE principal_id = ?",
                (*args, principal_id),
            )
            if cur.rowcount != 1:
                raise validation_error(BG_E_UNKNOWN_PRINCIPAL, "unknown principal", http_status=404, principal_id=principal_id)

    # ---------------------------
    # Credentials
    # ---------------------------

    @staticmethod
    def _row_to_credential(row: Tuple[Any, ...]) -> CredentialRecord:
        return CredentialRecord(
            credential_id=row[0],
            principal_id=row[1],
            public_material=row[2],
            usage_counter=int(row[3]),
            created_at=_dt(row[4]),
        )

    def insert_credential(self, record: CredentialRecord) -> None:
        with self._db("insert_credential") as conn:
            conn.execute(
                "INSERT INTO credentials (credential_id, principal_id, public_material, usage_counter, created_at_utc) "
                "VALUES (?, ?, ?, ?, ?)",
                (record.credential_id, record.principal_id, record.public_material,
                 int(record.usage_counter), _ts(record.created_at)),
            )

    def list_credentials(self, principal_id: str) -> List[CredentialRecord]:
        with self._db("list_credentials") as conn:
            rows = conn.execute(
                "SELECT credential_id, principal_id, public_material, usage_counter, created_at_utc "
                "FROM credentials WHERE principal_id = ? ORDER BY created_at_utc",
                (principal_id,),
            ).fetchall()
        return [self._row_to_credential(r) for r in rows]

    def get_credential(self, credential_id: str) -> Optional[CredentialRecord]:
        with self._db("get_credential") as conn:
            row = conn.execute(
                "SELECT credential_id, principal_id, public_material, usage_counter, created_at_utc "
                "FROM credentials WHERE credential_id = ?",
                (credential_id,),
            ).fetchone()
        return self._row_to_credential(row) if row else None

    def increment_credential_usage(self, credential_id: str) -> int:
        with self._tx("increment_credential_usage") as conn:
            conn.execute(
                "UPDATE credentials SET usage_counter = usage_counter + 1 WHERE credential_id = ?",
                (credential_id,),
            )
            row = conn.execute(
                "SELECT usage_counter FROM credentials WHERE credential_id = ?",
                (credential_id,),
            ).fetchone()
        return int(row[0]) if row else 0

    # ---------------------------
    # Login sessions
    # ---------------------------

    def purge_expired_sessions(self, now: datetime) -> int:
        """Delete expired login sessions. Returns number of rows deleted."""
        with self._db("purge_expired_sessions") as conn:
            cur = conn.execute("DELETE FROM login_sessions WHERE expires_at_utc <= ?", (_ts(now),))
            return int(cur.rowcount or 0)

    def create_login_session(self, principal_id: str, now: datetime, ttl_seconds: int) -> Tuple[str, datetime]:
        session_id = f"login_{secrets.token_urlsafe(24)}"
        expires = now + timedelta(seconds=int(ttl_seconds))
        with self._db("create_login_session") as conn:
            conn.execute(
                "INSERT INTO login_sessions (session_id, principal_id, created_at_utc, expires_at_utc) "
                "VALUES (?, ?, ?, ?)",
                (session_id, principal_id, _ts(now), _ts(expires)),
            )
        return session_id, expires

    def resolve_login_session(self, session_id: str, now: datetime) -> Optional[str]:
        """Return the owning principal id of an unexpired session, else None."""
        if not session_id or not str(session_id).strip():
            return None
        with self._db("resolve_login_session") as conn:
            row = conn.execute(
                "SELECT principal_id FROM login_sessions WHERE session_id = ? AND expires_at_utc > ?",
                (session_id, _ts(now)),
            ).fetchone()
        return str(row[0]) if row else None

    def has_active_session(self, principal_id: str, now: datetime) -> bool:
        with self._db("has_active_session") as conn:
            row = conn.execute(
                "SELECT 1 FROM login_sessions WHERE principal_id = ? AND expires_at_utc > ? LIMIT 1",
                (principal_id, _ts(now)),
            ).fetchone()
        return row is not None

    def end_login_session(self, session_id: str) -> bool:
        with self._db("end_login_session") as conn:
            cur = conn.execute("DELETE FROM login_sessions WHERE session_id = ?", (session_id,))
            return int(cur.rowcount or 0) == 1

    # ---------------------------
    # Votes
    # ---------------------------

    @staticmethod
    def _vote_limit_reason(
        conn: sqlite3.Connection,
        voter_id: str,
        ballot_id: str,
        window_start: datetime,
        max_votes: int,
    ) -> Optional[str]:
        row = conn.execute(
            "SELECT 1 FROM votes WHERE voter_id = ? AND ballot_id = ?",
            (voter_id, ballot_id),
        ).fetchone()
        if row is not None:
            return REASON_ALREADY_VOTED
        recent = conn.execute(
            "SELECT COUNT(*) FROM votes WHERE voter_id = ? AND cast_at_utc > ?",
            (voter_id, _ts(window_start)),
        ).fetchone()[0]
        if int(recent) >= int(max_votes):
            return REASON_RATE_LIMITED
        return None

    def vote_limit_reason(self, voter_id: str, ballot_id: str, window_start: datetime, max_votes: int) -> Optional[str]:
        """Read-only evaluation of the duplicate-vote and rate checks."""
        with self._db("vote_limit_reason") as conn:
            return self._vote_limit_reason(conn, voter_id, ballot_id, window_start, max_votes)

    def insert_vote_checked(self, record: VoteRecord, window_start: datetime, max_votes: int) -> Optional[str]:
        """Re-check limits and append ``record`` in one write transaction.

        Returns None on success, or the failing reason with nothing written.
        """
        try:
            with self._tx("insert_vote") as conn:
                reason = self._vote_limit_reason(conn, record.voter_id, record.ballot_id, window_start, max_votes)
                if reason is not None:
                    return reason
                conn.execute(
                    "INSERT INTO votes (voter_id, ballot_id, option, cast_at_utc, origin) VALUES (?, ?, ?, ?, ?)",
                    (record.voter_id, record.ballot_id, record.option, _ts(record.cast_at), record.origin),
                )
        except sqlite3.IntegrityError:
            # Another writer won the race for this (voter, ballot) pair.
            return REASON_ALREADY_VOTED
        return None

    @staticmethod
    def _row_to_vote(row: Tuple[Any, ...]) -> VoteRecord:
        return VoteRecord(voter_id=row[0], ballot_id=row[1], option=row[2], cast_at=_dt(row[3]), origin=row[4])

    def list_votes(self, ballot_id: Optional[str] = None, voter_id: Optional[str] = None) -> List[VoteRecord]:
        clauses: List[str] = []
        args: List[Any] = []
        if ballot_id is not None:
            clauses.append("ballot_id = ?")
            args.append(ballot_id)
        if voter_id is not None:
            clauses.append("voter_id = ?")
            args.append(voter_id)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._db("list_votes") as conn:
            rows = conn.execute(
                "SELECT voter_id, ballot_id, option, cast_at_utc, origin FROM votes"
                f"{where} ORDER BY cast_at_utc, voter_id",
                tuple(args),
            ).fetchall()
        return [self._row_to_vote(r) for r in rows]

    def tally(self, ballot_id: str) -> Dict[str, int]:
        with self._db("tally") as conn:
            rows = conn.execute(
                "SELECT option, COUNT(*) FROM votes WHERE ballot_id = ? GROUP BY option ORDER BY option",
                (ballot_id,),
            ).fetchall()
        return {str(r[0]): int(r[1]) for r in rows}

    # ---------------------------
    # Verification outcomes
    # ---------------------------

    def insert_verification_outcome(
        self,
        session_id: str,
        principal_id: str,
        passed_count: int,
        fully_verified: bool,
        outcome: Dict[str, Any],
        finalized_at: datetime,
    ) -> bool:
        """Persist a finalized verification outcome once. Returns False if already stored."""
        try:
            with self._db("insert_verification_outcome") as conn:
                conn.execute(
                    "INSERT INTO verification_outcomes (session_id, principal_id, passed_count, fully_verified, "
                    "outcome_json, finalized_at_utc) VALUES (?, ?, ?, ?, ?, ?)",
                    (session_id, principal_id, int(passed_count), 1 if fully_verified else 0,
                     json.dumps(outcome, sort_keys=True), _ts(finalized_at)),
                )
        except sqlite3.IntegrityError:
            return False
        return True

    def latest_verification(self, principal_id: str) -> Optional[Dict[str, Any]]:
        with self._db("latest_verification") as conn:
            row = conn.execute(
                "SELECT session_id, passed_count, fully_verified, finalized_at_utc FROM verification_outcomes "
                "WHERE principal_id = ? ORDER BY finalized_at_utc DESC, rowid DESC LIMIT 1",
                (principal_id,),
            ).fetchone()
        if not row:
            return None
        return {
            "session_id": row[0],
            "passed_count": int(row[1]),
            "fully_verified": bool(row[2]),
            "finalized_at": _dt(row[3]),
        }

    def count_verification_outcomes(self) -> int:
        with self._db("count_verification_outcomes") as conn:
            return int(conn.execute("SELECT COUNT(*) FROM verification_outcomes").fetchone()[0])
