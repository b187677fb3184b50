"""Identity Store: principals, possession credentials and login sessions.

The store is the only writer of ``Principal`` and ``CredentialRecord``.
Principals are never deleted; ``verified`` flips to True once the contact
handle is confirmed and never back.

Secrets are stored as salted PBKDF2-SHA256 digests
(``pbkdf2_sha256$<iterations>$<salt hex>$<digest hex>``).
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from .clock import Clock, SystemClock
from .errors import BG_E_BAD_REQUEST, BG_E_UNKNOWN_PRINCIPAL, validation_error
from .models import CredentialRecord, Principal, Role
from .store import BallotStore

logger = logging.getLogger("ballotguard.identity")

DEFAULT_HASH_ITERATIONS = 120_000
_HASH_SCHEME = "pbkdf2_sha256"


def hash_secret(secret: str, iterations: int = DEFAULT_HASH_ITERATIONS, salt: Optional[bytes] = None) -> str:
    salt = salt if salt is not None else secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", secret.encode("utf-8"), salt, int(iterations))
    return f"{_HASH_SCHEME}${int(iterations)}${salt.hex()}${digest.hex()}"


def verify_secret(secret: str, encoded: str) -> bool:
    try:
        scheme, iterations, salt_hex, digest_hex = encoded.split("$", 3)
        if scheme != _HASH_SCHEME:
            return False
        salt = bytes.fromhex(salt_hex)
        rounds = int(iterations)
    except ValueError:
        return False
    candidate = hashlib.pbkdf2_hmac("sha256", secret.encode("utf-8"), salt, rounds)
    return hmac.compare_digest(candidate.hex(), digest_hex)


def normalize_contact(contact_handle: str) -> str:
    return (contact_handle or "").strip().lower()


@dataclass(frozen=True)
class LoginSession:
    session_id: str
    principal_id: str
    expires_at: datetime


class IdentityStore:
    def __init__(
        self,
        store: BallotStore,
        clock: Optional[Clock] = None,
        session_ttl_seconds: int = 3600,
        hash_iterations: int = DEFAULT_HASH_ITERATIONS,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.session_ttl_seconds = int(session_ttl_seconds)
        self.hash_iterations = int(hash_iterations)
        # Compared against when a contact handle is unknown so the miss costs
        # the same as a wrong secret.
        self._dummy_hash = hash_secret(secrets.token_hex(16), self.hash_iterations)

    # ---------------------------
    # Principals
    # ---------------------------

    def register_principal(
        self,
        display_name: str,
        contact_handle: str,
        secret: str,
        role: Role = Role.VOTER,
        principal_id: Optional[str] = None,
    ) -> Principal:
        """Create an unverified principal. Raises ValidationError on bad or duplicate input."""
        name = (display_name or "").strip()
        contact = normalize_contact(contact_handle)
        if not name:
            raise validation_error(BG_E_BAD_REQUEST, "display_name is required")
        if not contact:
            raise validation_error(BG_E_BAD_REQUEST, "contact_handle is required")
        if not secret:
            raise validation_error(BG_E_BAD_REQUEST, "secret is required")

        principal = Principal(
            id=principal_id or f"p_{secrets.token_hex(8)}",
            display_name=name,
            contact_handle=contact,
            verified=False,
            role=role,
            created_at=self.clock.now(),
        )
        self.store.insert_principal(principal, hash_secret(secret, self.hash_iterations))
        logger.info("Registered principal %s", principal.id)
        return principal

    def get(self, principal_id: str) -> Optional[Principal]:
        return self.store.get_principal(principal_id)

    def require(self, principal_id: str) -> Principal:
        principal = self.store.get_principal(principal_id)
        if principal is None:
            raise validation_error(BG_E_UNKNOWN_PRINCIPAL, "unknown principal", http_status=404, principal_id=principal_id)
        return principal

    def get_by_contact(self, contact_handle: str) -> Optional[Principal]:
        found = self.store.get_principal_by_contact(normalize_contact(contact_handle))
        return found[0] if found else None

    def list_principals(self) -> List[Principal]:
        return self.store.list_principals()

    def confirm(self, principal_id: str) -> Principal:
        """Mark the principal's contact handle as confirmed (verified)."""
        self.store.update_principal(principal_id, verified=True)
        logger.info("Principal %s confirmed", principal_id)
        return self.require(principal_id)

    def set_role(self, principal_id: str, role: Role) -> Principal:
        self.store.update_principal(principal_id, role=role)
        return self.require(principal_id)

    def check_secret(self, contact_handle: str, secret: str) -> Optional[Principal]:
        """Return the principal if ``secret`` matches, else None."""
        found = self.store.get_principal_by_contact(normalize_contact(contact_handle))
        if found is None:
            verify_secret(secret or "", self._dummy_hash)
            return None
        principal, encoded = found
        if not verify_secret(secret or "", encoded):
            return None
        return principal

    # ---------------------------
    # Credentials
    # ---------------------------

    def add_credential(self, record: CredentialRecord) -> CredentialRecord:
        self.require(record.principal_id)
        self.store.insert_credential(record)
        logger.info("Stored credential %s for %s", record.credential_id, record.principal_id)
        return record

    def credentials_for(self, principal_id: str) -> List[CredentialRecord]:
        return self.store.list_credentials(principal_id)

    def get_credential(self, credential_id: str) -> Optional[CredentialRecord]:
        return self.store.get_credential(credential_id)

    def bump_usage(self, credential_id: str) -> int:
        return self.store.increment_credential_usage(credential_id)

    # ---------------------------
    # Login sessions
    # ---------------------------

    def create_login_session(self, principal_id: str) -> LoginSession:
        now = self.clock.now()
        self.store.purge_expired_sessions(now)
        session_id, expires = self.store.create_login_session(principal_id, now, self.session_ttl_seconds)
        return LoginSession(session_id=session_id, principal_id=principal_id, expires_at=expires)

    def session_principal(self, session_id: str) -> Optional[str]:
        return self.store.resolve_login_session(session_id, self.clock.now())

    def is_authenticated(self, principal_id: str) -> bool:
        return self.store.has_active_session(principal_id, self.clock.now())

    def end_session(self, session_id: str) -> bool:
        return self.store.end_login_session(session_id)
