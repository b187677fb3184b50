"""
BallotGuard cryptography helpers.

Ed25519 keys back two things:
- possession-factor credentials (the verifier stores only public keys and
  checks signatures over one-time challenges)
- the signed, hash-chained security audit log

Hashing helpers use length-prefixed encodings so concatenated fields cannot
collide.
"""

from __future__ import annotations

import hashlib
import json
import os
import stat
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _safe_hash_encode(components: List[str]) -> bytes:
    """
    Length-prefixed encoding for hash inputs.
    Prevents delimiter collision attacks.
    """
    result = b""
    for component in components:
        encoded = component.encode("utf-8")
        length_bytes = len(encoded).to_bytes(8, byteorder="big")
        result += length_bytes + encoded
    return result


def canonical_json_dumps(obj: Any) -> str:
    """Canonical JSON for stable hashing/signing.

    - sort_keys: deterministic key order
    - separators: no whitespace ambiguity
    - ensure_ascii=False: preserve unicode deterministically (UTF-8)
    - default=str: datetimes and enums hash by their string form
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


@dataclass
class Ed25519KeyPair:
    """
    Ed25519 key pair for signing and verification.

    A pair built with ``from_public_key`` can only verify.
    """
    key_id: str
    public_key_bytes: bytes
    private_key_bytes: Optional[bytes] = None

    @classmethod
    def generate(cls, key_id: str) -> "Ed25519KeyPair":
        """Generate a new Ed25519 key pair."""
        private_key = Ed25519PrivateKey.generate()
        return cls._from_private_key(key_id, private_key)

    @classmethod
    def from_seed(cls, seed: bytes, key_id: str) -> "Ed25519KeyPair":
        """Create key pair from a 32-byte seed."""
        if len(seed) != 32:
            raise ValueError(f"Seed must be 32 bytes, got {len(seed)}")
        return cls._from_private_key(key_id, Ed25519PrivateKey.from_private_bytes(seed))

    @classmethod
    def from_public_key(cls, key_id: str, public_key_hex: str) -> "Ed25519KeyPair":
        """Create key pair with public key only (for verification)."""
        public_bytes = bytes.fromhex(public_key_hex)
        if len(public_bytes) != 32:
            raise ValueError(f"Ed25519 public key must be 32 bytes, got {len(public_bytes)}")
        return cls(key_id=key_id, public_key_bytes=public_bytes, private_key_bytes=None)

    @classmethod
    def _from_private_key(cls, key_id: str, private_key: Ed25519PrivateKey) -> "Ed25519KeyPair":
        private_bytes = private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        public_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return cls(key_id=key_id, public_key_bytes=public_bytes, private_key_bytes=private_bytes)

    @property
    def public_key_hex(self) -> str:
        return self.public_key_bytes.hex()

    def can_sign(self) -> bool:
        """Check if this key pair can sign (has private key)."""
        return self.private_key_bytes is not None

    def sign(self, message: bytes) -> bytes:
        """Sign a message with the private key."""
        if not self.can_sign():
            raise ValueError(f"Key {self.key_id} has no private key - cannot sign")
        private_key = Ed25519PrivateKey.from_private_bytes(self.private_key_bytes)
        return private_key.sign(message)

    def verify(self, message: bytes, signature: bytes) -> bool:
        """Verify a signature with the public key."""
        try:
            public_key = Ed25519PublicKey.from_public_bytes(self.public_key_bytes)
            public_key.verify(signature, message)
            return True
        except (InvalidSignature, ValueError):
            return False


@dataclass
class TrustedKeyStore:
    """Trusted Ed25519 public keys, by key id, for audit log verification."""
    keys: Dict[str, Ed25519KeyPair] = field(default_factory=dict)

    @classmethod
    def from_config(cls, config: Dict[str, str]) -> "TrustedKeyStore":
        store = cls()
        for key_id, public_key_hex in config.items():
            store.add_public_key(str(key_id), str(public_key_hex))
        return store

    def add_public_key(self, key_id: str, public_key_hex: str) -> None:
        self.keys[key_id] = Ed25519KeyPair.from_public_key(key_id, public_key_hex)

    def verify_signature(self, key_id: str, message: bytes, signature: bytes) -> bool:
        kp = self.keys.get(key_id)
        if kp is None:
            return False
        return kp.verify(message, signature)


def create_key_pair(key_id: str) -> Ed25519KeyPair:
    return Ed25519KeyPair.generate(key_id)


def load_signing_key_from_file(
    path: str,
    key_id: str = "audit",
    require_strict_permissions: bool = True,
) -> Optional[Ed25519KeyPair]:
    """
    Load a signing key (hex-encoded 32-byte seed) from file.

    Returns None if the file doesn't exist or has loose permissions/bad content.
    """
    key_path = Path(path)
    if not key_path.exists():
        return None

    if require_strict_permissions:
        mode = os.stat(path).st_mode
        # Require owner read/write only (0600)
        if mode & (stat.S_IRWXG | stat.S_IRWXO):
            warnings.warn(
                f"Key file {path} has insecure permissions. "
                f"Expected 0600, got {oct(mode & 0o777)}. "
                f"Run: chmod 600 {path}"
            )
            return None

    key_hex = key_path.read_text(encoding="ascii").strip()
    try:
        if len(key_hex) != 64:
            raise ValueError(f"Key must be 64 hex chars (32 bytes), got {len(key_hex)}")
        return Ed25519KeyPair.from_seed(bytes.fromhex(key_hex), key_id)
    except ValueError as e:
        warnings.warn(f"Failed to load signing key from {path}: {e}")
        return None


def generate_key_file(path: str, key_id: str = "audit") -> Ed25519KeyPair:
    """
    Generate a new key pair and save its seed to ``path`` with 0600 permissions.

    Returns the generated key pair.
    """
    key = create_key_pair(key_id)
    seed_hex = key.private_key_bytes[:32].hex()
    fd = os.open(str(Path(path)), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    try:
        os.write(fd, seed_hex.encode("ascii"))
    finally:
        os.close(fd)
    return key
