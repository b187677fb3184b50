"""
ballotguard.signing: signing abstraction for audit log records.

The audit log only needs ``key_id`` and ``sign``; anything with that shape
(an in-process key, an HSM bridge) can sign records.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from .crypto import Ed25519KeyPair


@runtime_checkable
class Signer(Protocol):
    """Protocol implemented by signing backends."""
    key_id: str
    public_key_bytes: bytes

    @property
    def public_key_hex(self) -> str: ...

    def sign(self, message: bytes) -> bytes: ...


@dataclass
class FileEd25519Signer:
    """Signer that wraps an Ed25519KeyPair (in-process signing)."""
    keypair: Ed25519KeyPair

    @property
    def key_id(self) -> str:
        return self.keypair.key_id

    @property
    def public_key_bytes(self) -> bytes:
        return self.keypair.public_key_bytes

    @property
    def public_key_hex(self) -> str:
        return self.keypair.public_key_hex

    def sign(self, message: bytes) -> bytes:
        return self.keypair.sign(message)


def coerce_signer(obj: Any) -> Signer:
    """Coerce a supported object into a Signer."""
    if obj is None:
        raise TypeError("signer is None")
    if isinstance(obj, Ed25519KeyPair):
        return FileEd25519Signer(obj)
    if isinstance(obj, Signer):
        return obj
    raise TypeError(f"Unsupported signer type: {type(obj)}")
