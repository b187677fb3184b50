"""Credential Verifier: the three verification factors.

- possession: an Ed25519 key held by a platform authenticator signs a random
  32-byte challenge; only the public key is stored (``CredentialRecord``)
- likeness: a still image from a ``LikenessSensor`` judged by a ``Decision``
- document: a 12-digit national id number plus a document image judged by a
  ``Decision``

Likeness and document checks are stand-ins; no biometric matching and no
document authenticity check is performed. The accept/reject decision is
injected so tests are deterministic.

Every prompt and capture is bounded by ``timeout_seconds``. Failures raise
``CeremonyError`` subclass codes; malformed input raises ``ValidationError``.
"""

from __future__ import annotations

import asyncio
import logging
import random
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Dict, List, Optional, Protocol, Sequence, Tuple, TypeVar

from .clock import Clock, SystemClock
from .crypto import Ed25519KeyPair, _safe_hash_encode, _sha256_hex
from .errors import (
    BG_E_BAD_REQUEST,
    BG_E_CAPTURE_ERROR,
    BG_E_CEREMONY_ABORTED,
    BG_E_CEREMONY_FAILED,
    BG_E_CEREMONY_TIMEOUT,
    BG_E_DOCUMENT_REJECTED,
    BG_E_DOCUMENT_TOO_LARGE,
    BG_E_IMAGE_TOO_LARGE,
    BG_E_INVALID_FORMAT,
    BG_E_LIKENESS_REJECTED,
    BG_E_MISSING_DOCUMENT,
    BG_E_NO_CREDENTIAL,
    BG_E_SENSOR_UNAVAILABLE,
    BG_E_UNSUPPORTED_PLATFORM,
    ceremony_error,
    validation_error,
)
from .identity import IdentityStore
from .models import CredentialRecord, Evidence, FactorKind, ImageEvidence

logger = logging.getLogger("ballotguard.verifier")

T = TypeVar("T")

LIKENESS_SUCCESS_RATE = 0.90
DOCUMENT_SUCCESS_RATE = 0.85
DOCUMENT_NUMBER_DIGITS = 12
MAX_IMAGE_BYTES = 5 * 1024 * 1024
CHALLENGE_BYTES = 32


# ---------------------------
# Decisions
# ---------------------------

class Decision(Protocol):
    def __call__(self) -> bool: ...


class RandomDecision:
    """Accept with probability ``rate``."""

    def __init__(self, rate: float, rng: Optional[random.Random] = None):
        if not 0.0 <= rate <= 1.0:
            raise ValueError("rate must be within [0, 1]")
        self.rate = float(rate)
        self._rng = rng or random.SystemRandom()

    def __call__(self) -> bool:
        return self._rng.random() < self.rate


class FixedDecision:
    """Always returns ``value``. Pass a sequence to script successive decisions."""

    def __init__(self, value: bool = True, script: Optional[Sequence[bool]] = None):
        self.value = bool(value)
        self._script: List[bool] = list(script or [])
        self.calls = 0

    def __call__(self) -> bool:
        self.calls += 1
        if self._script:
            return self._script.pop(0)
        return self.value


# ---------------------------
# Devices
# ---------------------------

class AuthenticatorError(Exception):
    """Platform authenticator failed the ceremony."""


class UserCancelled(AuthenticatorError):
    """User dismissed the credential prompt."""


class SensorError(Exception):
    """Capture failed."""


class SensorUnavailableError(SensorError):
    """No camera, or permission denied."""


class PlatformAuthenticator:
    """Device-side key holder (the browser's platform authenticator)."""

    async def is_available(self) -> bool:
        raise NotImplementedError

    async def create_credential(self, principal_id: str, display_name: str) -> Tuple[str, str]:
        """Create a key pair. Returns (credential_id, public_key_hex)."""
        raise NotImplementedError

    async def sign_challenge(self, credential_ids: Sequence[str], challenge: bytes) -> Tuple[str, bytes]:
        """Sign ``challenge`` with one of ``credential_ids``. Returns (credential_id, signature)."""
        raise NotImplementedError


class SoftwareAuthenticator(PlatformAuthenticator):
    """In-process authenticator holding Ed25519 keys in memory.

    ``cancel_next`` and ``delay_seconds`` simulate the user dismissing the
    prompt and a slow device.
    """

    def __init__(self, supported: bool = True, delay_seconds: float = 0.0):
        self.supported = supported
        self.delay_seconds = float(delay_seconds)
        self.cancel_next = False
        self._keys: Dict[str, Ed25519KeyPair] = {}

    async def _prompt(self) -> None:
        if self.delay_seconds > 0:
            await asyncio.sleep(self.delay_seconds)
        if self.cancel_next:
            self.cancel_next = False
            raise UserCancelled("user dismissed the prompt")

    async def is_available(self) -> bool:
        return self.supported

    async def create_credential(self, principal_id: str, display_name: str) -> Tuple[str, str]:
        await self._prompt()
        credential_id = f"cred_{secrets.token_hex(8)}"
        keypair = Ed25519KeyPair.generate(credential_id)
        self._keys[credential_id] = keypair
        return credential_id, keypair.public_key_hex

    async def sign_challenge(self, credential_ids: Sequence[str], challenge: bytes) -> Tuple[str, bytes]:
        await self._prompt()
        for credential_id in credential_ids:
            keypair = self._keys.get(credential_id)
            if keypair is not None:
                return credential_id, keypair.sign(challenge)
        raise AuthenticatorError("no matching credential on this device")

    def key_for(self, credential_id: str) -> Optional[Ed25519KeyPair]:
        return self._keys.get(credential_id)

    def forget(self, credential_id: str) -> None:
        self._keys.pop(credential_id, None)


class LikenessSensor:
    """Camera abstraction: captures one still image."""

    async def capture(self) -> ImageEvidence:
        raise NotImplementedError


class StillImageSensor(LikenessSensor):
    """Sensor returning a preset image."""

    def __init__(
        self,
        image: bytes = b"\xff\xd8\xff\xe0" + b"\x00" * 60,
        content_type: str = "image/jpeg",
        available: bool = True,
        clock: Optional[Clock] = None,
        delay_seconds: float = 0.0,
    ):
        self.image = image
        self.content_type = content_type
        self.available = available
        self.clock = clock or SystemClock()
        self.delay_seconds = float(delay_seconds)
        self.fail_next = False

    async def capture(self) -> ImageEvidence:
        if not self.available:
            raise SensorUnavailableError("camera unavailable or permission denied")
        if self.delay_seconds > 0:
            await asyncio.sleep(self.delay_seconds)
        if self.fail_next:
            self.fail_next = False
            raise SensorError("frame capture failed")
        return ImageEvidence(image=self.image, content_type=self.content_type, captured_at=self.clock.now())


# ---------------------------
# Verifier
# ---------------------------

@dataclass(frozen=True)
class Challenge:
    challenge_id: str
    principal_id: str
    nonce: bytes
    credential_ids: Tuple[str, ...]
    issued_at: datetime
    expires_at: datetime

    def as_dict(self) -> Dict[str, object]:
        return {
            "challenge_id": self.challenge_id,
            "principal_id": self.principal_id,
            "challenge_hex": self.nonce.hex(),
            "credential_ids": list(self.credential_ids),
            "expires_at": self.expires_at.isoformat(),
        }


def likeness_evidence(image: ImageEvidence) -> Evidence:
    return Evidence(
        factor=FactorKind.LIKENESS,
        token=_sha256_hex(image.image),
        captured_at=image.captured_at,
        detail={"image_bytes": image.size, "content_type": image.content_type},
    )


def normalize_document_number(document_number: str) -> str:
    """Strip all whitespace and require exactly 12 ASCII digits."""
    digits = "".join((document_number or "").split())
    if len(digits) != DOCUMENT_NUMBER_DIGITS or not (digits.isascii() and digits.isdigit()):
        raise validation_error(BG_E_INVALID_FORMAT, f"document number must be {DOCUMENT_NUMBER_DIGITS} digits")
    return digits


def _check_image(
    image: Optional[ImageEvidence],
    missing_code: str,
    missing_message: str,
    too_large_code: str = BG_E_IMAGE_TOO_LARGE,
) -> ImageEvidence:
    if image is None or not image.image:
        raise validation_error(missing_code, missing_message)
    if image.size > MAX_IMAGE_BYTES:
        raise validation_error(
            too_large_code, "image exceeds 5 MiB", http_status=413, size=image.size, limit=MAX_IMAGE_BYTES,
        )
    if not (image.content_type or "").startswith("image/"):
        raise validation_error(BG_E_INVALID_FORMAT, "attachment must be an image", content_type=image.content_type)
    return image


class CredentialVerifier:
    def __init__(
        self,
        identity: IdentityStore,
        authenticator: Optional[PlatformAuthenticator] = None,
        sensor: Optional[LikenessSensor] = None,
        likeness_decision: Optional[Decision] = None,
        document_decision: Optional[Decision] = None,
        clock: Optional[Clock] = None,
        timeout_seconds: float = 60.0,
    ):
        self.identity = identity
        self.authenticator = authenticator
        self.sensor = sensor
        self.likeness_decision = likeness_decision or RandomDecision(LIKENESS_SUCCESS_RATE)
        self.document_decision = document_decision or RandomDecision(DOCUMENT_SUCCESS_RATE)
        self.clock = clock or identity.clock
        self.timeout_seconds = float(timeout_seconds)
        # Salt for document number digests; evidence never carries the raw number.
        self._document_salt = secrets.token_bytes(16)
        self._challenges: Dict[str, Challenge] = {}
        self._lock = threading.Lock()

    async def _bounded(self, aw: Awaitable[T], what: str) -> T:
        try:
            return await asyncio.wait_for(aw, timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("%s timed out after %ss", what, self.timeout_seconds)
            raise ceremony_error(BG_E_CEREMONY_TIMEOUT, f"{what} timed out", timeout_seconds=self.timeout_seconds) from None

    # ---------------------------
    # Possession
    # ---------------------------

    async def register(self, principal_id: str, display_name: str) -> CredentialRecord:
        """Create a platform credential and persist its public key."""
        self.identity.require(principal_id)
        authenticator = self.authenticator
        if authenticator is None or not await self._bounded(authenticator.is_available(), "platform check"):
            raise ceremony_error(BG_E_UNSUPPORTED_PLATFORM, "no platform authenticator available")
        try:
            credential_id, public_key_hex = await self._bounded(
                authenticator.create_credential(principal_id, display_name), "credential registration",
            )
        except UserCancelled:
            raise ceremony_error(BG_E_CEREMONY_ABORTED, "registration cancelled by user") from None
        except AuthenticatorError as e:
            raise ceremony_error(BG_E_CEREMONY_FAILED, f"registration failed: {e}") from e
        return self.enroll_credential(principal_id, credential_id, public_key_hex)

    def enroll_credential(self, principal_id: str, credential_id: str, public_key_hex: str) -> CredentialRecord:
        """Persist a credential whose key pair was created on the client device."""
        if not credential_id or not str(credential_id).strip():
            raise validation_error(BG_E_INVALID_FORMAT, "credential_id is required")
        try:
            Ed25519KeyPair.from_public_key(credential_id, public_key_hex)
        except ValueError:
            raise validation_error(BG_E_INVALID_FORMAT, "public key must be 32 bytes of hex") from None
        record = CredentialRecord(
            credential_id=credential_id,
            principal_id=principal_id,
            public_material=public_key_hex.lower(),
            usage_counter=0,
            created_at=self.clock.now(),
        )
        return self.identity.add_credential(record)

    def begin_authentication(self, principal_id: str) -> Challenge:
        """Issue a single-use challenge for the principal's credentials."""
        credentials = self.identity.credentials_for(principal_id)
        if not credentials:
            raise ceremony_error(BG_E_NO_CREDENTIAL, "no credential registered", principal_id=principal_id)
        now = self.clock.now()
        challenge = Challenge(
            challenge_id=f"ch_{secrets.token_hex(12)}",
            principal_id=principal_id,
            nonce=secrets.token_bytes(CHALLENGE_BYTES),
            credential_ids=tuple(c.credential_id for c in credentials),
            issued_at=now,
            expires_at=now + timedelta(seconds=self.timeout_seconds),
        )
        with self._lock:
            self._challenges = {k: v for k, v in self._challenges.items() if v.expires_at > now}
            self._challenges[challenge.challenge_id] = challenge
        return challenge

    def complete_authentication(self, challenge_id: str, credential_id: str, signature: bytes) -> Evidence:
        """Check a signature over an issued challenge. The challenge is consumed either way."""
        with self._lock:
            challenge = self._challenges.pop(challenge_id, None)
        if challenge is None:
            raise ceremony_error(BG_E_CEREMONY_FAILED, "unknown or already used challenge")
        now = self.clock.now()
        if now >= challenge.expires_at:
            raise ceremony_error(BG_E_CEREMONY_TIMEOUT, "challenge expired")
        if credential_id not in challenge.credential_ids:
            raise ceremony_error(BG_E_CEREMONY_FAILED, "credential not offered for this challenge")
        record = self.identity.get_credential(credential_id)
        if record is None or record.principal_id != challenge.principal_id:
            raise ceremony_error(BG_E_CEREMONY_FAILED, "credential not registered to principal")

        key = Ed25519KeyPair.from_public_key(credential_id, record.public_material)
        if not key.verify(challenge.nonce, signature):
            logger.warning("Bad possession signature for credential %s", credential_id)
            raise ceremony_error(BG_E_CEREMONY_FAILED, "signature verification failed")

        counter = self.identity.bump_usage(credential_id)
        return Evidence(
            factor=FactorKind.POSSESSION,
            token=_sha256_hex(_safe_hash_encode([credential_id, challenge.nonce.hex(), signature.hex()])),
            captured_at=now,
            detail={"credential_id": credential_id, "usage_counter": counter},
        )

    async def authenticate(self, principal_id: str) -> Evidence:
        """Run a full possession ceremony against the local authenticator."""
        challenge = self.begin_authentication(principal_id)
        authenticator = self.authenticator
        try:
            if authenticator is None:
                raise ceremony_error(BG_E_UNSUPPORTED_PLATFORM, "no platform authenticator available")
            try:
                credential_id, signature = await self._bounded(
                    authenticator.sign_challenge(challenge.credential_ids, challenge.nonce), "credential prompt",
                )
            except UserCancelled:
                raise ceremony_error(BG_E_CEREMONY_ABORTED, "authentication cancelled by user") from None
            except AuthenticatorError as e:
                raise ceremony_error(BG_E_CEREMONY_FAILED, f"authenticator error: {e}") from e
        except BaseException:
            with self._lock:
                self._challenges.pop(challenge.challenge_id, None)
            raise
        return self.complete_authentication(challenge.challenge_id, credential_id, signature)

    # ---------------------------
    # Likeness
    # ---------------------------

    def _judge_likeness(self, image: ImageEvidence) -> ImageEvidence:
        _check_image(image, BG_E_BAD_REQUEST, "image is required")
        if not self.likeness_decision():
            raise ceremony_error(BG_E_LIKENESS_REJECTED, "face verification failed")
        return image

    async def capture_likeness(self) -> ImageEvidence:
        """Capture a still from the sensor and judge it."""
        if self.sensor is None:
            raise ceremony_error(BG_E_SENSOR_UNAVAILABLE, "no camera configured")
        try:
            image = await self._bounded(self.sensor.capture(), "likeness capture")
        except SensorUnavailableError as e:
            raise ceremony_error(BG_E_SENSOR_UNAVAILABLE, str(e) or "camera unavailable") from e
        except SensorError as e:
            raise ceremony_error(BG_E_CAPTURE_ERROR, str(e) or "capture failed") from e
        if not image.image:
            raise ceremony_error(BG_E_CAPTURE_ERROR, "empty capture")
        return self._judge_likeness(image)

    async def verify_likeness(self) -> Evidence:
        return likeness_evidence(await self.capture_likeness())

    async def assess_likeness(self, image: ImageEvidence) -> Evidence:
        """Judge an image captured client-side."""
        return likeness_evidence(self._judge_likeness(image))

    # ---------------------------
    # Document
    # ---------------------------

    async def submit_document(self, document_number: str, image: Optional[ImageEvidence]) -> Evidence:
        digits = normalize_document_number(document_number)
        image = _check_image(image, BG_E_MISSING_DOCUMENT, "document image is required", BG_E_DOCUMENT_TOO_LARGE)
        if not self.document_decision():
            raise ceremony_error(BG_E_DOCUMENT_REJECTED, "document verification failed")
        number_digest = _sha256_hex(self._document_salt + digits.encode("ascii"))
        return Evidence(
            factor=FactorKind.DOCUMENT,
            token=_sha256_hex(_safe_hash_encode([number_digest, _sha256_hex(image.image)])),
            captured_at=self.clock.now(),
            detail={
                "number_digest": number_digest,
                "last4": digits[-4:],
                "image_bytes": image.size,
                "content_type": image.content_type,
            },
        )
