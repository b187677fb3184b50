"""Storage circuit breaker.

Votes are only accepted while the store can enforce uniqueness and the rate
cap. When SQLite turns slow or starts reporting lock errors, the breaker opens
a lockdown window and every store call raises ``StorageLockdownError`` until
it closes again. A success pays back one recorded failure.

Environment variables:
- BG_DB_LATENCY_THRESHOLD_MS (250): an operation this slow opens the window.
- BG_DB_FAILURE_THRESHOLD (2): failures that open the window.
- BG_DB_LOCKDOWN_SECONDS (30): how long the window stays open.
- BG_DB_CONNECT_TIMEOUT_SECONDS (5): sqlite busy timeout.
- BG_DB_ERROR_STRICT (1): count every OperationalError, not only lock errors.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

from .config import _get_float, _get_int

logger = logging.getLogger("ballotguard.lockdown")

_LOCK_ERROR_HINTS = ("database is locked", "database is busy", "database table is locked")


class StorageLockdownError(RuntimeError):
    """The store refuses work until the lockdown window closes."""

    def __init__(self, retry_after: float = 0.0):
        super().__init__("LOCKDOWN_ACTIVE")
        self.retry_after = max(0.0, float(retry_after))


@dataclass(frozen=True)
class CircuitBreakerConfig:
    latency_threshold_ms: int = 250
    failure_threshold: int = 2
    lockdown_seconds: int = 30
    connect_timeout_seconds: float = 5.0
    error_strict: bool = True

    @classmethod
    def from_env(cls) -> "CircuitBreakerConfig":
        latency = _get_int("BG_DB_LATENCY_THRESHOLD_MS", cls.latency_threshold_ms)
        timeout = _get_float("BG_DB_CONNECT_TIMEOUT_SECONDS", cls.connect_timeout_seconds)
        strict = (os.getenv("BG_DB_ERROR_STRICT", "1") or "1").strip().lower() not in ("0", "false", "no")
        return cls(
            latency_threshold_ms=latency if latency >= 0 else cls.latency_threshold_ms,
            failure_threshold=max(1, _get_int("BG_DB_FAILURE_THRESHOLD", cls.failure_threshold)),
            lockdown_seconds=max(1, _get_int("BG_DB_LOCKDOWN_SECONDS", cls.lockdown_seconds)),
            connect_timeout_seconds=timeout if timeout > 0 else 0.01,
            error_strict=strict,
        )


class DbCircuitBreaker:
    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.config = config or CircuitBreakerConfig.from_env()
        self._monotonic = monotonic
        self._lock = threading.Lock()
        self._failures = 0
        self._open_until = 0.0

    def remaining_seconds(self) -> float:
        with self._lock:
            return max(0.0, self._open_until - self._monotonic())

    def is_lockdown_active(self) -> bool:
        return self.remaining_seconds() > 0.0

    def raise_if_lockdown(self) -> None:
        remaining = self.remaining_seconds()
        if remaining > 0.0:
            raise StorageLockdownError(retry_after=remaining)

    def _open_locked(self, why: str) -> None:
        now = self._monotonic()
        if now >= self._open_until:
            logger.error("Storage lockdown for %ss: %s", self.config.lockdown_seconds, why)
        self._open_until = now + float(self.config.lockdown_seconds)
        self._failures = self.config.failure_threshold

    def record_success(self) -> None:
        with self._lock:
            self._failures = max(0, self._failures - 1)

    def record_latency(self, elapsed_ms: float) -> None:
        if elapsed_ms < float(self.config.latency_threshold_ms):
            self.record_success()
            return
        with self._lock:
            self._open_locked(f"operation took {elapsed_ms:.1f}ms")

    def record_failure(self, exc: Optional[BaseException] = None) -> None:
        with self._lock:
            self._failures += 1
            logger.warning("Storage failure %s/%s: %s", self._failures, self.config.failure_threshold, exc)
            if self._failures >= self.config.failure_threshold:
                self._open_locked(str(exc) if exc is not None else "failure threshold reached")

    def should_treat_operational_error_as_failure(self, message: str) -> bool:
        if self.config.error_strict:
            return True
        msg = (message or "").lower()
        return any(hint in msg for hint in _LOCK_ERROR_HINTS)

    @contextmanager
    def guarded(self, op_name: str) -> Iterator[None]:
        """Refuse during lockdown, then time the block and record how it went."""
        self.raise_if_lockdown()
        start = self._monotonic()
        try:
            yield
        except sqlite3.OperationalError as e:
            if self.should_treat_operational_error_as_failure(str(e)):
                self.record_failure(e)
            logger.warning("Store operation %s failed: %s", op_name, e)
            raise
        self.record_latency((self._monotonic() - start) * 1000.0)
