"""Policy configuration.

All knobs are plain dataclass fields with documented defaults. ``from_env``
reads ``BG_*`` environment variables and clamps out-of-range values back to
something safe instead of failing open.

Environment variables:
- BG_MAX_VOTES_PER_WINDOW (5): votes a principal may cast per rate window.
- BG_VOTE_RATE_WINDOW_SECONDS (3600): trailing window for the vote cap.
- BG_MIN_VERIFICATION_FACTORS (0): passed factors (0-3) a principal's latest
  finalized verification must reach before voting. 0 disables the check.
- BG_MAX_FAILED_LOGINS (3): failed logins before a client is throttled.
- BG_LOGIN_ATTEMPT_WINDOW_SECONDS (900): failures older than this are forgotten.
- BG_MAX_FACTOR_ATTEMPTS (3): failed attempts per factor within one session.
- BG_CEREMONY_TIMEOUT_SECONDS (60): bound on credential prompts and captures.
- BG_LOGIN_SESSION_TTL_SECONDS (3600): lifetime of a login session.
- BG_VERIFICATION_SESSION_TTL_SECONDS (900): how long a verification session
  is kept in memory after it starts or is finalized.
- BG_RAPID_VOTE_WINDOW_SECONDS (300), BG_RAPID_VOTE_THRESHOLD (3),
  BG_ORIGIN_CLUSTER_THRESHOLD (10): anomaly detector rules.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

logger = logging.getLogger("ballotguard.config")

ENV_DB_PATH = "BG_DB_PATH"
DEFAULT_DB_PATH = "ballotguard.db"


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        logger.warning("Invalid integer for %s=%r; using default %s", name, raw, default)
        return default


def _get_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError:
        logger.warning("Invalid number for %s=%r; using default %s", name, raw, default)
        return default


def db_path_from_env() -> str:
    return (os.getenv(ENV_DB_PATH, "") or "").strip() or DEFAULT_DB_PATH


@dataclass(frozen=True)
class PolicyConfig:
    max_votes_per_window: int = 5
    vote_rate_window_seconds: int = 3600
    min_verification_factors: int = 0
    max_failed_logins: int = 3
    login_attempt_window_seconds: int = 900
    max_factor_attempts: int = 3
    ceremony_timeout_seconds: float = 60.0
    login_session_ttl_seconds: int = 3600
    verification_session_ttl_seconds: int = 900
    rapid_vote_window_seconds: int = 300
    rapid_vote_threshold: int = 3
    origin_cluster_threshold: int = 10

    @classmethod
    def from_env(cls) -> "PolicyConfig":
        max_votes = _get_int("BG_MAX_VOTES_PER_WINDOW", cls.max_votes_per_window)
        rate_window = _get_int("BG_VOTE_RATE_WINDOW_SECONDS", cls.vote_rate_window_seconds)
        min_factors = _get_int("BG_MIN_VERIFICATION_FACTORS", cls.min_verification_factors)
        max_failed = _get_int("BG_MAX_FAILED_LOGINS", cls.max_failed_logins)
        attempt_window = _get_int("BG_LOGIN_ATTEMPT_WINDOW_SECONDS", cls.login_attempt_window_seconds)
        factor_attempts = _get_int("BG_MAX_FACTOR_ATTEMPTS", cls.max_factor_attempts)
        timeout = _get_float("BG_CEREMONY_TIMEOUT_SECONDS", cls.ceremony_timeout_seconds)
        session_ttl = _get_int("BG_LOGIN_SESSION_TTL_SECONDS", cls.login_session_ttl_seconds)
        verification_ttl = _get_int("BG_VERIFICATION_SESSION_TTL_SECONDS", cls.verification_session_ttl_seconds)
        rapid_window = _get_int("BG_RAPID_VOTE_WINDOW_SECONDS", cls.rapid_vote_window_seconds)
        rapid_threshold = _get_int("BG_RAPID_VOTE_THRESHOLD", cls.rapid_vote_threshold)
        cluster_threshold = _get_int("BG_ORIGIN_CLUSTER_THRESHOLD", cls.origin_cluster_threshold)

        # Clamp
        if max_votes < 1:
            max_votes = cls.max_votes_per_window
        if rate_window < 1:
            rate_window = cls.vote_rate_window_seconds
        min_factors = max(0, min(min_factors, 3))
        if max_failed < 1:
            max_failed = cls.max_failed_logins
        if attempt_window < 1:
            attempt_window = cls.login_attempt_window_seconds
        if factor_attempts < 1:
            factor_attempts = cls.max_factor_attempts
        if timeout <= 0:
            timeout = cls.ceremony_timeout_seconds
        session_ttl = max(60, min(session_ttl, 86400))
        verification_ttl = max(60, min(verification_ttl, 86400))
        if rapid_window < 1:
            rapid_window = cls.rapid_vote_window_seconds
        if rapid_threshold < 1:
            rapid_threshold = cls.rapid_vote_threshold
        if cluster_threshold < 1:
            cluster_threshold = cls.origin_cluster_threshold

        return cls(
            max_votes_per_window=max_votes,
            vote_rate_window_seconds=rate_window,
            min_verification_factors=min_factors,
            max_failed_logins=max_failed,
            login_attempt_window_seconds=attempt_window,
            max_factor_attempts=factor_attempts,
            ceremony_timeout_seconds=timeout,
            login_session_ttl_seconds=session_ttl,
            verification_session_ttl_seconds=verification_ttl,
            rapid_vote_window_seconds=rapid_window,
            rapid_vote_threshold=rapid_threshold,
            origin_cluster_threshold=cluster_threshold,
        )
