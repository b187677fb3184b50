"""Operational statistics for the BallotGuard service.

Lightweight in-memory counters served by ``/v1/stats``.

Notes
-----
- Counters reset on process restart.
- These are not audit evidence; the security log and the vote ledger are.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class _Counters:
    # Votes
    votes_cast_total: int = 0
    votes_denied_total: int = 0
    votes_denied_by_reason: Dict[str, int] = field(default_factory=dict)

    # Logins
    logins_total: int = 0
    logins_by_outcome: Dict[str, int] = field(default_factory=dict)  # ok/failed/blocked/unverified

    # Verification
    verifications_finalized_total: int = 0
    verifications_by_passed_count: Dict[str, int] = field(default_factory=dict)
    factor_results_by_outcome: Dict[str, int] = field(default_factory=dict)  # factor:outcome

    # Alerts
    alerts_total: int = 0
    alerts_by_kind: Dict[str, int] = field(default_factory=dict)

    # Fail-closed signals
    storage_lockdown_total: int = 0
    rate_limited_total: int = 0
    rate_limited_by_endpoint: Dict[str, int] = field(default_factory=dict)


class OpsStats:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._start_monotonic = time.monotonic()
        self._c = _Counters()

    def _inc_map(self, m: Dict[str, int], key: str) -> None:
        m[key] = int(m.get(key, 0)) + 1

    def record_vote(self, outcome: str) -> None:
        """``outcome`` is "ok" or an ineligibility reason."""
        with self._lock:
            if outcome == "ok":
                self._c.votes_cast_total += 1
            else:
                self._c.votes_denied_total += 1
                self._inc_map(self._c.votes_denied_by_reason, outcome or "unknown")

    def record_login(self, outcome: str) -> None:
        with self._lock:
            self._c.logins_total += 1
            self._inc_map(self._c.logins_by_outcome, outcome or "unknown")

    def record_factor(self, factor: str, outcome: str) -> None:
        with self._lock:
            self._inc_map(self._c.factor_results_by_outcome, f"{factor}:{outcome}")

    def record_verification(self, passed_count: int) -> None:
        with self._lock:
            self._c.verifications_finalized_total += 1
            self._inc_map(self._c.verifications_by_passed_count, str(int(passed_count)))

    def record_alert(self, kind: str) -> None:
        with self._lock:
            self._c.alerts_total += 1
            self._inc_map(self._c.alerts_by_kind, kind or "unknown")

    def record_storage_lockdown(self) -> None:
        with self._lock:
            self._c.storage_lockdown_total += 1

    def record_rate_limited(self, endpoint: str) -> None:
        with self._lock:
            self._c.rate_limited_total += 1
            self._inc_map(self._c.rate_limited_by_endpoint, endpoint or "unknown")

    def snapshot(self, extra: Dict[str, Any] | None = None) -> Dict[str, Any]:
        with self._lock:
            c = self._c
            snap: Dict[str, Any] = {
                "uptime_seconds": int(time.monotonic() - self._start_monotonic),
                "votes_cast_total": c.votes_cast_total,
                "votes_denied_total": c.votes_denied_total,
                "votes_denied_by_reason": dict(c.votes_denied_by_reason),
                "logins_total": c.logins_total,
                "logins_by_outcome": dict(c.logins_by_outcome),
                "verifications_finalized_total": c.verifications_finalized_total,
                "verifications_by_passed_count": dict(c.verifications_by_passed_count),
                "factor_results_by_outcome": dict(c.factor_results_by_outcome),
                "alerts_total": c.alerts_total,
                "alerts_by_kind": dict(c.alerts_by_kind),
                "storage_lockdown_total": c.storage_lockdown_total,
                "rate_limited_total": c.rate_limited_total,
                "rate_limited_by_endpoint": dict(c.rate_limited_by_endpoint),
            }
        if extra:
            snap.update(extra)
        return snap


OPS_STATS = OpsStats()
