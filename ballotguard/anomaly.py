"""Anomaly Detector and the operator security monitor.

The detector is purely observational: it reads an immutable snapshot of the
ledger (and optionally the security log) and returns alerts. It never blocks
votes or changes state.

Rules:
- rapid_voting (high): a principal cast more than ``rapid_threshold`` votes
  in the trailing window (default 3 in 5 minutes)
- ip_clustering (medium): more than ``cluster_threshold`` votes came from one
  origin across the whole snapshot (default 10)
- login_lockout (low): a client was throttled at login within the window;
  evaluated only when a security log is supplied
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .audit_log import AuditSink
from .clock import Clock, SystemClock
from .models import Alert, LogKind, SecurityLogEntry, Severity, VoteRecord

logger = logging.getLogger("ballotguard.anomaly")

RAPID_VOTING = "rapid_voting"
IP_CLUSTERING = "ip_clustering"
LOGIN_LOCKOUT = "login_lockout"

_KIND_ORDER = {RAPID_VOTING: 0, IP_CLUSTERING: 1, LOGIN_LOCKOUT: 2}


class AnomalyDetector:
    def __init__(
        self,
        rapid_window_seconds: int = 300,
        rapid_threshold: int = 3,
        cluster_threshold: int = 10,
        clock: Optional[Clock] = None,
    ):
        self.rapid_window = timedelta(seconds=int(rapid_window_seconds))
        self.rapid_threshold = int(rapid_threshold)
        self.cluster_threshold = int(cluster_threshold)
        self.clock = clock or SystemClock()

    def scan(
        self,
        snapshot: Sequence[VoteRecord],
        window: Optional[timedelta] = None,
        now: Optional[datetime] = None,
        security_log: Optional[Iterable[SecurityLogEntry]] = None,
    ) -> List[Alert]:
        window = window if window is not None else self.rapid_window
        now = now or self.clock.now()
        start = now - window
        minutes = max(1, int(window.total_seconds() // 60))
        alerts: List[Alert] = []

        recent = Counter(v.voter_id for v in snapshot if start < v.cast_at <= now)
        for voter_id, count in recent.items():
            if count > self.rapid_threshold:
                alerts.append(Alert(
                    kind=RAPID_VOTING,
                    message=f"{count} votes in {minutes} minutes",
                    severity=Severity.HIGH,
                    subject=voter_id,
                ))

        by_origin = Counter(v.origin for v in snapshot)
        for origin, count in by_origin.items():
            if count > self.cluster_threshold:
                alerts.append(Alert(
                    kind=IP_CLUSTERING,
                    message=f"{count} votes from origin {origin}",
                    severity=Severity.MEDIUM,
                    subject=origin,
                ))

        if security_log is not None:
            lockouts: Counter = Counter()
            for entry in security_log:
                meta = entry.metadata or {}
                if entry.kind is not LogKind.RATE_LIMIT or meta.get("scope") != "login":
                    continue
                if not (start < entry.timestamp <= now):
                    continue
                subject = entry.principal_id or meta.get("client") or meta.get("origin") or "-"
                lockouts[str(subject)] += 1
            for subject, count in lockouts.items():
                alerts.append(Alert(
                    kind=LOGIN_LOCKOUT,
                    message=f"{count} throttled login attempts in {minutes} minutes",
                    severity=Severity.LOW,
                    subject=subject,
                ))

        alerts.sort(key=lambda a: (_KIND_ORDER.get(a.kind, 99), a.subject))
        return alerts


@dataclass(frozen=True)
class MonitorReport:
    generated_at: datetime
    alerts: Tuple[Alert, ...]
    new_alerts: Tuple[Alert, ...]
    total_votes: int
    unique_voters: int
    votes_last_hour: int
    recent_log: Tuple[SecurityLogEntry, ...] = field(default_factory=tuple)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "generated_at": self.generated_at.isoformat(),
            "alerts": [a.as_dict() for a in self.alerts],
            "new_alerts": [a.as_dict() for a in self.new_alerts],
            "total_votes": self.total_votes,
            "unique_voters": self.unique_voters,
            "votes_last_hour": self.votes_last_hour,
            "recent_log": [e.as_dict() for e in self.recent_log],
        }


class SecurityMonitor:
    """Polling feed for the operator dashboard.

    Each poll rescans the ledger and writes one ``suspicious_activity`` entry
    per alert that was not active on the previous poll.
    """

    def __init__(
        self,
        snapshot_source: Callable[[], Sequence[VoteRecord]],
        audit: AuditSink,
        detector: Optional[AnomalyDetector] = None,
        clock: Optional[Clock] = None,
        on_alert: Optional[Callable[[Alert], None]] = None,
        recent_log_limit: int = 50,
    ):
        self.snapshot_source = snapshot_source
        self.audit = audit
        self.detector = detector or AnomalyDetector(clock=clock)
        self.clock = clock or self.detector.clock
        self.on_alert = on_alert
        self.recent_log_limit = int(recent_log_limit)
        self._lock = threading.Lock()
        self._active: Set[Tuple[str, str]] = set()

    def poll(self) -> MonitorReport:
        with self._lock:
            now = self.clock.now()
            votes = tuple(self.snapshot_source())
            log_window = self.audit.entries(since=now - self.detector.rapid_window)
            alerts = self.detector.scan(votes, now=now, security_log=log_window)

            current = {(a.kind, a.subject) for a in alerts}
            new_alerts = [a for a in alerts if (a.kind, a.subject) not in self._active]
            self._active = current

            for alert in new_alerts:
                logger.warning("Anomaly %s (%s): %s", alert.kind, alert.subject, alert.message)
                self.audit.append(SecurityLogEntry(
                    kind=LogKind.SUSPICIOUS_ACTIVITY,
                    message=alert.message,
                    timestamp=now,
                    metadata={"alert": alert.kind, "severity": alert.severity.value, "subject": alert.subject},
                ))
                if self.on_alert is not None:
                    self.on_alert(alert)

            hour_ago = now - timedelta(hours=1)
            return MonitorReport(
                generated_at=now,
                alerts=tuple(alerts),
                new_alerts=tuple(new_alerts),
                total_votes=len(votes),
                unique_voters=len({v.voter_id for v in votes}),
                votes_last_hour=sum(1 for v in votes if hour_ago < v.cast_at <= now),
                recent_log=tuple(self.audit.entries(limit=self.recent_log_limit)),
            )
