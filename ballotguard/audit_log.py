"""Append-only security audit sinks.

``SecurityLogEntry`` values (logins, votes, rate limiting, suspicious
activity) are written to an ``AuditSink``. Two sinks are provided:

- MemoryAuditSink: in-process list, used by tests and single-process demos.
- TamperEvidentAuditLog: JSONL file where each record includes
    - prev_hash: SHA256 of previous record (hex)
    - event_hash: SHA256 of canonical entry JSON (hex)
    - entry_hash: SHA256(prev_hash || event_hash || ts) (hex)
    - signature_b64: Ed25519 signature over the canonical payload
  which makes after-the-fact tampering detectable.

Sinks are read by the operator dashboard through ``entries`` (polling).
"""

from __future__ import annotations

import base64
import json
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Protocol, Tuple

from .clock import _parse_iso_utc
from .crypto import TrustedKeyStore, _safe_hash_encode, _sha256_hex, canonical_json_dumps
from .models import LogKind, SecurityLogEntry
from .signing import Signer, coerce_signer

AUDIT_VERSION = "BG_AUDIT_V1"
GENESIS_HASH = "0" * 64


class AuditSink(Protocol):
    def append(self, entry: SecurityLogEntry) -> None: ...

    def entries(
        self,
        kind: Optional[LogKind] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[SecurityLogEntry]: ...


def _filter_entries(
    items: List[SecurityLogEntry],
    kind: Optional[LogKind],
    since: Optional[datetime],
    limit: Optional[int],
) -> List[SecurityLogEntry]:
    out = [e for e in items if (kind is None or e.kind is kind) and (since is None or e.timestamp >= since)]
    if limit is not None and limit >= 0:
        out = out[-limit:] if limit else []
    return out


def entry_from_dict(d: Dict[str, Any]) -> SecurityLogEntry:
    ts = _parse_iso_utc(d.get("timestamp"))
    if ts is None:
        raise ValueError("entry timestamp missing or malformed")
    return SecurityLogEntry(
        kind=LogKind(d["kind"]),
        message=str(d.get("message", "")),
        timestamp=ts,
        principal_id=d.get("principal_id"),
        metadata=d.get("metadata") or None,
    )


class MemoryAuditSink:
    """Thread-safe in-memory audit sink."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: List[SecurityLogEntry] = []

    def append(self, entry: SecurityLogEntry) -> None:
        with self._lock:
            self._items.append(entry)

    def entries(
        self,
        kind: Optional[LogKind] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[SecurityLogEntry]:
        with self._lock:
            items = list(self._items)
        return _filter_entries(items, kind, since, limit)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


@dataclass
class AuditLogRecord:
    version: str
    ts_utc: str
    prev_hash: str
    event: Dict[str, Any]
    event_hash: str
    entry_hash: str
    key_id: str
    signature_b64: str

    def to_json(self) -> str:
        return json.dumps(
            {
                "version": self.version,
                "ts_utc": self.ts_utc,
                "prev_hash": self.prev_hash,
                "event": self.event,
                "event_hash": self.event_hash,
                "entry_hash": self.entry_hash,
                "key_id": self.key_id,
                "signature_b64": self.signature_b64,
            },
            sort_keys=True,
        )


class TamperEvidentAuditLog:
    """Append-only tamper-evident audit log."""

    def __init__(self, path: str, signer: Signer):
        self.path = str(path)
        self.signer = coerce_signer(signer)
        self._lock = threading.Lock()
        self._last_hash = GENESIS_HASH

        p = Path(self.path)
        p.parent.mkdir(parents=True, exist_ok=True)
        if p.exists() and p.stat().st_size > 0:
            last_line = self._read_last_line(p)
            try:
                rec = json.loads(last_line)
                self._last_hash = str(rec.get("entry_hash", GENESIS_HASH))
            except json.JSONDecodeError:
                # Corrupt tail: keep genesis so verify_file reports the break.
                self._last_hash = GENESIS_HASH

    @staticmethod
    def _read_last_line(path: Path) -> str:
        with path.open("rb") as f:
            f.seek(0, 2)
            end = f.tell()
            if end == 0:
                return ""
            # Read backwards in chunks until newline
            pos = max(0, end - 4096)
            f.seek(pos)
            chunk = f.read(end - pos)
            lines = chunk.splitlines()
            if not lines:
                return ""
            return lines[-1].decode("utf-8")

    def append(self, entry: SecurityLogEntry) -> AuditLogRecord:
        return self.append_event(entry.as_dict(), ts_utc=entry.timestamp.isoformat())

    def append_event(self, event: Dict[str, Any], ts_utc: str) -> AuditLogRecord:
        """Append an event and return the created record."""
        event_json = canonical_json_dumps(event)
        event_hash = _sha256_hex(event_json.encode("utf-8"))

        with self._lock:
            prev_hash = self._last_hash
            entry_hash = _sha256_hex(_safe_hash_encode([prev_hash, event_hash, ts_utc]))
            payload = _safe_hash_encode([AUDIT_VERSION, ts_utc, prev_hash, event_hash, entry_hash])
            sig_b64 = base64.b64encode(self.signer.sign(payload)).decode("ascii")

            rec = AuditLogRecord(
                version=AUDIT_VERSION,
                ts_utc=ts_utc,
                prev_hash=prev_hash,
                event=event,
                event_hash=event_hash,
                entry_hash=entry_hash,
                key_id=self.signer.key_id,
                signature_b64=sig_b64,
            )
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(rec.to_json() + "\n")
            self._last_hash = entry_hash
        return rec

    @staticmethod
    def _iter_events(path: str) -> Iterator[Dict[str, Any]]:
        p = Path(path)
        if not p.exists():
            return
        with p.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line:
                    yield json.loads(line)["event"]

    @staticmethod
    def read_entries(path: str) -> List[SecurityLogEntry]:
        """Read entries back without verifying the chain (use verify_file for that)."""
        return [entry_from_dict(ev) for ev in TamperEvidentAuditLog._iter_events(path)]

    def entries(
        self,
        kind: Optional[LogKind] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[SecurityLogEntry]:
        with self._lock:
            items = self.read_entries(self.path)
        return _filter_entries(items, kind, since, limit)

    @staticmethod
    def verify_file(path: str, trusted_keys: TrustedKeyStore) -> Tuple[bool, str, int]:
        """Verify an audit log file. Returns (ok, reason, count)."""
        p = Path(path)
        if not p.exists():
            return True, "NO_FILE", 0

        prev = GENESIS_HASH
        count = 0

        with p.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                count += 1
                try:
                    rec = json.loads(line)
                except json.JSONDecodeError:
                    return False, "PARSE_ERROR", count
                if not isinstance(rec, dict):
                    return False, "PARSE_ERROR", count

                version = rec.get("version")
                if version != AUDIT_VERSION:
                    return False, f"BAD_VERSION:{version}", count
                ts = str(rec.get("ts_utc"))
                prev_hash = str(rec.get("prev_hash"))
                if prev_hash != prev:
                    return False, "CHAIN_BROKEN", count

                event = rec.get("event")
                if not isinstance(event, dict):
                    return False, "BAD_EVENT", count

                event_hash = _sha256_hex(canonical_json_dumps(event).encode("utf-8"))
                if event_hash != str(rec.get("event_hash")):
                    return False, "EVENT_HASH_MISMATCH", count

                expected_entry_hash = _sha256_hex(_safe_hash_encode([prev_hash, event_hash, ts]))
                if expected_entry_hash != str(rec.get("entry_hash")):
                    return False, "ENTRY_HASH_MISMATCH", count

                try:
                    sig = base64.b64decode(str(rec.get("signature_b64")), validate=True)
                except ValueError:
                    return False, "BAD_SIGNATURE_ENCODING", count

                payload = _safe_hash_encode([AUDIT_VERSION, ts, prev_hash, event_hash, expected_entry_hash])
                if not trusted_keys.verify_signature(str(rec.get("key_id")), payload, sig):
                    return False, "INVALID_SIGNATURE", count

                prev = expected_entry_hash

        return True, "OK", count
