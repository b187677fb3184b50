import json
from datetime import timedelta

from ballotguard.audit_log import MemoryAuditSink, TamperEvidentAuditLog
from ballotguard.clock import FixedClock
from ballotguard.crypto import Ed25519KeyPair, TrustedKeyStore
from ballotguard.models import LogKind, SecurityLogEntry


def _entries(clock):
    return [
        SecurityLogEntry(LogKind.LOGIN, "login succeeded", clock.now(), principal_id="p_1", metadata={"origin": "10.0.0.1"}),
        SecurityLogEntry(LogKind.VOTE, "vote recorded", clock.now() + timedelta(seconds=5), principal_id="p_1",
                         metadata={"ballot_id": "b1", "origin": "10.0.0.1"}),
        SecurityLogEntry(LogKind.RATE_LIMIT, "login blocked", clock.now() + timedelta(seconds=9),
                         metadata={"scope": "login", "client": "c:1"}),
    ]


def test_audit_log_verifies(tmp_path):
    clock = FixedClock()
    key = Ed25519KeyPair.generate("audit")
    path = tmp_path / "audit.jsonl"
    log = TamperEvidentAuditLog(str(path), key)
    for e in _entries(clock):
        log.append(e)

    trusted = TrustedKeyStore.from_config({"audit": key.public_key_hex})
    ok, reason, count = TamperEvidentAuditLog.verify_file(str(path), trusted)
    assert ok, reason
    assert count == 3


def test_audit_log_detects_tampering(tmp_path):
    clock = FixedClock()
    key = Ed25519KeyPair.generate("audit")
    path = tmp_path / "audit.jsonl"
    log = TamperEvidentAuditLog(str(path), key)
    for e in _entries(clock):
        log.append(e)

    lines = path.read_text(encoding="utf-8").splitlines()
    rec = json.loads(lines[1])
    rec["event"]["metadata"]["ballot_id"] = "b2"
    lines[1] = json.dumps(rec, sort_keys=True)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")

    trusted = TrustedKeyStore.from_config({"audit": key.public_key_hex})
    ok, reason, count = TamperEvidentAuditLog.verify_file(str(path), trusted)
    assert not ok
    assert reason == "EVENT_HASH_MISMATCH"
    assert count == 2


def test_audit_log_detects_deleted_record(tmp_path):
    clock = FixedClock()
    key = Ed25519KeyPair.generate("audit")
    path = tmp_path / "audit.jsonl"
    log = TamperEvidentAuditLog(str(path), key)
    for e in _entries(clock):
        log.append(e)

    lines = path.read_text(encoding="utf-8").splitlines()
    path.write_text("\n".join([lines[0], lines[2]]) + "\n", encoding="utf-8")

    trusted = TrustedKeyStore.from_config({"audit": key.public_key_hex})
    ok, reason, _ = TamperEvidentAuditLog.verify_file(str(path), trusted)
    assert not ok
    assert reason == "CHAIN_BROKEN"


def test_audit_log_rejects_untrusted_key(tmp_path):
    clock = FixedClock()
    path = tmp_path / "audit.jsonl"
    log = TamperEvidentAuditLog(str(path), Ed25519KeyPair.generate("audit"))
    log.append(_entries(clock)[0])

    other = Ed25519KeyPair.generate("audit")
    ok, reason, _ = TamperEvidentAuditLog.verify_file(str(path), TrustedKeyStore.from_config({"audit": other.public_key_hex}))
    assert not ok
    assert reason == "INVALID_SIGNATURE"


def test_audit_log_chain_continues_after_reopen(tmp_path):
    clock = FixedClock()
    key = Ed25519KeyPair.generate("audit")
    path = str(tmp_path / "audit.jsonl")
    first, second, third = _entries(clock)

    TamperEvidentAuditLog(path, key).append(first)
    reopened = TamperEvidentAuditLog(path, key)
    reopened.append(second)
    reopened.append(third)

    ok, reason, count = TamperEvidentAuditLog.verify_file(path, TrustedKeyStore.from_config({"audit": key.public_key_hex}))
    assert ok, reason
    assert count == 3


def test_audit_log_entries_read_back(tmp_path):
    clock = FixedClock()
    path = str(tmp_path / "audit.jsonl")
    log = TamperEvidentAuditLog(path, Ed25519KeyPair.generate("audit"))
    written = _entries(clock)
    for e in written:
        log.append(e)

    assert TamperEvidentAuditLog.read_entries(path) == written
    assert [e.message for e in log.entries(kind=LogKind.RATE_LIMIT)] == ["login blocked"]
    assert [e.kind for e in log.entries(since=clock.now() + timedelta(seconds=5))] == [LogKind.VOTE, LogKind.RATE_LIMIT]
    assert TamperEvidentAuditLog.read_entries(str(tmp_path / "missing.jsonl")) == []


def test_missing_file_verifies_as_empty(tmp_path):
    ok, reason, count = TamperEvidentAuditLog.verify_file(str(tmp_path / "none.jsonl"), TrustedKeyStore())
    assert ok
    assert reason == "NO_FILE"
    assert count == 0


def test_memory_sink_filters():
    clock = FixedClock()
    sink = MemoryAuditSink()
    for e in _entries(clock):
        sink.append(e)
    assert len(sink) == 3
    assert [e.kind for e in sink.entries(limit=2)] == [LogKind.VOTE, LogKind.RATE_LIMIT]
    assert sink.entries(limit=0) == []
    assert [e.kind for e in sink.entries(kind=LogKind.LOGIN)] == [LogKind.LOGIN]
