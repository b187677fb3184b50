import json
import os
import stat
from datetime import datetime, timedelta, timezone

from ballotguard.audit_log import TamperEvidentAuditLog
from ballotguard.crypto import load_signing_key_from_file
from ballotguard.models import LogKind, SecurityLogEntry, VoteRecord
from ballotguard.store import BallotStore

import ballotguard_cli

T0 = datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


def _seed_votes(db_path):
    store = BallotStore(str(db_path))
    ws = T0 - timedelta(hours=1)
    for i in range(4):
        store.insert_vote_checked(
            VoteRecord(voter_id="v1", ballot_id=f"b{i}", option="yes", cast_at=T0 + timedelta(minutes=i), origin="10.0.0.1"),
            ws,
            10,
        )
    store.insert_vote_checked(
        VoteRecord(voter_id="v2", ballot_id="b0", option="no", cast_at=T0, origin="10.0.0.2"), ws, 10,
    )
    return store


def test_no_command_prints_help(capsys):
    assert ballotguard_cli.main([]) == 1
    assert "BallotGuard CLI" in capsys.readouterr().out


def test_tally_json(tmp_path, capsys):
    db = tmp_path / "bg.db"
    _seed_votes(db)
    assert ballotguard_cli.main(["--db", str(db), "tally", "b0", "--json"]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out == {"ballot_id": "b0", "counts": {"no": 1, "yes": 1}}


def test_scan_reports_rapid_voting(tmp_path, capsys):
    db = tmp_path / "bg.db"
    _seed_votes(db)
    now = (T0 + timedelta(minutes=4)).isoformat()

    rc = ballotguard_cli.main(["--db", str(db), "scan", "--now", now, "--json", "--fail-on-alert"])
    assert rc == 1
    out = json.loads(capsys.readouterr().out)
    assert out["total_votes"] == 5
    assert [(a["kind"], a["subject"]) for a in out["alerts"]] == [("rapid_voting", "v1")]

    # An hour later the same ledger is quiet.
    later = (T0 + timedelta(hours=1)).isoformat()
    assert ballotguard_cli.main(["--db", str(db), "scan", "--now", later, "--fail-on-alert"]) == 0
    assert "No anomalies detected" in capsys.readouterr().out


def test_scan_rejects_bad_timestamp(tmp_path, capsys):
    assert ballotguard_cli.main(["--db", str(tmp_path / "bg.db"), "scan", "--now", "yesterday"]) == 2
    assert "Invalid --now" in capsys.readouterr().err


def test_keygen_and_verify_audit(tmp_path, capsys):
    key_path = tmp_path / "audit.key"
    assert ballotguard_cli.main(["keygen", str(key_path)]) == 0
    assert stat.S_IMODE(os.stat(key_path).st_mode) == 0o600
    out = capsys.readouterr().out
    trusted = json.loads(out.split("Trusted keys entry:\n", 1)[1])
    trusted_path = tmp_path / "trusted.json"
    trusted_path.write_text(json.dumps(trusted), encoding="utf-8")

    # Refuses to clobber an existing key.
    assert ballotguard_cli.main(["keygen", str(key_path)]) == 1
    capsys.readouterr()

    key = load_signing_key_from_file(str(key_path), key_id="audit")
    log_path = tmp_path / "audit.jsonl"
    log = TamperEvidentAuditLog(str(log_path), key)
    log.append(SecurityLogEntry(LogKind.LOGIN, "login succeeded", T0, principal_id="p_1"))
    log.append(SecurityLogEntry(LogKind.VOTE, "vote recorded", T0, principal_id="p_1", metadata={"ballot_id": "b1"}))

    assert ballotguard_cli.main(["verify-audit", str(log_path), "--trusted-keys", str(trusted_path)]) == 0
    assert "Records checked: 2" in capsys.readouterr().out
    assert ballotguard_cli.main(["verify-audit", str(log_path), "--public-key", key.public_key_hex]) == 0
    capsys.readouterr()

    text = log_path.read_text(encoding="utf-8").replace('"p_1"', '"p_2"', 1)
    log_path.write_text(text, encoding="utf-8")
    assert ballotguard_cli.main(["verify-audit", str(log_path), "--trusted-keys", str(trusted_path)]) == 1
    assert "FAILED" in capsys.readouterr().out


def test_verify_audit_requires_keys(tmp_path, capsys):
    assert ballotguard_cli.main(["verify-audit", str(tmp_path / "audit.jsonl")]) == 2
    assert "Cannot load trusted keys" in capsys.readouterr().err


def test_scan_includes_login_lockouts_from_audit_log(tmp_path, capsys):
    key_path = tmp_path / "audit.key"
    ballotguard_cli.main(["keygen", str(key_path)])
    capsys.readouterr()
    log_path = tmp_path / "audit.jsonl"
    log = TamperEvidentAuditLog(str(log_path), load_signing_key_from_file(str(key_path)))
    log.append(SecurityLogEntry(LogKind.RATE_LIMIT, "login blocked after repeated failures", T0,
                                metadata={"scope": "login", "client": "c:kiosk-9"}))

    rc = ballotguard_cli.main([
        "--db", str(tmp_path / "bg.db"), "scan", "--audit-log", str(log_path),
        "--now", (T0 + timedelta(minutes=1)).isoformat(), "--json",
    ])
    assert rc == 0
    out = json.loads(capsys.readouterr().out)
    assert [(a["kind"], a["subject"]) for a in out["alerts"]] == [("login_lockout", "c:kiosk-9")]
