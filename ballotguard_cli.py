#!/usr/bin/env python3
"""
BallotGuard - Command Line Interface

Usage:
    ballotguard serve [--host H] [--port P]       Run the HTTP service
    ballotguard scan [--audit-log F] [--json]     Anomaly scan over the vote ledger
    ballotguard tally <ballot_id> [--json]        Per-option vote counts
    ballotguard verify-audit <log> --trusted-keys F
                                                  Verify a tamper-evident security log
    ballotguard keygen <path> [--key-id ID]       Write an audit signing key (0600)
"""

import argparse
import json
import logging
import sys
from datetime import timedelta
from pathlib import Path
from typing import List, Optional

from ballotguard.anomaly import AnomalyDetector
from ballotguard.audit_log import TamperEvidentAuditLog
from ballotguard.clock import _now_utc, _parse_iso_utc
from ballotguard.config import PolicyConfig, db_path_from_env
from ballotguard.crypto import TrustedKeyStore, generate_key_file
from ballotguard.store import BallotStore

logger = logging.getLogger("ballotguard")


def setup_logging(verbose: bool = False):
    """Configure logging for CLI usage."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    logger.setLevel(level)


def cmd_serve(args) -> int:
    from ballotguard.server import main as serve_main

    argv = ["--host", args.host, "--port", str(args.port)]
    if args.reload:
        argv.append("--reload")
    return serve_main(argv)


def cmd_scan(args) -> int:
    """Run the anomaly detector over the ledger (and optionally the security log)."""
    policy = PolicyConfig.from_env()
    store = BallotStore(args.db)
    detector = AnomalyDetector(
        rapid_window_seconds=policy.rapid_vote_window_seconds,
        rapid_threshold=policy.rapid_vote_threshold,
        cluster_threshold=policy.origin_cluster_threshold,
    )

    now = _now_utc()
    if args.now:
        now = _parse_iso_utc(args.now)
        if now is None:
            print(f"Invalid --now timestamp: {args.now}", file=sys.stderr)
            return 2
    window = timedelta(minutes=args.window) if args.window else None

    security_log = None
    if args.audit_log:
        security_log = TamperEvidentAuditLog.read_entries(args.audit_log)

    votes = store.list_votes()
    alerts = detector.scan(votes, window=window, now=now, security_log=security_log)

    if args.json:
        print(json.dumps({
            "scanned_at": now.isoformat(),
            "total_votes": len(votes),
            "alerts": [a.as_dict() for a in alerts],
        }, indent=2))
    else:
        print(f"Scanned {len(votes)} votes in {args.db} at {now.isoformat()}")
        if not alerts:
            print("No anomalies detected")
        for alert in alerts:
            print(f"  [{alert.severity.value.upper():6}] {alert.kind}: {alert.subject} - {alert.message}")

    if alerts and args.fail_on_alert:
        return 1
    return 0


def cmd_tally(args) -> int:
    store = BallotStore(args.db)
    counts = store.tally(args.ballot_id)
    if args.json:
        print(json.dumps({"ballot_id": args.ballot_id, "counts": counts}, indent=2))
        return 0
    total = sum(counts.values())
    print(f"Ballot {args.ballot_id}: {total} votes")
    for option, n in counts.items():
        print(f"  {option}: {n}")
    return 0


def _load_trusted_keys(args) -> TrustedKeyStore:
    if args.trusted_keys:
        data = json.loads(Path(args.trusted_keys).read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError("trusted keys file must contain a JSON object {key_id: public_key_hex}")
        return TrustedKeyStore.from_config({str(k): str(v) for k, v in data.items()})
    if args.public_key:
        return TrustedKeyStore.from_config({args.key_id: args.public_key})
    raise ValueError("provide --trusted-keys or --public-key")


def cmd_verify_audit(args) -> int:
    """Verify hash chain and signatures of a security log."""
    try:
        keys = _load_trusted_keys(args)
    except (OSError, ValueError) as e:
        print(f"Cannot load trusted keys: {e}", file=sys.stderr)
        return 2

    print(f"Verifying security log {args.path}...")
    ok, reason, count = TamperEvidentAuditLog.verify_file(args.path, keys)
    print(f"Records checked: {count}")
    if ok:
        print(f"OK ({reason})")
        return 0
    print(f"FAILED: {reason} at record {count}")
    return 1


def cmd_keygen(args) -> int:
    path = Path(args.path)
    if path.exists() and not args.force:
        print(f"{path} already exists (use --force to overwrite)", file=sys.stderr)
        return 1
    key = generate_key_file(str(path), key_id=args.key_id)
    print(f"Wrote signing key to {path} (mode 0600)")
    print("Trusted keys entry:")
    print(json.dumps({key.key_id: key.public_key_hex}, indent=2))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="ballotguard",
        description="BallotGuard CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--db", default=db_path_from_env(), help="Path to ballot database (default: $BG_DB_PATH)")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP service")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--reload", action="store_true")
    serve_parser.set_defaults(func=cmd_serve)

    scan_parser = subparsers.add_parser("scan", help="Scan the vote ledger for anomalies")
    scan_parser.add_argument("--audit-log", help="Security log (JSONL) to include login lockouts")
    scan_parser.add_argument("--window", type=int, default=None, help="Rapid-voting window in minutes")
    scan_parser.add_argument("--now", default=None, help="Evaluate as of this ISO timestamp")
    scan_parser.add_argument("--json", action="store_true", help="Emit JSON")
    scan_parser.add_argument("--fail-on-alert", action="store_true", help="Exit 1 if any alert is raised")
    scan_parser.set_defaults(func=cmd_scan)

    tally_parser = subparsers.add_parser("tally", help="Show vote counts for a ballot")
    tally_parser.add_argument("ballot_id")
    tally_parser.add_argument("--json", action="store_true", help="Emit JSON")
    tally_parser.set_defaults(func=cmd_tally)

    verify_parser = subparsers.add_parser("verify-audit", help="Verify a tamper-evident security log")
    verify_parser.add_argument("path")
    verify_parser.add_argument("--trusted-keys", help="JSON file {key_id: public_key_hex}")
    verify_parser.add_argument("--public-key", help="Single trusted public key (hex)")
    verify_parser.add_argument("--key-id", default="audit", help="Key id for --public-key")
    verify_parser.set_defaults(func=cmd_verify_audit)

    keygen_parser = subparsers.add_parser("keygen", help="Generate an audit signing key file")
    keygen_parser.add_argument("path")
    keygen_parser.add_argument("--key-id", default="audit")
    keygen_parser.add_argument("--force", action="store_true", help="Overwrite an existing file")
    keygen_parser.set_defaults(func=cmd_keygen)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    setup_logging(args.verbose)
    return int(args.func(args) or 0)


if __name__ == "__main__":
    sys.exit(main())
