"""BallotGuard package.

Vote-integrity and identity-assurance core for a polling service:

- Identity Store (principals, possession credentials, login sessions)
- Credential Verifier (possession, likeness and document factors)
- Verification Orchestrator (explicit factor state machine)
- Vote Ledger (one vote per voter and ballot, trailing-hour rate cap)
- Anomaly Detector (rapid voting, origin clustering)
- Session/Attempt Guard (per-client failed-login throttle)

Convenience imports
------------------
The package avoids heavy import-time side effects. These are available as
top-level imports and are loaded lazily:

    from ballotguard import BallotGuard, create_app, VoteLedger
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments.

    The project version is a simple `version = "..."` field in
    `pyproject.toml`, so a regex parse is enough.
    """

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
    except OSError:
        return None
    m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
    return m.group(1) if m else None


__version__ = _read_version_from_pyproject() or "1.0.0"

# Public symbols available at the package root.
__all__ = [
    "__version__",
    "BallotGuard",
    "create_app",
    "BallotGuardError",
    "PolicyConfig",
    "BallotStore",
    "IdentityStore",
    "CredentialVerifier",
    "VerificationOrchestrator",
    "VoteLedger",
    "AnomalyDetector",
    "SecurityMonitor",
    "AttemptGuard",
    "LoginService",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "BallotGuard": ("ballotguard.server", "BallotGuard"),
    "create_app": ("ballotguard.server", "create_app"),
    "BallotGuardError": ("ballotguard.errors", "BallotGuardError"),
    "PolicyConfig": ("ballotguard.config", "PolicyConfig"),
    "BallotStore": ("ballotguard.store", "BallotStore"),
    "IdentityStore": ("ballotguard.identity", "IdentityStore"),
    "CredentialVerifier": ("ballotguard.verifier", "CredentialVerifier"),
    "VerificationOrchestrator": ("ballotguard.orchestrator", "VerificationOrchestrator"),
    "VoteLedger": ("ballotguard.ledger", "VoteLedger"),
    "AnomalyDetector": ("ballotguard.anomaly", "AnomalyDetector"),
    "SecurityMonitor": ("ballotguard.anomaly", "SecurityMonitor"),
    "AttemptGuard": ("ballotguard.auth", "AttemptGuard"),
    "LoginService": ("ballotguard.auth", "LoginService"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        module = import_module(module_name)
        value = getattr(module, attr)
        # Cache the resolved attribute on the module for faster future access.
        globals()[name] = value
        return value
    raise AttributeError(f"module 'ballotguard' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
