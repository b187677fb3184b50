import pytest

from ballotguard.audit_log import MemoryAuditSink
from ballotguard.clock import FixedClock
from ballotguard.identity import IdentityStore
from ballotguard.lockdown import CircuitBreakerConfig, DbCircuitBreaker
from ballotguard.store import BallotStore

# PBKDF2 at production cost makes the suite slow; the format is identical.
TEST_HASH_ITERATIONS = 1000


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def store(tmp_path):
    # Slow CI disks must not trip the latency breaker mid-test.
    circuit = DbCircuitBreaker(CircuitBreakerConfig(latency_threshold_ms=60000, failure_threshold=2))
    return BallotStore(db_path=str(tmp_path / "bg.db"), circuit=circuit)


@pytest.fixture
def identity(store, clock):
    return IdentityStore(store, clock, hash_iterations=TEST_HASH_ITERATIONS)


@pytest.fixture
def audit():
    return MemoryAuditSink()


def make_voter(identity, handle="ada@example.org", *, confirm=True, login=True):
    """Register a principal and optionally confirm it and open a login session."""
    principal = identity.register_principal("Ada", handle, "correct horse battery")
    if confirm:
        principal = identity.confirm(principal.id)
    if login:
        identity.create_login_session(principal.id)
    return principal
