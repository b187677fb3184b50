import sqlite3
from datetime import datetime, timezone

import pytest

from ballotguard.lockdown import CircuitBreakerConfig, DbCircuitBreaker, StorageLockdownError
from ballotguard.store import BallotStore


def test_storage_lockdown_trips_on_operational_error(tmp_path, monkeypatch):
    db_path = tmp_path / "bg.db"

    monkeypatch.setenv("BG_DB_CONNECT_TIMEOUT_SECONDS", "0.01")
    monkeypatch.setenv("BG_DB_FAILURE_THRESHOLD", "1")
    monkeypatch.setenv("BG_DB_LOCKDOWN_SECONDS", "60")

    store = BallotStore(db_path=str(db_path))

    import ballotguard.store as store_mod

    def _boom(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(store_mod.sqlite3, "connect", _boom)

    with pytest.raises(sqlite3.OperationalError):
        store.has_active_session("p_1", datetime.now(timezone.utc))

    # Once tripped, every store op fails closed, votes included.
    with pytest.raises(StorageLockdownError):
        store.list_votes()
    assert store.circuit.is_lockdown_active()


def test_lockdown_expires_after_window(tmp_path):
    now = [1000.0]
    circuit = DbCircuitBreaker(
        CircuitBreakerConfig(failure_threshold=1, lockdown_seconds=30),
        monotonic=lambda: now[0],
    )
    store = BallotStore(db_path=str(tmp_path / "bg.db"), circuit=circuit)

    circuit.record_failure(sqlite3.OperationalError("database is busy"))
    with pytest.raises(StorageLockdownError):
        store.tally("b1")

    now[0] += 31
    assert store.tally("b1") == {}


def test_circuit_config_from_env_clamps(monkeypatch):
    monkeypatch.setenv("BG_DB_FAILURE_THRESHOLD", "0")
    monkeypatch.setenv("BG_DB_LOCKDOWN_SECONDS", "-5")
    monkeypatch.setenv("BG_DB_CONNECT_TIMEOUT_SECONDS", "nope")
    cfg = CircuitBreakerConfig.from_env()
    assert cfg.failure_threshold == 1
    assert cfg.lockdown_seconds == 1
    assert cfg.connect_timeout_seconds == CircuitBreakerConfig.connect_timeout_seconds


def test_non_strict_mode_only_counts_lock_errors():
    circuit = DbCircuitBreaker(CircuitBreakerConfig(error_strict=False))
    assert circuit.should_treat_operational_error_as_failure("database is locked")
    assert not circuit.should_treat_operational_error_as_failure("no such table: votes")


def test_slow_operation_opens_lockdown_and_reports_remaining_time():
    now = [0.0]
    circuit = DbCircuitBreaker(
        CircuitBreakerConfig(latency_threshold_ms=100, failure_threshold=3, lockdown_seconds=30),
        monotonic=lambda: now[0],
    )
    with circuit.guarded("vote"):
        now[0] += 0.5
    assert circuit.is_lockdown_active()

    now[0] += 10
    with pytest.raises(StorageLockdownError) as ei:
        circuit.raise_if_lockdown()
    assert ei.value.retry_after == pytest.approx(20.0)


def test_successes_pay_back_failures():
    circuit = DbCircuitBreaker(CircuitBreakerConfig(failure_threshold=2, lockdown_seconds=30))
    circuit.record_failure(sqlite3.OperationalError("database is locked"))
    circuit.record_success()
    circuit.record_failure(sqlite3.OperationalError("database is locked"))
    assert not circuit.is_lockdown_active()
    circuit.record_failure(sqlite3.OperationalError("database is locked"))
    assert circuit.is_lockdown_active()


def test_guarded_ignores_non_lock_errors_when_not_strict():
    circuit = DbCircuitBreaker(CircuitBreakerConfig(failure_threshold=1, error_strict=False))
    with pytest.raises(sqlite3.OperationalError):
        with circuit.guarded("tally"):
            raise sqlite3.OperationalError("no such table: votes")
    assert not circuit.is_lockdown_active()

    with pytest.raises(sqlite3.OperationalError):
        with circuit.guarded("tally"):
            raise sqlite3.OperationalError("database table is locked")
    assert circuit.is_lockdown_active()
