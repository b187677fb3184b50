import base64

from fastapi.testclient import TestClient

from ballotguard.audit_log import MemoryAuditSink
from ballotguard.clock import FixedClock
from ballotguard.config import PolicyConfig
from ballotguard.crypto import Ed25519KeyPair
from ballotguard.lockdown import CircuitBreakerConfig, DbCircuitBreaker
from ballotguard.models import LogKind
from ballotguard.server import BallotGuard, create_app
from ballotguard.store import BallotStore
from ballotguard.verifier import FixedDecision, SoftwareAuthenticator, StillImageSensor

SECRET = "correct horse battery"
JPEG_B64 = base64.b64encode(b"\xff\xd8\xff\xe0" + b"\x02" * 256).decode("ascii")


def _guard(tmp_path, policy=None, circuit=None):
    clock = FixedClock()
    circuit = circuit or DbCircuitBreaker(CircuitBreakerConfig(latency_threshold_ms=60000))
    return BallotGuard(
        store=BallotStore(str(tmp_path / "bg.db"), circuit=circuit),
        audit=MemoryAuditSink(),
        policy=policy or PolicyConfig(),
        clock=clock,
        authenticator=SoftwareAuthenticator(),
        sensor=StillImageSensor(clock=clock),
        likeness_decision=FixedDecision(True),
        document_decision=FixedDecision(True),
        hash_iterations=1000,
    )


def _client(monkeypatch, guard, env="dev") -> TestClient:
    monkeypatch.setenv("BG_ENV", env)
    monkeypatch.delenv("BG_STATS_REQUIRE_AUTH", raising=False)
    monkeypatch.delenv("BG_STATS_TOKEN", raising=False)
    return TestClient(create_app(guard))


def _register(client, handle="ada@example.org"):
    r = client.post("/v1/principals", json={"display_name": "Ada", "contact_handle": handle, "secret": SECRET})
    assert r.status_code == 201, r.text
    return r.json()["id"]


def _login(client, handle="ada@example.org", client_id="kiosk-1"):
    pid = _register(client, handle)
    r = client.post(f"/v1/principals/{pid}/confirm")
    assert r.status_code == 200, r.text
    r = client.post("/v1/login", json={"contact_handle": handle, "secret": SECRET}, headers={"X-Client-Id": client_id})
    assert r.status_code == 200, r.text
    return pid, {"X-Session-Id": r.json()["session_id"]}


def test_health(monkeypatch, tmp_path):
    client = _client(monkeypatch, _guard(tmp_path))
    r = client.get("/v1/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "healthy"
    assert body["lockdown_active"] is False


def test_register_validation_and_duplicates(monkeypatch, tmp_path):
    client = _client(monkeypatch, _guard(tmp_path))
    _register(client)

    r = client.post("/v1/principals", json={"display_name": "Ada", "contact_handle": "ADA@example.org", "secret": SECRET})
    assert r.status_code == 409
    assert r.json()["code"] == "BG_E_DUPLICATE_CONTACT"

    r = client.post("/v1/principals", json={"display_name": "Bob", "contact_handle": "bob@example.org", "secret": "short"})
    assert r.status_code == 422


def test_unverified_principal_cannot_log_in(monkeypatch, tmp_path):
    client = _client(monkeypatch, _guard(tmp_path))
    _register(client)
    r = client.post("/v1/login", json={"contact_handle": "ada@example.org", "secret": SECRET})
    assert r.status_code == 403
    assert r.json()["code"] == "BG_E_NOT_VERIFIED"


def test_vote_flow(monkeypatch, tmp_path):
    guard = _guard(tmp_path)
    client = _client(monkeypatch, guard)
    pid, headers = _login(client)

    r = client.get("/v1/ballots/b1/eligibility", headers=headers)
    assert r.json() == {"allowed": True, "reason": None}

    r = client.post("/v1/ballots/b1/votes", json={"option": "yes"}, headers=headers)
    assert r.status_code == 201, r.text
    assert r.json()["voter_id"] == pid
    assert r.json()["origin"] == "testclient"

    r = client.post("/v1/ballots/b1/votes", json={"option": "no"}, headers=headers)
    assert r.status_code == 409
    assert r.json()["code"] == "BG_E_ALREADY_VOTED"
    assert r.json()["details"] == {"reason": "ALREADY_VOTED"}

    r = client.get("/v1/ballots/b1/eligibility", headers=headers)
    assert r.json() == {"allowed": False, "reason": "ALREADY_VOTED"}

    r = client.get("/v1/ballots/b1/tally")
    assert r.json() == {"ballot_id": "b1", "counts": {"yes": 1}}

    kinds = [e.kind for e in guard.audit.entries()]
    assert kinds == [LogKind.LOGIN, LogKind.VOTE]


def test_vote_requires_login_session(monkeypatch, tmp_path):
    client = _client(monkeypatch, _guard(tmp_path))
    r = client.post("/v1/ballots/b1/votes", json={"option": "yes"})
    assert r.status_code == 401
    assert r.json()["detail"]["code"] == "BG_E_NOT_AUTHENTICATED"

    r = client.post("/v1/ballots/b1/votes", json={"option": "yes"}, headers={"Authorization": "Bearer login_bogus"})
    assert r.status_code == 401


def test_bearer_session_and_logout(monkeypatch, tmp_path):
    client = _client(monkeypatch, _guard(tmp_path))
    _, headers = _login(client)
    bearer = {"Authorization": f"Bearer {headers['X-Session-Id']}"}

    assert client.get("/v1/ballots/b1/eligibility", headers=bearer).status_code == 200
    r = client.post("/v1/logout", headers=bearer)
    assert r.json() == {"logged_out": True}
    assert client.get("/v1/ballots/b1/eligibility", headers=bearer).status_code == 401


def test_login_throttled_per_client(monkeypatch, tmp_path):
    client = _client(monkeypatch, _guard(tmp_path))
    pid = _register(client)
    client.post(f"/v1/principals/{pid}/confirm")

    bad = {"contact_handle": "ada@example.org", "secret": "wrong-secret"}
    good = {"contact_handle": "ada@example.org", "secret": SECRET}
    for remaining in (2, 1, 0):
        r = client.post("/v1/login", json=bad, headers={"X-Client-Id": "kiosk-1"})
        assert r.status_code == 401
        assert r.json()["details"]["attempts_remaining"] == remaining

    r = client.post("/v1/login", json=good, headers={"X-Client-Id": "kiosk-1"})
    assert r.status_code == 429
    assert r.json()["code"] == "BG_E_TOO_MANY_ATTEMPTS"
    assert r.json()["details"]["retry_after_seconds"] > 0

    # Another client is unaffected.
    r = client.post("/v1/login", json=good, headers={"X-Client-Id": "kiosk-2"})
    assert r.status_code == 200


def _start_session(client, headers):
    r = client.post("/v1/verification/sessions", headers=headers)
    assert r.status_code == 201, r.text
    assert r.json()["state"] == "factor_possession"
    return r.json()["session_id"]


def _pass_possession(client, headers, sid):
    key = Ed25519KeyPair.generate("cred_web_1")
    r = client.post("/v1/credentials", json={"credential_id": "cred_web_1", "public_key_hex": key.public_key_hex},
                    headers=headers)
    assert r.status_code == 201, r.text

    r = client.post(f"/v1/verification/sessions/{sid}/possession/challenge", headers=headers)
    challenge = r.json()
    assert challenge["credential_ids"] == ["cred_web_1"]
    sig = key.sign(bytes.fromhex(challenge["challenge_hex"]))
    r = client.post(
        f"/v1/verification/sessions/{sid}/possession",
        json={"challenge_id": challenge["challenge_id"], "credential_id": "cred_web_1", "signature_hex": sig.hex()},
        headers=headers,
    )
    assert r.status_code == 200, r.text
    return r.json()


def test_full_verification_then_vote(monkeypatch, tmp_path):
    guard = _guard(tmp_path, policy=PolicyConfig(min_verification_factors=3))
    client = _client(monkeypatch, guard)
    _, headers = _login(client)

    r = client.post("/v1/ballots/b1/votes", json={"option": "yes"}, headers=headers)
    assert r.status_code == 403
    assert r.json()["code"] == "BG_E_INSUFFICIENT_VERIFICATION"

    sid = _start_session(client, headers)
    assert _pass_possession(client, headers, sid)["state"] == "factor_likeness"

    r = client.post(f"/v1/verification/sessions/{sid}/likeness", json={"image_b64": JPEG_B64}, headers=headers)
    assert r.status_code == 200, r.text
    assert r.json()["state"] == "factor_document"

    r = client.post(
        f"/v1/verification/sessions/{sid}/document",
        json={"document_number": "1234 5678 9012", "image_b64": JPEG_B64, "content_type": "image/jpeg"},
        headers=headers,
    )
    assert r.status_code == 200, r.text
    assert r.json()["state"] == "complete"

    r = client.post(f"/v1/verification/sessions/{sid}/finalize", headers=headers)
    assert r.status_code == 200
    assert r.json()["fully_verified"] is True
    assert r.json()["passed_count"] == 3

    r = client.post("/v1/ballots/b1/votes", json={"option": "yes"}, headers=headers)
    assert r.status_code == 201, r.text


def test_factor_failures_and_skip(monkeypatch, tmp_path):
    client = _client(monkeypatch, _guard(tmp_path))
    _, headers = _login(client)
    sid = _start_session(client, headers)

    # Out of order.
    r = client.post(f"/v1/verification/sessions/{sid}/likeness", json={"image_b64": JPEG_B64}, headers=headers)
    assert r.status_code == 409
    assert r.json()["code"] == "BG_E_INVALID_STATE"

    _pass_possession(client, headers, sid)
    r = client.post(f"/v1/verification/sessions/{sid}/likeness", json={"image_b64": "not base64!"}, headers=headers)
    assert r.status_code == 400
    assert r.json()["code"] == "BG_E_BAD_REQUEST"

    r = client.post(f"/v1/verification/sessions/{sid}/finalize", headers=headers)
    assert r.status_code == 409

    r = client.post(f"/v1/verification/sessions/{sid}/skip", headers=headers)
    assert r.json()["state"] == "complete"
    assert r.json()["skipped"] == ["likeness", "document"]

    r = client.post(f"/v1/verification/sessions/{sid}/finalize", headers=headers)
    assert r.json()["passed_count"] == 1
    assert r.json()["fully_verified"] is False


def test_bad_possession_signature_is_recorded_as_fail(monkeypatch, tmp_path):
    client = _client(monkeypatch, _guard(tmp_path))
    _, headers = _login(client)
    sid = _start_session(client, headers)

    key = Ed25519KeyPair.generate("cred_web_1")
    client.post("/v1/credentials", json={"credential_id": "cred_web_1", "public_key_hex": key.public_key_hex},
                headers=headers)
    challenge = client.post(f"/v1/verification/sessions/{sid}/possession/challenge", headers=headers).json()
    r = client.post(
        f"/v1/verification/sessions/{sid}/possession",
        json={"challenge_id": challenge["challenge_id"], "credential_id": "cred_web_1",
              "signature_hex": key.sign(b"wrong").hex()},
        headers=headers,
    )
    assert r.status_code == 422
    assert r.json()["code"] == "BG_E_CEREMONY_FAILED"

    state = client.get(f"/v1/verification/sessions/{sid}", headers=headers).json()
    assert state["state"] == "factor_possession"
    assert state["attempts"] == {"possession": 1}


def test_document_number_format_is_checked(monkeypatch, tmp_path):
    client = _client(monkeypatch, _guard(tmp_path))
    _, headers = _login(client)
    sid = _start_session(client, headers)
    _pass_possession(client, headers, sid)
    client.post(f"/v1/verification/sessions/{sid}/likeness", json={"image_b64": JPEG_B64}, headers=headers)

    r = client.post(
        f"/v1/verification/sessions/{sid}/document",
        json={"document_number": "1234", "image_b64": JPEG_B64},
        headers=headers,
    )
    assert r.status_code == 400
    assert r.json()["code"] == "BG_E_INVALID_FORMAT"

    r = client.post(f"/v1/verification/sessions/{sid}/document", json={"document_number": "123456789012"},
                    headers=headers)
    assert r.status_code == 400
    assert r.json()["code"] == "BG_E_MISSING_DOCUMENT"


def test_sessions_are_private_to_their_principal(monkeypatch, tmp_path):
    client = _client(monkeypatch, _guard(tmp_path))
    _, ada = _login(client)
    _, bob = _login(client, "bob@example.org", client_id="kiosk-2")
    sid = _start_session(client, ada)

    r = client.get(f"/v1/verification/sessions/{sid}", headers=bob)
    assert r.status_code == 409
    assert r.json()["code"] == "BG_E_INVALID_SESSION"


def test_security_monitor_reports_rapid_voting(monkeypatch, tmp_path):
    guard = _guard(tmp_path)
    client = _client(monkeypatch, guard)
    pid, headers = _login(client)
    for i in range(4):
        assert client.post(f"/v1/ballots/b{i}/votes", json={"option": "yes"}, headers=headers).status_code == 201

    r = client.get("/v1/security/monitor")
    assert r.status_code == 200
    report = r.json()
    assert report["total_votes"] == 4
    assert [(a["kind"], a["subject"]) for a in report["alerts"]] == [("rapid_voting", pid)]
    assert len(report["new_alerts"]) == 1
    assert guard.audit.entries(kind=LogKind.SUSPICIOUS_ACTIVITY)[0].metadata["subject"] == pid

    assert client.get("/v1/security/monitor").json()["new_alerts"] == []


def test_operator_endpoints_require_token_in_prod(monkeypatch, tmp_path):
    client = _client(monkeypatch, _guard(tmp_path), env="prod")
    pid = _register(client)

    assert client.get("/v1/stats").status_code == 401
    assert client.get("/v1/security/monitor").status_code == 401
    assert client.post(f"/v1/principals/{pid}/confirm").status_code == 401
    assert client.get("/metrics").status_code == 403


def test_operator_token_grants_access_in_prod(monkeypatch, tmp_path):
    monkeypatch.setenv("BG_ENV", "prod")
    monkeypatch.delenv("BG_STATS_REQUIRE_AUTH", raising=False)
    monkeypatch.setenv("BG_STATS_TOKEN", "ops-token")
    client = TestClient(create_app(_guard(tmp_path)))
    pid = _register(client)

    r = client.get("/v1/stats", headers={"Authorization": "Bearer ops-token"})
    assert r.status_code == 200
    assert "votes_cast_total" in r.json()
    assert r.json()["lockdown_active"] is False

    r = client.post(f"/v1/principals/{pid}/confirm", headers={"X-Stats-Token": "ops-token"})
    assert r.status_code == 200
    assert r.json()["verified"] is True

    assert client.get("/v1/stats", headers={"Authorization": "Bearer wrong"}).status_code == 401


def test_stats_open_when_explicitly_disabled(monkeypatch, tmp_path):
    monkeypatch.setenv("BG_ENV", "prod")
    monkeypatch.setenv("BG_STATS_REQUIRE_AUTH", "0")
    client = TestClient(create_app(_guard(tmp_path)))
    assert client.get("/v1/stats").status_code == 200


def test_storage_lockdown_fails_closed(monkeypatch, tmp_path):
    circuit = DbCircuitBreaker(CircuitBreakerConfig(latency_threshold_ms=60000, failure_threshold=1, lockdown_seconds=60))
    client = _client(monkeypatch, _guard(tmp_path, circuit=circuit))
    _, headers = _login(client)

    circuit.record_failure()
    r = client.post("/v1/ballots/b1/votes", json={"option": "yes"}, headers=headers)
    assert r.status_code == 503
    assert r.json()["code"] == "BG_E_LOCKDOWN_ACTIVE"
    assert 1 <= int(r.headers["Retry-After"]) <= 60
    assert r.json()["details"]["retry_after"] == int(r.headers["Retry-After"])
    assert client.get("/v1/health").json()["lockdown_active"] is True


def test_oversized_request_is_rejected(monkeypatch, tmp_path):
    monkeypatch.setenv("BG_MAX_REQUEST_BYTES", "100")
    client = _client(monkeypatch, _guard(tmp_path))
    r = client.post("/v1/principals", json={"display_name": "A" * 200, "contact_handle": "a@x.org", "secret": SECRET})
    assert r.status_code == 413


def test_metrics_endpoint_in_dev(monkeypatch, tmp_path):
    client = _client(monkeypatch, _guard(tmp_path))
    client.get("/v1/health")
    r = client.get("/metrics")
    assert r.status_code == 200
    assert "ballotguard_http_requests_total" in r.text
