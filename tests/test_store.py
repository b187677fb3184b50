from datetime import datetime, timedelta, timezone

import pytest

from ballotguard.errors import BG_E_DUPLICATE_CONTACT, BG_E_UNKNOWN_PRINCIPAL, ValidationError
from ballotguard.models import Principal, Role, VoteRecord
from ballotguard.store import REASON_ALREADY_VOTED, REASON_RATE_LIMITED, BallotStore

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def _vote(voter, ballot, minutes=0, origin="10.0.0.1", option="yes"):
    return VoteRecord(voter_id=voter, ballot_id=ballot, option=option, cast_at=T0 + timedelta(minutes=minutes), origin=origin)


def test_principal_roundtrip_and_duplicate_contact(store):
    p = Principal(id="p_1", display_name="Ada", contact_handle="ada@example.org", created_at=T0)
    store.insert_principal(p, "hash")

    got = store.get_principal("p_1")
    assert got == p
    principal, secret_hash = store.get_principal_by_contact("ada@example.org")
    assert principal.id == "p_1"
    assert secret_hash == "hash"

    dup = Principal(id="p_2", display_name="Other", contact_handle="ada@example.org", created_at=T0)
    with pytest.raises(ValidationError) as ei:
        store.insert_principal(dup, "hash")
    assert ei.value.code == BG_E_DUPLICATE_CONTACT
    assert ei.value.http_status == 409


def test_update_unknown_principal_raises(store):
    with pytest.raises(ValidationError) as ei:
        store.update_principal("p_missing", verified=True)
    assert ei.value.code == BG_E_UNKNOWN_PRINCIPAL


def test_update_principal_role_and_verified(store):
    store.insert_principal(Principal(id="p_1", display_name="Ada", contact_handle="a@x", created_at=T0), "h")
    store.update_principal("p_1", verified=True, role=Role.ADMIN)
    got = store.get_principal("p_1")
    assert got.verified is True
    assert got.role is Role.ADMIN


def test_vote_primary_key_rejects_second_vote(store):
    window_start = T0 - timedelta(hours=1)
    assert store.insert_vote_checked(_vote("v1", "b1"), window_start, 5) is None
    assert store.insert_vote_checked(_vote("v1", "b1", minutes=1, option="no"), window_start, 5) == REASON_ALREADY_VOTED

    votes = store.list_votes(ballot_id="b1")
    assert len(votes) == 1
    assert votes[0].option == "yes"


def test_rate_window_counts_votes_strictly_after_window_start(store):
    for i in range(3):
        assert store.insert_vote_checked(_vote("v1", f"b{i}", minutes=i), T0 - timedelta(hours=1), 3) is None

    # Window start equal to the first vote excludes it.
    assert store.vote_limit_reason("v1", "b9", T0, 3) is None
    assert store.vote_limit_reason("v1", "b9", T0 - timedelta(seconds=1), 3) == REASON_RATE_LIMITED
    # Duplicate is reported before the rate limit.
    assert store.vote_limit_reason("v1", "b0", T0 - timedelta(seconds=1), 3) == REASON_ALREADY_VOTED


def test_list_votes_is_time_ordered_and_tally(store):
    ws = T0 - timedelta(hours=1)
    store.insert_vote_checked(_vote("v2", "b1", minutes=5, option="no"), ws, 5)
    store.insert_vote_checked(_vote("v1", "b1", minutes=1), ws, 5)
    store.insert_vote_checked(_vote("v3", "b1", minutes=3), ws, 5)
    store.insert_vote_checked(_vote("v3", "b2", minutes=4), ws, 5)

    assert [v.voter_id for v in store.list_votes(ballot_id="b1")] == ["v1", "v3", "v2"]
    assert [v.ballot_id for v in store.list_votes(voter_id="v3")] == ["b1", "b2"]
    assert store.tally("b1") == {"no": 1, "yes": 2}
    assert store.tally("nope") == {}


def test_votes_survive_reopen(tmp_path):
    path = str(tmp_path / "bg.db")
    BallotStore(path).insert_vote_checked(_vote("v1", "b1"), T0 - timedelta(hours=1), 5)
    reopened = BallotStore(path)
    assert [v.as_dict() for v in reopened.list_votes()] == [_vote("v1", "b1").as_dict()]


def test_verification_outcome_is_stored_once(store):
    assert store.insert_verification_outcome("vs_1", "p_1", 2, False, {"passed_count": 2}, T0)
    assert not store.insert_verification_outcome("vs_1", "p_1", 3, True, {"passed_count": 3}, T0)
    assert store.count_verification_outcomes() == 1

    store.insert_verification_outcome("vs_2", "p_1", 3, True, {}, T0 + timedelta(minutes=1))
    latest = store.latest_verification("p_1")
    assert latest["session_id"] == "vs_2"
    assert latest["passed_count"] == 3
    assert latest["fully_verified"] is True
    assert store.latest_verification("p_other") is None


def test_login_sessions_expire_and_purge(store):
    sid, expires = store.create_login_session("p_1", T0, 60)
    assert expires == T0 + timedelta(seconds=60)
    assert store.resolve_login_session(sid, T0) == "p_1"
    assert store.has_active_session("p_1", T0)

    later = T0 + timedelta(seconds=60)
    assert store.resolve_login_session(sid, later) is None
    assert not store.has_active_session("p_1", later)
    assert store.purge_expired_sessions(later) == 1
    assert store.resolve_login_session("", T0) is None


def test_credential_usage_counter_increments(store):
    from ballotguard.models import CredentialRecord

    store.insert_credential(CredentialRecord("cred_1", "p_1", "ab" * 32, 0, T0))
    assert store.increment_credential_usage("cred_1") == 1
    assert store.increment_credential_usage("cred_1") == 2
    assert store.get_credential("cred_1").usage_counter == 2
    assert store.increment_credential_usage("cred_missing") == 0
