from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from app.models.refresh_token import RefreshToken
from app.services.session_errors import (
    FamilyCompromised,
    InvalidCredentials,
    TokenNotFound,
    TokenReuseDetected,
    TokenRevoked,
    TokenStoreError,
)


def test_login_issues_pair_and_new_family(sessions, users, clock):
    pair = sessions.login("alice", "test_password_123")

    assert pair.username == "alice"
    assert pair.remember_me is False
    assert pair.refresh_expires_at == clock.now + timedelta(minutes=25)
    assert sessions.verify_access_token(pair.access_token).subject == "alice"

    record = sessions.store.find_by_token(sessions.codec.hash_token(pair.refresh_token))
    assert record is not None
    assert record.rotation_count == 0
    assert record.token_hash != pair.refresh_token


def test_login_remember_me_extends_refresh_lifetime(sessions, users, clock):
    pair = sessions.login("alice", "test_password_123", remember_me=True)
    assert pair.remember_me is True
    assert pair.refresh_expires_at == clock.now + timedelta(days=30)

    access = sessions.codec.verify(pair.access_token)
    assert access.remember_me is True
    assert access.expires_at == clock.now + timedelta(minutes=15)


@pytest.mark.parametrize(
    "username,password",
    [
        ("alice", "wrong_password"),
        ("nobody", "test_password_123"),
        ("", "test_password_123"),
    ],
)
def test_login_failures_are_indistinguishable(sessions, users, username, password):
    with pytest.raises(InvalidCredentials) as exc_info:
        sessions.login(username, password)
    assert exc_info.value.code == "INVALID_CREDENTIALS"


def test_login_rejects_inactive_user(sessions, users, db_session):
    alice, _ = users
    alice.is_active = False
    db_session.commit()
    with pytest.raises(InvalidCredentials):
        sessions.login("alice", "test_password_123")


def test_refresh_rotates_and_replay_kills_family(sessions, users, clock):
    t0 = sessions.login("alice", "test_password_123")

    clock.advance(seconds=5)
    t1 = sessions.refresh(t0.refresh_token)
    assert t1.refresh_token != t0.refresh_token
    assert sessions.verify_access_token(t1.access_token).subject == "alice"

    clock.advance(seconds=5)
    t2 = sessions.refresh(t1.refresh_token)

    # Attacker replays the stolen first token.
    with pytest.raises(TokenReuseDetected):
        sessions.refresh(t0.refresh_token)
    with pytest.raises(FamilyCompromised):
        sessions.refresh(t2.refresh_token)


def test_refresh_rejects_access_token(sessions, users):
    pair = sessions.login("alice", "test_password_123")
    with pytest.raises(TokenNotFound):
        sessions.refresh(pair.access_token)
    with pytest.raises(TokenNotFound):
        sessions.refresh("")


def test_refresh_for_disabled_user_drops_token(sessions, users, db_session):
    alice, _ = users
    pair = sessions.login("alice", "test_password_123")
    alice.is_active = False
    db_session.commit()

    with pytest.raises(TokenRevoked):
        sessions.refresh(pair.refresh_token)
    assert sessions.store.find_by_token(sessions.codec.hash_token(pair.refresh_token)) is None


def test_logout_is_idempotent(sessions, users):
    pair = sessions.login("alice", "test_password_123")

    assert sessions.logout(pair.refresh_token) is True
    assert sessions.logout(pair.refresh_token) is False
    assert sessions.logout(None) is False

    with pytest.raises(TokenNotFound):
        sessions.refresh(pair.refresh_token)


def test_logout_all_devices_removes_every_family(sessions, users, db_session):
    alice, bob = users
    for _ in range(3):
        sessions.login("alice", "test_password_123")
    bob_pair = sessions.login("bob", "test_password_123")

    assert sessions.session_info(alice.id).active_tokens == 3
    assert sessions.logout_all_devices(alice.id) == 3

    assert db_session.query(RefreshToken).filter(RefreshToken.user_id == alice.id).count() == 0
    assert sessions.session_info(alice.id).active_tokens == 0
    # Other users keep their sessions.
    assert sessions.refresh(bob_pair.refresh_token).username == "bob"


def test_session_info_counts_rotations(sessions, users, clock):
    alice, _ = users
    pair = sessions.login("alice", "test_password_123")
    for _ in range(2):
        clock.advance(seconds=1)
        pair = sessions.refresh(pair.refresh_token)

    info = sessions.session_info(alice.id)
    assert info.active_tokens == 1
    assert info.total_rotations == 0 + 1 + 2


def test_cleanup_and_sweep(sessions, users, clock):
    alice, _ = users
    keep = sessions.login("alice", "test_password_123", remember_me=True)
    stale = sessions.login("alice", "test_password_123")
    rotated = sessions.login("alice", "test_password_123", remember_me=True)
    sessions.refresh(rotated.refresh_token)

    clock.advance(minutes=30)
    result = sessions.sweep_expired_tokens()
    assert result.revoked == 1
    assert result.deleted == 2

    assert sessions.store.find_by_token(sessions.codec.hash_token(stale.refresh_token)) is None
    assert sessions.store.find_by_token(sessions.codec.hash_token(keep.refresh_token)) is not None
    assert sessions.cleanup_expired_tokens() == 0
    assert sessions.session_info(alice.id).active_tokens == 2


def test_verify_access_token_rejects_refresh(sessions, users):
    pair = sessions.login("alice", "test_password_123")
    assert sessions.verify_access_token(pair.refresh_token) is None
    assert sessions.verify_access_token("garbage") is None


def test_user_lookup_outage_is_a_store_error(sessions, users, db_session, monkeypatch):
    def _broken_query(*args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    monkeypatch.setattr(db_session, "query", _broken_query)
    with pytest.raises(TokenStoreError):
        sessions.login("alice", "test_password_123")
