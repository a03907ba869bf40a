from __future__ import annotations

from datetime import timedelta

import pytest

from app.models.refresh_token import RefreshToken
from app.services.token_store import TokenConflictError


def _row(user_id: int, token_hash: str, family: str, now, **kwargs) -> RefreshToken:
    values = dict(
        user_id=user_id,
        token_hash=token_hash,
        token_family=family,
        rotation_count=0,
        created_at=now,
        expires_at=now + timedelta(minutes=25),
    )
    values.update(kwargs)
    return RefreshToken(**values)


def test_save_and_lookups(store, users, clock):
    alice, _ = users
    now = clock()
    store.save(_row(alice.id, "h0", "fam-1", now))
    store.save(_row(alice.id, "h1", "fam-1", now, previous_token_hash="h0", rotation_count=1))
    store.commit()

    assert store.find_by_token("h0").token_family == "fam-1"
    assert store.find_by_token("missing") is None
    assert store.find_by_previous_token("h0").token_hash == "h1"
    assert [t.token_hash for t in store.find_by_family("fam-1")] == ["h0", "h1"]
    assert store.families_for_user(alice.id) == ["fam-1"]
    assert store.count_active_in_family("fam-1", now) == 2


def test_duplicate_successor_is_a_conflict(store, users, clock):
    alice, _ = users
    now = clock()
    store.save(_row(alice.id, "h0", "fam-1", now))
    store.save(_row(alice.id, "h1", "fam-1", now, previous_token_hash="h0"))
    store.commit()

    with pytest.raises(TokenConflictError):
        store.save(_row(alice.id, "h2", "fam-1", now, previous_token_hash="h0"))
    store.rollback()
    assert store.find_by_token("h2") is None


def test_revoke_if_active_only_flips_once(store, users, clock):
    alice, _ = users
    now = clock()
    row = store.save(_row(alice.id, "h0", "fam-1", now))
    store.commit()

    assert store.revoke_if_active(row.id, now) is True
    assert store.revoke_if_active(row.id, now) is False
    store.commit()
    assert store.find_by_token("h0").is_revoked is True


def test_revoke_all_in_family_leaves_other_families(store, users, clock):
    alice, _ = users
    now = clock()
    store.save(_row(alice.id, "a0", "fam-a", now))
    store.save(_row(alice.id, "a1", "fam-a", now, previous_token_hash="a0"))
    store.save(_row(alice.id, "b0", "fam-b", now))
    store.commit()

    assert store.revoke_all_in_family("fam-a", now) == 2
    store.commit()

    assert store.family_flagged_for_reuse("fam-a") is True
    assert store.family_flagged_for_reuse("fam-b") is False
    assert store.find_by_token("b0").is_revoked is False
    assert store.count_active_for_user(alice.id, now) == 1


def test_expiry_sweep_queries(store, users, clock):
    alice, _ = users
    now = clock()
    store.save(_row(alice.id, "old", "fam-1", now - timedelta(hours=1), expires_at=now - timedelta(minutes=1)))
    store.save(_row(alice.id, "live", "fam-2", now))
    store.save(_row(alice.id, "gone", "fam-3", now, is_revoked=True, revoked_at=now))
    store.commit()

    assert store.revoke_expired(now) == 1
    assert store.delete_expired_or_revoked(now) == 2
    store.commit()

    assert store.find_by_token("old") is None
    assert store.find_by_token("gone") is None
    assert store.find_by_token("live") is not None


def test_monitoring_queries(store, users, clock):
    alice, bob = users
    now = clock()
    store.save(_row(alice.id, "a0", "fam-a", now, rotation_count=95))
    store.save(_row(alice.id, "a1", "fam-a", now, rotation_count=3))
    store.save(_row(bob.id, "b0", "fam-b", now, rotation_count=2))
    store.commit()

    assert [t.token_hash for t in store.find_high_rotation_count(90)] == ["a0"]
    assert store.total_rotation_count_for_user(alice.id) == 98
    assert store.total_rotation_count_for_user(9999) == 0
    assert store.families_with_multiple_active(now) == [("fam-a", 2)]

    store.revoke_all_in_family("fam-b", now)
    store.commit()
    incidents = store.find_revoked_for_reuse(now - timedelta(hours=1))
    assert [t.token_hash for t in incidents] == ["b0"]
    assert store.find_revoked_for_reuse(now + timedelta(minutes=1)) == []


def test_delete_by_user(store, users, clock):
    alice, bob = users
    now = clock()
    store.save(_row(alice.id, "a0", "fam-a", now))
    store.save(_row(alice.id, "a1", "fam-b", now))
    store.save(_row(bob.id, "b0", "fam-c", now))
    store.commit()

    assert store.delete_by_user(alice.id) == 2
    store.commit()
    assert store.count_active_for_user(alice.id, now) == 0
    assert store.count_active_for_user(bob.id, now) == 1
