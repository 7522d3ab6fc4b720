"""
Tests for the replay cache bound and the unlock-code whitelist.
"""

import pytest

from katal.auth import AuthorizationStore
from katal.replay import ReplayCache


def test_replay_cache_remembers_ids():
    cache = ReplayCache(max_events=10)
    cache.record("a", 1.0)

    assert cache.has("a")
    assert "a" in cache
    assert not cache.has("b")


def test_replay_cache_evicts_oldest_timestamp():
    cache = ReplayCache(max_events=3)
    cache.record("mid", 20.0)
    cache.record("old", 10.0)
    cache.record("new", 30.0)
    cache.record("newest", 40.0)

    assert len(cache) == 3
    assert not cache.has("old")
    assert cache.has("mid") and cache.has("new") and cache.has("newest")


def test_replay_cache_never_exceeds_bound():
    cache = ReplayCache(max_events=50)
    for i in range(500):
        cache.record(f"id{i}", float(i))
        assert len(cache) <= 50
    assert cache.has("id499")
    assert not cache.has("id0")


def test_rerecord_keeps_first_seen():
    cache = ReplayCache(max_events=2)
    cache.record("a", 1.0)
    cache.record("b", 2.0)
    cache.record("a", 99.0)  # no refresh
    cache.record("c", 3.0)

    assert not cache.has("a")
    assert cache.has("b") and cache.has("c")


def test_replay_cache_clear_and_validation():
    cache = ReplayCache(max_events=5)
    cache.record("a", 1.0)
    cache.clear()
    assert len(cache) == 0

    with pytest.raises(ValueError):
        ReplayCache(max_events=0)


def test_unlock_with_correct_code():
    store = AuthorizationStore("ABC123")

    assert not store.is_authorized("alice")
    assert store.try_unlock("alice", "ABC123")
    assert store.is_authorized("alice")
    assert store.count() == 1


def test_unlock_is_idempotent_and_wrong_code_never_revokes():
    store = AuthorizationStore("ABC123")
    store.try_unlock("alice", "ABC123")

    assert store.try_unlock("alice", "ABC123")
    assert not store.try_unlock("alice", "wrong")
    assert store.is_authorized("alice")
    assert store.count() == 1


def test_wrong_code_does_not_authorize():
    store = AuthorizationStore("ABC123")

    assert not store.try_unlock("mallory", "abc123")
    assert not store.try_unlock("mallory", "")
    assert not store.is_authorized("mallory")


def test_empty_unlock_code_is_refused():
    with pytest.raises(ValueError):
        AuthorizationStore("")
