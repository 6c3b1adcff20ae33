"""
Tests for the bounded plaintext cache.
"""

from client.cache import PlaintextCache, PLAINTEXT_CACHE_SIZE


def test_get_missing_returns_none():
    cache = PlaintextCache()

    assert cache.get("alice", "c1") is None


def test_put_then_get():
    cache = PlaintextCache()
    cache.put("alice", "c1", "hello")

    assert cache.get("alice", "c1") == "hello"
    assert len(cache) == 1


def test_fifo_eviction_at_capacity():
    cache = PlaintextCache()

    for i in range(PLAINTEXT_CACHE_SIZE + 1):
        cache.put("alice", f"c{i}", f"p{i}")

    assert PLAINTEXT_CACHE_SIZE == 500
    assert len(cache) == 500
    assert cache.get("alice", "c0") is None
    assert all(cache.get("alice", f"c{i}") == f"p{i}" for i in range(1, 501))


def test_reput_refreshes_insertion_order():
    cache = PlaintextCache(max_entries=3)
    cache.put("alice", "a", "1")
    cache.put("alice", "b", "2")
    cache.put("alice", "c", "3")

    cache.put("alice", "a", "1 again")
    cache.put("alice", "d", "4")

    assert cache.get("alice", "b") is None
    assert cache.get("alice", "a") == "1 again"
    assert cache.get("alice", "c") == "3"
    assert cache.get("alice", "d") == "4"


def test_get_does_not_refresh_order():
    cache = PlaintextCache(max_entries=2)
    cache.put("alice", "a", "1")
    cache.put("alice", "b", "2")

    cache.get("alice", "a")
    cache.put("alice", "c", "3")

    assert cache.get("alice", "a") is None


def test_user_switch_clears_cache():
    cache = PlaintextCache()
    cache.put("alice", "same-ciphertext", "secret")

    assert cache.get("bob", "same-ciphertext") is None
    assert len(cache) == 0
    assert cache.active_user_id == "bob"

    # Switching back does not bring old entries back
    assert cache.get("alice", "same-ciphertext") is None


def test_put_for_other_user_clears_previous_entries():
    cache = PlaintextCache()
    cache.put("alice", "c1", "for alice")
    cache.put("bob", "c2", "for bob")

    assert len(cache) == 1
    assert cache.get("bob", "c2") == "for bob"


def test_clear():
    cache = PlaintextCache()
    cache.put("alice", "c1", "x")
    cache.clear()

    assert len(cache) == 0
    assert cache.active_user_id is None
