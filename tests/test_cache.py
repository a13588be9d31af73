"""
Tests for the response cache.
"""

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from sotrade_rpc.core.cache import ResponseCache, canonical_key


class TestCanonicalKey:
    """Test request canonicalization."""

    def test_key_order_irrelevant(self):
        assert canonical_key({"a": 1, "b": {"x": 1, "y": 2}}) == canonical_key(
            {"b": {"y": 2, "x": 1}, "a": 1}
        )

    def test_identity_and_cache_fields_ignored(self):
        a = {"type": "quote", "symbol": "X", "id": "quote--1", "_cache": 30}
        b = {"type": "quote", "symbol": "X", "id": "quote--7", "_cache": 5}
        assert canonical_key(a) == canonical_key(b)

    def test_prefill_ignored(self):
        assert canonical_key({"a": 1, "_prefill": {"x": 1}}) == canonical_key({"a": 1})

    def test_different_payloads_differ(self):
        assert canonical_key({"symbol": "X"}) != canonical_key({"symbol": "Y"})

    def test_request_not_mutated(self):
        request = {"id": "q--1", "_cache": 10, "nested": {"a": 1}}
        canonical_key(request)
        assert request == {"id": "q--1", "_cache": 10, "nested": {"a": 1}}

    def test_stable(self):
        request = {"type": "q", "values": [3, 1, 2]}
        assert canonical_key(request) == canonical_key(dict(request))


class TestResponseCache:
    """Test TTL storage."""

    def test_lookup_fresh(self):
        cache = ResponseCache()
        cache.insert("k", {"v": 1}, ttl=10, now=100.0)
        entry = cache.lookup("k", now=105.0)
        assert entry.response == {"v": 1}
        assert entry.received_at == 100.0
        assert entry.expires_at == 110.0

    def test_lookup_stale(self):
        cache = ResponseCache()
        cache.insert("k", {"v": 1}, ttl=10, now=100.0)
        assert cache.lookup("k", now=110.0) is None

    def test_lookup_with_request_ttl(self):
        cache = ResponseCache()
        cache.insert("k", {"v": 1}, ttl=10, now=100.0)
        assert cache.lookup("k", now=103.0, ttl=2) is None
        assert cache.lookup("k", now=103.0, ttl=5) is not None

    def test_lookup_missing(self):
        assert ResponseCache().lookup("k", now=0) is None

    def test_purge_expired(self):
        cache = ResponseCache()
        cache.insert("old", {}, ttl=1, now=0.0)
        cache.insert("new", {}, ttl=100, now=0.0)
        assert cache.purge_expired(now=50.0) == 1
        assert "old" not in cache
        assert "new" in cache

    def test_clear(self):
        cache = ResponseCache()
        cache.insert("a", {}, ttl=1, now=0.0)
        cache.insert("b", {}, ttl=1, now=0.0)
        cache.clear()
        assert len(cache) == 0

    def test_insert_overwrites(self):
        cache = ResponseCache()
        cache.insert("k", {"v": 1}, ttl=10, now=0.0)
        cache.insert("k", {"v": 2}, ttl=10, now=1.0)
        assert cache.lookup("k", now=2.0).response == {"v": 2}
        assert len(cache) == 1
