"""Tests for the per-tenant TTL cache."""

from src.core.cache import TenantCache


class TestTenantCache:
    def test_set_get(self):
        cache = TenantCache(ttl_seconds=60)
        cache.set("t1", "list", [1, 2])
        assert cache.get("t1", "list") == [1, 2]
        assert cache.get("t1", "summary") is None

    def test_invalidate_only_touches_one_tenant(self):
        cache = TenantCache(ttl_seconds=60)
        cache.set("t1", "list", [1])
        cache.set("t1", "summary", {"n": 1})
        cache.set("t2", "list", [2])

        cache.invalidate_tenant("t1")

        assert cache.get("t1", "list") is None
        assert cache.get("t1", "summary") is None
        assert cache.get("t2", "list") == [2]
        assert len(cache) == 1

    def test_expired_entries_are_dropped(self, monkeypatch):
        now = [1000.0]
        monkeypatch.setattr("src.core.cache.time.monotonic", lambda: now[0])
        cache = TenantCache(ttl_seconds=10)
        cache.set("t1", "list", [1])

        now[0] += 9
        assert cache.get("t1", "list") == [1]
        now[0] += 1
        assert cache.get("t1", "list") is None
        assert len(cache) == 0

    def test_zero_ttl_disables_caching(self):
        cache = TenantCache(ttl_seconds=0)
        cache.set("t1", "list", [1])
        assert cache.get("t1", "list") is None

    def test_clear(self):
        cache = TenantCache()
        cache.set("t1", "list", [1])
        cache.clear()
        assert len(cache) == 0
