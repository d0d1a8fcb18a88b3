"""Tests for the identity-scoped local cache."""

from __future__ import annotations

from datetime import timedelta

import redis

from intake.config import Settings
from intake.state import IdentityScope
from intake.storage import LocalCache
from tests.factories import USER_ID, record_with

U1 = IdentityScope.real(USER_ID)
U2 = IdentityScope.real("user-2")
SEVEN_DAYS_MS = 7 * 24 * 60 * 60 * 1000


class _BrokenRedis:
    """Redis client whose every call fails."""

    def get(self, key):
        raise redis.ConnectionError("down")

    def set(self, key, value, px=None):
        raise redis.ConnectionError("down")

    def delete(self, key):
        raise redis.ConnectionError("down")

    def scan_iter(self, match=None):
        raise redis.ConnectionError("down")


class TestRetention:
    def test_entry_just_inside_window_is_returned(self, cache: LocalCache, clock) -> None:
        cache.store(U1, record_with(1))
        clock.advance(SEVEN_DAYS_MS - 1)

        assert cache.load(U1) is not None

    def test_entry_at_exactly_seven_days_is_expired(self, cache: LocalCache, clock) -> None:
        cache.store(U1, record_with(1))
        clock.advance(SEVEN_DAYS_MS)

        assert cache.load(U1) is None
        assert cache._memory == {}

    def test_custom_retention(self, clock) -> None:
        cache = LocalCache(retention=timedelta(hours=1), clock=clock)
        cache.store(U1, record_with(1))
        clock.advance(60 * 60 * 1000)

        assert cache.load(U1) is None


class TestEntries:
    def test_scopes_do_not_share_entries(self, cache: LocalCache) -> None:
        cache.store(U1, record_with(1))

        assert cache.load(U2) is None

    def test_store_records_metadata(self, cache: LocalCache, clock) -> None:
        entry = cache.store(U1, record_with(1), completed_steps=[1], progress=1 / 7)

        loaded = cache.load(U1)
        assert loaded == entry
        assert loaded.timestamp == clock()
        assert loaded.completed_steps == [1]

    def test_corrupt_entry_is_discarded(self, cache: LocalCache) -> None:
        key = cache.key_for(U1)
        cache._memory[key] = "{not json"

        assert cache.load(U1) is None
        assert key not in cache._memory

    def test_delete(self, cache: LocalCache) -> None:
        cache.store(U1, record_with(1))
        cache.delete(U1)

        assert cache.load(U1) is None

    def test_delete_placeholders_leaves_real_entries(self, cache: LocalCache, clock) -> None:
        cache.store(U1, record_with(1))
        cache._memory["onboarding:placeholder:mock-user-1"] = "{}"
        cache._memory["onboarding:placeholder:anonymous"] = "{}"

        removed = cache.delete_placeholders()

        assert removed == 2
        assert cache.load(U1) is not None

    def test_namespace_prefixes_keys(self, clock) -> None:
        cache = LocalCache(namespace="tenant-a", clock=clock)

        assert cache.key_for(U1) == "tenant-a:user:user-1"
        assert cache.placeholder_prefix == "tenant-a:placeholder:"


class TestRedisFallback:
    def test_redis_errors_fall_back_to_memory(self, clock) -> None:
        cache = LocalCache(_BrokenRedis(), clock=clock)

        cache.store(U1, record_with(1))

        assert cache.load(U1) is not None
        assert cache.delete_placeholders() == 0

    def test_from_settings_without_redis_uses_memory(self) -> None:
        cache = LocalCache.from_settings(Settings(cache_namespace="ns", cache_retention_days=3))

        assert cache._client is None
        assert cache.namespace == "ns"
        assert cache.retention == timedelta(days=3)
