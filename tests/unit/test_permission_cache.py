"""
Unit tests for PermissionCache.
"""

import pytest

from services.permission_cache import PermissionCache

KEY = ('class.update', 'global')
OTHER_KEY = ('class.read', 'global')


@pytest.fixture
def cache(monotonic_clock):
    return PermissionCache(ttl_seconds=60, clock=monotonic_clock)


class TestPermissionCache:

    def test_miss_then_hit(self, cache):
        assert cache.get('user-1', KEY) is None

        cache.set('user-1', KEY, True)

        assert cache.get('user-1', KEY) is True

    def test_denials_are_cached(self, cache):
        cache.set('user-1', KEY, False)

        assert cache.get('user-1', KEY) is False

    def test_entry_expires_after_ttl(self, cache, monotonic_clock):
        cache.set('user-1', KEY, True)

        monotonic_clock.advance(59)
        assert cache.get('user-1', KEY) is True

        monotonic_clock.advance(1)
        assert cache.get('user-1', KEY) is None
        assert len(cache) == 0

    def test_zero_ttl_never_serves_entries(self, monotonic_clock):
        cache = PermissionCache(ttl_seconds=0, clock=monotonic_clock)
        cache.set('user-1', KEY, True)

        assert cache.get('user-1', KEY) is None

    def test_disabled_cache_is_a_no_op(self, monotonic_clock):
        cache = PermissionCache(ttl_seconds=60, enabled=False, clock=monotonic_clock)
        cache.set('user-1', KEY, True)

        assert cache.get('user-1', KEY) is None
        assert len(cache) == 0

    def test_negative_ttl_rejected(self):
        with pytest.raises(ValueError):
            PermissionCache(ttl_seconds=-1)

    def test_invalidate_user_only_drops_that_user(self, cache):
        cache.set('user-1', KEY, True)
        cache.set('user-1', OTHER_KEY, False)
        cache.set('user-2', KEY, True)

        removed = cache.invalidate_user('user-1')

        assert removed == 2
        assert cache.get('user-1', KEY) is None
        assert cache.get('user-2', KEY) is True

    def test_invalidate_unknown_user(self, cache):
        assert cache.invalidate_user('nobody') == 0

    def test_clear(self, cache):
        cache.set('user-1', KEY, True)
        cache.set('user-2', KEY, True)

        cache.clear()

        assert len(cache) == 0

    def test_stats(self, cache):
        cache.get('user-1', KEY)
        cache.set('user-1', KEY, True)
        cache.get('user-1', KEY)
        cache.invalidate_user('user-2')

        stats = cache.stats()

        assert stats.to_dict() == {'hits': 1, 'misses': 1, 'invalidations': 1, 'entries': 1}


class TestGenerations:

    def test_write_with_current_generation(self, cache):
        generation = cache.generation('user-1')

        assert cache.set('user-1', KEY, True, generation=generation) is True
        assert cache.get('user-1', KEY) is True

    def test_write_after_invalidation_is_skipped(self, cache):
        generation = cache.generation('user-1')
        cache.invalidate_user('user-1')

        assert cache.set('user-1', KEY, True, generation=generation) is False
        assert cache.get('user-1', KEY) is None

    def test_write_after_clear_is_skipped(self, cache):
        generation = cache.generation('user-1')
        cache.clear()

        assert cache.set('user-1', KEY, True, generation=generation) is False
        assert len(cache) == 0

    def test_other_users_generation_unaffected(self, cache):
        generation = cache.generation('user-2')
        cache.invalidate_user('user-1')

        assert cache.set('user-2', KEY, True, generation=generation) is True

    def test_generations_are_ordered(self, cache):
        before = cache.generation('user-1')
        cache.invalidate_user('user-1')
        middle = cache.generation('user-1')
        cache.clear()

        assert before < middle < cache.generation('user-1')
