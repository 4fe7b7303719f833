"""Tests for the in-memory credential and revocation stores."""

import threading
from datetime import timedelta

import pytest

from authlane.storage.errors import ConstraintViolation
from authlane.storage.memory import MemoryStore
from authlane.storage.memory_cache import MemoryCache
from authlane.storage.models import RefreshTokenRecord, User, utcnow


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def user(store):
    return store.create_user(User.new("owner@example.com", "digest"))


class TestUsers:
    def test_create_and_fetch(self, store, user):
        assert store.get_user(user.id).email == "owner@example.com"
        assert store.get_user_by_email("OWNER@example.com").id == user.id

    def test_missing_user_returns_none(self, store):
        assert store.get_user("nope") is None
        assert store.get_user_by_email("nobody@example.com") is None

    def test_duplicate_email_is_case_insensitive(self, store, user):
        with pytest.raises(ConstraintViolation):
            store.create_user(User.new("Owner@Example.com", "other"))

    def test_returned_user_is_a_copy(self, store, user):
        fetched = store.get_user(user.id)
        fetched.is_active = False
        assert store.get_user(user.id).is_active is True

    def test_update_last_login(self, store, user):
        stamp = utcnow()
        assert store.update_last_login(user.id, stamp) is True
        assert store.get_user(user.id).last_login_at == stamp
        assert store.update_last_login("missing", stamp) is False

    def test_set_user_active(self, store, user):
        assert store.set_user_active(user.id, False) is True
        assert store.get_user(user.id).is_active is False

    def test_password_digest_not_in_repr(self, user):
        assert "digest" not in repr(user)


class TestRefreshTokens:
    def _record(self, user_id, digest="d1", *, expires_in=timedelta(days=1)):
        return RefreshTokenRecord.new(user_id, digest, utcnow() + expires_in)

    def test_create_and_lookup_by_digest(self, store, user):
        store.create_refresh_token(self._record(user.id))
        record = store.get_refresh_token_by_digest("d1")
        assert record.user_id == user.id
        assert store.get_refresh_token_by_digest("other") is None

    def test_duplicate_digest_rejected(self, store, user):
        store.create_refresh_token(self._record(user.id))
        with pytest.raises(ConstraintViolation):
            store.create_refresh_token(self._record(user.id))

    def test_unknown_owner_rejected(self, store):
        with pytest.raises(ConstraintViolation):
            store.create_refresh_token(self._record("ghost"))

    def test_delete_reports_whether_row_removed(self, store, user):
        store.create_refresh_token(self._record(user.id))
        assert store.delete_refresh_token_by_digest("d1") is True
        assert store.delete_refresh_token_by_digest("d1") is False

    def test_concurrent_deletes_admit_one_winner(self, store, user):
        store.create_refresh_token(self._record(user.id))
        results = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            results.append(store.delete_refresh_token_by_digest("d1"))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert results.count(True) == 1

    def test_sweep_removes_only_expired(self, store, user):
        store.create_refresh_token(self._record(user.id, "live"))
        store.create_refresh_token(self._record(user.id, "dead", expires_in=timedelta(seconds=-5)))
        assert store.delete_expired_refresh_tokens(utcnow()) == 1
        assert store.get_refresh_token_by_digest("live") is not None
        assert store.get_refresh_token_by_digest("dead") is None

    def test_list_for_user(self, store, user):
        store.create_refresh_token(self._record(user.id, "a"))
        store.create_refresh_token(self._record(user.id, "b"))
        assert {rec.token_hash for rec in store.list_refresh_tokens_for_user(user.id)} == {"a", "b"}


class TestOAuthProviders:
    def test_link_lookup_and_delete(self, store, user):
        link = store.create_oauth_provider(user.id, "github", "gh-1", "owner@example.com")
        assert store.get_oauth_provider("github", "gh-1").user_id == user.id
        assert [p.id for p in store.list_oauth_providers_for_user(user.id)] == [link.id]
        assert store.delete_oauth_provider(link.id) is True
        assert store.get_oauth_provider("github", "gh-1") is None

    def test_provider_identity_is_unique(self, store, user):
        store.create_oauth_provider(user.id, "github", "gh-1")
        with pytest.raises(ConstraintViolation):
            store.create_oauth_provider(user.id, "github", "gh-1")
        # Same provider-side id under a different provider is allowed
        store.create_oauth_provider(user.id, "google", "gh-1")


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestMemoryCache:
    async def test_set_with_ttl_expires(self):
        clock = FakeClock()
        cache = MemoryCache(clock=clock)
        await cache.set_with_ttl("blacklist:token:abc", 30)
        assert await cache.exists("blacklist:token:abc") is True
        clock.now += 31
        assert await cache.exists("blacklist:token:abc") is False

    async def test_delete(self):
        cache = MemoryCache()
        await cache.set_with_ttl("k", 30)
        await cache.delete("k")
        assert await cache.exists("k") is False

    async def test_scored_primitives(self):
        cache = MemoryCache(clock=FakeClock())
        for score, member in ((10.0, "a"), (20.0, "b"), (30.0, "c")):
            await cache.add_scored("z", score, member)

        assert await cache.oldest_score("z") == 10.0
        assert await cache.count_scored_above("z", 20.0) == 2
        assert await cache.remove_scored_below("z", 20.0) == 1
        assert await cache.oldest_score("z") == 20.0
        assert await cache.oldest_score("missing") is None

    async def test_expire_key_applies_to_sorted_sets(self):
        clock = FakeClock()
        cache = MemoryCache(clock=clock)
        await cache.add_scored("z", 1.0, "a")
        await cache.expire_key("z", 5)
        clock.now += 6
        assert await cache.count_scored_above("z", 0.0) == 0

    async def test_admit_scored_reports_oldest_when_full(self):
        cache = MemoryCache(clock=FakeClock())
        await cache.admit_scored("z", now=100.0, window_seconds=60, limit=1, member="m1", ttl_seconds=120)
        allowed, count, oldest = await cache.admit_scored(
            "z", now=110.0, window_seconds=60, limit=1, member="m2", ttl_seconds=120
        )
        assert (allowed, count, oldest) == (False, 1, 100.0)

    async def test_writes_sweep_keys_nobody_reads_again(self):
        clock = FakeClock()
        cache = MemoryCache(clock=clock)
        for index in range(100):
            await cache.set_with_ttl(f"blacklist:token:{index}", 1)
        await cache.admit_scored(
            "ratelimit:login:203.0.113.7", now=clock.now, window_seconds=60,
            limit=5, member="m1", ttl_seconds=1,
        )
        clock.now += 3600

        await cache.set_with_ttl("blacklist:token:fresh", 60)

        assert set(cache._values) == {"blacklist:token:fresh"}
        assert cache._scored == {}
        assert set(cache._expires_at) == {"blacklist:token:fresh"}

    async def test_rate_limit_write_also_sweeps(self):
        clock = FakeClock()
        cache = MemoryCache(clock=clock)
        await cache.set_with_ttl("blacklist:token:old", 1)
        clock.now += 10

        await cache.admit_scored(
            "ratelimit:register:198.51.100.9", now=clock.now, window_seconds=60,
            limit=5, member="m1", ttl_seconds=120,
        )

        assert "blacklist:token:old" not in cache._values
        assert "blacklist:token:old" not in cache._expires_at
