"""Redis revocation markers over an in-process fake client."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from tenantauth.service.sessions import SessionService
from tenantauth.storage.models import User
from tenantauth.storage.redis_cache import SyncRedisCache, _SyncClientAdapter


class FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.ops = []

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self.ops.append((name, args, kwargs))
            return self

        return queue

    def execute(self):
        return [getattr(self.redis, name)(*args, **kwargs) for name, args, kwargs in self.ops]


class FakeRedis:
    """Just enough of redis.Redis for the cache; TTLs are recorded, not enforced."""

    def __init__(self):
        self.values = {}
        self.sets = {}
        self.ttls = {}

    def get(self, key):
        return self.values.get(key)

    def set(self, key, value, ex=None):
        self.values[key] = value
        self.ttls[key] = ex
        return True

    def delete(self, key):
        return int(self.values.pop(key, None) is not None)

    def exists(self, key):
        return int(key in self.values)

    def sadd(self, key, member):
        self.sets.setdefault(key, set()).add(member)

    def srem(self, key, member):
        self.sets.get(key, set()).discard(member)

    def smembers(self, key):
        return set(self.sets.get(key, set()))

    def expire(self, key, ttl):
        self.ttls[key] = ttl

    def pipeline(self):
        return FakePipeline(self)

    def close(self):
        pass


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cache(fake_redis):
    cache = SyncRedisCache.__new__(SyncRedisCache)
    cache.redis_url = "redis://fake"
    cache._sync_client = fake_redis
    cache.client = _SyncClientAdapter(fake_redis)
    return cache


class TestRedisCache:
    async def test_session_revocation_marker(self, cache, fake_redis):
        expires = datetime.now(timezone.utc) + timedelta(hours=1)
        await cache.cache_session("s1", "u1", expires)
        assert fake_redis.values["auth:session:s1"] == "u1"
        assert not await cache.is_session_revoked("s1")

        await cache.mark_session_revoked("s1", 0)
        assert await cache.is_session_revoked("s1")
        assert "auth:session:s1" not in fake_redis.values
        assert fake_redis.ttls["auth:session:revoked:s1"] == 1

    async def test_revoke_user_sessions_keeps_current(self, cache):
        expires = datetime.now(timezone.utc) + timedelta(hours=1)
        for sid in ("keep", "drop-1", "drop-2"):
            await cache.cache_session(sid, "u1", expires)
        assert await cache.revoke_user_sessions("u1", 60, except_session_id="keep") == 2
        assert not await cache.is_session_revoked("keep")
        assert await cache.is_session_revoked("drop-1")
        assert await cache.revoke_user_sessions("nobody", 60) == 0

    async def test_refresh_marker(self, cache):
        assert not await cache.is_refresh_revoked("abc")
        await cache.mark_refresh_revoked("abc", 30)
        assert await cache.is_refresh_revoked("abc")

    async def test_activity_round_trip_and_garbage(self, cache, fake_redis):
        when = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        await cache.update_session_activity("s1", when)
        assert await cache.get_session_activity("s1") == when
        fake_redis.values["session:activity:s2"] = "not-a-date"
        assert await cache.get_session_activity("s2") is None

    def test_ttl_is_clamped(self):
        past = datetime.now(timezone.utc) - timedelta(minutes=5)
        assert SyncRedisCache._ttl_seconds(past) == 1
        naive_future = datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(hours=1)
        assert 3500 < SyncRedisCache._ttl_seconds(naive_future) <= 3600


class TestSessionsWithCache:
    async def test_cache_marker_overrides_live_store_row(self, cache, memory_store, config):
        user = memory_store.create_user(
            User(id=str(uuid.uuid4()), email="c@example.com", password_hash="h")
        )
        sessions = SessionService(memory_store, config, cache)
        sess = await sessions.create_session(user.id)
        assert await sessions.is_session_valid(user.id, sess.id)

        await cache.mark_session_revoked(sess.id, 60)
        assert not memory_store.get_session(sess.id).revoked
        assert not await sessions.is_session_valid(user.id, sess.id)
