"""Tests for the best-effort Redis cache wrapper."""

import json
from datetime import timedelta

import pytest

from fakes import FailingRedis

from taroauth.storage.models import CachedIdentity, Session, User
from taroauth.storage.redis_cache import (
    LOGIN_FAILURE_TTL,
    AllEntries,
    AllUserData,
    FastCache,
    SessionInvalidation,
    UserInvalidation,
)


def _identity(username="alice", *, ttl=timedelta(days=7), is_admin=False):
    user = User.new(username, f"{username}@example.com", is_admin=is_admin)
    session = Session.new(user.id, ttl)
    return user, session, CachedIdentity.build(user, session)


@pytest.fixture
def failing_cache(clock):
    return FastCache(client=FailingRedis(clock), prefix="taro_test")


class TestKeys:
    def test_key_layout(self, cache):
        assert cache.key("session_token", "abc") == "taro_test:session_token:abc"

    def test_requires_url_or_client(self):
        with pytest.raises(ValueError):
            FastCache()


class TestSessionEntries:
    async def test_store_and_read_identity(self, cache, fake_redis):
        """All three session keys are written with the seven-day TTL."""
        user, session, identity = _identity()
        assert await cache.store_identity(identity) is True

        token = session.session_token
        for key in (
            cache.key("session_token", token),
            cache.key("user_session", token),
            cache.key("session", session.id),
        ):
            assert await fake_redis.ttl(key) == 7 * 24 * 3600

        loaded = await cache.get_identity(token)
        assert loaded.user.id == user.id
        assert loaded.session.expires_at == session.expires_at
        assert (await cache.get_session(token)).id == session.id

    async def test_cached_projection_has_no_credentials(self, cache, fake_redis):
        user, session, identity = _identity()
        await cache.store_identity(identity)
        raw = fake_redis.data[cache.key("user_session", session.session_token)]
        assert "password_hash" not in raw
        assert "wx_session_key" not in raw

    async def test_corrupt_payload_is_a_miss(self, cache, fake_redis):
        await fake_redis.set(cache.key("user_session", "tok"), "{not json")
        assert await cache.get_identity("tok") is None
        await fake_redis.set(cache.key("user_session", "tok2"), json.dumps({"user": {}}))
        assert await cache.get_identity("tok2") is None

    async def test_delete_session_keys_removes_everything(self, cache, fake_redis):
        _, session, identity = _identity()
        token = session.session_token
        await cache.store_identity(identity)
        await cache.touch_session_access(token)

        assert await cache.delete_session_keys(token) is True
        assert fake_redis.data == {}

    async def test_one_failed_delete_does_not_skip_the_rest(self, cache, fake_redis):
        """Each key is deleted on its own; a failure is reported, not propagated."""
        _, session, identity = _identity()
        token = session.session_token
        await cache.store_identity(identity)
        stuck = cache.key("user_session", token)
        fake_redis.fail_ops = {"delete"}
        fake_redis.fail_keys = {stuck}

        assert await cache.delete_session_keys(token, session.id) is False
        assert list(fake_redis.data) == [stuck]

    async def test_session_access_marker(self, cache, clock):
        await cache.touch_session_access("tok", clock())
        seen = await cache.get_session_access("tok")
        assert seen == clock().replace(microsecond=0)


class TestUserEntries:
    async def test_cache_user_and_username_mapping(self, cache, fake_redis):
        user, _, _ = _identity("bob")
        assert await cache.cache_user(user) is True
        assert await fake_redis.ttl(cache.key("user", user.id)) == 30 * 60
        assert (await cache.get_user(user.id)).username == "bob"
        assert await cache.get_user_id_by_username("bob") == user.id

    async def test_invalidate_user(self, cache):
        user, _, _ = _identity("bob")
        await cache.cache_user(user)
        await cache.invalidate_user(user.id, user.username)
        assert await cache.get_user(user.id) is None
        assert await cache.get_user_id_by_username("bob") is None


class TestCounters:
    async def test_incr_with_ttl_rearms_window(self, cache, fake_redis, clock):
        key = cache.key("login_failures", "alice")
        assert await cache.incr_with_ttl(key, LOGIN_FAILURE_TTL) == 1
        clock.advance(minutes=10)
        assert await cache.incr_with_ttl(key, LOGIN_FAILURE_TTL) == 2
        assert await fake_redis.ttl(key) == 15 * 60
        assert await cache.get_int(key) == 2

    async def test_counter_expires(self, cache, clock):
        key = cache.key("login_failures", "alice")
        await cache.incr_with_ttl(key, LOGIN_FAILURE_TTL)
        clock.advance(minutes=16)
        assert await cache.get_int(key) is None


class TestPurges:
    async def test_purge_user_sessions_leaves_other_users(self, cache):
        """Two sessions for one user go; a third user's session in the same scan stays."""
        alice = User.new("alice", "alice@example.com")
        carol = User.new("carol", "carol@example.com")
        first = Session.new(alice.id, timedelta(days=7))
        second = Session.new(alice.id, timedelta(days=7))
        other = Session.new(carol.id, timedelta(days=7))
        for user, session in ((alice, first), (alice, second), (carol, other)):
            await cache.store_identity(CachedIdentity.build(user, session))

        assert await cache.purge_user_sessions(alice.id) == 2
        assert await cache.get_identity(first.session_token) is None
        assert await cache.get_identity(second.session_token) is None
        assert (await cache.get_identity(other.session_token)).user.id == carol.id

    async def test_purge_expired_sessions(self, cache, clock):
        _, short, short_identity = _identity("alice", ttl=timedelta(hours=1))
        _, long, long_identity = _identity("bob")
        await cache.store_identity(short_identity)
        await cache.store_identity(long_identity)
        clock.advance(hours=2)

        assert await cache.purge_expired_sessions(clock()) == 1
        assert await cache.get_session(short.session_token) is None
        assert await cache.get_session(long.session_token) is not None


class TestInvalidation:
    async def test_user_invalidation(self, cache):
        user, session, identity = _identity()
        await cache.cache_user(user)
        await cache.store_identity(identity)
        removed = await cache.apply_invalidation(UserInvalidation(user.id))
        assert removed == 2
        assert await cache.get_user(user.id) is None
        assert await cache.get_identity(session.session_token) is None

    async def test_session_invalidation(self, cache):
        _, session, identity = _identity()
        await cache.store_identity(identity)
        assert await cache.apply_invalidation(SessionInvalidation(session.session_token)) == 1
        assert await cache.get_session(session.session_token) is None

    async def test_all_user_data_keeps_counters(self, cache):
        user, session, identity = _identity()
        await cache.cache_user(user)
        await cache.store_identity(identity)
        counter = cache.key("login_failures", "alice")
        await cache.incr_with_ttl(counter, LOGIN_FAILURE_TTL)

        await cache.apply_invalidation(AllUserData())
        assert await cache.get_user(user.id) is None
        assert await cache.get_identity(session.session_token) is None
        assert await cache.get_int(counter) == 1

    async def test_all_entries_only_touches_prefix(self, cache, fake_redis):
        user, _, identity = _identity()
        await cache.store_identity(identity)
        await fake_redis.set("other_app:key", "1")

        removed = await cache.apply_invalidation(AllEntries())
        assert removed == 3
        assert list(fake_redis.data) == ["other_app:key"]

    async def test_unknown_request_rejected(self, cache):
        with pytest.raises(TypeError):
            await cache.apply_invalidation("user")


class TestUnavailable:
    async def test_reads_degrade_to_miss(self, failing_cache):
        assert await failing_cache.get_identity("tok") is None
        assert await failing_cache.get_session("tok") is None
        assert await failing_cache.get_user("id") is None
        assert await failing_cache.get_int("k") is None
        assert await failing_cache.scan("*") == []

    async def test_writes_report_failure(self, failing_cache):
        _, _, identity = _identity()
        assert await failing_cache.store_identity(identity) is False
        assert await failing_cache.incr_with_ttl("k", LOGIN_FAILURE_TTL) is None
        assert await failing_cache.delete("k") is False
        assert await failing_cache.delete_session_keys("tok", "sid") is False

    async def test_health(self, cache, failing_cache):
        _, _, identity = _identity()
        await cache.store_identity(identity)
        healthy = await cache.health()
        assert healthy.connected is True
        assert healthy.total_keys == 3

        down = await failing_cache.health()
        assert down.connected is False
        assert down.total_keys == 0
