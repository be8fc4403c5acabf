"""Tests for the session lifecycle over store and cache."""

from datetime import timedelta

import pytest

from fakes import FailingRedis

from taroauth.service.errors import AuthErrorKind, AuthFailure
from taroauth.service.sessions import SessionManager
from taroauth.storage.errors import StoreUnavailable
from taroauth.storage.redis_cache import FastCache


async def _user(store, username="alice", **kwargs):
    return await store.create_user(username, f"{username}@example.com", "", **kwargs)


async def _login(sessions, user):
    session = await sessions.create(user.id, user_agent="pytest", ip_address="127.0.0.1")
    await sessions.cache_identity(user, session)
    return session


class TestValidate:
    async def test_cache_hit(self, store, sessions):
        user = await _user(store)
        session = await _login(sessions, user)
        identity = await sessions.validate(session.session_token)
        assert identity.source == "cache"
        assert identity.user_id == user.id

    async def test_cache_hit_records_access(self, store, sessions, cache, clock):
        user = await _user(store)
        session = await _login(sessions, user)
        clock.advance(minutes=5)

        await sessions.validate(session.session_token)

        accessed = await cache.get_session_access(session.session_token)
        assert accessed == clock().replace(microsecond=0)

    async def test_cache_hit_survives_failed_access_write(self, store, sessions, fake_redis):
        user = await _user(store)
        session = await _login(sessions, user)
        fake_redis.fail_ops = {"set"}

        identity = await sessions.validate(session.session_token)

        assert identity.source == "cache"
        assert identity.user_id == user.id

    async def test_cold_cache_matches_warm_cache(self, store, sessions, cache):
        """Resolving through the store gives the same user and admin flag as the cache."""
        user = await _user(store, is_admin=True)
        session = await _login(sessions, user)
        warm = await sessions.validate(session.session_token)

        await cache.delete_session_keys(session.session_token, session.id)
        cold = await sessions.validate(session.session_token)

        assert cold.source == "store"
        assert (cold.user_id, cold.is_admin) == (warm.user_id, warm.is_admin)

    async def test_store_hit_repopulates_cache(self, store, sessions):
        user = await _user(store)
        session = await sessions.create(user.id)
        assert (await sessions.validate(session.session_token)).source == "store"
        assert (await sessions.validate(session.session_token)).source == "cache"

    async def test_unknown_token(self, sessions):
        with pytest.raises(AuthFailure) as excinfo:
            await sessions.validate("no-such-token")
        assert excinfo.value.kind is AuthErrorKind.INVALID
        assert excinfo.value.status_code == 401

    async def test_expired_session(self, store, sessions, clock):
        """Expired reads the same as invalid to clients but keeps its own kind."""
        user = await _user(store)
        session = await _login(sessions, user)
        clock.advance(days=8)

        with pytest.raises(AuthFailure) as excinfo:
            await sessions.validate(session.session_token)
        assert excinfo.value.kind is AuthErrorKind.EXPIRED
        assert excinfo.value.status_code == 401
        assert excinfo.value.message == "invalid or expired session"

    async def test_deactivated_user_rejected_from_stale_cache(self, store, sessions):
        user = await _user(store)
        session = await _login(sessions, user)
        await store.set_user_flags(user.id, is_active=False)
        await sessions.invalidate_all_for_user(user.id)

        with pytest.raises(AuthFailure):
            await sessions.validate(session.session_token)

    async def test_store_down_on_cache_miss(self, store, sessions):
        """A store outage is a server fault, never an authentication failure."""
        user = await _user(store)
        session = await sessions.create(user.id)
        store.down = True

        with pytest.raises(AuthFailure) as excinfo:
            await sessions.validate(session.session_token)
        assert excinfo.value.kind is AuthErrorKind.DATABASE_ERROR
        assert excinfo.value.status_code == 500
        assert excinfo.value.error_code == "server_error"

    async def test_store_down_on_cache_hit(self, store, sessions):
        user = await _user(store)
        session = await _login(sessions, user)
        store.down = True
        assert (await sessions.validate(session.session_token)).source == "cache"

    async def test_cache_down_falls_back_to_store(self, store, clock):
        sessions = SessionManager(store, FastCache(client=FailingRedis(clock)), clock=clock)
        user = await _user(store)
        session = await _login(sessions, user)
        identity = await sessions.validate(session.session_token)
        assert identity.source == "store"
        assert identity.user_id == user.id

    async def test_no_cache_configured(self, store, clock):
        sessions = SessionManager(store, None, clock=clock)
        user = await _user(store)
        session = await _login(sessions, user)
        assert (await sessions.validate(session.session_token)).source == "store"


class TestInvalidate:
    async def test_invalidate_removes_every_trace(self, store, sessions, fake_redis):
        user = await _user(store)
        session = await _login(sessions, user)

        assert await sessions.invalidate(session.session_token) is True
        assert fake_redis.data == {}
        with pytest.raises(AuthFailure) as excinfo:
            await sessions.validate(session.session_token)
        assert excinfo.value.kind is AuthErrorKind.INVALID

    async def test_invalidate_after_row_already_gone(self, store, sessions):
        """Cache keys are cleared even when the row expired and was swept earlier."""
        user = await _user(store)
        session = await _login(sessions, user)
        await store.delete_session(session.session_token)

        assert await sessions.invalidate(session.session_token) is False
        with pytest.raises(AuthFailure) as excinfo:
            await sessions.validate(session.session_token)
        assert excinfo.value.kind is AuthErrorKind.INVALID

    async def test_cache_cleared_when_store_fails(self, store, sessions, fake_redis):
        user = await _user(store)
        session = await _login(sessions, user)
        store.down = True

        with pytest.raises(StoreUnavailable):
            await sessions.invalidate(session.session_token)
        assert fake_redis.data == {}

    async def test_invalidate_all_for_user(self, store, sessions):
        """Both sessions of one user go; another user's session is untouched."""
        alice = await _user(store, "alice")
        carol = await _user(store, "carol")
        first = await _login(sessions, alice)
        second = await _login(sessions, alice)
        other = await _login(sessions, carol)

        assert await sessions.invalidate_all_for_user(alice.id) == 2
        assert await sessions.cache.get_identity(first.session_token) is None
        assert await sessions.cache.get_identity(second.session_token) is None
        assert (await sessions.validate(other.session_token)).source == "cache"

    async def test_revoke_all_for_user(self, store, sessions):
        user = await _user(store)
        first = await _login(sessions, user)
        second = await sessions.create(user.id)

        assert await sessions.revoke_all_for_user(user.id) == 2
        for token in (first.session_token, second.session_token):
            with pytest.raises(AuthFailure):
                await sessions.validate(token)


class TestSweep:
    async def test_sweep_expired_rows(self, store, sessions, clock):
        user = await _user(store)
        await sessions.create(user.id)
        clock.advance(days=8)
        sessions.ttl = timedelta(days=30)
        fresh = await sessions.create(user.id)

        assert await sessions.sweep_expired() == 1
        assert fresh.session_token in store.sessions

    async def test_cleanup_expired_cache(self, store, cache, clock):
        sessions = SessionManager(store, cache, ttl=timedelta(hours=1), clock=clock)
        user = await _user(store)
        await _login(sessions, user)
        clock.advance(hours=2)
        assert await sessions.cleanup_expired_cache() == 1
