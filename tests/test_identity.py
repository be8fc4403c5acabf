"""Tests for request-time identity resolution."""

import pytest

from taroauth.service.errors import AuthErrorKind, AuthFailure


async def _session_for(store, sessions, username="alice", **kwargs):
    user = await store.create_user(username, f"{username}@example.com", "", **kwargs)
    session = await sessions.create(user.id)
    await sessions.cache_identity(user, session)
    return user, session


class TestResolve:
    async def test_missing_token(self, resolver):
        with pytest.raises(AuthFailure) as excinfo:
            await resolver.resolve(None)
        assert excinfo.value.kind is AuthErrorKind.MISSING
        assert excinfo.value.message == "authentication required"

    async def test_resolve_from_bearer_header(self, store, sessions, resolver):
        user, session = await _session_for(store, sessions)
        identity = await resolver.resolve_request(None, f"Bearer {session.session_token}")
        assert identity.user_id == user.id
        assert identity.token == session.session_token

    async def test_cookie_beats_header(self, store, sessions, resolver):
        alice, alice_session = await _session_for(store, sessions, "alice")
        _, bob_session = await _session_for(store, sessions, "bob")
        identity = await resolver.resolve_request(
            alice_session.session_token, f"Bearer {bob_session.session_token}"
        )
        assert identity.user_id == alice.id


class TestOptional:
    async def test_anonymous_is_none(self, resolver):
        assert await resolver.resolve_optional(None) is None
        assert await resolver.resolve_optional("bogus") is None

    async def test_store_outage_is_none(self, store, sessions, resolver):
        user = await store.create_user("alice", "alice@example.com", "")
        session = await sessions.create(user.id)
        store.down = True
        assert await resolver.resolve_optional(session.session_token) is None


class TestAdmin:
    async def test_admin_allowed(self, store, sessions, resolver):
        user, session = await _session_for(store, sessions, is_admin=True)
        identity = await resolver.resolve_admin(session.session_token)
        assert identity.is_admin is True

    async def test_non_admin_forbidden(self, store, sessions, resolver):
        _, session = await _session_for(store, sessions)
        with pytest.raises(AuthFailure) as excinfo:
            await resolver.resolve_admin(session.session_token)
        assert excinfo.value.status_code == 403
        assert excinfo.value.error_code == "forbidden"

    async def test_admin_requires_authentication_first(self, resolver):
        with pytest.raises(AuthFailure) as excinfo:
            await resolver.resolve_admin(None)
        assert excinfo.value.status_code == 401
