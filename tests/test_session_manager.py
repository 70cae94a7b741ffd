"""Tests for session creation, the FIFO cap and session-log bookkeeping."""

import asyncio
from datetime import timedelta

import pytest

from authkernel.service.errors import InvalidCredentials
from authkernel.service.geo import GeoPoint
from authkernel.storage.models import AuditAction


@pytest.fixture
def sessions(runtime):
    return runtime.sessions


async def _create(sessions, user_id, clock, **kwargs):
    pair = await sessions.create_session(user_id, "203.0.113.7", "pytest-agent", **kwargs)
    clock.advance(seconds=1)
    return pair


class TestCreateSession:
    async def test_returns_verifiable_pair(self, runtime, sessions, user, clock):
        pair = await sessions.create_session(user.id, "203.0.113.7", "pytest-agent")
        access = runtime.access_signer.verify(pair.access_token)
        refresh = runtime.refresh_signer.verify(pair.refresh_token)
        assert access["sub"] == refresh["sub"] == user.id
        assert access["sid"] == refresh["sid"] == pair.session_id
        assert pair.refresh_expires_at == clock() + timedelta(days=30)

    async def test_only_hash_is_stored(self, runtime, sessions, user):
        pair = await sessions.create_session(user.id)
        row = runtime.store.get_refresh_session(pair.session_id)
        assert row.token_hash != pair.refresh_token
        assert row.token_hash.startswith("$argon2id$")

    async def test_opens_paired_log(self, runtime, sessions, user):
        pair = await sessions.create_session(
            user.id, "203.0.113.7", "pytest-agent", GeoPoint(52.52, 13.405)
        )
        row = runtime.store.get_refresh_session(pair.session_id)
        log = runtime.store.find_session_log_by_token(row.token_hash)
        assert log is not None
        assert log.is_active
        assert log.ip_address == "203.0.113.7"
        # Geolocation is disabled in tests, so the raw coordinates are kept
        assert log.location == "52.5200, 13.4050"

    async def test_unknown_user(self, sessions):
        with pytest.raises(InvalidCredentials):
            await sessions.create_session("nobody")

    async def test_log_failure_does_not_fail_creation(self, runtime, sessions, user):
        def _broken(log):
            raise RuntimeError("log table unavailable")

        runtime.store.create_session_log = _broken
        pair = await sessions.create_session(user.id)
        assert runtime.store.get_refresh_session(pair.session_id) is not None


class TestSessionCap:
    async def test_oldest_session_evicted(self, runtime, sessions, clock):
        user = runtime.store.create_user("cap@example.com", "hash", max_sessions=2)
        a = await _create(sessions, user.id, clock)
        b = await _create(sessions, user.id, clock)
        c = await _create(sessions, user.id, clock)
        remaining = {row.id for row in runtime.store.list_refresh_sessions(user.id)}
        assert remaining == {b.session_id, c.session_id}
        assert a.session_id not in remaining

    async def test_cap_holds_after_many_logins(self, runtime, sessions, clock):
        user = runtime.store.create_user("many@example.com", "hash", max_sessions=3)
        created = [await _create(sessions, user.id, clock) for _ in range(6)]
        remaining = [row.id for row in runtime.store.list_refresh_sessions(user.id)]
        assert remaining == [pair.session_id for pair in created[-3:]]

    async def test_default_cap_used_when_unset(self, runtime, sessions, clock):
        user = runtime.store.create_user("default@example.com", "hash", max_sessions=None)
        for _ in range(7):
            await _create(sessions, user.id, clock)
        assert len(runtime.store.list_refresh_sessions(user.id)) == 5

    async def test_cap_holds_under_concurrent_logins(self, runtime, sessions):
        user = runtime.store.create_user("burst@example.com", "hash", max_sessions=2)
        pairs = await asyncio.gather(
            *(sessions.create_session(user.id, "203.0.113.7", "pytest-agent") for _ in range(4))
        )
        rows = runtime.store.list_refresh_sessions(user.id)
        assert len(rows) == 2
        assert {row.id for row in rows} <= {pair.session_id for pair in pairs}
        assert sessions.session_log_stats(user.id)["active"] == 2

    async def test_eviction_closes_logs_and_audits(self, runtime, sessions, clock):
        user = runtime.store.create_user("evict@example.com", "hash", max_sessions=1)
        first = await _create(sessions, user.id, clock)
        first_hash = runtime.store.get_refresh_session(first.session_id).token_hash
        await _create(sessions, user.id, clock)
        assert runtime.store.find_session_log_by_token(first_hash) is None
        stats = sessions.session_log_stats(user.id)
        assert stats == {"active": 1, "total": 2}
        actions = [e.action for e in runtime.store.list_audit_logs(user_id=user.id)]
        assert AuditAction.SESSION_EVICTED in actions


class TestEndSession:
    async def test_logout_is_idempotent(self, runtime, sessions, user):
        pair = await sessions.create_session(user.id)
        ended = await sessions.end_session(pair.refresh_token)
        assert ended.id == pair.session_id
        assert runtime.store.get_refresh_session(pair.session_id) is None
        assert await sessions.end_session(pair.refresh_token) is None

    async def test_garbage_token(self, sessions):
        assert await sessions.end_session("not-a-token") is None
        assert await sessions.end_session(None) is None


class TestListingAndRevocation:
    async def test_list_orders_by_last_active(self, sessions, user, clock):
        older = await _create(sessions, user.id, clock)
        newer = await _create(sessions, user.id, clock)
        sessions.touch(older.session_id)
        assert [row.id for row in sessions.list_sessions(user.id)] == [
            older.session_id,
            newer.session_id,
        ]

    async def test_revoke_own_session(self, runtime, sessions, user):
        pair = await sessions.create_session(user.id)
        row = runtime.store.get_refresh_session(pair.session_id)
        assert sessions.revoke_session(user.id, pair.session_id) is True
        assert runtime.store.get_refresh_session(pair.session_id) is None
        logs, _ = sessions.list_session_logs(user.id)
        assert logs[0].session_token == row.token_hash
        assert logs[0].revoked_by == user.id
        assert logs[0].is_active is False

    async def test_cannot_revoke_other_users_session(self, runtime, sessions, user):
        other = runtime.store.create_user("other@example.com", "hash")
        pair = await sessions.create_session(other.id)
        assert sessions.revoke_session(user.id, pair.session_id) is False
        assert runtime.store.get_refresh_session(pair.session_id) is not None

    async def test_revoke_session_log_deletes_refresh_row(self, runtime, sessions, user):
        pair = await sessions.create_session(user.id)
        logs, total = sessions.list_session_logs(user.id)
        assert total == 1
        revoked = sessions.revoke_session_log(user.id, logs[0].id)
        assert revoked.revoked_at is not None
        assert runtime.store.get_refresh_session(pair.session_id) is None

    async def test_session_log_ownership(self, runtime, sessions, user):
        other = runtime.store.create_user("owner@example.com", "hash")
        await sessions.create_session(other.id)
        logs, _ = sessions.list_session_logs(other.id)
        with pytest.raises(PermissionError):
            sessions.get_session_log(user.id, logs[0].id)
        assert sessions.get_session_log(user.id, "missing") is None

    async def test_pagination(self, sessions, user, clock):
        for _ in range(3):
            await _create(sessions, user.id, clock)
        page_one, total = sessions.list_session_logs(user.id, page=1, limit=2)
        page_two, _ = sessions.list_session_logs(user.id, page=2, limit=2)
        assert total == 3
        assert len(page_one) == 2 and len(page_two) == 1
        assert page_one[0].login_at > page_two[0].login_at
