"""Tests for the idle-session sweep."""

import asyncio
from datetime import timedelta

import pytest

from authkernel.service.reaper import IdleReaper
from authkernel.storage.models import AuditAction


class TestRunOnce:
    async def test_reaps_only_idle_sessions(self, runtime, user, clock):
        idle = await runtime.sessions.create_session(user.id)
        clock.advance(minutes=5)
        fresh = await runtime.sessions.create_session(user.id)
        clock.advance(minutes=4)
        assert runtime.reaper.run_once() == 1
        assert runtime.store.get_refresh_session(idle.session_id) is None
        assert runtime.store.get_refresh_session(fresh.session_id) is not None

    async def test_closes_paired_log(self, runtime, user, clock):
        await runtime.sessions.create_session(user.id)
        clock.advance(minutes=9)
        runtime.reaper.run_once()
        logs, _ = runtime.sessions.list_session_logs(user.id)
        assert logs[0].is_active is False
        assert logs[0].logout_at == clock()

    async def test_second_run_is_a_no_op(self, runtime, user, clock):
        await runtime.sessions.create_session(user.id)
        clock.advance(minutes=9)
        assert runtime.reaper.run_once() == 1
        audit_count = len(runtime.store.list_audit_logs())
        logs_before, _ = runtime.sessions.list_session_logs(user.id)
        assert runtime.reaper.run_once() == 0
        assert len(runtime.store.list_audit_logs()) == audit_count
        logs_after, _ = runtime.sessions.list_session_logs(user.id)
        assert logs_after == logs_before

    async def test_touch_keeps_session_alive(self, runtime, user, clock):
        pair = await runtime.sessions.create_session(user.id)
        clock.advance(minutes=7)
        assert runtime.auth.authenticate(f"Bearer {pair.access_token}") is not None
        clock.advance(minutes=7)
        assert runtime.reaper.run_once() == 0

    async def test_audits_each_expired_session(self, runtime, user, clock):
        await runtime.sessions.create_session(user.id)
        await runtime.sessions.create_session(user.id)
        clock.advance(minutes=10)
        runtime.reaper.run_once()
        expired = [
            e
            for e in runtime.store.list_audit_logs(user_id=user.id)
            if e.action == AuditAction.SESSION_EXPIRED
        ]
        assert len(expired) == 2

    async def test_failed_log_close_is_retried(self, runtime, user, clock):
        await runtime.sessions.create_session(user.id)
        clock.advance(minutes=10)
        close_logs = runtime.store.close_session_logs

        def _unavailable(token_hashes, at):
            raise RuntimeError("session_log table unavailable")

        runtime.store.close_session_logs = _unavailable
        with pytest.raises(RuntimeError):
            runtime.reaper.run_once()
        assert len(runtime.store.list_refresh_sessions(user.id)) == 1

        runtime.store.close_session_logs = close_logs
        assert runtime.reaper.run_once() == 1
        assert runtime.store.list_refresh_sessions(user.id) == []
        assert runtime.sessions.session_log_stats(user.id)["active"] == 0


class TestBackgroundLoop:
    async def test_failures_do_not_stop_the_loop(self, clock):
        calls = []

        class FlakySessions:
            def expire_idle_sessions(self, cutoff):
                calls.append(cutoff)
                if len(calls) == 1:
                    raise RuntimeError("store unavailable")
                return []

        reaper = IdleReaper(
            FlakySessions(), idle_after=timedelta(minutes=8), interval_seconds=0.01, clock=clock
        )
        reaper.start()
        await asyncio.sleep(0.2)
        await reaper.stop()
        assert len(calls) >= 2

    async def test_stop_without_start(self, runtime):
        await runtime.reaper.stop()
