"""Unit tests for the lockout decision function."""

from datetime import timedelta

from conftest import START

from authkernel.service.lockout import AttemptOutcome, LockoutPolicy
from authkernel.storage.models import User


def _user(**kwargs) -> User:
    return User(id="u1", email="u1@example.com", password_hash="x", **kwargs)


class TestFailures:
    def test_failures_below_threshold_do_not_lock(self):
        policy = LockoutPolicy()
        decision = policy.evaluate(_user(failed_login_attempts=3), AttemptOutcome.FAILURE, START)
        assert decision.failed_attempts == 4
        assert decision.locked is False
        assert decision.lockout_until is None

    def test_fifth_failure_locks_for_fifteen_minutes(self):
        policy = LockoutPolicy()
        decision = policy.evaluate(_user(failed_login_attempts=4), AttemptOutcome.FAILURE, START)
        assert decision.failed_attempts == 5
        assert decision.locked is True
        assert decision.newly_locked is True
        assert decision.lockout_until == START + timedelta(minutes=15)

    def test_custom_threshold_and_duration(self):
        policy = LockoutPolicy(threshold=2, duration=timedelta(minutes=1))
        decision = policy.evaluate(_user(failed_login_attempts=1), AttemptOutcome.FAILURE, START)
        assert decision.locked
        assert decision.lockout_until == START + timedelta(minutes=1)

    def test_failure_after_expired_lock_relocks(self):
        """The counter is only reset by a success, so it stays at the threshold."""
        policy = LockoutPolicy()
        user = _user(failed_login_attempts=5, lockout_until=START - timedelta(seconds=1))
        decision = policy.evaluate(user, AttemptOutcome.FAILURE, START)
        assert decision.failed_attempts == 6
        assert decision.newly_locked


class TestPending:
    def test_active_lock_reports_remaining_time(self):
        policy = LockoutPolicy()
        user = _user(failed_login_attempts=5, lockout_until=START + timedelta(seconds=90.2))
        decision = policy.evaluate(user, AttemptOutcome.PENDING, START)
        assert decision.locked is True
        assert decision.retry_after_seconds == 91
        # Pre-checks never consume an attempt
        assert decision.failed_attempts == 5

    def test_expired_lock_is_not_locked(self):
        policy = LockoutPolicy()
        user = _user(failed_login_attempts=5, lockout_until=START)
        assert policy.evaluate(user, AttemptOutcome.PENDING, START).locked is False

    def test_no_lock_set(self):
        assert LockoutPolicy().evaluate(_user(), AttemptOutcome.PENDING, START).locked is False


class TestSuccess:
    def test_success_always_clears(self):
        user = _user(failed_login_attempts=4, lockout_until=START + timedelta(minutes=5))
        decision = LockoutPolicy().evaluate(user, AttemptOutcome.SUCCESS, START)
        assert decision.failed_attempts == 0
        assert decision.lockout_until is None
        assert decision.locked is False


def test_threshold_must_be_positive():
    try:
        LockoutPolicy(threshold=0)
    except ValueError:
        return
    raise AssertionError("threshold of zero should be rejected")
