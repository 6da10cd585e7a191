"""Tests for two-phase retry coordination."""

import threading
import time
import unittest
from unittest.mock import MagicMock

import pytest

from dropcatch import (
    AcquisitionAttempt,
    AcquisitionCancelledError,
    AttemptOutcome,
    CancellationScope,
    ClientLatchedError,
    DeadlineExceededError,
    RemoteOperationError,
    RetryConfig,
    RetryCoordinator,
    RetryPhase,
    RetryPolicy,
    RetryState,
)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class InstantScope(CancellationScope):
    """Scope whose sleep advances a fake clock instead of blocking."""

    def __init__(self, timeout: float, clock: FakeClock):
        super().__init__(timeout, clock=clock)
        self.fake_clock = clock
        self.sleeps: list[float] = []

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(min(seconds, self.remaining()))
        if seconds >= self.remaining():
            self.fake_clock.now = self._deadline
        else:
            self.fake_clock.advance(seconds)


def make_attempt(side_effect) -> MagicMock:
    attempt = MagicMock(spec=AcquisitionAttempt)
    attempt.attempt.side_effect = side_effect
    return attempt


# =============================================================================
# Policy
# =============================================================================


class TestRetryPolicy(unittest.TestCase):

    def test_defaults(self):
        policy = RetryPolicy()
        self.assertEqual(policy.fast_retry_count, 3)
        self.assertEqual(policy.fast_retry_interval, 0.1)
        self.assertEqual(policy.initial_backoff, 1.0)
        self.assertEqual(policy.max_backoff, 300.0)
        self.assertEqual(policy.window, 3600.0)

    def test_delay_for_fast_then_doubling_then_capped(self):
        policy = RetryPolicy(fast_retry_count=3, fast_retry_interval=0.1, initial_backoff=1.0, max_backoff=8.0)
        delays = [policy.delay_for(n) for n in range(1, 10)]
        self.assertEqual(delays, [0.1, 0.1, 0.1, 1.0, 2.0, 4.0, 8.0, 8.0, 8.0])

    def test_delay_for_huge_attempt_number_stays_at_cap(self):
        policy = RetryPolicy(max_backoff=300.0)
        self.assertEqual(policy.delay_for(10_000), 300.0)

    def test_zero_fast_retries_starts_in_backoff(self):
        policy = RetryPolicy(fast_retry_count=0, initial_backoff=2.0, max_backoff=10.0)
        self.assertEqual([policy.delay_for(n) for n in range(1, 5)], [2.0, 4.0, 8.0, 10.0])

    def test_invalid_values_are_rejected(self):
        with self.assertRaises(AssertionError):
            RetryPolicy(fast_retry_count=-1)
        with self.assertRaises(AssertionError):
            RetryPolicy(initial_backoff=0)
        with self.assertRaises(AssertionError):
            RetryPolicy(initial_backoff=10.0, max_backoff=5.0)
        with self.assertRaises(AssertionError):
            RetryPolicy(window=0)

    def test_from_config(self):
        config = RetryConfig(fast_retry_count=5, fast_retry_interval=0.2, initial_backoff=2.0, max_backoff=60.0, window=900.0)
        policy = RetryPolicy.from_config(config)
        self.assertEqual(policy, RetryPolicy(5, 0.2, 2.0, 60.0, 900.0))


class TestRetryState(unittest.TestCase):

    def test_next_delay_matches_policy_closed_form(self):
        policy = RetryPolicy(fast_retry_count=2, fast_retry_interval=0.5, initial_backoff=1.0, max_backoff=4.0)
        state = RetryState()
        delays = []
        for _ in range(7):
            state.start_attempt()
            delays.append(state.next_delay(policy))

        self.assertEqual(delays, [0.5, 0.5, 1.0, 2.0, 4.0, 4.0, 4.0])
        self.assertEqual(delays, [policy.delay_for(n) for n in range(1, 8)])

    def test_phase_moves_to_backoff_after_fast_retries(self):
        policy = RetryPolicy(fast_retry_count=1)
        state = RetryState()

        state.start_attempt()
        state.next_delay(policy)
        self.assertEqual(state.phase, RetryPhase.FAST_RETRY)

        state.start_attempt()
        state.next_delay(policy)
        self.assertEqual(state.phase, RetryPhase.BACKOFF)

    def test_terminal_phases_cannot_be_left(self):
        state = RetryState()
        state.transition_to(RetryPhase.SUCCESS)

        with self.assertRaises(AssertionError):
            state.transition_to(RetryPhase.BACKOFF)
        with self.assertRaises(AssertionError):
            state.start_attempt()

    def test_backoff_cannot_return_to_fast_retry(self):
        state = RetryState(phase=RetryPhase.BACKOFF)
        with self.assertRaises(AssertionError):
            state.transition_to(RetryPhase.FAST_RETRY)

    def test_is_terminal(self):
        self.assertTrue(RetryPhase.SUCCESS.is_terminal())
        self.assertTrue(RetryPhase.ABANDONED.is_terminal())
        self.assertFalse(RetryPhase.FAST_RETRY.is_terminal())
        self.assertFalse(RetryPhase.BACKOFF.is_terminal())


# =============================================================================
# Cancellation scope
# =============================================================================


class TestCancellationScope(unittest.TestCase):

    def test_remaining_and_is_done_follow_the_clock(self):
        clock = FakeClock(start=0.0)
        scope = CancellationScope(timeout=10.0, clock=clock)

        self.assertEqual(scope.remaining(), 10.0)
        self.assertFalse(scope.is_done())

        clock.advance(10.0)
        self.assertEqual(scope.remaining(), 0.0)
        self.assertTrue(scope.is_done())

    def test_error_is_deadline_when_expired(self):
        clock = FakeClock(start=0.0)
        scope = CancellationScope(timeout=5.0, clock=clock)
        clock.advance(5.0)
        last = RemoteOperationError("orderDomain", "DOMAIN_OCCUPIED")

        error = scope.error(last)

        self.assertIsInstance(error, DeadlineExceededError)
        self.assertIsInstance(error, TimeoutError)
        self.assertIs(error.last_exception, last)

    def test_error_is_cancellation_when_cancelled(self):
        scope = CancellationScope(timeout=60.0)
        scope.cancel("shutdown")

        error = scope.error()

        self.assertIsInstance(error, AcquisitionCancelledError)
        self.assertEqual(error.reason, "shutdown")
        self.assertTrue(scope.is_done())

    def test_cancel_wakes_up_a_sleeping_worker(self):
        scope = CancellationScope(timeout=60.0)
        threading.Timer(0.05, scope.cancel).start()

        start = time.monotonic()
        scope.sleep(10.0)

        self.assertLess(time.monotonic() - start, 5.0)
        self.assertTrue(scope.cancelled)

    def test_sleep_never_exceeds_deadline(self):
        scope = CancellationScope(timeout=0.05)

        start = time.monotonic()
        scope.sleep(10.0)

        self.assertLess(time.monotonic() - start, 5.0)


# =============================================================================
# Coordinator
# =============================================================================


class TestRetryCoordinator:

    def test_requires_attempt(self):
        with pytest.raises(AssertionError):
            RetryCoordinator(attempt=None)  # type: ignore

    def test_success_on_first_attempt(self):
        clock = FakeClock()
        attempt = make_attempt(side_effect=None)
        scope = InstantScope(60.0, clock)

        result = RetryCoordinator(attempt, clock=clock).run("a.se", scope)

        assert result.success is True
        assert result.error is None
        assert result.attempts == 1
        assert scope.sleeps == []

    def test_success_stops_further_attempts(self):
        clock = FakeClock()
        occupied = RemoteOperationError("orderDomain", "DOMAIN_OCCUPIED")
        attempt = make_attempt(side_effect=[occupied, occupied, None])
        scope = InstantScope(60.0, clock)

        result = RetryCoordinator(attempt, clock=clock).run("a.se", scope)

        assert result.success is True
        assert result.attempts == 3
        assert attempt.attempt.call_count == 3
        assert scope.sleeps == [0.1, 0.1]

    def test_delays_follow_two_phase_schedule_until_window_expires(self):
        clock = FakeClock()
        attempt = make_attempt(side_effect=RemoteOperationError("orderDomain", "DOMAIN_OCCUPIED"))
        policy = RetryPolicy(fast_retry_count=3, fast_retry_interval=0.1, initial_backoff=1.0, max_backoff=8.0, window=30.0)
        scope = InstantScope(30.0, clock)

        result = RetryCoordinator(attempt, policy=policy, clock=clock).run("a.se", scope)

        assert scope.sleeps[:8] == pytest.approx([0.1, 0.1, 0.1, 1.0, 2.0, 4.0, 8.0, 8.0])
        assert scope.sleeps[8] == pytest.approx(30.0 - 23.3)
        assert result.success is False
        assert result.attempts == 9
        assert isinstance(result.error, DeadlineExceededError)
        assert isinstance(result.error.last_exception, RemoteOperationError)

    def test_time_spent_in_attempt_is_deducted_from_delay(self):
        clock = FakeClock()
        calls = {"n": 0}

        def slow_failure(target):
            calls["n"] += 1
            clock.advance(0.04)
            if calls["n"] == 1:
                raise RemoteOperationError("orderDomain", "DOMAIN_OCCUPIED")

        scope = InstantScope(60.0, clock)
        RetryCoordinator(make_attempt(slow_failure), clock=clock).run("a.se", scope)

        assert scope.sleeps == [pytest.approx(0.06)]

    def test_attempt_longer_than_delay_sleeps_zero(self):
        clock = FakeClock()
        calls = {"n": 0}

        def very_slow_failure(target):
            calls["n"] += 1
            clock.advance(2.0)
            if calls["n"] == 1:
                raise RemoteOperationError("orderDomain", "DOMAIN_OCCUPIED")

        scope = InstantScope(60.0, clock)
        RetryCoordinator(make_attempt(very_slow_failure), clock=clock).run("a.se", scope)

        assert scope.sleeps == [0.0]

    def test_done_scope_yields_failure_without_attempts(self):
        scope = CancellationScope(timeout=60.0)
        scope.cancel("stopped")
        attempt = make_attempt(side_effect=None)

        result = RetryCoordinator(attempt).run("a.se", scope)

        assert result.success is False
        assert result.attempts == 0
        assert isinstance(result.error, AcquisitionCancelledError)
        attempt.attempt.assert_not_called()

    def test_fatal_errors_keep_the_normal_cadence(self):
        clock = FakeClock()
        attempt = make_attempt(side_effect=ClientLatchedError("AUTH_ERROR"))
        listener = MagicMock()
        policy = RetryPolicy(fast_retry_count=1, fast_retry_interval=0.1, initial_backoff=1.0, max_backoff=1.0, window=3.0)
        scope = InstantScope(3.0, clock)

        result = RetryCoordinator(attempt, policy=policy, listeners=[listener], clock=clock).run("a.se", scope)

        assert result.success is False
        assert isinstance(result.error.last_exception, ClientLatchedError)
        assert scope.sleeps[:3] == pytest.approx([0.1, 1.0, 1.0])
        outcomes = {c.kwargs["record"].outcome for c in listener.on_attempt_end.call_args_list}
        assert outcomes == {AttemptOutcome.FATAL_FAILURE}

    def test_listeners_receive_attempt_events(self):
        clock = FakeClock()
        attempt = make_attempt(side_effect=[RemoteOperationError("orderDomain", "DOMAIN_OCCUPIED"), None])
        listener = MagicMock()
        scope = InstantScope(60.0, clock)

        RetryCoordinator(attempt, listeners=[listener], clock=clock).run("a.se", scope)

        starts = [c.kwargs for c in listener.on_attempt_start.call_args_list]
        assert starts == [
            {"target": "a.se", "attempt_number": 1},
            {"target": "a.se", "attempt_number": 2},
        ]
        records = [c.kwargs["record"] for c in listener.on_attempt_end.call_args_list]
        assert [r.outcome for r in records] == [AttemptOutcome.RETRYABLE_FAILURE, AttemptOutcome.SUCCESS]
        assert records[1].succeeded is True
