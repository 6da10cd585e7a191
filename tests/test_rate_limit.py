"""Tests for the rate-limited, fail-fast client."""

import threading
from typing import Any
from unittest.mock import MagicMock

import pytest

from dropcatch import (
    AuthoritativeRejectionError,
    ClientLatchedError,
    ClientState,
    MetricsListener,
    QuotaExceededError,
    RateLimitedClient,
    RemoteOperationError,
    RpcTransport,
    TransportError,
)
from dropcatch._retry import RetryableError


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingTransport(RpcTransport):
    """Transport that records calls and replies with a fixed value or raises."""

    def __init__(self, reply: Any = "OK", error: Exception | None = None):
        self.reply = reply
        self.error = error
        self.calls: list[tuple[str, list[Any]]] = []
        self._lock = threading.Lock()

    def call(self, method: str, params: list[Any]) -> Any:
        with self._lock:
            self.calls.append((method, params))
        if self.error is not None:
            raise self.error
        return self.reply


# =============================================================================
# Exception Hierarchy Tests
# =============================================================================


class TestExceptionHierarchy:
    """Tests for client exception hierarchy."""

    def test_quota_exceeded_error_is_retryable(self):
        assert issubclass(QuotaExceededError, RetryableError)

    def test_client_latched_error_is_not_retryable(self):
        assert not issubclass(ClientLatchedError, RetryableError)

    def test_quota_exceeded_error_exposes_attributes(self):
        error = QuotaExceededError(calls_this_hour=60, quota=60, resets_in=12.5)

        assert error.calls_this_hour == 60
        assert error.quota == 60
        assert error.resets_in == 12.5
        assert "60 calls per hour" in str(error)

    def test_client_latched_error_exposes_reason(self):
        error = ClientLatchedError("AUTH_ERROR")

        assert error.reason == "AUTH_ERROR"
        assert "AUTH_ERROR" in str(error)


# =============================================================================
# Initialization Tests
# =============================================================================


class TestInit:

    def test_requires_transport(self):
        with pytest.raises(AssertionError, match="Transport is required"):
            RateLimitedClient(transport=None)  # type: ignore

    def test_requires_positive_quota(self):
        with pytest.raises(AssertionError, match="hourly_quota"):
            RateLimitedClient(transport=RecordingTransport(), hourly_quota=0)

    def test_initial_state(self):
        clock = FakeClock(start=50.0)
        client = RateLimitedClient(transport=RecordingTransport(), clock=clock)

        assert client.state == ClientState(calls_this_hour=0, hour_window_start=50.0)
        assert client.is_latched is False
        assert client.calls_this_hour == 0


# =============================================================================
# Quota Tests
# =============================================================================


class TestQuota:

    def test_invoke_forwards_method_and_params_to_transport(self):
        transport = RecordingTransport(reply={"domain": "example.se"})
        client = RateLimitedClient(transport=transport)

        reply = client.invoke("getDomain", "example.se")

        assert reply == {"domain": "example.se"}
        assert transport.calls == [("getDomain", ["example.se"])]

    def test_each_call_increments_counter(self):
        client = RateLimitedClient(transport=RecordingTransport())

        client.invoke("orderDomain", "a.se", True)
        client.invoke("getDomain", "a.se")

        assert client.calls_this_hour == 2

    def test_call_over_quota_is_refused_without_reaching_transport(self):
        transport = RecordingTransport()
        client = RateLimitedClient(transport=transport, hourly_quota=2, clock=FakeClock())

        client.invoke("getDomain", "a.se")
        client.invoke("getDomain", "a.se")
        with pytest.raises(QuotaExceededError) as exc_info:
            client.invoke("getDomain", "a.se")

        assert len(transport.calls) == 2
        assert client.calls_this_hour == 2
        assert exc_info.value.quota == 2

    def test_counter_never_exceeds_quota_after_repeated_refusals(self):
        client = RateLimitedClient(transport=RecordingTransport(), hourly_quota=1, clock=FakeClock())
        client.invoke("getDomain", "a.se")

        for _ in range(5):
            with pytest.raises(QuotaExceededError):
                client.invoke("getDomain", "a.se")

        assert client.calls_this_hour == 1

    def test_resets_in_reports_time_until_window_rolls_over(self):
        clock = FakeClock(start=0.0)
        client = RateLimitedClient(transport=RecordingTransport(), hourly_quota=1, clock=clock)
        client.invoke("getDomain", "a.se")
        clock.advance(600)

        with pytest.raises(QuotaExceededError) as exc_info:
            client.invoke("getDomain", "a.se")

        assert exc_info.value.resets_in == pytest.approx(3000.0)

    def test_window_rollover_resets_counter_and_window_start_together(self):
        clock = FakeClock(start=0.0)
        client = RateLimitedClient(transport=RecordingTransport(), hourly_quota=2, clock=clock)
        client.invoke("getDomain", "a.se")
        client.invoke("getDomain", "a.se")

        clock.advance(3600)
        client.invoke("getDomain", "a.se")

        assert client.state == ClientState(calls_this_hour=1, hour_window_start=3600.0)

    def test_no_reset_before_window_elapses(self):
        clock = FakeClock(start=0.0)
        client = RateLimitedClient(transport=RecordingTransport(), hourly_quota=1, clock=clock)
        client.invoke("getDomain", "a.se")

        clock.advance(3599.9)
        with pytest.raises(QuotaExceededError):
            client.invoke("getDomain", "a.se")

    def test_failed_transport_call_still_counts(self):
        client = RateLimitedClient(
            transport=RecordingTransport(error=TransportError("connection reset")),
            clock=FakeClock(),
        )

        with pytest.raises(TransportError):
            client.invoke("orderDomain", "a.se", True)

        assert client.calls_this_hour == 1

    def test_listeners_are_notified_of_reset_and_refusal(self):
        clock = FakeClock(start=0.0)
        metrics = MetricsListener()
        client = RateLimitedClient(
            transport=RecordingTransport(), hourly_quota=1, listeners=[metrics], clock=clock,
        )
        client.invoke("getDomain", "a.se")
        with pytest.raises(QuotaExceededError):
            client.invoke("getDomain", "a.se")
        clock.advance(3600)
        client.invoke("getDomain", "a.se")

        assert metrics.quota_exceeded == 1
        assert metrics.quota_resets == 1


# =============================================================================
# Latch Tests
# =============================================================================


class TestLatch:

    def test_authoritative_rejection_latches_the_client(self):
        transport = RecordingTransport(error=AuthoritativeRejectionError("orderDomain", "AUTH_ERROR"))
        client = RateLimitedClient(transport=transport, clock=FakeClock())

        with pytest.raises(AuthoritativeRejectionError):
            client.invoke("orderDomain", "a.se", True)

        assert client.is_latched is True
        assert client.state.latch_reason == "AUTH_ERROR"

    def test_latched_client_makes_no_further_remote_calls(self):
        transport = RecordingTransport(error=AuthoritativeRejectionError("orderDomain", "RATE_LIMITED"))
        client = RateLimitedClient(transport=transport, clock=FakeClock())
        with pytest.raises(AuthoritativeRejectionError):
            client.invoke("orderDomain", "a.se", True)

        transport.error = None
        with pytest.raises(ClientLatchedError) as exc_info:
            client.invoke("getDomain", "a.se")

        assert len(transport.calls) == 1
        assert exc_info.value.reason == "RATE_LIMITED"

    def test_latch_survives_window_rollover(self):
        clock = FakeClock(start=0.0)
        transport = RecordingTransport(error=AuthoritativeRejectionError("orderDomain", "HTTP 429", 429))
        client = RateLimitedClient(transport=transport, clock=clock)
        with pytest.raises(AuthoritativeRejectionError):
            client.invoke("orderDomain", "a.se", True)

        clock.advance(7200)
        transport.error = None
        with pytest.raises(ClientLatchedError):
            client.invoke("orderDomain", "a.se", True)

        assert client.is_latched is True
        assert len(transport.calls) == 1

    def test_retryable_errors_do_not_latch(self):
        transport = RecordingTransport(error=RemoteOperationError("orderDomain", "DOMAIN_OCCUPIED"))
        client = RateLimitedClient(transport=transport, clock=FakeClock())

        with pytest.raises(RemoteOperationError):
            client.invoke("orderDomain", "a.se", True)

        assert client.is_latched is False

    def test_latch_is_reported_only_once(self):
        listener = MagicMock()
        client = RateLimitedClient(transport=RecordingTransport(), listeners=[listener], clock=FakeClock())

        client._engage_latch("orderDomain", "AUTH_ERROR")
        client._engage_latch("getDomain", "RATE_LIMITED")

        listener.on_latch_engaged.assert_called_once_with(method="orderDomain", reason="AUTH_ERROR")
        assert client.state.latch_reason == "AUTH_ERROR"

    def test_listener_exception_does_not_break_the_client(self):
        listener = MagicMock()
        listener.on_latch_engaged.side_effect = RuntimeError("boom")
        transport = RecordingTransport(error=AuthoritativeRejectionError("orderDomain", "AUTH_ERROR"))
        client = RateLimitedClient(transport=transport, listeners=[listener], clock=FakeClock())

        with pytest.raises(AuthoritativeRejectionError):
            client.invoke("orderDomain", "a.se", True)

        assert client.is_latched is True


# =============================================================================
# Concurrency Tests
# =============================================================================


class TestConcurrency:

    def test_concurrent_calls_never_exceed_quota(self):
        transport = RecordingTransport()
        client = RateLimitedClient(transport=transport, hourly_quota=25, clock=FakeClock())
        refused: list[QuotaExceededError] = []
        refused_lock = threading.Lock()
        barrier = threading.Barrier(10)

        def worker():
            barrier.wait()
            for _ in range(5):
                try:
                    client.invoke("getDomain", "a.se")
                except QuotaExceededError as e:
                    with refused_lock:
                        refused.append(e)

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(transport.calls) == 25
        assert len(refused) == 25
        assert client.calls_this_hour == 25

    def test_state_snapshot_is_immutable(self):
        client = RateLimitedClient(transport=RecordingTransport(), clock=FakeClock())
        snapshot = client.state

        client.invoke("getDomain", "a.se")

        assert snapshot.calls_this_hour == 0
        assert client.state.calls_this_hour == 1
