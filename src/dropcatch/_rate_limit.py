"""
Rate-limited, fail-fast client for the registrar API.

The registrar allows a fixed number of calls per hour and punishes abuse, so
every remote call made by dropcatch goes through a single shared
RateLimitedClient that:

- counts calls in a rolling one-hour window and refuses calls over the quota;
- latches permanently on an authoritative rejection (authentication failure
  or remote rate limiting), after which no call ever reaches the registrar.

The counter, the window start and the latch live in one immutable
`ClientState` value that is only replaced under the client lock, so no reader
can observe a reset counter paired with a stale window (or vice versa).

Example:
    >>> from dropcatch._rate_limit import RateLimitedClient
    >>> from dropcatch._http import XmlRpcTransport
    >>> client = RateLimitedClient(
    ...     transport=XmlRpcTransport(username="user@loopiaapi", password="secret"),
    ...     hourly_quota=60,
    ... )
    >>> client.invoke("orderDomain", "example.se", True)
    'OK'
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any

from dropcatch._event_listeners import DropEventListener, notify_listeners
from dropcatch._http import AuthoritativeRejectionError, RpcTransport
from dropcatch._retry import RetryableError

logger = logging.getLogger(__name__)


# =============================================================================
# Exceptions
# =============================================================================


class QuotaExceededError(RetryableError):
    """
    Raised when the hourly call quota is used up.

    The call is refused before reaching the registrar and the counter is not
    incremented. Extends RetryableError: the quota frees up when the window
    rolls over, so the coordinator simply keeps its cadence.

    Attributes:
        calls_this_hour: Calls already made in the current window.
        quota: The configured hourly quota.
        resets_in: Seconds until the current window rolls over.
    """

    def __init__(self, calls_this_hour: int, quota: int, resets_in: float):
        self.calls_this_hour = calls_this_hour
        self.quota = quota
        self.resets_in = resets_in
        super().__init__(
            f"API call limit of {quota} calls per hour reached "
            f"(calls_this_hour={calls_this_hour}, resets in {resets_in:.1f}s)"
        )


class ClientLatchedError(Exception):
    """
    Raised when a call is attempted on a latched client.

    Once the registrar has authoritatively rejected the client, every later
    call fails with this error without contacting the registrar, for the
    lifetime of the client instance.

    Attributes:
        reason: The rejection reason that engaged the latch.
    """

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Client is latched after a previous rejection ({reason}); call not sent")


# =============================================================================
# State
# =============================================================================


@dataclass(frozen=True)
class ClientState:
    """
    Snapshot of the client's bookkeeping.

    Attributes:
        calls_this_hour: Calls reserved in the current window (never above the quota).
        hour_window_start: Clock reading (monotonic seconds) when the window started.
        latched: True once an authoritative rejection was observed; never reset.
        latch_reason: The rejection reason that engaged the latch.
    """

    calls_this_hour: int
    hour_window_start: float
    latched: bool = False
    latch_reason: str | None = None


# =============================================================================
# Client
# =============================================================================


class RateLimitedClient:
    """
    Thread-safe client enforcing an hourly quota and a permanent fault latch.

    Only the bookkeeping (quota check, counter increment, window reset, latch)
    runs under the lock. The remote call itself happens outside the lock, so
    calls from different threads may be in flight at the same time once their
    quota slot is reserved.

    Args:
        transport: The transport used to reach the registrar.
        hourly_quota: Maximum number of calls per window (default: 60).
        quota_window: Window length in seconds (default: 3600).
        listeners: Event listeners notified of quota and latch events.
        clock: Monotonic clock in seconds (injectable for tests).
    """

    def __init__(
        self,
        transport: RpcTransport,
        hourly_quota: int = 60,
        quota_window: float = 3600.0,
        listeners: list[DropEventListener] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        assert transport is not None, "Transport is required."
        assert hourly_quota > 0, "hourly_quota must be greater than 0."
        assert quota_window > 0, "quota_window must be greater than 0."

        self.transport = transport
        self.hourly_quota = hourly_quota
        self.quota_window = quota_window
        self.listeners: list[DropEventListener] = listeners if listeners is not None else []
        self._clock = clock

        self._lock = threading.Lock()
        self._state = ClientState(calls_this_hour=0, hour_window_start=clock())

    # ======================
    # Public API
    # ======================

    @property
    def state(self) -> ClientState:
        """Return a consistent snapshot of the client state."""
        with self._lock:
            return self._state

    @property
    def is_latched(self) -> bool:
        return self.state.latched

    @property
    def calls_this_hour(self) -> int:
        return self.state.calls_this_hour

    def invoke(self, method: str, *params: Any) -> Any:
        """
        Invoke a remote method, honoring the quota and the latch.

        Args:
            method: The remote method name.
            *params: Business parameters (credentials are added by the transport).

        Returns:
            The decoded reply.

        Raises:
            ClientLatchedError: If the client is latched (the registrar is not contacted).
            QuotaExceededError: If the hourly quota is used up (the counter is unchanged).
            AuthoritativeRejectionError: If the registrar rejects the client (latch engaged).
            TransportError, RemoteOperationError, MalformedResponseError: From the transport.
        """
        assert method, "Method name cannot be empty."

        call_number = self._reserve_call(method)

        logger.info(
            f"{method[:26]:<26} | API | Sending request (call {call_number}/{self.hourly_quota} "
            f"this hour) params={list(params)}"
        )
        start = time.perf_counter()
        try:
            reply = self.transport.call(method, list(params))
        except AuthoritativeRejectionError as e:
            duration = time.perf_counter() - start
            logger.error(f"{method[:26]:<26} | API | ❌ Call rejected after {duration * 1000:.1f}ms: {e}")
            self._engage_latch(method, e.reason)
            raise
        except Exception as e:
            duration = time.perf_counter() - start
            logger.error(f"{method[:26]:<26} | API | ❌ Call failed after {duration * 1000:.1f}ms: {e}")
            raise

        duration = time.perf_counter() - start
        logger.info(f"{method[:26]:<26} | API | ✅ Call succeeded after {duration * 1000:.1f}ms: {reply!r}")
        return reply

    # ======================
    # Internals
    # ======================

    def _reserve_call(self, method: str) -> int:
        """
        Atomically check the latch and the quota, and reserve one call.

        Returns:
            The call number within the current window.
        """
        reset_from: int | None = None
        exceeded: QuotaExceededError | None = None

        with self._lock:
            state = self._state
            if state.latched:
                logger.warning(
                    f"{method[:26]:<26} | API | ⚠️ Refusing call: client latched ({state.latch_reason})"
                )
                raise ClientLatchedError(state.latch_reason or "unknown")

            now = self._clock()
            if now - state.hour_window_start >= self.quota_window:
                reset_from = state.calls_this_hour
                state = replace(state, calls_this_hour=0, hour_window_start=now)

            if state.calls_this_hour >= self.hourly_quota:
                exceeded = QuotaExceededError(
                    calls_this_hour=state.calls_this_hour,
                    quota=self.hourly_quota,
                    resets_in=max(0.0, state.hour_window_start + self.quota_window - now),
                )
            else:
                state = replace(state, calls_this_hour=state.calls_this_hour + 1)

            self._state = state
            call_number = state.calls_this_hour

        # Listeners are notified outside the lock
        if reset_from is not None:
            logger.info(f"{method[:26]:<26} | API | Resetting API call counter for new hour (previous_hour_calls={reset_from})")
            notify_listeners(self.listeners, "on_quota_reset", previous_calls=reset_from)

        if exceeded is not None:
            logger.error(f"{method[:26]:<26} | API | ❌ {exceeded}")
            notify_listeners(
                self.listeners, "on_quota_exceeded",
                method=method, calls_this_hour=exceeded.calls_this_hour, quota=exceeded.quota,
            )
            raise exceeded

        return call_number

    def _engage_latch(self, method: str, reason: str) -> None:
        """Latch the client permanently; only the first rejection is reported."""
        with self._lock:
            if self._state.latched:
                return
            self._state = replace(self._state, latched=True, latch_reason=reason)

        logger.error(
            f"{method[:26]:<26} | API | ❌ Received {reason}, stopping further API calls for this client"
        )
        notify_listeners(self.listeners, "on_latch_engaged", method=method, reason=reason)
