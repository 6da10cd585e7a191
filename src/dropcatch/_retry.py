"""
Two-phase retry coordination for a single target.

After the drop instant each target is retried by its own RetryCoordinator:

- Fast-retry phase: the first `fast_retry_count` failures are retried after a
  short fixed interval (the target is most likely to be released right now).
- Backoff phase: later failures wait `initial_backoff`, doubling every time up
  to `max_backoff`. Once the cap is reached it sticks.

The whole effort is bounded by a CancellationScope (the purchasing window),
checked before every attempt. An attempt already in flight is never
interrupted.

Example:
    >>> from dropcatch._retry import CancellationScope, RetryCoordinator, RetryPolicy
    >>> coordinator = RetryCoordinator(attempt=AcquisitionAttempt(client), policy=RetryPolicy())
    >>> result = coordinator.run("example.se", scope=CancellationScope(timeout=3600))
    >>> result.success
    True
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from dropcatch._event_listeners import DropEventListener, notify_listeners
from dropcatch._models import AcquisitionResult, AttemptOutcome, AttemptRecord
from dropcatch._utils import tracking_prefix, utc_now

if TYPE_CHECKING:
    from dropcatch._attempt import AcquisitionAttempt
    from dropcatch._config import RetryConfig

logger = logging.getLogger(__name__)


# =============================================================================
# Exceptions
# =============================================================================


class RetryableError(Exception):
    """
    Base class for failures that are expected to go away on their own.

    Transport errors, quota refusals, non-OK registrar statuses and malformed
    replies all extend this class. Errors that do NOT extend it (authoritative
    rejections, latched client) are still retried at the normal cadence by the
    coordinator, but are reported as fatal.

    Example:
        >>> class RegistrarMaintenanceError(RetryableError):
        ...     '''Registrar is temporarily down for maintenance.'''
        ...     pass
    """

    pass


class DeadlineExceededError(TimeoutError):
    """
    Raised (as a result cause) when a target's purchasing window elapses.

    Attributes:
        window: The window length in seconds.
        last_exception: The error of the last attempt, if any attempt was made.
    """

    def __init__(self, window: float, last_exception: Exception | None = None):
        self.window = window
        self.last_exception = last_exception
        message = f"No success within purchasing window of {window:.1f}s"
        if last_exception is not None:
            message += f". Last error: {last_exception}"
        super().__init__(message)


class AcquisitionCancelledError(Exception):
    """
    Raised (as a result cause) when a scope is cancelled before its deadline.

    Attributes:
        reason: Why the scope was cancelled.
        last_exception: The error of the last attempt, if any attempt was made.
    """

    def __init__(self, reason: str, last_exception: Exception | None = None):
        self.reason = reason
        self.last_exception = last_exception
        super().__init__(f"Acquisition cancelled: {reason}")


# =============================================================================
# Cancellation
# =============================================================================


class CancellationScope:
    """
    Bounded cancellation scope for one target.

    The scope expires `timeout` seconds after its creation and can also be
    cancelled explicitly. Sleeping through the scope wakes up early on
    cancellation and never sleeps past the deadline.

    Args:
        timeout: Seconds until the scope expires.
        clock: Monotonic clock in seconds (injectable for tests).
    """

    def __init__(self, timeout: float, clock: Callable[[], float] = time.monotonic):
        assert timeout > 0, "timeout must be greater than 0."

        self.timeout = timeout
        self._clock = clock
        self._deadline = clock() + timeout
        self._cancelled = threading.Event()
        self._cancel_reason: str | None = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        """Cancel the scope; sleeping workers wake up immediately."""
        if not self._cancelled.is_set():
            self._cancel_reason = reason
            self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def remaining(self) -> float:
        """Seconds left before the deadline (never negative)."""
        return max(0.0, self._deadline - self._clock())

    def is_done(self) -> bool:
        """True once the scope was cancelled or its deadline passed."""
        return self.cancelled or self.remaining() <= 0

    def sleep(self, seconds: float) -> None:
        """Sleep up to `seconds`, bounded by the deadline and cut short by cancel()."""
        wait_time = min(seconds, self.remaining())
        if wait_time > 0:
            self._cancelled.wait(timeout=wait_time)

    def error(self, last_exception: Exception | None = None) -> Exception:
        """Build the terminal cause for a scope that is done."""
        if self.cancelled:
            return AcquisitionCancelledError(self._cancel_reason or "cancelled", last_exception)
        return DeadlineExceededError(self.timeout, last_exception)


# =============================================================================
# Policy and state
# =============================================================================


class RetryPhase(enum.StrEnum):
    """
    States of a RetryCoordinator.

    Attributes:
        FAST_RETRY: Initial phase; failures are retried after the fixed fast interval.
        BACKOFF: Failures are retried after a doubling, capped delay.
        SUCCESS: Terminal; the target was acquired.
        ABANDONED: Terminal; the scope expired or was cancelled.
    """
    FAST_RETRY = "FAST_RETRY"
    BACKOFF = "BACKOFF"
    SUCCESS = "SUCCESS"
    ABANDONED = "ABANDONED"

    def __str__(self) -> str:
        return self.value

    def is_terminal(self) -> bool:
        return self in (RetryPhase.SUCCESS, RetryPhase.ABANDONED)


_VALID_TRANSITIONS: dict[RetryPhase, frozenset[RetryPhase]] = {
    RetryPhase.FAST_RETRY: frozenset({RetryPhase.BACKOFF, RetryPhase.SUCCESS, RetryPhase.ABANDONED}),
    RetryPhase.BACKOFF:    frozenset({RetryPhase.SUCCESS, RetryPhase.ABANDONED}),
    RetryPhase.SUCCESS:    frozenset(),
    RetryPhase.ABANDONED:  frozenset(),
}


@dataclass(frozen=True)
class RetryPolicy:
    """
    Parameters of the two-phase retry policy.

    Attributes:
        fast_retry_count: Number of failures retried at the fast interval.
        fast_retry_interval: Delay in seconds during the fast-retry phase.
        initial_backoff: First delay in seconds of the backoff phase.
        max_backoff: Cap in seconds for the backoff delay.
        window: Purchasing window in seconds (bound on a target's total effort).
    """
    fast_retry_count: int = 3
    fast_retry_interval: float = 0.1
    initial_backoff: float = 1.0
    max_backoff: float = 300.0
    window: float = 3600.0

    def __post_init__(self) -> None:
        assert self.fast_retry_count >= 0, "fast_retry_count must be >= 0."
        assert self.fast_retry_interval >= 0, "fast_retry_interval must be >= 0."
        assert self.initial_backoff > 0, "initial_backoff must be greater than 0."
        assert self.max_backoff >= self.initial_backoff, "max_backoff must be >= initial_backoff."
        assert self.window > 0, "window must be greater than 0."

    @classmethod
    def from_config(cls, config: RetryConfig | None = None) -> RetryPolicy:
        """Build a policy from the retry section of the configuration."""
        if config is None:
            from dropcatch._config import DROPCATCH
            config = DROPCATCH.config.retry

        return cls(
            fast_retry_count=config.fast_retry_count,
            fast_retry_interval=config.fast_retry_interval,
            initial_backoff=config.initial_backoff,
            max_backoff=config.max_backoff,
            window=config.window,
        )

    def delay_for(self, attempt_number: int) -> float:
        """
        Closed form of the delay that follows a failed attempt.

        Example:
            >>> policy = RetryPolicy()
            >>> [policy.delay_for(n) for n in range(1, 8)]
            [0.1, 0.1, 0.1, 1.0, 2.0, 4.0, 8.0]
        """
        assert attempt_number >= 1, "attempt_number must be >= 1."
        if attempt_number <= self.fast_retry_count:
            return self.fast_retry_interval
        exponent = attempt_number - self.fast_retry_count - 1
        if exponent >= 64:
            return self.max_backoff
        return min(self.initial_backoff * (2 ** exponent), self.max_backoff)


@dataclass
class RetryState:
    """
    Mutable retry bookkeeping of one coordinator run.

    Attributes:
        attempt_number: Attempts started so far (starts at 0).
        backoff: Current backoff delay; 0.0 while in the fast-retry phase.
        phase: Current state of the coordinator.
    """
    attempt_number: int = 0
    backoff: float = 0.0
    phase: RetryPhase = RetryPhase.FAST_RETRY

    def start_attempt(self) -> int:
        assert not self.phase.is_terminal(), f"Cannot start an attempt in terminal phase {self.phase}."
        self.attempt_number += 1
        return self.attempt_number

    def transition_to(self, phase: RetryPhase) -> None:
        if phase == self.phase:
            return
        assert phase in _VALID_TRANSITIONS[self.phase], \
            f"Invalid retry phase transition: {self.phase} → {phase}"
        self.phase = phase

    def next_delay(self, policy: RetryPolicy) -> float:
        """
        Advance the backoff and return the delay before the next attempt.

        Must be called once per failed attempt.
        """
        if self.attempt_number <= policy.fast_retry_count:
            return policy.fast_retry_interval

        self.transition_to(RetryPhase.BACKOFF)
        if self.backoff == 0:
            self.backoff = min(policy.initial_backoff, policy.max_backoff)
        else:
            self.backoff = min(self.backoff * 2, policy.max_backoff)
        return self.backoff


# =============================================================================
# Coordinator
# =============================================================================


class RetryCoordinator:
    """
    Drives AcquisitionAttempt for one target until success or abandonment.

    Every attempt-level exception is caught and folded into the next retry
    decision; the only thing that leaves `run()` is the terminal result.

    Args:
        attempt: The acquisition attempt to repeat.
        policy: The retry policy (default: RetryPolicy()).
        listeners: Event listeners notified of attempt start/end.
        clock: Monotonic clock used to measure attempt duration (injectable for tests).
    """

    def __init__(
        self,
        attempt: AcquisitionAttempt,
        policy: RetryPolicy | None = None,
        listeners: list[DropEventListener] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        assert attempt is not None, "AcquisitionAttempt is required."

        self.attempt = attempt
        self.policy = policy or RetryPolicy()
        self.listeners: list[DropEventListener] = listeners if listeners is not None else []
        self._clock = clock

    def run(self, target: str, scope: CancellationScope) -> AcquisitionResult:
        """
        Retry the target until it is acquired or the scope is done.

        Args:
            target: The domain name to acquire.
            scope: The target's own bounded cancellation scope.

        Returns:
            AcquisitionResult: Success, or failure carrying the scope's cause.
        """
        assert target, "Target cannot be empty."
        assert scope is not None, "CancellationScope is required."

        prefix = tracking_prefix(target)
        state = RetryState()
        last_error: Exception | None = None
        run_start = self._clock()

        while True:
            if scope.is_done():
                state.transition_to(RetryPhase.ABANDONED)
                cause = scope.error(last_error)
                logger.warning(
                    f"{prefix} ⚠️ Giving up after {state.attempt_number} attempt(s): {cause}"
                )
                return AcquisitionResult(
                    target=target, success=False, error=cause, attempts=state.attempt_number,
                )

            attempt_number = state.start_attempt()
            notify_listeners(self.listeners, "on_attempt_start", target=target, attempt_number=attempt_number)
            logger.info(f"{prefix} Starting registration attempt #{attempt_number} ({state.phase})")

            started_at = utc_now()
            start = self._clock()
            try:
                self.attempt.attempt(target)
            except Exception as e:
                elapsed = self._clock() - start
                last_error = e
                record = AttemptRecord(
                    target=target,
                    attempt_number=attempt_number,
                    started_at=started_at,
                    outcome=AttemptOutcome.from_exception(e),
                    duration=elapsed,
                    error=e,
                )
                notify_listeners(self.listeners, "on_attempt_end", record=record)
                logger.warning(
                    f"{prefix} ⚠️ Attempt #{attempt_number} failed after {elapsed * 1000:.1f}ms "
                    f"({record.outcome}): {e}"
                )
            else:
                elapsed = self._clock() - start
                record = AttemptRecord(
                    target=target,
                    attempt_number=attempt_number,
                    started_at=started_at,
                    outcome=AttemptOutcome.SUCCESS,
                    duration=elapsed,
                )
                notify_listeners(self.listeners, "on_attempt_end", record=record)
                state.transition_to(RetryPhase.SUCCESS)
                logger.info(
                    f"{prefix} ✅ SUCCESS: domain registered on attempt #{attempt_number} "
                    f"(total_time={self._clock() - run_start:.3f}s)"
                )
                return AcquisitionResult(target=target, success=True, attempts=attempt_number)

            # Keep a consistent cadence: deduct the time spent inside the attempt
            delay = state.next_delay(self.policy)
            sleep_time = max(0.0, delay - elapsed)
            logger.debug(f"{prefix} Next attempt in {sleep_time:.3f}s ({state.phase}, delay={delay:.3f}s)")
            scope.sleep(sleep_time)
