"""
Data models for dropcatch runs.

This module contains the core data structures shared across the package:
- DispatchMode: How targets are dispatched (concurrently or one by one)
- AttemptOutcome: Outcome of a single acquisition attempt
- AttemptRecord: Ephemeral record of one attempt (frozen/immutable)
- AcquisitionResult: Terminal result for one target (frozen/immutable)
- RunSummary: Aggregate of all results of a run (frozen/immutable)
"""
import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


class DispatchMode(enum.StrEnum):
    """
    How the orchestrator dispatches retry coordinators.

    Attributes:
        CONCURRENT: One worker thread per target, all released together.
        SEQUENTIAL: Each target is fully resolved before the next one starts.
    """
    CONCURRENT = "concurrent"
    SEQUENTIAL = "sequential"

    def __str__(self) -> str:
        return self.value


class AttemptOutcome(enum.StrEnum):
    """
    Outcome of a single acquisition attempt.

    Attributes:
        SUCCESS: The target was claimed and settled.
        RETRYABLE_FAILURE: Transient failure (network, quota, occupied, malformed reply).
        FATAL_FAILURE: The shared client was rejected or is latched; later attempts will fail too.
    """
    SUCCESS = "SUCCESS"
    RETRYABLE_FAILURE = "RETRYABLE_FAILURE"
    FATAL_FAILURE = "FATAL_FAILURE"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def from_exception(cls, exc: BaseException) -> "AttemptOutcome":
        """
        Classify the exception raised by a failed attempt.

        Example:
            >>> AttemptOutcome.from_exception(ClientLatchedError("AUTH_ERROR"))
            <AttemptOutcome.FATAL_FAILURE: 'FATAL_FAILURE'>
        """
        from dropcatch._utils import is_fatal_exception
        return cls.FATAL_FAILURE if is_fatal_exception(exc) else cls.RETRYABLE_FAILURE


@dataclass(frozen=True)
class AttemptRecord:
    """
    Record of one acquisition attempt.

    Created by the RetryCoordinator once per iteration and handed to event
    listeners. It is never persisted.

    Attributes:
        target: The target the attempt was made for.
        attempt_number: One-based sequence number within the run.
        started_at: UTC instant the attempt started.
        outcome: Success, retryable failure or fatal failure.
        duration: Wall-clock seconds spent inside the attempt.
        error: The exception raised by a failed attempt.
    """
    target: str
    attempt_number: int
    started_at: datetime
    outcome: AttemptOutcome
    duration: float
    error: Exception | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == AttemptOutcome.SUCCESS


@dataclass(frozen=True)
class AcquisitionResult:
    """
    Terminal result of a target's participation in a run.

    Exactly one result is produced per target.

    Attributes:
        target: The acquisition subject (domain name).
        success: True if the target was acquired.
        error: Last error cause when `success` is False.
        attempts: Number of attempts made before reaching this result.
    """
    target: str
    success: bool
    error: Exception | None = None
    attempts: int = 0

    def __post_init__(self) -> None:
        assert self.target, "Result target can not be empty."
        assert not (self.success and self.error is not None), \
            "A successful result can not carry an error."

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-friendly representation of this result."""
        return {
            "target": self.target,
            "success": self.success,
            "attempts": self.attempts,
            "error": None if self.error is None else f"{type(self.error).__name__}: {self.error}",
        }


@dataclass(frozen=True)
class RunSummary:
    """
    Aggregate of a run: one result per target, in input order.

    Example:
        >>> summary = catcher.run(["example.se", "example.nu"])
        >>> print(f"{summary.succeeded}/{summary.total} acquired")
    """
    results: list[AcquisitionResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return self.total - self.succeeded

    def all_succeeded(self) -> bool:
        return self.total > 0 and self.failed == 0

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-friendly representation of this summary."""
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "results": [r.to_dict() for r in self.results],
        }
