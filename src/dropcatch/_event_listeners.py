"""
Event listeners for observing a dropcatch run.

This module contains the DropEventListener base class and concrete
implementations that react to quota, latch, attempt and result events.

Available Listeners:
    - DropEventListener: Base class for all event listeners.
    - MetricsListener: Thread-safe in-memory counters of everything that happened.
    - FileLoggingListener: Persists target results and run summaries to JSON files.

Example:
    >>> from dropcatch import DropCatcher, MetricsListener
    >>> metrics = MetricsListener()
    >>> catcher = DropCatcher.from_config(listeners=[metrics])
    >>> catcher.run(["example.se"])
    >>> metrics.attempts
    4
"""

import logging
import sys
import threading
from collections import Counter
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 12):
    from typing import override
else:
    from typing_extensions import override

from dropcatch._models import AcquisitionResult, AttemptRecord, RunSummary
from dropcatch._utils import save_json_file, utc_now

logger = logging.getLogger(__name__)


class DropEventListener:
    """
    Base class for observing dropcatch events.

    Listeners are read-only observers: they can log, notify or collect metrics,
    but must NOT change the course of a run. Client events (quota, latch) are
    emitted from whichever worker thread triggered them, so implementations
    must be thread-safe.

    All methods have default empty implementations, so subclasses only need to
    override the methods they care about.

    Example:
        >>> class SlowAttemptListener(DropEventListener):
        ...     def on_attempt_end(self, record):
        ...         if record.duration > 1.0:
        ...             print(f"{record.target}: slow attempt ({record.duration:.2f}s)")
    """

    def on_quota_reset(self, previous_calls: int) -> None:
        """
        Called when the hourly quota window rolls over.

        Args:
            previous_calls: Number of calls made in the window that just ended.
        """
        pass

    def on_quota_exceeded(self, method: str, calls_this_hour: int, quota: int) -> None:
        """
        Called when a call is refused because the hourly quota is used up.

        Args:
            method: The remote method that was refused.
            calls_this_hour: Calls already made in the current window.
            quota: The configured hourly quota.
        """
        pass

    def on_latch_engaged(self, method: str, reason: str) -> None:
        """
        Called once, when the shared client latches after an authoritative rejection.

        Args:
            method: The remote method that was rejected.
            reason: The rejection reason (e.g. "AUTH_ERROR", "HTTP 429").
        """
        pass

    def on_attempt_start(self, target: str, attempt_number: int) -> None:
        """
        Called right before an acquisition attempt starts.

        Args:
            target: The target being acquired.
            attempt_number: One-based attempt sequence number.
        """
        pass

    def on_attempt_end(self, record: AttemptRecord) -> None:
        """
        Called after an acquisition attempt finishes (success or failure).

        Args:
            record: The attempt record with outcome and duration.
        """
        pass

    def on_target_finished(self, result: AcquisitionResult) -> None:
        """
        Called once per target with its terminal result.

        Args:
            result: The final result for the target.
        """
        pass

    def on_run_finished(self, summary: RunSummary) -> None:
        """
        Called once at the end of a run.

        Args:
            summary: The aggregate of all target results.
        """
        pass


def notify_listeners(
    listeners: list[DropEventListener],
    event: str,
    **kwargs: Any,
) -> None:
    """
    Notifies all registered listeners about an event.

    Exceptions raised by listeners are logged but do not interrupt the run.

    Args:
        listeners: The listeners to notify.
        event: The event method name (e.g., 'on_attempt_end').
        **kwargs: Keyword arguments to pass to the listener method.
    """
    for listener in listeners:
        try:
            method = getattr(listener, event, None)
            if method and callable(method):
                method(**kwargs)
        except Exception as e:
            listener_name = listener.__class__.__name__
            logger.warning(
                f"Event listener `{listener_name}.{event}()` raised an exception: {e}"
            )


class MetricsListener(DropEventListener):
    """
    Listener that keeps thread-safe counters of a run.

    Attributes:
        attempts: Total number of attempts started.
        outcomes: Counter of attempt outcomes.
        quota_resets: Number of hourly window resets observed.
        quota_exceeded: Number of calls refused by the hourly quota.
        latch_reasons: Reasons of latch engagements (at most one per client).
        results: Terminal results, in completion order.
        summaries: Run summaries received.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.attempts = 0
        self.outcomes: Counter[str] = Counter()
        self.attempts_per_target: Counter[str] = Counter()
        self.quota_resets = 0
        self.quota_exceeded = 0
        self.latch_reasons: list[str] = []
        self.results: list[AcquisitionResult] = []
        self.summaries: list[RunSummary] = []

    @override
    def on_quota_reset(self, previous_calls: int) -> None:
        with self._lock:
            self.quota_resets += 1

    @override
    def on_quota_exceeded(self, method: str, calls_this_hour: int, quota: int) -> None:
        with self._lock:
            self.quota_exceeded += 1

    @override
    def on_latch_engaged(self, method: str, reason: str) -> None:
        with self._lock:
            self.latch_reasons.append(reason)

    @override
    def on_attempt_start(self, target: str, attempt_number: int) -> None:
        with self._lock:
            self.attempts += 1
            self.attempts_per_target[target] += 1

    @override
    def on_attempt_end(self, record: AttemptRecord) -> None:
        with self._lock:
            self.outcomes[record.outcome] += 1

    @override
    def on_target_finished(self, result: AcquisitionResult) -> None:
        with self._lock:
            self.results.append(result)

    @override
    def on_run_finished(self, summary: RunSummary) -> None:
        with self._lock:
            self.summaries.append(summary)


class FileLoggingListener(DropEventListener):
    """
    Listener that persists results to JSON files for later inspection.

    This listener writes files to the specified output directory:
    - `{target}-result.json`: The terminal result of each target
    - `summary-{timestamp}.json`: The summary of each run

    Example:
        >>> listener = FileLoggingListener(Path("./output/dropcatch"))
        >>> catcher = DropCatcher.from_config(listeners=[listener])
    """

    def __init__(self, output_dir: Path | str):
        """
        Initialize the listener with an output directory.

        Args:
            output_dir: Directory where JSON files will be saved (Path or str).
                       Created automatically if it doesn't exist.
        """
        assert output_dir, "Output directory is required."

        self.output_dir: Path = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)

    @override
    def on_target_finished(self, result: AcquisitionResult) -> None:
        """Writes the target result to a JSON file."""
        save_json_file(
            data=result.to_dict(),
            file_path=self.output_dir / f"{result.target}-result.json",
        )

    @override
    def on_run_finished(self, summary: RunSummary) -> None:
        """Writes the run summary to a timestamped JSON file."""
        timestamp = utc_now().strftime("%Y%m%dT%H%M%S%f")
        save_json_file(
            data=summary.to_dict(),
            file_path=self.output_dir / f"summary-{timestamp}.json",
        )
