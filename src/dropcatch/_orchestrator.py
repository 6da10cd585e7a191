"""
Run orchestration: one retry coordinator per target, all sharing one client.

The DropCatcher waits for the drop instant (optional), then dispatches a
RetryCoordinator for every target. Each target gets its own fresh
CancellationScope bounded by the purchasing window, created when the target
is released, so one target giving up never cancels another.

Example:
    >>> from dropcatch import DROPCATCH, DropCatcher
    >>> DROPCATCH.configure(
    ...     auth={"username": "user@loopiaapi", "password": "secret"},
    ...     run={"targets": ("example.se", "example.nu")},
    ... )
    >>> catcher = DropCatcher.from_config()
    >>> summary = catcher.catch()
    >>> print(f"{summary.succeeded}/{summary.total} acquired")
"""

import logging
import threading
from collections import Counter
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import TYPE_CHECKING

from dropcatch._attempt import AcquisitionAttempt
from dropcatch._event_listeners import DropEventListener, notify_listeners
from dropcatch._http import RpcTransport, create_transport
from dropcatch._models import AcquisitionResult, DispatchMode, RunSummary
from dropcatch._rate_limit import RateLimitedClient
from dropcatch._retry import CancellationScope, RetryCoordinator, RetryPolicy
from dropcatch._scheduler import DropScheduler
from dropcatch._utils import tracking_prefix

if TYPE_CHECKING:
    from dropcatch._config import DropcatchConfig

logger = logging.getLogger(__name__)

_RUN_ID = "DropCatch-Run"


class DropCatcher:
    """
    Drives the acquisition of a list of targets.

    All coordinators share the same RateLimitedClient, so the hourly quota and
    the fault latch are enforced across every target of the run.

    Args:
        client: The shared rate-limited client.
        policy: Retry policy used by every coordinator (default: RetryPolicy()).
        scheduler: Drop-time scheduler used by `catch()` (default: DropScheduler()).
        dispatch_mode: Concurrent (default) or sequential dispatch.
        auto_pay: Ask the registrar to pay orders with account credits.
        listeners: Event listeners notified of attempt, target and run events.
        default_targets: Targets used by `catch()` when none are given.
        start_now: Default of `catch(start_now=...)`.
        scope_factory: Builds the per-target scope from the window (injectable for tests).
    """

    def __init__(
        self,
        client: RateLimitedClient,
        policy: RetryPolicy | None = None,
        scheduler: DropScheduler | None = None,
        dispatch_mode: DispatchMode | str = DispatchMode.CONCURRENT,
        auto_pay: bool = True,
        listeners: list[DropEventListener] | None = None,
        default_targets: Sequence[str] | None = None,
        start_now: bool | None = None,
        scope_factory: Callable[[float], CancellationScope] = CancellationScope,
    ):
        assert client is not None, "RateLimitedClient is required."

        self.client = client
        self.policy = policy or RetryPolicy()
        self.scheduler = scheduler or DropScheduler()
        self.dispatch_mode = DispatchMode(dispatch_mode)
        self.auto_pay = auto_pay
        self.listeners: list[DropEventListener] = listeners if listeners is not None else []
        self.default_targets = tuple(default_targets) if default_targets is not None else None
        self.start_now = start_now
        self._scope_factory = scope_factory

        self._scopes_lock = threading.Lock()
        self._active_scopes: dict[str, CancellationScope] = {}
        self._cancel_reason: str | None = None

    @classmethod
    def from_config(
        cls,
        config: "DropcatchConfig | None" = None,
        transport: RpcTransport | None = None,
        listeners: list[DropEventListener] | None = None,
    ) -> "DropCatcher":
        """
        Build a fully wired DropCatcher from configuration.

        Args:
            config: The configuration to use. If None, uses `DROPCATCH.config`.
            transport: Transport override. If None, one is created from the auth/client sections.
            listeners: Event listeners, shared by the client and the coordinators.

        Raises:
            ValueError: If no transport can be created (missing credentials).
        """
        if config is None:
            from dropcatch._config import DROPCATCH
            config = DROPCATCH.config

        listeners = listeners if listeners is not None else []
        client = RateLimitedClient(
            transport=transport or create_transport(auth=config.auth, client=config.client),
            hourly_quota=config.client.hourly_quota,
            quota_window=config.client.quota_window,
            listeners=listeners,
        )
        return cls(
            client=client,
            policy=RetryPolicy.from_config(config.retry),
            scheduler=DropScheduler.from_config(config.schedule),
            dispatch_mode=config.run.dispatch_mode,
            auto_pay=config.client.auto_pay,
            listeners=listeners,
            default_targets=config.run.targets,
            start_now=config.schedule.start_now,
        )

    # ======================
    # Public API
    # ======================

    def catch(
        self,
        targets: Sequence[str] | None = None,
        start_now: bool | None = None,
    ) -> RunSummary:
        """
        Wait for the drop instant, then run all targets.

        Args:
            targets: Targets to acquire. If None, uses `default_targets`, then
                `DROPCATCH.config.run.targets`.
            start_now: Skip waiting for the drop time. If None, uses the instance
                default, then `DROPCATCH.config.schedule.start_now`.

        Returns:
            RunSummary: One result per target, in input order.
        """
        if targets is None:
            targets = self.default_targets
        if start_now is None:
            start_now = self.start_now

        if targets is None or start_now is None:
            from dropcatch._config import DROPCATCH
            if targets is None:
                targets = DROPCATCH.config.run.targets
            if start_now is None:
                start_now = DROPCATCH.config.schedule.start_now

        unique_targets = self._prepare_targets(targets)
        self._reset_cancellation()
        fired_at = self.scheduler.wait_until_trigger(start_now=start_now)
        logger.info(f"{_RUN_ID:<26} | RUN | 🚀 Trigger fired at {fired_at.isoformat()}")
        return self._dispatch(unique_targets)

    def run(self, targets: Sequence[str]) -> RunSummary:
        """
        Run all targets right away and block until each has a terminal result.

        Duplicated targets are collapsed (first occurrence wins).

        Args:
            targets: Targets to acquire.

        Returns:
            RunSummary: One result per distinct target, in input order.

        Raises:
            ValueError: If `targets` is empty.
        """
        unique_targets = self._prepare_targets(targets)
        self._reset_cancellation()
        return self._dispatch(unique_targets)

    def cancel(self, reason: str = "run cancelled") -> None:
        """
        Cancel the current run.

        Running targets stop once their in-flight attempt finishes. Targets not
        released yet are cancelled as soon as they are, without any attempt.
        """
        with self._scopes_lock:
            self._cancel_reason = reason
            scopes = list(self._active_scopes.values())
        for scope in scopes:
            scope.cancel(reason)
        logger.warning(f"{_RUN_ID:<26} | RUN | ⚠️ Cancelled {len(scopes)} running target(s): {reason}")

    # ======================
    # Internals
    # ======================

    def _reset_cancellation(self) -> None:
        with self._scopes_lock:
            self._cancel_reason = None

    @staticmethod
    def _prepare_targets(targets: Sequence[str]) -> list[str]:
        if isinstance(targets, str):
            raise TypeError("targets must be a sequence of strings, not a string.")

        unique: list[str] = []
        seen: set[str] = set()
        for target in targets:
            if not isinstance(target, str):
                raise TypeError(f"Targets must be strings, got {type(target).__name__}.")
            normalized = target.strip().lower()
            if not normalized:
                raise ValueError("Targets can not be empty.")
            if normalized in seen:
                logger.warning(f"{tracking_prefix(normalized)} ⚠️ Duplicated target ignored")
                continue
            seen.add(normalized)
            unique.append(normalized)

        if not unique:
            raise ValueError("At least one target is required.")
        return unique

    def _dispatch(self, targets: list[str]) -> RunSummary:
        logger.info(
            f"{_RUN_ID:<26} | RUN | Starting acquisition of {len(targets)} target(s)."
        )
        logger.info(f"{_RUN_ID:<26} | RUN |    ├ dispatch_mode={self.dispatch_mode}")
        logger.info(f"{_RUN_ID:<26} | RUN |    ├ window={self.policy.window:.0f}s")
        logger.info(f"{_RUN_ID:<26} | RUN |    └ targets={targets}")

        if self.dispatch_mode == DispatchMode.SEQUENTIAL:
            results = []
            for idx, target in enumerate(targets):
                try:
                    results.append(self._run_target(target))
                except Exception as e:
                    results.append(self._crashed_result(idx, target, e))
        else:
            results = self._run_concurrently(targets)

        # Sanity check: one result per target, in input order
        assert [r.target for r in results] == targets, (
            "🌀 Sanity check | Unexpected mismatch between targets and results."
        )

        summary = RunSummary(results=results)
        self._log_summary(summary)
        notify_listeners(self.listeners, "on_run_finished", summary=summary)
        return summary

    def _run_concurrently(self, targets: list[str]) -> list[AcquisitionResult]:
        results_map: dict[int, AcquisitionResult] = {}

        with ThreadPoolExecutor(max_workers=len(targets), thread_name_prefix="dropcatch") as executor:
            future_to_index = {
                executor.submit(self._run_target, target): idx
                for idx, target in enumerate(targets)
            }
            for future in as_completed(future_to_index):
                idx = future_to_index[future]
                try:
                    results_map[idx] = future.result()
                except Exception as e:
                    results_map[idx] = self._crashed_result(idx, targets[idx], e)

        return [results_map[i] for i in range(len(targets))]

    def _crashed_result(self, idx: int, target: str, error: Exception) -> AcquisitionResult:
        logger.exception(f"{tracking_prefix(target)} ❌ Worker crashed (seq={idx}): {error}")
        result = AcquisitionResult(target=target, success=False, error=error)
        notify_listeners(self.listeners, "on_target_finished", result=result)
        return result

    def _run_target(self, target: str) -> AcquisitionResult:
        """Run one target inside its own fresh scope and report its result."""
        scope = self._scope_factory(self.policy.window)
        with self._scopes_lock:
            if self._cancel_reason is not None:
                scope.cancel(self._cancel_reason)
            self._active_scopes[target] = scope

        try:
            coordinator = RetryCoordinator(
                attempt=AcquisitionAttempt(self.client, auto_pay=self.auto_pay),
                policy=self.policy,
                listeners=self.listeners,
            )
            result = coordinator.run(target, scope)
        finally:
            with self._scopes_lock:
                self._active_scopes.pop(target, None)

        notify_listeners(self.listeners, "on_target_finished", result=result)
        return result

    def _log_summary(self, summary: RunSummary) -> None:
        logger.info(f"{_RUN_ID:<26} | RUN | Run finished.")
        logger.info(f"{_RUN_ID:<26} | RUN |    ├ total of targets = {summary.total}")
        logger.info(f"{_RUN_ID:<26} | RUN |    ├ api calls this hour = {self.client.calls_this_hour}")

        totals = Counter("acquired" if r.success else "failed" for r in summary.results)
        items = list(totals.items())
        for idx, (status, total) in enumerate(items):
            icon = "└" if idx == (len(items) - 1) else "├"
            logger.info(f"{_RUN_ID:<26} | RUN |    {icon} total of targets {status:<8} = {total}")

        for result in summary.results:
            if result.success:
                logger.info(f"{tracking_prefix(result.target)} ✅ Acquired after {result.attempts} attempt(s)")
            else:
                logger.warning(f"{tracking_prefix(result.target)} ❌ Not acquired: {result.error}")
