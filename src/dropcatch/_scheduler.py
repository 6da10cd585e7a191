"""
Drop-time scheduling.

Expiring domains are released by the registry at a fixed time of day
(04:00 UTC for .se/.nu). The DropScheduler computes the next release
instant and blocks until it, using a two-tier wait:

- coarse tier: while the remaining wait is longer than `recheck_interval`,
  sleep for `recheck_interval` and recompute everything from the clock;
- fine tier: once the remaining wait is within `recheck_interval`, perform a
  single precise sleep for exactly the remaining time.

Timer drift is therefore bounded by one recheck interval, however long the
wait is, and the final approach is always a single short sleep.

Example:
    >>> from dropcatch._scheduler import DropScheduler
    >>> scheduler = DropScheduler()
    >>> fired_at = scheduler.wait_until_trigger()
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from datetime import time as dtime
from typing import TYPE_CHECKING

from dropcatch._utils import as_utc, utc_now

if TYPE_CHECKING:
    from dropcatch._config import ScheduleConfig

logger = logging.getLogger(__name__)


class DropScheduler:
    """
    Computes the next drop instant and sleeps accurately until it.

    Args:
        drop_time: Time of day (UTC) at which targets are released (default: 04:00).
            Must be naive or carry a UTC tzinfo.
        recheck_interval: Maximum length of a single coarse sleep, in seconds (default: 600).
        pre_trigger_lead: Seconds to fire before the drop instant to absorb network latency
            (default: 0.1). May be zero.
        clock: Returns the current time as an aware UTC datetime (injectable for tests).
        sleep: Sleep function taking seconds (injectable for tests).
    """

    def __init__(
        self,
        drop_time: dtime = dtime(hour=4),
        recheck_interval: float = 600.0,
        pre_trigger_lead: float = 0.1,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        assert drop_time is not None, "drop_time is required."
        assert drop_time.utcoffset() in (None, timedelta(0)), "drop_time must be naive (UTC) or in UTC."
        assert recheck_interval > 0, "recheck_interval must be greater than 0."
        assert pre_trigger_lead >= 0, "pre_trigger_lead must be >= 0."
        assert pre_trigger_lead < 86400, "pre_trigger_lead must be shorter than a day."

        self.drop_time = drop_time.replace(tzinfo=None)
        self.recheck_interval = recheck_interval
        self.pre_trigger_lead = pre_trigger_lead
        self._clock = clock
        self._sleep = sleep

    @classmethod
    def from_config(
        cls,
        config: ScheduleConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> DropScheduler:
        """Build a scheduler from the schedule section of the configuration."""
        if config is None:
            from dropcatch._config import DROPCATCH
            config = DROPCATCH.config.schedule

        return cls(
            drop_time=dtime(hour=config.drop_hour_utc, minute=config.drop_minute_utc),
            recheck_interval=config.recheck_interval,
            pre_trigger_lead=config.pre_trigger_lead,
            clock=clock,
            sleep=sleep,
        )

    def next_trigger_instant(self, now: datetime | None = None) -> datetime:
        """
        Return the next drop instant strictly after `now`.

        If `now` is at or past today's drop time, tomorrow's is returned.
        Naive datetimes are interpreted as UTC.

        Example:
            >>> scheduler.next_trigger_instant(datetime(2026, 3, 1, 3, 59, 50, tzinfo=UTC))
            datetime.datetime(2026, 3, 1, 4, 0, tzinfo=datetime.timezone.utc)
        """
        utc = as_utc(now if now is not None else self._clock())
        drop = datetime.combine(utc.date(), self.drop_time, tzinfo=utc.tzinfo)
        if utc >= drop:
            drop += timedelta(days=1)
        return drop

    def first_shot(self, now: datetime | None = None) -> datetime:
        """Return the instant the first attempt should fire (drop instant minus lead)."""
        return self.next_trigger_instant(now) - timedelta(seconds=self.pre_trigger_lead)

    def wait_until_trigger(self, start_now: bool = False) -> datetime:
        """
        Block until the first shot of the next drop.

        Args:
            start_now: Skip waiting entirely and fire immediately.

        Returns:
            The instant the caller should consider the run started.
        """
        if start_now:
            fired_at = as_utc(self._clock())
            logger.info("Starting immediately: waiting for the drop time was disabled")
            return fired_at

        target: datetime | None = None
        while True:
            now = as_utc(self._clock())

            # An overshooting coarse sleep must not roll the target over to tomorrow
            if target is not None and now >= target:
                logger.warning(
                    f"⚠️ Woke up {(now - target).total_seconds():.3f}s after the first attempt time "
                    f"({target.isoformat()}); starting now"
                )
                return target

            target = self.first_shot(now)
            wait = (target - now).total_seconds()

            if wait <= self.recheck_interval:
                logger.info(
                    f"Final approach: sleeping {wait:.3f}s until first attempt at {target.isoformat()}"
                )
                if wait > 0:
                    self._sleep(wait)
                return target

            logger.info(
                f"Sleeping {self.recheck_interval:.0f}s and will recheck time "
                f"(remaining_wait={wait:.1f}s, first_attempt_time={target.isoformat()})"
            )
            self._sleep(self.recheck_interval)
