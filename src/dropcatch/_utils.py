"""
Utility functions for the dropcatch package.

This module provides internal helper functions used throughout the package.
These functions are not part of the public API and may change without notice.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """Return the current wall-clock time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


def as_utc(moment: datetime) -> datetime:
    """
    Normalize a datetime to UTC.

    Naive datetimes are assumed to already be expressed in UTC.

    Example:
        >>> as_utc(datetime(2026, 1, 1, 4, 0)).tzinfo
        datetime.timezone.utc
    """
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


def tracking_prefix(tracking_id: str, component: str = "DROP") -> str:
    """
    Build the fixed-width prefix used by every log line of a target.

    Example:
        >>> tracking_prefix("example.se")
        'example.se                 | DROP |'
    """
    return f"{tracking_id[:26]:<26} | {component} |"


def save_json_file(data: dict[str, Any], file_path: Path) -> None:
    """
    Save data as JSON to the specified file path.

    Writes a Python dict to disk as formatted JSON with UTF-8 encoding.
    Non-serializable values are converted to strings using the default=str option.

    Args:
        data: Dictionary to serialize as JSON.
        file_path: Destination path for the JSON file.

    Raises:
        RuntimeError: If the file cannot be written (wraps the original exception).

    Example:
        >>> save_json_file({"target": "example.se"}, Path("output/example.se.json"))
    """
    try:
        with file_path.open(mode="w", encoding="utf-8") as file:
            json.dump(
                data, file,
                indent=4, ensure_ascii=False, default=str
            )
    except Exception as e:
        logger.error(
            f"❌ Error while writing JSON file to disk ({file_path.name}): {e}",
            exc_info=logger.isEnabledFor(logging.DEBUG)
        )
        raise RuntimeError(f"It's not possible to save JSON file in the disk ({file_path.name}): {e}") from e


def is_fatal_exception(exc: BaseException) -> bool:
    """
    Determine if an exception means the shared client will never succeed again.

    This is the single source of truth for separating fatal failures (an
    authoritative rejection from the registrar, or a latched client) from
    retryable ones. Fatal failures are still retried at the normal cadence by
    the coordinator; the distinction only matters for reporting.

    Args:
        exc: The exception to check.

    Returns:
        True if the exception is fatal for the client instance, False otherwise.
    """
    # Lazy imports to avoid circular dependencies
    from dropcatch._http import AuthoritativeRejectionError
    from dropcatch._rate_limit import ClientLatchedError

    return isinstance(exc, (AuthoritativeRejectionError, ClientLatchedError))
