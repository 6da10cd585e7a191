"""
Global configuration for the dropcatch package.

This module provides a simple configuration system following Convention over Configuration (CoC).
Users can optionally call DROPCATCH.configure() at application startup to customize defaults.
If not called, sensible defaults are used.

Hierarchy of precedence (highest to lowest):
1. Arguments passed directly to constructors (RetryPolicy, DropScheduler, ...)
2. Values set via DROPCATCH.configure()
3. Values read from a JSON config file (config_file=...)
4. Environment variables (DROPCATCH_*) - when allow_env_override=True
5. Hardcoded defaults (in dataclass fields)

Example:
    >>> from dropcatch import DROPCATCH
    >>>
    >>> # Pre-loaded with defaults + env vars
    >>> quota = DROPCATCH.config.client.hourly_quota
    >>>
    >>> # Custom configuration
    >>> DROPCATCH.configure(
    ...     auth={"username": "user@loopiaapi", "password": "secret"},
    ...     run={"targets": ("example.se", "example.nu")},
    ...     retry={"window": 1800.0},
    ... )
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field, fields, replace
from functools import wraps
from pathlib import Path
from typing import Any, Literal, Self

logger = logging.getLogger(__name__)

# Type alias for dispatch modes
DispatchModeName = Literal["concurrent", "sequential"]

_SECTIONS = ("auth", "client", "retry", "schedule", "run")


# =============================================================================
# Exceptions
# =============================================================================


class ConfigEnvVarError(ValueError):
    """Raised when an environment variable has an invalid value."""

    def __init__(
        self,
        env_var: str,
        value: str,
        expected_type: str,
        cause: Exception | None = None,
    ):
        self.env_var = env_var
        self.value = value
        self.expected_type = expected_type
        super().__init__(f"Invalid value for {env_var}: '{value}' (expected {expected_type})")
        self.__cause__ = cause


class ConfigValidationError(ValueError):
    """Raised when a configuration value fails validation."""

    def __init__(
        self,
        field: str,
        value: Any,
        message: str,
        section: str | None = None,
    ):
        self.field = field
        self.value = value
        self.section = section
        prefix = f"[{section}] " if section else ""
        super().__init__(f"{prefix}Invalid value for '{field}': {value!r}. {message}")


# =============================================================================
# Environment Variables
# =============================================================================


def _parse_targets(raw: str) -> tuple[str, ...]:
    """Parse a comma separated list of targets ("a.se, b.nu")."""
    return tuple(t.strip().lower() for t in raw.split(",") if t.strip())


class EnvVars:
    """
    Utility class for reading environment variables with type conversion.

    Example:
        >>> EnvVars.get("DROPCATCH_CLIENT_HOURLY_QUOTA", type_hint=int)
        60
        >>> EnvVars.get("DROPCATCH_AUTH_USERNAME")
        'user@loopiaapi'
        >>> EnvVars.get("UNDEFINED_VAR")
        None
    """

    @staticmethod
    def get(
        var_name: str,
        type_hint: Any = str,
        converter: Callable[[str], Any] | None = None,
    ) -> Any:
        """
        Read an environment variable with optional type conversion.

        Args:
            var_name: The environment variable name.
            type_hint: Type hint used to infer the converter (ignored if converter is provided).
            converter: Custom converter function (takes precedence over type_hint).

        Returns:
            The converted value, or None if env var is not set/empty.

        Raises:
            ConfigEnvVarError: If the value cannot be converted.
        """
        raw_value = os.environ.get(var_name)
        if not raw_value:  # None or empty string
            return None

        actual_converter = converter or EnvVars._infer_converter(type_hint)
        try:
            return actual_converter(raw_value)
        except (ValueError, TypeError) as e:
            raise ConfigEnvVarError(
                env_var=var_name,
                value=raw_value,
                expected_type=type_hint.__name__ if hasattr(type_hint, "__name__") else str(type_hint),
                cause=e,
            ) from e

    @staticmethod
    def _infer_converter(type_hint: Any) -> Callable[[str], Any]:
        """
        Infer converter function from type hint.

        Handles both actual types and string annotations (PEP 563).
        """
        type_str = str(type_hint)

        if type_hint is int or type_str == "int":
            return int
        if type_hint is float or type_str == "float":
            return float
        if type_hint is bool or type_str == "bool":
            return _parse_bool
        return str


def _parse_bool(value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in ("true", "1", "yes", "on"):
        return True
    if normalized in ("false", "0", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _env_var_of(config: Any, field_name: str) -> str | None:
    """Return the environment variable actually used to set a field, if any."""
    for f in fields(config):
        if f.name != field_name:
            continue
        for env_var in (f.metadata.get("env"), f.metadata.get("env_fallback")):
            if env_var and os.environ.get(env_var):
                return env_var
    return None


# =============================================================================
# Base Class
# =============================================================================


@dataclass(frozen=True)
class OverridableConfig:
    """
    Base class for immutable configuration dataclasses.

    Provides `.with_overrides()` method for creating new instances
    with partial field updates. Uses strict validation to catch
    typos and invalid field names early.

    Example:
        >>> config = RetryConfig()
        >>> custom = config.with_overrides({"window": 1800.0})
        >>> custom.window
        1800.0
    """

    def with_overrides(
        self,
        overrides: dict[str, Any],
        allow_none_fields: set[str] | None = None,
    ) -> Self:
        """
        Return a new instance with specified fields overridden.

        Args:
            overrides: Dict of field names to new values.
                       Only existing fields are allowed.
            allow_none_fields: Set of field names that accept None as a valid value.
                       By default, None values are filtered out.

        Returns:
            New instance with updated values.

        Raises:
            ValueError: If overrides contains unknown field names.
        """
        if not overrides:
            return self

        valid_fields = {f.name for f in fields(self)}
        invalid_fields = set(overrides.keys()) - valid_fields

        if invalid_fields:
            raise ValueError(
                f"Unknown config fields: {invalid_fields}. "
                f"Valid fields are: {valid_fields}"
            )

        allow_none = allow_none_fields or set()
        filtered = {k: v for k, v in overrides.items() if v is not None or k in allow_none}
        return replace(self, **filtered) if filtered else self

    def with_env_vars(self) -> Self:
        """
        Return new instance with environment variables applied.

        Reads env vars declared in field metadata and applies them as overrides.
        A field may also declare an `env_fallback` variable, read only when
        its primary variable is not set.

        Raises:
            ConfigEnvVarError: If an env var has an invalid value.
        """
        overrides: dict[str, Any] = {}
        for f in fields(self):
            for env_var in (f.metadata.get("env"), f.metadata.get("env_fallback")):
                if not env_var:
                    continue
                value = EnvVars.get(
                    var_name=env_var,
                    type_hint=f.type,
                    converter=f.metadata.get("converter"),
                )
                if value is not None:
                    overrides[f.name] = value
                    break
        return self.with_overrides(overrides)


# =============================================================================
# Configuration Dataclasses
# =============================================================================


@dataclass(frozen=True)
class AuthConfig(OverridableConfig):
    """
    Credentials and endpoint of the registrar API.

    Attributes:
        username: API username.
            Env var: DROPCATCH_AUTH_USERNAME (fallback: LOOPIA_USERNAME)

        password: API password.
            Env var: DROPCATCH_AUTH_PASSWORD (fallback: LOOPIA_PASSWORD)

        endpoint: XML-RPC endpoint URL.
            Env var: DROPCATCH_AUTH_ENDPOINT

    Example:
        >>> from dropcatch import DROPCATCH
        >>> if DROPCATCH.config.auth.has_credentials():
        ...     print("Credentials configured")
    """

    username: str | None = field(default=None, metadata={"env": "DROPCATCH_AUTH_USERNAME", "env_fallback": "LOOPIA_USERNAME"})
    password: str | None = field(default=None, metadata={"env": "DROPCATCH_AUTH_PASSWORD", "env_fallback": "LOOPIA_PASSWORD"})
    endpoint: str = field(default="https://api.loopia.se/RPCSERV", metadata={"env": "DROPCATCH_AUTH_ENDPOINT"})

    def has_credentials(self) -> bool:
        """Check if both username and password are set."""
        return bool(self.username and self.password)

    def validate(self) -> Self:
        """Validate auth configuration fields."""
        if self.username is not None and self.username == "":
            raise ConfigValidationError(
                "username", self.username,
                "Must not be empty string.", section="auth"
            )
        if self.password is not None and self.password == "":
            raise ConfigValidationError(
                "password", "********",
                "Must not be empty string.", section="auth"
            )
        if not (self.endpoint.startswith("http://") or self.endpoint.startswith("https://")):
            raise ConfigValidationError(
                "endpoint", self.endpoint,
                "Must start with 'http://' or 'https://'.", section="auth"
            )
        return self


@dataclass(frozen=True)
class ClientConfig(OverridableConfig):
    """
    Configuration of the shared rate-limited client.

    Attributes:
        hourly_quota: Maximum remote calls per quota window.
            Env var: DROPCATCH_CLIENT_HOURLY_QUOTA

        quota_window: Quota window length in seconds.
            Env var: DROPCATCH_CLIENT_QUOTA_WINDOW

        request_timeout: HTTP request timeout in seconds.
            Env var: DROPCATCH_CLIENT_REQUEST_TIMEOUT

        dry_run: If True, no request reaches the registrar (timing rehearsal).
            Env var: DROPCATCH_CLIENT_DRY_RUN

        auto_pay: Ask the registrar to pay orders with account credits.
            Env var: DROPCATCH_CLIENT_AUTO_PAY
    """

    hourly_quota: int = field(default=60, metadata={"env": "DROPCATCH_CLIENT_HOURLY_QUOTA"})
    quota_window: float = field(default=3600.0, metadata={"env": "DROPCATCH_CLIENT_QUOTA_WINDOW"})
    request_timeout: int = field(default=15, metadata={"env": "DROPCATCH_CLIENT_REQUEST_TIMEOUT"})
    dry_run: bool = field(default=False, metadata={"env": "DROPCATCH_CLIENT_DRY_RUN"})
    auto_pay: bool = field(default=True, metadata={"env": "DROPCATCH_CLIENT_AUTO_PAY"})

    def validate(self) -> Self:
        """Validate client configuration fields."""
        if self.hourly_quota <= 0:
            raise ConfigValidationError(
                "hourly_quota", self.hourly_quota,
                "Must be greater than 0.", section="client"
            )
        if self.quota_window <= 0:
            raise ConfigValidationError(
                "quota_window", self.quota_window,
                "Must be greater than 0.", section="client"
            )
        if self.request_timeout <= 0:
            raise ConfigValidationError(
                "request_timeout", self.request_timeout,
                "Must be greater than 0.", section="client"
            )
        return self


@dataclass(frozen=True)
class RetryConfig(OverridableConfig):
    """
    Configuration of the two-phase retry policy.

    Attributes:
        fast_retry_count: Number of failures retried at the fast interval.
            Env var: DROPCATCH_RETRY_FAST_RETRY_COUNT

        fast_retry_interval: Delay in seconds during the fast-retry phase.
            Env var: DROPCATCH_RETRY_FAST_RETRY_INTERVAL

        initial_backoff: First delay in seconds of the backoff phase.
            Subsequent delays double until max_backoff.
            Env var: DROPCATCH_RETRY_INITIAL_BACKOFF

        max_backoff: Cap in seconds for the backoff delay.
            Env var: DROPCATCH_RETRY_MAX_BACKOFF

        window: Purchasing window in seconds; a target is abandoned after it.
            Env var: DROPCATCH_RETRY_WINDOW
    """

    fast_retry_count: int = field(default=3, metadata={"env": "DROPCATCH_RETRY_FAST_RETRY_COUNT"})
    fast_retry_interval: float = field(default=0.1, metadata={"env": "DROPCATCH_RETRY_FAST_RETRY_INTERVAL"})
    initial_backoff: float = field(default=1.0, metadata={"env": "DROPCATCH_RETRY_INITIAL_BACKOFF"})
    max_backoff: float = field(default=300.0, metadata={"env": "DROPCATCH_RETRY_MAX_BACKOFF"})
    window: float = field(default=3600.0, metadata={"env": "DROPCATCH_RETRY_WINDOW"})

    def validate(self) -> Self:
        """Validate retry configuration fields."""
        if self.fast_retry_count < 0:
            raise ConfigValidationError(
                "fast_retry_count", self.fast_retry_count,
                "Must be >= 0.", section="retry"
            )
        if self.fast_retry_interval < 0:
            raise ConfigValidationError(
                "fast_retry_interval", self.fast_retry_interval,
                "Must be >= 0.", section="retry"
            )
        if self.initial_backoff <= 0:
            raise ConfigValidationError(
                "initial_backoff", self.initial_backoff,
                "Must be greater than 0.", section="retry"
            )
        if self.max_backoff < self.initial_backoff:
            raise ConfigValidationError(
                "max_backoff", self.max_backoff,
                f"Must be >= initial_backoff ({self.initial_backoff}).", section="retry"
            )
        if self.window <= 0:
            raise ConfigValidationError(
                "window", self.window,
                "Must be greater than 0.", section="retry"
            )
        return self


@dataclass(frozen=True)
class ScheduleConfig(OverridableConfig):
    """
    Configuration of the drop-time scheduler.

    Attributes:
        drop_hour_utc: Hour of day (UTC) at which targets are released.
            Env var: DROPCATCH_SCHEDULE_DROP_HOUR_UTC

        drop_minute_utc: Minute of the hour at which targets are released.
            Env var: DROPCATCH_SCHEDULE_DROP_MINUTE_UTC

        recheck_interval: Maximum length in seconds of a single coarse sleep.
            Env var: DROPCATCH_SCHEDULE_RECHECK_INTERVAL

        pre_trigger_lead: Seconds to fire before the drop instant (network latency offset).
            Env var: DROPCATCH_SCHEDULE_PRE_TRIGGER_LEAD

        start_now: Skip waiting for the drop time.
            Env var: DROPCATCH_SCHEDULE_START_NOW
    """

    drop_hour_utc: int = field(default=4, metadata={"env": "DROPCATCH_SCHEDULE_DROP_HOUR_UTC"})
    drop_minute_utc: int = field(default=0, metadata={"env": "DROPCATCH_SCHEDULE_DROP_MINUTE_UTC"})
    recheck_interval: float = field(default=600.0, metadata={"env": "DROPCATCH_SCHEDULE_RECHECK_INTERVAL"})
    pre_trigger_lead: float = field(default=0.1, metadata={"env": "DROPCATCH_SCHEDULE_PRE_TRIGGER_LEAD"})
    start_now: bool = field(default=False, metadata={"env": "DROPCATCH_SCHEDULE_START_NOW"})

    def validate(self) -> Self:
        """Validate schedule configuration fields."""
        if not 0 <= self.drop_hour_utc <= 23:
            raise ConfigValidationError(
                "drop_hour_utc", self.drop_hour_utc,
                "Must be between 0 and 23.", section="schedule"
            )
        if not 0 <= self.drop_minute_utc <= 59:
            raise ConfigValidationError(
                "drop_minute_utc", self.drop_minute_utc,
                "Must be between 0 and 59.", section="schedule"
            )
        if self.recheck_interval <= 0:
            raise ConfigValidationError(
                "recheck_interval", self.recheck_interval,
                "Must be greater than 0.", section="schedule"
            )
        if not 0 <= self.pre_trigger_lead < 60:
            raise ConfigValidationError(
                "pre_trigger_lead", self.pre_trigger_lead,
                "Must be >= 0 and less than 60 seconds.", section="schedule"
            )
        return self


@dataclass(frozen=True)
class RunConfig(OverridableConfig):
    """
    What to acquire and how to dispatch it.

    Attributes:
        targets: Domain names to acquire.
            Env var: DROPCATCH_RUN_TARGETS (comma separated)

        dispatch_mode: "concurrent" (default) or "sequential".
            Env var: DROPCATCH_RUN_DISPATCH_MODE
    """

    targets: tuple[str, ...] = field(default=(), metadata={"env": "DROPCATCH_RUN_TARGETS", "converter": _parse_targets})
    dispatch_mode: DispatchModeName = field(default="concurrent", metadata={"env": "DROPCATCH_RUN_DISPATCH_MODE"})

    def with_overrides(
        self,
        overrides: dict[str, Any],
        allow_none_fields: set[str] | None = None,
    ) -> Self:
        """
        Return a new instance with specified fields overridden.

        Extends base implementation to normalize `targets`: lists and comma
        separated strings are accepted and turned into a lower-cased tuple.
        """
        if not overrides:
            return self

        processed = dict(overrides)
        targets = processed.get("targets")
        if isinstance(targets, str):
            processed["targets"] = _parse_targets(targets)
        elif targets is not None:
            processed["targets"] = tuple(str(t).strip().lower() for t in targets if str(t).strip())

        return super().with_overrides(processed, allow_none_fields=allow_none_fields)

    def validate(self) -> Self:
        """Validate run configuration fields."""
        valid_modes = ("concurrent", "sequential")
        if self.dispatch_mode not in valid_modes:
            raise ConfigValidationError(
                "dispatch_mode", self.dispatch_mode,
                f"Must be one of: {valid_modes}.", section="run"
            )
        for target in self.targets:
            if not target or any(c.isspace() for c in target):
                raise ConfigValidationError(
                    "targets", target,
                    "Targets must be non-empty domain names without spaces.", section="run"
                )
        return self


@dataclass(frozen=True)
class ConfigEntry:
    """
    A configuration field with its resolved value and source.

    Attributes:
        name: The field name (e.g., "hourly_quota").
        value: The resolved value.
        source: Where the value came from:
            - "default": Hardcoded default value
            - "env:VAR_NAME": Environment variable
            - "file": JSON config file
            - "user": Set via DROPCATCH.configure()

    Example:
        >>> entry = ConfigEntry("hourly_quota", 30, "user")
        >>> entry.formatted_value
        '30'
    """

    name: str
    value: Any
    source: str

    @property
    def formatted_value(self) -> str:
        """
        Return value formatted for display.

        Masks the password (only the last characters are shown) and
        truncates long values.

        Examples:
            >>> ConfigEntry("password", "super-secret-key", "user").formatted_value
            '********-key'
        """
        if self.name == "password" and self.value is not None:
            secret = str(self.value)
            if len(secret) >= 12:
                return f"********{secret[-4:]}"
            return "********"

        if self.value is None:
            return "None"

        if isinstance(self.value, tuple):
            str_value = ", ".join(str(v) for v in self.value) or "-"
        else:
            str_value = str(self.value)

        max_length = 50
        if len(str_value) > max_length:
            return str_value[: max_length - 3] + "..."
        return str_value


@dataclass(frozen=True)
class DropcatchConfigTracker:
    """
    Tracks the source of config field values.

    An immutable tracker that records where each configuration value came from
    (default, env var, config file, or configure()). Used internally by
    DropcatchConfig for debugging via DROPCATCH.explain().

    Attributes:
        sources: Dict tracking source of each field value.
            Structure: {"section": {"field": "source"}}
    """

    sources: dict[str, dict[str, str]] = field(default_factory=dict)

    @staticmethod
    def track_changes(
        source_type: str,
    ) -> Callable[[Callable[..., DropcatchConfig]], Callable[..., DropcatchConfig]]:
        """
        Decorator that tracks config changes made by the decorated method.

        The decorated method must return the new config and may receive the
        per-section overrides as keyword arguments ("user" source).
        """

        def decorator(
            method: Callable[..., DropcatchConfig],
        ) -> Callable[..., DropcatchConfig]:
            @wraps(method)
            def wrapper(self: DropcatchConfig, *args: Any, **kwargs: Any) -> DropcatchConfig:
                new_config = method(self, *args, **kwargs)
                new_tracker = self._tracker.with_changes_tracked(
                    new_config, source_type, overrides=kwargs or new_config._last_overrides
                )
                return replace(new_config, _tracker=new_tracker, _last_overrides={})

            return wrapper

        return decorator

    def with_changes_tracked(
        self,
        new_config: DropcatchConfig,
        source_type: str,
        overrides: dict[str, Any] | None = None,
    ) -> DropcatchConfigTracker:
        """Return new tracker with the fields touched by the source recorded."""
        new_sources = {section: dict(flds) for section, flds in self.sources.items()}

        for section_name in _SECTIONS:
            section_config = getattr(new_config, section_name)
            section_sources = new_sources.setdefault(section_name, {})
            section_overrides = (overrides or {}).get(section_name) or {}

            for f in fields(section_config):
                if source_type == "env":
                    env_var = _env_var_of(section_config, f.name)
                    if env_var:
                        section_sources[f.name] = f"env:{env_var}"
                elif f.name in section_overrides:
                    section_sources[f.name] = source_type

        return DropcatchConfigTracker(sources={k: v for k, v in new_sources.items() if v})


@dataclass(frozen=True)
class DropcatchConfig:
    """
    Global configuration for the dropcatch package.

    Aggregates all configuration sections: auth, client, retry, schedule and run.
    Access via the global `DROPCATCH.config` property.

    Example:
        >>> from dropcatch import DROPCATCH
        >>> DROPCATCH.config.client.hourly_quota
        60
        >>> DROPCATCH.config.retry.fast_retry_count
        3
        >>> DROPCATCH.config.schedule.drop_hour_utc
        4
    """

    auth: AuthConfig = field(default_factory=AuthConfig)
    client: ClientConfig = field(default_factory=ClientConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    run: RunConfig = field(default_factory=RunConfig)
    _tracker: DropcatchConfigTracker = field(default_factory=DropcatchConfigTracker, repr=False)
    _last_overrides: dict[str, dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)

    @DropcatchConfigTracker.track_changes("env")
    def with_env_vars(self) -> DropcatchConfig:
        """
        Return a new config with environment variables applied on top.

        Reads DROPCATCH_* (and the legacy LOOPIA_USERNAME / LOOPIA_PASSWORD)
        environment variables and applies them over the current values.
        """
        return replace(
            self,
            auth=self.auth.with_env_vars(),
            client=self.client.with_env_vars(),
            retry=self.retry.with_env_vars(),
            schedule=self.schedule.with_env_vars(),
            run=self.run.with_env_vars(),
        )

    @DropcatchConfigTracker.track_changes("file")
    def with_file(self, path: Path | str) -> DropcatchConfig:
        """
        Return a new config with the values of a JSON config file applied.

        The file holds one object per section (same shape as the keyword
        arguments of `DROPCATCH.configure()`). The flat `username`,
        `password` and `domains` keys of older config files are also
        understood. Other top-level keys are ignored.

        Args:
            path: Path to the JSON file. A missing file leaves the config unchanged.

        Raises:
            ValueError: If the file is not valid JSON or a section has unknown fields.
        """
        file_path = Path(path)
        if not file_path.exists():
            logger.warning(f"⚠️ Configuration file not found ({file_path}), using environment variables and defaults")
            return self

        try:
            data = json.loads(file_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ValueError(f"Failed to parse config file ({file_path}): {e}") from e

        if not isinstance(data, dict):
            raise ValueError(f"Config file must contain a JSON object ({file_path})")

        sections: dict[str, dict[str, Any]] = {
            name: dict(data.get(name) or {}) for name in _SECTIONS
        }
        if data.get("username"):
            sections["auth"].setdefault("username", data["username"])
        if data.get("password"):
            sections["auth"].setdefault("password", data["password"])
        if data.get("domains"):
            sections["run"].setdefault("targets", data["domains"])

        ignored = set(data) - set(_SECTIONS) - {"username", "password", "domains"}
        if ignored:
            logger.debug(f"Ignoring unknown config file keys: {sorted(ignored)}")

        new_config = self._apply_sections(sections)
        return replace(new_config, _last_overrides={k: v for k, v in sections.items() if v})

    @DropcatchConfigTracker.track_changes("user")
    def with_section_overrides(
        self,
        *,
        auth: dict[str, Any] | None = None,
        client: dict[str, Any] | None = None,
        retry: dict[str, Any] | None = None,
        schedule: dict[str, Any] | None = None,
        run: dict[str, Any] | None = None,
    ) -> DropcatchConfig:
        """
        Return a new config with overrides applied to nested sections.

        Each section dict is merged with the existing section config,
        only overriding the specified fields.
        """
        return self._apply_sections({
            "auth": auth or {},
            "client": client or {},
            "retry": retry or {},
            "schedule": schedule or {},
            "run": run or {},
        })

    def _apply_sections(self, sections: dict[str, dict[str, Any]]) -> DropcatchConfig:
        return replace(
            self,
            auth=self.auth.with_overrides(sections.get("auth") or {}),
            client=self.client.with_overrides(sections.get("client") or {}),
            retry=self.retry.with_overrides(sections.get("retry") or {}),
            schedule=self.schedule.with_overrides(sections.get("schedule") or {}),
            run=self.run.with_overrides(sections.get("run") or {}),
        )

    def explain_data(self) -> dict[str, list[ConfigEntry]]:
        """
        Return config data structured for explain output.

        Returns:
            Dict mapping section names to list of ConfigEntry objects.
        """
        result: dict[str, list[ConfigEntry]] = {}
        for section_name in _SECTIONS:
            section_config = getattr(self, section_name)
            section_sources = self._tracker.sources.get(section_name, {})
            result[section_name] = [
                ConfigEntry(
                    name=f.name,
                    value=getattr(section_config, f.name),
                    source=section_sources.get(f.name, "default"),
                )
                for f in fields(section_config)
            ]
        return result


# =============================================================================
# Global Configuration Singleton
# =============================================================================


class _DROPCATCH:
    """
    Singleton for package configuration.

    Use `DROPCATCH.configure()` to customize settings and `DROPCATCH.config`
    to access current configuration.

    Example:
        >>> from dropcatch import DROPCATCH
        >>> DROPCATCH.configure(auth={"username": "...", "password": "..."})
        >>> print(DROPCATCH.config.retry.window)
    """

    def __init__(self) -> None:
        """Initialize with defaults and environment variables."""
        self._config: DropcatchConfig = DropcatchConfig().with_env_vars()

    def configure(
        self,
        *,
        auth: dict[str, Any] | None = None,
        client: dict[str, Any] | None = None,
        retry: dict[str, Any] | None = None,
        schedule: dict[str, Any] | None = None,
        run: dict[str, Any] | None = None,
        config_file: Path | str | None = None,
        allow_env_override: bool = True,
    ) -> DropcatchConfig:
        """
        Configure package settings.

        Call at application startup to customize defaults. Updates the
        internal configuration and returns the configured instance.

        Args:
            auth: Credentials overrides (username, password, endpoint).
            client: Client overrides (hourly_quota, request_timeout, dry_run, ...).
            retry: Retry policy overrides (fast_retry_count, max_backoff, window, ...).
            schedule: Scheduler overrides (drop_hour_utc, pre_trigger_lead, start_now, ...).
            run: Run overrides (targets, dispatch_mode).
            config_file: Optional JSON config file, applied below the keyword overrides.
            allow_env_override: If True (default), env vars are used as fallback
                for fields NOT provided. If False, ignores env vars entirely.

        Returns:
            The configured DropcatchConfig instance.

        Raises:
            ValueError: If any dict contains unknown field names.
            ConfigValidationError: If any config value fails validation.

        Precedence:
            DROPCATCH.configure() > config file > ENV vars > defaults
        """
        base = DropcatchConfig()
        if allow_env_override:
            base = base.with_env_vars()
        if config_file is not None:
            base = base.with_file(config_file)

        self._config = base.with_section_overrides(
            auth=auth,
            client=client,
            retry=retry,
            schedule=schedule,
            run=run,
        )

        return self.validate()

    @property
    def config(self) -> DropcatchConfig:
        """Access current configuration (read-only)."""
        return self._config

    def reset(self) -> DropcatchConfig:
        """
        Reset configuration to defaults + env vars.

        Useful for testing to ensure clean state between tests.
        """
        self._config = DropcatchConfig().with_env_vars()
        return self.validate()

    def validate(self) -> DropcatchConfig:
        """
        Validate current configuration.

        Raises:
            ConfigValidationError: If any config value is invalid.
        """
        self._config.auth.validate()
        self._config.client.validate()
        self._config.retry.validate()
        self._config.schedule.validate()
        self._config.run.validate()
        return self._config

    def explain(
        self,
        output: Callable[[str], None] = print,
    ) -> None:
        """
        Print current configuration with sources.

        Args:
            output: Callable to output each line. Defaults to print.
                    Can be used with logging: `DROPCATCH.explain(logger.info)`
        """
        name_width = 25
        value_width = 50
        total_width = 2 + name_width + 2 + (value_width + 2) + 1 + 8

        output("DROPCATCH Configuration:")
        output("=" * total_width)
        output(f"  {'Field':<{name_width}} │ {'Value':<{value_width}} │ Source")
        output(f"--{'-' * name_width}-+{'-' * (value_width + 2)}+--------")

        for section_name, entries in self._config.explain_data().items():
            output(f"[{section_name}]")
            for entry in entries:
                dots = "." * (name_width - len(entry.name))
                value_padded = entry.formatted_value.ljust(value_width)
                marker = "✎" if entry.source != "default" else " "
                output(f"  {entry.name} {dots} {value_padded} {marker} {entry.source}")

        output("=" * total_width)

    def __repr__(self) -> str:
        return f"DROPCATCH(config={self._config!r})"


# Global singleton instance - always reflects current configuration
DROPCATCH: _DROPCATCH = _DROPCATCH()
DROPCATCH.validate()  # Validate defaults + env vars on module load
