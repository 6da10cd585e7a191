"""
dropcatch: catch expiring domains the moment the registry releases them.

Expiring .se/.nu domains are released at a fixed time of day. dropcatch waits
for that instant and then tries to order (and pay for) every target through
the registrar XML-RPC API, retrying quickly at first and backing off later,
while keeping the whole run within the registrar's hourly call quota.

Quick Start:
    >>> from dropcatch import DROPCATCH, DropCatcher
    >>> DROPCATCH.configure(
    ...     auth={"username": "user@loopiaapi", "password": "secret"},
    ...     run={"targets": ("example.se", "example.nu")},
    ... )
    >>> summary = DropCatcher.from_config().catch()
    >>> print(f"{summary.succeeded}/{summary.total} acquired")

Global Configuration:
    >>> from dropcatch import DROPCATCH
    >>>
    >>> # Pre-loaded with defaults + env vars
    >>> quota = DROPCATCH.config.client.hourly_quota
    >>>
    >>> # Custom configuration
    >>> DROPCATCH.configure(
    ...     client={"hourly_quota": 30, "dry_run": True},
    ...     retry={"fast_retry_count": 5, "window": 1800.0},
    ...     schedule={"start_now": True},
    ... )

Main Classes:
    - DropCatcher: Orchestrates one retry coordinator per target.
    - RateLimitedClient: Shared client enforcing the hourly quota and the fault latch.
    - AcquisitionAttempt: Claim-then-settle operation for one target.
    - RetryCoordinator: Two-phase retry loop for one target.
    - RetryPolicy: Parameters of the two-phase retry policy.
    - CancellationScope: Per-target bounded scope (purchasing window).
    - DropScheduler: Computes the drop instant and sleeps until it.

Models:
    - AcquisitionResult, AttemptRecord, AttemptOutcome, RunSummary, DispatchMode, ClientState.

Transports:
    - RpcTransport, XmlRpcTransport, DryRunTransport, create_transport.

Event Listeners:
    - DropEventListener, MetricsListener, FileLoggingListener.

Configuration:
    - DROPCATCH: Global singleton for configuration.
    - DropcatchConfig, AuthConfig, ClientConfig, RetryConfig, ScheduleConfig, RunConfig.
    - ConfigEntry, ConfigEnvVarError, ConfigValidationError.

Errors:
    - RetryableError: Base class of transient failures.
    - TransportError, QuotaExceededError, RemoteOperationError, MalformedResponseError.
    - AuthoritativeRejectionError, ClientLatchedError: Fatal for the client instance.
    - DeadlineExceededError, AcquisitionCancelledError: Terminal causes of a failed target.
"""

from importlib.metadata import version as _get_version

__version__ = _get_version("dropcatch")

from dropcatch._attempt import AcquisitionAttempt
from dropcatch._config import (
    DROPCATCH,
    AuthConfig,
    ClientConfig,
    ConfigEntry,
    ConfigEnvVarError,
    ConfigValidationError,
    DropcatchConfig,
    RetryConfig,
    RunConfig,
    ScheduleConfig,
)
from dropcatch._event_listeners import (
    DropEventListener,
    FileLoggingListener,
    MetricsListener,
)
from dropcatch._http import (
    AuthoritativeRejectionError,
    DryRunTransport,
    MalformedResponseError,
    RemoteOperationError,
    RpcTransport,
    TransportError,
    XmlRpcTransport,
    create_transport,
)
from dropcatch._models import (
    AcquisitionResult,
    AttemptOutcome,
    AttemptRecord,
    DispatchMode,
    RunSummary,
)
from dropcatch._orchestrator import DropCatcher
from dropcatch._rate_limit import (
    ClientLatchedError,
    ClientState,
    QuotaExceededError,
    RateLimitedClient,
)
from dropcatch._retry import (
    AcquisitionCancelledError,
    CancellationScope,
    DeadlineExceededError,
    RetryableError,
    RetryCoordinator,
    RetryPhase,
    RetryPolicy,
    RetryState,
)
from dropcatch._scheduler import DropScheduler

__all__ = [
    "__version__",
    # Configuration
    "DROPCATCH",
    "DropcatchConfig",
    "ConfigEntry",
    "ConfigEnvVarError",
    "ConfigValidationError",
    "AuthConfig",
    "ClientConfig",
    "RetryConfig",
    "ScheduleConfig",
    "RunConfig",
    # Orchestration
    "DropCatcher",
    "DropScheduler",
    "AcquisitionAttempt",
    # Client
    "RateLimitedClient",
    "ClientState",
    "QuotaExceededError",
    "ClientLatchedError",
    # Transports
    "RpcTransport",
    "XmlRpcTransport",
    "DryRunTransport",
    "create_transport",
    "TransportError",
    "AuthoritativeRejectionError",
    "RemoteOperationError",
    "MalformedResponseError",
    # Retry
    "RetryPolicy",
    "RetryPhase",
    "RetryState",
    "RetryCoordinator",
    "CancellationScope",
    "RetryableError",
    "DeadlineExceededError",
    "AcquisitionCancelledError",
    # Models
    "AcquisitionResult",
    "AttemptRecord",
    "AttemptOutcome",
    "RunSummary",
    "DispatchMode",
    # Event Listeners
    "DropEventListener",
    "MetricsListener",
    "FileLoggingListener",
]
