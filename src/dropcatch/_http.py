"""
Remote transport abstraction for the registrar XML-RPC API.

Every remote operation used by dropcatch is an XML-RPC method call whose
first two parameters are the account credentials. The transport is the only
place that knows about the wire format; everything above it deals with plain
Python values and the exception taxonomy defined here.

Available implementations:
    - XmlRpcTransport: Real XML-RPC over HTTPS using `requests`.
    - DryRunTransport: Logs the call and pretends it succeeded (timing rehearsals).

Example:
    >>> from dropcatch._http import XmlRpcTransport
    >>> transport = XmlRpcTransport(username="user@loopiaapi", password="secret")
    >>> transport.call("getDomain", ["example.se"])
    {'domain': 'example.se', 'reference_no': 123456, ...}
"""

import logging
import sys
import xmlrpc.client
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any
from xml.parsers.expat import ExpatError

if sys.version_info >= (3, 12):
    from typing import override
else:
    from typing_extensions import override

import requests

from dropcatch._retry import RetryableError

logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    from dropcatch._config import AuthConfig, ClientConfig


DEFAULT_ENDPOINT = "https://api.loopia.se/RPCSERV"

# Status strings returned by the registrar instead of a struct or "OK".
AUTHORITATIVE_STATUSES = frozenset({"AUTH_ERROR", "RATE_LIMITED"})
ERROR_STATUSES = frozenset({
    "DOMAIN_OCCUPIED",
    "BAD_INDATA",
    "UNKNOWN_ERROR",
    "INSUFFICIENT_FUNDS",
})

# HTTP status codes that mean the registrar refuses to talk to us at all.
AUTHORITATIVE_HTTP_CODES = frozenset({401, 429})


# =============================================================================
# Exceptions
# =============================================================================


class TransportError(RetryableError):
    """
    Raised when the remote call could not be completed at the network level.

    Covers connection failures, timeouts and non-authoritative HTTP errors
    (e.g. 502, 503). These are transient by nature and drive the normal retry
    cadence.

    Attributes:
        method: The remote method being called.
        status_code: HTTP status code, if a response was received.
    """

    def __init__(self, message: str, method: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.method = method
        self.status_code = status_code


class AuthoritativeRejectionError(Exception):
    """
    Raised when the registrar rejects the caller itself.

    This happens on authentication failures (HTTP 401 / `AUTH_ERROR`) and on
    remote rate limiting (HTTP 429 / `RATE_LIMITED`). The RateLimitedClient
    latches permanently when it sees this error, so it deliberately does NOT
    extend RetryableError.

    Attributes:
        method: The remote method being called.
        reason: The status string or HTTP reason that caused the rejection.
        status_code: HTTP status code, if the rejection came from the HTTP layer.
    """

    def __init__(self, method: str, reason: str, status_code: int | None = None):
        self.method = method
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"Registrar rejected `{method}`: {reason}")


class RemoteOperationError(RetryableError):
    """
    Raised when the registrar answers with a non-OK status for an operation.

    Typical statuses are `DOMAIN_OCCUPIED` (not released yet, or taken by
    someone else) and `UNKNOWN_ERROR`. XML-RPC faults are reported the same way.

    Attributes:
        method: The remote method being called.
        status: The status string (or fault description) returned.
    """

    def __init__(self, method: str, status: str):
        self.method = method
        self.status = status
        super().__init__(f"Remote operation `{method}` failed with status: {status}")


class MalformedResponseError(RetryableError):
    """
    Raised when a response does not have the expected shape.

    Attributes:
        method: The remote method being called.
        response: The unexpected payload (or raw body), for diagnostics.
    """

    def __init__(self, method: str, message: str, response: Any = None):
        self.method = method
        self.response = response
        super().__init__(f"Malformed response from `{method}`: {message}")


# =============================================================================
# Abstract Base Class
# =============================================================================


class RpcTransport(ABC):
    """
    Abstract base class for registrar transports.

    Implementations receive the method name and its business parameters,
    add authentication, perform the call and either return the decoded reply
    or raise one of the exceptions of this module.

    Example:
        >>> class StaticTransport(RpcTransport):
        ...     def call(self, method, params):
        ...         return "OK"
    """

    @abstractmethod
    def call(self, method: str, params: list[Any]) -> Any:
        """
        Invoke a remote method.

        Args:
            method: The remote method name (e.g. "orderDomain").
            params: Positional business parameters (credentials excluded).

        Returns:
            The decoded reply.

        Raises:
            TransportError: On network errors or non-authoritative HTTP errors.
            AuthoritativeRejectionError: On authentication or rate-limit rejections.
            RemoteOperationError: On non-OK status strings and XML-RPC faults.
            MalformedResponseError: When the body cannot be decoded.
        """
        pass


# =============================================================================
# XML-RPC Implementation
# =============================================================================


class XmlRpcTransport(RpcTransport):
    """
    XML-RPC transport over HTTPS.

    Serializes calls with `xmlrpc.client`, sends them with `requests` and maps
    every failure mode onto the dropcatch exception taxonomy.

    Args:
        username: API username, prepended to every call.
        password: API password, prepended to every call.
        endpoint: XML-RPC endpoint URL.
        timeout: HTTP request timeout in seconds.
    """

    def __init__(
        self,
        username: str,
        password: str,
        endpoint: str = DEFAULT_ENDPOINT,
        timeout: int = 15,
    ):
        assert username, "username cannot be empty."
        assert password, "password cannot be empty."
        assert endpoint, "endpoint cannot be empty."
        assert timeout > 0, "timeout must be greater than 0."

        self.username = username
        self._password = password
        self.endpoint = endpoint
        self.timeout = timeout

    @override
    def call(self, method: str, params: list[Any]) -> Any:
        assert method, "method cannot be empty."

        body = xmlrpc.client.dumps(
            (self.username, self._password, *params),
            methodname=method,
            allow_none=True,
        )
        try:
            response = requests.post(
                self.endpoint,
                data=body.encode("utf-8"),
                headers={"Content-Type": "text/xml"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TransportError(f"Transport failure calling `{method}`: {e}", method=method) from e

        if response.status_code in AUTHORITATIVE_HTTP_CODES:
            raise AuthoritativeRejectionError(
                method=method,
                reason=f"HTTP {response.status_code}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise TransportError(
                f"HTTP {response.status_code} calling `{method}`",
                method=method,
                status_code=response.status_code,
            )

        try:
            values, _ = xmlrpc.client.loads(response.content)
        except xmlrpc.client.Fault as e:
            raise RemoteOperationError(method, f"fault {e.faultCode}: {e.faultString}") from e
        except (ExpatError, xmlrpc.client.ResponseError, ValueError) as e:
            raise MalformedResponseError(method, str(e), response=response.content) from e

        reply = values[0] if values else None
        return check_reply_status(method, reply)


def check_reply_status(method: str, reply: Any) -> Any:
    """
    Translate registrar status strings into exceptions.

    Structs and `"OK"` are returned unchanged; known error statuses raise.

    Raises:
        AuthoritativeRejectionError: For `AUTH_ERROR` and `RATE_LIMITED`.
        RemoteOperationError: For any other known error status.
    """
    if isinstance(reply, str):
        if reply in AUTHORITATIVE_STATUSES:
            raise AuthoritativeRejectionError(method=method, reason=reply)
        if reply in ERROR_STATUSES:
            raise RemoteOperationError(method, reply)
    return reply


# =============================================================================
# Dry-Run Implementation
# =============================================================================


class DryRunTransport(RpcTransport):
    """
    Transport that never contacts the registrar.

    Every call is logged and answered as a success: `"OK"` for commands and an
    empty struct for `getDomain`, so no settlement is attempted. Useful to
    rehearse the drop timing end to end.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, list[Any]]] = []

    @override
    def call(self, method: str, params: list[Any]) -> Any:
        self.calls.append((method, list(params)))
        logger.info(f"[DRY-RUN] Remote call `{method}` simulated with params={params}")
        if method == "getDomain":
            return {}
        return "OK"


def create_transport(
    auth: "AuthConfig | None" = None,
    client: "ClientConfig | None" = None,
) -> RpcTransport:
    """
    Create a transport from configuration.

    Args:
        auth: Authentication config. If None, uses global config.
        client: Client config. If None, uses global config.

    Returns:
        DryRunTransport when `client.dry_run` is set, XmlRpcTransport otherwise.

    Raises:
        ValueError: If credentials are missing and dry-run is disabled.
    """
    if auth is None or client is None:
        from dropcatch._config import DROPCATCH
        auth = auth or DROPCATCH.config.auth
        client = client or DROPCATCH.config.client

    if client.dry_run:
        logger.warning("⚠️ Dry-run mode enabled: no request will reach the registrar.")
        return DryRunTransport()

    if not auth.has_credentials():
        raise ValueError(
            "No credentials found. Set them with DROPCATCH.configure(auth=...) or the "
            "DROPCATCH_AUTH_USERNAME/DROPCATCH_AUTH_PASSWORD environment variables."
        )

    assert auth.username is not None and auth.password is not None
    return XmlRpcTransport(
        username=auth.username,
        password=auth.password,
        endpoint=auth.endpoint,
        timeout=client.request_timeout,
    )
