"""
A single logical acquisition attempt.

An attempt is two dependent steps executed through the shared
RateLimitedClient:

1. claim: order the domain, asking the registrar to pay with account credits;
2. settle: look up the domain and, if an invoice is still pending, pay it.

Settlement is never attempted unless the claim of the same attempt succeeded.
"""

import logging
from collections.abc import Mapping
from typing import Any

from dropcatch._http import MalformedResponseError
from dropcatch._rate_limit import ClientLatchedError, RateLimitedClient
from dropcatch._utils import tracking_prefix

logger = logging.getLogger(__name__)

CLAIM_METHOD = "orderDomain"
STATUS_METHOD = "getDomain"
SETTLE_METHOD = "payInvoiceUsingCredits"


class AcquisitionAttempt:
    """
    Claim-then-settle operation for one target.

    Example:
        >>> attempt = AcquisitionAttempt(client)
        >>> attempt.attempt("example.se")  # raises on failure

    Args:
        client: The shared rate-limited client.
        auto_pay: Ask the registrar to pay the order with account credits.
    """

    def __init__(self, client: RateLimitedClient, auto_pay: bool = True):
        assert client is not None, "RateLimitedClient is required."

        self.client = client
        self.auto_pay = auto_pay

    def attempt(self, target: str) -> None:
        """
        Try to acquire the target once.

        Args:
            target: The domain name to acquire.

        Raises:
            ClientLatchedError: If the client is latched (no call is made).
            Exception: The first error raised by the claim, status or settle call.
        """
        assert target, "Target cannot be empty."
        prefix = tracking_prefix(target)

        if self.client.is_latched:
            reason = self.client.state.latch_reason or "unknown"
            logger.error(f"{prefix} Aborting attempt due to previous rejection ({reason})")
            raise ClientLatchedError(reason)

        self.claim(target)
        self.settle_if_pending(target)

    def claim(self, target: str) -> None:
        """Order the target."""
        logger.info(f"{tracking_prefix(target)} Attempting to order domain")
        self.client.invoke(CLAIM_METHOD, target, self.auto_pay)
        logger.info(f"{tracking_prefix(target)} Domain order successful")

    def settle_if_pending(self, target: str) -> None:
        """Pay the target's pending invoice, if there is one."""
        prefix = tracking_prefix(target)

        reference = self.pending_reference(target)
        if reference is None:
            logger.info(f"{prefix} No invoice to pay")
            return

        logger.info(f"{prefix} Attempting to pay invoice (reference={reference})")
        self.client.invoke(SETTLE_METHOD, reference)
        logger.info(f"{prefix} Invoice payment successful (reference={reference})")

    def pending_reference(self, target: str) -> str | None:
        """
        Query the target's status and extract the pending invoice reference.

        Raises:
            MalformedResponseError: If the status reply is not a struct.
        """
        reply = self.client.invoke(STATUS_METHOD, target)
        if not isinstance(reply, Mapping):
            raise MalformedResponseError(STATUS_METHOD, "expected a struct", response=reply)
        return _normalize_reference(reply.get("reference_no"))


def _normalize_reference(value: Any) -> str | None:
    # The registrar reports "no invoice" as a missing key, an empty string or 0.
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value) if value > 0 else None
    reference = str(value).strip()
    return reference or None
