"""Exceptions raised by sxg_acme."""

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

BAD_NONCE = "urn:ietf:params:acme:error:badNonce"
RATE_LIMITED = "urn:ietf:params:acme:error:rateLimited"
EXTERNAL_ACCOUNT_REQUIRED = "urn:ietf:params:acme:error:externalAccountRequired"


class SxgAcmeError(Exception):
    """Base class of every error raised by this package."""


class ConfigurationError(SxgAcmeError):
    """Malformed or incomplete user input.

    Raised before any network traffic whenever possible, e.g. when only one
    of the two external account binding values is given or a PEM file does
    not contain the expected block.
    """


class TransportError(SxgAcmeError):
    """The HTTP exchange itself failed (DNS, connect, TLS, timeout)."""

    def __init__(self, message: str, url: str | None = None):
        self.url = url
        super().__init__(message)


class ProtocolError(SxgAcmeError):
    """The ACME server rejected a request.

    Represents errors returned by the ACME server in the standard
    problem document format (RFC 7807).
    """

    def __init__(
        self,
        type: str,
        detail: str,
        status_code: int | None = None,
        subproblems: list[dict[str, Any]] | None = None,
        retry_after: int | None = None,
    ):
        self.type = type
        self.detail = detail
        self.status_code = status_code
        self.subproblems = subproblems
        self.retry_after = retry_after
        super().__init__(f"{type}: {detail}")

    @classmethod
    def from_response(
        cls,
        data: dict[str, Any],
        status_code: int,
        headers: dict[str, str] | None = None,
        now: datetime | None = None,
    ) -> "ProtocolError":
        """Create a ProtocolError from a problem document.

        Routes to the matching subclass based on the problem type.

        Args:
            data: Parsed JSON problem document.
            status_code: HTTP status code.
            headers: Response headers (for Retry-After extraction).
            now: Reference time for an HTTP-date Retry-After.

        Returns:
            ProtocolError instance (or appropriate subclass).
        """
        retry_after = parse_retry_after(headers.get("retry-after"), now) if headers else None
        error_type = data.get("type", "unknown")

        kwargs: dict[str, Any] = {
            "type": error_type,
            "detail": data.get("detail", "Unknown error"),
            "status_code": status_code,
            "subproblems": data.get("subproblems"),
            "retry_after": retry_after,
        }

        if error_type == BAD_NONCE:
            return BadNonceError(**kwargs)
        elif error_type == RATE_LIMITED:
            return RateLimitError(**kwargs)
        elif error_type == EXTERNAL_ACCOUNT_REQUIRED:
            return ExternalAccountRequiredError(**kwargs)

        return cls(**kwargs)


class BadNonceError(ProtocolError):
    """The nonce was rejected (urn:ietf:params:acme:error:badNonce)."""


class RateLimitError(ProtocolError):
    """Rate limit exceeded (urn:ietf:params:acme:error:rateLimited)."""


class ExternalAccountRequiredError(ProtocolError):
    """Server insists on external account binding."""


class OrderFailedError(SxgAcmeError):
    """The order (or one of its authorizations) reached status invalid.

    Terminal: a new order is needed to try again.
    """

    def __init__(self, reason: str, order_url: str | None = None):
        self.reason = reason
        self.order_url = order_url
        super().__init__(f"Order failed: {reason}")


class RetryExhaustedError(SxgAcmeError):
    """The poll loop gave up before a certificate was issued."""

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"No certificate after {attempts} attempts")


def parse_retry_after(value: str | None, now: datetime | None = None) -> int | None:
    """Parse a Retry-After header (seconds or HTTP-date).

    Args:
        value: Retry-After header value.
        now: Reference time for HTTP-date values; defaults to the wall clock.

    Returns:
        Seconds to wait, or None if not parseable.
    """
    if not value:
        return None
    try:
        return max(0, int(value))
    except ValueError:
        pass
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if now is None:
        now = datetime.now(timezone.utc)
    return max(0, int((dt - now).total_seconds()))
