"""HTTP capability used by the ACME core, and its httpx realization."""

import json
from abc import ABC, abstractmethod
from typing import Any

import httpx
from pydantic import BaseModel, field_validator

from sxg_acme._logging import Timer, get_logger
from sxg_acme.exceptions import TransportError

logger = get_logger(__name__)


class HttpRequest(BaseModel):
    """An outgoing HTTP request."""

    method: str = "GET"
    url: str
    headers: dict[str, str] = {}
    body: bytes = b""


class HttpResponse(BaseModel):
    """A received HTTP response. Header names are stored lowercase."""

    status: int
    headers: dict[str, str] = {}
    body: bytes = b""

    @field_validator("headers")
    @classmethod
    def _lowercase_names(cls, value: dict[str, str]) -> dict[str, str]:
        return {name.lower(): v for name, v in value.items()}

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def text(self) -> str:
        return self.body.decode("utf-8")

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())

    def json(self) -> Any:
        """Decode the body as JSON.

        Raises:
            json.JSONDecodeError: If the body is not JSON.
        """
        return json.loads(self.body)


class Fetcher(ABC):
    """Abstract HTTP transport.

    Implementations perform exactly one HTTP exchange per call and raise
    TransportError when no response could be obtained. Any HTTP status,
    including 4xx and 5xx, is a response and must be returned.
    """

    @abstractmethod
    def fetch(self, request: HttpRequest) -> HttpResponse:
        """Send the request and return the response.

        Raises:
            TransportError: If the exchange failed at the network level.
        """
        ...


class HttpxFetcher(Fetcher):
    """Fetcher backed by an httpx.Client.

    Args:
        verify: CA bundle path, False to disable verification, or
                None/True for default verification.
        timeout: Per-request timeout in seconds.
    """

    def __init__(self, verify: str | bool | None = None, timeout: float = 30):
        verify = True if verify is None else verify
        self._http = httpx.Client(verify=verify, timeout=timeout)

    def close(self) -> None:
        """Close the HTTP client."""
        self._http.close()

    def __enter__(self) -> "HttpxFetcher":
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def fetch(self, request: HttpRequest) -> HttpResponse:
        try:
            with Timer() as t:
                response = self._http.request(
                    request.method,
                    request.url,
                    headers=request.headers,
                    content=request.body or None,
                )
        except httpx.HTTPError as e:
            logger.warning(
                "HTTP request failed",
                extra={"method": request.method, "url": request.url, "error": str(e)},
            )
            raise TransportError(f"{request.method} {request.url} failed: {e}", request.url) from e

        logger.debug(
            "HTTP request completed",
            extra={
                "method": request.method,
                "url": request.url,
                "status_code": response.status_code,
                "elapsed_ms": round(t.elapsed_ms, 1),
            },
        )
        return HttpResponse(
            status=response.status_code,
            headers=dict(response.headers),
            body=response.content,
        )
