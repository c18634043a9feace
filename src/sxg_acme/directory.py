"""ACME directory discovery."""

import json

from pydantic import ValidationError

from sxg_acme._logging import get_logger
from sxg_acme.exceptions import ProtocolError
from sxg_acme.fetcher import Fetcher, HttpRequest
from sxg_acme.models import Directory

logger = get_logger(__name__)


def parse_directory(data: object) -> Directory:
    """Validate a decoded directory document.

    Raises:
        ProtocolError: If it is not an object or misses required endpoints.
    """
    if not isinstance(data, dict):
        raise ProtocolError(type="unknown", detail="Directory is not a JSON object")
    try:
        return Directory.model_validate(data)
    except ValidationError as e:
        missing = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
        raise ProtocolError(
            type="unknown",
            detail=f"Directory is missing or has invalid fields: {', '.join(missing)}",
        ) from e


def from_url(server_url: str, fetcher: Fetcher) -> Directory:
    """Fetch and parse the directory at server_url.

    Side-effect free; callers should still cache the result per session.

    Raises:
        TransportError: If the server could not be reached.
        ProtocolError: If the response is not a usable directory.
    """
    response = fetcher.fetch(HttpRequest(method="GET", url=server_url))
    if not response.ok:
        raise ProtocolError(
            type="unknown",
            detail=f"Fetching directory {server_url} returned status {response.status}",
            status_code=response.status,
        )
    try:
        data = response.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(
            type="unknown",
            detail=f"Directory {server_url} is not JSON",
            status_code=response.status,
        ) from e

    directory = parse_directory(data)
    logger.debug(
        "Directory fetched",
        extra={
            "url": server_url,
            "external_account_required": directory.external_account_required,
        },
    )
    return directory
