"""Anti-replay nonce bookkeeping (RFC 8555 Section 7.2)."""

from sxg_acme._logging import get_logger
from sxg_acme.exceptions import ProtocolError
from sxg_acme.fetcher import Fetcher, HttpRequest, HttpResponse

logger = get_logger(__name__)

REPLAY_NONCE = "Replay-Nonce"


class NonceSource:
    """Hands out each server nonce at most once.

    The most recent Replay-Nonce seen on any response is cached; when no
    unused nonce is cached, a fresh one is requested from newNonce.

    Args:
        new_nonce_url: The directory's newNonce endpoint.
        fetcher: HTTP transport.
    """

    def __init__(self, new_nonce_url: str, fetcher: Fetcher):
        self.new_nonce_url = new_nonce_url
        self.fetcher = fetcher
        self._cached: str | None = None
        self._used: set[str] = set()

    def update(self, response: HttpResponse) -> None:
        """Remember the nonce carried by a response, if any and unused."""
        nonce = response.header(REPLAY_NONCE)
        if nonce and nonce not in self._used:
            self._cached = nonce

    def discard(self) -> None:
        """Forget the cached nonce so the next call fetches a new one."""
        self._cached = None

    def next(self) -> str:
        """Return a nonce that has not been handed out before.

        Raises:
            TransportError: If fetching a new nonce failed.
            ProtocolError: If the server did not supply a fresh nonce.
        """
        nonce = self._cached
        self._cached = None
        if nonce is None:
            nonce = self._fetch()
        self._used.add(nonce)
        return nonce

    def _fetch(self) -> str:
        response = self.fetcher.fetch(HttpRequest(method="HEAD", url=self.new_nonce_url))
        nonce = response.header(REPLAY_NONCE)
        if not response.ok or not nonce:
            raise ProtocolError(
                type="unknown",
                detail=f"newNonce returned status {response.status} without a usable nonce",
                status_code=response.status,
            )
        if nonce in self._used:
            raise ProtocolError(
                type="unknown",
                detail="Server handed out a nonce that was already used",
                status_code=response.status,
            )
        logger.debug("Fetched new nonce", extra={"url": self.new_nonce_url})
        return nonce
