"""HTTP-01 challenge (RFC 8555 Section 8.3): key authorization and responder."""

import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

from sxg_acme._logging import get_logger
from sxg_acme.crypto import jwk_thumbprint

logger = get_logger(__name__)

CHALLENGE_PATH_PREFIX = "/.well-known/acme-challenge/"


def compute_key_authorization(token: str, public_jwk: dict[str, str]) -> str:
    """Compute the key authorization string.

    The key authorization is the token and the account key thumbprint
    joined by a period. It only depends on the token and the public key.

    Args:
        token: The challenge token from the ACME server.
        public_jwk: The account's public JWK.

    Returns:
        The key authorization string (token.thumbprint).
    """
    return f"{token}.{jwk_thumbprint(public_jwk)}"


class _ResponderServer(ThreadingHTTPServer):
    # Request threads are joined on server_close() so in-flight validation requests finish
    daemon_threads = False
    block_on_close = True

    def __init__(self, address: tuple[str, int], answers: dict[str, str]):
        self.answers = answers
        super().__init__(address, _ChallengeHandler)


class _ChallengeHandler(BaseHTTPRequestHandler):
    server: _ResponderServer

    def do_GET(self) -> None:
        answer = None
        if self.path.startswith(CHALLENGE_PATH_PREFIX):
            token = self.path[len(CHALLENGE_PATH_PREFIX) :]
            answer = self.server.answers.get(token)

        if answer is None:
            self.send_error(404)
            return

        body = answer.encode("ascii")
        self.send_response(200)
        self.send_header("Content-Type", "text/plain")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: object) -> None:
        logger.info(
            "Challenge request",
            extra={"client": self.client_address[0], "request": format % args},
        )


class ChallengeResponder:
    """Serves key authorizations at /.well-known/acme-challenge/{token}.

    Runs an HTTP server on a background thread between start() and stop().

    Args:
        host: Address to bind.
        port: Port to bind; 0 picks a free port (see the port attribute).
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 80):
        self.host = host
        self.port = port
        self._answers: dict[str, str] = {}
        self._server: _ResponderServer | None = None
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._server is not None

    def add(self, token: str, key_authorization: str) -> None:
        """Serve key_authorization for token (also while running)."""
        self._answers[token] = key_authorization

    def start(self) -> None:
        if self._server is not None:
            return
        self._server = _ResponderServer((self.host, self.port), self._answers)
        self.port = self._server.server_address[1]
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            name="acme-challenge-responder",
        )
        self._thread.start()
        logger.info("Challenge responder listening", extra={"host": self.host, "port": self.port})

    def stop(self) -> None:
        """Stop accepting connections, let in-flight requests finish, release the port."""
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join()
        self._server = None
        self._thread = None
        logger.info("Challenge responder stopped", extra={"port": self.port})

    def __enter__(self) -> "ChallengeResponder":
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.stop()
