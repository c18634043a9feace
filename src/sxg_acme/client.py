"""Signed ACME requests on top of the Fetcher and Signer capabilities."""

import json
from datetime import datetime
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from sxg_acme._logging import get_domain_extra, get_logger
from sxg_acme.crypto import base64url_encode
from sxg_acme.exceptions import BadNonceError, ProtocolError
from sxg_acme.fetcher import Fetcher, HttpRequest, HttpResponse
from sxg_acme.jws import create_jws
from sxg_acme.models import AccountResource, Authorization, Challenge, Directory, Order
from sxg_acme.nonce import NonceSource
from sxg_acme.signer import Signer

logger = get_logger(__name__)

ResourceT = TypeVar("ResourceT", bound=BaseModel)

JOSE_CONTENT_TYPE = "application/jose+json"
PEM_CHAIN_CONTENT_TYPE = "application/pem-certificate-chain"


class AcmeClient:
    """Sends JWS-signed requests to one ACME server.

    Lives for the duration of one state machine call; nothing here is
    meant to survive between calls.

    Args:
        directory: The server's directory.
        fetcher: HTTP transport.
        signer: Signer bound to the account key.
        account_url: The account URL ("kid"). None until the account
                     exists, in which case requests carry the public JWK.
        now: Reference time for HTTP-date Retry-After values in errors;
             the wall clock when None.
    """

    def __init__(
        self,
        directory: Directory,
        fetcher: Fetcher,
        signer: Signer,
        account_url: str | None = None,
        now: datetime | None = None,
    ):
        self.directory = directory
        self.fetcher = fetcher
        self.signer = signer
        self.account_url = account_url
        self.now = now
        self.nonces = NonceSource(directory.new_nonce, fetcher)

    def signed_request(
        self,
        url: str,
        payload: Any,
        use_kid: bool = True,
        accept: str | None = None,
    ) -> HttpResponse:
        """Make a JWS-signed POST request to the ACME server.

        A badNonce rejection is retried exactly once with a fresh nonce.

        Args:
            url: The endpoint URL.
            payload: The request payload (dict for JSON, "" for POST-as-GET).
            use_kid: If True, use kid (account URL) in JWS header.
                     If False, use jwk (for new account registration).
            accept: Optional Accept header value.

        Returns:
            The HTTP response.

        Raises:
            ProtocolError: If the ACME server returns an error.
            TransportError: If the request could not be sent.
        """
        try:
            return self._send(url, payload, use_kid, accept)
        except BadNonceError:
            logger.info("Nonce rejected, retrying once", extra={"url": url, **get_domain_extra()})
            return self._send(url, payload, use_kid, accept)

    def _send(self, url: str, payload: Any, use_kid: bool, accept: str | None) -> HttpResponse:
        if use_kid:
            if not self.account_url:
                raise ValueError("Account URL unknown; create the account first")
            auth: str | dict[str, str] = self.account_url
        else:
            jwk = self.signer.public_jwk()
            if jwk is None:
                raise ValueError("Signer has no public key to embed")
            auth = jwk

        jws = create_jws(
            algorithm=self.signer.algorithm,
            auth=auth,
            nonce=self.nonces.next(),
            url=url,
            payload=payload,
            signer=self.signer,
        )
        headers = {"Content-Type": JOSE_CONTENT_TYPE}
        if accept:
            headers["Accept"] = accept

        response = self.fetcher.fetch(
            HttpRequest(
                method="POST",
                url=url,
                headers=headers,
                body=jws.model_dump_json().encode("utf-8"),
            )
        )

        # Every response carries the next nonce, error responses included
        self.nonces.update(response)

        if not response.ok:
            raise self._error_from(response)
        return response

    def _error_from(self, response: HttpResponse) -> ProtocolError:
        try:
            data = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            data = None
        if not isinstance(data, dict):
            return ProtocolError(
                type="unknown",
                detail=response.body.decode("utf-8", errors="replace") or "Empty error response",
                status_code=response.status,
            )
        return ProtocolError.from_response(
            data, response.status, headers=response.headers, now=self.now
        )

    @staticmethod
    def _json_object(response: HttpResponse) -> dict[str, Any]:
        try:
            data = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ProtocolError(
                type="unknown",
                detail="Expected a JSON response body",
                status_code=response.status,
            ) from e
        if not isinstance(data, dict):
            raise ProtocolError(
                type="unknown", detail="Expected a JSON object", status_code=response.status
            )
        return data

    @classmethod
    def _parse(cls, response: HttpResponse, model: type[ResourceT]) -> ResourceT:
        data = cls._json_object(response)
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise ProtocolError(
                type="unknown",
                detail=f"Malformed {model.__name__} from server: {e.error_count()} invalid field(s)",
                status_code=response.status,
            ) from e

    @staticmethod
    def _location(response: HttpResponse, what: str) -> str:
        location = response.header("Location")
        if not location:
            raise ProtocolError(
                type="unknown",
                detail=f"Server did not return the {what} URL",
                status_code=response.status,
            )
        return location

    def new_account(
        self,
        email: str,
        external_account_binding: dict[str, str] | None = None,
    ) -> tuple[str, AccountResource]:
        """Register an account for the signer's key (RFC 8555 Section 7.3).

        Returns:
            The account URL and the account object. The account URL is also
            kept on the client for subsequent "kid" requests.
        """
        payload: dict[str, Any] = {
            "termsOfServiceAgreed": True,
            "contact": [f"mailto:{email}"],
        }
        if external_account_binding is not None:
            payload["externalAccountBinding"] = external_account_binding

        response = self.signed_request(self.directory.new_account, payload, use_kid=False)
        self.account_url = self._location(response, "account")
        return self.account_url, self._parse(response, AccountResource)

    def new_order(self, domain: str) -> tuple[str, Order]:
        """Create a new order for a single DNS identifier.

        Returns:
            The order URL and the Order resource.
        """
        payload = {"identifiers": [{"type": "dns", "value": domain}]}
        response = self.signed_request(self.directory.new_order, payload)
        order_url = self._location(response, "order")
        return order_url, self._parse(response, Order)

    def fetch_order(self, order_url: str) -> tuple[Order, HttpResponse]:
        """POST-as-GET an order; the raw response is returned for Retry-After."""
        response = self.signed_request(order_url, "")
        return self._parse(response, Order), response

    def fetch_authorization(self, authz_url: str) -> Authorization:
        response = self.signed_request(authz_url, "")
        return self._parse(response, Authorization)

    def respond_challenge(self, challenge_url: str) -> Challenge:
        """Tell the server the challenge response is in place."""
        response = self.signed_request(challenge_url, {})
        return self._parse(response, Challenge)

    def finalize_order(self, finalize_url: str, csr_der: bytes) -> Order:
        """Submit the DER CSR to the order's finalize URL."""
        payload = {"csr": base64url_encode(csr_der)}
        response = self.signed_request(finalize_url, payload)
        return self._parse(response, Order)

    def download_certificate(self, certificate_url: str) -> str:
        """Download the certificate chain in PEM format."""
        response = self.signed_request(certificate_url, "", accept=PEM_CHAIN_CONTENT_TYPE)
        return response.text
