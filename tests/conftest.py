"""Pytest fixtures for the sxg_acme test suite."""

import base64
import hashlib
import json
import logging
import logging.handlers
from collections.abc import Callable, Iterator
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature

from sxg_acme.account import AccountSetupParams, create_account
from sxg_acme.crypto import create_csr, generate_ecdsa_key
from sxg_acme.exceptions import TransportError
from sxg_acme.fetcher import Fetcher, HttpRequest, HttpResponse
from sxg_acme.models import Account
from sxg_acme.runtime import Runtime
from sxg_acme.signer import AccountKeySigner
from sxg_acme.storage import InMemoryStorage

DOMAIN = "example.org"
TERMS_OF_SERVICE = "https://acme.test/terms/v1"
CERTIFICATE_PEM = (
    "-----BEGIN CERTIFICATE-----\n"
    "MIIBkTCCATigAwIBAgIUL/D6t/l3OrSRCI0KlCP7zH1U5/swCgYIKoZIzj0EAwIw\n"
    "-----END CERTIFICATE-----\n"
    "-----BEGIN CERTIFICATE-----\n"
    "MIIBlDCCATqgAwIBAgIUTestIssuerTestIssuerTestIssuerwCgYIKoZIzj0E\n"
    "-----END CERTIFICATE-----\n"
)

ACME = "urn:ietf:params:acme:error:"


def b64d(data: str) -> bytes:
    return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))


def b64e(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def reference_thumbprint(jwk: dict[str, str]) -> str:
    """RFC 7638 thumbprint computed independently of sxg_acme.crypto."""
    members = ("crv", "kty", "x", "y") if jwk["kty"] == "EC" else ("e", "kty", "n")
    canonical = json.dumps({m: jwk[m] for m in members}, sort_keys=True, separators=(",", ":"))
    return b64e(hashlib.sha256(canonical.encode()).digest())


def verify_jws_signature(jwk: dict[str, str], body: dict[str, str]) -> bool:
    signing_input = f"{body['protected']}.{body['payload']}".encode()
    signature = b64d(body["signature"])
    try:
        if jwk["kty"] == "EC":
            size = 32 if jwk["crv"] == "P-256" else 48
            curve = ec.SECP256R1() if size == 32 else ec.SECP384R1()
            digest = hashes.SHA256() if size == 32 else hashes.SHA384()
            key = ec.EllipticCurvePublicNumbers(
                int.from_bytes(b64d(jwk["x"]), "big"),
                int.from_bytes(b64d(jwk["y"]), "big"),
                curve,
            ).public_key()
            der = encode_dss_signature(
                int.from_bytes(signature[:size], "big"),
                int.from_bytes(signature[size:], "big"),
            )
            key.verify(der, signing_input, ec.ECDSA(digest))
        else:
            key = rsa.RSAPublicNumbers(
                int.from_bytes(b64d(jwk["e"]), "big"),
                int.from_bytes(b64d(jwk["n"]), "big"),
            ).public_key()
            key.verify(signature, signing_input, padding.PKCS1v15(), hashes.SHA256())
    except InvalidSignature:
        return False
    return True


class FakeAcmeServer(Fetcher):
    """In-process ACME server behind the Fetcher interface.

    Checks nonces, URLs and signatures like a real server and lets tests
    flip order, authorization and challenge statuses. extra_authorizations
    lists the statuses of further authorizations (/authz/2, /authz/3, ...)
    that the order carries after /authz/1. With auto_progress
    the server validates accepted challenges (through validate_http when
    set) and issues the certificate on the first poll after finalize.
    """

    def __init__(self, base: str = "https://acme.test") -> None:
        self.base = base
        self.directory_meta: dict[str, Any] | None = {"termsOfService": TERMS_OF_SERVICE}
        self.requests: list[HttpRequest] = []
        self.signed: list[dict[str, Any]] = []
        self.nonces_issued: set[str] = set()
        self.nonces_used: list[str] = []
        self._nonce_counter = 0
        self.reject_nonces = 0
        self.transport_failures = 0
        self.account_jwk: dict[str, str] | None = None
        self.account_payload: dict[str, Any] | None = None
        self.account_status = "valid"
        self.domain = DOMAIN
        self.token = "evaGxfADs6pSRb2LAv9IZf17Dt3juxGJ-PCt92wr-oA"
        self.order_status = "pending"
        self.authz_status = "pending"
        self.challenge_status = "pending"
        self.order_error: dict[str, Any] | None = None
        self.challenge_error: dict[str, Any] | None = None
        self.order_retry_after: str | None = None
        self.offer_http01 = True
        self.extra_authorizations: list[str] = []
        self.auto_progress = False
        self.validate_http: Callable[[str], str] | None = None
        self.certificate_pem = CERTIFICATE_PEM
        self.new_order_count = 0
        self.challenge_posts = 0
        self.challenge_urls: list[str] = []
        self.finalize_count = 0
        self.last_csr: str | None = None

    def url(self, path: str) -> str:
        return self.base + path

    @property
    def directory_url(self) -> str:
        return self.url("/directory")

    # -- helpers ---------------------------------------------------------

    def _nonce(self) -> str:
        self._nonce_counter += 1
        nonce = f"nonce-{self._nonce_counter}"
        self.nonces_issued.add(nonce)
        return nonce

    def _respond(
        self,
        status: int,
        json_body: Any = None,
        body: bytes = b"",
        headers: dict[str, str] | None = None,
    ) -> HttpResponse:
        response_headers = {"Replay-Nonce": self._nonce()}
        if json_body is not None:
            body = json.dumps(json_body).encode()
            response_headers["Content-Type"] = "application/json"
        response_headers.update(headers or {})
        return HttpResponse(status=status, headers=response_headers, body=body)

    def _problem(self, status: int, error_type: str, detail: str) -> HttpResponse:
        return self._respond(
            status,
            json_body={"type": ACME + error_type, "detail": detail, "status": status},
            headers={"Content-Type": "application/problem+json"},
        )

    def expected_key_authorization(self) -> str:
        assert self.account_jwk is not None
        return f"{self.token}.{reference_thumbprint(self.account_jwk)}"

    def directory(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "newNonce": self.url("/new-nonce"),
            "newAccount": self.url("/new-acct"),
            "newOrder": self.url("/new-order"),
            "revokeCert": self.url("/revoke-cert"),
            "keyChange": self.url("/key-change"),
        }
        if self.directory_meta is not None:
            data["meta"] = self.directory_meta
        return data

    def order_json(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "status": self.order_status,
            "identifiers": [{"type": "dns", "value": self.domain}],
            "authorizations": [self.url("/authz/1")]
            + [self.url(f"/authz/{n}") for n in self._extra_numbers()],
            "finalize": self.url("/order/1/finalize"),
        }
        if self.order_status == "valid":
            data["certificate"] = self.url("/cert/1")
        if self.order_error is not None:
            data["error"] = self.order_error
        return data

    def authz_json(self) -> dict[str, Any]:
        challenges: list[dict[str, Any]] = [
            {
                "type": "dns-01",
                "url": self.url("/chall/2"),
                "status": "pending",
                "token": "dns-token",
            }
        ]
        if self.offer_http01:
            http01: dict[str, Any] = {
                "type": "http-01",
                "url": self.url("/chall/1"),
                "status": self.challenge_status,
                "token": self.token,
            }
            if self.challenge_error is not None:
                http01["error"] = self.challenge_error
            challenges.append(http01)
        return {
            "status": self.authz_status,
            "identifier": {"type": "dns", "value": self.domain},
            "challenges": challenges,
        }

    def _extra_numbers(self) -> range:
        return range(2, 2 + len(self.extra_authorizations))

    def extra_token(self, n: int) -> str:
        return f"token-{n}"

    def extra_authz_json(self, n: int) -> dict[str, Any]:
        status = self.extra_authorizations[n - 2]
        return {
            "status": status,
            "identifier": {"type": "dns", "value": self.domain},
            "challenges": [
                {
                    "type": "http-01",
                    "url": self.url(f"/chall/{n}/http"),
                    "status": "valid" if status == "valid" else "pending",
                    "token": self.extra_token(n),
                }
            ],
        }

    # -- Fetcher ---------------------------------------------------------

    def fetch(self, request: HttpRequest) -> HttpResponse:
        self.requests.append(request)
        if self.transport_failures:
            self.transport_failures -= 1
            raise TransportError("Connection refused", request.url)

        path = request.url.removeprefix(self.base)
        if request.method == "GET" and path == "/directory":
            return HttpResponse(
                status=200,
                headers={"Content-Type": "application/json"},
                body=json.dumps(self.directory()).encode(),
            )
        if request.method == "HEAD" and path == "/new-nonce":
            return HttpResponse(status=200, headers={"Replay-Nonce": self._nonce()})
        if request.method != "POST":
            return HttpResponse(status=405)

        assert request.headers.get("Content-Type") == "application/jose+json"
        body = json.loads(request.body)
        header = json.loads(b64d(body["protected"]))
        payload = None if body["payload"] == "" else json.loads(b64d(body["payload"]))
        self.signed.append({"url": request.url, "header": header, "payload": payload, "body": body})

        if header.get("url") != request.url:
            return self._problem(400, "unauthorized", "url header does not match request")
        nonce = header.get("nonce")
        if nonce not in self.nonces_issued or nonce in self.nonces_used:
            return self._problem(400, "badNonce", "JWS has an invalid anti-replay nonce")
        self.nonces_used.append(nonce)
        if self.reject_nonces:
            self.reject_nonces -= 1
            return self._problem(400, "badNonce", "JWS has an invalid anti-replay nonce")

        if "jwk" in header:
            if path != "/new-acct":
                return self._problem(400, "malformed", "jwk only allowed for newAccount")
            jwk = header["jwk"]
        elif header.get("kid") == self.url("/acct/1") and self.account_jwk is not None:
            jwk = self.account_jwk
        else:
            return self._problem(400, "accountDoesNotExist", "Unknown account")
        if not verify_jws_signature(jwk, body):
            return self._problem(400, "malformed", "JWS verification error")

        return self._route(path, header, payload)

    def _route(self, path: str, header: dict[str, Any], payload: Any) -> HttpResponse:
        if path == "/new-acct":
            meta = self.directory_meta or {}
            if meta.get("externalAccountRequired") and "externalAccountBinding" not in payload:
                return self._problem(403, "externalAccountRequired", "EAB required")
            self.account_jwk = header["jwk"]
            self.account_payload = payload
            return self._respond(
                201,
                json_body={"status": self.account_status, "contact": payload.get("contact")},
                headers={"Location": self.url("/acct/1")},
            )

        if path == "/new-order":
            self.new_order_count += 1
            self.domain = payload["identifiers"][0]["value"]
            return self._respond(
                201, json_body=self.order_json(), headers={"Location": self.url("/order/1")}
            )

        if path == "/order/1":
            if self.auto_progress and self.order_status == "processing":
                self.order_status = "valid"
            headers = {"Retry-After": self.order_retry_after} if self.order_retry_after else {}
            return self._respond(200, json_body=self.order_json(), headers=headers)

        if path == "/authz/1":
            return self._respond(200, json_body=self.authz_json())

        if path == "/chall/1":
            self.challenge_posts += 1
            self.challenge_urls.append(path)
            self.challenge_status = "processing"
            if self.auto_progress:
                self._validate_challenge()
            http01 = self.authz_json()["challenges"][-1]
            return self._respond(200, json_body=http01)

        for n in self._extra_numbers():
            if path == f"/authz/{n}":
                return self._respond(200, json_body=self.extra_authz_json(n))
            if path == f"/chall/{n}/http":
                self.challenge_posts += 1
                self.challenge_urls.append(path)
                challenge = self.extra_authz_json(n)["challenges"][0]
                return self._respond(200, json_body={**challenge, "status": "processing"})

        if path == "/order/1/finalize":
            if self.order_status != "ready":
                return self._problem(403, "orderNotReady", "Order is not ready")
            self.finalize_count += 1
            self.last_csr = payload["csr"]
            self.order_status = "processing"
            return self._respond(200, json_body=self.order_json())

        if path == "/cert/1":
            if self.order_status != "valid":
                return self._problem(404, "malformed", "No certificate yet")
            return self._respond(
                200,
                body=self.certificate_pem.encode(),
                headers={"Content-Type": "application/pem-certificate-chain"},
            )

        return self._problem(404, "malformed", f"Unknown resource {path}")

    def _validate_challenge(self) -> None:
        answer = self.validate_http(self.token) if self.validate_http else None
        if answer is None or answer == self.expected_key_authorization():
            self.challenge_status = "valid"
            self.authz_status = "valid"
            self.order_status = "ready"
        else:
            self.challenge_status = "invalid"
            self.challenge_error = {"type": ACME + "unauthorized", "detail": "Wrong answer"}
            self.authz_status = "invalid"
            self.order_status = "invalid"
            self.order_error = {"type": ACME + "unauthorized", "detail": "Wrong answer"}


class FakeClock:
    """Controllable clock; pass advance as the sleep function."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, tzinfo=timezone.utc)
        self.sleeps: list[float] = []

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def acme_server() -> FakeAcmeServer:
    return FakeAcmeServer()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(scope="session")
def account_key() -> ec.EllipticCurvePrivateKey:
    return generate_ecdsa_key("P-256")


@pytest.fixture
def signer(account_key: ec.EllipticCurvePrivateKey) -> AccountKeySigner:
    return AccountKeySigner(account_key)


@pytest.fixture(scope="session")
def csr_der() -> bytes:
    csr = create_csr(generate_ecdsa_key("P-256"), DOMAIN)
    return csr.public_bytes(serialization.Encoding.DER)


@pytest.fixture
def setup_params(acme_server: FakeAcmeServer, csr_der: bytes) -> AccountSetupParams:
    return AccountSetupParams(
        directory_url=acme_server.directory_url,
        email="admin@example.org",
        agreed_terms_of_service=TERMS_OF_SERVICE,
        domain=DOMAIN,
        cert_request_der=csr_der,
    )


@pytest.fixture
def account(
    acme_server: FakeAcmeServer, setup_params: AccountSetupParams, signer: AccountKeySigner
) -> Account:
    return create_account(setup_params, acme_server, signer)


@pytest.fixture
def runtime(acme_server: FakeAcmeServer, signer: AccountKeySigner, clock: FakeClock) -> Runtime:
    return Runtime(
        fetcher=acme_server,
        acme_signer=signer,
        storage=InMemoryStorage(),
        now=clock(),
    )


class LogCapture:
    """Helper class to capture and inspect log records."""

    def __init__(self, handler: logging.handlers.MemoryHandler) -> None:
        self._handler = handler

    @property
    def records(self) -> list[logging.LogRecord]:
        """Get all captured log records."""
        return self._handler.buffer

    def get_records(
        self, level: int | None = None, name: str | None = None
    ) -> list[logging.LogRecord]:
        """Get log records filtered by level and/or logger name prefix."""
        records = self.records
        if level is not None:
            records = [r for r in records if r.levelno == level]
        if name is not None:
            records = [r for r in records if r.name.startswith(name)]
        return records

    def get_messages(self, level: int | None = None, name: str | None = None) -> list[str]:
        """Get log messages filtered by level and/or logger name prefix."""
        return [r.getMessage() for r in self.get_records(level, name)]

    def clear(self) -> None:
        """Clear all captured log records."""
        self._handler.buffer.clear()


@pytest.fixture
def log_capture() -> Iterator[LogCapture]:
    """Capture logs from the sxg_acme library during a test.

    Usage:
        def test_something(log_capture):
            # do something that logs
            assert "Certificate issued" in log_capture.get_messages(logging.INFO)
    """
    # Large capacity so the buffer is never flushed mid-test
    handler = logging.handlers.MemoryHandler(capacity=10000)
    handler.setLevel(logging.DEBUG)

    package_logger = logging.getLogger("sxg_acme")
    original_level = package_logger.level
    package_logger.setLevel(logging.DEBUG)
    package_logger.addHandler(handler)

    try:
        yield LogCapture(handler)
    finally:
        package_logger.removeHandler(handler)
        package_logger.setLevel(original_level)
        handler.close()
