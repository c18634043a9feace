"""Signing capability used for JWS, with asymmetric and HMAC realizations."""

from abc import ABC, abstractmethod
from enum import StrEnum

from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature

from sxg_acme.crypto import PrivateKey, get_jwk
from sxg_acme.exceptions import ConfigurationError


class Algorithm(StrEnum):
    """JWS algorithms (RFC 7518) supported by the signers."""

    ES256 = "ES256"
    ES384 = "ES384"
    RS256 = "RS256"
    HS256 = "HS256"


class Signer(ABC):
    """Something that signs bytes for a JWS.

    Signatures are returned in the JWS encoding for the algorithm
    (e.g. fixed-size r||s for ECDSA), ready to be base64url encoded.
    """

    @property
    @abstractmethod
    def algorithm(self) -> Algorithm: ...

    @abstractmethod
    def sign(self, message: bytes) -> bytes: ...

    def public_jwk(self) -> dict[str, str] | None:
        """Public key as a JWK, or None for symmetric signers."""
        return None


class AccountKeySigner(Signer):
    """Signer for an ACME account key (EC P-256/P-384 or RSA)."""

    def __init__(self, key: PrivateKey):
        if isinstance(key, rsa.RSAPrivateKey):
            self._algorithm = Algorithm.RS256
            self._coord_size = 0
        elif isinstance(key, ec.EllipticCurvePrivateKey):
            curve_name = key.curve.name
            if curve_name == "secp256r1":
                self._algorithm, self._coord_size = Algorithm.ES256, 32
            elif curve_name == "secp384r1":
                self._algorithm, self._coord_size = Algorithm.ES384, 48
            else:
                raise ConfigurationError(f"Unsupported curve: {curve_name}")
        else:
            raise ConfigurationError(f"Unsupported key type: {type(key).__name__}")
        self._key = key
        self._jwk = get_jwk(key)

    @property
    def algorithm(self) -> Algorithm:
        return self._algorithm

    def public_jwk(self) -> dict[str, str]:
        return dict(self._jwk)

    def sign(self, message: bytes) -> bytes:
        if isinstance(self._key, rsa.RSAPrivateKey):
            return self._key.sign(message, padding.PKCS1v15(), hashes.SHA256())

        hash_algorithm = hashes.SHA256() if self._coord_size == 32 else hashes.SHA384()
        der_signature = self._key.sign(message, ec.ECDSA(hash_algorithm))
        r, s = decode_dss_signature(der_signature)
        # JWS wants fixed-size r||s, not DER
        return r.to_bytes(self._coord_size, byteorder="big") + s.to_bytes(
            self._coord_size, byteorder="big"
        )


class HmacSigner(Signer):
    """HMAC-SHA256 signer for the external account binding MAC key."""

    def __init__(self, mac_key: bytes):
        if not mac_key:
            raise ValueError("MAC key must not be empty")
        self._mac_key = mac_key

    @property
    def algorithm(self) -> Algorithm:
        return Algorithm.HS256

    def sign(self, message: bytes) -> bytes:
        h = hmac.HMAC(self._mac_key, hashes.SHA256())
        h.update(message)
        return h.finalize()
