"""Key, CSR, PEM and JWK helpers."""

import base64
import binascii
import hashlib
import json
import re

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID, ObjectIdentifier

from sxg_acme.exceptions import ConfigurationError

# Type alias for private keys
PrivateKey = rsa.RSAPrivateKey | ec.EllipticCurvePrivateKey

# Extension required on certificates used to sign exchanges
CAN_SIGN_HTTP_EXCHANGES_OID = ObjectIdentifier("1.3.6.1.4.1.11129.2.1.22")
_ASN1_NULL = b"\x05\x00"

_PEM_BLOCK = re.compile(
    r"-----BEGIN ([A-Z0-9 ]+)-----\s*(.*?)\s*-----END \1-----",
    re.DOTALL,
)


def base64url_encode(data: bytes) -> str:
    """Base64url encode without padding."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def base64url_decode(data: str) -> bytes:
    """Decode base64url with or without padding.

    Raises:
        ValueError: If data is not valid base64url.
    """
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.b64decode(padded, altchars=b"-_", validate=True)
    except binascii.Error as e:
        raise ValueError(f"Invalid base64url data: {e}") from e


def generate_ecdsa_key(curve: str = "P-256") -> ec.EllipticCurvePrivateKey:
    """Generate an ECDSA private key.

    Args:
        curve: Curve name ("P-256" or "P-384").

    Raises:
        ValueError: If curve is not supported.
    """
    curves = {
        "P-256": ec.SECP256R1(),
        "P-384": ec.SECP384R1(),
    }
    if curve not in curves:
        raise ValueError(f"Unsupported curve: {curve}. Supported: {list(curves.keys())}")

    return ec.generate_private_key(curves[curve])


def load_private_key_pem(pem_data: str, password: bytes | None = None) -> PrivateKey:
    """Load a private key from PEM-encoded data.

    Args:
        pem_data: PEM-encoded private key string.
        password: Optional password for encrypted keys.

    Raises:
        ConfigurationError: If PEM data is invalid, the password is wrong
            or the key type is unsupported.
    """
    try:
        key = serialization.load_pem_private_key(
            pem_data.encode("utf-8"),
            password=password,
        )
    except (ValueError, TypeError) as e:
        raise ConfigurationError(f"Invalid private key PEM: {e}") from e

    if not isinstance(key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
        raise ConfigurationError(f"Unsupported key type: {type(key).__name__}")

    return key


def private_key_to_pem(key: PrivateKey) -> str:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


def create_csr(key: PrivateKey, domain: str) -> x509.CertificateSigningRequest:
    """Create a CSR usable for a signed-exchange certificate.

    The request names the domain as Common Name and sole SAN and carries
    the CanSignHttpExchanges extension.

    Raises:
        ValueError: If domain is empty.
    """
    if not domain:
        raise ValueError("A domain is required")

    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)])
    builder = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(subject)
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
        .add_extension(
            x509.UnrecognizedExtension(CAN_SIGN_HTTP_EXCHANGES_OID, _ASN1_NULL),
            critical=False,
        )
    )
    return builder.sign(key, hashes.SHA256())


def csr_to_pem(csr: x509.CertificateSigningRequest) -> str:
    return csr.public_bytes(serialization.Encoding.PEM).decode("ascii")


def get_der_from_pem(pem_text: str, expected_tag: str) -> bytes:
    """Return the payload of the first PEM block labelled expected_tag.

    Args:
        pem_text: Text holding one or more PEM blocks.
        expected_tag: Label such as "CERTIFICATE REQUEST".

    Raises:
        ConfigurationError: If no such block exists or it is not base64.
    """
    for match in _PEM_BLOCK.finditer(pem_text):
        if match.group(1) != expected_tag:
            continue
        body = "".join(match.group(2).split())
        try:
            return base64.b64decode(body, validate=True)
        except binascii.Error as e:
            raise ConfigurationError(f"Malformed {expected_tag} PEM block: {e}") from e
    raise ConfigurationError(f"The PEM text does not contain a {expected_tag} block")


def validate_certificate_pem(pem_text: str) -> str:
    """Check the text is exactly one parseable certificate.

    Windows line endings are normalized.

    Raises:
        ConfigurationError: If the text is not a single certificate PEM.
    """
    text = pem_text.replace("\r\n", "\n")
    tags = [m.group(1) for m in _PEM_BLOCK.finditer(text)]
    if tags != ["CERTIFICATE"]:
        raise ConfigurationError("Not a valid certificate PEM: expected exactly one certificate")
    try:
        x509.load_pem_x509_certificate(text.encode())
    except ValueError as e:
        raise ConfigurationError(f"Not a valid certificate PEM: {e}") from e
    return text


def _int_to_base64url(n: int, length: int) -> str:
    """Convert an integer to base64url encoding with fixed length."""
    return base64url_encode(n.to_bytes(length, byteorder="big"))


def get_jwk(key: PrivateKey) -> dict[str, str]:
    """Get the JWK (JSON Web Key) representation of the public key."""
    if isinstance(key, rsa.RSAPrivateKey):
        public_numbers = key.public_key().public_numbers()
        return {
            "kty": "RSA",
            "n": _int_to_base64url(public_numbers.n, (public_numbers.n.bit_length() + 7) // 8),
            "e": _int_to_base64url(public_numbers.e, (public_numbers.e.bit_length() + 7) // 8),
        }

    public_key = key.public_key()
    public_numbers = public_key.public_numbers()
    curve_name = public_key.curve.name
    if curve_name == "secp256r1":
        crv, coord_size = "P-256", 32
    elif curve_name == "secp384r1":
        crv, coord_size = "P-384", 48
    else:
        raise ValueError(f"Unsupported curve: {curve_name}")

    return {
        "kty": "EC",
        "crv": crv,
        "x": _int_to_base64url(public_numbers.x, coord_size),
        "y": _int_to_base64url(public_numbers.y, coord_size),
    }


# Members that take part in the RFC 7638 thumbprint, per key type
_THUMBPRINT_MEMBERS = {
    "RSA": ("e", "kty", "n"),
    "EC": ("crv", "kty", "x", "y"),
    "oct": ("k", "kty"),
}


def jwk_thumbprint(jwk: dict[str, str]) -> str:
    """Compute the JWK thumbprint (RFC 7638).

    Args:
        jwk: Public JWK.

    Returns:
        base64url(SHA-256(canonical JWK JSON)).
    """
    members = _THUMBPRINT_MEMBERS.get(jwk.get("kty", ""))
    if members is None:
        raise ValueError(f"Unsupported key type: {jwk.get('kty')}")
    canonical = {name: jwk[name] for name in members}
    json_bytes = json.dumps(canonical, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return base64url_encode(hashlib.sha256(json_bytes).digest())
