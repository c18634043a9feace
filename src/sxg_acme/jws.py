"""JWS (RFC 7515) envelopes in the flattened JSON serialization used by ACME."""

import json
from typing import Any

from pydantic import BaseModel

from sxg_acme.crypto import base64url_encode
from sxg_acme.signer import Algorithm, Signer


class JsonWebSignature(BaseModel):
    """Flattened JWS: all three members are base64url without padding."""

    protected: str
    payload: str
    signature: str

    @property
    def signing_input(self) -> bytes:
        return f"{self.protected}.{self.payload}".encode("ascii")


def _encode_json(value: Any) -> str:
    return base64url_encode(json.dumps(value, separators=(",", ":")).encode("utf-8"))


def create_jws(
    algorithm: Algorithm,
    auth: str | dict[str, str],
    nonce: str | None,
    url: str,
    payload: Any,
    signer: Signer,
) -> JsonWebSignature:
    """Build and sign a JWS for an ACME request.

    Args:
        algorithm: The "alg" header value; must be the signer's algorithm.
        auth: Account URL for the "kid" header, or a public JWK dict for
              the "jwk" header (new-account request and EAB only).
        nonce: Replay nonce; None only for nested JWS (EAB).
        url: The request URL, echoed in the header.
        payload: JSON-serializable body, or "" for POST-as-GET.
        signer: Signs the JWS signing input.

    Returns:
        The signed envelope.
    """
    if signer.algorithm != algorithm:
        raise ValueError(f"Signer uses {signer.algorithm}, not {algorithm}")

    protected: dict[str, Any] = {"alg": str(algorithm)}
    if nonce is not None:
        protected["nonce"] = nonce
    protected["url"] = url
    if isinstance(auth, str):
        protected["kid"] = auth
    else:
        protected["jwk"] = auth

    protected_b64 = _encode_json(protected)
    payload_b64 = "" if payload == "" else _encode_json(payload)

    signature = signer.sign(f"{protected_b64}.{payload_b64}".encode("ascii"))
    return JsonWebSignature(
        protected=protected_b64,
        payload=payload_b64,
        signature=base64url_encode(signature),
    )
