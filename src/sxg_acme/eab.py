"""External account binding (RFC 8555 Section 7.3.4)."""

from pydantic import BaseModel, ConfigDict

from sxg_acme.crypto import base64url_decode
from sxg_acme.exceptions import ConfigurationError
from sxg_acme.jws import create_jws
from sxg_acme.signer import Algorithm, HmacSigner, Signer


class EabConfig(BaseModel):
    """Credentials issued by the CA for binding a new account.

    Both values are mandatory; use from_options() when either may be absent.
    """

    key_id: str
    base64_mac_key: str

    model_config = ConfigDict(extra="forbid")

    @property
    def mac_key(self) -> bytes:
        """The decoded MAC key.

        Raises:
            ConfigurationError: If the key is not base64url or empty.
        """
        try:
            key = base64url_decode(self.base64_mac_key)
        except ValueError as e:
            raise ConfigurationError(f"EAB MAC key is not valid base64url: {e}") from e
        if not key:
            raise ConfigurationError("EAB MAC key is empty")
        return key

    def create_signer(self) -> HmacSigner:
        return HmacSigner(self.mac_key)

    @classmethod
    def from_options(cls, key_id: str | None, mac_key: str | None) -> "EabConfig | None":
        """Build credentials from two optional inputs.

        Returns:
            None if neither is given.

        Raises:
            ConfigurationError: If only one of the two is given.
        """
        if key_id is None and mac_key is None:
            return None
        if key_id is None or mac_key is None:
            raise ConfigurationError(
                'To use External Account Binding, please provide both "eab-key-id" '
                'and "eab-mac-key".'
            )
        return cls(key_id=key_id, base64_mac_key=mac_key)


def create_external_account_binding(
    algorithm: Algorithm,
    key_id: str,
    new_account_url: str,
    public_jwk: dict[str, str],
    signer: Signer,
) -> dict[str, str]:
    """Create the nested JWS for the newAccount "externalAccountBinding" field.

    The JWS is signed with the CA-issued MAC key, carries no nonce, and its
    payload is the account's public JWK.

    Returns:
        The flattened JWS as a dict.
    """
    jws = create_jws(
        algorithm=algorithm,
        auth=key_id,
        nonce=None,
        url=new_account_url,
        payload=public_jwk,
        signer=signer,
    )
    return jws.model_dump()
