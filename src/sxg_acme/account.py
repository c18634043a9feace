"""ACME account creation."""

from pydantic import BaseModel

from sxg_acme import directory as acme_directory
from sxg_acme._logging import get_domain_extra, get_logger, reset_domains, set_domains
from sxg_acme.client import AcmeClient
from sxg_acme.crypto import base64url_encode
from sxg_acme.eab import EabConfig, create_external_account_binding
from sxg_acme.exceptions import ConfigurationError
from sxg_acme.fetcher import Fetcher
from sxg_acme.models import Account
from sxg_acme.signer import Signer

logger = get_logger(__name__)


class AccountSetupParams(BaseModel):
    """Inputs for create_account()."""

    directory_url: str
    email: str
    agreed_terms_of_service: str
    domain: str
    cert_request_der: bytes
    eab: EabConfig | None = None


def create_account(params: AccountSetupParams, fetcher: Fetcher, signer: Signer) -> Account:
    """Register an ACME account and open an order for params.domain.

    This client always orders right after registering, so the order is
    created here and its URL returned as part of the Account.

    Args:
        params: Account and order inputs.
        fetcher: HTTP transport.
        signer: Signer bound to the account key.

    Returns:
        The Account, including the order URL.

    Raises:
        ConfigurationError: If the server requires EAB and none was given,
            or its terms of service differ from the agreed ones.
        ProtocolError: If the server rejects a request.
        TransportError: If the server cannot be reached.
    """
    public_jwk = signer.public_jwk()
    if public_jwk is None:
        raise ConfigurationError("The account signer must expose a public key")
    # Decode the MAC key before touching the network
    eab_signer = params.eab.create_signer() if params.eab else None

    token = set_domains([params.domain])
    try:
        directory = acme_directory.from_url(params.directory_url, fetcher)

        if directory.external_account_required and params.eab is None:
            raise ConfigurationError(
                f"{params.directory_url} requires External Account Binding; "
                'provide "eab-key-id" and "eab-mac-key".'
            )
        terms = directory.terms_of_service
        if terms is not None and terms != params.agreed_terms_of_service:
            raise ConfigurationError(
                f"Please read the terms of service at {terms} and pass that URL "
                f"as the agreed terms of service (got {params.agreed_terms_of_service})."
            )

        binding = None
        if params.eab is not None and eab_signer is not None:
            binding = create_external_account_binding(
                algorithm=eab_signer.algorithm,
                key_id=params.eab.key_id,
                new_account_url=directory.new_account,
                public_jwk=public_jwk,
                signer=eab_signer,
            )

        client = AcmeClient(directory, fetcher, signer)
        account_url, account_data = client.new_account(params.email, binding)
        logger.info(
            "ACME account registered",
            extra={"account_url": account_url, "eab": binding is not None, **get_domain_extra()},
        )

        order_url, order = client.new_order(params.domain)
        logger.info(
            "Order created",
            extra={"order_url": order_url, "status": str(order.status), **get_domain_extra()},
        )
    finally:
        reset_domains(token)

    return Account(
        directory_url=params.directory_url,
        account_url=account_url,
        status=account_data.status,
        domain=params.domain,
        order_url=order_url,
        cert_request=base64url_encode(params.cert_request_der),
    )
