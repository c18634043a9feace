"""Command line interface: obtain an SXG certificate over ACME."""

import logging
import os
from datetime import timedelta
from pathlib import Path

import click
from pydantic import ValidationError

from sxg_acme._logging import get_logger
from sxg_acme.account import AccountSetupParams, create_account
from sxg_acme.challenges.http01 import ChallengeResponder
from sxg_acme.config import (
    Artifact,
    PreIssuedCertConfig,
    load_config,
    read_artifact,
    write_artifact,
)
from sxg_acme.crypto import (
    PrivateKey,
    create_csr,
    csr_to_pem,
    generate_ecdsa_key,
    get_der_from_pem,
    load_private_key_pem,
    private_key_to_pem,
    validate_certificate_pem,
)
from sxg_acme.eab import EabConfig
from sxg_acme.exceptions import ConfigurationError, SxgAcmeError
from sxg_acme.fetcher import Fetcher, HttpxFetcher
from sxg_acme.models import Account
from sxg_acme.orchestrator import PollPolicy, obtain_certificate
from sxg_acme.runtime import Runtime
from sxg_acme.signer import AccountKeySigner
from sxg_acme.storage import FileStorage, InMemoryStorage, Storage

logger = get_logger(__name__)

ACCOUNT_KEY = "account"


def _read_text(path: str | Path) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f'Failed to read file "{path}": {e.strerror}') from e


def read_or_create_private_key(path: str | Path) -> PrivateKey:
    """Load the EC key at path, creating a P-256 key there if it is missing."""
    path = Path(path)
    if path.exists():
        return load_private_key_pem(_read_text(path))

    key = generate_ecdsa_key("P-256")
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(private_key_to_pem(key))
    logger.info("Created private key", extra={"path": str(path)})
    return key


def create_certificate_request(domain: str, key: PrivateKey, path: str | Path) -> bytes:
    """Write a CSR for domain to path and return it DER encoded."""
    pem = csr_to_pem(create_csr(key, domain))
    Path(path).write_text(pem, encoding="utf-8")
    return get_der_from_pem(pem, "CERTIFICATE REQUEST")


def load_or_create_account(
    storage: Storage,
    params: AccountSetupParams,
    fetcher: Fetcher,
    signer: AccountKeySigner,
) -> Account:
    """Reuse the account kept in storage for the same server and domain."""
    raw = storage.read(ACCOUNT_KEY)
    if raw is not None:
        try:
            account = Account.model_validate_json(raw)
        except ValidationError as e:
            raise ConfigurationError(f"Stored account is corrupt: {e}") from e
        if account.directory_url == params.directory_url and account.domain == params.domain:
            logger.info("Resuming stored account", extra={"account_url": account.account_url})
            return account

    account = create_account(params, fetcher, signer)
    storage.write(ACCOUNT_KEY, account.model_dump_json())
    return account


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Log debug output.")
def main(verbose: bool) -> None:
    """Obtain certificates for signed exchanges from an ACME server."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


@main.command("apply-acme-cert")
@click.option("--port", type=int, required=True, help="Port of the challenge responder.")
@click.option("--host", default="127.0.0.1", show_default=True, help="Address to bind.")
@click.option("--acme-server", required=True, help="Directory URL of ACME server.")
@click.option("--email", required=True)
@click.option("--domain", required=True)
@click.option(
    "--acme-account-private-key-file",
    default="acme_account_private_key.pem",
    show_default=True,
    type=click.Path(dir_okay=False),
)
@click.option(
    "--sxg-private-key-file",
    default="privkey.pem",
    show_default=True,
    type=click.Path(dir_okay=False),
)
@click.option(
    "--sxg-cert-request-file",
    default="cert.csr",
    show_default=True,
    type=click.Path(dir_okay=False),
)
@click.option("--agreed-terms-of-service", required=True)
@click.option("--eab-key-id", default=None)
@click.option("--eab-mac-key", default=None, help="Base64url-encoded MAC key.")
@click.option(
    "--state-dir",
    type=click.Path(file_okay=False),
    default=None,
    help="Keep progress here so an interrupted run can resume.",
)
@click.option("--poll-interval", type=float, default=1.0, show_default=True)
@click.option("--max-attempts", type=int, default=120, show_default=True)
@click.option("--ca-cert", default=None, help="CA bundle for the ACME server's TLS certificate.")
def apply_acme_cert(
    port: int,
    host: str,
    acme_server: str,
    email: str,
    domain: str,
    acme_account_private_key_file: str,
    sxg_private_key_file: str,
    sxg_cert_request_file: str,
    agreed_terms_of_service: str,
    eab_key_id: str | None,
    eab_mac_key: str | None,
    state_dir: str | None,
    poll_interval: float,
    max_attempts: int,
    ca_cert: str | None,
) -> None:
    """Obtain a certificate and print it as PEM."""
    try:
        eab = EabConfig.from_options(eab_key_id, eab_mac_key)
        policy = PollPolicy(interval=poll_interval, max_attempts=max_attempts)

        signer = AccountKeySigner(read_or_create_private_key(acme_account_private_key_file))
        sxg_key = read_or_create_private_key(sxg_private_key_file)
        csr_der = create_certificate_request(domain, sxg_key, sxg_cert_request_file)

        storage: Storage = FileStorage(state_dir) if state_dir else InMemoryStorage()
        params = AccountSetupParams(
            directory_url=acme_server,
            email=email,
            agreed_terms_of_service=agreed_terms_of_service,
            domain=domain,
            cert_request_der=csr_der,
            eab=eab,
        )
        with HttpxFetcher(verify=ca_cert) as fetcher:
            account = load_or_create_account(storage, params, fetcher, signer)
            runtime = Runtime(
                fetcher=fetcher,
                acme_signer=signer,
                storage=storage,
                challenge_delay=timedelta(seconds=policy.interval),
            )
            certificate_pem = obtain_certificate(
                runtime, account, ChallengeResponder(host, port), policy
            )
    except (SxgAcmeError, ValidationError) as e:
        raise click.ClickException(str(e)) from e

    click.echo(certificate_pem)


@main.command("gen-config")
@click.option(
    "--input",
    "input_file",
    required=True,
    type=click.Path(dir_okay=False),
    help="A YAML file containing all config values.",
)
@click.option(
    "--artifact",
    "artifact_file",
    required=True,
    type=click.Path(dir_okay=False),
    help="A YAML file containing the generated values.",
)
@click.option(
    "--acme-account-private-key-file",
    default="acme_account_private_key.pem",
    show_default=True,
    type=click.Path(dir_okay=False),
)
@click.option("--ca-cert", default=None, help="CA bundle for the ACME server's TLS certificate.")
def gen_config(
    input_file: str,
    artifact_file: str,
    acme_account_private_key_file: str,
    ca_cert: str | None,
) -> None:
    """Validate certificate inputs and create the ACME account if needed."""
    try:
        config = load_config(input_file)
        if Path(artifact_file).exists():
            artifact = read_artifact(artifact_file)
        else:
            click.echo("Creating a new artifact", err=True)
            artifact = Artifact()

        certificates = config.certificates
        if isinstance(certificates, PreIssuedCertConfig):
            validate_certificate_pem(_read_text(certificates.cert_file))
            validate_certificate_pem(_read_text(certificates.issuer_file))
        elif artifact.acme_account is None:
            csr_der = get_der_from_pem(
                _read_text(certificates.sxg_cert_request_file), "CERTIFICATE REQUEST"
            )
            signer = AccountKeySigner(read_or_create_private_key(acme_account_private_key_file))
            params = AccountSetupParams(
                directory_url=certificates.server_url,
                email=certificates.contact_email,
                agreed_terms_of_service=certificates.agreed_terms_of_service,
                domain=config.html_host,
                cert_request_der=csr_der,
                eab=certificates.eab,
            )
            with HttpxFetcher(verify=ca_cert) as fetcher:
                artifact.acme_account = create_account(params, fetcher, signer)
            artifact.acme_private_key_instruction = (
                f"The ACME account private key is stored in {acme_account_private_key_file}. "
                "Provide it to the worker as a secret and keep it out of version control."
            )

        write_artifact(artifact_file, artifact)
    except SxgAcmeError as e:
        raise click.ClickException(str(e)) from e
