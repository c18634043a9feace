"""Resumable state machine driving an ACME order to an issued certificate.

The caller invokes update_state() repeatedly; each call refreshes the order
from the server and performs at most one step of the order lifecycle:

    pending -> ready -> processing -> valid

with invalid reachable from any non-terminal state.

All progress lives in the Storage passed in through the Runtime, so the
caller may stop and later resume, even from a different process.
"""

from datetime import timedelta

from sxg_acme import directory as acme_directory
from sxg_acme._logging import get_domain_extra, get_logger, reset_domains, set_domains
from sxg_acme.challenges.http01 import compute_key_authorization
from sxg_acme.client import AcmeClient
from sxg_acme.crypto import base64url_decode
from sxg_acme.exceptions import (
    ConfigurationError,
    OrderFailedError,
    ProtocolError,
    parse_retry_after,
)
from sxg_acme.models import (
    Account,
    AcmeState,
    Authorization,
    AuthorizationRecord,
    AuthorizationStatus,
    ChallengeStatus,
    ChallengeType,
    Order,
    OrderStatus,
    OrderTask,
)
from sxg_acme.runtime import Runtime
from sxg_acme.storage import load_state, save_state

logger = get_logger(__name__)


def update_state(runtime: Runtime, account: Account) -> None:
    """Advance the account's order by one step.

    Safe to call any number of times: requests that must happen once
    (challenge acceptance, finalization, download) are recorded in the
    storage and never repeated.

    Raises:
        OrderFailedError: If the order or an authorization is invalid.
        ProtocolError: If the server rejects a request.
        TransportError: If the server cannot be reached.
    """
    state = load_state(runtime.storage)
    token = set_domains([account.domain])
    try:
        _step(runtime, account, state)
    finally:
        save_state(runtime.storage, state)
        reset_domains(token)


def read_current_state(runtime: Runtime) -> AcmeState:
    """Return what the state machine knows, without any network access."""
    return load_state(runtime.storage)


def get_challenge_tokens_and_answers(runtime: Runtime) -> list[tuple[str, str]]:
    """Return (token, key authorization) for every pending authorization.

    Uses the authorizations cached by update_state(); empty until the
    first one has been fetched.
    """
    task = load_state(runtime.storage).task
    if task is None or task.completed:
        return []

    public_jwk = runtime.acme_signer.public_jwk()
    if public_jwk is None:
        raise ConfigurationError("The account signer must expose a public key")

    answers = []
    for record in task.authorizations:
        if record.authorization.status != AuthorizationStatus.PENDING:
            continue
        challenge = record.authorization.find_challenge(ChallengeType.HTTP_01)
        if challenge is None or not challenge.token:
            continue
        answers.append((challenge.token, compute_key_authorization(challenge.token, public_jwk)))
    return answers


def get_challenge_token_and_answer(runtime: Runtime) -> tuple[str, str] | None:
    """Return (token, key authorization) of the first pending authorization, if known."""
    answers = get_challenge_tokens_and_answers(runtime)
    return answers[0] if answers else None


def _step(runtime: Runtime, account: Account, state: AcmeState) -> None:
    task = state.task
    if task is None or task.order_url != account.order_url:
        task = OrderTask(order_url=account.order_url)
        state.task = task

    if task.completed:
        return
    if task.next_poll_at is not None and runtime.now < task.next_poll_at:
        logger.debug("Waiting for Retry-After", extra={"until": task.next_poll_at.isoformat()})
        return

    if state.directory is None or state.directory_url != account.directory_url:
        state.directory = acme_directory.from_url(account.directory_url, runtime.fetcher)
        state.directory_url = account.directory_url
    client = AcmeClient(
        state.directory,
        runtime.fetcher,
        runtime.acme_signer,
        account.account_url,
        now=runtime.now,
    )

    order, response = client.fetch_order(task.order_url)
    task.order = order
    retry_after = parse_retry_after(response.header("Retry-After"), runtime.now)
    task.next_poll_at = runtime.now + timedelta(seconds=retry_after) if retry_after else None

    logger.debug("Order status", extra={"status": str(order.status), **get_domain_extra()})

    if order.status == OrderStatus.PENDING:
        _accept_challenges(runtime, client, task, order)
    elif order.status == OrderStatus.READY:
        _finalize(client, task, order, account)
    elif order.status == OrderStatus.PROCESSING:
        pass
    elif order.status == OrderStatus.VALID:
        _download(client, state, task, order)
    elif order.status == OrderStatus.INVALID:
        raise OrderFailedError(_problem_detail(order.error, "Order is invalid"), task.order_url)


def _accept_challenges(runtime: Runtime, client: AcmeClient, task: OrderTask, order: Order) -> None:
    # One authorization at a time, in the order the server listed them
    for authz_url in order.authorizations:
        cached = task.find_authorization(authz_url)
        if cached is not None and cached.authorization.status == AuthorizationStatus.VALID:
            continue

        authz = client.fetch_authorization(authz_url)
        _cache_authorization(task, authz_url, authz)

        if authz.status == AuthorizationStatus.VALID:
            continue
        if authz.status != AuthorizationStatus.PENDING:
            raise OrderFailedError(_authorization_failure(authz), task.order_url)

        challenge = authz.find_challenge(ChallengeType.HTTP_01)
        if challenge is None or not challenge.token:
            raise ProtocolError(
                type="unknown",
                detail=f"No http-01 challenge offered for {authz.identifier.value}",
            )

        if task.accept_challenges_after is None:
            task.accept_challenges_after = runtime.now + runtime.challenge_delay
        if challenge.url in task.accepted_challenges:
            continue
        if challenge.status != ChallengeStatus.PENDING:
            continue
        if runtime.now < task.accept_challenges_after:
            continue

        client.respond_challenge(challenge.url)
        task.accepted_challenges.append(challenge.url)
        logger.info(
            "Challenge accepted",
            extra={"challenge_url": challenge.url, **get_domain_extra()},
        )


def _cache_authorization(task: OrderTask, url: str, authz: Authorization) -> None:
    record = task.find_authorization(url)
    if record is None:
        task.authorizations.append(AuthorizationRecord(url=url, authorization=authz))
    else:
        record.authorization = authz


def _finalize(client: AcmeClient, task: OrderTask, order: Order, account: Account) -> None:
    if task.finalized:
        logger.debug("Order already finalized, waiting", extra=get_domain_extra())
        return
    try:
        csr_der = base64url_decode(account.cert_request)
    except ValueError as e:
        raise ConfigurationError(f"Account holds an invalid certificate request: {e}") from e

    task.order = client.finalize_order(order.finalize, csr_der)
    task.finalized = True
    logger.info("Order finalized", extra=get_domain_extra())


def _download(client: AcmeClient, state: AcmeState, task: OrderTask, order: Order) -> None:
    if not order.certificate:
        raise ProtocolError(type="unknown", detail="Valid order has no certificate URL")
    certificate_pem = client.download_certificate(order.certificate)
    state.certificates.append(certificate_pem)
    task.completed = True
    logger.info(
        "Certificate issued",
        extra={"certificate_url": order.certificate, **get_domain_extra()},
    )


def _authorization_failure(authz: Authorization) -> str:
    for challenge in authz.challenges:
        if challenge.error:
            return _problem_detail(challenge.error, "Challenge failed")
    return f"Authorization for {authz.identifier.value} is {authz.status}"


def _problem_detail(problem: dict | None, default: str) -> str:
    if not problem:
        return default
    return str(problem.get("detail", default))
