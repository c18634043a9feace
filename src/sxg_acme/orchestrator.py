"""Caller-side poll loop around the state machine."""

import time
from collections.abc import Callable
from datetime import datetime

from pydantic import BaseModel, Field

from sxg_acme._logging import get_logger
from sxg_acme.challenges.http01 import ChallengeResponder
from sxg_acme.exceptions import RetryExhaustedError, TransportError
from sxg_acme.models import Account
from sxg_acme.runtime import Runtime, utc_now
from sxg_acme.state_machine import (
    get_challenge_tokens_and_answers,
    read_current_state,
    update_state,
)

logger = get_logger(__name__)


class PollPolicy(BaseModel):
    """Bounded exponential backoff between two state machine steps."""

    interval: float = Field(default=1.0, gt=0)
    backoff: float = Field(default=1.5, ge=1.0)
    max_interval: float = Field(default=30.0, gt=0)
    max_attempts: int = Field(default=120, ge=1)

    def delay(self, attempt: int) -> float:
        """Seconds to sleep after the given (zero-based) attempt."""
        return min(self.interval * self.backoff**attempt, self.max_interval)


def obtain_certificate(
    runtime: Runtime,
    account: Account,
    responder: ChallengeResponder,
    policy: PollPolicy | None = None,
    clock: Callable[[], datetime] = utc_now,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """Drive the order until a certificate is issued.

    The responder is started once a challenge token is known, including
    tokens already in storage from an earlier run, and is always stopped
    before returning.

    Args:
        runtime: Capabilities; runtime.now is refreshed from clock.
        account: The account whose order is driven.
        responder: Serves the challenge answers.
        policy: Retry bounds; defaults to PollPolicy().
        clock: Source of the current time.
        sleep: Called with the number of seconds to wait.

    Returns:
        The PEM certificate chain.

    Raises:
        RetryExhaustedError: If policy.max_attempts steps did not suffice.
        OrderFailedError, ProtocolError, ConfigurationError: Propagated.
    """
    policy = policy or PollPolicy()
    try:
        # A resumed order may accept its challenge on the very first step
        _serve_answers(runtime, responder)
        for attempt in range(policy.max_attempts):
            runtime.now = clock()
            try:
                update_state(runtime, account)
            except TransportError as e:
                logger.warning(
                    "ACME server unreachable, will retry",
                    extra={"attempt": attempt + 1, "error": str(e)},
                )
            else:
                _serve_answers(runtime, responder)

                state = read_current_state(runtime)
                if state.task is not None and state.task.completed and state.certificates:
                    return state.certificates[-1]

            if attempt + 1 < policy.max_attempts:
                sleep(policy.delay(attempt))
        raise RetryExhaustedError(policy.max_attempts)
    finally:
        responder.stop()


def _serve_answers(runtime: Runtime, responder: ChallengeResponder) -> None:
    for token, answer in get_challenge_tokens_and_answers(runtime):
        responder.add(token, answer)
        if not responder.running:
            responder.start()
