"""The context every state machine call receives."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sxg_acme.fetcher import Fetcher
from sxg_acme.signer import Signer
from sxg_acme.storage import InMemoryStorage, Storage


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Runtime:
    """Capabilities and clock threaded into each call.

    Attributes:
        fetcher: HTTP transport.
        acme_signer: Signer bound to the ACME account key.
        storage: Where the state machine keeps its progress.
        now: The current time as seen by the caller. Refresh it before
             each call; the core never reads the wall clock itself.
        challenge_delay: How long after a challenge token is first seen
             the server may be asked to validate it. Gives the caller time
             to start the challenge responder.
    """

    fetcher: Fetcher
    acme_signer: Signer
    storage: Storage = field(default_factory=InMemoryStorage)
    now: datetime = field(default_factory=utc_now)
    challenge_delay: timedelta = timedelta(0)
