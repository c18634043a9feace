"""Pydantic models for ACME resources and persisted client state."""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

# =============================================================================
# ACME Protocol Enums (RFC 8555)
# =============================================================================


class ChallengeStatus(StrEnum):
    """Challenge statuses (RFC 8555 Section 7.1.6)."""

    PENDING = "pending"
    PROCESSING = "processing"
    VALID = "valid"
    INVALID = "invalid"


class AuthorizationStatus(StrEnum):
    """Authorization statuses (RFC 8555 Section 7.1.6)."""

    PENDING = "pending"
    VALID = "valid"
    INVALID = "invalid"
    DEACTIVATED = "deactivated"
    EXPIRED = "expired"
    REVOKED = "revoked"


class OrderStatus(StrEnum):
    """Order statuses (RFC 8555 Section 7.1.6)."""

    PENDING = "pending"
    READY = "ready"
    PROCESSING = "processing"
    VALID = "valid"
    INVALID = "invalid"


class AccountStatus(StrEnum):
    """Account statuses (RFC 8555 Section 7.1.6)."""

    VALID = "valid"
    DEACTIVATED = "deactivated"
    REVOKED = "revoked"


class ChallengeType(StrEnum):
    """Challenge types (RFC 8555 Section 8). Only http-01 is answered."""

    HTTP_01 = "http-01"


# =============================================================================
# ACME resources
# =============================================================================


class DirectoryMeta(BaseModel):
    """Optional metadata block of the directory (RFC 8555 Section 7.1.1)."""

    terms_of_service: str | None = Field(default=None, alias="termsOfService")
    website: str | None = None
    caa_identities: list[str] | None = Field(default=None, alias="caaIdentities")
    external_account_required: bool = Field(default=False, alias="externalAccountRequired")

    model_config = {"populate_by_name": True}


class Directory(BaseModel):
    """ACME directory resource (RFC 8555 Section 7.1.1)."""

    new_nonce: str = Field(alias="newNonce")
    new_account: str = Field(alias="newAccount")
    new_order: str = Field(alias="newOrder")
    revoke_cert: str | None = Field(default=None, alias="revokeCert")
    key_change: str | None = Field(default=None, alias="keyChange")
    meta: DirectoryMeta | None = None

    model_config = {"populate_by_name": True, "frozen": True}

    @property
    def external_account_required(self) -> bool:
        return self.meta is not None and self.meta.external_account_required

    @property
    def terms_of_service(self) -> str | None:
        return self.meta.terms_of_service if self.meta else None


class Identifier(BaseModel):
    """ACME identifier (RFC 8555 Section 7.1.3)."""

    type: str = "dns"
    value: str


class Challenge(BaseModel):
    """ACME challenge resource (RFC 8555 Section 7.5.1).

    The type is kept as a plain string so that challenge types this client
    does not implement still parse.
    """

    type: str
    url: str
    status: ChallengeStatus
    token: str | None = None
    validated: datetime | None = None
    error: dict[str, Any] | None = None


class Authorization(BaseModel):
    """ACME authorization resource (RFC 8555 Section 7.1.4)."""

    status: AuthorizationStatus
    identifier: Identifier
    challenges: list[Challenge]
    expires: datetime | None = None
    wildcard: bool | None = None

    def find_challenge(self, challenge_type: str) -> Challenge | None:
        for challenge in self.challenges:
            if challenge.type == challenge_type:
                return challenge
        return None


class Order(BaseModel):
    """ACME order resource (RFC 8555 Section 7.1.3)."""

    status: OrderStatus
    identifiers: list[Identifier]
    authorizations: list[str]
    finalize: str
    expires: datetime | None = None
    not_before: datetime | None = Field(default=None, alias="notBefore")
    not_after: datetime | None = Field(default=None, alias="notAfter")
    certificate: str | None = None
    error: dict[str, Any] | None = None

    model_config = {"populate_by_name": True}


class AccountResource(BaseModel):
    """ACME account object as returned by the server (RFC 8555 Section 7.1.2)."""

    status: AccountStatus = AccountStatus.VALID
    contact: list[str] | None = None
    orders: str | None = None


class Account(BaseModel):
    """A registered ACME account together with the order opened for it.

    This is what the orchestrator persists between runs; every later call
    into the state machine gets it passed back.
    """

    directory_url: str
    account_url: str
    status: AccountStatus = AccountStatus.VALID
    domain: str
    order_url: str
    cert_request: str
    """Base64url-encoded DER certificate signing request."""


# =============================================================================
# State machine storage
# =============================================================================


class AuthorizationRecord(BaseModel):
    """An authorization as last fetched, keyed by its URL."""

    url: str
    authorization: Authorization


class OrderTask(BaseModel):
    """Progress of the order being driven by the state machine."""

    order_url: str
    order: Order | None = None
    authorizations: list[AuthorizationRecord] = []
    accepted_challenges: list[str] = []
    accept_challenges_after: datetime | None = None
    finalized: bool = False
    next_poll_at: datetime | None = None
    completed: bool = False

    def find_authorization(self, url: str) -> AuthorizationRecord | None:
        for record in self.authorizations:
            if record.url == url:
                return record
        return None


class AcmeState(BaseModel):
    """Everything the state machine keeps between two calls."""

    certificates: list[str] = []
    directory: Directory | None = None
    directory_url: str | None = None
    """URL the cached directory was fetched from."""
    task: OrderTask | None = None
