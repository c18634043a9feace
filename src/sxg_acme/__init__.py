"""sxg_acme - ACME client obtaining certificates for signed HTTP exchanges."""

from sxg_acme.account import AccountSetupParams, create_account
from sxg_acme.runtime import Runtime
from sxg_acme.state_machine import (
    get_challenge_token_and_answer,
    read_current_state,
    update_state,
)

__all__ = [
    "AccountSetupParams",
    "Runtime",
    "create_account",
    "get_challenge_token_and_answer",
    "read_current_state",
    "update_state",
]
__version__ = "0.1.0"
