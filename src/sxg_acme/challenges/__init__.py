"""ACME challenge handlers."""

from sxg_acme.challenges.http01 import ChallengeResponder, compute_key_authorization

__all__ = ["ChallengeResponder", "compute_key_authorization"]
