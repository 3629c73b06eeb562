"""OCI Distribution API client."""
from .auth import PULL, PUSH, AuthState, Challenge, CredentialStore, TokenCache, parse_challenge
from .client import RegistryClient, RegistrySession

__all__ = [
    "PULL",
    "PUSH",
    "AuthState",
    "Challenge",
    "CredentialStore",
    "TokenCache",
    "parse_challenge",
    "RegistryClient",
    "RegistrySession",
]
