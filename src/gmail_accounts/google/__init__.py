"""Google OAuth utilities."""

from gmail_accounts.google.consent import LoopbackConsentFlow
from gmail_accounts.google.exceptions import (
    ClientSecretsNotFoundError,
    ConsentError,
    GoogleAuthError,
    ReauthenticationRequiredError,
    RefreshTransientError,
)
from gmail_accounts.google.oauth import (
    SCOPES,
    GoogleOAuth,
    GoogleTokenEndpoint,
    RefreshFailure,
    TokenGrant,
)

__all__ = [
    "GoogleOAuth",
    "GoogleTokenEndpoint",
    "LoopbackConsentFlow",
    "TokenGrant",
    "RefreshFailure",
    "SCOPES",
    "GoogleAuthError",
    "ClientSecretsNotFoundError",
    "ConsentError",
    "RefreshTransientError",
    "ReauthenticationRequiredError",
]
