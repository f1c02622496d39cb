"""Google authentication exceptions."""

from __future__ import annotations

from gmail_accounts.exceptions import GmailAccountsError


class GoogleAuthError(GmailAccountsError):
    """Base exception for Google authentication errors."""

    kind = "auth"


class ClientSecretsNotFoundError(GoogleAuthError):
    """Raised when no OAuth client credentials are configured."""

    kind = "client_secrets_not_found"
    action = (
        "Download OAuth client credentials from Google Cloud Console and run "
        "'gmail-accounts import <path>', or set GMAIL_CLIENT_ID and GMAIL_CLIENT_SECRET."
    )

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"OAuth client credentials not found at {path}")


class ConsentError(GoogleAuthError):
    """Raised when the interactive consent flow fails or is abandoned."""

    kind = "consent_failed"
    action = "Run add_account again and complete the consent screen."


class RefreshTransientError(GoogleAuthError):
    """Raised when token refresh kept failing for retryable reasons."""

    kind = "refresh_transient"
    action = "Retry later; the token endpoint is unreachable or failing."

    def __init__(self, account: str, attempts: int, reason: str):
        self.attempts = attempts
        self.reason = reason
        super().__init__(
            f"Token refresh for {account} failed after {attempts} attempt(s): {reason}",
            account=account,
        )


class ReauthenticationRequiredError(GoogleAuthError):
    """Raised when an account's refresh token can no longer be used."""

    kind = "reauthentication_required"
    action = "Run reauthorize_account for this account to repeat the consent flow."

    def __init__(self, account: str, reason: str):
        self.reason = reason
        super().__init__(
            f"Credentials for {account} need re-authorization: {reason}", account=account
        )
