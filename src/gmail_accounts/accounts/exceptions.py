"""Account storage and selection exceptions."""

from __future__ import annotations

from gmail_accounts.exceptions import GmailAccountsError


class StorageError(GmailAccountsError):
    """Raised when account state cannot be read from or written to disk."""

    kind = "storage"
    action = "Check permissions and free space in the gmail-accounts home directory."


class CorruptIndexError(StorageError):
    """Raised when the account index file cannot be parsed."""

    kind = "corrupt_index"


class CredentialNotFoundError(GmailAccountsError):
    """Raised when no credential record exists for an account."""

    kind = "credential_not_found"
    action = "Add the account again with add_account."

    def __init__(self, account: str):
        super().__init__(f"No stored credentials for {account}", account=account)


class CorruptCredentialError(CredentialNotFoundError):
    """Raised when a stored credential record cannot be parsed.

    Subclasses CredentialNotFoundError so recovery treats it as absent.
    """

    kind = "corrupt_credential"
    action = "Re-authorize the account with reauthorize_account."

    def __init__(self, account: str, reason: str):
        self.reason = reason
        GmailAccountsError.__init__(
            self, f"Stored credentials for {account} are unreadable: {reason}", account=account
        )


class DuplicateAccountError(GmailAccountsError):
    """Raised when adding an account that is already registered."""

    kind = "duplicate_account"
    action = "Use reauthorize_account to renew its credentials, or remove it first."

    def __init__(self, account: str):
        super().__init__(f"Account {account} is already registered", account=account)


class UnknownAccountError(GmailAccountsError):
    """Raised when an account identifier is not in the registry."""

    kind = "unknown_account"
    action = "Call list_accounts to see registered accounts, or add it with add_account."

    def __init__(self, account: str):
        super().__init__(f"Unknown account: {account}", account=account)


class NoDefaultError(GmailAccountsError):
    """Raised when a default account is required but none is set."""

    kind = "no_default"
    action = "Set one with set_default_account."

    def __init__(self):
        super().__init__("No default account is configured")


class NoAccountSpecifiedError(GmailAccountsError):
    """Raised when a call names no account and there is no default to fall back on."""

    kind = "no_account_specified"
    action = "Pass an account, or configure a default with set_default_account."

    def __init__(self):
        super().__init__("No account specified and no default account is configured")
