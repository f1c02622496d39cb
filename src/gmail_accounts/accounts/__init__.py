"""Multi-account credential management.

Usage:
    from gmail_accounts.accounts import AccountRegistry, CredentialStore, TokenRefreshGuard

    registry = AccountRegistry(CredentialStore())
    await registry.load()

    guard = TokenRefreshGuard(registry, GoogleTokenEndpoint())
    record = await guard.ensure_valid("me@gmail.com")
"""

from gmail_accounts.accounts.exceptions import (
    CorruptCredentialError,
    CorruptIndexError,
    CredentialNotFoundError,
    DuplicateAccountError,
    NoAccountSpecifiedError,
    NoDefaultError,
    StorageError,
    UnknownAccountError,
)
from gmail_accounts.accounts.models import AccountEntry, CredentialRecord
from gmail_accounts.accounts.refresh import RefreshState, TokenRefreshGuard
from gmail_accounts.accounts.registry import AccountRegistry
from gmail_accounts.accounts.selector import AccountSelector
from gmail_accounts.accounts.store import CredentialStore

__all__ = [
    "AccountEntry",
    "AccountRegistry",
    "AccountSelector",
    "CredentialRecord",
    "CredentialStore",
    "RefreshState",
    "TokenRefreshGuard",
    "CorruptCredentialError",
    "CorruptIndexError",
    "CredentialNotFoundError",
    "DuplicateAccountError",
    "NoAccountSpecifiedError",
    "NoDefaultError",
    "StorageError",
    "UnknownAccountError",
]
