"""Resolve which account a tool call operates on."""

from __future__ import annotations

from gmail_accounts.accounts.exceptions import NoAccountSpecifiedError
from gmail_accounts.accounts.registry import AccountRegistry


class AccountSelector:
    """Picks the account for one call.

    Order is fixed: an explicit account beats the default, and the default
    beats an error.
    """

    def __init__(self, registry: AccountRegistry):
        self._registry = registry

    def select(self, account: str | None = None) -> str:
        """Return the email of the account to use.

        Raises:
            UnknownAccountError: If ``account`` is given but not registered.
            NoAccountSpecifiedError: If no account is given and no default is set.
        """
        if account and account.strip():
            return self._registry.get(account.strip()).email

        default = self._registry.default()
        if default is None:
            raise NoAccountSpecifiedError()
        return default.email
