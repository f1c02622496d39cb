"""Base exception shared by every gmail-accounts error."""

from __future__ import annotations

from typing import Any


class GmailAccountsError(Exception):
    """Base exception for gmail-accounts errors.

    Attributes:
        kind: Stable discriminator reported to tool callers.
        account: Email of the account involved, when one was resolved.
        action: What the caller should do next.
    """

    kind = "error"
    action = "Retry the request."

    def __init__(
        self,
        message: str,
        account: str | None = None,
        action: str | None = None,
    ):
        self.message = message
        self.account = account
        if action:
            self.action = action
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Structured form returned across the tool boundary."""
        return {
            "kind": self.kind,
            "message": self.message,
            "account": self.account,
            "action": self.action,
        }
