"""Gmail operation exceptions."""

from __future__ import annotations

from gmail_accounts.exceptions import GmailAccountsError


class ValidationError(GmailAccountsError):
    """Raised when tool input is malformed; nothing has been sent."""

    kind = "validation"
    action = "Fix the request arguments and retry."


class InvalidRecipientError(ValidationError):
    """Raised when a message has no usable recipient."""

    kind = "invalid_recipient"
    action = "Provide at least one address in 'to'."


class MailApiError(GmailAccountsError):
    """Raised when the Gmail API rejects a request.

    Attributes:
        status: HTTP status returned by the API, if any.
    """

    kind = "mail_api"

    def __init__(self, message: str, status: int | None = None, account: str | None = None):
        self.status = status
        if status == 401:
            action = "Run reauthorize_account for this account."
        elif status == 404:
            action = "Check the message or label id."
        elif status is not None and (status == 429 or status >= 500):
            action = "Retry later."
        else:
            action = None
        super().__init__(message, account=account, action=action)

    def to_dict(self):
        data = super().to_dict()
        data["status"] = self.status
        return data


class OperationTimeoutError(GmailAccountsError):
    """Raised when a tool invocation exceeds its time budget."""

    kind = "timeout"
    action = "Retry later; the Gmail API did not respond in time."

    def __init__(self, operation: str, timeout: float, account: str | None = None):
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"{operation} timed out after {timeout:g}s", account=account)
