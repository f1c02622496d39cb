"""Gmail API access for one account at a time.

Usage:
    from gmail_accounts.gmail import GmailClient

    client = GmailClient(record)  # record from TokenRefreshGuard.ensure_valid()

    result = await client.search("from:student@gwu.edu subject:absent after:2026/01/20")
    for msg in result.messages:
        print(msg.subject, msg.sender, msg.date)

    message = await client.get_message(result.messages[0].id)
    print(message.body)
"""

from __future__ import annotations

from gmail_accounts.gmail.client import (
    EmailMessage,
    EmailSummary,
    GmailClient,
    SearchResult,
)
from gmail_accounts.gmail.compose import compose_message, encode_message
from gmail_accounts.gmail.exceptions import (
    InvalidRecipientError,
    MailApiError,
    OperationTimeoutError,
    ValidationError,
)

__all__ = [
    "GmailClient",
    "EmailMessage",
    "EmailSummary",
    "SearchResult",
    "compose_message",
    "encode_message",
    "InvalidRecipientError",
    "MailApiError",
    "OperationTimeoutError",
    "ValidationError",
]
