"""Gmail API client implementation."""

from __future__ import annotations

import asyncio
import base64
import logging
import threading
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from email.message import Message
from typing import Any

from google.oauth2.credentials import Credentials as GoogleCredentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from gmail_accounts.accounts.models import CredentialRecord
from gmail_accounts.gmail.compose import encode_message
from gmail_accounts.gmail.exceptions import MailApiError, ValidationError

logger = logging.getLogger(__name__)

SUMMARY_HEADERS = ["Subject", "From", "Date"]

# Upper bound on concurrent detail fetches during a search.
FETCH_CONCURRENCY = 10


@dataclass
class EmailSummary:
    """Search hit: headers and snippet, no body."""

    id: str
    thread_id: str
    subject: str
    sender: str
    date: str
    snippet: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class EmailMessage:
    """Represents a full Gmail message."""

    id: str
    thread_id: str
    subject: str
    sender: str
    to: str
    cc: str
    date: str
    snippet: str
    body: str
    html: str | None = None
    labels: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SearchResult:
    """Messages matching a query, in the order the API listed them."""

    messages: list[EmailSummary]
    result_size_estimate: int = 0
    next_page_token: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "messages": [m.to_dict() for m in self.messages],
            "result_size_estimate": self.result_size_estimate,
            "next_page_token": self.next_page_token,
        }


def build_gmail_service(record: CredentialRecord) -> Any:
    """Build a Gmail API service for an already-valid access token.

    The credentials carry no refresh token, so the API library cannot refresh
    behind the registry's back.
    """
    creds = GoogleCredentials(token=record.access_token, scopes=record.scopes or None)
    return build("gmail", "v1", credentials=creds, cache_discovery=False)


def header_value(headers: list[dict[str, str]], name: str) -> str:
    """Case-insensitive header lookup; missing headers are empty strings."""
    wanted = name.lower()
    for header in headers or []:
        if (header.get("name") or "").lower() == wanted:
            return header.get("value") or ""
    return ""


def extract_body(payload: dict) -> tuple[str, str | None]:
    """Extract plain text and HTML body from message payload.

    Returns:
        Tuple of (plain_text, html_or_none).
    """
    plain_body = ""
    html_body = None

    def decode_part(part: dict) -> str:
        data = part.get("body", {}).get("data", "")
        if data:
            padded = data + "=" * (-len(data) % 4)
            return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
        return ""

    def process_part(part: dict) -> None:
        nonlocal plain_body, html_body
        mime_type = part.get("mimeType", "")

        if mime_type == "text/plain" and not plain_body:
            plain_body = decode_part(part)
        elif mime_type == "text/html" and not html_body:
            html_body = decode_part(part)
        elif "parts" in part:
            for subpart in part["parts"]:
                process_part(subpart)

    if payload.get("body", {}).get("data"):
        decoded = decode_part(payload)
        if payload.get("mimeType", "") == "text/html":
            html_body = decoded
        else:
            plain_body = decoded
    elif "parts" in payload:
        for part in payload["parts"]:
            process_part(part)

    return plain_body, html_body


class GmailClient:
    """Gmail API client bound to one account's access token.

    Every API call runs in a worker thread. Each thread builds its own
    service object because the underlying httplib2 transport is not
    thread-safe.

    Usage:
        client = GmailClient(record)
        result = await client.search("from:boss@example.com is:unread")
        message = await client.get_message(result.messages[0].id)
    """

    def __init__(
        self,
        record: CredentialRecord,
        user: str = "me",
        service_factory: Callable[[CredentialRecord], Any] = build_gmail_service,
    ) -> None:
        self.record = record
        self.account = record.account_email
        self._user = user
        self._service_factory = service_factory
        self._local = threading.local()

    def _service(self) -> Any:
        service = getattr(self._local, "service", None)
        if service is None:
            service = self._service_factory(self.record)
            self._local.service = service
        return service

    def _execute(self, make_request: Callable[[Any], Any]) -> dict:
        """Build and execute one API request, mapping API failures."""
        try:
            return make_request(self._service()).execute()
        except HttpError as e:
            status = int(e.resp.status) if getattr(e, "resp", None) is not None else None
            reason = getattr(e, "reason", None) or str(e)
            raise MailApiError(
                f"Gmail API error {status}: {reason}", status=status, account=self.account
            ) from e

    async def _call(self, make_request: Callable[[Any], Any]) -> dict:
        return await asyncio.to_thread(self._execute, make_request)

    async def get_profile(self) -> dict[str, Any]:
        """Get the mailbox profile (emailAddress, messagesTotal, ...)."""
        return await self._call(lambda s: s.users().getProfile(userId=self._user))

    async def send_message(self, msg: Message, thread_id: str | None = None) -> dict[str, Any]:
        """Send an already composed message.

        Returns:
            Dict with the sent message's 'id' and 'threadId'.
        """
        payload: dict[str, Any] = {"raw": encode_message(msg)}
        if thread_id:
            payload["threadId"] = thread_id

        result = await self._call(
            lambda s: s.users().messages().send(userId=self._user, body=payload)
        )
        logger.info(f"Sent message {result.get('id')} from {self.account}")
        return {"id": result.get("id", ""), "threadId": result.get("threadId", "")}

    async def search(
        self,
        query: str = "",
        max_results: int = 10,
        page_token: str | None = None,
    ) -> SearchResult:
        """Search for emails using Gmail query syntax.

        Args:
            query: Gmail search query (e.g., "from:user@example.com subject:test").
                  See https://support.google.com/mail/answer/7190 for syntax.
            max_results: Maximum number of messages to return (1-500).
            page_token: Token from a previous result's next_page_token.

        Returns:
            SearchResult whose messages follow the list call's order.
        """
        if not 1 <= max_results <= 500:
            raise ValidationError("max_results must be between 1 and 500")

        params: dict[str, Any] = {"userId": self._user, "q": query, "maxResults": max_results}
        if page_token:
            params["pageToken"] = page_token
        listing = await self._call(lambda s: s.users().messages().list(**params))

        ids = [ref["id"] for ref in listing.get("messages", [])]
        semaphore = asyncio.Semaphore(FETCH_CONCURRENCY)

        async def fetch(message_id: str) -> EmailSummary | None:
            async with semaphore:
                return await asyncio.to_thread(self._fetch_summary, message_id)

        summaries = await asyncio.gather(*(fetch(message_id) for message_id in ids))

        return SearchResult(
            messages=[summary for summary in summaries if summary is not None],
            result_size_estimate=listing.get("resultSizeEstimate", 0),
            next_page_token=listing.get("nextPageToken"),
        )

    def _fetch_summary(self, message_id: str) -> EmailSummary | None:
        try:
            msg = self._execute(
                lambda s: s.users()
                .messages()
                .get(
                    userId=self._user,
                    id=message_id,
                    format="metadata",
                    metadataHeaders=SUMMARY_HEADERS,
                )
            )
        except MailApiError as e:
            if e.status == 404:
                logger.warning(f"Message {message_id} disappeared during search")
                return None
            raise

        headers = msg.get("payload", {}).get("headers", [])
        return EmailSummary(
            id=msg.get("id", message_id),
            thread_id=msg.get("threadId", ""),
            subject=header_value(headers, "Subject"),
            sender=header_value(headers, "From"),
            date=header_value(headers, "Date"),
            snippet=msg.get("snippet", ""),
        )

    async def get_message(self, message_id: str) -> EmailMessage:
        """Get a single message by ID, including its body.

        Raises:
            MailApiError: If the message does not exist (status 404) or the call fails.
        """
        if not message_id:
            raise ValidationError("message_id is required")

        msg = await self._call(
            lambda s: s.users().messages().get(userId=self._user, id=message_id, format="full")
        )
        payload = msg.get("payload", {})
        headers = payload.get("headers", [])
        body, html = extract_body(payload)

        return EmailMessage(
            id=msg.get("id", message_id),
            thread_id=msg.get("threadId", ""),
            subject=header_value(headers, "Subject"),
            sender=header_value(headers, "From"),
            to=header_value(headers, "To"),
            cc=header_value(headers, "Cc"),
            date=header_value(headers, "Date"),
            snippet=msg.get("snippet", ""),
            body=body,
            html=html,
            labels=msg.get("labelIds", []),
        )

    async def list_labels(self) -> list[dict[str, str]]:
        """List all Gmail labels.

        Returns:
            List of dicts with 'id', 'name' and 'type' keys.
        """
        results = await self._call(lambda s: s.users().labels().list(userId=self._user))
        return [
            {"id": label["id"], "name": label.get("name", ""), "type": label.get("type", "")}
            for label in results.get("labels", [])
        ]

    async def resolve_label_ids(self, labels: list[str]) -> list[str]:
        """Map label ids or names (case-insensitive) to label ids.

        Raises:
            ValidationError: If a label matches neither an id nor a name.
        """
        if not labels:
            return []
        known = await self.list_labels()
        by_id = {label["id"]: label["id"] for label in known}
        by_name = {label["name"].lower(): label["id"] for label in known}

        resolved = []
        for label in labels:
            label_id = by_id.get(label) or by_name.get(label.lower())
            if label_id is None:
                raise ValidationError(f"Unknown label: {label}", account=self.account)
            resolved.append(label_id)
        return resolved

    async def modify_labels(
        self,
        message_id: str,
        add_labels: list[str] | None = None,
        remove_labels: list[str] | None = None,
    ) -> dict[str, Any]:
        """Add and/or remove labels on a message.

        Args:
            message_id: Gmail message ID.
            add_labels: Label ids or names to add.
            remove_labels: Label ids or names to remove.

        Returns:
            Dict with the message 'id' and its resulting 'labelIds'.
        """
        if not message_id:
            raise ValidationError("message_id is required")
        if not add_labels and not remove_labels:
            raise ValidationError("Specify labels to add or remove")

        add_ids = await self.resolve_label_ids(add_labels or [])
        remove_ids = await self.resolve_label_ids(remove_labels or [])
        body = {"addLabelIds": add_ids, "removeLabelIds": remove_ids}

        result = await self._call(
            lambda s: s.users().messages().modify(userId=self._user, id=message_id, body=body)
        )
        return {"id": result.get("id", message_id), "labelIds": result.get("labelIds", [])}
