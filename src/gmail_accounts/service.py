"""Account-aware Gmail operations.

GmailAccounts is the single object the MCP server and the CLI talk to. For a
mail operation it resolves the account, makes sure the access token is
valid, performs one Gmail call under a time budget, and records the account
as used. Account management (add, remove, default, re-authorize) goes through
the registry and the consent flow.

Methods raise GmailAccountsError subclasses; ``safe_call`` converts any
outcome into the structured payload returned across the tool boundary.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any, Protocol, TypeVar

from gmail_accounts import config
from gmail_accounts.accounts import (
    AccountRegistry,
    AccountSelector,
    CredentialRecord,
    CredentialStore,
    DuplicateAccountError,
    TokenRefreshGuard,
)
from gmail_accounts.accounts.models import format_timestamp, utcnow
from gmail_accounts.exceptions import GmailAccountsError
from gmail_accounts.gmail import GmailClient, OperationTimeoutError, ValidationError
from gmail_accounts.gmail.compose import compose_message
from gmail_accounts.google import (
    ConsentError,
    GoogleOAuth,
    GoogleTokenEndpoint,
    LoopbackConsentFlow,
    TokenGrant,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Informational only: long-unused refresh tokens are often expired by Google.
STALE_AFTER = timedelta(days=180)


class ConsentProvider(Protocol):
    oauth: GoogleOAuth

    async def run(self, login_hint: str | None = None) -> TokenGrant: ...


def default_consent() -> ConsentProvider:
    return LoopbackConsentFlow(GoogleOAuth())


async def safe_call(operation: Awaitable[dict[str, Any]]) -> dict[str, Any]:
    """Await an operation and never raise: errors become ``{"error": {...}}``."""
    try:
        return await operation
    except GmailAccountsError as e:
        logger.warning(f"{type(e).__name__}: {e}")
        return {"error": e.to_dict()}
    except Exception as e:
        logger.exception("Unexpected error in tool call")
        return {
            "error": {
                "kind": "internal",
                "message": f"{type(e).__name__}: {e}",
                "account": None,
                "action": "Check the server logs and retry.",
            }
        }


class GmailAccounts:
    """Multi-account Gmail operations.

    Example:
        >>> accounts = GmailAccounts.from_config()
        >>> await accounts.start()
        >>> await accounts.search_emails("is:unread", account="work@example.com")
        >>> await accounts.close()
    """

    def __init__(
        self,
        registry: AccountRegistry,
        guard: TokenRefreshGuard,
        endpoint: GoogleTokenEndpoint | None = None,
        consent_factory: Callable[[], ConsentProvider] = default_consent,
        client_factory: Callable[[CredentialRecord], GmailClient] = GmailClient,
        timeout: float | None = None,
    ):
        self.registry = registry
        self.guard = guard
        self.selector = AccountSelector(registry)
        self.endpoint = endpoint
        self._consent_factory = consent_factory
        self._client_factory = client_factory
        self.timeout = timeout if timeout is not None else config.operation_timeout()

    @classmethod
    def from_config(
        cls,
        root: str | None = None,
        consent_factory: Callable[[], ConsentProvider] = default_consent,
    ) -> GmailAccounts:
        """Build an instance backed by the configured home directory."""
        registry = AccountRegistry(CredentialStore(root))
        endpoint = GoogleTokenEndpoint()
        return cls(
            registry,
            TokenRefreshGuard(registry, endpoint),
            endpoint=endpoint,
            consent_factory=consent_factory,
        )

    async def start(self) -> None:
        await self.registry.load()

    async def close(self) -> None:
        await self.registry.close()

    async def _with_account(
        self,
        operation: str,
        account: str | None,
        action: Callable[[GmailClient], Awaitable[T]],
    ) -> tuple[str, T]:
        email = self.selector.select(account)

        async def run() -> T:
            record = await self.guard.ensure_valid(email)
            return await action(self._client_factory(record))

        try:
            result = await asyncio.wait_for(run(), self.timeout)
        except asyncio.TimeoutError as e:
            raise OperationTimeoutError(operation, self.timeout, account=email) from e
        except GmailAccountsError as e:
            if e.account is None:
                e.account = email
            raise

        await self.registry.touch(email)
        return email, result

    # Mail operations

    async def send_email(
        self,
        to: list[str],
        subject: str,
        body: str = "",
        cc: list[str] | None = None,
        bcc: list[str] | None = None,
        html_body: str | None = None,
        thread_id: str | None = None,
        in_reply_to: str | None = None,
        from_name: str | None = None,
        account: str | None = None,
    ) -> dict[str, Any]:
        email = self.selector.select(account)
        msg = compose_message(
            to=to,
            subject=subject,
            body=body,
            cc=cc,
            bcc=bcc,
            html_body=html_body,
            sender=email if from_name else None,
            from_name=from_name,
            in_reply_to=in_reply_to,
        )
        email, sent = await self._with_account(
            "send_email", email, lambda client: client.send_message(msg, thread_id=thread_id)
        )
        return {"account": email, "id": sent["id"], "threadId": sent["threadId"]}

    async def search_emails(
        self,
        query: str,
        max_results: int = 10,
        page_token: str | None = None,
        account: str | None = None,
    ) -> dict[str, Any]:
        if not 1 <= max_results <= 500:
            raise ValidationError("max_results must be between 1 and 500")
        email, result = await self._with_account(
            "search_emails",
            account,
            lambda client: client.search(query, max_results=max_results, page_token=page_token),
        )
        return {"account": email, **result.to_dict()}

    async def read_email(self, message_id: str, account: str | None = None) -> dict[str, Any]:
        if not message_id:
            raise ValidationError("message_id is required")
        email, message = await self._with_account(
            "read_email", account, lambda client: client.get_message(message_id)
        )
        return {"account": email, "message": message.to_dict()}

    async def manage_labels(
        self,
        message_id: str,
        add_labels: list[str] | None = None,
        remove_labels: list[str] | None = None,
        account: str | None = None,
    ) -> dict[str, Any]:
        if not message_id:
            raise ValidationError("message_id is required")
        if not add_labels and not remove_labels:
            raise ValidationError("Specify labels to add or remove")
        email, result = await self._with_account(
            "manage_labels",
            account,
            lambda client: client.modify_labels(message_id, add_labels, remove_labels),
        )
        return {"account": email, **result}

    async def list_labels(self, account: str | None = None) -> dict[str, Any]:
        email, labels = await self._with_account(
            "list_labels", account, lambda client: client.list_labels()
        )
        return {"account": email, "labels": labels}

    # Account management

    def list_accounts(self) -> dict[str, Any]:
        now = utcnow()
        accounts = []
        for entry in self.registry.list():
            last_seen = entry.last_used_at or entry.added_at
            accounts.append(
                {
                    "email": entry.email,
                    "is_default": entry.is_default,
                    "added_at": format_timestamp(entry.added_at),
                    "last_used_at": format_timestamp(entry.last_used_at),
                    "needs_reauth": self.registry.needs_reauth(entry.email),
                    "stale": now - last_seen > STALE_AFTER,
                }
            )
        default = self.registry.default()
        return {"accounts": accounts, "default": default.email if default else None}

    async def _consent(self, login_hint: str | None = None) -> tuple[CredentialRecord, str]:
        """Run consent and identify the mailbox that granted it."""
        flow = self._consent_factory()
        grant = await flow.run(login_hint=login_hint)
        record = CredentialRecord(
            account_email="",
            client_id=flow.oauth.client_id,
            client_secret=flow.oauth.client_secret,
            refresh_token=grant.refresh_token or "",
            access_token=grant.access_token,
            expiry=grant.expiry,
            scopes=grant.scopes,
        )
        profile = await asyncio.wait_for(self._client_factory(record).get_profile(), self.timeout)
        email = profile.get("emailAddress")
        if not email:
            raise ConsentError("Gmail did not report the authorized mailbox address")
        record.account_email = email
        return record, email

    async def add_account(self, make_default: bool = False) -> dict[str, Any]:
        """Run the consent flow and register the authorized mailbox."""
        record, email = await self._consent()
        if email in self.registry:
            raise DuplicateAccountError(email)
        entry = await self.registry.add(email, record, mark_default=make_default)
        return {"added": entry.email, "is_default": entry.is_default}

    async def reauthorize_account(self, account: str) -> dict[str, Any]:
        """Repeat consent for a registered account and replace its credentials."""
        email = self.registry.get(account).email
        record, granted = await self._consent(login_hint=email)
        if granted.lower() != email.lower():
            raise ConsentError(
                f"Consent was granted for {granted}, not {email}",
                account=email,
                action=f"Sign in as {email} on the consent screen.",
            )
        record.account_email = email
        await self.registry.replace_credential(email, record)
        return {"reauthorized": email}

    async def remove_account(self, account: str, revoke: bool = False) -> dict[str, Any]:
        entry = self.registry.get(account)
        refresh_token = None
        if revoke:
            stored = self.registry.stored_record(entry.email)
            refresh_token = stored.refresh_token if stored else None

        removed = await self.registry.remove(entry.email)
        result: dict[str, Any] = {"removed": removed.email, "was_default": removed.is_default}
        if removed.is_default:
            result["notice"] = (
                "The removed account was the default; no default is set now. "
                "Use set_default_account to choose one."
            )
        if refresh_token and self.endpoint is not None:
            result["revoked"] = await self.endpoint.revoke(refresh_token)
        return result

    async def set_default_account(self, account: str) -> dict[str, Any]:
        entry = await self.registry.set_default(account)
        return {"default": entry.email}
