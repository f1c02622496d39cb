"""Tests for account-aware Gmail operations and the tool error payloads."""

import asyncio
import base64
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from fakes import FakeGmailService, summary_message
from gmail_accounts.accounts import TokenRefreshGuard
from gmail_accounts.accounts.models import utcnow
from gmail_accounts.gmail import GmailClient
from gmail_accounts.google import ConsentError, RefreshFailure, TokenGrant
from gmail_accounts.service import GmailAccounts, safe_call


class FakeConsent:
    """Consent flow that grants immediately."""

    def __init__(self, grant=None, error=None):
        self.oauth = SimpleNamespace(client_id="client-id", client_secret="client-secret")
        self.grant = grant or TokenGrant(
            access_token="consent-access",
            refresh_token="consent-refresh",
            expiry=utcnow() + timedelta(hours=1),
        )
        self.error = error
        self.hints = []

    async def run(self, login_hint=None):
        self.hints.append(login_hint)
        if self.error:
            raise self.error
        return self.grant


@pytest.fixture
def mailbox():
    """Fake Gmail backend per account email."""
    return {}


@pytest.fixture
def consent():
    return FakeConsent()


@pytest.fixture
def accounts(registry, endpoint, consent, mailbox):
    """GmailAccounts over fake Gmail services, keyed by account."""
    seen_tokens = []

    def client_factory(record):
        seen_tokens.append(record.access_token)
        service = mailbox.setdefault(record.account_email or "new", FakeGmailService())
        return GmailClient(record, service_factory=lambda r: service)

    guard = TokenRefreshGuard(registry, endpoint, attempts=2, base_delay=0.0)
    instance = GmailAccounts(
        registry,
        guard,
        endpoint=endpoint,
        consent_factory=lambda: consent,
        client_factory=client_factory,
        timeout=5.0,
    )
    instance.seen_tokens = seen_tokens
    return instance


class TestSafeCall:
    """Every outcome crosses the tool boundary as data."""

    @pytest.mark.asyncio
    async def test_success_passes_through(self):
        async def ok():
            return {"ok": True}

        assert await safe_call(ok()) == {"ok": True}

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_internal(self):
        async def boom():
            raise RuntimeError("kaboom")

        result = await safe_call(boom())

        assert result["error"]["kind"] == "internal"
        assert "kaboom" in result["error"]["message"]


class TestAccountResolution:
    """Test which account an operation runs against."""

    @pytest.mark.asyncio
    async def test_no_accounts(self, accounts):
        result = await safe_call(accounts.search_emails("is:unread"))

        assert result["error"]["kind"] == "no_account_specified"
        assert result["error"]["action"]

    @pytest.mark.asyncio
    async def test_unknown_account(self, accounts, registry, make_record):
        await registry.add("a@gmail.com", make_record(email="a@gmail.com"))

        result = await safe_call(accounts.search_emails("x", account="ghost@gmail.com"))

        assert result["error"]["kind"] == "unknown_account"
        assert result["error"]["account"] == "ghost@gmail.com"

    @pytest.mark.asyncio
    async def test_explicit_account_used(self, accounts, registry, mailbox, make_record):
        for email in ("a@gmail.com", "b@gmail.com"):
            await registry.add(email, make_record(email=email))
        mailbox["b@gmail.com"] = FakeGmailService("b@gmail.com")
        mailbox["b@gmail.com"].add_messages(summary_message("m1", "for b"))

        result = await accounts.search_emails("x", account="b@gmail.com")

        assert result["account"] == "b@gmail.com"
        assert [m["subject"] for m in result["messages"]] == ["for b"]

    @pytest.mark.asyncio
    async def test_success_updates_last_used(self, accounts, registry, make_record):
        await registry.add("me@gmail.com", make_record())

        await accounts.list_labels()

        assert registry.get("me@gmail.com").last_used_at is not None


class TestMailOperations:
    """Test send/search/read/labels through the account layer."""

    @pytest.mark.asyncio
    async def test_send_refreshes_expired_token_first(
        self, accounts, registry, endpoint, mailbox, make_record
    ):
        """The Gmail call must see the refreshed token, never the expired one."""
        await registry.add("me@gmail.com", make_record(expires_in=-timedelta(minutes=1)))

        result = await accounts.send_email(to=["a@example.com"], subject="Hi", body="Hello")

        assert result == {"account": "me@gmail.com", "id": "sent-1", "threadId": "thread-1"}
        assert endpoint.calls == 1
        assert accounts.seen_tokens == ["access-1"]
        assert len(mailbox["me@gmail.com"].sent) == 1

    @pytest.mark.asyncio
    async def test_send_with_display_name(self, accounts, registry, mailbox, make_record):
        await registry.add("a@gmail.com", make_record(email="a@gmail.com"))
        await registry.add("b@gmail.com", make_record(email="b@gmail.com"))

        await accounts.send_email(
            to=["x@example.com"], subject="Hi", body="Hello", from_name="Bea", account="B@gmail.com"
        )

        raw = base64.urlsafe_b64decode(mailbox["b@gmail.com"].sent[0]["raw"])
        assert b"From: Bea <b@gmail.com>" in raw

    @pytest.mark.asyncio
    async def test_invalid_recipient_checked_before_network(
        self, accounts, registry, endpoint, make_record
    ):
        await registry.add("me@gmail.com", make_record(expires_in=-timedelta(minutes=1)))

        result = await safe_call(accounts.send_email(to=[], subject="Hi", body="Hello"))

        assert result["error"]["kind"] == "invalid_recipient"
        assert endpoint.calls == 0
        assert accounts.seen_tokens == []

    @pytest.mark.asyncio
    async def test_max_results_checked_before_network(self, accounts, registry, make_record):
        await registry.add("me@gmail.com", make_record())

        result = await safe_call(accounts.search_emails("x", max_results=1000))

        assert result["error"]["kind"] == "validation"
        assert accounts.seen_tokens == []

    @pytest.mark.asyncio
    async def test_read_email(self, accounts, registry, mailbox, make_record):
        await registry.add("me@gmail.com", make_record())
        mailbox["me@gmail.com"] = FakeGmailService()
        mailbox["me@gmail.com"].add_messages(summary_message("m1", "Subject line"))

        result = await accounts.read_email("m1")

        assert result["account"] == "me@gmail.com"
        assert result["message"]["subject"] == "Subject line"

    @pytest.mark.asyncio
    async def test_read_missing_email(self, accounts, registry, mailbox, make_record):
        await registry.add("me@gmail.com", make_record())
        mailbox["me@gmail.com"] = FakeGmailService()
        mailbox["me@gmail.com"].errors = {"m404": 404}

        result = await safe_call(accounts.read_email("m404"))

        assert result["error"]["kind"] == "mail_api"
        assert result["error"]["status"] == 404
        assert result["error"]["account"] == "me@gmail.com"

    @pytest.mark.asyncio
    async def test_manage_labels_requires_changes(self, accounts, registry, make_record):
        await registry.add("me@gmail.com", make_record())

        result = await safe_call(accounts.manage_labels("m1"))

        assert result["error"]["kind"] == "validation"

    @pytest.mark.asyncio
    async def test_manage_labels(self, accounts, registry, mailbox, make_record):
        await registry.add("me@gmail.com", make_record())

        result = await accounts.manage_labels("m1", remove_labels=["UNREAD"])

        assert result["account"] == "me@gmail.com"
        assert mailbox["me@gmail.com"].modified[0][1]["removeLabelIds"] == ["UNREAD"]


class TestFailureReporting:
    """Test refresh failures and timeouts as tool errors."""

    @pytest.mark.asyncio
    async def test_revoked_token_reported(self, accounts, registry, endpoint, make_record):
        await registry.add("me@gmail.com", make_record(expires_in=-timedelta(minutes=1)))
        endpoint.outcomes = [RefreshFailure("invalid_grant", retryable=False)]

        result = await safe_call(accounts.search_emails("x"))

        error = result["error"]
        assert error["kind"] == "reauthentication_required"
        assert error["account"] == "me@gmail.com"
        assert "reauthorize_account" in error["action"]
        assert accounts.list_accounts()["accounts"][0]["needs_reauth"] is True

    @pytest.mark.asyncio
    async def test_transient_refresh_failure_reported(
        self, accounts, registry, endpoint, make_record
    ):
        await registry.add("me@gmail.com", make_record(expires_in=-timedelta(minutes=1)))
        endpoint.outcomes = [RefreshFailure("http_503", retryable=True)] * 2

        result = await safe_call(accounts.search_emails("x"))

        assert result["error"]["kind"] == "refresh_transient"
        assert accounts.list_accounts()["accounts"][0]["needs_reauth"] is False

    @pytest.mark.asyncio
    async def test_timeout(self, accounts, registry, mailbox, make_record):
        """A hung Gmail call must come back as a timeout naming the account."""
        await registry.add("me@gmail.com", make_record())
        mailbox["me@gmail.com"] = FakeGmailService()
        mailbox["me@gmail.com"].add_messages(summary_message("m1", "slow"))
        mailbox["me@gmail.com"].delays = {"m1": 0.5}
        accounts.timeout = 0.05

        result = await safe_call(accounts.search_emails("x"))

        assert result["error"]["kind"] == "timeout"
        assert result["error"]["account"] == "me@gmail.com"
        assert registry.get("me@gmail.com").last_used_at is None


class TestAccountManagement:
    """Test add, re-authorize, remove, default and listing."""

    @pytest.mark.asyncio
    async def test_add_first_account_becomes_default(self, accounts, registry, mailbox):
        mailbox["new"] = FakeGmailService("new@gmail.com")

        result = await accounts.add_account()

        assert result == {"added": "new@gmail.com", "is_default": True}
        record = registry.credential("new@gmail.com")
        assert record.refresh_token == "consent-refresh"
        assert record.client_id == "client-id"

    @pytest.mark.asyncio
    async def test_add_duplicate(self, accounts, registry, mailbox, make_record):
        await registry.add("new@gmail.com", make_record(email="new@gmail.com"))
        mailbox["new"] = FakeGmailService("new@gmail.com")

        result = await safe_call(accounts.add_account())

        assert result["error"]["kind"] == "duplicate_account"
        assert registry.credential("new@gmail.com").refresh_token == "refresh-0"

    @pytest.mark.asyncio
    async def test_add_consent_denied(self, accounts, consent):
        consent.error = ConsentError("Consent was not granted: access_denied")

        result = await safe_call(accounts.add_account())

        assert result["error"]["kind"] == "consent_failed"
        assert accounts.list_accounts()["accounts"] == []

    @pytest.mark.asyncio
    async def test_reauthorize_clears_flag(self, accounts, registry, consent, mailbox, make_record):
        await registry.add("me@gmail.com", make_record())
        registry.mark_reauth_required("me@gmail.com")
        mailbox["new"] = FakeGmailService("me@gmail.com")

        result = await accounts.reauthorize_account("me@gmail.com")

        assert result == {"reauthorized": "me@gmail.com"}
        assert consent.hints == ["me@gmail.com"]
        assert registry.needs_reauth("me@gmail.com") is False
        assert registry.credential("me@gmail.com").refresh_token == "consent-refresh"

    @pytest.mark.asyncio
    async def test_reauthorize_with_wrong_mailbox(self, accounts, registry, mailbox, make_record):
        """Consent for a different mailbox must not overwrite the account."""
        await registry.add("me@gmail.com", make_record())
        mailbox["new"] = FakeGmailService("someone-else@gmail.com")

        result = await safe_call(accounts.reauthorize_account("me@gmail.com"))

        assert result["error"]["kind"] == "consent_failed"
        assert registry.credential("me@gmail.com").refresh_token == "refresh-0"

    @pytest.mark.asyncio
    async def test_remove_default_reports_notice(self, accounts, registry, make_record):
        await registry.add("a@gmail.com", make_record(email="a@gmail.com"))
        await registry.add("b@gmail.com", make_record(email="b@gmail.com"))

        result = await accounts.remove_account("a@gmail.com")

        assert result["was_default"] is True
        assert "set_default_account" in result["notice"]
        assert accounts.list_accounts()["default"] is None

    @pytest.mark.asyncio
    async def test_remove_with_revoke(self, accounts, registry, endpoint, make_record):
        await registry.add("me@gmail.com", make_record())

        result = await accounts.remove_account("me@gmail.com", revoke=True)

        assert result["revoked"] is True
        assert endpoint.revoked == ["refresh-0"]

    @pytest.mark.asyncio
    async def test_remove_broken_account_with_revoke(self, accounts, registry, endpoint, make_record):
        """An account without a refresh token is reported and can still be removed."""
        await registry.add("me@gmail.com", make_record(refresh_token=""))
        assert accounts.list_accounts()["accounts"][0]["needs_reauth"] is True

        result = await accounts.remove_account("me@gmail.com", revoke=True)

        assert result["removed"] == "me@gmail.com"
        assert "revoked" not in result
        assert endpoint.revoked == []
        assert "me@gmail.com" not in registry

    @pytest.mark.asyncio
    async def test_set_default_unknown(self, accounts):
        result = await safe_call(accounts.set_default_account("ghost@gmail.com"))

        assert result["error"]["kind"] == "unknown_account"

    @pytest.mark.asyncio
    async def test_list_accounts(self, accounts, registry, make_record):
        await registry.add("a@gmail.com", make_record(email="a@gmail.com"))
        await registry.add("b@gmail.com", make_record(email="b@gmail.com"))
        await accounts.set_default_account("b@gmail.com")

        listing = accounts.list_accounts()

        assert listing["default"] == "b@gmail.com"
        assert [a["email"] for a in listing["accounts"]] == ["a@gmail.com", "b@gmail.com"]
        assert [a["is_default"] for a in listing["accounts"]] == [False, True]
        assert listing["accounts"][0]["added_at"].endswith("Z")
        assert listing["accounts"][0]["stale"] is False

    @pytest.mark.asyncio
    async def test_long_unused_account_marked_stale(self, accounts, registry, make_record):
        await registry.add("me@gmail.com", make_record())
        later = utcnow() + timedelta(days=200)

        with patch("gmail_accounts.service.utcnow", return_value=later):
            listing = accounts.list_accounts()

        assert listing["accounts"][0]["stale"] is True


@pytest.mark.asyncio
async def test_concurrent_operations_share_one_refresh(
    registry, slow_endpoint, mailbox, make_record
):
    """Parallel tool calls on an expired account trigger a single refresh."""
    guard = TokenRefreshGuard(registry, slow_endpoint)
    accounts = GmailAccounts(
        registry,
        guard,
        client_factory=lambda record: GmailClient(
            record, service_factory=lambda r: mailbox.setdefault("me", FakeGmailService())
        ),
    )
    await registry.add("me@gmail.com", make_record(expires_in=-timedelta(minutes=1)))

    results = await asyncio.gather(*(accounts.list_labels() for _ in range(4)))

    assert slow_endpoint.calls == 1
    assert all(r["account"] == "me@gmail.com" for r in results)
