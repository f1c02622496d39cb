"""Shared fixtures for gmail-accounts tests."""

import asyncio
from datetime import timedelta

import pytest

from gmail_accounts.accounts import AccountRegistry, CredentialRecord, CredentialStore
from gmail_accounts.accounts.models import utcnow
from gmail_accounts.google import TokenGrant
from gmail_accounts.google.oauth import SCOPES

GMAIL_SCOPES = [SCOPES["gmail_readonly"], SCOPES["gmail_send"], SCOPES["gmail_modify"]]


class FakeTokenEndpoint:
    """Token endpoint that replays scripted outcomes.

    Each outcome is either a TokenGrant or an exception to raise. When the
    script runs out, a fresh one-hour token is issued.
    """

    def __init__(self, delay: float = 0.0):
        self.outcomes = []
        self.delay = delay
        self.calls = 0
        self.revoked = []

    async def refresh(self, client_id, client_secret, refresh_token):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is not None:
            return outcome
        return TokenGrant(
            access_token=f"access-{self.calls}",
            refresh_token=None,
            expiry=utcnow() + timedelta(hours=1),
            scopes=list(GMAIL_SCOPES),
        )

    async def revoke(self, token):
        self.revoked.append(token)
        return True


@pytest.fixture(autouse=True)
def _no_client_env(monkeypatch):
    """Keep a developer's real OAuth client out of the tests."""
    monkeypatch.delenv("GMAIL_CLIENT_ID", raising=False)
    monkeypatch.delenv("GMAIL_CLIENT_SECRET", raising=False)


@pytest.fixture
def make_record():
    """Factory for credential records; ``expires_in=None`` means no expiry known."""

    def _make(
        email="me@gmail.com",
        access_token="access-0",
        expires_in=timedelta(hours=1),
        refresh_token="refresh-0",
    ):
        return CredentialRecord(
            account_email=email,
            client_id="test-client-id.apps.googleusercontent.com",
            client_secret="test-client-secret",
            refresh_token=refresh_token,
            access_token=access_token,
            expiry=utcnow() + expires_in if expires_in is not None else None,
            scopes=list(GMAIL_SCOPES),
        )

    return _make


@pytest.fixture
def store(tmp_path):
    return CredentialStore(tmp_path / "home")


@pytest.fixture
def registry(store):
    return AccountRegistry(store)


@pytest.fixture
def endpoint():
    return FakeTokenEndpoint()


@pytest.fixture
def slow_endpoint():
    """Endpoint whose exchanges take long enough for callers to pile up."""
    return FakeTokenEndpoint(delay=0.05)
