"""Access token refresh with per-account serialization.

Per request, an account moves through:

    VALID -> (expiry reached) EXPIRED -> REFRESHING -> VALID | REAUTH_REQUIRED

A token whose expiry equals the current instant is already expired. Transient
refresh failures are retried with exponential backoff; terminal ones (revoked
grant, ``invalid_grant``) flag the account and raise
ReauthenticationRequiredError. The guard never starts a consent flow itself.

Only one refresh exchange runs per account at a time. Callers that arrive
while a refresh is in flight wait on the account's lock and then pick up the
record the first caller stored.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from enum import Enum
from typing import Protocol

from gmail_accounts import config
from gmail_accounts.accounts.models import CredentialRecord, utcnow
from gmail_accounts.accounts.registry import AccountRegistry
from gmail_accounts.google.exceptions import (
    ReauthenticationRequiredError,
    RefreshTransientError,
)
from gmail_accounts.google.oauth import RefreshFailure, TokenGrant

logger = logging.getLogger(__name__)

# Used when the token endpoint omits expires_in.
FALLBACK_LIFETIME = timedelta(hours=1)


class RefreshState(str, Enum):
    VALID = "valid"
    EXPIRED = "expired"
    REFRESHING = "refreshing"
    REAUTH_REQUIRED = "reauth_required"


class TokenEndpoint(Protocol):
    async def refresh(
        self, client_id: str, client_secret: str, refresh_token: str
    ) -> TokenGrant: ...


class TokenRefreshGuard:
    """Hands out credential records whose access token is usable right now."""

    def __init__(
        self,
        registry: AccountRegistry,
        endpoint: TokenEndpoint,
        attempts: int | None = None,
        base_delay: float | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._registry = registry
        self._endpoint = endpoint
        self.attempts = attempts if attempts is not None else config.refresh_attempts()
        self.base_delay = base_delay if base_delay is not None else config.refresh_base_delay()
        self._clock = clock
        self._sleep = sleep
        self._locks: dict[str, asyncio.Lock] = {}
        self._states: dict[str, RefreshState] = {}

    def state(self, email: str) -> RefreshState:
        """Last observed refresh state for an account."""
        key = email.strip().lower()
        if self._registry.needs_reauth(email):
            return RefreshState.REAUTH_REQUIRED
        return self._states.get(key, RefreshState.VALID)

    async def ensure_valid(self, email: str) -> CredentialRecord:
        """Return the account's credentials, refreshing them first if expired.

        Raises:
            UnknownAccountError: If the account is not registered.
            ReauthenticationRequiredError: If the refresh token is unusable.
            RefreshTransientError: If every refresh attempt failed transiently.
        """
        key = email.strip().lower()
        record = self._registry.credential(email)
        if not record.is_expired(self._clock()):
            self._states[key] = RefreshState.VALID
            return record

        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            # Another caller may have refreshed while we waited.
            record = self._registry.credential(email)
            if not record.is_expired(self._clock()):
                self._states[key] = RefreshState.VALID
                return record

            self._states[key] = RefreshState.REFRESHING
            logger.info(f"Access token for {email} expired, refreshing...")
            try:
                grant = await self._refresh_with_backoff(record)
            except ReauthenticationRequiredError:
                self._states[key] = RefreshState.REAUTH_REQUIRED
                self._registry.mark_reauth_required(email)
                raise
            except BaseException:
                self._states[key] = RefreshState.EXPIRED
                raise

            updated = record.with_token(
                access_token=grant.access_token,
                expiry=grant.expiry or self._clock() + FALLBACK_LIFETIME,
                refresh_token=grant.refresh_token,
                scopes=grant.scopes,
            )
            try:
                await self._registry.update_credential(email, updated)
            except BaseException:
                self._states[key] = RefreshState.EXPIRED
                raise
            self._states[key] = RefreshState.VALID
            logger.info(f"Refreshed access token for {email}, expires {updated.expiry}")
            return updated

    async def _refresh_with_backoff(self, record: CredentialRecord) -> TokenGrant:
        email = record.account_email
        delay = self.base_delay
        last_error: RefreshFailure | None = None

        for attempt in range(1, self.attempts + 1):
            try:
                return await self._endpoint.refresh(
                    record.client_id, record.client_secret, record.refresh_token
                )
            except RefreshFailure as e:
                if not e.retryable:
                    logger.error(f"Token refresh for {email} rejected: {e}")
                    raise ReauthenticationRequiredError(email, str(e)) from e
                last_error = e
                if attempt < self.attempts:
                    logger.warning(
                        f"Token refresh for {email} failed ({e}), "
                        f"retry {attempt}/{self.attempts - 1} in {delay:g}s"
                    )
                    await self._sleep(delay)
                    delay *= 2

        logger.error(f"Token refresh for {email} failed after {self.attempts} attempts")
        raise RefreshTransientError(email, self.attempts, str(last_error)) from last_error
