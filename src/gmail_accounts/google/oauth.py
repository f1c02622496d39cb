"""Google OAuth application using Authlib.

This module wraps the OAuth 2.0 client registered in Google Cloud Console:
- Client credential loading (explicit, environment, or client_secret.json)
- Authorization URL creation and code exchange for the consent flow
- Refresh-token exchange with transient/terminal error classification

It holds no per-account state; tokens are owned by the account registry.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx
from authlib.common.errors import AuthlibBaseError
from authlib.integrations.requests_client import OAuth2Session
from authlib.oauth2.rfc6749 import OAuth2Token

from gmail_accounts import config
from gmail_accounts.google.exceptions import ClientSecretsNotFoundError, ConsentError

logger = logging.getLogger(__name__)


SCOPES = {
    "gmail_readonly": "https://www.googleapis.com/auth/gmail.readonly",
    "gmail_send": "https://www.googleapis.com/auth/gmail.send",
    "gmail_modify": "https://www.googleapis.com/auth/gmail.modify",
    "gmail_labels": "https://www.googleapis.com/auth/gmail.labels",
    "userinfo_email": "https://www.googleapis.com/auth/userinfo.email",
}

DEFAULT_SCOPES = ["gmail_readonly", "gmail_send", "gmail_modify"]

# Full mailbox access; never requested.
FULL_MAILBOX_SCOPE = "https://mail.google.com/"

# Retryable OAuth error codes; any other code means the grant is dead.
RETRYABLE_ERRORS = {"temporarily_unavailable", "server_error"}


@dataclass
class TokenGrant:
    """Tokens issued by the Google token endpoint."""

    access_token: str
    refresh_token: str | None
    expiry: datetime | None
    scopes: list[str] = field(default_factory=list)

    @classmethod
    def from_token(cls, token: dict[str, Any]) -> TokenGrant:
        """Convert an Authlib token dict."""
        scope = token.get("scope") or ""
        expires_at = token.get("expires_at")
        return cls(
            access_token=token["access_token"],
            refresh_token=token.get("refresh_token"),
            expiry=datetime.fromtimestamp(expires_at, tz=timezone.utc) if expires_at else None,
            scopes=scope.split() if isinstance(scope, str) else list(scope),
        )


class RefreshFailure(Exception):
    """A refresh exchange failed.

    Attributes:
        retryable: True for network errors, 5xx and temporary OAuth errors.
        error: OAuth error code or a short description.
    """

    def __init__(self, error: str, retryable: bool, description: str = ""):
        self.error = error
        self.retryable = retryable
        self.description = description
        super().__init__(f"{error}: {description}" if description else error)


class GoogleOAuth:
    """Google OAuth client application used for the consent flow.

    Example:
        >>> oauth = GoogleOAuth()
        >>> url, state = oauth.get_authorization_url("http://localhost:8765/")
        >>> grant = oauth.fetch_token(redirect_response, "http://localhost:8765/", state)
        >>> fresh = await GoogleTokenEndpoint().refresh(oauth.client_id, oauth.client_secret, grant.refresh_token)
    """

    AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/auth"
    TOKEN_URL = "https://oauth2.googleapis.com/token"
    REVOKE_URL = "https://oauth2.googleapis.com/revoke"

    def __init__(
        self,
        scopes: list[str] | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        client_secrets_path: str | Path | None = None,
    ):
        """Initialize the OAuth application.

        Args:
            scopes: Scope names (e.g., ["gmail_readonly"]) or full URLs.
                   Defaults to read, send and modify.
            client_id: OAuth client ID (GMAIL_CLIENT_ID or the secrets file if not provided).
            client_secret: OAuth client secret.
            client_secrets_path: Path to client_secret.json. Defaults to the home directory.
        """
        self.client_secrets_path = (
            Path(client_secrets_path) if client_secrets_path else config.CLIENT_SECRETS
        )
        self.scopes = self._resolve_scopes(scopes or DEFAULT_SCOPES)

        client_id = client_id or os.environ.get("GMAIL_CLIENT_ID")
        client_secret = client_secret or os.environ.get("GMAIL_CLIENT_SECRET")
        if not client_id or not client_secret:
            client_id, client_secret = self._load_client_credentials()

        self.client_id = client_id
        self.client_secret = client_secret

    def _resolve_scopes(self, scopes: list[str]) -> list[str]:
        """Resolve scope names to full URLs."""
        resolved = []
        for scope in scopes:
            if scope == FULL_MAILBOX_SCOPE:
                raise ValueError("Full mailbox scope is not supported; use gmail_modify")
            if scope.startswith("https://"):
                resolved.append(scope)
            elif scope in SCOPES:
                resolved.append(SCOPES[scope])
            else:
                raise ValueError(
                    f"Unknown scope: {scope}. Use full URL or one of: {list(SCOPES.keys())}"
                )
        return resolved

    def _load_client_credentials(self) -> tuple[str, str]:
        """Load OAuth client credentials from file."""
        if not self.client_secrets_path.exists():
            raise ClientSecretsNotFoundError(str(self.client_secrets_path))

        with open(self.client_secrets_path) as f:
            creds = json.load(f)

        # Handle both web and installed app credential formats
        if "installed" in creds:
            app_creds = creds["installed"]
        elif "web" in creds:
            app_creds = creds["web"]
        else:
            raise ValueError("Invalid client_secret.json format. Expected 'installed' or 'web' key.")

        return app_creds["client_id"], app_creds["client_secret"]

    def _session(self, redirect_uri: str, state: str | None = None) -> OAuth2Session:
        return OAuth2Session(
            client_id=self.client_id,
            client_secret=self.client_secret,
            scope=" ".join(self.scopes),
            redirect_uri=redirect_uri,
            state=state,
            token_endpoint_auth_method="client_secret_post",
        )

    def get_authorization_url(self, redirect_uri: str, login_hint: str | None = None) -> tuple[str, str]:
        """Start the consent flow.

        Returns:
            Tuple of (authorization URL for the user to visit, state).
        """
        params = {
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
        }
        if login_hint:
            params["login_hint"] = login_hint
        session = self._session(redirect_uri)
        return session.create_authorization_url(self.AUTHORIZE_URL, **params)

    def fetch_token(self, authorization_response: str, redirect_uri: str, state: str) -> TokenGrant:
        """Exchange the redirect URL from the consent screen for tokens.

        Raises:
            ConsentError: If the exchange fails or yields no refresh token.
        """
        session = self._session(redirect_uri, state=state)
        try:
            token = session.fetch_token(
                self.TOKEN_URL,
                authorization_response=authorization_response,
                client_secret=self.client_secret,
            )
        except AuthlibBaseError as e:
            raise ConsentError(f"Authorization code exchange failed: {e}") from e

        grant = TokenGrant.from_token(token)
        if not grant.refresh_token:
            raise ConsentError(
                "Google returned no refresh token. Revoke the app's access at "
                "https://myaccount.google.com/permissions and try again."
            )

        missing = set(self.scopes) - set(grant.scopes)
        if grant.scopes and missing:
            raise ConsentError(f"Consent did not grant required scopes: {sorted(missing)}")

        logger.info(f"Consent completed with scopes: {grant.scopes}")
        return grant


class GoogleTokenEndpoint:
    """Refresh-token exchange against Google's token endpoint.

    Client credentials come from each account's stored record, so one
    endpoint serves every account.
    """

    TOKEN_URL = GoogleOAuth.TOKEN_URL
    REVOKE_URL = GoogleOAuth.REVOKE_URL

    def __init__(
        self,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ):
        """Initialize the endpoint.

        Args:
            transport: Optional httpx transport (tests use httpx.MockTransport).
            timeout: Per-request timeout in seconds.
        """
        self._transport = transport
        self._timeout = timeout
        self.refresh_count = 0

    def _client_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"timeout": self._timeout}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        return kwargs

    async def refresh(self, client_id: str, client_secret: str, refresh_token: str) -> TokenGrant:
        """Exchange a refresh token for a new access token (one attempt).

        Returns:
            TokenGrant whose refresh_token is None unless Google rotated it.

        Raises:
            RefreshFailure: With ``retryable`` set according to the failure class.
        """
        if not refresh_token:
            raise RefreshFailure("missing_refresh_token", retryable=False)

        self.refresh_count += 1
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": client_id,
            "client_secret": client_secret,
        }
        try:
            async with httpx.AsyncClient(**self._client_kwargs()) as client:
                response = await client.post(
                    self.TOKEN_URL, data=data, headers={"Accept": "application/json"}
                )
        except httpx.TransportError as e:
            raise RefreshFailure("network_error", retryable=True, description=str(e)) from e

        status = response.status_code
        if status >= 500:
            raise RefreshFailure(f"http_{status}", retryable=True, description=response.text[:200])

        try:
            payload = response.json()
        except ValueError as e:
            raise RefreshFailure("invalid_response", retryable=False, description=str(e)) from e
        if not isinstance(payload, dict):
            raise RefreshFailure("invalid_response", retryable=False)

        if status != 200 or "error" in payload:
            error = payload.get("error") or f"http_{status}"
            raise RefreshFailure(
                error,
                retryable=error in RETRYABLE_ERRORS,
                description=payload.get("error_description") or "",
            )
        if not payload.get("access_token"):
            raise RefreshFailure("invalid_response", retryable=False, description="no access_token")

        # OAuth2Token turns expires_in into an absolute expires_at
        grant = TokenGrant.from_token(OAuth2Token.from_dict(payload))
        if grant.refresh_token == refresh_token:
            grant.refresh_token = None
        return grant

    async def revoke(self, token: str) -> bool:
        """Revoke a token at Google. Failures are logged, not raised."""
        try:
            async with httpx.AsyncClient(**self._client_kwargs()) as client:
                response = await client.post(self.REVOKE_URL, params={"token": token})
        except httpx.HTTPError as e:
            logger.warning(f"Failed to revoke token remotely: {e}")
            return False
        if response.status_code != 200:
            logger.warning(f"Token revocation returned HTTP {response.status_code}")
            return False
        logger.info("Token revoked at Google")
        return True
