"""Account and credential records."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

TOKEN_URI = "https://oauth2.googleapis.com/token"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string or epoch seconds into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class CredentialRecord:
    """OAuth credentials for one Gmail account.

    Stored in the Google "authorized user" token layout so the files stay
    readable by google-auth tooling.
    """

    account_email: str
    client_id: str
    client_secret: str
    refresh_token: str
    access_token: str | None = None
    expiry: datetime | None = None
    scopes: list[str] = field(default_factory=list)

    @property
    def usable(self) -> bool:
        """A record without a refresh token can only be fixed by new consent."""
        return bool(self.refresh_token)

    def is_expired(self, now: datetime | None = None) -> bool:
        """Whether the access token must be refreshed before use.

        Expiry is inclusive: a token expiring at exactly ``now`` is expired.
        """
        if not self.access_token or self.expiry is None:
            return True
        return (now or utcnow()) >= self.expiry

    def with_token(
        self,
        access_token: str,
        expiry: datetime | None,
        refresh_token: str | None = None,
        scopes: list[str] | None = None,
    ) -> CredentialRecord:
        """Return a copy carrying a freshly issued access token."""
        return replace(
            self,
            access_token=access_token,
            expiry=expiry,
            refresh_token=refresh_token or self.refresh_token,
            scopes=list(scopes) if scopes else list(self.scopes),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "account": self.account_email,
            "token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_uri": TOKEN_URI,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "scopes": list(self.scopes),
            "type": "authorized_user",
            "expiry": format_timestamp(self.expiry),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CredentialRecord:
        """Build a record from its stored form.

        Raises:
            KeyError: If a required field is missing.
            ValueError: If a field has the wrong shape.
        """
        if not isinstance(data, dict):
            raise ValueError("credential record must be a JSON object")
        scopes = data.get("scopes") or []
        if isinstance(scopes, str):
            scopes = scopes.split()
        return cls(
            account_email=data["account"],
            client_id=data["client_id"],
            client_secret=data["client_secret"],
            refresh_token=data.get("refresh_token") or "",
            access_token=data.get("token"),
            expiry=parse_timestamp(data.get("expiry")),
            scopes=list(scopes),
        )


@dataclass
class AccountEntry:
    """Registry metadata for one account."""

    email: str
    added_at: datetime
    last_used_at: datetime | None = None
    is_default: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "email": self.email,
            "added_at": format_timestamp(self.added_at),
            "last_used_at": format_timestamp(self.last_used_at),
            "is_default": self.is_default,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AccountEntry:
        return cls(
            email=data["email"],
            added_at=parse_timestamp(data["added_at"]) or utcnow(),
            last_used_at=parse_timestamp(data.get("last_used_at")),
            is_default=bool(data.get("is_default", False)),
        )
