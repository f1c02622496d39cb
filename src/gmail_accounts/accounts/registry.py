"""In-memory account registry backed by the credential store.

The registry owns every AccountEntry and CredentialRecord for the lifetime of
the process. Other components borrow records for the duration of one
operation and hand updates back through ``update_credential``.

Mutations are serialized by a single lock. Each one is applied to a copy of
the entry table, persisted, and only then committed, so a failed write leaves
the previous state in place and no reader ever sees two defaults.

Example:
    >>> registry = AccountRegistry(CredentialStore("/tmp/gmail-accounts"))
    >>> await registry.load()
    >>> await registry.add("me@gmail.com", record)
    >>> registry.resolve_default().email
    'me@gmail.com'
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace

from gmail_accounts.accounts.exceptions import (
    CorruptCredentialError,
    CorruptIndexError,
    CredentialNotFoundError,
    DuplicateAccountError,
    NoDefaultError,
    StorageError,
    UnknownAccountError,
)
from gmail_accounts.accounts.models import AccountEntry, CredentialRecord, utcnow
from gmail_accounts.accounts.store import CredentialStore
from gmail_accounts.google.exceptions import ReauthenticationRequiredError

logger = logging.getLogger(__name__)


def _key(email: str) -> str:
    return email.strip().lower()


class AccountRegistry:
    """Index of known accounts enforcing the single-default rule."""

    def __init__(self, store: CredentialStore | None = None):
        self._store = store or CredentialStore()
        self._entries: dict[str, AccountEntry] = {}
        self._records: dict[str, CredentialRecord] = {}
        self._reauth: set[str] = set()
        self._lock = asyncio.Lock()

    @property
    def store(self) -> CredentialStore:
        return self._store

    async def load(self) -> None:
        """Load all accounts from disk, replacing in-memory state."""
        async with self._lock:
            entries, records, reauth, repaired = await asyncio.to_thread(self._read_disk)
            self._entries = entries
            self._records = records
            self._reauth = reauth
            if repaired:
                await self._write_index(entries)
        logger.info(f"Loaded {len(self._entries)} account(s) from {self._store.root}")

    def _read_disk(self):
        repaired = False
        try:
            stored = self._store.load_index()
        except CorruptIndexError as e:
            logger.error(f"{e}; rebuilding index from credential files")
            now = utcnow()
            stored = [AccountEntry(email=email, added_at=now) for email in self._store.stored_accounts()]
            repaired = True

        entries: dict[str, AccountEntry] = {}
        records: dict[str, CredentialRecord] = {}
        reauth: set[str] = set()
        seen_default = False

        for entry in stored:
            key = _key(entry.email)
            if key in entries:
                logger.warning(f"Ignoring duplicate index entry for {entry.email}")
                repaired = True
                continue
            try:
                records[key] = self._store.load(entry.email)
                if not records[key].usable:
                    logger.warning(f"{entry.email} has no refresh token; needs re-authorization")
                    reauth.add(key)
            except CorruptCredentialError as e:
                logger.warning(f"{e}; account kept but needs re-authorization")
                reauth.add(key)
            except CredentialNotFoundError:
                logger.warning(f"Dropping {entry.email}: no stored credentials")
                repaired = True
                continue

            if entry.is_default:
                if seen_default:
                    logger.warning(f"Clearing extra default flag on {entry.email}")
                    entry.is_default = False
                    repaired = True
                seen_default = True
            entries[key] = entry

        return entries, records, reauth, repaired

    async def close(self) -> None:
        """Flush the index to disk."""
        async with self._lock:
            await self._write_index(self._entries)

    async def _write_index(self, entries: dict[str, AccountEntry]) -> None:
        await asyncio.to_thread(self._store.save_index, list(entries.values()))

    def _copy_entries(self) -> dict[str, AccountEntry]:
        return {key: replace(entry) for key, entry in self._entries.items()}

    def _require(self, email: str) -> str:
        key = _key(email)
        if key not in self._entries:
            raise UnknownAccountError(email)
        return key

    def __contains__(self, email: str) -> bool:
        return _key(email) in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def list(self) -> list[AccountEntry]:
        """All accounts in insertion order (copies)."""
        return [replace(entry) for entry in self._entries.values()]

    def get(self, email: str) -> AccountEntry:
        """Look up one account.

        Raises:
            UnknownAccountError: If the account is not registered.
        """
        return replace(self._entries[self._require(email)])

    def default(self) -> AccountEntry | None:
        for entry in self._entries.values():
            if entry.is_default:
                return replace(entry)
        return None

    def resolve_default(self) -> AccountEntry:
        """Return the default account.

        Raises:
            NoDefaultError: If no default is configured.
        """
        entry = self.default()
        if entry is None:
            raise NoDefaultError()
        return entry

    async def add(
        self,
        email: str,
        record: CredentialRecord,
        mark_default: bool = False,
    ) -> AccountEntry:
        """Register a new account and persist its credentials.

        The first account ever added becomes the default.

        Raises:
            DuplicateAccountError: If the account is already registered.
            StorageError: If the account cannot be persisted.
        """
        async with self._lock:
            key = _key(email)
            if key in self._entries:
                raise DuplicateAccountError(email)

            entries = self._copy_entries()
            entry = AccountEntry(email=email, added_at=utcnow())
            if mark_default or not entries:
                for other in entries.values():
                    other.is_default = False
                entry.is_default = True
            entries[key] = entry

            await asyncio.to_thread(self._store.save, email, record)
            try:
                await self._write_index(entries)
            except StorageError:
                await asyncio.to_thread(self._discard_credential, email)
                raise

            self._entries = entries
            self._records[key] = record
            self._reauth.discard(key)

        logger.info(f"Added account {email} (default={entry.is_default})")
        return replace(entry)

    async def remove(self, email: str) -> AccountEntry:
        """Remove an account and delete its credentials.

        Removing the default account leaves no default; nothing is reassigned.

        Returns:
            The removed entry, so callers can tell whether it was the default.

        Raises:
            UnknownAccountError: If the account is not registered.
            StorageError: If the index cannot be updated.
        """
        async with self._lock:
            key = self._require(email)
            entries = self._copy_entries()
            removed = entries.pop(key)

            await self._write_index(entries)

            self._entries = entries
            self._records.pop(key, None)
            self._reauth.discard(key)
            await asyncio.to_thread(self._discard_credential, removed.email)

        if removed.is_default:
            logger.warning(f"Removed default account {removed.email}; no default is set now")
        else:
            logger.info(f"Removed account {removed.email}")
        return removed

    def _discard_credential(self, email: str) -> None:
        try:
            self._store.delete(email)
        except CredentialNotFoundError:
            pass
        except StorageError as e:
            logger.warning(f"Orphaned credential file left behind: {e}")

    async def set_default(self, email: str) -> AccountEntry:
        """Make an account the default, clearing the previous one.

        Raises:
            UnknownAccountError: If the account is not registered.
            StorageError: If the change cannot be persisted.
        """
        async with self._lock:
            key = self._require(email)
            entries = self._copy_entries()
            for other_key, other in entries.items():
                other.is_default = other_key == key

            await self._write_index(entries)
            self._entries = entries

        logger.info(f"Default account set to {entries[key].email}")
        return replace(entries[key])

    async def touch(self, email: str) -> None:
        """Record a successful operation; persistence failures are only logged."""
        async with self._lock:
            key = _key(email)
            if key not in self._entries:
                return
            entries = self._copy_entries()
            entries[key].last_used_at = utcnow()
            self._entries = entries
            try:
                await self._write_index(entries)
            except StorageError as e:
                logger.warning(f"Could not persist last-used time for {email}: {e}")

    def needs_reauth(self, email: str) -> bool:
        key = _key(email)
        record = self._records.get(key)
        return key in self._reauth or (record is not None and not record.usable)

    def mark_reauth_required(self, email: str) -> None:
        """Flag an account so later calls fail fast until it is re-authorized."""
        key = self._require(email)
        self._reauth.add(key)
        logger.warning(f"Account {email} flagged for re-authorization")

    def credential(self, email: str) -> CredentialRecord:
        """Borrow the current credential record for an account.

        Raises:
            UnknownAccountError: If the account is not registered.
            ReauthenticationRequiredError: If the record is flagged or unusable.
        """
        key = self._require(email)
        if key in self._reauth:
            raise ReauthenticationRequiredError(
                self._entries[key].email, "stored credentials are unusable"
            )
        record = self._records[key]
        if not record.usable:
            raise ReauthenticationRequiredError(record.account_email, "no refresh token stored")
        return record

    def stored_record(self, email: str) -> CredentialRecord | None:
        """The record as stored, without usability checks; None if it was unreadable."""
        return self._records.get(self._require(email))

    async def update_credential(self, email: str, record: CredentialRecord) -> None:
        """Persist a refreshed credential record and make it current.

        Raises:
            UnknownAccountError: If the account was removed meanwhile.
            StorageError: If the record cannot be written.
        """
        async with self._lock:
            key = self._require(email)
            await asyncio.to_thread(self._store.save, self._entries[key].email, record)
            self._records[key] = record

    async def replace_credential(self, email: str, record: CredentialRecord) -> None:
        """Install credentials from a fresh consent and clear any re-auth flag."""
        await self.update_credential(email, record)
        self._reauth.discard(_key(email))
        logger.info(f"Re-authorized account {email}")
