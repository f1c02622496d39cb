"""Durable per-account credential storage.

Every write goes to a temporary file in the target directory which is then
renamed over the destination, so readers never observe a half-written file
and a crash mid-write leaves the previous version intact.

Layout:
    <root>/accounts.json              - ordered list of AccountEntry dicts
    <root>/credentials/<email>.json   - one CredentialRecord per account
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any

from gmail_accounts import config
from gmail_accounts.accounts.exceptions import (
    CorruptCredentialError,
    CorruptIndexError,
    CredentialNotFoundError,
    StorageError,
)
from gmail_accounts.accounts.models import AccountEntry, CredentialRecord

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^a-z0-9@._+-]")


def atomic_write_json(path: Path, data: Any, mode: int = 0o600) -> None:
    """Write JSON to ``path`` via write-to-temp-then-rename.

    Raises:
        StorageError: If the file cannot be written.
    """
    tmp_name = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except OSError as e:
        raise StorageError(f"Failed to write {path}: {e}") from e
    finally:
        if tmp_name and os.path.exists(tmp_name):
            os.unlink(tmp_name)


class CredentialStore:
    """Reads and writes account state under a single root directory.

    The store performs blocking file I/O; async callers run it in a worker
    thread.
    """

    def __init__(self, root: str | Path | None = None):
        self.root = Path(root) if root else config.HOME_DIR
        self.index_path = self.root / config.ACCOUNTS_INDEX.name
        self.credentials_dir = self.root / config.CREDENTIALS_DIR.name

    def path_for(self, account_email: str) -> Path:
        """Credential file path for an account."""
        name = _UNSAFE_CHARS.sub("_", account_email.strip().lower())
        return self.credentials_dir / f"{name}.json"

    def exists(self, account_email: str) -> bool:
        return self.path_for(account_email).exists()

    def load(self, account_email: str) -> CredentialRecord:
        """Load the credential record for an account.

        Raises:
            CredentialNotFoundError: If no record is stored.
            CorruptCredentialError: If the stored record cannot be parsed.
            StorageError: If the file cannot be read.
        """
        path = self.path_for(account_email)
        try:
            with open(path) as f:
                data = json.load(f)
        except FileNotFoundError:
            raise CredentialNotFoundError(account_email) from None
        except json.JSONDecodeError as e:
            raise CorruptCredentialError(account_email, f"invalid JSON ({e})") from e
        except OSError as e:
            raise StorageError(f"Failed to read {path}: {e}", account=account_email) from e

        try:
            record = CredentialRecord.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptCredentialError(account_email, f"missing or invalid field {e}") from e

        if record.account_email.lower() != account_email.lower():
            raise CorruptCredentialError(
                account_email, f"file belongs to {record.account_email}"
            )
        return record

    def save(self, account_email: str, record: CredentialRecord) -> None:
        """Persist a credential record atomically.

        Raises:
            StorageError: If the record cannot be written.
        """
        atomic_write_json(self.path_for(account_email), record.to_dict())
        logger.info(f"Saved credentials for {account_email}")

    def delete(self, account_email: str) -> None:
        """Delete the credential record for an account.

        Raises:
            CredentialNotFoundError: If no record is stored.
            StorageError: If the file cannot be removed.
        """
        path = self.path_for(account_email)
        try:
            path.unlink()
        except FileNotFoundError:
            raise CredentialNotFoundError(account_email) from None
        except OSError as e:
            raise StorageError(f"Failed to delete {path}: {e}", account=account_email) from e
        logger.info(f"Deleted credentials for {account_email}")

    def load_index(self) -> list[AccountEntry]:
        """Load the ordered account index; a missing index is an empty registry.

        Raises:
            CorruptIndexError: If the index cannot be parsed.
            StorageError: If the index cannot be read.
        """
        try:
            with open(self.index_path) as f:
                data = json.load(f)
        except FileNotFoundError:
            return []
        except json.JSONDecodeError as e:
            raise CorruptIndexError(f"Account index {self.index_path} is invalid JSON: {e}") from e
        except OSError as e:
            raise StorageError(f"Failed to read {self.index_path}: {e}") from e

        try:
            return [AccountEntry.from_dict(item) for item in data.get("accounts", [])]
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise CorruptIndexError(f"Account index {self.index_path} is malformed: {e}") from e

    def save_index(self, entries: list[AccountEntry]) -> None:
        """Persist the ordered account index atomically."""
        atomic_write_json(
            self.index_path,
            {"version": 1, "accounts": [entry.to_dict() for entry in entries]},
        )

    def stored_accounts(self) -> list[str]:
        """Account emails that have a credential file, in file-name order."""
        if not self.credentials_dir.exists():
            return []
        accounts = []
        for path in sorted(self.credentials_dir.glob("*.json")):
            try:
                with open(path) as f:
                    accounts.append(json.load(f)["account"])
            except (OSError, json.JSONDecodeError, KeyError, TypeError) as e:
                logger.warning(f"Skipping unreadable credential file {path}: {e}")
        return accounts
