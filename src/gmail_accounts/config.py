"""Centralized configuration.

Account state lives outside the project directory, in a home directory
controlled by the host environment:
    $GMAIL_ACCOUNTS_HOME/.env                 - optional settings (GMAIL_CLIENT_ID, ...)
    $GMAIL_ACCOUNTS_HOME/client_secret.json   - Google OAuth client credentials
    $GMAIL_ACCOUNTS_HOME/accounts.json        - account index (default flag, timestamps)
    $GMAIL_ACCOUNTS_HOME/credentials/*.json   - one OAuth token file per account

GMAIL_ACCOUNTS_HOME defaults to ~/.gmail-accounts. This module auto-loads the
.env file on import; variables already in the environment take precedence.
"""

import os
from pathlib import Path

HOME_DIR = Path(os.environ.get("GMAIL_ACCOUNTS_HOME", "~/.gmail-accounts")).expanduser()

ENV_FILE = HOME_DIR / ".env"
CLIENT_SECRETS = HOME_DIR / "client_secret.json"
ACCOUNTS_INDEX = HOME_DIR / "accounts.json"
CREDENTIALS_DIR = HOME_DIR / "credentials"

DEFAULT_REDIRECT_PORT = 8765
DEFAULT_OPERATION_TIMEOUT = 60.0
DEFAULT_REFRESH_ATTEMPTS = 3
DEFAULT_REFRESH_BASE_DELAY = 1.0


def _load_env_file(env_path: Path) -> dict[str, str]:
    """Load environment variables from a file.

    Args:
        env_path: Path to .env file.

    Returns:
        Dictionary of loaded variables.
    """
    loaded = {}
    if not env_path.exists():
        return loaded

    with open(env_path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                continue

            key, _, value = line.partition("=")
            key = key.strip()
            value = value.strip()

            if (value.startswith('"') and value.endswith('"')) or (
                value.startswith("'") and value.endswith("'")
            ):
                value = value[1:-1]

            if key and key not in os.environ:
                os.environ[key] = value
                loaded[key] = value

    return loaded


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}") from None


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}") from None


def redirect_port() -> int:
    """Loopback port used to receive the OAuth consent redirect."""
    return _env_int("GMAIL_OAUTH_REDIRECT_PORT", DEFAULT_REDIRECT_PORT)


def operation_timeout() -> float:
    """Upper bound, in seconds, for a single tool invocation."""
    return _env_float("GMAIL_OPERATION_TIMEOUT", DEFAULT_OPERATION_TIMEOUT)


def refresh_attempts() -> int:
    """Number of token refresh attempts before a transient failure is surfaced."""
    return max(1, _env_int("GMAIL_REFRESH_ATTEMPTS", DEFAULT_REFRESH_ATTEMPTS))


def refresh_base_delay() -> float:
    """Initial backoff delay, doubled after each failed refresh attempt."""
    return _env_float("GMAIL_REFRESH_BASE_DELAY", DEFAULT_REFRESH_BASE_DELAY)


def ensure_home_dir() -> Path:
    """Create the home and credentials directories if they don't exist.

    Returns:
        Path to the home directory.
    """
    CREDENTIALS_DIR.mkdir(parents=True, exist_ok=True)
    HOME_DIR.chmod(0o700)
    CREDENTIALS_DIR.chmod(0o700)
    return HOME_DIR


def get_status() -> dict:
    """Get status of the configured files and settings.

    Returns:
        Dictionary with configuration status.
    """
    return {
        "home": str(HOME_DIR),
        "env_file": ENV_FILE.exists(),
        "client_secrets": CLIENT_SECRETS.exists(),
        "client_env": bool(
            os.environ.get("GMAIL_CLIENT_ID") and os.environ.get("GMAIL_CLIENT_SECRET")
        ),
        "accounts_index": ACCOUNTS_INDEX.exists(),
        "credential_files": (
            len(list(CREDENTIALS_DIR.glob("*.json"))) if CREDENTIALS_DIR.exists() else 0
        ),
        "redirect_port": redirect_port(),
        "operation_timeout": operation_timeout(),
    }


_loaded = _load_env_file(ENV_FILE)
