"""CLI for gmail-accounts.

Usage:
    gmail-accounts init                         # Create home directory, show setup instructions
    gmail-accounts status                       # Show configuration and account status
    gmail-accounts import <path>                # Import OAuth client credentials
    gmail-accounts serve                        # Run the MCP server (stdio)
    gmail-accounts accounts list                # List registered accounts
    gmail-accounts accounts add [--default]     # Add an account via browser consent
    gmail-accounts accounts remove <email>      # Remove an account
    gmail-accounts accounts default <email>     # Set the default account
    gmail-accounts accounts reauth <email>      # Repeat consent for an account
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import shutil
import sys
from pathlib import Path

from gmail_accounts.exceptions import GmailAccountsError


def cmd_init() -> int:
    """Initialize the gmail-accounts home directory."""
    from gmail_accounts.config import CLIENT_SECRETS, ENV_FILE, HOME_DIR, ensure_home_dir

    print("=" * 60)
    print("GMAIL-ACCOUNTS SETUP")
    print("=" * 60)
    print()

    ensure_home_dir()
    print(f"Created: {HOME_DIR}/")
    print()
    print("Credential locations:")
    print()
    print(f"  {CLIENT_SECRETS}")
    print("    OAuth client credentials (Desktop app) from Google Cloud Console")
    print()
    print(f"  {ENV_FILE}")
    print("    Optional settings: GMAIL_CLIENT_ID, GMAIL_CLIENT_SECRET,")
    print("    GMAIL_OAUTH_REDIRECT_PORT, GMAIL_OPERATION_TIMEOUT")
    print()
    print("-" * 60)
    print()

    if CLIENT_SECRETS.exists():
        print("client_secret.json exists")
        print("Next: gmail-accounts accounts add")
    else:
        print("Download OAuth client credentials from:")
        print("  https://console.cloud.google.com/apis/credentials")
        print("Then run: gmail-accounts import <path>")
    return 0


def cmd_status() -> int:
    """Show configuration and account status."""
    from gmail_accounts.config import get_status

    status = get_status()

    print("=" * 60)
    print("GMAIL-ACCOUNTS STATUS")
    print("=" * 60)
    print()
    print(f"Home: {status['home']}")
    print()
    print(f"  client_secret.json:   {'[x]' if status['client_secrets'] else '[ ]'}")
    print(f"  client id in env:     {'[x]' if status['client_env'] else '[ ]'}")
    print(f"  accounts.json:        {'[x]' if status['accounts_index'] else '[ ]'}")
    print(f"  credential files:     {status['credential_files']}")
    print(f"  redirect port:        {status['redirect_port']}")
    print(f"  operation timeout:    {status['operation_timeout']:g}s")
    print()
    return accounts_list()


def cmd_import(source_path: str) -> int:
    """Import OAuth client credentials from a file."""
    from gmail_accounts.config import CLIENT_SECRETS, ensure_home_dir

    source = Path(source_path).expanduser()

    if not source.exists():
        print(f"Error: File not found: {source}")
        return 1

    try:
        with open(source) as f:
            data = json.load(f)

        if "installed" not in data and "web" not in data:
            print("Error: Invalid OAuth credentials format")
            print("Expected 'installed' or 'web' key in JSON")
            return 1

        key = "installed" if "installed" in data else "web"
        client_id = data[key].get("client_id", "unknown")

    except json.JSONDecodeError as e:
        print(f"Error: Invalid JSON: {e}")
        return 1

    ensure_home_dir()
    shutil.copy2(source, CLIENT_SECRETS)
    CLIENT_SECRETS.chmod(0o600)

    print("Imported OAuth credentials")
    print(f"  From: {source}")
    print(f"  To:   {CLIENT_SECRETS}")
    print(f"  Client ID: {client_id[:40]}...")
    print()
    print("Next: Run 'gmail-accounts accounts add' to authorize a mailbox")
    return 0


def cmd_serve(transport: str) -> int:
    """Run the MCP server."""
    from gmail_accounts.server import create_server
    from gmail_accounts.service import GmailAccounts

    server = create_server(GmailAccounts.from_config())
    server.run(transport=transport)
    return 0


def _run_accounts(operation, consent_factory=None) -> int:
    """Run one account operation against a freshly loaded registry."""
    from gmail_accounts.service import GmailAccounts, default_consent

    async def run():
        accounts = GmailAccounts.from_config(consent_factory=consent_factory or default_consent)
        await accounts.start()
        try:
            return await operation(accounts)
        finally:
            await accounts.close()

    try:
        result = asyncio.run(run())
    except GmailAccountsError as e:
        print(f"Error: {e}")
        print(e.action)
        return 1

    for key, value in result.items():
        print(f"{key}: {value}")
    return 0


def accounts_list() -> int:
    """Print registered accounts."""
    from gmail_accounts.service import GmailAccounts

    async def run():
        accounts = GmailAccounts.from_config()
        await accounts.start()
        return accounts.list_accounts()

    try:
        listing = asyncio.run(run())
    except GmailAccountsError as e:
        print(f"Error: {e}")
        return 1

    if not listing["accounts"]:
        print("No accounts - run 'gmail-accounts accounts add'")
        return 0

    print("Accounts:")
    for account in listing["accounts"]:
        mark = "*" if account["is_default"] else " "
        flags = []
        if account["needs_reauth"]:
            flags.append("needs reauth")
        if account["stale"]:
            flags.append("unused 6+ months")
        suffix = f"  ({', '.join(flags)})" if flags else ""
        print(f"  {mark} {account['email']}  last used: {account['last_used_at'] or 'never'}{suffix}")
    if listing["default"] is None:
        print()
        print("No default account - run 'gmail-accounts accounts default <email>'")
    return 0


def _consent_factory(no_browser: bool, manual: bool):
    from gmail_accounts.google import GoogleOAuth, LoopbackConsentFlow

    def factory():
        return LoopbackConsentFlow(GoogleOAuth(), open_browser=not no_browser, manual=manual)

    return factory


def accounts_add(make_default: bool, no_browser: bool, manual: bool) -> int:
    """Interactive account addition."""
    return _run_accounts(
        lambda accounts: accounts.add_account(make_default=make_default),
        _consent_factory(no_browser, manual),
    )


def accounts_reauth(email: str, no_browser: bool, manual: bool) -> int:
    return _run_accounts(
        lambda accounts: accounts.reauthorize_account(email),
        _consent_factory(no_browser, manual),
    )


def accounts_remove(email: str, revoke: bool) -> int:
    return _run_accounts(lambda accounts: accounts.remove_account(email, revoke=revoke))


def accounts_default(email: str) -> int:
    return _run_accounts(lambda accounts: accounts.set_default_account(email))


def _add_consent_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--no-browser",
        action="store_true",
        help="Don't open browser automatically",
    )
    parser.add_argument(
        "--manual",
        action="store_true",
        help="Paste the redirect URL instead of listening on localhost",
    )


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="gmail-accounts",
        description="Multi-account Gmail tools for MCP clients",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Command")

    subparsers.add_parser("init", help="Initialize the home directory")
    subparsers.add_parser("status", help="Show configuration and accounts")

    import_parser = subparsers.add_parser("import", help="Import OAuth client credentials")
    import_parser.add_argument("path", help="Path to client_secret.json file")

    serve_parser = subparsers.add_parser("serve", help="Run the MCP server")
    serve_parser.add_argument(
        "--transport",
        choices=["stdio", "sse", "streamable-http"],
        default="stdio",
        help="MCP transport (default: stdio)",
    )

    accounts_parser = subparsers.add_parser("accounts", help="Account management")
    accounts_subparsers = accounts_parser.add_subparsers(dest="accounts_command", help="Command")

    accounts_subparsers.add_parser("list", help="List accounts")

    add_parser = accounts_subparsers.add_parser("add", help="Add an account")
    add_parser.add_argument("--default", action="store_true", help="Make it the default")
    _add_consent_args(add_parser)

    remove_parser = accounts_subparsers.add_parser("remove", help="Remove an account")
    remove_parser.add_argument("email", help="Account email")
    remove_parser.add_argument(
        "--revoke", action="store_true", help="Also revoke the token at Google"
    )

    default_parser = accounts_subparsers.add_parser("default", help="Set the default account")
    default_parser.add_argument("email", help="Account email")

    reauth_parser = accounts_subparsers.add_parser("reauth", help="Re-authorize an account")
    reauth_parser.add_argument("email", help="Account email")
    _add_consent_args(reauth_parser)

    args = parser.parse_args(argv if argv is not None else sys.argv[1:])

    # stderr only: stdout carries the MCP stdio stream
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.command is None:
        parser.print_help()
        return 0

    if args.command == "init":
        return cmd_init()

    if args.command == "status":
        return cmd_status()

    if args.command == "import":
        return cmd_import(args.path)

    if args.command == "serve":
        return cmd_serve(args.transport)

    if args.command == "accounts":
        if args.accounts_command == "list":
            return accounts_list()
        elif args.accounts_command == "add":
            return accounts_add(args.default, args.no_browser, args.manual)
        elif args.accounts_command == "remove":
            return accounts_remove(args.email, args.revoke)
        elif args.accounts_command == "default":
            return accounts_default(args.email)
        elif args.accounts_command == "reauth":
            return accounts_reauth(args.email, args.no_browser, args.manual)
        else:
            accounts_parser.print_help()
            return 0

    return 0


if __name__ == "__main__":
    sys.exit(main())
