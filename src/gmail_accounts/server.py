"""MCP server exposing multi-account Gmail tools.

Every tool takes an optional ``account``; without one the default account is
used. Tools never raise: failures come back as
``{"error": {"kind", "message", "account", "action"}}``.

Run:
    gmail-accounts serve
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from mcp.server.fastmcp import FastMCP

from gmail_accounts.service import GmailAccounts, safe_call

logger = logging.getLogger(__name__)


def create_server(accounts: GmailAccounts) -> FastMCP:
    """Create the MCP server bound to an accounts instance.

    The registry is loaded when the server starts and flushed when it stops.
    """

    @asynccontextmanager
    async def lifespan(server: FastMCP):
        await accounts.start()
        logger.info(f"Serving {len(accounts.registry)} Gmail account(s)")
        try:
            yield {}
        finally:
            await accounts.close()

    mcp = FastMCP("gmail-accounts", lifespan=lifespan)

    @mcp.tool()
    async def send_email(
        to: list[str],
        subject: str,
        body: str = "",
        cc: Optional[list[str]] = None,
        bcc: Optional[list[str]] = None,
        html_body: Optional[str] = None,
        thread_id: Optional[str] = None,
        in_reply_to: Optional[str] = None,
        from_name: Optional[str] = None,
        account: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Send an email from a Gmail account.

        Args:
            to: Recipient addresses (at least one).
            subject: Subject line.
            body: Plain text body. With html_body, used as the plain text alternative.
            cc: CC addresses.
            bcc: BCC addresses.
            html_body: Optional HTML body; the message is sent as multipart/alternative.
            thread_id: Gmail thread to add the message to when replying.
            in_reply_to: Message-ID header of the message being replied to.
            from_name: Display name shown with the sending address.
            account: Sending account email. Defaults to the default account.

        Returns:
            Dict with 'account', 'id' and 'threadId' of the sent message.
        """
        return await safe_call(
            accounts.send_email(
                to=to,
                subject=subject,
                body=body,
                cc=cc,
                bcc=bcc,
                html_body=html_body,
                thread_id=thread_id,
                in_reply_to=in_reply_to,
                from_name=from_name,
                account=account,
            )
        )

    @mcp.tool()
    async def search_emails(
        query: str,
        max_results: int = 10,
        page_token: Optional[str] = None,
        account: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Search emails with Gmail query syntax (e.g. "from:alice is:unread newer_than:7d").

        Args:
            query: Gmail search query.
            max_results: Maximum messages to return (1-500, default 10).
            page_token: next_page_token from a previous search to get the next page.
            account: Account to search. Defaults to the default account.

        Returns:
            Dict with 'messages' (id, thread_id, subject, sender, date, snippet),
            'result_size_estimate' and 'next_page_token'.
        """
        return await safe_call(
            accounts.search_emails(
                query, max_results=max_results, page_token=page_token, account=account
            )
        )

    @mcp.tool()
    async def read_email(message_id: str, account: Optional[str] = None) -> dict[str, Any]:
        """
        Read a full email by message id.

        Args:
            message_id: Gmail message id (from search_emails).
            account: Account that owns the message. Defaults to the default account.

        Returns:
            Dict with 'message' containing headers, plain text body, HTML body and labels.
        """
        return await safe_call(accounts.read_email(message_id, account=account))

    @mcp.tool()
    async def manage_labels(
        message_id: str,
        add_labels: Optional[list[str]] = None,
        remove_labels: Optional[list[str]] = None,
        account: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Add or remove labels on an email.

        Labels may be given by id (e.g. "UNREAD", "Label_12") or by name.
        Remove "UNREAD" to mark as read, remove "INBOX" to archive.

        Args:
            message_id: Gmail message id.
            add_labels: Labels to add.
            remove_labels: Labels to remove.
            account: Account that owns the message. Defaults to the default account.

        Returns:
            Dict with the message 'id' and its resulting 'labelIds'.
        """
        return await safe_call(
            accounts.manage_labels(
                message_id,
                add_labels=add_labels,
                remove_labels=remove_labels,
                account=account,
            )
        )

    @mcp.tool()
    async def list_labels(account: Optional[str] = None) -> dict[str, Any]:
        """
        List the labels of a Gmail account.

        Args:
            account: Account to inspect. Defaults to the default account.

        Returns:
            Dict with 'labels', each having 'id', 'name' and 'type'.
        """
        return await safe_call(accounts.list_labels(account=account))

    @mcp.tool()
    async def list_accounts() -> dict[str, Any]:
        """
        List registered Gmail accounts.

        Returns:
            Dict with 'accounts' (email, is_default, added_at, last_used_at,
            needs_reauth, stale) and the 'default' account email.
        """

        async def run() -> dict[str, Any]:
            return accounts.list_accounts()

        return await safe_call(run())

    @mcp.tool()
    async def add_account(make_default: bool = False) -> dict[str, Any]:
        """
        Add a Gmail account. Opens a browser for Google sign-in and consent.

        Args:
            make_default: Make the new account the default. The first account
                added always becomes the default.

        Returns:
            Dict with the 'added' account email and whether it 'is_default'.
        """
        return await safe_call(accounts.add_account(make_default=make_default))

    @mcp.tool()
    async def reauthorize_account(account: str) -> dict[str, Any]:
        """
        Repeat Google sign-in for an account whose credentials were revoked or expired.

        Args:
            account: Email of the registered account.
        """
        return await safe_call(accounts.reauthorize_account(account))

    @mcp.tool()
    async def remove_account(account: str, revoke: bool = False) -> dict[str, Any]:
        """
        Remove a Gmail account and delete its stored credentials.

        Removing the default account leaves no default until one is set.

        Args:
            account: Email of the account to remove.
            revoke: Also revoke the refresh token at Google.
        """
        return await safe_call(accounts.remove_account(account, revoke=revoke))

    @mcp.tool()
    async def set_default_account(account: str) -> dict[str, Any]:
        """
        Set the account used when a tool call names none.

        Args:
            account: Email of a registered account.
        """
        return await safe_call(accounts.set_default_account(account))

    return mcp
