"""Build raw RFC 2822 messages for messages.send."""

from __future__ import annotations

import base64
from email.message import Message
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, parseaddr

from gmail_accounts.gmail.exceptions import InvalidRecipientError, ValidationError


def _clean_addresses(addresses: list[str] | str | None, field: str) -> list[str]:
    if not addresses:
        return []
    if isinstance(addresses, str):
        addresses = [addresses]

    cleaned = []
    for address in addresses:
        address = (address or "").strip()
        if not address:
            continue
        if "\r" in address or "\n" in address:
            raise InvalidRecipientError(f"Line break in {field} address: {address!r}")
        _, addr = parseaddr(address)
        if "@" not in addr:
            raise InvalidRecipientError(f"Invalid {field} address: {address!r}")
        cleaned.append(address)
    return cleaned


def _check_header(value: str, field: str) -> str:
    if "\r" in value or "\n" in value:
        raise ValidationError(f"{field} must not contain line breaks")
    return value


def compose_message(
    to: list[str],
    subject: str,
    body: str = "",
    cc: list[str] | None = None,
    bcc: list[str] | None = None,
    html_body: str | None = None,
    sender: str | None = None,
    from_name: str | None = None,
    in_reply_to: str | None = None,
    references: str | None = None,
) -> Message:
    """Build an email message.

    Plain text bodies become a single text/plain part. When ``html_body`` is
    given the message is multipart/alternative with the plain text part
    first (if any) and the HTML part second.

    Args:
        to: Recipient addresses; at least one is required.
        subject: Subject line.
        body: Plain text body, or the plain fallback for HTML mail.
        cc: CC addresses.
        bcc: BCC addresses (Gmail strips the header on delivery).
        html_body: Optional HTML body.
        sender: From address; Gmail fills in the account address if omitted.
        from_name: Display name for the sender.
        in_reply_to: Message-ID being replied to.
        references: References header for threading.

    Raises:
        InvalidRecipientError: If ``to`` has no usable address.
        ValidationError: If a header value contains line breaks.
    """
    to_addrs = _clean_addresses(to, "to")
    if not to_addrs:
        raise InvalidRecipientError("At least one 'to' recipient is required")
    cc_addrs = _clean_addresses(cc, "cc")
    bcc_addrs = _clean_addresses(bcc, "bcc")
    subject = _check_header(subject or "", "Subject")

    if html_body:
        msg: Message = MIMEMultipart("alternative")
        if body:
            msg.attach(MIMEText(body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
    else:
        msg = MIMEText(body or "", "plain")

    msg["To"] = ", ".join(to_addrs)
    msg["Subject"] = subject
    if cc_addrs:
        msg["Cc"] = ", ".join(cc_addrs)
    if bcc_addrs:
        msg["Bcc"] = ", ".join(bcc_addrs)

    if sender:
        sender = _check_header(sender, "From")
        msg["From"] = formataddr((from_name, sender)) if from_name else sender

    if in_reply_to:
        msg["In-Reply-To"] = _check_header(in_reply_to, "In-Reply-To")
        msg["References"] = _check_header(references or in_reply_to, "References")

    return msg


def encode_message(msg: Message) -> str:
    """Encode a message as URL-safe base64 for the ``raw`` field."""
    return base64.urlsafe_b64encode(msg.as_bytes()).decode("ascii")
