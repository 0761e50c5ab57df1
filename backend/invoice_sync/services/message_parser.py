"""
RFC 822 message parser.

Turns the raw bytes returned by an IMAP FETCH into a ParsedMessage with
decoded headers, plain-text and HTML bodies, and every attachment part.

Public API:
  parse_message(raw) -> ParsedMessage   (raises MessageParseError)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import parsedate_to_datetime
from typing import Optional

from invoice_sync.exceptions import MessageParseError

logger = logging.getLogger(__name__)


@dataclass
class ParsedAttachment:
    filename: Optional[str]
    content_type: str
    size: int
    content: bytes


@dataclass
class ParsedMessage:
    subject: str = ""
    from_address: str = ""
    date: Optional[datetime] = None
    message_id: Optional[str] = None
    text_body: str = ""
    html_body: str = ""
    attachments: list[ParsedAttachment] = field(default_factory=list)


def _header(msg: EmailMessage, name: str) -> str:
    """Return a decoded header with folded line breaks removed."""
    value = msg.get(name)
    if value is None:
        return ""
    return str(value).replace("\r\n", "").replace("\n", "").strip()


def _parse_date(msg: EmailMessage) -> Optional[datetime]:
    raw = msg.get("Date")
    if not raw:
        return None
    try:
        return parsedate_to_datetime(str(raw))
    except (TypeError, ValueError):
        logger.info(f"Unparseable Date header: {raw!r}")
        return None


def _decode_part(part: EmailMessage) -> str:
    payload = part.get_payload(decode=True)
    if not payload:
        return ""
    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="replace")
    except LookupError:
        # Unknown charset name in the Content-Type header
        return payload.decode("utf-8", errors="replace")


def _is_attachment(part: EmailMessage) -> bool:
    if part.is_multipart():
        return False
    if part.get_content_disposition() == "attachment":
        return True
    # Inline parts with a filename (common for PDFs from billing systems)
    return part.get_filename() is not None and part.get_content_maintype() != "text"


def parse_message(raw: bytes) -> ParsedMessage:
    """
    Parse raw message bytes.

    Bodies are the concatenation of all non-attachment text/plain and
    text/html parts. Attachment content is kept as decoded bytes.

    Raises:
        MessageParseError: if the bytes are empty or the MIME structure
            cannot be walked.
    """
    if not raw:
        raise MessageParseError("Empty message body")

    try:
        msg = BytesParser(policy=policy.default).parsebytes(raw)

        text_parts: list[str] = []
        html_parts: list[str] = []
        attachments: list[ParsedAttachment] = []

        for part in msg.walk():
            if part.is_multipart():
                continue

            if _is_attachment(part):
                content = part.get_payload(decode=True) or b""
                attachments.append(
                    ParsedAttachment(
                        filename=part.get_filename(),
                        content_type=part.get_content_type(),
                        size=len(content),
                        content=content,
                    )
                )
                continue

            content_type = part.get_content_type()
            if content_type == "text/plain":
                text_parts.append(_decode_part(part))
            elif content_type == "text/html":
                html_parts.append(_decode_part(part))

        message_id = _header(msg, "Message-ID") or None

        return ParsedMessage(
            subject=_header(msg, "Subject"),
            from_address=_header(msg, "From"),
            date=_parse_date(msg),
            message_id=message_id,
            text_body="".join(text_parts),
            html_body="".join(html_parts),
            attachments=attachments,
        )
    except MessageParseError:
        raise
    except Exception as e:
        raise MessageParseError(f"Failed to parse message: {e}") from e
