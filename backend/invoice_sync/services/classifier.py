"""
Invoice classifier.

Decides whether a parsed message is worth deep processing and, for those
that are, extracts the PDF attachments and candidate invoice-download links.

A message is relevant if ANY of these holds:
  1. it has a PDF attachment (content type or .pdf filename)
  2. its subject or sender contains an invoice keyword
  3. its plain-text body reads like an invoice/receipt download prompt

Keyword and pattern lists live in ClassifierConfig so they can be tuned
without touching the scan loop. INVOICE_KEYWORDS (comma-separated) replaces
the keyword list when set.

Public API:
  might_contain_invoice(parsed, config) -> bool
  classify(parsed, uid, config)         -> ProcessedEmail | None
  extract_invoice_links(html, text, config) -> list[InvoiceLink]
  find_amount_near_link(body, url, config)  -> str | None
"""

import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Pattern

from invoice_sync.services.message_parser import ParsedAttachment, ParsedMessage

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_KEYWORDS = (
    "invoice", "factura", "rechnung", "fattura", "facture",
    "receipt", "bill", "payment", "order confirmation",
    "your order", "purchase", "transaction",
)

DEFAULT_BODY_PATTERNS = (
    r"download.*invoice",
    r"view.*invoice",
    r"invoice.*pdf",
    r"get.*receipt",
    r"download.*receipt",
)

# (a) href values, captured in group 1; (b) bare URLs, whole match
DEFAULT_LINK_PATTERNS = (
    r"""href=["']([^"']*(?:invoice|receipt|download)[^"']*)["']""",
    r"""https?://[^\s<>"']+(?:invoice|receipt|download|pdf)[^\s<>"']*""",
)

_AMOUNT = r"\d{1,3}(?:[.,]\d{3})*(?:[.,]\d{2})?"

# Priority order: symbol-prefixed, ISO code suffix, labelled
DEFAULT_AMOUNT_PATTERNS = (
    rf"[$€£]\s*({_AMOUNT})",
    rf"({_AMOUNT})\s*(?:USD|EUR|GBP|CHF)",
    rf"(?:total|amount|sum|price)[\s:]*[$€£]?\s*({_AMOUNT})",
)

AMOUNT_WINDOW = 250

PDF_CONTENT_TYPE = "application/pdf"


def _compile(patterns) -> tuple[Pattern, ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


@dataclass
class ClassifierConfig:
    keywords: tuple[str, ...] = DEFAULT_KEYWORDS
    body_patterns: tuple[Pattern, ...] = field(default_factory=lambda: _compile(DEFAULT_BODY_PATTERNS))
    link_patterns: tuple[Pattern, ...] = field(default_factory=lambda: _compile(DEFAULT_LINK_PATTERNS))
    amount_patterns: tuple[Pattern, ...] = field(default_factory=lambda: _compile(DEFAULT_AMOUNT_PATTERNS))
    amount_window: int = AMOUNT_WINDOW

    @classmethod
    def from_env(cls) -> "ClassifierConfig":
        """Build a config, replacing the keyword list with INVOICE_KEYWORDS when set."""
        raw = os.getenv("INVOICE_KEYWORDS", "").strip()
        if not raw:
            return cls()
        keywords = tuple(k.strip().lower() for k in raw.split(",") if k.strip())
        return cls(keywords=keywords or DEFAULT_KEYWORDS)


# ---------------------------------------------------------------------------
# Output structures
# ---------------------------------------------------------------------------

@dataclass
class ProcessedAttachment:
    filename: str
    content: bytes
    content_type: str
    size: int


@dataclass
class InvoiceLink:
    url: str
    amount: Optional[str] = None


@dataclass
class ProcessedEmail:
    """A relevant message, ready for the rule engine and persistence."""
    uid: int
    subject: str
    from_address: str
    date: datetime
    message_id: str
    attachments: list[ProcessedAttachment] = field(default_factory=list)
    invoice_links: list[InvoiceLink] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Relevance filter
# ---------------------------------------------------------------------------

def is_pdf_attachment(attachment: ParsedAttachment) -> bool:
    if (attachment.content_type or "").lower() == PDF_CONTENT_TYPE:
        return True
    return (attachment.filename or "").lower().endswith(".pdf")


def might_contain_invoice(parsed: ParsedMessage, config: Optional[ClassifierConfig] = None) -> bool:
    """Cheap relevance check run before any extraction work."""
    config = config or ClassifierConfig()

    if any(is_pdf_attachment(att) for att in parsed.attachments):
        return True

    subject = (parsed.subject or "").lower()
    sender = (parsed.from_address or "").lower()
    if any(kw in subject or kw in sender for kw in config.keywords):
        return True

    text = parsed.text_body or ""
    return any(p.search(text) for p in config.body_patterns)


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

def find_amount_near_link(body: str, url: str, config: Optional[ClassifierConfig] = None) -> Optional[str]:
    """
    Look for a currency amount around the first occurrence of url in body.

    The search window spans amount_window characters on each side of the URL.
    The first amount pattern that matches wins and its full matched text is
    returned, e.g. "$42.00", "19,99 EUR", "Total: 120.00".
    """
    config = config or ClassifierConfig()

    url_index = body.find(url)
    if url_index == -1:
        return None

    start = max(0, url_index - config.amount_window)
    end = min(len(body), url_index + len(url) + config.amount_window)
    context = body[start:end]

    for pattern in config.amount_patterns:
        m = pattern.search(context)
        if m:
            return m.group(0)
    return None


def extract_invoice_links(
    html_body: str,
    text_body: str,
    config: Optional[ClassifierConfig] = None,
) -> list[InvoiceLink]:
    """
    Find candidate invoice-download URLs in the HTML and text bodies.

    URLs are deduplicated by exact string; order of first discovery is kept
    (all href matches first, then bare URLs).
    """
    config = config or ClassifierConfig()
    body = f"{html_body or ''} {text_body or ''}"

    seen: set[str] = set()
    links: list[InvoiceLink] = []
    for pattern in config.link_patterns:
        for m in pattern.finditer(body):
            url = m.group(1) if m.groups() else m.group(0)
            if not url or url in seen:
                continue
            seen.add(url)
            links.append(InvoiceLink(url=url, amount=find_amount_near_link(body, url, config)))
    return links


def extract_pdf_attachments(parsed: ParsedMessage, uid: int) -> list[ProcessedAttachment]:
    """Keep every PDF attachment verbatim; unnamed ones get attachment-<uid>.pdf."""
    return [
        ProcessedAttachment(
            filename=att.filename or f"attachment-{uid}.pdf",
            content=att.content,
            content_type=att.content_type,
            size=att.size,
        )
        for att in parsed.attachments
        if is_pdf_attachment(att)
    ]


def classify(
    parsed: ParsedMessage,
    uid: int,
    config: Optional[ClassifierConfig] = None,
) -> Optional[ProcessedEmail]:
    """
    Run the relevance filter and, if it passes, extract attachments and links.

    Returns None for messages that are not worth keeping.
    """
    config = config or ClassifierConfig()
    if not might_contain_invoice(parsed, config):
        return None

    return ProcessedEmail(
        uid=uid,
        subject=parsed.subject or "",
        from_address=parsed.from_address or "",
        date=parsed.date or datetime.now(timezone.utc),
        message_id=parsed.message_id or f"{uid}@unknown",
        attachments=extract_pdf_attachments(parsed, uid),
        invoice_links=extract_invoice_links(parsed.html_body, parsed.text_body, config),
    )
