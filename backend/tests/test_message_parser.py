"""
Unit tests for the RFC 822 message parser.
"""

import os
from email.message import EmailMessage

import pytest

os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_KEY", "eyJhbGciOiJIUzI1NiJ9.eyJyb2xlIjoiYW5vbiJ9.dGVzdA")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "eyJhbGciOiJIUzI1NiJ9.eyJyb2xlIjoic2VydmljZSJ9.dGVzdA")

from invoice_sync.exceptions import MessageParseError
from invoice_sync.services.message_parser import parse_message


def _build_raw(
    subject: str = "Your invoice",
    sender: str = '"Acme Billing" <billing@acme.com>',
    text: str = "Please find your invoice attached.",
    html: str | None = None,
    pdf: bytes | None = b"%PDF-1.4 fake",
    pdf_name: str | None = "invoice-001.pdf",
    message_id: str | None = "<msg-1@acme.com>",
    date: str | None = "Sat, 01 Mar 2025 10:00:00 +0000",
) -> bytes:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = "me@example.com"
    if message_id:
        msg["Message-ID"] = message_id
    if date:
        msg["Date"] = date
    msg.set_content(text)
    if html:
        msg.add_alternative(html, subtype="html")
    if pdf is not None:
        msg.add_attachment(pdf, maintype="application", subtype="pdf", filename=pdf_name)
    return msg.as_bytes()


class TestParseMessage:

    def test_headers_are_decoded(self):
        parsed = parse_message(_build_raw())
        assert parsed.subject == "Your invoice"
        assert "billing@acme.com" in parsed.from_address
        assert parsed.message_id == "<msg-1@acme.com>"
        assert parsed.date is not None
        assert parsed.date.year == 2025

    def test_text_body(self):
        parsed = parse_message(_build_raw())
        assert "Please find your invoice attached." in parsed.text_body
        assert parsed.html_body == ""

    def test_html_alternative(self):
        parsed = parse_message(_build_raw(html='<a href="https://x.example.com/invoice">Invoice</a>'))
        assert 'href="https://x.example.com/invoice"' in parsed.html_body
        assert "Please find" in parsed.text_body

    def test_pdf_attachment(self):
        parsed = parse_message(_build_raw())
        assert len(parsed.attachments) == 1
        att = parsed.attachments[0]
        assert att.filename == "invoice-001.pdf"
        assert att.content_type == "application/pdf"
        assert att.content == b"%PDF-1.4 fake"
        assert att.size == len(b"%PDF-1.4 fake")

    def test_encoded_subject(self):
        raw = _build_raw(subject="Rechnung für März")
        assert parse_message(raw).subject == "Rechnung für März"

    def test_missing_message_id_and_date(self):
        parsed = parse_message(_build_raw(message_id=None, date=None))
        assert parsed.message_id is None
        assert parsed.date is None

    def test_no_attachments(self):
        parsed = parse_message(_build_raw(pdf=None))
        assert parsed.attachments == []

    def test_empty_bytes_raise(self):
        with pytest.raises(MessageParseError):
            parse_message(b"")
