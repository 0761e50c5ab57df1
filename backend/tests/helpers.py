"""
Shared fakes for scanner and orchestrator tests.

FakeMailbox stands in for MailboxConnection; FakeStore records every
Supabase/Storage write the scanner makes so tests can assert on end state.
"""

from __future__ import annotations

import os
from email.message import EmailMessage
from unittest.mock import patch

os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_KEY", "eyJhbGciOiJIUzI1NiJ9.eyJyb2xlIjoiYW5vbiJ9.dGVzdA")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "eyJhbGciOiJIUzI1NiJ9.eyJyb2xlIjoic2VydmljZSJ9.dGVzdA")

from invoice_sync.exceptions import MailConnectionError
from invoice_sync.models.sync import EmailAccount, SyncRule


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def make_account(
    account_id: str = "acct-1",
    email: str = "me@example.com",
    last_processed_uid: int | None = None,
) -> EmailAccount:
    return EmailAccount(
        id=account_id,
        email=email,
        username=email,
        password="secret",
        imap_host="imap.example.com",
        imap_port=993,
        use_ssl=True,
        last_processed_uid=last_processed_uid,
        status="connected",
    )


def make_rule(condition_type: str, value: str) -> SyncRule:
    return SyncRule(
        id=f"rule-{condition_type}",
        name=f"{condition_type} {value}",
        rule_type="exclude",
        condition_type=condition_type,
        condition_value=value,
        is_active=True,
    )


def make_raw_email(
    subject: str = "Your invoice",
    sender: str = '"Acme Billing" <billing@acme.com>',
    text: str = "Please find your invoice attached.",
    pdf_name: str | None = "invoice.pdf",
    message_id: str = "<msg-1@acme.com>",
) -> bytes:
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = "me@example.com"
    msg["Message-ID"] = message_id
    msg["Date"] = "Sat, 01 Mar 2025 10:00:00 +0000"
    msg.set_content(text)
    if pdf_name:
        msg.add_attachment(b"%PDF-1.4 fake", maintype="application", subtype="pdf", filename=pdf_name)
    return msg.as_bytes()


def make_irrelevant_email(message_id: str = "<lunch@example.com>") -> bytes:
    return make_raw_email(
        subject="Lunch on Friday?",
        sender="Sam <sam@example.com>",
        text="Are you free?",
        pdf_name=None,
        message_id=message_id,
    )


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeMailbox:
    """
    In-memory mailbox keyed by UID. A None value makes fetch_raw fail for
    that UID the way the real transport does.
    """

    def __init__(self, messages: dict[int, bytes | None], connect_error: str | None = None):
        self.messages = messages
        self.connect_error = connect_error
        self.fetched: list[int] = []
        self.search_calls: list[dict] = []
        self.connected = False
        self.disconnected = False

    def factory(self, account):
        return self

    def __enter__(self):
        if self.connect_error:
            raise MailConnectionError(self.connect_error)
        self.connected = True
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnected = True

    def select_inbox_readonly(self) -> int:
        return len(self.messages)

    def search_positions(self, date_from=None, date_to=None, after_uid=None) -> list[int]:
        self.search_calls.append({"date_from": date_from, "date_to": date_to, "after_uid": after_uid})
        return sorted(uid for uid in self.messages if not after_uid or uid > after_uid)

    def fetch_raw(self, uid: int) -> bytes | None:
        self.fetched.append(uid)
        return self.messages[uid]


class FakeStore:
    """Records writes made through the scanner's store/storage imports."""

    def __init__(self):
        self.invoices: list = []
        self.links: list = []
        self.failed: list = []
        self.cursor: dict[str, list[int]] = {}
        self.uploads: list[str] = []
        self.upload_error: Exception | None = None
        self.link_error: Exception | None = None

    def check_duplicate_invoice(self, account_id, message_id, filename) -> bool:
        return any(
            inv.email_account_id == account_id
            and inv.email_message_id == message_id
            and inv.filename == filename
            for inv in self.invoices
        )

    def insert_invoice(self, invoice) -> dict:
        self.invoices.append(invoice)
        return invoice.model_dump()

    def insert_pending_link(self, link) -> bool:
        if self.link_error:
            raise self.link_error
        if any(
            l.email_account_id == link.email_account_id and l.detected_url == link.detected_url
            for l in self.links
        ):
            return False
        self.links.append(link)
        return True

    def record_failed_message(self, failure) -> None:
        self.failed.append(failure)

    def update_account_last_uid(self, account_id, uid) -> None:
        self.cursor.setdefault(account_id, []).append(uid)

    def upload_to_storage(self, path, content, content_type=None, bucket="invoices") -> str:
        if self.upload_error:
            raise self.upload_error
        self.uploads.append(path)
        return f"https://test.supabase.co/storage/v1/object/public/{bucket}/{path}"

    def patch_scanner(self):
        """Patch the names the scanner module imported from store/storage."""
        return patch.multiple(
            "invoice_sync.services.scanner",
            check_duplicate_invoice=self.check_duplicate_invoice,
            insert_invoice=self.insert_invoice,
            insert_pending_link=self.insert_pending_link,
            record_failed_message=self.record_failed_message,
            update_account_last_uid=self.update_account_last_uid,
            upload_to_storage=self.upload_to_storage,
        )
