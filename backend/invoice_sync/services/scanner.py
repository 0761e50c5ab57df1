"""
Account scanner.

Drives one mailbox end-to-end: connect, find the UIDs not yet processed,
classify each message, persist invoices and pending links, and advance the
account's cursor one UID at a time.

Invariants:
  - UIDs are processed in ascending order.
  - The cursor (email_accounts.last_processed_uid) is written after every
    attempted UID, never ahead of it. A failed UID is quarantined in
    sync_failed_messages before the cursor moves past it.
  - The scanner never writes sync_logs; it reports counts through the
    on_candidates / on_progress callbacks.
  - Connection and authentication failures propagate to the caller.
"""

import logging
import re
import threading
from dataclasses import dataclass
from datetime import date
from typing import Callable, Optional

from invoice_sync.exceptions import FetchError, MessageParseError, PersistenceError
from invoice_sync.models.sync import (
    EmailAccount,
    FailedMessageCreate,
    InvoiceCreate,
    PendingLinkCreate,
    SyncRule,
)
from invoice_sync.services.classifier import (
    ClassifierConfig,
    InvoiceLink,
    ProcessedAttachment,
    ProcessedEmail,
    classify,
)
from invoice_sync.services.imap import MailboxConnection
from invoice_sync.services.message_parser import ParsedMessage, parse_message
from invoice_sync.services.rules import is_excluded
from invoice_sync.services.storage import build_invoice_path, upload_to_storage
from invoice_sync.services.store import (
    check_duplicate_invoice,
    insert_invoice,
    insert_pending_link,
    record_failed_message,
    update_account_last_uid,
)

logger = logging.getLogger(__name__)

# Report progress upward every N processed messages
PROGRESS_EVERY = 10

_DOMAIN_LABEL_RE = re.compile(r"@([^.>]+)")


@dataclass
class ScanResult:
    emails_processed: int = 0
    invoices_found: int = 0


def extract_vendor(from_address: Optional[str]) -> Optional[str]:
    """
    Guess the vendor name from a From header.

      '"Acme Billing" <billing@acme.com>' -> 'Acme Billing'
      'billing@acme.com'                  -> 'Acme'
    """
    if not from_address:
        return None

    if "<" in from_address:
        name = from_address.split("<", 1)[0].strip()
        name = name.replace('"', "").replace("'", "").strip()
        if name:
            return name

    m = _DOMAIN_LABEL_RE.search(from_address)
    if m:
        label = m.group(1).strip()
        if label:
            return label[0].upper() + label[1:]
    return None


class AccountScanner:
    """
    One scan of one account. Built per call by scan_account; holds the open
    connection and running counts for the duration of the scan.
    """

    def __init__(
        self,
        account: EmailAccount,
        rules: list[SyncRule],
        config: ClassifierConfig,
        sync_log_id: Optional[str] = None,
    ):
        self.account = account
        self.rules = rules
        self.config = config
        self.sync_log_id = sync_log_id
        self.result = ScanResult()

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def run(
        self,
        conn: MailboxConnection,
        uids: list[int],
        cancel_event: Optional[threading.Event],
        on_progress: Optional[Callable[[int, int], None]],
    ) -> ScanResult:
        for uid in uids:
            if cancel_event is not None and cancel_event.is_set():
                logger.info(
                    f"Cancellation requested; stopping {self.account.email} "
                    f"after {self.result.emails_processed} emails"
                )
                break

            self.result.invoices_found += self.process_uid(conn, uid)
            self.result.emails_processed += 1

            update_account_last_uid(self.account.id, uid)
            self.account.last_processed_uid = uid

            if on_progress and self.result.emails_processed % PROGRESS_EVERY == 0:
                on_progress(self.result.emails_processed, self.result.invoices_found)

        return self.result

    def process_uid(self, conn: MailboxConnection, uid: int) -> int:
        """Handle one UID. Returns the number of invoices stored."""
        try:
            parsed = self._fetch_and_parse(conn, uid)
        except FetchError as e:
            logger.warning(f"Error fetching email UID {uid} for {self.account.email}: {e}")
            self._quarantine(uid, "fetch", str(e))
            return 0
        except MessageParseError as e:
            logger.warning(f"Error parsing email UID {uid} for {self.account.email}: {e}")
            self._quarantine(uid, "parse", str(e))
            return 0

        email = classify(parsed, uid, self.config)
        if email is None:
            return 0

        if is_excluded(email, self.rules):
            logger.info(f'Skipping email "{email.subject}" due to exclusion rule')
            return 0

        saved = 0
        for attachment in email.attachments:
            if self._save_attachment(email, attachment):
                saved += 1

        for link in email.invoice_links:
            self._save_link(email, link)

        return saved

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _fetch_and_parse(self, conn: MailboxConnection, uid: int) -> ParsedMessage:
        raw = conn.fetch_raw(uid)
        if raw is None:
            raise FetchError(uid, f"Server returned no data for UID {uid}")
        return parse_message(raw)

    def _save_attachment(self, email: ProcessedEmail, attachment: ProcessedAttachment) -> bool:
        """Upload and record one PDF. Returns True if a new invoice row was written."""
        try:
            if check_duplicate_invoice(self.account.id, email.message_id, attachment.filename):
                logger.info(f"Skipping duplicate: {attachment.filename}")
                return False

            file_path = build_invoice_path(self.account.id, attachment.filename)
            upload_to_storage(file_path, attachment.content, attachment.content_type)

            insert_invoice(
                InvoiceCreate(
                    email_account_id=self.account.id,
                    filename=attachment.filename,
                    file_path=file_path,
                    file_size=attachment.size,
                    email_subject=email.subject,
                    email_from=email.from_address,
                    email_date=email.date.isoformat(),
                    email_message_id=email.message_id,
                    vendor=extract_vendor(email.from_address),
                    amount=None,
                    tags=[],
                    source_type="attachment",
                )
            )
        except PersistenceError as e:
            logger.error(
                f"Failed to store {attachment.filename} from UID {email.uid} "
                f"({e.operation}): {e.message}"
            )
            self._quarantine(email.uid, "persist", e.message)
            return False

        logger.info(f"Saved invoice: {attachment.filename}")
        return True

    def _save_link(self, email: ProcessedEmail, link: InvoiceLink) -> None:
        try:
            insert_pending_link(
                PendingLinkCreate(
                    email_account_id=self.account.id,
                    detected_url=link.url,
                    detected_amount=link.amount,
                    email_subject=email.subject,
                    email_from=email.from_address,
                    email_date=email.date.isoformat(),
                    email_message_id=email.message_id,
                )
            )
        except PersistenceError as e:
            logger.warning(f"Could not record invoice link from UID {email.uid}: {e.message}")
            self._quarantine(email.uid, "persist", e.message)

    def _quarantine(self, uid: int, stage: str, error_message: str) -> None:
        record_failed_message(
            FailedMessageCreate(
                email_account_id=self.account.id,
                sync_log_id=self.sync_log_id,
                uid=uid,
                stage=stage,
                error_message=error_message,
            )
        )


def scan_account(
    account: EmailAccount,
    rules: list[SyncRule],
    *,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    cancel_event: Optional[threading.Event] = None,
    sync_log_id: Optional[str] = None,
    on_progress: Optional[Callable[[int, int], None]] = None,
    on_candidates: Optional[Callable[[int], None]] = None,
    connection_factory: Callable[[EmailAccount], MailboxConnection] = MailboxConnection.for_account,
    classifier_config: Optional[ClassifierConfig] = None,
) -> ScanResult:
    """
    Scan one account's INBOX for new invoices.

    Candidate UIDs are those within [date_from, date_to) and above the
    account's cursor. The connection is closed however the loop exits.

    Args:
        account: Account to scan; its last_processed_uid is updated in place.
        rules: Active exclusion rules for this run.
        cancel_event: Checked before each message; when set the scan stops.
        sync_log_id: Recorded on quarantine rows.
        on_progress: Called as (emails_processed, invoices_found) every
            PROGRESS_EVERY messages.
        on_candidates: Called once with the number of candidate UIDs.

    Returns:
        ScanResult with this scan's counts.

    Raises:
        MailConnectionError: if the server cannot be reached or the session drops.
        PersistenceError: if the cursor cannot be written.
    """
    config = classifier_config or ClassifierConfig.from_env()
    scanner = AccountScanner(account, rules, config, sync_log_id=sync_log_id)

    with connection_factory(account) as conn:
        conn.select_inbox_readonly()
        uids = conn.search_positions(
            date_from=date_from,
            date_to=date_to,
            after_uid=account.last_processed_uid,
        )
        logger.info(f"Found {len(uids)} emails to process for {account.email}")

        if on_candidates:
            on_candidates(len(uids))

        return scanner.run(conn, uids, cancel_event, on_progress)
