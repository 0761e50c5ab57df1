"""
IMAP transport for invoice scanning.

Wraps imaplib with the handful of operations the scanner needs:
connect, select INBOX read-only, search UIDs by date window and cursor,
fetch raw message bytes, disconnect.

UIDs are used as message positions because they are stable across sessions,
unlike sequence numbers.
"""

import imaplib
import logging
import os
import ssl
from datetime import date
from typing import Optional

from invoice_sync.exceptions import MailConnectionError
from invoice_sync.models.sync import EmailAccount

logger = logging.getLogger(__name__)

IMAP_TIMEOUT_SECONDS = float(os.getenv("IMAP_TIMEOUT_SECONDS", "30"))


def _imap_date(value: date) -> str:
    """IMAP SEARCH date format, e.g. 01-Mar-2025."""
    months = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
              "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")
    return f"{value.day:02d}-{months[value.month - 1]}-{value.year}"


def build_search_criteria(
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    after_uid: Optional[int] = None,
) -> list[str]:
    """
    Build UID SEARCH criteria.

    SINCE is inclusive and BEFORE is exclusive, both at day granularity.
    'UID n:*' always matches the highest UID even when it is below n, so
    callers must still filter the result against the cursor.
    """
    criteria = ["ALL"]
    if date_from:
        criteria += ["SINCE", _imap_date(date_from)]
    if date_to:
        criteria += ["BEFORE", _imap_date(date_to)]
    if after_uid and after_uid > 0:
        criteria += ["UID", f"{after_uid + 1}:*"]
    return criteria


class MailboxConnection:
    """
    One IMAP session for one account.

    Use as a context manager so the session is always closed:

        with MailboxConnection.for_account(account) as conn:
            conn.select_inbox_readonly()
            uids = conn.search_positions(after_uid=account.last_processed_uid)
    """

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        use_ssl: bool = True,
        timeout: float = IMAP_TIMEOUT_SECONDS,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_ssl = use_ssl
        self.timeout = timeout
        self._conn: imaplib.IMAP4 | None = None

    @classmethod
    def for_account(cls, account: EmailAccount) -> "MailboxConnection":
        return cls(
            host=account.imap_host,
            port=account.imap_port,
            username=account.username,
            password=account.password,
            use_ssl=account.use_ssl,
        )

    def connect(self) -> None:
        """Connect and authenticate. Raises MailConnectionError on any failure."""
        logger.info(f"Connecting to IMAP {self.host}:{self.port} as {self.username}")
        conn = None
        try:
            if self.use_ssl:
                conn = imaplib.IMAP4_SSL(
                    self.host,
                    self.port,
                    ssl_context=ssl.create_default_context(),
                    timeout=self.timeout,
                )
            else:
                conn = imaplib.IMAP4(self.host, self.port, timeout=self.timeout)
            conn.login(self.username, self.password)
            self._conn = conn  # Only set if login succeeds
        except (imaplib.IMAP4.error, OSError) as e:
            # Clean up partial connection if login fails
            if conn is not None:
                try:
                    conn.logout()
                except (imaplib.IMAP4.error, OSError):
                    pass
            raise MailConnectionError(
                f"IMAP connection to {self.host}:{self.port} failed: {e}"
            ) from e

    def disconnect(self) -> None:
        """Close the session. Never raises."""
        if self._conn is None:
            return
        try:
            self._conn.logout()
        except (imaplib.IMAP4.error, OSError) as e:
            logger.info(f"Ignoring IMAP logout error for {self.username}: {e}")
        finally:
            self._conn = None

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.disconnect()

    def _require_connection(self) -> imaplib.IMAP4:
        if self._conn is None:
            raise MailConnectionError("Not connected to IMAP server")
        return self._conn

    def select_inbox_readonly(self) -> int:
        """Select INBOX without touching \\Seen flags. Returns the message count."""
        conn = self._require_connection()
        try:
            typ, data = conn.select("INBOX", readonly=True)
        except (imaplib.IMAP4.error, OSError) as e:
            raise MailConnectionError(f"Failed to open INBOX: {e}") from e
        if typ != "OK":
            raise MailConnectionError(f"Failed to open INBOX: {data!r}")
        try:
            return int(data[0])
        except (TypeError, ValueError, IndexError):
            return 0

    def search_positions(
        self,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        after_uid: Optional[int] = None,
    ) -> list[int]:
        """
        Return candidate UIDs, strictly greater than after_uid when given,
        deduplicated and sorted ascending.
        """
        conn = self._require_connection()
        criteria = build_search_criteria(date_from, date_to, after_uid)
        try:
            typ, data = conn.uid("SEARCH", *criteria)
        except (imaplib.IMAP4.error, OSError) as e:
            raise MailConnectionError(f"IMAP search failed: {e}") from e
        if typ != "OK":
            raise MailConnectionError(f"IMAP search failed: {data!r}")

        raw = data[0] if data and data[0] else b""
        uids = {int(tok) for tok in raw.split() if tok.isdigit()}
        if after_uid:
            uids = {uid for uid in uids if uid > after_uid}
        return sorted(uids)

    def fetch_raw(self, uid: int) -> Optional[bytes]:
        """
        Fetch the full RFC 822 bytes of one message without marking it seen.

        Returns None when the server reports a per-message failure. A dropped
        session (IMAP4.abort, socket error) is raised as MailConnectionError
        since every following fetch would fail too.
        """
        conn = self._require_connection()
        try:
            typ, data = conn.uid("FETCH", str(uid), "(BODY.PEEK[])")
        except imaplib.IMAP4.abort as e:
            raise MailConnectionError(f"IMAP session dropped while fetching UID {uid}: {e}") from e
        except OSError as e:
            raise MailConnectionError(f"IMAP socket error while fetching UID {uid}: {e}") from e
        except imaplib.IMAP4.error as e:
            logger.warning(f"Error fetching email UID {uid}: {e}")
            return None

        if typ != "OK" or not data:
            logger.warning(f"Error fetching email UID {uid}: {typ} {data!r}")
            return None

        for item in data:
            if isinstance(item, tuple) and len(item) >= 2 and isinstance(item[1], bytes):
                return item[1]
        logger.warning(f"No message body returned for UID {uid}")
        return None
