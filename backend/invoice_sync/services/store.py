"""
Supabase table operations used by the sync worker.

Tables:
  email_accounts         - mailboxes + scan cursor (last_processed_uid)
  sync_rules             - exclusion rules
  sync_logs              - one row per sync run, polled for progress
  invoices               - one row per stored PDF attachment
  pending_invoice_links  - invoice URLs queued for manual download
  sync_failed_messages   - UIDs the cursor moved past without a clean result

Reads return pydantic models (or plain values); writes raise
PersistenceError on failure, except insert_pending_link (duplicates are
expected) and record_failed_message (best-effort).
"""

import logging
from datetime import date, datetime, timezone
from typing import Any, Optional

from invoice_sync.db import supabase_admin
from invoice_sync.exceptions import PersistenceError
from invoice_sync.models.sync import (
    EmailAccount,
    FailedMessageCreate,
    InvoiceCreate,
    PendingLinkCreate,
    SyncLog,
    SyncRule,
    SyncStatus,
)

logger = logging.getLogger(__name__)

_UNIQUE_VIOLATION = "23505"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _is_duplicate_error(exc: Exception) -> bool:
    """True for Postgres unique violations surfaced through PostgREST."""
    if getattr(exc, "code", None) == _UNIQUE_VIOLATION:
        return True
    return "duplicate" in str(exc).lower()


# ---------------------------------------------------------------------------
# Accounts and rules
# ---------------------------------------------------------------------------

def get_email_accounts(account_id: Optional[str] = None) -> list[EmailAccount]:
    """All accounts, or just the one with account_id. Ordered by email for a stable run order."""
    query = supabase_admin.table("email_accounts").select("*")
    if account_id:
        query = query.eq("id", account_id)
    result = query.order("email").execute()
    return [EmailAccount(**row) for row in (result.data or [])]


def get_sync_rules() -> list[SyncRule]:
    """Active rules only."""
    result = (
        supabase_admin.table("sync_rules")
        .select("*")
        .eq("is_active", True)
        .execute()
    )
    return [SyncRule(**row) for row in (result.data or [])]


def update_account_status(
    account_id: str,
    status: str,
    error_message: Optional[str] = None,
) -> None:
    """Record the outcome of an account scan. 'connected' also stamps last_sync_at."""
    updates: dict[str, Any] = {"status": status, "error_message": error_message}
    if status == "connected":
        updates["last_sync_at"] = _now_iso()
    try:
        supabase_admin.table("email_accounts").update(updates).eq("id", account_id).execute()
    except Exception as e:
        raise PersistenceError(
            f"Failed to update status for account {account_id}: {e}", "update_account_status"
        ) from e


def update_account_last_uid(account_id: str, uid: int) -> None:
    """Advance the scan cursor."""
    try:
        (
            supabase_admin.table("email_accounts")
            .update({"last_processed_uid": uid})
            .eq("id", account_id)
            .execute()
        )
    except Exception as e:
        raise PersistenceError(
            f"Failed to advance cursor for account {account_id} to UID {uid}: {e}",
            "update_account_last_uid",
        ) from e


# ---------------------------------------------------------------------------
# Sync logs
# ---------------------------------------------------------------------------

def create_sync_log(
    total_accounts: int,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
) -> SyncLog:
    """Insert a running sync_logs row with zeroed counters."""
    row = {
        "status": SyncStatus.RUNNING.value,
        "started_at": _now_iso(),
        "total_accounts": total_accounts,
        "processed_accounts": 0,
        "total_invoices": 0,
        "emails_processed_so_far": 0,
        "total_emails_to_process": 0,
        "date_from": date_from.isoformat() if date_from else None,
        "date_to": date_to.isoformat() if date_to else None,
    }
    try:
        result = supabase_admin.table("sync_logs").insert(row).execute()
    except Exception as e:
        raise PersistenceError(f"Failed to create sync log: {e}", "create_sync_log") from e

    if not result.data:
        raise PersistenceError("sync_logs insert returned no data", "create_sync_log")
    return SyncLog(**result.data[0])


def update_sync_log(sync_log_id: str, updates: dict[str, Any]) -> None:
    try:
        supabase_admin.table("sync_logs").update(updates).eq("id", sync_log_id).execute()
    except Exception as e:
        raise PersistenceError(
            f"Failed to update sync log {sync_log_id}: {e}", "update_sync_log"
        ) from e


def get_sync_log(sync_log_id: str) -> Optional[SyncLog]:
    result = (
        supabase_admin.table("sync_logs")
        .select("*")
        .eq("id", sync_log_id)
        .limit(1)
        .execute()
    )
    if not result.data:
        return None
    return SyncLog(**result.data[0])


# ---------------------------------------------------------------------------
# Invoices and pending links
# ---------------------------------------------------------------------------

def check_duplicate_invoice(account_id: str, message_id: str, filename: str) -> bool:
    """True if an invoice row already exists for (account, message, filename)."""
    try:
        result = (
            supabase_admin.table("invoices")
            .select("id")
            .eq("email_account_id", account_id)
            .eq("email_message_id", message_id)
            .eq("filename", filename)
            .limit(1)
            .execute()
        )
    except Exception as e:
        raise PersistenceError(
            f"Failed to check for duplicate invoice {filename}: {e}", "check_duplicate_invoice"
        ) from e
    return bool(result.data)


def insert_invoice(invoice: InvoiceCreate) -> dict:
    try:
        result = supabase_admin.table("invoices").insert(invoice.model_dump()).execute()
    except Exception as e:
        raise PersistenceError(
            f"Failed to insert invoice {invoice.filename}: {e}", "insert_invoice"
        ) from e
    if not result.data:
        raise PersistenceError("invoices insert returned no data", "insert_invoice")
    return result.data[0]


def insert_pending_link(link: PendingLinkCreate) -> bool:
    """
    Queue a detected invoice URL.

    Returns False when the link already exists for the account (duplicate
    key), True when inserted. Other failures raise PersistenceError.
    """
    try:
        supabase_admin.table("pending_invoice_links").insert(link.model_dump()).execute()
    except Exception as e:
        if _is_duplicate_error(e):
            logger.info(f"Pending link already recorded: {link.detected_url}")
            return False
        raise PersistenceError(
            f"Failed to insert pending link {link.detected_url}: {e}", "insert_pending_link"
        ) from e
    return True


def record_failed_message(failure: FailedMessageCreate) -> None:
    """Quarantine a UID for later retry. Best-effort: failures are logged, not raised."""
    try:
        supabase_admin.table("sync_failed_messages").insert(failure.model_dump()).execute()
    except Exception as e:
        logger.warning(
            f"Could not quarantine UID {failure.uid} for account "
            f"{failure.email_account_id}: {e}"
        )
