"""
Pydantic models for the invoice sync feature.

Models:
  EmailAccount         - DB row from email_accounts
  SyncRule             - DB row from sync_rules
  SyncLog              - DB row from sync_logs (one per sync run)
  InvoiceCreate        - insert payload for invoices
  PendingLinkCreate    - insert payload for pending_invoice_links
  FailedMessageCreate  - insert payload for sync_failed_messages
  SyncRequest          - request body for POST /api/sync
  SyncResponse         - response body for POST /api/sync
  CancelResponse       - response body for POST /api/sync/{id}/cancel
"""

from datetime import date
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class SyncStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class AccountStatus(str, Enum):
    CONNECTED = "connected"
    ERROR = "error"
    PENDING = "pending"


# ---------------------------------------------------------------------------
# DB rows
# ---------------------------------------------------------------------------

class EmailAccount(BaseModel):
    """
    A mailbox the worker scans.

    Connection parameters and credentials are passed straight to the IMAP
    transport. last_processed_uid is the incremental-scan cursor: the highest
    UID whose processing has been attempted.
    """
    model_config = ConfigDict(extra="ignore", from_attributes=True)

    id: str
    email: str
    username: str
    password: str
    imap_host: str
    imap_port: int = 993
    use_ssl: bool = True
    last_processed_uid: Optional[int] = None
    last_sync_at: Optional[str] = None
    status: str = AccountStatus.PENDING.value
    error_message: Optional[str] = None


class SyncRule(BaseModel):
    """Exclusion rule. Only rule_type == 'exclude' is evaluated."""
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    name: Optional[str] = None
    rule_type: str = "exclude"
    condition_type: str
    condition_value: str
    is_active: bool = True


class SyncLog(BaseModel):
    """Full sync_logs record. Polled by the caller for progress."""
    model_config = ConfigDict(extra="ignore", from_attributes=True)

    id: str
    status: SyncStatus
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    total_accounts: int = 0
    processed_accounts: int = 0
    total_invoices: int = 0
    total_emails_to_process: Optional[int] = 0
    emails_processed_so_far: Optional[int] = 0
    current_account_email: Optional[str] = None
    sync_message: Optional[str] = None
    error_message: Optional[str] = None
    date_from: Optional[str] = None
    date_to: Optional[str] = None


# ---------------------------------------------------------------------------
# Insert payloads
# ---------------------------------------------------------------------------

class InvoiceCreate(BaseModel):
    """
    One invoices row per retained PDF attachment.

    (email_account_id, email_message_id, filename) is unique; the scanner
    checks for an existing row before inserting.
    """
    email_account_id: str
    filename: str
    file_path: str
    file_size: Optional[int] = None
    email_subject: Optional[str] = None
    email_from: Optional[str] = None
    email_date: Optional[str] = None
    email_message_id: Optional[str] = None
    vendor: Optional[str] = None
    amount: Optional[float] = None  # never filled from attachments
    tags: list[str] = Field(default_factory=list)
    source_type: str = "attachment"


class PendingLinkCreate(BaseModel):
    """A detected invoice URL queued for manual download."""
    email_account_id: str
    detected_url: str
    detected_amount: Optional[str] = None
    email_subject: Optional[str] = None
    email_from: Optional[str] = None
    email_date: Optional[str] = None
    email_message_id: Optional[str] = None
    status: str = "pending"


class FailedMessageCreate(BaseModel):
    """
    Quarantine record for a UID the cursor moved past without a clean result.

    stage is one of 'fetch', 'parse', 'persist'.
    """
    email_account_id: str
    sync_log_id: Optional[str] = None
    uid: int
    stage: str
    error_message: Optional[str] = None


# ---------------------------------------------------------------------------
# Request / response bodies
# ---------------------------------------------------------------------------

class SyncRequest(BaseModel):
    """
    Request body for POST /api/sync.

    Accepts both camelCase (accountId, dateFrom, dateTo) and snake_case keys.
    date_to is exclusive.
    """
    model_config = ConfigDict(populate_by_name=True)

    account_id: Optional[str] = Field(default=None, alias="accountId")
    date_from: Optional[date] = Field(default=None, alias="dateFrom")
    date_to: Optional[date] = Field(default=None, alias="dateTo")


class SyncResponse(BaseModel):
    """Response body for POST /api/sync."""
    model_config = ConfigDict(populate_by_name=True)

    sync_log_id: str = Field(alias="syncLogId")
    status: str = "started"
    message: str = "Sync started successfully"


class CancelResponse(BaseModel):
    message: str
