"""
Exceptions raised by the sync pipeline.

Which layer handles what:
  NoAccountsError     - start_sync, before any sync log exists (HTTP 404)
  MailConnectionError - fatal to one account; the orchestrator records it
  FetchError          - one message; the scanner quarantines and moves on
  MessageParseError   - one message; the scanner quarantines and moves on
  PersistenceError    - a Supabase table/Storage write failed
  RunFatalError       - escaped the account loop; the run is marked failed
"""


class NoAccountsError(Exception):
    """Raised when a sync request resolves to zero email accounts."""

    def __init__(self, account_id: str | None = None):
        self.account_id = account_id
        if account_id:
            message = f"No email account found with id {account_id!r}"
        else:
            message = "No email accounts found"
        super().__init__(message)


class MailConnectionError(ConnectionError):
    """Raised when the IMAP server cannot be reached, logged into, or drops the session."""


class FetchError(Exception):
    """Raised when a single message cannot be fetched."""

    def __init__(self, uid: int, message: str):
        super().__init__(message)
        self.uid = uid


class MessageParseError(Exception):
    """Raised when raw message bytes cannot be parsed."""


class PersistenceError(Exception):
    """Raised when a write to Supabase (tables or Storage) fails."""

    def __init__(self, message: str, operation: str):
        super().__init__(message)
        self.operation = operation
        self.message = message


class RunFatalError(Exception):
    """Wraps an error that escaped the per-account loop of a sync run."""

    def __init__(self, sync_log_id: str, cause: BaseException):
        super().__init__(str(cause) or cause.__class__.__name__)
        self.sync_log_id = sync_log_id
        self.cause = cause
