"""
Sync orchestrator.

Starts a sync run over one or all email accounts, executes it in a worker
thread, and keeps the run's sync_logs row current so callers can poll it.

start_sync() returns the sync_log id as soon as the row exists and the run
is submitted. Nothing the worker does after that is reported back to the
caller directly: results and failures only show up in the sync_logs row.

Run lifecycle:
  running -> completed   every account attempted
  running -> cancelled   cancel requested; checked before each account
                         and once more after the last one
  running -> failed      an error escaped the account loop

A failure inside one account (connection, auth, cursor write) marks that
account as 'error' and the run moves on to the next account.
"""

import logging
import os
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import date, datetime, timezone
from typing import Optional

from invoice_sync.exceptions import NoAccountsError, PersistenceError, RunFatalError
from invoice_sync.models.sync import AccountStatus, EmailAccount, SyncLog, SyncStatus
from invoice_sync.services import store
from invoice_sync.services.scanner import ScanResult, scan_account
from invoice_sync.services.sync_registry import SyncRegistry, sync_registry

logger = logging.getLogger(__name__)

SYNC_MAX_WORKERS = int(os.getenv("SYNC_MAX_WORKERS", "2"))


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class _RunProgress:
    """Running totals for one run, written to sync_logs by the worker only."""

    def __init__(self, sync_log_id: str):
        self.sync_log_id = sync_log_id
        self.total_invoices = 0
        self.emails_processed = 0
        self.emails_to_process = 0

    def on_candidates(self, count: int) -> None:
        self.emails_to_process += count
        self._write({"total_emails_to_process": self.emails_to_process})

    def on_account_progress(self, emails_processed: int, invoices_found: int) -> None:
        self._write({
            "emails_processed_so_far": self.emails_processed + emails_processed,
            "total_invoices": self.total_invoices + invoices_found,
        })

    def add(self, result: ScanResult) -> None:
        self.total_invoices += result.invoices_found
        self.emails_processed += result.emails_processed
        store.update_sync_log(self.sync_log_id, {
            "total_invoices": self.total_invoices,
            "emails_processed_so_far": self.emails_processed,
        })

    def _write(self, updates: dict) -> None:
        # Intermediate progress is best-effort; the final totals are written by add()
        try:
            store.update_sync_log(self.sync_log_id, updates)
        except PersistenceError as e:
            logger.warning(f"Could not update progress for sync {self.sync_log_id}: {e.message}")


class SyncOrchestrator:
    """
    Entry point for sync runs.

    Args:
        registry: Where in-flight runs and their cancellation flags live.
        executor: Runs submitted syncs. Defaults to a ThreadPoolExecutor with
            SYNC_MAX_WORKERS threads.
        scanner: The per-account scan function (injectable for tests).
    """

    def __init__(
        self,
        registry: SyncRegistry,
        executor: Optional[ThreadPoolExecutor] = None,
        scanner=scan_account,
    ):
        self.registry = registry
        self.executor = executor or ThreadPoolExecutor(
            max_workers=SYNC_MAX_WORKERS, thread_name_prefix="invoice-sync"
        )
        self.scanner = scanner

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start_sync(
        self,
        account_id: Optional[str] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> str:
        """
        Create a sync run and submit it to the worker pool.

        Returns:
            The new sync_log id.

        Raises:
            NoAccountsError: if no account matches; no sync log is created.
            PersistenceError: if the sync log cannot be created.
        """
        accounts = store.get_email_accounts(account_id)
        if not accounts:
            raise NoAccountsError(account_id)

        sync_log = store.create_sync_log(
            total_accounts=len(accounts),
            date_from=date_from,
            date_to=date_to,
        )
        self.registry.register(sync_log.id)

        logger.info(
            f"Starting sync {sync_log.id} for {len(accounts)} account(s) "
            f"(date_from={date_from}, date_to={date_to})"
        )
        self.submit(sync_log.id, accounts, date_from, date_to)
        return sync_log.id

    def submit(
        self,
        sync_log_id: str,
        accounts: list[EmailAccount],
        date_from: Optional[date],
        date_to: Optional[date],
    ) -> Future:
        try:
            return self.executor.submit(self.run_sync, sync_log_id, accounts, date_from, date_to)
        except RuntimeError:
            # Executor already shut down; the run never starts
            self.registry.unregister(sync_log_id)
            store.update_sync_log(sync_log_id, {
                "status": SyncStatus.FAILED.value,
                "error_message": "Sync worker is shutting down",
                "completed_at": _now_iso(),
            })
            raise

    def get_status(self, sync_log_id: str) -> Optional[SyncLog]:
        return store.get_sync_log(sync_log_id)

    def cancel(self, sync_log_id: str) -> bool:
        """Request cancellation. Returns False when the run is not in flight."""
        cancelled = self.registry.request_cancel(sync_log_id)
        if cancelled:
            logger.info(f"Cancellation requested for sync {sync_log_id}")
        return cancelled

    def active_runs(self) -> list[str]:
        return self.registry.active_runs()

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def run_sync(
        self,
        sync_log_id: str,
        accounts: list[EmailAccount],
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> SyncStatus:
        """
        Process every account for one run and set the terminal status.

        Never raises: any error escaping the account loop marks the run as
        failed. The registry entry is always removed on exit.
        """
        cancel_event = self.registry.register(sync_log_id)
        progress = _RunProgress(sync_log_id)

        try:
            rules = store.get_sync_rules()

            for index, account in enumerate(accounts):
                if cancel_event.is_set():
                    return self._mark_cancelled(sync_log_id, index)

                store.update_sync_log(sync_log_id, {
                    "current_account_email": account.email,
                    "processed_accounts": index,
                    "sync_message": f"Processing {account.email}...",
                })

                try:
                    result = self.scanner(
                        account,
                        rules,
                        date_from=date_from,
                        date_to=date_to,
                        cancel_event=cancel_event,
                        sync_log_id=sync_log_id,
                        on_progress=progress.on_account_progress,
                        on_candidates=progress.on_candidates,
                    )
                except Exception as e:
                    logger.error(f"Error processing account {account.email}: {e}", exc_info=True)
                    store.update_account_status(account.id, AccountStatus.ERROR.value, str(e))
                    continue

                progress.add(result)
                store.update_account_status(account.id, AccountStatus.CONNECTED.value)

            # Cancel that arrived while the last account was being scanned
            if cancel_event.is_set():
                return self._mark_cancelled(sync_log_id, len(accounts))

            store.update_sync_log(sync_log_id, {
                "status": SyncStatus.COMPLETED.value,
                "processed_accounts": len(accounts),
                "completed_at": _now_iso(),
                "sync_message": (
                    f"Completed. Found {progress.total_invoices} invoices "
                    f"from {progress.emails_processed} emails."
                ),
            })
            logger.info(f"Sync {sync_log_id} completed: {progress.total_invoices} invoices")
            return SyncStatus.COMPLETED

        except Exception as e:
            fatal = RunFatalError(sync_log_id, e)
            logger.error(f"Sync {sync_log_id} failed: {fatal}", exc_info=True)
            self._mark_failed(sync_log_id, str(fatal))
            return SyncStatus.FAILED

        finally:
            self.registry.unregister(sync_log_id)

    def _mark_cancelled(self, sync_log_id: str, processed_accounts: int) -> SyncStatus:
        store.update_sync_log(sync_log_id, {
            "status": SyncStatus.CANCELLED.value,
            "processed_accounts": processed_accounts,
            "sync_message": "Sync cancelled by user",
            "completed_at": _now_iso(),
        })
        logger.info(f"Sync {sync_log_id} cancelled after {processed_accounts} account(s)")
        return SyncStatus.CANCELLED

    def _mark_failed(self, sync_log_id: str, error_message: str) -> None:
        try:
            store.update_sync_log(sync_log_id, {
                "status": SyncStatus.FAILED.value,
                "error_message": error_message,
                "completed_at": _now_iso(),
            })
        except PersistenceError as e:
            logger.error(f"Could not mark sync {sync_log_id} as failed: {e.message}")


# ---------------------------------------------------------------------------
# Process-wide instance (FastAPI dependency)
# ---------------------------------------------------------------------------

_orchestrator: Optional[SyncOrchestrator] = None


def get_orchestrator() -> SyncOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = SyncOrchestrator(registry=sync_registry)
    return _orchestrator
