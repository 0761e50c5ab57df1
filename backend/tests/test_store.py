"""
Unit tests for the Supabase table operations in services/store.py.
The Supabase client is mocked; each test checks the rows written or the
error handling around the call.
"""

import os
from datetime import date
from unittest.mock import MagicMock, Mock, patch

import pytest

os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_KEY", "eyJhbGciOiJIUzI1NiJ9.eyJyb2xlIjoiYW5vbiJ9.dGVzdA")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "eyJhbGciOiJIUzI1NiJ9.eyJyb2xlIjoic2VydmljZSJ9.dGVzdA")

from invoice_sync.exceptions import PersistenceError
from invoice_sync.models.sync import FailedMessageCreate, PendingLinkCreate, SyncStatus
from invoice_sync.services import store


def _make_supabase_chain(*results):
    """
    Build a MagicMock that returns results[i] from the i-th .execute() call,
    regardless of which chaining methods were called.
    """
    mock = MagicMock()
    mock.select.return_value = mock
    mock.eq.return_value = mock
    mock.insert.return_value = mock
    mock.update.return_value = mock
    mock.order.return_value = mock
    mock.limit.return_value = mock
    mock.execute.side_effect = [Mock(data=r) for r in results]
    return mock


def _failing_chain(error: Exception):
    mock = _make_supabase_chain()
    mock.execute.side_effect = error
    return mock


class _UniqueViolation(Exception):
    code = "23505"


def _pending_link() -> PendingLinkCreate:
    return PendingLinkCreate(
        email_account_id="acct-1",
        detected_url="https://pay.example.com/invoice/5",
        detected_amount="$42.00",
    )


class TestAccountsAndRules:

    def test_get_email_accounts_filters_by_id(self):
        row = {
            "id": "acct-1",
            "email": "me@example.com",
            "username": "me@example.com",
            "password": "secret",
            "imap_host": "imap.example.com",
            "created_at": "2025-01-01T00:00:00Z",
        }
        chain = _make_supabase_chain([row])
        with patch("invoice_sync.services.store.supabase_admin") as mock_supabase:
            mock_supabase.table.return_value = chain
            accounts = store.get_email_accounts("acct-1")

        mock_supabase.table.assert_called_with("email_accounts")
        chain.eq.assert_called_once_with("id", "acct-1")
        chain.order.assert_called_once_with("email")
        assert [a.id for a in accounts] == ["acct-1"]
        assert accounts[0].imap_port == 993

    def test_get_email_accounts_empty(self):
        with patch("invoice_sync.services.store.supabase_admin") as mock_supabase:
            mock_supabase.table.return_value = _make_supabase_chain([])
            assert store.get_email_accounts() == []

    def test_get_sync_rules_active_only(self):
        chain = _make_supabase_chain([
            {"id": "r1", "name": "No promos", "rule_type": "exclude",
             "condition_type": "domain_equals", "condition_value": "promo.example.com"},
        ])
        with patch("invoice_sync.services.store.supabase_admin") as mock_supabase:
            mock_supabase.table.return_value = chain
            rules = store.get_sync_rules()

        chain.eq.assert_called_once_with("is_active", True)
        assert rules[0].condition_value == "promo.example.com"

    def test_connected_status_stamps_last_sync_at(self):
        chain = _make_supabase_chain([{}])
        with patch("invoice_sync.services.store.supabase_admin") as mock_supabase:
            mock_supabase.table.return_value = chain
            store.update_account_status("acct-1", "connected")

        updates = chain.update.call_args[0][0]
        assert updates["status"] == "connected"
        assert updates["error_message"] is None
        assert "last_sync_at" in updates

    def test_error_status_keeps_last_sync_at(self):
        chain = _make_supabase_chain([{}])
        with patch("invoice_sync.services.store.supabase_admin") as mock_supabase:
            mock_supabase.table.return_value = chain
            store.update_account_status("acct-1", "error", "login failed")

        updates = chain.update.call_args[0][0]
        assert updates == {"status": "error", "error_message": "login failed"}

    def test_cursor_write_failure_raises(self):
        with patch("invoice_sync.services.store.supabase_admin") as mock_supabase:
            mock_supabase.table.return_value = _failing_chain(Exception("connection reset"))
            with pytest.raises(PersistenceError) as exc_info:
                store.update_account_last_uid("acct-1", 42)

        assert exc_info.value.operation == "update_account_last_uid"
        assert "42" in exc_info.value.message


class TestSyncLogs:

    def test_create_sync_log_row(self):
        returned = {"id": "sync-1", "status": "running", "total_accounts": 2}
        chain = _make_supabase_chain([returned])
        with patch("invoice_sync.services.store.supabase_admin") as mock_supabase:
            mock_supabase.table.return_value = chain
            sync_log = store.create_sync_log(2, date(2025, 1, 1), date(2025, 2, 1))

        row = chain.insert.call_args[0][0]
        assert row["status"] == "running"
        assert row["total_accounts"] == 2
        assert row["processed_accounts"] == 0
        assert row["total_invoices"] == 0
        assert row["date_from"] == "2025-01-01"
        assert row["date_to"] == "2025-02-01"
        assert sync_log.id == "sync-1"
        assert sync_log.status == SyncStatus.RUNNING

    def test_create_sync_log_no_data_raises(self):
        with patch("invoice_sync.services.store.supabase_admin") as mock_supabase:
            mock_supabase.table.return_value = _make_supabase_chain([])
            with pytest.raises(PersistenceError):
                store.create_sync_log(1)

    def test_get_sync_log_missing(self):
        with patch("invoice_sync.services.store.supabase_admin") as mock_supabase:
            mock_supabase.table.return_value = _make_supabase_chain([])
            assert store.get_sync_log("nope") is None

    def test_update_sync_log_failure_raises(self):
        with patch("invoice_sync.services.store.supabase_admin") as mock_supabase:
            mock_supabase.table.return_value = _failing_chain(Exception("timeout"))
            with pytest.raises(PersistenceError) as exc_info:
                store.update_sync_log("sync-1", {"total_invoices": 3})

        assert exc_info.value.operation == "update_sync_log"


class TestInvoicesAndLinks:

    def test_check_duplicate_invoice(self):
        with patch("invoice_sync.services.store.supabase_admin") as mock_supabase:
            mock_supabase.table.return_value = _make_supabase_chain([{"id": "inv-1"}], [])
            assert store.check_duplicate_invoice("acct-1", "<m@x>", "a.pdf") is True
            assert store.check_duplicate_invoice("acct-1", "<m@x>", "b.pdf") is False

    def test_check_duplicate_invoice_read_failure(self):
        with patch("invoice_sync.services.store.supabase_admin") as mock_supabase:
            mock_supabase.table.return_value = _failing_chain(Exception("timeout"))
            with pytest.raises(PersistenceError):
                store.check_duplicate_invoice("acct-1", "<m@x>", "a.pdf")

    def test_duplicate_pending_link_is_not_an_error(self):
        with patch("invoice_sync.services.store.supabase_admin") as mock_supabase:
            mock_supabase.table.return_value = _failing_chain(_UniqueViolation("conflict"))
            assert store.insert_pending_link(_pending_link()) is False

    def test_duplicate_detected_from_message(self):
        error = Exception('duplicate key value violates unique constraint "pending_links_url_key"')
        with patch("invoice_sync.services.store.supabase_admin") as mock_supabase:
            mock_supabase.table.return_value = _failing_chain(error)
            assert store.insert_pending_link(_pending_link()) is False

    def test_pending_link_inserted(self):
        chain = _make_supabase_chain([{"id": "link-1"}])
        with patch("invoice_sync.services.store.supabase_admin") as mock_supabase:
            mock_supabase.table.return_value = chain
            assert store.insert_pending_link(_pending_link()) is True

        mock_supabase.table.assert_called_with("pending_invoice_links")
        assert chain.insert.call_args[0][0]["status"] == "pending"

    def test_other_pending_link_failure_raises(self):
        with patch("invoice_sync.services.store.supabase_admin") as mock_supabase:
            mock_supabase.table.return_value = _failing_chain(Exception("permission denied"))
            with pytest.raises(PersistenceError) as exc_info:
                store.insert_pending_link(_pending_link())

        assert exc_info.value.operation == "insert_pending_link"

    def test_record_failed_message_swallows_errors(self):
        failure = FailedMessageCreate(email_account_id="acct-1", uid=9, stage="parse")
        with patch("invoice_sync.services.store.supabase_admin") as mock_supabase:
            mock_supabase.table.return_value = _failing_chain(Exception("table missing"))
            store.record_failed_message(failure)  # does not raise

        mock_supabase.table.assert_called_with("sync_failed_messages")
