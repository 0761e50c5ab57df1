#!/usr/bin/env python3
"""
Dev helper: start a sync run on the local backend and follow its progress.

POSTs to /api/sync, then polls /api/sync/{id} until the run reaches a
terminal status, printing the counters on every change.

Usage
-----
# All accounts, targeting localhost:8000
python scripts/trigger_sync.py

# One account, restricted to a date window (dateTo is exclusive)
python scripts/trigger_sync.py --account-id <uuid> --from 2025-01-01 --to 2025-02-01

# Start and immediately request cancellation
python scripts/trigger_sync.py --cancel-after 2

# Target a different backend URL
python scripts/trigger_sync.py --url http://staging.example.com

Needs httpx, installed with the dev extra: pip install -e ".[dev]"
"""

import argparse
import json
import sys
import time

import httpx

TERMINAL_STATUSES = {"completed", "cancelled", "failed"}


def _print_response(response: httpx.Response) -> None:
    symbol = "OK" if response.is_success else "FAIL"
    print(f"\n[{symbol}] HTTP {response.status_code}")
    try:
        print(json.dumps(response.json(), indent=2))
    except ValueError:
        print(response.text)


def _progress_line(log: dict) -> str:
    return (
        f"{log['status']:<10} "
        f"accounts {log.get('processed_accounts', 0)}/{log.get('total_accounts', 0)}  "
        f"emails {log.get('emails_processed_so_far') or 0}/{log.get('total_emails_to_process') or 0}  "
        f"invoices {log.get('total_invoices', 0)}  "
        f"{log.get('sync_message') or ''}"
    )


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Start an invoice sync run and poll it until it finishes.",
    )
    parser.add_argument("--url", default="http://localhost:8000", help="Backend base URL")
    parser.add_argument("--account-id", help="Sync only this email account")
    parser.add_argument("--from", dest="date_from", help="Inclusive start date (YYYY-MM-DD)")
    parser.add_argument("--to", dest="date_to", help="Exclusive end date (YYYY-MM-DD)")
    parser.add_argument("--interval", type=float, default=2.0, help="Seconds between polls")
    parser.add_argument(
        "--cancel-after",
        type=float,
        help="Request cancellation this many seconds after the run starts",
    )
    args = parser.parse_args()

    base_url = args.url.rstrip("/")
    body = {
        key: value
        for key, value in (
            ("accountId", args.account_id),
            ("dateFrom", args.date_from),
            ("dateTo", args.date_to),
        )
        if value
    }

    try:
        response = httpx.post(f"{base_url}/api/sync", json=body, timeout=30)
    except httpx.ConnectError:
        print(
            f"\nERROR: Could not connect to {base_url}. Is the backend running?\n"
            "  cd backend && uvicorn invoice_sync.main:app --reload",
            file=sys.stderr,
        )
        return 1

    _print_response(response)
    if not response.is_success:
        return 1

    sync_log_id = response.json()["syncLogId"]
    started = time.monotonic()
    cancel_sent = False
    last_line = None

    while True:
        if args.cancel_after is not None and not cancel_sent and time.monotonic() - started >= args.cancel_after:
            _print_response(httpx.post(f"{base_url}/api/sync/{sync_log_id}/cancel", timeout=30))
            cancel_sent = True

        status = httpx.get(f"{base_url}/api/sync/{sync_log_id}", timeout=30)
        if not status.is_success:
            _print_response(status)
            return 1

        log = status.json()
        line = _progress_line(log)
        if line != last_line:
            print(line)
            last_line = line

        if log["status"] in TERMINAL_STATUSES:
            if log.get("error_message"):
                print(f"\nError: {log['error_message']}")
            return 0 if log["status"] != "failed" else 1

        time.sleep(args.interval)


if __name__ == "__main__":
    sys.exit(main())
