"""
Sync API endpoints.

Endpoints:
  POST /                 - start a sync run, returns its sync_log id immediately
  GET  /                 - list ids of runs currently in flight
  GET  /{sync_log_id}    - sync log row (status, counters, messages)
  POST /{sync_log_id}/cancel - request cooperative cancellation

Once a run has started, its outcome is only visible through
GET /{sync_log_id}; the POST that started it cannot report worker errors.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException

from invoice_sync.exceptions import NoAccountsError
from invoice_sync.models.sync import CancelResponse, SyncLog, SyncRequest, SyncResponse
from invoice_sync.services.orchestrator import SyncOrchestrator, get_orchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", response_model=SyncResponse)
def start_sync(
    request: SyncRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """
    Start a sync for one account (accountId) or all accounts.

    dateFrom is inclusive and dateTo exclusive (IMAP SINCE / BEFORE).
    """
    if request.date_from and request.date_to and request.date_from >= request.date_to:
        raise HTTPException(status_code=400, detail="dateFrom must be before dateTo")

    try:
        sync_log_id = orchestrator.start_sync(
            account_id=request.account_id,
            date_from=request.date_from,
            date_to=request.date_to,
        )
    except NoAccountsError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to start sync: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Failed to start sync: {str(e)}")

    return SyncResponse(sync_log_id=sync_log_id)


@router.get("", response_model=dict)
def list_active_syncs(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    return {"active": orchestrator.active_runs()}


@router.get("/{sync_log_id}", response_model=SyncLog)
def get_sync_status(
    sync_log_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    try:
        sync_log = orchestrator.get_status(sync_log_id)
    except Exception as e:
        logger.error(f"Failed to get sync status for {sync_log_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to get sync status: {str(e)}")

    if sync_log is None:
        raise HTTPException(status_code=404, detail="Sync log not found")
    return sync_log


@router.post("/{sync_log_id}/cancel", response_model=CancelResponse)
def cancel_sync(
    sync_log_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """
    Ask a running sync to stop. The worker stops before its next message
    or account; work already done stays committed.
    """
    if not orchestrator.cancel(sync_log_id):
        raise HTTPException(status_code=404, detail="No active sync found with this ID")
    return CancelResponse(message="Sync cancellation requested")
