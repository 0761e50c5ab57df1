"""
Invoice Sync Backend API
FastAPI application that scans IMAP mailboxes for invoices.
"""

import logging
import os
from typing import List

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from invoice_sync.routers import sync
from invoice_sync.db import supabase_admin
from invoice_sync.services.orchestrator import get_orchestrator
from invoice_sync.services.storage import INVOICE_BUCKET

# Configure logging to output to console
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

app = FastAPI(
    title="Invoice Sync API",
    description="Incremental IMAP scanning for invoice PDFs and download links",
    version=VERSION,
)


def get_cors_origins() -> List[str]:
    """
    Build the list of allowed CORS origins.

    Always includes http://localhost:3000 (frontend dev server). Additional
    origins are read from the CORS_ORIGINS environment variable as a
    comma-separated list, e.g.:
        CORS_ORIGINS=https://invoices.example.com,https://staging.example.com

    Duplicates are removed while preserving order.
    """
    always_included = ["http://localhost:3000"]

    extra_origins: List[str] = []
    cors_env = os.getenv("CORS_ORIGINS", "").strip()
    if cors_env:
        extra_origins = [o.strip() for o in cors_env.split(",") if o.strip()]

    seen: set = set()
    origins: List[str] = []
    for origin in always_included + extra_origins:
        if origin not in seen:
            seen.add(origin)
            origins.append(origin)

    return origins


app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sync.router, prefix="/api/sync", tags=["sync"])


@app.on_event("shutdown")
def stop_sync_workers() -> None:
    """Let in-flight runs finish their current step before the process exits."""
    logger.info("Shutting down sync workers")
    get_orchestrator().shutdown(wait=False)


@app.get("/")
async def root():
    return {"message": "Invoice Sync API", "version": VERSION}


@app.get("/health")
async def health():
    return {"status": "healthy", "version": VERSION}


@app.get("/health/db")
def health_db():
    """
    Test the Supabase database connection.

    Selects one row id from email_accounts. Returns 503 on failure.
    """
    if supabase_admin is None:
        raise HTTPException(
            status_code=503,
            detail="Database client unavailable: SUPABASE_SERVICE_KEY is not configured",
        )

    try:
        supabase_admin.table("email_accounts").select("id").limit(1).execute()
        return {"status": "ok", "database": "reachable"}
    except Exception as exc:
        logger.error(f"Database health check failed: {exc}")
        raise HTTPException(
            status_code=503,
            detail=f"Database connection failed: {str(exc)}",
        )


@app.get("/health/storage")
def health_storage():
    """
    Test Supabase Storage access.

    Lists storage buckets and verifies the invoice bucket exists.
    Returns 503 if storage is unreachable or the bucket is missing.
    """
    if supabase_admin is None:
        raise HTTPException(
            status_code=503,
            detail="Storage client unavailable: SUPABASE_SERVICE_KEY is not configured",
        )

    try:
        buckets = supabase_admin.storage.list_buckets()
        bucket_names = [b.name for b in buckets]

        if INVOICE_BUCKET not in bucket_names:
            raise HTTPException(
                status_code=503,
                detail=f"Storage bucket '{INVOICE_BUCKET}' not found",
            )

        return {"status": "ok", "storage": "reachable", "bucket": INVOICE_BUCKET}
    except HTTPException:
        raise
    except Exception as exc:
        logger.error(f"Storage health check failed: {exc}")
        raise HTTPException(
            status_code=503,
            detail=f"Storage check failed: {str(exc)}",
        )
