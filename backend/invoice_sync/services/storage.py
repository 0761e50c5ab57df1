"""
Supabase Storage service for invoice attachments.
Handles upload and public URL generation.
"""

import os
import re
from typing import Optional
from uuid import uuid4
from urllib.parse import urlparse, urlunparse

from invoice_sync.db import supabase_admin
from invoice_sync.exceptions import PersistenceError

INVOICE_BUCKET = os.getenv("INVOICE_BUCKET", "invoices")


def build_invoice_path(account_id: str, filename: str) -> str:
    """
    Storage path for one extracted attachment:
      {account_id}/{uuid}/{sanitized_filename}

    The UUID segment keeps same-named attachments from different messages
    apart; the invoices table, not the path, is what deduplicates.
    """
    sanitized_filename = re.sub(r'[^\w\-.]', '_', filename) or f"{uuid4().hex}.pdf"
    return f"{account_id}/{uuid4().hex}/{sanitized_filename}"


def _rewrite_public_url_host(public_url: str) -> str:
    """
    Replace the host in a storage URL with the browser-accessible Supabase URL.

    When the worker runs inside Docker it talks to Supabase through an
    internal host such as ``http://host.docker.internal:54321`` and Supabase
    embeds that host in the URLs it returns. If ``SUPABASE_PUBLIC_URL`` is
    set, its scheme and host replace the internal ones; otherwise the URL is
    returned unchanged.
    """
    public_origin = os.getenv("SUPABASE_PUBLIC_URL", "").strip()
    if not public_origin:
        return public_url

    parsed_url = urlparse(public_url)
    parsed_origin = urlparse(public_origin)

    return urlunparse((
        parsed_origin.scheme,
        parsed_origin.netloc,
        parsed_url.path,
        parsed_url.params,
        parsed_url.query,
        parsed_url.fragment,
    ))


def upload_to_storage(
    path: str,
    content: bytes,
    content_type: Optional[str] = None,
    bucket: str = INVOICE_BUCKET,
) -> str:
    """
    Upload bytes to Supabase Storage and return the file's public URL.

    Uses upsert so retrying an upload to the same path overwrites instead
    of failing.

    Raises:
        PersistenceError: if the upload fails or no admin client is configured.
    """
    if not supabase_admin:
        raise PersistenceError(
            "SUPABASE_SERVICE_KEY is required for storage operations", "upload"
        )

    try:
        supabase_admin.storage.from_(bucket).upload(
            path,
            content,
            {
                "content-type": content_type or "application/pdf",
                "upsert": "true",
            },
        )
    except Exception as e:
        raise PersistenceError(f"Failed to upload {path} to storage: {e}", "upload") from e

    return get_public_url(path, bucket=bucket)


def get_public_url(path: str, bucket: str = INVOICE_BUCKET) -> str:
    """Public URL for a stored file, with a browser-accessible host."""
    url = supabase_admin.storage.from_(bucket).get_public_url(path)
    return _rewrite_public_url_host(url)
