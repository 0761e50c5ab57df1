"""
Database client configuration.
Uses Supabase for PostgreSQL + Storage.

The sync worker only writes through the service-role client; there is no
per-user (anon key + RLS) access in this service.
"""

import os
from typing import Optional

from supabase import create_client, Client
from dotenv import load_dotenv

load_dotenv()

SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_SERVICE_KEY = os.getenv("SUPABASE_SERVICE_KEY")

if not SUPABASE_URL:
    raise ValueError("SUPABASE_URL must be set in environment variables")

# None when SUPABASE_SERVICE_KEY is unset; storage and the health checks report it
supabase_admin: Optional[Client] = (
    create_client(SUPABASE_URL, SUPABASE_SERVICE_KEY) if SUPABASE_SERVICE_KEY else None
)
