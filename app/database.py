# app/database.py - Supabase client factory

from functools import lru_cache

from supabase import Client, ClientOptions, create_client

from app.config import get_settings


@lru_cache
def get_supabase_client() -> Client:
    settings = get_settings()
    options = ClientOptions(
        postgrest_client_timeout=settings.store_timeout_seconds,
        storage_client_timeout=int(settings.store_timeout_seconds),
    )
    return create_client(settings.supabase_url, settings.supabase_service_key, options=options)
