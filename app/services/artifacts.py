# app/services/artifacts.py - Binary step outputs in Supabase Storage

from __future__ import annotations

import logging

from app.config import get_settings
from app.database import get_supabase_client

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "audio/mpeg": "mp3",
    "audio/wav": "wav",
    "audio/ogg": "ogg",
}


def artifact_key(execution_id: str, step_index: int, mime_type: str) -> str:
    extension = _EXTENSIONS.get(mime_type, "bin")
    return f"executions/{execution_id}/step-{step_index}.{extension}"


def upload_artifact(execution_id: str, step_index: int, content: bytes, mime_type: str) -> str:
    """Store bytes under a deterministic key and return the key.

    Re-running the same step of the same execution overwrites its artifact.
    """
    settings = get_settings()
    key = artifact_key(execution_id, step_index, mime_type)
    client = get_supabase_client()
    client.storage.from_(settings.artifact_bucket).upload(
        key,
        content,
        file_options={"content-type": mime_type, "upsert": "true"},
    )
    logger.info(
        "stored step artifact",
        extra={"execution_id": execution_id, "step_index": step_index, "storage_key": key, "bytes": len(content)},
    )
    return key


def signed_url(storage_key: str) -> str:
    settings = get_settings()
    client = get_supabase_client()
    result = client.storage.from_(settings.artifact_bucket).create_signed_url(
        storage_key,
        settings.artifact_signed_url_ttl_seconds,
    )
    url = result.get("signedURL") or result.get("signedUrl")
    if not url:
        raise ValueError(f"Could not create a signed URL for '{storage_key}'")
    return url
