from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import httpx

from app.providers.common import (
    ProviderError,
    ProviderResult,
    ProviderTimeoutError,
    now_ms,
    parse_json_or_raw,
    raise_for_provider_status,
)

logger = logging.getLogger(__name__)

SONIOX_BASE_URL = "https://api.soniox.com/v1"
_PENDING_STATUSES = {"queued", "processing"}


class SonioxSTTAdapter:
    """Async transcription on Soniox: create job, poll until complete, fetch transcript.

    A ``transcript_text`` param short-circuits the provider and is returned
    as-is. An empty transcript is a valid result.
    """

    provider = "soniox"

    def __init__(self, *, api_key: str | None, model: str = "stt-async-v4", poll_interval_ms: int = 1500):
        self._api_key = api_key
        self._model = model
        self._poll_interval_seconds = max(poll_interval_ms, 0) / 1000

    async def invoke(self, params: dict[str, Any], *, timeout_seconds: float) -> ProviderResult:
        transcript_text = params.get("transcript_text")
        if isinstance(transcript_text, str):
            return ProviderResult(
                output={"text": transcript_text, "passthrough": True},
                usage={"seconds": 0},
                model="passthrough",
            )

        audio_url = params.get("audio_url")
        if not isinstance(audio_url, str) or not audio_url.strip():
            raise ProviderError(self.provider, "No audio source provided for transcription")
        if not self._api_key:
            raise ProviderError(self.provider, "SONIOX_API_KEY is not configured")

        create_body: dict[str, Any] = {"audio_url": audio_url, "model": self._model}
        language = params.get("language")
        if not language or language == "auto":
            create_body["enable_language_identification"] = True
        else:
            create_body["language_hints"] = [language]
            create_body["language_hints_strict"] = True

        headers = {"Authorization": f"Bearer {self._api_key}"}
        started = now_ms()
        deadline = time.monotonic() + timeout_seconds
        transcription_id: str | None = None
        try:
            async with httpx.AsyncClient(timeout=timeout_seconds) as client:
                res = await client.post(f"{SONIOX_BASE_URL}/transcriptions", headers=headers, json=create_body)
                meta = parse_json_or_raw(res.text, res.json)
                raise_for_provider_status(self.provider, res.status_code, meta)
                transcription_id = meta.get("id")
                if not transcription_id:
                    raise ProviderError(self.provider, "Soniox create transcription returned no id")

                status = meta.get("status") or "queued"
                while status in _PENDING_STATUSES:
                    if time.monotonic() >= deadline:
                        await self._cancel(client, headers, transcription_id)
                        raise ProviderTimeoutError(self.provider, timeout_seconds)
                    await asyncio.sleep(self._poll_interval_seconds)
                    res = await client.get(f"{SONIOX_BASE_URL}/transcriptions/{transcription_id}", headers=headers)
                    meta = parse_json_or_raw(res.text, res.json)
                    raise_for_provider_status(self.provider, res.status_code, meta)
                    status = meta.get("status")

                if status != "completed":
                    detail = meta.get("error_message") or meta.get("error") or "unknown error"
                    raise ProviderError(self.provider, f"Soniox transcription failed: {detail}")

                res = await client.get(
                    f"{SONIOX_BASE_URL}/transcriptions/{transcription_id}/transcript",
                    headers=headers,
                )
                transcript = parse_json_or_raw(res.text, res.json)
                raise_for_provider_status(self.provider, res.status_code, transcript)
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(self.provider, timeout_seconds) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(self.provider, f"Soniox request failed: {exc}") from exc

        duration_seconds = (meta.get("audio_duration_ms") or 0) / 1000
        text = transcript.get("text")
        return ProviderResult(
            output={
                "text": text if isinstance(text, str) else "",
                "duration_seconds": duration_seconds,
                "language": language or "auto",
            },
            usage={"seconds": duration_seconds},
            latency_ms=now_ms() - started,
            model=self._model,
            provider_response_id=transcription_id,
        )

    async def _cancel(self, client: httpx.AsyncClient, headers: dict[str, str], transcription_id: str) -> None:
        try:
            await client.delete(f"{SONIOX_BASE_URL}/transcriptions/{transcription_id}", headers=headers)
        except Exception:  # noqa: BLE001
            logger.warning(
                "failed to cancel timed out transcription",
                extra={"transcription_id": transcription_id},
            )
