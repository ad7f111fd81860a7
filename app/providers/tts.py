from __future__ import annotations

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

ELEVENLABS_BASE_URL = "https://api.elevenlabs.io/v1"
DEFAULT_OUTPUT_FORMAT = "mp3_44100_128"
_MIME_BY_FORMAT = {
    "mp3_44100_128": "audio/mpeg",
    "mp3_22050_32": "audio/mpeg",
    "pcm_24000": "audio/wav",
    "opus_48000_128": "audio/ogg",
}


async def _post_for_audio(
    provider: str,
    url: str,
    *,
    api_key: str,
    payload: dict[str, Any],
    output_format: str,
    timeout_seconds: float,
) -> bytes:
    try:
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            res = await client.post(
                url,
                params={"output_format": output_format},
                headers={"xi-api-key": api_key, "Content-Type": "application/json", "Accept": "audio/*"},
                json=payload,
            )
    except httpx.TimeoutException as exc:
        raise ProviderTimeoutError(provider, timeout_seconds) from exc
    except httpx.HTTPError as exc:
        raise ProviderError(provider, f"ElevenLabs request failed: {exc}") from exc

    if res.status_code >= 400:
        raise_for_provider_status(provider, res.status_code, parse_json_or_raw(res.text, res.json))
    if "application/json" in res.headers.get("content-type", ""):
        raise ProviderError(provider, f"ElevenLabs returned JSON instead of audio: {res.text[:300]}")
    if not res.content:
        raise ProviderError(provider, "ElevenLabs returned an empty audio body")
    return res.content


class ElevenLabsTTSAdapter:
    """Text-to-speech. params: text, voice_id, model (optional), language (optional)."""

    provider = "elevenlabs"

    def __init__(self, *, api_key: str | None, model: str = "eleven_v3", default_voice_id: str | None = None):
        self._api_key = api_key
        self._model = model
        self._default_voice_id = default_voice_id

    async def invoke(self, params: dict[str, Any], *, timeout_seconds: float) -> ProviderResult:
        text = str(params.get("text") or "")
        if not text.strip():
            raise ProviderError(self.provider, "No text provided for speech synthesis")
        voice_id = params.get("voice_id") or self._default_voice_id
        if not voice_id:
            raise ProviderError(self.provider, "No voice_id configured for speech synthesis")
        if not self._api_key:
            raise ProviderError(self.provider, "ELEVENLABS_API_KEY is not configured")

        model = params.get("model") or self._model
        output_format = params.get("output_format") or DEFAULT_OUTPUT_FORMAT
        payload: dict[str, Any] = {"text": text, "model_id": model}
        if params.get("language"):
            payload["language_code"] = params["language"]

        started = now_ms()
        audio = await _post_for_audio(
            self.provider,
            f"{ELEVENLABS_BASE_URL}/text-to-speech/{voice_id}",
            api_key=self._api_key,
            payload=payload,
            output_format=output_format,
            timeout_seconds=timeout_seconds,
        )
        return ProviderResult(
            output={
                "audio": audio,
                "mime_type": _MIME_BY_FORMAT.get(output_format, "audio/mpeg"),
                "voice_id": voice_id,
                "chars": len(text),
            },
            usage={"chars": len(text)},
            latency_ms=now_ms() - started,
            model=model,
        )


class ElevenLabsSFXAdapter:
    """Sound-effect generation. params: text, duration_seconds (optional)."""

    provider = "elevenlabs"

    def __init__(self, *, api_key: str | None):
        self._api_key = api_key

    async def invoke(self, params: dict[str, Any], *, timeout_seconds: float) -> ProviderResult:
        text = str(params.get("text") or "")
        if not text.strip():
            raise ProviderError(self.provider, "No prompt provided for sound effect")
        if not self._api_key:
            raise ProviderError(self.provider, "ELEVENLABS_API_KEY is not configured")

        payload: dict[str, Any] = {"text": text}
        duration = params.get("duration_seconds")
        if duration:
            payload["duration_seconds"] = duration

        started = now_ms()
        audio = await _post_for_audio(
            self.provider,
            f"{ELEVENLABS_BASE_URL}/sound-generation",
            api_key=self._api_key,
            payload=payload,
            output_format=DEFAULT_OUTPUT_FORMAT,
            timeout_seconds=timeout_seconds,
        )
        return ProviderResult(
            output={"audio": audio, "mime_type": "audio/mpeg", "chars": len(text)},
            usage={"chars": len(text)},
            latency_ms=now_ms() - started,
            model="elevenlabs-sfx",
        )
