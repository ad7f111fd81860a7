# app/providers/registry.py - Builds the step-type to provider adapter table from settings

from __future__ import annotations

from typing import Any

from app.config import Settings
from app.models.recipe import StepType
from app.providers.common import ProviderAdapter, ProviderError, ProviderResult, now_ms
from app.providers.drupal import DrupalPublishAdapter
from app.providers.fal import FalImageAdapter, FalVideoAdapter
from app.providers.llm import LLMAdapter
from app.providers.stt import SonioxSTTAdapter
from app.providers.tts import ElevenLabsSFXAdapter, ElevenLabsTTSAdapter
from app.services.output_format import render_output


class OutputFormatAdapter:
    """Local adapter: renders the accumulated context, no external call and no cost."""

    provider = "output_format"

    async def invoke(self, params: dict[str, Any], *, timeout_seconds: float) -> ProviderResult:
        started = now_ms()
        try:
            output = render_output(list(params.get("formats") or ["markdown"]), params.get("context") or {})
        except ValueError as exc:
            raise ProviderError(self.provider, str(exc)) from exc
        return ProviderResult(output=output, usage={}, latency_ms=now_ms() - started, model="output_format")


def build_adapter_table(settings: Settings) -> dict[StepType, ProviderAdapter]:
    table: dict[StepType, ProviderAdapter] = {
        StepType.STT: SonioxSTTAdapter(
            api_key=settings.soniox_api_key,
            model=settings.stt_model,
            poll_interval_ms=settings.stt_poll_interval_ms,
        ),
        StepType.LLM: LLMAdapter(
            openai_api_key=settings.openai_api_key,
            anthropic_api_key=settings.anthropic_api_key,
            gemini_api_key=settings.gemini_api_key,
        ),
        StepType.TTS: ElevenLabsTTSAdapter(
            api_key=settings.elevenlabs_api_key,
            model=settings.tts_model,
            default_voice_id=settings.tts_default_voice_id,
        ),
        StepType.SFX: ElevenLabsSFXAdapter(api_key=settings.elevenlabs_api_key),
        StepType.IMAGE: FalImageAdapter(
            api_key=settings.fal_api_key,
            default_model=settings.image_default_model,
            poll_interval_ms=settings.fal_poll_interval_ms,
        ),
        StepType.VIDEO: FalVideoAdapter(
            api_key=settings.fal_api_key,
            poll_interval_ms=settings.fal_poll_interval_ms,
        ),
        StepType.OUTPUT_FORMAT: OutputFormatAdapter(),
        StepType.DRUPAL_PUBLISH: DrupalPublishAdapter(
            base_url=settings.drupal_base_url,
            adapter_type=settings.drupal_adapter_type,
            auth_type=settings.drupal_auth_type,
            username=settings.drupal_username,
            password=settings.drupal_password,
            token=settings.drupal_token,
            content_type=settings.drupal_content_type,
            body_format=settings.drupal_body_format,
        ),
    }
    missing = set(StepType) - set(table)
    if missing:
        raise RuntimeError(f"No provider adapter registered for step types: {sorted(t.value for t in missing)}")
    return table


def default_timeouts(settings: Settings) -> dict[StepType, float]:
    return {
        StepType.STT: settings.stt_timeout_seconds,
        StepType.LLM: settings.llm_timeout_seconds,
        StepType.TTS: settings.tts_timeout_seconds,
        StepType.SFX: settings.sfx_timeout_seconds,
        StepType.IMAGE: settings.image_timeout_seconds,
        StepType.VIDEO: settings.video_timeout_seconds,
        StepType.OUTPUT_FORMAT: 30.0,
        StepType.DRUPAL_PUBLISH: settings.drupal_timeout_seconds,
    }
