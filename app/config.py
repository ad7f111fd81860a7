# app/config.py - Pydantic settings (env vars)

from functools import lru_cache
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Public API URL (used by Trigger callbacks / local tooling)
    api_url: str | None = None
    log_level: str = "INFO"

    # Supabase (execution store + artifact storage)
    supabase_url: str
    supabase_service_key: str
    store_timeout_seconds: float = 10.0
    artifact_bucket: str = "recipe-artifacts"
    artifact_signed_url_ttl_seconds: int = 600

    # Background scheduling
    scheduler_backend: Literal["trigger", "inline"] = "trigger"
    trigger_secret_key: str | None = None
    trigger_api_url: str = "https://api.trigger.dev"
    trigger_task_id: str = "run-recipe-execution"

    # Auth
    jwt_secret: str
    internal_api_key: str

    # Provider keys
    openai_api_key: str | None = None
    anthropic_api_key: str | None = None
    gemini_api_key: str | None = None
    soniox_api_key: str | None = None
    elevenlabs_api_key: str | None = None
    fal_api_key: str | None = None

    # Provider runtime settings
    llm_default_model: str = "gpt-5-mini"
    llm_timeout_seconds: float = 120.0
    stt_model: str = "stt-async-v4"
    stt_timeout_seconds: float = 180.0
    stt_poll_interval_ms: int = 1500
    tts_model: str = "eleven_v3"
    tts_default_voice_id: str | None = None
    tts_timeout_seconds: float = 90.0
    sfx_timeout_seconds: float = 60.0
    image_default_model: str = "fal-ai/flux/schnell"
    image_timeout_seconds: float = 60.0
    video_timeout_seconds: float = 280.0
    fal_poll_interval_ms: int = 2000

    # Drupal publishing (drupal_publish steps complete with a skip notice when unset)
    drupal_base_url: str | None = None
    drupal_adapter_type: Literal["jsonapi", "custom_rest"] = "jsonapi"
    drupal_auth_type: Literal["basic", "bearer_token"] = "bearer_token"
    drupal_username: str | None = None
    drupal_password: str | None = None
    drupal_token: str | None = None
    drupal_content_type: str = "article"
    drupal_body_format: str = "full_html"
    drupal_timeout_seconds: float = 30.0

    # Engine
    preview_max_chars: int = 500
    stale_execution_seconds: int = 900

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
    )

    @field_validator("internal_api_key")
    @classmethod
    def _validate_internal_api_key(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("INTERNAL_API_KEY must be set and non-empty")
        return cleaned

    @field_validator("preview_max_chars")
    @classmethod
    def _validate_preview_max_chars(cls, value: int) -> int:
        if value < 1:
            raise ValueError("PREVIEW_MAX_CHARS must be positive")
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()
