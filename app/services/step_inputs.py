# app/services/step_inputs.py - Per-step-type input resolution and prompt interpolation

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Callable

from app.models.recipe import RecipeStep, StepConfig, StepType
from app.services.step_conditions import lookup_path
from app.services.step_context import StepContext
from app.utils.exceptions import InputResolutionError

_PLACEHOLDER_RE = re.compile(r"\{\{\s*(original_input|input|step\.(\d+)\.(text|json))\s*\}\}")

SignUrl = Callable[[str], str]


@dataclass
class ResolvedInput:
    params: dict[str, Any]
    preview: str


def _check_upstream(step_index: int, current_index: int, context: StepContext) -> None:
    if step_index >= current_index:
        raise InputResolutionError(
            f"Step {current_index} references step {step_index}, which has not run yet"
        )
    if step_index not in context.entries:
        raise InputResolutionError(f"Output of step {step_index} is unavailable")


def upstream_text(context: StepContext, step_index: int, current_index: int) -> str:
    """Text output of an upstream step, falling back past skipped steps.

    A skipped step resolves to the nearest lower-index done step; if there is
    none, to the original input.
    """
    _check_upstream(step_index, current_index, context)
    entry = context.nearest_done(step_index)
    return entry.text if entry is not None else context.original_input


def upstream_json(context: StepContext, step_index: int, current_index: int) -> dict[str, Any] | None:
    _check_upstream(step_index, current_index, context)
    entry = context.nearest_done(step_index)
    return entry.json if entry is not None else None


def interpolate_prompt(template: str, context: StepContext, current_index: int) -> str:
    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name == "original_input":
            return context.original_input
        if name == "input":
            return context.previous_output
        step_index = int(match.group(2))
        if match.group(3) == "text":
            return upstream_text(context, step_index, current_index)
        loaded = upstream_json(context, step_index, current_index)
        return json.dumps(loaded, ensure_ascii=False) if loaded else ""

    return _PLACEHOLDER_RE.sub(_replace, template)


def resolve_model_id(config: StepConfig, context: StepContext, current_index: int) -> str | None:
    if config.model_strategy == "auto" and config.model_strategy_source and config.model_strategy_map:
        source = config.model_strategy_source
        if source.step_index < current_index and source.step_index in context.entries:
            entry = context.entries[source.step_index]
            key = lookup_path(entry.json, source.field) if entry.is_done else None
            resolved = config.model_strategy_map.get(str(key or ""))
            if resolved:
                return resolved
    return config.model_id


def _prompt_for(step: RecipeStep, context: StepContext) -> str:
    config = step.config
    if config.user_prompt_template:
        return interpolate_prompt(config.user_prompt_template, context, step.step_index)
    if config.source_step_index is not None:
        return upstream_text(context, config.source_step_index, step.step_index)
    return context.previous_output


def _require_prompt(step: RecipeStep, prompt: str) -> str:
    if not prompt.strip():
        raise InputResolutionError(f"{step.type.value} step '{step.name}' has no input content")
    return prompt


def _media_url(input_data: dict[str, Any], url_key: str, storage_key: str, sign_url: SignUrl | None) -> str | None:
    url = input_data.get(url_key)
    if isinstance(url, str) and url.strip():
        return url
    key = input_data.get(storage_key)
    if isinstance(key, str) and key.strip():
        if sign_url is None:
            raise InputResolutionError(f"Cannot resolve '{storage_key}' without artifact storage")
        try:
            return sign_url(key)
        except Exception as exc:  # noqa: BLE001
            raise InputResolutionError(f"Could not resolve stored input '{key}': {exc}") from exc
    return None


def _resolve_stt(step: RecipeStep, context: StepContext, sign_url: SignUrl | None) -> ResolvedInput:
    input_data = context.input_data
    transcript = input_data.get("transcript_text")
    if isinstance(transcript, str):
        return ResolvedInput(params={"transcript_text": transcript}, preview=transcript)

    audio_url = _media_url(input_data, "audio_url", "audio_storage_key", sign_url)
    if audio_url is None:
        text = input_data.get("text")
        if isinstance(text, str) and text.strip():
            return ResolvedInput(params={"transcript_text": text}, preview=text)
        raise InputResolutionError(
            "No audio source provided for transcription. Provide audio_url, audio_storage_key or transcript_text."
        )
    language = input_data.get("language") or step.config.language
    return ResolvedInput(
        params={"audio_url": audio_url, "language": language},
        preview=f"[audio] {input_data.get('audio_storage_key') or input_data.get('audio_url')}",
    )


def _resolve_llm(step: RecipeStep, context: StepContext, llm_default_model: str) -> ResolvedInput:
    config = step.config
    user_content = _require_prompt(step, _prompt_for(step, context))
    params: dict[str, Any] = {
        "model": resolve_model_id(config, context, step.step_index) or llm_default_model,
        "user_content": user_content,
        "web_search": config.web_search,
    }
    if config.system_prompt:
        params["system_prompt"] = config.system_prompt
    return ResolvedInput(params=params, preview=user_content)


def _resolve_video(step: RecipeStep, context: StepContext, sign_url: SignUrl | None) -> ResolvedInput:
    config = step.config
    prompt = _require_prompt(step, _prompt_for(step, context))
    operation = config.video_operation or "text2video"
    params: dict[str, Any] = {
        "prompt": prompt,
        "operation": operation,
        "duration": max(1, min(15, config.video_duration or 6)),
        "resolution": config.video_resolution or "720p",
        "aspect_ratio": config.video_aspect_ratio,
    }
    if operation == "img2video":
        image_url = _media_url(context.input_data, "image_url", "image_storage_key", sign_url)
        if image_url is None:
            raise InputResolutionError("img2video step requires an input image")
        params["image_url"] = image_url
    elif operation == "video2video":
        video_url = context.input_data.get("video_url")
        if not isinstance(video_url, str) or not video_url.strip():
            raise InputResolutionError("video2video step requires an input video_url")
        params["video_url"] = video_url
    return ResolvedInput(params=params, preview=prompt)


def find_drupal_article(context: StepContext, current_index: int) -> dict[str, Any] | None:
    """Latest upstream drupal_article payload, from a bare JSON output or a multi-format render."""
    article = None
    for index in sorted(context.entries):
        entry = context.entries[index]
        if index >= current_index or not entry.is_done:
            continue
        rendered = entry.output.get("formats")
        candidates = [entry.json, rendered.get("drupal_json") if isinstance(rendered, dict) else None]
        for candidate in candidates:
            if isinstance(candidate, dict) and candidate.get("format") == "drupal_article" and candidate.get("title"):
                article = candidate
    return article


def resolve_step_input(
    step: RecipeStep,
    context: StepContext,
    *,
    llm_default_model: str,
    sign_url: SignUrl | None = None,
) -> ResolvedInput:
    """Build the adapter params for one step from the execution context."""
    config = step.config

    if step.type == StepType.STT:
        return _resolve_stt(step, context, sign_url)

    if step.type == StepType.LLM:
        return _resolve_llm(step, context, llm_default_model)

    if step.type == StepType.TTS:
        text = _require_prompt(step, _prompt_for(step, context))
        params = {
            "text": text,
            "voice_id": config.voice_id,
            "model": config.model_id,
            "language": config.language or context.input_data.get("language"),
        }
        return ResolvedInput(params=params, preview=text)

    if step.type == StepType.SFX:
        text = _require_prompt(step, _prompt_for(step, context))
        extra = config.model_extra or {}
        return ResolvedInput(
            params={"text": text, "duration_seconds": extra.get("duration_seconds")},
            preview=text,
        )

    if step.type == StepType.IMAGE:
        prompt = _require_prompt(step, _prompt_for(step, context))
        params = {
            "prompt": prompt,
            "model": config.image_model or config.model_id,
            "image_size": config.image_size,
        }
        return ResolvedInput(params=params, preview=prompt)

    if step.type == StepType.VIDEO:
        return _resolve_video(step, context, sign_url)

    if step.type == StepType.DRUPAL_PUBLISH:
        article = find_drupal_article(context, step.step_index)
        params = {"article": article, "mode": config.mode or "draft", "content_type": config.content_type}
        return ResolvedInput(params=params, preview=article["title"] if article else "[no drupal_article payload]")

    # output_format renders from the whole context and never fails on input
    snapshot = context.snapshot()
    return ResolvedInput(
        params={"formats": config.formats or ["markdown"], "context": snapshot},
        preview=snapshot["previous_output"],
    )
