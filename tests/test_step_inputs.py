from __future__ import annotations

import pytest

from app.models.execution import StepResultStatus
from app.models.recipe import RecipeStep
from app.services.step_context import StepContext
from app.services.step_inputs import interpolate_prompt, resolve_model_id, resolve_step_input
from app.utils.exceptions import InputResolutionError


def _step(step_index: int, step_type: str, **config) -> RecipeStep:
    return RecipeStep(step_index=step_index, name=f"step-{step_index}", type=step_type, config=config)


def _context(input_data: dict | None = None) -> StepContext:
    context = StepContext(input_data=input_data if input_data is not None else {"text": "Izvorno"})
    context.record(0, StepResultStatus.DONE, {"text": "Prepis seje"})
    context.record(1, StepResultStatus.SKIPPED, None)
    context.record(2, StepResultStatus.DONE, {"text": '{"category": "politika", "complexity": "high"}'})
    return context


def _resolve(step: RecipeStep, context: StepContext, **kwargs):
    return resolve_step_input(step, context, llm_default_model="gpt-5-mini", **kwargs)


def test_interpolate_prompt_placeholders():
    template = "A={{original_input}} B={{ input }} C={{step.0.text}} D={{step.2.json}}"

    rendered = interpolate_prompt(template, _context(), current_index=3)

    assert rendered == (
        'A=Izvorno B={"category": "politika", "complexity": "high"} C=Prepis seje '
        'D={"category": "politika", "complexity": "high"}'
    )


def test_skipped_reference_falls_back_to_nearest_done_step():
    assert interpolate_prompt("{{step.1.text}}", _context(), current_index=3) == "Prepis seje"


def test_skipped_reference_without_upstream_falls_back_to_original_input():
    context = StepContext(input_data={"transcript_text": "Posnetek"})
    context.record(0, StepResultStatus.SKIPPED, None)

    assert interpolate_prompt("{{step.0.text}}", context, current_index=1) == "Posnetek"
    assert interpolate_prompt("[{{step.0.json}}]", context, current_index=1) == "[]"


def test_forward_reference_is_an_input_resolution_error():
    with pytest.raises(InputResolutionError, match="has not run yet"):
        interpolate_prompt("{{step.3.text}}", _context(), current_index=3)


def test_llm_uses_previous_output_by_default():
    resolved = _resolve(_step(3, "llm", system_prompt="Si urednik."), _context())

    assert resolved.params == {
        "model": "gpt-5-mini",
        "user_content": '{"category": "politika", "complexity": "high"}',
        "web_search": False,
        "system_prompt": "Si urednik.",
    }


def test_llm_source_step_index():
    resolved = _resolve(_step(3, "llm", source_step_index=0, model_id="claude-sonnet-4-5-20250929"), _context())

    assert resolved.params["user_content"] == "Prepis seje"
    assert resolved.params["model"] == "claude-sonnet-4-5-20250929"
    assert "system_prompt" not in resolved.params


def test_llm_empty_prompt_is_rejected():
    context = StepContext(input_data={})

    with pytest.raises(InputResolutionError, match="no input content"):
        _resolve(_step(0, "llm"), context)


def test_model_strategy_auto_picks_model_from_classifier():
    step = _step(
        3,
        "llm",
        model_id="gpt-5-mini",
        model_strategy="auto",
        model_strategy_source={"step_index": 2, "field": "complexity"},
        model_strategy_map={"high": "gpt-5.2", "low": "gpt-5-mini"},
    )

    assert resolve_model_id(step.config, _context(), 3) == "gpt-5.2"
    assert _resolve(step, _context()).params["model"] == "gpt-5.2"


def test_model_strategy_falls_back_to_model_id_when_unmapped():
    step = _step(
        3,
        "llm",
        model_id="gpt-5-mini",
        model_strategy="auto",
        model_strategy_source={"step_index": 1, "field": "complexity"},
        model_strategy_map={"high": "gpt-5.2"},
    )

    assert resolve_model_id(step.config, _context(), 3) == "gpt-5-mini"


def test_stt_transcript_passthrough():
    context = StepContext(input_data={"transcript_text": "Že prepisano"})

    resolved = _resolve(_step(0, "stt"), context)

    assert resolved.params == {"transcript_text": "Že prepisano"}


def test_stt_signs_storage_key_and_uses_recipe_language():
    context = StepContext(input_data={"audio_storage_key": "uploads/a.mp3"})

    resolved = _resolve(_step(0, "stt", language="sl"), context, sign_url=lambda key: f"https://signed/{key}")

    assert resolved.params == {"audio_url": "https://signed/uploads/a.mp3", "language": "sl"}
    assert resolved.preview == "[audio] uploads/a.mp3"


def test_stt_signing_failure_is_an_input_resolution_error():
    def _sign(_key: str) -> str:
        raise ValueError("bucket missing")

    context = StepContext(input_data={"audio_storage_key": "uploads/a.mp3"})

    with pytest.raises(InputResolutionError, match="bucket missing"):
        _resolve(_step(0, "stt"), context, sign_url=_sign)


def test_stt_without_any_source_is_rejected():
    with pytest.raises(InputResolutionError, match="No audio source"):
        _resolve(_step(0, "stt"), StepContext(input_data={}))


def test_tts_reads_source_step_and_voice():
    resolved = _resolve(_step(3, "tts", source_step_index=0, voice_id="voice-1", language="sl"), _context())

    assert resolved.params == {"text": "Prepis seje", "voice_id": "voice-1", "model": None, "language": "sl"}


def test_sfx_duration_from_extra_config():
    resolved = _resolve(_step(3, "sfx", user_prompt_template="Aplavz po {{step.0.text}}", duration_seconds=4), _context())

    assert resolved.params == {"text": "Aplavz po Prepis seje", "duration_seconds": 4}


def test_image_prompt_and_model():
    resolved = _resolve(_step(3, "image", image_model="fal-ai/flux/dev", image_size="16:9", source_step_index=0), _context())

    assert resolved.params == {"prompt": "Prepis seje", "model": "fal-ai/flux/dev", "image_size": "16:9"}


def test_video_defaults_and_duration_clamp():
    resolved = _resolve(_step(3, "video", video_duration=40, source_step_index=0), _context())

    assert resolved.params["operation"] == "text2video"
    assert resolved.params["duration"] == 15
    assert resolved.params["resolution"] == "720p"


def test_img2video_requires_image():
    with pytest.raises(InputResolutionError, match="requires an input image"):
        _resolve(_step(3, "video", video_operation="img2video"), _context())

    resolved = _resolve(
        _step(3, "video", video_operation="img2video"),
        _context({"text": "Izvorno", "image_url": "https://img/1.png"}),
    )
    assert resolved.params["image_url"] == "https://img/1.png"


def test_video2video_requires_video_url():
    with pytest.raises(InputResolutionError, match="video_url"):
        _resolve(_step(3, "video", video_operation="video2video"), _context())


def test_output_format_gets_context_snapshot():
    resolved = _resolve(_step(3, "output_format", formats=["markdown", "html"]), _context())

    assert resolved.params["formats"] == ["markdown", "html"]
    snapshot = resolved.params["context"]
    assert snapshot["original_input"] == "Izvorno"
    assert [entry["step_index"] for entry in snapshot["steps"]] == [0, 2]
    assert snapshot["steps"][1]["json"] == {"category": "politika", "complexity": "high"}
