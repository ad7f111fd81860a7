# app/models/recipe.py - Recipe and step definition schemas

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class RecipeStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    DRAFT = "draft"


class InputKind(str, Enum):
    TEXT = "text"
    AUDIO = "audio"
    IMAGE_TEXT = "image_text"


class StepType(str, Enum):
    STT = "stt"
    LLM = "llm"
    TTS = "tts"
    SFX = "sfx"
    IMAGE = "image"
    VIDEO = "video"
    OUTPUT_FORMAT = "output_format"
    DRUPAL_PUBLISH = "drupal_publish"


class ModelStrategySource(BaseModel):
    step_index: int
    field: str


class StepConfig(BaseModel):
    """Provider parameters, prompt templates and the skip rule of one step.

    Unknown keys are kept so presets can carry provider options the engine
    passes through untouched.
    """

    model_config = ConfigDict(extra="allow")

    description: str | None = None
    model_id: str | None = None
    system_prompt: str | None = None
    user_prompt_template: str | None = None
    language: str | None = None
    provider: str | None = None
    voice_id: str | None = None
    web_search: bool = False
    source_step_index: int | None = None
    timeout_seconds: float | None = None

    # Dynamic model selection from an upstream classifier step
    model_strategy: str | None = None
    model_strategy_source: ModelStrategySource | None = None
    model_strategy_map: dict[str, str] | None = None

    # Image / video
    image_model: str | None = None
    image_size: str | dict[str, int] | None = None
    video_operation: str | None = None
    video_duration: int | None = None
    video_resolution: str | None = None
    video_aspect_ratio: str | None = None

    # Output formatting
    formats: list[str] | None = None

    # Drupal publishing: "draft" (default) or "publish"
    mode: str | None = None
    content_type: str | None = None

    # Skip rule, evaluated before input resolution
    skip_when: dict[str, Any] | None = None


class RecipeStep(BaseModel):
    step_index: int = Field(ge=0)
    name: str
    type: StepType
    config: StepConfig = Field(default_factory=StepConfig)

    @field_validator("config", mode="before")
    @classmethod
    def _default_config(cls, value: Any) -> Any:
        return value if value is not None else {}


def validate_step_indices(steps: list[RecipeStep]) -> list[RecipeStep]:
    ordered = sorted(steps, key=lambda step: step.step_index)
    for expected, step in enumerate(ordered):
        if step.step_index != expected:
            raise ValueError(
                f"step indices must be contiguous from 0 (expected {expected}, got {step.step_index})"
            )
    return ordered


class RecipeBase(BaseModel):
    name: str
    slug: str
    description: str | None = None
    input_kind: InputKind = InputKind.TEXT
    input_modes: list[str] = Field(default_factory=lambda: ["text"])
    default_lang: str = "sl"
    steps: list[RecipeStep] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_steps(self) -> "RecipeBase":
        self.steps = validate_step_indices(self.steps)
        return self


class Recipe(RecipeBase):
    id: str
    status: RecipeStatus = RecipeStatus.DRAFT
    current_version: int = 1
    preset_key: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status == RecipeStatus.ACTIVE

    @property
    def is_executable(self) -> bool:
        return bool(self.steps)

    def steps_snapshot(self) -> list[dict[str, Any]]:
        return [step.model_dump(mode="json", exclude_none=True) for step in self.steps]


class RecipePreset(RecipeBase):
    key: str
    ui_hints: dict[str, Any] = Field(default_factory=dict)
