# app/models/execution.py - Recipe execution and step result schemas

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from app.models.recipe import RecipeStep


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_EXECUTION_STATUSES = frozenset(
    {ExecutionStatus.DONE, ExecutionStatus.ERROR, ExecutionStatus.CANCELLED}
)
CANCELLABLE_EXECUTION_STATUSES = frozenset({ExecutionStatus.PENDING, ExecutionStatus.RUNNING})
RETRYABLE_EXECUTION_STATUSES = frozenset({ExecutionStatus.ERROR, ExecutionStatus.CANCELLED})


class StepResultStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"
    SKIPPED = "skipped"


TERMINAL_STEP_STATUSES = frozenset(
    {StepResultStatus.DONE, StepResultStatus.ERROR, StepResultStatus.SKIPPED}
)


class StepResult(BaseModel):
    id: str | None = None
    execution_id: str
    step_index: int
    status: StepResultStatus = StepResultStatus.PENDING
    input_preview: str | None = None
    output_preview: str | None = None
    output_full: dict[str, Any] | None = None
    input_hash: str | None = None
    output_hash: str | None = None
    provider_response_id: str | None = None
    model: str | None = None
    usage_units: dict[str, float] | None = None
    cost_cents: int = 0
    latency_ms: int | None = None
    error_kind: str | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def output_text(self) -> str:
        if not self.output_full:
            return ""
        text = self.output_full.get("text")
        return text if isinstance(text, str) else ""


class RecipeExecution(BaseModel):
    id: str
    recipe_id: str
    user_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    progress: int = 0
    current_step: int = 0
    total_steps: int
    input_data: dict[str, Any] | None = None
    recipe_version: int | None = None
    steps_snapshot: list[RecipeStep] = Field(default_factory=list)
    attempt: int = 1
    schedule_count: int = 0
    retry_of_execution_id: str | None = None
    idempotency_key: str | None = None
    total_cost_cents: int = 0
    cost_breakdown: dict[str, Any] | None = None
    confidence_score: int | None = None
    warning_flag: str | None = None
    preview_hash: str | None = None
    preview_url: str | None = None
    error_message: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EXECUTION_STATUSES


class ExecutionStatusView(BaseModel):
    execution: RecipeExecution
    step_results: list[StepResult] = Field(default_factory=list)
