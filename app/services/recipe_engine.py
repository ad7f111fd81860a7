# app/services/recipe_engine.py - Execution lifecycle: create, lease, sequence steps, finalize

from __future__ import annotations

import copy
import hashlib
import json
import logging
import math
import uuid
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any

from app.config import Settings, get_settings
from app.models.execution import (
    ExecutionStatus,
    ExecutionStatusView,
    RecipeExecution,
    StepResult,
    StepResultStatus,
)
from app.models.recipe import Recipe, RecipeStep, StepType
from app.providers.registry import build_adapter_table, default_timeouts
from app.services import artifacts
from app.services.execution_store import ExecutionStore
from app.services.scoring import ConfidenceScorer, FactCheckScorer
from app.services.step_context import StepContext
from app.services.step_executor import StepExecutor
from app.services.trigger import InProcessScheduler, TaskScheduler, TriggerDevScheduler
from app.utils.exceptions import (
    ExecutionNotFoundError,
    RecipeInactiveError,
    RecipeNotExecutableError,
    RecipeNotFoundError,
)

logger = logging.getLogger(__name__)

_RUNNING = [ExecutionStatus.RUNNING]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def compute_progress(completed_steps: int, total_steps: int) -> int:
    if total_steps <= 0:
        return 100
    return int(math.floor(100 * completed_steps / total_steps + 0.5))


def derive_idempotency_key(user_id: str, recipe_id: str, client_key: str, input_data: dict[str, Any]) -> str:
    canonical_input = json.dumps(input_data, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
    raw = f"{user_id}:{recipe_id}:{client_key}:{canonical_input}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def new_preview_hash() -> str:
    return uuid.uuid4().hex[:12]


def cost_breakdown(results: list[StepResult]) -> tuple[int, dict[str, Any]]:
    entries = [
        {"step_index": result.step_index, "model": result.model or "unknown", "cost_cents": result.cost_cents}
        for result in results
        if result.status == StepResultStatus.DONE
    ]
    return sum(entry["cost_cents"] for entry in entries), {"steps": entries}


class RecipeEngine:
    """Owns the lifecycle of a RecipeExecution.

    ``start_execution`` is safe under at-least-once delivery: the pending ->
    running transition is a compare-and-set, so only one caller runs the steps.
    Every later status write is guarded on ``running`` so a cancel issued
    mid-step is never overwritten.
    """

    def __init__(
        self,
        store: ExecutionStore,
        executor: StepExecutor,
        scheduler: TaskScheduler,
        *,
        scorer: ConfidenceScorer | None = None,
    ):
        self.store = store
        self.executor = executor
        self.scheduler = scheduler
        self.scorer = scorer

    # Creation

    def load_executable_recipe(self, recipe_id: str) -> Recipe:
        recipe = self.store.find_recipe_with_steps(recipe_id)
        if recipe is None:
            raise RecipeNotFoundError(recipe_id)
        if not recipe.is_active:
            raise RecipeInactiveError(recipe_id)
        if not recipe.is_executable:
            raise RecipeNotExecutableError("Recipe has no steps and cannot be executed")
        return recipe

    async def create_execution(
        self,
        *,
        recipe_id: str,
        user_id: str,
        input_data: dict[str, Any],
        idempotency_key: str | None = None,
    ) -> RecipeExecution:
        derived_key = None
        if idempotency_key:
            derived_key = derive_idempotency_key(user_id, recipe_id, idempotency_key, input_data)
            existing = self.store.find_execution_by_idempotency_key(user_id, derived_key)
            if existing is not None:
                logger.info(
                    "idempotent execute returned existing execution",
                    extra={"execution_id": existing.id, "recipe_id": recipe_id},
                )
                return existing

        recipe = self.load_executable_recipe(recipe_id)
        return await self.enqueue(recipe, user_id=user_id, input_data=input_data, idempotency_key=derived_key)

    async def enqueue(
        self,
        recipe: Recipe,
        *,
        user_id: str,
        input_data: dict[str, Any],
        attempt: int = 1,
        retry_of_execution_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> RecipeExecution:
        """Insert a pending execution with a value copy of the recipe steps and schedule it."""
        row = {
            "recipe_id": recipe.id,
            "user_id": user_id,
            "status": ExecutionStatus.PENDING.value,
            "progress": 0,
            "current_step": 0,
            "total_steps": len(recipe.steps),
            "input_data": copy.deepcopy(input_data),
            "recipe_version": recipe.current_version,
            "steps_snapshot": recipe.steps_snapshot(),
            "attempt": attempt,
            "retry_of_execution_id": retry_of_execution_id,
            "idempotency_key": idempotency_key,
        }
        try:
            execution = self.store.create_execution(row)
        except Exception:
            if idempotency_key:
                existing = self.store.find_execution_by_idempotency_key(user_id, idempotency_key)
                if existing is not None:
                    return existing
            raise

        logger.info(
            "execution created",
            extra={"execution_id": execution.id, "recipe_id": recipe.id, "attempt": attempt},
        )
        try:
            await self.scheduler.schedule(execution.id)
        except Exception as exc:  # noqa: BLE001
            logger.exception("failed to schedule execution", extra={"execution_id": execution.id})
            self.store.update_execution(
                execution.id,
                {
                    "status": ExecutionStatus.ERROR.value,
                    "error_message": f"Failed to schedule execution: {exc}",
                    "finished_at": _utc_now_iso(),
                },
                expected_statuses=[ExecutionStatus.PENDING],
            )
        return self.store.get_execution(execution.id) or execution

    # Running

    async def start_execution(self, execution_id: str) -> RecipeExecution | None:
        execution = self.store.get_execution(execution_id)
        if execution is None:
            logger.warning("start requested for unknown execution", extra={"execution_id": execution_id})
            return None
        if execution.status != ExecutionStatus.PENDING:
            logger.info(
                "execution not pending, skipping start",
                extra={"execution_id": execution_id, "status": execution.status.value},
            )
            return None

        started_at = execution.started_at.isoformat() if execution.started_at else None
        leased = self.store.acquire_lease(execution_id, started_at=started_at)
        if leased is None:
            logger.info("execution lease held elsewhere", extra={"execution_id": execution_id})
            return None

        try:
            return await self._run_steps(leased)
        except Exception as exc:  # noqa: BLE001
            logger.exception("execution failed unexpectedly", extra={"execution_id": execution_id})
            self.store.update_execution(
                execution_id,
                {
                    "status": ExecutionStatus.ERROR.value,
                    "error_message": f"Execution failed unexpectedly: {exc}",
                    "finished_at": _utc_now_iso(),
                },
                expected_statuses=_RUNNING,
            )
            return self.store.get_execution(execution_id)

    async def _run_steps(self, execution: RecipeExecution) -> RecipeExecution | None:
        steps = sorted(execution.steps_snapshot, key=lambda step: step.step_index)
        total = execution.total_steps
        context = StepContext.from_step_results(execution.input_data, self.store.list_step_results(execution.id))
        if execution.current_step > 0:
            logger.info(
                "resuming execution",
                extra={"execution_id": execution.id, "current_step": execution.current_step},
            )

        for position in range(execution.current_step, len(steps)):
            step = steps[position]
            current = self.store.get_execution(execution.id)
            if current is None or current.status != ExecutionStatus.RUNNING:
                logger.info(
                    "execution stopped before step",
                    extra={
                        "execution_id": execution.id,
                        "step_index": step.step_index,
                        "status": current.status.value if current else None,
                    },
                )
                if current is not None and current.status == ExecutionStatus.CANCELLED:
                    self._write_cost(execution.id, [ExecutionStatus.CANCELLED])
                return self.store.get_execution(execution.id)

            result = await self.executor.run_step(execution, step, context)

            if result.status == StepResultStatus.ERROR:
                total_cost, breakdown = cost_breakdown(self.store.list_step_results(execution.id))
                self.store.update_execution(
                    execution.id,
                    {
                        "status": ExecutionStatus.ERROR.value,
                        "error_message": f"Step {position + 1} ({step.name}) failed: {result.error_message}",
                        "finished_at": _utc_now_iso(),
                        "total_cost_cents": total_cost,
                        "cost_breakdown": breakdown,
                    },
                    expected_statuses=_RUNNING,
                )
                logger.warning(
                    "execution halted on step failure",
                    extra={"execution_id": execution.id, "step_index": step.step_index, "error_kind": result.error_kind},
                )
                return self.store.get_execution(execution.id)

            context.record(step.step_index, result.status, result.output_full)
            advanced = self.store.update_execution(
                execution.id,
                {"current_step": position + 1, "progress": compute_progress(position + 1, total)},
                expected_statuses=_RUNNING,
            )
            if advanced is None:
                logger.info(
                    "execution left running state during step",
                    extra={"execution_id": execution.id, "step_index": step.step_index},
                )
                current = self.store.get_execution(execution.id)
                if current is not None and current.status == ExecutionStatus.CANCELLED:
                    self._write_cost(execution.id, [ExecutionStatus.CANCELLED])
                return self.store.get_execution(execution.id)

        return self._finalize(execution, steps, context)

    def _write_cost(self, execution_id: str, expected_statuses: list[ExecutionStatus]) -> None:
        total_cost, breakdown = cost_breakdown(self.store.list_step_results(execution_id))
        self.store.update_execution(
            execution_id,
            {"total_cost_cents": total_cost, "cost_breakdown": breakdown},
            expected_statuses=expected_statuses,
        )

    def _finalize(
        self, execution: RecipeExecution, steps: list[RecipeStep], context: StepContext
    ) -> RecipeExecution | None:
        total_cost, breakdown = cost_breakdown(self.store.list_step_results(execution.id))
        partial: dict[str, Any] = {
            "status": ExecutionStatus.DONE.value,
            "progress": 100,
            "current_step": execution.total_steps,
            "finished_at": _utc_now_iso(),
            "total_cost_cents": total_cost,
            "cost_breakdown": breakdown,
        }

        if self.scorer is not None:
            try:
                signal = self.scorer.score(context)
            except Exception as exc:  # noqa: BLE001
                logger.warning("confidence scorer failed", extra={"execution_id": execution.id, "error": str(exc)})
                signal = None
            if signal is not None:
                partial["confidence_score"] = signal.confidence_score
                partial["warning_flag"] = signal.warning_flag

        has_output_format = any(step.type == StepType.OUTPUT_FORMAT for step in steps)
        has_structured_output = any(isinstance(entry.json, dict) for entry in context.entries.values())
        if has_output_format and has_structured_output:
            preview_hash = new_preview_hash()
            partial["preview_hash"] = preview_hash
            partial["preview_url"] = f"/preview/{preview_hash}"

        finished = self.store.update_execution(execution.id, partial, expected_statuses=_RUNNING)
        if finished is None:
            logger.info("execution left running state before finalization", extra={"execution_id": execution.id})
            return self.store.get_execution(execution.id)
        logger.info(
            "execution done",
            extra={"execution_id": execution.id, "total_cost_cents": total_cost},
        )
        return finished

    # Reading

    def get_execution_status(self, execution_id: str) -> ExecutionStatusView:
        execution = self.store.get_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return ExecutionStatusView(execution=execution, step_results=self.store.list_step_results(execution_id))


def build_scheduler(settings: Settings) -> TaskScheduler:
    if settings.scheduler_backend == "inline":
        return InProcessScheduler(lambda: get_recipe_engine().start_execution)
    return TriggerDevScheduler(settings)


def build_recipe_engine(
    settings: Settings,
    *,
    store: ExecutionStore | None = None,
    scheduler: TaskScheduler | None = None,
) -> RecipeEngine:
    store = store or ExecutionStore()
    executor = StepExecutor(
        store,
        build_adapter_table(settings),
        timeouts=default_timeouts(settings),
        llm_default_model=settings.llm_default_model,
        preview_max_chars=settings.preview_max_chars,
        sign_url=artifacts.signed_url,
        store_artifact=artifacts.upload_artifact,
    )
    return RecipeEngine(store, executor, scheduler or build_scheduler(settings), scorer=FactCheckScorer())


@lru_cache
def get_recipe_engine() -> RecipeEngine:
    return build_recipe_engine(get_settings())
