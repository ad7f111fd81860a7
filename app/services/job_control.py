# app/services/job_control.py - Cancel, retry and stale-run recovery for recipe executions

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from app.models.execution import (
    CANCELLABLE_EXECUTION_STATUSES,
    RETRYABLE_EXECUTION_STATUSES,
    ExecutionStatus,
    RecipeExecution,
)
from app.services.recipe_engine import RecipeEngine
from app.utils.exceptions import (
    ExecutionNotFoundError,
    InvalidExecutionStateError,
    RecipeInactiveError,
    RecipeNotFoundError,
)

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _require_execution(engine: RecipeEngine, execution_id: str) -> RecipeExecution:
    execution = engine.store.get_execution(execution_id)
    if execution is None:
        raise ExecutionNotFoundError(execution_id)
    return execution


def cancel_execution(engine: RecipeEngine, execution_id: str) -> RecipeExecution:
    """Cancel a pending or running execution.

    An in-flight step is not interrupted. The engine checks status before each
    step and its guarded writes leave the cancelled row alone.
    """
    execution = _require_execution(engine, execution_id)
    if execution.status not in CANCELLABLE_EXECUTION_STATUSES:
        raise InvalidExecutionStateError(
            f"Cannot cancel execution in status '{execution.status.value}'",
            status=execution.status.value,
        )

    cancelled = engine.store.update_execution(
        execution_id,
        {"status": ExecutionStatus.CANCELLED.value, "finished_at": _utc_now().isoformat()},
        expected_statuses=CANCELLABLE_EXECUTION_STATUSES,
    )
    if cancelled is None:
        current = _require_execution(engine, execution_id)
        raise InvalidExecutionStateError(
            f"Cannot cancel execution in status '{current.status.value}'",
            status=current.status.value,
        )
    logger.info("execution cancelled", extra={"execution_id": execution_id})
    return cancelled


async def retry_execution(engine: RecipeEngine, execution_id: str) -> RecipeExecution:
    """Create and schedule a new attempt. The original execution is left untouched."""
    execution = _require_execution(engine, execution_id)
    if execution.status not in RETRYABLE_EXECUTION_STATUSES:
        raise InvalidExecutionStateError(
            f"Cannot retry execution in status '{execution.status.value}'",
            status=execution.status.value,
        )

    try:
        recipe = engine.load_executable_recipe(execution.recipe_id)
    except RecipeNotFoundError as exc:
        raise RecipeInactiveError(execution.recipe_id) from exc

    retried = await engine.enqueue(
        recipe,
        user_id=execution.user_id,
        input_data=execution.input_data or {},
        attempt=execution.attempt + 1,
        retry_of_execution_id=execution.id,
    )
    logger.info(
        "execution retried",
        extra={"execution_id": execution.id, "new_execution_id": retried.id, "attempt": retried.attempt},
    )
    return retried


async def recover_stale_executions(engine: RecipeEngine, *, older_than_seconds: int) -> list[dict[str, Any]]:
    """Return stale running executions to pending and reschedule them.

    The engine resumes each one at its ``current_step``.
    """
    cutoff = (_utc_now() - timedelta(seconds=older_than_seconds)).isoformat()
    recovered: list[dict[str, Any]] = []
    for execution in engine.store.list_stale_running(updated_before=cutoff):
        reset = engine.store.update_execution(
            execution.id,
            {"status": ExecutionStatus.PENDING.value, "schedule_count": execution.schedule_count + 1},
            expected_statuses=[ExecutionStatus.RUNNING],
        )
        if reset is None:
            continue
        try:
            await engine.scheduler.schedule(execution.id, schedule_count=reset.schedule_count)
            recovered.append({"execution_id": execution.id, "current_step": reset.current_step, "scheduled": True})
        except Exception as exc:  # noqa: BLE001
            logger.exception("failed to reschedule stale execution", extra={"execution_id": execution.id})
            recovered.append({"execution_id": execution.id, "current_step": reset.current_step, "scheduled": False, "error": str(exc)})
    logger.info("stale execution recovery finished", extra={"recovered": len(recovered), "cutoff": cutoff})
    return recovered
