from __future__ import annotations

from typing import Any

import pytest

from app.models.execution import ExecutionStatus, StepResultStatus
from app.models.recipe import StepType
from app.providers.common import ProviderResult
from app.services import job_control
from app.services.execution_store import EXECUTIONS_TABLE, RECIPES_TABLE
from app.utils.exceptions import (
    ExecutionNotFoundError,
    InvalidExecutionStateError,
    RecipeInactiveError,
)

TWO_LLM_STEPS = [
    {"step_index": 0, "name": "Osnutek", "type": "llm", "config": {}},
    {"step_index": 1, "name": "Lektura", "type": "llm", "config": {}},
]


def _failing_llm(params: dict[str, Any]) -> ProviderResult:
    raise RuntimeError("provider down")


@pytest.mark.asyncio
async def test_cancel_pending_execution(store, make_recipe, make_engine, adapters):
    recipe = make_recipe(TWO_LLM_STEPS)
    engine = make_engine(adapters)
    execution = await engine.create_execution(recipe_id=recipe.id, user_id="user-1", input_data={"text": "A"})

    cancelled = job_control.cancel_execution(engine, execution.id)

    assert cancelled.status == ExecutionStatus.CANCELLED
    assert cancelled.finished_at is not None
    assert await engine.start_execution(execution.id) is None
    assert adapters[StepType.LLM].calls == []


@pytest.mark.asyncio
async def test_cancel_terminal_execution_is_rejected(store, make_recipe, make_engine, adapters):
    recipe = make_recipe(TWO_LLM_STEPS)
    engine = make_engine(adapters)
    execution = await engine.create_execution(recipe_id=recipe.id, user_id="user-1", input_data={"text": "A"})
    await engine.start_execution(execution.id)

    with pytest.raises(InvalidExecutionStateError) as exc_info:
        job_control.cancel_execution(engine, execution.id)

    assert exc_info.value.status == "done"
    assert store.get_execution(execution.id).status == ExecutionStatus.DONE


def test_cancel_unknown_execution(make_engine, adapters):
    engine = make_engine(adapters)

    with pytest.raises(ExecutionNotFoundError):
        job_control.cancel_execution(engine, "missing")


@pytest.mark.asyncio
async def test_cancel_between_steps_then_retry_starts_fresh(store, make_recipe, make_engine, adapters, fake_adapter):
    engine_holder: dict[str, Any] = {}

    def _cancel_during_first_step(params: dict[str, Any]) -> ProviderResult:
        if len(adapters[StepType.LLM].calls) == 1:
            job_control.cancel_execution(engine_holder["engine"], engine_holder["execution_id"])
        return ProviderResult(
            output={"text": f"out: {params['user_content']}"},
            usage={"input_tokens": 1_000_000, "output_tokens": 500_000},
            model="gpt-5-mini",
        )

    adapters[StepType.LLM] = fake_adapter("llm", _cancel_during_first_step)
    recipe = make_recipe(TWO_LLM_STEPS)
    engine = make_engine(adapters)
    engine_holder["engine"] = engine
    execution = await engine.create_execution(recipe_id=recipe.id, user_id="user-1", input_data={"text": "A"})
    engine_holder["execution_id"] = execution.id

    await engine.start_execution(execution.id)

    cancelled = store.get_execution(execution.id)
    results = store.list_step_results(execution.id)
    assert cancelled.status == ExecutionStatus.CANCELLED
    assert [result.status for result in results] == [StepResultStatus.DONE]
    assert len(adapters[StepType.LLM].calls) == 1
    assert results[0].cost_cents == 125
    assert cancelled.total_cost_cents == sum(result.cost_cents for result in results)
    assert cancelled.cost_breakdown == {"steps": [{"step_index": 0, "model": "gpt-5-mini", "cost_cents": 125}]}

    store.replace_recipe_steps(
        recipe.id,
        [*recipe.steps, recipe.steps[1].model_copy(update={"step_index": 2, "name": "Povzetek"})],
        version=2,
    )
    retried = await job_control.retry_execution(engine, execution.id)

    assert retried.id != execution.id
    assert retried.status == ExecutionStatus.PENDING
    assert retried.current_step == 0
    assert retried.total_steps == 3
    assert retried.recipe_version == 2
    assert retried.attempt == 2
    assert retried.retry_of_execution_id == execution.id
    assert store.get_execution(execution.id).model_dump() == cancelled.model_dump()


@pytest.mark.asyncio
async def test_retry_error_execution_copies_input(store, make_recipe, make_engine, adapters, fake_adapter, scheduler):
    adapters[StepType.LLM] = fake_adapter("llm", _failing_llm)
    recipe = make_recipe(TWO_LLM_STEPS)
    engine = make_engine(adapters)
    input_data = {"text": "A", "options": {"tone": "neutral"}}
    execution = await engine.create_execution(recipe_id=recipe.id, user_id="user-1", input_data=input_data)
    failed = await engine.start_execution(execution.id)
    assert failed.status == ExecutionStatus.ERROR

    retried = await job_control.retry_execution(engine, execution.id)

    assert retried.id != execution.id
    assert retried.input_data == failed.input_data == input_data
    assert retried.user_id == "user-1"
    assert retried.recipe_id == recipe.id
    assert scheduler.scheduled[-1] == retried.id
    assert store.get_execution(execution.id).status == ExecutionStatus.ERROR


@pytest.mark.asyncio
async def test_retry_rejected_when_recipe_deactivated(supabase, store, make_recipe, make_engine, adapters, fake_adapter):
    adapters[StepType.LLM] = fake_adapter("llm", _failing_llm)
    recipe = make_recipe(TWO_LLM_STEPS)
    engine = make_engine(adapters)
    execution = await engine.create_execution(recipe_id=recipe.id, user_id="user-1", input_data={"text": "A"})
    await engine.start_execution(execution.id)
    supabase.table(RECIPES_TABLE).update({"status": "inactive"}).eq("id", recipe.id).execute()

    with pytest.raises(RecipeInactiveError, match="Recipe is no longer active"):
        await job_control.retry_execution(engine, execution.id)

    assert len(supabase.rows(EXECUTIONS_TABLE)) == 1


@pytest.mark.asyncio
async def test_retry_rejected_when_recipe_deleted(supabase, make_recipe, make_engine, adapters, fake_adapter):
    adapters[StepType.LLM] = fake_adapter("llm", _failing_llm)
    recipe = make_recipe(TWO_LLM_STEPS)
    engine = make_engine(adapters)
    execution = await engine.create_execution(recipe_id=recipe.id, user_id="user-1", input_data={"text": "A"})
    await engine.start_execution(execution.id)
    supabase.table(RECIPES_TABLE).delete().eq("id", recipe.id).execute()

    with pytest.raises(RecipeInactiveError):
        await job_control.retry_execution(engine, execution.id)


@pytest.mark.asyncio
async def test_retry_rejected_for_running_or_done(make_recipe, make_engine, adapters):
    recipe = make_recipe(TWO_LLM_STEPS)
    engine = make_engine(adapters)
    execution = await engine.create_execution(recipe_id=recipe.id, user_id="user-1", input_data={"text": "A"})

    with pytest.raises(InvalidExecutionStateError):
        await job_control.retry_execution(engine, execution.id)

    await engine.start_execution(execution.id)
    with pytest.raises(InvalidExecutionStateError):
        await job_control.retry_execution(engine, execution.id)


@pytest.mark.asyncio
async def test_recover_stale_executions_resets_to_pending(supabase, store, make_recipe, make_engine, adapters, scheduler):
    recipe = make_recipe(TWO_LLM_STEPS)
    engine = make_engine(adapters)
    stale = await engine.create_execution(recipe_id=recipe.id, user_id="user-1", input_data={"text": "A"})
    fresh = await engine.create_execution(recipe_id=recipe.id, user_id="user-1", input_data={"text": "B"})
    store.acquire_lease(stale.id)
    store.acquire_lease(fresh.id)
    store.update_execution(stale.id, {"current_step": 1, "progress": 50})
    for row in supabase.rows(EXECUTIONS_TABLE):
        if row["id"] == stale.id:
            row["updated_at"] = "2020-01-01T00:00:00+00:00"

    report = await job_control.recover_stale_executions(engine, older_than_seconds=600)

    assert report == [{"execution_id": stale.id, "current_step": 1, "scheduled": True}]
    assert store.get_execution(stale.id).status == ExecutionStatus.PENDING
    assert store.get_execution(fresh.id).status == ExecutionStatus.RUNNING
    assert scheduler.scheduled[-1] == stale.id
    assert scheduler.schedule_counts[-1] == 1
    assert store.get_execution(stale.id).schedule_count == 1

    resumed = await engine.start_execution(stale.id)
    assert resumed.status == ExecutionStatus.DONE
    assert [result.step_index for result in store.list_step_results(stale.id)] == [1]
