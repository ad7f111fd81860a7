# app/services/execution_store.py - Supabase-backed store for recipes, executions and step results

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from app.database import get_supabase_client
from app.models.execution import ExecutionStatus, RecipeExecution, StepResult
from app.models.recipe import Recipe, RecipeStep

RECIPES_TABLE = "recipes"
RECIPE_STEPS_TABLE = "recipe_steps"
EXECUTIONS_TABLE = "recipe_executions"
STEP_RESULTS_TABLE = "recipe_step_results"


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _status_values(statuses: Iterable[ExecutionStatus | str]) -> list[str]:
    return [status.value if isinstance(status, ExecutionStatus) else str(status) for status in statuses]


class ExecutionStore:
    """Single-row reads and writes scoped by id.

    Status-guarded writes are compare-and-set: ``update_execution`` with
    ``expected_statuses`` only touches the row while its status is one of them
    and returns None otherwise.
    """

    def __init__(self, client: Any | None = None):
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = get_supabase_client()
        return self._client

    # Recipes

    def _load_steps(self, recipe_id: str) -> list[RecipeStep]:
        result = (
            self.client.table(RECIPE_STEPS_TABLE)
            .select("*")
            .eq("recipe_id", recipe_id)
            .order("step_index")
            .execute()
        )
        return [RecipeStep(**row) for row in result.data or []]

    def find_recipe_with_steps(self, recipe_id: str) -> Recipe | None:
        result = self.client.table(RECIPES_TABLE).select("*").eq("id", recipe_id).limit(1).execute()
        if not result.data:
            return None
        row = dict(result.data[0])
        row["steps"] = self._load_steps(recipe_id)
        return Recipe(**row)

    def find_recipe_by_preset_key(self, preset_key: str) -> Recipe | None:
        result = (
            self.client.table(RECIPES_TABLE)
            .select("*")
            .eq("preset_key", preset_key)
            .limit(1)
            .execute()
        )
        if not result.data:
            return None
        row = dict(result.data[0])
        row["steps"] = self._load_steps(row["id"])
        return Recipe(**row)

    def create_recipe(self, row: dict[str, Any], steps: list[RecipeStep]) -> Recipe:
        result = self.client.table(RECIPES_TABLE).insert(row).execute()
        recipe_row = dict(result.data[0])
        self._insert_steps(recipe_row["id"], steps)
        recipe_row["steps"] = steps
        return Recipe(**recipe_row)

    def _insert_steps(self, recipe_id: str, steps: list[RecipeStep]) -> None:
        if not steps:
            return
        rows = [
            {"recipe_id": recipe_id, **step.model_dump(mode="json", exclude_none=True)}
            for step in steps
        ]
        self.client.table(RECIPE_STEPS_TABLE).insert(rows).execute()

    def replace_recipe_steps(self, recipe_id: str, steps: list[RecipeStep], version: int) -> None:
        """Swap the step list and bump the version. Executions keep their own snapshot."""
        self.client.table(RECIPE_STEPS_TABLE).delete().eq("recipe_id", recipe_id).execute()
        self._insert_steps(recipe_id, steps)
        (
            self.client.table(RECIPES_TABLE)
            .update({"current_version": version, "updated_at": _iso_now()})
            .eq("id", recipe_id)
            .execute()
        )

    # Executions

    def create_execution(self, row: dict[str, Any]) -> RecipeExecution:
        result = self.client.table(EXECUTIONS_TABLE).insert(row).execute()
        return RecipeExecution(**result.data[0])

    def get_execution(self, execution_id: str) -> RecipeExecution | None:
        result = self.client.table(EXECUTIONS_TABLE).select("*").eq("id", execution_id).limit(1).execute()
        if not result.data:
            return None
        return RecipeExecution(**result.data[0])

    def list_executions(
        self,
        *,
        user_id: str | None = None,
        recipe_id: str | None = None,
        status: ExecutionStatus | None = None,
        limit: int = 50,
    ) -> list[RecipeExecution]:
        query = self.client.table(EXECUTIONS_TABLE).select("*")
        if user_id:
            query = query.eq("user_id", user_id)
        if recipe_id:
            query = query.eq("recipe_id", recipe_id)
        if status:
            query = query.eq("status", status.value)
        result = query.order("created_at", desc=True).limit(limit).execute()
        return [RecipeExecution(**row) for row in result.data or []]

    def find_execution_by_idempotency_key(self, user_id: str, idempotency_key: str) -> RecipeExecution | None:
        result = (
            self.client.table(EXECUTIONS_TABLE)
            .select("*")
            .eq("user_id", user_id)
            .eq("idempotency_key", idempotency_key)
            .limit(1)
            .execute()
        )
        if not result.data:
            return None
        return RecipeExecution(**result.data[0])

    def update_execution(
        self,
        execution_id: str,
        partial: dict[str, Any],
        *,
        expected_statuses: Iterable[ExecutionStatus | str] | None = None,
    ) -> RecipeExecution | None:
        query = (
            self.client.table(EXECUTIONS_TABLE)
            .update({**partial, "updated_at": _iso_now()})
            .eq("id", execution_id)
        )
        if expected_statuses is not None:
            query = query.in_("status", _status_values(expected_statuses))
        result = query.execute()
        if not result.data:
            return None
        return RecipeExecution(**result.data[0])

    def acquire_lease(self, execution_id: str, *, started_at: str | None = None) -> RecipeExecution | None:
        """Atomically move pending -> running. None means another worker holds it."""
        return self.update_execution(
            execution_id,
            {"status": ExecutionStatus.RUNNING.value, "started_at": started_at or _iso_now()},
            expected_statuses=[ExecutionStatus.PENDING],
        )

    def list_stale_running(self, *, updated_before: str, limit: int = 100) -> list[RecipeExecution]:
        result = (
            self.client.table(EXECUTIONS_TABLE)
            .select("*")
            .eq("status", ExecutionStatus.RUNNING.value)
            .lt("updated_at", updated_before)
            .order("updated_at")
            .limit(limit)
            .execute()
        )
        return [RecipeExecution(**row) for row in result.data or []]

    # Step results

    def upsert_step_result(self, execution_id: str, step_index: int, partial: dict[str, Any]) -> StepResult:
        row = {**partial, "execution_id": execution_id, "step_index": step_index}
        result = (
            self.client.table(STEP_RESULTS_TABLE)
            .upsert(row, on_conflict="execution_id,step_index")
            .execute()
        )
        return StepResult(**result.data[0])

    def list_step_results(self, execution_id: str) -> list[StepResult]:
        result = (
            self.client.table(STEP_RESULTS_TABLE)
            .select("*")
            .eq("execution_id", execution_id)
            .order("step_index")
            .execute()
        )
        return [StepResult(**row) for row in result.data or []]
