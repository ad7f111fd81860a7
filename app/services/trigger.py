# app/services/trigger.py - Background scheduling of recipe executions (Trigger.dev or in-process)

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import Any, Callable, Protocol

import httpx

from app.config import Settings

logger = logging.getLogger(__name__)


def trigger_idempotency_key(execution_id: str, schedule_count: int = 0) -> str:
    if schedule_count <= 0:
        return f"recipe-execution-{execution_id}"
    return f"recipe-execution-{execution_id}-{schedule_count}"


class TaskScheduler(Protocol):
    async def schedule(self, execution_id: str, *, schedule_count: int = 0) -> str | None:
        """Run the execution once, eventually. Returns an external run id when there is one.

        ``schedule_count`` distinguishes a reschedule of the same execution from
        a redelivery of an earlier trigger.
        """
        ...


class TriggerDevScheduler:
    """Triggers the run-recipe-execution task; the task calls back
    ``POST /api/internal/executions/run``. Delivery is at-least-once.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    async def schedule(self, execution_id: str, *, schedule_count: int = 0) -> str:
        settings = self.settings
        if not settings.api_url:
            raise RuntimeError("API_URL must be configured")
        if not settings.trigger_secret_key:
            raise RuntimeError("TRIGGER_SECRET_KEY must be configured")

        async with httpx.AsyncClient(timeout=20.0) as client:
            response = await client.post(
                f"{settings.trigger_api_url}/api/v1/tasks/{settings.trigger_task_id}/trigger",
                headers={
                    "Authorization": f"Bearer {settings.trigger_secret_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "payload": {
                        "execution_id": execution_id,
                        "api_url": settings.api_url,
                        "internal_api_key": settings.internal_api_key,
                    },
                    "options": {"idempotencyKey": trigger_idempotency_key(execution_id, schedule_count)},
                },
            )
            response.raise_for_status()
            body: dict[str, Any] = response.json()
            run_id = body.get("id")
            if not run_id:
                raise RuntimeError("Trigger.dev response missing run id")
            logger.info("scheduled execution on Trigger.dev", extra={"execution_id": execution_id, "trigger_run_id": run_id})
            return run_id


class InProcessScheduler:
    """Runs executions as asyncio tasks in the API process. Local development only."""

    def __init__(self, runner: Callable[[], Callable[[str], Awaitable[Any]]]):
        self._runner = runner
        self._tasks: set[asyncio.Task[Any]] = set()

    async def schedule(self, execution_id: str, *, schedule_count: int = 0) -> None:
        task = asyncio.create_task(self._runner()(execution_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info("scheduled execution in-process", extra={"execution_id": execution_id})
        return None
