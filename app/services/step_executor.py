# app/services/step_executor.py - Runs exactly one recipe step and persists its StepResult

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable

from app.models.execution import RecipeExecution, StepResult, StepResultStatus
from app.models.recipe import RecipeStep, StepType
from app.providers.common import ProviderAdapter, ProviderError, ProviderResult, ProviderTimeoutError, now_ms
from app.services.execution_store import ExecutionStore
from app.services.pricing import estimate_cost_cents
from app.services.step_conditions import should_skip
from app.services.step_context import StepContext
from app.services.step_inputs import SignUrl, resolve_step_input
from app.utils.exceptions import StepError

logger = logging.getLogger(__name__)

StoreArtifact = Callable[[str, int, bytes, str], str]

# Extra seconds the executor waits past an adapter's own timeout before abandoning the call
TIMEOUT_GRACE_SECONDS = 5.0


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return {"sha256": hashlib.sha256(value).hexdigest(), "bytes": len(value)}
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def fingerprint(value: Any) -> str:
    canonical = json.dumps(value, sort_keys=True, ensure_ascii=False, separators=(",", ":"), default=_json_default)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def truncate_preview(text: str | None, max_chars: int) -> str | None:
    if not text:
        return None
    return text if len(text) <= max_chars else text[:max_chars]


class StepExecutor:
    """Skip check, input resolution, adapter dispatch, audit hashes and persistence for one step.

    Step failures never raise out of ``run_step``: they come back as a
    StepResult with status ``error`` and an ``error_kind``.
    """

    def __init__(
        self,
        store: ExecutionStore,
        adapters: dict[StepType, ProviderAdapter],
        *,
        timeouts: dict[StepType, float],
        llm_default_model: str,
        preview_max_chars: int = 500,
        sign_url: SignUrl | None = None,
        store_artifact: StoreArtifact | None = None,
    ):
        self.store = store
        self.adapters = adapters
        self.timeouts = timeouts
        self.llm_default_model = llm_default_model
        self.preview_max_chars = preview_max_chars
        self.sign_url = sign_url
        self.store_artifact = store_artifact

    async def run_step(self, execution: RecipeExecution, step: RecipeStep, context: StepContext) -> StepResult:
        log_extra = {
            "execution_id": execution.id,
            "step_index": step.step_index,
            "step_type": step.type.value,
        }
        started_at = _utc_now_iso()

        try:
            skip = should_skip(step.config.skip_when, context, step.step_index)
        except StepError as exc:
            logger.error("invalid skip condition", extra={**log_extra, "error": str(exc)})
            return self._write_error(execution.id, step, exc, started_at=started_at)

        if skip:
            logger.info("step skipped by condition", extra=log_extra)
            return self.store.upsert_step_result(
                execution.id,
                step.step_index,
                {
                    "status": StepResultStatus.SKIPPED.value,
                    "input_preview": None,
                    "output_preview": None,
                    "output_full": None,
                    "error_message": None,
                    "error_kind": None,
                    "cost_cents": 0,
                    "latency_ms": 0,
                    "started_at": started_at,
                    "finished_at": _utc_now_iso(),
                },
            )

        try:
            resolved = resolve_step_input(
                step,
                context,
                llm_default_model=self.llm_default_model,
                sign_url=self.sign_url,
            )
        except StepError as exc:
            logger.warning("step input resolution failed", extra={**log_extra, "error": str(exc)})
            return self._write_error(execution.id, step, exc, started_at=started_at)

        input_preview = truncate_preview(resolved.preview, self.preview_max_chars)
        input_hash = fingerprint(resolved.params)
        self.store.upsert_step_result(
            execution.id,
            step.step_index,
            {
                "status": StepResultStatus.RUNNING.value,
                "input_preview": input_preview,
                "input_hash": input_hash,
                "started_at": started_at,
            },
        )

        adapter = self.adapters[step.type]
        timeout_seconds = step.config.timeout_seconds or self.timeouts[step.type]
        started_ms = now_ms()
        try:
            result = await self._invoke(adapter, resolved.params, timeout_seconds)
            output_hash = fingerprint(result.output)
            output_full = self._persistable_output(execution.id, step, result.output)
        except ProviderError as exc:
            logger.warning(
                "step provider call failed",
                extra={**log_extra, "error_kind": exc.kind, "provider": exc.provider, "error": str(exc)},
            )
            return self._write_error(
                execution.id,
                step,
                exc,
                started_at=started_at,
                latency_ms=now_ms() - started_ms,
                input_preview=input_preview,
                input_hash=input_hash,
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("step failed unexpectedly", extra=log_extra)
            return self._write_error(
                execution.id,
                step,
                ProviderError(adapter.provider, str(exc) or type(exc).__name__),
                started_at=started_at,
                latency_ms=now_ms() - started_ms,
                input_preview=input_preview,
                input_hash=input_hash,
            )

        cost_cents = estimate_cost_cents(result.model, result.usage, provider=adapter.provider)
        output_text = output_full.get("text") if isinstance(output_full.get("text"), str) else ""
        if not output_text and output_full.get("audio_storage_key"):
            output_text = f"[{output_full.get('mime_type')}] {output_full['audio_storage_key']}"
        logger.info(
            "step completed",
            extra={**log_extra, "model": result.model, "latency_ms": result.latency_ms, "cost_cents": cost_cents},
        )
        return self.store.upsert_step_result(
            execution.id,
            step.step_index,
            {
                "status": StepResultStatus.DONE.value,
                "input_preview": input_preview,
                "input_hash": input_hash,
                "output_preview": truncate_preview(output_text, self.preview_max_chars),
                "output_full": output_full,
                "output_hash": output_hash,
                "provider_response_id": result.provider_response_id,
                "model": result.model,
                "usage_units": result.usage,
                "cost_cents": cost_cents,
                "latency_ms": result.latency_ms or (now_ms() - started_ms),
                "error_kind": None,
                "error_message": None,
                "finished_at": _utc_now_iso(),
            },
        )

    async def _invoke(self, adapter: ProviderAdapter, params: dict[str, Any], timeout_seconds: float) -> ProviderResult:
        try:
            return await asyncio.wait_for(
                adapter.invoke(params, timeout_seconds=timeout_seconds),
                timeout=timeout_seconds + TIMEOUT_GRACE_SECONDS,
            )
        except asyncio.TimeoutError as exc:
            raise ProviderTimeoutError(adapter.provider, timeout_seconds) from exc

    def _persistable_output(self, execution_id: str, step: RecipeStep, output: dict[str, Any]) -> dict[str, Any]:
        audio = output.get("audio")
        if not isinstance(audio, (bytes, bytearray)):
            return dict(output)
        if self.store_artifact is None:
            raise ProviderError("artifacts", "No artifact storage configured for binary step output")
        mime_type = str(output.get("mime_type") or "audio/mpeg")
        try:
            storage_key = self.store_artifact(execution_id, step.step_index, bytes(audio), mime_type)
        except Exception as exc:  # noqa: BLE001
            raise ProviderError("artifacts", f"Failed to store step artifact: {exc}") from exc
        persisted = {key: value for key, value in output.items() if key != "audio"}
        persisted["audio_storage_key"] = storage_key
        persisted["audio_bytes"] = len(audio)
        return persisted

    def _write_error(
        self,
        execution_id: str,
        step: RecipeStep,
        exc: Exception,
        *,
        started_at: str,
        latency_ms: int = 0,
        input_preview: str | None = None,
        input_hash: str | None = None,
    ) -> StepResult:
        return self.store.upsert_step_result(
            execution_id,
            step.step_index,
            {
                "status": StepResultStatus.ERROR.value,
                "input_preview": input_preview,
                "input_hash": input_hash,
                "output_preview": None,
                "output_full": None,
                "error_kind": getattr(exc, "kind", "provider"),
                "error_message": str(exc) or type(exc).__name__,
                "cost_cents": 0,
                "latency_ms": latency_ms,
                "started_at": started_at,
                "finished_at": _utc_now_iso(),
            },
        )
