# app/providers/common.py - Provider result and error types plus HTTP response helpers

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass
class ProviderResult:
    output: dict[str, Any]
    usage: dict[str, float] = field(default_factory=dict)
    latency_ms: int = 0
    model: str | None = None
    provider_response_id: str | None = None


class ProviderError(Exception):
    """Adapter returned a failure or a malformed response."""

    kind = "provider"

    def __init__(self, provider: str, message: str, *, http_status: int | None = None):
        super().__init__(message)
        self.provider = provider
        self.http_status = http_status


class ProviderTimeoutError(ProviderError):
    kind = "provider_timeout"

    def __init__(self, provider: str, timeout_seconds: float):
        super().__init__(provider, f"{provider} request timed out after {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds


class ProviderAdapter(Protocol):
    provider: str

    async def invoke(self, params: dict[str, Any], *, timeout_seconds: float) -> ProviderResult:
        ...


def now_ms() -> int:
    return int(time.time() * 1000)


def parse_json_or_raw(text: str, parser: Any) -> dict[str, Any]:
    try:
        parsed = parser()
        if isinstance(parsed, dict):
            return parsed
        return {"value": parsed}
    except Exception:  # noqa: BLE001
        return {"raw": text}


def error_detail(body: dict[str, Any]) -> str:
    error = body.get("error")
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message.strip():
            return message.strip()
    if isinstance(error, str) and error.strip():
        return error.strip()
    for key in ("detail", "message", "error_message"):
        value = body.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    raw = body.get("raw")
    if isinstance(raw, str):
        return raw[:300]
    return "unknown error"


def raise_for_provider_status(provider: str, status_code: int, body: dict[str, Any]) -> None:
    if status_code >= 400:
        raise ProviderError(
            provider,
            f"{provider} error {status_code}: {error_detail(body)}",
            http_status=status_code,
        )
