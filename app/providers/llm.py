from __future__ import annotations

import json
import re
from typing import Any

import httpx

from app.providers.common import (
    ProviderError,
    ProviderResult,
    ProviderTimeoutError,
    now_ms,
    parse_json_or_raw,
    raise_for_provider_status,
)

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"
OPENAI_RESPONSES_URL = "https://api.openai.com/v1/responses"
ANTHROPIC_MESSAGES_URL = "https://api.anthropic.com/v1/messages"
GEMINI_URL_TEMPLATE = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

_ANTHROPIC_MAX_TOKENS = 8192


def extract_json_block(text: str) -> dict[str, Any] | None:
    text = text.strip()
    if not text:
        return None
    try:
        loaded = json.loads(text)
        if isinstance(loaded, dict):
            return loaded
    except Exception:  # noqa: BLE001
        pass
    match = re.search(r"\{.*\}", text, flags=re.DOTALL)
    if not match:
        return None
    try:
        loaded = json.loads(match.group(0))
    except Exception:  # noqa: BLE001
        return None
    return loaded if isinstance(loaded, dict) else None


def provider_for_model(model: str) -> str:
    normalized = model.strip().lower()
    if normalized.startswith("claude"):
        return "anthropic"
    if normalized.startswith("gemini"):
        return "gemini"
    return "openai"


def _openai_message_text(body: dict[str, Any]) -> str:
    choices = body.get("choices") or []
    if not choices:
        return ""
    message = (choices[0] or {}).get("message") or {}
    raw_content = message.get("content")
    if isinstance(raw_content, str):
        return raw_content
    if isinstance(raw_content, list):
        chunks: list[str] = []
        for part in raw_content:
            if isinstance(part, dict) and isinstance(part.get("text"), str):
                chunks.append(part["text"])
        return "".join(chunks)
    return ""


def _responses_text_and_citations(body: dict[str, Any]) -> tuple[str, list[dict[str, str]]]:
    text = ""
    citations: list[dict[str, str]] = []
    seen_urls: set[str] = set()
    for item in body.get("output") or []:
        if not isinstance(item, dict) or item.get("type") != "message":
            continue
        for part in item.get("content") or []:
            if not isinstance(part, dict) or part.get("type") != "output_text":
                continue
            if isinstance(part.get("text"), str):
                text += part["text"]
            for annotation in part.get("annotations") or []:
                if not isinstance(annotation, dict) or annotation.get("type") != "url_citation":
                    continue
                url = annotation.get("url")
                if isinstance(url, str) and url not in seen_urls:
                    seen_urls.add(url)
                    citations.append({"url": url, "title": str(annotation.get("title") or url)})
    return text, citations


class LLMAdapter:
    """Chat completion across OpenAI, Anthropic and Gemini, picked by model id.

    params: model, user_content, system_prompt (optional), web_search (optional,
    OpenAI models only).
    """

    provider = "llm"

    def __init__(
        self,
        *,
        openai_api_key: str | None = None,
        anthropic_api_key: str | None = None,
        gemini_api_key: str | None = None,
    ):
        self._keys = {
            "openai": openai_api_key,
            "anthropic": anthropic_api_key,
            "gemini": gemini_api_key,
        }

    async def invoke(self, params: dict[str, Any], *, timeout_seconds: float) -> ProviderResult:
        model = str(params.get("model") or "").strip()
        if not model:
            raise ProviderError(self.provider, "No LLM model configured for step")
        provider = provider_for_model(model)
        api_key = self._keys.get(provider)
        if not api_key:
            raise ProviderError(provider, f"{provider} API key is not configured")

        user_content = str(params.get("user_content") or "")
        system_prompt = params.get("system_prompt") or None
        started = now_ms()
        try:
            async with httpx.AsyncClient(timeout=timeout_seconds) as client:
                if provider == "anthropic":
                    result = await self._anthropic(client, api_key, model, user_content, system_prompt)
                elif provider == "gemini":
                    result = await self._gemini(client, api_key, model, user_content, system_prompt)
                elif params.get("web_search"):
                    result = await self._openai_web_search(client, api_key, model, user_content, system_prompt)
                else:
                    result = await self._openai(client, api_key, model, user_content, system_prompt)
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(provider, timeout_seconds) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(provider, f"{provider} request failed: {exc}") from exc
        result.latency_ms = now_ms() - started
        result.model = model
        return result

    async def _openai(
        self,
        client: httpx.AsyncClient,
        api_key: str,
        model: str,
        user_content: str,
        system_prompt: str | None,
    ) -> ProviderResult:
        messages: list[dict[str, Any]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_content})
        res = await client.post(
            OPENAI_CHAT_URL,
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
            json={"model": model, "messages": messages},
        )
        body = parse_json_or_raw(res.text, res.json)
        raise_for_provider_status("openai", res.status_code, body)
        usage = body.get("usage") or {}
        return ProviderResult(
            output={"text": _openai_message_text(body)},
            usage={
                "input_tokens": usage.get("prompt_tokens") or 0,
                "output_tokens": usage.get("completion_tokens") or 0,
            },
            provider_response_id=body.get("id"),
        )

    async def _openai_web_search(
        self,
        client: httpx.AsyncClient,
        api_key: str,
        model: str,
        user_content: str,
        system_prompt: str | None,
    ) -> ProviderResult:
        payload: dict[str, Any] = {
            "model": model,
            "input": [{"role": "user", "content": user_content}],
            "tools": [{"type": "web_search_preview"}],
        }
        if system_prompt:
            payload["instructions"] = system_prompt
        res = await client.post(
            OPENAI_RESPONSES_URL,
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
            json=payload,
        )
        body = parse_json_or_raw(res.text, res.json)
        raise_for_provider_status("openai", res.status_code, body)
        text, citations = _responses_text_and_citations(body)
        usage = body.get("usage") or {}
        output: dict[str, Any] = {"text": text}
        if citations:
            output["citations"] = citations
        return ProviderResult(
            output=output,
            usage={
                "input_tokens": usage.get("input_tokens") or 0,
                "output_tokens": usage.get("output_tokens") or 0,
            },
            provider_response_id=body.get("id"),
        )

    async def _anthropic(
        self,
        client: httpx.AsyncClient,
        api_key: str,
        model: str,
        user_content: str,
        system_prompt: str | None,
    ) -> ProviderResult:
        payload: dict[str, Any] = {
            "model": model,
            "max_tokens": _ANTHROPIC_MAX_TOKENS,
            "messages": [{"role": "user", "content": user_content}],
        }
        if system_prompt:
            payload["system"] = system_prompt
        res = await client.post(
            ANTHROPIC_MESSAGES_URL,
            headers={
                "x-api-key": api_key,
                "anthropic-version": "2023-06-01",
                "Content-Type": "application/json",
            },
            json=payload,
        )
        body = parse_json_or_raw(res.text, res.json)
        raise_for_provider_status("anthropic", res.status_code, body)
        text = ""
        for block in body.get("content") or []:
            if isinstance(block, dict) and block.get("type") == "text" and isinstance(block.get("text"), str):
                text += block["text"]
        usage = body.get("usage") or {}
        return ProviderResult(
            output={"text": text},
            usage={
                "input_tokens": usage.get("input_tokens") or 0,
                "output_tokens": usage.get("output_tokens") or 0,
            },
            provider_response_id=body.get("id"),
        )

    async def _gemini(
        self,
        client: httpx.AsyncClient,
        api_key: str,
        model: str,
        user_content: str,
        system_prompt: str | None,
    ) -> ProviderResult:
        payload: dict[str, Any] = {"contents": [{"role": "user", "parts": [{"text": user_content}]}]}
        if system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": system_prompt}]}
        res = await client.post(
            GEMINI_URL_TEMPLATE.format(model=model),
            params={"key": api_key},
            json=payload,
        )
        body = parse_json_or_raw(res.text, res.json)
        raise_for_provider_status("gemini", res.status_code, body)
        text = ""
        for candidate in body.get("candidates") or []:
            parts = ((candidate.get("content") or {}).get("parts") or [])
            for part in parts:
                if isinstance(part.get("text"), str):
                    text += part["text"]
        usage = body.get("usageMetadata") or {}
        return ProviderResult(
            output={"text": text},
            usage={
                "input_tokens": usage.get("promptTokenCount") or 0,
                "output_tokens": usage.get("candidatesTokenCount") or 0,
            },
            provider_response_id=body.get("responseId"),
        )
