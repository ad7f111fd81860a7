# app/providers/drupal.py - Publishes drupal_article payloads to a Drupal site (JSON:API or custom REST)

from __future__ import annotations

import asyncio
import base64
import ipaddress
import json
import logging
import socket
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlsplit

import httpx
from bs4 import BeautifulSoup

from app.providers.common import (
    ProviderError,
    ProviderResult,
    ProviderTimeoutError,
    now_ms,
    parse_json_or_raw,
    raise_for_provider_status,
)

logger = logging.getLogger(__name__)

ALLOWED_TAGS = frozenset({
    "p", "h1", "h2", "h3", "h4", "h5", "h6",
    "strong", "em", "b", "i",
    "ul", "ol", "li",
    "a", "blockquote", "br", "img",
    "figure", "figcaption",
    "table", "thead", "tbody", "tr", "td", "th",
})
ALLOWED_ATTRS = frozenset({"href", "src", "alt", "title", "class"})
_STRIPPED_WITH_CONTENT = ("script", "style", "iframe", "object", "embed")

# Backoff between attempts on 429/5xx and transport errors
RETRY_DELAYS_SECONDS: tuple[float, ...] = (1.0, 3.0)

SKIPPED_NOT_CONFIGURED = "[Skipped: no Drupal integration configured]"
SKIPPED_NO_ARTICLE = "[Skipped: no drupal_json output found in previous steps]"


def sanitize_html(html: str) -> str:
    """Keep allowlisted tags and attributes; drop scripts, event handlers and javascript: URLs."""
    soup = BeautifulSoup(html or "", "html.parser")
    for tag in soup.find_all(_STRIPPED_WITH_CONTENT):
        if not tag.decomposed:
            tag.decompose()
    for tag in soup.find_all(True):
        if tag.name not in ALLOWED_TAGS:
            tag.unwrap()
            continue
        tag.attrs = {
            name: value
            for name, value in tag.attrs.items()
            if name.lower() in ALLOWED_ATTRS
        }
        for name in ("href", "src"):
            value = tag.attrs.get(name)
            if isinstance(value, str) and value.strip().lower().startswith("javascript:"):
                tag.attrs[name] = ""
    return str(soup).strip()


def _is_blocked_address(address: str) -> bool:
    ip = ipaddress.ip_address(address)
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return not ip.is_global or ip.is_multicast


async def _resolve_addresses(hostname: str) -> list[str]:
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(hostname, None, type=socket.SOCK_STREAM)
    except socket.gaierror:
        return []
    return sorted({info[4][0] for info in infos})


async def validate_base_url(base_url: str) -> None:
    """Refuse Drupal hosts that are, or resolve to, private or internal addresses."""
    hostname = urlsplit(base_url).hostname
    if not hostname:
        raise ProviderError("drupal", f"Invalid Drupal base URL: {base_url!r}")
    try:
        ipaddress.ip_address(hostname)
        addresses = [hostname]
    except ValueError:
        addresses = await _resolve_addresses(hostname)
        if not addresses:
            raise ProviderError("drupal", "Could not resolve Drupal hostname")
    if any(_is_blocked_address(address) for address in addresses):
        raise ProviderError("drupal", "Drupal URL resolves to a private/internal IP address")


class DrupalPublishAdapter:
    """Publishes the upstream ``drupal_article`` payload.

    params: article (payload dict or None), mode ("draft" | "publish"),
    content_type (optional). Missing configuration or a missing article is not
    an error: the step completes with a skip notice and ``published: False``.
    """

    provider = "drupal"

    def __init__(
        self,
        *,
        base_url: str | None,
        adapter_type: str = "jsonapi",
        auth_type: str = "bearer_token",
        username: str | None = None,
        password: str | None = None,
        token: str | None = None,
        content_type: str = "article",
        body_format: str = "full_html",
    ):
        self._base_url = base_url.rstrip("/") if base_url else None
        self._adapter_type = adapter_type
        self._auth_type = auth_type
        self._username = username
        self._password = password
        self._token = token
        self._content_type = content_type
        self._body_format = body_format

    def _auth_header(self) -> str:
        if self._auth_type == "basic":
            raw = f"{self._username or ''}:{self._password or ''}".encode("utf-8")
            return f"Basic {base64.b64encode(raw).decode('ascii')}"
        return f"Bearer {self._token or ''}"

    def _has_credentials(self) -> bool:
        if self._auth_type == "basic":
            return bool(self._username and self._password)
        return bool(self._token)

    @staticmethod
    def _skipped(text: str, started: int) -> ProviderResult:
        return ProviderResult(
            output={"text": text, "published": False},
            usage={},
            latency_ms=now_ms() - started,
            model="drupal",
        )

    async def invoke(self, params: dict[str, Any], *, timeout_seconds: float) -> ProviderResult:
        started = now_ms()
        if not self._base_url or not self._has_credentials():
            return self._skipped(SKIPPED_NOT_CONFIGURED, started)

        article = params.get("article")
        if not isinstance(article, dict) or not article.get("title") or not article.get("body"):
            return self._skipped(SKIPPED_NO_ARTICLE, started)

        await validate_base_url(self._base_url)

        mode = "publish" if params.get("mode") == "publish" else "draft"
        content_type = params.get("content_type") or self._content_type
        body_html = sanitize_html(str(article["body"]))
        summary = str(article.get("summary") or article.get("subtitle") or "")

        if self._adapter_type == "custom_rest":
            url = f"{self._base_url}/morana/publish"
            headers = {"Content-Type": "application/json"}
            payload: dict[str, Any] = {
                "title": article["title"],
                "body_html": body_html,
                "summary": summary,
                "status": mode,
            }
        else:
            url = f"{self._base_url}/jsonapi/node/{content_type}"
            headers = {"Content-Type": "application/vnd.api+json", "Accept": "application/vnd.api+json"}
            payload = {
                "data": {
                    "type": f"node--{content_type}",
                    "attributes": {
                        "title": article["title"],
                        "body": {"value": body_html, "format": self._body_format, "summary": summary},
                        "status": mode == "publish",
                    },
                }
            }
        headers["Authorization"] = self._auth_header()

        body = await self._post_with_retry(url, headers=headers, payload=payload, timeout_seconds=timeout_seconds)

        if self._adapter_type == "custom_rest":
            node_id = str(body.get("nid") or "")
            node_uuid = str(body.get("uuid") or "")
            node_url = body.get("url")
            drupal_status = body.get("status") or mode
        else:
            data = body.get("data") or {}
            node_id = str((data.get("attributes") or {}).get("drupal_internal__nid") or "")
            node_uuid = str(data.get("id") or "")
            node_url = ((data.get("links") or {}).get("self") or {}).get("href")
            drupal_status = "published" if mode == "publish" else "draft"

        result = {
            "node_id": node_id,
            "node_uuid": node_uuid,
            "url": node_url,
            "drupal_status": drupal_status,
            "published_at": datetime.now(timezone.utc).isoformat(),
        }
        logger.info("published article to Drupal", extra={"node_id": node_id, "drupal_status": drupal_status})
        return ProviderResult(
            output={"text": json.dumps(result, ensure_ascii=False), "published": True, **result},
            usage={},
            latency_ms=now_ms() - started,
            model="drupal",
            provider_response_id=node_uuid or None,
        )

    async def _post_with_retry(
        self,
        url: str,
        *,
        headers: dict[str, str],
        payload: dict[str, Any],
        timeout_seconds: float,
    ) -> dict[str, Any]:
        attempts = len(RETRY_DELAYS_SECONDS) + 1
        for attempt in range(attempts):
            try:
                async with httpx.AsyncClient(timeout=timeout_seconds) as client:
                    res = await client.post(url, headers=headers, json=payload)
            except httpx.TimeoutException as exc:
                if attempt + 1 < attempts:
                    await asyncio.sleep(RETRY_DELAYS_SECONDS[attempt])
                    continue
                raise ProviderTimeoutError(self.provider, timeout_seconds) from exc
            except httpx.HTTPError as exc:
                if attempt + 1 < attempts:
                    await asyncio.sleep(RETRY_DELAYS_SECONDS[attempt])
                    continue
                raise ProviderError(self.provider, f"Drupal request failed: {exc}") from exc

            if (res.status_code == 429 or res.status_code >= 500) and attempt + 1 < attempts:
                logger.warning(
                    "Drupal returned retryable status, retrying",
                    extra={"status_code": res.status_code, "attempt": attempt + 1},
                )
                await asyncio.sleep(RETRY_DELAYS_SECONDS[attempt])
                continue

            body = parse_json_or_raw(res.text, res.json)
            raise_for_provider_status(self.provider, res.status_code, body)
            return body
        raise ProviderError(self.provider, "Drupal request failed after retries")
