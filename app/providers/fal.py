from __future__ import annotations

import asyncio
import time
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

FAL_QUEUE_BASE_URL = "https://queue.fal.run"

VIDEO_OPERATION_ENDPOINTS = {
    "text2video": "xai/grok-imagine-video/text-to-video",
    "img2video": "xai/grok-imagine-video/image-to-video",
    "video2video": "xai/grok-imagine-video/edit-video",
}

ASPECT_RATIO_IMAGE_SIZES = {
    "1:1": "square_hd",
    "16:9": "landscape_16_9",
    "9:16": "portrait_16_9",
    "4:3": "landscape_4_3",
    "3:4": "portrait_4_3",
}


async def run_queue_job(
    *,
    provider: str,
    api_key: str,
    endpoint: str,
    payload: dict[str, Any],
    timeout_seconds: float,
    poll_interval_seconds: float,
) -> tuple[str | None, dict[str, Any]]:
    """Submit to the fal queue, poll the status URL until COMPLETED and fetch the result."""
    headers = {"Authorization": f"Key {api_key}"}
    deadline = time.monotonic() + timeout_seconds
    try:
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            res = await client.post(
                f"{FAL_QUEUE_BASE_URL}/{endpoint}",
                headers={**headers, "Content-Type": "application/json"},
                json=payload,
            )
            submitted = parse_json_or_raw(res.text, res.json)
            raise_for_provider_status(provider, res.status_code, submitted)
            request_id = submitted.get("request_id")
            status_url = submitted.get("status_url")
            response_url = submitted.get("response_url")
            if not request_id or not status_url or not response_url:
                raise ProviderError(provider, "fal.ai submit response is missing queue urls")

            while True:
                res = await client.get(status_url, headers=headers)
                status_body = parse_json_or_raw(res.text, res.json)
                raise_for_provider_status(provider, res.status_code, status_body)
                status = status_body.get("status")
                if status == "COMPLETED":
                    break
                if status not in {"IN_QUEUE", "IN_PROGRESS"}:
                    raise ProviderError(provider, f"fal.ai job ended with status {status!r}")
                if time.monotonic() >= deadline:
                    raise ProviderTimeoutError(provider, timeout_seconds)
                await asyncio.sleep(poll_interval_seconds)

            res = await client.get(response_url, headers=headers)
            result = parse_json_or_raw(res.text, res.json)
            raise_for_provider_status(provider, res.status_code, result)
    except httpx.TimeoutException as exc:
        raise ProviderTimeoutError(provider, timeout_seconds) from exc
    except httpx.HTTPError as exc:
        raise ProviderError(provider, f"fal.ai request failed: {exc}") from exc
    return request_id, result


class FalImageAdapter:
    """Flux image generation. params: prompt, model, image_size, num_images."""

    provider = "fal"

    def __init__(self, *, api_key: str | None, default_model: str = "fal-ai/flux/schnell", poll_interval_ms: int = 2000):
        self._api_key = api_key
        self._default_model = default_model
        self._poll_interval_seconds = max(poll_interval_ms, 0) / 1000

    async def invoke(self, params: dict[str, Any], *, timeout_seconds: float) -> ProviderResult:
        prompt = str(params.get("prompt") or "")
        if not prompt.strip():
            raise ProviderError(self.provider, "No prompt provided for image generation")
        if not self._api_key:
            raise ProviderError(self.provider, "FAL_KEY is not configured")

        model = params.get("model") or self._default_model
        image_size = params.get("image_size") or "landscape_16_9"
        if isinstance(image_size, str):
            image_size = ASPECT_RATIO_IMAGE_SIZES.get(image_size, image_size)
        payload: dict[str, Any] = {
            "prompt": prompt,
            "image_size": image_size,
            "num_images": int(params.get("num_images") or 1),
            "enable_safety_checker": True,
        }

        started = now_ms()
        request_id, result = await run_queue_job(
            provider=self.provider,
            api_key=self._api_key,
            endpoint=model,
            payload=payload,
            timeout_seconds=timeout_seconds,
            poll_interval_seconds=self._poll_interval_seconds,
        )
        images = [
            {"url": image.get("url"), "width": image.get("width"), "height": image.get("height")}
            for image in (result.get("images") or [])
            if isinstance(image, dict) and image.get("url")
        ]
        if not images:
            raise ProviderError(self.provider, "fal.ai returned no images")
        return ProviderResult(
            output={"text": images[0]["url"], "image_url": images[0]["url"], "images": images, "prompt": prompt},
            usage={"images": len(images)},
            latency_ms=now_ms() - started,
            model=model,
            provider_response_id=request_id,
        )


class FalVideoAdapter:
    """Grok Imagine video on fal. params: prompt, operation, duration, resolution,
    aspect_ratio, image_url (img2video), video_url (video2video).
    """

    provider = "fal"

    def __init__(self, *, api_key: str | None, poll_interval_ms: int = 2000):
        self._api_key = api_key
        self._poll_interval_seconds = max(poll_interval_ms, 0) / 1000

    async def invoke(self, params: dict[str, Any], *, timeout_seconds: float) -> ProviderResult:
        operation = params.get("operation") or "text2video"
        endpoint = VIDEO_OPERATION_ENDPOINTS.get(operation)
        if endpoint is None:
            raise ProviderError(self.provider, f"Unknown video operation: {operation}")
        prompt = str(params.get("prompt") or "")
        if not prompt.strip():
            raise ProviderError(self.provider, "No prompt provided for video generation")
        if not self._api_key:
            raise ProviderError(self.provider, "FAL_KEY is not configured")

        resolution = params.get("resolution") or "720p"
        duration = int(params.get("duration") or 6)
        payload: dict[str, Any] = {"prompt": prompt, "duration": duration, "resolution": resolution}
        if params.get("aspect_ratio"):
            payload["aspect_ratio"] = params["aspect_ratio"]
        if operation == "img2video":
            if not params.get("image_url"):
                raise ProviderError(self.provider, "img2video requires an input image")
            payload["image_url"] = params["image_url"]
        if operation == "video2video":
            if not params.get("video_url"):
                raise ProviderError(self.provider, "video2video requires an input video")
            payload["video_url"] = params["video_url"]

        started = now_ms()
        request_id, result = await run_queue_job(
            provider=self.provider,
            api_key=self._api_key,
            endpoint=endpoint,
            payload=payload,
            timeout_seconds=timeout_seconds,
            poll_interval_seconds=self._poll_interval_seconds,
        )
        video = result.get("video") if isinstance(result.get("video"), dict) else {}
        video_url = video.get("url")
        if not video_url:
            raise ProviderError(self.provider, "fal.ai returned no video")
        video_seconds = float(video.get("duration") or duration)
        return ProviderResult(
            output={
                "text": video_url,
                "video_url": video_url,
                "duration": video_seconds,
                "width": video.get("width"),
                "height": video.get("height"),
                "operation": operation,
            },
            usage={"video_seconds": video_seconds},
            latency_ms=now_ms() - started,
            model=f"grok-imagine-video-{resolution}",
            provider_response_id=request_id,
        )
