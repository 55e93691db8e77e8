"""OpenRouter streaming client used by invoice extraction."""

import json
import time
from collections.abc import AsyncIterator
from typing import Any

import httpx
from httpx_sse import aconnect_sse

from docportal.config import settings
from docportal.logger import get_logger

logger = get_logger(__name__)

RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)


class OpenRouterStreamError(Exception):
    """Raised when OpenRouter streaming fails."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


def _content_from_chunk(chunk_data: dict[str, Any], model: str) -> str:
    if "error" in chunk_data:
        error_info = chunk_data["error"]
        error_msg = error_info.get("message", str(error_info))
        error_code = error_info.get("code", "unknown")
        logger.error("OpenRouter mid-stream error", error_code=error_code, error_message=error_msg, model=model)
        raise OpenRouterStreamError(
            f"Mid-stream error: {error_msg}", retryable=error_code in ("server_error", "timeout")
        )

    choices = chunk_data.get("choices", [])
    if not choices:
        return ""
    choice = choices[0]
    if choice.get("finish_reason") == "error":
        raise OpenRouterStreamError("Stream terminated with error", retryable=True)
    return choice.get("delta", {}).get("content", "") or ""


async def stream_openrouter_json(
    messages: list[dict[str, Any]],
    model: str,
    *,
    api_key: str | None = None,
    base_url: str | None = None,
    timeout: float = 180.0,
    connect_timeout: float = 10.0,
) -> AsyncIterator[str]:
    """Stream chat completions in JSON mode, yielding delta content chunks."""
    api_key = api_key or settings.openrouter_api_key
    if not api_key:
        raise OpenRouterStreamError("OpenRouter API key not configured", retryable=False)
    base_url = base_url or settings.openrouter_base_url

    payload: dict[str, Any] = {
        "model": model,
        "stream": True,
        "messages": messages,
        "response_format": {"type": "json_object"},
    }
    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
        "X-Title": "docportal ingestion",
    }

    start_time = time.perf_counter()
    chunk_count = 0
    total_chars = 0

    async with (
        httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=connect_timeout)) as client,
        aconnect_sse(client, "POST", f"{base_url}/chat/completions", headers=headers, json=payload) as event_source,
    ):
        status_code = event_source.response.status_code
        if status_code != 200:
            error_text = await event_source.response.aread()
            raise OpenRouterStreamError(
                f"HTTP {status_code}: {error_text.decode('utf-8', errors='replace')}",
                retryable=status_code in RETRYABLE_STATUS_CODES,
            )

        async for event in event_source.aiter_sse():
            # SSE comments such as ": OPENROUTER PROCESSING"
            if event.data.startswith(":") or not event.data.strip():
                continue
            if event.data == "[DONE]":
                break

            chunk_count += 1
            try:
                chunk_data = json.loads(event.data)
            except json.JSONDecodeError:
                logger.warning("Failed to parse JSON in SSE event", data_preview=event.data[:200])
                continue

            content = _content_from_chunk(chunk_data, model)
            if content:
                total_chars += len(content)
                yield content

    logger.info(
        "OpenRouter streaming completed",
        model=model,
        duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
        chunk_count=chunk_count,
        total_chars=total_chars,
    )


async def accumulate_stream(stream: AsyncIterator[str]) -> str:
    """Accumulate all chunks from a stream into a single string."""
    chunks = []
    async for chunk in stream:
        chunks.append(chunk)
    return "".join(chunks)
