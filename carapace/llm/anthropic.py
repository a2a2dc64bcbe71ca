"""Anthropic Messages API provider over httpx.

Handles auth header selection, one retry on rate limits and server
errors, and SSE stream decoding.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import httpx
from pydantic import TypeAdapter, ValidationError

from carapace.config import Settings
from carapace.errors import ProviderError, StreamError
from carapace.llm.content import ContentBlock
from carapace.llm.models import LLMRequest, LLMResponse, TokenUsage
from carapace.llm.stream import StreamEvent, parse_sse_event

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"

_RETRY_STATUSES = (429, 500, 529)
_MAX_RETRY_AFTER = 30.0

_OAUTH_MARKER = "sk-ant-oat"

CONTEXT_WINDOWS: dict[str, int] = {
    "claude-opus-4-6": 200_000,
    "claude-sonnet-4-5-20250929": 200_000,
    "claude-haiku-4-5-20251001": 200_000,
    "claude-3-5-sonnet-20241022": 200_000,
    "claude-3-5-haiku-20241022": 200_000,
    "claude-3-opus-20240229": 200_000,
    "claude-3-sonnet-20240229": 200_000,
    "claude-3-5-sonnet-20240620": 200_000,
    "claude-3-haiku-20240307": 200_000,
}

# USD per million tokens (input, output)
PRICING: dict[str, tuple[float, float]] = {
    "claude-opus-4-6": (15.0, 75.0),
    "claude-sonnet-4-5-20250929": (3.0, 15.0),
    "claude-haiku-4-5-20251001": (0.80, 4.0),
    "claude-3-5-sonnet-20241022": (3.0, 15.0),
    "claude-3-5-haiku-20241022": (0.80, 4.0),
    "claude-3-opus-20240229": (15.0, 75.0),
    "claude-3-sonnet-20240229": (3.0, 15.0),
    "claude-3-5-sonnet-20240620": (3.0, 15.0),
    "claude-3-haiku-20240307": (0.25, 1.25),
}

_content_adapter = TypeAdapter(list[ContentBlock])


def build_headers(api_key: str, auth_token: str) -> dict[str, str]:
    """Auth headers for an API key or OAuth token.

    An explicit auth token always uses Bearer. OAuth tokens
    (sk-ant-oat*) need Bearer plus the oauth beta header even when
    passed as the API key; plain keys use x-api-key.
    """
    headers: dict[str, str] = {
        "anthropic-version": _API_VERSION,
        "content-type": "application/json",
    }
    token = auth_token or (api_key if _OAUTH_MARKER in api_key else "")
    if token:
        headers["authorization"] = f"Bearer {token}"
        if _OAUTH_MARKER in token:
            headers["anthropic-beta"] = "oauth-2025-04-20"
            headers["anthropic-dangerous-direct-browser-access"] = "true"
    elif api_key:
        headers["x-api-key"] = api_key
    else:
        logger.warning(
            "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
            "API calls will fail"
        )
    return headers


def _error_details(status: int, body: bytes) -> tuple[str, str]:
    try:
        error = json.loads(body).get("error", {})
        return error.get("type", "unknown"), error.get("message", "unknown error")
    except (ValueError, AttributeError):
        return "http_error", f"HTTP {status}: {body[:500].decode('utf-8', errors='replace')}"


def _retry_delay(response: httpx.Response) -> float:
    """Seconds to wait from a retry-after header, capped.

    Only the delta-seconds form is honoured; an HTTP-date or garbage
    falls back to one second.
    """
    try:
        delay = float(response.headers.get("retry-after", "1"))
    except ValueError:
        delay = 1.0
    return min(max(delay, 0.0), _MAX_RETRY_AFTER)


class AnthropicProvider:
    name = "anthropic"

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.default_model = settings.model
        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)
        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=build_headers(settings.anthropic_api_key, settings.anthropic_auth_token),
            timeout=timeout,
            limits=limits,
            transport=transport,
        )

    async def close(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Model metadata
    # ------------------------------------------------------------------

    def context_window(self, model: str) -> int | None:
        return CONTEXT_WINDOWS.get(model)

    def calculate_cost(self, model: str, input_tokens: int, output_tokens: int) -> float:
        prices = PRICING.get(model)
        if prices is None:
            return 0.0
        input_price, output_price = prices
        return (input_tokens / 1_000_000) * input_price + (output_tokens / 1_000_000) * output_price

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    async def complete(self, request: LLMRequest) -> LLMResponse:
        """Non-streaming call with one retry on 429/500/529 or timeout."""
        payload = request.to_payload()
        payload.pop("stream", None)

        last_error: ProviderError | None = None
        for attempt in range(2):  # initial + 1 retry
            try:
                response = await self._http.post("/v1/messages", json=payload)
            except httpx.TimeoutException as e:
                last_error = ProviderError(f"API request timed out: {e}", error_type="timeout")
                if attempt == 0:
                    logger.warning("API timeout, retrying: %s", e)
                    await asyncio.sleep(1)
                    continue
                break
            except httpx.HTTPError as e:
                raise ProviderError(f"HTTP error: {e}", error_type="transport") from e

            if response.status_code == 200:
                return self._parse_response(response.json())

            error_type, error_msg = _error_details(response.status_code, response.content)
            if response.status_code in _RETRY_STATUSES and attempt == 0:
                retry_after = _retry_delay(response)
                logger.warning(
                    "API error %d (%s), retrying in %.1fs: %s",
                    response.status_code, error_type, retry_after, error_msg,
                )
                await asyncio.sleep(retry_after)
                continue

            last_error = ProviderError(
                f"Anthropic API error ({response.status_code}): {error_type} - {error_msg}",
                status=response.status_code,
                error_type=error_type,
            )
            break

        raise last_error or ProviderError("API call failed with unknown error")

    async def stream(self, request: LLMRequest) -> AsyncIterator[StreamEvent]:
        """Streaming call. Yields typed events parsed from SSE data lines.

        A 429/500/529 on the opening request is retried once, before any
        event has been yielded.
        """
        payload = request.to_payload()
        payload["stream"] = True

        try:
            for attempt in range(2):  # initial + 1 retry
                async with self._http.stream("POST", "/v1/messages", json=payload) as response:
                    if response.status_code != 200:
                        body = await response.aread()
                        error_type, error_msg = _error_details(response.status_code, body)
                        if response.status_code in _RETRY_STATUSES and attempt == 0:
                            retry_after = _retry_delay(response)
                            logger.warning(
                                "Stream API error %d (%s), retrying in %.1fs: %s",
                                response.status_code, error_type, retry_after, error_msg,
                            )
                            await asyncio.sleep(retry_after)
                            continue
                        raise ProviderError(
                            f"Anthropic API error ({response.status_code}): {error_type} - {error_msg}",
                            status=response.status_code,
                            error_type=error_type,
                        )

                    async for line in response.aiter_lines():
                        if not line.startswith("data: "):
                            continue
                        try:
                            data = json.loads(line[6:])
                        except json.JSONDecodeError:
                            logger.warning("Skipping undecodable SSE line: %.200s", line)
                            continue
                        event = parse_sse_event(data)
                        if event is not None:
                            yield event
                    return
        except httpx.HTTPError as e:
            raise StreamError(f"Stream transport error: {e}", error_type="transport") from e

    @staticmethod
    def _parse_response(data: dict[str, Any]) -> LLMResponse:
        try:
            content = _content_adapter.validate_python(
                [b for b in data.get("content", []) if b.get("type") in ("text", "tool_use")]
            )
        except ValidationError as e:
            raise ProviderError(f"Malformed API response: {e}") from e
        usage = data.get("usage") or {}
        return LLMResponse(
            id=data.get("id", ""),
            model=data.get("model", ""),
            content=content,
            stop_reason=data.get("stop_reason"),
            usage=TokenUsage(
                input_tokens=usage.get("input_tokens", 0),
                output_tokens=usage.get("output_tokens", 0),
            ),
        )
