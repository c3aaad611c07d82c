"""Model client -- direct httpx calls to the Anthropic Messages API.

Sends a system prompt, the working conversation and the tool catalog,
and returns the raw content blocks, stop reason and token usage.
Retry policy belongs here; the orchestration loop never retries.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from magma.api.schemas import Turn
from magma.config import Settings
from magma.errors import ModelCallError

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"

_RETRYABLE_STATUS = (429, 500, 529)
_MAX_RETRY_AFTER = 30.0


@dataclass
class ModelResponse:
    """Parsed response from the Messages API."""

    content: list[dict[str, Any]]  # Raw content blocks
    stop_reason: str  # end_turn, max_tokens, tool_use, stop_sequence
    usage: dict[str, int] | None = None


class ModelClient:
    """Thin async client for the Messages API with one retry on transient errors."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._http: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        settings = self._settings
        headers: dict[str, str] = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }

        if settings.anthropic_auth_token:
            headers["authorization"] = f"Bearer {settings.anthropic_auth_token}"
        elif settings.anthropic_api_key:
            headers["x-api-key"] = settings.anthropic_api_key
        else:
            logger.warning(
                "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
                "model calls will fail"
            )

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)

        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
        )
        auth_type = "Bearer token" if settings.anthropic_auth_token else "API key"
        logger.info("Model client initialized (model: %s, auth: %s)", settings.model, auth_type)

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    def build_payload(
        self,
        system_prompt: str,
        turns: list[Turn],
        tools: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self._settings.model,
            "max_tokens": self._settings.max_tokens,
            "messages": [turn.to_api() for turn in turns],
        }
        if system_prompt:
            payload["system"] = system_prompt
        if tools:
            payload["tools"] = tools
        return payload

    async def send(
        self,
        system_prompt: str,
        turns: list[Turn],
        tools: list[dict[str, Any]] | None = None,
    ) -> ModelResponse:
        """Call the Messages API, retrying once on 429/500/529 or timeout.

        Raises ModelCallError on any persistent failure.
        """
        if not self._http:
            raise ModelCallError("Model client not initialized -- call start() first")

        payload = self.build_payload(system_prompt, turns, tools)

        last_error: ModelCallError | None = None
        for attempt in range(2):  # initial + 1 retry
            try:
                response = await self._http.post("/v1/messages", json=payload)
            except httpx.TimeoutException as e:
                last_error = ModelCallError(f"Model request timed out: {e}")
                if attempt == 0:
                    logger.warning("Model API timeout, retrying: %s", e)
                    await asyncio.sleep(1)
                    continue
                break
            except httpx.HTTPError as e:
                # Connection errors are not retried
                last_error = ModelCallError(f"HTTP error calling model: {e}")
                break

            if response.status_code == 200:
                data = response.json()
                try:
                    return ModelResponse(
                        content=data["content"],
                        stop_reason=data["stop_reason"],
                        usage=data.get("usage"),
                    )
                except (KeyError, TypeError) as e:
                    raise ModelCallError(f"Malformed model response: missing {e}") from e

            try:
                error_data = response.json()
                error_type = error_data.get("error", {}).get("type", "unknown")
                error_msg = error_data.get("error", {}).get("message", "unknown error")
            except ValueError:
                error_type = "http_error"
                error_msg = f"HTTP {response.status_code}: {response.text[:500]}"

            if response.status_code in _RETRYABLE_STATUS and attempt == 0:
                retry_after = min(float(response.headers.get("retry-after", "1")), _MAX_RETRY_AFTER)
                logger.warning(
                    "Model API error %d (%s), retrying in %.1fs: %s",
                    response.status_code,
                    error_type,
                    retry_after,
                    error_msg,
                )
                await asyncio.sleep(retry_after)
                continue

            last_error = ModelCallError(
                f"Anthropic API error ({response.status_code}): {error_type} - {error_msg}"
            )
            break

        raise last_error or ModelCallError("Model call failed with unknown error")
