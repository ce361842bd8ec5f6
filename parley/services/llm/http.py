"""OpenAI-compatible chat backend over HTTP (Ollama, vLLM, llama.cpp server)."""

from __future__ import annotations

import time
from typing import Any

import httpx

from parley.config import Settings, get_settings
from parley.logging_config import get_logger
from parley.services.llm.exceptions import (
    LLMAuthenticationError,
    LLMConnectionError,
    LLMRateLimitError,
    LLMResponseError,
    LLMServiceError,
)
from parley.services.llm.openai_format import format_messages, parse_action
from parley.services.llm.protocol import AgentAction, CallMetadata, Message

logger: Any = get_logger(__name__)


class HTTPChatService:
    """Chat completions with tool calling against a self-hosted server."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        base_url: str | None = None,
        model: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._base_url = (base_url or self._settings.llm_endpoint).rstrip("/")
        self._model = model or self._settings.llm_model
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Shared connection pool, created on first use."""
        if self._client is None:
            headers = {}
            if self._settings.llm_api_key:
                headers["Authorization"] = (
                    f"Bearer {self._settings.llm_api_key.get_secret_value()}"
                )
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                headers=headers,
                timeout=httpx.Timeout(self._settings.llm_timeout_seconds * 2),
                transport=self._transport,
            )
        return self._client

    async def next_action(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]],
    ) -> tuple[AgentAction, CallMetadata]:
        payload: dict[str, Any] = {
            "model": self._model,
            "messages": format_messages(messages),
            "temperature": self._settings.llm_temperature,
            "max_tokens": self._settings.llm_max_tokens,
            "stream": False,
        }
        if tools:
            payload["tools"] = tools

        metadata = CallMetadata(model=self._model)
        start_time = time.perf_counter()

        try:
            response = await self.client.post("/chat/completions", json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.error(f"Chat endpoint returned {status}")
            if status in (401, 403):
                raise LLMAuthenticationError("Chat endpoint rejected credentials") from e
            if status == 429:
                retry_after = e.response.headers.get("retry-after", "60")
                raise LLMRateLimitError(
                    "Rate limit exceeded",
                    retry_after=float(retry_after) if retry_after.isdigit() else 60.0,
                ) from e
            raise LLMServiceError(f"Chat endpoint error: {status}") from e
        except httpx.RequestError as e:
            logger.error(f"Chat endpoint unreachable: {e}")
            raise LLMConnectionError(f"Failed to reach chat endpoint: {e}") from e
        except ValueError as e:
            raise LLMResponseError(f"Invalid JSON from chat endpoint: {e}") from e

        metadata.latency_ms = (time.perf_counter() - start_time) * 1000

        choices = body.get("choices") or []
        if not choices:
            raise LLMResponseError("Chat endpoint returned no choices")

        metadata.finish_reason = choices[0].get("finish_reason")
        usage = body.get("usage") or {}
        metadata.prompt_tokens = usage.get("prompt_tokens")
        metadata.completion_tokens = usage.get("completion_tokens")
        metadata.total_tokens = usage.get("total_tokens")

        return parse_action(choices[0].get("message") or {}), metadata

    async def health_check(self) -> bool:
        try:
            response = await self.client.get("/models")
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.warning(f"Chat endpoint health check failed: {e}")
            return False

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
