"""Groq LLM service implementation with native tool calling."""

from __future__ import annotations

import time
from typing import Any

import groq
from groq import AsyncGroq

from parley.config import Settings, get_settings
from parley.logging_config import get_logger
from parley.services.llm.exceptions import (
    LLMAuthenticationError,
    LLMConnectionError,
    LLMRateLimitError,
    LLMServiceError,
)
from parley.services.llm.openai_format import format_messages, parse_action
from parley.services.llm.protocol import AgentAction, CallMetadata, Message
from parley.services.llm.rate_limiter import TokenBucketRateLimiter
from parley.services.llm.token_counter import estimate_request_tokens

logger: Any = get_logger(__name__)

# Groq free tier limits
GROQ_FREE_TIER_TPM = 6000  # Tokens per minute
GROQ_FREE_TIER_RPM = 30  # Requests per minute


class GroqService:
    """Groq LLM backend with rate limiting.

    One instance (and one AsyncGroq connection pool) is shared by every
    session; the rate limiter is the only shared state.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        model: str | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._model = model or self._settings.llm_model
        self._client: AsyncGroq | None = None
        self._rate_limiter = TokenBucketRateLimiter(
            tokens_per_minute=GROQ_FREE_TIER_TPM,
            requests_per_minute=GROQ_FREE_TIER_RPM,
        )

    @property
    def client(self) -> AsyncGroq:
        """Lazy initialization of AsyncGroq client."""
        if self._client is None:
            if not self._settings.groq_api_key:
                raise LLMAuthenticationError("Groq API key is not configured")
            self._client = AsyncGroq(
                api_key=self._settings.groq_api_key.get_secret_value(),
                timeout=self._settings.llm_timeout_seconds * 2,
                max_retries=0,  # Retries are owned by the agent orchestrator
            )
        return self._client

    async def next_action(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]],
    ) -> tuple[AgentAction, CallMetadata]:
        """Ask Groq for the next step of the turn.

        Raises:
            LLMRateLimitError: When rate limit exceeded
            LLMConnectionError: When API unreachable
            LLMAuthenticationError: When API key invalid
            LLMServiceError: For other API errors
        """
        api_messages = format_messages(messages)
        estimated = estimate_request_tokens(api_messages, tools) + self._settings.llm_max_tokens
        await self._rate_limiter.acquire(estimated)

        metadata = CallMetadata(model=self._model)
        request: dict[str, Any] = {
            "messages": api_messages,
            "model": self._model,
            "temperature": self._settings.llm_temperature,
            "max_tokens": self._settings.llm_max_tokens,
        }
        if tools:
            request["tools"] = tools
            request["tool_choice"] = "auto"

        start_time = time.perf_counter()
        try:
            response = await self.client.chat.completions.create(**request)

        except groq.RateLimitError as e:
            logger.warning(f"Groq rate limit hit: {e}")
            raise LLMRateLimitError(
                "Rate limit exceeded",
                retry_after=self._extract_retry_after(e),
            ) from e

        except groq.APIConnectionError as e:
            logger.error(f"Groq connection error: {e.__cause__}")
            raise LLMConnectionError("Failed to connect to Groq API") from e

        except groq.AuthenticationError as e:
            logger.error("Groq authentication failed")
            raise LLMAuthenticationError("Invalid Groq API key") from e

        except groq.APIStatusError as e:
            logger.error(f"Groq API error: {e.status_code} - {e.message}")
            raise LLMServiceError(f"Groq API error: {e.status_code}") from e

        metadata.latency_ms = (time.perf_counter() - start_time) * 1000

        if not response.choices:
            raise LLMServiceError("Empty response from Groq")

        choice = response.choices[0]
        metadata.finish_reason = choice.finish_reason
        if response.usage:
            metadata.prompt_tokens = response.usage.prompt_tokens
            metadata.completion_tokens = response.usage.completion_tokens
            metadata.total_tokens = response.usage.total_tokens
            self._rate_limiter.record_usage(estimated, response.usage.total_tokens)

        logger.debug(f"Groq call took {metadata.latency_ms:.1f}ms ({metadata.finish_reason})")
        return parse_action(choice.message.model_dump()), metadata

    def _extract_retry_after(self, error: groq.RateLimitError) -> float:
        """Extract retry-after from rate limit error."""
        if hasattr(error, "response") and error.response:
            retry_after = error.response.headers.get("retry-after")
            if retry_after:
                try:
                    return float(retry_after)
                except ValueError:
                    pass
        return 60.0

    async def health_check(self) -> bool:
        """Check if Groq is configured."""
        return bool(self._settings.groq_api_key)

    async def close(self) -> None:
        """Close the client connection."""
        if self._client:
            await self._client.close()
            self._client = None
