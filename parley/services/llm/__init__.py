"""Language-model backends for the agent orchestrator.

- GroqService: Groq hosted models with native tool calling
- HTTPChatService: any OpenAI-compatible chat completions server
"""

from parley.services.llm.exceptions import (
    LLMAuthenticationError,
    LLMConnectionError,
    LLMRateLimitError,
    LLMResponseError,
    LLMServiceError,
)
from parley.services.llm.groq import GroqService
from parley.services.llm.http import HTTPChatService
from parley.services.llm.protocol import (
    AgentAction,
    CallMetadata,
    LLMService,
    Message,
    Role,
    ToolCallRequest,
)
from parley.services.llm.rate_limiter import TokenBucketRateLimiter

__all__ = [
    # Services
    "GroqService",
    "HTTPChatService",
    # Protocol
    "LLMService",
    # Data types
    "AgentAction",
    "CallMetadata",
    "Message",
    "Role",
    "ToolCallRequest",
    # Utilities
    "TokenBucketRateLimiter",
    # Exceptions
    "LLMServiceError",
    "LLMRateLimitError",
    "LLMConnectionError",
    "LLMAuthenticationError",
    "LLMResponseError",
]
