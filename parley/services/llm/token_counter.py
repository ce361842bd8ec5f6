"""Token estimation for rate limiting.

Backends don't expose a tokenizer, so we estimate from character counts.
Actual usage comes from the API response.
"""

from typing import Any


def estimate_tokens(text: str) -> int:
    """Estimate token count: ~4 characters per token plus a 10% buffer."""
    if not text:
        return 0
    return int(len(text) / 4 * 1.1) + 1


def estimate_request_tokens(api_messages: list[dict[str, Any]], tools: list[dict]) -> int:
    """Estimate prompt tokens for a chat request including tool schemas."""
    total = 0
    for msg in api_messages:
        total += estimate_tokens(msg.get("content") or "")
        for call in msg.get("tool_calls") or []:
            total += estimate_tokens(call["function"]["arguments"])
    # Schemas are sent as JSON; ~1 token per 4 characters holds reasonably well
    total += sum(estimate_tokens(str(tool)) for tool in tools)
    return total
