"""Conversion between our message types and the OpenAI chat wire format.

Groq and OpenAI-compatible servers (Ollama, vLLM) share this format.
"""

from __future__ import annotations

import json
from typing import Any

from parley.services.llm.exceptions import LLMResponseError
from parley.services.llm.protocol import AgentAction, Message, Role, ToolCallRequest


def format_messages(messages: list[Message]) -> list[dict[str, Any]]:
    """Format messages for a chat completions request."""
    api_messages: list[dict[str, Any]] = []

    for msg in messages:
        entry: dict[str, Any] = {"role": msg.role.value, "content": msg.content}

        if msg.role == Role.ASSISTANT and msg.tool_calls:
            entry["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {
                        "name": call.name,
                        "arguments": json.dumps(call.arguments),
                    },
                }
                for call in msg.tool_calls
            ]
        elif msg.role == Role.TOOL:
            entry["tool_call_id"] = msg.tool_call_id
            if msg.name:
                entry["name"] = msg.name

        api_messages.append(entry)

    return api_messages


def parse_action(message: dict[str, Any]) -> AgentAction:
    """Turn a response ``choices[0].message`` dict into an AgentAction.

    Raises:
        LLMResponseError: If tool arguments are not a JSON object, or the
            message has neither content nor tool calls.
    """
    raw_calls = message.get("tool_calls") or []
    calls: list[ToolCallRequest] = []

    for index, raw in enumerate(raw_calls):
        function = raw.get("function") or {}
        name = function.get("name")
        if not name:
            raise LLMResponseError("Tool call without a function name")

        arguments = function.get("arguments") or {}
        if isinstance(arguments, str):
            try:
                arguments = json.loads(arguments) if arguments.strip() else {}
            except json.JSONDecodeError as e:
                raise LLMResponseError(f"Invalid JSON arguments for {name}: {e}") from e
        if not isinstance(arguments, dict):
            raise LLMResponseError(f"Arguments for {name} must be an object")

        calls.append(
            ToolCallRequest(
                id=raw.get("id") or f"call_{index}",
                name=name,
                arguments=arguments,
            )
        )

    if calls:
        return AgentAction(tool_calls=tuple(calls))

    content = message.get("content")
    if content is None:
        raise LLMResponseError("Model returned neither content nor tool calls")
    return AgentAction(reply=content.strip())
