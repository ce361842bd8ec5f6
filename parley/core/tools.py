"""Agent tools: definitions, registry and per-session invocation policy.

A tool is a named callable with a JSON-schema description the model can
request. Whether a session may run it, how long it may take and whether
its failure aborts the turn is decided by the session's ToolPolicy, never
by the model.
"""

from __future__ import annotations

import asyncio
import inspect
import json
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import httpx

from parley.config import Settings
from parley.logging_config import get_logger

logger: Any = get_logger(__name__)

EMPTY_PARAMETERS: dict[str, Any] = {"type": "object", "properties": {}, "required": []}


@dataclass
class Tool:
    """A tool the model can call."""

    name: str
    description: str
    handler: Callable[..., Any]
    parameters: dict[str, Any] = field(default_factory=lambda: dict(EMPTY_PARAMETERS))

    def to_openai_format(self) -> dict[str, Any]:
        """Convert to OpenAI tool format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def missing_arguments(self, arguments: dict[str, Any]) -> list[str]:
        required = self.parameters.get("required") or []
        return [name for name in required if name not in arguments]

    async def execute(self, arguments: dict[str, Any], *, timeout: float) -> Any:
        """Run the handler under ``timeout``.

        Sync handlers run in a worker thread so they cannot stall the loop.

        Raises:
            TimeoutError: If the handler runs past ``timeout``.
            ValueError: If required arguments are missing.
        """
        missing = self.missing_arguments(arguments)
        if missing:
            raise ValueError(f"Missing required arguments: {', '.join(missing)}")

        if inspect.iscoroutinefunction(self.handler):
            return await asyncio.wait_for(self.handler(**arguments), timeout=timeout)
        return await asyncio.wait_for(
            asyncio.to_thread(self.handler, **arguments), timeout=timeout
        )


class HTTPTool(Tool):
    """Tool backed by an HTTP endpoint.

    Arguments are POSTed as a JSON object; the JSON response body is the
    result.
    """

    def __init__(
        self,
        name: str,
        endpoint: str,
        *,
        description: str | None = None,
        parameters: dict[str, Any] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            name=name,
            description=description or f"Call the {name} service",
            handler=self._call,
            parameters=parameters or {"type": "object", "properties": {}},
        )
        self.endpoint = endpoint
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(transport=self._transport)
        return self._client

    async def _call(self, **arguments: Any) -> Any:
        response = await self.client.post(self.endpoint, json=arguments)
        response.raise_for_status()
        return response.json()

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None


def get_current_time(timezone: str = "UTC") -> dict[str, str]:
    """Built-in tool: current time, only UTC is supported."""
    if timezone.upper() != "UTC":
        raise ValueError(f"Unsupported timezone: {timezone}")
    now = datetime.now(UTC)
    return {"timezone": "UTC", "iso": now.isoformat(timespec="seconds")}


CURRENT_TIME_TOOL = Tool(
    name="get_current_time",
    description="Get the current date and time.",
    handler=get_current_time,
    parameters={
        "type": "object",
        "properties": {
            "timezone": {"type": "string", "description": "Timezone name, default UTC"},
        },
        "required": [],
    },
)


class ToolRegistry:
    """Tools known to the process, shared by every session."""

    def __init__(self, tools: list[Tool] | None = None) -> None:
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            logger.warning(f"Replacing registered tool {tool.name}")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def schemas(self, allowed: frozenset[str] | None = None) -> list[dict[str, Any]]:
        """OpenAI tool schemas, limited to ``allowed`` when given."""
        return [
            tool.to_openai_format()
            for name, tool in self._tools.items()
            if allowed is None or name in allowed
        ]

    async def close(self) -> None:
        for tool in self._tools.values():
            if isinstance(tool, HTTPTool):
                await tool.close()


@dataclass(frozen=True, slots=True)
class ToolPolicy:
    """What a session may invoke, and under which limits."""

    allow_list: frozenset[str] = frozenset()
    timeouts: dict[str, float] = field(default_factory=dict)
    default_timeout: float = 3.0
    critical: frozenset[str] = frozenset()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        allow_list: list[str] | None = None,
    ) -> ToolPolicy:
        return cls(
            allow_list=frozenset(
                allow_list if allow_list is not None else settings.tool_allow_list
            ),
            timeouts=dict(settings.tool_timeouts),
            default_timeout=settings.default_tool_timeout_seconds,
            critical=frozenset(settings.critical_tools),
        )

    def is_allowed(self, name: str) -> bool:
        return name in self.allow_list

    def timeout_for(self, name: str) -> float:
        return self.timeouts.get(name, self.default_timeout)

    def is_critical(self, name: str) -> bool:
        return name in self.critical


def format_tool_result(result: Any) -> str:
    """Serialize a tool result as message content for the model."""
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)


def build_registry(
    settings: Settings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ToolRegistry:
    """Registry with the built-in tools plus configured HTTP tools."""
    registry = ToolRegistry([CURRENT_TIME_TOOL])
    for name, endpoint in settings.tool_endpoints.items():
        registry.register(HTTPTool(name, endpoint, transport=transport))
    logger.info(f"Registered tools: {', '.join(registry.names)}")
    return registry
