"""Tests for the agent orchestrator's bounded tool loop."""

from __future__ import annotations

import asyncio

import pytest

from parley.core.agent import AgentOrchestrator, TurnOutcome
from parley.core.asr import Transcript
from parley.core.exceptions import (
    BackendTimeoutError,
    PipelineError,
    ToolInvocationFailedError,
)
from parley.core.session import Session
from parley.core.tools import Tool, ToolPolicy, ToolRegistry
from parley.services.llm.exceptions import LLMConnectionError
from parley.services.llm.protocol import AgentAction, Role, ToolCallRequest

HANG = "hang"


def call(name: str, call_id: str = "call_1", **arguments) -> AgentAction:
    return AgentAction(tool_calls=(ToolCallRequest(id=call_id, name=name, arguments=arguments),))


def transcript(text: str = "what time is it", utterance_id: int = 0) -> Transcript:
    return Transcript(session_id="s1", utterance_id=utterance_id, text=text, is_final=True)


class TestAgentOrchestrator:
    """Tests for AgentOrchestrator.plan."""

    @pytest.fixture
    def lookups(self) -> list[dict]:
        return []

    @pytest.fixture
    def registry(self, lookups: list[dict]) -> ToolRegistry:
        async def lookup(query: str = "") -> dict:
            lookups.append({"query": query})
            return {"answer": f"result for {query}"}

        async def slow() -> str:
            await asyncio.sleep(1)
            return "late"

        def broken() -> str:
            raise RuntimeError("database down")

        return ToolRegistry(
            [
                Tool(name="lookup", description="Look something up", handler=lookup),
                Tool(name="slow", description="Takes too long", handler=slow),
                Tool(name="broken", description="Always fails", handler=broken),
                Tool(name="secret", description="Not for this session", handler=lambda: "x"),
            ]
        )

    @pytest.fixture
    def session(self) -> Session:
        return Session(
            session_id="s1",
            tool_policy=ToolPolicy(
                allow_list=frozenset({"lookup", "slow", "broken"}),
                timeouts={"slow": 0.05},
                default_timeout=0.5,
            ),
        )

    def agent(self, llm, registry, **kwargs) -> AgentOrchestrator:
        kwargs.setdefault("llm_timeout", 0.2)
        kwargs.setdefault("system_prompt", "Be brief.")
        kwargs.setdefault("exhausted_reply", "I give up.")
        return AgentOrchestrator(llm, registry, **kwargs)

    @pytest.mark.asyncio
    async def test_direct_reply(self, llm_factory, registry, session) -> None:
        llm = llm_factory(AgentAction(reply="It is noon."))
        turn = await self.agent(llm, registry).plan(session, transcript())

        assert turn.outcome == TurnOutcome.REPLIED
        assert turn.reply == "It is noon."
        assert turn.iterations == 1
        assert turn.invocations == []
        assert turn.is_terminal

    @pytest.mark.asyncio
    async def test_prompt_and_tools_sent(self, llm_factory, registry, session) -> None:
        llm = llm_factory(AgentAction(reply="hi"))
        await self.agent(llm, registry).plan(session, transcript("hello"))

        messages = llm.calls[0]
        assert messages[0].role == Role.SYSTEM
        assert messages[-1].role == Role.USER
        assert messages[-1].content == "hello"

        offered = {tool["function"]["name"] for tool in llm.tools[0]}
        assert offered == {"lookup", "slow", "broken"}

    @pytest.mark.asyncio
    async def test_tool_result_fed_back(self, llm_factory, registry, session, lookups) -> None:
        llm = llm_factory(call("lookup", query="weather"), AgentAction(reply="Sunny."))
        turn = await self.agent(llm, registry).plan(session, transcript())

        assert turn.reply == "Sunny."
        assert turn.iterations == 2
        assert lookups == [{"query": "weather"}]
        assert turn.invocations[0].succeeded
        assert turn.invocations[0].result == {"answer": "result for weather"}

        second = llm.calls[1]
        assert second[-2].role == Role.ASSISTANT
        assert second[-2].tool_calls[0].name == "lookup"
        assert second[-1].role == Role.TOOL
        assert second[-1].tool_call_id == "call_1"
        assert "result for weather" in second[-1].content

    @pytest.mark.asyncio
    async def test_tool_calls_run_in_order(self, llm_factory, registry, session, lookups) -> None:
        action = AgentAction(
            tool_calls=(
                ToolCallRequest(id="a", name="lookup", arguments={"query": "first"}),
                ToolCallRequest(id="b", name="lookup", arguments={"query": "second"}),
            )
        )
        llm = llm_factory(action, AgentAction(reply="done"))
        turn = await self.agent(llm, registry).plan(session, transcript())

        assert [i.call_id for i in turn.invocations] == ["a", "b"]
        assert lookups == [{"query": "first"}, {"query": "second"}]

    @pytest.mark.asyncio
    async def test_history_recorded(self, llm_factory, registry, session) -> None:
        llm = llm_factory(AgentAction(reply="first answer"), AgentAction(reply="second answer"))
        agent = self.agent(llm, registry)

        await agent.plan(session, transcript("one", 0))
        await agent.plan(session, transcript("two", 1))

        assert [m.content for m in session.history] == [
            "one",
            "first answer",
            "two",
            "second answer",
        ]
        assert [m.content for m in llm.calls[1][1:3]] == ["one", "first answer"]

    @pytest.mark.asyncio
    async def test_exhaustion(self, llm_factory, registry, session, lookups) -> None:
        """Test a model that never stops calling tools gets the canned reply."""
        llm = llm_factory(default=call("lookup", query="again"))
        turn = await self.agent(llm, registry, max_iterations=5).plan(session, transcript())

        assert turn.outcome == TurnOutcome.EXHAUSTED
        assert turn.reply == "I give up."
        assert turn.error_code == "planning_exhausted"
        assert turn.iterations == 5
        assert len(llm.calls) == 5
        assert len(lookups) == 4
        assert len(turn.invocations) == 5
        assert turn.invocations[-1].skipped
        assert not turn.invocations[-1].succeeded

    @pytest.mark.asyncio
    async def test_last_iteration_tools_not_run(self, llm_factory, registry, lookups) -> None:
        session = Session(
            session_id="s1",
            tool_policy=ToolPolicy(
                allow_list=frozenset({"lookup", "broken"}), critical=frozenset({"broken"})
            ),
        )
        llm = llm_factory(call("lookup", query="x"), call("broken"))

        turn = await self.agent(llm, registry, max_iterations=2).plan(session, transcript())

        assert lookups == [{"query": "x"}]
        assert [i.name for i in turn.invocations] == ["lookup", "broken"]
        assert not turn.invocations[0].skipped
        assert turn.invocations[1].skipped
        assert turn.outcome == TurnOutcome.EXHAUSTED

    @pytest.mark.asyncio
    async def test_denied_tool_never_runs(self, llm_factory, registry, session) -> None:
        llm = llm_factory(call("secret"), AgentAction(reply="ok"))
        turn = await self.agent(llm, registry).plan(session, transcript())

        invocation = turn.invocations[0]
        assert not invocation.succeeded
        assert "not permitted" in invocation.error
        assert invocation.result is None
        assert "not permitted" in llm.calls[1][-1].content
        assert turn.outcome == TurnOutcome.REPLIED

    @pytest.mark.asyncio
    async def test_unknown_tool_treated_as_denied(self, llm_factory, registry) -> None:
        session = Session(
            session_id="s1", tool_policy=ToolPolicy(allow_list=frozenset({"ghost"}))
        )
        llm = llm_factory(call("ghost"), AgentAction(reply="ok"))
        turn = await self.agent(llm, registry).plan(session, transcript())

        assert "not permitted" in turn.invocations[0].error

    @pytest.mark.asyncio
    async def test_tool_timeout_fed_back(self, llm_factory, registry, session) -> None:
        llm = llm_factory(call("slow"), AgentAction(reply="Sorry, that took too long."))
        turn = await self.agent(llm, registry).plan(session, transcript())

        assert "timed out" in turn.invocations[0].error
        assert turn.outcome == TurnOutcome.REPLIED

    @pytest.mark.asyncio
    async def test_tool_error_fed_back(self, llm_factory, registry, session) -> None:
        llm = llm_factory(call("broken"), AgentAction(reply="It failed."))
        turn = await self.agent(llm, registry).plan(session, transcript())

        assert "database down" in turn.invocations[0].error
        assert llm.calls[1][-1].content.startswith("Error:")

    @pytest.mark.asyncio
    async def test_missing_required_argument(self, llm_factory, session) -> None:
        tool = Tool(
            name="lookup",
            description="Needs a query",
            handler=lambda query: query,
            parameters={
                "type": "object",
                "properties": {"query": {"type": "string"}},
                "required": ["query"],
            },
        )
        llm = llm_factory(call("lookup"), AgentAction(reply="ok"))
        turn = await self.agent(llm, ToolRegistry([tool])).plan(session, transcript())

        assert "query" in turn.invocations[0].error

    @pytest.mark.asyncio
    async def test_critical_tool_failure_aborts(self, llm_factory, registry) -> None:
        session = Session(
            session_id="s1",
            tool_policy=ToolPolicy(
                allow_list=frozenset({"broken"}), critical=frozenset({"broken"})
            ),
        )
        llm = llm_factory(call("broken"), AgentAction(reply="unreachable"))

        with pytest.raises(ToolInvocationFailedError) as exc_info:
            await self.agent(llm, registry).plan(session, transcript())

        error = exc_info.value
        assert error.critical
        assert error.tool_name == "broken"
        assert error.turn.outcome == TurnOutcome.FAILED
        assert len(llm.calls) == 1
        assert session.history == []

    @pytest.mark.asyncio
    async def test_llm_timeout_retried_once(self, llm_factory, registry, session) -> None:
        llm = llm_factory(HANG, AgentAction(reply="made it"))
        turn = await self.agent(llm, registry, llm_timeout=0.05).plan(session, transcript())

        assert turn.reply == "made it"
        assert len(llm.calls) == 2

    @pytest.mark.asyncio
    async def test_llm_double_timeout_raises(self, llm_factory, registry, session) -> None:
        llm = llm_factory(HANG, HANG)

        with pytest.raises(BackendTimeoutError) as exc_info:
            await self.agent(llm, registry, llm_timeout=0.05).plan(session, transcript())
        assert exc_info.value.stage == "llm"

    @pytest.mark.asyncio
    async def test_llm_error_surfaces_as_pipeline_error(
        self, llm_factory, registry, session
    ) -> None:
        llm = llm_factory(LLMConnectionError("refused"))

        with pytest.raises(PipelineError, match="refused"):
            await self.agent(llm, registry).plan(session, transcript())

    def test_rejects_zero_iterations(self, llm_factory, registry) -> None:
        with pytest.raises(ValueError):
            AgentOrchestrator(llm_factory(), registry, max_iterations=0)

    def test_from_settings(self, llm_factory, registry, settings_factory) -> None:
        agent = AgentOrchestrator.from_settings(
            llm_factory(), registry, settings_factory(max_planning_iterations=3)
        )
        assert agent.max_iterations == 3
