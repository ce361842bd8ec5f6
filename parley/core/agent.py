"""Agent orchestrator: transcript in, reply text out, with a bounded tool loop."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any

from parley.config import Settings
from parley.core.asr import Transcript
from parley.core.exceptions import (
    PipelineError,
    PlanningExhaustedError,
    ToolInvocationFailedError,
)
from parley.core.session import Session
from parley.core.timeouts import call_with_timeout
from parley.core.tools import ToolRegistry, format_tool_result
from parley.logging_config import get_logger, truncate_for_log
from parley.observability.metrics import record_tool_invocation
from parley.services.llm.exceptions import LLMServiceError
from parley.services.llm.protocol import (
    AgentAction,
    LLMService,
    Message,
    Role,
    ToolCallRequest,
)

logger: Any = get_logger(__name__)


class TurnOutcome(Enum):
    """How an agent turn ended."""

    REPLIED = auto()
    EXHAUSTED = auto()  # Iteration bound hit, canned reply used
    FAILED = auto()


@dataclass
class ToolInvocation:
    """Record of one tool call within a turn."""

    call_id: str
    name: str
    arguments: dict[str, Any]
    result: Any = None
    error: str | None = None
    duration_ms: float = 0.0
    skipped: bool = False  # Requested on the last iteration, never run

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass
class AgentTurn:
    """One reasoning cycle from transcript to reply."""

    session_id: str
    utterance_id: int
    transcript: str
    invocations: list[ToolInvocation] = field(default_factory=list)
    reply: str | None = None
    outcome: TurnOutcome | None = None
    error_code: str | None = None
    iterations: int = 0
    latency_ms: float = 0.0

    @property
    def is_terminal(self) -> bool:
        return self.outcome is not None

    def finish(self, outcome: TurnOutcome, reply: str | None, error_code: str | None = None) -> None:
        if self.is_terminal:
            raise RuntimeError(f"Turn for utterance {self.utterance_id} is already terminal")
        self.outcome = outcome
        self.reply = reply
        self.error_code = error_code


class AgentOrchestrator:
    """Runs agent turns against a shared LLM backend and tool registry.

    Per turn the model is asked at most ``max_iterations`` times for its
    next action. Tool calls run one at a time in the order requested; a
    tool the session's policy does not allow is never executed. Tool
    failures go back to the model as tool results unless the tool is
    critical, which aborts the turn.
    """

    def __init__(
        self,
        llm: LLMService,
        registry: ToolRegistry,
        *,
        max_iterations: int = 5,
        llm_timeout: float = 10.0,
        system_prompt: str = "",
        exhausted_reply: str = "Sorry, I couldn't work that out.",
    ) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self._llm = llm
        self._registry = registry
        self._max_iterations = max_iterations
        self._llm_timeout = llm_timeout
        self._system_prompt = system_prompt
        self._exhausted_reply = exhausted_reply

    @classmethod
    def from_settings(
        cls,
        llm: LLMService,
        registry: ToolRegistry,
        settings: Settings,
    ) -> AgentOrchestrator:
        return cls(
            llm,
            registry,
            max_iterations=settings.max_planning_iterations,
            llm_timeout=settings.llm_timeout_seconds,
            system_prompt=settings.system_prompt,
            exhausted_reply=settings.planning_exhausted_reply,
        )

    @property
    def max_iterations(self) -> int:
        return self._max_iterations

    async def plan(self, session: Session, transcript: Transcript) -> AgentTurn:
        """Produce a terminal turn for a final transcript.

        Raises:
            BackendTimeoutError: When the model timed out twice in a row.
            ToolInvocationFailedError: When a critical tool failed.
            PipelineError: When the model backend failed outright.
        """
        start = time.perf_counter()
        turn = AgentTurn(
            session_id=session.session_id,
            utterance_id=transcript.utterance_id,
            transcript=transcript.text,
        )

        messages: list[Message] = []
        if self._system_prompt:
            messages.append(Message(role=Role.SYSTEM, content=self._system_prompt))
        messages.extend(session.history)
        messages.append(Message(role=Role.USER, content=transcript.text))

        policy = session.tool_policy
        tools = self._registry.schemas(policy.allow_list)

        try:
            while turn.iterations < self._max_iterations:
                turn.iterations += 1
                action = await self._next_action(session.session_id, messages, tools)

                if not action.tool_calls:
                    turn.finish(TurnOutcome.REPLIED, action.reply or "")
                    break

                if turn.iterations == self._max_iterations:
                    # No further model call would read these results
                    turn.invocations.extend(self._skip(session, call) for call in action.tool_calls)
                    continue

                messages.append(
                    Message(role=Role.ASSISTANT, content=action.reply or "", tool_calls=action.tool_calls)
                )
                for call in action.tool_calls:
                    invocation = await self._invoke(session, call)
                    turn.invocations.append(invocation)
                    content = (
                        format_tool_result(invocation.result)
                        if invocation.succeeded
                        else f"Error: {invocation.error}"
                    )
                    messages.append(
                        Message(role=Role.TOOL, content=content, tool_call_id=call.id, name=call.name)
                    )
            else:
                exhausted = PlanningExhaustedError(
                    f"No reply after {turn.iterations} planning iterations",
                    session_id=session.session_id,
                    iterations=turn.iterations,
                )
                logger.warning(f"{exhausted} for {session.session_id}")
                turn.finish(TurnOutcome.EXHAUSTED, self._exhausted_reply, exhausted.code)
        except ToolInvocationFailedError as e:
            turn.finish(TurnOutcome.FAILED, None, e.code)
            e.turn = turn
            raise
        finally:
            turn.latency_ms = (time.perf_counter() - start) * 1000

        session.add_message(Role.USER, transcript.text)
        session.add_message(Role.ASSISTANT, turn.reply or "")

        logger.info(
            f"Turn for {session.session_id} utterance {turn.utterance_id}: "
            f"{turn.outcome.name} after {turn.iterations} iteration(s), "
            f"{len(turn.invocations)} tool call(s), {turn.latency_ms:.0f}ms "
            f"-> {truncate_for_log(turn.reply or '')}"
        )
        return turn

    async def _next_action(
        self,
        session_id: str,
        messages: list[Message],
        tools: list[dict[str, Any]],
    ) -> AgentAction:
        try:
            action, metadata = await call_with_timeout(
                lambda: self._llm.next_action(list(messages), tools),
                stage="llm",
                timeout=self._llm_timeout,
                session_id=session_id,
            )
        except LLMServiceError as e:
            logger.error(f"LLM backend failed for {session_id}: {e}")
            raise PipelineError(f"Language model failed: {e}", session_id=session_id) from e

        if metadata.latency_ms is not None:
            logger.debug(f"LLM call for {session_id} took {metadata.latency_ms:.0f}ms")
        return action

    def _skip(self, session: Session, call: ToolCallRequest) -> ToolInvocation:
        record_tool_invocation(call.name, "skipped")
        logger.debug(f"Not running {call.name} for {session.session_id}: planning limit reached")
        return ToolInvocation(
            call_id=call.id,
            name=call.name,
            arguments=dict(call.arguments),
            error="Not run: planning limit reached",
            skipped=True,
        )

    async def _invoke(self, session: Session, call: ToolCallRequest) -> ToolInvocation:
        """Run one requested tool call under the session's policy."""
        policy = session.tool_policy
        invocation = ToolInvocation(call_id=call.id, name=call.name, arguments=dict(call.arguments))
        critical = policy.is_critical(call.name)

        tool = self._registry.get(call.name)
        if not policy.is_allowed(call.name) or tool is None:
            invocation.error = f"Tool {call.name} is not permitted"
            record_tool_invocation(call.name, "denied")
            logger.warning(f"Session {session.session_id} requested unpermitted tool {call.name}")
            self._raise_if_critical(session, invocation, critical)
            return invocation

        timeout = policy.timeout_for(call.name)
        start = time.perf_counter()
        try:
            invocation.result = await tool.execute(call.arguments, timeout=timeout)
            record_tool_invocation(call.name, "ok")
        except TimeoutError:
            invocation.error = f"Tool {call.name} timed out after {timeout}s"
            record_tool_invocation(call.name, "timeout")
        except Exception as e:
            invocation.error = f"Tool {call.name} failed: {e}"
            record_tool_invocation(call.name, "error")
        finally:
            invocation.duration_ms = (time.perf_counter() - start) * 1000

        if not invocation.succeeded:
            logger.warning(f"{invocation.error} (session={session.session_id})")
            self._raise_if_critical(session, invocation, critical)
        else:
            logger.debug(f"Tool {call.name} returned in {invocation.duration_ms:.0f}ms")
        return invocation

    def _raise_if_critical(self, session: Session, invocation: ToolInvocation, critical: bool) -> None:
        if critical:
            raise ToolInvocationFailedError(
                invocation.error or f"Tool {invocation.name} failed",
                tool_name=invocation.name,
                critical=True,
                session_id=session.session_id,
            )
