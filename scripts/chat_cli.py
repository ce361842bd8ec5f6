#!/usr/bin/env python3
"""Interactive CLI to test the agent turn loop.

This drives the agent orchestrator with typed text instead of audio, so
the configured LLM backend and tools can be tried without ASR or TTS.
"""

import asyncio

from parley.config import get_settings
from parley.core.agent import AgentOrchestrator, AgentTurn
from parley.core.asr import Transcript
from parley.core.session import Session
from parley.core.tools import ToolPolicy, build_registry
from parley.services.factory import build_llm


def print_turn(turn: AgentTurn) -> None:
    """Print tool traffic and timing for a turn."""
    for invocation in turn.invocations:
        outcome = invocation.result if invocation.succeeded else invocation.error
        print(f"  🔧 {invocation.name}({invocation.arguments}) -> {outcome}")
    print(f"  ⏱️  {turn.latency_ms:.0f}ms, {turn.iterations} iteration(s), {turn.outcome.name}")


def new_session(settings) -> Session:
    return Session(
        session_id="cli",
        tool_policy=ToolPolicy.from_settings(settings),
        max_history=settings.max_history_messages,
    )


async def main():
    settings = get_settings()
    llm = build_llm(settings)
    registry = build_registry(settings)
    agent = AgentOrchestrator.from_settings(llm, registry, settings)

    print("=" * 60)
    print("🎙️  Parley - Agent Test CLI")
    print("=" * 60)
    print(f"\nLLM: {settings.llm_provider} ({settings.llm_model})")
    print(f"Tools allowed: {', '.join(settings.tool_allow_list) or 'none'}")
    print("Commands: /history (show history), /reset (new session), /quit (exit)\n")

    session = new_session(settings)
    utterance_id = 0

    try:
        while True:
            user_input = input("👤 You: ").strip()

            if not user_input:
                continue

            if user_input.lower() == "/quit":
                print("\n👋 Goodbye!")
                break

            if user_input.lower() == "/history":
                for msg in session.history:
                    print(f"  {msg.role.value}: {msg.content}")
                continue

            if user_input.lower() == "/reset":
                session = new_session(settings)
                utterance_id = 0
                print("\n🔄 New session started!\n")
                continue

            transcript = Transcript(
                session_id=session.session_id,
                utterance_id=utterance_id,
                text=user_input,
                confidence=1.0,
                is_final=True,
            )
            utterance_id += 1

            try:
                turn = await agent.plan(session, transcript)
                print(f"\n🤖 Bot: {turn.reply}")
                print_turn(turn)
                print()
            except Exception as e:
                print(f"\n❌ Error: {e}\n")

    finally:
        await registry.close()
        await llm.close()


if __name__ == "__main__":
    asyncio.run(main())
