"""Core voice session components.

This module provides the per-session orchestration:
- SessionStore / Session: lifecycle state and conversation history
- AudioIngestPipeline: sequence reordering into utterance windows
- ASRAdapter, AgentOrchestrator, TTSAdapter: the three pipeline stages
- SessionCoordinator: the state machine wiring them per connection
"""

from parley.core.agent import AgentOrchestrator, AgentTurn, ToolInvocation, TurnOutcome
from parley.core.asr import ASRAdapter, Transcript
from parley.core.coordinator import OutboundSink, SessionComponents, SessionCoordinator
from parley.core.ingest import AudioChunk, AudioIngestPipeline, AudioWindow, ReorderBuffer
from parley.core.session import Session, SessionState, SessionStore
from parley.core.tools import Tool, ToolPolicy, ToolRegistry
from parley.core.tts import ReplyChunk, TTSAdapter

__all__ = [
    # Session management
    "Session",
    "SessionState",
    "SessionStore",
    # Ingest
    "AudioChunk",
    "AudioWindow",
    "AudioIngestPipeline",
    "ReorderBuffer",
    # Stages
    "ASRAdapter",
    "Transcript",
    "AgentOrchestrator",
    "AgentTurn",
    "ToolInvocation",
    "TurnOutcome",
    "Tool",
    "ToolPolicy",
    "ToolRegistry",
    "TTSAdapter",
    "ReplyChunk",
    # Coordinator
    "SessionCoordinator",
    "SessionComponents",
    "OutboundSink",
]
