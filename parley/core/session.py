"""Session state and the per-process session store."""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, auto
from typing import TYPE_CHECKING, Any

from parley.config import Settings, get_settings
from parley.core.exceptions import (
    InvalidTransitionError,
    ProtocolViolationError,
    SessionCapacityError,
)
from parley.core.tools import ToolPolicy
from parley.logging_config import get_logger
from parley.observability.metrics import ACTIVE_SESSIONS
from parley.services.llm.protocol import Message, Role

if TYPE_CHECKING:
    from parley.core.coordinator import SessionCoordinator

logger: Any = get_logger(__name__)

SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class SessionState(Enum):
    """Lifecycle of a session, one utterance cycle at a time."""

    IDLE = auto()  # Connection open, not started
    LISTENING = auto()  # Waiting for a complete utterance
    TRANSCRIBING = auto()  # ASR running on the flushed window
    PLANNING = auto()  # Agent turn running
    SYNTHESIZING = auto()  # Reply audio streaming out
    ERROR = auto()  # Speaking an error notice
    CLOSED = auto()  # Terminal


ALLOWED_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.IDLE: frozenset({SessionState.LISTENING, SessionState.CLOSED}),
    SessionState.LISTENING: frozenset(
        {SessionState.TRANSCRIBING, SessionState.ERROR, SessionState.CLOSED}
    ),
    SessionState.TRANSCRIBING: frozenset(
        {
            SessionState.PLANNING,
            SessionState.LISTENING,  # Nothing was said
            SessionState.ERROR,
            SessionState.CLOSED,
        }
    ),
    SessionState.PLANNING: frozenset(
        {SessionState.SYNTHESIZING, SessionState.ERROR, SessionState.CLOSED}
    ),
    SessionState.SYNTHESIZING: frozenset(
        {SessionState.LISTENING, SessionState.ERROR, SessionState.CLOSED}
    ),
    SessionState.ERROR: frozenset(
        {SessionState.SYNTHESIZING, SessionState.LISTENING, SessionState.CLOSED}
    ),
    SessionState.CLOSED: frozenset(),
}


def validate_session_id(session_id: str) -> str:
    """Return ``session_id`` if well-formed.

    Raises:
        ProtocolViolationError: For empty, overlong or non [A-Za-z0-9_-] ids.
    """
    if not isinstance(session_id, str) or not SESSION_ID_RE.match(session_id):
        raise ProtocolViolationError(f"Malformed session id: {session_id!r}")
    return session_id


@dataclass
class SessionMetrics:
    """Counters and latencies collected during a session."""

    utterances: int = 0
    turns: int = 0
    barge_ins: int = 0
    errors: list[str] = field(default_factory=list)
    audio_received_bytes: int = 0
    audio_sent_bytes: int = 0
    asr_latencies_ms: list[float] = field(default_factory=list)
    planning_latencies_ms: list[float] = field(default_factory=list)
    tts_first_chunk_ms: list[float] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "utterances": self.utterances,
            "turns": self.turns,
            "barge_ins": self.barge_ins,
            "errors": list(self.errors),
            "audio_received_bytes": self.audio_received_bytes,
            "audio_sent_bytes": self.audio_sent_bytes,
            "avg_asr_latency_ms": self._avg(self.asr_latencies_ms),
            "avg_planning_latency_ms": self._avg(self.planning_latencies_ms),
            "avg_tts_first_chunk_ms": self._avg(self.tts_first_chunk_ms),
            "p95_planning_latency_ms": self._percentile(self.planning_latencies_ms, 95),
        }

    def _avg(self, values: list[float]) -> float:
        return sum(values) / len(values) if values else 0.0

    def _percentile(self, data: list[float], p: int) -> float:
        """Nearest-rank percentile with linear interpolation."""
        if not data:
            return 0.0
        sorted_data = sorted(data)
        n = len(sorted_data)
        idx = (n - 1) * p / 100
        lower = int(idx)
        upper = min(lower + 1, n - 1)
        weight = idx - lower
        return sorted_data[lower] * (1 - weight) + sorted_data[upper] * weight


@dataclass
class Session:
    """State for one client conversation.

    Owned by its SessionCoordinator; state changes only go through
    ``transition_to``.
    """

    session_id: str
    tool_policy: ToolPolicy
    max_history: int = 20
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_activity: datetime = field(default_factory=lambda: datetime.now(UTC))
    history: list[Message] = field(default_factory=list)
    metrics: SessionMetrics = field(default_factory=SessionMetrics)

    _state: SessionState = field(default=SessionState.IDLE, init=False)

    @property
    def state(self) -> SessionState:
        """Current lifecycle state."""
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state == SessionState.CLOSED

    def can_transition_to(self, target: SessionState) -> bool:
        return target in ALLOWED_TRANSITIONS[self._state]

    def transition_to(self, target: SessionState) -> SessionState:
        """Move to ``target`` and return the previous state.

        Raises:
            InvalidTransitionError: If the transition table forbids it.
        """
        if not self.can_transition_to(target):
            raise InvalidTransitionError(self._state, target)
        previous = self._state
        self._state = target
        logger.debug(f"Session {self.session_id}: {previous.name} -> {target.name}")
        return previous

    def touch(self) -> None:
        """Record client activity for the idle watchdog."""
        self.last_activity = datetime.now(UTC)

    def idle_seconds(self) -> float:
        return (datetime.now(UTC) - self.last_activity).total_seconds()

    def add_message(self, role: Role, content: str) -> Message:
        """Append to conversation history, keeping the last ``max_history``."""
        msg = Message(role=role, content=content)
        self.history.append(msg)
        if len(self.history) > self.max_history:
            self.history = self.history[-self.max_history :]
        return msg

    def duration_seconds(self) -> float:
        return (datetime.now(UTC) - self.created_at).total_seconds()


@dataclass
class SessionEntry:
    """Entry in the session store."""

    session: Session
    coordinator: SessionCoordinator | None = None


class SessionStore:
    """Registry of open sessions.

    Sessions never share mutable state; the store only maps ids to their
    owners and enforces capacity.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._sessions: dict[str, SessionEntry] = {}
        self._lock = asyncio.Lock()

    async def create(
        self,
        session_id: str,
        *,
        tool_allow_list: list[str] | None = None,
    ) -> Session:
        """Create a session for a new connection.

        Raises:
            ProtocolViolationError: If the id is malformed or already connected.
            SessionCapacityError: If the store is full.
        """
        validate_session_id(session_id)

        async with self._lock:
            if session_id in self._sessions:
                raise ProtocolViolationError(f"Session {session_id} is already connected")

            capacity = self._settings.max_concurrent_sessions
            if len(self._sessions) >= capacity:
                logger.warning(
                    f"Max concurrent sessions reached ({capacity}), rejecting {session_id}"
                )
                raise SessionCapacityError(f"System at capacity ({capacity} sessions)")

            session = Session(
                session_id=session_id,
                tool_policy=ToolPolicy.from_settings(
                    self._settings, allow_list=tool_allow_list
                ),
                max_history=self._settings.max_history_messages,
            )
            self._sessions[session_id] = SessionEntry(session=session)
            ACTIVE_SESSIONS.inc()

            logger.info(
                f"Created session {session_id} "
                f"(active: {len(self._sessions)}/{capacity})"
            )
            return session

    async def attach(self, session_id: str, coordinator: SessionCoordinator) -> None:
        """Associate the coordinator that owns a session."""
        async with self._lock:
            if session_id in self._sessions:
                self._sessions[session_id].coordinator = coordinator

    async def get(self, session_id: str) -> Session | None:
        async with self._lock:
            entry = self._sessions.get(session_id)
            return entry.session if entry else None

    async def remove(self, session_id: str) -> SessionEntry | None:
        """Remove a session from the store.

        Returns the entry for final cleanup.
        """
        async with self._lock:
            entry = self._sessions.pop(session_id, None)
            if entry:
                ACTIVE_SESSIONS.dec()
            return entry

    async def close_all(self) -> None:
        """Close all sessions (for shutdown)."""
        async with self._lock:
            entries = list(self._sessions.items())

        for session_id, entry in entries:
            if entry.coordinator is None:
                await self.remove(session_id)
                continue
            try:
                await entry.coordinator.close(reason="shutdown")
            except Exception as e:
                logger.error(f"Error closing session {session_id}: {e}")

    @property
    def active_count(self) -> int:
        """Number of open sessions."""
        return len(self._sessions)
