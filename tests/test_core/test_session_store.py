"""Tests for session state and the session store."""

from __future__ import annotations

import pytest

from parley.core.exceptions import (
    InvalidTransitionError,
    ProtocolViolationError,
    SessionCapacityError,
)
from parley.core.session import (
    Session,
    SessionMetrics,
    SessionState,
    SessionStore,
    validate_session_id,
)
from parley.core.tools import ToolPolicy
from parley.services.llm.protocol import Role


class TestValidateSessionId:
    """Tests for session id validation."""

    @pytest.mark.parametrize("session_id", ["s1", "call_42", "A-b_C", "x" * 64])
    def test_accepts_well_formed(self, session_id: str) -> None:
        assert validate_session_id(session_id) == session_id

    @pytest.mark.parametrize("session_id", ["", "x" * 65, "has space", "semi;colon", "ü"])
    def test_rejects_malformed(self, session_id: str) -> None:
        with pytest.raises(ProtocolViolationError):
            validate_session_id(session_id)


class TestSessionTransitions:
    """Tests for the session state machine."""

    @pytest.fixture
    def session(self) -> Session:
        return Session(session_id="s1", tool_policy=ToolPolicy())

    def test_starts_idle(self, session: Session) -> None:
        assert session.state == SessionState.IDLE
        assert not session.is_closed

    def test_full_cycle(self, session: Session) -> None:
        """Test one utterance cycle back to LISTENING."""
        for state in (
            SessionState.LISTENING,
            SessionState.TRANSCRIBING,
            SessionState.PLANNING,
            SessionState.SYNTHESIZING,
            SessionState.LISTENING,
        ):
            session.transition_to(state)
        assert session.state == SessionState.LISTENING

    def test_transition_returns_previous(self, session: Session) -> None:
        assert session.transition_to(SessionState.LISTENING) == SessionState.IDLE

    def test_cannot_skip_transcription(self, session: Session) -> None:
        session.transition_to(SessionState.LISTENING)
        with pytest.raises(InvalidTransitionError):
            session.transition_to(SessionState.PLANNING)

    def test_closed_is_terminal(self, session: Session) -> None:
        session.transition_to(SessionState.CLOSED)
        assert session.is_closed
        for state in SessionState:
            assert not session.can_transition_to(state)

    def test_every_state_can_close(self) -> None:
        """Test CLOSED is reachable from every non-terminal state."""
        from parley.core.session import ALLOWED_TRANSITIONS

        for state, targets in ALLOWED_TRANSITIONS.items():
            if state != SessionState.CLOSED:
                assert SessionState.CLOSED in targets

    def test_history_is_bounded(self) -> None:
        session = Session(session_id="s1", tool_policy=ToolPolicy(), max_history=3)
        for i in range(5):
            session.add_message(Role.USER, f"message {i}")

        assert [m.content for m in session.history] == ["message 2", "message 3", "message 4"]


class TestSessionMetrics:
    """Tests for per-session metric summaries."""

    def test_empty_summary(self) -> None:
        summary = SessionMetrics().to_dict()
        assert summary["avg_asr_latency_ms"] == 0.0
        assert summary["p95_planning_latency_ms"] == 0.0

    def test_averages(self) -> None:
        metrics = SessionMetrics(asr_latencies_ms=[100.0, 300.0])
        assert metrics.to_dict()["avg_asr_latency_ms"] == 200.0

    def test_percentile_interpolates(self) -> None:
        metrics = SessionMetrics(planning_latencies_ms=[float(i) for i in range(1, 101)])
        assert metrics.to_dict()["p95_planning_latency_ms"] == pytest.approx(95.05)


class TestSessionStore:
    """Tests for SessionStore."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, settings) -> None:
        store = SessionStore(settings)
        session = await store.create("s1")

        assert await store.get("s1") is session
        assert store.active_count == 1
        assert session.tool_policy.allow_list == frozenset(settings.tool_allow_list)

    @pytest.mark.asyncio
    async def test_per_session_allow_list(self, settings) -> None:
        store = SessionStore(settings)
        session = await store.create("s1", tool_allow_list=[])

        assert session.tool_policy.allow_list == frozenset()

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, settings) -> None:
        store = SessionStore(settings)
        await store.create("s1")

        with pytest.raises(ProtocolViolationError):
            await store.create("s1")

    @pytest.mark.asyncio
    async def test_malformed_id_rejected(self, settings) -> None:
        store = SessionStore(settings)
        with pytest.raises(ProtocolViolationError):
            await store.create("bad id!")
        assert store.active_count == 0

    @pytest.mark.asyncio
    async def test_capacity(self, settings_factory) -> None:
        store = SessionStore(settings_factory(max_concurrent_sessions=2))
        await store.create("a")
        await store.create("b")

        with pytest.raises(SessionCapacityError):
            await store.create("c")

    @pytest.mark.asyncio
    async def test_remove_frees_capacity(self, settings_factory) -> None:
        store = SessionStore(settings_factory(max_concurrent_sessions=1))
        await store.create("a")
        entry = await store.remove("a")

        assert entry is not None
        assert await store.get("a") is None
        await store.create("b")

    @pytest.mark.asyncio
    async def test_remove_unknown(self, settings) -> None:
        store = SessionStore(settings)
        assert await store.remove("missing") is None

    @pytest.mark.asyncio
    async def test_close_all_without_coordinators(self, settings) -> None:
        store = SessionStore(settings)
        await store.create("a")
        await store.create("b")

        await store.close_all()

        assert store.active_count == 0
