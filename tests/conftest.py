"""Shared pytest fixtures for Parley tests.

Backends are replaced with scripted in-memory fakes so the session
pipeline can be driven end to end without network access.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Awaitable, Callable, Generator
from typing import Any

import pytest
import pytest_asyncio

from parley.config import Settings
from parley.core.coordinator import SessionComponents, SessionCoordinator
from parley.core.session import SessionStore
from parley.core.tools import ToolRegistry
from parley.core.tts import ReplyChunk
from parley.services.factory import Backends
from parley.services.llm.protocol import AgentAction, CallMetadata, Message
from parley.services.stt.protocol import TranscriptChunk, TranscriptionMode
from parley.services.tts.exceptions import TTSSynthesisError
from parley.services.tts.protocol import SpeechChunk, SynthesisMetadata

# Script step that never completes (drives timeouts)
HANG = "hang"


def build_settings(**overrides) -> Settings:
    """Create a Settings object with fast test defaults."""
    base: dict[str, Any] = {
        "asr_provider": "http",
        "llm_provider": "http",
        "tts_provider": "http",
        "asr_timeout_seconds": 0.2,
        "llm_timeout_seconds": 0.2,
        "tts_timeout_seconds": 0.2,
        "default_tool_timeout_seconds": 0.2,
        "reorder_window_ms": 50.0,
        "tts_max_chunk_bytes": 64,
        "output_sample_rate": 16000,
        "session_idle_timeout_seconds": 60.0,
        "tool_allow_list": ["get_current_time", "lookup"],
        "system_prompt": "You are a test assistant.",
        "environment": "development",
    }
    base.update(overrides)
    return Settings(_env_file=None, **base)


@pytest.fixture
def settings_factory() -> Callable[..., Settings]:
    """Return a factory to build Settings with overrides."""
    return build_settings


@pytest.fixture
def settings(settings_factory: Callable[..., Settings]) -> Settings:
    """Default Settings fixture."""
    return settings_factory()


# =============================================================================
# Fake Backends
# =============================================================================


class FakeSTT:
    """Streaming ASR backend that plays one script per call.

    A script is a list of TranscriptChunk, exceptions (raised) or HANG.
    """

    mode = TranscriptionMode.STREAMING

    def __init__(self, *scripts: list[Any], default: list[Any] | None = None) -> None:
        self.scripts = list(scripts)
        self.default = default or [TranscriptChunk(text="hello", is_final=True, confidence=0.9)]
        self.calls: list[bytes] = []
        self.closed = False

    async def transcribe_stream(
        self,
        audio: bytes,
        *,
        sample_rate: int = 16000,
        encoding: str = "linear16",
        language: str = "en",
    ) -> AsyncGenerator[TranscriptChunk, None]:
        self.calls.append(audio)
        script = self.scripts.pop(0) if self.scripts else self.default
        for step in script:
            if step == HANG:
                await asyncio.sleep(3600)
            if isinstance(step, Exception):
                raise step
            yield step

    async def close(self) -> None:
        self.closed = True

    async def health_check(self) -> bool:
        return True


class FakeLLM:
    """LLM backend returning scripted actions, then ``default`` forever.

    A step may also be an exception (raised), HANG, or an asyncio.Event
    that holds the call until it is set.
    """

    def __init__(self, *steps: Any, default: AgentAction | None = None) -> None:
        self.steps = list(steps)
        self.default = default or AgentAction(reply="ok")
        self.calls: list[list[Message]] = []
        self.tools: list[list[dict[str, Any]]] = []
        self.healthy = True

    async def next_action(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]],
    ) -> tuple[AgentAction, CallMetadata]:
        self.calls.append(list(messages))
        self.tools.append(tools)
        step = self.steps.pop(0) if self.steps else self.default
        if isinstance(step, asyncio.Event):
            # Block until released, then answer with the default
            await step.wait()
            step = self.default
        if step == HANG:
            await asyncio.sleep(3600)
        if isinstance(step, Exception):
            raise step
        return step, CallMetadata(model="fake", latency_ms=1.0)

    async def close(self) -> None:
        pass

    async def health_check(self) -> bool:
        return self.healthy


class FakeTTS:
    """Synthesis backend producing ``bytes_per_char`` bytes of PCM per character."""

    def __init__(
        self,
        *,
        sample_rate: int = 16000,
        bytes_per_char: int = 8,
        piece_bytes: int = 40,
        delay: float = 0.0,
        hang_calls: int = 0,
        fail_calls: int = 0,
        hang_after: int | None = None,
        open_hang_calls: int = 0,
    ) -> None:
        self.sample_rate = sample_rate
        self.bytes_per_char = bytes_per_char
        self.piece_bytes = piece_bytes
        self.delay = delay
        self.hang_calls = hang_calls
        self.fail_calls = fail_calls
        self.hang_after = hang_after
        self.open_hang_calls = open_hang_calls
        self.calls: list[str] = []
        self.healthy = True

    async def synthesize_stream(
        self,
        text: str,
    ) -> tuple[AsyncGenerator[SpeechChunk, None], SynthesisMetadata]:
        self.calls.append(text)
        if len(self.calls) <= self.open_hang_calls:
            # Blocks before handing back a stream
            await asyncio.sleep(3600)
        metadata = SynthesisMetadata(
            model="fake", input_chars=len(text), source_sample_rate=self.sample_rate
        )
        return self._stream(len(self.calls) - 1, text, metadata), metadata

    async def _stream(
        self,
        call: int,
        text: str,
        metadata: SynthesisMetadata,
    ) -> AsyncGenerator[SpeechChunk, None]:
        if call < self.fail_calls:
            raise TTSSynthesisError("synthesis backend exploded")
        if call < self.hang_calls:
            await asyncio.sleep(3600)

        audio = b"\x01\x00" * (len(text) * self.bytes_per_char // 2)
        for index, offset in enumerate(range(0, len(audio), self.piece_bytes)):
            if self.hang_after is not None and index >= self.hang_after:
                await asyncio.sleep(3600)
            if self.delay:
                await asyncio.sleep(self.delay)
            piece = audio[offset : offset + self.piece_bytes]
            metadata.output_bytes += len(piece)
            yield SpeechChunk(audio_bytes=piece, sample_rate=self.sample_rate)

    async def close(self) -> None:
        pass

    async def health_check(self) -> bool:
        return self.healthy


class RecordingSink:
    """OutboundSink that records every frame in order."""

    def __init__(self) -> None:
        self.frames: list[tuple[str, Any]] = []

    async def send_audio(self, chunk: ReplyChunk) -> None:
        self.frames.append(("audio", chunk))

    async def send_event(self, event: dict[str, Any]) -> None:
        self.frames.append(("event", event))

    @property
    def audio(self) -> list[ReplyChunk]:
        return [item for kind, item in self.frames if kind == "audio"]

    @property
    def events(self) -> list[dict[str, Any]]:
        return [item for kind, item in self.frames if kind == "event"]

    def events_of(self, event_type: str) -> list[dict[str, Any]]:
        return [e for e in self.events if e["type"] == event_type]

    @property
    def states(self) -> list[str]:
        return [e["state"] for e in self.events_of("status")]

    async def wait_for(self, predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        """Poll until ``predicate()`` holds."""
        async with asyncio.timeout(timeout):
            while not predicate():
                await asyncio.sleep(0.005)


@pytest.fixture
def stt_factory() -> Callable[..., FakeSTT]:
    return FakeSTT


@pytest.fixture
def llm_factory() -> Callable[..., FakeLLM]:
    return FakeLLM


@pytest.fixture
def tts_factory() -> Callable[..., FakeTTS]:
    return FakeTTS


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def fake_backends() -> Backends:
    """Backends that transcribe "hello" and reply "ok"."""
    return Backends(stt=FakeSTT(), llm=FakeLLM(), tts=FakeTTS())


@pytest.fixture
def components_factory(
    settings: Settings,
) -> Callable[..., SessionComponents]:
    """Build SessionComponents from fake backends."""

    def build(
        *,
        stt: FakeSTT | None = None,
        llm: FakeLLM | None = None,
        tts: FakeTTS | None = None,
        registry: ToolRegistry | None = None,
        settings: Settings = settings,
    ) -> SessionComponents:
        backends = Backends(stt=stt or FakeSTT(), llm=llm or FakeLLM(), tts=tts or FakeTTS())
        return SessionComponents.from_settings(backends, settings, registry=registry)

    return build


@pytest_asyncio.fixture
async def session_factory(
    settings: Settings,
) -> AsyncGenerator[Callable[..., Awaitable[SessionCoordinator]], None]:
    """Open started coordinators; all are closed at teardown."""
    opened: list[SessionCoordinator] = []

    async def open_session(
        components: SessionComponents,
        sink: RecordingSink,
        *,
        session_id: str = "s1",
        settings: Settings = settings,
        store: SessionStore | None = None,
    ) -> SessionCoordinator:
        store = store or SessionStore(settings)
        session = await store.create(session_id)
        coordinator = SessionCoordinator(
            session, components, sink, store=store, settings=settings
        )
        await store.attach(session_id, coordinator)
        await coordinator.start()
        opened.append(coordinator)
        return coordinator

    yield open_session

    for coordinator in opened:
        await coordinator.close(reason="test_teardown")


# =============================================================================
# API Fixtures
# =============================================================================


@pytest.fixture
def app_factory(settings: Settings) -> Callable[..., Any]:
    """Build the FastAPI app around fake backends."""
    from parley.main import create_app

    def build(*, backends: Backends | None = None, settings: Settings = settings):
        return create_app(
            settings,
            backends=backends or Backends(stt=FakeSTT(), llm=FakeLLM(), tts=FakeTTS()),
        )

    return build


@pytest.fixture
def test_client(app_factory) -> Generator:
    """FastAPI TestClient running the app lifespan."""
    from fastapi.testclient import TestClient

    with TestClient(app_factory()) as client:
        yield client
