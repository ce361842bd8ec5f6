"""Session coordinator: the per-connection state machine.

Routes inbound audio through ingest, transcribes each utterance, plans a
reply and streams it back, one utterance at a time. Failures become a
spoken notice and a return to LISTENING; barge-in and close cancel
whatever is in flight.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, Protocol

from parley.audio import is_speech
from parley.config import Settings, get_settings
from parley.core.agent import AgentOrchestrator
from parley.core.asr import ASRAdapter, Transcript
from parley.core.exceptions import (
    GapDetectedError,
    PipelineError,
    SessionClosedError,
    SynthesisFailedError,
    TranscriptionFailedError,
)
from parley.core.ingest import AudioChunk, AudioIngestPipeline, AudioWindow
from parley.core.session import Session, SessionState, SessionStore
from parley.core.tools import ToolRegistry, build_registry
from parley.core.tts import ReplyChunk, TTSAdapter, new_reply_id
from parley.logging_config import get_logger, truncate_for_log
from parley.observability.metrics import (
    BARGE_IN_TOTAL,
    record_pipeline_error,
    record_session_metrics,
)
from parley.services.factory import Backends

logger: Any = get_logger(__name__)


class OutboundSink(Protocol):
    """Where a session's outbound frames go (the client transport)."""

    async def send_audio(self, chunk: ReplyChunk) -> None:
        """Send one reply audio chunk."""
        ...

    async def send_event(self, event: dict[str, Any]) -> None:
        """Send an out-of-band event (transcript, status, reply, error, clear)."""
        ...


@dataclass
class SessionComponents:
    """Adapters shared by every session in the process."""

    ingest: AudioIngestPipeline
    asr: ASRAdapter
    agent: AgentOrchestrator
    tts: TTSAdapter
    registry: ToolRegistry

    @classmethod
    def from_settings(
        cls,
        backends: Backends,
        settings: Settings | None = None,
        *,
        registry: ToolRegistry | None = None,
    ) -> SessionComponents:
        settings = settings or get_settings()
        registry = registry or build_registry(settings)
        return cls(
            ingest=AudioIngestPipeline(
                reorder_window_ms=settings.reorder_window_ms,
                max_utterance_bytes=settings.max_utterance_bytes,
                max_reorder_distance=settings.max_reorder_distance,
            ),
            asr=ASRAdapter.from_settings(backends.stt, settings),
            agent=AgentOrchestrator.from_settings(backends.llm, registry, settings),
            tts=TTSAdapter.from_settings(backends.tts, settings),
            registry=registry,
        )

    async def close(self) -> None:
        await self.registry.close()


@dataclass
class _ActiveReply:
    reply_id: str
    cancelled: bool = False
    chunks_sent: int = 0
    started_at: float = field(default_factory=time.perf_counter)


class SessionCoordinator:
    """Owns one session for the lifetime of its connection."""

    def __init__(
        self,
        session: Session,
        components: SessionComponents,
        sink: OutboundSink,
        *,
        store: SessionStore,
        settings: Settings | None = None,
    ) -> None:
        self._session = session
        self._components = components
        self._sink = sink
        self._store = store
        self._settings = settings or get_settings()

        self._queue: asyncio.Queue[AudioWindow | GapDetectedError] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._watchdog: asyncio.Task[None] | None = None
        self._reply: _ActiveReply | None = None
        self._reply_task: asyncio.Task[None] | None = None
        self._closed = False
        self._close_reason: str | None = None
        self._closer: asyncio.Task[None] | None = None

    @property
    def session(self) -> Session:
        return self._session

    @property
    def session_id(self) -> str:
        return self._session.session_id

    @property
    def state(self) -> SessionState:
        return self._session.state

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def close_reason(self) -> str | None:
        return self._close_reason

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """IDLE -> LISTENING; start the utterance worker and idle watchdog."""
        self._components.ingest.open(self.session_id, self._on_window, self._on_gap)
        await self._enter(SessionState.LISTENING)
        self._worker = asyncio.create_task(self._run(), name=f"utterances-{self.session_id}")
        self._watchdog = asyncio.create_task(
            self._watch_idle(), name=f"idle-{self.session_id}"
        )
        logger.info(f"Session {self.session_id} started")

    async def close(self, reason: str = "client_close") -> None:
        """Close the session from any state. Idempotent.

        In-flight transcription, planning, tool and synthesis work is
        cancelled; no reply audio is sent after this returns.
        """
        if self._closed:
            return
        self._closed = True
        self._close_reason = reason

        if self._reply is not None:
            self._reply.cancelled = True

        self._components.ingest.close(self.session_id)
        if self._session.can_transition_to(SessionState.CLOSED):
            self._session.transition_to(SessionState.CLOSED)

        current = asyncio.current_task()
        tasks = [
            task
            for task in (self._reply_task, self._worker, self._watchdog)
            if task is not None and task is not current and not task.done()
        ]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        # Utterances still queued are dropped
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()

        await self._store.remove(self.session_id)

        summary = self._session.metrics.to_dict()
        record_session_metrics(
            outcome=reason,
            duration_seconds=self._session.duration_seconds(),
            asr_latency_ms=summary["avg_asr_latency_ms"],
            planning_latency_ms=summary["avg_planning_latency_ms"],
            tts_latency_ms=summary["avg_tts_first_chunk_ms"],
        )
        logger.info(f"Session {self.session_id} closed ({reason}): {summary}")

        try:
            await self._sink.send_event(self._status_event())
        except Exception as e:
            logger.debug(f"Could not send closed status to {self.session_id}: {e}")

    async def wait_idle(self) -> None:
        """Wait until every queued utterance has been handled."""
        await self._queue.join()

    # ------------------------------------------------------------------
    # Client input
    # ------------------------------------------------------------------

    async def submit_audio(self, chunk: AudioChunk) -> None:
        """Feed one inbound chunk.

        Raises:
            SessionClosedError: If the session is closed.
            ProtocolViolationError: If the chunk is malformed for this session.
        """
        if self._closed:
            raise SessionClosedError(
                f"Session {self.session_id} is closed", session_id=self.session_id
            )

        self._session.touch()
        self._session.metrics.audio_received_bytes += len(chunk.payload)

        if (
            self._settings.barge_in_enabled
            and self.state == SessionState.SYNTHESIZING
            and is_speech(chunk.payload, threshold=self._settings.barge_in_threshold)
        ):
            await self.barge_in()

        self._components.ingest.submit(self.session_id, chunk)

    async def barge_in(self) -> bool:
        """Cancel the reply being spoken. Returns False if nothing was playing."""
        reply = self._reply
        if self._closed or reply is None or self.state != SessionState.SYNTHESIZING:
            return False

        # Marked before any await so no further chunk of this reply is sent
        reply.cancelled = True
        if self._reply_task is not None:
            self._reply_task.cancel()

        self._session.metrics.barge_ins += 1
        BARGE_IN_TOTAL.inc()
        logger.info(
            f"Barge-in on {self.session_id}: reply {reply.reply_id} cancelled "
            f"after {reply.chunks_sent} chunks"
        )

        self._session.transition_to(SessionState.LISTENING)
        await self._sink.send_event(
            {"type": "clear", "sessionId": self.session_id, "replyId": reply.reply_id}
        )
        await self._sink.send_event(self._status_event())
        return True

    # ------------------------------------------------------------------
    # Ingest callbacks (sync, called from submit or the expiry timer)
    # ------------------------------------------------------------------

    def _on_window(self, window: AudioWindow) -> None:
        if not self._closed:
            self._queue.put_nowait(window)

    def _on_gap(self, error: GapDetectedError) -> None:
        if not self._closed:
            self._queue.put_nowait(error)

    # ------------------------------------------------------------------
    # Utterance worker
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if isinstance(item, GapDetectedError):
                    await self._report(item)
                else:
                    await self._handle_utterance(item)
            except Exception:
                logger.exception(f"Unexpected failure in session {self.session_id}")
                self._closer = asyncio.create_task(self.close(reason="internal_error"))
                return
            finally:
                self._queue.task_done()

    async def _handle_utterance(self, window: AudioWindow) -> None:
        if self._closed:
            return
        self._session.metrics.utterances += 1

        if not window.audio:
            logger.debug(f"Skipping empty utterance {window.utterance_id} on {self.session_id}")
            return

        try:
            await self._enter(SessionState.TRANSCRIBING)
            transcript = await self._transcribe(window)

            if not transcript.text.strip():
                logger.debug(f"Nothing said in utterance {window.utterance_id}")
                await self._enter(SessionState.LISTENING)
                return

            await self._enter(SessionState.PLANNING)
            turn = await self._components.agent.plan(self._session, transcript)
            self._session.metrics.turns += 1
            self._session.metrics.planning_latencies_ms.append(turn.latency_ms)

            if turn.error_code:
                record_pipeline_error(turn.error_code)
                self._session.metrics.errors.append(turn.error_code)
                await self._sink.send_event(
                    self._error_event(turn.error_code, "No reply within the planning limit")
                )

            reply = turn.reply or ""
            await self._sink.send_event(
                {
                    "type": "reply",
                    "sessionId": self.session_id,
                    "utteranceId": window.utterance_id,
                    "text": reply,
                }
            )
            await self._speak(reply)

        except PipelineError as e:
            await self._recover(e)

    async def _transcribe(self, window: AudioWindow) -> Transcript:
        start = time.perf_counter()
        final: Transcript | None = None

        async with aclosing(
            self._components.asr.transcribe(self.session_id, window)
        ) as transcripts:
            async for transcript in transcripts:
                await self._sink.send_event(
                    {
                        "type": "transcript",
                        "sessionId": self.session_id,
                        "utteranceId": transcript.utterance_id,
                        "text": transcript.text,
                        "confidence": transcript.confidence,
                        "final": transcript.is_final,
                    }
                )
                if transcript.is_final:
                    final = transcript

        if final is None:
            raise TranscriptionFailedError(
                "Transcription ended without a final transcript", session_id=self.session_id
            )

        self._session.metrics.asr_latencies_ms.append((time.perf_counter() - start) * 1000)
        logger.info(f"Heard on {self.session_id}: {truncate_for_log(final.text)}")
        return final

    # ------------------------------------------------------------------
    # Speaking
    # ------------------------------------------------------------------

    async def _speak(self, text: str | None, *, fallback: bool = False) -> None:
        """Stream a reply (or the fallback asset) and return to LISTENING.

        Returns quietly when barge-in cancels the reply.

        Raises:
            SynthesisFailedError: If synthesis failed.
        """
        reply = _ActiveReply(reply_id=new_reply_id())
        self._reply = reply
        await self._enter(SessionState.SYNTHESIZING)

        if fallback:
            source = self._iter_fallback(reply.reply_id)
        else:
            source = self._components.tts.synthesize(
                text or "", reply_id=reply.reply_id, session_id=self.session_id
            )

        task = asyncio.create_task(
            self._stream_reply(reply, source), name=f"reply-{self.session_id}-{reply.reply_id}"
        )
        self._reply_task = task
        try:
            await asyncio.wait({task})
        finally:
            if not task.done():
                reply.cancelled = True
                task.cancel()
            self._reply = None
            self._reply_task = None

        if task.cancelled() or reply.cancelled:
            return
        error = task.exception()
        if error is not None:
            raise error

        if self.state == SessionState.SYNTHESIZING:
            await self._enter(SessionState.LISTENING)

    async def _stream_reply(self, reply: _ActiveReply, source: AsyncIterator[ReplyChunk]) -> None:
        async with aclosing(source) as chunks:
            async for chunk in chunks:
                if reply.cancelled:
                    return
                if reply.chunks_sent == 0:
                    self._session.metrics.tts_first_chunk_ms.append(
                        (time.perf_counter() - reply.started_at) * 1000
                    )
                self._session.metrics.audio_sent_bytes += len(chunk.payload)
                reply.chunks_sent += 1
                await self._sink.send_audio(chunk)

    async def _iter_fallback(self, reply_id: str) -> AsyncGenerator[ReplyChunk, None]:
        for chunk in self._components.tts.fallback_chunks(reply_id):
            yield chunk

    # ------------------------------------------------------------------
    # Error sub-state
    # ------------------------------------------------------------------

    async def _recover(self, error: PipelineError) -> None:
        """ERROR: log, tell the client, speak a notice, back to LISTENING."""
        if self._closed:
            return
        await self._report(error)
        await self._enter(SessionState.ERROR)

        tts = self._components.tts
        if isinstance(error, SynthesisFailedError):
            # Synthesis itself is broken; only the recorded asset can be played
            if tts.has_fallback:
                await self._speak(None, fallback=True)
        else:
            notice = (
                self._settings.transcription_failed_notice
                if isinstance(error, TranscriptionFailedError)
                else self._settings.error_notice
            )
            try:
                await self._speak(notice)
            except SynthesisFailedError as e:
                await self._report(e)
                await self._enter(SessionState.ERROR)
                if tts.has_fallback:
                    await self._speak(None, fallback=True)

        if self.state in (SessionState.ERROR, SessionState.SYNTHESIZING):
            await self._enter(SessionState.LISTENING)

    async def _report(self, error: PipelineError) -> None:
        record_pipeline_error(error.code)
        self._session.metrics.errors.append(error.code)
        logger.warning(f"Session {self.session_id} {error.code}: {error}")
        await self._sink.send_event(self._error_event(error.code, str(error)))

    # ------------------------------------------------------------------
    # Idle watchdog
    # ------------------------------------------------------------------

    async def _watch_idle(self) -> None:
        timeout = self._settings.session_idle_timeout_seconds
        poll = min(timeout, 1.0)
        while not self._closed:
            remaining = timeout - self._session.idle_seconds()
            busy = self.state != SessionState.LISTENING or not self._queue.empty()
            if remaining <= 0 and not busy:
                logger.info(f"Session {self.session_id} idle for {timeout}s, closing")
                await self.close(reason="idle_timeout")
                return
            await asyncio.sleep(max(remaining, poll))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _enter(self, state: SessionState) -> None:
        self._session.transition_to(state)
        await self._sink.send_event(self._status_event())

    def _status_event(self) -> dict[str, Any]:
        return {"type": "status", "sessionId": self.session_id, "state": self.state.name}

    def _error_event(self, code: str, message: str) -> dict[str, Any]:
        return {"type": "error", "sessionId": self.session_id, "code": code, "message": message}
