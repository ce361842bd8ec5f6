"""Audio ingest: per-session reordering of inbound chunks into utterance windows.

Chunks carry a sequence number that is monotonic across the whole session.
Contiguous chunks are appended to the current utterance; a ``final`` chunk
flushes it. Chunks that arrive ahead of a gap are held until the gap fills
or the reorder window expires, in which case everything received is flushed
as its own utterance and the session is told a gap was detected.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from parley.core.exceptions import (
    GapDetectedError,
    ProtocolViolationError,
    SessionClosedError,
)
from parley.logging_config import get_logger
from parley.observability.metrics import DUPLICATE_CHUNKS

logger: Any = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class AudioChunk:
    """One inbound frame of raw PCM audio."""

    session_id: str
    seq: int
    payload: bytes
    final: bool = False  # End-of-utterance marker


@dataclass(frozen=True, slots=True)
class AudioWindow:
    """A complete utterance ready for transcription."""

    session_id: str
    utterance_id: int
    audio: bytes
    first_seq: int
    last_seq: int
    chunk_count: int
    gap_detected: bool = False
    missing: tuple[int, ...] = ()


class ReorderBuffer:
    """Sequence reordering for one session.

    Pure bookkeeping: callers pass the current monotonic time, nothing
    here schedules work. A chunk more than ``max_reorder_distance`` ahead
    of the expected sequence number is a protocol violation, so a gap
    never spans more than that many chunks.
    """

    def __init__(
        self,
        session_id: str,
        *,
        reorder_window: float,
        max_utterance_bytes: int,
        max_reorder_distance: int = 256,
    ) -> None:
        self._session_id = session_id
        self._reorder_window = reorder_window
        self._max_bytes = max_utterance_bytes
        self._max_distance = max_reorder_distance

        self._expected = 0
        self._pending: list[AudioChunk] = []
        self._pending_bytes = 0
        self._held: dict[int, AudioChunk] = {}
        self._held_bytes = 0
        self._gap_since: float | None = None
        self._next_utterance_id = 0

        self.duplicates = 0

    @property
    def expected_seq(self) -> int:
        """Next sequence number that extends the current utterance."""
        return self._expected

    @property
    def held_count(self) -> int:
        return len(self._held)

    @property
    def pending_bytes(self) -> int:
        return self._pending_bytes

    @property
    def held_bytes(self) -> int:
        return self._held_bytes

    @property
    def deadline(self) -> float | None:
        """Monotonic time at which the current gap gives up, if any."""
        if self._gap_since is None:
            return None
        return self._gap_since + self._reorder_window

    def add(self, chunk: AudioChunk, now: float) -> list[AudioWindow]:
        """Accept a chunk and return any utterances it completes.

        Raises:
            ProtocolViolationError: If the chunk is too far ahead of the
                expected sequence number.
        """
        if chunk.seq < self._expected or chunk.seq in self._held:
            self.duplicates += 1
            DUPLICATE_CHUNKS.inc()
            logger.debug(f"Dropped duplicate chunk {chunk.seq} for {self._session_id}")
            return []

        distance = chunk.seq - self._expected
        if distance > self._max_distance:
            raise ProtocolViolationError(
                f"Chunk {chunk.seq} is {distance} ahead of expected {self._expected} "
                f"(max {self._max_distance})",
                session_id=self._session_id,
            )

        if distance > 0:
            self._held[chunk.seq] = chunk
            self._held_bytes += len(chunk.payload)
            if self._gap_since is None:
                self._gap_since = now
            if self._pending_bytes + self._held_bytes >= self._max_bytes:
                # Held audio counts toward the utterance cap; give up on the gap
                return [self._flush_held()]
            return []

        windows: list[AudioWindow] = []
        self._accept(chunk, windows)
        while self._expected in self._held:
            held = self._held.pop(self._expected)
            self._held_bytes -= len(held.payload)
            self._accept(held, windows)

        if not self._held:
            self._gap_since = None
        return windows

    def expire(self, now: float) -> AudioWindow | None:
        """Flush everything held once the reorder window has passed."""
        deadline = self.deadline
        if deadline is None or now < deadline:
            return None
        return self._flush_held()

    def _flush_held(self) -> AudioWindow:
        highest = max(self._held)
        missing = tuple(s for s in range(self._expected, highest) if s not in self._held)
        chunks = self._pending + [self._held[s] for s in sorted(self._held)]

        self._held.clear()
        self._held_bytes = 0
        self._gap_since = None
        self._expected = highest + 1
        self._pending = chunks
        return self._flush(gap_detected=True, missing=missing)

    def _accept(self, chunk: AudioChunk, windows: list[AudioWindow]) -> None:
        self._pending.append(chunk)
        self._pending_bytes += len(chunk.payload)
        self._expected = chunk.seq + 1
        if chunk.final or self._pending_bytes >= self._max_bytes:
            windows.append(self._flush())

    def _flush(
        self,
        *,
        gap_detected: bool = False,
        missing: tuple[int, ...] = (),
    ) -> AudioWindow:
        chunks = self._pending
        window = AudioWindow(
            session_id=self._session_id,
            utterance_id=self._next_utterance_id,
            audio=b"".join(c.payload for c in chunks),
            first_seq=chunks[0].seq,
            last_seq=chunks[-1].seq,
            chunk_count=len(chunks),
            gap_detected=gap_detected,
            missing=missing,
        )
        self._next_utterance_id += 1
        self._pending = []
        self._pending_bytes = 0
        return window


WindowHandler = Callable[[AudioWindow], None]
GapHandler = Callable[[GapDetectedError], None]


@dataclass
class _IngestLane:
    """Ingest state for one session."""

    buffer: ReorderBuffer
    on_window: WindowHandler
    on_gap: GapHandler | None = None
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)


class AudioIngestPipeline:
    """Receives chunks for many sessions and hands each session its utterances.

    Each session gets its own lane; lanes share nothing. Gap expiry runs on
    the event loop via ``call_later`` so a stalled client still gets its
    partial utterance after the reorder window.
    """

    def __init__(
        self,
        *,
        reorder_window_ms: float = 500.0,
        max_utterance_bytes: int = 960_000,
        max_reorder_distance: int = 256,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._reorder_window = reorder_window_ms / 1000
        self._max_utterance_bytes = max_utterance_bytes
        self._max_reorder_distance = max_reorder_distance
        self._clock = clock
        self._lanes: dict[str, _IngestLane] = {}

    def open(
        self,
        session_id: str,
        on_window: WindowHandler,
        on_gap: GapHandler | None = None,
    ) -> None:
        """Start accepting chunks for a session."""
        self._lanes[session_id] = _IngestLane(
            buffer=ReorderBuffer(
                session_id,
                reorder_window=self._reorder_window,
                max_utterance_bytes=self._max_utterance_bytes,
                max_reorder_distance=self._max_reorder_distance,
            ),
            on_window=on_window,
            on_gap=on_gap,
        )

    def submit(self, session_id: str, chunk: AudioChunk) -> None:
        """Buffer a chunk for ``session_id``.

        Raises:
            SessionClosedError: If the session is closed or was never opened.
            ProtocolViolationError: If the chunk belongs to another session or
                is too far ahead of the expected sequence number.
        """
        lane = self._lanes.get(session_id)
        if lane is None:
            raise SessionClosedError(
                f"Session {session_id} is not accepting audio", session_id=session_id
            )
        if chunk.session_id != session_id:
            raise ProtocolViolationError(
                f"Chunk for {chunk.session_id} submitted to {session_id}",
                session_id=session_id,
            )
        if chunk.seq < 0:
            raise ProtocolViolationError(
                f"Negative sequence number {chunk.seq}", session_id=session_id
            )

        for window in lane.buffer.add(chunk, self._clock()):
            self._deliver(session_id, lane, window)
        self._schedule_expiry(session_id, lane)

    def close(self, session_id: str) -> None:
        """Stop accepting chunks; anything buffered is discarded."""
        lane = self._lanes.pop(session_id, None)
        if lane and lane.timer:
            lane.timer.cancel()

    def is_open(self, session_id: str) -> bool:
        return session_id in self._lanes

    def buffer_for(self, session_id: str) -> ReorderBuffer | None:
        lane = self._lanes.get(session_id)
        return lane.buffer if lane else None

    def _schedule_expiry(self, session_id: str, lane: _IngestLane) -> None:
        if lane.timer:
            lane.timer.cancel()
            lane.timer = None

        deadline = lane.buffer.deadline
        if deadline is None:
            return

        delay = max(0.0, deadline - self._clock())
        lane.timer = asyncio.get_running_loop().call_later(
            delay, self._expire, session_id
        )

    def _expire(self, session_id: str) -> None:
        lane = self._lanes.get(session_id)
        if lane is None:
            return
        lane.timer = None

        window = lane.buffer.expire(self._clock())
        if window is None:
            # Woke up early; re-arm for the remaining time
            self._schedule_expiry(session_id, lane)
            return
        self._deliver(session_id, lane, window)

    def _deliver(self, session_id: str, lane: _IngestLane, window: AudioWindow) -> None:
        if window.gap_detected:
            logger.warning(
                f"Gap not filled for {session_id}: missing seq {list(window.missing)}, "
                f"flushing {window.chunk_count} chunks"
            )
            if lane.on_gap:
                lane.on_gap(
                    GapDetectedError(
                        f"Sequence gap not filled within {self._reorder_window * 1000:.0f}ms",
                        session_id=session_id,
                        missing=list(window.missing),
                    )
                )
        lane.on_window(window)
