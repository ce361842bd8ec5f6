"""Tests for audio ingest reordering and utterance windows."""

from __future__ import annotations

import asyncio

import pytest

from parley.core.exceptions import (
    GapDetectedError,
    ProtocolViolationError,
    SessionClosedError,
)
from parley.core.ingest import AudioChunk, AudioIngestPipeline, AudioWindow, ReorderBuffer


def chunk(seq: int, payload: bytes | None = None, *, final: bool = False, session_id: str = "s1"):
    return AudioChunk(
        session_id=session_id,
        seq=seq,
        payload=payload if payload is not None else bytes([seq]) * 2,
        final=final,
    )


class TestReorderBuffer:
    """Tests for the pure reorder buffer."""

    @pytest.fixture
    def buffer(self) -> ReorderBuffer:
        return ReorderBuffer("s1", reorder_window=0.5, max_utterance_bytes=1000)

    def test_in_order_final_flushes(self, buffer: ReorderBuffer) -> None:
        assert buffer.add(chunk(0), now=0.0) == []
        assert buffer.add(chunk(1), now=0.0) == []
        windows = buffer.add(chunk(2, final=True), now=0.0)

        assert len(windows) == 1
        window = windows[0]
        assert window.audio == b"\x00\x00\x01\x01\x02\x02"
        assert (window.first_seq, window.last_seq, window.chunk_count) == (0, 2, 3)
        assert window.utterance_id == 0
        assert not window.gap_detected

    def test_out_of_order_is_reordered(self, buffer: ReorderBuffer) -> None:
        buffer.add(chunk(0), now=0.0)
        assert buffer.add(chunk(2, final=True), now=0.1) == []
        assert buffer.held_count == 1

        windows = buffer.add(chunk(1), now=0.2)

        assert len(windows) == 1
        assert windows[0].audio == b"\x00\x00\x01\x01\x02\x02"
        assert buffer.held_count == 0
        assert buffer.deadline is None

    def test_duplicates_dropped(self, buffer: ReorderBuffer) -> None:
        buffer.add(chunk(0), now=0.0)
        buffer.add(chunk(2), now=0.0)

        assert buffer.add(chunk(0), now=0.0) == []
        assert buffer.add(chunk(2), now=0.0) == []
        assert buffer.duplicates == 2

        windows = buffer.add(chunk(1, final=False), now=0.0) + buffer.add(
            chunk(3, final=True), now=0.0
        )
        assert windows[0].audio == b"\x00\x00\x01\x01\x02\x02\x03\x03"

    def test_utterance_ids_increase(self, buffer: ReorderBuffer) -> None:
        first = buffer.add(chunk(0, final=True), now=0.0)[0]
        second = buffer.add(chunk(1, final=True), now=0.0)[0]

        assert (first.utterance_id, second.utterance_id) == (0, 1)
        assert second.first_seq == 1

    def test_expire_before_deadline(self, buffer: ReorderBuffer) -> None:
        buffer.add(chunk(0), now=0.0)
        buffer.add(chunk(2), now=0.0)

        assert buffer.deadline == 0.5
        assert buffer.expire(now=0.4) is None

    def test_expire_flushes_with_gap(self, buffer: ReorderBuffer) -> None:
        buffer.add(chunk(0), now=0.0)
        buffer.add(chunk(2), now=0.0)
        buffer.add(chunk(4), now=0.1)

        window = buffer.expire(now=0.5)

        assert window is not None
        assert window.gap_detected
        assert window.missing == (1, 3)
        assert window.audio == b"\x00\x00\x02\x02\x04\x04"
        assert buffer.expected_seq == 5

    def test_late_chunk_after_expiry_is_duplicate(self, buffer: ReorderBuffer) -> None:
        buffer.add(chunk(0), now=0.0)
        buffer.add(chunk(2), now=0.0)
        buffer.expire(now=1.0)

        assert buffer.add(chunk(1), now=1.1) == []
        assert buffer.duplicates == 1

    def test_size_cap_forces_flush(self) -> None:
        buffer = ReorderBuffer("s1", reorder_window=0.5, max_utterance_bytes=4)
        assert buffer.add(chunk(0), now=0.0) == []
        windows = buffer.add(chunk(1), now=0.0)

        assert len(windows) == 1
        assert buffer.pending_bytes == 0

    def test_chunk_too_far_ahead_rejected(self) -> None:
        buffer = ReorderBuffer(
            "s1", reorder_window=0.5, max_utterance_bytes=1000, max_reorder_distance=8
        )
        buffer.add(chunk(0), now=0.0)

        with pytest.raises(ProtocolViolationError):
            buffer.add(chunk(20_000_000, b"xx"), now=0.0)

        assert buffer.held_count == 0
        assert buffer.deadline is None
        windows = buffer.add(chunk(1, final=True), now=0.1)
        assert windows[0].audio == b"\x00\x00\x01\x01"

    def test_gap_bounded_by_reorder_distance(self) -> None:
        buffer = ReorderBuffer(
            "s1", reorder_window=0.5, max_utterance_bytes=1000, max_reorder_distance=8
        )
        buffer.add(chunk(0), now=0.0)
        buffer.add(chunk(9), now=0.0)

        window = buffer.expire(now=0.5)

        assert window is not None
        assert window.missing == tuple(range(1, 9))
        assert buffer.expected_seq == 10

    def test_held_bytes_count_toward_size_cap(self) -> None:
        buffer = ReorderBuffer("s1", reorder_window=0.5, max_utterance_bytes=6)
        buffer.add(chunk(0), now=0.0)
        assert buffer.add(chunk(2), now=0.0) == []
        assert buffer.held_bytes == 2

        windows = buffer.add(chunk(3), now=0.0)

        assert len(windows) == 1
        assert windows[0].gap_detected
        assert windows[0].missing == (1,)
        assert windows[0].audio == b"\x00\x00\x02\x02\x03\x03"
        assert buffer.held_bytes == 0
        assert buffer.deadline is None
        assert buffer.expected_seq == 4


class TestAudioIngestPipeline:
    """Tests for the per-session ingest pipeline."""

    @pytest.mark.asyncio
    async def test_submit_delivers_windows(self) -> None:
        pipeline = AudioIngestPipeline(reorder_window_ms=50)
        windows: list[AudioWindow] = []
        pipeline.open("s1", windows.append)

        pipeline.submit("s1", chunk(0))
        pipeline.submit("s1", chunk(1, final=True))

        assert len(windows) == 1
        assert windows[0].session_id == "s1"

    @pytest.mark.asyncio
    async def test_sessions_are_isolated(self) -> None:
        pipeline = AudioIngestPipeline(reorder_window_ms=50)
        a: list[AudioWindow] = []
        b: list[AudioWindow] = []
        pipeline.open("a", a.append)
        pipeline.open("b", b.append)

        pipeline.submit("a", chunk(0, b"aa", session_id="a"))
        pipeline.submit("b", chunk(0, b"bb", final=True, session_id="b"))
        pipeline.submit("a", chunk(1, b"AA", final=True, session_id="a"))

        assert [w.audio for w in a] == [b"aaAA"]
        assert [w.audio for w in b] == [b"bb"]

    @pytest.mark.asyncio
    async def test_unknown_session_rejected(self) -> None:
        pipeline = AudioIngestPipeline()
        with pytest.raises(SessionClosedError):
            pipeline.submit("s1", chunk(0))

    @pytest.mark.asyncio
    async def test_mismatched_session_rejected(self) -> None:
        pipeline = AudioIngestPipeline()
        pipeline.open("s1", lambda w: None)
        with pytest.raises(ProtocolViolationError):
            pipeline.submit("s1", chunk(0, session_id="other"))

    @pytest.mark.asyncio
    async def test_gap_expiry_reports_and_flushes(self) -> None:
        pipeline = AudioIngestPipeline(reorder_window_ms=30)
        windows: list[AudioWindow] = []
        gaps: list[GapDetectedError] = []
        pipeline.open("s1", windows.append, gaps.append)

        pipeline.submit("s1", chunk(0))
        pipeline.submit("s1", chunk(2, final=True))
        assert windows == []

        await asyncio.sleep(0.1)

        assert len(gaps) == 1
        assert gaps[0].missing == [1]
        assert len(windows) == 1
        assert windows[0].gap_detected

    @pytest.mark.asyncio
    async def test_gap_filled_in_time_cancels_expiry(self) -> None:
        pipeline = AudioIngestPipeline(reorder_window_ms=30)
        windows: list[AudioWindow] = []
        gaps: list[GapDetectedError] = []
        pipeline.open("s1", windows.append, gaps.append)

        pipeline.submit("s1", chunk(1, final=True))
        pipeline.submit("s1", chunk(0))
        await asyncio.sleep(0.08)

        assert gaps == []
        assert len(windows) == 1
        assert not windows[0].gap_detected

    @pytest.mark.asyncio
    async def test_close_discards_buffered(self) -> None:
        pipeline = AudioIngestPipeline(reorder_window_ms=20)
        windows: list[AudioWindow] = []
        pipeline.open("s1", windows.append)

        pipeline.submit("s1", chunk(0))
        pipeline.submit("s1", chunk(2))
        pipeline.close("s1")
        await asyncio.sleep(0.06)

        assert windows == []
        assert not pipeline.is_open("s1")
        with pytest.raises(SessionClosedError):
            pipeline.submit("s1", chunk(3))

    @pytest.mark.asyncio
    async def test_far_ahead_chunk_rejected(self) -> None:
        pipeline = AudioIngestPipeline(reorder_window_ms=30, max_reorder_distance=16)
        windows: list[AudioWindow] = []
        pipeline.open("s1", windows.append)

        pipeline.submit("s1", chunk(0))
        with pytest.raises(ProtocolViolationError):
            pipeline.submit("s1", chunk(2**40, b"xx"))
        await asyncio.sleep(0.06)

        assert windows == []
        assert pipeline.buffer_for("s1").held_count == 0

    @pytest.mark.asyncio
    async def test_held_overflow_reports_gap_immediately(self) -> None:
        pipeline = AudioIngestPipeline(reorder_window_ms=1000, max_utterance_bytes=6)
        windows: list[AudioWindow] = []
        gaps: list[GapDetectedError] = []
        pipeline.open("s1", windows.append, gaps.append)

        pipeline.submit("s1", chunk(0))
        pipeline.submit("s1", chunk(2))
        pipeline.submit("s1", chunk(3))

        assert [g.missing for g in gaps] == [[1]]
        assert len(windows) == 1
        assert windows[0].gap_detected
        assert pipeline.buffer_for("s1").deadline is None
