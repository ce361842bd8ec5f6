"""Client wire frames.

Inbound frames are validated with pydantic; anything that does not parse
is a protocol violation. Keys are camelCase on the wire.
"""

from __future__ import annotations

import base64
from typing import Annotated, Any, Literal

from pydantic import (
    Base64Bytes,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
)

from parley.core.exceptions import ProtocolViolationError
from parley.core.ingest import AudioChunk
from parley.core.tts import ReplyChunk


class _Frame(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    session_id: str = Field(alias="sessionId", min_length=1, max_length=64)


class AudioFrame(_Frame):
    """A chunk of client microphone audio (base64 16-bit PCM)."""

    type: Literal["audio"]
    seq: int = Field(ge=0)
    payload: Base64Bytes = Field(alias="bytes")
    final: bool = False

    def to_chunk(self) -> AudioChunk:
        return AudioChunk(
            session_id=self.session_id,
            seq=self.seq,
            payload=self.payload,
            final=self.final,
        )


class BargeInFrame(_Frame):
    """The user started speaking over the reply."""

    type: Literal["barge_in"]


class CloseFrame(_Frame):
    """The client is ending the session."""

    type: Literal["close"]


InboundFrame = Annotated[
    AudioFrame | BargeInFrame | CloseFrame,
    Field(discriminator="type"),
]

_inbound_adapter: TypeAdapter[InboundFrame] = TypeAdapter(InboundFrame)


def parse_inbound(raw: str | bytes, *, session_id: str) -> AudioFrame | BargeInFrame | CloseFrame:
    """Validate one inbound message for the session on this connection.

    Raises:
        ProtocolViolationError: Malformed JSON, unknown type, schema
            violation, or a frame addressed to another session.
    """
    try:
        frame = _inbound_adapter.validate_json(raw)
    except ValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ProtocolViolationError(f"Invalid frame: {errors}", session_id=session_id) from e

    if frame.session_id != session_id:
        raise ProtocolViolationError(
            f"Frame for session {frame.session_id} on connection for {session_id}",
            session_id=session_id,
        )
    return frame


def audio_frame(session_id: str, chunk: ReplyChunk) -> dict[str, Any]:
    """Outbound reply audio frame."""
    return {
        "type": "audio",
        "sessionId": session_id,
        "replyId": chunk.reply_id,
        "seq": chunk.seq,
        "bytes": base64.b64encode(chunk.payload).decode("ascii"),
        "final": chunk.final,
    }
