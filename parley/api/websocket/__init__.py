"""WebSocket handlers for client voice sessions.

- session_stream_endpoint: Main WebSocket handler
- WebSocketSender: OutboundSink over a WebSocket
"""

from parley.api.websocket.frames import (
    AudioFrame,
    BargeInFrame,
    CloseFrame,
    audio_frame,
    parse_inbound,
)
from parley.api.websocket.session_stream import WebSocketSender, session_stream_endpoint

__all__ = [
    "session_stream_endpoint",
    "WebSocketSender",
    "AudioFrame",
    "BargeInFrame",
    "CloseFrame",
    "parse_inbound",
    "audio_frame",
]
