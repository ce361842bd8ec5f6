"""WebSocket handler for client voice sessions.

Protocol (JSON text frames):
- Inbound: audio, barge_in, close
- Outbound: audio, transcript, status, reply, error, clear

A malformed session id, a binary frame or any protocol-violating frame
closes the connection with code 1008.
"""

from __future__ import annotations

from typing import Any

from fastapi import WebSocket, WebSocketDisconnect, status
from starlette.websockets import WebSocketState

from parley.api.websocket.frames import (
    AudioFrame,
    BargeInFrame,
    CloseFrame,
    audio_frame,
    parse_inbound,
)
from parley.config import Settings
from parley.core.coordinator import SessionComponents, SessionCoordinator
from parley.core.exceptions import (
    ProtocolViolationError,
    SessionCapacityError,
    SessionClosedError,
)
from parley.core.session import SessionStore, validate_session_id
from parley.core.tts import ReplyChunk
from parley.logging_config import get_logger

logger: Any = get_logger(__name__)


class WebSocketSender:
    """Sends a session's outbound frames over its WebSocket.

    Implements the OutboundSink protocol for SessionCoordinator. Once a
    send fails the client is treated as gone and later frames are dropped;
    the receive loop notices the disconnect and closes the session.
    """

    def __init__(self, websocket: WebSocket, session_id: str) -> None:
        self._websocket = websocket
        self._session_id = session_id
        self._closed = False
        self.frames_sent = 0

    @property
    def closed(self) -> bool:
        return self._closed

    async def send_audio(self, chunk: ReplyChunk) -> None:
        """Send one reply audio chunk."""
        await self._send(audio_frame(self._session_id, chunk))

    async def send_event(self, event: dict[str, Any]) -> None:
        """Send an event frame; a CLOSED status is the last frame."""
        await self._send(event)
        if event.get("type") == "status" and event.get("state") == "CLOSED":
            await self.close()

    async def close(self, code: int = status.WS_1000_NORMAL_CLOSURE) -> None:
        if self._closed:
            return
        self._closed = True
        if self._websocket.application_state != WebSocketState.CONNECTED:
            return
        try:
            await self._websocket.close(code=code)
        except RuntimeError as e:
            logger.debug(f"WebSocket for {self._session_id} already closed: {e}")

    async def _send(self, message: dict[str, Any]) -> None:
        if self._closed:
            return
        try:
            await self._websocket.send_json(message)
            self.frames_sent += 1
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.error(f"Failed to send {message.get('type')} to {self._session_id}: {e}")
            self._closed = True


async def session_stream_endpoint(
    websocket: WebSocket,
    session_id: str,
    *,
    store: SessionStore,
    components: SessionComponents,
    settings: Settings,
) -> None:
    """Handle one client voice session for the lifetime of its connection."""
    await websocket.accept()

    try:
        validate_session_id(session_id)
        session = await store.create(session_id)
    except ProtocolViolationError as e:
        logger.warning(f"Rejected connection: {e}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=e.code)
        return
    except SessionCapacityError as e:
        await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER, reason=str(e))
        return

    logger.info(f"WebSocket connected for session {session_id}")

    sender = WebSocketSender(websocket, session_id)
    coordinator = SessionCoordinator(
        session, components, sender, store=store, settings=settings
    )
    await store.attach(session_id, coordinator)
    await coordinator.start()

    reason = "client_close"
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(
                    message.get("code", status.WS_1000_NORMAL_CLOSURE), message.get("reason")
                )
            raw = message.get("text")
            if raw is None:
                raise ProtocolViolationError(
                    "Binary frames are not accepted", session_id=session_id
                )
            frame = parse_inbound(raw, session_id=session_id)

            if isinstance(frame, AudioFrame):
                await coordinator.submit_audio(frame.to_chunk())
            elif isinstance(frame, BargeInFrame):
                await coordinator.barge_in()
            elif isinstance(frame, CloseFrame):
                logger.info(f"Client closed session {session_id}")
                break

    except ProtocolViolationError as e:
        reason = "protocol_violation"
        logger.warning(f"Protocol violation on {session_id}: {e}")
        await sender.send_event(
            {"type": "error", "sessionId": session_id, "code": e.code, "message": str(e)}
        )
        await sender.close(code=status.WS_1008_POLICY_VIOLATION)

    except SessionClosedError:
        # Closed from the server side (idle timeout) while a frame was in flight
        reason = coordinator.close_reason or "closed"

    except WebSocketDisconnect:
        reason = coordinator.close_reason or "disconnect"
        logger.info(f"WebSocket disconnected for session {session_id}")

    finally:
        await coordinator.close(reason=reason)
