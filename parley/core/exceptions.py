"""Pipeline error taxonomy.

Every failure the coordinator turns into a spoken notice is a PipelineError
with a stable ``code`` that is also sent to the client in ``error`` frames.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base exception for session pipeline failures."""

    code = "pipeline_error"

    def __init__(self, message: str, *, session_id: str | None = None) -> None:
        super().__init__(message)
        self.session_id = session_id


class GapDetectedError(PipelineError):
    """Raised when the reorder window expires with sequence numbers missing."""

    code = "gap_detected"

    def __init__(
        self,
        message: str,
        *,
        session_id: str | None = None,
        missing: list[int] | None = None,
    ) -> None:
        super().__init__(message, session_id=session_id)
        self.missing = missing or []


class TranscriptionFailedError(PipelineError):
    """Raised when the transcription backend fails after its retry."""

    code = "transcription_failed"


class PlanningExhaustedError(PipelineError):
    """Raised when the agent hits the iteration bound without a reply."""

    code = "planning_exhausted"

    def __init__(self, message: str, *, session_id: str | None = None, iterations: int = 0):
        super().__init__(message, session_id=session_id)
        self.iterations = iterations


class ToolInvocationFailedError(PipelineError):
    """Raised when a tool errors, times out or is not permitted.

    Only critical tools abort the turn; other failures are recorded.
    """

    code = "tool_invocation_failed"

    def __init__(
        self,
        message: str,
        *,
        tool_name: str,
        critical: bool = False,
        session_id: str | None = None,
    ) -> None:
        super().__init__(message, session_id=session_id)
        self.tool_name = tool_name
        self.critical = critical
        self.turn: object | None = None  # The aborted AgentTurn, once known


class SynthesisFailedError(PipelineError):
    """Raised when the synthesis backend fails."""

    code = "synthesis_failed"


class SessionClosedError(PipelineError):
    """Raised when an operation targets a closed or unknown session."""

    code = "session_closed"


class BackendTimeoutError(PipelineError):
    """Raised when a backend call exceeds its timeout."""

    code = "backend_timeout"

    def __init__(
        self,
        message: str,
        *,
        stage: str,
        timeout: float,
        session_id: str | None = None,
    ) -> None:
        super().__init__(message, session_id=session_id)
        self.stage = stage
        self.timeout = timeout


class ProtocolViolationError(PipelineError):
    """Raised for malformed frames or session identifiers. Closes the connection."""

    code = "protocol_violation"


class InvalidTransitionError(Exception):
    """Raised when a session state transition is not allowed."""

    def __init__(self, current: object, target: object) -> None:
        super().__init__(f"Invalid session transition: {current} -> {target}")
        self.current = current
        self.target = target


class SessionCapacityError(Exception):
    """Raised when the store is at maximum session capacity."""

    pass
