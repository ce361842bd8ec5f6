"""Prometheus metrics for Parley sessions.

Provides metrics for monitoring pipeline latency, failures and load.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from prometheus_client.exposition import CONTENT_TYPE_LATEST

# =============================================================================
# Counters
# =============================================================================

SESSION_TOTAL = Counter(
    "parley_session_total",
    "Total sessions handled",
    ["outcome"],
)

PIPELINE_ERRORS = Counter(
    "parley_pipeline_errors_total",
    "Pipeline failures surfaced to the coordinator",
    ["code"],
)

BACKEND_TIMEOUTS = Counter(
    "parley_backend_timeouts_total",
    "Backend calls that exceeded their timeout",
    ["stage"],
)

BARGE_IN_TOTAL = Counter(
    "parley_barge_in_total",
    "Replies cancelled because the user started speaking",
)

TOOL_INVOCATIONS = Counter(
    "parley_tool_invocations_total",
    "Agent tool invocations",
    ["tool", "outcome"],
)

DUPLICATE_CHUNKS = Counter(
    "parley_duplicate_chunks_total",
    "Inbound audio chunks dropped as duplicates",
)

# =============================================================================
# Gauges
# =============================================================================

ACTIVE_SESSIONS = Gauge(
    "parley_active_sessions",
    "Currently open sessions",
)

# =============================================================================
# Histograms
# =============================================================================

SESSION_DURATION = Histogram(
    "parley_session_duration_seconds",
    "Session duration in seconds",
    buckets=[10, 30, 60, 120, 300, 600, 900, 1800],
)

ASR_LATENCY = Histogram(
    "parley_asr_latency_seconds",
    "Time from utterance flush to final transcript",
    buckets=[0.1, 0.25, 0.5, 0.75, 1.0, 1.5, 2.0, 3.0, 5.0],
)

PLANNING_LATENCY = Histogram(
    "parley_planning_latency_seconds",
    "Agent turn duration including tool calls",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.0, 3.0, 5.0, 10.0, 20.0],
)

TTS_FIRST_CHUNK = Histogram(
    "parley_tts_first_chunk_seconds",
    "TTS time to first audio chunk",
    buckets=[0.05, 0.1, 0.25, 0.5, 0.75, 1.0, 1.5, 2.0],
)

# =============================================================================
# Helper Functions
# =============================================================================


def record_session_metrics(
    outcome: str,
    duration_seconds: float,
    *,
    asr_latency_ms: float | None = None,
    planning_latency_ms: float | None = None,
    tts_latency_ms: float | None = None,
) -> None:
    """Record metrics for a closed session.

    Args:
        outcome: Session outcome (completed, idle_timeout, protocol_error, ...)
        duration_seconds: Total session duration
        asr_latency_ms: Average transcription latency in milliseconds
        planning_latency_ms: Average planning latency in milliseconds
        tts_latency_ms: Average TTS first chunk latency in milliseconds
    """
    SESSION_TOTAL.labels(outcome=outcome).inc()
    SESSION_DURATION.observe(duration_seconds)

    # Latencies arrive in ms, histograms are in seconds
    if asr_latency_ms:
        ASR_LATENCY.observe(asr_latency_ms / 1000)

    if planning_latency_ms:
        PLANNING_LATENCY.observe(planning_latency_ms / 1000)

    if tts_latency_ms:
        TTS_FIRST_CHUNK.observe(tts_latency_ms / 1000)


def record_pipeline_error(code: str) -> None:
    """Count a failure surfaced to a session."""
    PIPELINE_ERRORS.labels(code=code).inc()


def record_backend_timeout(stage: str) -> None:
    """Count a backend call that timed out (retries included)."""
    BACKEND_TIMEOUTS.labels(stage=stage).inc()


def record_tool_invocation(tool: str, outcome: str) -> None:
    """Count a tool invocation by outcome (ok, error, timeout, denied)."""
    TOOL_INVOCATIONS.labels(tool=tool, outcome=outcome).inc()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output.

    Returns:
        Metrics in Prometheus text exposition format.
    """
    return generate_latest()


def get_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
