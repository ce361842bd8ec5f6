"""Application configuration using Pydantic Settings.

All configuration is loaded from environment variables.
See .env.example for the available variables.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # ==========================================================================
    # Backend Selection
    # ==========================================================================
    asr_provider: Literal["deepgram", "http"] = Field(
        default="http", description="Transcription backend"
    )
    llm_provider: Literal["groq", "http"] = Field(
        default="http", description="Language-model backend"
    )
    tts_provider: Literal["elevenlabs", "http"] = Field(
        default="http", description="Speech synthesis backend"
    )

    # ==========================================================================
    # Backend Endpoints
    # ==========================================================================
    asr_endpoint: str = Field(
        default="http://localhost:9000/transcribe",
        description="HTTP transcription endpoint (raw PCM in, JSON out)",
    )
    llm_endpoint: str = Field(
        default="http://localhost:11434/v1",
        description="OpenAI-compatible chat completions base URL",
    )
    tts_endpoint: str = Field(
        default="http://localhost:5002/synthesize",
        description="HTTP synthesis endpoint (text in, raw PCM out)",
    )

    # ==========================================================================
    # API Keys
    # ==========================================================================
    deepgram_api_key: SecretStr | None = Field(
        default=None, description="Deepgram API key for streaming ASR"
    )
    groq_api_key: SecretStr | None = Field(default=None, description="Groq API key for LLM")
    elevenlabs_api_key: SecretStr | None = Field(
        default=None, description="ElevenLabs API key for TTS"
    )
    llm_api_key: SecretStr | None = Field(
        default=None, description="Bearer token for the HTTP chat endpoint"
    )

    # ==========================================================================
    # Models and Voices
    # ==========================================================================
    deepgram_model: str = Field(default="nova-2", description="Deepgram model name")
    asr_language: str = Field(default="en", description="Primary spoken language")
    llm_model: str = Field(default="llama-3.3-70b-versatile", description="Chat model name")
    llm_max_tokens: int = Field(default=256, description="Max tokens per LLM call")
    llm_temperature: float = Field(default=0.3, description="LLM sampling temperature")
    elevenlabs_voice_id: str = Field(
        default="9BWtsMINqrJLrRacOk9x", description="ElevenLabs voice ID"
    )
    elevenlabs_model_id: str = Field(
        default="eleven_multilingual_v2", description="ElevenLabs model ID"
    )
    tts_source_sample_rate: int = Field(
        default=22050,
        description="Native sample rate of the HTTP synthesis backend output",
    )

    # ==========================================================================
    # Timeouts
    # ==========================================================================
    asr_timeout_seconds: float = Field(default=5.0, description="Per-utterance ASR timeout")
    llm_timeout_seconds: float = Field(default=10.0, description="Per-call LLM timeout")
    tts_timeout_seconds: float = Field(
        default=5.0, description="Max wait for the first and each next TTS chunk"
    )
    default_tool_timeout_seconds: float = Field(
        default=3.0, description="Tool timeout when no per-tool value is set"
    )
    tool_timeouts: dict[str, float] = Field(
        default_factory=dict, description="Per-tool timeouts in seconds"
    )

    # ==========================================================================
    # Audio Ingest
    # ==========================================================================
    reorder_window_ms: float = Field(
        default=500.0, description="How long out-of-order chunks wait for a gap to fill"
    )
    max_utterance_bytes: int = Field(
        default=16000 * 2 * 30,
        description="Buffered bytes per utterance before a forced flush (30s @ 16kHz)",
    )
    max_reorder_distance: int = Field(
        default=256,
        ge=1,
        description="How far ahead of the expected sequence number a chunk may arrive",
    )
    input_sample_rate: int = Field(default=16000, description="Inbound PCM sample rate")
    input_encoding: str = Field(default="linear16", description="Inbound audio encoding")

    # ==========================================================================
    # Agent
    # ==========================================================================
    max_planning_iterations: int = Field(
        default=5, ge=1, description="Max LLM calls per agent turn"
    )
    max_history_messages: int = Field(
        default=20, description="Conversation messages kept for context"
    )
    tool_allow_list: list[str] = Field(
        default_factory=lambda: ["get_current_time"],
        description="Tools a session may invoke",
    )
    critical_tools: list[str] = Field(
        default_factory=list, description="Tools whose failure aborts the turn"
    )
    tool_endpoints: dict[str, str] = Field(
        default_factory=dict, description="HTTP tools: name -> endpoint URL"
    )
    system_prompt: str = Field(
        default=(
            "You are a helpful voice assistant. Keep replies short, one or two "
            "sentences, and use the available tools when they help."
        ),
        description="System prompt for the agent",
    )

    # ==========================================================================
    # Synthesis Output
    # ==========================================================================
    output_sample_rate: int = Field(default=16000, description="Outbound PCM sample rate")
    tts_max_chunk_bytes: int = Field(
        default=4096, gt=1, description="Max payload bytes per outbound audio chunk"
    )
    fallback_audio_path: str | None = Field(
        default=None,
        description="Raw 16-bit PCM played when synthesis of a notice fails",
    )

    # ==========================================================================
    # Session
    # ==========================================================================
    session_idle_timeout_seconds: float = Field(
        default=300.0, description="Close sessions idle for this long"
    )
    max_concurrent_sessions: int = Field(default=100, description="Session capacity")
    barge_in_enabled: bool = Field(
        default=True, description="Cancel synthesis when the user starts speaking"
    )
    barge_in_threshold: float = Field(
        default=500.0, description="RMS energy that counts as speech for barge-in"
    )

    # ==========================================================================
    # Spoken Notices
    # ==========================================================================
    planning_exhausted_reply: str = Field(
        default="Sorry, I couldn't work that out. Could you try asking another way?",
        description="Reply when the agent runs out of planning iterations",
    )
    transcription_failed_notice: str = Field(
        default="Sorry, I didn't catch that. Could you say it again?",
        description="Spoken when transcription fails",
    )
    error_notice: str = Field(
        default="Sorry, something went wrong on my side. Please try again.",
        description="Spoken for any other pipeline failure",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", description="Logging level"
    )
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Deployment environment"
    )

    # ==========================================================================
    # Derived Properties
    # ==========================================================================
    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"

    def tool_timeout(self, name: str) -> float:
        """Timeout for a tool, falling back to the default."""
        return self.tool_timeouts.get(name, self.default_tool_timeout_seconds)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Use dependency injection in FastAPI:
        settings: Settings = Depends(get_settings)
    """
    return Settings()
