"""Configuration schema for the assistant orchestrator.

Defines Pydantic models for loading and validating configuration from YAML
files and environment variables.
"""

import os
from pathlib import Path

from pydantic import BaseModel, Field, field_validator


class WebSocketConfig(BaseModel):
    """Voice WebSocket transport configuration."""

    enabled: bool = Field(default=True, description="Enable the voice WebSocket transport")
    host: str = Field(default="0.0.0.0", description="Bind host address")  # noqa: S104
    port: int = Field(default=8080, ge=1024, le=65535, description="Bind port")
    max_connections: int = Field(default=100, ge=1, description="Maximum concurrent connections")
    max_message_bytes: int = Field(
        default=2**20, ge=1024, description="Maximum size of one client frame"
    )


class HttpConfig(BaseModel):
    """HTTP API (chat, conversations, health) configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host address")  # noqa: S104
    port: int = Field(default=8081, ge=1024, le=65535, description="Bind port")


class GeminiConfig(BaseModel):
    """Upstream language model configuration."""

    api_key: str = Field(default="", description="Gemini API key")
    chat_model: str = Field(
        default="gemini-2.5-flash", description="Model used by the text chat loop"
    )
    live_model: str = Field(
        default="gemini-2.5-flash-native-audio-preview-12-2025",
        description="Realtime model used by voice sessions",
    )
    temperature: float = Field(default=0.7, ge=0.0, le=2.0, description="Sampling temperature")
    max_output_tokens: int = Field(default=1024, ge=64, description="Output token limit")
    request_timeout_s: float = Field(
        default=30.0, gt=0, description="Timeout for one text model round-trip"
    )


class ChatConfig(BaseModel):
    """Text chat turn loop limits."""

    max_message_length: int = Field(
        default=2000, ge=1, description="Longest accepted user message in characters"
    )
    max_history_messages: int = Field(
        default=10, ge=0, le=10, description="History entries forwarded to the model"
    )
    max_tool_rounds: int = Field(
        default=5, ge=1, le=5, description="Model round-trips allowed per chat request"
    )
    max_image_bytes: int = Field(
        default=5 * 2**20, ge=1024, description="Largest accepted photo for service detection"
    )


class VoiceConfig(BaseModel):
    """Voice duplex bridge configuration."""

    input_mime_type: str = Field(
        default="audio/pcm;rate=16000", description="MIME type of client audio chunks"
    )
    output_mime_type: str = Field(
        default="audio/pcm;rate=24000", description="Default MIME type of upstream audio"
    )
    connect_timeout_s: float = Field(
        default=15.0, gt=0, description="Upstream handshake timeout in seconds"
    )
    default_voice: str = Field(default="Kore", description="Prebuilt voice persona")


class RedisConfig(BaseModel):
    """Redis configuration for the conversation store."""

    url: str | None = Field(
        default=None,
        description="Redis connection URL (in-memory store when unset)",
    )
    key_prefix: str = Field(default="assistant:", description="Key prefix for stored records")
    conversation_ttl_seconds: int | None = Field(
        default=None, ge=60, description="Expire idle conversations after this many seconds"
    )


class BackendConfig(BaseModel):
    """Marketplace backend REST API used by tool capabilities."""

    url: str = Field(default="http://localhost:3001", description="Backend base URL")
    service_token: str | None = Field(default=None, description="Bearer token for the backend")
    timeout_s: float = Field(default=10.0, gt=0, description="Per-request timeout in seconds")
    result_limit: int = Field(default=5, ge=1, le=50, description="Search result page size")
    regions_cache_ttl_s: float = Field(
        default=300.0, ge=0, description="Active regions cache lifetime"
    )


class AssistantConfig(BaseModel):
    """Root assistant configuration."""

    websocket: WebSocketConfig = Field(default_factory=WebSocketConfig)
    http: HttpConfig = Field(default_factory=HttpConfig)
    gemini: GeminiConfig = Field(default_factory=GeminiConfig)
    chat: ChatConfig = Field(default_factory=ChatConfig)
    voice: VoiceConfig = Field(default_factory=VoiceConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    backend: BackendConfig = Field(default_factory=BackendConfig)

    # Operational settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    graceful_shutdown_timeout_s: int = Field(
        default=10,
        ge=1,
        description="Graceful shutdown timeout in seconds",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate logging level name."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got '{v}'")
        return v.upper()

    @classmethod
    def from_yaml(cls, path: Path) -> "AssistantConfig":
        """Load configuration from YAML file with environment variable overrides.

        Args:
            path: Path to YAML configuration file

        Returns:
            Loaded configuration

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ValueError: If YAML is invalid or validation fails
        """
        import yaml  # type: ignore[import-untyped]

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        return cls.model_validate(apply_env_overrides(data))

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "AssistantConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls.model_validate(apply_env_overrides({}))


def apply_env_overrides(data: dict) -> dict:
    """Overlay environment variables onto raw configuration data."""
    if api_key := os.getenv("GEMINI_API_KEY"):
        data.setdefault("gemini", {})["api_key"] = api_key

    if redis_url := os.getenv("REDIS_URL"):
        data.setdefault("redis", {})["url"] = redis_url

    if backend_url := os.getenv("BACKEND_URL"):
        data.setdefault("backend", {})["url"] = backend_url

    if backend_token := os.getenv("BACKEND_SERVICE_TOKEN"):
        data.setdefault("backend", {})["service_token"] = backend_token

    if log_level := os.getenv("ASSISTANT_LOG_LEVEL"):
        data["log_level"] = log_level

    return data
