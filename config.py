"""Configuration management for the chat relay service."""

from __future__ import annotations

import math
import os
from dataclasses import dataclass

API_TYPES = ("openai", "azure")


def _env_float(name: str, default: float) -> float:
    """Get float environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    """Get integer environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return int(v.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    """Get string environment variable with fallback."""
    v = os.getenv(name)
    if v is None:
        return default
    return v


@dataclass(frozen=True)
class AppConfig:
    """Application configuration."""

    # Primary provider (OpenAI / Azure OpenAI)
    openai_api_host: str
    openai_api_type: str
    openai_api_version: str
    azure_deployment_id: str
    openai_organization: str
    openai_api_key: str

    # Chat defaults
    default_model: str
    default_system_prompt: str
    default_temperature: float
    max_tokens: int

    # Secondary provider (Dify conversation API)
    dify_api_url: str
    dify_api_key: str
    dify_api_timeout_ms: int

    # Outbound connect/write/pool timeout. Reads are unbounded; the idle guard owns liveness.
    request_timeout_s: float

    # Server settings
    port: int
    log_level: str
    log_path: str
    max_request_bytes: int
    user_agent: str

    @classmethod
    def from_env(cls) -> AppConfig:
        """Load configuration from environment variables."""
        return cls(
            openai_api_host=_env_str("OPENAI_API_HOST", "https://api.openai.com").rstrip("/"),
            openai_api_type=_env_str("OPENAI_API_TYPE", "openai").strip().lower(),
            openai_api_version=_env_str("OPENAI_API_VERSION", "2023-03-15-preview"),
            azure_deployment_id=_env_str("AZURE_DEPLOYMENT_ID", ""),
            openai_organization=_env_str("OPENAI_ORGANIZATION", ""),
            openai_api_key=_env_str("OPENAI_API_KEY", ""),
            default_model=_env_str("DEFAULT_MODEL", "gpt-3.5-turbo"),
            default_system_prompt=_env_str(
                "DEFAULT_SYSTEM_PROMPT",
                "You are ChatGPT, a large language model trained by OpenAI. "
                "Follow the user's instructions carefully. Respond using markdown.",
            ),
            default_temperature=_env_float("DEFAULT_TEMPERATURE", 1.0),
            max_tokens=_env_int("MAX_TOKENS", 1000),
            dify_api_url=_env_str("DIFY_API_URL", "https://api.dify.ai/v1/chat-messages"),
            dify_api_key=_env_str("DIFY_API_KEY", ""),
            dify_api_timeout_ms=_env_int("DIFY_API_TIMEOUT", 5000),
            request_timeout_s=_env_float("REQUEST_TIMEOUT_S", 30.0),
            port=_env_int("PORT", 8000),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper().strip(),
            log_path=_env_str("LOG_PATH", "/var/log/chat-relay/chat-relay.log"),
            max_request_bytes=_env_int("MAX_REQUEST_BYTES", 2_000_000),  # ~2MB
            user_agent=_env_str("USER_AGENT", "chat-relay/0.3.0"),
        )

    @property
    def dify_idle_timeout_s(self) -> float:
        """Idle timeout for the conversation stream, in seconds."""
        return self.dify_api_timeout_ms / 1000.0

    def validate(self) -> None:
        """Validate configuration."""
        if self.openai_api_type not in API_TYPES:
            raise ValueError(f"OPENAI_API_TYPE must be one of {API_TYPES}, got {self.openai_api_type!r}")
        if self.openai_api_type == "azure" and not self.azure_deployment_id:
            raise ValueError("AZURE_DEPLOYMENT_ID is required when OPENAI_API_TYPE=azure")
        if not self.openai_api_host:
            raise ValueError("OPENAI_API_HOST must be non-empty")
        if not math.isfinite(self.default_temperature):
            raise ValueError("DEFAULT_TEMPERATURE must be a finite number")
        if self.max_tokens <= 0:
            raise ValueError("MAX_TOKENS must be > 0")
        if self.dify_api_timeout_ms <= 0:
            raise ValueError("DIFY_API_TIMEOUT must be > 0")
        if self.request_timeout_s <= 0:
            raise ValueError("REQUEST_TIMEOUT_S must be > 0")
        if self.max_request_bytes <= 0:
            raise ValueError("MAX_REQUEST_BYTES must be > 0")
        if not self.log_path:
            raise ValueError("LOG_PATH must be non-empty")
        if not self.user_agent:
            raise ValueError("USER_AGENT must be non-empty")


def load_config() -> AppConfig:
    """Load configuration from environment."""
    return AppConfig.from_env()
