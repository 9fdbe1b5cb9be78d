"""Configuration management for Streamline"""

from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="STREAMLINE_",
        case_sensitive=False,
    )

    # Application
    app_name: str = Field(default="Streamline", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    debug: bool = Field(default=False, description="Debug mode")

    # API Settings
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_prefix: str = Field(default="/api/v1", description="API prefix")
    cors_origins: List[str] = Field(default=["*"], description="CORS allowed origins")

    # Redis
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    redis_max_connections: int = Field(default=50, description="Redis max connections")

    # Event journal
    stream_ttl_streaming: int = Field(default=3600, description="Journal key TTL while a stream is active (seconds)")
    stream_ttl_completed: int = Field(default=1800, description="Journal key TTL after a stream finished (seconds)")
    reader_poll_interval: float = Field(default=0.1, description="Journal reader poll interval (seconds)")
    reader_keepalive_interval: float = Field(default=30.0, description="Keepalive interval for idle readers (seconds)")
    reader_inactivity_timeout: float = Field(default=300.0, description="Reader gives up after this much silence (seconds)")
    dedup_window: int = Field(default=200, description="Number of recent event ids a consumer remembers")

    # Process supervisor
    cli_timeout_initial: float = Field(default=1800.0, description="Idle timeout before first output (seconds)")
    cli_timeout_streaming: float = Field(default=1800.0, description="Idle timeout while streaming content (seconds)")
    cli_timeout_tool_execution: float = Field(default=1800.0, description="Idle timeout while a tool runs (seconds)")
    cli_timeout_pending_response: float = Field(default=1800.0, description="Idle timeout waiting for the next response (seconds)")
    cli_read_chunk_size: int = Field(default=8192, description="Bytes read from stdout per poll")
    cli_poll_interval: float = Field(default=0.05, description="Idle-timer check interval while no output arrives (seconds)")
    cli_terminate_grace: float = Field(default=0.2, description="Grace period between SIGINT and SIGKILL (seconds)")

    # Anthropic API
    anthropic_api_key: Optional[str] = Field(default=None, description="Anthropic API key")
    anthropic_base_url: str = Field(default="https://api.anthropic.com", description="Anthropic API base URL")
    anthropic_api_version: str = Field(default="2023-06-01", description="Anthropic API version header")
    anthropic_default_model: str = Field(default="claude-sonnet-4-20250514", description="Default Anthropic model")

    # OpenAI-compatible API
    openai_compatible_base_url: str = Field(default="http://localhost:11434", description="Chat Completions server base URL")
    openai_compatible_api_key: Optional[str] = Field(default=None, description="Optional bearer token")
    openai_compatible_default_model: str = Field(default="default", description="Default Chat Completions model")

    # HTTP transport
    http_connect_timeout: float = Field(default=10.0, description="HTTP connect timeout (seconds)")
    http_read_timeout: float = Field(default=300.0, description="HTTP read timeout (seconds)")
    default_response_tokens: int = Field(default=8192, description="Response token budget when none is given")

    # CLI providers
    claude_code_bin: str = Field(default="claude", description="Claude Code binary path")
    claude_code_default_model: str = Field(default="opus", description="Default Claude Code model")
    codex_bin: str = Field(default="codex", description="Codex binary path")
    codex_default_model: str = Field(default="gpt-5.2-codex", description="Default Codex model")
    system_prompt_max_bytes: int = Field(default=120_000, description="Largest system prompt a CLI provider accepts")
    system_prompt_warn_ratio: float = Field(default=0.8, description="Warn once a system prompt passes this share of the limit")

    # Logging
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(default="json", description="Log format (json or plain)")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
