"""Streaming providers"""
from .anthropic import AnthropicProvider
from .base import (
    AuthenticationRequiredError,
    BaseProvider,
    ConversationTurn,
    PromptTooLargeError,
    ProviderCapabilities,
    ProviderError,
    ProviderUnavailableError,
    StreamOptions,
    is_auth_error,
)
from .claude_code import ClaudeCodeProvider
from .cli_base import BaseCliProvider
from .codex import CodexProvider
from .factory import ProviderFactory, get_provider_factory
from .openai_compatible import OpenAICompatibleProvider
from .supervisor import AbortGate, LineClassification, ProcessSupervisor, SupervisorConfig

__all__ = [
    "AbortGate",
    "AnthropicProvider",
    "AuthenticationRequiredError",
    "BaseCliProvider",
    "BaseProvider",
    "ClaudeCodeProvider",
    "CodexProvider",
    "ConversationTurn",
    "LineClassification",
    "OpenAICompatibleProvider",
    "ProcessSupervisor",
    "PromptTooLargeError",
    "ProviderCapabilities",
    "ProviderError",
    "ProviderUnavailableError",
    "ProviderFactory",
    "StreamOptions",
    "SupervisorConfig",
    "get_provider_factory",
    "is_auth_error",
]
