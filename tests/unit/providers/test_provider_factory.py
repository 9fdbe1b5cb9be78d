"""
Unit tests for the provider factory
"""
from typing import List
from unittest.mock import AsyncMock, patch

import pytest

from streamline.providers.anthropic import AnthropicProvider
from streamline.providers.base import BaseProvider, ProviderCapabilities, ProviderError
from streamline.providers.claude_code import ClaudeCodeProvider
from streamline.providers.codex import CodexProvider
from streamline.providers.factory import ProviderFactory


class StaticProvider(BaseProvider):
    def __init__(self, config=None):
        super().__init__("static", config)

    @property
    def capabilities(self) -> ProviderCapabilities:
        return ProviderCapabilities()

    async def is_available(self) -> bool:
        return True

    async def stream_turn(self, conversation_id: str, turns: List, options):
        if False:
            yield


class TestProviderFactory:

    def test_builtin_providers_registered(self):
        factory = ProviderFactory()

        assert set(factory.list_available_providers()) == {
            "anthropic", "openai_compatible", "claude_code", "codex",
        }
        assert factory.list_active_providers() == []

    def test_cli_providers_share_session_store(self, session_store):
        factory = ProviderFactory(session_store=session_store)

        claude = factory.get_provider("claude_code")
        codex = factory.get_provider("codex")
        anthropic = factory.get_provider("anthropic")

        assert isinstance(claude, ClaudeCodeProvider)
        assert isinstance(codex, CodexProvider)
        assert isinstance(anthropic, AnthropicProvider)
        assert claude.session_store is session_store
        assert codex.session_store is session_store

    def test_instances_are_cached(self):
        factory = ProviderFactory()

        assert factory.get_provider("codex") is factory.get_provider("codex")
        assert factory.list_active_providers() == ["codex"]

    def test_configure_replaces_cached_instance(self):
        factory = ProviderFactory()
        first = factory.get_provider("anthropic")

        factory.configure_provider("anthropic", {"api_key": "k-2"})
        second = factory.get_provider("anthropic")

        assert second is not first
        assert second.api_key == "k-2"

    def test_unknown_provider(self):
        factory = ProviderFactory()

        with pytest.raises(ProviderError, match="Unknown provider type: gemini"):
            factory.get_provider("gemini")

    def test_register_custom_provider(self):
        factory = ProviderFactory()
        factory.register_provider("static", StaticProvider)

        provider = factory.create_provider("static", {"flag": True})

        assert isinstance(provider, StaticProvider)
        assert provider.config == {"flag": True}

    @pytest.mark.asyncio
    async def test_health_check_all(self):
        factory = ProviderFactory()
        factory.register_provider("static", StaticProvider)

        with patch.object(CodexProvider, "is_available", AsyncMock(return_value=False)), \
                patch.object(ClaudeCodeProvider, "is_available", AsyncMock(return_value=False)):
            results = await factory.health_check_all()

        assert results["static"] == {"provider": "static", "status": "healthy"}
        assert results["codex"]["status"] == "unavailable"
        assert results["claude_code"]["status"] == "unavailable"
