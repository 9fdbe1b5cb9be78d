"""
Provider Factory

Registry of provider types and the instances built from them. CLI providers
receive the shared session store so they can resume native sessions.
"""

from functools import lru_cache
from typing import Any, Dict, List, Optional, Type

import structlog

from .anthropic import AnthropicProvider
from .base import BaseProvider, ProviderError
from .claude_code import ClaudeCodeProvider
from .cli_base import BaseCliProvider
from .codex import CodexProvider
from .openai_compatible import OpenAICompatibleProvider

logger = structlog.get_logger(__name__)


class ProviderFactory:
    """Factory for creating and caching providers"""

    def __init__(self, session_store=None):
        self.session_store = session_store
        self._providers: Dict[str, BaseProvider] = {}
        self._provider_configs: Dict[str, Dict[str, Any]] = {}

        # Register built-in providers
        self._provider_classes: Dict[str, Type[BaseProvider]] = {
            "anthropic": AnthropicProvider,
            "openai_compatible": OpenAICompatibleProvider,
            "claude_code": ClaudeCodeProvider,
            "codex": CodexProvider,
        }

    def register_provider(self, name: str, provider_class: Type[BaseProvider]) -> None:
        """Register a new provider type"""
        self._provider_classes[name] = provider_class
        logger.info("Registered provider type", provider=name)

    def configure_provider(self, name: str, config: Dict[str, Any]) -> None:
        """Configure a provider without creating an instance"""
        self._provider_configs[name] = config.copy()
        self._providers.pop(name, None)

    def create_provider(self, name: str, config: Optional[Dict[str, Any]] = None) -> BaseProvider:
        if name not in self._provider_classes:
            raise ProviderError(f"Unknown provider type: {name}", name)

        provider_class = self._provider_classes[name]
        provider_config = config if config is not None else self._provider_configs.get(name, {})
        if issubclass(provider_class, BaseCliProvider):
            provider = provider_class(provider_config, session_store=self.session_store)
        else:
            provider = provider_class(provider_config)

        self._providers[name] = provider
        logger.info("Created provider", provider=name, config_keys=list(provider_config.keys()))
        return provider

    def get_provider(self, name: str) -> BaseProvider:
        """Get the cached instance or build one"""
        provider = self._providers.get(name)
        if provider is None:
            provider = self.create_provider(name)
        return provider

    def list_available_providers(self) -> List[str]:
        return list(self._provider_classes.keys())

    def list_active_providers(self) -> List[str]:
        return list(self._providers.keys())

    async def health_check_all(self) -> Dict[str, Dict[str, Any]]:
        """Health of every registered provider type"""
        results = {}
        for name in self._provider_classes:
            results[name] = await self.get_provider(name).health_check()
        return results


@lru_cache
def get_provider_factory() -> ProviderFactory:
    """Process-wide factory backed by the Redis session store"""
    from streamline.storage.session_store import SessionStore

    return ProviderFactory(session_store=SessionStore())
