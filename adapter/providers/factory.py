"""
Provider Factory
================

Creates and holds the primary / fallback providers.

GUARANTEES:
- At most one instance per provider type
- Providers not selected as primary or fallback are created on demand
- reset() drops every instance (used when configuration changes)
"""

from __future__ import annotations
import os
import threading
from typing import Callable, Dict, List, Mapping, Optional

from moments.config import ConfigurationError, ProviderConfig, PROVIDER_TYPES

from ..cache import CachedProvider, ResponseCache
from .base import (
    ModelProvider,
    ModelProviderError,
    ProviderErrorCode,
    ProviderHealthCheck,
)


ProviderBuilder = Callable[[], ModelProvider]


class ProviderFactory:
    """Registry of model providers keyed by type name."""

    def __init__(
        self,
        config: Optional[ProviderConfig] = None,
        builders: Optional[Dict[str, ProviderBuilder]] = None
    ):
        self._config = config or ProviderConfig()
        self._builders: Dict[str, ProviderBuilder] = dict(builders or {})
        self._providers: Dict[str, ModelProvider] = {}
        self._primary: Optional[str] = None
        self._fallback: Optional[str] = None
        self._cache = ResponseCache(
            max_entries=self._config.cache_max_entries,
            ttl_seconds=self._config.cache_ttl_seconds,
        ) if self._config.enable_cache else None
        self._lock = threading.RLock()

    @property
    def config(self) -> ProviderConfig:
        return self._config

    @property
    def cache(self) -> Optional[ResponseCache]:
        return self._cache

    @property
    def primary_type(self) -> Optional[str]:
        return self._primary

    @property
    def fallback_type(self) -> Optional[str]:
        return self._fallback

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    def create_provider(self, provider_type: str) -> ModelProvider:
        """Build a fresh provider instance (not registered)."""
        if provider_type in self._builders:
            provider = self._builders[provider_type]()
        elif provider_type == "anthropic":
            from .anthropic_provider import AnthropicProvider
            settings = self._config.anthropic
            provider = AnthropicProvider(
                api_key=settings.api_key,
                base_url=settings.base_url,
                timeout_seconds=settings.timeout_seconds,
                model_mapping=self._config.model_mapping,
            )
        elif provider_type == "bedrock":
            from .bedrock_provider import BedrockProvider
            settings = self._config.bedrock
            provider = BedrockProvider(
                region=settings.region,
                profile=settings.profile,
                model_mapping=self._config.model_mapping,
            )
        elif provider_type == "mock":
            from .mock import MockProvider
            provider = MockProvider()
        else:
            raise ConfigurationError(f"Unknown provider type: {provider_type}")

        if self._cache is not None:
            provider = CachedProvider(provider, self._cache)
        return provider

    def register(self, provider: ModelProvider):
        """Register an already-built provider under its name."""
        with self._lock:
            self._providers[provider.name] = provider

    def initialize(
        self,
        primary: Optional[str] = None,
        fallback: Optional[str] = None
    ) -> ModelProvider:
        """Select primary (and optional fallback) provider types."""
        primary = primary or self._config.type
        fallback = fallback if fallback is not None else self._config.fallback
        if not fallback or fallback == primary:
            fallback = None

        with self._lock:
            self._primary = primary
            self._fallback = fallback
            provider = self.get_provider(primary)
            if fallback:
                self.get_provider(fallback)
            return provider

    def get_provider(self, provider_type: str) -> ModelProvider:
        with self._lock:
            if provider_type not in self._providers:
                self._providers[provider_type] = self.create_provider(provider_type)
            return self._providers[provider_type]

    def get_primary(self) -> ModelProvider:
        with self._lock:
            if self._primary is None:
                raise ModelProviderError(
                    "Provider factory not initialized",
                    provider="factory",
                    code=ProviderErrorCode.NOT_CONFIGURED,
                )
            return self.get_provider(self._primary)

    def get_fallback(self) -> Optional[ModelProvider]:
        with self._lock:
            if self._fallback is None:
                return None
            return self.get_provider(self._fallback)

    def get_provider_with_fallback(self) -> ModelProvider:
        """Primary if it passes a health check, else the fallback."""
        primary = self.get_primary()
        if primary.health_check().is_healthy:
            return primary
        fallback = self.get_fallback()
        if fallback is not None and fallback.health_check().is_healthy:
            return fallback
        raise ModelProviderError(
            "No healthy provider available",
            provider=primary.name,
            code=ProviderErrorCode.API_ERROR,
            retryable=True,
        )

    def available_providers(self) -> List[str]:
        with self._lock:
            names = [n for n in (self._primary, self._fallback) if n]
            names.extend(n for n in self._providers if n not in names)
            return names

    def health_check_all(self) -> Dict[str, ProviderHealthCheck]:
        return {name: self.get_provider(name).health_check() for name in self.available_providers()}

    def reset(self):
        with self._lock:
            self._providers.clear()
            self._primary = None
            self._fallback = None
            if self._cache is not None:
                self._cache.clear()

    @classmethod
    def create_from_environment(
        cls,
        env: Optional[Mapping[str, str]] = None,
        config: Optional[ProviderConfig] = None
    ) -> 'ProviderFactory':
        """
        Pick providers from available credentials.

        ANTHROPIC_API_KEY -> anthropic; AWS_REGION / AWS_PROFILE -> bedrock.
        When both are present, anthropic is primary and bedrock the fallback.
        """
        env = os.environ if env is None else env
        has_anthropic = bool(env.get("ANTHROPIC_API_KEY"))
        has_bedrock = bool(env.get("AWS_REGION") or env.get("AWS_PROFILE"))

        if has_anthropic:
            primary, fallback = "anthropic", ("bedrock" if has_bedrock else None)
        elif has_bedrock:
            primary, fallback = "bedrock", None
        else:
            raise ModelProviderError(
                "No provider credentials found: set ANTHROPIC_API_KEY or AWS_REGION/AWS_PROFILE",
                provider="factory",
                code=ProviderErrorCode.NOT_CONFIGURED,
            )

        factory = cls(config)
        factory.initialize(primary, fallback or "")
        return factory


__all__ = ['ProviderFactory', 'ProviderBuilder', 'PROVIDER_TYPES']
