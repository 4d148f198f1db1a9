"""Provider registry: which providers a job of a given tier fans out to."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from orchestrator.core.config import Settings
from orchestrator.gateway.types import Plan, ProviderTier
from orchestrator.providers.base import BaseProvider
from orchestrator.providers.chat import (
    ChatGPTProvider,
    DeepSeekProvider,
    GeminiProvider,
    GrokProvider,
    MistralProvider,
)

logger = logging.getLogger(__name__)


def default_catalog(settings: Settings) -> list[BaseProvider]:
    """Build the closed set of providers from settings."""
    timeout = settings.provider_timeout_seconds
    return [
        ChatGPTProvider(api_key=settings.openai_api_key, enabled=settings.enable_chatgpt, timeout=timeout),
        DeepSeekProvider(api_key=settings.deepseek_api_key, enabled=settings.enable_deepseek, timeout=timeout),
        MistralProvider(api_key=settings.mistral_api_key, enabled=settings.enable_mistral, timeout=timeout),
        GrokProvider(api_key=settings.grok_api_key, enabled=settings.enable_grok, timeout=timeout),
        GeminiProvider(api_key=settings.gemini_api_key, enabled=settings.enable_gemini, timeout=timeout),
    ]


def determine_tier(plan: Plan | str | None) -> ProviderTier:
    """Free plan (or none) gets the free provider set, every paid plan the pro set."""
    if not plan or str(getattr(plan, "value", plan)).lower() == Plan.FREE.value:
        return ProviderTier.FREE
    return ProviderTier.PRO


class ProviderRegistry:
    """Resolves the enabled, allow-listed providers of a tier.

    Provider instances are stateless and shared across jobs.
    """

    def __init__(self, providers: Iterable[BaseProvider], settings: Settings):
        self._providers: dict[str, BaseProvider] = {p.name: p for p in providers}
        self.settings = settings

    @property
    def names(self) -> list[str]:
        return list(self._providers)

    def get(self, name: str) -> BaseProvider | None:
        return self._providers.get(name)

    def enabled(self) -> list[BaseProvider]:
        allowed = set(self.settings.provider_allow_list)
        return [p for p in self._providers.values() if p.name in allowed and p.is_enabled()]

    def for_tier(self, tier: ProviderTier) -> list[BaseProvider]:
        """Providers of a tier in configured order; unknown names are skipped."""
        allowed = set(self.settings.provider_allow_list)
        selected: list[BaseProvider] = []
        for name in self.settings.tier_providers(tier.value):
            provider = self._providers.get(name)
            if provider is None:
                logger.warning("Unknown provider %r in %s tier configuration", name, tier.value)
                continue
            if name in allowed and provider.is_enabled():
                selected.append(provider)
        return selected
