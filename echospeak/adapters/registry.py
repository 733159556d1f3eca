"""Registry of the provider instances built from the current settings."""
import logging
from typing import Dict, Iterator, List, Optional

import core.env
from core.config import UserSettings

from .providers import (
    DEFAULT_TIMEOUT,
    DoubaoProvider,
    GeminiProvider,
    OpenAICompatibleProvider,
    Provider,
    QwenAudioProvider,
)
from .types import ProviderType

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Holds one Provider per configured backend.

    ``refresh`` throws the old instances away and rebuilds them from a
    settings snapshot. Disabled backends are not instantiated at all; enabled
    ones are kept even when incomplete so that ``is_healthy`` can report why.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT):
        self._timeout = timeout
        self._providers: Dict[ProviderType, Provider] = {}

    def refresh(self, settings: UserSettings) -> None:
        cfg = settings.providers
        providers: Dict[ProviderType, Provider] = {}

        if cfg.gemini.enabled:
            providers[ProviderType.GEMINI] = GeminiProvider(
                cfg.gemini, api_key=core.env.gemini_api_key(), timeout=self._timeout
            )
        if cfg.deepseek.enabled:
            providers[ProviderType.DEEPSEEK] = OpenAICompatibleProvider(
                ProviderType.DEEPSEEK, cfg.deepseek, timeout=self._timeout
            )
        if cfg.qwen_text.enabled:
            providers[ProviderType.QWEN_TEXT] = OpenAICompatibleProvider(
                ProviderType.QWEN_TEXT, cfg.qwen_text, timeout=self._timeout
            )
        if cfg.qwen_audio.enabled:
            providers[ProviderType.QWEN_AUDIO] = QwenAudioProvider(cfg.qwen_audio, timeout=self._timeout)
        if cfg.doubao.enabled:
            providers[ProviderType.DOUBAO] = DoubaoProvider(cfg.doubao, timeout=self._timeout)
        if cfg.newapi.enabled:
            providers[ProviderType.NEWAPI] = OpenAICompatibleProvider(
                ProviderType.NEWAPI, cfg.newapi, timeout=self._timeout
            )

        self._providers = providers
        logger.info(
            "Provider registry refreshed",
            extra={"providers": [p.value for p in providers], "healthy": [p.name.value for p in self.healthy()]},
        )

    def register(self, provider: Provider) -> None:
        """Add or replace a single provider instance."""
        self._providers[provider.name] = provider

    def get(self, name: ProviderType) -> Optional[Provider]:
        return self._providers.get(name)

    def healthy(self) -> List[Provider]:
        return [p for p in self._providers.values() if p.is_healthy()]

    def __contains__(self, name: object) -> bool:
        return name in self._providers

    def __iter__(self) -> Iterator[Provider]:
        return iter(list(self._providers.values()))

    def __len__(self) -> int:
        return len(self._providers)
