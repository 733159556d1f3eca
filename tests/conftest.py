"""Shared fakes and fixtures for the adapter tests."""
import asyncio
from typing import Callable, Dict, List, Optional

import pytest

from core.config import UserSettings
from echospeak.adapters import (
    CacheEntry,
    GenRequest,
    GenResponse,
    ProviderRegistry,
    ProviderType,
    Router,
    SpeechProvider,
    TextProvider,
)


class FakeTextProvider(TextProvider):
    """Scriptable text provider that records every call."""

    def __init__(
        self,
        name: ProviderType,
        text: str = "ok",
        healthy: bool = True,
        error: Optional[BaseException] = None,
        delay: float = 0.0,
        responder: Optional[Callable[[GenRequest], str]] = None,
    ):
        super().__init__(name)
        self.text = text
        self.healthy = healthy
        self.error = error
        self.delay = delay
        self.responder = responder
        self.calls = 0
        self.requests: List[GenRequest] = []
        self.active = 0
        self.max_active = 0

    def is_healthy(self) -> bool:
        return self.healthy

    async def generate_text(self, req: GenRequest) -> GenResponse:
        self.calls += 1
        self.requests.append(req)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            text = self.responder(req) if self.responder else self.text
            return GenResponse(text=text, provider=self.name)
        finally:
            self.active -= 1


class FakeSpeechProvider(SpeechProvider):
    def __init__(self, name: ProviderType = ProviderType.DOUBAO, audio: bytes = b"ID3", healthy: bool = True,
                 error: Optional[BaseException] = None):
        super().__init__(name)
        self.audio = audio
        self.healthy = healthy
        self.error = error
        self.calls = 0

    def is_healthy(self) -> bool:
        return self.healthy

    async def synthesize_speech(self, text: str) -> bytes:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.audio


class MemoryCache:
    """In-memory stand-in for CacheStore with the same async contract."""

    def __init__(self):
        self.entries: Dict[str, CacheEntry] = {}
        self.writes = 0

    async def get(self, key: str) -> Optional[CacheEntry]:
        entry = self.entries.get(key)
        if entry is None or not entry.is_valid():
            return None
        return entry

    async def set(self, entry: CacheEntry) -> None:
        self.writes += 1
        self.entries[entry.id] = entry


def build_router(*providers, settings: Optional[UserSettings] = None, **kwargs) -> Router:
    registry = ProviderRegistry()
    for provider in providers:
        registry.register(provider)
    return Router(registry, settings or UserSettings(), **kwargs)


@pytest.fixture
def settings() -> UserSettings:
    return UserSettings()


@pytest.fixture
def memory_cache() -> MemoryCache:
    return MemoryCache()
