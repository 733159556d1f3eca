"""Adapters layer providing caching, provider abstraction and routing.

The sub-modules are designed to be **plug-compatible** with existing call
sites – the public API is **stable** and intentionally minimal.
"""

from __future__ import annotations

from .cache import CacheStore
from .providers import (
    DoubaoProvider,
    GeminiProvider,
    JsonOk,
    JsonParseFailure,
    OpenAICompatibleProvider,
    Provider,
    QwenAudioProvider,
    SpeechProvider,
    TextProvider,
    supports_speech,
    supports_text,
)
from .registry import ProviderRegistry
from .request_manager import ConcurrencyGate, RequestManager
from .router import Router
from .types import CacheEntry, GenRequest, GenResponse, ProviderType, TaskType, TokenUsage

__all__ = [
    "CacheStore",
    "CacheEntry",
    "ConcurrencyGate",
    "DoubaoProvider",
    "GeminiProvider",
    "GenRequest",
    "GenResponse",
    "JsonOk",
    "JsonParseFailure",
    "OpenAICompatibleProvider",
    "Provider",
    "ProviderRegistry",
    "ProviderType",
    "QwenAudioProvider",
    "RequestManager",
    "Router",
    "SpeechProvider",
    "TaskType",
    "TextProvider",
    "TokenUsage",
    "supports_speech",
    "supports_text",
]
