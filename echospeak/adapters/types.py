"""Shared request/response/cache types for the adapter layer."""
from __future__ import annotations

import time
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class TaskType(str, Enum):
    """Kind of AI operation requested by a caller."""
    TRANSLATION = "translation"
    EXPLANATION = "explanation"
    REWRITING = "rewriting"
    KEYWORDS = "keywords"
    DEFINITION = "definition"
    SPEECH_ASR = "speech_asr"
    SPEECH_TTS = "speech_tts"
    AUDIO_UNDERSTANDING = "audio_understanding"


class ProviderType(str, Enum):
    """Identifier of a configured backend."""
    GEMINI = "gemini"
    DEEPSEEK = "deepseek"
    QWEN_TEXT = "qwen-text"
    QWEN_AUDIO = "qwen-audio"
    DOUBAO = "doubao"
    NEWAPI = "newapi"


class GenRequest(BaseModel):
    """A single generation request. Immutable once built."""
    model_config = ConfigDict(frozen=True)

    prompt: str
    system_prompt: Optional[str] = None
    json_mode: bool = False
    temperature: Optional[float] = None
    model: Optional[str] = None
    audio_url: Optional[str] = None


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0


class GenResponse(BaseModel):
    """Provider output. `data` is set only for JSON-mode calls."""
    text: str
    data: Optional[Any] = None
    usage: Optional[TokenUsage] = None
    provider: ProviderType


def now_ms() -> int:
    return int(time.time() * 1000)


class CacheEntry(BaseModel):
    """A persisted result. `id` is the cache key it is stored under."""
    id: str
    data: Any
    prompt_version: str
    provider_used: ProviderType
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)
    expires_at: int

    def is_valid(self, now: Optional[int] = None) -> bool:
        return (now if now is not None else now_ms()) < self.expires_at
