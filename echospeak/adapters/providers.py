"""Provider adapters for the AI backends.

Every backend is a ``Provider``. Text-capable backends additionally subclass
``TextProvider``; backends that can synthesise audio subclass
``SpeechProvider``. Callers ask ``supports_text`` / ``supports_speech``
instead of probing for optional methods.
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

import httpx

from core.config import DoubaoConfig, GeminiConfig, OpenAICompatConfig, QwenAudioConfig
from core.errors import ConfigurationError, TransportError

from .types import GenRequest, GenResponse, ProviderType, TokenUsage

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."
GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DASHSCOPE_MULTIMODAL_URL = (
    "https://dashscope.aliyuncs.com/api/v1/services/aigc/multimodal-generation/generation"
)
VOLCENGINE_TTS_URL = "https://openspeech.bytedance.com"
VOLCENGINE_SUCCESS_CODE = 3000

_CODE_FENCE = re.compile(r"```(?:json)?\n?|\n?```")


# ---------------------------------------------------------------------------
# JSON results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class JsonOk:
    """JSON-mode call whose output parsed; ``response.data`` holds the value."""
    response: GenResponse


@dataclass(frozen=True)
class JsonParseFailure:
    """JSON-mode call that returned text which is not valid JSON."""
    provider: ProviderType
    raw_text: str
    error: str


JsonResult = Union[JsonOk, JsonParseFailure]


def parse_json_strict(text: str) -> Any:
    """Parse model output as JSON, tolerating only markdown code fences."""
    return json.loads(_CODE_FENCE.sub("", text).strip())


def _token_usage(usage: Any, input_key: str, output_key: str) -> TokenUsage:
    # gateways send explicit nulls for counts they do not track
    if not isinstance(usage, dict):
        return TokenUsage()
    return TokenUsage(
        input_tokens=usage.get(input_key) or 0,
        output_tokens=usage.get(output_key) or 0,
    )


# ---------------------------------------------------------------------------
# Capability interfaces
# ---------------------------------------------------------------------------


class Provider(ABC):
    """Base class for every configured backend."""

    def __init__(self, name: ProviderType, timeout: float = DEFAULT_TIMEOUT):
        self.name = name
        self.timeout = timeout

    @abstractmethod
    def is_healthy(self) -> bool:
        """True when the configuration is complete and the provider enabled.

        This never touches the network.
        """

    def _require_healthy(self) -> None:
        if not self.is_healthy():
            raise ConfigurationError(
                f"{self.name.value} is disabled or missing required settings", self.name.value
            )

    async def _post_json(
        self,
        url: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """POST a JSON body and return the decoded JSON envelope."""
        async with httpx.AsyncClient() as client:
            try:
                response = await client.post(
                    url,
                    headers=headers,
                    json=payload,
                    timeout=self.timeout,
                )
                response.raise_for_status()
                data = response.json()
            except httpx.HTTPError as e:
                logger.error(f"[{self.name.value}] API error: {e}")
                raise TransportError(f"{self.name.value} request failed: {e}", self.name.value) from e
            except ValueError as e:
                logger.error(f"[{self.name.value}] Non-JSON response: {e}")
                raise TransportError(f"{self.name.value} returned a non-JSON body", self.name.value) from e
        if not isinstance(data, dict):
            logger.error(f"[{self.name.value}] Response envelope is not a JSON object")
            raise TransportError(f"{self.name.value} returned an unexpected envelope", self.name.value)
        return data


class TextProvider(Provider):
    """A provider that can generate text and JSON."""

    @abstractmethod
    async def generate_text(self, req: GenRequest) -> GenResponse:
        """Run a single generation. Raises TransportError on backend failure."""

    async def generate_json(self, req: GenRequest) -> JsonResult:
        res = await self.generate_text(req.model_copy(update={"json_mode": True}))
        try:
            data = parse_json_strict(res.text)
        except ValueError as e:
            logger.warning(f"[{self.name.value}] JSON parse error: {e}")
            return JsonParseFailure(provider=self.name, raw_text=res.text, error=str(e))
        return JsonOk(res.model_copy(update={"data": data}))


class SpeechProvider(Provider):
    """A provider that can turn text into encoded audio."""

    @abstractmethod
    async def synthesize_speech(self, text: str) -> bytes:
        """Return the synthesised audio (mp3) for ``text``."""


def supports_text(provider: Optional[Provider]) -> bool:
    return isinstance(provider, TextProvider)


def supports_speech(provider: Optional[Provider]) -> bool:
    return isinstance(provider, SpeechProvider)


# ---------------------------------------------------------------------------
# Concrete adapters
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider(TextProvider):
    """Any backend speaking the OpenAI chat-completions protocol.

    Used for DeepSeek, Qwen (compatible mode) and the NewAPI gateway.
    """

    def __init__(self, name: ProviderType, config: OpenAICompatConfig, timeout: float = DEFAULT_TIMEOUT):
        super().__init__(name, timeout)
        self.config = config

    def is_healthy(self) -> bool:
        return bool(self.config.enabled and self.config.api_key and self.config.base_url)

    async def generate_text(self, req: GenRequest) -> GenResponse:
        self._require_healthy()
        payload: Dict[str, Any] = {
            "model": req.model or self.config.model,
            "messages": [
                {"role": "system", "content": req.system_prompt or DEFAULT_SYSTEM_PROMPT},
                {"role": "user", "content": req.prompt},
            ],
            "temperature": req.temperature if req.temperature is not None else 0.7,
        }
        if req.json_mode:
            payload["response_format"] = {"type": "json_object"}

        data = await self._post_json(
            f"{self.config.base_url.rstrip('/')}/chat/completions",
            payload,
            headers={
                "Authorization": f"Bearer {self.config.api_key}",
                "Content-Type": "application/json",
            },
        )
        try:
            text = data["choices"][0]["message"].get("content") or ""
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise TransportError(f"{self.name.value} returned an unexpected envelope", self.name.value) from e

        return GenResponse(
            text=text,
            provider=self.name,
            usage=_token_usage(data.get("usage"), "prompt_tokens", "completion_tokens"),
        )


class GeminiProvider(TextProvider):
    """Google Gemini over the public generateContent REST endpoint."""

    def __init__(self, config: GeminiConfig, api_key: Optional[str] = None, timeout: float = DEFAULT_TIMEOUT):
        super().__init__(ProviderType.GEMINI, timeout)
        self.config = config
        self.api_key = config.api_key or api_key or ""

    def is_healthy(self) -> bool:
        return bool(self.config.enabled and self.api_key)

    async def generate_text(self, req: GenRequest) -> GenResponse:
        self._require_healthy()
        generation_config: Dict[str, Any] = {}
        if req.temperature is not None:
            generation_config["temperature"] = req.temperature
        if req.json_mode:
            generation_config["responseMimeType"] = "application/json"

        payload: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": req.prompt}]}],
            "generationConfig": generation_config,
        }
        if req.system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": req.system_prompt}]}

        model = req.model or self.config.model
        data = await self._post_json(
            f"{GEMINI_BASE_URL}/models/{model}:generateContent",
            payload,
            headers={"x-goog-api-key": self.api_key, "Content-Type": "application/json"},
        )
        try:
            parts = data["candidates"][0]["content"].get("parts", [])
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise TransportError("gemini returned no candidates", self.name.value) from e

        return GenResponse(
            text="".join(part.get("text", "") for part in parts),
            provider=self.name,
            usage=_token_usage(data.get("usageMetadata"), "promptTokenCount", "candidatesTokenCount"),
        )


class QwenAudioProvider(TextProvider):
    """DashScope native multimodal API (Qwen Audio): audio + text in, text out."""

    def __init__(self, config: QwenAudioConfig, timeout: float = DEFAULT_TIMEOUT):
        super().__init__(ProviderType.QWEN_AUDIO, timeout)
        self.config = config

    def is_healthy(self) -> bool:
        return bool(self.config.enabled and self.config.api_key)

    async def generate_text(self, req: GenRequest) -> GenResponse:
        self._require_healthy()
        contents = []
        if req.audio_url:
            contents.append({"audio": req.audio_url})
        contents.append({"text": req.prompt})

        payload = {
            "model": req.model or self.config.model,
            "input": {"messages": [{"role": "user", "content": contents}]},
            "parameters": {"result_format": "message"},
        }
        data = await self._post_json(
            DASHSCOPE_MULTIMODAL_URL,
            payload,
            headers={
                "Authorization": f"Bearer {self.config.api_key}",
                "Content-Type": "application/json",
            },
        )
        try:
            content = data["output"]["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise TransportError("qwen-audio returned an unexpected envelope", self.name.value) from e

        return GenResponse(
            text=self._content_text(content),
            provider=self.name,
            usage=_token_usage(data.get("usage"), "input_tokens", "output_tokens"),
        )

    @staticmethod
    def _content_text(content: Any) -> str:
        # content is either a plain string or a list of {"text": ...} parts
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            for part in content:
                if isinstance(part, dict) and isinstance(part.get("text"), str):
                    return part["text"]
        return json.dumps(content, ensure_ascii=False)


class DoubaoProvider(SpeechProvider):
    """Volcengine (Doubao) text-to-speech. Speech only, no text generation."""

    def __init__(self, config: DoubaoConfig, timeout: float = DEFAULT_TIMEOUT):
        super().__init__(ProviderType.DOUBAO, timeout)
        self.config = config

    def is_healthy(self) -> bool:
        return bool(
            self.config.enabled
            and self.config.app_id
            and self.config.access_token
            and self.config.voice_type
        )

    async def synthesize_speech(self, text: str) -> bytes:
        self._require_healthy()
        base_url = (self.config.proxy_url or VOLCENGINE_TTS_URL).rstrip("/")
        payload = {
            "app": {
                "appid": self.config.app_id,
                "token": "access_token",
                "cluster": self.config.cluster or "volcano_tts",
            },
            "user": {"uid": "echospeak_user"},
            "audio": {
                "voice_type": self.config.voice_type,
                "encoding": "mp3",
                "speed_ratio": 1.0,
                "volume_ratio": 1.0,
                "pitch_ratio": 1.0,
            },
            "request": {
                "reqid": str(uuid.uuid4()),
                "text": text,
                "text_type": "plain",
                "operation": "query",
            },
        }
        logger.info(f"[doubao] Synthesising {len(text)} chars with voice {self.config.voice_type}")
        data = await self._post_json(
            f"{base_url}/api/v1/tts",
            payload,
            # Volcengine expects "Bearer;<token>", not "Bearer <token>"
            headers={
                "Authorization": f"Bearer;{self.config.access_token}",
                "Content-Type": "application/json",
            },
        )

        code = data.get("code")
        if code is not None and code != VOLCENGINE_SUCCESS_CODE:
            raise TransportError(f"TTS API error code {code}: {data.get('message')}", self.name.value)
        if not data.get("data"):
            raise TransportError("TTS response missing 'data' field", self.name.value)
        try:
            return base64.b64decode(data["data"], validate=True)
        except (binascii.Error, ValueError) as e:
            raise TransportError("TTS response carried invalid base64 audio", self.name.value) from e
