from __future__ import annotations
"""Task router with ordered provider fallback and per-provider circuit breakers.

For each task the router builds a priority queue (preferred provider for the
task, then the default order, then the optional gateway) and tries healthy
providers in order until one succeeds. The first success wins.

A provider that fails ``failure_threshold`` times in a row has its circuit
opened and is skipped by the fallback loop. After ``reset_timeout`` seconds a
*single* probe request is allowed through (half-open). Success closes the
circuit; failure re-opens it. Forced and speech calls bypass the breakers.
"""

import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional, Type, Union

from pydantic import BaseModel, ValidationError

from core.config import AppSettings, SettingsStore, UserSettings
from core.errors import (
    CircuitOpenError,
    ConfigurationError,
    ExhaustionError,
    ParseError,
    ProviderError,
    TransportError,
)
from core.monitoring import PROVIDER_ATTEMPTS

from .providers import JsonParseFailure, TextProvider, supports_speech, supports_text
from .registry import ProviderRegistry
from .types import GenRequest, GenResponse, ProviderType, TaskType

logger = logging.getLogger(__name__)

__all__ = ["Router", "DEFAULT_ORDER"]

DEFAULT_ORDER = (ProviderType.GEMINI, ProviderType.DEEPSEEK, ProviderType.QWEN_TEXT)
GATEWAY = ProviderType.NEWAPI

# ---------------------------------------------------------------------------
# Circuit Breaker implementation
# ---------------------------------------------------------------------------


class _CircuitBreaker:
    def __init__(
        self,
        failure_threshold: int = 3,
        reset_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._failure_threshold = failure_threshold
        self._reset_timeout = reset_timeout  # seconds
        self._clock = clock
        self._state = "closed"  # closed, open, half-open
        self._failure_count = 0
        self._opened_at = 0.0
        self._probe_in_flight = False
        self.last_error: Optional[BaseException] = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> str:
        return self._state

    async def before_request(self) -> bool:
        """Return True if request may proceed."""
        async with self._lock:
            if self._state == "open":
                if self._clock() - self._opened_at >= self._reset_timeout:
                    self._state = "half-open"
                else:
                    return False  # short-circuit
            if self._state == "half-open":
                if self._probe_in_flight:
                    return False
                self._probe_in_flight = True
            return True

    async def after_success(self) -> None:
        async with self._lock:
            self._failure_count = 0
            self._probe_in_flight = False
            self._state = "closed"

    def abandon_probe(self) -> None:
        """The request admitted by before_request never finished."""
        self._probe_in_flight = False

    async def after_failure(self, error: Optional[BaseException] = None) -> None:
        async with self._lock:
            self.last_error = error
            self._failure_count += 1
            self._probe_in_flight = False
            if self._state == "half-open" or self._failure_count >= self._failure_threshold:
                self._state = "open"
                self._opened_at = self._clock()
                logger.warning("Circuit breaker opened")


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------


def _provider_type(value: Optional[Union[str, ProviderType]]) -> Optional[ProviderType]:
    if value is None or isinstance(value, ProviderType):
        return value
    try:
        return ProviderType(value)
    except ValueError:
        logger.warning(f"Ignoring unknown provider id in settings: {value!r}")
        return None


class Router:
    def __init__(
        self,
        registry: ProviderRegistry,
        settings: Optional[UserSettings] = None,
        failure_threshold: int = 3,
        reset_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._registry = registry
        self._settings = settings or UserSettings()
        self._failure_threshold = failure_threshold
        self._reset_timeout = reset_timeout
        self._clock = clock
        self._breakers: Dict[ProviderType, _CircuitBreaker] = {}

    @classmethod
    def from_settings(cls, store: SettingsStore, app: AppSettings) -> "Router":
        """Build a router over ``store`` and keep it refreshed on every save."""
        router = cls(
            ProviderRegistry(timeout=app.PROVIDER_TIMEOUT_SECONDS),
            failure_threshold=app.CIRCUIT_BREAKER_THRESHOLD,
            reset_timeout=app.CIRCUIT_BREAKER_RESET_SECONDS,
        )
        router.refresh(store.current)
        store.subscribe(router.refresh)
        return router

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    @property
    def settings(self) -> UserSettings:
        return self._settings

    def refresh(self, settings: UserSettings) -> None:
        """Adopt a new settings snapshot; takes effect on the next dispatch."""
        self._settings = settings
        self._registry.refresh(settings)
        # new credentials deserve a clean slate
        self._breakers.clear()

    def breaker_state(self, name: ProviderType) -> str:
        breaker = self._breakers.get(name)
        return breaker.state if breaker else "closed"

    def _breaker(self, name: ProviderType) -> _CircuitBreaker:
        if name not in self._breakers:
            self._breakers[name] = _CircuitBreaker(self._failure_threshold, self._reset_timeout, self._clock)
        return self._breakers[name]

    # ------------------------------------------------------------------
    def priority_queue(self, task: TaskType) -> List[ProviderType]:
        """Ordered, de-duplicated candidate list for ``task``."""
        queue: List[ProviderType] = []
        preferred = _provider_type(self._settings.model_routing.preferred_for(task.value))
        if preferred is not None:
            queue.append(preferred)

        candidates = list(DEFAULT_ORDER)
        gateway = self._settings.providers.newapi
        if gateway.enabled and gateway.is_fallback:
            candidates.append(GATEWAY)

        for name in candidates:
            if name not in queue:
                queue.append(name)
        return queue

    async def dispatch(
        self,
        task: Union[str, TaskType],
        req: GenRequest,
        is_json: bool,
        force_provider: Optional[Union[str, ProviderType]] = None,
        schema: Optional[Type[BaseModel]] = None,
    ) -> GenResponse:
        """Return the first successful response for ``task``.

        With ``schema`` set, JSON data that does not validate against it counts
        as a parse failure of that provider and the next candidate is tried.
        """
        task = TaskType(task)
        if task is TaskType.SPEECH_TTS:
            raise ConfigurationError("Use Router.synthesize() for speech_tts tasks")

        if force_provider is not None:
            forced = _provider_type(force_provider)
            if forced is None:
                raise ConfigurationError(f"Forced provider '{force_provider}' is not a known provider.")
            return await self._dispatch_forced(forced, req, is_json, schema)

        queue = self.priority_queue(task)
        attempted: List[str] = []
        last_error: Optional[BaseException] = None

        for name in queue:
            provider = self._registry.get(name)
            if provider is None or not provider.is_healthy():
                continue
            if not supports_text(provider):
                logger.debug(f"[Router] {name.value} has no text capability, skipping")
                continue
            breaker = self._breaker(name)
            if not await breaker.before_request():
                PROVIDER_ATTEMPTS.labels(provider=name.value, outcome="circuit_open").inc()
                logger.info(f"[Router] {name.value} circuit open, skipping")
                if last_error is None or isinstance(last_error, CircuitOpenError):
                    last_error = CircuitOpenError(
                        f"{name.value} circuit open after: {breaker.last_error}", name.value
                    )
                continue

            attempted.append(name.value)
            try:
                result = await self._call(provider, req, is_json, schema)
            except asyncio.CancelledError:
                breaker.abandon_probe()
                raise
            except Exception as e:
                await breaker.after_failure(e)
                PROVIDER_ATTEMPTS.labels(provider=name.value, outcome=_outcome(e)).inc()
                logger.warning(f"[Router] {name.value} failed for {task.value}: {e}")
                last_error = e
                continue

            await breaker.after_success()
            PROVIDER_ATTEMPTS.labels(provider=name.value, outcome="success").inc()
            return result

        logger.error(f"[Router] All providers failed for {task.value}", extra={"attempted": attempted})
        raise ExhaustionError(last_error, attempted) from last_error

    async def _dispatch_forced(
        self, name: ProviderType, req: GenRequest, is_json: bool, schema: Optional[Type[BaseModel]] = None
    ) -> GenResponse:
        provider = self._registry.get(name)
        if provider is None or not provider.is_healthy() or not supports_text(provider):
            raise ConfigurationError(f"Forced provider '{name.value}' is not configured or disabled.", name.value)
        try:
            result = await self._call(provider, req, is_json, schema)
        except Exception as e:
            PROVIDER_ATTEMPTS.labels(provider=name.value, outcome=_outcome(e)).inc()
            logger.error(f"[Router] Forced provider {name.value} failed: {e}")
            raise
        PROVIDER_ATTEMPTS.labels(provider=name.value, outcome="success").inc()
        return result

    @staticmethod
    async def _call(
        provider: TextProvider, req: GenRequest, is_json: bool, schema: Optional[Type[BaseModel]] = None
    ) -> GenResponse:
        if not is_json:
            return await provider.generate_text(req)
        result = await provider.generate_json(req)
        if isinstance(result, JsonParseFailure):
            raise ParseError(
                f"[{result.provider.value}] JSON Parse Error: {result.error}",
                result.provider.value,
                raw_text=result.raw_text,
            )
        response = result.response
        if schema is not None:
            try:
                schema.model_validate(response.data)
            except ValidationError as e:
                raise ParseError(
                    f"[{response.provider.value}] Unexpected {schema.__name__} shape: {e}",
                    response.provider.value,
                    raw_text=response.text,
                ) from e
        return response

    # ------------------------------------------------------------------
    async def synthesize(self, text: str) -> bytes:
        """Text-to-speech through exactly the provider routed for speech_tts."""
        configured = self._settings.model_routing.speech_tts
        name = _provider_type(configured)
        provider = self._registry.get(name) if name else None
        if provider is None or not supports_speech(provider) or not provider.is_healthy():
            raise ConfigurationError(f"TTS provider {configured} not available or unhealthy.", configured)
        try:
            audio = await provider.synthesize_speech(text)
        except Exception as e:
            PROVIDER_ATTEMPTS.labels(provider=provider.name.value, outcome=_outcome(e)).inc()
            logger.error(f"[Router] TTS via {provider.name.value} failed: {e}")
            raise
        PROVIDER_ATTEMPTS.labels(provider=provider.name.value, outcome="success").inc()
        return audio


def _outcome(error: BaseException) -> str:
    if isinstance(error, ParseError):
        return "parse_error"
    if isinstance(error, TransportError):
        return "transport_error"
    if isinstance(error, ConfigurationError):
        return "configuration_error"
    if isinstance(error, ProviderError):
        return "provider_error"
    return "error"
