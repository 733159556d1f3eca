"""Cache-aware, coalescing, concurrency-bounded front door to the Router.

``RequestManager.schedule`` is the single entry point used by services:

1. derive a content-addressed cache key from (task, content, prompt version);
2. return an unexpired cached result without any outbound call;
3. otherwise join an identical in-flight execution if one exists;
4. otherwise start a new execution, admitted through a FIFO concurrency gate,
   and cache its result on success.

Bumping the prompt version is the way to invalidate every cached result of
a prompt template at once.
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
from collections import deque
from typing import Any, Deque, Dict, Optional, Type, Union

from pydantic import BaseModel

from core.config import AppSettings
from core.monitoring import ACTIVE_DISPATCHES, CACHE_LOOKUPS, COALESCED_REQUESTS, QUEUED_DISPATCHES

from .cache import CacheStore
from .router import Router
from .types import CacheEntry, GenRequest, ProviderType, TaskType, now_ms

logger = logging.getLogger(__name__)

__all__ = ["ConcurrencyGate", "RequestManager", "CACHE_KEY_VERSION", "DEFAULT_TTL_MS"]

CACHE_KEY_VERSION = "v1"
DEFAULT_TTL_MS = 1000 * 60 * 60 * 24 * 30  # 30 days


class ConcurrencyGate:
    """At most ``limit`` holders at a time; everyone else waits in FIFO order.

    A released slot is handed straight to the oldest waiter, so late arrivals
    can never overtake the queue.
    """

    def __init__(self, limit: int = 3) -> None:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self._limit = limit
        self._active = 0
        self._waiters: Deque[asyncio.Future] = deque()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def active(self) -> int:
        return self._active

    @property
    def waiting(self) -> int:
        return sum(1 for w in self._waiters if not w.done())

    async def acquire(self) -> None:
        if self._active < self._limit and not self._waiters:
            self._active += 1
            self._publish()
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        self._publish()
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # slot was already handed to us; pass it on
                self.release()
            else:
                try:
                    self._waiters.remove(waiter)
                except ValueError:
                    pass
                self._publish()
            raise

    def release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                self._publish()
                return
        self._active -= 1
        self._publish()

    def _publish(self) -> None:
        ACTIVE_DISPATCHES.set(self._active)
        QUEUED_DISPATCHES.set(self.waiting)

    async def __aenter__(self) -> "ConcurrencyGate":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


class RequestManager:
    def __init__(
        self,
        router: Router,
        cache: CacheStore,
        max_concurrency: int = 3,
        ttl_ms: int = DEFAULT_TTL_MS,
    ) -> None:
        self._router = router
        self._cache = cache
        self._ttl_ms = ttl_ms
        self._gate = ConcurrencyGate(max_concurrency)
        self._in_flight: Dict[str, asyncio.Task] = {}

    @classmethod
    def from_settings(cls, router: Router, app: AppSettings) -> "RequestManager":
        cache = CacheStore(app.CACHE_DB_PATH) if app.CACHE_DB_PATH else CacheStore()
        return cls(
            router,
            cache,
            max_concurrency=app.MAX_CONCURRENCY,
            ttl_ms=app.CACHE_TTL_DAYS * 24 * 60 * 60 * 1000,
        )

    @property
    def gate(self) -> ConcurrencyGate:
        return self._gate

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    @staticmethod
    def cache_key(task: Union[str, TaskType], content: str, prompt_version: str) -> str:
        digest = hashlib.sha256(content.strip().encode("utf-8")).hexdigest()
        return f"{CACHE_KEY_VERSION}:{TaskType(task).value}:{digest}:{prompt_version}"

    async def schedule(
        self,
        task: Union[str, TaskType],
        content: str,
        req: GenRequest,
        prompt_version: str,
        force_provider: Optional[Union[str, ProviderType]] = None,
        schema: Optional[Type[BaseModel]] = None,
    ) -> Any:
        """Produce the result for ``task`` over ``content``, or raise.

        Returns the structured ``data`` of a JSON-mode response, otherwise
        the raw text. Dispatch errors propagate unchanged and nothing is
        cached for them. JSON data that does not validate against ``schema``
        is a provider failure, so it is never cached either.
        """
        task = TaskType(task)
        key = self.cache_key(task, content, prompt_version)

        cached = await self._cache.get(key)
        if cached is not None and cached.is_valid():
            CACHE_LOOKUPS.labels(task=task.value, result="hit").inc()
            logger.debug(f"[Cache] HIT local for {task.value}: {content[:10]}...")
            return cached.data

        pending = self._in_flight.get(key)
        if pending is not None:
            COALESCED_REQUESTS.labels(task=task.value).inc()
            logger.debug(f"[Cache] HIT in-flight for {task.value}")
            return await asyncio.shield(pending)

        CACHE_LOOKUPS.labels(task=task.value, result="miss").inc()
        # Registered before the first await so identical callers coalesce onto it.
        execution = asyncio.ensure_future(self._execute(key, task, req, prompt_version, force_provider, schema))
        self._in_flight[key] = execution
        execution.add_done_callback(lambda done, key=key: self._forget(key, done))
        return await asyncio.shield(execution)

    def _forget(self, key: str, execution: asyncio.Task) -> None:
        if self._in_flight.get(key) is execution:
            del self._in_flight[key]
        # every waiter may have been cancelled; mark the outcome as retrieved
        if not execution.cancelled():
            execution.exception()

    async def _execute(
        self,
        key: str,
        task: TaskType,
        req: GenRequest,
        prompt_version: str,
        force_provider: Optional[Union[str, ProviderType]],
        schema: Optional[Type[BaseModel]] = None,
    ) -> Any:
        async with self._gate:
            res = await self._router.dispatch(task, req, req.json_mode, force_provider, schema=schema)

            data = res.data if res.data is not None else res.text
            now = now_ms()
            await self._cache.set(CacheEntry(
                id=key,
                data=data,
                prompt_version=prompt_version,
                provider_used=res.provider,
                created_at=now,
                updated_at=now,
                expires_at=now + self._ttl_ms,
            ))
            logger.info(
                f"Cached {task.value} result from {res.provider.value}",
                extra={"cache_key": key, "provider": res.provider.value},
            )
            return data
