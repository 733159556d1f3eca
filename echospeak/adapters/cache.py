from __future__ import annotations
"""Persistent response cache for the adapter layer.

CacheStore keeps CacheEntry rows in an on-disk SQLite DB. It is a pure
optimisation: every storage, I/O or (de)serialisation failure is logged and
degrades to a miss (``get``) or a no-op (``set``), never an exception.
Expired rows may linger on disk but are never returned.
"""

import asyncio
import json
import logging
import os
import sqlite3
from contextlib import closing
from pathlib import Path
from typing import Optional

from .types import CacheEntry, now_ms

logger = logging.getLogger(__name__)

__all__ = ["CacheStore", "default_cache_path"]


def default_cache_path() -> Path:
    workspace = Path(os.environ.get("WORKSPACE_PATH", Path.cwd()))
    return workspace / "data" / "ai_cache.db"


class CacheStore:
    """Async key -> CacheEntry store on top of sqlite3."""

    def __init__(self, db_path: Optional[Path] = None) -> None:
        self._db_path = Path(db_path) if db_path else default_cache_path()
        self._initialised = False
        self._lock = asyncio.Lock()

    @property
    def db_path(self) -> Path:
        return self._db_path

    # ------------------------------------------------------------------
    def _connect(self) -> sqlite3.Connection:
        if not self._initialised:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self._db_path)
        if not self._initialised:
            with conn:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS ai_cache (
                        id TEXT PRIMARY KEY,
                        data TEXT NOT NULL,
                        prompt_version TEXT NOT NULL,
                        provider_used TEXT NOT NULL,
                        created_at INTEGER NOT NULL,
                        updated_at INTEGER NOT NULL,
                        expires_at INTEGER NOT NULL
                    )
                """)
                conn.execute("CREATE INDEX IF NOT EXISTS idx_by_created ON ai_cache(created_at)")
            self._initialised = True
        return conn

    def _get_sync(self, key: str) -> Optional[CacheEntry]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT id, data, prompt_version, provider_used, created_at, updated_at, expires_at "
                "FROM ai_cache WHERE id = ?",
                (key,),
            ).fetchone()
        if row is None:
            return None
        return CacheEntry(
            id=row[0],
            data=json.loads(row[1]),
            prompt_version=row[2],
            provider_used=row[3],
            created_at=row[4],
            updated_at=row[5],
            expires_at=row[6],
        )

    def _set_sync(self, entry: CacheEntry) -> None:
        data_json = json.dumps(entry.data, ensure_ascii=False, separators=(",", ":"))
        with closing(self._connect()) as conn, conn:
            conn.execute(
                "INSERT OR REPLACE INTO ai_cache "
                "(id, data, prompt_version, provider_used, created_at, updated_at, expires_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    entry.id,
                    data_json,
                    entry.prompt_version,
                    entry.provider_used.value,
                    entry.created_at,
                    entry.updated_at,
                    entry.expires_at,
                ),
            )

    def _purge_sync(self, now: int) -> int:
        with closing(self._connect()) as conn, conn:
            cur = conn.execute("DELETE FROM ai_cache WHERE expires_at <= ?", (now,))
            return cur.rowcount

    # Async API -----------------------------------------------------------
    async def get(self, key: str) -> Optional[CacheEntry]:
        """Return the unexpired entry for ``key``, or None."""
        try:
            async with self._lock:
                entry = await asyncio.to_thread(self._get_sync, key)
        except Exception as e:
            logger.warning(f"Cache read failed for {key}: {e}")
            return None
        if entry is None or not entry.is_valid():
            return None
        return entry

    async def set(self, entry: CacheEntry) -> None:
        try:
            async with self._lock:
                await asyncio.to_thread(self._set_sync, entry)
        except Exception as e:
            logger.warning(f"Cache write failed for {entry.id}: {e}")

    # Housekeeping of expired rows ------------------------------------------
    async def purge_expired(self, now: Optional[int] = None) -> int:
        """Physically delete expired rows. Returns the number removed."""
        try:
            async with self._lock:
                removed = await asyncio.to_thread(self._purge_sync, now if now is not None else now_ms())
        except Exception as e:
            logger.warning(f"Cache purge failed: {e}")
            return 0
        if removed:
            logger.info(f"Purged {removed} expired cache entries")
        return removed
