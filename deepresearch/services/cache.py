"""SQLite-backed keyed cache for fetched content, LLM responses and session snapshots.

Every operation is best effort: a storage failure is logged and degrades to a
cache miss or an ignored write.
"""
from __future__ import annotations

import asyncio
import json
import time
from hashlib import sha256
from pathlib import Path
from typing import Any, Callable

import aiosqlite
from loguru import logger

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS content_cache (
        url TEXT PRIMARY KEY,
        content TEXT NOT NULL,
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS llm_cache (
        prompt_hash TEXT PRIMARY KEY,
        response TEXT NOT NULL,
        model TEXT NOT NULL,
        created_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        query TEXT NOT NULL,
        depth TEXT NOT NULL,
        state TEXT NOT NULL,
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_content_created ON content_cache(created_at)",
    "CREATE INDEX IF NOT EXISTS idx_llm_created ON llm_cache(created_at)",
)

_STORAGE_ERRORS = (aiosqlite.Error, OSError, ValueError)


def llm_cache_key(model: str, prompt: str) -> str:
    return sha256(f"{model}:{prompt}".encode("utf-8")).hexdigest()


class KeyedCache:
    """Async cache partitioned into content, LLM and session tables.

    Rows older than ``ttl_hours`` are evicted when read and purged once at
    initialization. Sessions are never purged.
    """

    def __init__(
        self,
        db_path: str | Path,
        *,
        enabled: bool = True,
        ttl_hours: float = 24,
        clock: Callable[[], float] = time.time,
    ):
        self.db_path = Path(db_path)
        self.enabled = enabled
        self.ttl_seconds = max(float(ttl_hours), 0.0) * 3600
        self._clock = clock
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()

    def _expired(self, created_at: float) -> bool:
        return self._clock() - created_at > self.ttl_seconds

    async def initialize(self) -> bool:
        """Create the schema and purge expired rows. Returns False when the store is unusable."""
        if not self.enabled:
            return False
        if self._initialized:
            return True

        async with self._init_lock:
            if self._initialized:
                return True
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                async with aiosqlite.connect(self.db_path) as db:
                    await db.execute("PRAGMA journal_mode = WAL")
                    await db.execute("PRAGMA busy_timeout = 5000")
                    for statement in _SCHEMA:
                        await db.execute(statement)
                    cutoff = self._clock() - self.ttl_seconds
                    content_rows = await db.execute(
                        "DELETE FROM content_cache WHERE created_at < ?", (cutoff,)
                    )
                    llm_rows = await db.execute("DELETE FROM llm_cache WHERE created_at < ?", (cutoff,))
                    await db.commit()
                    purged = content_rows.rowcount + llm_rows.rowcount
            except _STORAGE_ERRORS as exc:
                logger.warning(f"Cache unavailable at {self.db_path}: {exc}")
                return False

            if purged:
                logger.info(f"Cache startup purge removed {purged} expired entries")
            self._initialized = True
            return True

    # Content cache

    async def get(self, url: str) -> str | None:
        if not await self.initialize():
            return None
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    "SELECT content, created_at FROM content_cache WHERE url = ?", (url,)
                )
                row = await cursor.fetchone()
                if row is None:
                    return None
                content, created_at = row
                if self._expired(created_at):
                    async with self._write_lock:
                        await db.execute("DELETE FROM content_cache WHERE url = ?", (url,))
                        await db.commit()
                    return None
                return content
        except _STORAGE_ERRORS as exc:
            logger.warning(f"Cache read failed for {url}: {exc}")
            return None

    async def set(self, url: str, content: str) -> None:
        if not await self.initialize():
            return
        try:
            async with self._write_lock:
                async with aiosqlite.connect(self.db_path) as db:
                    await db.execute(
                        "INSERT OR REPLACE INTO content_cache (url, content, created_at) VALUES (?, ?, ?)",
                        (url, content, self._clock()),
                    )
                    await db.commit()
        except _STORAGE_ERRORS as exc:
            logger.warning(f"Cache write failed for {url}: {exc}")

    async def has(self, url: str) -> bool:
        return await self.get(url) is not None

    # LLM response cache

    async def get_llm(self, model: str, prompt: str) -> str | None:
        if not await self.initialize():
            return None
        key = llm_cache_key(model, prompt)
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    "SELECT response, created_at FROM llm_cache WHERE prompt_hash = ?", (key,)
                )
                row = await cursor.fetchone()
                if row is None:
                    return None
                response, created_at = row
                if self._expired(created_at):
                    async with self._write_lock:
                        await db.execute("DELETE FROM llm_cache WHERE prompt_hash = ?", (key,))
                        await db.commit()
                    return None
                return response
        except _STORAGE_ERRORS as exc:
            logger.warning(f"LLM cache read failed: {exc}")
            return None

    async def set_llm(self, model: str, prompt: str, response: str) -> None:
        if not await self.initialize():
            return
        try:
            async with self._write_lock:
                async with aiosqlite.connect(self.db_path) as db:
                    await db.execute(
                        "INSERT OR REPLACE INTO llm_cache (prompt_hash, response, model, created_at) "
                        "VALUES (?, ?, ?, ?)",
                        (llm_cache_key(model, prompt), response, model, self._clock()),
                    )
                    await db.commit()
        except _STORAGE_ERRORS as exc:
            logger.warning(f"LLM cache write failed: {exc}")

    # Session snapshots

    async def save_session(self, snapshot: dict[str, Any]) -> None:
        if not await self.initialize():
            return
        now = self._clock()
        try:
            async with self._write_lock:
                async with aiosqlite.connect(self.db_path) as db:
                    await db.execute(
                        """
                        INSERT INTO sessions (id, query, depth, state, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                        ON CONFLICT(id) DO UPDATE SET state = excluded.state, updated_at = excluded.updated_at
                        """,
                        (
                            snapshot["id"],
                            snapshot.get("query", ""),
                            snapshot.get("depth", ""),
                            json.dumps(snapshot),
                            now,
                            now,
                        ),
                    )
                    await db.commit()
        except (*_STORAGE_ERRORS, KeyError, TypeError) as exc:
            logger.warning(f"Session snapshot save failed: {exc}")

    async def load_session(self, session_id: str) -> dict[str, Any] | None:
        if not await self.initialize():
            return None
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute("SELECT state FROM sessions WHERE id = ?", (session_id,))
                row = await cursor.fetchone()
        except _STORAGE_ERRORS as exc:
            logger.warning(f"Session snapshot load failed: {exc}")
            return None
        if row is None:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError:
            logger.warning(f"Session snapshot {session_id} is not valid JSON")
            return None

    async def clear(self) -> None:
        """Drop all cached content and LLM responses. Sessions are kept."""
        if not await self.initialize():
            return
        try:
            async with self._write_lock:
                async with aiosqlite.connect(self.db_path) as db:
                    await db.execute("DELETE FROM content_cache")
                    await db.execute("DELETE FROM llm_cache")
                    await db.commit()
        except _STORAGE_ERRORS as exc:
            logger.warning(f"Cache clear failed: {exc}")

    async def close(self) -> None:
        # Connections are opened per operation; nothing is held open.
        self._initialized = False
