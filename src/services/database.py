import aiosqlite
from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging
import os
from typing import Any, AsyncIterator, Iterable, List, Optional, Sequence

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    """Timestamps are stored as ISO-8601 UTC strings so they compare lexically."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def from_db_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS items (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL DEFAULT '',
        content TEXT NOT NULL DEFAULT '',
        source_identifier TEXT NOT NULL DEFAULT 'unknown',
        source_url TEXT,
        collected_at TEXT NOT NULL,
        newsletter_date TEXT NOT NULL,
        embedding BLOB
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_items_newsletter_date ON items(newsletter_date)",
    "CREATE INDEX IF NOT EXISTS idx_items_collected_at ON items(collected_at)",
    """
    CREATE TABLE IF NOT EXISTS digests (
        id TEXT PRIMARY KEY,
        digest_date TEXT NOT NULL,
        sources_used TEXT NOT NULL DEFAULT '[]',
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_digests_date ON digests(digest_date)",
    """
    CREATE TABLE IF NOT EXISTS synthesis_candidates (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        digest_id TEXT NOT NULL REFERENCES digests(id) ON DELETE CASCADE,
        source_item_id TEXT NOT NULL REFERENCES items(id),
        related_item_id TEXT NOT NULL REFERENCES items(id),
        similarity REAL NOT NULL CHECK (similarity BETWEEN -1.0 AND 1.0),
        synthesis_type TEXT NOT NULL CHECK (
            synthesis_type IN ('evolution', 'validation', 'contrast', 'pattern', 'cross_domain')
        ),
        originality_score INTEGER NOT NULL CHECK (originality_score BETWEEN 0 AND 10),
        relevance_score INTEGER NOT NULL CHECK (relevance_score BETWEEN 0 AND 10),
        reasoning TEXT NOT NULL DEFAULT '',
        days_ago INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        CHECK (source_item_id != related_item_id),
        UNIQUE (digest_id, source_item_id, related_item_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_candidates_digest ON synthesis_candidates(digest_id)",
    """
    CREATE TABLE IF NOT EXISTS developed_syntheses (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        digest_id TEXT NOT NULL REFERENCES digests(id) ON DELETE CASCADE,
        candidate_id INTEGER NOT NULL UNIQUE
            REFERENCES synthesis_candidates(id) ON DELETE CASCADE,
        headline TEXT NOT NULL,
        content TEXT NOT NULL,
        historical_reference TEXT NOT NULL DEFAULT '',
        core_thesis_alignment TEXT NOT NULL DEFAULT '',
        thesis_alignment_score INTEGER NOT NULL DEFAULT 0
            CHECK (thesis_alignment_score BETWEEN 0 AND 10),
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_syntheses_digest ON developed_syntheses(digest_id)",
    """
    CREATE TABLE IF NOT EXISTS queue_items (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        source_daily_item_id TEXT,
        title TEXT NOT NULL,
        excerpt TEXT,
        content TEXT,
        source_identifier TEXT NOT NULL,
        source_display_name TEXT,
        source_url TEXT,
        synthesis_score REAL NOT NULL DEFAULT 0,
        relevance_score REAL NOT NULL DEFAULT 0,
        uniqueness_score REAL NOT NULL DEFAULT 0,
        source_bonus REAL NOT NULL DEFAULT 0,
        total_score REAL NOT NULL DEFAULT 0,
        status TEXT NOT NULL DEFAULT 'pending' CHECK (
            status IN ('pending', 'selected', 'used', 'expired', 'skipped')
        ),
        queued_at TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        selected_at TEXT,
        used_in_post_id TEXT,
        skip_reason TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_queue_status ON queue_items(status)",
    "CREATE INDEX IF NOT EXISTS idx_queue_source ON queue_items(source_identifier)",
    "CREATE INDEX IF NOT EXISTS idx_queue_score ON queue_items(total_score DESC)",
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_queue_unique_item
    ON queue_items(source_daily_item_id) WHERE source_daily_item_id IS NOT NULL
    """,
]


class Database:
    def __init__(self, path: str):
        self.path = path

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[aiosqlite.Connection]:
        conn = await aiosqlite.connect(self.path)
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA journal_mode=WAL;")
        await conn.execute("PRAGMA foreign_keys=ON;")
        await conn.execute("PRAGMA busy_timeout=5000;")
        try:
            yield conn
        finally:
            await conn.close()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """
        Single write transaction. Everything executed on the yielded connection
        commits together or not at all.
        """
        async with self.connect() as conn:
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            else:
                await conn.commit()

    async def execute(self, query: str, params: Sequence[Any] = ()) -> int:
        """Run one statement and return the number of affected rows."""
        async with self.connect() as conn:
            cursor = await conn.execute(query, tuple(params))
            await conn.commit()
            return cursor.rowcount

    async def insert(self, query: str, params: Sequence[Any] = ()) -> int:
        """Run one INSERT and return the new row id."""
        async with self.connect() as conn:
            cursor = await conn.execute(query, tuple(params))
            await conn.commit()
            return cursor.lastrowid

    async def executemany(self, query: str, rows: Iterable[Sequence[Any]]) -> None:
        async with self.connect() as conn:
            await conn.executemany(query, [tuple(r) for r in rows])
            await conn.commit()

    async def fetchone(self, query: str, params: Sequence[Any] = ()) -> Optional[aiosqlite.Row]:
        async with self.connect() as conn:
            cursor = await conn.execute(query, tuple(params))
            return await cursor.fetchone()

    async def fetchall(self, query: str, params: Sequence[Any] = ()) -> List[aiosqlite.Row]:
        async with self.connect() as conn:
            cursor = await conn.execute(query, tuple(params))
            return list(await cursor.fetchall())

    async def init_tables(self) -> None:
        """Initialize database tables for items, digests, synthesis and the queue."""
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)

        async with self.connect() as conn:
            for statement in SCHEMA:
                await conn.execute(statement)
            await conn.commit()
            logger.info("Database tables initialized")


def placeholders(values: Sequence[Any]) -> str:
    """"?, ?, ?" for an IN (...) clause."""
    return ", ".join("?" for _ in values)
