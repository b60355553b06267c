"""
Source item repository backed by the shared SQLite database.
Items are created by ingestion; this core only reads them and attaches embeddings.
"""
import json
import logging
import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np

from core.entities import Digest, Item
from core.errors import NotFoundError, ValidationError
from services.database import Database, from_db_time, placeholders, to_db_time, utc_now

logger = logging.getLogger(__name__)

_ITEM_COLUMNS = (
    "id, title, content, source_identifier, source_url, collected_at, newsletter_date, embedding"
)


def encode_embedding(vector: Sequence[float]) -> bytes:
    return np.asarray(vector, dtype="float32").tobytes()


def decode_embedding(blob: Optional[bytes]) -> Optional[List[float]]:
    if not blob:
        return None
    return np.frombuffer(blob, dtype="float32").astype("float64").tolist()


def day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def _row_to_item(row, with_embedding: bool = True) -> Item:
    return Item(
        id=row["id"],
        title=row["title"] or "",
        content=row["content"] or "",
        source_identifier=row["source_identifier"],
        source_url=row["source_url"],
        collected_at=from_db_time(row["collected_at"]),
        newsletter_date=date.fromisoformat(row["newsletter_date"]),
        embedding=decode_embedding(row["embedding"]) if with_embedding else None,
    )


class ItemRepository:
    def __init__(self, database: Database):
        self.db = database

    async def import_items(self, items: Iterable[Item]) -> int:
        """Insert items that are not stored yet. Existing rows are left untouched."""
        inserted = 0
        async with self.db.connect() as conn:
            for item in items:
                cursor = await conn.execute(
                    f"""
                    INSERT INTO items ({_ITEM_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO NOTHING
                    """,
                    (
                        item.id,
                        item.title,
                        item.content,
                        item.source_identifier,
                        item.source_url,
                        to_db_time(item.collected_at),
                        item.newsletter_date.isoformat(),
                        encode_embedding(item.embedding) if item.embedding else None,
                    ),
                )
                inserted += cursor.rowcount
            await conn.commit()
        return inserted

    async def get_item(self, item_id: str) -> Optional[Item]:
        row = await self.db.fetchone(
            f"SELECT {_ITEM_COLUMNS} FROM items WHERE id = ?", (item_id,)
        )
        return _row_to_item(row) if row else None

    async def get_items(self, ids: Sequence[str]) -> List[Item]:
        """Items for the given ids, oldest first. Unknown ids are ignored."""
        if not ids:
            return []
        rows = await self.db.fetchall(
            f"""SELECT {_ITEM_COLUMNS} FROM items
                WHERE id IN ({placeholders(ids)})
                ORDER BY collected_at, id""",
            list(ids),
        )
        return [_row_to_item(row) for row in rows]

    async def get_items_by_date(self, newsletter_date: date) -> List[Item]:
        rows = await self.db.fetchall(
            f"""SELECT {_ITEM_COLUMNS} FROM items
                WHERE newsletter_date = ?
                ORDER BY collected_at, id""",
            (newsletter_date.isoformat(),),
        )
        return [_row_to_item(row) for row in rows]

    async def get_item_content(self, ids: Sequence[str]) -> Dict[str, Item]:
        """Full-text items keyed by id, without embeddings."""
        if not ids:
            return {}
        rows = await self.db.fetchall(
            f"SELECT {_ITEM_COLUMNS} FROM items WHERE id IN ({placeholders(ids)})",
            list(ids),
        )
        return {row["id"]: _row_to_item(row, with_embedding=False) for row in rows}

    async def count_missing_embeddings(self) -> int:
        row = await self.db.fetchone("SELECT COUNT(*) AS n FROM items WHERE embedding IS NULL")
        return int(row["n"])

    async def items_missing_embeddings(
        self,
        limit: int,
        exclude_ids: Sequence[str] = (),
    ) -> List[Item]:
        """Oldest items without an embedding first."""
        query = f"SELECT {_ITEM_COLUMNS} FROM items WHERE embedding IS NULL"
        params: list = []
        if exclude_ids:
            query += f" AND id NOT IN ({placeholders(exclude_ids)})"
            params.extend(exclude_ids)
        query += " ORDER BY collected_at ASC, id ASC LIMIT ?"
        params.append(limit)

        rows = await self.db.fetchall(query, params)
        return [_row_to_item(row, with_embedding=False) for row in rows]

    async def set_embedding(self, item_id: str, vector: Sequence[float]) -> bool:
        """
        Attach an embedding if the item has none yet.
        Returns False when the item already had one (or does not exist).
        """
        changed = await self.db.execute(
            "UPDATE items SET embedding = ? WHERE id = ? AND embedding IS NULL",
            (encode_embedding(vector), item_id),
        )
        return changed == 1

    async def historical_window(self, before: date, max_age_days: int) -> List[Item]:
        """
        Embedded items from strictly earlier day buckets, no older than max_age_days.
        """
        window_start = before - timedelta(days=max_age_days)
        rows = await self.db.fetchall(
            f"""SELECT {_ITEM_COLUMNS} FROM items
                WHERE embedding IS NOT NULL
                  AND newsletter_date < ?
                  AND newsletter_date >= ?
                  AND collected_at < ?
                  AND collected_at >= ?
                ORDER BY collected_at, id""",
            (
                before.isoformat(),
                window_start.isoformat(),
                to_db_time(day_start(before)),
                to_db_time(day_start(window_start)),
            ),
        )
        return [_row_to_item(row) for row in rows]

    # ------------------------------------------------------------------
    # Digest anchors
    # ------------------------------------------------------------------

    async def create_digest(
        self,
        digest_date: date,
        sources_used: Sequence[str] = (),
        digest_id: Optional[str] = None,
    ) -> Digest:
        digest_id = digest_id or uuid.uuid4().hex
        if not digest_id.strip():
            raise ValidationError("digest_id must not be blank")

        await self.db.execute(
            "INSERT INTO digests (id, digest_date, sources_used, created_at) VALUES (?, ?, ?, ?)",
            (digest_id, digest_date.isoformat(), json.dumps(list(sources_used)), to_db_time(utc_now())),
        )
        logger.info(f"Created digest {digest_id} for {digest_date.isoformat()}")
        return Digest(id=digest_id, digest_date=digest_date, sources_used=list(sources_used))

    async def get_digest(self, digest_id: str) -> Digest:
        row = await self.db.fetchone(
            "SELECT id, digest_date, sources_used FROM digests WHERE id = ?", (digest_id,)
        )
        if row is None:
            raise NotFoundError(f"Digest not found: {digest_id}", digest_id=digest_id)
        return Digest(
            id=row["id"],
            digest_date=date.fromisoformat(row["digest_date"]),
            sources_used=json.loads(row["sources_used"] or "[]"),
        )

    async def get_digest_items(self, digest: Digest) -> List[Item]:
        """
        The digest's explicit item list if it has one, otherwise that day's items.
        """
        if digest.sources_used:
            return await self.get_items(digest.sources_used)
        return await self.get_items_by_date(digest.digest_date)
