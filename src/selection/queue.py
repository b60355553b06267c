"""
SelectionQueue - scored queue items with a closed lifecycle and
source-diverse selection for article drafting.

Every status change is a conditional UPDATE (... WHERE status = ?) inside a
single write transaction. The affected-row count decides: when it differs
from the number of requested ids the transaction is rolled back and nothing
changes.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

import aiosqlite
from pydantic import ValidationError as SchemaError

from core.entities import (
    EnqueueResult,
    QueueItem,
    QueueStatus,
    SelectableQueueItem,
    SourceDistribution,
    SynthesisCandidate,
)
from core.errors import NotFoundError, StateConflictError, ValidationError
from core.schemas import QueueItemInput, ScoreUpdate
from core.scoring import premium_bonus, queue_total_score
from core.text import excerpt, extract_source_display_name, normalize_source_identifier
from selection.balancing import balanced_selection, source_cap, validate_selection_args
from selection.lifecycle import required_status
from services.config import QueueConfig
from services.database import Database, from_db_time, placeholders, to_db_time, utc_now
from services.repository import ItemRepository

logger = logging.getLogger(__name__)

_QUEUE_COLUMNS = (
    "id, source_daily_item_id, title, excerpt, content, source_identifier, "
    "source_display_name, source_url, synthesis_score, relevance_score, "
    "uniqueness_score, source_bonus, total_score, status, queued_at, expires_at, "
    "selected_at, used_in_post_id, skip_reason"
)

QueueInput = Union[QueueItemInput, Mapping[str, Any]]


def _row_to_queue_item(row) -> QueueItem:
    return QueueItem(
        id=row["id"],
        source_daily_item_id=row["source_daily_item_id"],
        title=row["title"],
        excerpt=row["excerpt"],
        content=row["content"],
        source_identifier=row["source_identifier"],
        source_display_name=row["source_display_name"],
        source_url=row["source_url"],
        synthesis_score=row["synthesis_score"],
        relevance_score=row["relevance_score"],
        uniqueness_score=row["uniqueness_score"],
        source_bonus=row["source_bonus"],
        total_score=row["total_score"],
        status=QueueStatus(row["status"]),
        queued_at=from_db_time(row["queued_at"]),
        expires_at=from_db_time(row["expires_at"]),
        selected_at=from_db_time(row["selected_at"]),
        used_in_post_id=row["used_in_post_id"],
        skip_reason=row["skip_reason"],
    )


def _normalize_ids(item_ids: Iterable[Any]) -> List[int]:
    """Distinct integer ids in request order; an empty request is invalid."""
    ids: List[int] = []
    for raw in item_ids or []:
        try:
            item_id = int(raw)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid queue item id: {raw!r}") from e
        if item_id not in ids:
            ids.append(item_id)
    if not ids:
        raise ValidationError("item_ids must not be empty")
    return ids


class SelectionQueue:
    def __init__(
        self,
        database: Database,
        config: Optional[QueueConfig] = None,
        repository: Optional[ItemRepository] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = database
        self.config = config or QueueConfig()
        self.repository = repository
        self.clock = clock

    def _window_start(self) -> str:
        return to_db_time(self.clock() - timedelta(days=self.config.stats_window_days))

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        items: Sequence[QueueInput],
        priority: Optional[float] = None,
    ) -> EnqueueResult:
        """
        Insert new pending items with expires_at = now + TTL.
        `priority` adds bonus points to every item of this call.
        An item already queued (same source_daily_item_id) counts as skipped.
        """
        result = EnqueueResult()
        if not items:
            return result
        if priority is not None and priority < 0:
            raise ValidationError("priority must not be negative", priority=priority)

        now = self.clock()
        expires_at = now + timedelta(hours=self.config.ttl_hours)

        async with self.db.connect() as conn:
            for raw in items:
                title = raw.title if isinstance(raw, QueueItemInput) else str(raw.get("title") or "")
                try:
                    item = raw if isinstance(raw, QueueItemInput) else QueueItemInput.model_validate(raw)
                except SchemaError as e:
                    result.errors.append(f"Invalid item \"{title[:30]}...\": {e.error_count()} invalid fields")
                    continue

                source_identifier = normalize_source_identifier(item.source_email, item.source_url)
                if source_identifier == "unknown" and item.source_identifier and item.source_identifier.strip():
                    source_identifier = item.source_identifier.strip().lower()
                bonus = premium_bonus(self.config.premium_tiers.get(source_identifier)) + (priority or 0.0)
                total = queue_total_score(
                    item.synthesis_score, item.relevance_score, item.uniqueness_score, bonus
                )

                try:
                    await conn.execute(
                        f"""
                        INSERT INTO queue_items
                        (source_daily_item_id, title, excerpt, content, source_identifier,
                         source_display_name, source_url, synthesis_score, relevance_score,
                         uniqueness_score, source_bonus, total_score, status, queued_at, expires_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            item.source_daily_item_id,
                            item.title,
                            item.excerpt or excerpt(item.content),
                            item.content,
                            source_identifier,
                            extract_source_display_name(item.source_email),
                            item.source_url,
                            item.synthesis_score,
                            item.relevance_score,
                            item.uniqueness_score,
                            bonus,
                            total,
                            QueueStatus.PENDING.value,
                            to_db_time(now),
                            to_db_time(expires_at),
                        ),
                    )
                except aiosqlite.IntegrityError as e:
                    if "UNIQUE" in str(e):
                        result.skipped += 1
                    else:
                        result.errors.append(f"Failed to add \"{item.title[:30]}...\": {e}")
                    continue
                except aiosqlite.Error as e:
                    result.errors.append(f"Failed to add \"{item.title[:30]}...\": {e}")
                    continue

                result.inserted += 1

            await conn.commit()

        logger.info(
            f"Enqueued {result.inserted} items ({result.skipped} skipped, {len(result.errors)} errors)"
        )
        return result

    async def enqueue_from_repository(
        self,
        item_ids: Sequence[str],
        priority: Optional[float] = None,
    ) -> EnqueueResult:
        """Queue items straight from the source item repository."""
        if self.repository is None:
            raise ValidationError("No item repository configured for this queue")
        if not item_ids:
            raise ValidationError("item_ids must not be empty")

        found = await self.repository.get_item_content(item_ids)
        inputs = [
            QueueItemInput(
                title=item.title or "Untitled",
                source_daily_item_id=item.id,
                content=item.content or None,
                source_email=item.source_identifier if "@" in item.source_identifier else None,
                source_url=item.source_url,
                source_identifier=item.source_identifier,
                uniqueness_score=self.config.default_uniqueness_score,
            )
            for item in found.values()
        ]

        result = await self.enqueue(inputs, priority=priority)
        for missing in [i for i in item_ids if i not in found]:
            result.errors.append(f"Item not found: {missing}")
        return result

    async def enqueue_from_candidates(
        self,
        candidates: Sequence[SynthesisCandidate],
        priority: Optional[float] = None,
    ) -> EnqueueResult:
        """
        Queue the source items of scored candidates:
        originality -> synthesis_score, relevance -> relevance_score.
        A source item is queued once, with its best candidate's scores.
        """
        if self.repository is None:
            raise ValidationError("No item repository configured for this queue")

        best: Dict[str, SynthesisCandidate] = {}
        for c in candidates:
            if c.source_item_id not in best or c.total_score > best[c.source_item_id].total_score:
                best[c.source_item_id] = c
        if not best:
            return EnqueueResult()

        found = await self.repository.get_item_content(list(best))
        inputs = []
        result = EnqueueResult()
        for source_id, candidate in best.items():
            item = found.get(source_id)
            if item is None:
                result.errors.append(f"Item not found: {source_id}")
                continue
            inputs.append(
                QueueItemInput(
                    title=item.title or "Untitled",
                    source_daily_item_id=item.id,
                    content=item.content or None,
                    source_email=item.source_identifier if "@" in item.source_identifier else None,
                    source_url=item.source_url,
                    source_identifier=item.source_identifier,
                    synthesis_score=candidate.originality_score,
                    relevance_score=candidate.relevance_score,
                    uniqueness_score=self.config.default_uniqueness_score,
                )
            )

        enqueued = await self.enqueue(inputs, priority=priority)
        enqueued.errors.extend(result.errors)
        return enqueued

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_item(self, item_id: int) -> QueueItem:
        row = await self.db.fetchone(
            f"SELECT {_QUEUE_COLUMNS} FROM queue_items WHERE id = ?", (item_id,)
        )
        if row is None:
            raise NotFoundError(f"Queue item not found: {item_id}", item_id=item_id)
        return _row_to_queue_item(row)

    async def get_items(self, item_ids: Sequence[int]) -> List[QueueItem]:
        if not item_ids:
            return []
        rows = await self.db.fetchall(
            f"SELECT {_QUEUE_COLUMNS} FROM queue_items WHERE id IN ({placeholders(item_ids)}) "
            "ORDER BY total_score DESC, queued_at ASC, id ASC",
            list(item_ids),
        )
        return [_row_to_queue_item(row) for row in rows]

    async def queue_stats(self) -> Dict[str, int]:
        """Counts per status for items queued within the stats window, plus total."""
        rows = await self.db.fetchall(
            "SELECT status, COUNT(*) AS n FROM queue_items WHERE queued_at >= ? GROUP BY status",
            (self._window_start(),),
        )
        stats = {status.value: 0 for status in QueueStatus}
        for row in rows:
            stats[row["status"]] = row["n"]
        stats["total"] = sum(stats.values())
        return stats

    async def source_distribution(self) -> List[SourceDistribution]:
        """Live (pending, selected, used) items per source within the stats window."""
        rows = await self.db.fetchall(
            """
            SELECT source_identifier,
                   MAX(source_display_name) AS source_display_name,
                   COUNT(*) AS item_count,
                   SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END) AS pending_count,
                   SUM(CASE WHEN status = 'selected' THEN 1 ELSE 0 END) AS selected_count,
                   SUM(CASE WHEN status = 'used' THEN 1 ELSE 0 END) AS used_count
            FROM queue_items
            WHERE queued_at >= ? AND status IN ('pending', 'selected', 'used')
            GROUP BY source_identifier
            ORDER BY item_count DESC, source_identifier ASC
            """,
            (self._window_start(),),
        )
        total = sum(row["item_count"] for row in rows)
        return [
            SourceDistribution(
                source_identifier=row["source_identifier"],
                source_display_name=row["source_display_name"],
                item_count=row["item_count"],
                pending_count=row["pending_count"],
                selected_count=row["selected_count"],
                used_count=row["used_count"],
                pct_of_total=round(row["item_count"] / total * 100, 1) if total else 0.0,
            )
            for row in rows
        ]

    async def _committed_counts(self) -> Dict[str, int]:
        rows = await self.db.fetchall(
            """
            SELECT source_identifier, COUNT(*) AS n FROM queue_items
            WHERE queued_at >= ? AND status IN ('selected', 'used')
            GROUP BY source_identifier
            """,
            (self._window_start(),),
        )
        return {row["source_identifier"]: row["n"] for row in rows}

    async def _live_pending(self) -> List[QueueItem]:
        rows = await self.db.fetchall(
            f"""SELECT {_QUEUE_COLUMNS} FROM queue_items
                WHERE status = 'pending' AND expires_at > ?
                ORDER BY total_score DESC, queued_at ASC, id ASC""",
            (to_db_time(self.clock()),),
        )
        return [_row_to_queue_item(row) for row in rows]

    async def selectable_items(self, limit: int = 100) -> List[SelectableQueueItem]:
        """
        Unexpired pending items, best first, each annotated with how many of
        its source's items are already committed (selected or used) and
        whether that share is still below the cap fraction.
        """
        committed = await self._committed_counts()
        total_committed = sum(committed.values())
        cap_fraction = self.config.per_source_cap_fraction

        selectable = []
        for item in (await self._live_pending())[:limit]:
            count = committed.get(item.source_identifier, 0)
            within = total_committed == 0 or count / max(total_committed, 1) < cap_fraction
            selectable.append(
                SelectableQueueItem(
                    **vars(item),
                    source_committed_count=count,
                    within_source_limit=within,
                )
            )
        return selectable

    async def balanced_selection(
        self,
        max_items: Optional[int] = None,
        cap_fraction: Optional[float] = None,
    ) -> List[QueueItem]:
        """Proposed picks only; nothing changes state."""
        max_items = max_items if max_items is not None else self.config.default_max_items
        cap_fraction = cap_fraction if cap_fraction is not None else self.config.per_source_cap_fraction
        validate_selection_args(max_items, cap_fraction)

        picks = balanced_selection(await self._live_pending(), max_items, cap_fraction)

        sources: Dict[str, int] = {}
        for item in picks:
            sources[item.source_identifier] = sources.get(item.source_identifier, 0) + 1
        logger.info(
            f"Balanced selection: {len(picks)}/{max_items} items "
            f"(cap {source_cap(max_items, cap_fraction)} per source) sources={sources}"
        )
        return picks

    async def selected_items(self) -> List[QueueItem]:
        rows = await self.db.fetchall(
            f"""SELECT {_QUEUE_COLUMNS} FROM queue_items
                WHERE status = 'selected'
                ORDER BY total_score DESC, queued_at ASC, id ASC"""
        )
        return [_row_to_queue_item(row) for row in rows]

    async def items_by_source(self, source_identifier: str) -> List[QueueItem]:
        rows = await self.db.fetchall(
            f"""SELECT {_QUEUE_COLUMNS} FROM queue_items
                WHERE source_identifier = ? AND status = 'pending'
                ORDER BY total_score DESC, queued_at ASC, id ASC""",
            (source_identifier,),
        )
        return [_row_to_queue_item(row) for row in rows]

    async def would_violate_source_limit(self, source_identifier: str, additional: int = 1) -> bool:
        """True when `additional` more pending items would push the source past the cap fraction."""
        if additional < 1:
            raise ValidationError("additional must be at least 1", additional=additional)
        distribution = await self.source_distribution()
        stats = await self.queue_stats()
        current = next(
            (d.pending_count for d in distribution if d.source_identifier == source_identifier), 0
        )
        share = (current + additional) / (stats["pending"] + additional)
        return share > self.config.per_source_cap_fraction

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def _transition(
        self,
        item_ids: Iterable[Any],
        target: QueueStatus,
        assignments: Optional[Dict[str, Any]] = None,
    ) -> List[QueueItem]:
        """
        Move every id to `target` or none of them.
        Raises NotFoundError for unknown ids and StateConflictError when any
        row is not in the required status.
        """
        ids = _normalize_ids(item_ids)
        expected = required_status(target)
        assignments = assignments or {}

        set_clause = ", ".join(["status = ?"] + [f"{column} = ?" for column in assignments])
        params = [target.value, *assignments.values(), *ids, expected.value]

        async with self.db.transaction() as conn:
            cursor = await conn.execute(
                f"SELECT id, status FROM queue_items WHERE id IN ({placeholders(ids)})", ids
            )
            current = {row["id"]: row["status"] for row in await cursor.fetchall()}

            missing = [i for i in ids if i not in current]
            if missing:
                raise NotFoundError(f"Queue items not found: {missing}", item_ids=missing)

            conflicting = {i: s for i, s in current.items() if s != expected.value}
            if conflicting:
                raise StateConflictError(
                    f"{len(conflicting)} of {len(ids)} items are not {expected.value}",
                    target=target.value,
                    conflicting=conflicting,
                )

            cursor = await conn.execute(
                f"""UPDATE queue_items SET {set_clause}
                    WHERE id IN ({placeholders(ids)}) AND status = ?""",
                params,
            )
            if cursor.rowcount != len(ids):
                raise StateConflictError(
                    f"Only {cursor.rowcount}/{len(ids)} items moved to {target.value}; rolled back",
                    target=target.value,
                )

        logger.info(f"Moved {len(ids)} queue items {expected.value} -> {target.value}")
        return await self.get_items(ids)

    async def select_for_article(self, item_ids: Sequence[Any]) -> List[QueueItem]:
        return await self._transition(
            item_ids,
            QueueStatus.SELECTED,
            {"selected_at": to_db_time(self.clock())},
        )

    async def mark_used(self, item_ids: Sequence[Any], post_id: str) -> List[QueueItem]:
        if not post_id or not str(post_id).strip():
            raise ValidationError("post_id must not be blank")
        return await self._transition(
            item_ids,
            QueueStatus.USED,
            {"used_in_post_id": str(post_id)},
        )

    async def skip(self, item_ids: Sequence[Any], reason: str = "") -> List[QueueItem]:
        return await self._transition(
            item_ids,
            QueueStatus.SKIPPED,
            {"skip_reason": reason or None},
        )

    async def expire_stale(self) -> Dict[str, int]:
        """Expire pending items past their TTL. Safe to call repeatedly."""
        expired = await self.db.execute(
            """UPDATE queue_items SET status = 'expired', skip_reason = ?
               WHERE status = 'pending' AND expires_at < ?""",
            (f"Auto-expired after {self.config.ttl_hours} hours", to_db_time(self.clock())),
        )
        if expired:
            logger.info(f"Expired {expired} stale queue items")
        return {"expired_count": expired}

    async def update_scores(self, item_id: int, scores: Union[ScoreUpdate, Mapping[str, Any]]) -> QueueItem:
        """Change any of the three scores; total_score is recomputed with the stored bonus."""
        try:
            update = scores if isinstance(scores, ScoreUpdate) else ScoreUpdate.model_validate(scores)
        except SchemaError as e:
            raise ValidationError(f"Invalid score update: {e.error_count()} invalid fields") from e

        async with self.db.transaction() as conn:
            cursor = await conn.execute(
                """SELECT synthesis_score, relevance_score, uniqueness_score, source_bonus
                   FROM queue_items WHERE id = ?""",
                (item_id,),
            )
            row = await cursor.fetchone()
            if row is None:
                raise NotFoundError(f"Queue item not found: {item_id}", item_id=item_id)

            synthesis = update.synthesis_score if update.synthesis_score is not None else row["synthesis_score"]
            relevance = update.relevance_score if update.relevance_score is not None else row["relevance_score"]
            uniqueness = update.uniqueness_score if update.uniqueness_score is not None else row["uniqueness_score"]

            await conn.execute(
                """UPDATE queue_items
                   SET synthesis_score = ?, relevance_score = ?, uniqueness_score = ?, total_score = ?
                   WHERE id = ?""",
                (
                    synthesis,
                    relevance,
                    uniqueness,
                    queue_total_score(synthesis, relevance, uniqueness, row["source_bonus"]),
                    item_id,
                ),
            )

        return await self.get_item(item_id)
