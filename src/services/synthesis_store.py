"""
Persistence for synthesis candidates and developed syntheses, keyed by digest.
Both tables are insert-only; unique constraints make re-runs safe.
"""
import logging
from typing import Iterable, List, Set

from core.entities import DevelopedSynthesis, SynthesisCandidate, SynthesisType
from services.database import Database, from_db_time, to_db_time, utc_now

logger = logging.getLogger(__name__)

_CANDIDATE_COLUMNS = (
    "id, digest_id, source_item_id, related_item_id, similarity, synthesis_type, "
    "originality_score, relevance_score, reasoning, days_ago, created_at"
)
_SYNTHESIS_COLUMNS = (
    "id, digest_id, candidate_id, headline, content, historical_reference, "
    "core_thesis_alignment, thesis_alignment_score, created_at"
)


def _row_to_candidate(row) -> SynthesisCandidate:
    return SynthesisCandidate(
        id=row["id"],
        digest_id=row["digest_id"],
        source_item_id=row["source_item_id"],
        related_item_id=row["related_item_id"],
        similarity=row["similarity"],
        synthesis_type=SynthesisType(row["synthesis_type"]),
        originality_score=row["originality_score"],
        relevance_score=row["relevance_score"],
        reasoning=row["reasoning"],
        days_ago=row["days_ago"],
        created_at=from_db_time(row["created_at"]),
    )


def _row_to_synthesis(row) -> DevelopedSynthesis:
    return DevelopedSynthesis(
        id=row["id"],
        digest_id=row["digest_id"],
        candidate_id=row["candidate_id"],
        headline=row["headline"],
        content=row["content"],
        historical_reference=row["historical_reference"],
        core_thesis_alignment=row["core_thesis_alignment"],
        thesis_alignment_score=row["thesis_alignment_score"],
        created_at=from_db_time(row["created_at"]),
    )


class SynthesisStore:
    def __init__(self, database: Database):
        self.db = database

    async def store_candidates(self, candidates: Iterable[SynthesisCandidate]) -> int:
        """
        Insert candidates; an existing (digest, source, related) row is kept as is.
        Returns how many rows were new.
        """
        inserted = 0
        now = to_db_time(utc_now())
        async with self.db.connect() as conn:
            for c in candidates:
                cursor = await conn.execute(
                    """
                    INSERT INTO synthesis_candidates
                    (digest_id, source_item_id, related_item_id, similarity, synthesis_type,
                     originality_score, relevance_score, reasoning, days_ago, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(digest_id, source_item_id, related_item_id) DO NOTHING
                    """,
                    (
                        c.digest_id,
                        c.source_item_id,
                        c.related_item_id,
                        c.similarity,
                        c.synthesis_type.value,
                        c.originality_score,
                        c.relevance_score,
                        c.reasoning,
                        c.days_ago,
                        now,
                    ),
                )
                inserted += cursor.rowcount
            await conn.commit()
        return inserted

    async def get_candidates(self, digest_id: str) -> List[SynthesisCandidate]:
        """All candidates of a digest, best (originality + relevance) first."""
        rows = await self.db.fetchall(
            f"""SELECT {_CANDIDATE_COLUMNS} FROM synthesis_candidates
                WHERE digest_id = ?
                ORDER BY (originality_score + relevance_score) DESC, similarity DESC, id ASC""",
            (digest_id,),
        )
        return [_row_to_candidate(row) for row in rows]

    async def source_items_with_candidates(self, digest_id: str) -> Set[str]:
        rows = await self.db.fetchall(
            "SELECT DISTINCT source_item_id FROM synthesis_candidates WHERE digest_id = ?",
            (digest_id,),
        )
        return {row["source_item_id"] for row in rows}

    async def developed_candidate_ids(self, digest_id: str) -> Set[int]:
        rows = await self.db.fetchall(
            "SELECT candidate_id FROM developed_syntheses WHERE digest_id = ?",
            (digest_id,),
        )
        return {row["candidate_id"] for row in rows}

    async def store_synthesis(self, synthesis: DevelopedSynthesis) -> bool:
        """
        Insert a developed synthesis unless its candidate already has one.
        Returns False when the row already existed.
        """
        changed = await self.db.execute(
            """
            INSERT INTO developed_syntheses
            (digest_id, candidate_id, headline, content, historical_reference,
             core_thesis_alignment, thesis_alignment_score, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(candidate_id) DO NOTHING
            """,
            (
                synthesis.digest_id,
                synthesis.candidate_id,
                synthesis.headline,
                synthesis.content,
                synthesis.historical_reference,
                synthesis.core_thesis_alignment,
                synthesis.thesis_alignment_score,
                to_db_time(utc_now()),
            ),
        )
        if not changed:
            logger.info(f"Synthesis for candidate {synthesis.candidate_id} already stored")
        return changed == 1

    async def get_syntheses(self, digest_id: str) -> List[DevelopedSynthesis]:
        rows = await self.db.fetchall(
            f"""SELECT {_SYNTHESIS_COLUMNS} FROM developed_syntheses
                WHERE digest_id = ?
                ORDER BY thesis_alignment_score DESC, id ASC""",
            (digest_id,),
        )
        return [_row_to_synthesis(row) for row in rows]
