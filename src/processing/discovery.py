"""
Candidate discovery (Phase 1): nearest historical neighbours for an item,
classified and scored into synthesis candidates.
"""
import logging
from datetime import date
from typing import Dict, List, Optional, Tuple

from core.entities import Item, SimilarItem, SynthesisCandidate
from core.errors import BatchReport, ValidationError
from core.prompts import SynthesisPrompt
from core.scoring import passes_min_total
from processing.classifier import HeuristicClassifier, SynthesisClassifier
from processing.evaluator import ScoringJob, score_candidates
from services.embedding_store import EmbeddingStore
from services.repository import ItemRepository
from services.vector_store import SimilarityIndex

logger = logging.getLogger(__name__)

IndexCache = Dict[Tuple[date, int], SimilarityIndex[Item]]


def days_between(source: Item, related: Item) -> int:
    return max(0, (source.newsletter_date - related.newsletter_date).days)


class CandidateDiscovery:
    def __init__(
        self,
        repository: ItemRepository,
        embedding_store: EmbeddingStore,
        llm,
        prompt: SynthesisPrompt,
        classifier: Optional[SynthesisClassifier] = None,
        dimension: int = 768,
        scoring_concurrency: int = 5,
        scoring_batch_delay: float = 0.2,
        scoring_max_tokens: int = 256,
        scoring_timeout: Optional[float] = None,
        min_total_score: int = 12,
    ):
        self.repository = repository
        self.embedding_store = embedding_store
        self.llm = llm
        self.prompt = prompt
        self.classifier = classifier or HeuristicClassifier()
        self.dimension = dimension
        self.scoring_concurrency = scoring_concurrency
        self.scoring_batch_delay = scoring_batch_delay
        self.scoring_max_tokens = scoring_max_tokens
        self.scoring_timeout = scoring_timeout
        self.min_total_score = min_total_score

    async def index_for(
        self,
        before: date,
        max_age_days: int,
        cache: Optional[IndexCache] = None,
    ) -> SimilarityIndex[Item]:
        """
        Similarity index over the embedded items of the window preceding `before`.
        All items of one day share a window, so callers pass a cache per run.
        """
        key = (before, max_age_days)
        if cache is not None and key in cache:
            return cache[key]

        index: SimilarityIndex[Item] = SimilarityIndex(self.dimension)
        for item in await self.repository.historical_window(before, max_age_days):
            if item.embedding and len(item.embedding) == self.dimension:
                index.add(item.embedding, item)

        logger.info(
            f"Built similarity index for {before.isoformat()} "
            f"({len(index)} items, {max_age_days} days)"
        )
        if cache is not None:
            cache[key] = index
        return index

    async def ensure_embedding(self, item: Item) -> Optional[List[float]]:
        if item.embedding:
            return item.embedding
        logger.info(f"Generating embedding for \"{item.title[:30]}...\"")
        return await self.embedding_store.embed_and_store(item)

    async def find_similar(
        self,
        item: Item,
        min_similarity: float = 0.65,
        max_age_days: int = 90,
        max_results: int = 5,
        cache: Optional[IndexCache] = None,
    ) -> List[SimilarItem]:
        """
        Up to max_results historical neighbours, most similar first.
        Same-day items and items older than max_age_days are never returned.
        """
        if max_results < 1:
            raise ValidationError("max_results must be at least 1", max_results=max_results)
        if max_age_days < 1:
            raise ValidationError("max_age_days must be at least 1", max_age_days=max_age_days)

        embedding = await self.ensure_embedding(item)
        if embedding is None:
            return []

        index = await self.index_for(item.newsletter_date, max_age_days, cache)
        hits = index.search(embedding, k=max_results, min_similarity=min_similarity)
        return [
            SimilarItem(item=related, similarity=similarity)
            for related, similarity in hits
            if related.id != item.id
        ]

    async def find_candidates(
        self,
        item: Item,
        digest_id: str,
        min_similarity: float = 0.65,
        max_age_days: int = 90,
        max_results: int = 5,
        cache: Optional[IndexCache] = None,
        report: Optional[BatchReport] = None,
    ) -> List[SynthesisCandidate]:
        """
        Classified and scored candidates for one item, best first.
        A failed scoring call drops only that candidate (recorded in `report`).
        """
        neighbours = await self.find_similar(
            item,
            min_similarity=min_similarity,
            max_age_days=max_age_days,
            max_results=max_results,
            cache=cache,
        )
        if not neighbours:
            logger.info(f"No similar items found for \"{item.title[:30]}...\"")
            return []

        jobs = []
        for neighbour in neighbours:
            days_ago = days_between(item, neighbour.item)
            jobs.append(
                ScoringJob(
                    source=item,
                    related=neighbour.item,
                    similarity=neighbour.similarity,
                    days_ago=days_ago,
                    synthesis_type=self.classifier.classify(
                        item, neighbour.item, neighbour.similarity, days_ago
                    ),
                )
            )

        results = await score_candidates(
            llm=self.llm,
            jobs=jobs,
            scoring_prompt=self.prompt.scoring_prompt,
            core_thesis=self.prompt.core_thesis,
            concurrency=self.scoring_concurrency,
            batch_delay=self.scoring_batch_delay,
            max_tokens=self.scoring_max_tokens,
            timeout=self.scoring_timeout,
        )

        candidates = []
        for result in results:
            if report is not None:
                report.record(result)
            if not result.ok:
                continue

            job, score = result.value
            if not passes_min_total(score.originality, score.relevance, self.min_total_score):
                continue

            candidates.append(
                SynthesisCandidate(
                    digest_id=digest_id,
                    source_item_id=item.id,
                    related_item_id=job.related.id,
                    similarity=job.similarity,
                    synthesis_type=job.synthesis_type,
                    originality_score=score.originality,
                    relevance_score=score.relevance,
                    reasoning=score.reasoning,
                    days_ago=job.days_ago,
                )
            )

        candidates.sort(key=lambda c: (-c.total_score, -c.similarity, c.related_item_id))
        return candidates
