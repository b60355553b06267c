"""
EmbeddingStore - attaches a fixed-dimension vector to each item.
Backfills missing vectors oldest-first, one row at a time.
"""
import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from core.entities import BackfillResult, Item
from core.errors import SynthesisEngineError, ValidationError
from core.text import prepare_text_for_embedding
from services.llm import TextModelService
from services.repository import ItemRepository

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, str], Awaitable[None]]


class EmbeddingStore:
    def __init__(
        self,
        repository: ItemRepository,
        model: TextModelService,
        max_content_chars: int = 2000,
        min_text_chars: int = 10,
        inter_item_delay: float = 0.05,
    ):
        self.repository = repository
        self.model = model
        self.max_content_chars = max_content_chars
        self.min_text_chars = min_text_chars
        self.inter_item_delay = inter_item_delay

    def text_for(self, item: Item) -> Optional[str]:
        """The text to embed, or None when there is too little of it."""
        text = prepare_text_for_embedding(item.title, item.content, self.max_content_chars)
        if len(text.strip()) < self.min_text_chars:
            return None
        return text

    async def embed_and_store(self, item: Item) -> Optional[List[float]]:
        """
        Embed one item and persist the vector if it has none yet.
        Returns the vector, or None when the item's text is too short.
        Raises ExternalServiceError when the model call fails.
        """
        if item.embedding:
            return item.embedding

        text = self.text_for(item)
        if text is None:
            logger.debug(f"Skipping item {item.id}: text too short to embed")
            return None

        vector = await self.model.embed(text)
        stored = await self.repository.set_embedding(item.id, vector)
        if not stored:
            logger.debug(f"Item {item.id} already had an embedding")
        return vector

    async def backfill(
        self,
        batch_size: int = 50,
        max_batches: int = 0,
        on_progress: Optional[ProgressCallback] = None,
    ) -> BackfillResult:
        """
        Generate embeddings for items that have none.
        A failing item is counted and skipped; the batch carries on.
        max_batches=0 runs until nothing is left.
        """
        if batch_size < 1:
            raise ValidationError("batch_size must be at least 1", batch_size=batch_size)
        if max_batches < 0:
            raise ValidationError("max_batches must not be negative", max_batches=max_batches)

        total = await self.repository.count_missing_embeddings()
        if total == 0:
            return BackfillResult(processed=0, errors=0, remaining=0)

        logger.info(f"Embedding backfill starting: {total} items missing embeddings")

        processed = 0
        errors = 0
        skipped = 0
        # Items that were skipped or failed in this run stay NULL; don't refetch them.
        passed_over: List[str] = []
        batch_count = 0

        while not max_batches or batch_count < max_batches:
            items = await self.repository.items_missing_embeddings(batch_size, passed_over)
            if not items:
                break

            logger.info(f"Embedding backfill batch {batch_count + 1} ({len(items)} items)")

            for item in items:
                try:
                    vector = await self.embed_and_store(item)
                except SynthesisEngineError as e:
                    logger.error(f"Embedding failed for item {item.id}: {e.message}")
                    errors += 1
                    passed_over.append(item.id)
                    continue

                if vector is None:
                    skipped += 1
                    passed_over.append(item.id)
                    continue

                processed += 1
                if on_progress:
                    await on_progress(processed, total, item.title[:50])

                await asyncio.sleep(self.inter_item_delay)

            batch_count += 1

        remaining = await self.repository.count_missing_embeddings()
        logger.info(
            f"Embedding backfill complete: {processed} processed, {errors} errors, "
            f"{skipped} skipped, {remaining} remaining"
        )
        return BackfillResult(processed=processed, errors=errors, remaining=remaining, skipped=skipped)
