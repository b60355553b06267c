"""
Pipeline Factory - builds the shared services once from configuration.
Every entry point (CLI, tests) gets its clients from here.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from processing.classifier import HeuristicClassifier, SynthesisClassifier
from processing.developer import SynthesisDeveloper
from processing.discovery import CandidateDiscovery
from selection.queue import SelectionQueue
from services.config import Config
from services.database import Database
from services.embedding_store import EmbeddingStore
from services.llm import OllamaClient, TextModelService
from services.repository import ItemRepository
from services.synthesis_store import SynthesisStore
from workflows.synthesis import SynthesisPipeline

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: Config
    db: Database
    llm: TextModelService
    repository: ItemRepository
    embedding_store: EmbeddingStore
    synthesis_store: SynthesisStore
    queue: SelectionQueue
    pipeline: SynthesisPipeline


def create_services_from_config(
    config: Config,
    llm: Optional[TextModelService] = None,
    classifier: Optional[SynthesisClassifier] = None,
) -> Services:
    """
    Factory function wiring database, model client, stores, queue and pipeline.

    Args:
        config: Loaded application configuration
        llm: Text model service; an OllamaClient is built when omitted
        classifier: Relationship classification policy; heuristic by default

    Returns:
        Services sharing one Database and one model client
    """
    db = Database(config.DATABASE_PATH)

    if llm is None:
        llm = OllamaClient(
            base_url=config.OLLAMA_BASE_URL,
            model=config.OLLAMA_MODEL,
            embedding_model=config.OLLAMA_EMBEDDING_MODEL,
            embedding_dimension=config.embedding.dimension,
            max_retries=config.OLLAMA_MAX_RETRIES,
        )

    repository = ItemRepository(db)
    embedding_store = EmbeddingStore(
        repository,
        llm,
        max_content_chars=config.embedding.max_content_chars,
        min_text_chars=config.embedding.min_text_chars,
        inter_item_delay=config.embedding.inter_item_delay,
    )
    synthesis_store = SynthesisStore(db)
    prompt = config.prompts.to_prompt()
    settings = config.synthesis

    discovery = CandidateDiscovery(
        repository=repository,
        embedding_store=embedding_store,
        llm=llm,
        prompt=prompt,
        classifier=classifier or HeuristicClassifier(),
        dimension=config.embedding.dimension,
        scoring_concurrency=settings.scoring_concurrency,
        scoring_batch_delay=settings.scoring_batch_delay,
        scoring_max_tokens=settings.scoring_max_tokens,
        scoring_timeout=settings.scoring_timeout,
        min_total_score=settings.min_total_score,
    )
    developer = SynthesisDeveloper(llm, max_tokens=settings.development_max_tokens)

    pipeline = SynthesisPipeline(
        repository=repository,
        store=synthesis_store,
        discovery=discovery,
        developer=developer,
        settings=settings,
        prompt=prompt,
    )
    queue = SelectionQueue(db, config.queue, repository=repository)

    logger.info(f"Created synthesis services (db={config.DATABASE_PATH}, prompt={prompt.name})")
    return Services(
        config=config,
        db=db,
        llm=llm,
        repository=repository,
        embedding_store=embedding_store,
        synthesis_store=synthesis_store,
        queue=queue,
        pipeline=pipeline,
    )
