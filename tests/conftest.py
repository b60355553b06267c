import asyncio
import hashlib
import json
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from core.entities import Item
from core.errors import ExternalServiceError
from core.text import tokenize
from services.config import Config, EmbeddingConfig, QueueConfig, SynthesisConfig
from services.database import Database
from services.repository import ItemRepository

DIM = 768
TODAY = date(2026, 3, 10)


def hashed_vector(text: str, dim: int = DIM) -> List[float]:
    """Bag-of-words vector: texts sharing vocabulary point the same way."""
    vector = [0.0] * dim
    for token in tokenize(text):
        vector[int(hashlib.md5(token.encode()).hexdigest(), 16) % dim] += 1.0
    vector[-1] += 0.01
    return vector


class FakeTextModel:
    """
    Deterministic stand-in for the text model service.

    score_overrides: substring of the prompt -> (originality, relevance)
    fail_markers: substrings that make complete() raise ExternalServiceError
    """

    def __init__(
        self,
        default_score: Tuple[int, int] = (7, 8),
        score_overrides: Optional[Dict[str, Tuple[int, int]]] = None,
        fail_markers: Tuple[str, ...] = (),
        embed_fail_markers: Tuple[str, ...] = (),
        development_response: Optional[str] = None,
        delay: float = 0.0,
    ):
        self.default_score = default_score
        self.score_overrides = score_overrides or {}
        self.fail_markers = fail_markers
        self.embed_fail_markers = embed_fail_markers
        self.development_response = development_response
        self.delay = delay
        self.prompts: List[str] = []
        self.embedded: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def embed(self, text: str) -> List[float]:
        if any(marker in text for marker in self.embed_fail_markers):
            raise ExternalServiceError("embedding failed")
        self.embedded.append(text)
        return hashed_vector(text)

    async def complete(self, prompt: str, max_tokens: int = 512, timeout: Optional[float] = None) -> str:
        self.prompts.append(prompt)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if any(marker in prompt for marker in self.fail_markers):
                raise ExternalServiceError("completion failed")

            if "headline" in prompt:
                return self.development_response or json.dumps({
                    "headline": "Agents move into the enterprise",
                    "content": "What started as a developer platform now shapes how "
                               "enterprise products and services are built.",
                    "historical_reference": "Agent platform launch",
                    "core_thesis_alignment": "AI synthesis of disciplines creates new products and services.",
                })

            originality, relevance = self.default_score
            for marker, score in self.score_overrides.items():
                if marker in prompt:
                    originality, relevance = score
            return json.dumps({
                "originality": originality,
                "relevance": relevance,
                "reasoning": "Same platform, thirty days apart.",
            })
        finally:
            self.in_flight -= 1

    async def health_check(self) -> bool:
        return True


def make_item(
    item_id: str,
    title: str,
    content: str,
    day: date = TODAY,
    source: str = "news@example.com",
    embedding: Optional[List[float]] = None,
) -> Item:
    return Item(
        id=item_id,
        title=title,
        content=content,
        source_identifier=source,
        collected_at=datetime.combine(day, time(8, 0), tzinfo=timezone.utc),
        newsletter_date=day,
        embedding=embedding,
    )


AGENT_TITLE = "OpenAI launches agent platform for enterprise developers"
AGENT_CONTENT = "The agent platform lets enterprise developers build autonomous agents."


def scenario_items() -> List[Item]:
    return [
        make_item("h1", AGENT_TITLE, AGENT_CONTENT, TODAY - timedelta(days=30)),
        make_item(
            "h2",
            "Bakery opens sourdough shop downtown",
            "Local bakers celebrate crusty loaves and pastries.",
            TODAY - timedelta(days=10),
        ),
        make_item(
            "t1",
            "OpenAI expands agent platform for enterprise developers",
            "The agent platform now lets enterprise developers deploy autonomous agents at scale.",
            TODAY,
        ),
        make_item(
            "t2",
            "Quarterly copper exports decline",
            "Mining output shrank across southern provinces during winter.",
            TODAY,
        ),
    ]


@pytest.fixture
def fake_model() -> FakeTextModel:
    return FakeTextModel()


@pytest.fixture
def config(tmp_path) -> Config:
    return Config(
        DATABASE_PATH=str(tmp_path / "synthesis.db"),
        OLLAMA_BASE_URL="http://localhost:11434",
        OLLAMA_MODEL="test-model",
        OLLAMA_EMBEDDING_MODEL="test-embed",
        embedding=EmbeddingConfig(inter_item_delay=0.0),
        synthesis=SynthesisConfig(scoring_batch_delay=0.0, development_delay=0.0),
        queue=QueueConfig(),
    )


@pytest_asyncio.fixture
async def db(config) -> Database:
    database = Database(config.DATABASE_PATH)
    await database.init_tables()
    return database


@pytest_asyncio.fixture
async def repository(db) -> ItemRepository:
    return ItemRepository(db)
