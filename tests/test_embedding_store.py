from datetime import timedelta

import pytest

from core.errors import ValidationError
from services.embedding_store import EmbeddingStore
from tests.conftest import DIM, TODAY, FakeTextModel, make_item


def store_for(repository, model) -> EmbeddingStore:
    return EmbeddingStore(repository, model, inter_item_delay=0.0)


@pytest.mark.asyncio
async def test_embed_and_store_persists_vector(repository, fake_model):
    item = make_item("a", "Agent platform launch", "Enterprise developers build agents.")
    await repository.import_items([item])

    vector = await store_for(repository, fake_model).embed_and_store(item)

    stored = await repository.get_item("a")
    assert len(vector) == DIM
    assert stored.embedding == pytest.approx(vector, abs=1e-6)
    assert fake_model.embedded[0].startswith("Title: Agent platform launch")


@pytest.mark.asyncio
async def test_short_text_is_skipped_not_failed(repository, fake_model):
    item = make_item("tiny", "Hi", "")
    await repository.import_items([item])

    assert await store_for(repository, fake_model).embed_and_store(item) is None
    assert (await repository.get_item("tiny")).embedding is None
    assert fake_model.embedded == []


@pytest.mark.asyncio
async def test_set_embedding_only_fills_null(repository):
    await repository.import_items([make_item("a", "Agent platform launch", "Content here.")])

    assert await repository.set_embedding("a", [1.0] * DIM)
    assert not await repository.set_embedding("a", [2.0] * DIM)
    assert (await repository.get_item("a")).embedding[0] == 1.0


@pytest.mark.asyncio
async def test_backfill_continues_past_failures(repository):
    model = FakeTextModel(embed_fail_markers=("Broken",))
    await repository.import_items([
        make_item("old", "Oldest agent story", "Platform content.", TODAY - timedelta(days=3)),
        make_item("bad", "Broken item", "This one fails.", TODAY - timedelta(days=2)),
        make_item("tiny", "Hi", "", TODAY - timedelta(days=1)),
        make_item("new", "Newest agent story", "Platform content.", TODAY),
    ])
    progress = []

    async def on_progress(current, total, label):
        progress.append((current, total, label))

    result = await store_for(repository, model).backfill(batch_size=2, on_progress=on_progress)

    assert (result.processed, result.errors, result.skipped) == (2, 1, 1)
    assert result.remaining == 2
    assert [p[2] for p in progress] == ["Oldest agent story", "Newest agent story"]
    assert progress[0][1] == 4


@pytest.mark.asyncio
async def test_backfill_respects_max_batches(repository, fake_model):
    await repository.import_items([
        make_item(f"i{n}", f"Agent story number {n}", "Platform content.", TODAY - timedelta(days=n))
        for n in range(5)
    ])

    result = await store_for(repository, fake_model).backfill(batch_size=2, max_batches=1)

    assert result.processed == 2
    assert result.remaining == 3
    # oldest first
    assert (await repository.get_item("i4")).embedding is not None
    assert (await repository.get_item("i0")).embedding is None


@pytest.mark.asyncio
async def test_backfill_with_nothing_missing(repository, fake_model):
    result = await store_for(repository, fake_model).backfill()
    assert (result.processed, result.errors, result.remaining) == (0, 0, 0)


@pytest.mark.asyncio
async def test_backfill_validates_arguments(repository, fake_model):
    with pytest.raises(ValidationError):
        await store_for(repository, fake_model).backfill(batch_size=0)
