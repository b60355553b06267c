import asyncio
from datetime import timedelta

import aiosqlite
import pytest
import pytest_asyncio

from core.entities import RunState
from core.errors import NotFoundError, PreconditionError, ValidationError
from tests.conftest import AGENT_CONTENT, AGENT_TITLE, TODAY, FakeTextModel, make_item, scenario_items
from workflows.pipeline_factory import create_services_from_config


async def build(config, model, extra_items=()):
    services = create_services_from_config(config, llm=model)
    await services.db.init_tables()
    await services.repository.import_items(scenario_items() + list(extra_items))
    await services.embedding_store.backfill()
    await services.repository.create_digest(TODAY, sources_used=["t1", "t2"], digest_id="digest-1")
    return services


@pytest_asyncio.fixture
async def services(config, fake_model):
    return await build(config, fake_model)


@pytest.mark.asyncio
async def test_run_develops_best_candidate(services):
    result = await services.pipeline.run("digest-1")

    assert result.state == RunState.COMPLETE
    assert result.items_processed == 2
    assert result.candidates_created == 1
    assert result.syntheses_developed == 1
    assert result.errors == 0
    assert result.stopped_early is None

    [candidate] = await services.synthesis_store.get_candidates("digest-1")
    assert (candidate.source_item_id, candidate.related_item_id) == ("t1", "h1")

    [synthesis] = await services.pipeline.get_syntheses("digest-1")
    assert synthesis.candidate_id == candidate.id
    assert synthesis.headline == "Agents move into the enterprise"


@pytest.mark.asyncio
async def test_rerun_creates_no_duplicates(services):
    await services.pipeline.run("digest-1")
    second = await services.pipeline.run("digest-1")

    assert second.candidates_created == 0
    assert second.syntheses_developed == 0
    # t1 already has candidates; its candidate is already developed
    assert second.skipped_existing == 2
    assert len(await services.pipeline.get_syntheses("digest-1")) == 1
    assert len(await services.synthesis_store.get_candidates("digest-1")) == 1


@pytest.mark.asyncio
async def test_progress_events_end_with_complete(services):
    events = [e async for e in services.pipeline.run_with_progress("digest-1")]

    phases = [e.phase for e in events if e.type == "progress"]
    assert phases[0] == "discovering"
    assert phases.count("scoring") == 2
    assert phases.count("developing") == 1
    assert [e.type for e in events].count("complete") == 1

    final = events[-1]
    assert final.type == "complete"
    assert final.data["syntheses_developed"] == 1
    assert final.to_dict()["state"] == "complete"


@pytest.mark.asyncio
async def test_missing_digest(services):
    events = [e async for e in services.pipeline.run_with_progress("nope")]
    assert len(events) == 1
    assert events[0].type == "error"
    assert events[0].data["error"] == "not_found"
    assert events[0].data["nothing_happened"] is True

    with pytest.raises(NotFoundError):
        await services.pipeline.run("nope")
    with pytest.raises(NotFoundError):
        await services.pipeline.get_syntheses("nope")


@pytest.mark.asyncio
async def test_invalid_options_are_rejected(services):
    with pytest.raises(ValidationError):
        await services.pipeline.run("digest-1", {"min_similarity": 3})
    with pytest.raises(ValidationError):
        await services.pipeline.run(" ")


@pytest.mark.asyncio
async def test_cancellation_stops_between_items(services):
    cancel = asyncio.Event()
    cancel.set()

    result = await services.pipeline.run("digest-1", cancel_event=cancel)

    assert result.stopped_early == "cancelled"
    assert result.items_processed == 0
    assert await services.pipeline.get_syntheses("digest-1") == []


@pytest.mark.asyncio
async def test_deadline_stops_run(config, fake_model):
    config.synthesis.run_budget_seconds = 0
    services = await build(config, fake_model)

    result = await services.pipeline.run("digest-1")

    assert result.stopped_early == "deadline"
    assert result.state == RunState.COMPLETE
    assert result.items_processed == 0


@pytest.mark.asyncio
async def test_failed_development_is_counted(config):
    model = FakeTextModel(development_response="not json at all")
    services = await build(config, model)

    result = await services.pipeline.run("digest-1")

    assert result.candidates_created == 1
    assert result.syntheses_developed == 0
    assert result.errors == 1
    assert "candidate" in result.error_messages[0]


@pytest.mark.asyncio
async def test_run_respects_item_and_candidate_limits(config, fake_model):
    # a second historical neighbour for t1
    services = await build(
        config,
        fake_model,
        [make_item("h3", AGENT_TITLE, AGENT_CONTENT, TODAY - timedelta(days=20))],
    )
    limits = {"max_items_to_process": 1, "max_candidates_per_item": 1}

    first = await services.pipeline.run("digest-1", limits)

    assert first.items_processed == 1
    candidates = await services.synthesis_store.get_candidates("digest-1")
    assert [c.source_item_id for c in candidates] == ["t1"]

    second = await services.pipeline.run("digest-1", limits)

    # t1 is done; the remaining digest item is picked up
    assert second.items_processed == 1
    assert second.skipped_existing == 2
    assert len(await services.synthesis_store.get_candidates("digest-1")) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error, code",
    [
        (PreconditionError("digest items unavailable"), "precondition_failed"),
        (aiosqlite.OperationalError("database is locked"), "engine_error"),
    ],
)
async def test_unexpected_failure_ends_stream_with_error_event(services, monkeypatch, error, code):
    async def failing(digest):
        raise error

    monkeypatch.setattr(services.repository, "get_digest_items", failing)

    events = [e async for e in services.pipeline.run_with_progress("digest-1")]

    assert [e.type for e in events] == ["error"]
    assert events[0].data["error"] == code
    assert events[0].phase == "failed"
