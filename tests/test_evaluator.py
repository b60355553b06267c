import asyncio

import pytest

from core.entities import SynthesisType
from core.errors import ExternalServiceError, Result
from processing.evaluator import (
    ScoringJob,
    parse_candidate_score,
    parse_synthesis_draft,
    run_in_batches,
    score_candidates,
)
from core.prompts import DEFAULT_PROMPT
from tests.conftest import FakeTextModel, make_item


def test_parse_score_from_fenced_json():
    raw = '```json\n{"originality": 8, "relevance": 6, "reasoning": "Unexpected link."}\n```'
    score = parse_candidate_score(raw)
    assert (score.originality, score.relevance) == (8, 6)
    assert score.reasoning == "Unexpected link."


def test_parse_score_from_labelled_lines():
    raw = "ORIGINALITY: 9\nRELEVANCE: 4\nREASONING: Old story, new angle.\n\nextra"
    score = parse_candidate_score(raw)
    assert (score.originality, score.relevance) == (9, 4)
    assert score.reasoning == "Old story, new angle."


def test_parse_score_rejects_out_of_range():
    with pytest.raises(ExternalServiceError):
        parse_candidate_score('{"originality": 14, "relevance": 3}')


def test_parse_score_rejects_garbage():
    with pytest.raises(ExternalServiceError):
        parse_candidate_score("I cannot answer that.")


def test_parse_draft_labelled_fallback():
    raw = (
        "HEADLINE: Agents grow up\n"
        "SYNTHESIS: The platform matured.\nIt now ships to enterprises.\n"
        "REFERENCE: Launch thirty days ago\n"
        "ALIGNMENT: New services emerge."
    )
    draft = parse_synthesis_draft(raw)
    assert draft.headline == "Agents grow up"
    assert draft.content == "The platform matured.\nIt now ships to enterprises."
    assert draft.historical_reference == "Launch thirty days ago"
    assert draft.core_thesis_alignment == "New services emerge."


def test_parse_draft_requires_content():
    with pytest.raises(ExternalServiceError):
        parse_synthesis_draft('{"headline": "Only a headline", "content": "  "}')


@pytest.mark.asyncio
async def test_run_in_batches_bounds_concurrency():
    running = 0
    peak = 0

    async def worker(n: int) -> Result:
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.01)
        running -= 1
        return Result.success(n)

    results = await run_in_batches(list(range(7)), worker, concurrency=3, batch_delay=0)

    assert [r.value for r in results] == list(range(7))
    assert peak == 3


@pytest.mark.asyncio
async def test_score_candidates_drops_only_failed_jobs():
    model = FakeTextModel(fail_markers=("Broken related",))
    source = make_item("s", "Source story", "Source content")
    jobs = [
        ScoringJob(
            source=source,
            related=make_item(f"r{i}", title, "Related content"),
            similarity=0.8,
            days_ago=10,
            synthesis_type=SynthesisType.PATTERN,
        )
        for i, title in enumerate(["Fine related", "Broken related", "Other related"])
    ]

    results = await score_candidates(
        llm=model,
        jobs=jobs,
        scoring_prompt=DEFAULT_PROMPT.scoring_prompt,
        core_thesis=DEFAULT_PROMPT.core_thesis,
        concurrency=2,
        batch_delay=0,
    )

    assert [r.ok for r in results] == [True, False, True]
    assert results[1].key == "s->r1"
    job, score = results[0].value
    assert job.related.id == "r0"
    assert score.originality + score.relevance == 15
