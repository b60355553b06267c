import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from core.entities import Item, SynthesisType
from core.errors import ExternalServiceError, Result, SynthesisEngineError
from core.prompts import render_prompt
from core.schemas import CandidateScore, SynthesisDraft
from services.llm import TextModelService

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)
T = TypeVar("T")

_LABELLED_SCORE = {
    "originality": re.compile(r"ORIGINALIT(?:Y|ÄT|AET)\s*:\s*(\d+)", re.IGNORECASE),
    "relevance": re.compile(r"RELEVAN(?:CE|Z)\s*:\s*(\d+)", re.IGNORECASE),
    "reasoning": re.compile(r"(?:REASONING|BEGRÜNDUNG)\s*:\s*([\s\S]+?)(?:\n\n|$)", re.IGNORECASE),
}
_LABELLED_DRAFT = {
    "headline": re.compile(r"HEADLINE\s*:\s*(.+?)(?:\n|$)", re.IGNORECASE),
    "content": re.compile(
        r"(?:SYNTHESIS|SYNTHESE|CONTENT)\s*:\s*([\s\S]+?)(?=\n\s*(?:REFERENCE|REFERENZ|ALIGNMENT)\s*:|$)",
        re.IGNORECASE,
    ),
    "historical_reference": re.compile(r"(?:REFERENCE|REFERENZ)\s*:\s*(.+?)(?:\n|$)", re.IGNORECASE),
    "core_thesis_alignment": re.compile(r"ALIGNMENT\s*:\s*(.+?)(?:\n|$)", re.IGNORECASE),
}


def _extract_json(content: str) -> str:
    """
    Extract JSON from LLM response, stripping markdown code blocks if present.
    """
    content = content.strip()

    # Remove markdown code blocks (```json ... ``` or ``` ... ```)
    pattern = r'^```(?:json)?\s*\n?(.*?)\n?```$'
    match = re.match(pattern, content, re.DOTALL)
    if match:
        return match.group(1).strip()

    # Try to find a JSON object in the content
    object_match = re.search(r'\{.*\}', content, re.DOTALL)
    if object_match:
        return object_match.group(0)

    return content


def _parse_structured(raw: str, schema: type[M], labelled: dict) -> M:
    """
    Validate a model response against a schema.
    JSON is preferred; "LABEL: value" lines are accepted as a fallback.
    """
    clean_json = _extract_json(raw)
    try:
        return schema.model_validate_json(clean_json)
    except SchemaError:
        pass

    fields = {}
    for name, regex in labelled.items():
        match = regex.search(raw)
        if match:
            fields[name] = match.group(1).strip()

    try:
        return schema.model_validate(fields)
    except SchemaError as e:
        logger.debug(f"Raw content: {raw[:500]}")
        raise ExternalServiceError(
            f"Malformed {schema.__name__} response: {e.error_count()} invalid fields"
        ) from e


def parse_candidate_score(raw: str) -> CandidateScore:
    return _parse_structured(raw, CandidateScore, _LABELLED_SCORE)


def parse_synthesis_draft(raw: str) -> SynthesisDraft:
    return _parse_structured(raw, SynthesisDraft, _LABELLED_DRAFT)


def item_text(item: Item, max_chars: int = 2000) -> str:
    return f"{item.title}\n\n{item.content[:max_chars]}"


@dataclass(frozen=True)
class ScoringJob:
    """
    One (source, related) pair waiting for its scoring call.
    """
    source: Item
    related: Item
    similarity: float
    days_ago: int
    synthesis_type: SynthesisType

    @property
    def key(self) -> str:
        return f"{self.source.id}->{self.related.id}"


async def score_candidate(
    *,
    llm: TextModelService,
    job: ScoringJob,
    scoring_prompt: str,
    core_thesis: str,
    max_tokens: int = 256,
    timeout: Optional[float] = None,
) -> CandidateScore:
    """
    Executes one scoring call and validates its structured output.
    """
    prompt = render_prompt(
        scoring_prompt,
        current_news=item_text(job.source),
        historical_news=item_text(job.related),
        days_ago=job.days_ago,
        synthesis_type=job.synthesis_type.value,
        core_thesis=core_thesis,
    )
    raw = await llm.complete(prompt, max_tokens=max_tokens, timeout=timeout)
    return parse_candidate_score(raw)


async def run_in_batches(
    jobs: Sequence[T],
    worker: Callable[[T], Awaitable[Result]],
    *,
    concurrency: int = 5,
    batch_delay: float = 0.2,
) -> List[Result]:
    """
    Run workers for all jobs, at most `concurrency` at a time, pausing between batches.
    A worker must return a Result rather than raise.
    """
    results: List[Result] = []
    concurrency = max(1, concurrency)

    for start in range(0, len(jobs), concurrency):
        batch = jobs[start:start + concurrency]
        results.extend(await asyncio.gather(*(worker(job) for job in batch)))

        if start + concurrency < len(jobs):
            await asyncio.sleep(batch_delay)

    return results


async def score_candidates(
    *,
    llm: TextModelService,
    jobs: Sequence[ScoringJob],
    scoring_prompt: str,
    core_thesis: str,
    concurrency: int = 5,
    batch_delay: float = 0.2,
    max_tokens: int = 256,
    timeout: Optional[float] = None,
) -> List[Result]:
    """
    Score all jobs with bounded concurrency.
    Each Result carries (job, CandidateScore) or the error that dropped the job.
    """

    async def worker(job: ScoringJob) -> Result:
        try:
            score = await score_candidate(
                llm=llm,
                job=job,
                scoring_prompt=scoring_prompt,
                core_thesis=core_thesis,
                max_tokens=max_tokens,
                timeout=timeout,
            )
        except SynthesisEngineError as e:
            logger.warning(f"Scoring failed for {job.key}: {e.message}")
            return Result.failure(e, key=job.key)
        return Result.success((job, score), key=job.key)

    return await run_in_batches(jobs, worker, concurrency=concurrency, batch_delay=batch_delay)
