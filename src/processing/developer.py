"""
Synthesis development (Phase 2): expands one scored candidate into a short
narrative with a single, hard-bounded model call.
"""
import asyncio
import logging
from typing import Dict, Iterable, List

from core.entities import DevelopedSynthesis, DevelopmentContext, Item, SynthesisCandidate
from core.errors import ModelTimeoutError, PreconditionError
from core.prompts import render_prompt
from core.scoring import thesis_alignment_score
from processing.evaluator import item_text, parse_synthesis_draft
from services.llm import TextModelService

logger = logging.getLogger(__name__)


def best_per_source(candidates: Iterable[SynthesisCandidate]) -> List[SynthesisCandidate]:
    """
    The highest originality + relevance candidate of each source item.
    Ties go to the higher similarity, then the lower id.
    """
    best: Dict[str, SynthesisCandidate] = {}
    for c in candidates:
        current = best.get(c.source_item_id)
        if current is None or _rank(c) < _rank(current):
            best[c.source_item_id] = c
    return sorted(best.values(), key=_rank)


def _rank(c: SynthesisCandidate):
    return (-c.total_score, -c.similarity, c.id if c.id is not None else 0)


class SynthesisDeveloper:
    def __init__(self, llm: TextModelService, max_tokens: int = 1024):
        self.llm = llm
        self.max_tokens = max_tokens

    def build_context(self, candidate: SynthesisCandidate, items: Dict[str, Item]) -> DevelopmentContext:
        """
        Pair a candidate with the full text of both of its items.
        Raises PreconditionError when either item is missing or empty.
        """
        source = items.get(candidate.source_item_id)
        related = items.get(candidate.related_item_id)
        for role, item_id, item in (
            ("source", candidate.source_item_id, source),
            ("related", candidate.related_item_id, related),
        ):
            if item is None or not item.has_content:
                raise PreconditionError(
                    f"Candidate {candidate.id}: {role} item has no content",
                    candidate_id=candidate.id,
                    item_id=item_id,
                )
        return DevelopmentContext(candidate=candidate, source_item=source, related_item=related)

    async def develop(
        self,
        context: DevelopmentContext,
        development_prompt: str,
        core_thesis: str,
        timeout_ms: int = 20000,
    ) -> DevelopedSynthesis:
        """
        One completion under a hard deadline.
        Raises ModelTimeoutError on the deadline and ExternalServiceError on
        a failed call or output that does not parse.
        """
        candidate = context.candidate
        if not context.source_item.has_content or not context.related_item.has_content:
            raise PreconditionError(
                f"Candidate {candidate.id} is missing item content",
                candidate_id=candidate.id,
            )

        prompt = render_prompt(
            development_prompt,
            current_news=item_text(context.source_item),
            historical_news=item_text(context.related_item),
            days_ago=candidate.days_ago,
            synthesis_type=candidate.synthesis_type.value,
            core_thesis=core_thesis,
        )

        timeout = timeout_ms / 1000
        try:
            raw = await asyncio.wait_for(
                self.llm.complete(prompt, max_tokens=self.max_tokens, timeout=timeout),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            if isinstance(e, ModelTimeoutError):
                raise
            raise ModelTimeoutError(
                f"Development of candidate {candidate.id} timed out after {timeout_ms}ms",
                candidate_id=candidate.id,
            ) from e

        draft = parse_synthesis_draft(raw)
        narrative = f"{draft.headline} {draft.content} {draft.core_thesis_alignment}"

        logger.info(f"Developed synthesis for candidate {candidate.id}: {draft.headline[:60]}")
        return DevelopedSynthesis(
            digest_id=candidate.digest_id,
            candidate_id=candidate.id,
            headline=draft.headline,
            content=draft.content,
            historical_reference=draft.historical_reference,
            core_thesis_alignment=draft.core_thesis_alignment,
            thesis_alignment_score=thesis_alignment_score(narrative, core_thesis),
        )
