"""
Relationship classification between a current item and a historical neighbour.

The decision boundary is a policy: anything implementing SynthesisClassifier
can be injected into candidate discovery. The default policy is a heuristic
over time gap, lexical overlap and contrast wording. It is total (every pair
gets exactly one type) and deterministic for identical inputs.
"""
import re
from dataclasses import dataclass
from typing import Protocol

from core.entities import Item, SynthesisType
from core.text import content_overlap

_CONTRAST_RE = re.compile(
    r"\b("
    r"however|contrary|contradicts?|despite|reverses?|reversal|backtracks?|"
    r"u-turn|denies|denied|abandons?|scraps?|cancels?|cancelled|no longer|"
    r"instead of|rather than|fails?|failed|setback|"
    r"jedoch|widerspr\w*|trotz|entgegen|stattdessen|nicht mehr"
    r")\b",
    re.IGNORECASE,
)


class SynthesisClassifier(Protocol):
    def classify(self, source: Item, related: Item, similarity: float, days_ago: int) -> SynthesisType:
        ...


@dataclass(frozen=True)
class HeuristicClassifier:
    """
    contrast      - the current item uses contrast wording about a shared topic
    evolution     - same story, long gap
    validation    - same story, short gap
    pattern       - related topic, different specifics
    cross_domain  - semantically close with little shared vocabulary
    """
    same_story_overlap: float = 0.2
    related_overlap: float = 0.08
    long_gap_days: int = 14

    def classify(self, source: Item, related: Item, similarity: float, days_ago: int) -> SynthesisType:
        source_text = f"{source.title} {source.content}"
        related_text = f"{related.title} {related.content}"
        overlap = content_overlap(source_text, related_text)

        if overlap >= self.related_overlap and _CONTRAST_RE.search(source_text):
            return SynthesisType.CONTRAST

        if overlap >= self.same_story_overlap:
            if days_ago >= self.long_gap_days:
                return SynthesisType.EVOLUTION
            return SynthesisType.VALIDATION

        if overlap >= self.related_overlap:
            return SynthesisType.PATTERN

        return SynthesisType.CROSS_DOMAIN
