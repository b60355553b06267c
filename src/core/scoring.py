"""
Score vocabulary shared by the synthesis pipeline and the selection queue.
All functions here are pure.
"""
from typing import Dict, Optional

from core.text import tokenize

# Queue total score weights: synthesis, relevance, uniqueness.
SYNTHESIS_WEIGHT = 0.4
RELEVANCE_WEIGHT = 0.3
UNIQUENESS_WEIGHT = 0.3

PREMIUM_TIER_BONUS: Dict[int, float] = {1: 3.0, 2: 2.0, 3: 1.0}


def candidate_total_score(originality: int, relevance: int) -> int:
    """
    Rank key for synthesis candidates: originality + relevance.
    """
    return int(originality) + int(relevance)


def passes_min_total(originality: int, relevance: int, min_total_score: int) -> bool:
    return candidate_total_score(originality, relevance) >= min_total_score


def queue_total_score(
    synthesis_score: float,
    relevance_score: float,
    uniqueness_score: float,
    source_bonus: float = 0.0,
) -> float:
    """
    Weighted sum used to rank queue items, rounded to one decimal.
    """
    total = (
        synthesis_score * SYNTHESIS_WEIGHT
        + relevance_score * RELEVANCE_WEIGHT
        + uniqueness_score * UNIQUENESS_WEIGHT
        + (source_bonus or 0.0)
    )
    return round(total, 1)


def premium_bonus(tier: Optional[int]) -> float:
    if tier is None:
        return 0.0
    return PREMIUM_TIER_BONUS.get(int(tier), 0.0)


def thesis_alignment_score(text: str, core_thesis: str) -> int:
    """
    Keyword overlap between a narrative and the core thesis, scaled to 0-10.
    Full marks need two thirds of the thesis vocabulary.
    """
    if not core_thesis or not core_thesis.strip():
        return 5

    thesis_words = tokenize(core_thesis)
    if not thesis_words:
        return 5

    matches = len(thesis_words & tokenize(text))
    return min(10, round(matches / len(thesis_words) * 15))
