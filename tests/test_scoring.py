from hypothesis import given
from hypothesis import strategies as st

from core.prompts import DEFAULT_CORE_THESIS
from core.scoring import (
    candidate_total_score,
    passes_min_total,
    premium_bonus,
    queue_total_score,
    thesis_alignment_score,
)


def test_candidate_total_score_is_sum():
    assert candidate_total_score(7, 8) == 15


def test_min_total_filter_boundary():
    assert passes_min_total(6, 6, 12)
    assert not passes_min_total(6, 5, 12)


def test_queue_total_score_weights():
    assert queue_total_score(10, 10, 10) == 10.0
    assert queue_total_score(8, 6, 5) == 6.5
    assert queue_total_score(8, 6, 5, source_bonus=3) == 9.5


def test_premium_bonus_tiers():
    assert premium_bonus(1) == 3.0
    assert premium_bonus(2) == 2.0
    assert premium_bonus(3) == 1.0
    assert premium_bonus(None) == 0.0
    assert premium_bonus(7) == 0.0


def test_thesis_alignment_neutral_without_thesis():
    assert thesis_alignment_score("anything at all", "") == 5


def test_thesis_alignment_rewards_shared_vocabulary():
    aligned = thesis_alignment_score(DEFAULT_CORE_THESIS, DEFAULT_CORE_THESIS)
    unrelated = thesis_alignment_score("Copper exports declined in winter.", DEFAULT_CORE_THESIS)
    assert aligned == 10
    assert unrelated < aligned


@given(st.text(max_size=300), st.text(max_size=300))
def test_thesis_alignment_in_range(text, thesis):
    assert 0 <= thesis_alignment_score(text, thesis) <= 10
