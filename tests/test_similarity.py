import math

import numpy as np
import pytest
from hypothesis import assume, given
from hypothesis import strategies as st

from services.vector_store import SimilarityIndex, cosine_similarity

vectors = st.lists(
    st.floats(min_value=-100.0, max_value=100.0, allow_nan=False, allow_infinity=False),
    min_size=8,
    max_size=8,
)


@given(vectors, vectors)
def test_cosine_is_symmetric_and_bounded(a, b):
    ab = cosine_similarity(a, b)
    assert ab == pytest.approx(cosine_similarity(b, a), abs=1e-12)
    assert -1.0 <= ab <= 1.0


@given(vectors)
def test_cosine_self_similarity_is_one(a):
    assume(np.linalg.norm(a) > 1e-3)
    assert cosine_similarity(a, a) == pytest.approx(1.0, abs=1e-9)


def test_cosine_zero_vector():
    assert cosine_similarity([0.0, 0.0], [1.0, 2.0]) == 0.0


def test_cosine_dimension_mismatch():
    with pytest.raises(ValueError):
        cosine_similarity([1.0, 2.0], [1.0, 2.0, 3.0])


def test_index_orders_by_similarity_and_applies_threshold():
    index = SimilarityIndex(dim=3)
    index.add([1.0, 0.0, 0.0], "x")
    index.add([1.0, 1.0, 0.0], "xy")
    index.add([0.0, 0.0, 1.0], "z")

    hits = index.search([1.0, 0.1, 0.0], k=3, min_similarity=0.5)

    assert [payload for payload, _ in hits] == ["x", "xy"]
    assert hits[0][1] >= hits[1][1]
    assert hits[1][1] == pytest.approx(cosine_similarity([1.0, 0.1, 0.0], [1.0, 1.0, 0.0]), abs=1e-5)


def test_index_limits_results_and_handles_empty():
    index = SimilarityIndex(dim=2)
    assert index.search([1.0, 0.0], k=5) == []

    for i in range(4):
        index.add([1.0, i / 10], i)
    assert len(index) == 4
    assert len(index.search([1.0, 0.0], k=2)) == 2


def test_index_rejects_wrong_dimension():
    index = SimilarityIndex(dim=4)
    with pytest.raises(ValueError):
        index.add([1.0, 2.0], "short")


@given(vectors, vectors)
def test_index_matches_cosine(a, b):
    assume(np.linalg.norm(a) > 1e-3 and np.linalg.norm(b) > 1e-3)
    index = SimilarityIndex(dim=8)
    index.add(b, "b")
    [(_, similarity)] = index.search(a, k=1)
    assert math.isclose(similarity, cosine_similarity(a, b), abs_tol=1e-4)
