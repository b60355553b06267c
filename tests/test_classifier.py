from datetime import timedelta

from hypothesis import given
from hypothesis import strategies as st

from core.entities import SynthesisType
from processing.classifier import HeuristicClassifier
from tests.conftest import TODAY, make_item

classifier = HeuristicClassifier()

SOURCE = make_item("s", "Agent platform expands enterprise developers", "Autonomous agents deploy at scale.")
SAME_STORY = make_item(
    "r", "Agent platform launches enterprise developers", "Autonomous agents build apps.",
    TODAY - timedelta(days=30),
)


def test_same_story_long_gap_is_evolution():
    assert classifier.classify(SOURCE, SAME_STORY, 0.9, days_ago=30) == SynthesisType.EVOLUTION


def test_same_story_short_gap_is_validation():
    assert classifier.classify(SOURCE, SAME_STORY, 0.9, days_ago=3) == SynthesisType.VALIDATION


def test_contrast_wording_wins():
    reversal = make_item(
        "c", "Agent platform scraps enterprise developers plan",
        "However the autonomous agents rollout failed.",
    )
    assert classifier.classify(reversal, SAME_STORY, 0.8, days_ago=30) == SynthesisType.CONTRAST


def test_related_topic_is_pattern():
    loose = make_item(
        "p", "Enterprise adoption of agent tooling",
        "Banks and insurers pilot internal assistants, compliance reviews, procurement bots.",
    )
    assert classifier.classify(loose, SAME_STORY, 0.7, days_ago=20) == SynthesisType.PATTERN


def test_no_shared_vocabulary_is_cross_domain():
    other = make_item("x", "Copper exports decline", "Mining output shrank during winter.")
    assert classifier.classify(other, SAME_STORY, 0.7, days_ago=20) == SynthesisType.CROSS_DOMAIN


@given(
    st.text(max_size=200),
    st.text(max_size=200),
    st.floats(min_value=-1.0, max_value=1.0),
    st.integers(min_value=0, max_value=365),
)
def test_classification_is_total_and_deterministic(source_text, related_text, similarity, days_ago):
    source = make_item("a", source_text, "")
    related = make_item("b", related_text, "", TODAY - timedelta(days=days_ago))
    first = classifier.classify(source, related, similarity, days_ago)
    assert isinstance(first, SynthesisType)
    assert classifier.classify(source, related, similarity, days_ago) == first
