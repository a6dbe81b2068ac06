"""Tests for descriptor scoring and the two matching strategies."""

import math

import numpy as np
import pytest

from recollect.errors import DescriptorShapeError, EmptyCandidateSetError
from recollect.face_utils import DetectedFace
from recollect.similarity import (
    CandidateItem,
    MatcherConfig,
    ScoredMatch,
    ScoringPolicy,
    SelectionStrategy,
    SimilarityMatcher,
    cosine_score,
    exponential_score,
    normalize,
    score,
    select_query_descriptor,
)

QUERY = [1.0, 0.0, 0.0]


def at_distance(d: float) -> list:
    """A 3-dim descriptor exactly d away from QUERY."""
    return [1.0, d, 0.0]


def at_score(s: float) -> list:
    """A descriptor whose exponential score against QUERY is s."""
    return at_distance(-math.log(s))


def at_cosine(c: float) -> list:
    """A descriptor whose cosine similarity with QUERY is c."""
    return [c, math.sqrt(1.0 - c * c), 0.0]


def adaptive(**overrides) -> SimilarityMatcher:
    settings = dict(policy=ScoringPolicy.EXPONENTIAL, strategy=SelectionStrategy.ADAPTIVE_TOP_K,
                    floor=0.6, max_results=9, sigma_multiplier=2.0)
    settings.update(overrides)
    return SimilarityMatcher(MatcherConfig(**settings))


def first_hit(**overrides) -> SimilarityMatcher:
    settings = dict(policy=ScoringPolicy.COSINE, strategy=SelectionStrategy.FIRST_HIT, threshold=0.9)
    settings.update(overrides)
    return SimilarityMatcher(MatcherConfig(**settings))


# ============================================================================
# Scoring
# ============================================================================

def test_exponential_identical_vectors_score_one():
    assert exponential_score([1, 0, 0], [1, 0, 0]) == pytest.approx(1.0)


def test_exponential_orthogonal_unit_vectors():
    assert exponential_score([1, 0, 0], [0, 1, 0]) == pytest.approx(math.exp(-math.sqrt(2)))
    assert exponential_score([1, 0, 0], [0, 1, 0]) == pytest.approx(0.243, abs=1e-3)


def test_cosine_scores_stay_in_bounds():
    rng = np.random.default_rng(0)
    for _ in range(200):
        a, b = rng.normal(size=128), rng.normal(size=128)
        value = cosine_score(a, b)
        assert -1.0 <= value <= 1.0
        assert cosine_score(a, a) == pytest.approx(1.0)


def test_cosine_ignores_magnitude():
    assert cosine_score([2, 0], [5, 0]) == pytest.approx(1.0)
    assert cosine_score([1, 0], [-3, 0]) == pytest.approx(-1.0)


@pytest.mark.parametrize("policy", list(ScoringPolicy))
def test_mismatched_lengths_are_rejected(policy):
    with pytest.raises(DescriptorShapeError):
        score([1.0, 0.0, 0.0], [1.0, 0.0], policy)


def test_non_finite_descriptor_is_rejected():
    with pytest.raises(DescriptorShapeError):
        exponential_score([1.0, float("nan")], [1.0, 0.0])


def test_normalize_unit_length():
    result = normalize([3.0, 4.0])

    assert not result.degenerate
    assert result.vector.tolist() == pytest.approx([0.6, 0.8])


def test_normalize_zero_vector_is_degenerate():
    result = normalize([0.0, 0.0, 0.0])

    assert result.degenerate
    assert result.vector.tolist() == [0.0, 0.0, 0.0]


def test_cosine_with_zero_vector_is_zero():
    assert cosine_score([0, 0, 0], [1, 0, 0]) == 0.0


# ============================================================================
# Query selection
# ============================================================================

def _face(vector, confidence):
    return DetectedFace(encoding=np.asarray(vector, dtype=float), confidence=confidence)


def test_query_uses_most_confident_face():
    faces = [_face([1, 0, 0], 0.5), _face([0, 1, 0], 0.9), _face([0, 0, 1], 0.7)]

    assert select_query_descriptor(faces).tolist() == [0, 1, 0]


def test_query_confidence_tie_uses_first_face():
    faces = [_face([1, 0, 0], 0.8), _face([0, 1, 0], 0.8)]

    assert select_query_descriptor(faces).tolist() == [1, 0, 0]


def test_query_list_of_descriptors_uses_first():
    assert select_query_descriptor([[0, 1, 0], [1, 0, 0]]).tolist() == [0, 1, 0]


def test_query_flat_descriptor_is_used_as_is():
    assert select_query_descriptor([0.5, 0.5]).tolist() == [0.5, 0.5]


def test_empty_query_is_rejected():
    with pytest.raises(DescriptorShapeError):
        select_query_descriptor([])


# ============================================================================
# Candidate validation
# ============================================================================

def test_candidate_requires_a_descriptor():
    with pytest.raises(ValueError):
        CandidateItem(item_id="empty", descriptors=[])


def test_candidate_from_faces_keeps_confidences():
    item = CandidateItem.from_faces("p1", [_face([1, 0, 0], 0.75)], metadata={"name": "beach.jpg"})

    assert item.confidence_at(0) == 0.75
    assert item.confidence_at(1) is None
    assert item.metadata == {"name": "beach.jpg"}


def test_similarity_percent():
    assert ScoredMatch(item_id="x", score=0.98765).similarity_percent == 98.77


# ============================================================================
# Both strategies
# ============================================================================

@pytest.mark.parametrize("strategy", list(SelectionStrategy))
def test_empty_candidate_set_raises(strategy):
    with pytest.raises(EmptyCandidateSetError):
        adaptive(strategy=strategy).match(QUERY, [])


@pytest.mark.parametrize("strategy", list(SelectionStrategy))
def test_query_length_mismatch_propagates(strategy):
    candidates = [CandidateItem(item_id="a", descriptors=[[1.0, 0.0]])]

    with pytest.raises(DescriptorShapeError):
        adaptive(strategy=strategy).match(QUERY, candidates)


@pytest.mark.parametrize("strategy", list(SelectionStrategy))
def test_degenerate_query_still_checks_lengths(strategy):
    candidates = [CandidateItem(item_id="a", descriptors=[[1.0, 0.0]])]

    with pytest.raises(DescriptorShapeError):
        adaptive(strategy=strategy).match([0.0, 0.0, 0.0], candidates)


@pytest.mark.parametrize("strategy", list(SelectionStrategy))
def test_degenerate_query_matches_nothing(strategy):
    candidates = [CandidateItem(item_id="a", descriptors=[QUERY])]

    result = adaptive(strategy=strategy).match([0.0, 0.0, 0.0], candidates)

    assert result.matches == []


# ============================================================================
# Fixed threshold, first hit per item
# ============================================================================

def test_first_hit_records_one_match_per_item():
    candidates = [CandidateItem(item_id="group", descriptors=[at_cosine(0.95), at_cosine(0.99)])]

    result = first_hit().match(QUERY, candidates)

    assert len(result.matches) == 1
    assert result.matches[0].descriptor_index == 0
    assert result.matches[0].score == pytest.approx(0.95)


def test_first_hit_keeps_input_order_and_drops_non_matches():
    candidates = [
        CandidateItem(item_id="a", descriptors=[at_cosine(0.92)]),
        CandidateItem(item_id="b", descriptors=[at_cosine(0.5)]),
        CandidateItem(item_id="c", descriptors=[at_cosine(0.3), at_cosine(0.97)]),
    ]

    result = first_hit().match(QUERY, candidates)

    assert result.item_ids == ["a", "c"]
    assert result.matches[1].descriptor_index == 1
    assert result.threshold == 0.9
    assert result.strategy == SelectionStrategy.FIRST_HIT


def test_first_hit_threshold_is_exclusive():
    candidates = [CandidateItem(item_id="edge", descriptors=[[1.0, 0.0, 0.0]])]

    result = first_hit(threshold=1.0).match(QUERY, candidates)

    assert result.matches == []


def test_first_hit_skips_degenerate_descriptors():
    candidates = [CandidateItem(item_id="a", descriptors=[[0.0, 0.0, 0.0], at_cosine(0.95)])]

    result = first_hit().match(QUERY, candidates)

    assert result.matches[0].descriptor_index == 1


def test_first_hit_uses_policy_default_threshold():
    matcher = SimilarityMatcher(MatcherConfig(policy=ScoringPolicy.COSINE, strategy=SelectionStrategy.FIRST_HIT))

    assert matcher.config.fixed_threshold == 0.9


def test_strategy_can_be_overridden_per_call():
    candidates = [CandidateItem(item_id="a", descriptors=[at_cosine(0.95)])]

    result = adaptive(policy=ScoringPolicy.COSINE).match(QUERY, candidates, strategy=SelectionStrategy.FIRST_HIT)

    assert result.strategy == SelectionStrategy.FIRST_HIT
    assert result.item_ids == ["a"]


# ============================================================================
# Adaptive threshold, top-K
# ============================================================================

def test_adaptive_all_scores_below_floor_returns_empty():
    candidates = [CandidateItem(item_id=str(i), descriptors=[at_score(s)])
                  for i, s in enumerate([0.2, 0.3, 0.4, 0.55])]

    result = adaptive().match(QUERY, candidates)

    assert result.matches == []
    assert result.threshold == 0.6


def test_adaptive_single_candidate_uses_floor():
    candidates = [CandidateItem(item_id="only", descriptors=[at_score(0.7)])]

    result = adaptive().match(QUERY, candidates)

    assert result.threshold == 0.6
    assert result.item_ids == ["only"]


def test_adaptive_threshold_rises_above_floor_for_outliers():
    scores = [0.95] * 10 + [0.70]
    candidates = [CandidateItem(item_id=f"p{i}", descriptors=[at_score(s)]) for i, s in enumerate(scores)]

    result = adaptive(max_results=20).match(QUERY, candidates)

    expected = np.mean(scores) - 2 * np.std(scores)
    assert result.threshold == pytest.approx(expected, abs=1e-9)
    assert result.threshold == pytest.approx(0.7835, abs=1e-3)
    assert "p10" not in result.item_ids
    assert len(result.matches) == 10


def test_adaptive_ranks_descending_and_caps():
    distances = [0.11, 0.0, 0.05, 0.02, 0.08, 0.01, 0.1, 0.03, 0.07, 0.04, 0.09, 0.06]
    candidates = [CandidateItem(item_id=f"d{d:.2f}", descriptors=[at_distance(d)]) for d in distances]

    result = adaptive().match(QUERY, candidates)

    assert len(result.matches) == 9
    assert result.item_ids == [f"d{d:.2f}" for d in sorted(distances)[:9]]
    scores = [match.score for match in result.matches]
    assert scores == sorted(scores, reverse=True)
    assert result.candidates_scored == 12


def test_adaptive_ties_keep_input_order():
    candidates = [CandidateItem(item_id=name, descriptors=[QUERY]) for name in ("first", "second", "third")]
    candidates.append(CandidateItem(item_id="lower", descriptors=[at_score(0.9)]))

    result = adaptive().match(QUERY, candidates)

    assert result.item_ids == ["first", "second", "third", "lower"]


def test_adaptive_identical_scores_fall_back_to_floor():
    candidates = [CandidateItem(item_id=str(i), descriptors=[QUERY]) for i in range(3)]

    result = adaptive().match(QUERY, candidates)

    assert result.threshold == 0.6
    assert result.item_ids == ["0", "1", "2"]


def test_adaptive_identical_scores_are_still_capped():
    candidates = [CandidateItem(item_id=str(i), descriptors=[at_score(0.8)]) for i in range(12)]

    result = adaptive().match(QUERY, candidates)

    assert result.threshold == 0.6
    assert result.item_ids == [str(i) for i in range(9)]


def test_adaptive_identical_scores_below_floor_match_nothing():
    candidates = [CandidateItem(item_id=str(i), descriptors=[at_score(0.4)]) for i in range(3)]

    result = adaptive().match(QUERY, candidates)

    assert result.threshold == 0.6
    assert result.matches == []


def test_adaptive_uses_each_items_best_descriptor():
    candidates = [
        CandidateItem(item_id="group", descriptors=[at_distance(1.5), at_distance(0.01)], confidences=[0.8, 0.6]),
        CandidateItem(item_id="stranger", descriptors=[[0.0, 1.0, 0.0]]),
    ]

    result = adaptive().match(QUERY, candidates)

    assert result.item_ids == ["group"]
    assert result.matches[0].descriptor_index == 1
    assert result.matches[0].confidence == 0.6


def test_adaptive_skips_items_with_only_degenerate_descriptors():
    candidates = [
        CandidateItem(item_id="blank", descriptors=[[0.0, 0.0, 0.0]]),
        CandidateItem(item_id="match", descriptors=[at_score(0.9)]),
    ]

    result = adaptive().match(QUERY, candidates)

    assert result.item_ids == ["match"]
    assert result.candidates_scored == 1


def test_adaptive_threshold_never_below_floor():
    matcher = adaptive(floor=0.6)

    assert matcher.adaptive_threshold([]) == 0.6
    assert matcher.adaptive_threshold([0.1, 0.9]) == 0.6
    assert matcher.adaptive_threshold([0.99, 0.99, 0.99]) == 0.6
    assert matcher.adaptive_threshold([0.95] * 10 + [0.7]) == pytest.approx(0.7835, abs=1e-3)
