"""Tests for rank fusion and retrieval diagnostics."""

import random

import pytest

from service_search.app.models import ScoredHit
from service_search.app.ranking.fusion import (
    ReciprocalRankFusion,
    WeightedScoreFusion,
    create_fusion_algorithm,
    fuse,
    fuse_rrf,
    rank_correlation,
    retrieval_variance,
)

LEXICAL = [ScoredHit("a", 0.9), ScoredHit("b", 0.7)]
VECTOR = [ScoredHit("a", 0.8), ScoredHit("c", 0.6)]


def test_weighted_fusion_example():
    """'NVIDIA AI regulation' with alpha 0.5 ranks a, b, c."""
    result = fuse(VECTOR, LEXICAL, alpha=0.5)
    assert [hit.id for hit in result] == ["a", "b", "c"]
    assert [hit.score for hit in result] == pytest.approx([0.85, 0.35, 0.3])
    assert result.alpha == 0.5
    assert result.fusion == "weighted"


def test_weighted_fusion_formula_for_shared_ids():
    rng = random.Random(7)
    for _ in range(50):
        alpha = rng.random()
        vector_score, lexical_score = rng.random(), rng.random() * 10
        result = fuse([ScoredHit("x", vector_score)], [ScoredHit("x", lexical_score)], alpha=alpha)
        assert result[0].score == pytest.approx(alpha * vector_score + (1 - alpha) * lexical_score)


def test_weighted_fusion_sorted_and_bounded():
    rng = random.Random(11)
    vector = [ScoredHit(f"v{i}", rng.random()) for i in range(30)]
    lexical = [ScoredHit(f"l{i}", rng.random()) for i in range(30)] + vector[:5]
    for alpha in (0.0, 0.25, 0.5, 1.0):
        result = fuse(vector, lexical, alpha=alpha, limit=10)
        assert len(result) <= 10
        scores = [hit.score for hit in result]
        assert scores == sorted(scores, reverse=True)


def test_ties_break_by_id():
    vector = [ScoredHit("z", 0.5), ScoredHit("m", 0.5)]
    lexical = [ScoredHit("b", 0.5)]
    first = fuse(vector, lexical, alpha=0.5)
    second = fuse(list(reversed(vector)), lexical, alpha=0.5)
    assert [hit.id for hit in first] == ["b", "m", "z"]
    assert [hit.id for hit in first] == [hit.id for hit in second]
    assert [hit.id for hit in fuse([ScoredHit("z", 1.0), ScoredHit("a", 1.0)], [], alpha=1.0)] == ["a", "z"]


def test_empty_lexical_list_reweights_vector():
    result = fuse(VECTOR, [], alpha=0.4)
    assert [hit.id for hit in result] == ["a", "c"]
    assert [hit.score for hit in result] == pytest.approx([0.32, 0.24])


def test_both_empty():
    assert fuse([], [], alpha=0.5) == []
    assert fuse_rrf([], []) == []


def test_invalid_alpha():
    with pytest.raises(ValueError):
        fuse(VECTOR, LEXICAL, alpha=1.5)


def test_rrf_scores():
    result = fuse_rrf(VECTOR, LEXICAL, k=60)
    scores = {hit.id: hit.score for hit in result}
    assert scores["a"] == pytest.approx(2 / 61)
    assert scores["b"] == pytest.approx(1 / 62)
    assert scores["c"] == pytest.approx(1 / 62)
    # b and c tie; ascending id decides
    assert [hit.id for hit in result] == ["a", "b", "c"]
    assert result.fusion == "rrf"


def test_rrf_truncates_and_smoothing_constant_matters():
    vector = [ScoredHit(f"v{i}", 1.0) for i in range(5)]
    assert len(fuse_rrf(vector, [], k=60, limit=3)) == 3

    sharp = fuse_rrf(vector, [], k=0)
    smooth = fuse_rrf(vector, [], k=1000)
    assert sharp[0].score / sharp[-1].score > smooth[0].score / smooth[-1].score


def test_factory():
    assert isinstance(create_fusion_algorithm("weighted"), WeightedScoreFusion)
    rrf = create_fusion_algorithm("rrf", k=10)
    assert isinstance(rrf, ReciprocalRankFusion) and rrf.k == 10
    with pytest.raises(ValueError):
        create_fusion_algorithm("borda")


class TestDiagnostics:
    def test_variance_normalized(self):
        assert retrieval_variance([ScoredHit("a", 0.0), ScoredHit("b", 1.0)]) == pytest.approx(1.0)
        assert retrieval_variance([ScoredHit("a", 0.7), ScoredHit("b", 0.7)]) == 0.0
        # var([0.8, 0.6]) = 0.01
        assert retrieval_variance(VECTOR) == pytest.approx(0.04)

    def test_variance_neutral_without_spread_information(self):
        assert retrieval_variance([]) == 0.5
        assert retrieval_variance([ScoredHit("a", 0.9)]) == 0.5

    def test_rank_correlation_is_overlap(self):
        assert rank_correlation(VECTOR, LEXICAL) == pytest.approx(1 / 3)
        assert rank_correlation(VECTOR, VECTOR) == 1.0
        assert rank_correlation(VECTOR, []) == 0.0
        assert rank_correlation([], []) == 0.0
