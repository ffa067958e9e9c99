"""Result fusion algorithms for hybrid search.

Two variants merge the vector and lexical hit lists:

- ``WeightedScoreFusion``: ``alpha * vector + (1 - alpha) * lexical`` per id,
  where an id missing from one list scores 0 there
- ``ReciprocalRankFusion``: ``sum(1 / (k + rank))`` over the lists an id
  appears in, ranks 1-indexed

Both order by descending combined score with ties broken by ascending id, so
the output never depends on which search finished first.
"""

from typing import Dict, List, Optional, Sequence

import numpy as np
import structlog

from ..models import FusedResult, ScoredHit

logger = structlog.get_logger("search_fusion")

# Largest population variance of values bounded to [0, 1]
MAX_SCORE_VARIANCE = 0.25
NEUTRAL_VARIANCE = 0.5


def _rank_and_truncate(scores: Dict[str, float], limit: Optional[int]) -> List[ScoredHit]:
    ranked = sorted(scores.items(), key=lambda item: (-item[1], item[0]))
    if limit is not None:
        ranked = ranked[:max(limit, 0)]
    return [ScoredHit(id=item_id, score=score) for item_id, score in ranked]


class RankFusionAlgorithm:
    """Base class for rank fusion algorithms."""

    name = "base"

    def fuse_results(
        self,
        vector_hits: Sequence[ScoredHit],
        lexical_hits: Sequence[ScoredHit],
        alpha: float = 0.5,
        limit: Optional[int] = None
    ) -> FusedResult:
        """Fuse vector and lexical search results."""
        raise NotImplementedError


class WeightedScoreFusion(RankFusionAlgorithm):
    """Weighted score fusion driven by the blend weight."""

    name = "weighted"

    def fuse_results(
        self,
        vector_hits: Sequence[ScoredHit],
        lexical_hits: Sequence[ScoredHit],
        alpha: float = 0.5,
        limit: Optional[int] = None
    ) -> FusedResult:
        """Fuse results as ``alpha * vector + (1 - alpha) * lexical``."""
        if not 0.0 <= alpha <= 1.0:
            raise ValueError(f"alpha must be within [0, 1], got {alpha}")

        vector_scores = {hit.id: hit.score for hit in vector_hits}
        lexical_scores = {hit.id: hit.score for hit in lexical_hits}

        combined = {
            item_id: alpha * vector_scores.get(item_id, 0.0)
            + (1.0 - alpha) * lexical_scores.get(item_id, 0.0)
            for item_id in set(vector_scores) | set(lexical_scores)
        }

        fused = FusedResult(_rank_and_truncate(combined, limit), alpha=alpha, fusion=self.name)

        logger.debug(
            "Weighted fusion completed",
            vector_count=len(vector_hits),
            lexical_count=len(lexical_hits),
            fused_count=len(fused),
            alpha=alpha
        )
        return fused


class ReciprocalRankFusion(RankFusionAlgorithm):
    """Reciprocal Rank Fusion (RRF) algorithm."""

    name = "rrf"

    def __init__(self, k: float = 60.0):
        if k < 0:
            raise ValueError("RRF constant k must be non-negative")
        self.k = k

    def fuse_results(
        self,
        vector_hits: Sequence[ScoredHit],
        lexical_hits: Sequence[ScoredHit],
        alpha: Optional[float] = None,
        limit: Optional[int] = None
    ) -> FusedResult:
        """Fuse results by rank position; no blend weight applies."""
        combined: Dict[str, float] = {}
        for hits in (vector_hits, lexical_hits):
            seen = set()
            for rank, hit in enumerate(hits, start=1):
                # An id listed twice in one source only counts at its best rank
                if hit.id in seen:
                    continue
                seen.add(hit.id)
                combined[hit.id] = combined.get(hit.id, 0.0) + 1.0 / (self.k + rank)

        fused = FusedResult(_rank_and_truncate(combined, limit), alpha=None, fusion=self.name)

        logger.debug(
            "RRF fusion completed",
            vector_count=len(vector_hits),
            lexical_count=len(lexical_hits),
            fused_count=len(fused),
            k_parameter=self.k
        )
        return fused


def fuse(
    vector_hits: Sequence[ScoredHit],
    lexical_hits: Sequence[ScoredHit],
    alpha: float,
    limit: Optional[int] = None
) -> FusedResult:
    """Weighted-sum fusion."""
    return WeightedScoreFusion().fuse_results(vector_hits, lexical_hits, alpha=alpha, limit=limit)


def fuse_rrf(
    vector_hits: Sequence[ScoredHit],
    lexical_hits: Sequence[ScoredHit],
    k: float = 60.0,
    limit: Optional[int] = None
) -> FusedResult:
    """Reciprocal rank fusion."""
    return ReciprocalRankFusion(k=k).fuse_results(vector_hits, lexical_hits, limit=limit)


def retrieval_variance(vector_hits: Sequence[ScoredHit]) -> float:
    """Spread of vector similarities normalized to [0, 1].

    Fewer than two hits carry no spread information and yield a neutral 0.5.
    """
    if len(vector_hits) < 2:
        return NEUTRAL_VARIANCE
    scores = np.clip(np.array([hit.score for hit in vector_hits], dtype=float), 0.0, 1.0)
    return float(min(1.0, np.var(scores) / MAX_SCORE_VARIANCE))


def rank_correlation(vector_hits: Sequence[ScoredHit], lexical_hits: Sequence[ScoredHit]) -> float:
    """Overlap of the two result sets (Jaccard index of their ids)."""
    vector_ids = {hit.id for hit in vector_hits}
    lexical_ids = {hit.id for hit in lexical_hits}
    union = vector_ids | lexical_ids
    if not union:
        return 0.0
    return len(vector_ids & lexical_ids) / len(union)


def create_fusion_algorithm(algorithm: str = "weighted", **kwargs) -> RankFusionAlgorithm:
    """Create fusion algorithm instance."""
    if algorithm == "weighted":
        return WeightedScoreFusion()
    if algorithm == "rrf":
        return ReciprocalRankFusion(k=kwargs.get("k", 60.0))
    raise ValueError(f"Unknown fusion algorithm: {algorithm}")
