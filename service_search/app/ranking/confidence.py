"""Composite confidence scoring.

Combines three independent signals into one bounded value with a weighted
geometric mean: the LLM's own confidence in an answer (weight 0.4), the
spread of vector retrieval scores (0.3) and the agreement between the vector
and lexical result sets (0.3). A zero in any signal suppresses the composite.
"""

from dataclasses import dataclass

LLM_WEIGHT = 0.4
VARIANCE_WEIGHT = 0.3
CORRELATION_WEIGHT = 0.3


def _clamp_unit(value: float) -> float:
    return min(1.0, max(0.0, float(value)))


@dataclass(frozen=True)
class ConfidenceInputs:
    llm_confidence: float
    retrieval_variance: float
    rank_correlation: float


def compose_confidence(inputs: ConfidenceInputs) -> float:
    """Return the composite confidence in ``[0, 1]``.

    Out-of-range inputs are clamped, never rejected.
    """
    llm = _clamp_unit(inputs.llm_confidence)
    variance = _clamp_unit(inputs.retrieval_variance)
    correlation = _clamp_unit(inputs.rank_correlation)

    confidence = (
        llm ** LLM_WEIGHT
        * variance ** VARIANCE_WEIGHT
        * correlation ** CORRELATION_WEIGHT
    )
    return _clamp_unit(confidence)
