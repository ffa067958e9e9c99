"""Quality evaluation for the drift monitor.

Recent query/answer pairs are scored RAGAS-style on three axes, each in
[0, 1], and aggregated into one quality score:

- faithfulness (weight 0.5): the answer is supported by the retrieved context
- context relevance (0.3): the retrieved context matches the question
- answer relevance (0.2): the answer addresses the question

Scoring itself is delegated to an external evaluator service over HTTP.
"""

import math
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import httpx
import structlog

logger = structlog.get_logger("quality_evaluator")

RAGAS_WEIGHTS = {
    "faithfulness": 0.5,
    "context_relevance": 0.3,
    "answer_relevance": 0.2,
}


class QualityEvaluationError(Exception):
    """The evaluator could not produce a usable quality score."""
    pass


@dataclass(frozen=True)
class QualitySample:
    """One recent question/reference/generated-answer triple."""
    question: str
    answer: str
    reference: Optional[str] = None
    contexts: List[str] = field(default_factory=list)
    created_at: Optional[datetime] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "question": self.question,
            "answer": self.answer,
            "reference": self.reference,
            "contexts": list(self.contexts),
        }


@dataclass(frozen=True)
class QualityMetric:
    """Immutable audit record of one completed drift cycle."""
    timestamp: datetime
    ragas_score: float
    alpha_before: float
    alpha_after: float
    action: str
    drift: float
    sample_size: int

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


def aggregate_ragas(scores: Dict[str, Any]) -> float:
    """Weighted aggregate of the three RAGAS axes, clamped to [0, 1].

    Raises ``QualityEvaluationError`` when an axis is missing or not a
    finite number.
    """
    total = 0.0
    for name, weight in RAGAS_WEIGHTS.items():
        value = scores.get(name)
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            raise QualityEvaluationError(f"Evaluator returned no usable '{name}' score: {value!r}")
        total += weight * min(1.0, max(0.0, float(value)))
    return min(1.0, max(0.0, total))


class QualityEvaluator(ABC):
    """Scores a batch of samples."""

    @abstractmethod
    async def evaluate(self, samples: Sequence[QualitySample]) -> float:
        """Return the aggregate quality score in [0, 1]."""
        pass


class HttpQualityEvaluator(QualityEvaluator):
    """Evaluator backed by ``POST {service_url}/api/v1/evaluate``.

    The service answers with mean ``faithfulness``, ``context_relevance`` and
    ``answer_relevance`` over the submitted samples.
    """

    def __init__(
        self,
        service_url: str,
        timeout_seconds: float = 120.0,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.service_url = service_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    async def evaluate(self, samples: Sequence[QualitySample]) -> float:
        if not samples:
            raise QualityEvaluationError("No samples to evaluate")

        try:
            response = await self._get_client().post(
                f"{self.service_url}/api/v1/evaluate",
                json={"samples": [sample.to_payload() for sample in samples]},
            )
            response.raise_for_status()
            scores = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise QualityEvaluationError(f"Quality evaluator call failed: {e}") from e

        if not isinstance(scores, dict):
            raise QualityEvaluationError("Quality evaluator returned a non-object payload")

        score = aggregate_ragas(scores)
        logger.info("Quality evaluated", sample_size=len(samples), ragas_score=score, **{
            name: scores[name] for name in RAGAS_WEIGHTS
        })
        return score

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
