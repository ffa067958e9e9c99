"""Tests for quality evaluation."""

import json
from datetime import datetime, timezone

import httpx
import pytest

from monitoring.quality import (
    HttpQualityEvaluator,
    QualityEvaluationError,
    QualityMetric,
    QualitySample,
    aggregate_ragas,
)
from tests.conftest import make_samples


def _evaluator(handler):
    return HttpQualityEvaluator("http://evaluator.test/", client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def test_aggregate_weights():
    scores = {"faithfulness": 0.8, "context_relevance": 0.6, "answer_relevance": 0.5}
    assert aggregate_ragas(scores) == pytest.approx(0.4 + 0.18 + 0.1)
    assert aggregate_ragas({"faithfulness": 1, "context_relevance": 1, "answer_relevance": 1}) == pytest.approx(1.0)


def test_aggregate_clamps_axes():
    scores = {"faithfulness": 1.7, "context_relevance": -0.2, "answer_relevance": 1.0}
    assert aggregate_ragas(scores) == pytest.approx(0.7)


@pytest.mark.parametrize("scores", [
    {"faithfulness": 0.8, "context_relevance": 0.6},
    {"faithfulness": float("nan"), "context_relevance": 0.6, "answer_relevance": 0.5},
    {"faithfulness": "high", "context_relevance": 0.6, "answer_relevance": 0.5},
    {"faithfulness": True, "context_relevance": 0.6, "answer_relevance": 0.5},
])
def test_aggregate_rejects_unusable_scores(scores):
    with pytest.raises(QualityEvaluationError):
        aggregate_ragas(scores)


def test_metric_serialization():
    metric = QualityMetric(
        timestamp=datetime(2026, 10, 19, 2, 0, tzinfo=timezone.utc),
        ragas_score=0.7,
        alpha_before=0.5,
        alpha_after=0.506,
        action="increase",
        drift=-0.12,
        sample_size=50,
    )
    data = metric.to_dict()
    assert data["timestamp"] == "2026-10-19T02:00:00+00:00"
    assert data["alpha_after"] == 0.506
    json.dumps(data)


def test_sample_payload():
    sample = QualitySample(question="q", answer="a", reference="r", contexts=["c1", "c2"])
    assert sample.to_payload() == {"question": "q", "answer": "a", "reference": "r", "contexts": ["c1", "c2"]}


@pytest.mark.asyncio
async def test_http_evaluator_posts_samples():
    received = []

    def handler(request):
        received.append((request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={"faithfulness": 0.8, "context_relevance": 0.6, "answer_relevance": 0.5})

    evaluator = _evaluator(handler)
    score = await evaluator.evaluate(make_samples(3))

    assert score == pytest.approx(0.68)
    path, body = received[0]
    assert path == "/api/v1/evaluate"
    assert len(body["samples"]) == 3
    assert body["samples"][0]["question"] == "question 0"


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [
    httpx.Response(500),
    httpx.Response(200, content=b"not json"),
    httpx.Response(200, json=[0.8]),
    httpx.Response(200, json={"faithfulness": 0.8}),
])
async def test_http_evaluator_failures(response):
    evaluator = _evaluator(lambda request: response)
    with pytest.raises(QualityEvaluationError):
        await evaluator.evaluate(make_samples(1))


@pytest.mark.asyncio
async def test_http_evaluator_requires_samples():
    evaluator = _evaluator(lambda request: httpx.Response(200, json={}))
    with pytest.raises(QualityEvaluationError):
        await evaluator.evaluate([])
