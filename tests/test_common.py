"""Tests for common utilities."""

import json

import pytest
import structlog
from prometheus_client import CollectorRegistry

from libs.common.config import BaseConfig, DriftConfig, SearchConfig, get_config
from libs.common.events import (
    CacheInvalidatedEvent,
    EventPublisher,
    EventSubscriber,
    EventType,
    QualityDriftEvent,
)
from libs.common.logging import bound_context, configure_logging, log_performance
from libs.common.metrics import MetricsCollector
from tests.conftest import FakeRedis


def test_config_loading():
    """Test configuration loading."""
    config = BaseConfig()
    assert config.ml_env == "local"
    assert config.ml_log_level == "INFO"
    assert config.ml_search_alpha_key == "retrieval:alpha"


def test_search_config():
    """Test search configuration defaults."""
    config = SearchConfig()
    assert config.ml_search_cache_ttl == 300
    assert config.ml_search_fusion_algorithm == "weighted"
    assert config.ml_search_rrf_k == 60.0
    assert config.ml_search_dynamic_alpha_external is False
    assert config.ml_alpha_cache_max == 50
    assert config.ml_calibration_path == "calibration/calibration.json"


def test_drift_config():
    """Test drift configuration defaults."""
    config = DriftConfig()
    assert config.ml_drift_target_quality == 0.82
    assert config.ml_drift_tolerance == 0.01
    assert config.ml_drift_max_increase == 0.10
    assert config.ml_drift_decay_rate == 0.99
    assert config.ml_drift_alpha_floor == 0.1
    assert config.ml_drift_min_samples == 50
    assert config.ml_drift_run_hour == 2


def test_config_reads_environment(monkeypatch):
    """Environment variables override defaults case-insensitively."""
    monkeypatch.setenv("ML_SEARCH_CACHE_TTL", "42")
    monkeypatch.setenv("ml_search_dynamic_alpha_external", "true")
    config = SearchConfig()
    assert config.ml_search_cache_ttl == 42
    assert config.ml_search_dynamic_alpha_external is True


def test_get_config():
    assert isinstance(get_config("search"), SearchConfig)
    assert isinstance(get_config("drift"), DriftConfig)
    assert type(get_config("unknown")) is BaseConfig


def test_logging_configuration():
    """Test logging configuration."""
    # This should not raise an exception
    configure_logging("test-service", "INFO", "json")
    configure_logging("test-service", "debug", "console")
    log_performance("unit_test", 1.2345, latency_class="cached")


def test_bound_context_is_scoped():
    configure_logging("test-service", "INFO", "json")
    with bound_context(request_id="req-1"):
        assert structlog.contextvars.get_contextvars()["request_id"] == "req-1"
    context = structlog.contextvars.get_contextvars()
    assert "request_id" not in context
    assert context["service"] == "test-service"


def test_metrics_collector():
    """Test metrics collector."""
    collector = MetricsCollector("test-service", registry=CollectorRegistry())
    assert collector.service_name == "test-service"

    collector.record_http_request("GET", "/test", 200, 0.1)
    collector.record_query("hybrid")
    collector.record_search_latency("cached", 0.01)
    collector.record_cache_hit("search")
    collector.set_alpha(0.55)
    collector.record_drift_cycle("success", ragas_score=0.8, alpha=0.5, drift_magnitude=0.02, samples=60)

    metrics = collector.get_metrics()
    assert "http_requests_total" in metrics
    assert "retrieval_search_latency_seconds" in metrics
    assert collector.registry.get_sample_value("retrieval_search_queries_total", {"type": "hybrid"}) == 1.0
    assert collector.registry.get_sample_value("retrieval_drift_cycles_total", {"outcome": "success"}) == 1.0
    assert collector.registry.get_sample_value("retrieval_alpha") == 0.5
    assert collector.registry.get_sample_value("retrieval_drift_samples") == 60


def test_metrics_rejects_unknown_latency_class():
    collector = MetricsCollector("test-service", registry=CollectorRegistry())
    with pytest.raises(ValueError):
        collector.record_search_latency("slow", 0.1)


def test_drift_cycle_metrics_keep_previous_gauges():
    """A failed cycle only bumps the counter."""
    collector = MetricsCollector("test-service", registry=CollectorRegistry())
    collector.record_drift_cycle("success", ragas_score=0.8, alpha=0.5)
    collector.record_drift_cycle("failed")
    assert collector.registry.get_sample_value("retrieval_ragas_score") == 0.8
    assert collector.registry.get_sample_value("retrieval_drift_cycles_total", {"outcome": "failed"}) == 1.0


def test_event_serialization():
    """Events carry their versioned type and a timestamp."""
    event = QualityDriftEvent(
        timestamp=0,
        event_type="",
        ragas_score=0.7,
        alpha_before=0.5,
        alpha_after=0.506,
        action="increase"
    )
    data = json.loads(event.to_json())
    assert data["event_type"] == "retrieval.quality.drift.v1"
    assert data["timestamp"] > 0
    assert data["alpha_after"] == 0.506

    invalidated = CacheInvalidatedEvent(timestamp=1, event_type="", pattern="hs:*", deleted=3)
    assert invalidated.to_dict()["event_type"] == EventType.CACHE_INVALIDATED.value


@pytest.mark.asyncio
async def test_event_publisher():
    """Test event publisher."""
    redis_client = FakeRedis()
    publisher = EventPublisher(redis_client)
    assert publisher.channel_prefix == "retrieval_events"

    await publisher.publish_quality_drift(0.7, 0.5, 0.506, "increase")

    channel, message = redis_client.published[0]
    assert channel == "retrieval_events:retrieval.quality.drift.v1"
    assert json.loads(message)["action"] == "increase"


@pytest.mark.asyncio
async def test_event_publisher_raises_after_retries():
    redis_client = FakeRedis()
    redis_client.failing.add("publish")
    publisher = EventPublisher(redis_client, max_retries=2, base_delay=0.0)

    with pytest.raises(Exception):
        await publisher.publish_cache_invalidated("hs:*", 1)
    assert redis_client.published == []


def test_event_subscriber_dispatch():
    """Handlers receive decoded payloads; a failing handler does not stop others."""
    subscriber = EventSubscriber(FakeRedis())
    received = []

    def broken(payload):
        raise RuntimeError("boom")

    subscriber.subscribe(EventType.QUALITY_DRIFT, broken)
    subscriber.subscribe(EventType.QUALITY_DRIFT, received.append)

    subscriber.handle_message({
        "type": "message",
        "channel": b"retrieval_events:retrieval.quality.drift.v1",
        "data": json.dumps({"alpha_after": 0.6}).encode("utf-8"),
    })
    subscriber.handle_message({
        "type": "message",
        "channel": "retrieval_events:retrieval.cache.invalidated.v1",
        "data": json.dumps({"pattern": "hs:*"}),
    })

    assert received == [{"alpha_after": 0.6}]
