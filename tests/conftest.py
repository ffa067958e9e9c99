"""Shared fixtures: an in-memory Redis double and fake collaborators."""

import asyncio
import fnmatch
import time
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pytest
from prometheus_client import CollectorRegistry
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import WatchError

from libs.common.config import DriftConfig, SearchConfig
from libs.common.metrics import MetricsCollector
from libs.vector_store.base import SearchBackendQueryError, TextSearchBackend, VectorSearchBackend
from monitoring.quality import QualityEvaluationError, QualityEvaluator, QualitySample
from monitoring.repository import QualityRepository


class FakeRedis:
    """Subset of ``redis.asyncio.Redis`` backed by a dict.

    Operations named in ``failing`` raise ``ConnectionError``.
    """

    def __init__(self):
        self._data: Dict[str, Tuple[Any, Optional[float]]] = {}
        self._versions: Dict[str, int] = {}
        self.published: List[Tuple[str, str]] = []
        self.failing = set()
        self.after_watch = None

    def _check(self, operation: str) -> None:
        if operation in self.failing:
            raise RedisConnectionError(f"{operation} failed")

    def _alive(self, key: str) -> bool:
        entry = self._data.get(key)
        if entry is None:
            return False
        if entry[1] is not None and entry[1] <= time.monotonic():
            del self._data[key]
            return False
        return True

    def _write(self, key: str, value: Any, ex: Optional[float] = None) -> None:
        if isinstance(value, str):
            value = value.encode("utf-8")
        expires = time.monotonic() + ex if ex else None
        self._data[key] = (value, expires)
        self._versions[key] = self._versions.get(key, 0) + 1

    def version(self, key: str) -> int:
        return self._versions.get(key, 0)

    def keys_matching(self, pattern: str) -> List[str]:
        return [key for key in list(self._data) if self._alive(key) and fnmatch.fnmatchcase(key, pattern)]

    async def get(self, key: str):
        self._check("get")
        return self._data[key][0] if self._alive(key) else None

    async def set(self, key: str, value: Any, ex: Optional[float] = None, nx: bool = False, px: Optional[int] = None):
        self._check("set")
        if nx and self._alive(key):
            return None
        if px is not None:
            ex = px / 1000.0
        self._write(key, value, ex)
        return True

    async def delete(self, *keys: str) -> int:
        self._check("delete")
        deleted = 0
        for key in keys:
            if isinstance(key, bytes):
                key = key.decode("utf-8")
            if self._alive(key):
                del self._data[key]
                self._versions[key] = self._versions.get(key, 0) + 1
                deleted += 1
        return deleted

    async def ttl(self, key: str) -> int:
        self._check("ttl")
        if not self._alive(key):
            return -2
        expires = self._data[key][1]
        if expires is None:
            return -1
        return int(round(expires - time.monotonic()))

    async def scan_iter(self, match: str = "*", count: Optional[int] = None):
        self._check("scan")
        for key in self.keys_matching(match):
            yield key.encode("utf-8")

    async def ping(self) -> bool:
        self._check("ping")
        return True

    async def publish(self, channel: str, message: str) -> int:
        self._check("publish")
        self.published.append((channel, message))
        return 0

    def pipeline(self, transaction: bool = True) -> "FakePipeline":
        return FakePipeline(self)

    def lock(self, name: str, timeout: Optional[float] = None) -> "FakeLock":
        return FakeLock(self, name, timeout)


class FakePipeline:
    """WATCH/MULTI/EXEC semantics sufficient for optimistic writes."""

    def __init__(self, redis_client: FakeRedis):
        self.redis = redis_client
        self._watched: Dict[str, int] = {}
        self._buffer: List[Tuple[str, Any]] = []
        self._in_multi = False

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self._watched.clear()
        self._buffer.clear()

    async def watch(self, *keys: str) -> None:
        for key in keys:
            self._watched[key] = self.redis.version(key)
        if self.redis.after_watch is not None:
            await self.redis.after_watch()

    async def unwatch(self) -> None:
        self._watched.clear()

    async def get(self, key: str):
        return await self.redis.get(key)

    def multi(self) -> None:
        self._in_multi = True

    def set(self, key: str, value: Any, ex: Optional[float] = None) -> "FakePipeline":
        self._buffer.append((key, value))
        return self

    async def execute(self) -> List[Any]:
        for key, version in self._watched.items():
            if self.redis.version(key) != version:
                raise WatchError("Watched variable changed")
        results = []
        for key, value in self._buffer:
            results.append(await self.redis.set(key, value))
        self._buffer.clear()
        return results


class FakeLock:
    def __init__(self, redis_client: FakeRedis, name: str, timeout: Optional[float]):
        self.redis = redis_client
        self.name = name
        self.timeout = timeout
        self.owned = False

    async def acquire(self, blocking: bool = True) -> bool:
        self.owned = bool(await self.redis.set(self.name, "token", ex=self.timeout, nx=True))
        return self.owned

    async def release(self) -> None:
        if self.owned:
            await self.redis.delete(self.name)
            self.owned = False


class FakeTextBackend(TextSearchBackend):
    def __init__(self, hits=None, error: Optional[Exception] = None, delay: float = 0.0):
        self.hits = list(hits or [])
        self.error = error
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []
        self.cancelled = False

    async def text_search(self, query, filters=None, limit=10):
        self.calls.append({"query": query, "filters": filters, "limit": limit})
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self.error:
            raise self.error
        return self.hits[:limit]


class FakeVectorBackend(VectorSearchBackend):
    def __init__(self, hits=None, error: Optional[Exception] = None, delay: float = 0.0):
        self.hits = list(hits or [])
        self.error = error
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []
        self.cancelled = False

    async def vector_search(self, query_vector, filters=None, limit=10):
        self.calls.append({"vector": query_vector, "filters": filters, "limit": limit})
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self.error:
            raise self.error
        return self.hits[:limit]


class FakeEmbedder:
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.calls: List[str] = []

    async def embed(self, text: str) -> np.ndarray:
        self.calls.append(text)
        if self.error:
            raise self.error
        return np.ones(3, dtype=np.float32)


class FakeQualityRepository(QualityRepository):
    def __init__(self, samples: Optional[List[QualitySample]] = None, error: Optional[Exception] = None):
        self.samples = list(samples or [])
        self.error = error
        self.metrics = []

    async def sample_recent(self, limit, window_days):
        if self.error:
            raise self.error
        return self.samples[:limit]

    async def append_metric(self, metric):
        self.metrics.append(metric)

    async def list_metrics(self, limit=30):
        return list(reversed(self.metrics))[:limit]


class FakeEvaluator(QualityEvaluator):
    def __init__(self, score: float = 0.82, error: Optional[Exception] = None, delay: float = 0.0):
        self.score = score
        self.error = error
        self.delay = delay
        self.calls = 0

    async def evaluate(self, samples):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.score


def make_samples(count: int) -> List[QualitySample]:
    return [
        QualitySample(question=f"question {i}", answer=f"answer {i}", contexts=[f"context {i}"])
        for i in range(count)
    ]


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def metrics():
    return MetricsCollector("test-service", registry=CollectorRegistry())


@pytest.fixture
def search_config():
    return SearchConfig(ml_search_timeout_seconds=1.0)


@pytest.fixture
def drift_config():
    return DriftConfig()


@pytest.fixture
def scenario_backends():
    """Lexical and vector hits of the 'NVIDIA AI regulation' example."""
    text_backend = FakeTextBackend([("a", 0.9), ("b", 0.7)])
    vector_backend = FakeVectorBackend([("a", 0.8), ("c", 0.6)])
    return text_backend, vector_backend


__all__ = [
    "FakeRedis",
    "FakeTextBackend",
    "FakeVectorBackend",
    "FakeEmbedder",
    "FakeQualityRepository",
    "FakeEvaluator",
    "QualityEvaluationError",
    "SearchBackendQueryError",
    "make_samples",
]
