"""Blend weight (alpha) selection.

Alpha controls how much the fused ranking favours vector results: 1.0 is
pure vector search, 0.0 pure lexical search.

Highlights
- ``pick_alpha`` is a pure heuristic over the query text and filter context
- ``WeightSelector`` isolates the choice behind a strategy interface:
  ``HeuristicWeightSelector`` (deterministic) and ``ExternalWeightSelector``
  (one bounded HTTP call, heuristic fallback, LRU/TTL cache)
- ``create_weight_selector`` picks the implementation from configuration

Notes
- The external capability only ever learns whether a domain is present; no
  query text leaves the process.
"""

import re
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Callable, Hashable, Optional, Tuple

import httpx
import structlog

from libs.common.config import SearchConfig
from libs.common.metrics import MetricsCollector
from ..models import SearchFilters

logger = structlog.get_logger("alpha_selector")

DEFAULT_ALPHA = 0.5
DOMAIN_CONTEXT_BOOST = 0.15
DIGIT_SHIFT = -0.1
QUOTED_PHRASE_SHIFT = -0.1
LONG_QUERY_SHIFT = 0.1
LONG_QUERY_WORDS = 8
MIN_ALPHA = 0.2
MAX_ALPHA = 0.8

_DIGIT_RE = re.compile(r"\d")
_QUOTED_RE = re.compile(r"\"[^\"]+\"|(?<!\w)'[^']+'(?!\w)")


def clamp_alpha(value: float) -> float:
    """Clamp a blend weight into the heuristic's operating band."""
    return max(MIN_ALPHA, min(MAX_ALPHA, value))


def pick_alpha(
    query: Optional[str] = None,
    filters: Optional[SearchFilters] = None,
    default_alpha: float = DEFAULT_ALPHA
) -> float:
    """Compute the blend weight for a query.

    The base is ``default_alpha``, raised when a domain or category narrows the
    search. Digits and quoted phrases pull toward lexical matching, long
    descriptive queries toward semantic matching. The result always lies in
    ``[0.2, 0.8]``.
    """
    alpha = default_alpha
    if filters is not None and filters.has_domain_context:
        alpha += DOMAIN_CONTEXT_BOOST

    text = (query or "").strip()
    if text:
        if _DIGIT_RE.search(text):
            alpha += DIGIT_SHIFT
        if _QUOTED_RE.search(text):
            alpha += QUOTED_PHRASE_SHIFT
        if len(text.split()) > LONG_QUERY_WORDS:
            alpha += LONG_QUERY_SHIFT

    return round(clamp_alpha(alpha), 6)


class AlphaCache:
    """Bounded LRU cache with per-entry time-to-live."""

    def __init__(
        self,
        max_size: int = 50,
        ttl_seconds: float = 300.0,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self.metrics = metrics
        self._clock = clock
        self._entries: "OrderedDict[Hashable, Tuple[float, float]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: Hashable) -> Optional[float]:
        entry = self._entries.get(key)
        hit = entry is not None and self._clock() - entry[1] < self.ttl_seconds
        if hit:
            self._entries.move_to_end(key)
        elif entry is not None:
            del self._entries[key]
        if self.metrics:
            self.metrics.record_alpha_cache(hit=hit, size=len(self._entries))
        return entry[0] if hit else None

    def put(self, key: Hashable, alpha: float) -> None:
        self._entries[key] = (alpha, self._clock())
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)
        if self.metrics:
            self.metrics.alpha_cache_size.set(len(self._entries))

    def clear(self) -> None:
        self._entries.clear()


class WeightSelector(ABC):
    """Strategy choosing the blend weight for one query."""

    def __init__(self, default_alpha: float = DEFAULT_ALPHA):
        self.default_alpha = default_alpha

    @abstractmethod
    async def select(self, query: str, filters: Optional[SearchFilters] = None) -> float:
        """Return alpha in ``[0, 1]`` for the query."""
        pass

    async def close(self) -> None:
        """Release resources held by the selector."""
        return None


class HeuristicWeightSelector(WeightSelector):
    """Deterministic selector backed by ``pick_alpha``."""

    async def select(self, query: str, filters: Optional[SearchFilters] = None) -> float:
        return pick_alpha(query, filters, self.default_alpha)


class ExternalWeightSelector(WeightSelector):
    """Selector asking an external weight-scoring service.

    Sends ``{"domain_present": bool}`` and expects ``{"alpha": float}``. A
    missing, non-numeric or out-of-range value, or any transport error, falls
    back to the heuristic. Accepted values are clamped to ``[0.2, 0.8]``.
    """

    def __init__(
        self,
        service_url: str,
        timeout_seconds: float = 2.0,
        default_alpha: float = DEFAULT_ALPHA,
        cache: Optional[AlphaCache] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        super().__init__(default_alpha)
        self.service_url = service_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.cache = cache or AlphaCache()
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    async def _fetch_alpha(self, domain_present: bool) -> Optional[float]:
        response = await self._get_client().post(
            f"{self.service_url}/api/v1/alpha",
            json={"domain_present": domain_present},
            timeout=self.timeout_seconds,
        )
        response.raise_for_status()
        value = response.json().get("alpha")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        if not 0.0 <= value <= 1.0:
            return None
        return clamp_alpha(float(value))

    async def select(self, query: str, filters: Optional[SearchFilters] = None) -> float:
        domain_present = filters is not None and filters.has_domain_context
        cache_key = (domain_present, self.default_alpha)

        cached = self.cache.get(cache_key)
        if cached is not None:
            return cached

        try:
            alpha = await self._fetch_alpha(domain_present)
        except Exception as e:
            logger.warning("External alpha selection failed, using heuristic", error=str(e))
            alpha = None

        if alpha is None:
            logger.debug("External alpha unusable, using heuristic", domain_present=domain_present)
            return pick_alpha(query, filters, self.default_alpha)

        self.cache.put(cache_key, alpha)
        return alpha

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


def create_weight_selector(
    config: SearchConfig,
    metrics: Optional[MetricsCollector] = None,
    default_alpha: float = DEFAULT_ALPHA,
    client: Optional[httpx.AsyncClient] = None
) -> WeightSelector:
    """Create the weight selector configured for this process."""
    if not config.ml_search_dynamic_alpha_external:
        return HeuristicWeightSelector(default_alpha)

    cache = AlphaCache(
        max_size=config.ml_alpha_cache_max,
        ttl_seconds=config.ml_alpha_cache_ttl_seconds,
        metrics=metrics,
    )
    logger.info("Using external weight selector", service_url=config.ml_search_alpha_service_url)
    return ExternalWeightSelector(
        service_url=config.ml_search_alpha_service_url,
        timeout_seconds=config.ml_search_alpha_timeout_seconds,
        default_alpha=default_alpha,
        cache=cache,
        client=client,
    )
