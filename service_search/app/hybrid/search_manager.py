"""Search manager for hybrid vector and lexical search.

Runs full-text ranking (lexical) and vector similarity (semantic) search
concurrently for every cache miss, blends the two lists with a per-query
weight, and caches the fused result so repeated queries skip both backends.

Failure policy
- A failure or timeout in either search primitive fails the whole call with
  ``HybridSearchError``/``SearchTimeoutError``; single-source results are
  never returned in place of a hybrid one
- Cache failures are absorbed by ``SearchCacheManager`` and only cost latency
- Nothing is written to the cache for a failed or cancelled call
"""

import asyncio
import time
from contextlib import suppress
from typing import Any, Dict, List, Optional, Set, Tuple

import redis.asyncio as redis
import structlog

from libs.common.config import SearchConfig
from libs.common.events import EventPublisher, EventSubscriber, EventType
from libs.common.logging import log_performance
from libs.common.metrics import MetricsCollector
from libs.vector_store.base import TextSearchBackend, VectorSearchBackend
from libs.vector_store.pgvector import PgSearchBackend
from ..models import FusedResult, ScoredHit, SearchFilters
from ..ranking.alpha import WeightSelector, create_weight_selector
from ..ranking.confidence import ConfidenceInputs, compose_confidence
from ..ranking.fusion import RankFusionAlgorithm, create_fusion_algorithm, rank_correlation, retrieval_variance
from ..retrievers.cache_manager import CACHE_PREFIX, SearchCacheManager, make_cache_key, normalize_query
from ..retrievers.embedding import HttpEmbeddingClient
from ..runtime.alpha_store import AlphaStore

logger = structlog.get_logger("search_service.search_manager")


class HybridSearchError(Exception):
    """A search primitive failed, so no hybrid result can be produced."""
    pass


class SearchTimeoutError(HybridSearchError):
    """The search primitives did not finish within the configured timeout."""
    pass


class SearchManager:
    """Manages hybrid search operations.

    Responsibilities
    - Look up and populate the result cache
    - Query lexical and vector backends concurrently (fork/join)
    - Select the blend weight and fuse the two ranked lists
    - Attach retrieval diagnostics used for confidence scoring
    - Follow default-alpha changes announced by the drift monitor
    """

    def __init__(
        self,
        config: SearchConfig,
        text_backend: TextSearchBackend,
        vector_backend: VectorSearchBackend,
        embedder: Any,
        cache_manager: SearchCacheManager,
        weight_selector: WeightSelector,
        metrics: Optional[MetricsCollector] = None,
        alpha_store: Optional[AlphaStore] = None,
        event_subscriber: Optional[EventSubscriber] = None,
        event_publisher: Optional[EventPublisher] = None
    ):
        """Construct a search manager.

        Parameters
        - config: ``SearchConfig`` with limits, timeouts and fusion defaults
        - text_backend / vector_backend: the two search primitives
        - embedder: object exposing ``async embed(text) -> np.ndarray``
        - cache_manager: best-effort result cache
        - weight_selector: blend weight strategy
        """
        self.config = config
        self.text_backend = text_backend
        self.vector_backend = vector_backend
        self.embedder = embedder
        self.cache_manager = cache_manager
        self.weight_selector = weight_selector
        self.metrics = metrics
        self.alpha_store = alpha_store
        self.event_subscriber = event_subscriber
        self.event_publisher = event_publisher

        self._fusion_algorithms: Dict[str, RankFusionAlgorithm] = {
            "weighted": create_fusion_algorithm("weighted"),
            "rrf": create_fusion_algorithm("rrf", k=config.ml_search_rrf_k),
        }
        self._event_listener_task: Optional[asyncio.Task] = None
        self._background_tasks: Set[asyncio.Task] = set()
        self._alpha_version: Optional[int] = None
        self._alpha_checked_at: Optional[float] = None

        if self.event_subscriber is not None:
            self._setup_event_handlers()

    @property
    def default_alpha(self) -> float:
        return self.weight_selector.default_alpha

    def set_default_alpha(self, alpha: float) -> None:
        """Adopt a new process default blend weight."""
        if not 0.0 <= alpha <= 1.0:
            raise ValueError(f"alpha must be within [0, 1], got {alpha}")
        self.weight_selector.default_alpha = alpha
        if self.metrics:
            self.metrics.set_alpha(alpha)

    def _setup_event_handlers(self):
        """Set up event handlers for drift updates."""
        self.event_subscriber.subscribe(EventType.QUALITY_DRIFT, self.handle_quality_drift)

    def handle_quality_drift(self, event_data: Dict[str, Any]) -> None:
        """React to QUALITY_DRIFT events.

        Adopts the new default alpha and drops cached hybrid results that
        were blended with the old one.
        """
        alpha_after = float(event_data["alpha_after"])
        self.set_default_alpha(alpha_after)
        logger.info(
            "Default alpha updated from drift event",
            alpha_before=event_data.get("alpha_before"),
            alpha_after=alpha_after,
            action=event_data.get("action")
        )

        task = asyncio.get_running_loop().create_task(self.invalidate_cache(f"{CACHE_PREFIX}*"))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def initialize(self):
        """Initialize the search manager.

        Loads the persisted default alpha and starts the background event
        listener.
        """
        await self.refresh_default_alpha(force=True)

        if self.event_subscriber is not None:
            self._event_listener_task = asyncio.create_task(self._run_event_listener_with_retry())
            logger.info("Event listener started")

        logger.info("Search manager initialized successfully", default_alpha=self.default_alpha)

    async def refresh_default_alpha(self, force: bool = False) -> bool:
        """Re-read the persisted default alpha if the refresh interval elapsed.

        Covers drift events lost by pub/sub. Returns True when a new value was
        adopted, in which case cached results blended with the old one are
        dropped. Store errors keep the current value.
        """
        if self.alpha_store is None:
            return False

        now = time.monotonic()
        if (
            not force
            and self._alpha_checked_at is not None
            and now - self._alpha_checked_at < self.config.ml_search_alpha_refresh_seconds
        ):
            return False
        self._alpha_checked_at = now

        try:
            state = await self.alpha_store.get()
            if state.version == self._alpha_version:
                return False
            previous = self.default_alpha
            self.set_default_alpha(state.value)
        except Exception as e:
            logger.warning("Failed to load default alpha, keeping current", error=str(e), alpha=self.default_alpha)
            return False

        first_load = self._alpha_version is None
        self._alpha_version = state.version
        if first_load:
            logger.info("Loaded default alpha", alpha=state.value, version=state.version)
            return False
        if state.value == previous:
            return False

        logger.info(
            "Default alpha refreshed from store",
            alpha_before=previous,
            alpha_after=state.value,
            version=state.version
        )
        await self.invalidate_cache(f"{CACHE_PREFIX}*")
        return True

    async def _run_event_listener_with_retry(self):
        """Run event listener with retry logic."""
        max_retries = 5
        base_delay = 1.0

        for attempt in range(max_retries):
            try:
                await self.event_subscriber.start_listening()
                break
            except asyncio.CancelledError:
                logger.info("Event listener cancelled")
                raise
            except Exception as e:
                if attempt == max_retries - 1:
                    logger.error("Event listener failed after all retries", error=str(e))
                    break

                delay = base_delay * (2 ** attempt)
                logger.warning(
                    "Event listener failed, retrying",
                    attempt=attempt + 1,
                    max_retries=max_retries,
                    delay=delay,
                    error=str(e)
                )
                await asyncio.sleep(delay)

    def _resolve_fusion(self, fusion: Optional[str]) -> Tuple[str, RankFusionAlgorithm]:
        name = fusion or self.config.ml_search_fusion_algorithm
        algorithm = self._fusion_algorithms.get(name)
        if algorithm is None:
            raise ValueError(f"Unknown fusion algorithm: {name}")
        return name, algorithm

    def _record_latency(self, latency_class: str, started: float) -> float:
        elapsed = time.perf_counter() - started
        if self.metrics:
            self.metrics.record_search_latency(latency_class, elapsed)
        return elapsed

    async def search(
        self,
        query: str,
        filters: Optional[SearchFilters] = None,
        limit: Optional[int] = None,
        alpha: Optional[float] = None,
        fusion: Optional[str] = None
    ) -> FusedResult:
        """Perform hybrid search.

        Returns a ``FusedResult`` sorted by fused score. Scores are relative
        ranking signals, not probabilities. An empty query yields an empty
        result. ``alpha`` overrides the selected blend weight; ``fusion``
        overrides the configured algorithm (``weighted`` or ``rrf``). Under
        ``rrf`` no weight is selected and the result carries ``alpha=None``.
        """
        started = time.perf_counter()
        if self.metrics:
            self.metrics.record_query("hybrid")
        await self.refresh_default_alpha()

        if alpha is not None and not 0.0 <= alpha <= 1.0:
            raise ValueError(f"alpha must be within [0, 1], got {alpha}")
        limit = self.config.ml_search_default_limit if limit is None else limit
        if limit < 1:
            raise ValueError(f"limit must be positive, got {limit}")
        fusion_name, algorithm = self._resolve_fusion(fusion)
        if fusion_name == "rrf":
            # Rank fusion ignores the blend weight
            alpha = None
        filters = filters or SearchFilters()

        normalized = normalize_query(query)
        if not normalized:
            logger.debug("Empty query after normalization")
            return FusedResult(alpha=alpha, fusion=fusion_name)

        cache_key = make_cache_key(
            normalized,
            {
                "filters": filters.to_backend_filters(),
                "limit": limit,
                "alpha": alpha,
                "fusion": fusion_name,
            },
        )

        cached = await self.cache_manager.get_result(cache_key)
        if cached is not None:
            elapsed = self._record_latency("cached", started)
            log_performance("hybrid_search", elapsed * 1000, latency_class="cached", results_count=len(cached))
            return cached

        try:
            lexical_hits, vector_hits = await self._run_searches(
                normalized, filters, limit * self.config.ml_search_candidate_multiplier
            )
        except HybridSearchError:
            self._record_latency("error", started)
            raise

        if alpha is None and fusion_name != "rrf":
            alpha = await self.weight_selector.select(normalized, filters)

        fused = algorithm.fuse_results(vector_hits, lexical_hits, alpha=alpha, limit=limit)
        fused.retrieval_variance = retrieval_variance(vector_hits)
        fused.rank_correlation = rank_correlation(vector_hits, lexical_hits)

        await self.cache_manager.set_result(cache_key, fused)

        elapsed = self._record_latency("uncached", started)
        log_performance("hybrid_search", elapsed * 1000, latency_class="uncached", results_count=len(fused))
        logger.info(
            "Search completed",
            results_count=len(fused),
            lexical_count=len(lexical_hits),
            vector_count=len(vector_hits),
            alpha=alpha,
            fusion=fusion_name
        )
        return fused

    async def _run_searches(
        self,
        query: str,
        filters: SearchFilters,
        candidates: int
    ) -> Tuple[List[ScoredHit], List[ScoredHit]]:
        """Run both primitives concurrently; both must succeed."""
        backend_filters = filters.to_backend_filters()
        text_task = asyncio.create_task(self._lexical_search(query, backend_filters, candidates))
        vector_task = asyncio.create_task(self._semantic_search(query, backend_filters, candidates))

        try:
            lexical_hits, vector_hits = await asyncio.wait_for(
                asyncio.gather(text_task, vector_task),
                timeout=self.config.ml_search_timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            await self._cancel(text_task, vector_task)
            logger.error("Search timed out", timeout_seconds=self.config.ml_search_timeout_seconds)
            raise SearchTimeoutError(
                f"Search did not complete within {self.config.ml_search_timeout_seconds}s"
            ) from e
        except Exception as e:
            await self._cancel(text_task, vector_task)
            logger.error("Search primitive failed", error=str(e), error_type=type(e).__name__)
            raise HybridSearchError(f"Search primitive failed: {e}") from e
        except asyncio.CancelledError:
            await self._cancel(text_task, vector_task)
            raise

        return lexical_hits, vector_hits

    @staticmethod
    async def _cancel(*tasks: asyncio.Task) -> None:
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError, Exception):
                await task

    async def _lexical_search(self, query: str, filters: Dict[str, Any], limit: int) -> List[ScoredHit]:
        rows = await self.text_backend.text_search(query, filters=filters, limit=limit)
        return [ScoredHit(id=str(item_id), score=float(rank)) for item_id, rank in rows]

    async def _semantic_search(self, query: str, filters: Dict[str, Any], limit: int) -> List[ScoredHit]:
        query_vector = await self.embedder.embed(query)
        rows = await self.vector_backend.vector_search(query_vector, filters=filters, limit=limit)
        return [ScoredHit(id=str(item_id), score=float(similarity)) for item_id, similarity in rows]

    def confidence_for(self, result: FusedResult, llm_confidence: float) -> float:
        """Composite confidence for an answer grounded on ``result``."""
        return compose_confidence(ConfidenceInputs(
            llm_confidence=llm_confidence,
            retrieval_variance=result.retrieval_variance,
            rank_correlation=result.rank_correlation,
        ))

    async def invalidate_cache(self, pattern: str = f"{CACHE_PREFIX}*") -> int:
        """Delete cached results matching ``pattern`` and announce it."""
        if not pattern.startswith(CACHE_PREFIX):
            raise ValueError(f"Cache pattern must start with '{CACHE_PREFIX}'")

        deleted = await self.cache_manager.delete_by_pattern(pattern)
        if self.event_publisher is not None:
            try:
                await self.event_publisher.publish_cache_invalidated(pattern, deleted)
            except Exception as e:
                logger.warning("Failed to publish cache invalidation", pattern=pattern, error=str(e))
        return deleted

    async def health_check(self) -> bool:
        """Check if the search manager is healthy."""
        try:
            backends = [self.text_backend]
            if self.vector_backend is not self.text_backend:
                backends.append(self.vector_backend)

            checks = [self.cache_manager.health_check()]
            checks.extend(backend.health_check() for backend in backends if hasattr(backend, "health_check"))
            return all(await asyncio.gather(*checks))
        except Exception as e:
            logger.error("Health check failed", error=str(e))
            return False

    async def cleanup(self):
        """Cleanup resources."""
        if self._event_listener_task and not self._event_listener_task.done():
            self._event_listener_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._event_listener_task

        for task in list(self._background_tasks):
            task.cancel()

        closables = [self.weight_selector, self.embedder, self.text_backend, self.vector_backend]
        closed: Set[int] = set()
        for resource in closables:
            if id(resource) in closed or not hasattr(resource, "close"):
                continue
            closed.add(id(resource))
            try:
                await resource.close()
            except Exception as e:
                logger.warning("Failed to close resource", resource=type(resource).__name__, error=str(e))

        logger.info("Search manager cleanup completed")


def create_search_manager(
    config: SearchConfig,
    redis_client: redis.Redis,
    metrics: Optional[MetricsCollector] = None
) -> SearchManager:
    """Wire a search manager with the PostgreSQL backend and Redis state."""
    backend = PgSearchBackend(
        dsn=config.ml_vector_db_dsn,
        vector_dimension=config.ml_vector_dimension,
    )
    return SearchManager(
        config=config,
        text_backend=backend,
        vector_backend=backend,
        embedder=HttpEmbeddingClient(
            config.ml_embedding_service_url,
            timeout_seconds=config.ml_embedding_timeout_seconds,
        ),
        cache_manager=SearchCacheManager(redis_client, ttl_seconds=config.ml_search_cache_ttl, metrics=metrics),
        weight_selector=create_weight_selector(config, metrics=metrics),
        metrics=metrics,
        alpha_store=AlphaStore(redis_client, key=config.ml_search_alpha_key),
        event_subscriber=EventSubscriber(redis_client),
        event_publisher=EventPublisher(redis_client),
    )
