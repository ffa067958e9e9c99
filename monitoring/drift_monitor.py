"""Closed-loop quality monitor for the default blend weight.

Once a night the monitor samples recent query/answer pairs, scores them, and
nudges the persisted default alpha toward whatever keeps quality on target:

- quality below target by more than the tolerance: raise alpha by a fraction
  proportional to the gap, capped per cycle (``max_increase``)
- quality above target by more than the tolerance: decay alpha by a small
  multiplicative factor, never below an absolute floor
- otherwise leave it alone

Every completed cycle appends an immutable ``QualityMetric`` and exports
gauges; cycles that change alpha also publish ``retrieval.quality.drift.v1``
so search instances pick up the new value immediately.

Cycles are serialized by an in-process ``asyncio.Lock`` plus a non-blocking
Redis lock shared by every instance. A cycle that cannot take either lock
returns ``skipped``. Errors never escape ``run_cycle``: they produce a
``failed`` outcome and leave the persisted alpha untouched.

Run ``python -m monitoring.drift_monitor`` for the nightly schedule, or with
``--once`` for a single cycle.
"""

import argparse
import asyncio
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import redis.asyncio as redis
import structlog
from redis.exceptions import LockError

from libs.common.config import DriftConfig
from libs.common.events import EventPublisher
from libs.common.logging import bound_context, configure_logging
from libs.common.metrics import MetricsCollector, get_metrics_collector
from service_search.app.runtime.alpha_store import AlphaStore
from .quality import HttpQualityEvaluator, QualityEvaluator, QualityMetric
from .repository import PgQualityRepository, QualityRepository

logger = structlog.get_logger("drift_monitor")

DRIFT_LOCK_KEY = "retrieval:drift:lock"

ACTION_INCREASE = "increase"
ACTION_DECAY = "decay"
ACTION_NO_CHANGE = "no_change"

STATUS_SUCCESS = "success"
STATUS_INSUFFICIENT_DATA = "insufficient_data"
STATUS_SKIPPED = "skipped"
STATUS_FAILED = "failed"


class DriftCycleError(Exception):
    """A drift cycle could not complete."""
    pass


@dataclass
class DriftCycleResult:
    """Outcome of one drift cycle."""
    status: str
    alpha_before: Optional[float] = None
    alpha_after: Optional[float] = None
    action: Optional[str] = None
    ragas_score: Optional[float] = None
    drift: Optional[float] = None
    sample_size: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def compute_alpha_adjustment(current_alpha: float, quality_score: float, config: DriftConfig) -> Tuple[float, str]:
    """Return ``(new_alpha, action)`` for a measured quality score."""
    drift = quality_score - config.ml_drift_target_quality
    if abs(drift) <= config.ml_drift_tolerance:
        return current_alpha, ACTION_NO_CHANGE

    if drift < 0:
        increase = min(abs(drift) * config.ml_drift_max_increase, config.ml_drift_max_increase)
        return min(current_alpha * (1 + increase), config.ml_drift_alpha_ceiling), ACTION_INCREASE

    return max(current_alpha * config.ml_drift_decay_rate, config.ml_drift_alpha_floor), ACTION_DECAY


def seconds_until_next_run(now: datetime, run_hour: int) -> float:
    """Seconds from ``now`` until the next ``run_hour``:00 (same timezone)."""
    next_run = now.replace(hour=run_hour, minute=0, second=0, microsecond=0)
    if next_run <= now:
        next_run += timedelta(days=1)
    return (next_run - now).total_seconds()


class DriftMonitor:
    """Adjusts the persisted default alpha against a quality target."""

    def __init__(
        self,
        config: DriftConfig,
        alpha_store: AlphaStore,
        repository: QualityRepository,
        evaluator: QualityEvaluator,
        redis_client: redis.Redis,
        metrics: Optional[MetricsCollector] = None,
        event_publisher: Optional[EventPublisher] = None
    ):
        self.config = config
        self.alpha_store = alpha_store
        self.repository = repository
        self.evaluator = evaluator
        self.redis_client = redis_client
        self.metrics = metrics
        self.event_publisher = event_publisher
        self._cycle_lock = asyncio.Lock()

    def _record(self, result: DriftCycleResult) -> DriftCycleResult:
        if self.metrics:
            self.metrics.record_drift_cycle(
                result.status,
                ragas_score=result.ragas_score,
                alpha=result.alpha_after,
                drift_magnitude=abs(result.drift) if result.drift is not None else None,
                samples=result.sample_size if result.status == STATUS_SUCCESS else None,
            )
        return result

    async def run_cycle(self) -> DriftCycleResult:
        """Run one cycle unless another one holds the lock."""
        if self._cycle_lock.locked():
            logger.info("Drift cycle already running in this process")
            return self._record(DriftCycleResult(status=STATUS_SKIPPED))

        async with self._cycle_lock:
            lock = self.redis_client.lock(
                DRIFT_LOCK_KEY,
                timeout=self.config.ml_drift_lock_timeout_seconds,
            )
            try:
                acquired = await lock.acquire(blocking=False)
            except Exception as e:
                logger.error("Failed to acquire drift lock", error=str(e))
                return self._record(DriftCycleResult(status=STATUS_FAILED, error=str(e)))

            if not acquired:
                logger.info("Drift cycle already running on another instance")
                return self._record(DriftCycleResult(status=STATUS_SKIPPED))

            try:
                with bound_context(drift_cycle_id=uuid.uuid4().hex[:12]):
                    return self._record(await self._run_locked_cycle())
            finally:
                try:
                    await lock.release()
                except LockError as e:
                    logger.warning("Drift lock expired before release", error=str(e))

    async def _run_locked_cycle(self) -> DriftCycleResult:
        logger.info("Starting quality sweep")
        try:
            state = await self.alpha_store.get()
            samples = await self.repository.sample_recent(
                self.config.ml_drift_sample_size,
                self.config.ml_drift_window_days,
            )

            if len(samples) < self.config.ml_drift_min_samples:
                logger.warning(
                    "Insufficient samples for evaluation",
                    samples_found=len(samples),
                    min_required=self.config.ml_drift_min_samples
                )
                return DriftCycleResult(
                    status=STATUS_INSUFFICIENT_DATA,
                    alpha_before=state.value,
                    sample_size=len(samples),
                )

            ragas_score = await self.evaluator.evaluate(samples)
            drift = ragas_score - self.config.ml_drift_target_quality
            new_alpha, action = compute_alpha_adjustment(state.value, ragas_score, self.config)

            logger.info(
                "Quality assessment",
            ragas_score=ragas_score,
                target_score=self.config.ml_drift_target_quality,
                drift=drift,
                current_alpha=state.value,
                action=action
            )

            if action != ACTION_NO_CHANGE:
                if not await self.alpha_store.compare_and_set(state.version, new_alpha):
                    raise DriftCycleError("Default alpha was modified concurrently")

        except Exception as e:
            logger.error("Drift cycle failed", error=str(e), error_type=type(e).__name__)
            return DriftCycleResult(status=STATUS_FAILED, error=str(e))

        # The new alpha is committed from here on
        metric = QualityMetric(
            timestamp=datetime.now(timezone.utc),
            ragas_score=ragas_score,
            alpha_before=state.value,
            alpha_after=new_alpha,
            action=action,
            drift=drift,
            sample_size=len(samples),
        )
        try:
            await self.repository.append_metric(metric)
        except Exception as e:
            logger.error(
                "Failed to append quality metric",
                error=str(e),
                alpha_before=state.value,
                alpha_after=new_alpha,
                action=action
            )

        if action != ACTION_NO_CHANGE and self.event_publisher is not None:
            try:
                await self.event_publisher.publish_quality_drift(ragas_score, state.value, new_alpha, action)
            except Exception as e:
                logger.warning("Failed to publish quality drift event", error=str(e))

        logger.info(
            "Quality sweep completed",
            ragas_score=ragas_score,
            action=action,
            alpha_before=state.value,
            alpha_after=new_alpha
        )
        return DriftCycleResult(
            status=STATUS_SUCCESS,
            alpha_before=state.value,
            alpha_after=new_alpha,
            action=action,
            ragas_score=ragas_score,
            drift=drift,
            sample_size=len(samples),
        )

    async def history(self, limit: int = 30) -> List[QualityMetric]:
        """Most recent audit records, newest first."""
        return await self.repository.list_metrics(limit)

    async def run_forever(self) -> None:
        """Run a cycle every night at the configured hour (UTC)."""
        logger.info("Scheduled nightly quality sweeps", run_hour=self.config.ml_drift_run_hour)
        while True:
            delay = seconds_until_next_run(datetime.now(timezone.utc), self.config.ml_drift_run_hour)
            logger.info("Next quality sweep scheduled", seconds=round(delay))
            await asyncio.sleep(delay)
            result = await self.run_cycle()
            logger.info("Scheduled quality sweep finished", status=result.status)

    async def close(self) -> None:
        for resource in (self.evaluator, self.repository):
            if hasattr(resource, "close"):
                try:
                    await resource.close()
                except Exception as e:
                    logger.warning("Failed to close resource", resource=type(resource).__name__, error=str(e))


def create_drift_monitor(
    config: DriftConfig,
    redis_client: redis.Redis,
    metrics: Optional[MetricsCollector] = None
) -> DriftMonitor:
    """Wire a drift monitor with PostgreSQL storage and the HTTP evaluator."""
    return DriftMonitor(
        config=config,
        alpha_store=AlphaStore(redis_client, key=config.ml_search_alpha_key),
        repository=PgQualityRepository(config.ml_vector_db_dsn),
        evaluator=HttpQualityEvaluator(
            config.ml_quality_evaluator_url,
            timeout_seconds=config.ml_quality_evaluator_timeout_seconds,
        ),
        redis_client=redis_client,
        metrics=metrics,
        event_publisher=EventPublisher(redis_client),
    )


async def main(argv: Optional[List[str]] = None) -> int:
    """Main drift monitoring function."""
    parser = argparse.ArgumentParser(description="Retrieval quality drift monitor")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    args = parser.parse_args(argv)

    config = DriftConfig()
    configure_logging("drift-monitor", config.ml_log_level, config.ml_log_format)

    redis_client = redis.from_url(config.ml_redis_url)
    monitor = create_drift_monitor(config, redis_client, get_metrics_collector("drift-monitor"))
    try:
        if args.once:
            result = await monitor.run_cycle()
            logger.info("Drift cycle result", **result.to_dict())
            return 0 if result.status != STATUS_FAILED else 1
        await monitor.run_forever()
        return 0
    finally:
        await monitor.close()
        await redis_client.aclose()


def cli() -> int:
    return asyncio.run(main())


if __name__ == "__main__":
    raise SystemExit(cli())
