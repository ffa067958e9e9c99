"""PostgreSQL storage for the drift monitor.

Reads recent query/answer pairs from ``qa_pairs`` and appends cycle audit
records to ``quality_metrics``. Audit rows are only ever inserted.
"""

import json
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import asyncpg
import structlog
from asyncpg import Pool

from .quality import QualityMetric, QualitySample

logger = structlog.get_logger("quality_repository")

QUALITY_METRICS_DDL = """
    CREATE TABLE IF NOT EXISTS quality_metrics (
        id BIGSERIAL PRIMARY KEY,
        created_at TIMESTAMPTZ NOT NULL,
        ragas_score DOUBLE PRECISION NOT NULL,
        alpha_before DOUBLE PRECISION NOT NULL,
        alpha_after DOUBLE PRECISION NOT NULL,
        action TEXT NOT NULL,
        drift DOUBLE PRECISION NOT NULL,
        sample_size INTEGER NOT NULL
    )
"""


class QualityRepository(ABC):
    """Storage used by the drift monitor."""

    @abstractmethod
    async def sample_recent(self, limit: int, window_days: int) -> List[QualitySample]:
        """Most recent samples within the window, newest first."""
        pass

    @abstractmethod
    async def append_metric(self, metric: QualityMetric) -> None:
        pass

    @abstractmethod
    async def list_metrics(self, limit: int = 30) -> List[QualityMetric]:
        """Most recent audit records, newest first."""
        pass


class PgQualityRepository(QualityRepository):
    """asyncpg-backed repository."""

    def __init__(self, dsn: str, pool_size: int = 5, command_timeout: int = 60):
        self.dsn = dsn
        self.pool_size = pool_size
        self.command_timeout = command_timeout
        self._pool: Optional[Pool] = None
        self._schema_ready = False

    async def _get_pool(self) -> Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                self.dsn,
                min_size=1,
                max_size=self.pool_size,
                command_timeout=self.command_timeout,
            )
            logger.info("Created quality repository connection pool", pool_size=self.pool_size)
        return self._pool

    async def ensure_schema(self) -> None:
        if self._schema_ready:
            return
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(QUALITY_METRICS_DDL)
        self._schema_ready = True

    async def sample_recent(self, limit: int, window_days: int) -> List[QualitySample]:
        since = datetime.now(timezone.utc) - timedelta(days=window_days)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT question, answer, reference, contexts, created_at
                FROM qa_pairs
                WHERE created_at >= $1
                ORDER BY created_at DESC
                LIMIT $2
                """,
                since,
                limit,
            )

        samples = []
        for row in rows:
            contexts = row["contexts"]
            if isinstance(contexts, str):
                contexts = json.loads(contexts)
            samples.append(QualitySample(
                question=row["question"],
                answer=row["answer"],
                reference=row["reference"],
                contexts=list(contexts or []),
                created_at=row["created_at"],
            ))
        return samples

    async def append_metric(self, metric: QualityMetric) -> None:
        await self.ensure_schema()
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO quality_metrics
                    (created_at, ragas_score, alpha_before, alpha_after, action, drift, sample_size)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                """,
                metric.timestamp,
                metric.ragas_score,
                metric.alpha_before,
                metric.alpha_after,
                metric.action,
                metric.drift,
                metric.sample_size,
            )

    async def list_metrics(self, limit: int = 30) -> List[QualityMetric]:
        await self.ensure_schema()
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT created_at, ragas_score, alpha_before, alpha_after, action, drift, sample_size
                FROM quality_metrics
                ORDER BY created_at DESC, id DESC
                LIMIT $1
                """,
                limit,
            )
        return [
            QualityMetric(
                timestamp=row["created_at"],
                ragas_score=row["ragas_score"],
                alpha_before=row["alpha_before"],
                alpha_after=row["alpha_after"],
                action=row["action"],
                drift=row["drift"],
                sample_size=row["sample_size"],
            )
            for row in rows
        ]

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
