"""PostgreSQL implementation of both search primitives.

Keyword relevance is computed with ``ts_rank`` over a ``tsvector`` built from
each item's title and body; semantic similarity uses the pgvector extension.
Cosine distance from the ``<=>`` operator is converted to a ``similarity``
score and clamped to ``[0, 1]`` for consistency with ranking logic.

Connection management
- A shared asyncpg pool is created on demand and reused across calls
- Queries are funneled through ``_execute_query`` for uniform error handling
"""

from typing import Any, Dict, List, Optional, Tuple

import asyncpg
import numpy as np
import structlog
from asyncpg import Connection, Pool
from pgvector.asyncpg import register_vector

from .base import (
    FILTER_COLUMNS,
    TextSearchBackend,
    VectorSearchBackend,
    SearchBackendConnectionError,
    SearchBackendQueryError,
)

logger = structlog.get_logger("vector_store.pgvector")


def build_filter_clause(filters: Optional[Dict[str, Any]], start_index: int) -> Tuple[str, List[Any]]:
    """Render equality filters as a SQL fragment with positional parameters.

    Only known filter columns are honoured so user input never names a column.
    """
    clauses: List[str] = []
    args: List[Any] = []
    for column in FILTER_COLUMNS:
        value = (filters or {}).get(column)
        if value is None:
            continue
        args.append(value)
        clauses.append(f"{column} = ${start_index + len(args) - 1}")
    if not clauses:
        return "", args
    return " AND " + " AND ".join(clauses), args


class PgSearchBackend(TextSearchBackend, VectorSearchBackend):
    """PostgreSQL/pgvector search backend over the ``items`` table."""

    def __init__(
        self,
        dsn: str,
        pool_size: int = 10,
        command_timeout: int = 60,
        vector_dimension: Optional[int] = None,
        table: str = "items",
    ):
        """Configure the backend.

        Parameters
        - dsn: PostgreSQL DSN including database and credentials
        - pool_size: Max size of asyncpg connection pool
        - command_timeout: Seconds to allow per DB command
        - vector_dimension: Expected dimensionality of query vectors
        - table: Table holding ``id``, ``title``, ``body``, ``embedding`` and filter columns
        """
        self.dsn = dsn
        self.pool_size = pool_size
        self.command_timeout = command_timeout
        self.vector_dimension = vector_dimension
        self.table = table
        self._pool: Optional[Pool] = None

    async def _init_connection(self, conn: Connection) -> None:
        """Register pgvector codec for asyncpg connections."""
        await register_vector(conn)

    async def _get_pool(self) -> Pool:
        """Get or create connection pool."""
        if self._pool is None:
            try:
                self._pool = await asyncpg.create_pool(
                    self.dsn,
                    min_size=1,
                    max_size=self.pool_size,
                    command_timeout=self.command_timeout,
                    init=self._init_connection,
                )
                logger.info("Created search backend connection pool", pool_size=self.pool_size)
            except Exception as e:
                logger.error("Failed to create search backend connection pool", error=str(e))
                raise SearchBackendConnectionError(f"Failed to create connection pool: {e}") from e

        return self._pool

    async def _execute_query(self, query: str, *args: Any) -> List[Any]:
        """Fetch rows, wrapping every failure in ``SearchBackendQueryError``."""
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                return await conn.fetch(query, *args)
        except Exception as e:
            logger.error("Query execution failed", error=str(e))
            raise SearchBackendQueryError(f"Query failed: {e}") from e

    async def text_search(
        self,
        query: str,
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 10
    ) -> List[Tuple[str, float]]:
        """Rank items by ``ts_rank`` against a plain-text query."""
        filter_sql, filter_args = build_filter_clause(filters, start_index=3)
        sql = f"""
            SELECT id::text AS id,
                   ts_rank(to_tsvector('english', coalesce(title, '') || ' ' || coalesce(body, '')),
                           plainto_tsquery('english', $1)) AS rank
            FROM {self.table}
            WHERE to_tsvector('english', coalesce(title, '') || ' ' || coalesce(body, ''))
                  @@ plainto_tsquery('english', $1){filter_sql}
            ORDER BY rank DESC, id ASC
            LIMIT $2
        """
        rows = await self._execute_query(sql, query, limit, *filter_args)
        return [(row["id"], float(row["rank"])) for row in rows]

    async def vector_search(
        self,
        query_vector: np.ndarray,
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 10
    ) -> List[Tuple[str, float]]:
        """Return the nearest items by cosine similarity."""
        vector = np.asarray(query_vector, dtype=np.float32)
        if self.vector_dimension and vector.shape[0] != self.vector_dimension:
            raise SearchBackendQueryError(
                f"Vector dimension {vector.shape[0]} does not match expected {self.vector_dimension}"
            )

        filter_sql, filter_args = build_filter_clause(filters, start_index=3)
        sql = f"""
            SELECT id::text AS id, 1 - (embedding <=> $1) AS similarity
            FROM {self.table}
            WHERE embedding IS NOT NULL{filter_sql}
            ORDER BY embedding <=> $1, id ASC
            LIMIT $2
        """
        rows = await self._execute_query(sql, vector, limit, *filter_args)
        return [(row["id"], min(1.0, max(0.0, float(row["similarity"])))) for row in rows]

    async def health_check(self) -> bool:
        """Check that the database answers a trivial query."""
        try:
            await self._execute_query("SELECT 1")
            return True
        except Exception as e:
            logger.error("Search backend health check failed", error=str(e))
            return False

    async def close(self) -> None:
        """Close the connection pool."""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info("Closed search backend connection pool")
