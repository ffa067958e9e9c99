"""Search primitive interfaces.

Defines the two ranking capabilities the hybrid engine depends on,
independent of the backing implementation:

- ``TextSearchBackend``: rank items by keyword-match relevance
- ``VectorSearchBackend``: return the top-K nearest items to a query embedding

Both return ``(id, score)`` tuples sorted by descending score. Scores from the
two sources live on different scales and are only compared after fusion.

All methods are asynchronous to support high-throughput services.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple
import numpy as np

# Filter keys understood by every backend
FILTER_COLUMNS = ("domain", "category_id", "item_type_id")


class TextSearchBackend(ABC):
    """Abstract keyword search capability."""

    @abstractmethod
    async def text_search(
        self,
        query: str,
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 10
    ) -> List[Tuple[str, float]]:
        """Rank items by keyword relevance.

        Returns
        - A list of ``(item_id, rank)`` tuples, higher rank is better
        """
        pass


class VectorSearchBackend(ABC):
    """Abstract nearest-neighbour search capability."""

    @abstractmethod
    async def vector_search(
        self,
        query_vector: np.ndarray,
        filters: Optional[Dict[str, Any]] = None,
        limit: int = 10
    ) -> List[Tuple[str, float]]:
        """Search for items with similar embeddings.

        Returns
        - A list of ``(item_id, similarity)`` tuples sorted by descending
          similarity (implementation defines the metric)
        """
        pass


class SearchBackendError(Exception):
    """Base exception for search primitive failures."""
    pass


class SearchBackendConnectionError(SearchBackendError):
    """Connection error to the search backend."""
    pass


class SearchBackendQueryError(SearchBackendError):
    """Query error in the search backend."""
    pass
