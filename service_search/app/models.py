"""Domain types shared by the search engine.

- ``Domain``: closed set of item domains accepted as a filter
- ``SearchFilters``: immutable, validated filter set with a canonical encoding
- ``ScoredHit``: ``(id, score)`` unit produced by search primitives and fusion
- ``FusedResult``: ranked hits plus retrieval diagnostics, JSON-serializable
  for the result cache
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from pydantic import BaseModel, ConfigDict, field_validator


class Domain(str, Enum):
    """Supported item domains."""
    FINANCE = "finance"
    ASSET = "asset"
    SUPPLY_CHAIN = "supply_chain"
    GEOGRAPHY = "geography"
    TECHNICAL = "technical"
    REGULATORY = "regulatory"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Any) -> "Domain":
        """Parse a domain name case-insensitively.

        Accepts the member value or name, with ``-`` or spaces in place of
        underscores. Raises ``ValueError`` for anything else.
        """
        if isinstance(value, Domain):
            return value
        if not isinstance(value, str):
            raise ValueError(f"Domain must be a string, got {type(value).__name__}")
        normalized = value.strip().lower().replace("-", "_").replace(" ", "_")
        for member in cls:
            if member.value == normalized:
                return member
        raise ValueError(f"Unknown domain: {value!r}")


class SearchFilters(BaseModel):
    """Optional filters narrowing a search."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    domain: Optional[Domain] = None
    category_id: Optional[str] = None
    item_type_id: Optional[str] = None

    @field_validator("domain", mode="before")
    @classmethod
    def _parse_domain(cls, value: Any) -> Optional[Domain]:
        if value is None or value == "":
            return None
        return Domain.parse(value)

    @field_validator("category_id", "item_type_id", mode="before")
    @classmethod
    def _stringify_ids(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        value = str(value).strip()
        return value or None

    @property
    def has_domain_context(self) -> bool:
        """True when a domain or category narrows the search."""
        return self.domain is not None or self.category_id is not None

    def to_backend_filters(self) -> Dict[str, Any]:
        """Filters as plain values, omitting unset fields."""
        return self.model_dump(mode="json", exclude_none=True)

    def canonical(self) -> str:
        """Canonical encoding: sorted-key compact JSON without unset fields."""
        return json.dumps(self.to_backend_filters(), sort_keys=True, separators=(",", ":"))


@dataclass(frozen=True)
class ScoredHit:
    """A ranked item reference. Scores are only comparable within one source."""
    id: str
    score: float


class FusedResult(list):
    """Ranked ``ScoredHit`` list carrying retrieval diagnostics.

    The diagnostics are attributes rather than list items, so iterating or
    slicing the result yields hits only.
    """

    def __init__(
        self,
        hits: Iterable[ScoredHit] = (),
        retrieval_variance: float = 0.0,
        rank_correlation: float = 0.0,
        alpha: Optional[float] = None,
        fusion: str = "weighted",
    ):
        super().__init__(hits)
        self.retrieval_variance = retrieval_variance
        self.rank_correlation = rank_correlation
        self.alpha = alpha
        self.fusion = fusion

    def truncated(self, limit: int) -> "FusedResult":
        """Copy holding at most ``limit`` hits with the same diagnostics."""
        return FusedResult(
            self[:max(limit, 0)],
            retrieval_variance=self.retrieval_variance,
            rank_correlation=self.rank_correlation,
            alpha=self.alpha,
            fusion=self.fusion,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": [[hit.id, hit.score] for hit in self],
            "retrieval_variance": self.retrieval_variance,
            "rank_correlation": self.rank_correlation,
            "alpha": self.alpha,
            "fusion": self.fusion,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_json(cls, payload: Any) -> "FusedResult":
        if isinstance(payload, (bytes, bytearray)):
            payload = payload.decode("utf-8")
        data = json.loads(payload)
        return cls(
            (ScoredHit(id=str(item_id), score=float(score)) for item_id, score in data["hits"]),
            retrieval_variance=float(data.get("retrieval_variance", 0.0)),
            rank_correlation=float(data.get("rank_correlation", 0.0)),
            alpha=data.get("alpha"),
            fusion=data.get("fusion", "weighted"),
        )
