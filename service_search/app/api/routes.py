"""API routes for search service."""

import time
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
import structlog

from ..hybrid.search_manager import HybridSearchError, SearchManager, SearchTimeoutError
from ..models import SearchFilters
from ..ranking.calibration import CalibrationMapping, calibrate
from ..ranking.confidence import ConfidenceInputs, compose_confidence
from ..retrievers.cache_manager import CACHE_PREFIX

logger = structlog.get_logger("search_service.api")

router = APIRouter()


class SearchRequest(BaseModel):
    """Request model for search endpoint."""
    query: str = Field(..., description="Search query")
    filters: Optional[SearchFilters] = Field(None, description="Domain, category and item type filters")
    limit: Optional[int] = Field(None, ge=1, le=200, description="Maximum number of results")
    alpha: Optional[float] = Field(None, ge=0.0, le=1.0, description="Blend weight override (1.0 = pure vector)")
    fusion: Optional[str] = Field(None, pattern="^(weighted|rrf)$", description="Fusion algorithm override")


class SearchHit(BaseModel):
    """Search result model."""
    id: str = Field(..., description="Item ID")
    score: float = Field(..., description="Fused relevance score")


class SearchResponse(BaseModel):
    """Response model for search endpoint."""
    results: List[SearchHit] = Field(..., description="Search results")
    total: int = Field(..., description="Total number of results")
    query: str = Field(..., description="Original query")
    alpha: Optional[float] = Field(None, description="Blend weight used for fusion")
    fusion: str = Field(..., description="Fusion algorithm used")
    retrieval_variance: float = Field(..., description="Normalized spread of vector scores")
    rank_correlation: float = Field(..., description="Overlap of the vector and lexical result sets")
    latency_ms: float = Field(..., description="Search latency in milliseconds")


class ConfidenceRequest(BaseModel):
    """Confidence inputs; out-of-range values are clamped to [0, 1]."""
    llm_confidence: float
    retrieval_variance: float
    rank_correlation: float


class CalibrateRequest(BaseModel):
    raw: float = Field(..., description="Raw impact score")


def get_search_manager(request: Request) -> SearchManager:
    """Get search manager from application state."""
    return request.app.state.search_manager


def get_calibration_mapping(request: Request) -> CalibrationMapping:
    """Get the calibration table loaded at startup."""
    return request.app.state.calibration


def get_drift_monitor(request: Request):
    """Get drift monitor from application state."""
    monitor = getattr(request.app.state, "drift_monitor", None)
    if monitor is None:
        raise HTTPException(status_code=503, detail="Drift monitor not configured")
    return monitor


@router.post("/search", response_model=SearchResponse)
async def search(
    request: SearchRequest,
    search_manager: SearchManager = Depends(get_search_manager)
):
    """Perform hybrid search."""
    start_time = time.time()

    try:
        results = await search_manager.search(
            query=request.query,
            filters=request.filters,
            limit=request.limit,
            alpha=request.alpha,
            fusion=request.fusion
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except SearchTimeoutError as e:
        logger.error("Search timed out", error=str(e))
        raise HTTPException(status_code=504, detail=str(e))
    except HybridSearchError as e:
        logger.error("Search failed", error=str(e))
        raise HTTPException(status_code=502, detail=str(e))

    latency_ms = (time.time() - start_time) * 1000

    return SearchResponse(
        results=[SearchHit(id=hit.id, score=hit.score) for hit in results],
        total=len(results),
        query=request.query,
        alpha=results.alpha,
        fusion=results.fusion,
        retrieval_variance=results.retrieval_variance,
        rank_correlation=results.rank_correlation,
        latency_ms=latency_ms
    )


@router.post("/confidence")
async def confidence(request: ConfidenceRequest) -> Dict[str, float]:
    """Compose a confidence score from independent signals."""
    return {
        "confidence": compose_confidence(ConfidenceInputs(
            llm_confidence=request.llm_confidence,
            retrieval_variance=request.retrieval_variance,
            rank_correlation=request.rank_correlation,
        ))
    }


@router.post("/calibrate")
async def calibrate_score(
    request: CalibrateRequest,
    mapping: CalibrationMapping = Depends(get_calibration_mapping)
) -> Dict[str, float]:
    """Map a raw impact score through the calibration table."""
    try:
        calibrated = calibrate(request.raw, mapping)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return {"raw": request.raw, "calibrated": calibrated}


@router.delete("/cache")
async def invalidate_cache(
    pattern: str = Query(f"{CACHE_PREFIX}*", description="Glob pattern of cached results to drop"),
    search_manager: SearchManager = Depends(get_search_manager)
) -> Dict[str, Any]:
    """Invalidate cached search results by pattern."""
    try:
        deleted = await search_manager.invalidate_cache(pattern)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    logger.info("Cache invalidated via API", pattern=pattern, deleted=deleted)
    return {"pattern": pattern, "deleted": deleted}


@router.post("/drift/run")
async def run_drift_cycle(drift_monitor=Depends(get_drift_monitor)) -> Dict[str, Any]:
    """Run one drift cycle now."""
    result = await drift_monitor.run_cycle()
    return result.to_dict()


@router.get("/drift/history")
async def drift_history(
    limit: int = Query(30, ge=1, le=500),
    drift_monitor=Depends(get_drift_monitor)
) -> Dict[str, Any]:
    """List recent drift cycle audit records."""
    try:
        records = await drift_monitor.history(limit)
    except Exception as e:
        logger.error("Failed to load drift history", error=str(e))
        raise HTTPException(status_code=500, detail="Failed to load drift history")
    return {"records": [record.to_dict() for record in records]}
