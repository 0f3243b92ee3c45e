"""API routes for the discovery engine"""
import logging
from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response

from discovery_engine.api.models import (
    AnalyzeRequest, AnalyzeResponse,
    DiscoveryListResponse,
    MarkSurfacedRequest, MarkSurfacedResponse,
    AcknowledgeResponse,
    HealthCheckResponse
)
from discovery_engine.api.auth import verify_api_key
from discovery_engine.api.middleware import limiter
from discovery_engine.config import RATE_LIMIT_ANALYZE, RATE_LIMIT_HEALTH, RATE_LIMIT_READ
from discovery_engine.db.connection import db
from discovery_engine.exceptions import RecordNotFoundError
from discovery_engine.services.discovery_engine import DiscoveryEngine
from discovery_engine.services.discovery_repository import DEFAULT_LIST_LIMIT, DEFAULT_LIST_MIN_CONFIDENCE

logger = logging.getLogger(__name__)

router = APIRouter()

_engine: Optional[DiscoveryEngine] = None


def get_discovery_engine() -> DiscoveryEngine:
    """Shared engine backed by PostgreSQL (overridden in tests)"""
    global _engine
    if _engine is None:
        _engine = DiscoveryEngine()
    return _engine


@router.post("/api/v1/users/{user_id}/discoveries/analyze", response_model=AnalyzeResponse)
@limiter.limit(RATE_LIMIT_ANALYZE)
async def analyze(
    request: Request,
    user_id: str,
    body: Optional[AnalyzeRequest] = None,
    engine: DiscoveryEngine = Depends(get_discovery_engine),
    api_key: str = Depends(verify_api_key)
):
    """
    Run deep analysis over the user's history

    Rate limit: RATE_LIMIT_ANALYZE per user (full history scan)
    """
    timezone_name = body.timezone if body else "UTC"
    result = await engine.run_deep_analysis(user_id, timezone_name)
    return AnalyzeResponse(
        total_analyzed=result.total_analyzed,
        discoveries_tracked=result.discoveries_tracked,
        new_discoveries=result.new_discoveries,
        top_discoveries=result.top_discoveries,
        message=result.message
    )


@router.get("/api/v1/users/{user_id}/discoveries", response_model=DiscoveryListResponse)
@limiter.limit(RATE_LIMIT_READ)
async def list_discoveries(
    request: Request,
    user_id: str,
    min_confidence: float = Query(DEFAULT_LIST_MIN_CONFIDENCE),
    status: Optional[str] = Query(None),
    limit: int = Query(DEFAULT_LIST_LIMIT),
    engine: DiscoveryEngine = Depends(get_discovery_engine),
    api_key: str = Depends(verify_api_key)
):
    """List discoveries above a confidence floor (RATE_LIMIT_READ per user)"""
    discoveries = await engine.get_discoveries(user_id, min_confidence, status, limit)
    return DiscoveryListResponse(discoveries=discoveries, count=len(discoveries))


@router.get("/api/v1/users/{user_id}/discoveries/unsurfaced", response_model=DiscoveryListResponse)
@limiter.limit(RATE_LIMIT_READ)
async def list_unsurfaced(
    request: Request,
    user_id: str,
    engine: DiscoveryEngine = Depends(get_discovery_engine),
    api_key: str = Depends(verify_api_key)
):
    """Discoveries not yet shown to the user (RATE_LIMIT_READ per user)"""
    discoveries = await engine.get_unsurfaced(user_id)
    return DiscoveryListResponse(discoveries=discoveries, count=len(discoveries))


@router.get("/api/v1/users/{user_id}/discoveries/high-confidence", response_model=DiscoveryListResponse)
@limiter.limit(RATE_LIMIT_READ)
async def list_high_confidence(
    request: Request,
    user_id: str,
    engine: DiscoveryEngine = Depends(get_discovery_engine),
    api_key: str = Depends(verify_api_key)
):
    """Confirmed and strong discoveries (RATE_LIMIT_READ per user)"""
    discoveries = await engine.get_high_confidence(user_id)
    return DiscoveryListResponse(discoveries=discoveries, count=len(discoveries))


@router.post("/api/v1/users/{user_id}/discoveries/surfaced", response_model=MarkSurfacedResponse)
@limiter.limit(RATE_LIMIT_READ)
async def mark_surfaced(
    request: Request,
    user_id: str,
    body: MarkSurfacedRequest,
    engine: DiscoveryEngine = Depends(get_discovery_engine),
    api_key: str = Depends(verify_api_key)
):
    """Mark discoveries as shown to the user (RATE_LIMIT_READ per user)"""
    surfaced = await engine.mark_surfaced(user_id, body.discovery_ids)
    return MarkSurfacedResponse(surfaced=surfaced)


@router.post("/api/v1/users/{user_id}/discoveries/{discovery_id}/acknowledge", response_model=AcknowledgeResponse)
@limiter.limit(RATE_LIMIT_READ)
async def acknowledge(
    request: Request,
    user_id: str,
    discovery_id: str,
    engine: DiscoveryEngine = Depends(get_discovery_engine),
    api_key: str = Depends(verify_api_key)
):
    """Acknowledge a discovery (RATE_LIMIT_READ per user)"""
    if not await engine.acknowledge(user_id, discovery_id):
        raise RecordNotFoundError(
            message=f"Discovery {discovery_id} not found",
            record_type="Discovery",
            record_id=discovery_id,
            user_id=user_id,
            operation="acknowledge"
        )
    return AcknowledgeResponse(discovery_id=discovery_id, acknowledged=True)


@router.get("/api/health", response_model=HealthCheckResponse)
@limiter.limit(RATE_LIMIT_HEALTH)
async def health_check(request: Request):
    """Health check endpoint (RATE_LIMIT_HEALTH per client address)"""
    if not db.is_initialized:
        db_status = "not_initialized"
    else:
        try:
            async with db.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute("SELECT 1")
                    await cur.fetchone()

            db_status = "connected"
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            db_status = "disconnected"

    return HealthCheckResponse(
        status="healthy" if db_status == "connected" else "degraded",
        database=db_status,
        timestamp=datetime.now()
    )


@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Returns:
        Metrics in Prometheus exposition format
    """
    from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )
