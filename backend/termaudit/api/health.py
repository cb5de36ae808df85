"""Health check endpoint with database connectivity and rule cache status."""

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel

from termaudit.api.deps import get_registry, get_rule_cache
from termaudit.core import check_db_connection, settings
from termaudit.services.rule_cache import RuleCache
from termaudit.services.session_tracker import SessionRegistry

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    rule_snapshot_version: int
    enabled_rules: int
    live_sessions: int


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={
        status.HTTP_200_OK: {"description": "Service is healthy"},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"description": "Service is unhealthy"},
    },
)
async def health_check(
    response: Response,
    cache: RuleCache = Depends(get_rule_cache),
    registry: SessionRegistry = Depends(get_registry),
) -> HealthResponse:
    """
    Health check endpoint.

    Returns 503 if the database is unavailable.
    """
    db_healthy = await check_db_connection()

    # Set appropriate status code for container orchestration
    if not db_healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    snapshot = cache.current()
    return HealthResponse(
        status="healthy" if db_healthy else "unhealthy",
        version=settings.app_version,
        database="connected" if db_healthy else "disconnected",
        rule_snapshot_version=snapshot.version,
        enabled_rules=len(snapshot),
        live_sessions=len(registry),
    )
