"""FastAPI routes for snapshot builds."""
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from ..dashboard.service import DashboardService
from ..klaviyo.exceptions import (
    KlaviyoApiError,
    KlaviyoClientError,
    KlaviyoThrottledError,
    KlaviyoTransportError,
)
from ..schemas.snapshot import DashboardSnapshot
from .auth import require_api_key


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["snapshots"])
health_router = APIRouter(tags=["health"])


class SnapshotRequest(BaseModel):
    """Request payload for a snapshot build."""

    private_key: str = Field(
        ..., min_length=1, description="Tenant Klaviyo private API key (never stored)"
    )
    deadline_s: Optional[float] = Field(
        None, gt=0, description="Overall build budget in seconds"
    )


def get_dashboard_service(request: Request) -> DashboardService:
    """Process-wide service created by the application lifespan."""
    service = getattr(request.app.state, "dashboard_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Dashboard service is not initialized",
        )
    return service


def _status_for(exc: KlaviyoClientError) -> int:
    if isinstance(exc, KlaviyoThrottledError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if isinstance(exc, KlaviyoTransportError):
        return status.HTTP_504_GATEWAY_TIMEOUT
    if isinstance(exc, KlaviyoApiError) and exc.status in (401, 403):
        return status.HTTP_401_UNAUTHORIZED
    return status.HTTP_502_BAD_GATEWAY


@health_router.get("/health", summary="Liveness check")
async def health() -> dict:
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.post(
    "/snapshots",
    response_model=DashboardSnapshot,
    dependencies=[Depends(require_api_key)],
    summary="Build a dashboard snapshot",
    description=(
        "Fetch account, campaigns, flows, lists, event counts and revenue for "
        "the given Klaviyo key. Parts that fail are returned with defaults and "
        "listed as degraded in `outcomes`."
    ),
)
async def create_snapshot(
    payload: SnapshotRequest,
    service: DashboardService = Depends(get_dashboard_service),
) -> DashboardSnapshot:
    """Build a snapshot; fails only when the metric catalog cannot be loaded."""
    try:
        snapshot = await service.build_snapshot(
            payload.private_key, deadline=payload.deadline_s
        )
    except KlaviyoClientError as exc:
        logger.error("Snapshot build failed: %s (%s)", exc, type(exc).__name__)
        raise HTTPException(
            status_code=_status_for(exc),
            detail={"error": type(exc).__name__, "message": str(exc)},
        )

    return snapshot
