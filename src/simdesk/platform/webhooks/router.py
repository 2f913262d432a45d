"""
Webhook routes.

Provider notification intake plus read-only reliability status for the
operations dashboard. Components are taken from ``app.state.platform``,
which ``bootstrap.create_app`` installs.
"""

from typing import TYPE_CHECKING, Annotated, Any

import structlog
from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from sqlalchemy.exc import SQLAlchemyError

from simdesk.platform.db import check_database_health
from simdesk.platform.webhooks.handler import WebhookError

if TYPE_CHECKING:
    from simdesk.platform.bootstrap import Platform

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api")


def get_platform(request: Request) -> "Platform":
    """Dependency returning the wired platform components."""
    platform = getattr(request.app.state, "platform", None)
    if platform is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Platform not started"
        )
    return platform


PlatformDep = Annotated[Any, Depends(get_platform)]


async def _ingest(platform: "Platform", payload: dict[str, Any], endpoint: str) -> dict[str, Any]:
    try:
        result = await platform.webhook_handler.handle(payload, endpoint=endpoint)
    except WebhookError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    except SQLAlchemyError:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process webhook",
        )
    return result.to_dict()


@router.post("/esim/webhook")
async def esim_webhook(
    payload: Annotated[dict[str, Any], Body()],
    platform: PlatformDep,
) -> dict[str, Any]:
    """Provider eSIM status notification."""
    return await _ingest(platform, payload, "/api/esim/webhook")


@router.post("/webhooks/esim/webhook")
async def esim_webhook_legacy(
    payload: Annotated[dict[str, Any], Body()],
    platform: PlatformDep,
) -> dict[str, Any]:
    """Older notification URL still configured on some provider accounts."""
    return await _ingest(platform, payload, "/api/webhooks/esim/webhook")


@router.get("/webhooks/reliability")
async def reliability_status(
    platform: PlatformDep,
) -> dict[str, Any]:
    """Combined coordinator, safety-net and monitor status."""
    return platform.reliability_status()


@router.get("/webhooks/metrics")
async def webhook_metrics(
    platform: PlatformDep,
    limit: Annotated[int, Query(ge=1, le=1000)] = 50,
) -> dict[str, Any]:
    monitor = platform.monitor
    return {
        "metrics": [m.to_dict() for m in monitor.get_metrics()],
        "recent_events": [
            {
                "endpoint": e.endpoint,
                "success": e.success,
                "status_code": e.status_code,
                "event_type": e.event_type,
                "received_at": e.received_at.isoformat(),
                "error": e.error,
            }
            for e in monitor.get_recent_events(limit)
        ],
    }


@router.get("/health")
async def health(platform: PlatformDep) -> dict[str, Any]:
    """Liveness with database reachability and webhook health."""
    database_ok = await check_database_health(platform.session_factory)
    webhooks = platform.monitor.get_health_status()
    return {
        "status": "healthy" if database_ok and webhooks["is_healthy"] else "degraded",
        "database": database_ok,
        "webhooks": webhooks,
        "safety_nets_active": len(platform.safety_net.active_safety_nets),
    }
