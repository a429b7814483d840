"""Health check endpoints."""

import asyncio
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from worker_service import __version__
from worker_service.lifecycle import LifecycleController
from worker_service.resilience.circuit_breaker import BreakerState
from . import get_controller

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("")
async def health_check():
    """Basic health check - always returns ok if service is running."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "worker-service",
        "version": __version__,
    }


@router.get("/ready")
async def readiness_check(controller: LifecycleController = Depends(get_controller)):
    """
    Readiness check including the backing store and breaker states.
    """
    checks = {}
    overall_status = "ok"

    redis_status = await _check_redis(controller)
    checks["redis"] = redis_status
    if redis_status["status"] != "ok":
        overall_status = "degraded"

    breakers = controller.breakers.snapshot()
    checks["breakers"] = {name: b["state"] for name, b in breakers.items()}
    if any(b["state"] == BreakerState.OPEN.value for b in breakers.values()):
        overall_status = "degraded"

    snapshot = controller.monitor.last_snapshot if controller.monitor else None
    return {
        "status": overall_status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
        "queues": snapshot.status.value if snapshot else "unknown",
        "config": {
            "redis_url": controller.store.safe_url(),
            "queue_prefix": controller.store.prefix,
        },
    }


async def _check_redis(controller: LifecycleController) -> dict:
    """Check Redis connection."""
    try:
        ok = await asyncio.wait_for(controller.store.ping(), timeout=5.0)
    except asyncio.TimeoutError:
        return {"status": "timeout", "error": "Connection timed out"}
    if not ok:
        return {"status": "error", "error": "ping failed"}
    return {"status": "ok"}
