"""Metrics endpoint for monitoring and observability."""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from worker_service.lifecycle import LifecycleController
from worker_service.resilience.circuit_breaker import BreakerState
from . import get_controller

router = APIRouter(prefix="/metrics", tags=["metrics"])
logger = logging.getLogger(__name__)

BREAKER_STATE_VALUES = {
    BreakerState.CLOSED.value: 0,
    BreakerState.HALF_OPEN.value: 1,
    BreakerState.OPEN.value: 2,
}


async def _collect(controller: LifecycleController) -> dict:
    queues = {}
    for kind, queue in controller.queues.items():
        counts = await queue.get_counts()
        pool = controller.pools.get(kind)
        queues[queue.name] = {
            "kind": kind.value,
            "counts": counts.to_dict(),
            "totals": await queue.get_stats(),
            "concurrency": queue.definition.concurrency,
            "in_flight": pool.active_count if pool else 0,
        }
    return queues


@router.get("")
async def get_metrics(controller: LifecycleController = Depends(get_controller)):
    """
    Get current metrics for monitoring.

    Returns:
        Per-queue counts and lifetime totals, breaker states, handler stats
    """
    try:
        queues = await _collect(controller)
    except Exception as e:
        logger.error(f"Failed to get metrics: {e}")
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "redis_connected": False,
            "error": str(e),
        }

    snapshot = controller.monitor.last_snapshot if controller.monitor else None
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "redis_connected": True,
        "health": snapshot.status.value if snapshot else "unknown",
        "queues": queues,
        "dead_letter_total": sum(q["counts"]["failed"] for q in queues.values()),
        "breakers": controller.breakers.snapshot(),
        "handlers": {
            kind.value: handler.stats()
            for kind, handler in controller.handlers.items()
            if hasattr(handler, "stats")
        },
        "events_dropped": controller.bus.dropped,
    }


@router.get("/prometheus", response_class=PlainTextResponse)
async def get_prometheus_metrics(controller: LifecycleController = Depends(get_controller)):
    """
    Get metrics in Prometheus exposition format.
    """
    try:
        queues = await _collect(controller)
        redis_connected = True
    except Exception as e:
        logger.error(f"Failed to get metrics: {e}")
        queues = {}
        redis_connected = False

    lines = [
        "# HELP worker_queue_jobs Number of jobs per queue and state",
        "# TYPE worker_queue_jobs gauge",
    ]
    for name, q in queues.items():
        for state in ("waiting", "active", "delayed", "completed", "failed"):
            lines.append(f'worker_queue_jobs{{queue="{name}",state="{state}"}} {q["counts"][state]}')
    lines.append("")

    lines.extend([
        "# HELP worker_jobs_total Lifetime job transitions per queue",
        "# TYPE worker_jobs_total counter",
    ])
    for name, q in queues.items():
        for outcome, value in sorted(q["totals"].items()):
            lines.append(f'worker_jobs_total{{queue="{name}",outcome="{outcome}"}} {value}')
    lines.append("")

    lines.extend([
        "# HELP worker_circuit_breaker_state Breaker state (0=closed, 1=half_open, 2=open)",
        "# TYPE worker_circuit_breaker_state gauge",
    ])
    for name, b in controller.breakers.snapshot().items():
        lines.append(f'worker_circuit_breaker_state{{breaker="{name}"}} {BREAKER_STATE_VALUES[b["state"]]}')
    lines.append("")

    lines.extend([
        "# HELP worker_redis_connected Whether Redis is connected (1=yes, 0=no)",
        "# TYPE worker_redis_connected gauge",
        f"worker_redis_connected {1 if redis_connected else 0}",
        "",
    ])
    return "\n".join(lines)
