"""Queue health monitoring."""

from .queue_health import (
    AlertThresholds,
    HealthMonitor,
    HealthSnapshot,
    HealthStatus,
    QueueHealth,
    evaluate_queue,
)

__all__ = [
    "AlertThresholds",
    "HealthMonitor",
    "HealthSnapshot",
    "HealthStatus",
    "QueueHealth",
    "evaluate_queue",
]
