"""HTTP routes of the worker service."""

from fastapi import HTTPException, Request

from worker_service.lifecycle import LifecycleController


def get_controller(request: Request) -> LifecycleController:
    """FastAPI dependency returning the running controller (503 while starting or stopping)."""
    controller = getattr(request.app.state, "controller", None)
    if controller is None or not controller.is_running:
        raise HTTPException(status_code=503, detail="Worker service is not running")
    return controller
