"""Job inspection and cancellation endpoints."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from worker_service.lifecycle import LifecycleController
from worker_service.queue.errors import InvalidJobStateError, JobNotFoundError
from worker_service.queue.job_queue import JobQueue
from . import get_controller

router = APIRouter(prefix="/jobs", tags=["jobs"])
logger = logging.getLogger(__name__)


def _queue(controller: LifecycleController, name: str) -> JobQueue:
    try:
        return controller.get_queue(name)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown queue: {name}")


@router.get("/{queue_name}/dead-letter")
async def get_dead_letter(
    queue_name: str,
    limit: int = Query(default=50, ge=1, le=500),
    controller: LifecycleController = Depends(get_controller),
):
    """Most recently dead-lettered jobs of a queue."""
    queue = _queue(controller, queue_name)
    jobs = await queue.get_dead_letter(limit)
    return {
        "queue": queue.name,
        "count": len(jobs),
        "jobs": [job.model_dump(mode="json") for job in jobs],
    }


@router.get("/{queue_name}/{job_id}")
async def get_job(
    queue_name: str,
    job_id: str,
    controller: LifecycleController = Depends(get_controller),
):
    queue = _queue(controller, queue_name)
    job = await queue.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return job.model_dump(mode="json", exclude={"lock_token", "sequence"})


@router.delete("/{queue_name}/{job_id}")
async def cancel_job(
    queue_name: str,
    job_id: str,
    controller: LifecycleController = Depends(get_controller),
):
    """Remove a waiting or delayed job before it is claimed."""
    queue = _queue(controller, queue_name)
    try:
        job = await queue.remove(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidJobStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"removed": True, "job_id": job.id, "previous_state": job.state.value}
