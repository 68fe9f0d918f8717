from fastapi import APIRouter, HTTPException, Depends, Request, status
from typing import Any, Dict
from testrun_jobs.errors import InvalidJobPayloadError, UnknownJobTypeError, UnknownQueueError
from testrun_jobs.models.schemas import (
    EnqueueResponse, JobState, JobStateResponse, QueueDepthResponse, QueueName,
)

router = APIRouter()

def get_runtime(request: Request):
    return request.app.state.runtime

def _queue_or_404(queue: str) -> QueueName:
    try:
        return QueueName(queue)
    except ValueError:
        raise HTTPException(
            status_code=404,
            detail={"code": UnknownQueueError.code, "message": str(UnknownQueueError(queue))},
        )

@router.get("/queues", response_model=QueueDepthResponse)
def get_queue_depths(runtime=Depends(get_runtime)):
    """Number of jobs waiting in each queue"""
    return QueueDepthResponse(depths=runtime.queue_depths())

@router.post("/{queue}", response_model=EnqueueResponse, status_code=status.HTTP_202_ACCEPTED)
def enqueue_job(
    queue: str,
    envelope: Dict[str, Any],
    runtime=Depends(get_runtime),
):
    """Queue a job; poll GET /{queue}/{job_id} for its outcome"""
    queue_name = _queue_or_404(queue)
    try:
        job_id = runtime.enqueue(queue_name, envelope)
    except (UnknownJobTypeError, InvalidJobPayloadError) as e:
        raise HTTPException(status_code=400, detail={"code": e.code, "message": str(e)})
    return EnqueueResponse(job_id=job_id, queue=queue_name, state=JobState.QUEUED)

@router.get("/{queue}/{job_id}", response_model=JobStateResponse)
def get_job_state(
    queue: str,
    job_id: str,
    runtime=Depends(get_runtime),
):
    """Get job lifecycle state and its result or failure reason"""
    queue_name = _queue_or_404(queue)
    info = runtime.job_state(job_id)
    return JobStateResponse(
        job_id=job_id,
        queue=queue_name,
        state=info["state"],
        result=info["result"],
        error=info["error"],
        error_type=info["error_type"],
    )
