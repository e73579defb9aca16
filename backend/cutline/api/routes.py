"""API routes."""
import json
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from cutline.api.schemas import (
    CancelResponse,
    HealthResponse,
    JobResponse,
    JobSubmitRequest,
)
from cutline.core import ClipCore
from cutline.errors import InvalidRequest, JobNotFound
from cutline.models.job import CancelOutcome, JobRequest, JobStatus
from cutline.services.intake import accept_upload
from cutline.utils.ffmpeg import check_ffmpeg_available, check_ffprobe_available

router = APIRouter()
logger = logging.getLogger(__name__)


def get_core(request: Request) -> ClipCore:
    """Dependency to get the process-wide core."""
    return request.app.state.core


# =============================================================================
# Health & System
# =============================================================================

@router.get("/health", response_model=HealthResponse)
async def health_check(core: ClipCore = Depends(get_core)):
    """Check API health and dependencies."""
    ffmpeg_ok = check_ffmpeg_available(core.settings)
    ffprobe_ok = check_ffprobe_available(core.settings)
    fatal = core.pool.fatal_error

    if fatal is not None:
        status, message = "error", f"Worker pool halted: {fatal}"
    elif not (ffmpeg_ok and ffprobe_ok):
        status, message = "degraded", "ffmpeg/ffprobe not found on PATH"
    else:
        status, message = "ok", None

    return HealthResponse(
        status=status,
        ffmpeg_available=ffmpeg_ok,
        ffprobe_available=ffprobe_ok,
        worker_count=core.pool.capacity,
        active_jobs=len(core.pool.active_jobs),
        queued_jobs=core.pool.queued_count,
        message=message,
    )


# =============================================================================
# Jobs
# =============================================================================

@router.post("/jobs", response_model=JobResponse, status_code=202)
async def submit_job(body: JobSubmitRequest, core: ClipCore = Depends(get_core)):
    """Validate an uploaded file and queue a job for it."""
    try:
        media = accept_upload(
            body.input_path,
            body.declared_type,
            body.size_bytes,
            core.settings,
            duration=body.duration,
        )
        job_id = await core.dispatcher.submit(JobRequest(
            kind=body.kind,
            input=media,
            start=body.start,
            end=body.end,
            output_name=body.output_name,
            threshold=body.threshold,
            max_scenes=body.max_scenes,
        ))
    except InvalidRequest as e:
        raise HTTPException(status_code=400, detail=str(e))

    return JobResponse.from_job(core.dispatcher.status(job_id))


@router.get("/jobs", response_model=List[JobResponse])
async def list_jobs(status: Optional[JobStatus] = None, core: ClipCore = Depends(get_core)):
    """List known jobs, oldest first."""
    return [JobResponse.from_job(j) for j in core.dispatcher.list_jobs(status)]


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, core: ClipCore = Depends(get_core)):
    """Get job status."""
    job = core.dispatcher.status(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobResponse.from_job(job)


@router.post("/jobs/{job_id}/cancel", response_model=CancelResponse)
async def cancel_job(job_id: str, core: ClipCore = Depends(get_core)):
    """Cancel a queued or running job."""
    outcome = await core.dispatcher.cancel(job_id)
    if outcome == CancelOutcome.NOT_FOUND:
        raise HTTPException(status_code=404, detail="Job not found")
    return CancelResponse(job_id=job_id, result=outcome.value)


@router.delete("/jobs/{job_id}", response_model=JobResponse)
async def acknowledge_job(job_id: str, core: ClipCore = Depends(get_core)):
    """Acknowledge a finished job so it can be forgotten."""
    try:
        job = await core.dispatcher.acknowledge(job_id)
    except JobNotFound:
        raise HTTPException(status_code=404, detail="Job not found")
    except InvalidRequest as e:
        raise HTTPException(status_code=409, detail=str(e))
    return JobResponse.from_job(job)


@router.get("/jobs/{job_id}/events")
async def job_events(job_id: str, core: ClipCore = Depends(get_core)):
    """Server-sent job snapshots until the job finishes."""
    if core.dispatcher.status(job_id) is None:
        raise HTTPException(status_code=404, detail="Job not found")

    async def stream():
        async for snapshot in core.dispatcher.watch(job_id):
            payload = JobResponse.from_job(snapshot).model_dump(mode="json")
            yield f"event: job\ndata: {json.dumps(payload)}\n\n"

    return StreamingResponse(stream(), media_type="text/event-stream")
