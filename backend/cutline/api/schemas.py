"""Pydantic schemas for API requests and responses."""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from cutline.models.job import Job, JobKind


# =============================================================================
# Job Schemas
# =============================================================================

class JobSubmitRequest(BaseModel):
    """Request to process an uploaded file."""
    kind: JobKind
    input_path: str = Field(..., description="Local path of the uploaded file")
    declared_type: str = Field(..., description="MIME type declared by the uploader")
    size_bytes: int = Field(..., description="Byte size reported by the upload transport")
    duration: Optional[float] = Field(None, description="Source duration in seconds, if known")
    start: Optional[float] = Field(None, description="Clip start (manual-clip only)")
    end: Optional[float] = Field(None, description="Clip end (manual-clip only)")
    output_name: Optional[str] = Field(None, description="Storage key for the output")
    threshold: Optional[float] = Field(None, description="Scene detection sensitivity override")
    max_scenes: Optional[int] = Field(None, description="Cap on clips extracted by scene-clip")


class SceneResponse(BaseModel):
    """Detected scene."""
    start: float
    end: float
    duration: float


class JobErrorResponse(BaseModel):
    """Error detail of a failed job."""
    kind: str
    message: str


class JobResponse(BaseModel):
    """Job status snapshot."""
    id: str
    kind: str
    status: str
    progress: float
    input_path: str
    output_target: str
    start: Optional[float]
    end: Optional[float]
    error: Optional[JobErrorResponse]
    output_ref: Optional[str]
    outputs: List[str]
    scenes: List[SceneResponse]
    created_at: datetime
    updated_at: datetime
    finished_at: Optional[datetime]

    @classmethod
    def from_job(cls, job: Job) -> "JobResponse":
        return cls(
            id=job.id,
            kind=job.kind.value,
            status=job.status.value,
            progress=job.progress,
            input_path=job.input.path,
            output_target=job.output_target,
            start=job.start,
            end=job.end,
            error=JobErrorResponse(**job.error.to_dict()) if job.error else None,
            output_ref=job.output_ref,
            outputs=list(job.outputs),
            scenes=[SceneResponse(start=s.start, end=s.end, duration=s.duration) for s in job.scenes],
            created_at=job.created_at,
            updated_at=job.updated_at,
            finished_at=job.finished_at,
        )


class CancelResponse(BaseModel):
    """Result of a cancel request."""
    job_id: str
    result: str


# =============================================================================
# Health Check
# =============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    ffmpeg_available: bool
    ffprobe_available: bool
    worker_count: int
    active_jobs: int
    queued_jobs: int
    message: Optional[str] = None
