# Models module
from cutline.models.job import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    CancelOutcome,
    Job,
    JobError,
    JobKind,
    JobOutcome,
    JobRequest,
    JobStatus,
    MediaInput,
)
from cutline.models.scene import Scene
from cutline.models.invocation import ToolCommand, ToolInvocation

__all__ = [
    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATUSES",
    "CancelOutcome",
    "Job",
    "JobError",
    "JobKind",
    "JobOutcome",
    "JobRequest",
    "JobStatus",
    "MediaInput",
    "Scene",
    "ToolCommand",
    "ToolInvocation",
]
