"""Job model for tracking clipping work."""
import copy
import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from cutline.models.scene import Scene


def utcnow() -> datetime:
    """Naive UTC timestamp (round-trips through SQLite unchanged)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_job_id() -> str:
    return uuid.uuid4().hex


class JobKind(str, enum.Enum):
    """Job kind enumeration."""
    MANUAL_CLIP = "manual-clip"
    SCENE_DETECT = "scene-detect"
    SCENE_CLIP = "scene-clip"


class JobStatus(str, enum.Enum):
    """Job status enumeration."""
    QUEUED = "queued"
    RUNNING = "running"
    CANCELING = "canceling"
    DONE = "done"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.DONE, JobStatus.FAILED, JobStatus.CANCELED})

ALLOWED_TRANSITIONS = {
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.CANCELED}),
    JobStatus.RUNNING: frozenset({
        JobStatus.DONE,
        JobStatus.FAILED,
        JobStatus.CANCELED,
        JobStatus.CANCELING,
    }),
    JobStatus.CANCELING: frozenset({JobStatus.CANCELED}),
    JobStatus.DONE: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELED: frozenset(),
}


class CancelOutcome(str, enum.Enum):
    """Result of a cancel request."""
    OK = "ok"
    NOT_FOUND = "not_found"
    ALREADY_TERMINAL = "already_terminal"


@dataclass
class MediaInput:
    """A validated input file handed over by the upload collaborator."""
    path: str
    size_bytes: int
    mime_type: str
    duration: Optional[float] = None  # Seconds, once known

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "size_bytes": self.size_bytes,
            "mime_type": self.mime_type,
            "duration": self.duration,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MediaInput":
        return cls(
            path=data["path"],
            size_bytes=int(data["size_bytes"]),
            mime_type=data["mime_type"],
            duration=data.get("duration"),
        )


@dataclass
class JobRequest:
    """Submission request."""
    kind: JobKind
    input: MediaInput
    start: Optional[float] = None
    end: Optional[float] = None
    output_name: Optional[str] = None
    threshold: Optional[float] = None  # Scene sensitivity override
    max_scenes: Optional[int] = None  # Scene selection override


@dataclass
class JobError:
    """Error detail recorded on a failed job."""
    kind: str
    message: str

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message}

    @classmethod
    def from_dict(cls, data: dict) -> "JobError":
        return cls(kind=data["kind"], message=data["message"])


@dataclass
class JobOutcome:
    """How a job execution ended, applied by JobStore.finish()."""
    status: JobStatus
    output_ref: Optional[str] = None
    outputs: List[str] = field(default_factory=list)
    error: Optional[JobError] = None

    @classmethod
    def done(cls, output_ref: str, outputs: Optional[List[str]] = None) -> "JobOutcome":
        return cls(JobStatus.DONE, output_ref=output_ref, outputs=list(outputs or []))

    @classmethod
    def failed(cls, kind: str, message: str) -> "JobOutcome":
        return cls(JobStatus.FAILED, error=JobError(kind, message))

    @classmethod
    def canceled(cls) -> "JobOutcome":
        return cls(JobStatus.CANCELED)


@dataclass
class Job:
    """One requested unit of media-processing work."""
    kind: JobKind
    input: MediaInput
    output_target: str
    id: str = field(default_factory=new_job_id)
    start: Optional[float] = None
    end: Optional[float] = None
    threshold: Optional[float] = None
    max_scenes: Optional[int] = None
    status: JobStatus = JobStatus.QUEUED
    progress: float = 0.0  # 0.0 to 1.0
    error: Optional[JobError] = None
    output_ref: Optional[str] = None
    outputs: List[str] = field(default_factory=list)
    scenes: List[Scene] = field(default_factory=list)
    artifacts: List[str] = field(default_factory=list)
    acknowledged: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def snapshot(self) -> "Job":
        """Independent copy safe to hand to readers."""
        return copy.deepcopy(self)

    def __repr__(self):
        return f"<Job(id={self.id}, kind={self.kind.value}, status={self.status.value})>"

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "kind": self.kind.value,
            "input": self.input.to_dict(),
            "output_target": self.output_target,
            "start": self.start,
            "end": self.end,
            "threshold": self.threshold,
            "max_scenes": self.max_scenes,
            "status": self.status.value,
            "progress": self.progress,
            "error": self.error.to_dict() if self.error else None,
            "output_ref": self.output_ref,
            "outputs": list(self.outputs),
            "scenes": [scene.to_dict() for scene in self.scenes],
            "artifacts": list(self.artifacts),
            "acknowledged": self.acknowledged,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Job":
        finished_at = data.get("finished_at")
        return cls(
            id=data["id"],
            kind=JobKind(data["kind"]),
            input=MediaInput.from_dict(data["input"]),
            output_target=data["output_target"],
            start=data.get("start"),
            end=data.get("end"),
            threshold=data.get("threshold"),
            max_scenes=data.get("max_scenes"),
            status=JobStatus(data["status"]),
            progress=float(data.get("progress", 0.0)),
            error=JobError.from_dict(data["error"]) if data.get("error") else None,
            output_ref=data.get("output_ref"),
            outputs=list(data.get("outputs") or []),
            scenes=[Scene.from_dict(s) for s in data.get("scenes") or []],
            artifacts=list(data.get("artifacts") or []),
            acknowledged=bool(data.get("acknowledged", False)),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            finished_at=datetime.fromisoformat(finished_at) if finished_at else None,
        )
