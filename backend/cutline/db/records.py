"""Durable job table."""
import json

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String, Text

from cutline.db.database import Base
from cutline.models.job import Job, JobError, JobKind, JobStatus, MediaInput
from cutline.models.scene import Scene


class JobRecord(Base):
    """One row per job; mirrors every field of the in-memory Job."""

    __tablename__ = "jobs"

    id = Column(String(32), primary_key=True)
    kind = Column(String(32), nullable=False)
    status = Column(String(32), nullable=False, index=True)

    # Input
    input_path = Column(String(4096), nullable=False)
    input_size_bytes = Column(Integer, nullable=False)
    input_mime_type = Column(String(255), nullable=False)
    input_duration = Column(Float, nullable=True)

    # Request parameters
    output_target = Column(String(4096), nullable=False)
    start = Column(Float, nullable=True)
    end = Column(Float, nullable=True)
    threshold = Column(Float, nullable=True)
    max_scenes = Column(Integer, nullable=True)

    # Progress and results
    progress = Column(Float, default=0.0, nullable=False)  # 0.0 to 1.0
    error_kind = Column(String(64), nullable=True)
    error_message = Column(Text, nullable=True)
    output_ref = Column(String(4096), nullable=True)
    outputs = Column(Text, nullable=False, default="[]")  # JSON list
    scenes = Column(Text, nullable=False, default="[]")  # JSON list of {start, end}
    artifacts = Column(Text, nullable=False, default="[]")  # JSON list
    acknowledged = Column(Boolean, default=False, nullable=False)

    # Timestamps
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
    finished_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<JobRecord(id={self.id}, kind={self.kind}, status={self.status})>"

    def apply(self, job: Job):
        """Copy every job field onto this row."""
        self.id = job.id
        self.kind = job.kind.value
        self.status = job.status.value
        self.input_path = job.input.path
        self.input_size_bytes = job.input.size_bytes
        self.input_mime_type = job.input.mime_type
        self.input_duration = job.input.duration
        self.output_target = job.output_target
        self.start = job.start
        self.end = job.end
        self.threshold = job.threshold
        self.max_scenes = job.max_scenes
        self.progress = job.progress
        self.error_kind = job.error.kind if job.error else None
        self.error_message = job.error.message if job.error else None
        self.output_ref = job.output_ref
        self.outputs = json.dumps(job.outputs)
        self.scenes = json.dumps([scene.to_dict() for scene in job.scenes])
        self.artifacts = json.dumps(job.artifacts)
        self.acknowledged = job.acknowledged
        self.created_at = job.created_at
        self.updated_at = job.updated_at
        self.finished_at = job.finished_at

    @classmethod
    def from_job(cls, job: Job) -> "JobRecord":
        record = cls()
        record.apply(job)
        return record

    def to_job(self) -> Job:
        error = None
        if self.error_kind is not None:
            error = JobError(kind=self.error_kind, message=self.error_message or "")
        return Job(
            id=self.id,
            kind=JobKind(self.kind),
            input=MediaInput(
                path=self.input_path,
                size_bytes=self.input_size_bytes,
                mime_type=self.input_mime_type,
                duration=self.input_duration,
            ),
            output_target=self.output_target,
            start=self.start,
            end=self.end,
            threshold=self.threshold,
            max_scenes=self.max_scenes,
            status=JobStatus(self.status),
            progress=self.progress,
            error=error,
            output_ref=self.output_ref,
            outputs=json.loads(self.outputs or "[]"),
            scenes=[Scene.from_dict(s) for s in json.loads(self.scenes or "[]")],
            artifacts=json.loads(self.artifacts or "[]"),
            acknowledged=bool(self.acknowledged),
            created_at=self.created_at,
            updated_at=self.updated_at,
            finished_at=self.finished_at,
        )
