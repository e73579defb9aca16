"""Job submission, cancellation and status queries."""
import logging
import math
import os
from pathlib import Path, PurePosixPath
from typing import AsyncIterator, List, Optional

from cutline.config import Settings
from cutline.errors import InvalidRequest, JobNotFound
from cutline.models.job import CancelOutcome, Job, JobKind, JobRequest, JobStatus, new_job_id
from cutline.services.intake import normalize_mime_type
from cutline.services.storage import is_storage_ref
from cutline.store.job_store import JobStore
from cutline.workers.pool import WorkerPool

logger = logging.getLogger(__name__)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _check_output_name(name: str):
    path = PurePosixPath(name)
    if not name.strip() or path.is_absolute() or ".." in path.parts:
        raise InvalidRequest(f"Invalid output name: {name!r}")


def validate_request(request: JobRequest, settings: Settings) -> JobKind:
    """
    Check a submission before any job exists.

    Returns:
        The request kind as a JobKind

    Raises:
        InvalidRequest: On the first problem found
    """
    try:
        kind = JobKind(request.kind)
    except ValueError:
        raise InvalidRequest(f"Unknown job kind: {request.kind!r}")

    media = request.input
    if media is None:
        raise InvalidRequest("Missing input")

    # Storage references are fetched and checked when the job runs
    if not is_storage_ref(media.path):
        path = Path(media.path)
        if not path.is_file():
            raise InvalidRequest(f"File not found: {media.path}")
        if not os.access(path, os.R_OK):
            raise InvalidRequest(f"File is not readable: {media.path}")

    accepted = {normalize_mime_type(t) for t in settings.accepted_mime_types}
    if normalize_mime_type(media.mime_type or "") not in accepted:
        raise InvalidRequest(f"Unsupported media type: {media.mime_type!r}")

    if kind == JobKind.MANUAL_CLIP:
        if request.start is None or request.end is None:
            raise InvalidRequest("manual-clip requires start and end")
        if not (_is_number(request.start) and _is_number(request.end)):
            raise InvalidRequest("start and end must be finite numbers")
        if request.start < 0:
            raise InvalidRequest(f"start must be non-negative, got {request.start}")
        if request.end <= request.start:
            raise InvalidRequest(f"end ({request.end}) must be greater than start ({request.start})")
        if media.duration is not None and request.end > media.duration:
            raise InvalidRequest(f"end ({request.end}) is past the source duration ({media.duration})")
    elif request.start is not None or request.end is not None:
        raise InvalidRequest(f"start/end only apply to manual-clip jobs, not {kind.value}")

    if request.threshold is not None:
        if not _is_number(request.threshold) or not 0 < request.threshold <= 1:
            raise InvalidRequest(f"threshold must be in (0, 1], got {request.threshold}")
    if request.max_scenes is not None:
        if isinstance(request.max_scenes, bool) or not isinstance(request.max_scenes, int) or request.max_scenes < 1:
            raise InvalidRequest(f"max_scenes must be a positive integer, got {request.max_scenes}")

    if request.output_name is not None:
        _check_output_name(request.output_name)

    return kind


def default_output_target(kind: JobKind, job_id: str, settings: Settings) -> str:
    """Storage key for a job's output when the request names none."""
    if kind == JobKind.MANUAL_CLIP:
        return f"{job_id}{settings.output_extension}"
    if kind == JobKind.SCENE_DETECT:
        return f"{job_id}.scenes.json"
    # scene-clip writes a directory of clips plus a manifest
    return job_id


class JobDispatcher:
    """Front door of the core: submit, cancel, status."""

    def __init__(self, settings: Settings, store: JobStore, pool: WorkerPool):
        self.settings = settings
        self.store = store
        self.pool = pool

    async def submit(self, request: JobRequest) -> str:
        """
        Validate a request, create a queued job and enqueue it.

        Returns:
            The new job id

        Raises:
            InvalidRequest: If the request is rejected (no job is created)
            InternalInvariantViolation: If the worker pool has halted
        """
        kind = validate_request(request, self.settings)
        if self.pool.fatal_error is not None:
            raise self.pool.fatal_error

        job_id = new_job_id()
        job = Job(
            id=job_id,
            kind=kind,
            input=request.input,
            output_target=request.output_name or default_output_target(kind, job_id, self.settings),
            start=float(request.start) if request.start is not None else None,
            end=float(request.end) if request.end is not None else None,
            threshold=request.threshold,
            max_scenes=request.max_scenes,
        )
        await self.store.add(job)
        self.pool.enqueue(job_id)

        logger.info(f"Submitted {kind.value} job {job_id} for {Path(request.input.path).name}")
        return job_id

    async def cancel(self, job_id: str) -> CancelOutcome:
        """
        Cancel a job.

        A queued job is canceled without ever running. A running job moves
        to canceling and its tool invocation is signalled; poll status for
        the final canceled state.
        """
        try:
            previous = await self.store.request_cancel(job_id)
        except JobNotFound:
            return CancelOutcome.NOT_FOUND

        if previous.is_terminal:
            return CancelOutcome.ALREADY_TERMINAL

        if previous == JobStatus.RUNNING:
            self.pool.signal_cancel(job_id)
            logger.info(f"Cancel requested for running job {job_id}")
        elif previous == JobStatus.QUEUED:
            logger.info(f"Canceled queued job {job_id}")
        return CancelOutcome.OK

    def status(self, job_id: str) -> Optional[Job]:
        """Current snapshot of a job, or None when unknown."""
        return self.store.get(job_id)

    def list_jobs(self, status: Optional[JobStatus] = None) -> List[Job]:
        return self.store.list(status)

    async def acknowledge(self, job_id: str) -> Job:
        """Client is done with a terminal job; evict it now."""
        return await self.store.acknowledge(job_id)

    async def watch(self, job_id: str) -> AsyncIterator[Job]:
        """
        Yield snapshots of a job as it changes, ending with its terminal state.

        Raises:
            JobNotFound: If the job is unknown
        """
        queue = self.store.subscribe(job_id)
        try:
            while True:
                snapshot = await queue.get()
                yield snapshot
                if snapshot.is_terminal:
                    return
        finally:
            self.store.unsubscribe(job_id, queue)
