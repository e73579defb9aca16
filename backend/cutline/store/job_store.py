"""Authoritative in-memory job registry.

Every mutation of a job record runs under that record's lock and replaces
the stored object in one assignment, so readers always see a whole
record. Readers only ever receive deep copies.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from cutline.errors import InternalInvariantViolation, InvalidRequest, InvalidTransition, JobNotFound
from cutline.models.job import (
    ALLOWED_TRANSITIONS,
    Job,
    JobError,
    JobOutcome,
    JobStatus,
    utcnow,
)
from cutline.models.scene import Scene

logger = logging.getLogger(__name__)


class _Draft:
    """Working copy of a record inside JobStore._mutate()."""

    def __init__(self, job: Job):
        self.job = job
        self.changed = True

    def discard(self):
        self.changed = False


class JobStore:
    """Concurrency-safe owner of every Job record."""

    def __init__(self, repository=None):
        self._jobs: Dict[str, Job] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._registry_lock = asyncio.Lock()
        self._subscribers: Dict[str, List[asyncio.Queue]] = {}
        self._repository = repository

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, job_id: str) -> Optional[Job]:
        """Snapshot of a job, or None."""
        job = self._jobs.get(job_id)
        return job.snapshot() if job else None

    def list(self, status: Optional[JobStatus] = None) -> List[Job]:
        jobs = [j for j in self._jobs.values() if status is None or j.status == status]
        jobs.sort(key=lambda j: j.created_at)
        return [j.snapshot() for j in jobs]

    def count(self, status: JobStatus) -> int:
        return sum(1 for j in self._jobs.values() if j.status == status)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def add(self, job: Job) -> Job:
        """Register a new job."""
        async with self._registry_lock:
            if job.id in self._jobs:
                raise InternalInvariantViolation(f"Duplicate job id {job.id}")
            stored = job.snapshot()
            self._locks[job.id] = asyncio.Lock()
            self._jobs[job.id] = stored
        await self._after_write(stored)
        return stored.snapshot()

    async def claim(self, job_id: str) -> Optional[Job]:
        """Move a queued job to running. None when it is no longer queued."""
        async with self._mutate(job_id) as draft:
            if draft.job.status != JobStatus.QUEUED:
                draft.discard()
                return None
            self._transition(draft.job, JobStatus.RUNNING)
        return self.get(job_id)

    async def request_cancel(self, job_id: str) -> JobStatus:
        """Apply a cancel request and return the status it found.

        queued -> canceled, running -> canceling; any other status is left alone.
        """
        async with self._mutate(job_id) as draft:
            previous = draft.job.status
            if previous == JobStatus.QUEUED:
                self._transition(draft.job, JobStatus.CANCELED)
            elif previous == JobStatus.RUNNING:
                self._transition(draft.job, JobStatus.CANCELING)
            else:
                draft.discard()
        return previous

    async def update_progress(self, job_id: str, fraction: float) -> float:
        """Raise a job's progress. Never lowers it; ignored once terminal."""
        fraction = min(1.0, max(0.0, float(fraction)))
        async with self._mutate(job_id) as draft:
            job = draft.job
            if job.is_terminal or fraction <= job.progress:
                draft.discard()
            else:
                job.progress = fraction
            current = job.progress
        return current

    async def set_artifacts(self, job_id: str, paths: List[str]):
        async with self._mutate(job_id) as draft:
            if draft.job.is_terminal and paths:
                raise InternalInvariantViolation(
                    f"Job {job_id} is {draft.job.status.value}; cannot own artifacts"
                )
            draft.job.artifacts = list(paths)

    async def set_scenes(self, job_id: str, scenes: List[Scene]):
        async with self._mutate(job_id) as draft:
            draft.job.scenes = list(scenes)

    async def set_input_duration(self, job_id: str, duration: float):
        async with self._mutate(job_id) as draft:
            draft.job.input.duration = duration

    async def finish(self, job_id: str, outcome: JobOutcome) -> Job:
        """Move a running (or canceling) job into its terminal state.

        A job in canceling always ends canceled, whatever the outcome says.
        """
        async with self._mutate(job_id) as draft:
            job = draft.job
            if job.artifacts:
                raise InternalInvariantViolation(
                    f"Job {job_id} still owns {len(job.artifacts)} artifact(s) at finish"
                )
            target = outcome.status
            if job.status == JobStatus.CANCELING:
                target = JobStatus.CANCELED

            if target == JobStatus.DONE:
                if not outcome.output_ref:
                    raise InternalInvariantViolation(f"Job {job_id} done without output reference")
                job.output_ref = outcome.output_ref
                job.outputs = list(outcome.outputs)
                job.progress = 1.0
            else:
                # A canceled or failed job never has an output_ref, but it still
                # lists whatever already reached storage
                stored = list(outcome.outputs)
                if outcome.output_ref and outcome.output_ref not in stored:
                    stored.append(outcome.output_ref)
                job.outputs = stored
            if target == JobStatus.FAILED:
                if outcome.error is None:
                    raise InternalInvariantViolation(f"Job {job_id} failed without error detail")
                job.error = JobError(outcome.error.kind, outcome.error.message)

            self._transition(job, target)
        return self.get(job_id)

    async def acknowledge(self, job_id: str) -> Job:
        """Client acknowledgment of a terminal job; evicts it."""
        async with self._mutate(job_id) as draft:
            if not draft.job.is_terminal:
                raise InvalidRequest(
                    f"Job {job_id} is {draft.job.status.value}; only finished jobs can be acknowledged"
                )
            draft.job.acknowledged = True
        snapshot = self.get(job_id)
        await self._evict(job_id)
        return snapshot

    async def evict_expired(self, retention_seconds: float, now: Optional[datetime] = None) -> List[str]:
        """Drop terminal jobs older than the retention window."""
        now = now or utcnow()
        cutoff = now - timedelta(seconds=retention_seconds)
        expired = [
            job.id
            for job in list(self._jobs.values())
            if job.is_terminal and (job.acknowledged or (job.finished_at or job.updated_at) <= cutoff)
        ]
        for job_id in expired:
            await self._evict(job_id)
        if expired:
            logger.info(f"Evicted {len(expired)} finished job(s)")
        return expired

    # ------------------------------------------------------------------
    # Push channel
    # ------------------------------------------------------------------

    def subscribe(self, job_id: str) -> asyncio.Queue:
        """Queue that receives the current snapshot, then one after every write."""
        if job_id not in self._jobs:
            raise JobNotFound(job_id)
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(job_id, []).append(queue)
        queue.put_nowait(self.get(job_id))
        return queue

    def unsubscribe(self, job_id: str, queue: asyncio.Queue):
        queues = self._subscribers.get(job_id)
        if queues and queue in queues:
            queues.remove(queue)
            if not queues:
                self._subscribers.pop(job_id, None)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def restore(self, cleanup=None) -> List[str]:
        """
        Reload persisted jobs. Returns queued job ids to re-enqueue, oldest first.

        Jobs interrupted mid-run are finished here. Their recorded artifacts
        are deleted through `cleanup` (a CleanupManager) before the terminal
        write.
        """
        if self._repository is None:
            return []
        requeue = []
        for job in await self._repository.load_all():
            async with self._registry_lock:
                if job.id in self._jobs:
                    continue
                self._locks[job.id] = asyncio.Lock()
                self._jobs[job.id] = job
            if job.status == JobStatus.QUEUED:
                requeue.append(job.id)
            elif job.status == JobStatus.RUNNING:
                outcome = JobOutcome.failed("execution_failed", "Interrupted by restart")
                await self._recover(job, outcome, cleanup)
            elif job.status == JobStatus.CANCELING:
                await self._recover(job, JobOutcome.canceled(), cleanup)
        logger.info(f"Restored {len(self._jobs)} job(s), {len(requeue)} to re-enqueue")
        return requeue

    async def _recover(self, job: Job, outcome: JobOutcome, cleanup):
        if job.artifacts:
            if cleanup is not None:
                for path in job.artifacts:
                    await cleanup.track(job.id, path)
                await cleanup.release(job.id)
            else:
                logger.warning(
                    f"Job {job.id}: no cleanup manager, leaving {len(job.artifacts)} artifact(s) on disk"
                )
                await self.set_artifacts(job.id, [])
        await self.finish(job.id, outcome)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _mutate(self, job_id: str):
        """Lock a record and yield a draft; commit it on clean exit."""
        lock = self._locks.get(job_id)
        if lock is None:
            raise JobNotFound(job_id)
        async with lock:
            current = self._jobs.get(job_id)
            if current is None:
                raise JobNotFound(job_id)
            draft = _Draft(current.snapshot())
            yield draft
            if not draft.changed:
                return
            job = draft.job
            job.updated_at = utcnow()
            if job.is_terminal and job.finished_at is None:
                job.finished_at = job.updated_at
            self._jobs[job_id] = job
            await self._after_write(job)

    @staticmethod
    def _transition(job: Job, target: JobStatus):
        if target not in ALLOWED_TRANSITIONS[job.status]:
            raise InvalidTransition(job.id, job.status.value, target.value)
        job.status = target

    async def _after_write(self, job: Job):
        if self._repository is not None:
            try:
                await self._repository.save(job.snapshot())
            except Exception as e:
                # The in-memory record stays authoritative
                logger.error(f"Failed to persist job {job.id}: {e}")
        for queue in self._subscribers.get(job.id, []):
            queue.put_nowait(job.snapshot())

    async def _evict(self, job_id: str):
        async with self._registry_lock:
            job = self._jobs.get(job_id)
            if job is None:
                return
            if not job.is_terminal:
                raise InternalInvariantViolation(f"Refusing to evict {job.status.value} job {job_id}")
            del self._jobs[job_id]
            self._locks.pop(job_id, None)
            self._subscribers.pop(job_id, None)
        if self._repository is not None:
            try:
                await self._repository.delete(job_id)
            except Exception as e:
                logger.error(f"Failed to delete persisted job {job_id}: {e}")
        logger.debug(f"Job {job_id} evicted")
