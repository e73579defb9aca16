"""Fixed-size worker pool consuming the shared job queue."""
import asyncio
import logging
import time
from typing import Dict, List, Optional

from cutline.config import Settings
from cutline.errors import CutlineError, InternalInvariantViolation, InvalidRequest, JobNotFound, StorageError
from cutline.models.job import JobOutcome, JobStatus
from cutline.services.storage import StorageBackend
from cutline.store.job_store import JobStore
from cutline.utils.ffmpeg import MediaToolAdapter, ToolCanceled, ToolError
from cutline.workers.cleanup import CleanupManager
from cutline.workers.context import JobContext
from cutline.workers.handlers import HANDLERS, JobHandler

logger = logging.getLogger(__name__)


class WorkerPool:
    """
    N execution slots pulling job ids from one FIFO queue.

    Each slot runs at most one job at a time. Queued work is unbounded;
    backpressure is left to callers.
    """

    def __init__(
        self,
        settings: Settings,
        store: JobStore,
        cleanup: CleanupManager,
        adapter: MediaToolAdapter,
        storage: StorageBackend,
        handlers: Optional[Dict] = None
    ):
        self.settings = settings
        self.store = store
        self.cleanup = cleanup
        self.adapter = adapter
        self.storage = storage
        self.capacity = settings.worker_count
        self._handlers: Dict = dict(handlers or HANDLERS)
        self._queue: asyncio.Queue = asyncio.Queue()
        self._slots: List[asyncio.Task] = []
        self._active: Dict[str, JobContext] = {}
        self._fatal: Optional[InternalInvariantViolation] = None

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._slots)

    @property
    def active_jobs(self) -> List[str]:
        return list(self._active)

    @property
    def queued_count(self) -> int:
        return self._queue.qsize()

    @property
    def fatal_error(self) -> Optional[InternalInvariantViolation]:
        return self._fatal

    def start(self):
        """Spawn the slot tasks."""
        if self._slots:
            return
        for slot in range(self.capacity):
            self._slots.append(asyncio.create_task(self._slot_loop(slot), name=f"cutline-slot-{slot}"))
        logger.info(f"Worker pool started with {self.capacity} slot(s)")

    def enqueue(self, job_id: str):
        """Append a job id to the intake queue."""
        if self._fatal is not None:
            raise self._fatal
        self._queue.put_nowait(job_id)

    def signal_cancel(self, job_id: str) -> bool:
        """Fire the cancel handle of a job that is executing right now."""
        ctx = self._active.get(job_id)
        if ctx is None:
            return False
        ctx.request_cancel()
        return True

    async def shutdown(self, timeout: Optional[float] = None):
        """Cancel in-flight jobs cooperatively, then stop every slot."""
        for job_id, ctx in list(self._active.items()):
            if job_id in self.store:
                await self.store.request_cancel(job_id)
            ctx.request_cancel()

        if timeout is None:
            timeout = self.settings.tool_kill_grace_seconds + 1.0
        if self._active:
            deadline = time.monotonic() + timeout
            while self._active and time.monotonic() < deadline:
                await asyncio.sleep(0.05)

        for task in self._slots:
            task.cancel()
        await asyncio.gather(*self._slots, return_exceptions=True)
        self._slots.clear()
        logger.info("Worker pool stopped")

    # ------------------------------------------------------------------
    # Slots
    # ------------------------------------------------------------------

    async def _slot_loop(self, slot: int):
        while True:
            job_id = await self._queue.get()
            try:
                await self._run(slot, job_id)
            except InternalInvariantViolation as e:
                logger.critical(f"Slot {slot}: invariant violated on job {job_id}: {e}")
                self._fatal = e
                self._halt()
                return
            finally:
                self._queue.task_done()

    def _halt(self):
        current = asyncio.current_task()
        for task in self._slots:
            if task is not current:
                task.cancel()

    async def _run(self, slot: int, job_id: str):
        if job_id in self._active:
            raise InternalInvariantViolation(
                f"Job {job_id} dispatched to slot {slot} while already running in slot {self._active[job_id].slot}"
            )

        ctx = JobContext(
            job_id=job_id,
            slot=slot,
            settings=self.settings,
            store=self.store,
            adapter=self.adapter,
            storage=self.storage,
        )
        # Registered before the claim so a cancel that sees `running` finds the handle
        self._active[job_id] = ctx
        try:
            try:
                job = await self.store.claim(job_id)
            except JobNotFound:
                job = None
            if job is None:
                logger.info(f"Slot {slot}: job {job_id} no longer queued, skipping")
                return

            ctx.job = job
            logger.info(f"Slot {slot}: running {job.kind.value} job {job_id}")

            outcome = await self._execute(ctx)
            if outcome.status != JobStatus.DONE:
                # Objects already in storage stay listed on the job
                outcome.outputs = list(ctx.stored)
            final = await self.store.finish(job_id, outcome)

            if final.status == JobStatus.FAILED:
                logger.error(f"Job {job_id} failed ({final.error.kind}): {final.error.message}")
            else:
                logger.info(f"Job {job_id} finished: {final.status.value}")
        finally:
            self._active.pop(job_id, None)

    async def _execute(self, ctx: JobContext) -> JobOutcome:
        """Run the handler inside an artifact scope and map its ending to an outcome."""
        handler: Optional[JobHandler] = self._handlers.get(ctx.job.kind)
        if handler is None:
            return JobOutcome.failed("internal", f"No handler for job kind {ctx.job.kind.value}")

        try:
            async with self.cleanup.scope(ctx.job_id) as artifacts:
                ctx.artifacts = artifacts
                return await self._supervise(ctx, handler)

        except ToolCanceled:
            if ctx.stalled:
                return JobOutcome.failed(
                    "timeout",
                    f"No progress for {self.settings.stall_timeout_seconds:.0f}s"
                )
            return JobOutcome.canceled()
        except ToolError as e:
            return JobOutcome.failed(e.error_kind, str(e))
        except (StorageError, InvalidRequest) as e:
            return JobOutcome.failed(e.error_kind, str(e))
        except InternalInvariantViolation:
            raise
        except CutlineError as e:
            return JobOutcome.failed("internal", str(e))
        except Exception as e:
            logger.exception(f"Job {ctx.job_id} crashed: {e}")
            return JobOutcome.failed("internal", f"{type(e).__name__}: {e}")

    async def _supervise(self, ctx: JobContext, handler: JobHandler) -> JobOutcome:
        """
        Run the handler as its own task next to the stall watchdog.

        Raises:
            ToolCanceled: If the watchdog had to interrupt the handler
        """
        task = asyncio.create_task(handler(ctx), name=f"cutline-job-{ctx.job_id}")
        watchdog = asyncio.create_task(self._watchdog(ctx, task))
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise
        finally:
            watchdog.cancel()
            await asyncio.gather(watchdog, return_exceptions=True)

        if task.cancelled():
            raise ToolCanceled(f"Job {ctx.job_id} interrupted")
        return task.result()

    async def _watchdog(self, ctx: JobContext, task: asyncio.Task):
        """
        Force-fail a job that stops reporting progress.

        Once the cancel handle has fired, for a stall or a client cancel, the
        handler gets the tool kill grace plus one second to wind down. A
        handler still running after that (stuck in storage, say) is
        interrupted.
        """
        limit = self.settings.stall_timeout_seconds
        interval = min(max(limit / 4, 0.01), 5.0)
        while not ctx.cancel_event.is_set():
            await asyncio.sleep(interval)
            idle = time.monotonic() - ctx.last_progress_at
            if idle > limit and not ctx.cancel_event.is_set():
                logger.warning(f"Job {ctx.job_id} made no progress for {idle:.0f}s; aborting")
                ctx.abort_stalled()

        grace = self.settings.tool_kill_grace_seconds + 1.0
        done, _ = await asyncio.wait({task}, timeout=grace)
        if not done:
            logger.warning(f"Job {ctx.job_id} still running {grace:.1f}s after cancel; interrupting")
            task.cancel()
