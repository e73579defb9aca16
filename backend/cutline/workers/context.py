"""Per-execution state shared between a worker slot and a job handler."""
import asyncio
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from cutline.config import Settings
from cutline.models.job import Job
from cutline.services.storage import StorageBackend
from cutline.store.job_store import JobStore
from cutline.utils.ffmpeg import MediaToolAdapter, ProgressCallback, ToolCanceled
from cutline.workers.cleanup import ArtifactScope


@dataclass
class JobContext:
    """Everything a handler needs to execute one claimed job."""
    job_id: str
    slot: int
    settings: Settings
    store: JobStore
    adapter: MediaToolAdapter
    storage: StorageBackend
    job: Optional[Job] = None
    artifacts: Optional[ArtifactScope] = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    last_progress_at: float = field(default_factory=time.monotonic)
    stalled: bool = False
    stored: List[str] = field(default_factory=list)

    async def persist(self, path: Path, key: str) -> str:
        """Copy a finished file into storage and remember its reference."""
        ref = await self.storage.persist(path, key=key)
        self.stored.append(ref)
        return ref

    async def report(self, fraction: float):
        """Record overall job progress in [0, 1]."""
        self.last_progress_at = time.monotonic()
        await self.store.update_progress(self.job_id, fraction)

    def progress_span(self, offset: float, span: float) -> ProgressCallback:
        """Callback mapping a sub-step's [0, 1] onto [offset, offset + span]."""
        async def callback(fraction: float):
            await self.report(offset + span * fraction)
        return callback

    def request_cancel(self):
        self.cancel_event.set()

    def abort_stalled(self):
        self.stalled = True
        self.cancel_event.set()

    def raise_if_canceled(self):
        if self.cancel_event.is_set():
            raise ToolCanceled(f"Job {self.job_id} canceled")
