"""Composition root: one explicitly owned instance of every core component."""
import asyncio
import logging
from typing import Optional

from cutline.config import Settings
from cutline.db.repository import SqlJobRepository
from cutline.services.dispatcher import JobDispatcher
from cutline.services.storage import LocalStorage, StorageBackend
from cutline.store.job_store import JobStore
from cutline.utils.ffmpeg import MediaToolAdapter
from cutline.workers.cleanup import CleanupManager
from cutline.workers.pool import WorkerPool

logger = logging.getLogger(__name__)


class ClipCore:
    """
    Owns the job store, cleanup manager, tool adapter, worker pool and
    dispatcher for one process.

    Usage:
        async with ClipCore(settings) as core:
            job_id = await core.dispatcher.submit(request)
    """

    def __init__(
        self,
        settings: Settings,
        adapter: Optional[MediaToolAdapter] = None,
        storage: Optional[StorageBackend] = None,
        repository: Optional[SqlJobRepository] = None
    ):
        self.settings = settings
        if repository is None and settings.persist_jobs:
            repository = SqlJobRepository(settings.database_url, echo=settings.debug)
        self.repository = repository
        self.store = JobStore(repository=repository)
        self.cleanup = CleanupManager(settings, self.store)
        self.adapter = adapter or MediaToolAdapter(settings)
        self.storage = storage or LocalStorage(settings.storage_dir)
        self.pool = WorkerPool(settings, self.store, self.cleanup, self.adapter, self.storage)
        self.dispatcher = JobDispatcher(settings, self.store, self.pool)
        self._janitor: Optional[asyncio.Task] = None
        self._started = False

    async def start(self):
        """Create directories, restore persisted jobs and start the slots."""
        if self._started:
            return
        self.settings.ensure_directories()

        if self.repository is not None:
            await self.repository.open()
            for job_id in await self.store.restore(self.cleanup):
                self.pool.enqueue(job_id)

        self.pool.start()
        self._janitor = asyncio.create_task(self._evict_loop(), name="cutline-janitor")
        self._started = True
        logger.info(f"{self.settings.app_name} core started")

    async def shutdown(self):
        """Stop the janitor and the pool, then close persistence."""
        if not self._started:
            return
        if self._janitor is not None:
            self._janitor.cancel()
            await asyncio.gather(self._janitor, return_exceptions=True)
            self._janitor = None
        await self.pool.shutdown()
        if self.repository is not None:
            await self.repository.close()
        self._started = False
        logger.info(f"{self.settings.app_name} core stopped")

    async def __aenter__(self) -> "ClipCore":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.shutdown()

    async def _evict_loop(self):
        """Drop finished jobs once their retention window has passed."""
        while True:
            await asyncio.sleep(self.settings.eviction_interval_seconds)
            await self.store.evict_expired(self.settings.job_retention_seconds)
