"""Temporary artifact tracking and guaranteed removal."""
import asyncio
import logging
import shutil
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, List, Optional

from cutline.config import Settings
from cutline.store.job_store import JobStore

logger = logging.getLogger(__name__)


def _remove_path(path: Path):
    """Delete a file or directory tree. Missing paths are fine."""
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink(missing_ok=True)


class ArtifactScope:
    """Artifacts of one job execution; handed out by CleanupManager.scope()."""

    def __init__(self, manager: "CleanupManager", job_id: str, workspace: Path):
        self.manager = manager
        self.job_id = job_id
        self.workspace = workspace

    async def track(self, path: str | Path) -> Path:
        return await self.manager.track(self.job_id, path)

    async def temp_path(self, suffix: str = "", stem: Optional[str] = None) -> Path:
        """Reserve and track a fresh path inside the job workspace."""
        name = f"{stem or uuid.uuid4().hex[:12]}{suffix}"
        return await self.track(self.workspace / name)


class CleanupManager:
    """Registers every temp file a job creates and deletes them exactly once."""

    def __init__(self, settings: Settings, store: Optional[JobStore] = None):
        self.settings = settings
        self.store = store
        self._artifacts: Dict[str, List[Path]] = {}
        self._lock = asyncio.Lock()
        self.tracked_count = 0
        self.removed_count = 0
        self.abandoned_count = 0

    def pending(self, job_id: str) -> List[Path]:
        """Artifacts still registered for a job."""
        return list(self._artifacts.get(job_id, []))

    async def track(self, job_id: str, path: str | Path) -> Path:
        """Register a temporary file or directory owned by a job."""
        path = Path(path)
        async with self._lock:
            paths = self._artifacts.setdefault(job_id, [])
            if path in paths:
                return path
            paths.append(path)
            self.tracked_count += 1
            snapshot = [str(p) for p in paths]
        await self._sync_store(job_id, snapshot)
        return path

    async def release(self, job_id: str) -> int:
        """
        Delete every artifact tracked for a job.

        Idempotent and safe when files are already gone. Transient OS
        errors are retried a bounded number of times, then logged and
        abandoned. Never raises.

        Returns:
            Number of artifacts released by this call
        """
        async with self._lock:
            paths = self._artifacts.pop(job_id, [])

        # Files before the directories that contain them
        for path in reversed(paths):
            if await self._delete_with_retries(path):
                self.removed_count += 1
            else:
                self.abandoned_count += 1

        if paths:
            logger.debug(f"Released {len(paths)} artifact(s) for job {job_id}")
        await self._sync_store(job_id, [])
        return len(paths)

    @asynccontextmanager
    async def scope(self, job_id: str):
        """
        Scoped acquisition: yields an ArtifactScope whose artifacts are
        released when the block exits, however it exits.
        """
        workspace = self.settings.work_dir / job_id
        try:
            await self.track(job_id, workspace)
            workspace.mkdir(parents=True, exist_ok=True)
            yield ArtifactScope(self, job_id, workspace)
        finally:
            # Shielded so a canceled owner still cleans up
            await asyncio.shield(self.release(job_id))

    async def _delete_with_retries(self, path: Path) -> bool:
        attempts = max(1, self.settings.cleanup_retries + 1)
        for attempt in range(1, attempts + 1):
            try:
                await asyncio.to_thread(_remove_path, path)
                return True
            except FileNotFoundError:
                return True
            except OSError as e:
                if attempt == attempts:
                    logger.error(f"Giving up on removing {path} after {attempts} attempt(s): {e}")
                    return False
                logger.warning(f"Removing {path} failed (attempt {attempt}/{attempts}): {e}")
                await asyncio.sleep(self.settings.cleanup_retry_delay_seconds)
        return False

    async def _sync_store(self, job_id: str, paths: List[str]):
        if self.store is None or job_id not in self.store:
            return
        await self.store.set_artifacts(job_id, paths)
