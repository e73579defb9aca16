"""Storage collaborator: where finished outputs go."""
import asyncio
import logging
import shutil
from pathlib import Path
from typing import Optional, Protocol

from cutline.errors import StorageError

logger = logging.getLogger(__name__)

StorageRef = str

STORAGE_SCHEME = "storage://"


class StorageBackend(Protocol):
    """Reads and writes bytes on behalf of the core."""

    async def persist(self, path: Path, key: Optional[str] = None) -> StorageRef:
        ...

    async def fetch(self, ref: StorageRef) -> Path:
        ...


def is_storage_ref(value: str) -> bool:
    return value.startswith(STORAGE_SCHEME)


class LocalStorage:
    """Storage backend rooted at a local directory."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def _resolve(self, key: str) -> Path:
        path = (self.root / key).resolve()
        root = self.root.resolve()
        if root != path and root not in path.parents:
            raise StorageError(f"Key escapes storage root: {key}")
        return path

    async def persist(self, path: Path, key: Optional[str] = None) -> StorageRef:
        """Copy a file into storage and return its reference."""
        path = Path(path)
        key = key or path.name
        destination = self._resolve(key)
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(shutil.copy2, path, destination)
        except OSError as e:
            raise StorageError(f"Failed to persist {path.name} as {key}: {e}")
        logger.debug(f"Persisted {path} -> {destination}")
        return f"{STORAGE_SCHEME}{key}"

    async def fetch(self, ref: StorageRef) -> Path:
        """Local path for a reference."""
        if not is_storage_ref(ref):
            raise StorageError(f"Not a storage reference: {ref}")
        path = self._resolve(ref[len(STORAGE_SCHEME):])
        if not path.exists():
            raise StorageError(f"Stored object missing: {ref}")
        return path
