"""Tests for artifact tracking and scoped cleanup."""
import asyncio

import pytest

from cutline.models.job import Job, JobKind, MediaInput
from cutline.store.job_store import JobStore
from cutline.workers import cleanup as cleanup_module
from cutline.workers.cleanup import CleanupManager


def _snapshot(root):
    return sorted(str(p.relative_to(root)) for p in root.rglob("*"))


@pytest.mark.asyncio
async def test_scope_removes_everything_on_success(settings):
    settings.ensure_directories()
    manager = CleanupManager(settings)

    async with manager.scope("job1") as scope:
        first = await scope.temp_path(suffix=".mp4", stem="clip")
        first.write_bytes(b"data")
        second = await scope.temp_path(suffix=".json")
        second.write_text("{}")
        assert scope.workspace.is_dir()
        assert len(manager.pending("job1")) == 3

    assert _snapshot(settings.work_dir) == []
    assert manager.pending("job1") == []
    assert manager.tracked_count == manager.removed_count == 3


@pytest.mark.asyncio
async def test_scope_removes_everything_on_error(settings):
    settings.ensure_directories()
    manager = CleanupManager(settings)

    with pytest.raises(RuntimeError):
        async with manager.scope("job1") as scope:
            path = await scope.temp_path(suffix=".mp4")
            path.write_bytes(b"partial")
            raise RuntimeError("tool crashed")

    assert _snapshot(settings.work_dir) == []


@pytest.mark.asyncio
async def test_scope_removes_everything_when_task_canceled(settings):
    settings.ensure_directories()
    manager = CleanupManager(settings)
    entered = asyncio.Event()

    async def owner():
        async with manager.scope("job1") as scope:
            path = await scope.temp_path(suffix=".mp4")
            path.write_bytes(b"partial")
            entered.set()
            await asyncio.sleep(60)

    task = asyncio.create_task(owner())
    await entered.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert _snapshot(settings.work_dir) == []


@pytest.mark.asyncio
async def test_release_is_idempotent(settings):
    manager = CleanupManager(settings)
    path = settings.work_dir / "loose.tmp"
    settings.ensure_directories()
    path.write_text("x")
    await manager.track("job1", path)

    assert await manager.release("job1") == 1
    assert await manager.release("job1") == 0
    assert not path.exists()


@pytest.mark.asyncio
async def test_already_missing_file_counts_as_removed(settings):
    manager = CleanupManager(settings)
    await manager.track("job1", settings.work_dir / "never-created.mp4")

    await manager.release("job1")

    assert manager.removed_count == 1
    assert manager.abandoned_count == 0


@pytest.mark.asyncio
async def test_track_same_path_once(settings):
    manager = CleanupManager(settings)
    path = settings.work_dir / "a.mp4"
    await manager.track("job1", path)
    await manager.track("job1", path)
    assert manager.pending("job1") == [path]


@pytest.mark.asyncio
async def test_transient_errors_are_retried(settings, monkeypatch):
    settings.cleanup_retries = 3
    manager = CleanupManager(settings)
    settings.ensure_directories()
    path = settings.work_dir / "busy.mp4"
    path.write_text("x")
    await manager.track("job1", path)

    real_remove = cleanup_module._remove_path
    attempts = []

    def flaky_remove(p):
        attempts.append(p)
        if len(attempts) < 3:
            raise PermissionError("file in use")
        real_remove(p)

    monkeypatch.setattr(cleanup_module, "_remove_path", flaky_remove)

    await manager.release("job1")

    assert len(attempts) == 3
    assert not path.exists()
    assert manager.removed_count == 1


@pytest.mark.asyncio
async def test_persistent_errors_are_abandoned_without_raising(settings, monkeypatch):
    settings.cleanup_retries = 2
    manager = CleanupManager(settings)
    await manager.track("job1", settings.work_dir / "stuck.mp4")
    attempts = []

    def broken_remove(p):
        attempts.append(p)
        raise PermissionError("locked")

    monkeypatch.setattr(cleanup_module, "_remove_path", broken_remove)

    assert await manager.release("job1") == 1
    assert len(attempts) == 3
    assert manager.abandoned_count == 1
    assert manager.pending("job1") == []


@pytest.mark.asyncio
async def test_artifacts_mirrored_on_job_record(settings):
    settings.ensure_directories()
    store = JobStore()
    media = MediaInput(path="/tmp/in.mp4", size_bytes=1, mime_type="video/mp4")
    job = await store.add(Job(kind=JobKind.SCENE_DETECT, input=media, output_target="x.json"))
    await store.claim(job.id)
    manager = CleanupManager(settings, store)

    async with manager.scope(job.id) as scope:
        clip = await scope.temp_path(suffix=".mp4")
        assert store.get(job.id).artifacts == [str(scope.workspace), str(clip)]

    assert store.get(job.id).artifacts == []
