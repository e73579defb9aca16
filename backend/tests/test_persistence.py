"""Tests for SQL job persistence and restart recovery."""
import pytest

from conftest import FakeAdapter, manual_request, wait_for_terminal
from cutline.core import ClipCore
from cutline.db.repository import SqlJobRepository
from cutline.models.job import Job, JobError, JobKind, JobOutcome, JobStatus, MediaInput
from cutline.models.scene import Scene
from cutline.store.job_store import JobStore
from cutline.workers.cleanup import CleanupManager


def _db_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}"


def _job(**kwargs) -> Job:
    media = MediaInput(path="/tmp/in.mp4", size_bytes=42, mime_type="video/mp4", duration=9.0)
    return Job(kind=JobKind.SCENE_CLIP, input=media, output_target="batch", **kwargs)


@pytest.mark.asyncio
async def test_save_and_load_is_lossless(tmp_path):
    repository = SqlJobRepository(_db_url(tmp_path))
    await repository.open()
    try:
        job = _job(
            status=JobStatus.FAILED,
            progress=0.35,
            threshold=0.45,
            max_scenes=4,
            error=JobError("execution_failed", "exited with 1: broken pipe"),
            outputs=["storage://batch/scene_001.mp4"],
            scenes=[Scene(0.0, 3.0), Scene(3.0, 9.0)],
        )
        job.finished_at = job.updated_at
        await repository.save(job)

        loaded = await repository.load_all()
    finally:
        await repository.close()

    assert loaded == [job]


@pytest.mark.asyncio
async def test_save_updates_existing_row(tmp_path):
    repository = SqlJobRepository(_db_url(tmp_path))
    await repository.open()
    try:
        job = _job()
        await repository.save(job)
        job.status = JobStatus.RUNNING
        job.progress = 0.5
        await repository.save(job)

        loaded = await repository.load_all()
        assert len(loaded) == 1
        assert loaded[0].status == JobStatus.RUNNING
        assert loaded[0].progress == 0.5

        await repository.delete(job.id)
        assert await repository.load_all() == []
    finally:
        await repository.close()


def _leftover_workspace(settings, job: Job):
    """Create the files an interrupted run left behind and record them on the job."""
    workspace = settings.work_dir / job.id
    workspace.mkdir(parents=True)
    clip = workspace / "clip.mp4"
    clip.write_bytes(b"partial")
    job.artifacts = [str(workspace), str(clip)]
    return workspace, clip


@pytest.mark.asyncio
async def test_restore_recovers_interrupted_jobs(settings, tmp_path):
    repository = SqlJobRepository(_db_url(tmp_path))
    await repository.open()
    queued = _job()
    running = _job(status=JobStatus.RUNNING, progress=0.4)
    canceling = _job(status=JobStatus.CANCELING)
    done = _job(status=JobStatus.DONE, progress=1.0, output_ref="storage://batch/manifest.json")
    running_dir, running_clip = _leftover_workspace(settings, running)
    canceling_dir, _ = _leftover_workspace(settings, canceling)
    for job in (queued, running, canceling, done):
        await repository.save(job)

    store = JobStore(repository=repository)
    cleanup = CleanupManager(settings, store)
    requeue = await store.restore(cleanup)
    try:
        assert not running_clip.exists()
        assert not running_dir.exists()
        assert not canceling_dir.exists()
        assert list(settings.work_dir.iterdir()) == []
        assert store.get(canceling.id).artifacts == []

        assert requeue == [queued.id]
        assert store.get(queued.id).status == JobStatus.QUEUED

        interrupted = store.get(running.id)
        assert interrupted.status == JobStatus.FAILED
        assert interrupted.error.kind == "execution_failed"
        assert interrupted.artifacts == []

        assert store.get(canceling.id).status == JobStatus.CANCELED
        assert store.get(done.id).output_ref == "storage://batch/manifest.json"

        # Recovery is written back
        persisted = {j.id: j for j in await repository.load_all()}
        assert persisted[running.id].status == JobStatus.FAILED
        assert persisted[canceling.id].status == JobStatus.CANCELED
    finally:
        await repository.close()


@pytest.mark.asyncio
async def test_store_writes_through(tmp_path):
    repository = SqlJobRepository(_db_url(tmp_path))
    await repository.open()
    try:
        store = JobStore(repository=repository)
        job = await store.add(_job())
        await store.claim(job.id)
        await store.finish(job.id, JobOutcome.done("storage://batch/manifest.json", ["storage://batch/a.mp4"]))

        (persisted,) = await repository.load_all()
        assert persisted == store.get(job.id)

        await store.acknowledge(job.id)
        assert await repository.load_all() == []
    finally:
        await repository.close()


@pytest.mark.asyncio
async def test_core_requeues_jobs_after_restart(settings, media, tmp_path):
    settings.persist_jobs = True
    settings.database_url = _db_url(tmp_path)

    # First process accepts the job but never starts its pool
    first = ClipCore(settings, adapter=FakeAdapter())
    await first.repository.open()
    job_id = await first.dispatcher.submit(manual_request(media))
    await first.repository.close()

    async with ClipCore(settings, adapter=FakeAdapter()) as second:
        job = await wait_for_terminal(second.dispatcher, job_id)

    assert job.status == JobStatus.DONE
    assert job.output_ref == f"storage://{job_id}.mp4"


@pytest.mark.asyncio
async def test_core_start_deletes_files_of_interrupted_jobs(settings, tmp_path):
    settings.persist_jobs = True
    settings.database_url = _db_url(tmp_path)
    repository = SqlJobRepository(settings.database_url)
    await repository.open()
    running = _job(status=JobStatus.RUNNING, progress=0.6)
    workspace, clip = _leftover_workspace(settings, running)
    await repository.save(running)
    await repository.close()

    async with ClipCore(settings, adapter=FakeAdapter()) as core:
        job = core.dispatcher.status(running.id)

    assert job.status == JobStatus.FAILED
    assert job.artifacts == []
    assert not clip.exists()
    assert not workspace.exists()
    assert core.cleanup.removed_count == 2
