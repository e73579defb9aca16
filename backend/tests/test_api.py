"""Tests for the HTTP surface."""
import asyncio
import json

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from conftest import FakeAdapter, wait_for_terminal
from cutline.api import routes
from cutline.api.schemas import JobSubmitRequest
from cutline.core import ClipCore
from cutline.main import create_app


def _body(video_file, **kwargs) -> JobSubmitRequest:
    fields = {
        "kind": "manual-clip",
        "input_path": str(video_file),
        "declared_type": "video/mp4",
        "size_bytes": video_file.stat().st_size,
        "start": 1.0,
        "end": 2.0,
    }
    fields.update(kwargs)
    return JobSubmitRequest(**fields)


@pytest.mark.asyncio
async def test_submit_and_fetch_job(settings, video_file):
    async with ClipCore(settings, adapter=FakeAdapter()) as core:
        created = await routes.submit_job(_body(video_file), core=core)
        assert created.status in ("queued", "running", "done")

        await wait_for_terminal(core.dispatcher, created.id)
        fetched = await routes.get_job(created.id, core=core)

    assert fetched.status == "done"
    assert fetched.progress == 1.0
    assert fetched.output_ref == f"storage://{created.id}.mp4"


@pytest.mark.asyncio
async def test_submit_invalid_range_returns_400(settings, video_file):
    async with ClipCore(settings, adapter=FakeAdapter()) as core:
        with pytest.raises(HTTPException) as exc:
            await routes.submit_job(_body(video_file, start=2.0, end=2.0), core=core)
        jobs = await routes.list_jobs(core=core)

    assert exc.value.status_code == 400
    assert jobs == []


@pytest.mark.asyncio
async def test_submit_size_mismatch_returns_400(settings, video_file):
    async with ClipCore(settings, adapter=FakeAdapter()) as core:
        with pytest.raises(HTTPException) as exc:
            await routes.submit_job(_body(video_file, size_bytes=1), core=core)

    assert exc.value.status_code == 400
    assert "Size mismatch" in exc.value.detail


@pytest.mark.asyncio
async def test_unknown_job_returns_404(settings):
    async with ClipCore(settings, adapter=FakeAdapter()) as core:
        for call in (routes.get_job, routes.cancel_job, routes.acknowledge_job, routes.job_events):
            with pytest.raises(HTTPException) as exc:
                await call("missing", core=core)
            assert exc.value.status_code == 404


@pytest.mark.asyncio
async def test_cancel_and_acknowledge(settings, video_file):
    adapter = FakeAdapter(gate=asyncio.Event())
    async with ClipCore(settings, adapter=adapter) as core:
        created = await routes.submit_job(_body(video_file), core=core)
        await adapter.started.wait()

        with pytest.raises(HTTPException) as exc:
            await routes.acknowledge_job(created.id, core=core)
        assert exc.value.status_code == 409

        result = await routes.cancel_job(created.id, core=core)
        assert result.result == "ok"
        await wait_for_terminal(core.dispatcher, created.id)

        again = await routes.cancel_job(created.id, core=core)
        assert again.result == "already_terminal"

        acked = await routes.acknowledge_job(created.id, core=core)
        assert acked.status == "canceled"


@pytest.mark.asyncio
async def test_event_stream_ends_with_terminal_snapshot(settings, video_file):
    async with ClipCore(settings, adapter=FakeAdapter(step_delay=0.01)) as core:
        created = await routes.submit_job(_body(video_file), core=core)
        response = await routes.job_events(created.id, core=core)

        events = []
        async for chunk in response.body_iterator:
            events.append(chunk)

    payloads = [json.loads(e.split("data: ", 1)[1]) for e in events]
    assert all(e.startswith("event: job\n") for e in events)
    assert payloads[-1]["status"] == "done"
    assert [p["progress"] for p in payloads] == sorted(p["progress"] for p in payloads)


def test_app_lifespan_and_health(settings, video_file):
    core = ClipCore(settings, adapter=FakeAdapter())
    app = create_app(settings, core)

    with TestClient(app) as client:
        root = client.get("/")
        assert root.status_code == 200
        assert root.json()["api"] == "/api"

        health = client.get("/api/health")
        assert health.status_code == 200
        data = health.json()
        assert data["worker_count"] == settings.worker_count
        assert data["status"] in ("ok", "degraded")

        response = client.post("/api/jobs", json={
            "kind": "scene-detect",
            "input_path": str(video_file),
            "declared_type": "video/mp4",
            "size_bytes": video_file.stat().st_size,
        })
        assert response.status_code == 202
        job_id = response.json()["id"]

        bad = client.post("/api/jobs", json={
            "kind": "scene-detect",
            "input_path": str(video_file),
            "declared_type": "application/pdf",
            "size_bytes": video_file.stat().st_size,
        })
        assert bad.status_code == 400

        assert client.get(f"/api/jobs/{job_id}").status_code == 200
        assert client.get("/api/jobs/unknown").status_code == 404
        listed = client.get("/api/jobs").json()
        assert [j["id"] for j in listed] == [job_id]

    assert not core.pool.running
