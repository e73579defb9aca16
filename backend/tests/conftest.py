"""Shared fixtures and fakes."""
import asyncio
import json
from pathlib import Path
from typing import List, Optional

import pytest

from cutline.config import Settings
from cutline.models.job import JobKind, JobRequest, MediaInput
from cutline.pipeline.scene_segmentation import scenes_from_cuts
from cutline.utils.ffmpeg import ToolCanceled, VideoInfo


class FakeAdapter:
    """
    Stands in for MediaToolAdapter.

    Trims write a small JSON file describing the cut. When `gate` is set,
    every trim step blocks until the gate opens or the cancel event fires.
    """

    def __init__(
        self,
        duration: float = 10.0,
        cuts: Optional[List[float]] = None,
        step_delay: float = 0.0,
        gate: Optional[asyncio.Event] = None,
        trim_error: Optional[Exception] = None,
        stall: bool = False,
    ):
        self.duration = duration
        self.cuts = list(cuts or [])
        self.step_delay = step_delay
        self.gate = gate
        self.trim_error = trim_error
        self.stall = stall
        self.calls: List[tuple] = []
        self.running = 0
        self.max_running = 0
        self.started = asyncio.Event()

    async def _pause(self, cancel_event: Optional[asyncio.Event]):
        cancel_event = cancel_event or asyncio.Event()
        if self.gate is not None or self.stall:
            waiters = [asyncio.ensure_future(cancel_event.wait())]
            if self.gate is not None and not self.stall:
                waiters.append(asyncio.ensure_future(self.gate.wait()))
            try:
                await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for w in waiters:
                    w.cancel()
        else:
            await asyncio.sleep(self.step_delay)
        if cancel_event.is_set():
            raise ToolCanceled("canceled")

    async def probe(self, video_path, cancel_event=None):
        self.calls.append(("probe", str(video_path)))
        if cancel_event is not None and cancel_event.is_set():
            raise ToolCanceled("canceled")
        return VideoInfo(
            duration=self.duration,
            width=1280,
            height=720,
            fps=25.0,
            video_codec="h264",
            audio_codec="aac",
            format_name="mp4",
            size_bytes=None,
        )

    async def run_trim(self, source_path, start_time, end_time, output_path,
                       progress_callback=None, cancel_event=None):
        self.calls.append(("trim", start_time, end_time))
        if cancel_event is not None and cancel_event.is_set():
            raise ToolCanceled("canceled")
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        self.started.set()
        try:
            for step in (0.25, 0.5, 0.75, 1.0):
                await self._pause(cancel_event)
                if self.trim_error is not None:
                    raise self.trim_error
                if progress_callback:
                    await progress_callback(step)
            output_path = Path(output_path)
            output_path.write_text(json.dumps({"start": start_time, "end": end_time}))
            return output_path
        finally:
            self.running -= 1

    async def run_scene_detect(self, video_path, duration=None, threshold=None,
                               progress_callback=None, cancel_event=None):
        self.calls.append(("scene-detect", threshold))
        if cancel_event is not None and cancel_event.is_set():
            raise ToolCanceled("canceled")
        for step in (0.5, 1.0):
            await self._pause(cancel_event)
            if progress_callback:
                await progress_callback(step)
        return scenes_from_cuts(self.cuts, duration if duration is not None else self.duration)

    def count(self, command: str) -> int:
        return sum(1 for call in self.calls if call[0] == command)


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.01):
    """Poll until predicate() is truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


async def wait_for_terminal(dispatcher, job_id: str, timeout: float = 5.0):
    await wait_until(lambda: dispatcher.status(job_id).is_terminal, timeout)
    return dispatcher.status(job_id)


@pytest.fixture
def settings(tmp_path):
    """Settings isolated under tmp_path with short timeouts."""
    return Settings(
        _env_file=None,
        data_dir=tmp_path / "data",
        work_dir=tmp_path / "work",
        storage_dir=tmp_path / "storage",
        worker_count=2,
        tool_min_timeout_seconds=5.0,
        tool_kill_grace_seconds=1.0,
        stall_timeout_seconds=30.0,
        cleanup_retry_delay_seconds=0.0,
        eviction_interval_seconds=3600.0,
        persist_jobs=False,
    )


@pytest.fixture
def video_file(tmp_path) -> Path:
    path = tmp_path / "input.mp4"
    path.write_bytes(b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 1000)
    return path


@pytest.fixture
def media(video_file) -> MediaInput:
    return MediaInput(
        path=str(video_file),
        size_bytes=video_file.stat().st_size,
        mime_type="video/mp4",
    )


def manual_request(media: MediaInput, start: float = 2.0, end: float = 5.0, **kwargs) -> JobRequest:
    return JobRequest(kind=JobKind.MANUAL_CLIP, input=media, start=start, end=end, **kwargs)
