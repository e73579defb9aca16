"""Job handlers for the different job kinds."""
import json
import logging
from pathlib import Path
from typing import Awaitable, Callable, Dict, List

from cutline.errors import InvalidRequest
from cutline.models.job import JobKind, JobOutcome
from cutline.models.scene import Scene
from cutline.pipeline.scene_segmentation import select_scenes
from cutline.services.storage import is_storage_ref
from cutline.utils.ffmpeg import ToolExecutionFailed
from cutline.workers.context import JobContext

logger = logging.getLogger(__name__)

JobHandler = Callable[[JobContext], Awaitable[JobOutcome]]

# Slack for container durations that round below the requested end
DURATION_EPSILON = 1e-3


async def resolve_source(ctx: JobContext) -> Path:
    """Local path of the job input, fetching it from storage when needed."""
    path = ctx.job.input.path
    if is_storage_ref(path):
        return await ctx.storage.fetch(path)
    return Path(path)


async def source_duration(ctx: JobContext, source: Path) -> float:
    """Duration of the input, probing it once when it isn't known yet."""
    if ctx.job.input.duration:
        return ctx.job.input.duration
    info = await ctx.adapter.probe(source, ctx.cancel_event)
    await ctx.store.set_input_duration(ctx.job_id, info.duration)
    ctx.job.input.duration = info.duration
    return info.duration


async def write_manifest(ctx: JobContext, data: dict, key: str) -> str:
    """Write a JSON manifest into the job workspace and persist it."""
    manifest_path = await ctx.artifacts.temp_path(suffix=".json", stem="manifest")
    with open(manifest_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)
    ctx.raise_if_canceled()
    return await ctx.persist(manifest_path, key=key)


def _scenes_payload(scenes: List[Scene]) -> List[dict]:
    return [
        {"index": i, "start": s.start, "end": s.end, "duration": s.duration}
        for i, s in enumerate(scenes)
    ]


async def handle_manual_clip(ctx: JobContext) -> JobOutcome:
    """
    Trim [start, end) out of the input.

    Returns:
        Outcome carrying the stored clip reference
    """
    job = ctx.job
    source = await resolve_source(ctx)
    duration = await source_duration(ctx, source)

    if job.end > duration + DURATION_EPSILON:
        raise InvalidRequest(f"End {job.end:.3f}s is past the source duration {duration:.3f}s")

    suffix = Path(job.output_target).suffix or ctx.settings.output_extension
    clip_path = await ctx.artifacts.temp_path(suffix=suffix, stem="clip")

    await ctx.adapter.run_trim(
        source,
        job.start,
        job.end,
        clip_path,
        progress_callback=ctx.report,
        cancel_event=ctx.cancel_event
    )

    ctx.raise_if_canceled()
    ref = await ctx.persist(clip_path, key=job.output_target)
    logger.info(f"Job {job.id}: clip {job.start:.2f}-{job.end:.2f}s stored as {ref}")
    return JobOutcome.done(ref)


async def handle_scene_detect(ctx: JobContext) -> JobOutcome:
    """
    Detect scene boundaries and store them as a JSON manifest.

    Returns:
        Outcome carrying the manifest reference
    """
    job = ctx.job
    source = await resolve_source(ctx)
    duration = await source_duration(ctx, source)

    scenes = await ctx.adapter.run_scene_detect(
        source,
        duration=duration,
        threshold=job.threshold,
        progress_callback=ctx.report,
        cancel_event=ctx.cancel_event
    )
    await ctx.store.set_scenes(job.id, scenes)

    ref = await write_manifest(ctx, {
        "job_id": job.id,
        "source": job.input.path,
        "duration": duration,
        "scene_count": len(scenes),
        "scenes": _scenes_payload(scenes),
    }, key=job.output_target)

    logger.info(f"Job {job.id}: detected {len(scenes)} scene(s)")
    return JobOutcome.done(ref)


async def handle_scene_clip(ctx: JobContext) -> JobOutcome:
    """
    Detect scenes, then trim each selected scene in turn.

    Detection accounts for the first `scene_detect_progress_share` of
    progress; each trim gets an equal share of the rest.

    Returns:
        Outcome carrying the manifest reference and one reference per clip
    """
    job = ctx.job
    settings = ctx.settings
    source = await resolve_source(ctx)
    duration = await source_duration(ctx, source)

    detect_share = settings.scene_detect_progress_share
    scenes = await ctx.adapter.run_scene_detect(
        source,
        duration=duration,
        threshold=job.threshold,
        progress_callback=ctx.progress_span(0.0, detect_share),
        cancel_event=ctx.cancel_event
    )
    await ctx.store.set_scenes(job.id, scenes)
    await ctx.report(detect_share)

    max_scenes = job.max_scenes if job.max_scenes is not None else settings.max_scene_clips
    selected = select_scenes(scenes, settings.min_scene_seconds, max_scenes)
    if not selected:
        raise ToolExecutionFailed("No scenes to clip")

    prefix = job.output_target.rstrip("/")
    suffix = settings.output_extension
    span = (1.0 - detect_share) / len(selected)
    clip_refs = []

    for i, scene in enumerate(selected):
        name = f"scene_{i + 1:03d}"
        clip_path = await ctx.artifacts.temp_path(suffix=suffix, stem=name)
        offset = detect_share + i * span

        await ctx.adapter.run_trim(
            source,
            scene.start,
            scene.end,
            clip_path,
            progress_callback=ctx.progress_span(offset, span),
            cancel_event=ctx.cancel_event
        )

        ctx.raise_if_canceled()
        clip_refs.append(await ctx.persist(clip_path, key=f"{prefix}/{name}{suffix}"))
        await ctx.report(offset + span)
        logger.debug(f"Job {job.id}: scene {i + 1}/{len(selected)} clipped")

    clips = _scenes_payload(selected)
    for clip, ref in zip(clips, clip_refs):
        clip["ref"] = ref

    ref = await write_manifest(ctx, {
        "job_id": job.id,
        "source": job.input.path,
        "duration": duration,
        "scene_count": len(scenes),
        "clip_count": len(clip_refs),
        "clips": clips,
    }, key=f"{prefix}/manifest.json")

    logger.info(f"Job {job.id}: {len(clip_refs)} scene clip(s) stored")
    return JobOutcome.done(ref, clip_refs)


HANDLERS: Dict[JobKind, JobHandler] = {
    JobKind.MANUAL_CLIP: handle_manual_clip,
    JobKind.SCENE_DETECT: handle_scene_detect,
    JobKind.SCENE_CLIP: handle_scene_clip,
}
