"""
CLI tool to run one clipping job on a local video file.

Usage:
    cutline clip <video_path> --start 2 --end 5 [--output-dir <dir>]
    cutline scenes <video_path> [--threshold 0.3]
    cutline scene-clip <video_path> [--max-scenes 5] [--workers 1]

Example:
    cutline scene-clip ~/Videos/match.mp4 --output-dir ./output
"""
import argparse
import asyncio
import json
import logging
import mimetypes
import sys
from pathlib import Path
from typing import List, Optional

from cutline.config import Settings
from cutline.core import ClipCore
from cutline.errors import InvalidRequest
from cutline.models.job import JobKind, JobRequest, JobStatus
from cutline.services.intake import accept_upload

logger = logging.getLogger(__name__)

COMMANDS = {
    "clip": JobKind.MANUAL_CLIP,
    "scenes": JobKind.SCENE_DETECT,
    "scene-clip": JobKind.SCENE_CLIP,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cutline", description="Run a clipping job on a video file")
    parser.add_argument("--output-dir", type=Path, default=None, help="Where outputs are stored")
    parser.add_argument("--work-dir", type=Path, default=None, help="Scratch directory for temp files")
    parser.add_argument("--workers", type=int, default=None, help="Worker slots")
    parser.add_argument("--verbose", "-v", action="store_true")

    sub = parser.add_subparsers(dest="command", required=True)

    clip = sub.add_parser("clip", help="Cut [start, end) out of a video")
    clip.add_argument("video", type=Path)
    clip.add_argument("--start", type=float, required=True)
    clip.add_argument("--end", type=float, required=True)
    clip.add_argument("--name", default=None, help="Output name")

    scenes = sub.add_parser("scenes", help="Detect scene boundaries")
    scenes.add_argument("video", type=Path)
    scenes.add_argument("--threshold", type=float, default=None)

    scene_clip = sub.add_parser("scene-clip", help="Detect scenes and clip each one")
    scene_clip.add_argument("video", type=Path)
    scene_clip.add_argument("--threshold", type=float, default=None)
    scene_clip.add_argument("--max-scenes", type=int, default=None)

    return parser


def settings_from_args(args: argparse.Namespace) -> Settings:
    overrides = {"debug": args.verbose}
    if args.output_dir is not None:
        overrides["storage_dir"] = args.output_dir
    if args.work_dir is not None:
        overrides["work_dir"] = args.work_dir
    if args.workers is not None:
        overrides["worker_count"] = args.workers
    return Settings(**overrides)


def request_from_args(args: argparse.Namespace, settings: Settings) -> JobRequest:
    video: Path = args.video
    if not video.is_file():
        raise InvalidRequest(f"Video not found: {video}")
    declared_type = mimetypes.guess_type(video.name)[0] or "application/octet-stream"
    media = accept_upload(video, declared_type, video.stat().st_size, settings)

    return JobRequest(
        kind=COMMANDS[args.command],
        input=media,
        start=getattr(args, "start", None),
        end=getattr(args, "end", None),
        output_name=getattr(args, "name", None),
        threshold=getattr(args, "threshold", None),
        max_scenes=getattr(args, "max_scenes", None),
    )


async def run_job(settings: Settings, request: JobRequest) -> dict:
    """Run a single job to completion and return its final snapshot."""
    async with ClipCore(settings) as core:
        job_id = await core.dispatcher.submit(request)
        last = None
        async for job in core.dispatcher.watch(job_id):
            pct = job.progress * 100
            if last is None or pct - last >= 5 or job.is_terminal:
                logger.info(f"[{pct:3.0f}%] {job.status.value}")
                last = pct
        return core.dispatcher.status(job_id).to_dict()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
    )

    settings = settings_from_args(args)
    try:
        request = request_from_args(args, settings)
        result = asyncio.run(run_job(settings, request))
    except InvalidRequest as e:
        logger.error(f"Invalid request: {e}")
        return 2

    print(json.dumps(result, indent=2))
    return 0 if result["status"] == JobStatus.DONE.value else 1


if __name__ == "__main__":
    sys.exit(main())
