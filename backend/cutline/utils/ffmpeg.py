"""FFmpeg and ffprobe adapter.

Every tool call runs as an asyncio subprocess with a hard wall-clock
timeout and a cancel event. When either fires, the process gets SIGTERM,
then SIGKILL after a grace period, and a typed ToolError is raised.
"""
import asyncio
import json
import logging
import shutil
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

from cutline.config import Settings
from cutline.errors import CutlineError
from cutline.models.invocation import ToolCommand, ToolInvocation
from cutline.models.scene import Scene
from cutline.pipeline.scene_segmentation import scenes_from_cuts

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], Awaitable[None]]
LineHandler = Callable[[str], Awaitable[None]]

# Lines of stderr kept for error detail
STDERR_TAIL_LINES = 40


@dataclass
class VideoInfo:
    """Video metadata container."""
    duration: float
    width: int
    height: int
    fps: float
    video_codec: str
    audio_codec: Optional[str]
    format_name: str
    size_bytes: Optional[int]


class ToolError(CutlineError):
    """Media tool invocation failed."""
    error_kind = "execution_failed"


class ToolTimeout(ToolError):
    """Invocation exceeded its wall-clock budget and was killed."""
    error_kind = "timeout"


class ToolExecutionFailed(ToolError):
    """Non-zero exit or malformed output."""
    error_kind = "execution_failed"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ToolCanceled(ToolError):
    """Invocation was canceled through its cancel event."""
    error_kind = "canceled"


def check_ffmpeg_available(settings: Settings) -> bool:
    """Check if ffmpeg is available."""
    return shutil.which(settings.ffmpeg_path) is not None


def check_ffprobe_available(settings: Settings) -> bool:
    """Check if ffprobe is available."""
    return shutil.which(settings.ffprobe_path) is not None


def parse_out_time(line: str) -> Optional[float]:
    """
    Seconds encoded so far from an ffmpeg `-progress` line.

    ffmpeg reports both out_time_ms and out_time_us in microseconds.
    Returns None for other keys and for N/A values.
    """
    key, sep, value = line.partition("=")
    if not sep or key not in ("out_time_us", "out_time_ms"):
        return None
    try:
        return int(value) / 1_000_000
    except ValueError:
        return None


def parse_pts_time(line: str) -> Optional[float]:
    """Timestamp from a showinfo line, or None when the line carries none."""
    if "pts_time:" not in line:
        return None
    for part in line.split():
        if part.startswith("pts_time:"):
            try:
                return float(part.split(":", 1)[1])
            except ValueError:
                raise ToolExecutionFailed(f"Malformed showinfo output: {line.strip()}")
    # "pts_time:" glued to a previous token
    _, _, rest = line.partition("pts_time:")
    try:
        return float(rest.split()[0])
    except (ValueError, IndexError):
        raise ToolExecutionFailed(f"Malformed showinfo output: {line.strip()}")


class _ProgressThrottle:
    """Forward fractional progress in steps of at least 1%."""

    def __init__(self, callback: Optional[ProgressCallback], total_seconds: Optional[float]):
        self._callback = callback
        self._total = total_seconds
        self._last = 0.0

    async def update(self, seconds: float):
        if not self._callback or not self._total or self._total <= 0:
            return
        fraction = min(1.0, max(0.0, seconds / self._total))
        if fraction - self._last >= 0.01:
            self._last = fraction
            await self._callback(fraction)


class MediaToolAdapter:
    """Runs trim, scene detection and probe operations through ffmpeg."""

    def __init__(self, settings: Settings):
        self.settings = settings

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def probe(
        self,
        video_path: str | Path,
        cancel_event: Optional[asyncio.Event] = None
    ) -> VideoInfo:
        """
        Get video metadata using ffprobe.

        Args:
            video_path: Path to video file
            cancel_event: Optional cancellation handle

        Returns:
            VideoInfo with video metadata

        Raises:
            ToolExecutionFailed: If ffprobe fails or prints unparseable JSON
        """
        video_path = Path(video_path)
        if not video_path.exists():
            raise ToolExecutionFailed(f"Video file not found: {video_path}")

        invocation = self._invocation(ToolCommand.PROBE, [video_path], None, {}, cancel_event, None)
        cmd = [
            self.settings.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            str(video_path)
        ]

        stdout_lines: List[str] = []

        async def collect(line: str):
            stdout_lines.append(line)

        await self._execute(invocation, cmd, stdout_handler=collect)

        try:
            data = json.loads("\n".join(stdout_lines))
        except json.JSONDecodeError as e:
            raise ToolExecutionFailed(f"Failed to parse ffprobe output: {e}")

        # Find video stream
        video_stream = None
        audio_stream = None
        for stream in data.get("streams", []):
            if stream.get("codec_type") == "video" and video_stream is None:
                video_stream = stream
            elif stream.get("codec_type") == "audio" and audio_stream is None:
                audio_stream = stream

        if not video_stream:
            raise ToolExecutionFailed("No video stream found")

        # Parse frame rate
        fps_str = video_stream.get("r_frame_rate", "30/1")
        try:
            if "/" in fps_str:
                num, den = fps_str.split("/")
                fps = float(num) / float(den) if float(den) > 0 else 30.0
            else:
                fps = float(fps_str)
        except ValueError:
            fps = 30.0

        # Get duration
        fmt = data.get("format", {})
        try:
            duration = float(fmt.get("duration") or video_stream.get("duration") or 0)
            size = int(fmt["size"]) if fmt.get("size") else None
        except (TypeError, ValueError) as e:
            raise ToolExecutionFailed(f"Malformed ffprobe metadata: {e}")

        return VideoInfo(
            duration=duration,
            width=int(video_stream.get("width", 0)),
            height=int(video_stream.get("height", 0)),
            fps=fps,
            video_codec=video_stream.get("codec_name", "unknown"),
            audio_codec=audio_stream.get("codec_name") if audio_stream else None,
            format_name=fmt.get("format_name", "unknown"),
            size_bytes=size,
        )

    async def run_trim(
        self,
        source_path: str | Path,
        start_time: float,
        end_time: float,
        output_path: str | Path,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> Path:
        """
        Re-encode [start_time, end_time) of the source into output_path.

        Args:
            source_path: Path to source video
            start_time: Start time in seconds
            end_time: End time in seconds
            output_path: Path for output file
            progress_callback: Optional async callback(fraction)
            cancel_event: Optional cancellation handle

        Returns:
            Path to the trimmed clip
        """
        source_path = Path(source_path)
        output_path = Path(output_path)
        duration = end_time - start_time
        if duration <= 0:
            raise ToolExecutionFailed(f"Empty trim range {start_time}-{end_time}")

        # Ensure output directory exists
        output_path.parent.mkdir(parents=True, exist_ok=True)

        invocation = self._invocation(
            ToolCommand.TRIM,
            [source_path],
            output_path,
            {"start": start_time, "end": end_time},
            cancel_event,
            duration,
        )

        s = self.settings
        cmd = [
            s.ffmpeg_path,
            "-y",
            "-hide_banner",
            "-nostdin",
            "-ss", f"{start_time:.3f}",
            "-i", str(source_path),
            "-t", f"{duration:.3f}",
            "-c:v", s.export_video_codec,
            "-preset", s.export_video_preset,
            "-crf", str(s.export_video_crf),
            "-c:a", s.export_audio_codec,
            "-b:a", s.export_audio_bitrate,
            "-movflags", "+faststart",
            "-progress", "pipe:1",
            "-nostats",
            str(output_path)
        ]

        throttle = _ProgressThrottle(progress_callback, duration)

        async def on_progress(line: str):
            out_time = parse_out_time(line)
            if out_time is not None:
                await throttle.update(out_time)

        await self._execute(invocation, cmd, stdout_handler=on_progress)

        if not output_path.exists() or output_path.stat().st_size == 0:
            raise ToolExecutionFailed(f"Trim produced no output at {output_path}")

        return output_path

    async def run_scene_detect(
        self,
        video_path: str | Path,
        duration: Optional[float] = None,
        threshold: Optional[float] = None,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> List[Scene]:
        """
        Detect scenes in a video using FFmpeg.

        Progress is decoded time over duration, which tracks how much of
        the file has been scanned.

        Args:
            video_path: Path to video file
            duration: Video duration in seconds (probed when omitted)
            threshold: Scene detection threshold (0-1), lower = more sensitive
            progress_callback: Optional async callback(fraction)
            cancel_event: Optional cancellation handle

        Returns:
            Scenes sorted by start time, non-overlapping
        """
        video_path = Path(video_path)
        if threshold is None:
            threshold = self.settings.scene_threshold
        if duration is None:
            duration = (await self.probe(video_path, cancel_event)).duration

        invocation = self._invocation(
            ToolCommand.SCENE_DETECT,
            [video_path],
            None,
            {"threshold": threshold},
            cancel_event,
            duration,
        )

        cmd = [
            self.settings.ffmpeg_path,
            "-hide_banner",
            "-nostdin",
            "-i", str(video_path),
            "-an",
            "-vf", f"select='gt(scene,{threshold})',showinfo",
            "-f", "null",
            "-progress", "pipe:1",
            "-nostats",
            "-"
        ]

        cuts: List[float] = []
        throttle = _ProgressThrottle(progress_callback, duration)

        async def on_progress(line: str):
            out_time = parse_out_time(line)
            if out_time is not None:
                await throttle.update(out_time)

        async def on_showinfo(line: str):
            timestamp = parse_pts_time(line)
            if timestamp is not None:
                cuts.append(timestamp)

        await self._execute(invocation, cmd, stdout_handler=on_progress, stderr_handler=on_showinfo)

        scenes = scenes_from_cuts(cuts, duration)
        logger.debug(f"Scene detection on {video_path.name}: {len(cuts)} cut(s), {len(scenes)} scene(s)")
        return scenes

    # ------------------------------------------------------------------
    # Process lifecycle
    # ------------------------------------------------------------------

    def _invocation(self, command, inputs, output, params, cancel_event, expected_seconds) -> ToolInvocation:
        invocation = ToolInvocation(
            command=command,
            inputs=list(inputs),
            output=output,
            params=params,
            timeout=self.settings.tool_timeout(expected_seconds),
        )
        if cancel_event is not None:
            invocation.cancel_event = cancel_event
        return invocation

    async def _execute(
        self,
        invocation: ToolInvocation,
        cmd: List[str],
        stdout_handler: Optional[LineHandler] = None,
        stderr_handler: Optional[LineHandler] = None
    ) -> int:
        """
        Run one tool process to completion, timeout or cancellation.

        Raises:
            ToolCanceled: cancel event set before or during the run
            ToolTimeout: wall-clock budget exceeded
            ToolExecutionFailed: spawn failure or non-zero exit
        """
        if invocation.cancel_requested:
            raise ToolCanceled(f"{invocation.describe()} canceled before start")

        logger.debug(f"Running {invocation.describe()}: {' '.join(cmd)}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            raise ToolExecutionFailed(f"Could not start {cmd[0]}: {e}")

        stderr_tail: deque = deque(maxlen=STDERR_TAIL_LINES)

        async def pump(stream, handler, tail=None):
            while True:
                line = await stream.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="ignore").rstrip()
                if tail is not None:
                    tail.append(text)
                if handler:
                    await handler(text)

        async def drain() -> int:
            await asyncio.gather(
                pump(proc.stdout, stdout_handler),
                pump(proc.stderr, stderr_handler, stderr_tail),
            )
            return await proc.wait()

        run_task = asyncio.ensure_future(drain())
        cancel_task = asyncio.ensure_future(invocation.cancel_event.wait())

        try:
            done, _ = await asyncio.wait(
                {run_task, cancel_task},
                timeout=invocation.timeout,
                return_when=asyncio.FIRST_COMPLETED
            )

            if run_task in done:
                try:
                    returncode = run_task.result()
                except Exception:
                    await self._terminate(proc)
                    raise
            elif cancel_task in done:
                await self._terminate(proc)
                logger.info(f"{invocation.describe()} canceled")
                raise ToolCanceled(f"{invocation.describe()} canceled")
            else:
                await self._terminate(proc)
                logger.warning(f"{invocation.describe()} timed out after {invocation.timeout:.0f}s")
                raise ToolTimeout(f"{invocation.describe()} exceeded {invocation.timeout:.0f}s")

        except asyncio.CancelledError:
            # Owning task was canceled (shutdown); don't leave the process behind
            await self._terminate(proc)
            raise

        finally:
            cancel_task.cancel()
            if not run_task.done():
                run_task.cancel()
            await asyncio.gather(run_task, cancel_task, return_exceptions=True)

        if returncode != 0:
            detail = "\n".join(stderr_tail) or "no output"
            raise ToolExecutionFailed(f"{invocation.describe()} exited with {returncode}: {detail}")

        return returncode

    async def _terminate(self, proc: asyncio.subprocess.Process):
        """SIGTERM, then SIGKILL once the grace period runs out."""
        if proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.settings.tool_kill_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"Process {proc.pid} ignored SIGTERM; killing")
            try:
                proc.kill()
            except ProcessLookupError:
                return
            await proc.wait()
