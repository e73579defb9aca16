"""Application configuration."""
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="CUTLINE_",
        extra="ignore",
    )

    # App settings
    app_name: str = "Cutline"
    debug: bool = False

    # Server settings
    host: str = "0.0.0.0"
    port: int = 8000

    # Data directories
    data_dir: Path = Path("./data")
    work_dir: Path = Path("./data/work")  # Per-job scratch space
    storage_dir: Path = Path("./data/storage")  # Local storage backend root

    # Worker pool
    worker_count: int = Field(2, ge=1)  # Concurrent transcodes

    # Intake
    accepted_mime_types: List[str] = [
        "video/mp4",
        "video/quicktime",
        "video/x-matroska",
        "video/webm",
        "video/x-msvideo",
        "video/mpeg",
    ]
    max_upload_bytes: Optional[int] = None

    # FFmpeg settings
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    tool_timeout_factor: float = 10.0  # Multiple of expected real-time duration
    tool_min_timeout_seconds: float = 60.0
    tool_kill_grace_seconds: float = 5.0  # SIGTERM -> SIGKILL

    # Jobs with no progress for this long are force-failed
    stall_timeout_seconds: float = 600.0

    # Scene detection
    scene_threshold: float = 0.3  # FFmpeg scene score, lower = more sensitive
    min_scene_seconds: float = 1.0
    max_scene_clips: Optional[int] = None  # None = clip every scene
    scene_detect_progress_share: float = 0.2  # Share of scene-clip progress

    # Export settings
    export_video_codec: str = "libx264"
    export_video_preset: str = "veryfast"
    export_video_crf: int = 18
    export_audio_codec: str = "aac"
    export_audio_bitrate: str = "192k"
    output_extension: str = ".mp4"

    # Job lifecycle
    job_retention_seconds: float = 3600.0
    eviction_interval_seconds: float = 60.0

    # Cleanup
    cleanup_retries: int = 3
    cleanup_retry_delay_seconds: float = 0.2

    # Persistence
    persist_jobs: bool = False
    database_url: str = "sqlite+aiosqlite:///./data/cutline.db"

    @field_validator("scene_detect_progress_share")
    @classmethod
    def _check_share(cls, value: float) -> float:
        if not 0.0 <= value < 1.0:
            raise ValueError("scene_detect_progress_share must be in [0, 1)")
        return value

    def ensure_directories(self):
        """Create the data, work and storage directories."""
        for directory in (self.data_dir, self.work_dir, self.storage_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def tool_timeout(self, expected_seconds: Optional[float]) -> float:
        """Wall-clock budget for one tool invocation."""
        if not expected_seconds or expected_seconds <= 0:
            return self.tool_min_timeout_seconds
        return max(self.tool_min_timeout_seconds, self.tool_timeout_factor * expected_seconds)


settings = Settings()
