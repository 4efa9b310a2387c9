"""Pydantic models for configuration, the ABR ladder and progress events."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ResolutionTask(BaseModel):
    """One rung of the ABR ladder. Shared read-only across all jobs."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="Rung name, also the variant folder (e.g. 360p)")
    width: int = Field(..., gt=0, description="Target frame width in pixels")
    height: int = Field(..., gt=0, description="Target frame height in pixels")
    video_bitrate_kbps: int = Field(..., gt=0, description="Target video bitrate in kbit/s")
    audio_bitrate_kbps: int = Field(..., gt=0, description="AAC audio bitrate in kbit/s")

    @property
    def bandwidth(self) -> int:
        """BANDWIDTH attribute advertised in the master manifest."""
        return self.video_bitrate_kbps * 1024

    @property
    def playlist_name(self) -> str:
        return f"{self.name}.m3u8"

    @property
    def playlist_uri(self) -> str:
        """Variant playlist path relative to the master manifest."""
        return f"{self.name}/{self.playlist_name}"


DEFAULT_LADDER: List[ResolutionTask] = [
    ResolutionTask(name="240p", width=426, height=240, video_bitrate_kbps=400, audio_bitrate_kbps=64),
    ResolutionTask(name="360p", width=640, height=360, video_bitrate_kbps=800, audio_bitrate_kbps=96),
    ResolutionTask(name="480p", width=854, height=480, video_bitrate_kbps=1200, audio_bitrate_kbps=128),
    ResolutionTask(name="720p", width=1280, height=720, video_bitrate_kbps=2500, audio_bitrate_kbps=192),
    ResolutionTask(name="1080p", width=1920, height=1080, video_bitrate_kbps=5000, audio_bitrate_kbps=256),
]


class ProgressStatus(str, Enum):
    """Status values carried on the progress wire."""

    STARTED = "started"
    IN_PROGRESS = "in_progress"
    FINISHED = "finished"  # one rung done
    COMPLETE = "Complete"  # whole job done, carries url
    FAILED = "failed"


class ProgressEvent(BaseModel):
    """Transient progress notification for one video.

    Ordering only holds within a single (video_id, resolution) stream.
    ``percent`` is the latest known value, not a monotone sequence.
    """

    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    video_id: str = Field(..., alias="videoId", description="Video the event belongs to")
    resolution: Optional[str] = Field(default=None, description="Rung name, None for job-level events")
    percent: Optional[int] = Field(default=None, ge=0, le=100, description="Clamped encode percent")
    status: ProgressStatus = Field(..., description="Event kind")
    message: Optional[str] = Field(default=None, description="Error or informational text")
    url: Optional[str] = Field(default=None, description="Public playlist URL on completion")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), description="Publish time (UTC)"
    )

    def to_payload(self) -> Dict[str, Any]:
        """Wire representation: camelCase ``videoId``, nulls omitted."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ProgressEvent":
        return cls.model_validate(payload)


def clamp_percent(value: Optional[float]) -> int:
    """Clamp an engine-reported percent into an integer in [0, 100]."""
    if value is None or value != value:  # NaN
        return 0
    return max(0, min(100, int(value)))


class QueueConfig(BaseModel):
    """Job queue settings."""

    db_path: str = Field(default="queue.db", description="SQLite database backing the queue")
    max_attempts: int = Field(default=3, ge=1, description="Attempts before a job is terminal-failed")
    backoff_delay_s: float = Field(
        default=5.0, ge=0.0, description="Base of the exponential retry backoff in seconds"
    )
    lease_s: float = Field(
        default=600.0, gt=0.0, description="Lease length; an un-acked job is reclaimable after this"
    )
    heartbeat_interval_s: float = Field(
        default=60.0, gt=0.0, description="How often a running job extends its lease"
    )


class WorkerConfig(BaseModel):
    """Worker pool settings."""

    concurrency: int = Field(default=4, ge=1, description="Concurrent job slots")
    poll_interval_s: float = Field(
        default=1.0, gt=0.0, description="Sleep between claims when the queue is empty"
    )


class EngineConfig(BaseModel):
    """External ffmpeg engine settings."""

    ffmpeg_path: Optional[str] = Field(
        default=None, description="ffmpeg executable (None = imageio-ffmpeg bundled binary)"
    )
    ffprobe_path: Optional[str] = Field(
        default=None, description="ffprobe executable (None = next to ffmpeg)"
    )
    video_codec: str = Field(default="libx264", description="Video codec")
    audio_codec: str = Field(default="aac", description="Audio codec")
    preset: Literal[
        "ultrafast",
        "superfast",
        "veryfast",
        "faster",
        "fast",
        "medium",
        "slow",
        "slower",
        "veryslow",
    ] = Field(default="medium", description="x264 speed preset")
    segment_duration_s: int = Field(default=10, gt=0, description="HLS target segment duration")
    maxrate_factor: float = Field(default=1.07, gt=0.0, description="-maxrate as a multiple of bitrate")
    bufsize_factor: float = Field(default=1.5, gt=0.0, description="-bufsize as a multiple of bitrate")
    probe_source: bool = Field(
        default=True, description="Probe the source and reject zero duration/resolution early"
    )
    cancel_siblings_on_failure: bool = Field(
        default=False, description="Kill sibling encodes when one rung fails (default: discard)"
    )

    # FFmpeg runner settings
    global_timeout_s: int = Field(default=3600, gt=0, description="Maximum duration of one encode")
    no_progress_timeout_s: int = Field(
        default=300, gt=0, description="Fail an encode that reports no progress for this long"
    )
    progress_interval_s: float = Field(
        default=2.0, ge=0.0, description="Minimum seconds between progress callbacks"
    )
    kill_grace_period_s: int = Field(default=5, gt=0, description="SIGTERM to SIGKILL grace period")
    save_artifacts_on_failure: bool = Field(
        default=True, description="Save ffmpeg logs and command scripts on failure"
    )
    ffmpeg_loglevel: str = Field(default="info", description="ffmpeg -loglevel")
    temp_dir: Optional[str] = Field(default=None, description="Directory for failure artifacts")


class StorageConfig(BaseModel):
    """Object store and local scratch settings."""

    backend: Literal["s3", "local"] = Field(default="local", description="Object store adapter")
    bucket: Optional[str] = Field(default=None, description="S3 bucket name")
    region: str = Field(default="us-east-1", description="S3 region")
    endpoint_url: Optional[str] = Field(default=None, description="Custom S3 endpoint (MinIO)")
    access_key: Optional[str] = Field(default=None, description="S3 access key id")
    secret_key: Optional[str] = Field(default=None, description="S3 secret access key")
    public_base_url: Optional[str] = Field(
        default=None, description="Public URL prefix for published objects (CDN)"
    )
    local_root: str = Field(default="object_store", description="Root directory of the local store")
    source_prefix: str = Field(default="raw_videos", description="Key prefix of uploaded sources")
    output_prefix: str = Field(default="transcoded_videos", description="Key prefix of HLS outputs")
    staging_dir: str = Field(default="scratch/staging", description="Local staging of source files")
    scratch_dir: str = Field(default="scratch/output", description="Local encode output trees")


class ProgressConfig(BaseModel):
    """Progress bus settings."""

    backend: Literal["memory", "redis"] = Field(
        default="redis", description="Bus implementation; memory only reaches subscribers in-process"
    )
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis broker URL")
    channel: str = Field(default="video_transcoding_progress", description="Pub/sub channel")


class LoggingConfig(BaseModel):
    """Logging settings."""

    level: str = Field(default="INFO", description="Root log level")
    format: str = Field(
        default="%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s",
        description="logging.Formatter format string",
    )


class TranscoderConfig(BaseModel):
    """Complete application configuration with validation."""

    queue: QueueConfig = Field(default_factory=QueueConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    progress: ProgressConfig = Field(default_factory=ProgressConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    ladder: List[ResolutionTask] = Field(default_factory=lambda: list(DEFAULT_LADDER))

    @field_validator("ladder")
    @classmethod
    def ladder_names_unique(cls, v: List[ResolutionTask]) -> List[ResolutionTask]:
        """Rung names double as folder names, so they must be unique."""
        if not v:
            raise ValueError("ladder must contain at least one rung")
        names = [rung.name for rung in v]
        if len(set(names)) != len(names):
            raise ValueError(f"duplicate rung names in ladder: {names}")
        return v

    @classmethod
    def from_dict(cls, data: dict) -> "TranscoderConfig":
        """Create config from nested dict (YAML)."""
        return cls(**data)

    def merge_cli_overrides(self, cli_args: dict) -> "TranscoderConfig":
        """Apply CLI overrides and return new config instance."""
        config_dict = self.model_dump()

        if "db" in cli_args:
            config_dict["queue"]["db_path"] = cli_args["db"]
        if "workers" in cli_args:
            config_dict["worker"]["concurrency"] = cli_args["workers"]
        if "max_attempts" in cli_args:
            config_dict["queue"]["max_attempts"] = cli_args["max_attempts"]
        if "backoff_ms" in cli_args:
            config_dict["queue"]["backoff_delay_s"] = cli_args["backoff_ms"] / 1000.0
        if "log_level" in cli_args:
            config_dict["logging"]["level"] = cli_args["log_level"]
        if "storage" in cli_args:
            config_dict["storage"]["backend"] = cli_args["storage"]
        if "bus" in cli_args:
            config_dict["progress"]["backend"] = cli_args["bus"]

        return TranscoderConfig.from_dict(config_dict)
