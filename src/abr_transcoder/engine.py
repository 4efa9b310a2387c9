"""External encoder adapter: probe a source and encode one HLS variant.

The orchestrator talks to an ``EncodingEngine``; ``FfmpegHlsEngine`` is the
production implementation on top of ``FfmpegRunner``. Tests swap in stubs.
"""

import json
import logging
import os
import shutil
import subprocess
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from .errors import EngineError, InvalidSourceError
from .ffmpeg_runner import FfmpegErrorType, FfmpegProgress, FfmpegRunner, resolve_ffmpeg_exe
from .models import EngineConfig, ResolutionTask

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Optional[float]], None]

SEGMENT_PATTERN = "segment%03d.ts"


@dataclass
class SourceInfo:
    """Probed source metadata."""
    duration_s: float
    width: int
    height: int

    def validate(self) -> None:
        """Raise InvalidSourceError for sources that would produce a broken ladder."""
        if not self.duration_s or self.duration_s <= 0:
            raise InvalidSourceError(f"Source has zero duration ({self.duration_s})")
        if self.width <= 0 or self.height <= 0:
            raise InvalidSourceError(f"Source has zero resolution ({self.width}x{self.height})")


class EncodingEngine(ABC):
    """Interface the orchestrator drives for each job."""

    @abstractmethod
    def probe(self, source: Path) -> SourceInfo:
        """Read duration and frame size of a local source file."""

    @abstractmethod
    def encode_variant(
        self,
        source: Path,
        rung: ResolutionTask,
        output_dir: Path,
        on_progress: ProgressCallback,
        duration_s: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Path:
        """Encode ``source`` into an HLS variant under ``output_dir``.

        Returns:
            Path of the written variant playlist.

        Raises:
            EngineError: On any encoder failure.
        """


class FfmpegHlsEngine(EncodingEngine):
    """Encode HLS variants with ffmpeg and probe sources with ffprobe."""

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()

    def _ffprobe_exe(self) -> str:
        if self.config.ffprobe_path:
            return self.config.ffprobe_path
        # Use ffprobe (same directory as ffmpeg)
        ffmpeg_exe = resolve_ffmpeg_exe(self.config.ffmpeg_path)
        candidate = os.path.join(
            os.path.dirname(ffmpeg_exe),
            os.path.basename(ffmpeg_exe).replace("ffmpeg", "ffprobe"),
        )
        if os.path.exists(candidate):
            return candidate
        found = shutil.which("ffprobe")
        if not found:
            raise EngineError("ffprobe executable not found (set engine.ffprobe_path)")
        return found

    def probe(self, source: Path) -> SourceInfo:
        """Probe video file using ffprobe.

        Raises:
            InvalidSourceError: If ffprobe rejects the file or it has no video stream.
            EngineError: If ffprobe is missing or times out.
        """
        cmd = [
            self._ffprobe_exe(),
            "-v", "error",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            str(source),
        ]

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=True,
                timeout=60
            )
            data = json.loads(result.stdout)
        except subprocess.CalledProcessError as e:
            raise InvalidSourceError(f"ffprobe failed: {e.stderr}") from e
        except subprocess.TimeoutExpired as e:
            raise EngineError("ffprobe timed out after 60s") from e
        except json.JSONDecodeError as e:
            raise InvalidSourceError(f"ffprobe output parsing failed: {e}") from e

        video = next(
            (s for s in data.get("streams", []) if s.get("codec_type") == "video"), None
        )
        duration = data.get("format", {}).get("duration")
        if duration is None and video is not None:
            duration = video.get("duration")

        return SourceInfo(
            duration_s=float(duration or 0.0),
            width=int(video.get("width", 0)) if video else 0,
            height=int(video.get("height", 0)) if video else 0,
        )

    def build_command(
        self, runner: FfmpegRunner, source: Path, rung: ResolutionTask, output_dir: Path
    ) -> List[str]:
        """ffmpeg arguments for one rung: H.264 + AAC, 10s VOD HLS segments."""
        cfg = self.config
        kbps = rung.video_bitrate_kbps
        return runner.base_command() + [
            "-i", str(source),
            "-vf", f"scale={rung.width}:{rung.height}",
            "-c:v", cfg.video_codec,
            "-preset", cfg.preset,
            "-b:v", f"{kbps}k",
            "-maxrate", f"{int(kbps * cfg.maxrate_factor)}k",
            "-bufsize", f"{int(kbps * cfg.bufsize_factor)}k",
            "-c:a", cfg.audio_codec,
            "-b:a", f"{rung.audio_bitrate_kbps}k",
            "-hls_time", str(cfg.segment_duration_s),
            "-hls_list_size", "0",
            "-hls_playlist_type", "vod",
            "-hls_segment_filename", str(output_dir / SEGMENT_PATTERN),
            "-f", "hls",
            str(output_dir / rung.playlist_name),
        ]

    def make_runner(
        self,
        on_progress: ProgressCallback,
        cancel_event: Optional[threading.Event] = None,
    ) -> FfmpegRunner:
        cfg = self.config

        def progress_cb(progress: FfmpegProgress) -> None:
            on_progress(progress.percent)

        return FfmpegRunner(
            global_timeout_s=cfg.global_timeout_s,
            no_progress_timeout_s=cfg.no_progress_timeout_s,
            kill_grace_period_s=cfg.kill_grace_period_s,
            save_artifacts_on_failure=cfg.save_artifacts_on_failure,
            ffmpeg_loglevel=cfg.ffmpeg_loglevel,
            temp_dir=cfg.temp_dir,
            progress_callback=progress_cb,
            progress_interval_s=cfg.progress_interval_s,
            ffmpeg_path=cfg.ffmpeg_path,
            cancel_event=cancel_event,
        )

    def encode_variant(
        self,
        source: Path,
        rung: ResolutionTask,
        output_dir: Path,
        on_progress: ProgressCallback,
        duration_s: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Path:
        output_dir.mkdir(parents=True, exist_ok=True)
        runner = self.make_runner(on_progress, cancel_event)
        cmd = self.build_command(runner, source, rung, output_dir)

        result = runner.run(cmd, expected_duration=duration_s)

        if not result.success:
            tail = result.stderr[-2000:] if result.stderr else ""
            message = f"ffmpeg failed for {rung.name} ({result.error_type.value if result.error_type else 'unknown'})"
            if result.artifacts_saved:
                message += f"; artifacts: {', '.join(str(p) for p in result.artifacts_saved)}"
            raise EngineError(
                message,
                resolution=rung.name,
                error_type=result.error_type,
                returncode=result.returncode,
                stderr_tail=tail,
            )

        playlist = output_dir / rung.playlist_name
        if not playlist.exists():
            raise EngineError(
                f"ffmpeg exited cleanly but {playlist.name} is missing",
                resolution=rung.name,
                error_type=FfmpegErrorType.PERMANENT,
                returncode=result.returncode,
            )

        logger.info("Encoded %s in %.1fs", rung.name, result.duration_s)
        return playlist


def check_ffmpeg(ffmpeg_path: Optional[str] = None) -> bool:
    """True when the ffmpeg executable can be located."""
    try:
        exe = resolve_ffmpeg_exe(ffmpeg_path)
    except RuntimeError:
        return False
    return os.path.exists(exe) or shutil.which(exe) is not None
