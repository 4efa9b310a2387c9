"""FFmpeg runner with process isolation, timeout enforcement, and progress monitoring.

This module provides robust FFmpeg orchestration that prevents zombie processes,
enforces timeouts, monitors progress, and preserves failure artifacts for debugging.

Key Features:
- Process isolation with subprocess.Popen
- Dual timeout enforcement (global + no-progress)
- Real-time progress parsing from FFmpeg stderr
- Process tree cleanup via psutil
- Cooperative cancellation from another thread
- Error classification for retry logic
- Artifact preservation on failure
"""

import collections
import logging
import os
import re
import subprocess
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

import imageio_ffmpeg
import psutil

logger = logging.getLogger(__name__)

_OUT_TIME_RE = re.compile(r"out_time=(\d+):(\d+):(\d+)(?:\.(\d+))?")
_DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d+):(\d+)(?:\.(\d+))?")
_STDERR_TAIL_LINES = 4000


class FfmpegErrorType(Enum):
    """FFmpeg error classification for retry logic."""
    PERMANENT = "permanent"     # File not found, invalid format, codec error
    TRANSIENT = "transient"     # Network timeout, disk I/O stall
    TIMEOUT = "timeout"         # Process timeout (global or no-progress)
    PROCESS_KILLED = "killed"   # Cancelled by the caller


@dataclass
class FfmpegProgress:
    """Real-time FFmpeg progress metrics."""
    current_time_s: float = 0.0      # Current position in seconds
    total_duration_s: float = 0.0    # Total duration (if known)
    fps: float = 0.0                 # Current FPS
    bitrate_kbps: float = 0.0        # Current bitrate
    speed: float = 0.0               # Processing speed multiplier (e.g., 2.5x)
    frame: int = 0                   # Current frame number
    last_update: float = 0.0         # Timestamp of last update
    finished: bool = False           # ffmpeg reported progress=end

    @property
    def percent(self) -> Optional[float]:
        """Percent of the input encoded so far, None while the duration is unknown."""
        if self.finished:
            return 100.0
        if self.total_duration_s <= 0:
            return None
        return self.current_time_s / self.total_duration_s * 100.0


@dataclass
class FfmpegResult:
    """Result of FFmpeg execution."""
    success: bool
    returncode: int
    stdout: str
    stderr: str
    duration_s: float
    error_type: Optional[FfmpegErrorType] = None
    final_progress: Optional[FfmpegProgress] = None
    artifacts_saved: List[Path] = field(default_factory=list)


def resolve_ffmpeg_exe(ffmpeg_path: Optional[str] = None) -> str:
    """Explicit path if configured, otherwise the imageio-ffmpeg binary."""
    if ffmpeg_path:
        return ffmpeg_path
    return imageio_ffmpeg.get_ffmpeg_exe()


def _hms_to_seconds(h: str, m: str, s: str, frac: Optional[str]) -> float:
    seconds = int(h) * 3600 + int(m) * 60 + int(s)
    if frac:
        seconds += float(f"0.{frac}")
    return seconds


class FfmpegRunner:
    """FFmpeg orchestration with timeout and zombie prevention.

    One runner drives one ffmpeg process at a time. ``terminate()`` may be
    called from any thread to stop the running process.

    Example:
        >>> runner = FfmpegRunner(
        ...     global_timeout_s=1800,
        ...     no_progress_timeout_s=120,
        ...     progress_callback=lambda p: print(p.percent),
        ... )
        >>> result = runner.run(["ffmpeg", "-i", "in.mp4", "out.m3u8"])
        >>> if not result.success:
        ...     print(result.error_type, result.artifacts_saved)
    """

    def __init__(
        self,
        global_timeout_s: int = 3600,
        no_progress_timeout_s: int = 300,
        kill_grace_period_s: int = 5,
        save_artifacts_on_failure: bool = True,
        ffmpeg_loglevel: str = "info",
        temp_dir: Optional[str] = None,
        progress_callback: Optional[Callable[[FfmpegProgress], None]] = None,
        progress_interval_s: float = 2.0,
        ffmpeg_path: Optional[str] = None,
        poll_interval_s: float = 0.5,
        cancel_event: Optional[threading.Event] = None,
    ):
        """Initialize FFmpeg runner.

        Args:
            global_timeout_s: Maximum duration for any FFmpeg operation
            no_progress_timeout_s: Timeout if no progress update in N seconds
            kill_grace_period_s: Grace period between SIGTERM and SIGKILL
            save_artifacts_on_failure: Save logs and commands on failure
            ffmpeg_loglevel: FFmpeg log level (error, warning, info, verbose)
            temp_dir: Temporary directory for artifacts (None = use worker temp)
            progress_callback: Optional callback for progress updates
            progress_interval_s: Minimum seconds between callbacks
            ffmpeg_path: Explicit ffmpeg executable
            poll_interval_s: How often timeouts and cancellation are checked
            cancel_event: Shared event; setting it stops the running process
        """
        self.global_timeout_s = global_timeout_s
        self.no_progress_timeout_s = no_progress_timeout_s
        self.kill_grace_period_s = kill_grace_period_s
        self.save_artifacts_on_failure = save_artifacts_on_failure
        self.ffmpeg_loglevel = ffmpeg_loglevel
        self.temp_dir = temp_dir
        self.progress_callback = progress_callback
        self.progress_interval_s = progress_interval_s
        self.ffmpeg_path = ffmpeg_path
        self.poll_interval_s = poll_interval_s

        self._process: Optional[subprocess.Popen] = None
        self._progress = FfmpegProgress()
        self._stderr_lines = collections.deque(maxlen=_STDERR_TAIL_LINES)
        self._last_callback = 0.0
        self._cancelled = cancel_event or threading.Event()
        self._monitor_thread: Optional[threading.Thread] = None

    @property
    def ffmpeg_exe(self) -> str:
        return resolve_ffmpeg_exe(self.ffmpeg_path)

    def base_command(self) -> List[str]:
        """Executable plus the flags every invocation shares."""
        return [
            self.ffmpeg_exe,
            "-y",
            "-hide_banner",
            "-nostdin",
            "-progress", "pipe:2",  # Progress to stderr
            "-loglevel", self.ffmpeg_loglevel,
        ]

    def terminate(self) -> None:
        """Ask the running process to stop; run() returns a PROCESS_KILLED result."""
        self._cancelled.set()

    def run(
        self,
        cmd: List[str],
        expected_duration: Optional[float] = None
    ) -> FfmpegResult:
        """Execute FFmpeg with timeout enforcement and progress monitoring.

        Args:
            cmd: FFmpeg command as list
            expected_duration: Input duration for percent calculation; parsed
                from ffmpeg's own banner when not given

        Returns:
            FfmpegResult with execution details
        """
        start_time = time.time()
        self._progress = FfmpegProgress(total_duration_s=expected_duration or 0.0)
        self._stderr_lines.clear()
        self._last_callback = 0.0

        if self._cancelled.is_set():
            return FfmpegResult(
                success=False, returncode=-1, stdout="", stderr="",
                duration_s=0.0, error_type=FfmpegErrorType.PROCESS_KILLED,
                final_progress=self._progress,
            )

        logger.debug("Spawning ffmpeg: %s", " ".join(cmd))

        try:
            self._process = subprocess.Popen(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                bufsize=1  # Line buffered for real-time progress
            )

            # Only the monitor thread reads stderr
            self._monitor_thread = threading.Thread(
                target=self._monitor_progress,
                args=(self._process.stderr,),
                name="ffmpeg-progress",
                daemon=True
            )
            self._monitor_thread.start()

            error_type = self._wait(start_time)
            returncode = self._process.returncode if error_type is None else -1

            if self._monitor_thread:
                self._monitor_thread.join(timeout=2)

            stderr = "".join(self._stderr_lines)
            duration = time.time() - start_time

            if error_type is None and returncode != 0:
                error_type = self._classify_error(stderr)

            artifacts = []
            if returncode != 0 and self.save_artifacts_on_failure:
                artifacts = self._save_failure_artifacts(cmd, "", stderr)

            return FfmpegResult(
                success=(returncode == 0),
                returncode=returncode,
                stdout="",
                stderr=stderr,
                duration_s=duration,
                error_type=error_type,
                final_progress=self._progress,
                artifacts_saved=artifacts
            )

        except Exception:
            # Unexpected error - ensure cleanup
            self._kill_process_tree()
            raise

        finally:
            self._process = None

    def _wait(self, start_time: float) -> Optional[FfmpegErrorType]:
        """Block until the process exits; kill it on timeout or cancellation.

        Returns:
            None when the process exited on its own, otherwise the reason it was killed.
        """
        while True:
            try:
                self._process.wait(timeout=self.poll_interval_s)
                return None
            except subprocess.TimeoutExpired:
                pass

            now = time.time()
            if self._cancelled.is_set():
                logger.info("Cancelling ffmpeg pid=%s", self._process.pid)
                self._kill_process_tree()
                return FfmpegErrorType.PROCESS_KILLED

            if now - start_time > self.global_timeout_s:
                logger.warning("ffmpeg exceeded global timeout of %ss", self.global_timeout_s)
                self._kill_process_tree()
                return FfmpegErrorType.TIMEOUT

            last_progress = self._progress.last_update or start_time
            if now - last_progress > self.no_progress_timeout_s:
                logger.warning("ffmpeg made no progress for %ss", self.no_progress_timeout_s)
                self._kill_process_tree()
                return FfmpegErrorType.TIMEOUT

    def _monitor_progress(self, stderr_stream) -> None:
        """Monitor FFmpeg stderr for progress updates.

        Parses FFmpeg progress output and invokes callback.
        Updates self._progress for timeout detection.

        FFmpeg progress format:
            frame=  123
            fps=25.00
            bitrate=1234.5kbits/s
            out_time=00:00:05.123456
            speed=2.5x
            progress=continue
        """
        try:
            for line in stderr_stream:
                self._stderr_lines.append(line)
                force_callback = False

                if "Duration:" in line and self._progress.total_duration_s <= 0:
                    match = _DURATION_RE.search(line)
                    if match:
                        self._progress.total_duration_s = _hms_to_seconds(*match.groups())

                if "out_time=" in line:
                    match = _OUT_TIME_RE.search(line)
                    if match:
                        self._progress.current_time_s = _hms_to_seconds(*match.groups())
                        self._progress.last_update = time.time()

                if "frame=" in line:
                    match = re.search(r'frame=\s*(\d+)', line)
                    if match:
                        self._progress.frame = int(match.group(1))
                        self._progress.last_update = time.time()

                if "fps=" in line:
                    match = re.search(r'fps=\s*([\d.]+)', line)
                    if match:
                        self._progress.fps = float(match.group(1))

                if "bitrate=" in line:
                    match = re.search(r'bitrate=\s*([\d.]+)kbits/s', line)
                    if match:
                        self._progress.bitrate_kbps = float(match.group(1))

                if "speed=" in line:
                    match = re.search(r'speed=\s*([\d.]+)x', line)
                    if match:
                        self._progress.speed = float(match.group(1))

                if line.strip() == "progress=end":
                    self._progress.finished = True
                    force_callback = True

                if "out_time=" in line or force_callback:
                    self._maybe_callback(force_callback)
        except Exception:
            logger.exception("Progress monitoring error")

    def _maybe_callback(self, force: bool = False) -> None:
        """Invoke the progress callback at the configured interval."""
        if not self.progress_callback:
            return
        now = time.time()
        if not force and now - self._last_callback < self.progress_interval_s:
            return
        self._last_callback = now
        try:
            self.progress_callback(self._progress)
        except Exception:
            # Don't crash monitor thread on callback errors
            logger.exception("Progress callback error")

    def _kill_process_tree(self) -> None:
        """Kill FFmpeg process and all children.

        Kill sequence:
        1. Send SIGTERM to the process and its children
        2. Wait grace period (default 5s)
        3. Send SIGKILL to survivors
        """
        if not self._process:
            return

        try:
            parent = psutil.Process(self._process.pid)
            children = parent.children(recursive=True)
        except psutil.NoSuchProcess:
            return

        procs = [parent] + children
        for proc in procs:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass

        _, alive = psutil.wait_procs(procs, timeout=self.kill_grace_period_s)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass

        try:
            self._process.wait(timeout=self.kill_grace_period_s)
        except subprocess.TimeoutExpired:
            logger.error("ffmpeg pid=%s did not exit after SIGKILL", self._process.pid)

    def _classify_error(self, stderr: str) -> FfmpegErrorType:
        """Classify FFmpeg error for retry logic.

        Args:
            stderr: FFmpeg stderr output

        Returns:
            FfmpegErrorType for retry decision
        """
        stderr_lower = stderr.lower()

        # Permanent errors (no retry)
        permanent_patterns = [
            "no such file or directory",
            "invalid data found",
            "invalid argument",
            "permission denied",
            "unsupported codec",
            "invalid codec",
            "moov atom not found",
            "end of file",
            "corrupt",
        ]

        for pattern in permanent_patterns:
            if pattern in stderr_lower:
                return FfmpegErrorType.PERMANENT

        # Transient errors (retry)
        transient_patterns = [
            "i/o error",
            "connection refused",
            "connection timeout",
            "resource temporarily unavailable",
            "no space left",
            "disk full",
        ]

        for pattern in transient_patterns:
            if pattern in stderr_lower:
                return FfmpegErrorType.TRANSIENT

        # Default: treat as transient (retry)
        return FfmpegErrorType.TRANSIENT

    def _save_failure_artifacts(
        self,
        cmd: List[str],
        stdout: str,
        stderr: str
    ) -> List[Path]:
        """Save debugging artifacts on FFmpeg failure.

        Creates:
        - ffmpeg_error_{timestamp}.log: Command + stdout + stderr
        - ffmpeg_cmd_{timestamp}.sh: Reproducible command script

        Returns:
            List of saved artifact paths
        """
        artifacts = []
        temp_dir = self._get_temp_dir()
        stamp = f"{int(time.time())}_{os.getpid()}_{threading.get_ident()}"

        log_path = temp_dir / f"ffmpeg_error_{stamp}.log"
        try:
            with open(log_path, "w") as f:
                f.write("=" * 80 + "\n")
                f.write("FFmpeg Error Log\n")
                f.write(f"Timestamp: {time.ctime()}\n")
                f.write(f"PID: {os.getpid()}\n")
                f.write("=" * 80 + "\n\n")

                f.write("COMMAND:\n")
                f.write(" ".join(cmd) + "\n\n")

                f.write("STDOUT:\n")
                f.write(stdout or "(empty)\n\n")

                f.write("STDERR:\n")
                f.write(stderr or "(empty)\n\n")

            artifacts.append(log_path)
        except OSError:
            logger.exception("Failed to save ffmpeg error log")

        script_path = temp_dir / f"ffmpeg_cmd_{stamp}.sh"
        try:
            with open(script_path, "w") as f:
                f.write("#!/bin/bash\n")
                f.write("# Reproducible FFmpeg command\n")
                f.write("# Generated: " + time.ctime() + "\n\n")

                escaped_cmd = []
                for arg in cmd:
                    if ' ' in arg or any(c in arg for c in ['$', '`', '"', '\\']):
                        escaped_cmd.append(f"'{arg}'")
                    else:
                        escaped_cmd.append(arg)

                f.write(" \\\n  ".join(escaped_cmd) + "\n")

            script_path.chmod(0o755)
            artifacts.append(script_path)
        except OSError:
            logger.exception("Failed to save ffmpeg command script")

        return artifacts

    def _get_temp_dir(self) -> Path:
        """Get temporary directory (worker-specific if available)."""
        if self.temp_dir:
            temp_dir = Path(self.temp_dir)
        elif 'TMPDIR' in os.environ:
            temp_dir = Path(os.environ['TMPDIR'])
        else:
            temp_dir = Path("/tmp")

        temp_dir.mkdir(parents=True, exist_ok=True)
        return temp_dir
