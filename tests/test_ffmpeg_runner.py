"""Unit tests for FFmpeg runner with process isolation and timeout enforcement."""

import os
import subprocess
import tempfile
import threading
from unittest.mock import MagicMock, patch

import pytest

from abr_transcoder.ffmpeg_runner import (
    FfmpegErrorType,
    FfmpegProgress,
    FfmpegRunner,
    resolve_ffmpeg_exe,
)


def fake_process(stderr_lines, returncode=0, wait_side_effect=None):
    """Popen stand-in whose stderr yields ``stderr_lines``."""
    process = MagicMock()
    process.pid = 4242
    process.stderr = iter(stderr_lines)
    process.returncode = returncode
    if wait_side_effect is not None:
        process.wait.side_effect = wait_side_effect
    else:
        process.wait.return_value = returncode
    return process


class TestProgressParsing:
    """Test FFmpeg progress parsing from stderr."""

    def test_parse_out_time(self):
        """Test parsing out_time from FFmpeg progress output."""
        runner = FfmpegRunner()
        runner._progress = FfmpegProgress()

        mock_stderr = ["frame=  123\n", "fps=25.00\n", "out_time=00:00:05.50\n", "speed=2.5x\n"]
        runner._monitor_progress(iter(mock_stderr))

        assert runner._progress.current_time_s == pytest.approx(5.5, rel=0.01)
        assert runner._progress.frame == 123
        assert runner._progress.fps == pytest.approx(25.0, rel=0.01)
        assert runner._progress.speed == pytest.approx(2.5, rel=0.01)

    def test_parse_large_time(self):
        """Test parsing large time values (hours)."""
        runner = FfmpegRunner()
        runner._progress = FfmpegProgress()

        runner._monitor_progress(iter(["out_time=01:23:45.67\n"]))

        expected_time = 1 * 3600 + 23 * 60 + 45.67
        assert runner._progress.current_time_s == pytest.approx(expected_time, rel=0.01)

    def test_parse_duration_banner(self):
        """Duration from the input banner is used when none was given."""
        runner = FfmpegRunner()
        runner._progress = FfmpegProgress()

        runner._monitor_progress(iter(["  Duration: 00:02:00.00, start: 0.000000, bitrate: 800 kb/s\n"]))

        assert runner._progress.total_duration_s == pytest.approx(120.0)

    def test_progress_end_forces_callback(self):
        seen = []
        runner = FfmpegRunner(progress_callback=lambda p: seen.append(p.percent), progress_interval_s=60)
        runner._progress = FfmpegProgress(total_duration_s=10.0)

        runner._monitor_progress(iter(["out_time=00:00:05.00\n", "progress=end\n"]))

        # First out_time fires (interval starts at 0), second is throttled, end is forced
        assert seen == [pytest.approx(50.0), 100.0]

    def test_callback_errors_do_not_stop_monitor(self):
        def broken(progress):
            raise RuntimeError("subscriber bug")

        runner = FfmpegRunner(progress_callback=broken, progress_interval_s=0)
        runner._progress = FfmpegProgress()

        runner._monitor_progress(iter(["out_time=00:00:01.00\n", "out_time=00:00:02.00\n"]))

        assert runner._progress.current_time_s == pytest.approx(2.0)


class TestProgressPercent:
    def test_unknown_duration(self):
        assert FfmpegProgress(current_time_s=5.0).percent is None

    def test_fraction_of_duration(self):
        assert FfmpegProgress(current_time_s=3.0, total_duration_s=12.0).percent == pytest.approx(25.0)

    def test_finished_is_complete(self):
        assert FfmpegProgress(finished=True).percent == 100.0


class TestErrorClassification:
    """Test FFmpeg error classification for retry logic."""

    def test_classify_permanent_errors(self):
        """Test that permanent errors are classified correctly."""
        runner = FfmpegRunner()

        permanent_cases = [
            "input.mp4: No such file or directory",
            "Invalid data found when processing input",
            "Permission denied",
            "Unsupported codec for output stream",
            "moov atom not found",
        ]

        for stderr in permanent_cases:
            error_type = runner._classify_error(stderr)
            assert error_type == FfmpegErrorType.PERMANENT, f"Expected PERMANENT for: {stderr}"

    def test_classify_transient_errors(self):
        """Test that transient errors are classified correctly."""
        runner = FfmpegRunner()

        transient_cases = [
            "I/O error reading input",
            "Connection refused",
            "Connection timeout",
            "Resource temporarily unavailable",
            "Disk full",
        ]

        for stderr in transient_cases:
            error_type = runner._classify_error(stderr)
            assert error_type == FfmpegErrorType.TRANSIENT, f"Expected TRANSIENT for: {stderr}"

    def test_classify_unknown_as_transient(self):
        """Unknown errors default to transient (retry)."""
        runner = FfmpegRunner()

        assert runner._classify_error("Some unknown error message") == FfmpegErrorType.TRANSIENT


class TestRun:
    """Test run() against a mocked ffmpeg process."""

    def test_success(self, tmp_path):
        seen = []
        runner = FfmpegRunner(
            temp_dir=str(tmp_path), progress_callback=lambda p: seen.append(p.percent)
        )
        process = fake_process(["out_time=00:00:06.00\n", "progress=end\n"])

        with patch("abr_transcoder.ffmpeg_runner.subprocess.Popen", return_value=process):
            result = runner.run(["ffmpeg", "-i", "in.mp4", "out.m3u8"], expected_duration=12.0)

        assert result.success
        assert result.returncode == 0
        assert result.error_type is None
        assert result.artifacts_saved == []
        assert result.final_progress.finished
        assert seen[-1] == 100.0
        assert list(tmp_path.iterdir()) == []

    def test_failure_classified_and_artifacts_saved(self, tmp_path):
        runner = FfmpegRunner(temp_dir=str(tmp_path))
        process = fake_process(["in.mp4: Invalid data found when processing input\n"], returncode=1)

        with patch("abr_transcoder.ffmpeg_runner.subprocess.Popen", return_value=process):
            result = runner.run(["ffmpeg", "-i", "in.mp4", "out.m3u8"])

        assert not result.success
        assert result.returncode == 1
        assert result.error_type == FfmpegErrorType.PERMANENT
        assert "Invalid data found" in result.stderr
        assert len(result.artifacts_saved) == 2

    def test_cancel_before_start_spawns_nothing(self):
        cancel = threading.Event()
        cancel.set()
        runner = FfmpegRunner(cancel_event=cancel)

        with patch("abr_transcoder.ffmpeg_runner.subprocess.Popen") as popen:
            result = runner.run(["ffmpeg", "-i", "in.mp4", "out.m3u8"])

        popen.assert_not_called()
        assert not result.success
        assert result.error_type == FfmpegErrorType.PROCESS_KILLED

    def test_cancel_while_running_kills_process(self, tmp_path):
        cancel = threading.Event()
        runner = FfmpegRunner(
            temp_dir=str(tmp_path), poll_interval_s=0.01, cancel_event=cancel
        )

        def wait(timeout=None):
            cancel.set()
            raise subprocess.TimeoutExpired("ffmpeg", timeout)

        process = fake_process([], wait_side_effect=wait)

        with patch("abr_transcoder.ffmpeg_runner.subprocess.Popen", return_value=process):
            with patch.object(runner, "_kill_process_tree") as kill:
                result = runner.run(["ffmpeg", "-i", "in.mp4", "out.m3u8"])

        kill.assert_called_once()
        assert result.returncode == -1
        assert result.error_type == FfmpegErrorType.PROCESS_KILLED

    def test_terminate_sets_shared_event(self):
        cancel = threading.Event()
        runner = FfmpegRunner(cancel_event=cancel)

        runner.terminate()

        assert cancel.is_set()

    def test_no_progress_timeout(self, tmp_path):
        runner = FfmpegRunner(temp_dir=str(tmp_path), no_progress_timeout_s=0, poll_interval_s=0.01)
        process = fake_process(
            [], wait_side_effect=subprocess.TimeoutExpired("ffmpeg", 0.01)
        )

        with patch("abr_transcoder.ffmpeg_runner.subprocess.Popen", return_value=process):
            with patch.object(runner, "_kill_process_tree") as kill:
                result = runner.run(["ffmpeg", "-i", "in.mp4", "out.m3u8"])

        kill.assert_called_once()
        assert result.error_type == FfmpegErrorType.TIMEOUT
        assert not result.success


class TestArtifactGeneration:
    """Test failure artifact generation."""

    def test_save_failure_artifacts(self):
        """Test that failure artifacts are saved correctly."""
        with tempfile.TemporaryDirectory() as tmpdir:
            runner = FfmpegRunner(temp_dir=tmpdir, save_artifacts_on_failure=True)

            cmd = ["ffmpeg", "-i", "input.mp4", "-hls_segment_filename", "out dir/segment%03d.ts"]
            artifacts = runner._save_failure_artifacts(cmd, "", "Error: File not found")

            assert len(artifacts) == 2

            log_file = [a for a in artifacts if a.name.startswith("ffmpeg_error_")][0]
            log_content = log_file.read_text()
            assert "COMMAND:" in log_content
            assert "STDERR:" in log_content
            assert "Error: File not found" in log_content

            script_file = [a for a in artifacts if a.name.startswith("ffmpeg_cmd_")][0]
            assert os.access(script_file, os.X_OK)
            script_content = script_file.read_text()
            assert "#!/bin/bash" in script_content
            assert "'out dir/segment%03d.ts'" in script_content


class TestTempDirectory:
    """Test temp directory handling."""

    def test_temp_dir_from_config(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            runner = FfmpegRunner(temp_dir=tmpdir)
            assert str(runner._get_temp_dir()) == tmpdir

    def test_temp_dir_from_env(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            with patch.dict(os.environ, {"TMPDIR": tmpdir}):
                runner = FfmpegRunner(temp_dir=None)
                assert str(runner._get_temp_dir()) == tmpdir

    def test_temp_dir_default_fallback(self):
        with patch.dict(os.environ, {}, clear=True):
            runner = FfmpegRunner(temp_dir=None)
            assert str(runner._get_temp_dir()) == "/tmp"


class TestProcessTreeCleanup:
    """Test process tree cleanup logic."""

    def test_kill_process_tree(self):
        runner = FfmpegRunner(kill_grace_period_s=1)
        runner._process = MagicMock(pid=12345)

        mock_parent = MagicMock()
        mock_child1 = MagicMock()
        mock_child2 = MagicMock()
        mock_parent.children.return_value = [mock_child1, mock_child2]

        with patch("abr_transcoder.ffmpeg_runner.psutil.Process", return_value=mock_parent):
            with patch(
                "abr_transcoder.ffmpeg_runner.psutil.wait_procs", return_value=([], [mock_child2])
            ):
                runner._kill_process_tree()

        mock_parent.terminate.assert_called_once()
        mock_child1.terminate.assert_called_once()
        mock_child2.terminate.assert_called_once()
        # Survivors of the grace period are killed
        mock_child2.kill.assert_called_once()
        mock_parent.kill.assert_not_called()

    def test_kill_without_process_is_noop(self):
        runner = FfmpegRunner()
        with patch("abr_transcoder.ffmpeg_runner.psutil.Process") as process_class:
            runner._kill_process_tree()
        process_class.assert_not_called()


class TestResolveExecutable:
    def test_explicit_path(self):
        assert resolve_ffmpeg_exe("/opt/ffmpeg/bin/ffmpeg") == "/opt/ffmpeg/bin/ffmpeg"

    def test_bundled_binary(self):
        with patch(
            "abr_transcoder.ffmpeg_runner.imageio_ffmpeg.get_ffmpeg_exe", return_value="/bundled/ffmpeg"
        ):
            assert resolve_ffmpeg_exe() == "/bundled/ffmpeg"
