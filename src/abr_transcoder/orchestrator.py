"""Run the whole ABR ladder for one job.

process(job):
    stage source → probe → encode every rung concurrently → master.m3u8
    → upload under transcoded_videos/<stem>/ → cleanup → Complete

The first failing rung decides the job. Sibling encodes are not cancelled
unless ``engine.cancel_siblings_on_failure`` is set, but they are always
allowed to settle before the scratch tree is deleted.
"""

import logging
import os
import posixpath
import shutil
import threading
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from .engine import EncodingEngine
from .errors import EncodeError, EngineError, FetchError, StorageError, UploadError
from .manifest import MASTER_PLAYLIST_NAME, MasterManifest, VariantEntry
from .models import (
    ProgressEvent,
    ProgressStatus,
    ResolutionTask,
    TranscoderConfig,
    clamp_percent,
)
from .progress import ProgressBus
from .queue.models import Job
from .storage import ObjectStore, content_type_for

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    PENDING = "pending"
    STARTED = "started"
    IN_PROGRESS = "in_progress"
    FINISHED = "finished"
    FAILED = "failed"


@dataclass
class EncodeRun:
    """One rung of one job. Only the thread running the rung mutates it."""
    resolution: str
    state: RunState = RunState.PENDING
    percent: int = 0
    output_manifest_path: Optional[Path] = None
    error: Optional[BaseException] = None


def output_folder_for(source_storage_key: str) -> str:
    """``raw_videos/clip.mp4`` → ``clip``."""
    return Path(posixpath.basename(source_storage_key)).stem


class EncodeOrchestrator:
    """Turns one queued job into a published HLS rendition set."""

    def __init__(
        self,
        store: ObjectStore,
        bus: ProgressBus,
        engine: EncodingEngine,
        config: Optional[TranscoderConfig] = None,
    ):
        self.store = store
        self.bus = bus
        self.engine = engine
        self.config = config or TranscoderConfig()
        self.ladder: List[ResolutionTask] = list(self.config.ladder)
        self.channel = self.config.progress.channel

    def process(self, job: Job) -> str:
        """Encode, publish and return the public URL of ``master.m3u8``.

        Raises:
            EncodeError: Any unrecoverable step. A job-level ``failed`` event
                is published and local scratch is removed before it propagates.
        """
        storage = self.config.storage
        attempt = f"{job.job_id}-a{job.attempt_count}"
        staged_dir = Path(storage.staging_dir) / job.video_id / attempt
        output_dir = Path(storage.scratch_dir) / attempt

        logger.info(
            "Processing job %s: %s (%d rungs)", job.job_id, job.source_storage_key, len(self.ladder)
        )
        try:
            self._remove_stale_attempts(job, staged_dir, output_dir)
            source = self._stage(job, staged_dir)
            self._prepare_output_dir(output_dir)
            duration_s = self._probe(source)
            manifest = self._encode_ladder(job, source, output_dir, duration_s)
            manifest.write(output_dir)
            master_key = self._upload(output_dir, output_folder_for(job.source_storage_key))
            url = self.store.public_url(master_key)
        except Exception as e:
            self._publish(job.video_id, ProgressStatus.FAILED, message=str(e))
            raise
        finally:
            self._cleanup(staged_dir, output_dir)

        self._publish(job.video_id, ProgressStatus.COMPLETE, percent=100, url=url)
        logger.info("Job %s published %s", job.job_id, url)
        return url

    def _publish(
        self,
        video_id: str,
        status: ProgressStatus,
        resolution: Optional[str] = None,
        percent: Optional[int] = None,
        message: Optional[str] = None,
        url: Optional[str] = None,
    ) -> None:
        self.bus.publish(
            self.channel,
            ProgressEvent(
                video_id=video_id,
                resolution=resolution,
                percent=percent,
                status=status,
                message=message,
                url=url,
            ),
        )

    def _stage(self, job: Job, staged_dir: Path) -> Path:
        """Local copy of the source, private to this attempt."""
        basename = posixpath.basename(job.source_storage_key)
        if not basename:
            raise FetchError(f"Source key {job.source_storage_key!r} names no file")

        staged = staged_dir / basename
        part = staged.with_name(staged.name + ".part")
        try:
            staged_dir.mkdir(parents=True, exist_ok=True)
            if self._claim_ingested(staged_dir.parent / basename, staged):
                return staged
            self.store.download(job.source_storage_key, part)
            os.replace(part, staged)
        except (StorageError, OSError) as e:
            part.unlink(missing_ok=True)
            raise FetchError(f"Could not fetch {job.source_storage_key}: {e}") from e
        return staged

    @staticmethod
    def _claim_ingested(ingested: Path, staged: Path) -> bool:
        """Move a copy left by ingestion into this attempt's directory.

        The rename is atomic, so at most one attempt takes the file; the others
        download their own copy.
        """
        try:
            if not ingested.is_file() or ingested.stat().st_size == 0:
                return False
            os.replace(ingested, staged)
        except FileNotFoundError:
            return False
        logger.info("Claimed staged source %s", ingested)
        return True

    def _remove_stale_attempts(self, job: Job, *attempt_dirs: Path) -> None:
        """Remove trees left by earlier attempts of this job.

        Earlier attempts have lost their lease, so nothing they produce can be
        acked. Directories of other jobs, including other jobs for the same
        video, are never touched.
        """
        for attempt_dir in attempt_dirs:
            parent = attempt_dir.parent
            if not parent.exists():
                continue
            for stale in parent.glob(f"{job.job_id}-a*"):
                if stale != attempt_dir:
                    logger.info("Removing stale attempt tree %s", stale)
                    shutil.rmtree(stale, ignore_errors=True)

    def _prepare_output_dir(self, output_dir: Path) -> None:
        if output_dir.exists():
            shutil.rmtree(output_dir)
        output_dir.mkdir(parents=True)

    def _probe(self, source: Path) -> Optional[float]:
        if not self.config.engine.probe_source:
            return None
        info = self.engine.probe(source)
        info.validate()
        logger.info(
            "Source %s: %.1fs %dx%d", source.name, info.duration_s, info.width, info.height
        )
        return info.duration_s

    def _encode_ladder(
        self, job: Job, source: Path, output_dir: Path, duration_s: Optional[float]
    ) -> MasterManifest:
        manifest = MasterManifest()
        runs: Dict[str, EncodeRun] = {rung.name: EncodeRun(rung.name) for rung in self.ladder}
        cancel_event = (
            threading.Event() if self.config.engine.cancel_siblings_on_failure else None
        )
        failures: List[BaseException] = []
        failures_lock = threading.Lock()

        def run_rung(rung: ResolutionTask) -> None:
            try:
                self._run_rung(
                    job, source, rung, output_dir, duration_s, runs[rung.name], manifest, cancel_event
                )
            except Exception as e:
                with failures_lock:
                    failures.append(e)
                raise

        with ThreadPoolExecutor(
            max_workers=len(self.ladder), thread_name_prefix=f"encode-{job.job_id[:8]}"
        ) as executor:
            futures = [executor.submit(run_rung, rung) for rung in self.ladder]
            wait(futures, return_when=FIRST_EXCEPTION)
            with failures_lock:
                first_failure = failures[0] if failures else None
            if first_failure is not None:
                unsettled = [
                    r.resolution
                    for r in runs.values()
                    if r.state not in (RunState.FINISHED, RunState.FAILED)
                ]
                if cancel_event is not None:
                    logger.warning("Job %s: cancelling sibling encodes %s", job.job_id, unsettled)
                    cancel_event.set()
                elif unsettled:
                    logger.info(
                        "Job %s failed; waiting for discarded encodes %s to settle", job.job_id, unsettled
                    )
            # Leaving the executor joins every rung thread

        if first_failure is not None:
            raise first_failure

        if len(manifest) != len(self.ladder):
            raise EncodeError(
                f"Only {len(manifest)} of {len(self.ladder)} variants finished for job {job.job_id}"
            )
        return manifest

    def _run_rung(
        self,
        job: Job,
        source: Path,
        rung: ResolutionTask,
        output_dir: Path,
        duration_s: Optional[float],
        run: EncodeRun,
        manifest: MasterManifest,
        cancel_event: Optional[threading.Event],
    ) -> EncodeRun:
        run.state = RunState.STARTED
        self._publish(job.video_id, ProgressStatus.STARTED, resolution=rung.name, percent=0)

        def on_progress(percent: Optional[float]) -> None:
            run.percent = clamp_percent(percent)
            run.state = RunState.IN_PROGRESS
            self._publish(
                job.video_id, ProgressStatus.IN_PROGRESS, resolution=rung.name, percent=run.percent
            )

        try:
            playlist = self.engine.encode_variant(
                source,
                rung,
                output_dir / rung.name,
                on_progress,
                duration_s=duration_s,
                cancel_event=cancel_event,
            )
        except Exception as e:
            run.state = RunState.FAILED
            run.error = e
            logger.error("Job %s: %s failed: %s", job.job_id, rung.name, e)
            self._publish(job.video_id, ProgressStatus.FAILED, resolution=rung.name, message=str(e))
            if isinstance(e, EngineError):
                raise
            raise EngineError(f"{rung.name}: {e}", resolution=rung.name) from e

        run.state = RunState.FINISHED
        run.percent = 100
        run.output_manifest_path = playlist
        manifest.append(VariantEntry.for_rung(rung))
        self._publish(job.video_id, ProgressStatus.FINISHED, resolution=rung.name, percent=100)
        return run

    def _upload(self, output_dir: Path, folder: str) -> str:
        """Upload variants first and the master playlist last. Returns the master key."""
        prefix = f"{self.config.storage.output_prefix.rstrip('/')}/{folder}"
        master = output_dir / MASTER_PLAYLIST_NAME
        files = sorted(p for p in output_dir.rglob("*") if p.is_file() and p != master)

        for path in files + [master]:
            key = f"{prefix}/{path.relative_to(output_dir).as_posix()}"
            try:
                self.store.put_file(key, path, content_type_for(path.name))
            except (StorageError, OSError) as e:
                raise UploadError(f"Upload of {key} failed: {e}", key=key) from e
        logger.info("Uploaded %d file(s) under %s/", len(files) + 1, prefix)
        return f"{prefix}/{MASTER_PLAYLIST_NAME}"

    def _cleanup(self, *paths: Path) -> None:
        for path in paths:
            if not path.exists():
                continue
            try:
                shutil.rmtree(path)
            except OSError as e:
                logger.warning("Cleanup of %s failed: %s", path, e)
