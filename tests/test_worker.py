"""Tests for the job worker pool (real SQLite queue, scripted orchestrator)."""

import threading
import time
from unittest.mock import patch

import pytest

from abr_transcoder import pipeline
from abr_transcoder.errors import EngineError, InvalidSourceError, LeaseLostError
from abr_transcoder.queue import JobStatus, JobWorkerPool, SQLiteQueue
from abr_transcoder.relay import ProgressRelay
from abr_transcoder.runtime import build_runtime

from conftest import RecordingMember, StubEngine


class ScriptedOrchestrator:
    """Calls ``behaviour(job)`` for every job and records attempts."""

    def __init__(self, behaviour=None):
        self.behaviour = behaviour or (lambda job: f"https://cdn/{job.video_id}/master.m3u8")
        self.calls = []
        self._lock = threading.Lock()

    def process(self, job):
        with self._lock:
            self.calls.append((job.job_id, job.attempt_count))
        return self.behaviour(job)


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "queue.db")


@pytest.fixture
def queue(db_path):
    q = SQLiteQueue(db_path)
    yield q
    q.close()


def make_pool(db_path, orchestrator, lease_s=600.0, **kwargs):
    kwargs.setdefault("poll_interval_s", 0.01)
    return JobWorkerPool(
        lambda: SQLiteQueue(db_path, lease_s=lease_s),
        orchestrator,
        worker_prefix="test",
        **kwargs,
    )


def enqueue(queue, video_id, attempts=3):
    return pipeline.enqueue_transcode_job(
        queue,
        video_id,
        f"raw_videos/{video_id}.mp4",
        attempts=attempts,
        backoff={"type": "exponential", "delay_ms": 0},
    )


class TestWorkerPool:
    """Test claim → process → ack/fail."""

    def test_processes_all_jobs_until_idle(self, db_path, queue):
        job_ids = [enqueue(queue, f"vid-{i}") for i in range(3)]
        orchestrator = ScriptedOrchestrator()

        stats = make_pool(db_path, orchestrator, concurrency=2).run(until_idle=True)

        assert stats["claimed"] == 3
        assert stats["succeeded"] == 3
        assert stats["failed"] == 0
        for i, job_id in enumerate(job_ids):
            job = queue.get_job(job_id)
            assert job.status == JobStatus.COMPLETED.value
            assert job.result_url == f"https://cdn/vid-{i}/master.m3u8"
            assert job.worker_id.startswith("test-")

    def test_retries_until_terminal_failure(self, db_path, queue):
        """A job failing every attempt is tried max_attempts times, then failed."""
        job_id = enqueue(queue, "vid-1", attempts=3)

        def always_fail(job):
            raise EngineError("360p exploded", resolution="360p")

        orchestrator = ScriptedOrchestrator(always_fail)
        stats = make_pool(db_path, orchestrator, concurrency=1).run(until_idle=True)

        job = queue.get_job(job_id)
        assert job.status == JobStatus.FAILED.value
        assert job.attempt_count == 3
        assert job.last_error == "EngineError: 360p exploded"
        assert [attempt for _, attempt in orchestrator.calls] == [1, 2, 3]
        assert stats["failed"] == 3

    def test_retry_then_success(self, db_path, queue):
        job_id = enqueue(queue, "vid-1")

        def flaky(job):
            if job.attempt_count == 1:
                raise EngineError("transient")
            return "https://cdn/ok/master.m3u8"

        make_pool(db_path, ScriptedOrchestrator(flaky), concurrency=1).run(until_idle=True)

        job = queue.get_job(job_id)
        assert job.status == JobStatus.COMPLETED.value
        assert job.attempt_count == 2
        assert job.result_url == "https://cdn/ok/master.m3u8"

    def test_invalid_source_not_retried(self, db_path, queue):
        job_id = enqueue(queue, "vid-1", attempts=3)

        def invalid(job):
            raise InvalidSourceError("Source has zero duration (0.0)")

        orchestrator = ScriptedOrchestrator(invalid)
        make_pool(db_path, orchestrator, concurrency=1).run(until_idle=True)

        job = queue.get_job(job_id)
        assert job.status == JobStatus.FAILED.value
        assert job.attempt_count == 1
        assert len(orchestrator.calls) == 1

    def test_unexpected_exception_is_retried(self, db_path, queue):
        job_id = enqueue(queue, "vid-1", attempts=2)

        def crash(job):
            raise RuntimeError("bug")

        orchestrator = ScriptedOrchestrator(crash)
        make_pool(db_path, orchestrator, concurrency=1).run(until_idle=True)

        job = queue.get_job(job_id)
        assert job.status == JobStatus.FAILED.value
        assert job.attempt_count == 2
        assert job.last_error == "RuntimeError: bug"

    def test_max_jobs_caps_claims(self, db_path, queue):
        for i in range(5):
            enqueue(queue, f"vid-{i}")

        stats = make_pool(db_path, ScriptedOrchestrator(), concurrency=3).run(max_jobs=2)

        assert stats["claimed"] == 2
        counts = queue.stats()
        assert counts["completed"] == 2
        assert counts["waiting"] == 3

    def test_heartbeat_keeps_long_job_leased(self, db_path, queue):
        """A job outliving its lease is not reclaimed while heartbeats run."""
        job_id = enqueue(queue, "slow")

        def slow(job):
            time.sleep(1.0)
            return "https://cdn/slow/master.m3u8"

        orchestrator = ScriptedOrchestrator(slow)
        pool = make_pool(
            db_path, orchestrator, lease_s=0.5, concurrency=2, heartbeat_interval_s=0.05
        )
        pool.run(until_idle=True)

        job = queue.get_job(job_id)
        assert job.status == JobStatus.COMPLETED.value
        assert job.attempt_count == 1
        assert len(orchestrator.calls) == 1

    def test_context_manager_drains_on_exit(self, db_path, queue):
        job_id = enqueue(queue, "vid-1")
        done = threading.Event()

        def signal(job):
            done.set()
            return "https://cdn/vid-1/master.m3u8"

        with make_pool(db_path, ScriptedOrchestrator(signal), concurrency=1) as pool:
            assert done.wait(timeout=5)
            assert pool.running

        assert not pool.running
        assert queue.get_job(job_id).status == JobStatus.COMPLETED.value

    def test_lost_lease_on_ack_not_counted_as_success(self, db_path, queue):
        enqueue(queue, "vid-1")

        with patch.object(SQLiteQueue, "ack", side_effect=LeaseLostError("job reclaimed")):
            stats = make_pool(db_path, ScriptedOrchestrator(), concurrency=1).run(max_jobs=1)

        assert stats["claimed"] == 1
        assert stats["succeeded"] == 0
        assert stats["failed"] == 0

    def test_rejects_zero_concurrency(self, db_path):
        with pytest.raises(ValueError):
            make_pool(db_path, ScriptedOrchestrator(), concurrency=0)


class TestEndToEnd:
    """Pool + orchestrator + stub engine over a local store."""

    def test_two_rung_job_published(self, config, store, bus):
        """Room vid-1 sees every rung's lifecycle, then Complete with the master URL."""
        runtime = build_runtime(config, store=store, bus=bus, engine=StubEngine())
        watcher, bystander = RecordingMember(), RecordingMember()
        queue = runtime.queue_factory()
        with ProgressRelay(bus, channel=config.progress.channel) as relay:
            relay.join(watcher, "vid-1")
            relay.join(bystander, "vid-2")
            try:
                job_id = enqueue_clip(queue)
                stats = runtime.worker_pool(concurrency=1).run(until_idle=True)
                job = queue.get_job(job_id)
            finally:
                queue.close()

        url = "https://cdn.example.com/transcoded_videos/clip/master.m3u8"
        assert stats["succeeded"] == 1
        assert job.status == JobStatus.COMPLETED.value
        assert job.result_url == url

        received = watcher.payloads
        assert all(p["videoId"] == "vid-1" for p in received)
        for rung in ("240p", "360p"):
            assert [p["status"] for p in received if p.get("resolution") == rung] == [
                "started",
                "in_progress",
                "in_progress",
                "in_progress",
                "finished",
            ]
        assert received[-1] == {"videoId": "vid-1", "percent": 100, "status": "Complete", "url": url}
        assert bystander.payloads == []

        with store.get("transcoded_videos/clip/master.m3u8") as f:
            master = f.read().decode()
        assert master.count("#EXT-X-STREAM-INF") == 2

    def test_failing_rung_exhausts_retries(self, config, store, bus, events):
        runtime = build_runtime(config, store=store, bus=bus, engine=StubEngine(fail_on={"360p"}))
        queue = runtime.queue_factory()
        try:
            job_id = enqueue_clip(queue)
            runtime.worker_pool(concurrency=2).run(until_idle=True)
            job = queue.get_job(job_id)
            history = [t.to_state for t in queue.transitions(job_id)]
        finally:
            queue.close()

        assert job.status == JobStatus.FAILED.value
        assert job.attempt_count == 3
        assert history.count("active") == 3
        assert history[-1] == "failed"
        rung_failures = [e for e in events if e.status == "failed" and e.resolution == "360p"]
        assert len(rung_failures) == 3
        assert not any(e.status == "Complete" for e in events)
        assert store.put_keys == []


def enqueue_clip(queue):
    return pipeline.enqueue_transcode_job(
        queue, "vid-1", "raw_videos/clip.mp4", backoff={"type": "exponential", "delay_ms": 0}
    )
