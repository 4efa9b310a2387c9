"""Queue-level entry points used by the CLI and the HTTP API.

Usage:
    job_id = pipeline.enqueue_transcode_job(queue, "vid-42", "raw_videos/clip.mp4")

    runtime = build_runtime(resolve_config())
    pipeline.process_queue(runtime, until_idle=True)

    stats = pipeline.get_queue_stats(queue)
"""

import uuid
from typing import Any, Dict, Optional

from .queue import Job, QueueBackend
from .runtime import Runtime

DEFAULT_BACKOFF = {"type": "exponential", "delay_ms": 5000}


def enqueue_transcode_job(
    queue: QueueBackend,
    video_id: str,
    source_storage_key: str,
    attempts: int = 3,
    backoff: Optional[Dict[str, Any]] = None,
    job_id: Optional[str] = None,
) -> str:
    """Enqueue one transcode job.

    Args:
        queue: Queue backend
        video_id: Video the job belongs to (also its progress room)
        source_storage_key: Object store key of the raw upload
        attempts: Claims allowed before the job is terminal-failed
        backoff: ``{"type": "exponential", "delay_ms": 5000}``
        job_id: Explicit id (enqueueing an existing id is a no-op)

    Returns:
        The job id

    Raises:
        ValueError: On empty ids, attempts < 1 or an unknown backoff type
    """
    if not video_id:
        raise ValueError("video_id is required")
    if not source_storage_key:
        raise ValueError("source_storage_key is required")
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    backoff = {**DEFAULT_BACKOFF, **(backoff or {})}
    if backoff["type"] != "exponential":
        raise ValueError(f"Unsupported backoff type: {backoff['type']}")

    job = Job(
        job_id=job_id or str(uuid.uuid4()),
        video_id=str(video_id),
        source_storage_key=source_storage_key,
        max_attempts=attempts,
        backoff_delay_s=float(backoff["delay_ms"]) / 1000.0,
    )
    return queue.enqueue(job)


def process_queue(
    runtime: Runtime,
    n_workers: Optional[int] = None,
    max_jobs: Optional[int] = None,
    until_idle: bool = False,
) -> Dict[str, Any]:
    """Run the worker pool in the foreground.

    Returns:
        Pool statistics (claimed, succeeded, failed, duration_s)
    """
    pool = runtime.worker_pool(concurrency=n_workers)
    print(f"\nProcessing queue with {pool.concurrency} workers...")
    stats = pool.run(max_jobs=max_jobs, until_idle=until_idle)
    print(
        f"\nDone: {stats['succeeded']} succeeded, {stats['failed']} failed "
        f"in {stats['duration_s']:.1f}s"
    )
    return stats


def get_queue_stats(queue: QueueBackend) -> Dict[str, int]:
    """Job counts per status plus ``total``."""
    return queue.stats()


def retry_failed(queue: QueueBackend) -> int:
    """Give every failed job a fresh attempt budget."""
    count = queue.retry_failed()
    print(f"Marked {count} failed jobs for retry")
    return count


def clear_queue(queue: QueueBackend) -> None:
    queue.clear()
    print("Queue cleared")
