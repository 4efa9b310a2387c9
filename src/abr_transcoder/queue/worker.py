"""Fixed-size worker pool draining the job queue.

Each slot is a thread with its own queue connection running
claim → heartbeat → orchestrator.process → ack/fail. Encodes themselves run
in ffmpeg subprocesses, so threads are enough to keep C jobs in flight.

Error handling:
- InvalidSourceError (the source can never encode): fail without retry
- Everything else, including unexpected exceptions: fail with retry
- A lost lease on ack/fail is logged; the new owner's state wins
"""

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..errors import EncodeError, InvalidSourceError, LeaseLostError
from .backends import QueueBackend
from .models import Job, JobStatus

logger = logging.getLogger(__name__)

QueueFactory = Callable[[], QueueBackend]


@dataclass
class PoolStats:
    """Per-pool counters."""
    claimed: int = 0
    succeeded: int = 0
    failed: int = 0
    started_at: float = field(default_factory=time.time)

    @property
    def duration_s(self) -> float:
        return time.time() - self.started_at

    def as_dict(self) -> Dict[str, Any]:
        return {
            "claimed": self.claimed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "duration_s": round(self.duration_s, 2),
        }


class JobWorkerPool:
    """Static pool of C job slots.

    Use as a context manager (slots start on enter and drain on exit) or call
    ``run()`` to block until a stop condition.
    """

    def __init__(
        self,
        queue_factory: QueueFactory,
        orchestrator,
        concurrency: int = 4,
        poll_interval_s: float = 1.0,
        heartbeat_interval_s: float = 60.0,
        worker_prefix: Optional[str] = None,
    ):
        """Initialize worker pool.

        Args:
            queue_factory: Returns a fresh queue connection (one per thread)
            orchestrator: Object with ``process(job) -> url``
            concurrency: Number of job slots
            poll_interval_s: Sleep between claims when nothing is claimable
            heartbeat_interval_s: Lease extension period for running jobs
            worker_prefix: Prefix of slot worker ids (default: worker-<pid>)
        """
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.queue_factory = queue_factory
        self.orchestrator = orchestrator
        self.concurrency = concurrency
        self.poll_interval_s = poll_interval_s
        self.heartbeat_interval_s = heartbeat_interval_s
        self.worker_prefix = worker_prefix or f"worker-{os.getpid()}"

        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._lock = threading.Lock()
        self._stats = PoolStats()
        self._in_flight = 0
        self._claim_budget: Optional[int] = None

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *args):
        self.stop()

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self, max_jobs: Optional[int] = None) -> None:
        """Spawn the slots. ``max_jobs`` caps the total number of claims."""
        if self._threads:
            raise RuntimeError("Worker pool already started")
        self._stop.clear()
        self._stats = PoolStats()
        self._claim_budget = max_jobs
        for slot in range(self.concurrency):
            thread = threading.Thread(
                target=self._slot_loop,
                args=(f"{self.worker_prefix}-{slot}",),
                name=f"slot-{slot}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)
        logger.info("Worker pool started with %d slot(s)", self.concurrency)

    def stop(self, wait: bool = True) -> None:
        """Stop claiming. With ``wait``, block until running jobs finish."""
        self._stop.set()
        if wait:
            for thread in self._threads:
                thread.join()
        self._threads = []
        logger.info("Worker pool stopped: %s", self._stats.as_dict())

    def run(self, max_jobs: Optional[int] = None, until_idle: bool = False) -> Dict[str, Any]:
        """Run until stopped, until ``max_jobs`` were processed, or until idle.

        Args:
            max_jobs: Stop after this many claims have been processed
            until_idle: Stop once no job is waiting or active

        Returns:
            Pool stats
        """
        self.start(max_jobs=max_jobs)
        monitor = self.queue_factory()
        try:
            while not self._stop.is_set():
                if not self.running:
                    break
                if until_idle and self._is_idle(monitor):
                    break
                self._stop.wait(self.poll_interval_s)
        except KeyboardInterrupt:
            logger.info("Interrupted, draining running jobs")
        finally:
            monitor.close()
            self.stop()
        return self.stats()

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return self._stats.as_dict()

    def _is_idle(self, queue: QueueBackend) -> bool:
        with self._lock:
            if self._in_flight:
                return False
        counts = queue.stats()
        return counts[JobStatus.WAITING.value] == 0 and counts[JobStatus.ACTIVE.value] == 0

    def _reserve_claim(self) -> bool:
        with self._lock:
            if self._claim_budget is not None:
                if self._claim_budget <= 0:
                    return False
                self._claim_budget -= 1
            self._in_flight += 1
            return True

    def _release_claim(self, claimed: bool) -> None:
        with self._lock:
            self._in_flight -= 1
            if not claimed and self._claim_budget is not None:
                self._claim_budget += 1

    def _slot_loop(self, worker_id: str) -> None:
        queue = self.queue_factory()
        try:
            while not self._stop.is_set():
                if not self._reserve_claim():
                    break
                job = None
                try:
                    job = queue.claim_next(worker_id)
                except Exception:
                    logger.exception("%s: claim failed", worker_id)

                if job is None:
                    self._release_claim(claimed=False)
                    self._stop.wait(self.poll_interval_s)
                    continue

                try:
                    self._process(queue, worker_id, job)
                finally:
                    self._release_claim(claimed=True)
        finally:
            queue.close()

    def _process(self, queue: QueueBackend, worker_id: str, job: Job) -> None:
        with self._lock:
            self._stats.claimed += 1
        logger.info(
            "%s: claimed job %s (video %s, attempt %d/%d)",
            worker_id, job.job_id, job.video_id, job.attempt_count, job.max_attempts,
        )

        start_time = time.time()
        heartbeat = _start_heartbeat(
            self.queue_factory, job.job_id, worker_id, self.heartbeat_interval_s
        )
        url = None
        error: Optional[BaseException] = None
        try:
            url = self.orchestrator.process(job)
        except Exception as e:
            error = e
        finally:
            _stop_heartbeat(heartbeat)

        duration = time.time() - start_time
        if error is None:
            try:
                queue.ack(job.job_id, worker_id, result_url=url)
            except LeaseLostError as e:
                logger.warning("%s: finished job %s but %s", worker_id, job.job_id, e)
            except Exception:
                logger.exception("%s: ack failed for job %s", worker_id, job.job_id)
            else:
                logger.info("%s: job %s completed in %.1fs -> %s", worker_id, job.job_id, duration, url)
                with self._lock:
                    self._stats.succeeded += 1
            return

        retry = not isinstance(error, InvalidSourceError)
        if isinstance(error, InvalidSourceError):
            logger.error("%s: job %s has an unusable source: %s", worker_id, job.job_id, error)
        elif isinstance(error, EncodeError):
            logger.error("%s: job %s failed: %s", worker_id, job.job_id, error)
        else:
            logger.error(
                "%s: job %s raised unexpectedly", worker_id, job.job_id, exc_info=error
            )

        try:
            queue.fail(job.job_id, worker_id, f"{type(error).__name__}: {error}", retry=retry)
        except LeaseLostError as e:
            logger.warning("%s: could not record failure of job %s: %s", worker_id, job.job_id, e)
        except Exception:
            # Lease expiry returns the job to the queue
            logger.exception("%s: fail() raised for job %s", worker_id, job.job_id)
        with self._lock:
            self._stats.failed += 1


def _start_heartbeat(
    queue_factory: QueueFactory, job_id: str, worker_id: str, interval_s: float
) -> Tuple[threading.Thread, threading.Event]:
    """Start background thread extending the job lease every ``interval_s``.

    Each thread creates its own queue connection (SQLite connections are
    per thread). Stops on its own once the lease is lost.
    """
    stop_event = threading.Event()

    def heartbeat_loop():
        queue = queue_factory()
        try:
            while not stop_event.wait(interval_s):
                try:
                    queue.extend_lease(job_id, worker_id)
                except LeaseLostError as e:
                    logger.warning("Heartbeat stopped: %s", e)
                    return
                except Exception as e:
                    logger.warning("Heartbeat failed for %s: %s", job_id, e)
        finally:
            queue.close()

    thread = threading.Thread(target=heartbeat_loop, name=f"heartbeat-{job_id}", daemon=True)
    thread.start()
    return (thread, stop_event)


def _stop_heartbeat(heartbeat_data: Tuple[threading.Thread, threading.Event]) -> None:
    """Signal the heartbeat thread and wait up to 5s for it."""
    thread, stop_event = heartbeat_data
    stop_event.set()
    thread.join(timeout=5)
