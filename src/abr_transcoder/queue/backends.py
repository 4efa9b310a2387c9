from __future__ import annotations

"""Abstract queue backend.

Local-first (SQLite) today; the interface is what a Redis-backed queue would
implement to run workers across machines.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Dict, List, Optional

if TYPE_CHECKING:
    from .models import Job, StateTransition


class QueueBackend(ABC):
    """Durable, leased, at-least-once job queue.

    Implementations must provide:
    - Atomic claim (two workers never hold an unexpired lease on one job)
    - Idempotent enqueue
    - Lease expiry as the only resumption path for crashed workers
    - Exponential backoff between attempts
    """

    @abstractmethod
    def enqueue(self, job: "Job") -> str:
        """Add job to queue (no-op if job_id exists).

        Returns:
            The job id.
        """

    @abstractmethod
    def claim_next(self, worker_id: str) -> Optional["Job"]:
        """Atomically lease the oldest claimable job.

        Implementation notes:
        - Requeue expired leases first
        - Only jobs with available_at <= now are claimable
        - Increment attempt_count and set lease_expires_at
        """

    @abstractmethod
    def ack(self, job_id: str, worker_id: str, result_url: Optional[str] = None) -> None:
        """Mark an active job completed.

        Raises:
            LeaseLostError: If worker_id no longer holds the lease.
        """

    @abstractmethod
    def fail(self, job_id: str, worker_id: str, error: str, retry: bool = True) -> None:
        """Record a failed attempt.

        Implementation notes:
        - If retry and attempts remain: back to waiting after the backoff delay
        - Otherwise: terminal failed

        Raises:
            LeaseLostError: If worker_id no longer holds the lease.
        """

    @abstractmethod
    def extend_lease(self, job_id: str, worker_id: str) -> None:
        """Heartbeat: push the lease deadline forward.

        Raises:
            LeaseLostError: If worker_id no longer holds the lease.
        """

    @abstractmethod
    def requeue_expired(self) -> int:
        """Return jobs with expired leases to waiting (or failed). Returns the count."""

    @abstractmethod
    def get_job(self, job_id: str) -> Optional["Job"]:
        """Fetch one job or None."""

    @abstractmethod
    def list_jobs(self, status: Optional[str] = None) -> List["Job"]:
        """Jobs in enqueue order, optionally filtered by status."""

    @abstractmethod
    def transitions(self, job_id: str) -> List["StateTransition"]:
        """Audit trail of one job, oldest first."""

    @abstractmethod
    def stats(self) -> Dict[str, int]:
        """Job counts per status plus ``total``."""

    @abstractmethod
    def retry_failed(self) -> int:
        """Operator action: failed jobs back to waiting with a fresh attempt budget."""

    @abstractmethod
    def clear(self) -> None:
        """Delete every job and transition."""

    def close(self) -> None:
        """Release connections."""
