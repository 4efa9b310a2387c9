"""Pydantic models for job queue data structures."""

from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Job processing states.

    State transitions:
        waiting → active      (worker claims, attempt_count += 1)
        active  → completed   (worker acks)
        active  → waiting     (fail with attempts left, or lease expired)
        active  → failed      (attempts exhausted or permanent error)
        failed  → waiting     (operator retry)
    """

    WAITING = "waiting"  # Queued, claimable once available_at has passed
    ACTIVE = "active"  # Leased by a worker
    COMPLETED = "completed"  # Rendition set published
    FAILED = "failed"  # Terminal until an operator retries it


class BackoffPolicy(BaseModel):
    """Retry delay policy: ``delay_s * 2 ** (attempt - 1)`` after attempt n fails."""

    type: Literal["exponential"] = Field(default="exponential", description="Backoff kind")
    delay_s: float = Field(default=5.0, ge=0.0, description="Delay after the first failure")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after ``attempt`` (1-based) has failed."""
        return self.delay_s * (2 ** max(attempt - 1, 0))


class Job(BaseModel):
    """One transcode job as stored in the queue."""

    job_id: str = Field(..., description="Unique job identifier")
    video_id: str = Field(..., description="Video the job transcodes (progress room name)")
    source_storage_key: str = Field(..., description="Object store key of the raw upload")
    status: JobStatus = Field(default=JobStatus.WAITING, description="Current job state")
    attempt_count: int = Field(default=0, ge=0, description="Claims so far")
    max_attempts: int = Field(default=3, ge=1, description="Claims allowed before terminal failure")
    backoff_delay_s: float = Field(default=5.0, ge=0.0, description="Exponential backoff base")
    created_at: datetime = Field(default_factory=utcnow, description="Enqueue time")
    updated_at: Optional[datetime] = Field(default=None, description="Last state change")
    available_at: Optional[datetime] = Field(
        default=None, description="Earliest claim time (enqueue time when unset)"
    )
    started_at: Optional[datetime] = Field(default=None, description="Latest claim time")
    completed_at: Optional[datetime] = Field(default=None, description="Terminal transition time")
    lease_expires_at: Optional[datetime] = Field(default=None, description="Lease deadline")
    worker_id: Optional[str] = Field(default=None, description="Worker holding the lease")
    last_error: Optional[str] = Field(default=None, description="Last error message (truncated)")
    result_url: Optional[str] = Field(default=None, description="Public master playlist URL")

    class Config:
        """Pydantic configuration."""

        use_enum_values = True  # Serialize enums as strings

    @property
    def backoff(self) -> BackoffPolicy:
        return BackoffPolicy(delay_s=self.backoff_delay_s)


class StateTransition(BaseModel):
    """Audit log entry for job state changes."""

    id: Optional[int] = Field(default=None, description="Auto-increment ID")
    job_id: str = Field(..., description="Job identifier")
    from_state: Optional[str] = Field(default=None, description="Previous state")
    to_state: str = Field(..., description="New state")
    timestamp: datetime = Field(default_factory=utcnow, description="Transition time")
    worker_id: Optional[str] = Field(default=None, description="Worker that caused transition")
    error_snippet: Optional[str] = Field(default=None, description="First 200 chars of error")
