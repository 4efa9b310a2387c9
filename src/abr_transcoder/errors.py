"""Exception hierarchy for the transcoding pipeline.

Everything that makes ``EncodeOrchestrator.process`` give up derives from
``EncodeError`` so the worker pool can fail the job with a single handler.
Queue bookkeeping problems derive from ``QueueError``.
"""

from typing import Optional


class TranscoderError(Exception):
    """Base class for all pipeline errors."""


class StorageError(TranscoderError):
    """Object store adapter failure (missing key, network, permissions)."""

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key


class EncodeError(TranscoderError):
    """A job could not be turned into an HLS rendition set."""


class FetchError(EncodeError):
    """Source asset could not be retrieved from the object store."""


class InvalidSourceError(EncodeError):
    """Probed source can never encode (zero duration or zero resolution).

    Retrying will not help, so workers fail these jobs without retry.
    """


class EngineError(EncodeError):
    """External encoder exited non-zero, timed out or broke its stream."""

    def __init__(
        self,
        message: str,
        resolution: Optional[str] = None,
        error_type=None,
        returncode: Optional[int] = None,
        stderr_tail: str = "",
    ):
        super().__init__(message)
        self.resolution = resolution
        self.error_type = error_type
        self.returncode = returncode
        self.stderr_tail = stderr_tail


class ManifestError(EncodeError):
    """Master manifest could not be built or written."""


class UploadError(EncodeError):
    """Outputs could not be written back to the object store."""

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key


class QueueError(TranscoderError):
    """Claim, lease or acknowledgement failure in the job queue."""


class LeaseLostError(QueueError):
    """The caller no longer owns the lease on the job it tried to update."""
