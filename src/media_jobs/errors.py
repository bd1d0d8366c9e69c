"""Error taxonomy for job processing.

Every error carries a ``retryable`` flag that the worker pool consults when
deciding whether the broker should redeliver the job:

- DownloadError: fetching an upstream artifact failed (non-2xx or network)
- ProcessingError: merge or generation call failed
- StorageError: durable upload failed
- ValidationError: malformed or missing input fields (never retried)
"""

from typing import Optional


class MediaJobError(Exception):
    """Base class for job processing errors."""

    retryable = True

    def __init__(self, message: str, retryable: Optional[bool] = None):
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class DownloadError(MediaJobError):
    """An upstream artifact could not be fetched."""

    def __init__(self, message: str, url: Optional[str] = None, status_code: Optional[int] = None,
                 retryable: Optional[bool] = None):
        super().__init__(message, retryable=retryable)
        self.url = url
        self.status_code = status_code


class ProcessingError(MediaJobError):
    """A merge or generation step failed."""


class ProviderError(ProcessingError):
    """The external generation provider returned an error or no artifact."""


class StorageError(MediaJobError):
    """Persisting an artifact to durable storage failed."""


class ValidationError(MediaJobError):
    """Job input payload is malformed or missing required fields."""

    retryable = False


class QueueNotFoundError(KeyError):
    """No queue is registered for the requested job type."""
