"""
Error taxonomy for fetch operations.

NetworkError, TransformError and FetchTimeoutError are retryable. AbortError
is a silent, local termination: it is never retried, never stored on the
controller state and never passed to on_error.
"""
from typing import Optional

from fetchlayer.cache.coalescer import CoalescerReentryError


class FetchError(Exception):
    """Base class for every error surfaced by a fetch controller."""

    def __init__(self, message: str, identifier: Optional[str] = None):
        super().__init__(message)
        self.identifier = identifier


class NetworkError(FetchError):
    """The producer raised, or the upstream answered with a non-success status."""

    def __init__(
        self,
        message: str,
        identifier: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, identifier)
        self.status_code = status_code


class FetchTimeoutError(FetchError, TimeoutError):
    """An attempt did not settle within the configured timeout."""


class AbortError(FetchError):
    """The controller cancelled its own wait (cancel() or disposal)."""


class TransformError(FetchError):
    """transform_response raised while shaping the payload."""


RETRYABLE_ERRORS = (NetworkError, TransformError, FetchTimeoutError)


__all__ = [
    "AbortError",
    "CoalescerReentryError",
    "FetchError",
    "FetchTimeoutError",
    "NetworkError",
    "RETRYABLE_ERRORS",
    "TransformError",
]
