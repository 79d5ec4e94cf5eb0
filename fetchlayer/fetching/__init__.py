"""
Fetch orchestration: single-resource and paginated controllers.

Built on the shared cache and request coalescer; adds retry with linear
backoff, cancellation/timeout, debounce, and dependency-triggered refetch.
"""
from .errors import (
    RETRYABLE_ERRORS,
    AbortError,
    CoalescerReentryError,
    FetchError,
    FetchTimeoutError,
    NetworkError,
    TransformError,
)
from .models import (
    FetchOptions,
    FetchState,
    FetchStatus,
    Page,
    PageSet,
    PaginatedOptions,
    default_next_page_param,
)
from .debounce import Debouncer
from .controller import AbortToken, FetchController
from .paginated import PaginatedFetchController
from .http import fetch_json, make_json_fetcher
from .tracking import PerformanceTracker, get_performance_tracker

__all__ = [
    # Errors
    "AbortError",
    "CoalescerReentryError",
    "FetchError",
    "FetchTimeoutError",
    "NetworkError",
    "RETRYABLE_ERRORS",
    "TransformError",
    # Models
    "FetchOptions",
    "FetchState",
    "FetchStatus",
    "Page",
    "PageSet",
    "PaginatedOptions",
    "default_next_page_param",
    # Controllers
    "AbortToken",
    "Debouncer",
    "FetchController",
    "PaginatedFetchController",
    # Producers
    "fetch_json",
    "make_json_fetcher",
    # Tracking
    "PerformanceTracker",
    "get_performance_tracker",
]
