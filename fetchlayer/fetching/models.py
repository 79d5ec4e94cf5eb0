"""
Data models for fetch controllers: options, state, and pages.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from config.settings import settings


class FetchStatus(Enum):
    """Lifecycle of a controller's current operation."""
    IDLE = "idle"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass
class FetchState:
    """
    State owned by exactly one FetchController.

    is_loading is the flag consumers render from; it tracks LOADING except
    during a silent prefetch, which never raises it.
    """
    data: Any = None
    status: FetchStatus = FetchStatus.IDLE
    error: Optional[Exception] = None
    attempt: int = 0
    generation: int = 0
    is_loading: bool = False

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "data": self.data,
            "status": self.status.value,
            "error": str(self.error) if self.error else None,
            "attempt": self.attempt,
            "generation": self.generation,
            "isLoading": self.is_loading,
        }


@dataclass
class FetchOptions:
    """
    Options bag for a FetchController. Durations are in seconds.

    Attributes:
        cache_key: Cache key (defaults to the resolved identifier)
        cache_ttl: TTL for stored results
        refresh_cache_on_access: Extend cached entries on every hit
        dependencies: Values whose change triggers an automatic fetch
        fetch_on_mount: Fetch as soon as the controller is created
        keep_previous_data: Keep data visible while a refetch is loading
        retry_count: Retries after the first failed attempt
        retry_delay: Base delay; retry n waits retry_delay * n
        prefetch: Silently warm the cache on creation
        debounce_delay: Quiet period collapsing automatic triggers
        timeout: Per-attempt timeout, None for no limit
        deduplicate_requests: Share in-flight operations per identifier
        transform_response: Applied to the raw payload before caching
        on_error: Called once per terminal failure
        headers: Request headers for the default HTTP producer
    """
    cache_key: Optional[str] = None
    cache_ttl: float = field(default_factory=lambda: settings.cache_ttl_seconds)
    refresh_cache_on_access: bool = field(default_factory=lambda: settings.refresh_cache_on_access)
    dependencies: List[Any] = field(default_factory=list)
    fetch_on_mount: bool = True
    keep_previous_data: bool = True
    retry_count: int = field(default_factory=lambda: settings.retry_count)
    retry_delay: float = field(default_factory=lambda: settings.retry_delay_seconds)
    prefetch: bool = False
    debounce_delay: float = 0.0
    timeout: Optional[float] = None
    deduplicate_requests: bool = True
    transform_response: Optional[Callable[[Any], Any]] = None
    on_error: Optional[Callable[[Exception], None]] = None
    headers: Optional[Dict[str, str]] = None


def default_next_page_param(last_page: Any) -> Any:
    """Read the next cursor from a page payload ("nextPage" key or next_page attribute)."""
    if isinstance(last_page, Mapping):
        return last_page.get("nextPage")
    return getattr(last_page, "next_page", None)


@dataclass
class PaginatedOptions(FetchOptions):
    """FetchOptions plus cursor handling for PaginatedFetchController."""
    initial_cursor: Any = 1
    get_next_page_param: Callable[[Any], Any] = default_next_page_param
    prefetch_next_page: bool = False


@dataclass
class Page:
    """One loaded page: the transformed payload and the cursor after it."""
    cursor: Any
    items: Any
    next_cursor: Any = None


@dataclass
class PageSet:
    """Ordered pages in the order they were requested."""
    pages: List[Page] = field(default_factory=list)
    has_next: bool = True

    def append(self, page: Page) -> None:
        self.pages.append(page)
        self.has_next = page.next_cursor is not None

    def clear(self) -> None:
        self.pages.clear()
        self.has_next = True

    def __len__(self) -> int:
        return len(self.pages)
