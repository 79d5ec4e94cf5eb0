"""
Cursor-based paginated fetching with background next-page prefetch.
"""
import asyncio
import logging
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from fetchlayer.cache import SharedCache, get_shared_cache

from .controller import Fetcher, FetchController
from .errors import AbortError, FetchError
from .http import make_json_fetcher
from .models import Page, PageSet, PaginatedOptions
from .tracking import PerformanceTracker, get_performance_tracker

logger = logging.getLogger("fetching.paginated")


class PaginatedFetchController:
    """
    Sequences FetchController operations into an appendable list of pages.

    - load_more() fetches the page at the current cursor and appends it
    - Pages are requested strictly one at a time, in cursor order
    - With prefetch_next_page, the following page is warmed into the cache
      in the background (at most one prefetch at a time)
    - reset() starts over from the initial cursor

    Each page is cached under "{base}-page-{cursor}", where base is the
    cache_key option or the page URL.
    """

    def __init__(
        self,
        get_page_url: Callable[[Any], str],
        fetcher: Optional[Fetcher] = None,
        options: Optional[PaginatedOptions] = None,
        *,
        cache: Optional[SharedCache] = None,
        tracker: Optional[PerformanceTracker] = None,
    ):
        self._get_page_url = get_page_url
        self._options = options or PaginatedOptions()
        self._fetcher = fetcher or make_json_fetcher(self._options.headers)
        self._cache = cache if cache is not None else get_shared_cache()
        self._tracker = tracker if tracker is not None else get_performance_tracker()

        self._page_set = PageSet()
        self._cursor = self._options.initial_cursor
        self._is_loading_more = False
        self._error: Optional[FetchError] = None
        self._generation = 0
        self._active: Optional[FetchController] = None
        self._prefetch_task: Optional[asyncio.Task] = None
        self._dependencies = list(self._options.dependencies)
        self._tasks: Set[asyncio.Task] = set()
        self._listeners: List[Callable[[Dict[str, Any]], None]] = []
        self._disposed = False

    @property
    def pages(self) -> List[Page]:
        return list(self._page_set.pages)

    @property
    def items(self) -> List[Any]:
        """Page payloads in request order."""
        return [page.items for page in self._page_set.pages]

    @property
    def is_loading_more(self) -> bool:
        return self._is_loading_more

    @property
    def has_next_page(self) -> bool:
        return self._page_set.has_next

    @property
    def error(self) -> Optional[FetchError]:
        return self._error

    @property
    def current_cursor(self) -> Any:
        return self._cursor

    @property
    def is_prefetching(self) -> bool:
        return self._prefetch_task is not None and not self._prefetch_task.done()

    def snapshot(self) -> Dict[str, Any]:
        """Consumer-facing view of the current state."""
        return {
            "pages": self.items,
            "isLoadingMore": self._is_loading_more,
            "hasNextPage": self._page_set.has_next,
            "error": self._error,
            "currentCursor": self._cursor,
        }

    def subscribe(self, listener: Callable[[Dict[str, Any]], None]) -> Callable[[], None]:
        """Register a listener called with snapshot() after every change."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Page listener failed")

    def _page_controller(self, cursor: Any) -> FetchController:
        """Build a single-shot FetchController for the page at cursor."""
        url = self._get_page_url(cursor)
        base = self._options.cache_key or url
        options = replace(
            self._options,
            cache_key=f"{base}-page-{cursor}",
            dependencies=[],
            fetch_on_mount=False,
            prefetch=False,
            debounce_delay=0.0,
            on_error=None,
        )
        return FetchController(
            url,
            self._fetcher,
            options,
            cache=self._cache,
            tracker=self._tracker,
        )

    async def load_more(self) -> Optional[Any]:
        """
        Load the page at the current cursor and append it.

        No-op while a load is in flight or once the last page was reached.

        Returns:
            The transformed page payload, or None if nothing was appended
        """
        if self._disposed or not self._page_set.has_next or self._is_loading_more:
            return None

        generation = self._generation
        cursor = self._cursor
        controller = self._page_controller(cursor)
        self._active = controller
        self._is_loading_more = True
        self._error = None
        self._notify()

        try:
            result = await controller.fetch()
        except AbortError:
            logger.debug(f"Page load for cursor {cursor} abandoned")
            return None
        except FetchError as error:
            if generation == self._generation:
                self._fail(error)
            return None
        finally:
            controller.on_dispose()
            if self._active is controller:
                self._active = None
            if generation == self._generation:
                self._is_loading_more = False

        if generation != self._generation:
            return None

        next_cursor = self._options.get_next_page_param(result)
        self._page_set.append(Page(cursor=cursor, items=result, next_cursor=next_cursor))
        if next_cursor is not None:
            self._cursor = next_cursor
        else:
            logger.info(f"Reached last page at cursor {cursor} ({len(self._page_set)} pages)")
        self._notify()

        self._maybe_prefetch_next()
        return result

    def _fail(self, error: FetchError) -> None:
        self._error = error
        self._is_loading_more = False
        self._notify()
        logger.error(f"Page load failed for cursor {self._cursor}: {error}")
        if self._options.on_error is not None:
            try:
                self._options.on_error(error)
            except Exception:
                logger.exception("on_error callback failed")

    def _maybe_prefetch_next(self) -> None:
        if not self._options.prefetch_next_page or self._disposed:
            return
        if not self._page_set.has_next or self.is_prefetching:
            return
        self._prefetch_task = self._spawn(self._prefetch_page(self._cursor))

    async def _prefetch_page(self, cursor: Any) -> None:
        """Warm the cache for cursor without touching the visible pages."""
        controller = self._page_controller(cursor)
        logger.debug(f"Prefetching page at cursor {cursor}")
        try:
            await controller.prefetch()
        finally:
            controller.on_dispose()

    async def reset(self) -> Optional[Any]:
        """Drop all pages, return to the initial cursor, and load the first page."""
        self._generation += 1
        if self._active is not None:
            self._active.on_dispose()
            self._active = None
        if self._prefetch_task is not None:
            self._prefetch_task.cancel()
            self._prefetch_task = None

        self._page_set.clear()
        self._cursor = self._options.initial_cursor
        self._is_loading_more = False
        self._error = None
        self._notify()
        return await self.load_more()

    def _spawn(self, coro: Any) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def on_create(self) -> None:
        """Load the first page."""
        if not self._disposed:
            self._spawn(self.load_more())

    def on_dependencies_changed(self, dependencies: Sequence[Any]) -> bool:
        """Reset and reload from the first page when any dependency changed."""
        new_values = list(dependencies)
        if new_values == self._dependencies or self._disposed:
            return False
        self._dependencies = new_values
        self._spawn(self.reset())
        return True

    def on_dispose(self) -> None:
        """Stop loading and prefetching; idempotent."""
        if self._disposed:
            return
        self._disposed = True
        self._generation += 1
        if self._active is not None:
            self._active.on_dispose()
            self._active = None
        for task in list(self._tasks):
            task.cancel()
        self._is_loading_more = False
        self._listeners.clear()

    async def __aenter__(self) -> "PaginatedFetchController":
        self.on_create()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.on_dispose()
