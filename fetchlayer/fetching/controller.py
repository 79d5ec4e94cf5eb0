"""
Per-consumer fetch orchestration.

A FetchController combines the shared cache, request coalescing, retry with
linear backoff, cancellation/timeout, debounced triggers, and
dependency-triggered refetch. Its FetchState is mutated only by its own
operations, and only while the operation's generation is still current, so
a slow superseded response can never overwrite fresher state.
"""
import asyncio
import logging
from dataclasses import replace
from functools import partial
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Set, Union

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from fetchlayer.cache import SharedCache, get_shared_cache

from .debounce import Debouncer
from .errors import (
    RETRYABLE_ERRORS,
    AbortError,
    CoalescerReentryError,
    FetchError,
    FetchTimeoutError,
    NetworkError,
    TransformError,
)
from .http import make_json_fetcher
from .models import FetchOptions, FetchState, FetchStatus
from .tracking import PerformanceTracker, get_performance_tracker

logger = logging.getLogger("fetching.controller")

Resource = Union[str, Callable[[], str]]
Fetcher = Callable[[str], Awaitable[Any]]
Listener = Callable[[FetchState], None]


class AbortToken:
    """One-shot abort signal shared by every attempt of a single fetch call."""

    def __init__(self, generation: int = 0):
        self.future: asyncio.Future = asyncio.get_running_loop().create_future()
        self.generation = generation

    @property
    def aborted(self) -> bool:
        return self.future.done()

    def abort(self) -> None:
        if not self.future.done():
            self.future.set_result(None)

    async def wait(self, timeout: Optional[float]) -> bool:
        """Wait up to timeout seconds; True if the token fired meanwhile."""
        await asyncio.wait({self.future}, timeout=timeout)
        return self.aborted


class FetchController:
    """
    Orchestrates fetching one resource on behalf of one consumer.

    Lifecycle:
    - on_create(): silent prefetch and/or the initial (debounced) fetch
    - on_dependencies_changed(values): refetch when any value changed
    - on_dispose(): stop everything; idempotent

    Usage:
        controller = FetchController(
            lambda: f"/api/templates?q={query}",
            options=FetchOptions(retry_count=2, timeout=10),
        )
        unsubscribe = controller.subscribe(render)
        controller.on_create()
        ...
        controller.on_dispose()
    """

    def __init__(
        self,
        resource: Resource,
        fetcher: Optional[Fetcher] = None,
        options: Optional[FetchOptions] = None,
        *,
        cache: Optional[SharedCache] = None,
        tracker: Optional[PerformanceTracker] = None,
    ):
        """
        Args:
            resource: Identifier, or a callable returning the current one
            fetcher: Async producer called with the identifier
                (defaults to an HTTP JSON GET)
            options: Fetch options
            cache: Shared cache; its coalescer is used for every path
            tracker: Performance tracker for fetch timings
        """
        self._resource = resource
        self._options = options or FetchOptions()
        self._fetcher = fetcher or make_json_fetcher(self._options.headers)
        self._cache = cache if cache is not None else get_shared_cache()
        self._coalescer = self._cache.coalescer
        self._tracker = tracker if tracker is not None else get_performance_tracker()

        self._state = FetchState()
        self._generation = 0
        self._dependencies = list(self._options.dependencies)
        self._debouncer = Debouncer(self._options.debounce_delay, self._trigger_fetch)
        # Tokens of every fetch call still running, superseded ones included
        self._tokens: Set[AbortToken] = set()
        self._active_identifier: Optional[str] = None
        self._tasks: Set[asyncio.Task] = set()
        self._listeners: List[Listener] = []
        self._has_prefetched = False
        self._disposed = False

    # ------------------------------------------------------------------
    # Consumer-facing state
    # ------------------------------------------------------------------

    @property
    def state(self) -> FetchState:
        """Snapshot of the current state."""
        return replace(self._state)

    @property
    def data(self) -> Any:
        return self._state.data

    @property
    def status(self) -> FetchStatus:
        return self._state.status

    @property
    def error(self) -> Optional[Exception]:
        return self._state.error

    @property
    def is_loading(self) -> bool:
        return self._state.is_loading

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def disposed(self) -> bool:
        return self._disposed

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a listener called with a state snapshot after every change.

        Returns:
            Function that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        snapshot = self.state
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("State listener failed")

    def _update(self, op_generation: int, **changes: Any) -> bool:
        """Apply changes only if op_generation is still the current one."""
        if self._disposed or op_generation != self._generation:
            return False
        for name, value in changes.items():
            setattr(self._state, name, value)
        self._notify()
        return True

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    def _resolve_identifier(self) -> str:
        return self._resource() if callable(self._resource) else self._resource

    async def fetch(self, skip_cache: bool = False) -> Any:
        """
        Fetch the resource, retrying retryable failures.

        Args:
            skip_cache: Bypass the cache read (the result is still stored)

        Returns:
            The transformed payload

        Raises:
            AbortError: If cancel() or disposal interrupted the fetch
            FetchError: The terminal error once retries are exhausted
        """
        return await self._fetch(skip_cache, silent=False)

    async def refetch(self) -> Any:
        return await self.fetch(skip_cache=False)

    async def fetch_fresh(self) -> Any:
        return await self.fetch(skip_cache=True)

    async def prefetch(self) -> Any:
        """
        Warm the cache without exposing a loading state.

        Runs at most once per controller and only while no successful state
        exists. Failures are logged, not surfaced.

        Returns:
            The payload, or None if skipped or failed
        """
        if self._has_prefetched or self._state.status is FetchStatus.SUCCESS:
            return None
        self._has_prefetched = True
        try:
            return await self._fetch(False, silent=True)
        except (FetchError, CoalescerReentryError) as e:
            logger.warning(f"Prefetch failed for {self._active_identifier}: {e}")
            return None

    async def _fetch(self, skip_cache: bool, silent: bool) -> Any:
        if self._disposed:
            raise AbortError("Controller is disposed")

        identifier = self._resolve_identifier()
        cache_key = self._options.cache_key or identifier
        self._generation += 1
        generation = self._generation
        token = AbortToken(generation)
        self._tokens.add(token)
        self._active_identifier = identifier

        self._state.generation = generation
        if not silent:
            changes = {
                "status": FetchStatus.LOADING,
                "is_loading": True,
                "error": None,
                "attempt": 0,
            }
            if not self._options.keep_previous_data:
                changes["data"] = None
            self._update(generation, **changes)

        try:
            async with self._tracker.track(f"fetch-{cache_key}"):
                result = await self._run_with_retry(
                    identifier, cache_key, skip_cache, token, silent
                )
        except AbortError:
            logger.info(f"Fetch cancelled: {identifier}")
            raise
        except (FetchError, CoalescerReentryError) as error:
            if not silent:
                self._fail(generation, identifier, error)
            raise
        finally:
            self._tokens.discard(token)

        changes = {
            "data": result,
            "status": FetchStatus.SUCCESS,
            "error": None,
            "attempt": 0,
        }
        if not silent:
            changes["is_loading"] = False
        if not self._update(generation, **changes):
            logger.debug(f"Discarding stale result for {identifier} (generation {generation})")
        return result

    def _fail(self, generation: int, identifier: str, error: Exception) -> None:
        if not self._update(generation, status=FetchStatus.ERROR, error=error, is_loading=False):
            logger.debug(f"Discarding stale error for {identifier}: {error}")
            return

        logger.error(f"Fetch failed for {identifier}: {error}")
        if self._options.on_error is not None:
            try:
                self._options.on_error(error)
            except Exception:
                logger.exception("on_error callback failed")

    async def _run_with_retry(
        self,
        identifier: str,
        cache_key: str,
        skip_cache: bool,
        token: AbortToken,
        silent: bool,
    ) -> Any:
        delay = self._options.retry_delay
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(self._options.retry_count, 0) + 1),
            # Linear growth: retry n waits retry_delay * n
            wait=wait_incrementing(start=delay, increment=delay),
            retry=retry_if_exception(partial(self._should_retry, token.generation)),
            before_sleep=partial(self._on_retry_scheduled, token.generation, identifier, silent),
            sleep=partial(self._wait_or_abort, token),
            reraise=True,
        )

        async for attempt in retrying:
            with attempt:
                result = await self._attempt(identifier, cache_key, skip_cache, token)
        return result

    def _should_retry(self, generation: int, error: BaseException) -> bool:
        if not isinstance(error, RETRYABLE_ERRORS):
            return False
        return not self._disposed and generation == self._generation

    def _on_retry_scheduled(
        self,
        generation: int,
        identifier: str,
        silent: bool,
        retry_state: RetryCallState,
    ) -> None:
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            f"Fetch failed for {identifier} ({error}); "
            f"retry {retry_state.attempt_number}/{self._options.retry_count} in {delay:.2f}s"
        )
        if not silent:
            self._update(generation, attempt=retry_state.attempt_number)

    async def _wait_or_abort(self, token: AbortToken, seconds: float) -> None:
        if await token.wait(seconds):
            raise AbortError("Fetch cancelled during retry backoff", self._active_identifier)
        # Superseded or disposed while sleeping
        if self._disposed or token.generation != self._generation:
            token.abort()
            raise AbortError("Fetch superseded during retry backoff", self._active_identifier)

    async def _attempt(
        self,
        identifier: str,
        cache_key: str,
        skip_cache: bool,
        token: AbortToken,
    ) -> Any:
        """One attempt, abandoned locally on abort or timeout."""
        timeout = self._options.timeout
        load = asyncio.ensure_future(self._load(identifier, cache_key, skip_cache))
        try:
            done, _ = await asyncio.wait(
                {load, token.future},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if not load.done():
                load.cancel()

        if token.aborted:
            if load.done() and not load.cancelled():
                load.exception()
            raise AbortError(f"Fetch cancelled: {identifier}", identifier)
        if load in done:
            return load.result()

        logger.warning(f"Fetch timed out after {timeout}s: {identifier}")
        raise FetchTimeoutError(f"Timed out after {timeout}s", identifier)

    async def _load(self, identifier: str, cache_key: str, skip_cache: bool) -> Any:
        options = self._options

        async def operation() -> Any:
            try:
                raw = await self._fetcher(identifier)
            except FetchError:
                raise
            except Exception as e:
                raise NetworkError(str(e) or e.__class__.__name__, identifier) from e
            return self._transform(identifier, raw)

        if not skip_cache:
            return await self._cache.get_or_compute(
                cache_key,
                operation,
                ttl=options.cache_ttl,
                refresh_on_access=options.refresh_cache_on_access,
                coalesce_key=identifier,
                deduplicate=options.deduplicate_requests,
            )

        async def operation_and_store() -> Any:
            value = await operation()
            self._cache.set(
                cache_key,
                value,
                ttl=options.cache_ttl,
                refresh_on_access=options.refresh_cache_on_access,
            )
            return value

        logger.info(f"FORCE REFRESH: {cache_key}")
        if options.deduplicate_requests:
            return await self._coalescer.run(identifier, operation_and_store)
        return await operation_and_store()

    def _transform(self, identifier: str, raw: Any) -> Any:
        transform = self._options.transform_response
        if transform is None:
            return raw
        try:
            return transform(raw)
        except Exception as e:
            raise TransformError(f"transform_response failed: {e}", identifier) from e

    def cancel(self) -> None:
        """
        Abort every in-flight fetch as observed by this controller only.

        Other callers joined to the same coalesced operation are unaffected.
        Sets CANCELLED without touching error or calling on_error.
        """
        live = [token for token in self._tokens if not token.aborted]
        if not live:
            return

        for token in live:
            token.abort()
        logger.info(f"Cancelling fetch for {self._active_identifier}")
        if self._state.status is FetchStatus.LOADING:
            self._update(self._generation, status=FetchStatus.CANCELLED, is_loading=False)

    # ------------------------------------------------------------------
    # Triggers and lifecycle
    # ------------------------------------------------------------------

    def schedule_fetch(self) -> None:
        """Request a fetch through the debouncer."""
        if not self._disposed:
            self._debouncer.trigger()

    def _trigger_fetch(self) -> None:
        self._spawn(self._background_fetch())

    async def _background_fetch(self) -> None:
        try:
            await self.fetch(skip_cache=False)
        except (FetchError, CoalescerReentryError) as e:
            # Already recorded on the state (or a silent abort)
            logger.debug(f"Background fetch ended: {e}")

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"Background task failed for {self._active_identifier}",
                exc_info=task.exception(),
            )

    def on_create(self) -> None:
        """Start the controller: silent prefetch and/or the initial fetch."""
        if self._disposed:
            return
        if self._options.prefetch and self._state.status is not FetchStatus.SUCCESS:
            self._spawn(self._prefetch_then_mount())
        elif self._options.fetch_on_mount:
            self.schedule_fetch()

    async def _prefetch_then_mount(self) -> None:
        await self.prefetch()
        # A successful warm-up already populated the state
        if (
            self._options.fetch_on_mount
            and not self._disposed
            and self._state.status is not FetchStatus.SUCCESS
        ):
            self.schedule_fetch()

    def on_dependencies_changed(self, dependencies: Sequence[Any]) -> bool:
        """
        Compare dependencies to the previous values and refetch on change.

        Returns:
            True if a (debounced) fetch was scheduled
        """
        new_values = list(dependencies)
        if new_values == self._dependencies:
            return False
        self._dependencies = new_values
        logger.debug(f"Dependencies changed for {self._active_identifier}: {new_values}")
        self.schedule_fetch()
        return True

    def on_dispose(self) -> None:
        """Tear down: discard in-flight results, abort, and stop all timers."""
        if self._disposed:
            return
        was_loading = self._state.status is FetchStatus.LOADING
        self._disposed = True
        self._generation += 1
        self._debouncer.cancel()
        for token in list(self._tokens):
            token.abort()
        for task in list(self._tasks):
            task.cancel()

        if was_loading:
            self._state.status = FetchStatus.CANCELLED
            self._state.is_loading = False
            self._notify()
        self._listeners.clear()

    async def __aenter__(self) -> "FetchController":
        self.on_create()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.on_dispose()
