"""
Unit tests for FetchController.

Covers coalescing across controllers, retry with linear backoff,
cancellation, timeouts, stale-response discard, debounce, prefetch,
dependency-triggered refetch, and disposal.
"""
import asyncio

import pytest

from fetchlayer.cache import RequestCoalescer, SharedCache
from fetchlayer.fetching import (
    AbortError,
    CoalescerReentryError,
    FetchController,
    FetchOptions,
    FetchStatus,
    FetchTimeoutError,
    NetworkError,
    PerformanceTracker,
    TransformError,
)


def run(coro):
    return asyncio.run(coro)


# =============================================================================
# Test Fixtures
# =============================================================================

@pytest.fixture
def cache():
    return SharedCache(coalescer=RequestCoalescer(), default_ttl=60, enabled=True)


@pytest.fixture
def tracker():
    return PerformanceTracker(enabled=True)


class FakeUpstream:
    """
    Async producer standing in for the network.

    Each call pops the next scripted outcome (an exception instance to raise,
    or a delay/payload pair); once the script is exhausted it returns a
    payload naming the identifier.
    """

    def __init__(self, script=None, delay: float = 0.0):
        self.script = list(script or [])
        self.delay = delay
        self.calls = []

    async def __call__(self, identifier: str):
        self.calls.append(identifier)
        outcome = self.script.pop(0) if self.script else None
        if isinstance(outcome, Exception):
            await asyncio.sleep(0)
            raise outcome
        if isinstance(outcome, tuple):
            delay, payload = outcome
            await asyncio.sleep(delay)
            return payload
        await asyncio.sleep(self.delay)
        return {"url": identifier, "call": len(self.calls)}


def make_controller(resource, upstream, cache, tracker, **options):
    return FetchController(
        resource,
        upstream,
        FetchOptions(**options),
        cache=cache,
        tracker=tracker,
    )


def record_states(controller):
    states = []
    controller.subscribe(states.append)
    return states


# =============================================================================
# Basic fetch and coalescing
# =============================================================================

def test_fetch_transitions_loading_to_success(cache, tracker):
    upstream = FakeUpstream()
    controller = make_controller("/api/templates", upstream, cache, tracker)
    states = record_states(controller)

    result = run(controller.fetch())

    assert result == {"url": "/api/templates", "call": 1}
    assert [s.status for s in states] == [FetchStatus.LOADING, FetchStatus.SUCCESS]
    assert states[0].is_loading is True
    assert controller.status is FetchStatus.SUCCESS
    assert controller.data == result
    assert controller.error is None
    assert controller.is_loading is False
    assert controller.state.attempt == 0


def test_concurrent_controllers_share_one_producer_call(cache, tracker):
    """N controllers fetching the same identifier invoke the producer once"""
    upstream = FakeUpstream(delay=0.02)
    controllers = [
        make_controller("/api/analytics", upstream, cache, tracker) for _ in range(4)
    ]

    async def scenario():
        return await asyncio.gather(*[c.fetch() for c in controllers])

    results = run(scenario())

    assert len(upstream.calls) == 1
    assert all(result is results[0] for result in results)
    assert all(c.data is results[0] for c in controllers)


def test_second_fetch_is_served_from_cache(cache, tracker):
    upstream = FakeUpstream()
    controller = make_controller("/api/sounds", upstream, cache, tracker)

    async def scenario():
        await controller.fetch()
        return await controller.refetch()

    result = run(scenario())
    assert len(upstream.calls) == 1
    assert result["call"] == 1


def test_fetch_fresh_bypasses_cache_and_writes_back(cache, tracker):
    upstream = FakeUpstream()
    controller = make_controller("/api/sounds", upstream, cache, tracker)

    async def scenario():
        await controller.fetch()
        return await controller.fetch_fresh()

    result = run(scenario())
    assert len(upstream.calls) == 2
    assert result["call"] == 2
    assert cache.get("/api/sounds") == result


def test_concurrent_fresh_fetches_are_still_coalesced(cache, tracker):
    upstream = FakeUpstream(delay=0.02)
    first = make_controller("/api/sounds", upstream, cache, tracker)
    second = make_controller("/api/sounds", upstream, cache, tracker)

    async def scenario():
        await asyncio.gather(first.fetch_fresh(), second.fetch_fresh())

    run(scenario())
    assert len(upstream.calls) == 1


def test_custom_cache_key_and_transform(cache, tracker):
    """transform_response runs before the value is stored"""
    upstream = FakeUpstream()
    controller = make_controller(
        "/api/templates",
        upstream,
        cache,
        tracker,
        cache_key="templates:all",
        transform_response=lambda payload: payload["url"].upper(),
    )

    result = run(controller.fetch())

    assert result == "/API/TEMPLATES"
    assert cache.get("templates:all") == "/API/TEMPLATES"
    assert cache.get("/api/templates") is None


def test_callable_resource_is_resolved_per_fetch(cache, tracker):
    query = {"q": "intro"}
    upstream = FakeUpstream()
    controller = make_controller(lambda: f"/api/search?q={query['q']}", upstream, cache, tracker)

    async def scenario():
        await controller.fetch()
        query["q"] = "outro"
        await controller.fetch()

    run(scenario())
    assert upstream.calls == ["/api/search?q=intro", "/api/search?q=outro"]


def test_fetch_is_timed_by_tracker(cache, tracker):
    controller = make_controller("/api/x", FakeUpstream(), cache, tracker)
    run(controller.fetch())
    assert tracker.get_stats()["fetch-/api/x"]["count"] == 1


def test_injected_empty_cache_is_the_one_written(tracker):
    """An empty cache is falsy (len 0) but must still be used"""
    cache = SharedCache(coalescer=RequestCoalescer(), enabled=True)
    assert len(cache) == 0
    controller = make_controller("/api/x", FakeUpstream(), cache, tracker)

    result = run(controller.fetch())

    assert len(cache) == 1
    assert cache.get("/api/x") == result
    assert cache.coalescer.get_stats()["total_requests"] == 1


# =============================================================================
# Retry and errors
# =============================================================================

def test_retry_with_linear_backoff_then_success(cache, tracker):
    """Two failures then success: 3 calls, delays retry_delay*1 then *2"""
    upstream = FakeUpstream(script=[ConnectionError("1"), ConnectionError("2")])
    controller = make_controller(
        "/api/flaky", upstream, cache, tracker, retry_count=2, retry_delay=0.1
    )
    delays = []

    async def record_delay(token, seconds):
        delays.append(seconds)

    controller._wait_or_abort = record_delay
    states = record_states(controller)

    result = run(controller.fetch())

    assert len(upstream.calls) == 3
    assert result["call"] == 3
    assert delays == [pytest.approx(0.1), pytest.approx(0.2)]
    assert controller.status is FetchStatus.SUCCESS
    assert controller.state.attempt == 0
    assert [s.attempt for s in states if s.status is FetchStatus.LOADING] == [0, 1, 2]


def test_retries_exhausted_sets_error_and_calls_on_error_once(cache, tracker):
    errors = []
    upstream = FakeUpstream(script=[ConnectionError("a"), ConnectionError("b")])
    controller = make_controller(
        "/api/down", upstream, cache, tracker,
        retry_count=1, retry_delay=0, on_error=errors.append,
    )

    with pytest.raises(NetworkError) as exc_info:
        run(controller.fetch())

    assert len(upstream.calls) == 2
    assert controller.status is FetchStatus.ERROR
    assert controller.error is exc_info.value
    assert isinstance(controller.error.__cause__, ConnectionError)
    assert errors == [exc_info.value]
    assert controller.is_loading is False


def test_transform_error_is_classified(cache, tracker):
    def broken_transform(payload):
        raise KeyError("items")

    controller = make_controller(
        "/api/x", FakeUpstream(), cache, tracker, transform_response=broken_transform
    )

    with pytest.raises(TransformError):
        run(controller.fetch())
    assert controller.status is FetchStatus.ERROR
    assert cache.get("/api/x") is None


def test_coalesced_error_is_shared_but_retried_independently(cache, tracker):
    upstream = FakeUpstream(script=[ConnectionError("shared")])
    retrying = make_controller("/api/x", upstream, cache, tracker, retry_count=1, retry_delay=0)
    giving_up = make_controller("/api/x", upstream, cache, tracker)

    async def scenario():
        return await asyncio.gather(retrying.fetch(), giving_up.fetch(), return_exceptions=True)

    retried, failed = run(scenario())

    assert isinstance(failed, NetworkError)
    assert retried["call"] == 2
    assert retrying.status is FetchStatus.SUCCESS
    assert giving_up.status is FetchStatus.ERROR


def test_producer_fetching_its_own_resource_ends_in_error(cache, tracker):
    """The re-entrancy error is recorded instead of leaving LOADING behind"""
    errors = []
    holder = {}

    async def fetcher(identifier):
        return await holder["controller"].fetch_fresh()

    controller = FetchController(
        "/api/self",
        fetcher,
        FetchOptions(on_error=errors.append),
        cache=cache,
        tracker=tracker,
    )
    holder["controller"] = controller

    with pytest.raises(NetworkError):
        run(controller.fetch())

    assert controller.status is FetchStatus.ERROR
    assert controller.is_loading is False
    assert isinstance(controller.error, CoalescerReentryError)
    assert errors == [controller.error]


def test_keep_previous_data_false_clears_data_while_loading(cache, tracker):
    upstream = FakeUpstream()
    controller = make_controller(
        "/api/x", upstream, cache, tracker, keep_previous_data=False
    )
    states = record_states(controller)

    async def scenario():
        await controller.fetch()
        await controller.fetch_fresh()

    run(scenario())
    loading = [s for s in states if s.status is FetchStatus.LOADING]
    assert loading[1].data is None


def test_keep_previous_data_keeps_data_while_loading(cache, tracker):
    upstream = FakeUpstream()
    controller = make_controller("/api/x", upstream, cache, tracker)
    states = record_states(controller)

    async def scenario():
        await controller.fetch()
        await controller.fetch_fresh()

    run(scenario())
    loading = [s for s in states if s.status is FetchStatus.LOADING]
    assert loading[1].data == {"url": "/api/x", "call": 1}


# =============================================================================
# Cancellation and timeout
# =============================================================================

def test_cancel_mid_flight_is_silent(cache, tracker):
    errors = []
    upstream = FakeUpstream(script=[(1.0, "slow")])
    controller = make_controller("/api/slow", upstream, cache, tracker, on_error=errors.append)
    states = record_states(controller)

    async def scenario():
        task = asyncio.ensure_future(controller.fetch())
        await asyncio.sleep(0.01)
        controller.cancel()
        with pytest.raises(AbortError):
            await task

        assert controller.status is FetchStatus.CANCELLED
        assert controller.error is None
        assert controller.is_loading is False

        # A new fetch starts cleanly
        states.clear()
        result = await controller.fetch()
        return result

    result = run(scenario())

    assert errors == []
    assert result["call"] == 2
    assert [s.status for s in states] == [FetchStatus.LOADING, FetchStatus.SUCCESS]


def test_cancel_does_not_affect_joined_controllers(cache, tracker):
    upstream = FakeUpstream(script=[(0.05, "shared")])
    cancelled = make_controller("/api/x", upstream, cache, tracker)
    survivor = make_controller("/api/x", upstream, cache, tracker)

    async def scenario():
        first = asyncio.ensure_future(cancelled.fetch())
        second = asyncio.ensure_future(survivor.fetch())
        await asyncio.sleep(0.01)
        cancelled.cancel()
        return await asyncio.gather(first, second, return_exceptions=True)

    first, second = run(scenario())

    assert isinstance(first, AbortError)
    assert second == "shared"
    assert survivor.status is FetchStatus.SUCCESS
    assert cancelled.status is FetchStatus.CANCELLED
    assert len(upstream.calls) == 1


def test_cancel_when_idle_is_a_no_op(cache, tracker):
    controller = make_controller("/api/x", FakeUpstream(), cache, tracker)
    controller.cancel()
    assert controller.status is FetchStatus.IDLE


def test_cancel_during_retry_backoff(cache, tracker):
    errors = []
    upstream = FakeUpstream(script=[ConnectionError("down")])
    controller = make_controller(
        "/api/x", upstream, cache, tracker,
        retry_count=3, retry_delay=1.0, on_error=errors.append,
    )

    async def scenario():
        task = asyncio.ensure_future(controller.fetch())
        await asyncio.sleep(0.02)
        assert controller.state.attempt == 1
        controller.cancel()
        with pytest.raises(AbortError):
            await task

    run(scenario())
    assert len(upstream.calls) == 1
    assert controller.status is FetchStatus.CANCELLED
    assert errors == []


def test_timeout_is_terminal_error_without_retries(cache, tracker):
    errors = []
    upstream = FakeUpstream(script=[(1.0, "late")])
    controller = make_controller(
        "/api/slow", upstream, cache, tracker, timeout=0.05, on_error=errors.append
    )

    with pytest.raises(FetchTimeoutError) as exc_info:
        run(controller.fetch())

    assert isinstance(exc_info.value, TimeoutError)
    assert controller.status is FetchStatus.ERROR
    assert errors == [exc_info.value]


def test_timed_out_attempt_is_retried(cache, tracker):
    upstream = FakeUpstream(script=[(1.0, "late"), (0.0, "on time")])
    controller = make_controller(
        "/api/slow", upstream, cache, tracker, timeout=0.05, retry_count=1, retry_delay=0
    )

    assert run(controller.fetch()) == "on time"
    assert len(upstream.calls) == 2
    assert controller.status is FetchStatus.SUCCESS


# =============================================================================
# Stale responses
# =============================================================================

def test_stale_response_does_not_overwrite_newer_state(cache, tracker):
    """A slow first fetch resolving last must not replace the second's result"""
    query = {"q": "slow"}
    upstream = FakeUpstream(script=[(0.2, "slow result"), (0.02, "fast result")])
    controller = make_controller(lambda: f"/api/search?q={query['q']}", upstream, cache, tracker)

    async def scenario():
        slow = asyncio.ensure_future(controller.fetch())
        await asyncio.sleep(0.05)
        query["q"] = "fast"
        fast = asyncio.ensure_future(controller.fetch())
        return await asyncio.gather(slow, fast)

    slow_result, fast_result = run(scenario())

    assert slow_result == "slow result"
    assert fast_result == "fast result"
    assert controller.data == "fast result"
    assert controller.status is FetchStatus.SUCCESS
    assert controller.state.generation == 2


def test_stale_error_is_discarded(cache, tracker):
    """A superseded fetch failing late neither sets ERROR nor calls on_error"""
    errors = []
    query = {"q": "bad"}

    async def fetcher(identifier):
        if identifier.endswith("bad"):
            await asyncio.sleep(0.1)
            raise ConnectionError("old")
        return "good"

    controller = FetchController(
        lambda: f"/api/search?q={query['q']}",
        fetcher,
        FetchOptions(on_error=errors.append),
        cache=cache,
        tracker=tracker,
    )

    async def scenario():
        stale = asyncio.ensure_future(controller.fetch())
        await asyncio.sleep(0.01)
        query["q"] = "good"
        await controller.fetch()
        with pytest.raises(NetworkError):
            await stale

    run(scenario())
    assert controller.status is FetchStatus.SUCCESS
    assert controller.data == "good"
    assert errors == []


# =============================================================================
# Triggers: debounce, dependencies, prefetch
# =============================================================================

def test_debounce_collapses_rapid_triggers(cache, tracker):
    upstream = FakeUpstream()
    controller = make_controller(
        "/api/x", upstream, cache, tracker, debounce_delay=0.05, fetch_on_mount=False
    )

    async def scenario():
        for _ in range(5):
            controller.schedule_fetch()
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.15)

    run(scenario())
    assert len(upstream.calls) == 1
    assert controller.status is FetchStatus.SUCCESS


def test_on_create_fetches_on_mount(cache, tracker):
    upstream = FakeUpstream()
    controller = make_controller("/api/x", upstream, cache, tracker)

    async def scenario():
        controller.on_create()
        await asyncio.sleep(0.02)

    run(scenario())
    assert controller.status is FetchStatus.SUCCESS


def test_no_fetch_on_mount_when_disabled(cache, tracker):
    upstream = FakeUpstream()
    controller = make_controller("/api/x", upstream, cache, tracker, fetch_on_mount=False)

    async def scenario():
        controller.on_create()
        await asyncio.sleep(0.02)

    run(scenario())
    assert upstream.calls == []
    assert controller.status is FetchStatus.IDLE


def test_dependency_change_triggers_refetch(cache, tracker):
    page = {"n": 1}
    upstream = FakeUpstream()
    controller = make_controller(
        lambda: f"/api/templates?page={page['n']}",
        upstream, cache, tracker,
        dependencies=[1, "grid"], fetch_on_mount=False,
    )

    async def scenario():
        assert controller.on_dependencies_changed([1, "grid"]) is False
        page["n"] = 2
        assert controller.on_dependencies_changed([2, "grid"]) is True
        await asyncio.sleep(0.02)

    run(scenario())
    assert upstream.calls == ["/api/templates?page=2"]


def test_prefetch_never_exposes_loading(cache, tracker):
    upstream = FakeUpstream(delay=0.01)
    controller = make_controller("/api/x", upstream, cache, tracker, prefetch=True)
    states = record_states(controller)

    async def scenario():
        controller.on_create()
        await asyncio.sleep(0.05)

    run(scenario())

    assert len(upstream.calls) == 1
    assert controller.status is FetchStatus.SUCCESS
    assert all(s.status is not FetchStatus.LOADING for s in states)
    assert all(s.is_loading is False for s in states)


def test_prefetch_retries_do_not_notify(cache, tracker):
    upstream = FakeUpstream(script=[ConnectionError("cold")])
    controller = make_controller(
        "/api/x", upstream, cache, tracker,
        prefetch=True, retry_count=1, retry_delay=0,
    )
    states = record_states(controller)

    async def scenario():
        controller.on_create()
        await asyncio.sleep(0.05)

    run(scenario())

    assert len(upstream.calls) == 2
    assert [s.status for s in states] == [FetchStatus.SUCCESS]
    assert controller.state.attempt == 0


def test_failed_prefetch_falls_back_to_visible_fetch(cache, tracker):
    errors = []
    upstream = FakeUpstream(script=[ConnectionError("cold")])
    controller = make_controller(
        "/api/x", upstream, cache, tracker, prefetch=True, on_error=errors.append
    )
    states = record_states(controller)

    async def scenario():
        controller.on_create()
        await asyncio.sleep(0.05)

    run(scenario())

    assert len(upstream.calls) == 2
    assert controller.status is FetchStatus.SUCCESS
    assert errors == []
    assert any(s.status is FetchStatus.LOADING for s in states)


# =============================================================================
# Disposal
# =============================================================================

def test_dispose_is_idempotent_and_aborts_in_flight(cache, tracker):
    upstream = FakeUpstream(script=[(1.0, "late")])
    controller = make_controller("/api/x", upstream, cache, tracker)

    async def scenario():
        task = asyncio.ensure_future(controller.fetch())
        await asyncio.sleep(0.01)
        controller.on_dispose()
        controller.on_dispose()
        with pytest.raises(AbortError):
            await task

    run(scenario())
    assert controller.disposed is True
    assert controller.status is FetchStatus.CANCELLED
    assert controller.data is None


def test_dispose_cancels_pending_debounce(cache, tracker):
    upstream = FakeUpstream()
    controller = make_controller("/api/x", upstream, cache, tracker, debounce_delay=0.05)

    async def scenario():
        controller.on_create()
        controller.on_dispose()
        await asyncio.sleep(0.1)

    run(scenario())
    assert upstream.calls == []


def test_fetch_after_dispose_raises_abort(cache, tracker):
    controller = make_controller("/api/x", FakeUpstream(), cache, tracker)
    controller.on_dispose()
    with pytest.raises(AbortError):
        run(controller.fetch())


def test_async_context_manager_runs_lifecycle(cache, tracker):
    upstream = FakeUpstream()

    async def scenario():
        async with make_controller("/api/x", upstream, cache, tracker) as controller:
            await asyncio.sleep(0.02)
            assert controller.status is FetchStatus.SUCCESS
        return controller

    controller = run(scenario())
    assert controller.disposed is True


def test_unsubscribe_stops_notifications(cache, tracker):
    controller = make_controller("/api/x", FakeUpstream(), cache, tracker)
    states = []
    unsubscribe = controller.subscribe(states.append)
    unsubscribe()
    run(controller.fetch())
    assert states == []


def flaky_search(calls):
    """Producer failing for '?q=flaky' and answering every other query."""
    async def fetcher(identifier):
        calls.append(identifier)
        await asyncio.sleep(0)
        if identifier.endswith("flaky"):
            raise ConnectionError("flaky upstream")
        return "good"
    return fetcher


def test_dispose_stops_superseded_fetch_in_retry_backoff(cache, tracker):
    """No producer call happens after disposal, even for a superseded fetch"""
    calls = []
    query = {"q": "flaky"}
    controller = FetchController(
        lambda: f"/api/search?q={query['q']}",
        flaky_search(calls),
        FetchOptions(retry_count=2, retry_delay=0.2),
        cache=cache,
        tracker=tracker,
    )

    async def scenario():
        superseded = asyncio.ensure_future(controller.fetch())
        await asyncio.sleep(0.05)
        query["q"] = "good"
        await controller.fetch()
        controller.on_dispose()
        await asyncio.sleep(0.4)
        with pytest.raises(AbortError):
            await superseded

    run(scenario())
    assert calls == ["/api/search?q=flaky", "/api/search?q=good"]


def test_superseded_fetch_drops_pending_retries(cache, tracker):
    calls = []
    query = {"q": "flaky"}
    controller = FetchController(
        lambda: f"/api/search?q={query['q']}",
        flaky_search(calls),
        FetchOptions(retry_count=2, retry_delay=0.1),
        cache=cache,
        tracker=tracker,
    )

    async def scenario():
        superseded = asyncio.ensure_future(controller.fetch())
        await asyncio.sleep(0.05)
        query["q"] = "good"
        await controller.fetch()
        with pytest.raises(AbortError):
            await superseded

    run(scenario())
    assert calls == ["/api/search?q=flaky", "/api/search?q=good"]
    assert controller.status is FetchStatus.SUCCESS
    assert controller.data == "good"


def test_cancel_aborts_superseded_fetch_in_backoff(cache, tracker):
    calls = []
    query = {"q": "flaky"}
    controller = FetchController(
        lambda: f"/api/search?q={query['q']}",
        flaky_search(calls),
        FetchOptions(retry_count=2, retry_delay=1.0),
        cache=cache,
        tracker=tracker,
    )

    async def slow_good(identifier):
        calls.append(identifier)
        await asyncio.sleep(1.0)
        return "late"

    async def scenario():
        superseded = asyncio.ensure_future(controller.fetch())
        await asyncio.sleep(0.02)
        controller._fetcher = slow_good
        query["q"] = "good"
        current = asyncio.ensure_future(controller.fetch())
        await asyncio.sleep(0.02)
        controller.cancel()
        results = await asyncio.gather(superseded, current, return_exceptions=True)
        return results

    superseded, current = run(scenario())
    assert isinstance(superseded, AbortError)
    assert isinstance(current, AbortError)
    assert controller.status is FetchStatus.CANCELLED
    assert calls == ["/api/search?q=flaky", "/api/search?q=good"]
