"""
Request coalescing to prevent duplicate upstream calls.

When multiple concurrent callers ask for the same resource identifier, only
one producer runs and every caller shares its outcome.
"""
import asyncio
import contextvars
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Optional

logger = logging.getLogger("cache.coalescer")


class CoalescerReentryError(RuntimeError):
    """A producer tried to fetch the identifier it is currently producing."""


# Identifiers whose producer is running in the current task context
_producing: contextvars.ContextVar[FrozenSet[str]] = contextvars.ContextVar(
    "fetchlayer_producing", default=frozenset()
)


@dataclass
class PendingOperation:
    """Tracks an in-progress producer shared by every caller of one identifier."""
    identifier: str
    future: asyncio.Future
    subscriber_count: int = 1
    started_at: float = field(default_factory=time.monotonic)
    task: Optional[asyncio.Task] = None


@dataclass
class Acquisition:
    """Result of acquire_or_join: the owner must eventually call settle()."""
    is_owner: bool
    future: asyncio.Future
    pending: PendingOperation


class RequestCoalescer:
    """
    Ensures concurrent requests for the same identifier share one producer run.

    Pattern:
    - First caller for an identifier becomes the owner and runs the producer
    - Later callers join and await the same future
    - The owner settles the future; the registry entry is removed at once
    - Safe within one event loop: registry mutations never span an await

    Usage:
        coalescer = RequestCoalescer()
        payload = await coalescer.run(
            "https://example.com/api/templates",
            lambda: load_templates(),
        )
    """

    def __init__(self):
        self._pending: Dict[str, PendingOperation] = {}
        self._stats = {
            "total_requests": 0,
            "coalesced_requests": 0,
            "abandoned": 0,
        }

    def acquire_or_join(self, identifier: str) -> Acquisition:
        """
        Become the owner of the pending operation for identifier, or join it.

        Args:
            identifier: Resource identifier (typically a URL or cache key)

        Returns:
            Acquisition describing whether the caller owns the operation

        Raises:
            CoalescerReentryError: If called from inside the producer that is
                currently producing this identifier
        """
        if identifier in _producing.get():
            raise CoalescerReentryError(
                f"Producer for {identifier} tried to fetch itself"
            )

        self._stats["total_requests"] += 1
        pending = self._pending.get(identifier)
        if pending is not None:
            pending.subscriber_count += 1
            self._stats["coalesced_requests"] += 1
            logger.debug(
                f"Coalescing request for {identifier} "
                f"(subscribers: {pending.subscriber_count})"
            )
            return Acquisition(is_owner=False, future=pending.future, pending=pending)

        future = asyncio.get_running_loop().create_future()
        pending = PendingOperation(identifier=identifier, future=future)
        self._pending[identifier] = pending
        logger.debug(f"Initiating fetch for {identifier}")
        return Acquisition(is_owner=True, future=future, pending=pending)

    def settle(
        self,
        identifier: str,
        result: Any = None,
        error: Optional[BaseException] = None,
    ) -> None:
        """
        Deliver the outcome to every joiner and drop the registry entry.

        Args:
            identifier: Identifier previously acquired as owner
            result: Value shared with all callers on success
            error: Exception shared with all callers on failure
        """
        pending = self._pending.get(identifier)
        if pending is not None:
            self._settle_pending(pending, result, error)

    def _settle_pending(
        self,
        pending: PendingOperation,
        result: Any = None,
        error: Optional[BaseException] = None,
    ) -> None:
        if self._pending.get(pending.identifier) is pending:
            del self._pending[pending.identifier]
        if pending.future.done():
            return

        if error is not None:
            pending.future.set_exception(error)
            # Mark retrieved so abandoned operations don't warn on GC
            pending.future.exception()
        else:
            pending.future.set_result(result)

    def is_pending(self, identifier: str) -> bool:
        """True while an operation for identifier is in flight."""
        return identifier in self._pending

    async def run(
        self,
        identifier: str,
        producer: Callable[[], Awaitable[Any]],
    ) -> Any:
        """
        Either join an existing pending operation or start a new one.

        The producer runs in a task owned by the coalescer, so cancelling any
        single caller never cancels the operation other callers are awaiting.
        When the last caller walks away the producer is cancelled.

        Args:
            identifier: Unique identifier for this request
            producer: Coroutine function invoked if we own the operation

        Returns:
            The produced value (shared among all concurrent callers)

        Raises:
            Exception: Any error from producer is propagated to every caller
        """
        acquisition = self.acquire_or_join(identifier)
        pending = acquisition.pending
        if acquisition.is_owner:
            pending.task = asyncio.ensure_future(self._execute(pending, producer))

        try:
            return await asyncio.shield(acquisition.future)
        except asyncio.CancelledError:
            self._release(pending)
            raise

    async def _execute(
        self,
        pending: PendingOperation,
        producer: Callable[[], Awaitable[Any]],
    ) -> None:
        _producing.set(_producing.get() | {pending.identifier})
        try:
            result = await producer()
        except asyncio.CancelledError:
            self._abandon(pending)
            raise
        except Exception as e:
            logger.warning(f"Fetch failed for {pending.identifier}: {e}")
            self._settle_pending(pending, error=e)
        else:
            self._settle_pending(pending, result=result)

    def _release(self, pending: PendingOperation) -> None:
        """Drop one subscriber; cancel the producer once nobody is waiting."""
        pending.subscriber_count -= 1
        if pending.subscriber_count > 0 or pending.future.done():
            return

        self._stats["abandoned"] += 1
        logger.debug(f"All callers abandoned {pending.identifier}, cancelling producer")
        self._abandon(pending)
        if pending.task is not None and not pending.task.done():
            pending.task.cancel()

    def _abandon(self, pending: PendingOperation) -> None:
        # Later callers must start a fresh operation, not join a dying one
        if self._pending.get(pending.identifier) is pending:
            del self._pending[pending.identifier]
        if not pending.future.done():
            pending.future.cancel()

    @property
    def active_requests(self) -> int:
        """Number of currently pending operations."""
        return len(self._pending)

    def get_stats(self) -> Dict[str, Any]:
        """Get coalescer statistics."""
        return {
            "active_requests": len(self._pending),
            "active_keys": list(self._pending.keys()),
            **self._stats,
        }


# Global coalescer instance
_request_coalescer: Optional[RequestCoalescer] = None


def get_request_coalescer() -> RequestCoalescer:
    """Get or create the global request coalescer."""
    global _request_coalescer
    if _request_coalescer is None:
        _request_coalescer = RequestCoalescer()
    return _request_coalescer
