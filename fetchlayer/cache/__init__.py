"""
Shared caching module with TTL expiry, refresh-on-access, and request coalescing.
"""
from .core import CacheEntry, CacheSource
from .coalescer import (
    Acquisition,
    CoalescerReentryError,
    PendingOperation,
    RequestCoalescer,
    get_request_coalescer,
)
from .manager import SharedCache, get_shared_cache

__all__ = [
    # Core types
    "CacheEntry",
    "CacheSource",
    # Coalescing
    "Acquisition",
    "CoalescerReentryError",
    "PendingOperation",
    "RequestCoalescer",
    "get_request_coalescer",
    # Shared cache
    "SharedCache",
    "get_shared_cache",
]
