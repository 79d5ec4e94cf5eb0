"""
Core cache data structures.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class CacheSource(Enum):
    """Where a value handed back by the shared cache came from."""
    FRESH = "fresh"           # Within TTL
    UPSTREAM = "upstream"     # Produced by this caller
    COALESCED = "coalesced"   # Shared from another caller's in-flight producer


@dataclass
class CacheEntry:
    """
    Represents a cached value with its expiry bookkeeping.

    Timestamps come from the owning cache's clock (monotonic seconds by
    default), never from wall time.
    """
    key: str
    value: Any
    expires_at: float
    ttl_seconds: float
    refresh_on_access: bool = False
    created_at: float = 0.0
    hits: int = field(default=0, compare=False)

    def is_expired(self, now: float) -> bool:
        """A lookup strictly after expires_at is a miss."""
        return now > self.expires_at

    def remaining_seconds(self, now: float) -> float:
        """Seconds left before the entry expires (0 once expired)."""
        return max(0.0, self.expires_at - now)

    def touch(self, now: float) -> None:
        """Record a hit, pushing expiry forward when refresh-on-access is set."""
        self.hits += 1
        if self.refresh_on_access:
            self.expires_at = now + self.ttl_seconds
