"""
Performance tracking for fetch operations.

Every fetch and page load runs inside track(label); durations are logged at
DEBUG and aggregated per label for the /perf/stats endpoint.
"""
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, asdict
from typing import Any, AsyncIterator, Dict, Optional

from config.settings import settings

logger = logging.getLogger("fetching.tracking")


@dataclass
class TimingStats:
    """Aggregated timings for one label."""
    count: int = 0
    failures: int = 0
    total_ms: float = 0.0
    max_ms: float = 0.0

    @property
    def avg_ms(self) -> float:
        return self.total_ms / self.count if self.count else 0.0

    def record(self, elapsed_ms: float, failed: bool) -> None:
        self.count += 1
        self.total_ms += elapsed_ms
        self.max_ms = max(self.max_ms, elapsed_ms)
        if failed:
            self.failures += 1


class PerformanceTracker:
    """Collects operation timings keyed by label."""

    def __init__(self, enabled: Optional[bool] = None):
        self.enabled = settings.performance_tracking_enabled if enabled is None else enabled
        self._stats: Dict[str, TimingStats] = {}

    @asynccontextmanager
    async def track(self, label: str) -> AsyncIterator[None]:
        """Time the wrapped block; exceptions are counted and re-raised."""
        if not self.enabled:
            yield
            return

        start = time.perf_counter()
        failed = False
        try:
            yield
        except BaseException:
            failed = True
            raise
        finally:
            elapsed_ms = (time.perf_counter() - start) * 1000
            self._stats.setdefault(label, TimingStats()).record(elapsed_ms, failed)
            logger.debug(f"{label} took {elapsed_ms:.1f}ms{' (failed)' if failed else ''}")

    def get_stats(self) -> Dict[str, Any]:
        """Per-label statistics, rounded for display."""
        return {
            label: {
                **{k: round(v, 1) if isinstance(v, float) else v for k, v in asdict(stats).items()},
                "avg_ms": round(stats.avg_ms, 1),
            }
            for label, stats in self._stats.items()
        }

    def reset(self) -> None:
        self._stats.clear()


_performance_tracker: Optional[PerformanceTracker] = None


def get_performance_tracker() -> PerformanceTracker:
    """Get the global performance tracker instance."""
    global _performance_tracker
    if _performance_tracker is None:
        _performance_tracker = PerformanceTracker()
    return _performance_tracker
