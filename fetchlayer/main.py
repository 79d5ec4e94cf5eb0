"""
Fetch Layer - Diagnostics FastAPI Application
Exposes health, cache statistics/invalidation, and fetch timings
"""
import logging
from typing import Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from fetchlayer.cache import get_shared_cache
from fetchlayer.fetching import get_performance_tracker
from config.settings import settings

logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))

# Version tracking
APP_VERSION = "v0.3.0"
APP_NAME = "Fetch Layer"

app = FastAPI(
    title=APP_NAME,
    description="Cache, coalescing and fetch diagnostics for the content site",
    version=APP_VERSION
)


class InvalidateRequest(BaseModel):
    """Invalidate one key, or every key containing pattern."""
    key: Optional[str] = None
    pattern: Optional[str] = None


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok", "cache_enabled": settings.cache_enabled}


@app.get("/version")
def version_info():
    """Version information endpoint."""
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
        "full": f"{APP_NAME} {APP_VERSION}"
    }


@app.get("/cache/stats")
def cache_stats():
    """Get cache statistics."""
    return get_shared_cache().get_stats()


@app.post("/cache/invalidate")
def cache_invalidate(request: InvalidateRequest):
    """
    Invalidate cache entries.

    Exactly one of key or pattern must be given.
    """
    if (request.key is None) == (request.pattern is None):
        raise HTTPException(status_code=422, detail="Provide exactly one of 'key' or 'pattern'")

    cache = get_shared_cache()
    if request.key is not None:
        removed = 1 if cache.invalidate(request.key) else 0
    else:
        removed = cache.invalidate_pattern(request.pattern)
    return {"invalidated": removed}


@app.delete("/cache")
def cache_clear():
    """Drop every cache entry."""
    return {"cleared": get_shared_cache().clear()}


@app.get("/perf/stats")
def perf_stats():
    """Get per-operation fetch timings."""
    tracker = get_performance_tracker()
    return {"enabled": tracker.enabled, "operations": tracker.get_stats()}
