"""Debug-only health detail endpoints."""

from fastapi import APIRouter, Request

router = APIRouter(prefix="/debug/health", tags=["debug-health"])


@router.get("/database")
async def database_health(request: Request):
    """Detailed database pool health information."""
    return await request.app.state.container.db.health_check()


@router.get("/cache")
async def cache_stats(request: Request):
    """Local tier size and whether the Redis tier is attached."""
    cache = request.app.state.container.cache
    return {
        "local_entries": len(cache.local),
        "shared_tier": cache.shared is not None,
        "prefix": cache.prefix,
        "default_ttl": cache.default_ttl,
    }
