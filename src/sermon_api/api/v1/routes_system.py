from fastapi import APIRouter

from src.sermon_api.infra.cache.ingestion_cache import ingestion_cache

router = APIRouter(prefix="", tags=["system"])


@router.get("/health")
async def health_check_v1() -> dict:
    """API v1 health endpoint."""
    return {"status": "ok", "version": "v1"}


@router.get("/system/ingestion/health")
async def ingestion_health_v1() -> dict:
    """Size of the in-process ingestion cache (no session data)."""

    return {"status": "ok", "cached_streams": len(ingestion_cache)}
