"""Admin routes for the name cache"""
import logging
from typing import Optional

from fastapi import APIRouter, Header, HTTPException

from autotask_mcp.autotask_client import get_autotask_client
from autotask_mcp.config import settings
from autotask_mcp.mapping_service import get_mapping_service
from autotask_mcp.tenant_cache import EntityKind

logger = logging.getLogger(__name__)

admin_router = APIRouter(tags=["admin"])


def validate_api_key(authorization: Optional[str]) -> bool:
    """Check an ``Authorization: Bearer <key>`` header against API_KEYS"""
    if not authorization:
        return False

    if not authorization.startswith("Bearer "):
        return False

    api_key = authorization[7:]
    return settings.validate_api_key(api_key)


def require_api_key(authorization: Optional[str]) -> None:
    if not validate_api_key(authorization):
        raise HTTPException(status_code=401, detail="Invalid API key")


# ============ Cache ============

@admin_router.get("/cache/stats")
async def cache_stats(authorization: Optional[str] = Header(None)):
    """Stats for every tenant partition"""
    require_api_key(authorization)

    mapping = await get_mapping_service(get_autotask_client(), settings)
    return mapping.get_global_stats()


@admin_router.post("/cache/clear")
async def clear_cache(kind: Optional[str] = None, authorization: Optional[str] = Header(None)):
    """Drop every tenant partition, or one table of the default tenant when ``kind`` is given"""
    require_api_key(authorization)

    mapping = await get_mapping_service(get_autotask_client(), settings)
    if kind is None:
        count = mapping.clear_all()
        logger.info(f"Admin cleared {count} tenant caches")
        return {"cleared_tenants": count}

    try:
        entity_kind = EntityKind(kind)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown cache kind: {kind}")

    mapping.clear_kind(entity_kind)
    logger.info(f"Admin cleared {kind} cache for the default tenant")
    return {"cleared_kind": kind}
