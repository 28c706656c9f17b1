"""
parley.api.routes.admin — Admin-only operations
================================================
"""

from __future__ import annotations

import logging

import httpx
from fastapi import APIRouter, Depends, HTTPException, status

from parley.api.deps import get_config, get_current_admin, get_gateway
from parley.config import ParleyConfig
from parley.services import knowledge_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/knowledge/rebuild")
async def rebuild_knowledge_index(
    admin: dict = Depends(get_current_admin),
    cfg: ParleyConfig = Depends(get_config),
    gateway=Depends(get_gateway),
):
    """Trigger a rebuild of the external full-text index."""
    if not cfg.knowledge_build_url:
        raise HTTPException(status.HTTP_409_CONFLICT, "Knowledge index build URL is not configured")
    if knowledge_service.build_in_progress():
        return {"triggered": False, "detail": "Build already in progress"}

    try:
        ok = await knowledge_service.trigger_index_build(cfg.knowledge_build_url, gateway)
    except httpx.HTTPError:
        raise HTTPException(status.HTTP_502_BAD_GATEWAY, "Knowledge index service unreachable")
    logger.info("Knowledge rebuild requested by admin %s → %s", admin.get("sub"), ok)
    return {"triggered": ok}
