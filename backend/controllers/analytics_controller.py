"""Controller layer for read-only analytics endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from starlette.concurrency import run_in_threadpool

from backend.controllers.dependencies import get_analytics_service, require_admin
from backend.services.analytics_service import AnalyticsService, AnalyticsValidationError
from backend.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(prefix="/api/analytics", tags=["analytics"], dependencies=[Depends(require_admin)])


@router.get("", status_code=status.HTTP_200_OK)
async def analytics(
    analytics_type: str = Query(default="all", alias="type"),
    analytics_service: AnalyticsService = Depends(get_analytics_service),
) -> dict[str, Any]:
    try:
        data = await run_in_threadpool(analytics_service.summary, analytics_type)
    except AnalyticsValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except Exception as exc:  # pragma: no cover - unexpected failure
        logger.exception("Unexpected analytics failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to build analytics",
        ) from exc
    return {"success": True, "type": analytics_type, "data": data}


@router.get("/owners/{owner_id}", status_code=status.HTTP_200_OK)
async def owner_analytics(
    owner_id: str,
    analytics_service: AnalyticsService = Depends(get_analytics_service),
) -> dict[str, Any]:
    try:
        data = await run_in_threadpool(analytics_service.owner_summary, owner_id)
    except AnalyticsValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except Exception as exc:  # pragma: no cover - unexpected failure
        logger.exception("Unexpected owner analytics failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to build owner analytics",
        ) from exc
    return {"success": True, "data": data}
