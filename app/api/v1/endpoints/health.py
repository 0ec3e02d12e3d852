"""
Health and status endpoints.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.deps import Actor, get_current_actor, get_db
from app.core.config import settings
from app.models.reimbursement import ReimbursementRequest, ReimbursementStatus
from app.schemas.reimbursement import HealthResponse, StatusResponse

router = APIRouter(tags=["health"])
logger = logging.getLogger(__name__)


@router.get("/health", response_model=HealthResponse)
async def health(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    """Public health check — DB and Redis connectivity."""
    result = HealthResponse(db=False, redis=False)

    try:
        await db.execute(select(1))
        result.db = True
    except Exception as e:
        logger.error("Health check DB failure: %s", e)

    try:
        import redis.asyncio as aioredis

        r = aioredis.from_url(settings.REDIS_URL, socket_connect_timeout=1)
        await r.ping()
        await r.aclose()
        result.redis = True
    except Exception as e:
        logger.error("Health check Redis failure: %s", e)

    return result


@router.get("/status", response_model=StatusResponse)
async def system_status(
    db: AsyncSession = Depends(get_db),
    _actor: Actor = Depends(get_current_actor),
) -> StatusResponse:
    """Return active and pending-approval request counts."""
    active = await db.execute(
        select(func.count(ReimbursementRequest.id)).where(
            ReimbursementRequest.is_active.is_(True)
        )
    )
    pending = await db.execute(
        select(func.count(ReimbursementRequest.id)).where(
            ReimbursementRequest.is_active.is_(True),
            ReimbursementRequest.status == ReimbursementStatus.PENDING_FINANCIAL_APPROVAL,
        )
    )

    return StatusResponse(
        active_requests=active.scalar() or 0,
        pending_approval=pending.scalar() or 0,
        status="operational",
    )
