from __future__ import annotations

from datetime import datetime, timezone
import logging

from fastapi import APIRouter, Depends, Request

from ..middleware import get_tracker
from ..schemas import AbuseStatsResponse, ManualBlockRequest, ManualBlockResponse, UnblockResponse
from ..security import AuthContext, admin_context

router = APIRouter(prefix="/admin/abuse", tags=["admin"])
logger = logging.getLogger("ipguard.admin")


@router.get("/stats", response_model=AbuseStatsResponse)
async def abuse_stats(request: Request, admin: AuthContext = Depends(admin_context)) -> AbuseStatsResponse:
    _ = admin
    return AbuseStatsResponse(**get_tracker(request).get_stats())


@router.post("/blocks", response_model=ManualBlockResponse)
async def block_client(
    payload: ManualBlockRequest,
    request: Request,
    admin: AuthContext = Depends(admin_context),
) -> ManualBlockResponse:
    blocked_until = get_tracker(request).block(
        payload.client_key,
        seconds=payload.duration_seconds,
        reason=payload.reason,
    )
    logger.info(
        "Admin blocked client",
        extra={"event": "admin_block", "client_key": payload.client_key, "user_id": admin.user_id},
    )
    return ManualBlockResponse(
        client_key=payload.client_key,
        blocked_until=datetime.fromtimestamp(blocked_until, tz=timezone.utc),
    )


@router.delete("/blocks/{client_key}", response_model=UnblockResponse)
async def unblock_client(
    client_key: str,
    request: Request,
    admin: AuthContext = Depends(admin_context),
) -> UnblockResponse:
    removed = get_tracker(request).unblock(client_key, reason=f"admin:{admin.user_id}")
    return UnblockResponse(client_key=client_key, removed=removed)
