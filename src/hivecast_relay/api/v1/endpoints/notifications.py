# src/hivecast_relay/api/v1/endpoints/notifications.py
"""Operator broadcasts to every linked Farcaster client."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from hivecast_relay.schemas.relay import BroadcastRequest, BroadcastResponse
from hivecast_relay.services.broadcast import InvalidBroadcastError

from ..dependencies import BroadcastServiceDep, require_cron_secret

router = APIRouter(
    prefix="/notifications",
    tags=["notifications"],
    dependencies=[Depends(require_cron_secret)],
)


@router.post("/custom", response_model=BroadcastResponse)
async def send_custom_notification(
    request: BroadcastRequest,
    service: BroadcastServiceDep,
) -> BroadcastResponse:
    """Send one custom notification to every active token."""
    try:
        result = await service.broadcast(request.title, request.body, request.target_url)
    except InvalidBroadcastError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    finally:
        await service.sender.close()

    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Failed to send notifications: {result.error}",
        )
    return BroadcastResponse(
        success=True,
        sent_count=result.sent_count,
        total_tokens=result.total_tokens,
    )
