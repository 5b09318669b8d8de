"""
Responder notification API endpoints
"""
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from emergency_dispatch.api.v1.schemas import NotificationList, NotificationResponse
from emergency_dispatch.core.auth import UserContext, get_current_responder, require_admin
from emergency_dispatch.services.dispatch_service import DispatchService, get_dispatch_service

router = APIRouter()


class ClearedResponse(BaseModel):
    cleared: int


class ExpiredOffersResponse(BaseModel):
    released_request_ids: List[UUID]
    count: int


@router.get("/poll", response_model=NotificationList)
async def poll_notifications(
    current_user: UserContext = Depends(get_current_responder),
    service: DispatchService = Depends(get_dispatch_service)
):
    """Assignment offers waiting for the current responder; each is returned once"""
    entries = await service.poll_notifications(current_user.user_id)
    return NotificationList(
        notifications=[NotificationResponse.from_entry(entry) for entry in entries],
        count=len(entries)
    )


@router.delete("", response_model=ClearedResponse)
async def clear_notifications(
    current_user: UserContext = Depends(get_current_responder),
    service: DispatchService = Depends(get_dispatch_service)
):
    cleared = await service.clear_notifications(current_user.user_id)
    return ClearedResponse(cleared=cleared)


@router.post("/expire", response_model=ExpiredOffersResponse)
async def expire_stale_offers(
    _: UserContext = Depends(require_admin),
    service: DispatchService = Depends(get_dispatch_service)
):
    """Release requests whose offers expired before the responder polled"""
    released = await service.expire_stale_offers()
    return ExpiredOffersResponse(released_request_ids=released, count=len(released))
