"""
Emergency request API endpoints
"""
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from emergency_dispatch.api.v1.schemas import (
    ClassifyRequest,
    ClassifyResponse,
    DispatchOutcomeResponse,
    EmergencyRequestCreate,
    EmergencyRequestCreated,
    EmergencyRequestResponse,
    RequestListResponse,
    RequestStatusUpdate,
    RequesterUpdateList,
    RequesterUpdateResponse,
)
from emergency_dispatch.core.auth import (
    UserContext,
    get_current_requester,
    get_current_responder,
    get_current_user,
    require_admin,
)
from emergency_dispatch.core.logging import get_logger
from emergency_dispatch.services.dispatch_service import DispatchService, get_dispatch_service

logger = get_logger(__name__)

router = APIRouter()


@router.post("/requests", response_model=EmergencyRequestCreated, status_code=status.HTTP_201_CREATED)
async def submit_emergency_request(
    request_data: EmergencyRequestCreate,
    current_user: UserContext = Depends(get_current_requester),
    service: DispatchService = Depends(get_dispatch_service)
):
    """
    Submit an emergency request and try to dispatch it right away

    The request is stored as pending. When an available responder of the
    requested service type is within range it is assigned immediately; the
    dispatch result says whether that happened.
    """
    request, outcome = await service.create_request(
        requester_id=current_user.user_id,
        service_type=request_data.service_type,
        location=request_data.location,
        description=request_data.description,
        address=request_data.address,
        emergency_type=request_data.emergency_type
    )
    return EmergencyRequestCreated(
        request=EmergencyRequestResponse.from_request(request),
        dispatch=DispatchOutcomeResponse.from_outcome(outcome)
    )


@router.get("/requests", response_model=RequestListResponse)
async def get_user_requests(
    limit: int = Query(50, ge=1, le=100, description="Number of requests to return"),
    offset: int = Query(0, ge=0, description="Number of requests to skip"),
    current_user: UserContext = Depends(get_current_requester),
    service: DispatchService = Depends(get_dispatch_service)
):
    """List the current user's requests, newest first"""
    requests = await service.list_requests_for_requester(current_user.user_id, limit=limit, offset=offset)
    return RequestListResponse(
        requests=[EmergencyRequestResponse.from_request(request) for request in requests],
        limit=limit,
        offset=offset
    )


@router.get("/requests/pending", response_model=RequestListResponse)
async def get_pending_requests(
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    _: UserContext = Depends(require_admin),
    service: DispatchService = Depends(get_dispatch_service)
):
    """Requests still waiting for a responder"""
    requests = await service.list_pending_requests(limit=limit, offset=offset)
    return RequestListResponse(
        requests=[EmergencyRequestResponse.from_request(request) for request in requests],
        limit=limit,
        offset=offset
    )


@router.get("/requests/{request_id}", response_model=EmergencyRequestResponse)
async def get_emergency_request(
    request_id: UUID,
    current_user: UserContext = Depends(get_current_user),
    service: DispatchService = Depends(get_dispatch_service)
):
    """Get a request visible to the current principal"""
    request = await service.get_request(request_id, actor=current_user)
    return EmergencyRequestResponse.from_request(request)


@router.post("/requests/{request_id}/dispatch", response_model=DispatchOutcomeResponse)
async def retry_dispatch(
    request_id: UUID,
    current_user: UserContext = Depends(get_current_requester),
    service: DispatchService = Depends(get_dispatch_service)
):
    """Retry dispatch for a pending request"""
    outcome = await service.dispatch(request_id, actor=current_user)
    return DispatchOutcomeResponse.from_outcome(outcome)


@router.patch("/requests/{request_id}/status", response_model=EmergencyRequestResponse)
async def update_request_status(
    request_id: UUID,
    status_update: RequestStatusUpdate,
    current_user: UserContext = Depends(get_current_user),
    service: DispatchService = Depends(get_dispatch_service)
):
    """
    Change a request's status

    Responders move their assigned requests to in-progress or completed.
    Requesters can cancel their own requests.
    """
    request = await service.update_request_status(request_id, status_update.status, actor=current_user)
    logger.info(
        "request_status_updated",
        request_id=str(request_id),
        status=request.status.value,
        updated_by=str(current_user.user_id)
    )
    return EmergencyRequestResponse.from_request(request)


@router.post("/requests/{request_id}/decline", response_model=EmergencyRequestResponse)
async def decline_request(
    request_id: UUID,
    current_user: UserContext = Depends(get_current_responder),
    service: DispatchService = Depends(get_dispatch_service)
):
    """Decline an assigned request; it returns to pending"""
    request = await service.decline_request(request_id, current_user.user_id)
    return EmergencyRequestResponse.from_request(request)


@router.get("/updates", response_model=RequesterUpdateList)
async def poll_request_updates(
    current_user: UserContext = Depends(get_current_requester),
    service: DispatchService = Depends(get_dispatch_service)
):
    """Dispatch events for the current user's requests since the last poll"""
    updates = await service.poll_request_updates(current_user.user_id)
    return RequesterUpdateList(
        updates=[RequesterUpdateResponse(**update.model_dump(mode="json")) for update in updates],
        count=len(updates)
    )


@router.post("/classify", response_model=ClassifyResponse)
async def classify_emergency(
    classify_request: ClassifyRequest,
    _: UserContext = Depends(get_current_user),
    service: DispatchService = Depends(get_dispatch_service)
):
    """Suggest service types from a free-text description"""
    service_types = service.suggest_service_types(classify_request.description)
    return ClassifyResponse(service_types=[service_type.value for service_type in service_types])
