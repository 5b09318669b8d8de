"""
Responder API endpoints
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from emergency_dispatch.api.v1.schemas import (
    AvailabilityUpdate,
    LocationUpdate,
    LocationValidationSummary,
    NearbyResponder,
    NearbyResponderList,
    ResponderCreate,
    ResponderResponse,
)
from emergency_dispatch.core.auth import UserContext, get_current_responder, get_current_user, require_admin
from emergency_dispatch.core.exceptions import PermissionDeniedError
from emergency_dispatch.services.dispatch_service import DispatchService, get_dispatch_service

router = APIRouter()


@router.post("", response_model=ResponderResponse, status_code=status.HTTP_201_CREATED)
async def register_responder(
    responder_data: ResponderCreate,
    current_user: UserContext = Depends(get_current_user),
    service: DispatchService = Depends(get_dispatch_service)
):
    """
    Register a responder

    Responders register themselves under their own principal id. Admins may
    register any id. New responders start offline.
    """
    if current_user.is_admin():
        responder_id = responder_data.responder_id
    elif current_user.is_responder():
        if responder_data.responder_id not in (None, current_user.user_id):
            raise PermissionDeniedError("Responders can only register themselves")
        responder_id = current_user.user_id
    else:
        raise PermissionDeniedError("Access restricted to responders")

    responder = await service.register_responder(
        responder_data.service_type,
        name=responder_data.name,
        responder_id=responder_id,
        location=responder_data.location
    )
    return ResponderResponse.from_responder(responder)


@router.get("/me", response_model=ResponderResponse)
async def get_my_responder(
    current_user: UserContext = Depends(get_current_responder),
    service: DispatchService = Depends(get_dispatch_service)
):
    responder = await service.get_responder(current_user.user_id)
    return ResponderResponse.from_responder(responder)


@router.put("/me/location", response_model=ResponderResponse)
async def update_my_location(
    location_update: LocationUpdate,
    current_user: UserContext = Depends(get_current_responder),
    service: DispatchService = Depends(get_dispatch_service)
):
    """Report the current location; malformed pairs are repaired before storing"""
    responder = await service.update_responder_location(current_user.user_id, location_update.location)
    return ResponderResponse.from_responder(responder)


@router.put("/me/availability", response_model=ResponderResponse)
async def update_my_availability(
    availability_update: AvailabilityUpdate,
    current_user: UserContext = Depends(get_current_responder),
    service: DispatchService = Depends(get_dispatch_service)
):
    """Go online (available) or offline"""
    responder = await service.set_responder_availability(current_user.user_id, availability_update.availability)
    return ResponderResponse.from_responder(responder)


@router.get("/nearby", response_model=NearbyResponderList)
async def find_nearby_responders(
    longitude: float = Query(..., description="Query point longitude"),
    latitude: float = Query(..., description="Query point latitude"),
    service_type: str = Query(..., description="ambulance, fire or police"),
    radius_meters: Optional[float] = Query(None, ge=0, description="Search radius in meters"),
    limit: Optional[int] = Query(None, ge=1, le=100, description="Maximum number of responders"),
    _: UserContext = Depends(get_current_user),
    service: DispatchService = Depends(get_dispatch_service)
):
    """Available responders around a point, nearest first"""
    matches = await service.find_nearby_responders(
        [longitude, latitude],
        service_type,
        radius_meters=radius_meters,
        limit=limit
    )
    return NearbyResponderList(
        responders=[NearbyResponder.from_match(match) for match in matches],
        count=len(matches)
    )


@router.post("/locations/validate", response_model=LocationValidationSummary)
async def validate_responder_locations(
    _: UserContext = Depends(require_admin),
    service: DispatchService = Depends(get_dispatch_service)
):
    """Repair every stored responder location"""
    summary = await service.validate_all_locations()
    return LocationValidationSummary(**summary)
