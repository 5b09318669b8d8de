"""
Request and response models shared by the v1 endpoints
"""
from datetime import datetime
from typing import Any, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from emergency_dispatch.models.dispatch import (
    CandidateMatch,
    EmergencyRequest,
    NotificationEntry,
    Responder,
)
from emergency_dispatch.services import geo
from emergency_dispatch.services.dispatch import DispatchOutcome

LOCATION_DESCRIPTION = (
    "Location as [longitude, latitude], \"longitude,latitude\", "
    "{\"longitude\": .., \"latitude\": ..} or a GeoJSON Point"
)


class EmergencyRequestCreate(BaseModel):
    """Emergency request submission model"""
    service_type: Optional[str] = Field(None, description="ambulance, fire or police")
    location: Optional[Any] = Field(None, description=LOCATION_DESCRIPTION)
    address: Optional[str] = Field(None, max_length=500, description="Human-readable address")
    description: Optional[str] = Field(None, max_length=1000, description="What happened")
    emergency_type: Optional[str] = Field(None, max_length=100, description="Free-text emergency category")


class EmergencyRequestResponse(BaseModel):
    """Emergency request response model"""
    id: UUID
    requester_id: UUID
    service_type: str
    location: Optional[List[float]]
    address: Optional[str]
    description: str
    emergency_type: Optional[str]
    status: str
    assigned_responder_id: Optional[UUID]
    dispatch_attempts: int
    created_at: datetime
    accepted_at: Optional[datetime]
    estimated_arrival_at: Optional[datetime]
    actual_arrival_at: Optional[datetime]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]

    @classmethod
    def from_request(cls, request: EmergencyRequest) -> "EmergencyRequestResponse":
        return cls(
            id=request.id,
            requester_id=request.requester_id,
            service_type=request.service_type.value,
            location=request.location.as_list() if request.location else None,
            address=request.address,
            description=request.description,
            emergency_type=request.emergency_type,
            status=request.status.value,
            assigned_responder_id=request.assigned_responder_id,
            dispatch_attempts=request.dispatch_attempts,
            created_at=request.created_at,
            accepted_at=request.accepted_at,
            estimated_arrival_at=request.estimated_arrival_at,
            actual_arrival_at=request.actual_arrival_at,
            completed_at=request.completed_at,
            cancelled_at=request.cancelled_at
        )


class DispatchOutcomeResponse(BaseModel):
    """Result of a dispatch attempt"""
    request_id: UUID
    reason: str
    assigned_responder_id: Optional[UUID]
    distance_km: Optional[float]
    eta: Optional[str]
    eta_minutes: Optional[int]

    @classmethod
    def from_outcome(cls, outcome: DispatchOutcome) -> "DispatchOutcomeResponse":
        return cls(**outcome.to_dict())


class EmergencyRequestCreated(BaseModel):
    """Submitted request together with its first dispatch attempt"""
    request: EmergencyRequestResponse
    dispatch: DispatchOutcomeResponse


class RequestListResponse(BaseModel):
    """Request list response model"""
    requests: List[EmergencyRequestResponse]
    limit: int
    offset: int


class RequestStatusUpdate(BaseModel):
    """Request status update model"""
    status: str = Field(..., description="in-progress, completed or cancelled")


class RequesterUpdateResponse(BaseModel):
    id: UUID
    type: str
    request_id: UUID
    responder_id: Optional[UUID]
    message: Optional[str]
    eta: Optional[str]
    created_at: datetime


class RequesterUpdateList(BaseModel):
    updates: List[RequesterUpdateResponse]
    count: int


class ClassifyRequest(BaseModel):
    description: str = Field(..., min_length=1, max_length=1000)


class ClassifyResponse(BaseModel):
    service_types: List[str]


class NotificationResponse(BaseModel):
    """Assignment offer delivered to a responder"""
    id: UUID
    type: str
    request_id: UUID
    requester_id: Optional[UUID]
    service_type: str
    emergency_type: Optional[str]
    location: Optional[List[float]]
    address: Optional[str]
    description: str
    distance_km: float
    eta: str
    eta_minutes: int
    timeout_seconds: int
    created_at: datetime
    expires_at: datetime

    @classmethod
    def from_entry(cls, entry: NotificationEntry) -> "NotificationResponse":
        return cls(
            id=entry.id,
            type=entry.type,
            request_id=entry.request_id,
            requester_id=entry.requester_id,
            service_type=entry.service_type.value,
            emergency_type=entry.emergency_type,
            location=entry.location.as_list() if entry.location else None,
            address=entry.address,
            description=entry.description,
            distance_km=round(entry.distance_km, 3),
            eta=entry.eta,
            eta_minutes=entry.eta_minutes,
            timeout_seconds=entry.timeout_seconds,
            created_at=entry.created_at,
            expires_at=entry.expires_at
        )


class NotificationList(BaseModel):
    notifications: List[NotificationResponse]
    count: int


class ResponderCreate(BaseModel):
    """Responder registration model"""
    service_type: Optional[str] = Field(None, description="ambulance, fire or police")
    name: str = Field("", max_length=200)
    location: Optional[Any] = Field(None, description=LOCATION_DESCRIPTION)
    responder_id: Optional[UUID] = Field(None, description="Responder id, admins only")


class ResponderResponse(BaseModel):
    """Responder response model"""
    id: UUID
    name: str
    service_type: str
    availability: str
    location: Optional[List[float]]
    last_location_update: Optional[datetime]
    current_request_id: Optional[UUID]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_responder(cls, responder: Responder) -> "ResponderResponse":
        return cls(
            id=responder.id,
            name=responder.name,
            service_type=responder.service_type.value,
            availability=responder.availability.value,
            location=responder.location.as_list() if responder.location else None,
            last_location_update=responder.last_location_update,
            current_request_id=responder.current_request_id,
            created_at=responder.created_at,
            updated_at=responder.updated_at
        )


class LocationUpdate(BaseModel):
    location: Optional[Any] = Field(None, description=LOCATION_DESCRIPTION)


class AvailabilityUpdate(BaseModel):
    availability: str = Field(..., description="offline or available")


class NearbyResponder(BaseModel):
    responder: ResponderResponse
    distance_km: float
    eta: str
    eta_minutes: int

    @classmethod
    def from_match(cls, match: CandidateMatch) -> "NearbyResponder":
        eta_minutes = geo.calculate_eta_minutes(match.distance_km)
        return cls(
            responder=ResponderResponse.from_responder(match.responder),
            distance_km=round(match.distance_km, 3),
            eta=geo.format_eta(eta_minutes),
            eta_minutes=eta_minutes
        )


class NearbyResponderList(BaseModel):
    responders: List[NearbyResponder]
    count: int


class LocationValidationSummary(BaseModel):
    checked: int
    fixed: int
    valid: int
    missing: int
