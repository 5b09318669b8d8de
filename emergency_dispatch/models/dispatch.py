"""
Dispatch domain records shared by every storage backend
"""
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ServiceType(str, Enum):
    """Emergency service types a responder can provide"""
    AMBULANCE = "ambulance"
    FIRE = "fire"
    POLICE = "police"

    @classmethod
    def parse(cls, value: Any) -> "ServiceType":
        """Parse a service type, accepting legacy vehicle type names"""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError(f"Invalid service type: {value!r}")
        normalized = value.strip().lower()
        normalized = LEGACY_SERVICE_TYPES.get(normalized, normalized)
        return cls(normalized)


LEGACY_SERVICE_TYPES = {
    "fire-brigade": "fire",
    "firebrigade": "fire",
    "medical": "ambulance",
}


class Availability(str, Enum):
    """Canonical responder availability"""
    OFFLINE = "offline"
    AVAILABLE = "available"
    BUSY = "busy"

    @classmethod
    def parse(cls, value: Any) -> "Availability":
        """Parse availability, mapping the legacy Online/Offline strings"""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError(f"Invalid availability: {value!r}")
        normalized = value.strip().lower()
        normalized = LEGACY_AVAILABILITY.get(normalized, normalized)
        return cls(normalized)


LEGACY_AVAILABILITY = {
    "online": "available",
    "online-available": "available",
    "online-busy": "busy",
}


class RequestStatus(str, Enum):
    """Emergency request lifecycle status"""
    PENDING = "pending"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RequestStatus.COMPLETED, RequestStatus.CANCELLED)


class GeoCoordinate(BaseModel):
    """A validated [longitude, latitude] pair"""
    model_config = ConfigDict(frozen=True)

    longitude: float = Field(..., ge=-180, le=180)
    latitude: float = Field(..., ge=-90, le=90)

    def as_list(self) -> List[float]:
        """GeoJSON coordinate order"""
        return [self.longitude, self.latitude]

    def to_geojson(self) -> Dict[str, Any]:
        return {"type": "Point", "coordinates": self.as_list()}

    def to_wkt(self) -> str:
        return f"POINT({self.longitude} {self.latitude})"


class Responder(BaseModel):
    """Responder ("captain") record"""
    id: UUID = Field(default_factory=uuid4)
    name: str = ""
    service_type: ServiceType
    availability: Availability = Availability.OFFLINE
    location: Optional[GeoCoordinate] = None
    last_location_update: Optional[datetime] = None
    current_request_id: Optional[UUID] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class EmergencyRequest(BaseModel):
    """Citizen-submitted emergency request"""
    id: UUID = Field(default_factory=uuid4)
    requester_id: UUID
    service_type: ServiceType
    location: Optional[GeoCoordinate] = None
    address: Optional[str] = None
    description: str = ""
    emergency_type: Optional[str] = None
    status: RequestStatus = RequestStatus.PENDING
    assigned_responder_id: Optional[UUID] = None
    dispatch_attempts: int = 0
    # Responders that declined the request or let its offer expire
    declined_responder_ids: List[UUID] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    accepted_at: Optional[datetime] = None
    estimated_arrival_at: Optional[datetime] = None
    actual_arrival_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class CandidateMatch(BaseModel):
    """A responder returned by a proximity query with its distance"""
    responder: Responder
    distance_km: float


class NotificationEntry(BaseModel):
    """Assignment notice waiting for a responder to poll it"""
    id: UUID = Field(default_factory=uuid4)
    type: str = "assignment"
    responder_id: UUID
    request_id: UUID
    requester_id: Optional[UUID] = None
    service_type: ServiceType
    emergency_type: Optional[str] = None
    location: Optional[GeoCoordinate] = None
    address: Optional[str] = None
    description: str = ""
    distance_km: float = 0.0
    eta: str = ""
    eta_minutes: int = 0
    timeout_seconds: int = 15
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def expires_at(self) -> datetime:
        return self.created_at + timedelta(seconds=self.timeout_seconds)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


class RequesterUpdateType(str, Enum):
    """Events surfaced to the requester's status feed"""
    NO_DRIVERS = "no_drivers"
    REQUEST_ACCEPTED = "request_accepted"
    RESPONDER_ARRIVED = "responder_arrived"
    REQUEST_COMPLETED = "request_completed"
    REQUEST_CANCELLED = "request_cancelled"
    RESPONDER_DECLINED = "responder_declined"


class RequesterUpdate(BaseModel):
    """Status update waiting for a requester to poll it"""
    id: UUID = Field(default_factory=uuid4)
    type: RequesterUpdateType
    request_id: UUID
    responder_id: Optional[UUID] = None
    message: Optional[str] = None
    eta: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
