"""
Dispatch models
"""
from emergency_dispatch.models.dispatch import (
    Availability,
    CandidateMatch,
    EmergencyRequest,
    GeoCoordinate,
    NotificationEntry,
    RequestStatus,
    RequesterUpdate,
    RequesterUpdateType,
    Responder,
    ServiceType,
)

__all__ = [
    "Availability",
    "CandidateMatch",
    "EmergencyRequest",
    "GeoCoordinate",
    "NotificationEntry",
    "RequestStatus",
    "RequesterUpdate",
    "RequesterUpdateType",
    "Responder",
    "ServiceType",
]
