"""
Shared fixtures for dispatch tests
"""
from datetime import datetime, timedelta, timezone
from uuid import UUID, uuid4

import jwt
import pytest

from emergency_dispatch.core.config import settings
from emergency_dispatch.models.dispatch import Availability, GeoCoordinate, Responder, ServiceType
from emergency_dispatch.services.dispatch_service import DispatchService
from emergency_dispatch.services.notifications import (
    InMemoryNotificationStorage,
    NotificationQueue,
    RequesterUpdateFeed,
)
from emergency_dispatch.services.repository import InMemoryDispatchRepository

# Karachi reference points
KARACHI_CENTER = [67.0011, 24.8607]
NEAR_RESPONDER = [67.005, 24.862]
FAR_RESPONDER = [67.0645785, 24.9273331]


def make_token(user_id: UUID, role: str, expires_in: int = 3600) -> str:
    payload = {
        "sub": str(user_id),
        "role": role,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    }
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def auth_headers(user_id: UUID, role: str) -> dict:
    return {"Authorization": f"Bearer {make_token(user_id, role)}"}


def available_responder(location, service_type=ServiceType.AMBULANCE, name="", responder_id=None) -> Responder:
    responder = Responder(
        name=name,
        service_type=service_type,
        availability=Availability.AVAILABLE,
        location=GeoCoordinate(longitude=location[0], latitude=location[1]) if location else None,
    )
    if responder_id is not None:
        responder.id = responder_id
    return responder


@pytest.fixture
def repository():
    return InMemoryDispatchRepository()


@pytest.fixture
def queue():
    return NotificationQueue(InMemoryNotificationStorage())


@pytest.fixture
def update_feed():
    return RequesterUpdateFeed(InMemoryNotificationStorage())


@pytest.fixture
def dispatch_service(repository, queue, update_feed):
    return DispatchService(repository, queue, update_feed)


@pytest.fixture
def requester_id():
    return uuid4()
