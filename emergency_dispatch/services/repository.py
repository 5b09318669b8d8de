"""
Storage port for responders and emergency requests

All writes to responder availability and request status go through the atomic
operations defined here (assign, transition, release_assignment,
set_availability). Each of them is a conditional update: it only applies when
the stored state still matches what the caller expects.
"""
import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple
from uuid import UUID

from emergency_dispatch.models.dispatch import (
    Availability,
    EmergencyRequest,
    GeoCoordinate,
    RequestStatus,
    Responder,
    ServiceType,
    utcnow,
)


class DispatchRepository(ABC):
    """Persistence operations used by the dispatch services"""

    # Responders

    @abstractmethod
    async def add_responder(self, responder: Responder) -> Responder:
        ...

    @abstractmethod
    async def get_responder(self, responder_id: UUID) -> Optional[Responder]:
        ...

    @abstractmethod
    async def list_responders(
        self,
        service_type: Optional[ServiceType] = None,
        availability: Optional[Availability] = None
    ) -> List[Responder]:
        ...

    async def list_available_near(
        self,
        service_type: ServiceType,
        origin: GeoCoordinate,
        max_distance_meters: float
    ) -> List[Responder]:
        """
        Available responders of a service type that may lie within range

        Backends with a spatial index narrow the set here. Exact distance
        filtering and ordering are done by the caller.
        """
        return await self.list_responders(service_type=service_type, availability=Availability.AVAILABLE)

    @abstractmethod
    async def update_responder_location(
        self,
        responder_id: UUID,
        location: GeoCoordinate,
        updated_at: datetime
    ) -> Optional[Responder]:
        ...

    @abstractmethod
    async def set_availability(
        self,
        responder_id: UUID,
        allowed_from: Iterable[Availability],
        availability: Availability
    ) -> Optional[Responder]:
        """Change availability only if the current value is in ``allowed_from``"""

    # Requests

    @abstractmethod
    async def add_request(self, request: EmergencyRequest) -> EmergencyRequest:
        ...

    @abstractmethod
    async def get_request(self, request_id: UUID) -> Optional[EmergencyRequest]:
        ...

    @abstractmethod
    async def list_requests(
        self,
        requester_id: Optional[UUID] = None,
        status: Optional[RequestStatus] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[EmergencyRequest]:
        """Requests, newest first"""

    @abstractmethod
    async def update_request_location(self, request_id: UUID, location: GeoCoordinate) -> Optional[EmergencyRequest]:
        ...

    @abstractmethod
    async def record_dispatch_attempt(self, request_id: UUID) -> None:
        ...

    # Atomic lifecycle operations

    @abstractmethod
    async def assign(
        self,
        request_id: UUID,
        responder_id: UUID,
        estimated_arrival_at: Optional[datetime] = None
    ) -> Optional[Tuple[EmergencyRequest, Responder]]:
        """
        Assign a pending request to an available responder in one step

        Returns None, leaving both records untouched, when the request is no
        longer pending or the responder is no longer available.
        """

    @abstractmethod
    async def transition(
        self,
        request_id: UUID,
        expected_status: RequestStatus,
        new_status: RequestStatus,
        stamps: Optional[Dict[str, datetime]] = None,
        release_responder: bool = False
    ) -> Optional[EmergencyRequest]:
        """
        Move a request from ``expected_status`` to ``new_status``

        When ``release_responder`` is set, the assigned responder is returned
        to available in the same step, provided it is still busy with this
        request. Returns None when the stored status is not ``expected_status``.
        """

    @abstractmethod
    async def release_assignment(self, request_id: UUID, responder_id: UUID) -> Optional[EmergencyRequest]:
        """
        Return an accepted request to pending and free its responder

        Only applies while the request is accepted and assigned to
        ``responder_id``, which is added to the request's declined
        responders.
        """


class InMemoryDispatchRepository(DispatchRepository):
    """Process-local repository guarded by a single asyncio lock"""

    def __init__(self):
        self._responders: Dict[UUID, Responder] = {}
        self._requests: Dict[UUID, EmergencyRequest] = {}
        self._lock = asyncio.Lock()

    async def add_responder(self, responder: Responder) -> Responder:
        async with self._lock:
            self._responders[responder.id] = responder.model_copy(deep=True)
            return responder.model_copy(deep=True)

    async def get_responder(self, responder_id: UUID) -> Optional[Responder]:
        responder = self._responders.get(responder_id)
        return responder.model_copy(deep=True) if responder else None

    async def list_responders(
        self,
        service_type: Optional[ServiceType] = None,
        availability: Optional[Availability] = None
    ) -> List[Responder]:
        return [
            responder.model_copy(deep=True)
            for responder in self._responders.values()
            if (service_type is None or responder.service_type == service_type)
            and (availability is None or responder.availability == availability)
        ]

    async def update_responder_location(
        self,
        responder_id: UUID,
        location: GeoCoordinate,
        updated_at: datetime
    ) -> Optional[Responder]:
        async with self._lock:
            responder = self._responders.get(responder_id)
            if responder is None:
                return None
            responder.location = location
            responder.last_location_update = updated_at
            responder.updated_at = updated_at
            return responder.model_copy(deep=True)

    async def set_availability(
        self,
        responder_id: UUID,
        allowed_from: Iterable[Availability],
        availability: Availability
    ) -> Optional[Responder]:
        allowed = set(allowed_from)
        async with self._lock:
            responder = self._responders.get(responder_id)
            if responder is None or responder.availability not in allowed:
                return None
            responder.availability = availability
            responder.updated_at = utcnow()
            return responder.model_copy(deep=True)

    async def add_request(self, request: EmergencyRequest) -> EmergencyRequest:
        async with self._lock:
            self._requests[request.id] = request.model_copy(deep=True)
            return request.model_copy(deep=True)

    async def get_request(self, request_id: UUID) -> Optional[EmergencyRequest]:
        request = self._requests.get(request_id)
        return request.model_copy(deep=True) if request else None

    async def list_requests(
        self,
        requester_id: Optional[UUID] = None,
        status: Optional[RequestStatus] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[EmergencyRequest]:
        matching = [
            request for request in self._requests.values()
            if (requester_id is None or request.requester_id == requester_id)
            and (status is None or request.status == status)
        ]
        matching.sort(key=lambda request: (request.created_at, str(request.id)), reverse=True)
        return [request.model_copy(deep=True) for request in matching[offset:offset + limit]]

    async def update_request_location(self, request_id: UUID, location: GeoCoordinate) -> Optional[EmergencyRequest]:
        async with self._lock:
            request = self._requests.get(request_id)
            if request is None:
                return None
            request.location = location
            request.updated_at = utcnow()
            return request.model_copy(deep=True)

    async def record_dispatch_attempt(self, request_id: UUID) -> None:
        async with self._lock:
            request = self._requests.get(request_id)
            if request is not None:
                request.dispatch_attempts += 1

    async def assign(
        self,
        request_id: UUID,
        responder_id: UUID,
        estimated_arrival_at: Optional[datetime] = None
    ) -> Optional[Tuple[EmergencyRequest, Responder]]:
        async with self._lock:
            request = self._requests.get(request_id)
            responder = self._responders.get(responder_id)
            if request is None or responder is None:
                return None
            if request.status != RequestStatus.PENDING or responder.availability != Availability.AVAILABLE:
                return None

            now = utcnow()
            request.status = RequestStatus.ACCEPTED
            request.assigned_responder_id = responder_id
            request.accepted_at = now
            request.estimated_arrival_at = estimated_arrival_at
            request.updated_at = now

            responder.availability = Availability.BUSY
            responder.current_request_id = request_id
            responder.updated_at = now

            return request.model_copy(deep=True), responder.model_copy(deep=True)

    async def transition(
        self,
        request_id: UUID,
        expected_status: RequestStatus,
        new_status: RequestStatus,
        stamps: Optional[Dict[str, datetime]] = None,
        release_responder: bool = False
    ) -> Optional[EmergencyRequest]:
        async with self._lock:
            request = self._requests.get(request_id)
            if request is None or request.status != expected_status:
                return None

            now = utcnow()
            request.status = new_status
            for field, value in (stamps or {}).items():
                setattr(request, field, value)
            request.updated_at = now

            if release_responder and request.assigned_responder_id is not None:
                self._release(request.assigned_responder_id, request_id, now)

            return request.model_copy(deep=True)

    async def release_assignment(self, request_id: UUID, responder_id: UUID) -> Optional[EmergencyRequest]:
        async with self._lock:
            request = self._requests.get(request_id)
            if (
                request is None
                or request.status != RequestStatus.ACCEPTED
                or request.assigned_responder_id != responder_id
            ):
                return None

            now = utcnow()
            request.status = RequestStatus.PENDING
            request.assigned_responder_id = None
            request.accepted_at = None
            request.estimated_arrival_at = None
            if responder_id not in request.declined_responder_ids:
                request.declined_responder_ids.append(responder_id)
            request.updated_at = now

            self._release(responder_id, request_id, now)
            return request.model_copy(deep=True)

    def _release(self, responder_id: UUID, request_id: UUID, now: datetime) -> None:
        # Caller holds the lock
        responder = self._responders.get(responder_id)
        if responder is None or responder.current_request_id != request_id:
            return
        responder.availability = Availability.AVAILABLE
        responder.current_request_id = None
        responder.updated_at = now
