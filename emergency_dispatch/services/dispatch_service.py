"""
Dispatch service: the operations exposed to requesters, responders and operators
"""
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from fastapi import Request

from emergency_dispatch.core.auth import UserContext
from emergency_dispatch.core.config import settings
from emergency_dispatch.core.database import get_session_factory
from emergency_dispatch.core.exceptions import PermissionDeniedError
from emergency_dispatch.core.logging import get_logger
from emergency_dispatch.models.dispatch import (
    CandidateMatch,
    EmergencyRequest,
    NotificationEntry,
    RequestStatus,
    RequesterUpdate,
    Responder,
    ServiceType,
)
from emergency_dispatch.services.classifier import suggest_service_types
from emergency_dispatch.services.directory import ResponderDirectory
from emergency_dispatch.services.dispatch import DispatchEngine, DispatchOutcome
from emergency_dispatch.services.notifications import (
    NotificationQueue,
    RequesterUpdateFeed,
    create_notification_storage,
)
from emergency_dispatch.services.repository import DispatchRepository, InMemoryDispatchRepository
from emergency_dispatch.services.requests import EmergencyRequestStore
from emergency_dispatch.services.sql_repository import SqlDispatchRepository
from emergency_dispatch.services.status import StatusPropagator, parse_status

logger = get_logger(__name__)


class DispatchService:
    """Wires the dispatch components together over one repository"""

    def __init__(
        self,
        repository: DispatchRepository,
        queue: NotificationQueue,
        update_feed: RequesterUpdateFeed
    ):
        self.repository = repository
        self.queue = queue
        self.update_feed = update_feed
        self.directory = ResponderDirectory(repository)
        self.requests = EmergencyRequestStore(repository)
        self.engine = DispatchEngine(self.directory, repository, queue, update_feed)
        self.status = StatusPropagator(repository, update_feed, queue)

    # Requests

    async def create_request(
        self,
        requester_id: UUID,
        service_type: Any,
        location: Any,
        description: Optional[str] = None,
        address: Optional[str] = None,
        emergency_type: Optional[str] = None
    ) -> Tuple[EmergencyRequest, DispatchOutcome]:
        """Store a new request and make the first dispatch attempt"""
        request = await self.requests.create(
            requester_id,
            service_type,
            location,
            description=description,
            address=address,
            emergency_type=emergency_type
        )
        outcome = await self.engine.dispatch(request.id)
        return await self.requests.get(request.id), outcome

    async def get_request(self, request_id: UUID, actor: Optional[UserContext] = None) -> EmergencyRequest:
        request = await self.requests.get(request_id)
        if actor is not None:
            self._check_access(request, actor)
        return request

    async def list_requests_for_requester(
        self,
        requester_id: UUID,
        limit: int = 50,
        offset: int = 0
    ) -> List[EmergencyRequest]:
        return await self.requests.list_for_requester(requester_id, limit=limit, offset=offset)

    async def list_pending_requests(self, limit: int = 50, offset: int = 0) -> List[EmergencyRequest]:
        return await self.requests.list_pending(limit=limit, offset=offset)

    async def dispatch(self, request_id: UUID, actor: Optional[UserContext] = None) -> DispatchOutcome:
        """
        Retry dispatch for a request that is still pending

        Responders that declined the request or let its offer expire are
        not offered it again.
        """
        if actor is not None:
            self._check_access(await self.requests.get(request_id), actor)
        return await self.engine.dispatch(request_id)

    async def update_request_status(
        self,
        request_id: UUID,
        new_status: Any,
        actor: Optional[UserContext] = None
    ) -> EmergencyRequest:
        """
        Apply a status change on behalf of ``actor``

        Requesters may only cancel their own requests. Responders may only
        move requests assigned to them.
        """
        if actor is not None:
            request = await self.requests.get(request_id)
            self._check_access(request, actor)
            if actor.is_requester() and parse_status(new_status) != RequestStatus.CANCELLED:
                raise PermissionDeniedError("Requesters can only cancel their requests")
        return await self.status.apply_status(request_id, new_status)

    async def decline_request(self, request_id: UUID, responder_id: UUID) -> EmergencyRequest:
        """Responder turns down an accepted request; it goes back to pending"""
        return await self.status.release_assignment(request_id, responder_id)

    async def poll_request_updates(self, requester_id: UUID) -> List[RequesterUpdate]:
        return await self.update_feed.drain(requester_id)

    # Notifications

    async def poll_notifications(self, responder_id: UUID) -> List[NotificationEntry]:
        """Deliver every waiting offer to the responder, exactly once"""
        entries = await self.queue.drain(responder_id)
        if entries:
            logger.info("notifications_delivered", responder_id=str(responder_id), count=len(entries))
        return entries

    async def clear_notifications(self, responder_id: UUID) -> int:
        return await self.queue.clear(responder_id)

    async def expire_stale_offers(self) -> List[UUID]:
        """
        Withdraw offers nobody picked up in time

        Each expired, undelivered offer whose request is still accepted by the
        same responder is released back to pending. Re-dispatching is left to
        the caller.

        Returns:
            Ids of the requests that were released
        """
        released = []
        for entry in await self.queue.expire():
            request = await self.status.expire_offer(entry)
            if request is not None:
                released.append(request.id)
        return released

    # Responders

    async def register_responder(
        self,
        service_type: Any,
        name: str = "",
        responder_id: Optional[UUID] = None,
        location: Any = None
    ) -> Responder:
        return await self.directory.register(service_type, name=name, responder_id=responder_id, location=location)

    async def get_responder(self, responder_id: UUID) -> Responder:
        return await self.directory.get(responder_id)

    async def update_responder_location(self, responder_id: UUID, location: Any) -> Responder:
        return await self.directory.update_location(responder_id, location)

    async def set_responder_availability(self, responder_id: UUID, availability: Any) -> Responder:
        return await self.status.set_responder_availability(responder_id, availability)

    async def find_nearby_responders(
        self,
        location: Any,
        service_type: Any,
        radius_meters: Optional[float] = None,
        limit: Optional[int] = None
    ) -> List[CandidateMatch]:
        """Available responders around a point, for broadcast style lookups"""
        return await self.directory.find_candidates(
            location,
            service_type,
            max_distance_meters=settings.BROADCAST_RADIUS_METERS if radius_meters is None else radius_meters,
            limit=settings.BROADCAST_LIMIT if limit is None else limit
        )

    async def validate_all_locations(self) -> Dict[str, int]:
        return await self.directory.validate_all_locations()

    @staticmethod
    def suggest_service_types(description: str) -> List[ServiceType]:
        return suggest_service_types(description)

    def _check_access(self, request: EmergencyRequest, actor: UserContext) -> None:
        if actor.is_admin():
            return
        if actor.is_responder():
            if request.assigned_responder_id != actor.user_id:
                raise PermissionDeniedError("Request is not assigned to this responder")
            return
        if request.requester_id != actor.user_id:
            raise PermissionDeniedError("Request belongs to another user")


def build_dispatch_service(
    storage_backend: Optional[str] = None,
    notification_backend: Optional[str] = None
) -> DispatchService:
    """Create a DispatchService on the configured storage backends"""
    storage_backend = storage_backend or settings.STORAGE_BACKEND
    if storage_backend == "database":
        repository = SqlDispatchRepository(get_session_factory())
    elif storage_backend == "memory":
        repository = InMemoryDispatchRepository()
    else:
        raise ValueError(f"Unknown storage backend: {storage_backend}")

    service = DispatchService(
        repository,
        NotificationQueue(create_notification_storage("notifications", notification_backend)),
        RequesterUpdateFeed(create_notification_storage("updates", notification_backend))
    )
    logger.info(
        "dispatch_service_ready",
        storage_backend=storage_backend,
        notification_backend=notification_backend or settings.NOTIFICATION_BACKEND
    )
    return service


def get_dispatch_service(request: Request) -> DispatchService:
    """FastAPI dependency returning the application's DispatchService"""
    return request.app.state.dispatch_service
