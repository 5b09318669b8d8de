"""
Dispatch engine: matches a pending request to the nearest available responder
"""
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Iterable, Optional
from uuid import UUID

from emergency_dispatch.core.config import settings
from emergency_dispatch.core.exceptions import ConflictError, ErrorCodes, NotFoundError, ValidationError
from emergency_dispatch.core.logging import get_logger, BusinessEventType
from emergency_dispatch.core.metrics import metrics_collector
from emergency_dispatch.models.dispatch import (
    NotificationEntry,
    RequestStatus,
    RequesterUpdate,
    RequesterUpdateType,
    utcnow,
)
from emergency_dispatch.services import geo
from emergency_dispatch.services.directory import ResponderDirectory
from emergency_dispatch.services.notifications import NotificationQueue, RequesterUpdateFeed
from emergency_dispatch.services.repository import DispatchRepository

logger = get_logger(__name__)


class DispatchReason(str, Enum):
    ASSIGNED = "assigned"
    NO_CANDIDATE = "no_candidate"
    CONFLICT = "conflict"
    NOT_PENDING = "not_pending"


@dataclass
class DispatchOutcome:
    """Result of one dispatch attempt"""
    request_id: UUID
    reason: DispatchReason
    assigned_responder_id: Optional[UUID] = None
    distance_km: Optional[float] = None
    eta: Optional[str] = None
    eta_minutes: Optional[int] = None

    @property
    def assigned(self) -> bool:
        return self.reason == DispatchReason.ASSIGNED

    def to_dict(self) -> dict:
        return {
            "request_id": str(self.request_id),
            "reason": self.reason.value,
            "assigned_responder_id": str(self.assigned_responder_id) if self.assigned_responder_id else None,
            "distance_km": round(self.distance_km, 3) if self.distance_km is not None else None,
            "eta": self.eta,
            "eta_minutes": self.eta_minutes,
        }


class DispatchEngine:
    """Finds, assigns and notifies the nearest available responder"""

    def __init__(
        self,
        directory: ResponderDirectory,
        repository: DispatchRepository,
        queue: NotificationQueue,
        update_feed: Optional[RequesterUpdateFeed] = None
    ):
        self.directory = directory
        self.repository = repository
        self.queue = queue
        self.update_feed = update_feed

    async def dispatch(self, request_id: UUID, exclude: Iterable[UUID] = ()) -> DispatchOutcome:
        """
        Try to assign a pending request

        Steps:
            1. Repair the request location, persisting it when it changed
            2. Look up the nearest available responder within the dispatch radius,
               skipping responders that already declined the request
            3. No candidate: the request stays pending
            4. Assign atomically; losing a race leaves the request pending
            5. Queue the assignment offer with distance and ETA

        Raises:
            NotFoundError: request does not exist
            ValidationError: request has no location or service type
        """
        request = await self.repository.get_request(request_id)
        if request is None:
            raise NotFoundError(f"Emergency request {request_id} not found")

        if request.status != RequestStatus.PENDING:
            logger.info("dispatch_skipped_not_pending", request_id=str(request_id), status=request.status.value)
            metrics_collector.record_dispatch(request.service_type.value, DispatchReason.NOT_PENDING.value)
            return DispatchOutcome(request_id=request_id, reason=DispatchReason.NOT_PENDING)

        if request.service_type is None:
            raise ValidationError("service_type is required", field="service_type",
                                  error_code=ErrorCodes.INVALID_SERVICE_TYPE)
        if request.location is None:
            raise ValidationError("location is required", field="location",
                                  error_code=ErrorCodes.INVALID_COORDINATES)

        location = geo.repair(request.location, context={"request_id": str(request_id)})
        if location != request.location:
            request = await self.repository.update_request_location(request_id, location)

        await self.repository.record_dispatch_attempt(request_id)

        candidates = await self.directory.find_candidates(
            location,
            request.service_type,
            max_distance_meters=settings.DISPATCH_RADIUS_METERS,
            limit=1,
            exclude=set(exclude) | set(request.declined_responder_ids)
        )
        if not candidates:
            logger.business_event(
                BusinessEventType.REQUEST_PENDING,
                request_id=str(request_id),
                service_type=request.service_type.value,
                radius_meters=settings.DISPATCH_RADIUS_METERS
            )
            await self._publish(request.requester_id, RequesterUpdate(
                type=RequesterUpdateType.NO_DRIVERS,
                request_id=request_id,
                message=f"No {request.service_type.value} responders available nearby"
            ))
            metrics_collector.record_dispatch(request.service_type.value, DispatchReason.NO_CANDIDATE.value)
            return DispatchOutcome(request_id=request_id, reason=DispatchReason.NO_CANDIDATE)

        match = candidates[0]
        responder = match.responder
        eta_minutes = geo.calculate_eta_minutes(match.distance_km)
        eta = geo.format_eta(eta_minutes)

        assignment = await self.repository.assign(
            request_id,
            responder.id,
            estimated_arrival_at=utcnow() + timedelta(minutes=eta_minutes)
        )
        if assignment is None:
            logger.business_event(
                BusinessEventType.DISPATCH_CONFLICT,
                request_id=str(request_id),
                responder_id=str(responder.id)
            )
            metrics_collector.record_dispatch(request.service_type.value, DispatchReason.CONFLICT.value)
            return DispatchOutcome(request_id=request_id, reason=DispatchReason.CONFLICT)

        assigned_request, _ = assignment
        await self.queue.push(responder.id, NotificationEntry(
            responder_id=responder.id,
            request_id=request_id,
            requester_id=assigned_request.requester_id,
            service_type=assigned_request.service_type,
            emergency_type=assigned_request.emergency_type,
            location=assigned_request.location,
            address=assigned_request.address,
            description=assigned_request.description,
            distance_km=match.distance_km,
            eta=eta,
            eta_minutes=eta_minutes,
            timeout_seconds=settings.NOTIFICATION_TIMEOUT_SECONDS
        ))
        await self._publish(assigned_request.requester_id, RequesterUpdate(
            type=RequesterUpdateType.REQUEST_ACCEPTED,
            request_id=request_id,
            responder_id=responder.id,
            message=f"{responder.name or 'A responder'} is on the way",
            eta=eta
        ))

        logger.business_event(
            BusinessEventType.REQUEST_DISPATCHED,
            request_id=str(request_id),
            responder_id=str(responder.id),
            service_type=assigned_request.service_type.value,
            distance_km=round(match.distance_km, 3),
            eta_minutes=eta_minutes
        )
        metrics_collector.record_dispatch(assigned_request.service_type.value, DispatchReason.ASSIGNED.value)
        metrics_collector.record_assignment_time(
            assigned_request.service_type.value,
            ((assigned_request.accepted_at or utcnow()) - assigned_request.created_at).total_seconds()
        )
        return DispatchOutcome(
            request_id=request_id,
            reason=DispatchReason.ASSIGNED,
            assigned_responder_id=responder.id,
            distance_km=match.distance_km,
            eta=eta,
            eta_minutes=eta_minutes
        )

    async def dispatch_or_raise(self, request_id: UUID, exclude: Iterable[UUID] = ()) -> DispatchOutcome:
        """Same as dispatch, but a lost assignment race raises ConflictError"""
        outcome = await self.dispatch(request_id, exclude=exclude)
        if outcome.reason == DispatchReason.CONFLICT:
            raise ConflictError(
                f"Emergency request {request_id} could not be assigned",
                {"request_id": str(request_id)}
            )
        return outcome

    async def _publish(self, requester_id: UUID, update: RequesterUpdate) -> None:
        if self.update_feed is not None:
            await self.update_feed.publish(requester_id, update)
