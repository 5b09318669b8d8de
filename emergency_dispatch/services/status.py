"""
Request status transitions and responder availability
"""
from typing import Any, Dict, Optional, Set
from uuid import UUID

from emergency_dispatch.core.exceptions import (
    ConflictError,
    ErrorCodes,
    NotFoundError,
    StateTransitionError,
    ValidationError,
)
from emergency_dispatch.core.logging import get_logger, BusinessEventType
from emergency_dispatch.core.metrics import metrics_collector
from emergency_dispatch.models.dispatch import (
    Availability,
    EmergencyRequest,
    NotificationEntry,
    RequestStatus,
    RequesterUpdate,
    RequesterUpdateType,
    Responder,
    utcnow,
)
from emergency_dispatch.services.notifications import NotificationQueue, RequesterUpdateFeed
from emergency_dispatch.services.repository import DispatchRepository

logger = get_logger(__name__)

# pending -> accepted is only reachable through dispatch assignment
ALLOWED_TRANSITIONS: Dict[RequestStatus, Set[RequestStatus]] = {
    RequestStatus.PENDING: {RequestStatus.CANCELLED},
    RequestStatus.ACCEPTED: {RequestStatus.IN_PROGRESS, RequestStatus.CANCELLED},
    RequestStatus.IN_PROGRESS: {RequestStatus.COMPLETED, RequestStatus.CANCELLED},
    RequestStatus.COMPLETED: set(),
    RequestStatus.CANCELLED: set(),
}

STATUS_STAMPS = {
    RequestStatus.IN_PROGRESS: "actual_arrival_at",
    RequestStatus.COMPLETED: "completed_at",
    RequestStatus.CANCELLED: "cancelled_at",
}

STATUS_UPDATES = {
    RequestStatus.IN_PROGRESS: (RequesterUpdateType.RESPONDER_ARRIVED, "Responder has arrived"),
    RequestStatus.COMPLETED: (RequesterUpdateType.REQUEST_COMPLETED, "Request completed"),
    RequestStatus.CANCELLED: (RequesterUpdateType.REQUEST_CANCELLED, "Request cancelled"),
}

# Availability a responder may set by hand, and the states it may come from
MANUAL_AVAILABILITY = {
    Availability.AVAILABLE: {Availability.OFFLINE, Availability.AVAILABLE},
    Availability.OFFLINE: {Availability.OFFLINE, Availability.AVAILABLE},
}


def parse_status(value: Any) -> RequestStatus:
    if isinstance(value, RequestStatus):
        return value
    try:
        return RequestStatus(str(value).strip().lower())
    except ValueError:
        valid = ", ".join(status.value for status in RequestStatus)
        raise ValidationError(f"Invalid status. Must be one of: {valid}", field="status")


def can_transition(current: RequestStatus, new: RequestStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[current]


class StatusPropagator:
    """Applies request status changes and their responder side effects"""

    def __init__(
        self,
        repository: DispatchRepository,
        update_feed: Optional[RequesterUpdateFeed] = None,
        queue: Optional[NotificationQueue] = None
    ):
        self.repository = repository
        self.update_feed = update_feed
        self.queue = queue

    async def apply_status(self, request_id: UUID, new_status: Any) -> EmergencyRequest:
        """
        Move a request to ``new_status``

        The write is conditional on the status read here. Completing or
        cancelling a request releases its responder in the same step and
        withdraws any offer the responder has not polled yet.

        Raises:
            ValidationError: unknown status value
            NotFoundError: request does not exist
            StateTransitionError: change not allowed from the current status
            ConflictError: status changed concurrently
        """
        target = parse_status(new_status)
        request = await self.repository.get_request(request_id)
        if request is None:
            raise NotFoundError(f"Emergency request {request_id} not found")

        current = request.status
        if not can_transition(current, target):
            logger.warning(
                "status_transition_rejected",
                request_id=str(request_id),
                current_status=current.value,
                requested_status=target.value
            )
            raise StateTransitionError(current.value, target.value)

        updated = await self.repository.transition(
            request_id,
            expected_status=current,
            new_status=target,
            stamps={STATUS_STAMPS[target]: utcnow()},
            release_responder=target.is_terminal
        )
        if updated is None:
            raise ConflictError(
                f"Emergency request {request_id} changed while updating status",
                {"expected_status": current.value, "requested_status": target.value}
            )

        metrics_collector.record_status_change(updated.service_type.value, target.value)
        logger.business_event(
            BusinessEventType.STATUS_CHANGED,
            request_id=str(request_id),
            from_status=current.value,
            to_status=target.value,
            responder_id=str(updated.assigned_responder_id) if updated.assigned_responder_id else None
        )
        if target.is_terminal and request.assigned_responder_id:
            await self._withdraw_offer(request.assigned_responder_id, request_id)
            logger.business_event(
                BusinessEventType.RESPONDER_RELEASED,
                request_id=str(request_id),
                responder_id=str(request.assigned_responder_id)
            )

        update_type, message = STATUS_UPDATES[target]
        await self._publish(updated, update_type, message)
        return updated

    async def set_responder_availability(self, responder_id: UUID, availability: Any) -> Responder:
        """
        Toggle a responder between offline and available

        Busy is only entered and left through assignment and release.
        """
        try:
            wanted = Availability.parse(availability)
        except ValueError:
            raise ValidationError("Invalid availability. Must be one of: offline, available", field="availability")

        responder = await self.repository.get_responder(responder_id)
        if responder is None:
            raise NotFoundError(f"Responder {responder_id} not found", error_code=ErrorCodes.RESPONDER_NOT_FOUND)

        if wanted not in MANUAL_AVAILABILITY:
            raise StateTransitionError(
                responder.availability.value,
                wanted.value,
                "Busy is set by dispatch assignment only"
            )

        allowed_from = MANUAL_AVAILABILITY[wanted]
        if responder.availability not in allowed_from:
            raise StateTransitionError(
                responder.availability.value,
                wanted.value,
                "Responder is busy with an active request"
            )

        updated = await self.repository.set_availability(responder_id, allowed_from, wanted)
        if updated is None:
            # Assigned between the read and the write
            raise StateTransitionError(
                Availability.BUSY.value,
                wanted.value,
                "Responder is busy with an active request"
            )

        logger.info(
            "responder_availability_changed",
            responder_id=str(responder_id),
            from_availability=responder.availability.value,
            to_availability=updated.availability.value
        )
        return updated

    async def release_assignment(self, request_id: UUID, responder_id: UUID) -> EmergencyRequest:
        """
        Responder declines an accepted request

        The request goes back to pending without a responder, the responder
        becomes available again and is skipped by later dispatch attempts.
        """
        request = await self.repository.get_request(request_id)
        if request is None:
            raise NotFoundError(f"Emergency request {request_id} not found")
        if request.assigned_responder_id != responder_id:
            raise ConflictError(
                f"Emergency request {request_id} is not assigned to responder {responder_id}",
                {"responder_id": str(responder_id)}
            )
        if request.status != RequestStatus.ACCEPTED:
            raise StateTransitionError(
                request.status.value,
                RequestStatus.PENDING.value,
                "Only accepted requests can be declined"
            )

        released = await self._release(
            request_id,
            responder_id,
            "Responder declined, looking for another responder"
        )
        if released is None:
            raise ConflictError(f"Emergency request {request_id} changed while declining")

        metrics_collector.record_release(released.service_type.value, "declined")
        logger.business_event(
            BusinessEventType.RESPONDER_DECLINED,
            request_id=str(request_id),
            responder_id=str(responder_id)
        )
        return released

    async def expire_offer(self, entry: NotificationEntry) -> Optional[EmergencyRequest]:
        """
        Release a request whose offer was never picked up

        Returns None when the request already moved on (started, cancelled
        or reassigned) since the offer was queued.
        """
        released = await self._release(entry.request_id, entry.responder_id, "Responder did not answer in time")
        if released is None:
            logger.debug(
                "expired_offer_already_handled",
                request_id=str(entry.request_id),
                responder_id=str(entry.responder_id)
            )
            return None

        metrics_collector.record_release(released.service_type.value, "expired")
        logger.business_event(
            BusinessEventType.OFFER_EXPIRED,
            request_id=str(entry.request_id),
            responder_id=str(entry.responder_id),
            timeout_seconds=entry.timeout_seconds
        )
        return released

    async def _release(self, request_id: UUID, responder_id: UUID, message: str) -> Optional[EmergencyRequest]:
        released = await self.repository.release_assignment(request_id, responder_id)
        if released is None:
            return None
        await self._withdraw_offer(responder_id, request_id)
        await self._publish(released, RequesterUpdateType.RESPONDER_DECLINED, message, responder_id=responder_id)
        return released

    async def _withdraw_offer(self, responder_id: Optional[UUID], request_id: UUID) -> None:
        if self.queue is None or responder_id is None:
            return
        await self.queue.withdraw(responder_id, request_id)

    async def _publish(
        self,
        request: EmergencyRequest,
        update_type: RequesterUpdateType,
        message: str,
        responder_id: Optional[UUID] = None
    ) -> None:
        if self.update_feed is None:
            return
        await self.update_feed.publish(
            request.requester_id,
            RequesterUpdate(
                type=update_type,
                request_id=request.id,
                responder_id=responder_id or request.assigned_responder_id,
                message=message
            )
        )
