"""
Emergency request store
"""
from typing import Any, List, Optional
from uuid import UUID

from emergency_dispatch.core.exceptions import NotFoundError, ValidationError
from emergency_dispatch.core.logging import get_logger, BusinessEventType
from emergency_dispatch.core.metrics import metrics_collector
from emergency_dispatch.models.dispatch import EmergencyRequest, GeoCoordinate, RequestStatus
from emergency_dispatch.services import geo
from emergency_dispatch.services.directory import parse_service_type
from emergency_dispatch.services.repository import DispatchRepository

logger = get_logger(__name__)


class EmergencyRequestStore:
    """Holds emergency requests and their lifecycle status"""

    def __init__(self, repository: DispatchRepository):
        self.repository = repository

    async def create(
        self,
        requester_id: Optional[UUID],
        service_type: Any,
        location: Any,
        description: Optional[str] = None,
        address: Optional[str] = None,
        emergency_type: Optional[str] = None
    ) -> EmergencyRequest:
        """
        Validate and store a new pending request

        Raises:
            ValidationError: requester, service type or location missing or invalid
        """
        if requester_id is None:
            raise ValidationError("requester_id is required", field="requester_id")

        request = EmergencyRequest(
            requester_id=requester_id,
            service_type=parse_service_type(service_type),
            location=geo.require_location(location, context={"requester_id": str(requester_id)}),
            address=address.strip() if address else None,
            description=(description or "").strip(),
            emergency_type=emergency_type,
            status=RequestStatus.PENDING,
        )
        created = await self.repository.add_request(request)

        logger.business_event(
            BusinessEventType.REQUEST_SUBMITTED,
            request_id=str(created.id),
            requester_id=str(requester_id),
            service_type=created.service_type.value,
            longitude=created.location.longitude,
            latitude=created.location.latitude
        )
        metrics_collector.record_request_submitted(created.service_type.value)
        return created

    async def get(self, request_id: UUID) -> EmergencyRequest:
        request = await self.repository.get_request(request_id)
        if request is None:
            raise NotFoundError(f"Emergency request {request_id} not found")
        return request

    async def list_for_requester(self, requester_id: UUID, limit: int = 50, offset: int = 0) -> List[EmergencyRequest]:
        return await self.repository.list_requests(requester_id=requester_id, limit=limit, offset=offset)

    async def list_pending(self, limit: int = 50, offset: int = 0) -> List[EmergencyRequest]:
        return await self.repository.list_requests(status=RequestStatus.PENDING, limit=limit, offset=offset)

    async def save_location(self, request_id: UUID, location: GeoCoordinate) -> EmergencyRequest:
        request = await self.repository.update_request_location(request_id, location)
        if request is None:
            raise NotFoundError(f"Emergency request {request_id} not found")
        return request
