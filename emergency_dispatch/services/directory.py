"""
Responder directory and proximity search
"""
from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID

from emergency_dispatch.core.config import settings
from emergency_dispatch.core.exceptions import ConflictError, ErrorCodes, NotFoundError, ValidationError
from emergency_dispatch.core.logging import get_logger
from emergency_dispatch.models.dispatch import (
    Availability,
    CandidateMatch,
    Responder,
    ServiceType,
    utcnow,
)
from emergency_dispatch.services import geo
from emergency_dispatch.services.repository import DispatchRepository

logger = get_logger(__name__)


def parse_service_type(value: Any, field: str = "service_type") -> ServiceType:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{field} is required", field=field, error_code=ErrorCodes.INVALID_SERVICE_TYPE)
    try:
        return ServiceType.parse(value)
    except ValueError:
        valid = ", ".join(service.value for service in ServiceType)
        raise ValidationError(
            f"Invalid service type. Must be one of: {valid}",
            field=field,
            error_code=ErrorCodes.INVALID_SERVICE_TYPE
        )


class ResponderDirectory:
    """Holds responder records and answers proximity queries"""

    def __init__(self, repository: DispatchRepository):
        self.repository = repository

    async def register(
        self,
        service_type: Any,
        name: str = "",
        responder_id: Optional[UUID] = None,
        location: Any = None
    ) -> Responder:
        """Create a responder: offline, with an optional starting location"""
        responder = Responder(
            name=name,
            service_type=parse_service_type(service_type),
            availability=Availability.OFFLINE,
        )
        if responder_id is not None:
            if await self.repository.get_responder(responder_id) is not None:
                raise ConflictError(f"Responder {responder_id} is already registered")
            responder.id = responder_id
        if location is not None:
            responder.location = geo.repair(location, context={"responder_id": str(responder.id)})
            responder.last_location_update = utcnow()

        created = await self.repository.add_responder(responder)
        logger.info(
            "responder_registered",
            responder_id=str(created.id),
            service_type=created.service_type.value
        )
        return created

    async def get(self, responder_id: UUID) -> Responder:
        responder = await self.repository.get_responder(responder_id)
        if responder is None:
            raise NotFoundError(f"Responder {responder_id} not found", error_code=ErrorCodes.RESPONDER_NOT_FOUND)
        return responder

    async def update_location(self, responder_id: UUID, location: Any) -> Responder:
        """Store the responder's latest location ping, repairing it first"""
        coordinate = geo.require_location(location, context={"responder_id": str(responder_id)})
        responder = await self.repository.update_responder_location(responder_id, coordinate, utcnow())
        if responder is None:
            raise NotFoundError(f"Responder {responder_id} not found", error_code=ErrorCodes.RESPONDER_NOT_FOUND)

        logger.debug(
            "responder_location_updated",
            responder_id=str(responder_id),
            longitude=coordinate.longitude,
            latitude=coordinate.latitude
        )
        return responder

    async def find_candidates(
        self,
        location: Any,
        service_type: Any,
        max_distance_meters: Optional[float] = None,
        limit: int = 1,
        exclude: Iterable[UUID] = ()
    ) -> List[CandidateMatch]:
        """
        Available responders of a service type within range, nearest first

        Args:
            location: Query point (any accepted coordinate shape)
            service_type: Required service type
            max_distance_meters: Search radius, defaults to the dispatch radius
            limit: Maximum number of matches
            exclude: Responder ids to leave out

        Returns:
            Matches ordered by distance, ties broken by responder id.
            Empty when nothing qualifies.
        """
        origin = geo.require_location(location)
        wanted = parse_service_type(service_type)
        radius_meters = settings.DISPATCH_RADIUS_METERS if max_distance_meters is None else max_distance_meters
        if radius_meters < 0:
            raise ValidationError("max_distance_meters must not be negative", field="max_distance_meters")
        if limit < 1:
            return []

        excluded = set(exclude)
        radius_km = radius_meters / 1000.0
        matches = []
        for responder in await self.repository.list_available_near(wanted, origin, radius_meters):
            if responder.id in excluded:
                continue
            if responder.service_type != wanted or responder.availability != Availability.AVAILABLE:
                continue
            if responder.location is None or not geo.validate(responder.location):
                continue

            distance_km = geo.haversine_km(origin, responder.location)
            if distance_km <= radius_km:
                matches.append(CandidateMatch(responder=responder, distance_km=distance_km))

        matches.sort(key=lambda match: (match.distance_km, str(match.responder.id)))
        return matches[:limit]

    async def validate_all_locations(self) -> Dict[str, int]:
        """
        Repair every stored responder location and persist the fixes

        Returns:
            Counts of fixed, already valid and missing locations
        """
        summary = {"checked": 0, "fixed": 0, "valid": 0, "missing": 0}

        for responder in await self.repository.list_responders():
            summary["checked"] += 1
            if responder.location is None:
                summary["missing"] += 1
                continue

            repaired = geo.repair(responder.location, context={"responder_id": str(responder.id)})
            if repaired == responder.location:
                summary["valid"] += 1
                continue

            await self.repository.update_responder_location(
                responder.id, repaired, responder.last_location_update or utcnow()
            )
            summary["fixed"] += 1

        logger.info("responder_locations_validated", **summary)
        return summary
