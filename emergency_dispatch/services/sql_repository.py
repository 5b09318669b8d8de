"""
PostGIS-backed dispatch repository

Atomic operations are conditional UPDATE statements executed in one
transaction. A statement that matches no row means the precondition no longer
holds and the whole transaction is rolled back.
"""
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple
from uuid import UUID

from geoalchemy2 import Geography
from geoalchemy2.shape import from_shape, to_shape
from shapely.geometry import Point
from sqlalchemy import cast, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import structlog

from emergency_dispatch.models.dispatch import (
    Availability,
    EmergencyRequest,
    GeoCoordinate,
    RequestStatus,
    Responder,
    ServiceType,
    utcnow,
)
from emergency_dispatch.models.tables import EmergencyRequestRecord, ResponderRecord
from emergency_dispatch.services.repository import DispatchRepository

logger = structlog.get_logger()


def _to_geometry(location: Optional[GeoCoordinate]):
    if location is None:
        return None
    return from_shape(Point(location.longitude, location.latitude), srid=4326)


def _from_geometry(geometry) -> Optional[GeoCoordinate]:
    if geometry is None:
        return None
    point = to_shape(geometry)
    # Stored rows may predate validation; keep raw values so they can be repaired
    return GeoCoordinate.model_construct(longitude=point.x, latitude=point.y)


def responder_from_record(record: ResponderRecord) -> Responder:
    return Responder(
        id=record.id,
        name=record.name or "",
        service_type=ServiceType.parse(record.service_type),
        availability=Availability.parse(record.availability),
        location=_from_geometry(record.location),
        last_location_update=record.last_location_update,
        current_request_id=record.current_request_id,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def request_from_record(record: EmergencyRequestRecord) -> EmergencyRequest:
    return EmergencyRequest(
        id=record.id,
        requester_id=record.requester_id,
        service_type=ServiceType.parse(record.service_type),
        location=_from_geometry(record.location),
        address=record.address,
        description=record.description or "",
        emergency_type=record.emergency_type,
        status=RequestStatus(record.status),
        assigned_responder_id=record.assigned_responder_id,
        dispatch_attempts=record.dispatch_attempts or 0,
        declined_responder_ids=list(record.declined_responder_ids or []),
        created_at=record.created_at,
        updated_at=record.updated_at,
        accepted_at=record.accepted_at,
        estimated_arrival_at=record.estimated_arrival_at,
        actual_arrival_at=record.actual_arrival_at,
        completed_at=record.completed_at,
        cancelled_at=record.cancelled_at,
    )


class SqlDispatchRepository(DispatchRepository):
    """Repository over the responders and emergency_requests tables"""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def _fetch_request(self, session: AsyncSession, request_id: UUID) -> Optional[EmergencyRequest]:
        result = await session.execute(
            select(EmergencyRequestRecord).where(EmergencyRequestRecord.id == request_id)
        )
        record = result.scalar_one_or_none()
        return request_from_record(record) if record else None

    async def _fetch_responder(self, session: AsyncSession, responder_id: UUID) -> Optional[Responder]:
        result = await session.execute(
            select(ResponderRecord).where(ResponderRecord.id == responder_id)
        )
        record = result.scalar_one_or_none()
        return responder_from_record(record) if record else None

    # Responders

    async def add_responder(self, responder: Responder) -> Responder:
        async with self.session_factory() as session:
            record = ResponderRecord(
                id=responder.id,
                name=responder.name,
                service_type=responder.service_type.value,
                availability=responder.availability.value,
                location=_to_geometry(responder.location),
                last_location_update=responder.last_location_update,
                current_request_id=responder.current_request_id,
            )
            session.add(record)
            await session.commit()
            await session.refresh(record)
            return responder_from_record(record)

    async def get_responder(self, responder_id: UUID) -> Optional[Responder]:
        async with self.session_factory() as session:
            return await self._fetch_responder(session, responder_id)

    async def list_responders(
        self,
        service_type: Optional[ServiceType] = None,
        availability: Optional[Availability] = None
    ) -> List[Responder]:
        query = select(ResponderRecord)
        if service_type is not None:
            query = query.where(ResponderRecord.service_type == service_type.value)
        if availability is not None:
            query = query.where(ResponderRecord.availability == availability.value)

        async with self.session_factory() as session:
            result = await session.execute(query)
            return [responder_from_record(record) for record in result.scalars().all()]

    async def list_available_near(
        self,
        service_type: ServiceType,
        origin: GeoCoordinate,
        max_distance_meters: float
    ) -> List[Responder]:
        origin_geography = cast(func.ST_GeomFromText(origin.to_wkt(), 4326), Geography(srid=4326))
        query = select(ResponderRecord).where(
            ResponderRecord.service_type == service_type.value,
            ResponderRecord.availability == Availability.AVAILABLE.value,
            ResponderRecord.location.isnot(None),
            func.ST_DWithin(
                cast(ResponderRecord.location, Geography(srid=4326)),
                origin_geography,
                max_distance_meters
            )
        )

        async with self.session_factory() as session:
            result = await session.execute(query)
            return [responder_from_record(record) for record in result.scalars().all()]

    async def update_responder_location(
        self,
        responder_id: UUID,
        location: GeoCoordinate,
        updated_at: datetime
    ) -> Optional[Responder]:
        async with self.session_factory() as session:
            result = await session.execute(
                update(ResponderRecord)
                .where(ResponderRecord.id == responder_id)
                .values(location=_to_geometry(location), last_location_update=updated_at, updated_at=updated_at)
            )
            if result.rowcount != 1:
                await session.rollback()
                return None
            await session.commit()
            return await self._fetch_responder(session, responder_id)

    async def set_availability(
        self,
        responder_id: UUID,
        allowed_from: Iterable[Availability],
        availability: Availability
    ) -> Optional[Responder]:
        allowed = [value.value for value in allowed_from]
        async with self.session_factory() as session:
            result = await session.execute(
                update(ResponderRecord)
                .where(ResponderRecord.id == responder_id, ResponderRecord.availability.in_(allowed))
                .values(availability=availability.value, updated_at=utcnow())
            )
            if result.rowcount != 1:
                await session.rollback()
                return None
            await session.commit()
            return await self._fetch_responder(session, responder_id)

    # Requests

    async def add_request(self, request: EmergencyRequest) -> EmergencyRequest:
        async with self.session_factory() as session:
            record = EmergencyRequestRecord(
                id=request.id,
                requester_id=request.requester_id,
                service_type=request.service_type.value,
                location=_to_geometry(request.location),
                address=request.address,
                description=request.description,
                emergency_type=request.emergency_type,
                status=request.status.value,
                dispatch_attempts=request.dispatch_attempts,
                declined_responder_ids=list(request.declined_responder_ids),
            )
            session.add(record)
            await session.commit()
            await session.refresh(record)
            return request_from_record(record)

    async def get_request(self, request_id: UUID) -> Optional[EmergencyRequest]:
        async with self.session_factory() as session:
            return await self._fetch_request(session, request_id)

    async def list_requests(
        self,
        requester_id: Optional[UUID] = None,
        status: Optional[RequestStatus] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[EmergencyRequest]:
        query = select(EmergencyRequestRecord)
        if requester_id is not None:
            query = query.where(EmergencyRequestRecord.requester_id == requester_id)
        if status is not None:
            query = query.where(EmergencyRequestRecord.status == status.value)
        query = query.order_by(EmergencyRequestRecord.created_at.desc()).limit(limit).offset(offset)

        async with self.session_factory() as session:
            result = await session.execute(query)
            return [request_from_record(record) for record in result.scalars().all()]

    async def update_request_location(self, request_id: UUID, location: GeoCoordinate) -> Optional[EmergencyRequest]:
        async with self.session_factory() as session:
            result = await session.execute(
                update(EmergencyRequestRecord)
                .where(EmergencyRequestRecord.id == request_id)
                .values(location=_to_geometry(location), updated_at=utcnow())
            )
            if result.rowcount != 1:
                await session.rollback()
                return None
            await session.commit()
            return await self._fetch_request(session, request_id)

    async def record_dispatch_attempt(self, request_id: UUID) -> None:
        async with self.session_factory() as session:
            await session.execute(
                update(EmergencyRequestRecord)
                .where(EmergencyRequestRecord.id == request_id)
                .values(dispatch_attempts=EmergencyRequestRecord.dispatch_attempts + 1)
            )
            await session.commit()

    # Atomic lifecycle operations

    async def assign(
        self,
        request_id: UUID,
        responder_id: UUID,
        estimated_arrival_at: Optional[datetime] = None
    ) -> Optional[Tuple[EmergencyRequest, Responder]]:
        now = utcnow()
        async with self.session_factory() as session:
            # Lock order: request row first, then responder row
            request_result = await session.execute(
                update(EmergencyRequestRecord)
                .where(
                    EmergencyRequestRecord.id == request_id,
                    EmergencyRequestRecord.status == RequestStatus.PENDING.value
                )
                .values(
                    status=RequestStatus.ACCEPTED.value,
                    assigned_responder_id=responder_id,
                    accepted_at=now,
                    estimated_arrival_at=estimated_arrival_at,
                    updated_at=now
                )
            )
            if request_result.rowcount != 1:
                await session.rollback()
                return None

            responder_result = await session.execute(
                update(ResponderRecord)
                .where(
                    ResponderRecord.id == responder_id,
                    ResponderRecord.availability == Availability.AVAILABLE.value
                )
                .values(
                    availability=Availability.BUSY.value,
                    current_request_id=request_id,
                    updated_at=now
                )
            )
            if responder_result.rowcount != 1:
                await session.rollback()
                logger.info("assignment_precondition_failed", request_id=str(request_id), responder_id=str(responder_id))
                return None

            await session.commit()
            request = await self._fetch_request(session, request_id)
            responder = await self._fetch_responder(session, responder_id)
            return request, responder

    async def transition(
        self,
        request_id: UUID,
        expected_status: RequestStatus,
        new_status: RequestStatus,
        stamps: Optional[Dict[str, datetime]] = None,
        release_responder: bool = False
    ) -> Optional[EmergencyRequest]:
        now = utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                update(EmergencyRequestRecord)
                .where(
                    EmergencyRequestRecord.id == request_id,
                    EmergencyRequestRecord.status == expected_status.value
                )
                .values(status=new_status.value, updated_at=now, **(stamps or {}))
                .returning(EmergencyRequestRecord.assigned_responder_id)
            )
            row = result.first()
            if row is None:
                await session.rollback()
                return None

            assigned_responder_id = row[0]
            if release_responder and assigned_responder_id is not None:
                await self._release(session, assigned_responder_id, request_id, now)

            await session.commit()
            return await self._fetch_request(session, request_id)

    async def release_assignment(self, request_id: UUID, responder_id: UUID) -> Optional[EmergencyRequest]:
        now = utcnow()
        async with self.session_factory() as session:
            result = await session.execute(
                update(EmergencyRequestRecord)
                .where(
                    EmergencyRequestRecord.id == request_id,
                    EmergencyRequestRecord.status == RequestStatus.ACCEPTED.value,
                    EmergencyRequestRecord.assigned_responder_id == responder_id
                )
                .values(
                    status=RequestStatus.PENDING.value,
                    assigned_responder_id=None,
                    accepted_at=None,
                    estimated_arrival_at=None,
                    declined_responder_ids=func.array_append(
                        EmergencyRequestRecord.declined_responder_ids,
                        cast(responder_id, EmergencyRequestRecord.declined_responder_ids.type.item_type)
                    ),
                    updated_at=now
                )
            )
            if result.rowcount != 1:
                await session.rollback()
                return None

            await self._release(session, responder_id, request_id, now)
            await session.commit()
            return await self._fetch_request(session, request_id)

    async def _release(self, session: AsyncSession, responder_id: UUID, request_id: UUID, now: datetime) -> None:
        await session.execute(
            update(ResponderRecord)
            .where(
                ResponderRecord.id == responder_id,
                ResponderRecord.current_request_id == request_id
            )
            .values(
                availability=Availability.AVAILABLE.value,
                current_request_id=None,
                updated_at=now
            )
        )
