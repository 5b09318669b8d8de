"""
Tests for the PostGIS repository with a mocked async session
"""
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from geoalchemy2.shape import from_shape
from shapely.geometry import Point

from emergency_dispatch.models.dispatch import Availability, GeoCoordinate, RequestStatus, ServiceType, utcnow
from emergency_dispatch.models.tables import EmergencyRequestRecord, ResponderRecord
from emergency_dispatch.services import geo
from emergency_dispatch.services.sql_repository import (
    SqlDispatchRepository,
    request_from_record,
    responder_from_record,
)


def make_responder_record(responder_id=None, availability="available", location=(67.005, 24.862), **kwargs):
    now = utcnow()
    return ResponderRecord(
        id=responder_id or uuid4(),
        name="Unit 1",
        service_type="ambulance",
        availability=availability,
        location=from_shape(Point(*location), srid=4326) if location else None,
        created_at=now,
        updated_at=now,
        **kwargs
    )


def make_request_record(request_id=None, status="pending", **kwargs):
    now = utcnow()
    return EmergencyRequestRecord(
        id=request_id or uuid4(),
        requester_id=uuid4(),
        service_type="ambulance",
        location=from_shape(Point(67.0011, 24.8607), srid=4326),
        description="",
        status=status,
        dispatch_attempts=0,
        created_at=now,
        updated_at=now,
        **kwargs
    )


def scalar_result(record):
    result = MagicMock()
    result.scalar_one_or_none.return_value = record
    return result


def rowcount_result(count):
    result = MagicMock()
    result.rowcount = count
    return result


def returning_result(row):
    result = MagicMock()
    result.first.return_value = row
    return result


class TestRecordConversion:

    def test_responder_from_record(self):
        record = make_responder_record(availability="online")
        responder = responder_from_record(record)

        assert responder.service_type == ServiceType.AMBULANCE
        assert responder.availability == Availability.AVAILABLE
        assert responder.location.as_list() == [67.005, 24.862]

    def test_out_of_range_location_kept_for_repair(self):
        record = make_responder_record(location=(200.0, 10.0))
        responder = responder_from_record(record)

        assert responder.location.longitude == 200.0
        assert not geo.validate(responder.location)
        assert geo.repair(responder.location).as_list() == [180.0, 10.0]

    def test_request_from_record(self):
        record = make_request_record(status="in-progress")
        request = request_from_record(record)

        assert request.status == RequestStatus.IN_PROGRESS
        assert request.location == GeoCoordinate(longitude=67.0011, latitude=24.8607)
        assert request.declined_responder_ids == []

    def test_declined_responders_from_record(self):
        declined = [uuid4(), uuid4()]
        record = make_request_record(declined_responder_ids=declined)

        assert request_from_record(record).declined_responder_ids == declined


class TestSqlDispatchRepository:
    """Conditional updates and transaction handling"""

    @pytest.fixture
    def session(self):
        session = AsyncMock()
        session.add = MagicMock()
        return session

    @pytest.fixture
    def repository(self, session):
        factory = MagicMock()
        factory.return_value.__aenter__.return_value = session
        factory.return_value.__aexit__.return_value = False
        return SqlDispatchRepository(factory)

    @pytest.mark.asyncio
    async def test_assign_success(self, repository, session):
        request_id, responder_id = uuid4(), uuid4()
        session.execute.side_effect = [
            rowcount_result(1),
            rowcount_result(1),
            scalar_result(make_request_record(
                request_id, status="accepted", assigned_responder_id=responder_id
            )),
            scalar_result(make_responder_record(
                responder_id, availability="busy", current_request_id=request_id
            )),
        ]

        request, responder = await repository.assign(request_id, responder_id)

        assert request.status == RequestStatus.ACCEPTED
        assert request.assigned_responder_id == responder_id
        assert responder.availability == Availability.BUSY
        session.commit.assert_awaited_once()
        session.rollback.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_assign_request_no_longer_pending(self, repository, session):
        session.execute.return_value = rowcount_result(0)

        assert await repository.assign(uuid4(), uuid4()) is None
        assert session.execute.await_count == 1
        session.rollback.assert_awaited_once()
        session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_assign_responder_no_longer_available(self, repository, session):
        session.execute.side_effect = [rowcount_result(1), rowcount_result(0)]

        assert await repository.assign(uuid4(), uuid4()) is None
        session.rollback.assert_awaited_once()
        session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_transition_status_mismatch(self, repository, session):
        session.execute.return_value = returning_result(None)

        result = await repository.transition(uuid4(), RequestStatus.ACCEPTED, RequestStatus.IN_PROGRESS)

        assert result is None
        session.rollback.assert_awaited_once()
        session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_transition_releases_responder(self, repository, session):
        request_id, responder_id = uuid4(), uuid4()
        session.execute.side_effect = [
            returning_result((responder_id,)),
            rowcount_result(1),
            scalar_result(make_request_record(
                request_id, status="completed", assigned_responder_id=responder_id, completed_at=utcnow()
            )),
        ]

        result = await repository.transition(
            request_id,
            RequestStatus.IN_PROGRESS,
            RequestStatus.COMPLETED,
            stamps={"completed_at": utcnow()},
            release_responder=True
        )

        assert result.status == RequestStatus.COMPLETED
        assert session.execute.await_count == 3
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_transition_without_release(self, repository, session):
        request_id = uuid4()
        session.execute.side_effect = [
            returning_result((uuid4(),)),
            scalar_result(make_request_record(request_id, status="in-progress")),
        ]

        result = await repository.transition(request_id, RequestStatus.ACCEPTED, RequestStatus.IN_PROGRESS)

        assert result.status == RequestStatus.IN_PROGRESS
        assert session.execute.await_count == 2

    @pytest.mark.asyncio
    async def test_set_availability_precondition_failed(self, repository, session):
        session.execute.return_value = rowcount_result(0)

        result = await repository.set_availability(uuid4(), [Availability.OFFLINE], Availability.AVAILABLE)

        assert result is None
        session.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_release_assignment_records_decliner(self, repository, session):
        request_id, responder_id = uuid4(), uuid4()
        session.execute.side_effect = [
            rowcount_result(1),
            rowcount_result(1),
            scalar_result(make_request_record(request_id, declined_responder_ids=[responder_id])),
        ]

        released = await repository.release_assignment(request_id, responder_id)

        assert released.status == RequestStatus.PENDING
        assert released.declined_responder_ids == [responder_id]
        statement = session.execute.await_args_list[0].args[0]
        assert "array_append" in str(statement)
        session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_release_assignment_not_assigned(self, repository, session):
        session.execute.return_value = rowcount_result(0)

        assert await repository.release_assignment(uuid4(), uuid4()) is None
        assert session.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_get_missing_request(self, repository, session):
        session.execute.return_value = scalar_result(None)
        assert await repository.get_request(uuid4()) is None
