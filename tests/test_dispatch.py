"""
Tests for the dispatch engine
"""
import asyncio
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest

from emergency_dispatch.core.exceptions import ConflictError, NotFoundError, ValidationError
from emergency_dispatch.models.dispatch import (
    Availability,
    EmergencyRequest,
    GeoCoordinate,
    RequestStatus,
    RequesterUpdateType,
    ServiceType,
)
from emergency_dispatch.services.directory import ResponderDirectory
from emergency_dispatch.services.dispatch import DispatchEngine, DispatchReason
from emergency_dispatch.services.status import StatusPropagator

from tests.conftest import FAR_RESPONDER, KARACHI_CENTER, NEAR_RESPONDER, available_responder


def pending_request(location=KARACHI_CENTER, service_type=ServiceType.AMBULANCE, requester_id=None):
    return EmergencyRequest(
        requester_id=requester_id or uuid4(),
        service_type=service_type,
        location=GeoCoordinate.model_construct(longitude=location[0], latitude=location[1]),
        description="Person unconscious",
    )


class TestDispatchEngine:
    """Matching, assignment and notification"""

    @pytest.fixture
    def engine(self, repository, queue, update_feed):
        return DispatchEngine(ResponderDirectory(repository), repository, queue, update_feed)

    @pytest.mark.asyncio
    async def test_closer_responder_wins(self, engine, repository, queue):
        near = await repository.add_responder(available_responder(NEAR_RESPONDER))
        far = await repository.add_responder(available_responder(FAR_RESPONDER))
        request = await repository.add_request(pending_request())

        outcome = await engine.dispatch(request.id)

        assert outcome.reason == DispatchReason.ASSIGNED
        assert outcome.assigned_responder_id == near.id
        assert outcome.distance_km < 1.0
        assert outcome.eta == "1 minute"

        stored = await repository.get_request(request.id)
        assert stored.status == RequestStatus.ACCEPTED
        assert stored.assigned_responder_id == near.id
        assert stored.accepted_at is not None
        assert stored.estimated_arrival_at is not None
        assert stored.dispatch_attempts == 1

        assert (await repository.get_responder(near.id)).availability == Availability.BUSY
        assert (await repository.get_responder(near.id)).current_request_id == request.id
        assert (await repository.get_responder(far.id)).availability == Availability.AVAILABLE

        entries = await queue.peek(near.id)
        assert len(entries) == 1
        assert entries[0].request_id == request.id
        assert entries[0].eta == "1 minute"
        assert entries[0].timeout_seconds == 15
        assert await queue.peek(far.id) == []

    @pytest.mark.asyncio
    async def test_no_candidate_stays_pending(self, engine, repository, update_feed):
        request = await repository.add_request(pending_request())

        outcome = await engine.dispatch(request.id)

        assert outcome.reason == DispatchReason.NO_CANDIDATE
        assert outcome.assigned_responder_id is None
        stored = await repository.get_request(request.id)
        assert stored.status == RequestStatus.PENDING
        assert stored.assigned_responder_id is None

        updates = await update_feed.drain(request.requester_id)
        assert [update.type for update in updates] == [RequesterUpdateType.NO_DRIVERS]

    @pytest.mark.asyncio
    async def test_wrong_service_type_not_matched(self, engine, repository):
        await repository.add_responder(available_responder(NEAR_RESPONDER, service_type=ServiceType.POLICE))
        request = await repository.add_request(pending_request(service_type=ServiceType.FIRE))

        outcome = await engine.dispatch(request.id)

        assert outcome.reason == DispatchReason.NO_CANDIDATE

    @pytest.mark.asyncio
    async def test_repairs_and_persists_request_location(self, engine, repository):
        await repository.add_responder(available_responder(NEAR_RESPONDER))
        request = await repository.add_request(pending_request(location=[24.8607, 67.0011]))

        outcome = await engine.dispatch(request.id)

        assert outcome.reason == DispatchReason.ASSIGNED
        stored = await repository.get_request(request.id)
        assert stored.location.as_list() == [67.0011, 24.8607]

    @pytest.mark.asyncio
    async def test_not_pending(self, engine, repository):
        request = pending_request()
        request.status = RequestStatus.CANCELLED
        await repository.add_request(request)

        outcome = await engine.dispatch(request.id)

        assert outcome.reason == DispatchReason.NOT_PENDING

    @pytest.mark.asyncio
    async def test_missing_location(self, engine, repository):
        request = pending_request()
        request.location = None
        await repository.add_request(request)

        with pytest.raises(ValidationError):
            await engine.dispatch(request.id)

    @pytest.mark.asyncio
    async def test_unknown_request(self, engine):
        with pytest.raises(NotFoundError):
            await engine.dispatch(uuid4())

    @pytest.mark.asyncio
    async def test_assignment_race_is_conflict(self, engine, repository):
        await repository.add_responder(available_responder(NEAR_RESPONDER))
        request = await repository.add_request(pending_request())
        repository.assign = AsyncMock(return_value=None)

        outcome = await engine.dispatch(request.id)

        assert outcome.reason == DispatchReason.CONFLICT
        assert (await repository.get_request(request.id)).status == RequestStatus.PENDING

        with pytest.raises(ConflictError):
            await engine.dispatch_or_raise(request.id)

    @pytest.mark.asyncio
    async def test_concurrent_requests_single_responder(self, engine, repository):
        responder = await repository.add_responder(available_responder(NEAR_RESPONDER))
        first = await repository.add_request(pending_request())
        second = await repository.add_request(pending_request())

        outcomes = await asyncio.gather(engine.dispatch(first.id), engine.dispatch(second.id))

        reasons = sorted(outcome.reason.value for outcome in outcomes)
        assigned = [outcome for outcome in outcomes if outcome.reason == DispatchReason.ASSIGNED]
        assert len(assigned) == 1
        assert reasons[0] == "assigned"
        assert reasons[1] in ("conflict", "no_candidate")

        loser_id = second.id if assigned[0].request_id == first.id else first.id
        assert (await repository.get_request(loser_id)).status == RequestStatus.PENDING
        stored_responder = await repository.get_responder(responder.id)
        assert stored_responder.availability == Availability.BUSY
        assert stored_responder.current_request_id == assigned[0].request_id

    @pytest.mark.asyncio
    async def test_concurrent_dispatch_same_request(self, engine, repository, queue):
        first = await repository.add_responder(available_responder(NEAR_RESPONDER))
        second = await repository.add_responder(available_responder(FAR_RESPONDER))
        request = await repository.add_request(pending_request())

        await asyncio.gather(*(engine.dispatch(request.id) for _ in range(5)))

        stored = await repository.get_request(request.id)
        assert stored.status == RequestStatus.ACCEPTED
        busy = [
            responder for responder in (await repository.get_responder(first.id), await repository.get_responder(second.id))
            if responder.availability == Availability.BUSY
        ]
        assert len(busy) == 1
        assert busy[0].id == stored.assigned_responder_id
        assert len(await queue.peek(stored.assigned_responder_id)) == 1

    @pytest.mark.asyncio
    async def test_cancel_racing_dispatch(self, engine, repository, update_feed):
        responder = await repository.add_responder(available_responder(NEAR_RESPONDER))
        request = await repository.add_request(pending_request())
        status = StatusPropagator(repository, update_feed)

        await asyncio.gather(
            status.apply_status(request.id, RequestStatus.CANCELLED),
            engine.dispatch(request.id),
            return_exceptions=True
        )

        stored = await repository.get_request(request.id)
        stored_responder = await repository.get_responder(responder.id)
        if stored.status == RequestStatus.CANCELLED:
            # Either dispatch never assigned, or cancellation released the responder
            assert stored_responder.availability == Availability.AVAILABLE
            assert stored_responder.current_request_id is None
        else:
            assert stored.status == RequestStatus.ACCEPTED
            assert stored_responder.current_request_id == request.id

    @pytest.mark.asyncio
    async def test_retry_skips_declined_responder(self, engine, repository, update_feed):
        responder = await repository.add_responder(available_responder(NEAR_RESPONDER))
        request = await repository.add_request(pending_request())
        status = StatusPropagator(repository, update_feed)

        await engine.dispatch(request.id)
        await status.release_assignment(request.id, responder.id)
        outcome = await engine.dispatch(request.id)

        assert outcome.reason == DispatchReason.NO_CANDIDATE
        stored = await repository.get_request(request.id)
        assert stored.dispatch_attempts == 2

    @pytest.mark.asyncio
    async def test_explicit_exclusion(self, engine, repository):
        near = await repository.add_responder(available_responder(NEAR_RESPONDER))
        other = await repository.add_responder(available_responder([67.006, 24.863]))
        request = await repository.add_request(pending_request())

        outcome = await engine.dispatch(request.id, exclude=[near.id])

        assert outcome.assigned_responder_id == other.id
