"""
Tests for the dispatch service operations
"""
from datetime import timedelta
from uuid import uuid4

import pytest

from emergency_dispatch.core.auth import ROLE_ADMIN, ROLE_RESPONDER, ROLE_USER, UserContext
from emergency_dispatch.core.config import Settings
from emergency_dispatch.core.exceptions import PermissionDeniedError, ValidationError
from emergency_dispatch.models.dispatch import Availability, RequestStatus, RequesterUpdateType, ServiceType, utcnow
from emergency_dispatch.services.classifier import suggest_service_types
from emergency_dispatch.services.dispatch import DispatchReason
from emergency_dispatch.services.dispatch_service import build_dispatch_service

from tests.conftest import FAR_RESPONDER, KARACHI_CENTER, NEAR_RESPONDER


async def online_responder(service, location, service_type="ambulance"):
    responder = await service.register_responder(service_type, name="Captain", location=location)
    return await service.set_responder_availability(responder.id, "available")


class TestCreateRequest:

    @pytest.mark.asyncio
    async def test_assigns_nearest(self, dispatch_service, requester_id):
        near = await online_responder(dispatch_service, NEAR_RESPONDER)
        await online_responder(dispatch_service, FAR_RESPONDER)

        request, outcome = await dispatch_service.create_request(
            requester_id, "ambulance", KARACHI_CENTER, description="Man bleeding", address="Saddar"
        )

        assert outcome.reason == DispatchReason.ASSIGNED
        assert request.status == RequestStatus.ACCEPTED
        assert request.assigned_responder_id == near.id
        assert request.address == "Saddar"

        offers = await dispatch_service.poll_notifications(near.id)
        assert [offer.request_id for offer in offers] == [request.id]
        assert await dispatch_service.poll_notifications(near.id) == []

        updates = await dispatch_service.poll_request_updates(requester_id)
        assert [update.type for update in updates] == [RequesterUpdateType.REQUEST_ACCEPTED]
        assert updates[0].eta == "1 minute"

    @pytest.mark.asyncio
    async def test_swapped_location_repaired(self, dispatch_service, requester_id):
        request, _ = await dispatch_service.create_request(requester_id, "police", [24.86, 67.00])
        assert request.location.as_list() == [67.00, 24.86]

    @pytest.mark.asyncio
    async def test_missing_location(self, dispatch_service, requester_id):
        with pytest.raises(ValidationError) as exc_info:
            await dispatch_service.create_request(requester_id, "ambulance", None)
        assert exc_info.value.details["field"] == "location"

    @pytest.mark.asyncio
    async def test_missing_service_type(self, dispatch_service, requester_id):
        with pytest.raises(ValidationError) as exc_info:
            await dispatch_service.create_request(requester_id, None, KARACHI_CENTER)
        assert exc_info.value.details["field"] == "service_type"

    @pytest.mark.asyncio
    async def test_retry_dispatch_after_responder_comes_online(self, dispatch_service, requester_id):
        request, outcome = await dispatch_service.create_request(requester_id, "fire", KARACHI_CENTER)
        assert outcome.reason == DispatchReason.NO_CANDIDATE

        responder = await online_responder(dispatch_service, NEAR_RESPONDER, service_type="fire")
        retry = await dispatch_service.dispatch(request.id)

        assert retry.reason == DispatchReason.ASSIGNED
        assert retry.assigned_responder_id == responder.id

    @pytest.mark.asyncio
    async def test_list_requests_newest_first(self, dispatch_service, requester_id):
        first, _ = await dispatch_service.create_request(requester_id, "fire", KARACHI_CENTER)
        second, _ = await dispatch_service.create_request(requester_id, "police", KARACHI_CENTER)
        await dispatch_service.create_request(uuid4(), "police", KARACHI_CENTER)

        requests = await dispatch_service.list_requests_for_requester(requester_id)

        assert {request.id for request in requests} == {first.id, second.id}
        assert requests[0].created_at >= requests[1].created_at


class TestAccessControl:

    @pytest.mark.asyncio
    async def test_requester_can_only_cancel(self, dispatch_service, requester_id):
        await online_responder(dispatch_service, NEAR_RESPONDER)
        request, _ = await dispatch_service.create_request(requester_id, "ambulance", KARACHI_CENTER)
        actor = UserContext(requester_id, ROLE_USER)

        with pytest.raises(PermissionDeniedError):
            await dispatch_service.update_request_status(request.id, "completed", actor=actor)

        cancelled = await dispatch_service.update_request_status(request.id, "cancelled", actor=actor)
        assert cancelled.status == RequestStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancelled_request_not_delivered(self, dispatch_service, requester_id):
        responder = await online_responder(dispatch_service, NEAR_RESPONDER)
        request, _ = await dispatch_service.create_request(requester_id, "ambulance", KARACHI_CENTER)

        await dispatch_service.update_request_status(request.id, "cancelled", actor=UserContext(requester_id, ROLE_USER))

        assert await dispatch_service.poll_notifications(responder.id) == []
        assert (await dispatch_service.get_responder(responder.id)).availability == Availability.AVAILABLE

    @pytest.mark.asyncio
    async def test_other_requester_denied(self, dispatch_service, requester_id):
        request, _ = await dispatch_service.create_request(requester_id, "ambulance", KARACHI_CENTER)

        with pytest.raises(PermissionDeniedError):
            await dispatch_service.get_request(request.id, actor=UserContext(uuid4(), ROLE_USER))

    @pytest.mark.asyncio
    async def test_only_assigned_responder_updates(self, dispatch_service, requester_id):
        responder = await online_responder(dispatch_service, NEAR_RESPONDER)
        request, _ = await dispatch_service.create_request(requester_id, "ambulance", KARACHI_CENTER)

        with pytest.raises(PermissionDeniedError):
            await dispatch_service.update_request_status(
                request.id, "in-progress", actor=UserContext(uuid4(), ROLE_RESPONDER)
            )

        started = await dispatch_service.update_request_status(
            request.id, "in-progress", actor=UserContext(responder.id, ROLE_RESPONDER)
        )
        assert started.status == RequestStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_admin_sees_everything(self, dispatch_service, requester_id):
        request, _ = await dispatch_service.create_request(requester_id, "ambulance", KARACHI_CENTER)
        fetched = await dispatch_service.get_request(request.id, actor=UserContext(uuid4(), ROLE_ADMIN))
        assert fetched.id == request.id


class TestExpireStaleOffers:

    @pytest.mark.asyncio
    async def test_undelivered_offer_released(self, dispatch_service, requester_id):
        responder = await online_responder(dispatch_service, NEAR_RESPONDER)
        request, _ = await dispatch_service.create_request(requester_id, "ambulance", KARACHI_CENTER)
        await dispatch_service.poll_request_updates(requester_id)

        offers = await dispatch_service.queue.peek(responder.id)
        later = offers[0].created_at + timedelta(seconds=offers[0].timeout_seconds + 1)
        expired = await dispatch_service.queue.expire(later)
        assert [entry.request_id for entry in expired] == [request.id]

        # Put the offer back and let the service sweep it
        await dispatch_service.queue.push(responder.id, expired[0].model_copy(
            update={"created_at": utcnow() - timedelta(minutes=5)}
        ))
        released = await dispatch_service.expire_stale_offers()

        assert released == [request.id]
        stored = await dispatch_service.get_request(request.id)
        assert stored.status == RequestStatus.PENDING
        assert stored.assigned_responder_id is None
        assert (await dispatch_service.get_responder(responder.id)).availability == Availability.AVAILABLE

        updates = await dispatch_service.poll_request_updates(requester_id)
        assert [update.type for update in updates] == [RequesterUpdateType.RESPONDER_DECLINED]

        # The unresponsive responder is skipped on retry
        retry = await dispatch_service.dispatch(request.id)
        assert retry.reason == DispatchReason.NO_CANDIDATE

    @pytest.mark.asyncio
    async def test_delivered_offer_not_released(self, dispatch_service, requester_id):
        responder = await online_responder(dispatch_service, NEAR_RESPONDER)
        request, _ = await dispatch_service.create_request(requester_id, "ambulance", KARACHI_CENTER)
        await dispatch_service.poll_notifications(responder.id)

        assert await dispatch_service.expire_stale_offers() == []
        assert (await dispatch_service.get_request(request.id)).status == RequestStatus.ACCEPTED

    @pytest.mark.asyncio
    async def test_expired_offer_for_started_request_ignored(self, dispatch_service, requester_id):
        responder = await online_responder(dispatch_service, NEAR_RESPONDER)
        request, _ = await dispatch_service.create_request(requester_id, "ambulance", KARACHI_CENTER)
        await dispatch_service.update_request_status(request.id, "in-progress")

        offer = (await dispatch_service.queue.drain(responder.id))[0]
        await dispatch_service.queue.push(responder.id, offer.model_copy(
            update={"created_at": utcnow() - timedelta(minutes=5)}
        ))

        assert await dispatch_service.expire_stale_offers() == []
        assert (await dispatch_service.get_request(request.id)).status == RequestStatus.IN_PROGRESS


class TestNearbyAndMaintenance:

    @pytest.mark.asyncio
    async def test_nearby_uses_broadcast_radius(self, dispatch_service):
        near = await online_responder(dispatch_service, NEAR_RESPONDER)
        far = await online_responder(dispatch_service, FAR_RESPONDER)

        matches = await dispatch_service.find_nearby_responders(KARACHI_CENTER, "ambulance")

        assert [match.responder.id for match in matches] == [near.id, far.id]

    @pytest.mark.asyncio
    async def test_nearby_custom_radius(self, dispatch_service):
        await online_responder(dispatch_service, NEAR_RESPONDER)
        await online_responder(dispatch_service, FAR_RESPONDER)

        matches = await dispatch_service.find_nearby_responders(KARACHI_CENTER, "ambulance", radius_meters=1000)

        assert len(matches) == 1

    @pytest.mark.asyncio
    async def test_decline_then_redispatch_to_other(self, dispatch_service, requester_id):
        first = await online_responder(dispatch_service, NEAR_RESPONDER)
        second = await online_responder(dispatch_service, [67.006, 24.863])
        request, outcome = await dispatch_service.create_request(requester_id, "ambulance", KARACHI_CENTER)
        assert outcome.assigned_responder_id == first.id

        await dispatch_service.decline_request(request.id, first.id)
        retry = await dispatch_service.dispatch(request.id)

        assert retry.assigned_responder_id == second.id
        assert (await dispatch_service.get_request(request.id)).declined_responder_ids == [first.id]

    @pytest.mark.asyncio
    async def test_decliner_not_offered_again(self, dispatch_service, requester_id):
        only = await online_responder(dispatch_service, NEAR_RESPONDER)
        request, _ = await dispatch_service.create_request(requester_id, "ambulance", KARACHI_CENTER)
        await dispatch_service.decline_request(request.id, only.id)

        retry = await dispatch_service.dispatch(request.id)

        assert retry.reason == DispatchReason.NO_CANDIDATE
        assert (await dispatch_service.get_responder(only.id)).availability == Availability.AVAILABLE

    @pytest.mark.asyncio
    async def test_decline_before_polling_leaves_no_stale_offer(self, dispatch_service, requester_id):
        first = await online_responder(dispatch_service, NEAR_RESPONDER)
        second = await online_responder(dispatch_service, [67.006, 24.863])
        request, _ = await dispatch_service.create_request(requester_id, "ambulance", KARACHI_CENTER)
        first_offer = (await dispatch_service.queue.peek(first.id))[0]

        await dispatch_service.decline_request(request.id, first.id)
        await dispatch_service.dispatch(request.id)

        assert await dispatch_service.poll_notifications(first.id) == []
        offers = await dispatch_service.poll_notifications(second.id)
        assert [offer.request_id for offer in offers] == [request.id]
        assert offers[0].id != first_offer.id
        assert offers[0].created_at >= first_offer.created_at


class TestClassifier:

    @pytest.mark.parametrize("description,expected", [
        ("House on FIRE, heavy smoke", [ServiceType.FIRE]),
        ("Robbery with a gun, one man bleeding", [ServiceType.AMBULANCE, ServiceType.POLICE]),
        ("Car crash, driver unconscious and the engine is burning",
         [ServiceType.FIRE, ServiceType.AMBULANCE]),
        ("Lost my keys", []),
        ("", []),
    ])
    def test_suggest_service_types(self, description, expected):
        assert suggest_service_types(description) == expected


class TestBuilder:

    def test_memory_backends(self):
        service = build_dispatch_service("memory", "memory")
        assert service.repository.__class__.__name__ == "InMemoryDispatchRepository"

    def test_unknown_storage_backend(self):
        with pytest.raises(ValueError):
            build_dispatch_service("filesystem", "memory")

    def test_backend_names_normalized(self):
        configured = Settings(STORAGE_BACKEND=" Memory ", NOTIFICATION_BACKEND="REDIS")
        assert configured.STORAGE_BACKEND == "memory"
        assert configured.NOTIFICATION_BACKEND == "redis"
