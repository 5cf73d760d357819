import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from botflow.core.exceptions import CRMError
from botflow.services.action_service import ActionService, action_data_of, describe_action
from botflow.services.crm_client import GHLClient, SimulatedCRMClient
from tests.conftest import FakeSessionService


CONTEXT = {"session_id": "s-1", "contact_id": "c-1", "session_data": {"name": "Sam"}}


class TestDescriptions:
    def test_add_tag_defaults(self):
        assert describe_action({"type": "add_tag"}) == 'Tag "workflow-processed" has been added to the contact.'

    def test_flat_and_nested_data(self):
        assert action_data_of({"action_type": "add_tag", "tag": "vip"}) == {"tag": "vip"}
        assert action_data_of({"type": "add_tag", "data": {"tags": ["a"]}}) == {"tags": ["a"]}

    def test_unknown_type(self):
        assert describe_action({"type": "fax"}) == 'Action "fax" has been completed.'


class TestActionService:
    @pytest.mark.asyncio
    async def test_simulated_actions_touch_nothing(self):
        crm = MagicMock()
        crm.add_tags = AsyncMock()
        log = FakeSessionService()
        service = ActionService(crm, action_log=log, simulate=True)

        ok, message = await service.execute({"type": "add_tag", "data": {"tags": ["lead"]}}, CONTEXT)

        assert ok
        assert message == 'Tag "lead" has been added to the contact.'
        crm.add_tags.assert_not_awaited()
        assert [a["status"] for a in log.actions.values()] == ["simulated"]

    @pytest.mark.asyncio
    async def test_live_tag_and_log(self):
        crm = MagicMock()
        crm.add_tags = AsyncMock(return_value={})
        log = FakeSessionService()
        service = ActionService(crm, action_log=log)

        ok, _ = await service.execute({"action_type": "add_tag", "tag": "vip"}, CONTEXT)

        assert ok
        crm.add_tags.assert_awaited_once_with("c-1", ["vip"])
        assert [a["status"] for a in log.actions.values()] == ["completed"]

    @pytest.mark.asyncio
    async def test_failure_is_reported_not_raised(self):
        crm = MagicMock()
        crm.update_contact = AsyncMock(side_effect=CRMError("401"))
        log = FakeSessionService()
        service = ActionService(crm, action_log=log)

        ok, message = await service.execute({"type": "update_contact", "data": {"fields": {"city": "Oslo"}}}, CONTEXT)

        assert not ok
        assert message == 'Action "update_contact" could not be completed.'
        entry = list(log.actions.values())[0]
        assert entry["status"] == "failed"
        assert entry["error"] == "401"

    @pytest.mark.asyncio
    async def test_missing_crm_fails(self):
        ok, _ = await ActionService(None).execute({"type": "add_tag"}, CONTEXT)
        assert not ok

    @pytest.mark.asyncio
    async def test_webhook_posts_session_data(self):
        received = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(json.loads(request.content))
            return httpx.Response(200)

        service = ActionService(transport=httpx.MockTransport(handler))

        ok, _ = await service.execute(
            {"type": "send_webhook", "data": {"url": "https://hooks.example.com/x", "payload": {"event": "lead"}}},
            CONTEXT,
        )

        assert ok
        assert received == [{"event": "lead", "sessionId": "s-1", "contactId": "c-1", "sessionData": {"name": "Sam"}}]

    @pytest.mark.asyncio
    async def test_webhook_error_status(self):
        service = ActionService(transport=httpx.MockTransport(lambda request: httpx.Response(500)))

        ok, _ = await service.execute({"type": "send_webhook", "data": {"url": "https://hooks.example.com/x"}}, CONTEXT)

        assert not ok


class TestGHLClient:
    @pytest.mark.asyncio
    async def test_create_appointment(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "apt-1"})

        client = GHLClient("key-1", location_id="loc-1", base_url="https://crm.test", transport=httpx.MockTransport(handler))

        appointment = await client.create_appointment("cal-1", "c-1", "2025-03-04T09:00:00", title="Consult")

        assert appointment == {"id": "apt-1"}
        assert seen["path"] == "/calendars/events/appointments"
        assert seen["auth"] == "Bearer key-1"
        assert seen["body"] == {
            "calendarId": "cal-1",
            "contactId": "c-1",
            "startTime": "2025-03-04T09:00:00",
            "locationId": "loc-1",
            "title": "Consult",
        }

    @pytest.mark.asyncio
    async def test_missing_id_is_an_error(self):
        client = GHLClient("k", base_url="https://crm.test", transport=httpx.MockTransport(lambda r: httpx.Response(200, json={})))
        with pytest.raises(CRMError):
            await client.create_appointment("cal-1", "c-1", "2025-03-04T09:00:00")

    @pytest.mark.asyncio
    async def test_http_error_becomes_crm_error(self):
        client = GHLClient("k", base_url="https://crm.test", transport=httpx.MockTransport(lambda r: httpx.Response(403, text="nope")))
        with pytest.raises(CRMError):
            await client.add_tags("c-1", ["x"])

    @pytest.mark.asyncio
    async def test_list_calendars(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["locationId"] == "loc-1"
            return httpx.Response(200, json={"calendars": [{"id": "cal-1", "name": "Main"}]})

        client = GHLClient("k", location_id="loc-1", base_url="https://crm.test", transport=httpx.MockTransport(handler))

        assert await client.list_calendars() == [{"id": "cal-1", "name": "Main"}]


class TestSimulatedCRMClient:
    @pytest.mark.asyncio
    async def test_offers_one_calendar_and_fake_ids(self):
        crm = SimulatedCRMClient()

        calendars = await crm.list_calendars()
        first = await crm.create_appointment("cal-1", "contact-1", "2030-01-02T10:00:00")
        second = await crm.create_appointment("cal-1", "contact-1", "2030-01-02T14:00:00")

        assert [c["id"] for c in calendars] == ["test-calendar"]
        assert first["id"].startswith("sim-")
        assert first["id"] != second["id"]
        assert first["calendarId"] == "cal-1"
