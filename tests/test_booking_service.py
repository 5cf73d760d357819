from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from botflow.core.exceptions import CRMError, ReasoningError
from botflow.schemas.booking import BookingPreferences, BookingRequest, CalendarInfo
from botflow.services.booking_service import (
    BOOKING_FAILED_MESSAGE,
    UNCLEAR_SELECTION_MESSAGE,
    AppointmentBookingService,
)
from botflow.services.booking_store import InMemoryBookingStore
from botflow.services.slot_service import SlotService, format_slot, parse_datetime
from tests.conftest import make_reasoning


NOW = datetime(2025, 3, 3, 10, 0)  # a Monday


def booking_request(message: str, calendar_ids=("cal-1",)) -> BookingRequest:
    return BookingRequest(
        session_id="session-1",
        node_id="book",
        contact_id="contact-1",
        user_message=message,
        calendar_ids=list(calendar_ids),
    )


@pytest.fixture
def crm():
    client = MagicMock()
    client.list_calendars = AsyncMock(return_value=[{"id": "cal-1", "name": "Consultations"}])
    client.create_appointment = AsyncMock(return_value={"id": "apt-123"})
    return client


@pytest.fixture
def store():
    return InMemoryBookingStore()


async def propose(service, store, times):
    """Seed an open proposal directly in the store."""
    return await store.save_proposal(
        session_id="session-1",
        node_id="book",
        contact_id="contact-1",
        calendar_id="cal-1",
        proposed_times=[t.isoformat() for t in times],
        booking_data={"duration": 45},
    )


PROPOSED = [datetime(2025, 3, 4, 9, 0), datetime(2025, 3, 4, 14, 0), datetime(2025, 3, 5, 9, 0)]


class TestProposal:
    @pytest.mark.asyncio
    async def test_first_message_proposes_three_times(self, crm, store):
        reasoning = make_reasoning()
        reasoning.extract_data = AsyncMock(return_value={"timePreferences": {"afternoon": True}})
        service = AppointmentBookingService(reasoning, crm, store)

        result = await service.process_booking_request(booking_request("afternoon please"))

        assert result.status == "proposed"
        assert len(result.suggested_times) == 3
        assert all(t.hour == 14 for t in result.suggested_times)
        assert "1. " in result.message and "3. " in result.message

        booking = await store.get_open_booking("session-1", "book")
        assert booking["calendar_id"] == "cal-1"
        assert len(booking["proposed_times"]) == 3

    @pytest.mark.asyncio
    async def test_no_calendars_fails(self, crm, store):
        crm.list_calendars = AsyncMock(return_value=[])
        service = AppointmentBookingService(make_reasoning(), crm, store)

        result = await service.process_booking_request(booking_request("tomorrow", calendar_ids=()))

        assert result.status == "failed"
        assert not result.success


class TestSelection:
    @pytest.mark.asyncio
    async def test_numeric_reply_books_that_slot(self, crm, store):
        reasoning = make_reasoning()
        service = AppointmentBookingService(reasoning, crm, store)
        booking = await propose(service, store, PROPOSED)

        result = await service.process_booking_request(booking_request("2"))

        assert result.status == "confirmed"
        assert result.appointment_id == "apt-123"
        assert result.confirmed_time == PROPOSED[1]
        assert result.message.startswith("Perfect! I've booked your appointment for Tuesday, March 4 at 2:00 PM.")
        reasoning.choose_option.assert_not_awaited()

        kwargs = crm.create_appointment.await_args.kwargs
        assert kwargs["start_time"] == "2025-03-04T14:00:00"
        assert kwargs["end_time"] == "2025-03-04T14:45:00"
        assert store.bookings[booking["booking_id"]]["status"] == "confirmed"

    @pytest.mark.asyncio
    async def test_free_text_reply_matched_by_model(self, crm, store):
        reasoning = make_reasoning()
        reasoning.choose_option = AsyncMock(return_value=3)
        service = AppointmentBookingService(reasoning, crm, store)
        await propose(service, store, PROPOSED)

        result = await service.process_booking_request(booking_request("the wednesday one"))

        assert result.confirmed_time == PROPOSED[2]

    @pytest.mark.asyncio
    async def test_calendar_failure_marks_booking_failed(self, crm, store):
        crm.create_appointment = AsyncMock(side_effect=CRMError("slot taken"))
        service = AppointmentBookingService(make_reasoning(), crm, store)
        booking = await propose(service, store, PROPOSED)

        result = await service.process_booking_request(booking_request("1"))

        assert result.status == "failed"
        assert result.message == BOOKING_FAILED_MESSAGE
        assert store.bookings[booking["booking_id"]]["status"] == "failed"

    @pytest.mark.asyncio
    async def test_unclear_reply_keeps_proposal_open(self, crm, store):
        service = AppointmentBookingService(make_reasoning(), crm, store)
        await propose(service, store, PROPOSED)

        result = await service.process_booking_request(booking_request("hmm not sure"))

        assert result.status == "proposed"
        assert result.message == UNCLEAR_SELECTION_MESSAGE
        assert await store.get_open_booking("session-1", "book") is not None

    @pytest.mark.asyncio
    async def test_new_time_request_reproposes_on_same_row(self, crm, store):
        reasoning = make_reasoning()
        reasoning.extract_data = AsyncMock(return_value={"dateTime": "2025-03-10T09:00:00"})
        service = AppointmentBookingService(reasoning, crm, store)
        booking = await propose(service, store, PROPOSED)

        result = await service.process_booking_request(booking_request("anything next week instead?"))

        assert result.status == "proposed"
        assert len(store.bookings) == 1
        refreshed = store.bookings[booking["booking_id"]]
        assert refreshed["proposed_times"][0].startswith("2025-03-11")

    @pytest.mark.asyncio
    async def test_out_of_range_digit_asks_model(self, crm, store):
        reasoning = make_reasoning()
        service = AppointmentBookingService(reasoning, crm, store)

        selected = await service.extract_selected_time("option 7", PROPOSED)

        assert selected is None
        reasoning.choose_option.assert_awaited_once()


class TestCalendars:
    @pytest.mark.asyncio
    async def test_listing_failure_uses_placeholder_names(self, crm, store):
        crm.list_calendars = AsyncMock(side_effect=CRMError("down"))
        service = AppointmentBookingService(make_reasoning(), crm, store)

        calendars = await service._get_calendar_info(["cal-9"])

        assert calendars == [CalendarInfo(id="cal-9", name="Calendar cal-9")]

    @pytest.mark.asyncio
    async def test_model_choice_outside_range_uses_first(self, crm, store):
        reasoning = make_reasoning()
        reasoning.choose_option = AsyncMock(return_value=9)
        service = AppointmentBookingService(reasoning, crm, store)
        calendars = [CalendarInfo(id="a", name="A"), CalendarInfo(id="b", name="B")]

        chosen = await service.select_best_calendar(calendars, BookingPreferences(), "haircut")

        assert chosen.id == "a"

    @pytest.mark.asyncio
    async def test_reasoning_error_uses_first(self, crm, store):
        reasoning = make_reasoning()
        reasoning.choose_option = AsyncMock(side_effect=ReasoningError("timeout"))
        service = AppointmentBookingService(reasoning, crm, store)
        calendars = [CalendarInfo(id="a", name="A"), CalendarInfo(id="b", name="B")]

        assert (await service.select_best_calendar(calendars, BookingPreferences(), "x")).id == "a"

    @pytest.mark.asyncio
    async def test_model_picks_second_calendar(self, crm, store):
        reasoning = make_reasoning()
        reasoning.choose_option = AsyncMock(return_value=2)
        service = AppointmentBookingService(reasoning, crm, store)
        calendars = [CalendarInfo(id="a", name="A"), CalendarInfo(id="b", name="B")]

        assert (await service.select_best_calendar(calendars, BookingPreferences(), "x")).id == "b"


class TestPreferences:
    def test_defaults_for_garbage(self):
        prefs = BookingPreferences.model_validate(
            {
                "urgency": "asap",
                "duration": "-5",
                "dateRange": {"start": None, "end": None},
                "timePreferences": "mornings",
                "dayPreferences": {"weekdays": None, "weekends": "yes"},
                "serviceType": "  ",
            }
        )
        assert prefs.urgency == "medium"
        assert prefs.duration is None
        assert prefs.date_range is None
        assert prefs.time_preferences.morning is None
        assert prefs.day_preferences.weekdays is True
        assert prefs.day_preferences.weekends is False
        assert prefs.service_type is None
        assert not prefs.requests_new_time

    def test_time_preferences_are_tri_state(self):
        prefs = BookingPreferences.model_validate({"timePreferences": {"morning": False, "afternoon": "true"}})
        assert prefs.time_preferences.morning is False
        assert prefs.time_preferences.afternoon is None


class TestSlots:
    def test_unspecified_preferences_keep_both_slots(self):
        slots = SlotService(30).generate_candidate_slots(BookingPreferences(), now=NOW)

        assert len(slots) == 14
        assert slots[0].start == datetime(2025, 3, 4, 9, 0)
        assert slots[0].end == datetime(2025, 3, 4, 9, 30)
        assert slots[1].start.hour == 14

    def test_explicit_false_drops_slot(self):
        prefs = BookingPreferences.model_validate({"timePreferences": {"morning": False}})
        slots = SlotService(30).generate_candidate_slots(prefs, now=NOW)

        assert len(slots) == 7
        assert all(s.start.hour == 14 for s in slots)

    def test_requested_date_moves_window(self):
        prefs = BookingPreferences.model_validate({"dateTime": "2025-04-01T15:00:00Z", "duration": 60})
        slots = SlotService(30).generate_candidate_slots(prefs, now=NOW)

        assert slots[0].start == datetime(2025, 4, 2, 9, 0)
        assert slots[0].end == datetime(2025, 4, 2, 10, 0)

    def test_high_urgency_prefers_sooner_slots(self):
        service = SlotService(30)
        prefs = BookingPreferences.model_validate({"urgency": "high"})
        slots = service.generate_candidate_slots(prefs, now=NOW)

        best = service.select_best_slots(slots, prefs, count=3, now=NOW)

        assert [s.start for s in best] == sorted(s.start for s in slots)[:3]

    def test_ties_keep_chronological_order(self):
        service = SlotService(30)
        prefs = BookingPreferences()
        slots = service.generate_candidate_slots(prefs, now=NOW)

        best = service.select_best_slots(slots, prefs, count=3, now=NOW)

        assert [s.start for s in best] == [s.start for s in slots[:3]]


class TestFormatting:
    def test_format_slot(self):
        assert format_slot(datetime(2025, 3, 4, 9, 0)) == "Tuesday, March 4 at 9:00 AM"
        assert format_slot(datetime(2025, 3, 4, 12, 30)) == "Tuesday, March 4 at 12:30 PM"

    def test_parse_datetime(self):
        assert parse_datetime("2025-03-04T09:00:00Z") == datetime(2025, 3, 4, 9, 0)
        assert parse_datetime("next tuesday") is None
        assert parse_datetime(None) is None
