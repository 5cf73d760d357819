"""
Appointment booking module.

Two phases per (session, node): propose times when no booking is open,
then resolve the user's pick against the proposed list and book it with
the calendar provider.
"""
import re
from datetime import datetime, timedelta

from loguru import logger

from botflow.core.exceptions import CRMError, ReasoningError
from botflow.schemas.booking import (
    BookingPreferences,
    BookingRequest,
    BookingResult,
    CalendarInfo,
)
from botflow.services.slot_service import SlotService, format_slot, parse_datetime


PREFERENCE_SCHEMA = {
    "dateTime": "ISO datetime if specific time mentioned",
    "dateRange": {
        "start": "ISO date",
        "end": "ISO date"
    },
    "timePreferences": {
        "morning": "boolean",
        "afternoon": "boolean",
        "evening": "boolean",
        "specificTimes": "array of time strings"
    },
    "dayPreferences": {
        "weekdays": "boolean",
        "weekends": "boolean",
        "specificDays": "array of day names"
    },
    "duration": "number of minutes",
    "urgency": "low | medium | high",
    "serviceType": "string describing what they need",
    "additionalNotes": "string"
}

OPTION_NUMBER = re.compile(r"\b([1-9])\b")

NO_CALENDAR_MESSAGE = "I couldn't find an appropriate calendar for your request. Could you please specify which service you need?"
NO_SLOTS_MESSAGE = "I couldn't find any available time slots that match your preferences. Would you like to try different dates or times?"
UNCLEAR_SELECTION_MESSAGE = "I didn't understand which time you'd prefer. Could you please specify which option works best for you, or suggest a different time?"
BOOKING_FAILED_MESSAGE = "I encountered an error while booking your appointment. Please contact support for assistance."
UNEXPECTED_ERROR_MESSAGE = "I encountered an error while trying to book your appointment. Please try again."


class AppointmentBookingService:
    """
    Service that turns free-text scheduling requests into booked appointments.

    Depends on a ReasoningService for extraction and matching, a calendar
    client (GHLClient) for calendars and appointments, and a booking store
    (BookingStore or InMemoryBookingStore) for the proposed rows.
    """

    def __init__(self, reasoning, crm_client, booking_store, slot_service: SlotService | None = None):
        self.reasoning = reasoning
        self.crm = crm_client
        self.store = booking_store
        self.slot_service = slot_service or SlotService()

    async def process_booking_request(self, request: BookingRequest) -> BookingResult:
        """
        Advance the booking conversation by one user message.

        Returns:
            BookingResult with status ``proposed``, ``confirmed`` or ``failed``
        """
        try:
            booking = await self.store.get_open_booking(request.session_id, request.node_id)
            if booking is None:
                return await self._initiate_booking(request)
            return await self._handle_time_selection(booking, request)
        except Exception:
            logger.exception(f"Booking failed for session {request.session_id} node {request.node_id}")
            return BookingResult(success=False, status="failed", message=UNEXPECTED_ERROR_MESSAGE)

    # ============== Phase 1: propose times ==============

    async def _initiate_booking(
        self,
        request: BookingRequest,
        preferences: BookingPreferences | None = None,
        booking_id: str | None = None,
    ) -> BookingResult:
        if preferences is None:
            preferences = await self.extract_booking_preferences(request.user_message, request.conversation_history)

        calendars = await self._get_calendar_info(request.calendar_ids)
        calendar = await self.select_best_calendar(calendars, preferences, request.user_message)
        if calendar is None:
            return BookingResult(success=False, status="failed", message=NO_CALENDAR_MESSAGE)

        slots = self.slot_service.generate_candidate_slots(preferences)
        if not slots:
            return BookingResult(success=False, status="failed", message=NO_SLOTS_MESSAGE)

        proposed = [slot.start for slot in self.slot_service.select_best_slots(slots, preferences)]

        await self.store.save_proposal(
            session_id=request.session_id,
            node_id=request.node_id,
            contact_id=request.contact_id,
            calendar_id=calendar.id,
            proposed_times=[t.isoformat() for t in proposed],
            booking_data=preferences.model_dump(by_alias=True, exclude_none=True),
            booking_id=booking_id,
        )
        logger.info(f"Proposed {len(proposed)} times on calendar {calendar.id} for session {request.session_id}")

        return BookingResult(
            success=True,
            status="proposed",
            message=self.format_proposed_times_message(proposed),
            suggested_times=proposed,
        )

    async def extract_booking_preferences(self, user_message: str, conversation_history: list[dict]) -> BookingPreferences:
        raw = await self.reasoning.extract_data(user_message, PREFERENCE_SCHEMA, conversation_history)
        try:
            return BookingPreferences.model_validate(raw)
        except ValueError:
            logger.warning(f"Unusable booking preferences, using defaults: {raw!r}")
            return BookingPreferences()

    async def _get_calendar_info(self, calendar_ids: list[str]) -> list[CalendarInfo]:
        try:
            listed = await self.crm.list_calendars()
        except CRMError:
            logger.warning("Calendar listing failed, falling back to configured calendar ids")
            listed = []

        by_id = {c.get("id"): c for c in listed if c.get("id")}
        if not calendar_ids:
            return [
                CalendarInfo(id=c["id"], name=c.get("name") or f"Calendar {c['id']}", description=c.get("description"))
                for c in by_id.values()
            ]

        return [
            CalendarInfo(
                id=cid,
                name=by_id.get(cid, {}).get("name") or f"Calendar {cid}",
                description=by_id.get(cid, {}).get("description"),
                timezone=by_id.get(cid, {}).get("timezone"),
            )
            for cid in calendar_ids
        ]

    async def select_best_calendar(
        self,
        calendars: list[CalendarInfo],
        preferences: BookingPreferences,
        user_message: str,
    ) -> CalendarInfo | None:
        """Single calendar is used as is; several are ranked by the model (first one on any doubt)."""
        if not calendars:
            return None
        if len(calendars) == 1:
            return calendars[0]

        options = "\n".join(
            f"{i + 1}. {c.name} - {c.description or 'No description'}" for i, c in enumerate(calendars)
        )
        system_prompt = f"""Match the user's service request with the most appropriate calendar.
User request: "{user_message}"
Service type: {preferences.service_type or 'general'}

Available calendars:
{options}

Return only the number of the best matching calendar."""

        try:
            choice = await self.reasoning.choose_option(system_prompt, user_message)
        except ReasoningError:
            return calendars[0]

        if choice is None or not 1 <= choice <= len(calendars):
            return calendars[0]
        return calendars[choice - 1]

    @staticmethod
    def format_proposed_times_message(times: list[datetime]) -> str:
        options = "\n".join(f"{i + 1}. {format_slot(t)}" for i, t in enumerate(times))
        return (
            f"I have the following times available for your appointment:\n\n{options}\n\n"
            "Which time works best for you? You can reply with the number or suggest a different time."
        )

    # ============== Phase 2: resolve the pick ==============

    async def _handle_time_selection(self, booking: dict, request: BookingRequest) -> BookingResult:
        proposed = [t for t in (parse_datetime(v) for v in booking.get("proposed_times", [])) if t]
        selected = await self.extract_selected_time(request.user_message, proposed)

        if selected is None:
            preferences = await self.extract_booking_preferences(request.user_message, request.conversation_history)
            if preferences.requests_new_time:
                return await self._initiate_booking(request, preferences=preferences, booking_id=booking["booking_id"])
            return BookingResult(success=False, status="proposed", message=UNCLEAR_SELECTION_MESSAGE)

        return await self._book_appointment(booking, request, selected)

    async def extract_selected_time(self, user_message: str, proposed: list[datetime]) -> datetime | None:
        """
        Match the reply to a proposed time: a bare digit first, then the model.

        Returns:
            The selected datetime, or None when nothing matches
        """
        match = OPTION_NUMBER.search(user_message)
        if match:
            index = int(match.group(1)) - 1
            if 0 <= index < len(proposed):
                return proposed[index]

        if not proposed:
            return None

        options = "\n".join(f"{i + 1}. {format_slot(t)}" for i, t in enumerate(proposed))
        system_prompt = f"""The user was offered these appointment times:
{options}

Based on their response: "{user_message}"
Which time did they select? Return only the number (1, 2, 3, etc.) or "none" if they didn't select any."""

        try:
            choice = await self.reasoning.choose_option(system_prompt, user_message)
        except ReasoningError:
            return None

        if choice is None or not 1 <= choice <= len(proposed):
            return None
        return proposed[choice - 1]

    async def _book_appointment(self, booking: dict, request: BookingRequest, selected: datetime) -> BookingResult:
        data = booking.get("booking_data") or {}
        duration = data.get("duration") or self.slot_service.default_duration_minutes
        end = selected + timedelta(minutes=duration)

        try:
            appointment = await self.crm.create_appointment(
                calendar_id=booking["calendar_id"],
                contact_id=request.contact_id,
                start_time=selected.isoformat(),
                end_time=end.isoformat(),
                title=data.get("serviceType") or "Appointment",
            )
        except CRMError as e:
            await self.store.mark_failed(booking["booking_id"], str(e))
            return BookingResult(success=False, status="failed", message=BOOKING_FAILED_MESSAGE)

        appointment_id = str(appointment["id"])
        await self.store.mark_confirmed(booking["booking_id"], appointment_id, selected)
        logger.info(f"Booked appointment {appointment_id} for session {request.session_id}")

        return BookingResult(
            success=True,
            status="confirmed",
            message=(
                f"Perfect! I've booked your appointment for {format_slot(selected)}. "
                "You'll receive a confirmation email shortly with all the details."
            ),
            appointment_id=appointment_id,
            confirmed_time=selected,
        )
