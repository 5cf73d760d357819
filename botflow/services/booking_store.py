import uuid
from datetime import datetime
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from botflow.models import AppointmentBooking


def _booking_to_dict(booking: AppointmentBooking) -> dict:
    return {
        "booking_id": str(booking.id),
        "session_id": str(booking.session_id),
        "node_id": booking.node_id,
        "calendar_id": booking.calendar_id,
        "contact_id": booking.contact_id,
        "proposed_times": list(booking.proposed_times or []),
        "status": booking.status,
        "booking_data": dict(booking.booking_data or {}),
        "appointment_id": booking.appointment_id,
        "selected_time": booking.selected_time.isoformat() if booking.selected_time else None,
    }


class BookingStore:
    """
    Persistence for appointment_bookings.
    At most one row per (session, node) is in the ``proposed`` state.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_open_booking(self, session_id: str, node_id: str) -> dict | None:
        result = await self.db.execute(
            select(AppointmentBooking)
            .where(
                AppointmentBooking.session_id == uuid.UUID(session_id),
                AppointmentBooking.node_id == node_id,
                AppointmentBooking.status == "proposed",
            )
            .order_by(AppointmentBooking.created_at.desc())
        )
        booking = result.scalars().first()
        return _booking_to_dict(booking) if booking else None

    async def save_proposal(
        self,
        session_id: str,
        node_id: str,
        contact_id: str,
        calendar_id: str,
        proposed_times: list[str],
        booking_data: dict,
        booking_id: str | None = None,
    ) -> dict:
        """
        Create the proposed row, or refresh the open one in place when
        ``booking_id`` is given (user asked for different times).
        """
        booking = None
        if booking_id:
            booking = await self.db.get(AppointmentBooking, uuid.UUID(booking_id))

        if booking is None:
            booking = AppointmentBooking(
                session_id=uuid.UUID(session_id),
                node_id=node_id,
                contact_id=contact_id,
                status="proposed",
                created_at=datetime.utcnow(),
            )
            self.db.add(booking)

        booking.calendar_id = calendar_id
        booking.proposed_times = proposed_times
        booking.booking_data = booking_data
        booking.updated_at = datetime.utcnow()

        await self.db.commit()
        await self.db.refresh(booking)
        return _booking_to_dict(booking)

    async def mark_confirmed(self, booking_id: str, appointment_id: str, selected_time: datetime) -> None:
        booking = await self.db.get(AppointmentBooking, uuid.UUID(booking_id))
        if not booking:
            return
        booking.status = "confirmed"
        booking.appointment_id = appointment_id
        booking.selected_time = selected_time
        booking.updated_at = datetime.utcnow()
        await self.db.commit()

    async def mark_failed(self, booking_id: str, error_message: str) -> None:
        booking = await self.db.get(AppointmentBooking, uuid.UUID(booking_id))
        if not booking:
            return
        booking.status = "failed"
        booking.error_message = error_message
        booking.updated_at = datetime.utcnow()
        await self.db.commit()


class InMemoryBookingStore:
    """Same interface as BookingStore, kept in process. Used by test-harness runs."""

    def __init__(self):
        self.bookings: dict[str, dict] = {}

    async def get_open_booking(self, session_id: str, node_id: str) -> dict | None:
        for booking in reversed(list(self.bookings.values())):
            if booking["session_id"] == session_id and booking["node_id"] == node_id and booking["status"] == "proposed":
                return dict(booking)
        return None

    async def save_proposal(
        self,
        session_id: str,
        node_id: str,
        contact_id: str,
        calendar_id: str,
        proposed_times: list[str],
        booking_data: dict,
        booking_id: str | None = None,
    ) -> dict:
        booking = self.bookings.get(booking_id) if booking_id else None
        if booking is None:
            booking_id = str(uuid.uuid4())
            booking = {
                "booking_id": booking_id,
                "session_id": session_id,
                "node_id": node_id,
                "contact_id": contact_id,
                "status": "proposed",
                "appointment_id": None,
                "selected_time": None,
            }
            self.bookings[booking_id] = booking

        booking.update(
            calendar_id=calendar_id,
            proposed_times=list(proposed_times),
            booking_data=dict(booking_data),
        )
        return dict(booking)

    async def mark_confirmed(self, booking_id: str, appointment_id: str, selected_time: datetime) -> None:
        if booking_id in self.bookings:
            self.bookings[booking_id].update(
                status="confirmed",
                appointment_id=appointment_id,
                selected_time=selected_time.isoformat(),
            )

    async def mark_failed(self, booking_id: str, error_message: str) -> None:
        if booking_id in self.bookings:
            self.bookings[booking_id].update(status="failed", error_message=error_message)
