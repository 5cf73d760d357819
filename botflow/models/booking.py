import uuid
from datetime import datetime
from sqlalchemy import String, Text, DateTime, ForeignKey, Enum
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import UUID, JSONB

from botflow.core.database import Base
from botflow.models.enums import BookingStatus


class AppointmentBooking(Base):
    __tablename__ = "appointment_bookings"
    __table_args__ = {"schema": "core"}

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    session_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("core.conversation_sessions.id"), nullable=False, index=True)
    node_id: Mapped[str] = mapped_column(String(120), nullable=False)
    calendar_id: Mapped[str | None] = mapped_column(String(120), nullable=True)
    contact_id: Mapped[str] = mapped_column(String(120), nullable=False)
    proposed_times: Mapped[list] = mapped_column(JSONB, default=list)
    status: Mapped[str] = mapped_column(
        Enum(*[s.value for s in BookingStatus], name='appointment_booking_status_enum', schema='core', create_type=False),
        default="proposed"
    )
    booking_data: Mapped[dict] = mapped_column(JSONB, default=dict)
    appointment_id: Mapped[str | None] = mapped_column(String(120), nullable=True)
    selected_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, onupdate=datetime.utcnow)
