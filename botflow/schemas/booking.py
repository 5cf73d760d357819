from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from typing import Any


# ============== Preference Schemas ==============

class TimePreferences(BaseModel):
    """Time-of-day wishes. ``None`` means the user did not say."""
    morning: bool | None = None
    afternoon: bool | None = None
    evening: bool | None = None
    specific_times: list[str] = Field(default_factory=list, alias="specificTimes")

    class Config:
        populate_by_name = True

    @field_validator("morning", "afternoon", "evening", mode="before")
    @classmethod
    def strict_bool(cls, value):
        return value if isinstance(value, bool) else None

    @field_validator("specific_times", mode="before")
    @classmethod
    def as_list(cls, value):
        return value if isinstance(value, list) else []


class DayPreferences(BaseModel):
    weekdays: bool = True
    weekends: bool = False
    specific_days: list[str] = Field(default_factory=list, alias="specificDays")

    class Config:
        populate_by_name = True

    @field_validator("weekdays", mode="before")
    @classmethod
    def weekdays_default_true(cls, value):
        return value is not False

    @field_validator("weekends", mode="before")
    @classmethod
    def weekends_only_when_true(cls, value):
        return value is True

    @field_validator("specific_days", mode="before")
    @classmethod
    def as_list(cls, value):
        return value if isinstance(value, list) else []


class DateRange(BaseModel):
    start: str | None = None
    end: str | None = None


class BookingPreferences(BaseModel):
    """Normalized scheduling preferences extracted from free text."""
    date_time: str | None = Field(None, alias="dateTime")
    date_range: DateRange | None = Field(None, alias="dateRange")
    time_preferences: TimePreferences = Field(default_factory=TimePreferences, alias="timePreferences")
    day_preferences: DayPreferences = Field(default_factory=DayPreferences, alias="dayPreferences")
    duration: int | None = None
    urgency: str = "medium"
    service_type: str | None = Field(None, alias="serviceType")
    additional_notes: str | None = Field(None, alias="additionalNotes")

    class Config:
        populate_by_name = True

    @field_validator("urgency", mode="before")
    @classmethod
    def known_urgency(cls, value):
        return value if value in ("low", "medium", "high") else "medium"

    @field_validator("duration", mode="before")
    @classmethod
    def positive_minutes(cls, value):
        try:
            minutes = int(value)
        except (TypeError, ValueError):
            return None
        return minutes if minutes > 0 else None

    @field_validator("date_range", mode="before")
    @classmethod
    def usable_range(cls, value):
        if isinstance(value, DateRange):
            value = value.model_dump()
        if not isinstance(value, dict) or not (value.get("start") or value.get("end")):
            return None
        return value

    @field_validator("time_preferences", "day_preferences", mode="before")
    @classmethod
    def object_or_default(cls, value):
        return value if isinstance(value, (dict, BaseModel)) else {}

    @field_validator("date_time", "service_type", "additional_notes", mode="before")
    @classmethod
    def blank_to_none(cls, value):
        if value is None or not str(value).strip():
            return None
        return str(value)

    @property
    def requests_new_time(self) -> bool:
        return bool(self.date_time or self.date_range)


# ============== Booking Request / Result ==============

class CalendarInfo(BaseModel):
    id: str
    name: str
    description: str | None = None
    timezone: str | None = None


class TimeSlot(BaseModel):
    start: datetime
    end: datetime


class BookingRequest(BaseModel):
    session_id: str
    node_id: str
    contact_id: str
    user_message: str
    calendar_ids: list[str] = Field(default_factory=list)
    conversation_history: list[dict] = Field(default_factory=list)
    session_data: dict[str, Any] = Field(default_factory=dict)


class BookingResult(BaseModel):
    success: bool
    status: str
    message: str
    appointment_id: str | None = None
    confirmed_time: datetime | None = None
    suggested_times: list[datetime] = Field(default_factory=list)
