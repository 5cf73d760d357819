from datetime import datetime, timedelta

from loguru import logger

from botflow.core.config import settings
from botflow.schemas.booking import BookingPreferences, TimeSlot


# Placeholder availability: one morning and one afternoon opening per day
MORNING_SLOT_HOUR = 9
AFTERNOON_SLOT_HOUR = 14
LOOKAHEAD_DAYS = 7


def parse_datetime(value: str | None) -> datetime | None:
    """Parse an ISO timestamp from extraction output. Unparseable input yields None."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Ignoring unparseable datetime: {value!r}")
        return None
    return parsed.replace(tzinfo=None)


def format_slot(moment: datetime) -> str:
    """e.g. 'Tuesday, March 4 at 9:00 AM'"""
    hour = moment.hour % 12 or 12
    suffix = "AM" if moment.hour < 12 else "PM"
    return f"{moment.strftime('%A, %B')} {moment.day} at {hour}:{moment.minute:02d} {suffix}"


class SlotService:
    """
    Service for proposing appointment times.

    Handles:
    - Generating candidate slots for the week after the requested date
    - Scoring slots against urgency and time-of-day preferences

    Slot generation is synthetic; no calendar free/busy data is consulted.
    """

    def __init__(self, default_duration_minutes: int | None = None):
        self.default_duration_minutes = default_duration_minutes or settings.DEFAULT_APPOINTMENT_MINUTES

    def generate_candidate_slots(
        self,
        preferences: BookingPreferences,
        now: datetime | None = None,
    ) -> list[TimeSlot]:
        """
        Build candidate slots for days 1..7 after the start date.

        Args:
            preferences: Normalized preferences; ``date_time`` moves the start date
            now: Reference time (defaults to the current time)

        Returns:
            Slots in chronological order
        """
        now = now or datetime.now()
        start_date = parse_datetime(preferences.date_time) or now
        duration = timedelta(minutes=preferences.duration or self.default_duration_minutes)
        times = preferences.time_preferences

        slots = []
        for offset in range(1, LOOKAHEAD_DAYS + 1):
            day = (start_date + timedelta(days=offset)).replace(hour=0, minute=0, second=0, microsecond=0)

            if times.morning is not False:
                start = day.replace(hour=MORNING_SLOT_HOUR)
                slots.append(TimeSlot(start=start, end=start + duration))

            if times.afternoon is not False:
                start = day.replace(hour=AFTERNOON_SLOT_HOUR)
                slots.append(TimeSlot(start=start, end=start + duration))

        return slots

    def score_slot(self, slot: TimeSlot, preferences: BookingPreferences, now: datetime) -> float:
        score = 0.0
        times = preferences.time_preferences

        if preferences.urgency == "high":
            hours_away = max((slot.start - now).total_seconds() / 3600, 1.0)
            score += 10 / hours_away

        hour = slot.start.hour
        if hour < 12 and times.morning:
            score += 5
        if 12 <= hour < 17 and times.afternoon:
            score += 5
        if hour >= 17 and times.evening:
            score += 5

        return score

    def select_best_slots(
        self,
        slots: list[TimeSlot],
        preferences: BookingPreferences,
        count: int | None = None,
        now: datetime | None = None,
    ) -> list[TimeSlot]:
        """Top ``count`` slots by score; ties keep chronological order."""
        now = now or datetime.now()
        count = count or settings.PROPOSED_SLOT_COUNT
        ranked = sorted(slots, key=lambda s: self.score_slot(s, preferences, now), reverse=True)
        return ranked[:count]
