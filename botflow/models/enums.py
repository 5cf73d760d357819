import enum


class NodeType(str, enum.Enum):
    START = "start"
    MILESTONE = "milestone"
    MESSAGE = "message"
    APPOINTMENT = "appointment"
    BOOK_APPOINTMENT = "book_appointment"
    CONDITION = "condition"
    VARIABLE = "variable"
    ACTION = "action"
    GHL_ACTION = "ghl_action"
    AI = "ai"
    END = "end"


class BookingStatus(str, enum.Enum):
    PROPOSED = "proposed"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class ActionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    SIMULATED = "simulated"
