from pydantic import BaseModel, Field
from datetime import datetime
from uuid import UUID


# ============== Chat Message Schemas ==============

class ChatRequest(BaseModel):
    """Inbound user message for a bot."""
    contact_id: str = Field(..., min_length=1, max_length=120)
    message: str = Field(..., min_length=1)
    session_id: UUID | None = None


class ChatResponse(BaseModel):
    response: str
    session_id: UUID | None = None


class ChatMessageResponse(BaseModel):
    """Message returned from API."""
    id: UUID
    role: str
    content: str
    node_id: str | None = None
    created_at: datetime

    class Config:
        from_attributes = True
