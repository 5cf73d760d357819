from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from botflow.core.database import get_db
from botflow.services.chat_service import ChatService
from botflow.schemas.chat import ChatRequest, ChatResponse, ChatMessageResponse

router = APIRouter(prefix="/chat", tags=["Chat"])


# ==================== SEND MESSAGE ====================

@router.post("/bots/{bot_id}/messages", response_model=ChatResponse)
async def send_message(
    bot_id: UUID,
    request: ChatRequest,
    db: AsyncSession = Depends(get_db)
):
    """
    Send a user message to a bot and get the bot's reply.

    This is the main endpoint for chatbot interaction.

    Path parameters:
    - bot_id: The bot receiving the message

    Request body:
    - contact_id: CRM contact the conversation belongs to
    - message: The user's message text
    - session_id: Optional; omit (or pass an ended session) to start a new conversation

    Example:
        POST /api/v1/chat/bots/{bot_id}/messages
        {"contact_id": "abc123", "message": "Hi, I'd like to book a consultation"}

        Response:
        {
            "response": "Happy to help! What day works best for you?",
            "session_id": "uuid-here"
        }
    """
    chat_service = ChatService(db)
    result = await chat_service.process_message(
        bot_id=str(bot_id),
        contact_id=request.contact_id,
        user_message=request.message,
        session_id=str(request.session_id) if request.session_id else None,
    )
    return ChatResponse(**result)


# ==================== HISTORY ====================

@router.get("/sessions/{session_id}/messages", response_model=list[ChatMessageResponse])
async def get_session_messages(
    session_id: UUID,
    db: AsyncSession = Depends(get_db)
):
    """Return the full transcript of a session, oldest first."""
    chat_service = ChatService(db)
    return await chat_service.get_session_history(str(session_id))
