import asyncio
import weakref

from sqlalchemy.ext.asyncio import AsyncSession
from loguru import logger

from botflow.core.exceptions import NotFoundError, ReasoningError
from botflow.services.action_service import ActionService
from botflow.services.booking_service import AppointmentBookingService
from botflow.services.booking_store import BookingStore, InMemoryBookingStore
from botflow.services.bot_service import BotService, Credentials
from botflow.services.crm_client import GHLClient, SimulatedCRMClient
from botflow.services.llm import LLMClient
from botflow.services.reasoning_service import ReasoningService
from botflow.services.session_service import SessionService
from botflow.services.workflow_engine import WorkflowEngine
from botflow.services.workflow_service import WorkflowService


UNAVAILABLE_REPLY = "I apologize, but I am currently unavailable. Please try again later."
GENERAL_ERROR_REPLY = "I encountered an error. Please try again."

# Turns for one session run one at a time within this process
_session_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def session_lock(session_id: str) -> asyncio.Lock:
    lock = _session_locks.get(session_id)
    if lock is None:
        lock = asyncio.Lock()
        _session_locks[session_id] = lock
    return lock


def build_engine(
    credentials: Credentials,
    booking_store=None,
    session_service=None,
    simulate_actions: bool = False,
) -> WorkflowEngine:
    """
    Wire the engine for one organization's credentials.

    Live booking needs a CRM connection. Simulated runs book against an
    in-process calendar instead, so no real appointment is ever created.
    Without an OpenAI key the reasoning service is present but unconfigured.
    """
    llm = LLMClient(credentials.openai_api_key) if credentials.openai_api_key else None
    reasoning = ReasoningService(llm)

    crm = None
    if credentials.ghl_api_key:
        crm = GHLClient(credentials.ghl_api_key, location_id=credentials.ghl_location_id)

    booking = None
    if simulate_actions:
        booking = AppointmentBookingService(reasoning, SimulatedCRMClient(), booking_store or InMemoryBookingStore())
    elif crm is not None:
        booking = AppointmentBookingService(reasoning, crm, booking_store or InMemoryBookingStore())

    return WorkflowEngine(
        reasoning=reasoning,
        booking=booking,
        action_service=ActionService(crm, action_log=session_service, simulate=simulate_actions),
        session_service=session_service,
    )


class ChatService:
    """
    Service that connects inbound chat messages to the workflow engine.
    Resolves the bot, its credentials and session, then runs one turn.
    """

    def __init__(
        self,
        db: AsyncSession | None,
        bot_service=None,
        workflow_service=None,
        session_service=None,
        booking_store=None,
        engine_factory=None,
    ):
        self.db = db
        self.bot_service = bot_service or BotService(db)
        self.workflow_service = workflow_service or WorkflowService(db)
        self.session_service = session_service or SessionService(db)
        self.booking_store = booking_store or (BookingStore(db) if db is not None else None)
        self.engine_factory = engine_factory or build_engine

    async def process_message(
        self,
        bot_id: str,
        contact_id: str,
        user_message: str,
        session_id: str | None = None,
    ) -> dict:
        """
        Process a user message for a bot and return the bot's reply.

        Args:
            bot_id: The bot receiving the message
            contact_id: CRM contact the conversation belongs to
            user_message: The message text
            session_id: Session to resume; a new one is started if it is
                missing or has ended

        Returns:
            {"response": str, "session_id": str | None}
        """
        bot = await self.bot_service.get_bot(bot_id)
        if not bot or not bot["is_active"]:
            return {"response": UNAVAILABLE_REPLY, "session_id": None}

        credentials = await self.bot_service.get_credentials(bot["organization_id"])
        engine = self.engine_factory(
            credentials,
            booking_store=self.booking_store,
            session_service=self.session_service,
        )

        if session_id:
            async with session_lock(str(session_id)):
                session = await self.session_service.get_session(str(session_id))
                if session is not None:
                    try:
                        return await self._run_turn(engine, bot, session, user_message)
                    except NotFoundError:
                        logger.warning(
                            f"Workflow {session.workflow_id} of session {session.session_id} no longer exists, ending session"
                        )
                        await self.session_service.end_session(session.session_id, session.version)

        workflow_id = await self.workflow_service.get_primary_workflow(bot_id)
        if not workflow_id:
            reply = await self._general_response(engine.reasoning, bot, user_message)
            return {"response": reply, "session_id": None}

        session = await self.session_service.create_session(
            organization_id=bot["organization_id"],
            bot_id=bot_id,
            contact_id=contact_id,
            workflow_id=workflow_id,
        )
        async with session_lock(session.session_id):
            return await self._run_turn(engine, bot, session, user_message)

    async def _run_turn(self, engine: WorkflowEngine, bot: dict, session, user_message: str) -> dict:
        graph = await self.workflow_service.get_graph(session.workflow_id)
        session.business_context = await self.bot_service.get_business_context(bot["id"])

        result = await engine.execute(session, user_message, graph)
        logger.info(
            f"Session {session.session_id}: visited {result.visited_node_ids}, "
            f"now at {result.session.current_node_id} (active={result.session.is_active})"
        )
        return {"response": result.reply, "session_id": session.session_id}

    async def _general_response(self, reasoning: ReasoningService, bot: dict, user_message: str) -> str:
        """Reply from the bot's own context when it has no workflow attached."""
        if not reasoning.is_configured:
            return UNAVAILABLE_REPLY

        context = "\n\n".join(c for c in [bot.get("global_context"), bot.get("specific_context")] if c)
        system_prompt = f"You are {bot.get('name') or 'a helpful assistant'}.\n\n{context}".strip()
        try:
            return await reasoning.generate_text(system_prompt, [{"role": "user", "content": user_message}])
        except ReasoningError:
            return GENERAL_ERROR_REPLY

    async def get_session_history(self, session_id: str) -> list:
        return await self.session_service.list_messages(session_id)
