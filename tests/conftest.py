import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from botflow.core.exceptions import SessionConflictError
from botflow.services.reasoning_service import GoalEvaluation
from botflow.services.workflow_graph import WorkflowGraph
from botflow.services.workflow_state import WorkflowSession


def make_graph(nodes: list[dict], edges: list[dict]) -> WorkflowGraph:
    return WorkflowGraph.load(nodes, edges, workflow_id="wf-test")


def make_session(current_node_id: str | None = None, **kwargs) -> WorkflowSession:
    return WorkflowSession(
        session_id=kwargs.pop("session_id", str(uuid.uuid4())),
        organization_id=str(uuid.uuid4()),
        bot_id=str(uuid.uuid4()),
        contact_id="contact-1",
        workflow_id="wf-test",
        current_node_id=current_node_id,
        **kwargs,
    )


def make_reasoning(evaluation: dict | None = None, response: str = "Generated reply") -> MagicMock:
    """ReasoningService double with every LLM-backed call mocked."""
    reasoning = MagicMock()
    reasoning.is_configured = True
    reasoning.evaluate_goal = AsyncMock(
        return_value=GoalEvaluation.model_validate(evaluation or {"achieved": False, "confidence": 0})
    )
    reasoning.generate_response = AsyncMock(return_value=response)
    reasoning.generate_text = AsyncMock(return_value=response)
    reasoning.extract_data = AsyncMock(return_value={})
    reasoning.evaluate_condition = AsyncMock(return_value=False)
    reasoning.choose_option = AsyncMock(return_value=None)
    return reasoning


class FakeSessionService:
    """In-memory stand-in for SessionService with the same version check."""

    def __init__(self):
        self.sessions: dict[str, WorkflowSession] = {}
        self.messages: dict[str, list[dict]] = {}
        self.evaluations: list[dict] = []
        self.actions: dict[str, dict] = {}

    async def get_session(self, session_id: str):
        session = self.sessions.get(session_id)
        if session is None or not session.is_active:
            return None
        return session.model_copy(
            update={"conversation_history": list(self.messages.get(session_id, []))}
        )

    async def create_session(self, organization_id, bot_id, contact_id, workflow_id, current_node_id=None):
        session = WorkflowSession(
            session_id=str(uuid.uuid4()),
            organization_id=organization_id,
            bot_id=bot_id,
            contact_id=contact_id,
            workflow_id=workflow_id,
            current_node_id=current_node_id,
        )
        self.sessions[session.session_id] = session
        return session.model_copy()

    async def save_turn(self, session, expected_version, user_message, reply, node_id=None):
        stored = self.sessions.get(session.session_id)
        if stored is None or stored.version != expected_version:
            raise SessionConflictError(session.session_id)

        saved = session.model_copy(update={"version": expected_version + 1})
        self.sessions[session.session_id] = saved
        self.messages.setdefault(session.session_id, []).extend([
            {"role": "user", "content": user_message},
            {"role": "assistant", "content": reply},
        ])
        return saved

    async def end_session(self, session_id, expected_version):
        stored = self.sessions.get(session_id)
        if stored is None or stored.version != expected_version:
            raise SessionConflictError(session_id)
        self.sessions[session_id] = stored.model_copy(update={"is_active": False, "version": expected_version + 1})
        return expected_version + 1

    async def list_messages(self, session_id):
        return list(self.messages.get(session_id, []))

    async def log_goal_evaluation(self, session_id, node_id, user_message, evaluation):
        self.evaluations.append({"session_id": session_id, "node_id": node_id, "confidence": evaluation.confidence})

    async def record_action(self, session_id, action_type, action_data, status):
        action_id = str(uuid.uuid4())
        self.actions[action_id] = {"type": action_type, "data": action_data, "status": status}
        return action_id

    async def finish_action(self, action_id, status, error_message=None):
        self.actions[action_id].update(status=status, error=error_message)


@pytest.fixture
def session_service():
    return FakeSessionService()


@pytest.fixture
def happy_path_graph():
    """milestone("collect name") --goal_achieved--> message("confirm") --standard--> end"""
    return make_graph(
        [
            {"node_id": "collect", "type": "milestone", "goal_description": "Collect the user's name"},
            {"node_id": "confirm", "type": "message", "config": {"message": "Thanks {{name}}, you're all set."}},
            {"node_id": "done", "type": "end", "config": {"message": "Goodbye!"}},
        ],
        [
            {"source": "collect", "target": "confirm", "connection_type": "goal_achieved"},
            {"source": "confirm", "target": "done", "connection_type": "standard"},
        ],
    )
