import uuid
from datetime import datetime
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update
from loguru import logger

from botflow.core.exceptions import SessionConflictError
from botflow.models import (
    ConversationSession,
    ConversationMessage,
    GoalEvaluationLog,
    WorkflowActionLog,
)
from botflow.services.workflow_state import WorkflowSession


class SessionService:
    """
    Service for conversation sessions and their audit trail.

    Session rows carry a ``version`` column; every update is a
    compare-and-swap on it, so two concurrent turns cannot both win.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== SESSIONS ====================

    async def get_session(self, session_id: str) -> WorkflowSession | None:
        """Load an active session with its history. Ended sessions are not resumable."""
        try:
            sid = uuid.UUID(str(session_id))
        except ValueError:
            return None

        result = await self.db.execute(
            select(ConversationSession).where(
                ConversationSession.id == sid,
                ConversationSession.is_active == True
            )
        )
        row = result.scalar_one_or_none()
        if not row:
            return None

        history = await self.get_history(str(row.id))
        return self._to_session(row, history)

    async def create_session(
        self,
        organization_id: str,
        bot_id: str,
        contact_id: str,
        workflow_id: str | None,
        current_node_id: str | None = None,
    ) -> WorkflowSession:
        row = ConversationSession(
            organization_id=uuid.UUID(str(organization_id)),
            bot_id=uuid.UUID(str(bot_id)),
            contact_id=contact_id,
            workflow_id=uuid.UUID(str(workflow_id)) if workflow_id else None,
            current_node_id=current_node_id,
            session_data={},
            is_active=True,
            version=1,
            started_at=datetime.utcnow(),
            last_activity_at=datetime.utcnow(),
        )
        self.db.add(row)
        await self.db.commit()
        await self.db.refresh(row)

        logger.info(f"Created session {row.id} for bot {bot_id} contact {contact_id}")
        return self._to_session(row, [])

    async def update_session(self, session_id: str, patch: dict, expected_version: int) -> int:
        """
        Apply ``patch`` if the row is still at ``expected_version``.

        Returns:
            The new version

        Raises:
            SessionConflictError: someone else updated the session first
        """
        values = dict(patch)
        values["version"] = ConversationSession.version + 1
        values["last_activity_at"] = datetime.utcnow()

        result = await self.db.execute(
            update(ConversationSession)
            .where(
                ConversationSession.id == uuid.UUID(str(session_id)),
                ConversationSession.version == expected_version,
            )
            .values(**values)
            .returning(ConversationSession.version)
        )
        new_version = result.scalar_one_or_none()
        if new_version is None:
            await self.db.rollback()
            raise SessionConflictError(f"Session {session_id} is no longer at version {expected_version}")

        await self.db.commit()
        return new_version

    async def save_turn(
        self,
        session: WorkflowSession,
        expected_version: int,
        user_message: str,
        reply: str,
        node_id: str | None = None,
    ) -> WorkflowSession:
        """Persist the outcome of one turn: cursor, variables, activity and both messages."""
        patch = {
            "current_node_id": session.current_node_id,
            "session_data": session.variables,
            "is_active": session.is_active,
        }
        if not session.is_active:
            patch["ended_at"] = datetime.utcnow()

        await self.append_message(session.session_id, "user", user_message, node_id, commit=False)
        await self.append_message(session.session_id, "assistant", reply, node_id, commit=False)

        # messages are committed together with the version bump
        new_version = await self.update_session(session.session_id, patch, expected_version)
        return session.model_copy(update={"version": new_version})

    async def end_session(self, session_id: str, expected_version: int) -> int:
        """Mark a session inactive so the next message starts a new one."""
        return await self.update_session(
            session_id,
            {"is_active": False, "ended_at": datetime.utcnow()},
            expected_version,
        )

    # ==================== MESSAGES ====================

    async def append_message(
        self,
        session_id: str,
        role: str,
        content: str,
        node_id: str | None = None,
        commit: bool = True,
    ) -> None:
        """Add one transcript line. With ``commit=False`` it rides on the caller's transaction."""
        self.db.add(
            ConversationMessage(
                session_id=uuid.UUID(str(session_id)),
                role=role,
                content=content,
                node_id=node_id,
                created_at=datetime.utcnow(),
            )
        )
        if commit:
            await self.db.commit()

    async def get_history(self, session_id: str) -> list[dict]:
        result = await self.db.execute(
            select(ConversationMessage)
            .where(ConversationMessage.session_id == uuid.UUID(str(session_id)))
            .order_by(ConversationMessage.created_at, ConversationMessage.role.desc())
        )
        return [{"role": m.role, "content": m.content} for m in result.scalars().all()]

    async def list_messages(self, session_id: str) -> list[ConversationMessage]:
        result = await self.db.execute(
            select(ConversationMessage)
            .where(ConversationMessage.session_id == uuid.UUID(str(session_id)))
            .order_by(ConversationMessage.created_at, ConversationMessage.role.desc())
        )
        return list(result.scalars().all())

    # ==================== AUDIT ====================

    async def log_goal_evaluation(self, session_id: str, node_id: str, user_message: str, evaluation) -> None:
        """Record a milestone verdict. Never raises; the conversation must not depend on the audit."""
        try:
            self.db.add(
                GoalEvaluationLog(
                    session_id=uuid.UUID(str(session_id)),
                    node_id=node_id,
                    user_message=user_message,
                    ai_evaluation=evaluation.model_dump(by_alias=True),
                    goal_achieved=evaluation.achieved,
                    confidence_score=evaluation.confidence,
                    reasoning=evaluation.reasoning,
                    selected_outcome=evaluation.selected_outcome,
                    created_at=datetime.utcnow(),
                )
            )
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.warning(f"Could not log goal evaluation for session {session_id}: {e}")

    async def record_action(self, session_id: str, action_type: str, action_data: dict, status: str) -> str:
        row = WorkflowActionLog(
            session_id=uuid.UUID(str(session_id)),
            action_type=action_type,
            action_data=action_data,
            status=status,
            created_at=datetime.utcnow(),
        )
        self.db.add(row)
        await self.db.commit()
        return str(row.id)

    async def finish_action(self, action_id: str, status: str, error_message: str | None = None) -> None:
        await self.db.execute(
            update(WorkflowActionLog)
            .where(WorkflowActionLog.id == uuid.UUID(action_id))
            .values(status=status, error_message=error_message, completed_at=datetime.utcnow())
        )
        await self.db.commit()

    @staticmethod
    def _to_session(row: ConversationSession, history: list[dict]) -> WorkflowSession:
        return WorkflowSession(
            session_id=str(row.id),
            organization_id=str(row.organization_id),
            bot_id=str(row.bot_id),
            contact_id=row.contact_id,
            workflow_id=str(row.workflow_id) if row.workflow_id else None,
            current_node_id=row.current_node_id,
            variables=dict(row.session_data or {}),
            conversation_history=history,
            is_active=row.is_active,
            version=row.version,
        )
