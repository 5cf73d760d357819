# botflow/models/__init__.py

from botflow.core.database import Base

# Bots and their persona / credentials
from botflow.models.bot import Bot, BotContext, BotWorkflow, OrganizationCredential

# Workflow graph
from botflow.models.workflow import ChatbotWorkflow, WorkflowNode, WorkflowConnection

# Conversation runtime
from botflow.models.conversation import ConversationSession
from botflow.models.conversation_message import ConversationMessage
from botflow.models.booking import AppointmentBooking

# Audit tables
from botflow.models.other_models import GoalEvaluationLog, WorkflowActionLog

__all__ = [
    "Base",
    "Bot",
    "BotContext",
    "BotWorkflow",
    "OrganizationCredential",
    "ChatbotWorkflow",
    "WorkflowNode",
    "WorkflowConnection",
    "ConversationSession",
    "ConversationMessage",
    "AppointmentBooking",
    "GoalEvaluationLog",
    "WorkflowActionLog",
]
