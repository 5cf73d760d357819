# botflow/schemas/__init__.py

from botflow.schemas.workflow import (
    GraphNode,
    GraphEdge,
    WorkflowGraphPayload,
    WorkflowGraphResponse,
    GraphValidationResponse,
    WorkflowTestRequest,
)
from botflow.schemas.chat import ChatRequest, ChatResponse, ChatMessageResponse

__all__ = [
    "GraphNode",
    "GraphEdge",
    "WorkflowGraphPayload",
    "WorkflowGraphResponse",
    "GraphValidationResponse",
    "WorkflowTestRequest",
    "ChatRequest",
    "ChatResponse",
    "ChatMessageResponse",
]
