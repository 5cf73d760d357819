from typing import Any, TypedDict
from pydantic import BaseModel, Field

from botflow.schemas.workflow import GraphNode


class WorkflowSession(BaseModel):
    """
    Per-conversation runtime state.

    ``variables`` is persisted as ``session_data``; ``version`` guards
    concurrent updates of the same row.
    """
    session_id: str
    organization_id: str | None = None
    bot_id: str | None = None
    contact_id: str = ""
    workflow_id: str | None = None
    current_node_id: str | None = None
    variables: dict[str, Any] = Field(default_factory=dict)
    conversation_history: list[dict] = Field(default_factory=list)
    business_context: dict[str, Any] | None = None
    is_active: bool = True
    version: int = 1


class NodeResult(BaseModel):
    """What a node handler decided; applied by the engine, never by the handler."""
    reply: str | None = None
    next_node_id: str | None = None
    edge_tag: str | None = None
    advance: bool = False
    variable_updates: dict[str, Any] = Field(default_factory=dict)
    side_effects: list[dict[str, Any]] = Field(default_factory=list)
    ended: bool = False
    failed: bool = False


class ExecutionResult(BaseModel):
    reply: str
    session: WorkflowSession
    visited_node_ids: list[str] = Field(default_factory=list)
    failed: bool = False


class TurnState(TypedDict, total=False):
    """
    State passed between the per-turn LangGraph nodes.
    Each node reads it and returns a partial update.
    """

    # === Inputs ===
    session: WorkflowSession
    user_message: str

    # === Cursor ===
    current_node: GraphNode | None
    steps: int
    visited_node_ids: list[str]

    # === Accumulated turn output ===
    replies: list[str]
    variables: dict[str, Any]
    pending_side_effects: list[dict[str, Any]]
    last_result: NodeResult | None
    is_active: bool

    # === Control flow ===
    consumed: bool          # a conversational node already answered this message
    continue_chain: bool
    failed: bool
    error: str | None
