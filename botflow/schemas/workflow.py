from pydantic import BaseModel, Field, AliasChoices
from typing import Any
from uuid import UUID


# ============== Graph Schemas ==============

class GraphNode(BaseModel):
    """A single step of a workflow (node as drawn in the builder)."""
    node_id: str = Field(..., min_length=1, validation_alias=AliasChoices("node_id", "id"))
    type: str = Field(..., validation_alias=AliasChoices("type", "node_type"))
    title: str | None = None
    description: str | None = None
    goal_description: str | None = None
    possible_outcomes: list[str] = Field(default_factory=list)
    calendar_ids: list[str] = Field(default_factory=list)
    actions: list[dict[str, Any]] = Field(default_factory=list)
    config: dict[str, Any] = Field(default_factory=dict)
    is_entry: bool = False
    position_x: float = 0
    position_y: float = 0

    class Config:
        populate_by_name = True


class GraphEdge(BaseModel):
    """Directed transition between two nodes."""
    source: str = Field(..., validation_alias=AliasChoices("source", "source_node_id"))
    target: str = Field(..., validation_alias=AliasChoices("target", "target_node_id"))
    source_handle: str | None = Field(None, validation_alias=AliasChoices("source_handle", "sourceHandle"))
    connection_type: str | None = None
    condition: dict[str, Any] | None = None
    label: str | None = None

    class Config:
        populate_by_name = True

    @property
    def tag(self) -> str:
        return self.source_handle or self.connection_type or "standard"


class WorkflowGraphPayload(BaseModel):
    """Nodes + edges as submitted by the builder (order is significant)."""
    nodes: list[GraphNode] = Field(default_factory=list)
    edges: list[GraphEdge] = Field(default_factory=list)


class WorkflowGraphResponse(WorkflowGraphPayload):
    workflow_id: UUID
    name: str | None = None


class GraphValidationResponse(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)


# ============== Test Execution Schemas ==============

class WorkflowTestRequest(BaseModel):
    """Run a (possibly unsaved) graph against one message and stream the trace."""
    message: str = Field(..., min_length=1)
    workflow_id: UUID | None = None
    bot_id: UUID | None = None
    organization_id: UUID | None = None
    session_id: str | None = None
    current_node_id: str | None = None
    nodes: list[GraphNode] = Field(default_factory=list)
    edges: list[GraphEdge] = Field(default_factory=list)
    variables: dict[str, Any] = Field(default_factory=dict)
    conversation_history: list[dict] = Field(default_factory=list)
