import uuid
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete
from loguru import logger

from botflow.core.exceptions import NotFoundError
from botflow.models import ChatbotWorkflow, WorkflowNode, WorkflowConnection, BotWorkflow
from botflow.schemas.workflow import GraphNode, GraphEdge, WorkflowGraphPayload
from botflow.services.workflow_graph import WorkflowGraph


class WorkflowService:
    """
    Service for loading and saving workflow graphs.
    Node and edge order is kept in ``sort_order``; edge resolution depends on it.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_workflow(self, workflow_id: str) -> ChatbotWorkflow:
        workflow = await self.db.get(ChatbotWorkflow, uuid.UUID(str(workflow_id)))
        if not workflow:
            raise NotFoundError(f"Workflow not found: {workflow_id}")
        return workflow

    async def get_graph_payload(self, workflow_id: str) -> WorkflowGraphPayload:
        wid = uuid.UUID(str(workflow_id))

        result = await self.db.execute(
            select(WorkflowNode)
            .where(WorkflowNode.workflow_id == wid)
            .order_by(WorkflowNode.sort_order, WorkflowNode.created_at)
        )
        nodes = [
            GraphNode(
                node_id=n.node_id,
                type=n.node_type,
                title=n.title,
                description=n.description,
                goal_description=n.goal_description,
                possible_outcomes=n.possible_outcomes or [],
                calendar_ids=n.calendar_ids or [],
                actions=n.actions or [],
                config=n.config or {},
                is_entry=n.is_entry,
                position_x=n.position_x or 0,
                position_y=n.position_y or 0,
            )
            for n in result.scalars().all()
        ]

        result = await self.db.execute(
            select(WorkflowConnection)
            .where(WorkflowConnection.workflow_id == wid)
            .order_by(WorkflowConnection.sort_order, WorkflowConnection.created_at)
        )
        edges = [
            GraphEdge(
                source=c.source_node_id,
                target=c.target_node_id,
                source_handle=c.source_handle,
                connection_type=c.connection_type,
                condition=c.condition,
                label=c.label,
            )
            for c in result.scalars().all()
        ]

        return WorkflowGraphPayload(nodes=nodes, edges=edges)

    async def get_graph(self, workflow_id: str) -> WorkflowGraph:
        """Load the runtime graph. Ambiguities are logged, not rejected, so live sessions keep running."""
        await self.get_workflow(workflow_id)
        payload = await self.get_graph_payload(workflow_id)
        return WorkflowGraph.load(payload.nodes, payload.edges, workflow_id=str(workflow_id))

    async def save_graph(self, workflow_id: str, payload: WorkflowGraphPayload) -> WorkflowGraphPayload:
        """
        Replace a workflow's nodes and edges.

        Raises:
            NotFoundError: unknown workflow
            GraphValidationError: the graph has any validation error
        """
        await self.get_workflow(workflow_id)
        WorkflowGraph.load(payload.nodes, payload.edges, workflow_id=str(workflow_id), strict=True)

        wid = uuid.UUID(str(workflow_id))
        await self.db.execute(delete(WorkflowConnection).where(WorkflowConnection.workflow_id == wid))
        await self.db.execute(delete(WorkflowNode).where(WorkflowNode.workflow_id == wid))

        for order, node in enumerate(payload.nodes):
            self.db.add(
                WorkflowNode(
                    workflow_id=wid,
                    node_id=node.node_id,
                    node_type=node.type,
                    title=node.title,
                    description=node.description,
                    goal_description=node.goal_description,
                    possible_outcomes=node.possible_outcomes,
                    calendar_ids=node.calendar_ids,
                    actions=node.actions,
                    config=node.config,
                    is_entry=node.is_entry,
                    position_x=node.position_x,
                    position_y=node.position_y,
                    sort_order=order,
                )
            )

        for order, edge in enumerate(payload.edges):
            self.db.add(
                WorkflowConnection(
                    workflow_id=wid,
                    source_node_id=edge.source,
                    target_node_id=edge.target,
                    connection_type=edge.connection_type,
                    source_handle=edge.source_handle,
                    condition=edge.condition,
                    label=edge.label,
                    sort_order=order,
                )
            )

        await self.db.commit()
        logger.info(f"Saved workflow {workflow_id}: {len(payload.nodes)} nodes, {len(payload.edges)} edges")
        return payload

    async def get_primary_workflow(self, bot_id: str) -> str | None:
        """Workflow flagged primary for the bot (highest priority first)."""
        result = await self.db.execute(
            select(BotWorkflow)
            .join(ChatbotWorkflow, ChatbotWorkflow.id == BotWorkflow.workflow_id)
            .where(
                BotWorkflow.bot_id == uuid.UUID(str(bot_id)),
                BotWorkflow.is_primary == True,
                ChatbotWorkflow.is_active == True,
            )
            .order_by(BotWorkflow.priority.desc())
        )
        link = result.scalars().first()
        return str(link.workflow_id) if link else None
