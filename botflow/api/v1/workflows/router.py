import asyncio
import uuid
from uuid import UUID

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession
from loguru import logger

from botflow.core.config import settings
from botflow.core.database import get_db
from botflow.schemas.workflow import (
    WorkflowGraphPayload,
    WorkflowGraphResponse,
    GraphValidationResponse,
    WorkflowTestRequest,
)
from botflow.services.booking_store import InMemoryBookingStore
from botflow.services.bot_service import BotService
from botflow.services.chat_service import build_engine
from botflow.services.event_sink import QueueEventSink
from botflow.services.workflow_graph import WorkflowGraph
from botflow.services.workflow_service import WorkflowService
from botflow.services.workflow_state import WorkflowSession

router = APIRouter(prefix="/workflows", tags=["Workflows"])

# Proposed appointments of test conversations, keyed by the echoed sessionId
harness_bookings = InMemoryBookingStore()


# ==================== TEST EXECUTION (STREAMING) ====================

@router.post("/test/execute")
async def test_execute(
    request: WorkflowTestRequest,
    db: AsyncSession = Depends(get_db)
):
    """
    Run one message through a workflow and stream each step as server-sent events.

    The graph comes from the request body (unsaved builder state) or, when no
    nodes are sent, from the stored workflow. Actions are simulated and no
    session is persisted. Send back ``sessionId``, ``currentNodeId`` and
    ``variables`` from the ``complete`` event to continue the same test
    conversation; appointment proposals are kept in process under that
    ``sessionId`` and booked against a simulated calendar.

    Events: node_execution, message, variable_update, backend_log, error, complete
    """
    if request.nodes:
        graph = WorkflowGraph.load(request.nodes, request.edges, workflow_id=str(request.workflow_id or "draft"))
    else:
        graph = await WorkflowService(db).get_graph(str(request.workflow_id))

    bot_service = BotService(db)
    credentials = await bot_service.get_credentials(str(request.organization_id) if request.organization_id else None)
    business_context = await bot_service.get_business_context(str(request.bot_id)) if request.bot_id else None

    engine = build_engine(credentials, booking_store=harness_bookings, simulate_actions=True)
    session = WorkflowSession(
        session_id=request.session_id or str(uuid.uuid4()),
        organization_id=str(request.organization_id) if request.organization_id else None,
        bot_id=str(request.bot_id) if request.bot_id else None,
        contact_id="test-contact",
        workflow_id=str(request.workflow_id) if request.workflow_id else None,
        current_node_id=request.current_node_id,
        variables=dict(request.variables),
        conversation_history=list(request.conversation_history),
        business_context=business_context,
    )
    sink = QueueEventSink(step_delay=settings.TEST_STREAM_STEP_DELAY_SECONDS)

    async def run():
        try:
            result = await engine.execute(session, request.message, graph, sink=sink)
            await sink.emit(
                "complete",
                sessionId=result.session.session_id,
                currentNodeId=result.session.current_node_id,
                variables=result.session.variables,
                isActive=result.session.is_active,
            )
        except Exception as e:
            logger.exception("Test execution failed")
            await sink.emit("error", message=f"Workflow execution failed: {type(e).__name__}")
            await sink.emit("complete")
        finally:
            await sink.close()

    async def event_stream():
        task = asyncio.create_task(run())
        async for frame in sink.stream():
            yield frame
        await task

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


# ==================== GRAPH CRUD ====================

@router.get("/{workflow_id}/graph", response_model=WorkflowGraphResponse)
async def get_workflow_graph(
    workflow_id: UUID,
    db: AsyncSession = Depends(get_db)
):
    """Nodes and edges of a workflow in stored order."""
    service = WorkflowService(db)
    workflow = await service.get_workflow(str(workflow_id))
    payload = await service.get_graph_payload(str(workflow_id))
    return WorkflowGraphResponse(workflow_id=workflow.id, name=workflow.name, nodes=payload.nodes, edges=payload.edges)


@router.put("/{workflow_id}/graph", response_model=WorkflowGraphResponse)
async def save_workflow_graph(
    workflow_id: UUID,
    payload: WorkflowGraphPayload,
    db: AsyncSession = Depends(get_db)
):
    """
    Replace the workflow's graph.

    Rejected with 422 when the graph has duplicate node ids, dangling edges,
    more than one entry node, unknown node types, or two outgoing edges of
    one node that resolve to the same tag.
    """
    service = WorkflowService(db)
    workflow = await service.get_workflow(str(workflow_id))
    saved = await service.save_graph(str(workflow_id), payload)
    return WorkflowGraphResponse(workflow_id=workflow.id, name=workflow.name, nodes=saved.nodes, edges=saved.edges)


@router.post("/{workflow_id}/validate", response_model=GraphValidationResponse)
async def validate_workflow_graph(
    workflow_id: UUID,
    payload: WorkflowGraphPayload,
):
    """Check a graph without saving it."""
    graph = WorkflowGraph(payload.nodes, payload.edges, workflow_id=str(workflow_id))
    errors = graph.validate_graph()
    return GraphValidationResponse(valid=not errors, errors=errors)
