"""
Workflow engine.

One user message = one run of a small LangGraph:

    prepare_turn_node -> dispatch_node -> advance_node -+-> finalize_node -> END
                              ^                         |
                              +---- (pass-through) -----+

The workflow graph authored by the user is walked inside that loop; the
LangGraph itself only sequences dispatch, cursor movement and the final reply.
"""
from langgraph.graph import StateGraph, END
from langchain_core.runnables import RunnableConfig
from loguru import logger

from botflow.core.config import settings
from botflow.core.exceptions import GraphIntegrityError, GraphValidationError
from botflow.services.event_sink import EventSink
from botflow.services.workflow_graph import WorkflowGraph
from botflow.services.workflow_nodes import (
    HANDLER_ERROR_REPLY,
    PASS_THROUGH_TYPES,
    NodeContext,
    get_handler,
)
from botflow.services.workflow_state import (
    ExecutionResult,
    NodeResult,
    TurnState,
    WorkflowSession,
)


LOST_TRACK_REPLY = "I seem to have lost track of our conversation. Let me start over."
FALLBACK_REPLY = "I understand. How can I help you further?"


def _deps(config: RunnableConfig) -> dict:
    return config["configurable"]


# ============== NODE 1: Resolve where this turn starts ==============

async def prepare_turn_node(state: TurnState, config: RunnableConfig) -> dict:
    deps = _deps(config)
    graph: WorkflowGraph = deps["graph"]
    session = state["session"]

    update = {
        "steps": 0,
        "visited_node_ids": [],
        "replies": [],
        "variables": dict(session.variables),
        "pending_side_effects": [],
        "is_active": session.is_active,
        "consumed": False,
        "failed": False,
        "error": None,
    }

    try:
        if session.current_node_id:
            node = graph.get_node(session.current_node_id)
            if node is None:
                raise GraphIntegrityError(f"Node '{session.current_node_id}' is not in the workflow")
        else:
            node = graph.entry_node()
    except (GraphIntegrityError, GraphValidationError) as e:
        logger.error(f"Session {session.session_id}: {e}")
        await deps["sink"].emit("error", message=str(e))
        update.update(current_node=None, error="lost")
        return update

    update["current_node"] = node
    return update


def route_after_prepare(state: TurnState) -> str:
    if state.get("error") == "lost":
        return "finalize_node"
    return "dispatch_node"


# ============== NODE 2: Run the current node's handler ==============

async def dispatch_node(state: TurnState, config: RunnableConfig) -> dict:
    deps = _deps(config)
    node = state["current_node"]
    sink: EventSink = deps["sink"]

    await sink.emit("node_execution", nodeId=node.node_id, nodeName=node.title or node.type)

    ctx = NodeContext(
        session=state["session"],
        graph=deps["graph"],
        user_message=state["user_message"],
        variables=state["variables"],
        reasoning=deps.get("reasoning"),
        booking=deps.get("booking"),
        session_service=deps.get("session_service"),
        sink=sink,
        confidence_threshold=deps.get("confidence_threshold"),
    )

    handler = get_handler(node.type)
    try:
        result = await handler(node, ctx)
    except Exception:
        # handlers are wrapped already; this only catches bugs outside them
        logger.exception(f"Unhandled error dispatching node {node.node_id}")
        result = NodeResult(reply=HANDLER_ERROR_REPLY, failed=True)

    return {
        "last_result": result,
        "steps": state["steps"] + 1,
        "visited_node_ids": state["visited_node_ids"] + [node.node_id],
    }


# ============== NODE 3: Apply the result and move the cursor ==============

async def advance_node(state: TurnState, config: RunnableConfig) -> dict:
    deps = _deps(config)
    graph: WorkflowGraph = deps["graph"]
    sink: EventSink = deps["sink"]
    node = state["current_node"]
    result: NodeResult = state["last_result"]

    if result.failed:
        return {"failed": True, "continue_chain": False, "replies": [result.reply or HANDLER_ERROR_REPLY]}

    replies = list(state["replies"])
    if result.reply:
        replies.append(result.reply)
        await sink.emit("message", content=result.reply, nodeId=node.node_id)

    variables = dict(state["variables"])
    for name, value in result.variable_updates.items():
        variables[name] = value
        await sink.emit("variable_update", variable=name, value=value)

    update = {
        "replies": replies,
        "variables": variables,
        "pending_side_effects": state["pending_side_effects"] + list(result.side_effects),
        "consumed": state["consumed"] or node.type not in PASS_THROUGH_TYPES,
        "continue_chain": False,
    }

    if result.ended:
        update["is_active"] = False
        return update

    next_node = None
    if result.next_node_id:
        next_node = graph.get_node(result.next_node_id)
        if next_node is None:
            logger.warning(f"Node {node.node_id} pointed at missing node {result.next_node_id}")
    elif result.advance:
        edge = graph.find_edge(node.node_id, result.edge_tag)
        if edge is not None:
            next_node = graph.get_node(edge.target)

    if next_node is None:
        # conversation pauses on this node until the next message
        return update

    update["current_node"] = next_node

    max_steps = deps.get("max_steps") or settings.MAX_CHAINED_NODES
    if state["steps"] >= max_steps:
        logger.warning(f"Stopped after {max_steps} chained nodes in session {state['session'].session_id}")
        return update

    # a conversational node only runs if this turn's message is still unanswered
    if next_node.type in PASS_THROUGH_TYPES or not update["consumed"]:
        update["continue_chain"] = True
        await sink.pace()
    return update


def route_after_advance(state: TurnState) -> str:
    if state.get("continue_chain"):
        return "dispatch_node"
    return "finalize_node"


# ============== NODE 4: Make sure the user gets an answer ==============

async def finalize_node(state: TurnState, config: RunnableConfig) -> dict:
    deps = _deps(config)

    if state.get("error") == "lost":
        return {"replies": [LOST_TRACK_REPLY]}
    if state.get("failed") or state["replies"]:
        return {}

    node = state["current_node"]
    reasoning = deps.get("reasoning")
    if reasoning is None or not reasoning.is_configured:
        reply = FALLBACK_REPLY
    else:
        session = state["session"]
        reply = await reasoning.generate_response(
            node,
            session.conversation_history + [{"role": "user", "content": state["user_message"]}],
            business_context=session.business_context,
            session_data=state["variables"],
        )

    await deps["sink"].emit("message", content=reply, nodeId=node.node_id)
    return {"replies": [reply]}


def create_turn_graph():
    """
    Create and compile the LangGraph that executes one conversation turn.
    """
    workflow = StateGraph(TurnState)

    workflow.add_node("prepare_turn_node", prepare_turn_node)
    workflow.add_node("dispatch_node", dispatch_node)
    workflow.add_node("advance_node", advance_node)
    workflow.add_node("finalize_node", finalize_node)

    workflow.set_entry_point("prepare_turn_node")

    workflow.add_conditional_edges(
        "prepare_turn_node",
        route_after_prepare,
        {
            "dispatch_node": "dispatch_node",
            "finalize_node": "finalize_node",
        }
    )
    workflow.add_edge("dispatch_node", "advance_node")
    workflow.add_conditional_edges(
        "advance_node",
        route_after_advance,
        {
            "dispatch_node": "dispatch_node",
            "finalize_node": "finalize_node",
        }
    )
    workflow.add_edge("finalize_node", END)

    return workflow.compile()


# Create singleton instance
turn_graph = create_turn_graph()


class WorkflowEngine:
    """
    Executes one user message against a workflow graph.

    Dependencies are optional so the same engine serves the chat API
    (persisted sessions, live actions) and the test harness (ephemeral
    session, simulated actions).
    """

    def __init__(
        self,
        reasoning=None,
        booking=None,
        action_service=None,
        session_service=None,
        confidence_threshold: int | None = None,
        max_steps: int | None = None,
    ):
        self.reasoning = reasoning
        self.booking = booking
        self.action_service = action_service
        self.session_service = session_service
        self.confidence_threshold = confidence_threshold
        self.max_steps = max_steps or settings.MAX_CHAINED_NODES

    async def execute(
        self,
        session: WorkflowSession,
        incoming_message: str,
        graph: WorkflowGraph,
        sink: EventSink | None = None,
    ) -> ExecutionResult:
        """
        Run one turn.

        Args:
            session: Session as loaded before this message
            incoming_message: The user's message
            graph: Workflow graph the session belongs to
            sink: Optional event sink for step-by-step progress

        Returns:
            ExecutionResult with the reply and the updated session. When the
            turn fails, the returned session is the one passed in, unchanged.

        Raises:
            SessionConflictError: the session row changed while the turn ran
        """
        sink = sink or EventSink()
        config = {
            "configurable": {
                "graph": graph,
                "reasoning": self.reasoning,
                "booking": self.booking,
                "session_service": self.session_service,
                "sink": sink,
                "confidence_threshold": self.confidence_threshold,
                "max_steps": self.max_steps,
            },
            "recursion_limit": self.max_steps * 2 + 10,
        }

        try:
            final = await turn_graph.ainvoke(
                {"session": session, "user_message": incoming_message},
                config=config,
            )
        except Exception:
            logger.exception(f"Turn failed for session {session.session_id}")
            await sink.emit("error", message="Workflow execution failed")
            return ExecutionResult(reply=HANDLER_ERROR_REPLY, session=session, failed=True)

        reply = "\n\n".join(final["replies"])
        visited = final.get("visited_node_ids", [])

        if final.get("failed") or final.get("error") == "lost":
            return ExecutionResult(reply=reply, session=session, visited_node_ids=visited, failed=True)

        landing = final["current_node"]
        updated = session.model_copy(
            update={
                "current_node_id": landing.node_id,
                "variables": final["variables"],
                "is_active": final["is_active"],
                "conversation_history": session.conversation_history + [
                    {"role": "user", "content": incoming_message},
                    {"role": "assistant", "content": reply},
                ],
            }
        )

        if self.session_service is not None:
            updated = await self.session_service.save_turn(
                updated,
                expected_version=session.version,
                user_message=incoming_message,
                reply=reply,
                node_id=landing.node_id,
            )

        await self._run_side_effects(updated, final["pending_side_effects"], sink)

        return ExecutionResult(reply=reply, session=updated, visited_node_ids=visited)

    async def _run_side_effects(self, session: WorkflowSession, actions: list[dict], sink: EventSink) -> None:
        if not actions:
            return
        if self.action_service is None:
            logger.warning(f"Dropping {len(actions)} actions: no action service configured")
            return

        context = {
            "session_id": session.session_id,
            "contact_id": session.contact_id,
            "session_data": session.variables,
        }
        for action in actions:
            ok, message = await self.action_service.execute(action, context)
            await sink.emit("backend_log", content=message, data={"action": action, "ok": ok})
