"""
Node handlers.

Each handler receives the node and a NodeContext and returns a NodeResult.
Handlers never touch the session directly: the engine applies variable
updates, runs side effects and moves the cursor.
"""
import re
from functools import wraps
from typing import Any

from loguru import logger

from botflow.core.config import settings
from botflow.schemas.booking import BookingRequest
from botflow.schemas.workflow import GraphNode
from botflow.services.action_service import action_data_of, action_type_of, describe_action
from botflow.services.event_sink import EventSink
from botflow.services.reasoning_service import ReasoningService
from botflow.services.workflow_graph import WorkflowGraph
from botflow.services.workflow_state import NodeResult, WorkflowSession


HANDLER_ERROR_REPLY = "I encountered an error. Please try again."
NO_REASONING_REPLY = "I need to be configured with AI capabilities to continue."
BOOKING_UNAVAILABLE_REPLY = "I apologize, but appointment booking is not currently available."
UNKNOWN_NODE_REPLY = "I encountered an unexpected situation. Please contact support."
DEFAULT_END_REPLY = "Thank you for your time. This conversation has ended."
NO_AI_KEY_REPLY = "OpenAI API key not configured. Please add your API key in settings."
NO_CONDITION_AI_REPLY = "I need AI capabilities to evaluate conditions."

# Edge condition types that need the LLM
LLM_CONDITION_TYPES = {"sentiment_analysis", "intent_matching", "custom_logic"}

VARIABLE_PATTERN = re.compile(r"\{\{(\w+)\}\}")


def replace_variables(template: str, variables: dict[str, Any]) -> str:
    """Substitute {{name}} placeholders. Unknown names are left as written."""

    def substitute(match):
        name = match.group(1)
        if name in variables and variables[name] is not None:
            return str(variables[name])
        return match.group(0)

    return VARIABLE_PATTERN.sub(substitute, template)


class NodeContext:
    """Everything a handler may read during one turn."""

    def __init__(
        self,
        session: WorkflowSession,
        graph: WorkflowGraph,
        user_message: str,
        variables: dict[str, Any],
        reasoning=None,
        booking=None,
        session_service=None,
        sink: EventSink | None = None,
        confidence_threshold: int | None = None,
    ):
        self.session = session
        self.graph = graph
        self.user_message = user_message
        self.variables = variables
        self.reasoning = reasoning
        self.booking = booking
        self.session_service = session_service
        self.sink = sink or EventSink()
        self.confidence_threshold = (
            confidence_threshold if confidence_threshold is not None else settings.GOAL_CONFIDENCE_THRESHOLD
        )

    @property
    def business_context(self) -> dict | None:
        return self.session.business_context

    @property
    def history(self) -> list[dict]:
        """Conversation before this turn's message."""
        return self.session.conversation_history

    def history_with_message(self) -> list[dict]:
        return self.history + [{"role": "user", "content": self.user_message}]

    @property
    def has_reasoning(self) -> bool:
        return self.reasoning is not None and self.reasoning.is_configured


def safe_handler(func):
    """Convert any exception raised by a handler into a failed NodeResult."""

    @wraps(func)
    async def wrapper(node: GraphNode, ctx: NodeContext) -> NodeResult:
        try:
            return await func(node, ctx)
        except Exception as e:
            logger.exception(
                f"{node.type} node '{node.node_id}' failed in session {ctx.session.session_id}"
            )
            await ctx.sink.emit("error", message=f"Node {node.node_id} failed: {type(e).__name__}", nodeId=node.node_id)
            return NodeResult(reply=HANDLER_ERROR_REPLY, failed=True)

    return wrapper


# ============== MILESTONE ==============

@safe_handler
async def milestone_node(node: GraphNode, ctx: NodeContext) -> NodeResult:
    """
    Evaluate the goal and pick one of three branches:
    achieved, confidently not achieved, or keep trying on this node.
    """
    if not ctx.has_reasoning:
        logger.warning(f"Milestone '{node.node_id}' reached without an LLM credential")
        return NodeResult(reply=NO_REASONING_REPLY)

    goal = node.goal_description or node.description or ""
    evaluation = await ctx.reasoning.evaluate_goal(
        goal=goal,
        possible_outcomes=node.possible_outcomes,
        user_message=ctx.user_message,
        conversation_history=ctx.history,
        business_context=ctx.business_context,
        session_data=ctx.variables,
    )

    if ctx.session_service is not None:
        await ctx.session_service.log_goal_evaluation(
            ctx.session.session_id, node.node_id, ctx.user_message, evaluation
        )

    await ctx.sink.emit(
        "backend_log",
        content=f"Goal evaluation: achieved={evaluation.achieved} confidence={evaluation.confidence}",
        data=evaluation.model_dump(by_alias=True),
    )

    result = NodeResult(variable_updates=dict(evaluation.extracted_data))
    confident = evaluation.confidence >= ctx.confidence_threshold

    if evaluation.achieved and confident:
        result.advance = True
        result.edge_tag = "goal_achieved"
        result.side_effects = list(node.actions) + list(node.config.get("successActions") or [])
    elif not evaluation.achieved and confident and ctx.graph.find_edge(node.node_id, "goal_not_achieved"):
        result.advance = True
        result.edge_tag = "goal_not_achieved"

    if evaluation.suggested_response:
        result.reply = evaluation.suggested_response
    else:
        result.reply = await ctx.reasoning.generate_response(
            node,
            ctx.history_with_message(),
            business_context=ctx.business_context,
            session_data={**ctx.variables, **result.variable_updates},
        )
    return result


# ============== MESSAGE ==============

@safe_handler
async def message_node(node: GraphNode, ctx: NodeContext) -> NodeResult:
    content = node.config.get("message") or node.config.get("content") or node.description or ""
    content = replace_variables(content, ctx.variables)

    if ctx.has_reasoning:
        reply = await ctx.reasoning.generate_response(
            node,
            ctx.history_with_message(),
            business_context=ctx.business_context,
            session_data=ctx.variables,
            message_text=content,
        )
    else:
        reply = content

    return NodeResult(
        reply=reply,
        advance=True,
        edge_tag="standard",
        variable_updates={f"response_{node.node_id}": ctx.user_message},
        side_effects=list(node.actions),
    )


# ============== APPOINTMENT ==============

@safe_handler
async def appointment_node(node: GraphNode, ctx: NodeContext) -> NodeResult:
    if ctx.booking is None or not ctx.has_reasoning:
        logger.warning(f"Booking node '{node.node_id}' reached without booking support configured")
        return NodeResult(reply=BOOKING_UNAVAILABLE_REPLY)

    calendar_ids = node.calendar_ids or [
        c for c in [node.config.get("calendar_id")] if c
    ]
    outcome = await ctx.booking.process_booking_request(
        BookingRequest(
            session_id=ctx.session.session_id,
            node_id=node.node_id,
            contact_id=ctx.session.contact_id,
            user_message=ctx.user_message,
            calendar_ids=calendar_ids,
            conversation_history=ctx.history,
            session_data=ctx.variables,
        )
    )

    await ctx.sink.emit(
        "backend_log",
        content=f"Booking status: {outcome.status}",
        data=outcome.model_dump(mode="json"),
    )

    updates = {"lastBookingStatus": outcome.status}
    if outcome.appointment_id:
        updates["appointmentId"] = outcome.appointment_id
    if outcome.confirmed_time:
        updates["appointmentTime"] = outcome.confirmed_time.isoformat()

    result = NodeResult(reply=outcome.message, variable_updates=updates)
    if outcome.status == "confirmed":
        result.advance = True
        result.edge_tag = "goal_achieved"
        result.side_effects = list(node.actions)
    return result


# ============== CONDITION ==============

def compare(actual: Any, operator: str, expected: Any) -> bool:
    if operator == "equals":
        return actual is not None and str(actual) == str(expected)
    if operator == "not_equals":
        return actual is None or str(actual) != str(expected)
    if operator == "contains":
        return bool(actual) and str(expected) in str(actual)
    if operator in ("greater_than", "less_than"):
        try:
            left, right = float(actual), float(expected)
        except (TypeError, ValueError):
            return False
        return left > right if operator == "greater_than" else left < right
    if operator == "is_empty":
        return actual is None or actual == ""
    if operator == "is_not_empty":
        return actual is not None and actual != ""
    logger.warning(f"Unknown condition operator: {operator!r}")
    return False


@safe_handler
async def condition_node(node: GraphNode, ctx: NodeContext) -> NodeResult:
    """
    Node-level comparisons resolve to the "true"/"false" edge. Otherwise the
    conditions carried on outgoing edges are tried in stored order and the
    first one that holds wins, with the standard edge as fallback.

    Without an LLM credential, LLM-typed conditions are skipped; if nothing
    else matched the node stays put and says so.
    """
    config = node.config
    if config.get("variable"):
        operator = config.get("operator") or "equals"
        met = compare(ctx.variables.get(config["variable"]), operator, config.get("value"))
        await ctx.sink.emit(
            "backend_log",
            content=f"Condition: {config['variable']} {operator} {config.get('value')} = {'TRUE' if met else 'FALSE'}",
            data={"nodeId": node.node_id, "result": met},
        )
        return NodeResult(advance=True, edge_tag="true" if met else "false", side_effects=list(node.actions))

    evaluator = ctx.reasoning or ReasoningService(None)
    skipped_llm_condition = False
    for edge in ctx.graph.outgoing_edges(node.node_id):
        if not edge.condition:
            continue
        if edge.condition.get("type") in LLM_CONDITION_TYPES and not ctx.has_reasoning:
            skipped_llm_condition = True
            continue
        met = await evaluator.evaluate_condition(
            edge.condition,
            ctx.user_message,
            ctx.history,
            ctx.variables,
        )
        if met:
            await ctx.sink.emit(
                "backend_log",
                content=f"Condition '{edge.condition.get('type')}' matched, going to {edge.target}",
                data={"nodeId": node.node_id, "target": edge.target},
            )
            return NodeResult(advance=True, next_node_id=edge.target, side_effects=list(node.actions))

    if skipped_llm_condition:
        logger.warning(f"Condition node '{node.node_id}' needs an LLM credential to evaluate its edges")
        return NodeResult(reply=NO_CONDITION_AI_REPLY)

    return NodeResult(advance=True, edge_tag="standard", side_effects=list(node.actions))


# ============== VARIABLE ==============

@safe_handler
async def variable_node(node: GraphNode, ctx: NodeContext) -> NodeResult:
    name = node.config.get("variable_name")
    value = node.config.get("value", "")
    if isinstance(value, str):
        value = replace_variables(value, ctx.variables)

    updates = {name: value} if name else {}
    return NodeResult(advance=True, edge_tag="standard", variable_updates=updates)


# ============== ACTION ==============

@safe_handler
async def action_node(node: GraphNode, ctx: NodeContext) -> NodeResult:
    actions = []
    if node.config.get("action_type"):
        actions.append(dict(node.config))
    actions.extend(node.actions)

    updates = {}
    for action in actions:
        action_type = action_type_of(action)
        if action_type == "update_contact":
            updates["contact_updated"] = True
        elif action_type == "create_opportunity":
            updates["opportunity_created"] = True
        logger.debug(f"Queued {action_type} with {action_data_of(action)}")

    reply = node.config.get("message") or "\n".join(describe_action(a) for a in actions) or None
    return NodeResult(
        reply=reply,
        advance=True,
        edge_tag="standard",
        side_effects=actions,
        variable_updates=updates,
    )


# ============== AI ==============

@safe_handler
async def ai_node(node: GraphNode, ctx: NodeContext) -> NodeResult:
    if not ctx.has_reasoning:
        return NodeResult(reply=NO_AI_KEY_REPLY)

    config = node.config
    system_prompt = replace_variables(
        config.get("system_prompt") or "You are a helpful AI assistant.", ctx.variables
    )
    if config.get("include_history", True):
        messages = ctx.history_with_message()
    else:
        messages = [{"role": "user", "content": ctx.user_message}]

    await ctx.sink.emit(
        "backend_log",
        content=f"Calling OpenAI {config.get('model') or settings.OPENAI_FAST_MODEL} API...",
        data={"messageCount": len(messages) + 1},
    )
    reply = await ctx.reasoning.generate_text(
        system_prompt,
        messages,
        temperature=0.7 if config.get("temperature") is None else config["temperature"],
        max_tokens=config.get("max_tokens") or 500,
        model=config.get("model"),
        business_context=ctx.business_context,
    )

    updates = {}
    if config.get("store_in_variable"):
        updates[config["store_in_variable"]] = reply
    return NodeResult(reply=reply, advance=True, variable_updates=updates)


# ============== START / END ==============

@safe_handler
async def start_node(node: GraphNode, ctx: NodeContext) -> NodeResult:
    return NodeResult(advance=True)


@safe_handler
async def end_node(node: GraphNode, ctx: NodeContext) -> NodeResult:
    reply = node.config.get("message") or node.description or DEFAULT_END_REPLY
    return NodeResult(reply=replace_variables(reply, ctx.variables), ended=True, side_effects=list(node.actions))


async def unknown_node(node: GraphNode, ctx: NodeContext) -> NodeResult:
    logger.error(f"No handler for node type '{node.type}' (node {node.node_id})")
    return NodeResult(reply=UNKNOWN_NODE_REPLY)


NODE_HANDLERS = {
    "milestone": milestone_node,
    "message": message_node,
    "appointment": appointment_node,
    "book_appointment": appointment_node,
    "condition": condition_node,
    "variable": variable_node,
    "action": action_node,
    "ghl_action": action_node,
    "ai": ai_node,
    "start": start_node,
    "end": end_node,
}

# Types that run straight through within the same turn
PASS_THROUGH_TYPES = {"start", "condition", "variable", "action", "ghl_action", "end"}


def get_handler(node_type: str):
    return NODE_HANDLERS.get(node_type, unknown_node)
