from unittest.mock import AsyncMock, MagicMock

import pytest

from botflow.schemas.booking import BookingResult
from botflow.schemas.workflow import GraphNode
from botflow.services.event_sink import CollectingEventSink
from botflow.services.workflow_nodes import (
    BOOKING_UNAVAILABLE_REPLY,
    NO_AI_KEY_REPLY,
    NO_CONDITION_AI_REPLY,
    NO_REASONING_REPLY,
    UNKNOWN_NODE_REPLY,
    NodeContext,
    compare,
    get_handler,
    replace_variables,
)
from tests.conftest import make_graph, make_reasoning, make_session


def node(**kwargs) -> GraphNode:
    return GraphNode.model_validate(kwargs)


def context(graph=None, message="hi", variables=None, reasoning=None, **kwargs) -> NodeContext:
    return NodeContext(
        session=make_session(),
        graph=graph or make_graph([{"node_id": "n", "type": "message"}], []),
        user_message=message,
        variables=variables or {},
        reasoning=reasoning,
        sink=kwargs.pop("sink", CollectingEventSink()),
        **kwargs,
    )


class TestReplaceVariables:
    def test_known_names_substituted(self):
        assert replace_variables("{{x}} world", {"x": "hello"}) == "hello world"

    def test_unknown_names_left_literal(self):
        assert replace_variables("{{x}} {{y}}", {"x": "hello"}) == "hello {{y}}"

    def test_non_string_values(self):
        assert replace_variables("{{n}} items", {"n": 3}) == "3 items"


class TestCompare:
    @pytest.mark.parametrize(
        "actual, operator, expected, result",
        [
            ("gold", "equals", "gold", True),
            (None, "equals", "None", False),
            ("gold", "not_equals", "silver", True),
            ("premium plan", "contains", "plan", True),
            ("12", "greater_than", "10", True),
            ("abc", "greater_than", "10", False),
            (3, "less_than", 5, True),
            ("", "is_empty", None, True),
            ("x", "is_not_empty", None, True),
            ("x", "bogus", "x", False),
        ],
    )
    def test_operators(self, actual, operator, expected, result):
        assert compare(actual, operator, expected) is result


class TestConditionNode:
    @pytest.mark.asyncio
    async def test_variable_comparison_picks_true_edge(self):
        handler = get_handler("condition")
        result = await handler(
            node(node_id="c", type="condition", config={"variable": "plan", "operator": "equals", "value": "pro"}),
            context(variables={"plan": "pro"}),
        )
        assert result.advance
        assert result.edge_tag == "true"

    @pytest.mark.asyncio
    async def test_first_matching_edge_condition_wins(self):
        graph = make_graph(
            [
                {"node_id": "c", "type": "condition"},
                {"node_id": "yes", "type": "message"},
                {"node_id": "no", "type": "message"},
                {"node_id": "other", "type": "message"},
            ],
            [
                {"source": "c", "target": "yes", "condition": {"type": "contains_keyword", "keywords": ["yes"]}},
                {"source": "c", "target": "no", "condition": {"type": "contains_keyword", "keywords": ["no"]}},
                {"source": "c", "target": "other"},
            ],
        )
        reasoning = make_reasoning()
        reasoning.evaluate_condition = AsyncMock(side_effect=[False, True])

        result = await get_handler("condition")(graph.get_node("c"), context(graph=graph, message="no", reasoning=reasoning))

        assert result.next_node_id == "no"
        assert reasoning.evaluate_condition.await_count == 2

    @pytest.mark.asyncio
    async def test_falls_back_to_standard_edge(self):
        graph = make_graph(
            [{"node_id": "c", "type": "condition"}, {"node_id": "x", "type": "message"}],
            [{"source": "c", "target": "x", "condition": {"type": "regex_match", "pattern": "^\\d+$"}}],
        )
        result = await get_handler("condition")(
            graph.get_node("c"), context(graph=graph, message="abc", reasoning=make_reasoning())
        )
        assert result.next_node_id is None
        assert result.edge_tag == "standard"

    @pytest.mark.asyncio
    async def test_llm_condition_without_credential_stays_put(self):
        graph = make_graph(
            [{"node_id": "c", "type": "condition"}, {"node_id": "happy", "type": "message"}, {"node_id": "x", "type": "message"}],
            [
                {"source": "c", "target": "happy", "condition": {"type": "sentiment_analysis", "sentiment": "positive"}},
                {"source": "c", "target": "x"},
            ],
        )
        result = await get_handler("condition")(graph.get_node("c"), context(graph=graph, message="great!"))

        assert result.reply == NO_CONDITION_AI_REPLY
        assert not result.failed
        assert not result.advance

    @pytest.mark.asyncio
    async def test_keyword_condition_evaluated_without_credential(self):
        graph = make_graph(
            [{"node_id": "c", "type": "condition"}, {"node_id": "happy", "type": "message"}, {"node_id": "yes", "type": "message"}],
            [
                {"source": "c", "target": "happy", "condition": {"type": "sentiment_analysis", "sentiment": "positive"}},
                {"source": "c", "target": "yes", "condition": {"type": "contains_keyword", "keywords": ["yes"]}},
            ],
        )
        result = await get_handler("condition")(graph.get_node("c"), context(graph=graph, message="Yes please"))

        assert result.advance
        assert result.next_node_id == "yes"

    @pytest.mark.asyncio
    async def test_node_actions_queued_when_passing(self):
        graph = make_graph(
            [{"node_id": "c", "type": "condition", "actions": [{"type": "add_tag", "data": {"tags": ["seen"]}}]}],
            [],
        )
        result = await get_handler("condition")(graph.get_node("c"), context(graph=graph, reasoning=make_reasoning()))

        assert result.edge_tag == "standard"
        assert [a["type"] for a in result.side_effects] == ["add_tag"]


class TestVariableNode:
    @pytest.mark.asyncio
    async def test_sets_templated_value(self):
        result = await get_handler("variable")(
            node(node_id="v", type="variable", config={"variable_name": "greeting", "value": "Hi {{name}}"}),
            context(variables={"name": "Lee"}),
        )
        assert result.variable_updates == {"greeting": "Hi Lee"}
        assert result.edge_tag == "standard"


class TestActionNode:
    @pytest.mark.asyncio
    async def test_queues_actions_and_describes_them(self):
        result = await get_handler("action")(
            node(
                node_id="a",
                type="action",
                config={"action_type": "add_tag", "tag": "vip"},
                actions=[{"type": "update_contact", "data": {"fields": {"city": "Oslo"}}}],
            ),
            context(),
        )
        assert len(result.side_effects) == 2
        assert result.variable_updates == {"contact_updated": True}
        assert result.reply == (
            'Tag "vip" has been added to the contact.\nContact information has been updated.'
        )

    @pytest.mark.asyncio
    async def test_configured_message_overrides_description(self):
        result = await get_handler("ghl_action")(
            node(node_id="a", type="ghl_action", config={"action_type": "create_opportunity", "message": "Done!"}),
            context(),
        )
        assert result.reply == "Done!"
        assert result.variable_updates == {"opportunity_created": True}


class TestConversationalNodes:
    @pytest.mark.asyncio
    async def test_milestone_without_reasoning(self):
        result = await get_handler("milestone")(node(node_id="m", type="milestone"), context())
        assert result.reply == NO_REASONING_REPLY
        assert not result.advance

    @pytest.mark.asyncio
    async def test_milestone_success_actions(self):
        reasoning = make_reasoning({"achieved": True, "confidence": 100, "suggestedResponse": "Great"})
        result = await get_handler("milestone")(
            node(
                node_id="m",
                type="milestone",
                actions=[{"type": "add_tag", "data": {"tags": ["a"]}}],
                config={"successActions": [{"type": "remove_tag", "data": {"tags": ["b"]}}]},
            ),
            context(reasoning=reasoning, confidence_threshold=70),
        )
        assert result.edge_tag == "goal_achieved"
        assert [a["type"] for a in result.side_effects] == ["add_tag", "remove_tag"]

    @pytest.mark.asyncio
    async def test_ai_node_stores_reply(self):
        reasoning = make_reasoning(response="42")
        result = await get_handler("ai")(
            node(
                node_id="ai",
                type="ai",
                config={"system_prompt": "Answer for {{name}}", "include_history": False, "store_in_variable": "answer"},
            ),
            context(reasoning=reasoning, variables={"name": "Kim"}, message="meaning of life?"),
        )
        assert result.reply == "42"
        assert result.variable_updates == {"answer": "42"}
        prompt, messages = reasoning.generate_text.await_args.args
        assert prompt == "Answer for Kim"
        assert messages == [{"role": "user", "content": "meaning of life?"}]

    @pytest.mark.asyncio
    async def test_ai_node_keeps_zero_temperature(self):
        reasoning = make_reasoning()
        await get_handler("ai")(node(node_id="ai", type="ai", config={"temperature": 0}), context(reasoning=reasoning))
        assert reasoning.generate_text.await_args.kwargs["temperature"] == 0

    @pytest.mark.asyncio
    async def test_ai_node_default_temperature(self):
        reasoning = make_reasoning()
        await get_handler("ai")(node(node_id="ai", type="ai"), context(reasoning=reasoning))
        assert reasoning.generate_text.await_args.kwargs["temperature"] == 0.7

    @pytest.mark.asyncio
    async def test_message_node_passes_filled_in_text(self):
        reasoning = make_reasoning()
        result = await get_handler("message")(
            node(
                node_id="m",
                type="message",
                config={"message": "Hi {{name}}"},
                actions=[{"type": "add_tag", "data": {"tags": ["greeted"]}}],
            ),
            context(reasoning=reasoning, variables={"name": "Ana"}),
        )
        assert reasoning.generate_response.await_args.kwargs["message_text"] == "Hi Ana"
        assert [a["type"] for a in result.side_effects] == ["add_tag"]

    @pytest.mark.asyncio
    async def test_message_node_without_reasoning_uses_text(self):
        result = await get_handler("message")(
            node(node_id="m", type="message", config={"message": "Hi {{name}}"}),
            context(variables={"name": "Ana"}),
        )
        assert result.reply == "Hi Ana"

    @pytest.mark.asyncio
    async def test_ai_node_without_key(self):
        result = await get_handler("ai")(node(node_id="ai", type="ai"), context())
        assert result.reply == NO_AI_KEY_REPLY

    @pytest.mark.asyncio
    async def test_appointment_without_booking(self):
        result = await get_handler("appointment")(
            node(node_id="b", type="appointment"), context(reasoning=make_reasoning())
        )
        assert result.reply == BOOKING_UNAVAILABLE_REPLY

    @pytest.mark.asyncio
    async def test_confirmed_booking_advances(self):
        booking = MagicMock()
        booking.process_booking_request = AsyncMock(
            return_value=BookingResult(success=True, status="confirmed", message="Booked", appointment_id="apt-1")
        )
        result = await get_handler("appointment")(
            node(node_id="b", type="appointment", calendar_ids=["cal-1"]),
            context(reasoning=make_reasoning(), booking=booking, message="1"),
        )
        request = booking.process_booking_request.await_args.args[0]
        assert request.calendar_ids == ["cal-1"]
        assert result.edge_tag == "goal_achieved"
        assert result.variable_updates == {"lastBookingStatus": "confirmed", "appointmentId": "apt-1"}

    @pytest.mark.asyncio
    async def test_booking_actions_only_when_confirmed(self):
        booking = MagicMock()
        booking.process_booking_request = AsyncMock(
            side_effect=[
                BookingResult(success=True, status="proposed", message="Pick one"),
                BookingResult(success=True, status="confirmed", message="Booked", appointment_id="apt-1"),
            ]
        )
        booking_node = node(
            node_id="b", type="appointment", calendar_ids=["cal-1"], actions=[{"type": "add_tag", "data": {"tags": ["booked"]}}]
        )

        proposed = await get_handler("appointment")(booking_node, context(reasoning=make_reasoning(), booking=booking))
        confirmed = await get_handler("appointment")(booking_node, context(reasoning=make_reasoning(), booking=booking, message="1"))

        assert proposed.side_effects == []
        assert [a["type"] for a in confirmed.side_effects] == ["add_tag"]


class TestErrorsAndEnd:
    @pytest.mark.asyncio
    async def test_handler_exception_becomes_failed_result(self):
        reasoning = make_reasoning()
        reasoning.generate_response = AsyncMock(side_effect=ValueError("bad"))
        sink = CollectingEventSink()

        result = await get_handler("message")(node(node_id="m", type="message"), context(reasoning=reasoning, sink=sink))

        assert result.failed
        assert sink.of_type("error")[0]["nodeId"] == "m"

    @pytest.mark.asyncio
    async def test_unknown_type(self):
        result = await get_handler("teleport")(node(node_id="t", type="teleport"), context())
        assert result.reply == UNKNOWN_NODE_REPLY

    @pytest.mark.asyncio
    async def test_end_node_ends(self):
        result = await get_handler("end")(
            node(node_id="e", type="end", config={"message": "Bye {{name}}"}), context(variables={"name": "Jo"})
        )
        assert result.ended
        assert result.reply == "Bye Jo"

    @pytest.mark.asyncio
    async def test_end_node_queues_actions(self):
        result = await get_handler("end")(
            node(node_id="e", type="end", actions=[{"type": "add_tag", "data": {"tags": ["done"]}}]), context()
        )
        assert [a["type"] for a in result.side_effects] == ["add_tag"]
