"""Unit tests for the flow execution engine."""

import pytest

from flowbot_core.errors import FlowTerminatedError
from flowbot_core.flow.builder import FlowBuilder
from flowbot_core.flow.conditions import ConversationEvent
from flowbot_core.flow.engine import ActionType, FlowConfig, FlowEngine, render_text
from flowbot_core.flow.models import (
    ConditionNodeConfig,
    ConditionType,
    DelayConfig,
    Edge,
    EndConfig,
    FlowGraph,
    FunctionConfig,
    InputConfig,
    MessageConfig,
    Node,
    NodeKind,
    TemplateConfig,
    UpdateContactConfig,
    UserInputCondition,
    WebhookConfig,
)
from flowbot_core.flow.state import ExecutionStatus, FailureReason


def say(text, intent=None):
    return ConversationEvent.message(text, intent=intent)


class TestStart:
    """Tests for starting a conversation."""

    def test_start_state(self, engine, greeting_graph):
        """Test a new conversation sits at the start node."""
        state = engine.start(greeting_graph, "conv_1", {"name": "Ana"})

        assert state.conversation_id == "conv_1"
        assert state.flow_id == "greeting"
        assert state.current_node_id == "start"
        assert state.status == ExecutionStatus.RUNNING
        assert state.context == {"name": "Ana"}
        assert not state.started

    def test_generated_conversation_id(self, engine, greeting_graph):
        """Test conversation ids are generated when omitted."""
        state = engine.start(greeting_graph)

        assert state.conversation_id.startswith("conv_")

    def test_missing_start_node(self, engine):
        """Test a graph without its start node fails immediately."""
        graph = FlowGraph(flow_id="broken", nodes=(Node("a", NodeKind.END),), start_node_id="ghost")

        state = engine.start(graph, "conv_1")

        assert state.status == ExecutionStatus.FAILED
        assert state.failure_reason == FailureReason.STRUCTURAL_ERROR


class TestKeywordScenario:
    """Start -(keyword hi)-> Greeting -(always)-> End."""

    def test_end_to_end(self, engine, greeting_graph):
        """Test the conversation reaches End with its message."""
        state = engine.start(greeting_graph, "conv_1", {"name": "Ana"})

        first = engine.step(greeting_graph, state, say("hi there"))

        assert first.state.current_node_id == "greeting"
        assert first.status == ExecutionStatus.RUNNING
        assert first.messages == ["Hello Ana!"]

        second = engine.step(greeting_graph, first.state, say("anything"))

        assert second.state.current_node_id == "end"
        assert second.status == ExecutionStatus.COMPLETED
        assert second.messages == ["Bye"]
        assert second.actions[-1].type == ActionType.COMPLETE
        assert second.actions[-1].payload["message"] == "Bye"

    def test_transition_log(self, engine, greeting_graph):
        """Test transitions and visited nodes are recorded."""
        state = engine.start(greeting_graph, "conv_1")
        state = engine.step(greeting_graph, state, say("hi")).state
        state = engine.step(greeting_graph, state, say("ok")).state

        assert state.visited_nodes == ["start", "greeting", "end"]
        assert [(t.from_node, t.to_node, t.trigger) for t in state.transitions] == [
            (None, "start", "start"),
            ("start", "greeting", "keyword"),
            ("greeting", "end", "always"),
        ]
        assert state.transitions[1].edge_id == "e1"

    def test_no_matching_edge(self, engine, greeting_graph):
        """Test an unmatched message fails the conversation."""
        state = engine.start(greeting_graph, "conv_1")

        result = engine.step(greeting_graph, state, say("hello"))

        assert result.status == ExecutionStatus.FAILED
        assert result.state.failure_reason == FailureReason.NO_MATCHING_EDGE
        assert result.actions[-1].type == ActionType.FAIL
        assert result.actions[-1].payload["message"] == "Something went wrong."

    def test_step_is_pure(self, engine, greeting_graph):
        """Test the input state is never mutated."""
        state = engine.start(greeting_graph, "conv_1")
        before = state.to_dict()

        result = engine.step(greeting_graph, state, say("hi"))

        assert state.to_dict() == before
        assert result.state is not state

    def test_same_input_same_result(self, engine, greeting_graph):
        """Test stepping the same state twice is deterministic."""
        state = engine.start(greeting_graph, "conv_1")

        a = engine.step(greeting_graph, state, say("hi"))
        b = engine.step(greeting_graph, state, say("hi"))

        assert a.state.current_node_id == b.state.current_node_id
        assert [x.to_dict() for x in a.actions] == [x.to_dict() for x in b.actions]

    def test_terminal_state_rejects_events(self, engine, greeting_graph):
        """Test events after completion raise."""
        state = engine.start(greeting_graph, "conv_1")
        state = engine.step(greeting_graph, state, say("hi")).state
        state = engine.step(greeting_graph, state, say("bye")).state

        with pytest.raises(FlowTerminatedError):
            engine.step(greeting_graph, state, say("again"))

    def test_captures_last_message_and_intent(self, engine, greeting_graph):
        """Test the message and intent are merged into context."""
        state = engine.start(greeting_graph, "conv_1")

        result = engine.step(greeting_graph, state, say("hi", intent="greet"))

        assert result.state.context["last_message"] == "hi"
        assert result.state.context["last_intent"] == "greet"


class TestWaitScenario:
    """Ask -(wait)-> Answer -(user_input yes)-> Done."""

    def test_first_event_suspends(self, engine, confirm_graph):
        """Test entering a node with a wait edge suspends."""
        state = engine.start(confirm_graph, "conv_1")

        result = engine.step(confirm_graph, state, say("hello"))

        assert result.status == ExecutionStatus.WAITING_FOR_REPLY
        assert result.state.current_node_id == "answer"
        assert result.messages == ["Continue?"]
        assert [a.type for a in result.actions] == [
            ActionType.SEND_MESSAGE,
            ActionType.REQUEST_INPUT,
            ActionType.SUSPEND,
        ]

    def test_matching_reply(self, engine, confirm_graph):
        """Test the expected reply transitions onwards."""
        state = engine.start(confirm_graph, "conv_1")
        state = engine.step(confirm_graph, state, say("hello")).state

        result = engine.step(confirm_graph, state, say("yes"))

        assert result.state.current_node_id == "done"
        assert result.status == ExecutionStatus.COMPLETED
        assert result.state.context["user_input"] == "yes"

    def test_other_reply_fails(self, engine, confirm_graph):
        """Test any other reply has no matching edge."""
        state = engine.start(confirm_graph, "conv_1")
        state = engine.step(confirm_graph, state, say("hello")).state

        result = engine.step(confirm_graph, state, say("no"))

        assert result.status == ExecutionStatus.FAILED
        assert result.state.failure_reason == FailureReason.NO_MATCHING_EDGE
        assert result.state.context["user_input"] == "no"

    def test_user_input_edge_ignored_while_running(self, engine):
        """Test user_input edges need an awaited reply."""
        graph = FlowGraph(
            flow_id="f",
            nodes=(Node("a", NodeKind.MESSAGE, MessageConfig("hi")), Node("b", NodeKind.END)),
            edges=(Edge("e", "a", "b", ConditionType.USER_INPUT, UserInputCondition("")),),
            start_node_id="a",
        )

        result = engine.step(graph, engine.start(graph, "c"), say("anything"))

        assert result.state.failure_reason == FailureReason.NO_MATCHING_EDGE

    def test_input_key_capture(self, engine):
        """Test the reply is stored under the input node's key."""
        graph = (
            FlowBuilder("age")
            .message("ask", "How old are you?")
            .wait_for_reply()
            .input("age", "Type a number", input_type="number", input_key="age")
            .goto("done")
            .end("done", "You are {age}.")
            .build()
        )
        state = engine.start(graph, "conv_1")
        state = engine.step(graph, state, say("start")).state

        result = engine.step(graph, state, say("41"))

        assert result.state.context["age"] == 41
        assert result.messages == ["You are 41."]
        assert result.status == ExecutionStatus.COMPLETED


class TestNodeActions:
    """Tests for actions emitted when entering nodes."""

    def _enter(self, engine, node):
        graph = FlowGraph(
            flow_id="f",
            nodes=(Node("start", NodeKind.MESSAGE), node, Node("end", NodeKind.END)),
            edges=(Edge("e1", "start", node.id), Edge("e2", node.id, "end")),
            start_node_id="start",
        )
        state = engine.start(graph, "c", {"city": "Recife"})
        return engine.step(graph, state, say("go"))

    def test_empty_message_sends_nothing(self, engine):
        """Test message nodes without text emit no action."""
        result = self._enter(engine, Node("m", NodeKind.MESSAGE, MessageConfig("")))

        assert result.actions == []

    def test_function(self, engine):
        """Test function nodes request a call."""
        node = Node("fn", NodeKind.FUNCTION, FunctionConfig("lookup_order", {"id": 7}))

        action = self._enter(engine, node).actions[0]

        assert action.type == ActionType.CALL_FUNCTION
        assert action.payload == {"function_name": "lookup_order", "parameters": {"id": 7}}
        assert action.node_id == "fn"

    def test_webhook_renders_url(self, engine):
        """Test webhook URLs are rendered from context."""
        node = Node("wh", NodeKind.WEBHOOK, WebhookConfig("https://api.example.com/{city}"))

        action = self._enter(engine, node).actions[0]

        assert action.type == ActionType.CALL_WEBHOOK
        assert action.payload["url"] == "https://api.example.com/Recife"
        assert action.payload["method"] == "POST"

    def test_template(self, engine):
        """Test template nodes render variables."""
        node = Node("t", NodeKind.TEMPLATE, TemplateConfig("welcome", "MG123", {"1": "{city}", "2": 5}))

        action = self._enter(engine, node).actions[0]

        assert action.type == ActionType.SEND_TEMPLATE
        assert action.payload["variables"] == {"1": "Recife", "2": 5}

    def test_delay(self, engine):
        """Test delay nodes emit a delay action."""
        action = self._enter(engine, Node("d", NodeKind.DELAY, DelayConfig(90, blocking=False))).actions[0]

        assert action.type == ActionType.DELAY
        assert action.payload == {"seconds": 90, "blocking": False}

    def test_update_contact(self, engine):
        """Test contact update nodes send only the configured fields."""
        config = UpdateContactConfig(
            name="Ann",
            location="{city}",
            additional_attributes={"city": "{city}"},
            custom_attributes={"score": 3},
        )

        result = self._enter(engine, Node("uc", NodeKind.UPDATE_CONTACT, config))
        action = result.actions[0]

        assert action.type == ActionType.UPDATE_CONTACT
        assert action.node_id == "uc"
        assert action.payload == {
            "name": "Ann",
            "location": "Recife",
            "additional_attributes": {"city": "Recife"},
            "custom_attributes": {"score": 3},
        }
        assert result.state.current_node_id == "uc"

    def test_ai_and_input(self, engine):
        """Test AI and input nodes."""
        ai = self._enter(engine, Node("ai", NodeKind.AI)).actions[0]
        ask = self._enter(engine, Node("in", NodeKind.INPUT, InputConfig("Email?", "email", "email"))).actions[0]

        assert ai.type == ActionType.AI_REPLY
        assert ask.type == ActionType.REQUEST_INPUT
        assert ask.payload["input_key"] == "email"


class TestConditionNodes:
    """Tests for condition router nodes."""

    def test_routes_same_event(self, engine):
        """Test a condition node dispatches the event that entered it."""
        graph = (
            FlowBuilder("router")
            .message("start", "")
            .condition("check", "Is VIP?")
                .when("is_vip", "vip")
                .otherwise("regular")
            .message("vip", "Welcome back, VIP!")
            .end("vip_end")
            .message("regular", "Welcome!")
            .end("regular_end")
            .build()
        )

        vip = engine.step(graph, engine.start(graph, "c1", {"is_vip": True}), say("hi"))
        regular = engine.step(graph, engine.start(graph, "c2"), say("hi"))

        assert vip.state.current_node_id == "vip"
        assert vip.messages == ["Welcome back, VIP!"]
        assert regular.state.current_node_id == "regular"

    def test_step_limit(self, engine_config):
        """Test a loop of condition nodes hits the step limit."""
        engine_config.max_steps_per_event = 5
        engine = FlowEngine(config=engine_config)
        graph = FlowGraph(
            flow_id="loop",
            nodes=(
                Node("a", NodeKind.CONDITION, ConditionNodeConfig()),
                Node("b", NodeKind.CONDITION, ConditionNodeConfig()),
            ),
            edges=(Edge("ab", "a", "b"), Edge("ba", "b", "a")),
            start_node_id="a",
        )

        result = engine.step(graph, engine.start(graph, "c"), say("x"))

        assert result.status == ExecutionStatus.FAILED
        assert result.state.failure_reason == FailureReason.STEP_LIMIT_EXCEEDED


class TestStructuralFailures:
    """Tests for broken graphs met at runtime."""

    def test_dangling_target(self, engine):
        """Test an edge to a missing node fails the conversation."""
        graph = FlowGraph(
            flow_id="f",
            nodes=(Node("a", NodeKind.MESSAGE, MessageConfig("hi")),),
            edges=(Edge("e", "a", "ghost"),),
            start_node_id="a",
        )

        result = engine.step(graph, engine.start(graph, "c"), say("x"))

        assert result.status == ExecutionStatus.FAILED
        assert result.state.failure_reason == FailureReason.STRUCTURAL_ERROR
        assert result.actions[-1].type == ActionType.FAIL

    def test_start_at_end(self, engine):
        """Test a flow whose start is an End node completes on the first event."""
        graph = FlowGraph(flow_id="f", nodes=(Node("end", NodeKind.END, EndConfig("Done")),), start_node_id="end")

        result = engine.step(graph, engine.start(graph, "c"), say("x"))

        assert result.status == ExecutionStatus.COMPLETED
        assert result.messages == ["Done"]


class TestSimulate:
    """Tests for running a list of events."""

    def test_stops_at_terminal(self, engine, greeting_graph):
        """Test events after completion are not delivered."""
        results = engine.simulate(greeting_graph, [say("hi"), say("ok"), say("extra")])

        assert len(results) == 2
        assert results[-1].status == ExecutionStatus.COMPLETED


class TestRenderText:
    """Tests for placeholder substitution."""

    def test_placeholders(self):
        """Test known placeholders are replaced, unknown are kept."""
        context = {"name": "Ana", "order": {"id": 7}}

        assert render_text("Hi {name}, order {order.id} {unknown}", context) == "Hi Ana, order 7 {unknown}"
        assert render_text("", context) == ""


class TestFlowConfig:
    """Tests for engine configuration."""

    def test_from_settings(self):
        """Test defaults come from settings."""
        config = FlowConfig.from_settings()

        assert config.max_steps_per_event == 50
        assert config.capture_key == "user_input"
