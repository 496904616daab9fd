"""Conversation flow execution engine."""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional
from uuid import uuid4

import structlog

from flowbot_core.config import Settings, get_settings
from flowbot_core.errors import FlowTerminatedError
from flowbot_core.flow.conditions import ConditionEvaluator, ConversationEvent
from flowbot_core.flow.expressions import resolve_path
from flowbot_core.flow.models import ConditionType, Edge, FlowGraph, Node, NodeKind
from flowbot_core.flow.state import (
    ExecutionState,
    ExecutionStatus,
    FailureReason,
    StateTransition,
)


logger = structlog.get_logger(__name__)

_PLACEHOLDER = re.compile(r"\{([A-Za-z_][\w.]*)\}")


@dataclass
class FlowConfig:
    """Configuration for flow engine."""

    max_steps_per_event: int = 50  # Max node entries for one event
    fallback_message: str = "Sorry, something went wrong. Please try again later."
    capture_key: str = "user_input"

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "FlowConfig":
        settings = settings or get_settings()
        return cls(
            max_steps_per_event=settings.engine.max_steps_per_event,
            fallback_message=settings.engine.fallback_message,
            capture_key=settings.engine.capture_key,
        )


class ActionType(str, Enum):
    """Outbound actions for the conversation transport."""

    SEND_MESSAGE = "send_message"
    SEND_TEMPLATE = "send_template"
    UPDATE_CONTACT = "update_contact"
    REQUEST_INPUT = "request_input"
    CALL_FUNCTION = "call_function"
    CALL_WEBHOOK = "call_webhook"
    AI_REPLY = "ai_reply"
    DELAY = "delay"
    SUSPEND = "suspend"
    COMPLETE = "complete"
    FAIL = "fail"


@dataclass(frozen=True)
class FlowAction:
    """Instruction emitted by the engine; executed by external collaborators."""

    type: ActionType
    node_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "node_id": self.node_id,
            "payload": dict(self.payload),
        }


@dataclass
class StepResult:
    """Result of processing one event."""

    state: ExecutionState
    actions: List[FlowAction] = field(default_factory=list)

    @property
    def status(self) -> ExecutionStatus:
        return self.state.status

    @property
    def messages(self) -> List[str]:
        """Texts of the send_message actions, in order."""
        return [
            a.payload["text"]
            for a in self.actions
            if a.type == ActionType.SEND_MESSAGE
        ]

    @property
    def waiting_for_input(self) -> bool:
        return self.state.status == ExecutionStatus.WAITING_FOR_REPLY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.state.status.value,
            "current_node": self.state.current_node_id,
            "actions": [a.to_dict() for a in self.actions],
            "failure_reason": self.state.failure_reason.value if self.state.failure_reason else None,
            "error": self.state.error_message,
        }


def render_text(template: str, context: Mapping[str, Any]) -> str:
    """Substitute {variable} placeholders from the context.

    Unknown placeholders are left as written.
    """
    if not template:
        return ""

    def replace(match: "re.Match[str]") -> str:
        value = resolve_path(match.group(1), context)
        return match.group(0) if value is None else str(value)

    return _PLACEHOLDER.sub(replace, template)


def _coerce_input(text: str, input_type: str) -> Any:
    value = text.strip()
    if input_type == "number":
        try:
            return int(value)
        except ValueError:
            try:
                return float(value)
            except ValueError:
                return value
    return value


class _StepLimitExceeded(Exception):
    pass


class FlowEngine:
    """
    Executes conversation flows.

    The engine is a pure function of (graph, state, event): it never
    mutates the state it is given and performs no I/O. Sending messages,
    persisting state and delivering replies belong to the caller.

    Each event moves the conversation along at most one matching edge.
    Condition nodes are routers: entering one dispatches its edges
    against the same event. Entering a node with a `wait_user_reply`
    edge crosses that edge and suspends until the next event, which is
    then treated as the awaited reply.
    """

    def __init__(
        self,
        config: Optional[FlowConfig] = None,
        evaluator: Optional[ConditionEvaluator] = None,
    ):
        self.config = config or FlowConfig.from_settings()
        self.evaluator = evaluator or ConditionEvaluator()

    def start(
        self,
        graph: FlowGraph,
        conversation_id: Optional[str] = None,
        initial_context: Optional[Dict[str, Any]] = None,
    ) -> ExecutionState:
        """
        Create the execution state for a new conversation.

        Args:
            graph: Flow to run
            conversation_id: Conversation identifier (generated if omitted)
            initial_context: Initial variable values

        Returns:
            State positioned at the start node with status RUNNING, or
            FAILED when the graph has no usable start node.
        """
        state = ExecutionState(
            flow_id=graph.flow_id,
            conversation_id=conversation_id or f"conv_{uuid4().hex[:12]}",
            current_node_id=graph.start_node_id,
            context=dict(initial_context or {}),
        )

        if graph.start_node is None:
            state.fail(
                FailureReason.STRUCTURAL_ERROR,
                f"Start node not found: {graph.start_node_id}",
            )
            return state

        logger.info(
            "flow_started",
            flow_id=graph.flow_id,
            conversation_id=state.conversation_id,
            start_node=graph.start_node_id,
        )
        return state

    def step(
        self,
        graph: FlowGraph,
        state: ExecutionState,
        event: ConversationEvent,
    ) -> StepResult:
        """
        Process one inbound event.

        Args:
            graph: Flow the conversation runs on
            state: Current state (left untouched)
            event: Inbound message, timer or system event

        Returns:
            New state and the actions to perform

        Raises:
            FlowTerminatedError: If the conversation already completed or failed
        """
        if state.is_terminal:
            raise FlowTerminatedError(
                f"Conversation {state.conversation_id} is {state.status.value}; "
                "start a new one to continue"
            )

        traversal = _Traversal(self, graph, state.copy(), event)
        traversal.run()

        logger.debug(
            "flow_step",
            conversation_id=state.conversation_id,
            flow_id=graph.flow_id,
            from_node=state.current_node_id,
            to_node=traversal.state.current_node_id,
            status=traversal.state.status.value,
            actions=len(traversal.actions),
        )
        return StepResult(state=traversal.state, actions=traversal.actions)

    def simulate(
        self,
        graph: FlowGraph,
        events: Iterable[ConversationEvent],
        conversation_id: Optional[str] = None,
        initial_context: Optional[Dict[str, Any]] = None,
    ) -> List[StepResult]:
        """Feed events in order until the conversation terminates."""
        state = self.start(graph, conversation_id, initial_context)
        results: List[StepResult] = []

        for event in events:
            if state.is_terminal:
                break
            result = self.step(graph, state, event)
            results.append(result)
            state = result.state

        return results

    def node_actions(self, node: Node, context: Mapping[str, Any]) -> List[FlowAction]:
        """Actions emitted when a node is entered."""
        config = node.config
        kind = node.kind

        if kind == NodeKind.MESSAGE:
            text = render_text(config.message, context)
            if not text:
                return []
            return [FlowAction(ActionType.SEND_MESSAGE, node.id, {"text": text})]

        elif kind == NodeKind.INPUT:
            return [FlowAction(ActionType.REQUEST_INPUT, node.id, {
                "prompt": render_text(config.prompt, context),
                "input_type": config.input_type,
                "input_key": config.input_key,
            })]

        elif kind == NodeKind.AI:
            return [FlowAction(ActionType.AI_REPLY, node.id, {
                "prompt": render_text(config.prompt, context),
                "model": config.model,
            })]

        elif kind == NodeKind.FUNCTION:
            return [FlowAction(ActionType.CALL_FUNCTION, node.id, {
                "function_name": config.function_name,
                "parameters": dict(config.parameters),
            })]

        elif kind == NodeKind.WEBHOOK:
            return [FlowAction(ActionType.CALL_WEBHOOK, node.id, {
                "url": render_text(config.url, context),
                "method": config.method,
                "headers": dict(config.headers),
            })]

        elif kind == NodeKind.DELAY:
            return [FlowAction(ActionType.DELAY, node.id, {
                "seconds": config.delay_seconds,
                "blocking": config.blocking,
            })]

        elif kind == NodeKind.TEMPLATE:
            variables = {
                key: render_text(value, context) if isinstance(value, str) else value
                for key, value in config.variables.items()
            }
            return [FlowAction(ActionType.SEND_TEMPLATE, node.id, {
                "template_name": config.template_name,
                "messaging_service_sid": config.messaging_service_sid,
                "variables": variables,
            })]

        elif kind == NodeKind.UPDATE_CONTACT:
            payload = {
                key: render_text(value, context)
                for key, value in config.to_dict().items()
                if isinstance(value, str) and value
            }
            for key in ("additional_attributes", "custom_attributes"):
                payload[key] = {
                    name: render_text(value, context) if isinstance(value, str) else value
                    for name, value in getattr(config, key).items()
                }
            return [FlowAction(ActionType.UPDATE_CONTACT, node.id, payload)]

        elif kind == NodeKind.END:
            text = render_text(config.message, context)
            if not text:
                return []
            return [FlowAction(ActionType.SEND_MESSAGE, node.id, {"text": text})]

        # Condition nodes only route
        return []


class _Traversal:
    """Processing of a single event against a private copy of the state."""

    def __init__(
        self,
        engine: FlowEngine,
        graph: FlowGraph,
        state: ExecutionState,
        event: ConversationEvent,
    ):
        self.engine = engine
        self.graph = graph
        self.state = state
        self.event = event
        self.actions: List[FlowAction] = []
        self.steps = 0
        # user_input edges may match only when the event is an awaited reply
        self.match_status = state.status

    def run(self) -> None:
        try:
            self._run()
        except _StepLimitExceeded:
            self._fail(
                FailureReason.STEP_LIMIT_EXCEEDED,
                f"More than {self.engine.config.max_steps_per_event} nodes entered for one event",
            )

    def _run(self) -> None:
        state = self.state

        if state.status == ExecutionStatus.WAITING_FOR_REPLY:
            self._capture_reply()
            state.status = ExecutionStatus.RUNNING
        state.set_variable("last_message", self.event.text)
        if self.event.intent is not None:
            state.set_variable("last_intent", self.event.intent)

        if not state.started:
            state.started = True
            node = self.graph.get_node(state.current_node_id)
            if node is None:
                self._fail(
                    FailureReason.STRUCTURAL_ERROR,
                    f"Start node not found: {state.current_node_id}",
                )
                return
            self._record_start(node)
            self._enter(node)
            if state.status != ExecutionStatus.RUNNING:
                return

        while True:
            node = self.graph.get_node(state.current_node_id)
            if node is None:
                self._fail(
                    FailureReason.STRUCTURAL_ERROR,
                    f"Node not found: {state.current_node_id}",
                )
                return

            selection = self.engine.evaluator.select_edge(
                self.graph.outgoing(node.id),
                self.event,
                state.context,
                self.match_status,
                state.visited_nodes,
            )
            if not selection.matched:
                self._fail(
                    FailureReason.NO_MATCHING_EDGE,
                    f"No outgoing edge of node {node.id} matched",
                )
                return

            target = self._move(selection.edge)
            if target is None:
                return

            self._enter(target)

            # Only condition nodes route the same event onwards
            if state.status != ExecutionStatus.RUNNING or target.kind != NodeKind.CONDITION:
                return

    def _count_step(self) -> None:
        self.steps += 1
        if self.steps > self.engine.config.max_steps_per_event:
            raise _StepLimitExceeded()

    def _record_start(self, node: Node) -> None:
        self._count_step()
        self.state.transitions.append(
            StateTransition(from_node=None, to_node=node.id, trigger="start")
        )
        self.state.visited_nodes.append(node.id)

    def _move(self, edge: Edge) -> Optional[Node]:
        target = self.graph.get_node(edge.target)
        if target is None:
            self._fail(
                FailureReason.STRUCTURAL_ERROR,
                f"Edge {edge.id} points to missing node {edge.target}",
            )
            return None

        self._count_step()
        self.state.transition_to(
            target.id,
            trigger=edge.condition_type.value,
            edge_id=edge.id,
        )
        return target

    def _enter(self, node: Node) -> None:
        state = self.state
        self.actions.extend(self.engine.node_actions(node, state.context))

        if node.is_end:
            self._complete(node)
            return

        wait_edges = [e for e in self.graph.outgoing(node.id) if e.is_wait]
        if not wait_edges:
            state.status = ExecutionStatus.RUNNING
            return

        # Cross the suspension edge; the reply is handled at its target
        edge = sorted(wait_edges, key=lambda e: -e.priority)[0]
        target = self._move(edge)
        if target is None:
            return

        self.actions.extend(self.engine.node_actions(target, state.context))
        if target.is_end:
            self._complete(target)
            return

        state.status = ExecutionStatus.WAITING_FOR_REPLY
        self.actions.append(FlowAction(ActionType.SUSPEND, target.id, {"awaiting": "user_reply"}))
        logger.debug(
            "flow_suspended",
            conversation_id=state.conversation_id,
            node_id=target.id,
        )

    def _capture_reply(self) -> None:
        state = self.state
        text = self.event.text
        state.set_variable(self.engine.config.capture_key, text)

        for node in self._awaiting_nodes():
            if node.kind == NodeKind.INPUT and node.config.input_key:
                state.set_variable(
                    node.config.input_key,
                    _coerce_input(text, node.config.input_type),
                )

    def _awaiting_nodes(self) -> List[Node]:
        """The suspended node and the node whose wait edge led there."""
        nodes = []
        current = self.graph.get_node(self.state.current_node_id)
        if current is not None:
            nodes.append(current)

        if self.state.transitions:
            last = self.state.transitions[-1]
            if last.trigger == ConditionType.WAIT_USER_REPLY.value:
                source = self.graph.get_node(last.from_node)
                if source is not None and source is not current:
                    nodes.append(source)
        return nodes

    def _complete(self, node: Node) -> None:
        state = self.state
        state.status = ExecutionStatus.COMPLETED
        message = render_text(node.config.message, state.context)
        self.actions.append(FlowAction(ActionType.COMPLETE, node.id, {"message": message}))
        logger.info(
            "flow_completed",
            conversation_id=state.conversation_id,
            flow_id=state.flow_id,
            end_node=node.id,
        )

    def _fail(self, reason: FailureReason, message: str) -> None:
        self.state.fail(reason, message)
        self.actions.append(FlowAction(ActionType.FAIL, self.state.current_node_id, {
            "reason": reason.value,
            "error": message,
            "message": self.engine.config.fallback_message,
        }))
