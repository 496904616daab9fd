"""Flow builder for creating conversation flows programmatically."""

import json
from typing import Any, Dict, Iterable, List, Optional, Set

import yaml

from flowbot_core.flow.models import (
    AIConfig,
    ConditionNodeConfig,
    ConditionType,
    DelayConfig,
    Edge,
    EndConfig,
    ExpressionCondition,
    FlowGraph,
    FunctionConfig,
    InputConfig,
    IntentCondition,
    KeywordCondition,
    MessageConfig,
    Node,
    NodeKind,
    TemplateConfig,
    UpdateContactConfig,
    UserInputCondition,
    WebhookConfig,
)


class FlowBuilder:
    """
    Builder for creating conversation flows.

    Provides a fluent API for constructing flow graphs without directly
    manipulating node and edge objects. Each node is linked to the
    previous one with an `always` edge unless the previous node branches
    or ends the flow.

    Example:
        graph = (
            FlowBuilder("support")
            .message("greeting", "Hi {name}! Do you need help?")
            .wait_for_reply()
            .input("ask", "Type yes or no", input_key="answer")
            .branches()
                .reply("yes", "help")
                .otherwise("bye")
            .message("help", "Connecting you to an agent.")
            .end("bye", "Goodbye!")
            .build()
        )
    """

    def __init__(self, flow_id: str, name: str = ""):
        self.flow_id = flow_id
        self.name = name
        self._nodes: List[Node] = []
        self._edges: List[Edge] = []
        self._node_ids: Set[str] = set()
        self._current: Optional[Node] = None
        self._start_node_id: Optional[str] = None
        self._link_type = ConditionType.ALWAYS
        self._branched: Set[str] = set()

    # Nodes

    def message(self, node_id: str, message: str, label: str = "") -> "FlowBuilder":
        """Add message node."""
        return self._add_node(Node(node_id, NodeKind.MESSAGE, MessageConfig(message), label=label))

    def input(
        self,
        node_id: str,
        prompt: str,
        input_type: str = "text",
        input_key: Optional[str] = None,
        label: str = "",
    ) -> "FlowBuilder":
        """Add input node for gathering a value from the user."""
        config = InputConfig(prompt=prompt, input_type=input_type, input_key=input_key)
        return self._add_node(Node(node_id, NodeKind.INPUT, config, label=label))

    def ai(self, node_id: str, prompt: str, model: str = "gpt-3.5-turbo") -> "FlowBuilder":
        """Add AI reply node."""
        return self._add_node(Node(node_id, NodeKind.AI, AIConfig(prompt=prompt, model=model)))

    def function(
        self,
        node_id: str,
        function_name: str,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> "FlowBuilder":
        """Add function call node."""
        config = FunctionConfig(function_name=function_name, parameters=parameters or {})
        return self._add_node(Node(node_id, NodeKind.FUNCTION, config))

    def webhook(
        self,
        node_id: str,
        url: str,
        method: str = "POST",
        headers: Optional[Dict[str, str]] = None,
    ) -> "FlowBuilder":
        """Add webhook node."""
        config = WebhookConfig(url=url, method=method.upper(), headers=headers or {})
        return self._add_node(Node(node_id, NodeKind.WEBHOOK, config))

    def delay(self, node_id: str, seconds: int, blocking: bool = True) -> "FlowBuilder":
        """Add delay node."""
        config = DelayConfig(delay_seconds=seconds, blocking=blocking)
        return self._add_node(Node(node_id, NodeKind.DELAY, config))

    def template(
        self,
        node_id: str,
        template_name: str,
        messaging_service_sid: Optional[str] = None,
        variables: Optional[Dict[str, Any]] = None,
    ) -> "FlowBuilder":
        """Add WhatsApp template node."""
        config = TemplateConfig(
            template_name=template_name,
            messaging_service_sid=messaging_service_sid,
            variables=variables or {},
        )
        return self._add_node(Node(node_id, NodeKind.TEMPLATE, config))

    def update_contact(self, node_id: str, **fields: Any) -> "FlowBuilder":
        """Add contact update node (name, email, custom_attributes, ...)."""
        config = UpdateContactConfig.from_dict(fields)
        return self._add_node(Node(node_id, NodeKind.UPDATE_CONTACT, config))

    def condition(self, node_id: str, condition: str = "") -> "BranchBuilder":
        """Add condition node (returns BranchBuilder)."""
        node = Node(node_id, NodeKind.CONDITION, ConditionNodeConfig(condition))
        self._add_node(node)
        return self.branches()

    def end(self, node_id: str = "end", message: Optional[str] = None) -> "FlowBuilder":
        """Add end node."""
        config = EndConfig() if message is None else EndConfig(message=message)
        return self._add_node(Node(node_id, NodeKind.END, config))

    # Edges

    def branches(self) -> "BranchBuilder":
        """Start adding conditional edges from the current node."""
        if self._current is None:
            raise ValueError("Add a node before adding branches")
        self._branched.add(self._current.id)
        return BranchBuilder(self, self._current.id)

    def wait_for_reply(self) -> "FlowBuilder":
        """Link the current node to the next one with a wait_user_reply edge."""
        self._link_type = ConditionType.WAIT_USER_REPLY
        return self

    def goto(self, target_node_id: str) -> "FlowBuilder":
        """Link the current node to an existing or later node."""
        if self._current is not None:
            self.connect(self._current.id, target_node_id, self._link_type)
            self._branched.add(self._current.id)
            self._link_type = ConditionType.ALWAYS
        return self

    def start_at(self, node_id: str) -> "FlowBuilder":
        """Use a node other than the first one as start node."""
        self._start_node_id = node_id
        return self

    def connect(
        self,
        source: str,
        target: str,
        condition_type: ConditionType = ConditionType.ALWAYS,
        condition: Any = None,
        label: Optional[str] = None,
        priority: int = 0,
    ) -> "FlowBuilder":
        """Add an edge between two nodes."""
        self._edges.append(Edge(
            id=f"edge_{len(self._edges) + 1}",
            source=source,
            target=target,
            condition_type=condition_type,
            condition=condition,
            label=label,
            priority=priority,
        ))
        return self

    def _add_node(self, node: Node) -> "FlowBuilder":
        """Add node and link it from the previous one."""
        if node.id in self._node_ids:
            raise ValueError(f"Duplicate node id: {node.id}")

        previous = self._current
        if (
            previous is not None
            and not previous.is_end
            and previous.id not in self._branched
        ):
            self.connect(previous.id, node.id, self._link_type)

        self._link_type = ConditionType.ALWAYS
        self._nodes.append(node)
        self._node_ids.add(node.id)
        self._current = node
        return self

    def build(self) -> FlowGraph:
        """Build the immutable flow graph."""
        start = self._start_node_id
        if start is None and self._nodes:
            start = self._nodes[0].id
        return FlowGraph(
            flow_id=self.flow_id,
            name=self.name,
            nodes=tuple(self._nodes),
            edges=tuple(self._edges),
            start_node_id=start,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Export flow as dictionary."""
        return self.build().to_dict()

    def to_json(self) -> str:
        """Export flow as JSON."""
        return json.dumps(self.to_dict(), indent=2)

    def to_yaml(self) -> str:
        """Export flow as YAML."""
        return yaml.safe_dump(self.to_dict(), default_flow_style=False, sort_keys=False)


class BranchBuilder:
    """Builder for the conditional edges leaving one node."""

    def __init__(self, parent: FlowBuilder, source: str):
        self._parent = parent
        self._source = source

    def when(self, expression: str, target: str, priority: int = 0) -> "BranchBuilder":
        """Branch on a context expression."""
        self._parent.connect(
            self._source, target, ConditionType.CONDITION,
            ExpressionCondition(expression=expression), priority=priority,
        )
        return self

    def keywords(self, keywords: Iterable[str], target: str, priority: int = 0) -> "BranchBuilder":
        """Branch when the message contains any keyword."""
        self._parent.connect(
            self._source, target, ConditionType.KEYWORD,
            KeywordCondition(tuple(keywords)), priority=priority,
        )
        return self

    def intent(self, intent: str, target: str, priority: int = 0) -> "BranchBuilder":
        """Branch on the resolved intent."""
        self._parent.connect(
            self._source, target, ConditionType.INTENT,
            IntentCondition(intent), priority=priority,
        )
        return self

    def reply(self, expected_input: str, target: str, priority: int = 0) -> "BranchBuilder":
        """Branch on the awaited reply."""
        self._parent.connect(
            self._source, target, ConditionType.USER_INPUT,
            UserInputCondition(expected_input), priority=priority,
        )
        return self

    def otherwise(self, target: str) -> FlowBuilder:
        """Set fallback edge and return to parent builder."""
        self._parent.connect(self._source, target, ConditionType.ALWAYS)
        return self._parent

    def done(self) -> FlowBuilder:
        """Finish without a fallback edge."""
        return self._parent


class FlowTemplates:
    """Common flow templates."""

    @staticmethod
    def keyword_menu_flow() -> FlowBuilder:
        """Greet and route on the first message."""
        return (
            FlowBuilder("keyword_menu", name="Keyword menu")
            .message("start", "Hi! Ask about pricing or support.")
            .branches()
                .keywords(["price", "pricing"], "pricing")
                .keywords(["help", "support"], "support")
                .otherwise("menu")
            .message("pricing", "Our plans start at $10/month.")
            .end("pricing_end", "Thanks for your interest!")
            .message("support", "A support agent will contact you shortly.")
            .end("support_end")
            .message("menu", "Sorry, I did not get that.")
            .end("menu_end")
        )

    @staticmethod
    def confirmation_flow() -> FlowBuilder:
        """Ask a yes/no question and branch on the reply."""
        return (
            FlowBuilder("confirmation", name="Confirmation")
            .message("ask", "Would you like to book a demo?")
            .wait_for_reply()
            .input("answer", "Please reply yes or no", input_key="wants_demo")
            .branches()
                .reply("yes", "booked")
                .otherwise("declined")
            .message("booked", "Great, you're booked!")
            .end("booked_end")
            .message("declined", "No problem.")
            .end("declined_end")
        )
