"""
Flow graph data model.

A flow graph is an immutable snapshot of typed nodes connected by
conditionally labeled edges. Node and edge polymorphism is a closed set of
kinds, each carrying its own configuration dataclass.
"""

from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property
from typing import Any, Dict, List, Mapping, Optional, Tuple, Type, Union

from flowbot_core.errors import GraphLoadError


def _mapping(data: Mapping[str, Any], key: str) -> Dict[str, Any]:
    """Read an optional nested mapping from a config dict."""
    value = data.get(key) or {}
    if not isinstance(value, Mapping):
        raise GraphLoadError(f"{key} must be a mapping, got {value!r}")
    return dict(value)


# =============================================================================
# Node Models
# =============================================================================


class NodeKind(str, Enum):
    """Types of flow nodes."""

    MESSAGE = "message"  # Send a message
    CONDITION = "condition"  # Branch on outgoing edge conditions
    INPUT = "input"  # Ask the user for a value
    AI = "ai"  # Generate a reply with a language model
    FUNCTION = "function"  # Call a registered function
    WEBHOOK = "webhook"  # Call an external HTTP endpoint
    DELAY = "delay"  # Pause before continuing
    TEMPLATE = "template"  # Send a pre-approved WhatsApp template
    UPDATE_CONTACT = "update_contact"  # Update the contact record
    END = "end"


@dataclass(frozen=True)
class MessageConfig:
    """Configuration for message nodes."""

    message: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MessageConfig":
        return cls(message=str(data.get("message") or ""))

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message}


@dataclass(frozen=True)
class ConditionNodeConfig:
    """Configuration for condition nodes.

    The condition text is informative only; branching lives on the
    outgoing edges.
    """

    condition: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ConditionNodeConfig":
        return cls(condition=str(data.get("condition") or ""))

    def to_dict(self) -> Dict[str, Any]:
        return {"condition": self.condition}


@dataclass(frozen=True)
class InputConfig:
    """Configuration for input collection."""

    prompt: str = ""
    input_type: str = "text"  # text, email, number, phone, date
    input_key: Optional[str] = None  # Variable receiving the reply

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "InputConfig":
        return cls(
            prompt=str(data.get("prompt") or ""),
            input_type=str(data.get("input_type") or "text"),
            input_key=data.get("input_key") or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "prompt": self.prompt,
            "input_type": self.input_type,
            "input_key": self.input_key,
        }


@dataclass(frozen=True)
class AIConfig:
    """Configuration for AI reply nodes."""

    prompt: str = ""
    model: str = "gpt-3.5-turbo"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AIConfig":
        return cls(
            prompt=str(data.get("prompt") or ""),
            model=str(data.get("model") or "gpt-3.5-turbo"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"prompt": self.prompt, "model": self.model}


@dataclass(frozen=True)
class FunctionConfig:
    """Configuration for function call nodes."""

    function_name: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FunctionConfig":
        return cls(
            function_name=str(data.get("function_name") or ""),
            parameters=_mapping(data, "parameters"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"function_name": self.function_name, "parameters": dict(self.parameters)}


@dataclass(frozen=True)
class WebhookConfig:
    """Configuration for webhook nodes."""

    url: str = ""
    method: str = "POST"
    headers: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "WebhookConfig":
        return cls(
            url=str(data.get("url") or ""),
            method=str(data.get("method") or "POST").upper(),
            headers=_mapping(data, "headers"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"url": self.url, "method": self.method, "headers": dict(self.headers)}


@dataclass(frozen=True)
class DelayConfig:
    """Configuration for delay nodes."""

    delay_seconds: int = 1
    blocking: bool = True

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DelayConfig":
        seconds = data.get("delay_seconds", data.get("seconds", 1))
        try:
            seconds = int(seconds)
        except (TypeError, ValueError):
            raise GraphLoadError(f"Invalid delay_seconds: {seconds!r}")
        return cls(delay_seconds=seconds, blocking=data.get("blocking", True) is not False)

    def to_dict(self) -> Dict[str, Any]:
        return {"delay_seconds": self.delay_seconds, "blocking": self.blocking}


@dataclass(frozen=True)
class TemplateConfig:
    """Configuration for WhatsApp template nodes."""

    template_name: str = ""
    messaging_service_sid: Optional[str] = None
    variables: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TemplateConfig":
        return cls(
            template_name=str(data.get("template_name") or ""),
            messaging_service_sid=data.get("messaging_service_sid") or None,
            variables=_mapping(data, "variables"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "template_name": self.template_name,
            "messaging_service_sid": self.messaging_service_sid,
            "variables": dict(self.variables),
        }


@dataclass(frozen=True)
class UpdateContactConfig:
    """Configuration for contact update nodes.

    Empty fields are left unchanged on the contact.
    """

    name: str = ""
    last_name: str = ""
    email: str = ""
    phone_number: str = ""
    location: str = ""
    country_code: str = ""
    identifier: str = ""
    additional_attributes: Dict[str, Any] = field(default_factory=dict)
    custom_attributes: Dict[str, Any] = field(default_factory=dict)

    FIELDS = (
        "name",
        "last_name",
        "email",
        "phone_number",
        "location",
        "country_code",
        "identifier",
    )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "UpdateContactConfig":
        values = {key: str(data.get(key) or "") for key in cls.FIELDS}
        for key in ("additional_attributes", "custom_attributes"):
            values[key] = _mapping(data, key)
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {key: getattr(self, key) for key in self.FIELDS}
        result["additional_attributes"] = dict(self.additional_attributes)
        result["custom_attributes"] = dict(self.custom_attributes)
        return result


@dataclass(frozen=True)
class EndConfig:
    """Configuration for end nodes."""

    message: str = "Flow completed"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EndConfig":
        message = data.get("message")
        return cls(message="Flow completed" if message is None else str(message))

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message}


NodeConfig = Union[
    MessageConfig,
    ConditionNodeConfig,
    InputConfig,
    AIConfig,
    FunctionConfig,
    WebhookConfig,
    DelayConfig,
    TemplateConfig,
    UpdateContactConfig,
    EndConfig,
]

NODE_CONFIG_TYPES: Dict[NodeKind, Type[Any]] = {
    NodeKind.MESSAGE: MessageConfig,
    NodeKind.CONDITION: ConditionNodeConfig,
    NodeKind.INPUT: InputConfig,
    NodeKind.AI: AIConfig,
    NodeKind.FUNCTION: FunctionConfig,
    NodeKind.WEBHOOK: WebhookConfig,
    NodeKind.DELAY: DelayConfig,
    NodeKind.TEMPLATE: TemplateConfig,
    NodeKind.UPDATE_CONTACT: UpdateContactConfig,
    NodeKind.END: EndConfig,
}


@dataclass(frozen=True)
class Node:
    """
    A vertex in the conversation flow.

    `kind` selects the variant; `config` is the matching configuration
    dataclass. Label, description and position are display metadata.
    """

    id: str
    kind: NodeKind
    config: Any = None
    label: str = ""
    description: str = ""
    position: Tuple[float, float] = (0.0, 0.0)
    is_entry: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", NodeKind(self.kind))
        expected = NODE_CONFIG_TYPES[self.kind]
        if self.config is None:
            object.__setattr__(self, "config", expected())
        elif not isinstance(self.config, expected):
            raise TypeError(
                f"Node {self.id!r} of kind {self.kind.value!r} needs "
                f"{expected.__name__}, got {type(self.config).__name__}"
            )

    @property
    def is_end(self) -> bool:
        return self.kind == NodeKind.END

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the persisted node shape."""
        return {
            "node_id": self.id,
            "node_type": self.kind.value,
            "config": self.config.to_dict(),
            "label": self.label,
            "description": self.description,
            "position_x": self.position[0],
            "position_y": self.position[1],
            "is_entry_node": self.is_entry,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Node":
        """Create from dictionary."""
        node_id = data.get("node_id", data.get("id"))
        if node_id is None or node_id == "":
            raise GraphLoadError(f"Node without id: {dict(data)!r}")

        raw_kind = data.get("node_type", data.get("type", data.get("kind")))
        try:
            kind = NodeKind(raw_kind)
        except ValueError:
            raise GraphLoadError(f"Unknown node type {raw_kind!r} for node {node_id!r}")

        config_data = data.get("config") or {}
        if not isinstance(config_data, Mapping):
            raise GraphLoadError(f"Node {node_id!r} config must be a mapping")

        position = data.get("position")
        if isinstance(position, Mapping):
            x, y = position.get("x", 0.0), position.get("y", 0.0)
        else:
            x, y = data.get("position_x", 0.0), data.get("position_y", 0.0)
        try:
            position = (float(x or 0.0), float(y or 0.0))
        except (TypeError, ValueError):
            raise GraphLoadError(f"Invalid position ({x!r}, {y!r}) for node {node_id!r}")

        return cls(
            id=str(node_id),
            kind=kind,
            config=NODE_CONFIG_TYPES[kind].from_dict(config_data),
            label=str(data.get("label") or ""),
            description=str(data.get("description") or ""),
            position=position,
            is_entry=bool(data.get("is_entry_node", False)),
        )


# =============================================================================
# Edge Models
# =============================================================================


class ConditionType(str, Enum):
    """How an edge decides whether it matches."""

    ALWAYS = "always"
    CONDITION = "condition"
    KEYWORD = "keyword"
    INTENT = "intent"
    USER_INPUT = "user_input"
    WAIT_USER_REPLY = "wait_user_reply"


@dataclass(frozen=True)
class EmptyCondition:
    """Payload of `always` and `wait_user_reply` edges."""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EmptyCondition":
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        return {}


@dataclass(frozen=True)
class KeywordCondition:
    """Match when the message contains any keyword."""

    keywords: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "KeywordCondition":
        raw = data.get("keywords") or ()
        if isinstance(raw, str):
            raw = raw.split(",")
        keywords = tuple(str(k).strip() for k in raw if str(k).strip())
        return cls(keywords=keywords)

    def to_dict(self) -> Dict[str, Any]:
        return {"keywords": list(self.keywords)}


@dataclass(frozen=True)
class IntentCondition:
    """Match when the resolved intent equals `intent`."""

    intent: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "IntentCondition":
        return cls(intent=str(data.get("intent") or ""))

    def to_dict(self) -> Dict[str, Any]:
        return {"intent": self.intent}


@dataclass(frozen=True)
class UserInputCondition:
    """Match the captured reply against `expected_input`."""

    expected_input: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "UserInputCondition":
        expected = data.get("expected_input", data.get("expectedInput"))
        return cls(expected_input="" if expected is None else str(expected))

    def to_dict(self) -> Dict[str, Any]:
        return {"expected_input": self.expected_input}


@dataclass(frozen=True)
class ExpressionCondition:
    """Boolean expression or structured rule group over the context."""

    expression: Optional[str] = None
    rules: Optional[Dict[str, Any]] = None  # {"operator": "AND"|"OR", "rules": [...]}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ExpressionCondition":
        expression = data.get("expression")
        rules = data.get("rules")
        if isinstance(rules, list):
            rules = {"operator": data.get("operator", "AND"), "rules": rules}
        elif rules is None and isinstance(data.get("conditions"), Mapping):
            rules = dict(data["conditions"])
        return cls(
            expression=str(expression) if expression not in (None, "") else None,
            rules=dict(rules) if rules else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        if self.expression is not None:
            result["expression"] = self.expression
        if self.rules is not None:
            result["rules"] = self.rules.get("rules", [])
            result["operator"] = self.rules.get("operator", "AND")
        return result


EdgeCondition = Union[
    EmptyCondition,
    KeywordCondition,
    IntentCondition,
    UserInputCondition,
    ExpressionCondition,
]

CONDITION_CONFIG_TYPES: Dict[ConditionType, Type[Any]] = {
    ConditionType.ALWAYS: EmptyCondition,
    ConditionType.CONDITION: ExpressionCondition,
    ConditionType.KEYWORD: KeywordCondition,
    ConditionType.INTENT: IntentCondition,
    ConditionType.USER_INPUT: UserInputCondition,
    ConditionType.WAIT_USER_REPLY: EmptyCondition,
}


@dataclass(frozen=True)
class Edge:
    """Directed connection between two nodes with conditional dispatch."""

    id: str
    source: str
    target: str
    condition_type: ConditionType = ConditionType.ALWAYS
    condition: Any = None
    label: Optional[str] = None
    priority: int = 0  # Higher priority evaluated first
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "condition_type", ConditionType(self.condition_type))
        expected = CONDITION_CONFIG_TYPES[self.condition_type]
        if self.condition is None:
            object.__setattr__(self, "condition", expected())
        elif not isinstance(self.condition, expected):
            raise TypeError(
                f"Edge {self.id!r} of type {self.condition_type.value!r} needs "
                f"{expected.__name__}, got {type(self.condition).__name__}"
            )

    @property
    def is_always(self) -> bool:
        return self.condition_type == ConditionType.ALWAYS

    @property
    def is_wait(self) -> bool:
        return self.condition_type == ConditionType.WAIT_USER_REPLY

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the persisted edge shape."""
        return {
            "edge_id": self.id,
            "source_node": self.source,
            "target_node": self.target,
            "source_handle": self.source_handle or "",
            "target_handle": self.target_handle or "",
            "condition_type": self.condition_type.value,
            "condition_config": self.condition.to_dict(),
            "label": self.label or "",
            "priority": self.priority,
        }

    @classmethod
    def from_dict(
        cls,
        data: Mapping[str, Any],
        node_ids: Optional[Mapping[Any, str]] = None,
    ) -> "Edge":
        """Create from dictionary.

        `node_ids` maps database ids to node ids for payloads whose edges
        reference nodes by numeric id.
        """
        edge_id = data.get("edge_id", data.get("id"))
        if edge_id is None or edge_id == "":
            raise GraphLoadError(f"Edge without id: {dict(data)!r}")

        source = data.get("source_node", data.get("source"))
        target = data.get("target_node", data.get("target"))
        if node_ids:
            source = node_ids.get(source, source)
            target = node_ids.get(target, target)
        if source is None or target is None:
            raise GraphLoadError(f"Edge {edge_id!r} needs a source and a target")

        raw_type = data.get("condition_type", data.get("conditionType")) or "always"
        try:
            condition_type = ConditionType(raw_type)
        except ValueError:
            raise GraphLoadError(f"Unknown condition type {raw_type!r} for edge {edge_id!r}")

        config = data.get("condition_config", data.get("conditionConfig")) or {}
        if not isinstance(config, Mapping):
            raise GraphLoadError(f"Edge {edge_id!r} condition_config must be a mapping")

        try:
            priority = int(data.get("priority") or 0)
        except (TypeError, ValueError):
            raise GraphLoadError(f"Edge {edge_id!r} has a non-integer priority")

        return cls(
            id=str(edge_id),
            source=str(source),
            target=str(target),
            condition_type=condition_type,
            condition=CONDITION_CONFIG_TYPES[condition_type].from_dict(config),
            label=data.get("label") or None,
            priority=priority,
            source_handle=data.get("source_handle", data.get("sourceHandle")) or None,
            target_handle=data.get("target_handle", data.get("targetHandle")) or None,
        )


# =============================================================================
# Flow Graph
# =============================================================================


@dataclass(frozen=True)
class FlowGraph:
    """
    Immutable snapshot of a conversation flow.

    Owned by the authoring layer; the engine only reads it, so a single
    instance can be shared by any number of running conversations.
    """

    flow_id: str
    nodes: Tuple[Node, ...] = ()
    edges: Tuple[Edge, ...] = ()
    start_node_id: Optional[str] = None
    name: str = ""
    version: int = 1

    def __post_init__(self) -> None:
        object.__setattr__(self, "nodes", tuple(self.nodes))
        object.__setattr__(self, "edges", tuple(self.edges))

    @cached_property
    def node_map(self) -> Dict[str, Node]:
        return {node.id: node for node in self.nodes}

    @cached_property
    def _outgoing(self) -> Dict[str, Tuple[Edge, ...]]:
        grouped: Dict[str, List[Edge]] = {}
        for edge in self.edges:
            grouped.setdefault(edge.source, []).append(edge)
        return {source: tuple(edges) for source, edges in grouped.items()}

    @cached_property
    def _incoming(self) -> Dict[str, Tuple[Edge, ...]]:
        grouped: Dict[str, List[Edge]] = {}
        for edge in self.edges:
            grouped.setdefault(edge.target, []).append(edge)
        return {target: tuple(edges) for target, edges in grouped.items()}

    def get_node(self, node_id: Optional[str]) -> Optional[Node]:
        if node_id is None:
            return None
        return self.node_map.get(node_id)

    def outgoing(self, node_id: str) -> Tuple[Edge, ...]:
        """Outgoing edges in declared order."""
        return self._outgoing.get(node_id, ())

    def incoming(self, node_id: str) -> Tuple[Edge, ...]:
        return self._incoming.get(node_id, ())

    @property
    def start_node(self) -> Optional[Node]:
        return self.get_node(self.start_node_id)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "flow_id": self.flow_id,
            "name": self.name,
            "version": self.version,
            "entry_node": self.start_node_id,
            "nodes": [node.to_dict() for node in self.nodes],
            "edges": [edge.to_dict() for edge in self.edges],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FlowGraph":
        """Create from dictionary.

        Accepts the builder's persisted shape (`node_id`, `node_type`,
        `condition_type`, `entry_node`) as well as canvas-style keys.
        """
        if not isinstance(data, Mapping):
            raise GraphLoadError("Flow definition must be a mapping")

        raw_nodes = data.get("nodes") or []
        raw_edges = data.get("edges") or []
        if not isinstance(raw_nodes, list) or not isinstance(raw_edges, list):
            raise GraphLoadError("Flow 'nodes' and 'edges' must be lists")

        for kind, entries in (("node", raw_nodes), ("edge", raw_edges)):
            for index, entry in enumerate(entries):
                if not isinstance(entry, Mapping):
                    raise GraphLoadError(f"Flow {kind} #{index} must be a mapping, got {entry!r}")

        nodes = [Node.from_dict(n) for n in raw_nodes]

        # Database ids -> node ids, when nodes carry both
        db_ids = {
            n["id"]: str(n["node_id"])
            for n in raw_nodes
            if "node_id" in n and n.get("id") is not None
        }

        edges = [Edge.from_dict(e, node_ids=db_ids) for e in raw_edges]

        start = data.get("entry_node", data.get("start_node_id", data.get("startNodeId")))
        if start is None:
            flagged = [n.id for n in nodes if n.is_entry]
            if len(flagged) == 1:
                start = flagged[0]

        raw_version = data.get("version") or 1
        try:
            version = int(raw_version)
        except (TypeError, ValueError):
            raise GraphLoadError(f"Invalid flow version: {raw_version!r}")

        return cls(
            flow_id=str(data.get("flow_id", data.get("id", "flow"))),
            name=str(data.get("name") or ""),
            version=version,
            nodes=tuple(nodes),
            edges=tuple(edges),
            start_node_id=str(start) if start is not None else None,
        )
