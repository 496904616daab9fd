"""
Canvas projections of a flow graph.

Read-only views consumed by the visual editor: edge label text, handle
placement and react-flow shaped node/edge dicts. Nothing here touches
execution state.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from flowbot_core.flow.models import (
    ConditionType,
    Edge,
    FlowGraph,
    Node,
    NodeKind,
    UpdateContactConfig,
)


class HandleType(str, Enum):
    SOURCE = "source"
    TARGET = "target"


class HandlePosition(str, Enum):
    TOP = "top"
    BOTTOM = "bottom"
    LEFT = "left"
    RIGHT = "right"


@dataclass(frozen=True)
class HandleSpec:
    """A connection point on a node card."""

    type: HandleType
    position: HandlePosition

    def to_dict(self) -> Dict[str, str]:
        return {"type": self.type.value, "position": self.position.value}


def _label_for(condition_type: str, config: Mapping[str, Any]) -> str:
    if condition_type == ConditionType.ALWAYS.value:
        return ""
    if condition_type == ConditionType.CONDITION.value:
        return "IF"
    if condition_type == ConditionType.KEYWORD.value:
        keywords = config.get("keywords") or []
        return f'"{", ".join(keywords)}"' if keywords else "KEYWORD"
    if condition_type == ConditionType.INTENT.value:
        return config.get("intent") or "INTENT"
    if condition_type == ConditionType.USER_INPUT.value:
        return config.get("expected_input") or config.get("expectedInput") or "INPUT"
    if condition_type == ConditionType.WAIT_USER_REPLY.value:
        return "WAIT USER REPLY"
    return condition_type.upper()


def derive_label(edge: Edge) -> str:
    """
    Text shown on an edge in the editor.

    An explicit label wins. Otherwise the text is derived from the
    condition type; `always` edges are unlabeled.
    """
    if edge.label:
        return edge.label
    return _label_for(edge.condition_type.value, edge.condition.to_dict())


def derive_label_from_data(data: Mapping[str, Any]) -> str:
    """Same as derive_label for a raw canvas edge `data` dict.

    Unknown condition types are shown upper-cased.
    """
    label = data.get("label")
    if label:
        return str(label)
    condition_type = str(data.get("condition_type") or ConditionType.ALWAYS.value)
    return _label_for(condition_type, data.get("condition_config") or {})


def node_handles(node: Node) -> List[HandleSpec]:
    """End nodes accept connections but have no outgoing handle."""
    handles = [HandleSpec(HandleType.TARGET, HandlePosition.TOP)]
    if not node.is_end:
        handles.append(HandleSpec(HandleType.SOURCE, HandlePosition.BOTTOM))
    return handles


def format_duration(seconds: int) -> str:
    """Compact duration: `45s`, `1m 30s`, `2h 5m`."""
    hours, remainder = divmod(max(int(seconds), 0), 3600)
    minutes, secs = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def _contact_update_summary(config: UpdateContactConfig) -> str:
    labels = (
        ("name", "Name"),
        ("last_name", "Last Name"),
        ("email", "Email"),
        ("phone_number", "Phone"),
        ("location", "Location"),
        ("country_code", "Country"),
        ("identifier", "ID"),
    )
    updates = [f"{title}: {getattr(config, key)}" for key, title in labels if getattr(config, key)]
    if config.additional_attributes:
        updates.append(f"+{len(config.additional_attributes)} additional attrs")
    if config.custom_attributes:
        updates.append(f"+{len(config.custom_attributes)} custom attrs")

    if not updates:
        return "No updates configured"
    return ", ".join(updates[:3]) + ("..." if len(updates) > 3 else "")


def node_summary(node: Node) -> str:
    """Preview text shown inside a node card."""
    config = node.config
    kind = node.kind

    if kind == NodeKind.MESSAGE:
        return config.message or "No message configured"
    elif kind == NodeKind.CONDITION:
        return config.condition or "No condition set"
    elif kind == NodeKind.INPUT:
        return f"{config.input_type or 'text'} input"
    elif kind == NodeKind.AI:
        return config.prompt or "No prompt configured"
    elif kind == NodeKind.FUNCTION:
        return config.function_name or "No function selected"
    elif kind == NodeKind.WEBHOOK:
        return f"{config.method or 'POST'} {config.url or 'No URL set'}"
    elif kind == NodeKind.DELAY:
        mode = "Blocking" if config.blocking else "Non-blocking"
        return f"{format_duration(config.delay_seconds)} ({mode})"
    elif kind == NodeKind.TEMPLATE:
        return config.template_name or "No template selected"
    elif kind == NodeKind.UPDATE_CONTACT:
        return _contact_update_summary(config)
    elif kind == NodeKind.END:
        return config.message or "Flow completed"
    return ""


def to_canvas_node(node: Node, graph: Optional[FlowGraph] = None) -> Dict[str, Any]:
    """Render a node in the editor's node shape."""
    is_entry = node.is_entry
    if graph is not None:
        is_entry = node.id == graph.start_node_id

    return {
        "id": node.id,
        "type": node.kind.value,
        "position": {"x": node.position[0], "y": node.position[1]},
        "data": {
            "label": node.label or node.kind.value.title(),
            "description": node.description,
            "config": node.config.to_dict(),
            "nodeType": node.kind.value,
            "isEntryNode": is_entry,
            "summary": node_summary(node),
            "handles": [h.to_dict() for h in node_handles(node)],
        },
    }


def to_canvas_edge(edge: Edge) -> Dict[str, Any]:
    """Render an edge in the editor's edge shape."""
    return {
        "id": edge.id,
        "source": edge.source,
        "target": edge.target,
        "sourceHandle": edge.source_handle,
        "targetHandle": edge.target_handle,
        "type": "custom",
        "label": derive_label(edge),
        "data": {
            "label": edge.label,
            "condition_type": edge.condition_type.value,
            "condition_config": edge.condition.to_dict(),
            "priority": edge.priority,
        },
    }


def to_canvas(graph: FlowGraph) -> Dict[str, Any]:
    """Render a whole graph for the editor canvas."""
    return {
        "flowId": graph.flow_id,
        "name": graph.name,
        "entryNode": graph.start_node_id,
        "nodes": [to_canvas_node(node, graph) for node in graph.nodes],
        "edges": [to_canvas_edge(edge) for edge in graph.edges],
    }
