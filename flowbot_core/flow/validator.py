"""
Flow Validator.

Validates flow structure, connections, and edge configurations.
"""

from typing import Dict, List, Optional, Set

import structlog
from pydantic import BaseModel, Field

from flowbot_core.config import ValidationSettings, get_settings
from flowbot_core.errors import StructuralError
from flowbot_core.flow.models import ConditionType, FlowGraph


logger = structlog.get_logger(__name__)


class ValidationIssue(BaseModel):
    """A single validation finding."""

    severity: str  # error, warning
    code: str
    message: str
    node_id: Optional[str] = None
    edge_id: Optional[str] = None


class ValidationResult(BaseModel):
    """Result of validating a flow graph."""

    valid: bool
    issues: List[ValidationIssue] = Field(default_factory=list)

    @property
    def errors(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == "error"]

    @property
    def warnings(self) -> List[ValidationIssue]:
        return [i for i in self.issues if i.severity == "warning"]

    def codes(self) -> List[str]:
        return [i.code for i in self.issues]


def _error(code: str, message: str, **refs) -> ValidationIssue:
    return ValidationIssue(severity="error", code=code, message=message, **refs)


def _warning(code: str, message: str, **refs) -> ValidationIssue:
    return ValidationIssue(severity="warning", code=code, message=message, **refs)


class FlowValidator:
    """
    Validates flow graph structure.

    Checks:
    - Structural integrity (ids, start node, edge endpoints)
    - Edge configuration (missing keywords, intents, expressions)
    - Logic flow (unreachable nodes, dead ends, always-only cycles)
    - Resource limits

    Findings are returned as data; nothing is raised for a malformed graph.
    """

    def __init__(self, settings: Optional[ValidationSettings] = None):
        self.settings = settings or get_settings().validation

    def validate(self, graph: FlowGraph) -> ValidationResult:
        """
        Validate a complete flow graph.

        Args:
            graph: Flow to validate

        Returns:
            ValidationResult with issues found
        """
        issues: List[ValidationIssue] = []

        issues.extend(self._validate_structure(graph))
        issues.extend(self._validate_edges(graph))
        issues.extend(self._validate_logic(graph))
        issues.extend(self._validate_limits(graph))

        valid = all(i.severity != "error" for i in issues)

        logger.debug(
            "flow_validated",
            flow_id=graph.flow_id,
            valid=valid,
            issues=len(issues),
        )

        return ValidationResult(valid=valid, issues=issues)

    def ensure_valid(self, graph: FlowGraph) -> ValidationResult:
        """Validate and raise StructuralError if the graph has errors."""
        result = self.validate(graph)
        if not result.valid:
            summary = "; ".join(i.message for i in result.errors)
            raise StructuralError(
                f"Flow {graph.flow_id} is invalid: {summary}",
                issues=result.errors,
            )
        return result

    def _validate_structure(self, graph: FlowGraph) -> List[ValidationIssue]:
        """Validate ids and the start node."""
        issues = []

        seen_ids: Set[str] = set()
        for node in graph.nodes:
            if node.id in seen_ids:
                issues.append(_error(
                    "duplicate_node_id",
                    f"Duplicate node ID: {node.id}",
                    node_id=node.id,
                ))
            seen_ids.add(node.id)

        seen_edge_ids: Set[str] = set()
        for edge in graph.edges:
            if edge.id in seen_edge_ids:
                issues.append(_error(
                    "duplicate_edge_id",
                    f"Duplicate edge ID: {edge.id}",
                    edge_id=edge.id,
                ))
            seen_edge_ids.add(edge.id)

        if graph.start_node_id is None:
            issues.append(_error("missing_start_node", "Flow has no start node"))
        elif graph.start_node_id not in seen_ids:
            issues.append(_error(
                "missing_start_node",
                f"Start node not found: {graph.start_node_id}",
                node_id=graph.start_node_id,
            ))

        flagged = [n.id for n in graph.nodes if n.is_entry]
        if len(flagged) > 1:
            issues.append(_error(
                "multiple_start_nodes",
                f"Multiple nodes marked as start: {', '.join(flagged)}",
            ))

        return issues

    def _validate_edges(self, graph: FlowGraph) -> List[ValidationIssue]:
        """Validate edge endpoints and condition configuration."""
        issues = []
        node_ids = set(graph.node_map)
        always_sources: Dict[str, int] = {}

        for edge in graph.edges:
            if edge.source not in node_ids:
                issues.append(_error(
                    "dangling_source",
                    f"Edge source node not found: {edge.source}",
                    edge_id=edge.id,
                ))

            if edge.target not in node_ids:
                issues.append(_error(
                    "dangling_target",
                    f"Edge target node not found: {edge.target}",
                    edge_id=edge.id,
                ))

            if edge.source == edge.target:
                issues.append(_warning(
                    "self_loop",
                    "Node has an edge to itself",
                    node_id=edge.source,
                    edge_id=edge.id,
                ))

            if edge.is_always:
                always_sources[edge.source] = always_sources.get(edge.source, 0) + 1

            missing = self._missing_condition_config(edge)
            if missing:
                issues.append(_warning(
                    "missing_condition_config",
                    missing,
                    node_id=edge.source,
                    edge_id=edge.id,
                ))

        for source, count in always_sources.items():
            if count > 1:
                issues.append(_error(
                    "multiple_always_edges",
                    f"Node has {count} always edges; only one can be the fallback",
                    node_id=source,
                ))

        return issues

    @staticmethod
    def _missing_condition_config(edge) -> Optional[str]:
        condition_type = edge.condition_type
        condition = edge.condition

        if condition_type == ConditionType.KEYWORD and not condition.keywords:
            return "Keyword edge has no keywords"
        if condition_type == ConditionType.INTENT and not condition.intent:
            return "Intent edge has no intent"
        if condition_type == ConditionType.CONDITION and (
            condition.expression is None and not condition.rules
        ):
            return "Condition edge has no expression"
        return None

    def _validate_logic(self, graph: FlowGraph) -> List[ValidationIssue]:
        """Validate flow logic and reachability."""
        issues = []
        node_ids = set(graph.node_map)

        adjacency: Dict[str, List[str]] = {node_id: [] for node_id in node_ids}
        for edge in graph.edges:
            if edge.source in adjacency and edge.target in node_ids:
                adjacency[edge.source].append(edge.target)

        # BFS from the start node
        reachable: Set[str] = set()
        if graph.start_node_id in node_ids:
            queue = [graph.start_node_id]
            while queue:
                current = queue.pop(0)
                if current in reachable:
                    continue
                reachable.add(current)
                queue.extend(adjacency.get(current, []))

        connected = {e.source for e in graph.edges} | {e.target for e in graph.edges}

        for node in graph.nodes:
            outgoing = graph.outgoing(node.id)

            if node.is_end:
                if outgoing:
                    issues.append(_warning(
                        "end_node_outgoing",
                        "End node has outgoing edges; they are never followed",
                        node_id=node.id,
                    ))
            elif not outgoing:
                issues.append(_warning(
                    "dead_end_node",
                    "Node has no outgoing edges",
                    node_id=node.id,
                ))

            if node.id == graph.start_node_id:
                continue

            if node.id not in connected:
                issues.append(_warning(
                    "island_node",
                    "Node is not connected to any other node",
                    node_id=node.id,
                ))
            elif reachable and node.id not in reachable:
                issues.append(_warning(
                    "unreachable_node",
                    "Node is not reachable from the start node",
                    node_id=node.id,
                ))

        issues.extend(self._detect_always_cycles(graph))
        issues.extend(self._detect_chained_waits(graph))
        issues.extend(self._detect_shadowed_edges(graph))

        return issues

    def _detect_always_cycles(self, graph: FlowGraph) -> List[ValidationIssue]:
        """Detect cycles made only of always edges."""
        issues = []
        always_graph: Dict[str, List[str]] = {}
        for edge in graph.edges:
            if edge.is_always:
                always_graph.setdefault(edge.source, []).append(edge.target)

        visited: Set[str] = set()
        rec_stack: List[str] = []
        reported: Set[frozenset] = set()

        def dfs(node_id: str) -> None:
            visited.add(node_id)
            rec_stack.append(node_id)

            for neighbor in always_graph.get(node_id, []):
                if neighbor in rec_stack:
                    cycle = rec_stack[rec_stack.index(neighbor):]
                    key = frozenset(cycle)
                    if key not in reported:
                        reported.add(key)
                        issues.append(_error(
                            "always_cycle",
                            "Cycle of always edges: " + " -> ".join(cycle + [neighbor]),
                            node_id=neighbor,
                        ))
                elif neighbor not in visited:
                    dfs(neighbor)

            rec_stack.pop()

        for node_id in sorted(always_graph):
            if node_id not in visited:
                dfs(node_id)

        return issues

    def _detect_chained_waits(self, graph: FlowGraph) -> List[ValidationIssue]:
        """Warn about wait edges leaving nodes only reached by wait edges."""
        issues = []

        for edge in graph.edges:
            if not edge.is_wait:
                continue
            incoming = graph.incoming(edge.source)
            if incoming and all(e.is_wait for e in incoming):
                issues.append(_warning(
                    "chained_wait",
                    "Wait edge leaves a node that is itself a wait target; "
                    "it is not crossed until a reply arrives",
                    node_id=edge.source,
                    edge_id=edge.id,
                ))

        return issues

    def _detect_shadowed_edges(self, graph: FlowGraph) -> List[ValidationIssue]:
        """Warn about edges that a wait edge on the same node makes unreachable."""
        issues = []

        for node in graph.nodes:
            outgoing = graph.outgoing(node.id)
            waits = [e for e in outgoing if e.is_wait]
            if not waits or node.is_end:
                continue
            # A node reached only through wait edges dispatches the reply instead
            entered = node.id == graph.start_node_id or any(
                not e.is_wait for e in graph.incoming(node.id)
            )
            if not entered:
                continue

            crossed = sorted(waits, key=lambda e: -e.priority)[0]
            shadowed = [e.id for e in outgoing if e.id != crossed.id]
            if shadowed:
                issues.append(_warning(
                    "wait_shadows_edges",
                    f"Wait edge {crossed.id} is always crossed; "
                    f"edges {', '.join(shadowed)} are never followed",
                    node_id=node.id,
                    edge_id=crossed.id,
                ))

        return issues

    def _validate_limits(self, graph: FlowGraph) -> List[ValidationIssue]:
        """Validate resource limits."""
        issues = []

        if len(graph.nodes) > self.settings.max_nodes_per_flow:
            issues.append(_error(
                "too_many_nodes",
                f"Flow exceeds maximum nodes ({len(graph.nodes)} > {self.settings.max_nodes_per_flow})",
            ))

        for node in graph.nodes:
            total = len(graph.incoming(node.id)) + len(graph.outgoing(node.id))
            if total > self.settings.max_connections_per_node:
                issues.append(_warning(
                    "too_many_connections",
                    f"Node has too many connections ({total} > {self.settings.max_connections_per_node})",
                    node_id=node.id,
                ))

        return issues


def validate(graph: FlowGraph) -> ValidationResult:
    """Validate a flow graph with the configured limits."""
    return FlowValidator().validate(graph)
