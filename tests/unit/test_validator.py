"""Unit tests for flow validation."""

import pytest

from flowbot_core.config import ValidationSettings
from flowbot_core.errors import StructuralError
from flowbot_core.flow.models import (
    ConditionType,
    Edge,
    ExpressionCondition,
    FlowGraph,
    IntentCondition,
    KeywordCondition,
    MessageConfig,
    Node,
    NodeKind,
)
from flowbot_core.flow.validator import FlowValidator, validate


def message(node_id, text="hi", is_entry=False):
    return Node(node_id, NodeKind.MESSAGE, MessageConfig(text), is_entry=is_entry)


def end(node_id="end"):
    return Node(node_id, NodeKind.END)


def graph(nodes, edges, start="a"):
    return FlowGraph(flow_id="test", nodes=tuple(nodes), edges=tuple(edges), start_node_id=start)


@pytest.fixture
def validator():
    return FlowValidator(ValidationSettings(max_nodes_per_flow=10, max_connections_per_node=4))


class TestWellFormed:
    """Tests for graphs without problems."""

    def test_fixtures_are_valid(self, validator, greeting_graph, confirm_graph):
        """Test the shared fixture graphs validate cleanly."""
        for g in (greeting_graph, confirm_graph):
            result = validator.validate(g)
            assert result.valid
            assert result.errors == []

    def test_module_level_validate(self, greeting_graph):
        """Test the module level shortcut."""
        assert validate(greeting_graph).valid

    def test_deterministic(self, validator, greeting_graph):
        """Test repeated validation gives equal results."""
        broken = graph([message("a"), message("b")], [Edge("e", "a", "ghost")])

        assert validator.validate(greeting_graph) == validator.validate(greeting_graph)
        assert validate(broken) == validate(broken)
        assert validate(broken).model_dump() == validate(broken).model_dump()

    def test_does_not_mutate(self, validator, greeting_graph):
        """Test validation leaves the graph untouched."""
        before = greeting_graph.to_dict()

        validator.validate(greeting_graph)

        assert greeting_graph.to_dict() == before


class TestStructure:
    """Tests for ids and start node checks."""

    def test_duplicate_ids(self, validator):
        """Test duplicate node and edge ids are errors."""
        result = validator.validate(graph(
            [message("a"), message("a"), end()],
            [Edge("e", "a", "end"), Edge("e", "a", "end")],
        ))

        assert "duplicate_node_id" in result.codes()
        assert "duplicate_edge_id" in result.codes()
        assert not result.valid

    def test_missing_start(self, validator):
        """Test missing or unknown start nodes are errors."""
        no_start = validator.validate(graph([message("a"), end()], [Edge("e", "a", "end")], start=None))
        unknown = validator.validate(graph([message("a"), end()], [Edge("e", "a", "end")], start="zzz"))

        assert "missing_start_node" in no_start.codes()
        assert "missing_start_node" in unknown.codes()

    def test_multiple_start_nodes(self, validator):
        """Test more than one entry node is an error."""
        result = validator.validate(graph(
            [message("a", is_entry=True), message("b", is_entry=True), end()],
            [Edge("e1", "a", "b"), Edge("e2", "b", "end")],
        ))

        assert "multiple_start_nodes" in result.codes()


class TestEdges:
    """Tests for edge checks."""

    def test_dangling_endpoints(self, validator):
        """Test edges to missing nodes are reported."""
        result = validator.validate(graph(
            [message("a"), end()],
            [Edge("e1", "a", "end"), Edge("e2", "a", "ghost"), Edge("e3", "phantom", "end")],
        ))

        dangling = {(i.code, i.edge_id) for i in result.errors}
        assert ("dangling_target", "e2") in dangling
        assert ("dangling_source", "e3") in dangling

    def test_multiple_always_edges(self, validator):
        """Test a node with two always edges is an error."""
        result = validator.validate(graph(
            [message("a"), end("x"), end("y")],
            [Edge("e1", "a", "x"), Edge("e2", "a", "y")],
        ))

        assert "multiple_always_edges" in result.codes()

    def test_missing_condition_config(self, validator):
        """Test conditional edges without payload are warnings."""
        result = validator.validate(graph(
            [message("a"), end("x"), end("y"), end("z"), end("w")],
            [
                Edge("k", "a", "x", ConditionType.KEYWORD, KeywordCondition(())),
                Edge("i", "a", "y", ConditionType.INTENT, IntentCondition("")),
                Edge("c", "a", "z", ConditionType.CONDITION, ExpressionCondition()),
                Edge("fallback", "a", "w"),
            ],
        ))

        flagged = {i.edge_id for i in result.warnings if i.code == "missing_condition_config"}
        assert flagged == {"k", "i", "c"}
        assert result.valid

    def test_self_loop(self, validator):
        """Test self loops are warnings."""
        result = validator.validate(graph(
            [message("a"), end()],
            [Edge("loop", "a", "a", ConditionType.KEYWORD, KeywordCondition(("again",))), Edge("e", "a", "end")],
        ))

        assert "self_loop" in result.codes()


class TestLogic:
    """Tests for reachability and cycle checks."""

    def test_always_cycle_rejected(self, validator):
        """Test a cycle of always edges is an error."""
        result = validator.validate(graph(
            [message("a"), message("b"), message("c")],
            [Edge("ab", "a", "b"), Edge("bc", "b", "c"), Edge("ca", "c", "a")],
        ))

        cycles = [i for i in result.errors if i.code == "always_cycle"]
        assert len(cycles) == 1
        assert not result.valid

    def test_conditional_cycle_allowed(self, validator):
        """Test a cycle broken by a conditional edge is fine."""
        result = validator.validate(graph(
            [message("a"), message("b"), end()],
            [
                Edge("ab", "a", "b"),
                Edge("ba", "b", "a", ConditionType.KEYWORD, KeywordCondition(("again",))),
                Edge("bend", "b", "end"),
            ],
        ))

        assert "always_cycle" not in result.codes()
        assert result.valid

    def test_unreachable_and_island(self, validator):
        """Test unreachable and unconnected nodes are warnings."""
        result = validator.validate(graph(
            [message("a"), end(), message("orphan"), message("lonely"), end("orphan_end")],
            [Edge("e1", "a", "end"), Edge("e2", "orphan", "orphan_end")],
        ))

        by_node = {(i.code, i.node_id) for i in result.warnings}
        assert ("unreachable_node", "orphan") in by_node
        assert ("unreachable_node", "orphan_end") in by_node
        assert ("island_node", "lonely") in by_node
        assert result.valid

    def test_dead_end_and_end_outgoing(self, validator):
        """Test dead ends and End nodes with outgoing edges are warnings."""
        result = validator.validate(graph(
            [message("a"), end(), message("b")],
            [Edge("e1", "a", "end"), Edge("e2", "end", "b")],
        ))

        by_node = {(i.code, i.node_id) for i in result.warnings}
        assert ("dead_end_node", "b") in by_node
        assert ("end_node_outgoing", "end") in by_node

    def test_chained_wait(self, validator):
        """Test a wait edge leaving a wait target is flagged."""
        result = validator.validate(graph(
            [message("a"), message("b"), message("c"), end()],
            [
                Edge("w1", "a", "b", ConditionType.WAIT_USER_REPLY),
                Edge("w2", "b", "c", ConditionType.WAIT_USER_REPLY),
                Edge("e", "c", "end"),
            ],
        ))

        assert [i.edge_id for i in result.warnings if i.code == "chained_wait"] == ["w2"]

    def test_wait_shadows_sibling_edges(self, validator):
        """Test edges next to a wait edge are reported as never followed."""
        result = validator.validate(graph(
            [message("a"), end("x"), message("y"), end()],
            [
                Edge("always", "a", "x"),
                Edge("wait", "a", "y", ConditionType.WAIT_USER_REPLY),
                Edge("e", "y", "end"),
            ],
        ))

        shadowed = [i for i in result.warnings if i.code == "wait_shadows_edges"]
        assert [(i.node_id, i.edge_id) for i in shadowed] == [("a", "wait")]
        assert "always" in shadowed[0].message
        assert result.valid

    def test_wait_alone_not_shadowing(self, validator, confirm_graph):
        """Test a lone wait edge and wait targets are not reported."""
        result = validator.validate(confirm_graph)

        assert "wait_shadows_edges" not in result.codes()

    def test_wait_target_siblings_not_shadowed(self, validator):
        """Test a node reached only by a wait edge dispatches its other edges."""
        result = validator.validate(graph(
            [message("a"), message("b"), message("c"), end()],
            [
                Edge("w1", "a", "b", ConditionType.WAIT_USER_REPLY),
                Edge("w2", "b", "c", ConditionType.WAIT_USER_REPLY),
                Edge("fallback", "b", "end"),
                Edge("e", "c", "end"),
            ],
        ))

        assert "wait_shadows_edges" not in result.codes()
        assert "chained_wait" in result.codes()


class TestLimits:
    """Tests for resource limits."""

    def test_too_many_nodes(self):
        """Test node count limit is an error."""
        validator = FlowValidator(ValidationSettings(max_nodes_per_flow=2))
        result = validator.validate(graph(
            [message("a"), message("b"), end()],
            [Edge("e1", "a", "b"), Edge("e2", "b", "end")],
        ))

        assert "too_many_nodes" in result.codes()

    def test_too_many_connections(self, validator):
        """Test connection count limit is a warning."""
        targets = [end(f"t{i}") for i in range(5)]
        edges = [
            Edge(f"e{i}", "a", f"t{i}", ConditionType.INTENT, IntentCondition(f"i{i}"))
            for i in range(5)
        ]

        result = validator.validate(graph([message("a")] + targets, edges))

        assert "too_many_connections" in result.codes()
        assert result.valid


class TestEnsureValid:
    """Tests for ensure_valid."""

    def test_raises_structural_error(self, validator):
        """Test invalid graphs raise with their issues."""
        broken = graph([message("a")], [Edge("e", "a", "ghost")])

        with pytest.raises(StructuralError) as exc_info:
            validator.ensure_valid(broken)

        assert exc_info.value.issues
        assert exc_info.value.issues[0].code == "dangling_target"

    def test_returns_result_when_valid(self, validator, greeting_graph):
        """Test valid graphs pass through."""
        assert validator.ensure_valid(greeting_graph).valid
