"""Shared pytest fixtures for testing."""

import json

import pytest

from flowbot_core.flow.engine import FlowConfig, FlowEngine
from flowbot_core.flow.models import (
    ConditionType,
    Edge,
    EndConfig,
    FlowGraph,
    KeywordCondition,
    MessageConfig,
    Node,
    NodeKind,
    UserInputCondition,
)


# =============================================================================
# Graph Fixtures
# =============================================================================


@pytest.fixture
def greeting_graph() -> FlowGraph:
    """Start -(keyword "hi")-> Greeting -(always)-> End "Bye"."""
    return FlowGraph(
        flow_id="greeting",
        name="Greeting",
        nodes=(
            Node("start", NodeKind.MESSAGE, MessageConfig("")),
            Node("greeting", NodeKind.MESSAGE, MessageConfig("Hello {name}!")),
            Node("end", NodeKind.END, EndConfig("Bye")),
        ),
        edges=(
            Edge("e1", "start", "greeting", ConditionType.KEYWORD, KeywordCondition(("hi",))),
            Edge("e2", "greeting", "end"),
        ),
        start_node_id="start",
    )


@pytest.fixture
def confirm_graph() -> FlowGraph:
    """Ask -(wait)-> Answer -(user_input "yes")-> Done."""
    return FlowGraph(
        flow_id="confirm",
        nodes=(
            Node("ask", NodeKind.MESSAGE, MessageConfig("Continue?")),
            Node("answer", NodeKind.INPUT),
            Node("done", NodeKind.END, EndConfig("Confirmed")),
        ),
        edges=(
            Edge("e1", "ask", "answer", ConditionType.WAIT_USER_REPLY),
            Edge("e2", "answer", "done", ConditionType.USER_INPUT, UserInputCondition("yes")),
        ),
        start_node_id="ask",
    )


@pytest.fixture
def graph_dict() -> dict:
    """A flow in the builder's persisted shape."""
    return {
        "flow_id": "support",
        "name": "Support",
        "entry_node": "welcome",
        "nodes": [
            {"node_id": "welcome", "node_type": "message", "config": {"message": "Hi! How can we help?"}},
            {"node_id": "refund", "node_type": "message", "config": {"message": "Refunds take 5 days."}},
            {"node_id": "other", "node_type": "message", "config": {"message": "An agent will reply."}},
            {"node_id": "end", "node_type": "end", "config": {"message": "Bye"}},
        ],
        "edges": [
            {
                "edge_id": "e1",
                "source_node": "welcome",
                "target_node": "refund",
                "condition_type": "keyword",
                "condition_config": {"keywords": ["refund", "cancel"]},
            },
            {"edge_id": "e2", "source_node": "welcome", "target_node": "other", "condition_type": "always"},
            {"edge_id": "e3", "source_node": "refund", "target_node": "end", "condition_type": "always"},
            {"edge_id": "e4", "source_node": "other", "target_node": "end", "condition_type": "always"},
        ],
    }


@pytest.fixture
def flow_file(tmp_path, graph_dict):
    """Flow written to a JSON file."""
    path = tmp_path / "support.json"
    path.write_text(json.dumps(graph_dict), encoding="utf-8")
    return path


# =============================================================================
# Engine Fixtures
# =============================================================================


@pytest.fixture
def engine_config() -> FlowConfig:
    return FlowConfig(
        max_steps_per_event=20,
        fallback_message="Something went wrong.",
        capture_key="user_input",
    )


@pytest.fixture
def engine(engine_config) -> FlowEngine:
    return FlowEngine(config=engine_config)
