"""Conversation flow graph, evaluation and execution."""

from flowbot_core.flow.builder import FlowBuilder
from flowbot_core.flow.conditions import (
    ConditionEvaluator,
    ConversationEvent,
    MatchResult,
)
from flowbot_core.flow.engine import (
    ActionType,
    FlowAction,
    FlowConfig,
    FlowEngine,
    StepResult,
)
from flowbot_core.flow.loader import load_graph
from flowbot_core.flow.models import (
    ConditionType,
    Edge,
    FlowGraph,
    Node,
    NodeKind,
)
from flowbot_core.flow.session import FlowSessionManager
from flowbot_core.flow.state import (
    ExecutionState,
    ExecutionStatus,
    FailureReason,
    StateTransition,
)
from flowbot_core.flow.validator import (
    FlowValidator,
    ValidationIssue,
    ValidationResult,
    validate,
)

__all__ = [
    "ActionType",
    "ConditionEvaluator",
    "ConditionType",
    "ConversationEvent",
    "Edge",
    "ExecutionState",
    "ExecutionStatus",
    "FailureReason",
    "FlowAction",
    "FlowBuilder",
    "FlowConfig",
    "FlowEngine",
    "FlowGraph",
    "FlowSessionManager",
    "FlowValidator",
    "MatchResult",
    "Node",
    "NodeKind",
    "StateTransition",
    "StepResult",
    "ValidationIssue",
    "ValidationResult",
    "load_graph",
    "validate",
]
