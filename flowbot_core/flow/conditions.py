"""
Edge condition evaluation.

Decides whether an edge matches an inbound conversation event and picks
the edge to follow from a node's outgoing edges.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import structlog

from flowbot_core.errors import ConditionEvaluationError
from flowbot_core.flow.expressions import (
    ExpressionDelegate,
    ExpressionEvaluator,
    evaluate_rule_group,
)
from flowbot_core.flow.models import (
    ConditionType,
    Edge,
    ExpressionCondition,
    IntentCondition,
    KeywordCondition,
    UserInputCondition,
)
from flowbot_core.flow.state import ExecutionStatus


logger = structlog.get_logger(__name__)


class MatchResult(str, Enum):
    """Outcome of evaluating one edge."""

    MATCHED = "matched"
    NOT_MATCHED = "not_matched"

    def __bool__(self) -> bool:
        return self is MatchResult.MATCHED


class EventKind(str, Enum):
    """Kinds of inbound conversation events."""

    MESSAGE = "message"
    TIMER = "timer"
    SYSTEM = "system"


@dataclass(frozen=True)
class ConversationEvent:
    """Inbound event delivered by the conversation transport."""

    text: str = ""
    intent: Optional[str] = None  # Resolved externally
    metadata: Dict[str, Any] = field(default_factory=dict)
    kind: EventKind = EventKind.MESSAGE

    @classmethod
    def message(cls, text: str, intent: Optional[str] = None, **metadata: Any) -> "ConversationEvent":
        return cls(text=text, intent=intent, metadata=metadata)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ConversationEvent":
        return cls(
            text=str(data.get("text") or ""),
            intent=data.get("intent") or None,
            metadata=dict(data.get("metadata") or {}),
            kind=EventKind(data.get("kind", EventKind.MESSAGE.value)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "intent": self.intent,
            "metadata": dict(self.metadata),
            "kind": self.kind.value,
        }


@dataclass
class EdgeSelection:
    """Result of choosing an outgoing edge."""

    edge: Optional[Edge]
    evaluated: int = 0
    errors: List[Tuple[str, str]] = field(default_factory=list)  # (edge_id, message)

    @property
    def matched(self) -> bool:
        return self.edge is not None


def dispatch_order(edges: Sequence[Edge]) -> List[Edge]:
    """
    Order outgoing edges for evaluation.

    Conditional edges by descending priority, ties in declared order,
    then `always` edges. `wait_user_reply` edges are directives and are
    never candidates.
    """
    conditional = [e for e in edges if not e.is_always and not e.is_wait]
    fallback = [e for e in edges if e.is_always]
    # sorted() is stable, so equal priorities keep declared order
    return sorted(conditional, key=lambda e: -e.priority) + sorted(fallback, key=lambda e: -e.priority)


def build_scope(
    event: ConversationEvent,
    context: Mapping[str, Any],
    visited_nodes: Sequence[str] = (),
) -> Dict[str, Any]:
    """Variables visible to `condition` expressions."""
    return {
        **context,
        "context": dict(context),
        "message": event.text,
        "intent": event.intent,
        "metadata": dict(event.metadata),
        "visited_nodes": list(visited_nodes),
    }


class ConditionEvaluator:
    """
    Evaluates edge conditions.

    Stateless: the same (edge, event, context, status) always gives the
    same result. Errors raised by `condition` expressions are logged and
    treated as not matched.
    """

    def __init__(self, expression_evaluator: Optional[ExpressionDelegate] = None):
        self._expression_evaluator: ExpressionDelegate = expression_evaluator or ExpressionEvaluator()

    def evaluate(
        self,
        edge: Edge,
        event: ConversationEvent,
        context: Mapping[str, Any],
        status: ExecutionStatus = ExecutionStatus.RUNNING,
        visited_nodes: Sequence[str] = (),
    ) -> MatchResult:
        """Evaluate one edge against the event and context."""
        try:
            matched = self._check(edge, event, context, status, visited_nodes)
        except ConditionEvaluationError as e:
            logger.warning(
                "condition_evaluation_failed",
                edge_id=edge.id,
                condition_type=edge.condition_type.value,
                error=str(e),
            )
            return MatchResult.NOT_MATCHED

        return MatchResult.MATCHED if matched else MatchResult.NOT_MATCHED

    def _check(
        self,
        edge: Edge,
        event: ConversationEvent,
        context: Mapping[str, Any],
        status: ExecutionStatus,
        visited_nodes: Sequence[str],
    ) -> bool:
        condition_type = edge.condition_type

        if condition_type == ConditionType.ALWAYS:
            return True

        elif condition_type == ConditionType.KEYWORD:
            return self._match_keywords(edge.condition, event.text)

        elif condition_type == ConditionType.INTENT:
            return self._match_intent(edge.condition, event.intent)

        elif condition_type == ConditionType.USER_INPUT:
            # Only an awaited reply can satisfy a user_input edge
            if status != ExecutionStatus.WAITING_FOR_REPLY:
                return False
            return self._match_user_input(edge.condition, event.text)

        elif condition_type == ConditionType.CONDITION:
            scope = build_scope(event, context, visited_nodes)
            return self._match_expression(edge, edge.condition, scope)

        elif condition_type == ConditionType.WAIT_USER_REPLY:
            # Suspension directive, handled by the engine
            return False

        raise ConditionEvaluationError(f"Unsupported condition type: {condition_type}", edge_id=edge.id)

    @staticmethod
    def _match_keywords(condition: KeywordCondition, text: str) -> bool:
        if not condition.keywords or not text:
            return False
        haystack = text.lower()
        for keyword in condition.keywords:
            if keyword and keyword.lower() in haystack:
                return True
        return False

    @staticmethod
    def _match_intent(condition: IntentCondition, intent: Optional[str]) -> bool:
        if not condition.intent or intent is None:
            return False
        return intent == condition.intent

    @staticmethod
    def _match_user_input(condition: UserInputCondition, text: str) -> bool:
        if not condition.expected_input:
            # Accept any reply
            return True
        return text == condition.expected_input

    def _match_expression(
        self,
        edge: Edge,
        condition: ExpressionCondition,
        scope: Mapping[str, Any],
    ) -> bool:
        if condition.expression is None and condition.rules is None:
            raise ConditionEvaluationError("Condition edge has no expression", edge_id=edge.id)

        try:
            if condition.rules is not None:
                rules_ok = evaluate_rule_group(condition.rules, scope)
                if condition.expression is None:
                    return rules_ok
                if not rules_ok:
                    return False
            return bool(self._expression_evaluator(condition.expression, scope))
        except ConditionEvaluationError as e:
            if e.edge_id is None:
                e.edge_id = edge.id
            raise
        except Exception as e:
            # Delegates are opaque; any failure fails closed
            raise ConditionEvaluationError(
                f"{type(e).__name__}: {e}",
                edge_id=edge.id,
            ) from e

    def select_edge(
        self,
        edges: Sequence[Edge],
        event: ConversationEvent,
        context: Mapping[str, Any],
        status: ExecutionStatus = ExecutionStatus.RUNNING,
        visited_nodes: Sequence[str] = (),
    ) -> EdgeSelection:
        """
        Pick the edge to follow.

        Conditional edges are tried in dispatch order and the first match
        wins; the `always` edge is used only when none match. A selection
        without an edge means no matching edge.
        """
        selection = EdgeSelection(edge=None)

        for edge in dispatch_order(edges):
            selection.evaluated += 1
            try:
                matched = self._check(edge, event, context, status, visited_nodes)
            except ConditionEvaluationError as e:
                logger.warning(
                    "condition_evaluation_failed",
                    edge_id=edge.id,
                    condition_type=edge.condition_type.value,
                    error=str(e),
                )
                selection.errors.append((edge.id, str(e)))
                continue

            if matched:
                selection.edge = edge
                break

        return selection
