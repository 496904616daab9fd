"""Exceptions raised by the flow engine."""

from typing import Any, List, Optional


class FlowError(Exception):
    """Base exception for flow errors."""
    pass


class StructuralError(FlowError):
    """Flow graph violates a structural invariant.

    Raised only where a caller insists on a valid graph; validation itself
    reports findings as data.
    """

    def __init__(self, message: str, issues: Optional[List[Any]] = None):
        super().__init__(message)
        self.issues = list(issues or [])


class ConditionEvaluationError(FlowError):
    """A condition expression or delegate could not be evaluated."""

    def __init__(self, message: str, edge_id: Optional[str] = None):
        super().__init__(message)
        self.edge_id = edge_id


class FlowTerminatedError(FlowError):
    """Event delivered to a completed or failed conversation."""
    pass


class FlowNotFoundError(FlowError):
    """Flow is not registered."""
    pass


class GraphLoadError(FlowError):
    """Serialized flow graph could not be parsed."""
    pass


class ConversationNotFoundError(FlowError):
    """No active conversation with the given id."""
    pass


class ConversationExistsError(FlowError):
    """A conversation with the given id is already active."""
    pass
