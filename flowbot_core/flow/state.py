"""Flow execution state."""

import copy
import json
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog


logger = structlog.get_logger(__name__)


class ExecutionStatus(str, Enum):
    """Status of a running conversation."""

    RUNNING = "running"
    WAITING_FOR_REPLY = "waiting_for_reply"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


class FailureReason(str, Enum):
    """Why a conversation ended in FAILED."""

    NO_MATCHING_EDGE = "no_matching_edge"
    STRUCTURAL_ERROR = "structural_error"
    STEP_LIMIT_EXCEEDED = "step_limit_exceeded"


@dataclass
class StateTransition:
    """Record of a state transition."""

    from_node: Optional[str]
    to_node: str
    trigger: str  # Condition type of the edge taken, or "start"
    edge_id: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_node": self.from_node,
            "to_node": self.to_node,
            "trigger": self.trigger,
            "edge_id": self.edge_id,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StateTransition":
        return cls(
            from_node=data.get("from_node"),
            to_node=data["to_node"],
            trigger=data.get("trigger", "always"),
            edge_id=data.get("edge_id"),
            timestamp=(
                datetime.fromisoformat(data["timestamp"])
                if data.get("timestamp")
                else datetime.utcnow()
            ),
        )


@dataclass
class ExecutionState:
    """
    Current state of one conversation's traversal.

    Tracks:
    - Current position in the flow
    - Accumulated context variables
    - Execution log (transitions and visited nodes)
    - Terminal outcome
    """

    flow_id: str
    conversation_id: str

    # Current position
    current_node_id: Optional[str] = None
    status: ExecutionStatus = ExecutionStatus.RUNNING

    # Variables captured during the conversation
    context: Dict[str, Any] = field(default_factory=dict)

    # Whether the start node has been entered
    started: bool = False

    # Execution history
    transitions: List[StateTransition] = field(default_factory=list)
    visited_nodes: List[str] = field(default_factory=list)

    # Error handling
    failure_reason: Optional[FailureReason] = None
    error_message: Optional[str] = None

    # Timestamps
    started_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_waiting(self) -> bool:
        return self.status == ExecutionStatus.WAITING_FOR_REPLY

    def set_variable(self, name: str, value: Any) -> None:
        """Set a context variable."""
        self.context[name] = value
        self.updated_at = datetime.utcnow()

    def get_variable(self, name: str, default: Any = None) -> Any:
        """Get a context variable."""
        return self.context.get(name, default)

    def transition_to(
        self,
        node_id: str,
        trigger: str = "always",
        edge_id: Optional[str] = None,
    ) -> None:
        """Record transition to a new node."""
        transition = StateTransition(
            from_node=self.current_node_id,
            to_node=node_id,
            trigger=trigger,
            edge_id=edge_id,
        )
        self.transitions.append(transition)

        self.current_node_id = node_id
        self.visited_nodes.append(node_id)
        self.updated_at = datetime.utcnow()

        logger.debug(
            "flow_transition",
            conversation_id=self.conversation_id,
            from_node=transition.from_node,
            to_node=node_id,
            trigger=trigger,
            edge_id=edge_id,
        )

    def fail(self, reason: FailureReason, message: str) -> None:
        """Set error state."""
        self.status = ExecutionStatus.FAILED
        self.failure_reason = reason
        self.error_message = message
        self.updated_at = datetime.utcnow()
        logger.warning(
            "flow_failed",
            conversation_id=self.conversation_id,
            flow_id=self.flow_id,
            current_node=self.current_node_id,
            reason=reason.value,
            error=message,
        )

    def copy(self) -> "ExecutionState":
        """Independent deep copy."""
        return copy.deepcopy(self)

    def get_duration_seconds(self) -> float:
        """Get conversation duration in seconds."""
        return (self.updated_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "flow_id": self.flow_id,
            "conversation_id": self.conversation_id,
            "current_node_id": self.current_node_id,
            "status": self.status.value,
            "context": self.context,
            "started": self.started,
            "transitions": [t.to_dict() for t in self.transitions],
            "visited_nodes": self.visited_nodes,
            "failure_reason": self.failure_reason.value if self.failure_reason else None,
            "error_message": self.error_message,
            "started_at": self.started_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionState":
        """Create from dictionary."""
        state = cls(
            flow_id=data["flow_id"],
            conversation_id=data["conversation_id"],
        )
        state.current_node_id = data.get("current_node_id")
        state.status = ExecutionStatus(data.get("status", "running"))
        state.context = dict(data.get("context") or {})
        state.started = bool(data.get("started", False))
        state.transitions = [StateTransition.from_dict(t) for t in data.get("transitions", [])]
        state.visited_nodes = list(data.get("visited_nodes", []))
        if data.get("failure_reason"):
            state.failure_reason = FailureReason(data["failure_reason"])
        state.error_message = data.get("error_message")

        if data.get("started_at"):
            state.started_at = datetime.fromisoformat(data["started_at"])
        if data.get("updated_at"):
            state.updated_at = datetime.fromisoformat(data["updated_at"])

        return state


class ExecutionStateStore:
    """
    Storage for conversation execution states.

    Active states live in memory and, when a Redis client is supplied,
    in Redis with a TTL. Finished states are moved to a bounded archive.
    """

    def __init__(
        self,
        redis_client=None,
        ttl_seconds: int = 3600,
        archive_size: int = 1000,
        key_prefix: str = "flow_state",
    ):
        self._states: Dict[str, ExecutionState] = {}
        self._archive: "OrderedDict[str, ExecutionState]" = OrderedDict()
        self._redis = redis_client
        self._ttl = ttl_seconds
        self._archive_size = archive_size
        self._key_prefix = key_prefix

    def _key(self, conversation_id: str) -> str:
        return f"{self._key_prefix}:{conversation_id}"

    async def save(self, state: ExecutionState) -> None:
        """Save state."""
        self._states[state.conversation_id] = state

        if self._redis:
            await self._redis.setex(
                self._key(state.conversation_id),
                self._ttl,
                json.dumps(state.to_dict()),
            )

    async def load(self, conversation_id: str) -> Optional[ExecutionState]:
        """Load state."""
        if conversation_id in self._states:
            return self._states[conversation_id]

        if self._redis:
            data = await self._redis.get(self._key(conversation_id))
            if data:
                state = ExecutionState.from_dict(json.loads(data))
                self._states[conversation_id] = state
                return state

        return None

    async def delete(self, conversation_id: str) -> bool:
        """Delete state."""
        existed = self._states.pop(conversation_id, None) is not None

        if self._redis:
            removed = await self._redis.delete(self._key(conversation_id))
            existed = existed or bool(removed)

        return existed

    async def archive(self, state: ExecutionState) -> None:
        """Move a finished state out of the active store."""
        await self.delete(state.conversation_id)

        self._archive[state.conversation_id] = state
        self._archive.move_to_end(state.conversation_id)
        while len(self._archive) > self._archive_size:
            self._archive.popitem(last=False)

    def get_archived(self, conversation_id: str) -> Optional[ExecutionState]:
        return self._archive.get(conversation_id)

    @property
    def active_count(self) -> int:
        return len(self._states)

    @property
    def archived_count(self) -> int:
        return len(self._archive)
