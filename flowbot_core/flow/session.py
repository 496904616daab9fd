"""Conversation sessions over registered flows."""

import asyncio
from typing import Any, Dict, Optional, Union

import structlog

from flowbot_core.config import Settings, get_settings
from flowbot_core.errors import (
    ConversationExistsError,
    ConversationNotFoundError,
    FlowNotFoundError,
    FlowTerminatedError,
)
from flowbot_core.flow.actions import ActionExecutor
from flowbot_core.flow.conditions import ConversationEvent
from flowbot_core.flow.engine import FlowConfig, FlowEngine, StepResult
from flowbot_core.flow.models import FlowGraph
from flowbot_core.flow.state import ExecutionState, ExecutionStateStore, ExecutionStatus
from flowbot_core.flow.validator import FlowValidator, ValidationResult


logger = structlog.get_logger(__name__)


class FlowSessionManager:
    """
    Runs conversations on registered flows.

    Responsibilities:
    - Flow registration (graphs are validated first)
    - Conversation lifecycle and state persistence
    - One event at a time per conversation
    - Optional execution of function and webhook actions
    - Statistics
    """

    def __init__(
        self,
        engine: Optional[FlowEngine] = None,
        store: Optional[ExecutionStateStore] = None,
        validator: Optional[FlowValidator] = None,
        executor: Optional[ActionExecutor] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.engine = engine or FlowEngine(FlowConfig.from_settings(self.settings))
        self.validator = validator or FlowValidator(self.settings.validation)
        self.store = store or ExecutionStateStore(
            ttl_seconds=self.settings.store.ttl_seconds,
            archive_size=self.settings.store.archive_size,
            key_prefix=self.settings.store.key_prefix,
        )
        self.executor = executor

        self._flows: Dict[str, FlowGraph] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

        # Metrics
        self._total_started = 0
        self._total_events = 0
        self._total_completed = 0
        self._total_failed = 0

    async def start(self) -> None:
        """Start the session manager."""
        if self.executor:
            await self.executor.start()
        logger.info("session_manager_started", flows=len(self._flows))

    async def stop(self) -> None:
        """Stop the session manager."""
        if self.executor:
            await self.executor.stop()
        logger.info("session_manager_stopped")

    def register_flow(self, graph: FlowGraph) -> ValidationResult:
        """
        Register a flow definition.

        Args:
            graph: Flow graph to register

        Returns:
            Validation result (warnings only)

        Raises:
            StructuralError: If the graph has validation errors
        """
        result = self.validator.ensure_valid(graph)
        self._flows[graph.flow_id] = graph

        logger.info(
            "flow_registered",
            flow_id=graph.flow_id,
            node_count=len(graph.nodes),
            edge_count=len(graph.edges),
            warnings=len(result.warnings),
        )
        return result

    def unregister_flow(self, flow_id: str) -> bool:
        """Remove a flow; running conversations on it fail on their next event."""
        return self._flows.pop(flow_id, None) is not None

    def get_flow(self, flow_id: str) -> FlowGraph:
        """Get a registered flow."""
        graph = self._flows.get(flow_id)
        if graph is None:
            raise FlowNotFoundError(f"Flow not found: {flow_id}")
        return graph

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    async def start_conversation(
        self,
        flow_id: str,
        conversation_id: Optional[str] = None,
        initial_context: Optional[Dict[str, Any]] = None,
    ) -> ExecutionState:
        """
        Start a new conversation on a flow.

        Args:
            flow_id: Registered flow
            conversation_id: Conversation identifier (generated if omitted)
            initial_context: Initial variable values

        Returns:
            The new execution state

        Raises:
            FlowNotFoundError: The flow is not registered
            ConversationExistsError: The id belongs to an active conversation
        """
        graph = self.get_flow(flow_id)
        state = self.engine.start(graph, conversation_id, initial_context)

        async with self._lock_for(state.conversation_id):
            if await self.store.load(state.conversation_id) is not None:
                raise ConversationExistsError(
                    f"Conversation already active: {state.conversation_id}"
                )
            await self._persist(state)

        self._total_started += 1
        return state

    async def handle_event(
        self,
        conversation_id: str,
        event: Union[ConversationEvent, str],
    ) -> StepResult:
        """
        Deliver an inbound event to a conversation.

        Args:
            conversation_id: Conversation identifier
            event: Event or plain message text

        Returns:
            Step result with the new state and the actions to perform

        Raises:
            ConversationNotFoundError: No such conversation
            FlowTerminatedError: The conversation already finished
            FlowNotFoundError: The conversation's flow is no longer registered
        """
        if isinstance(event, str):
            event = ConversationEvent.message(event)

        async with self._lock_for(conversation_id):
            state = await self.store.load(conversation_id)
            if state is None:
                # No conversation left to serialize on
                self._locks.pop(conversation_id, None)
                archived = self.store.get_archived(conversation_id)
                if archived is not None:
                    raise FlowTerminatedError(
                        f"Conversation {conversation_id} is {archived.status.value}"
                    )
                raise ConversationNotFoundError(f"Conversation not found: {conversation_id}")

            graph = self.get_flow(state.flow_id)
            result = self.engine.step(graph, state, event)
            self._total_events += 1

            if self.executor and result.actions:
                await self._run_actions(result)

            await self._persist(result.state)

        return result

    async def _run_actions(self, result: StepResult) -> None:
        outcomes = await self.executor.execute(result.actions, result.state.context)
        if not self.settings.executor.store_results:
            return

        for outcome in outcomes:
            if not outcome.success:
                continue
            key = outcome.action.payload.get("function_name") or outcome.action.node_id
            results = dict(result.state.get_variable("action_results") or {})
            results[key] = outcome.result
            result.state.set_variable("action_results", results)

    async def _persist(self, state: ExecutionState) -> None:
        if not state.is_terminal:
            await self.store.save(state)
            return

        await self.store.archive(state)
        self._locks.pop(state.conversation_id, None)
        if state.status == ExecutionStatus.COMPLETED:
            self._total_completed += 1
        else:
            self._total_failed += 1

    async def get_state(self, conversation_id: str) -> Optional[ExecutionState]:
        """Get current or archived state of a conversation."""
        state = await self.store.load(conversation_id)
        if state is None:
            state = self.store.get_archived(conversation_id)
        return state

    async def reset_conversation(self, conversation_id: str) -> bool:
        """Discard an active conversation."""
        async with self._lock_for(conversation_id):
            existed = await self.store.delete(conversation_id)
        self._locks.pop(conversation_id, None)
        if existed:
            logger.info("conversation_reset", conversation_id=conversation_id)
        return existed

    def get_statistics(self) -> Dict[str, Any]:
        """Get session statistics."""
        return {
            "registered_flows": len(self._flows),
            "flows": list(self._flows),
            "active_conversations": self.store.active_count,
            "archived_conversations": self.store.archived_count,
            "conversations_started": self._total_started,
            "events_processed": self._total_events,
            "conversations_completed": self._total_completed,
            "conversations_failed": self._total_failed,
        }
