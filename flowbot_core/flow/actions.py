"""Execution of function and webhook actions emitted by the engine."""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

import httpx
import structlog

from flowbot_core.config import get_settings
from flowbot_core.flow.engine import ActionType, FlowAction


logger = structlog.get_logger(__name__)

FunctionHandler = Callable[..., Awaitable[Any]]

EXECUTABLE_ACTIONS = (ActionType.CALL_FUNCTION, ActionType.CALL_WEBHOOK)


@dataclass
class ActionOutcome:
    """Result of executing one action."""

    action: FlowAction
    success: bool
    result: Any = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.action.type.value,
            "node_id": self.action.node_id,
            "success": self.success,
            "result": self.result,
            "error": self.error,
        }


class ActionExecutor:
    """
    Runs `call_function` and `call_webhook` actions.

    Functions are registered async callables receiving the conversation
    context and the node parameters as keyword arguments. Webhooks are
    sent with httpx. Other action types belong to the transport and are
    skipped.
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self._function_handlers: Dict[str, FunctionHandler] = {}
        self._http_client = http_client
        self._owns_client = http_client is None
        self._timeout = timeout_seconds or get_settings().executor.webhook_timeout_seconds

    async def start(self) -> None:
        """Open the HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        logger.info("action_executor_started")

    async def stop(self) -> None:
        """Close the HTTP client if we opened it."""
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None
        logger.info("action_executor_stopped")

    def register_function(self, name: str, handler: FunctionHandler) -> None:
        """Register a function handler."""
        self._function_handlers[name] = handler

    @property
    def functions(self) -> List[str]:
        return list(self._function_handlers)

    async def execute(
        self,
        actions: List[FlowAction],
        context: Mapping[str, Any],
    ) -> List[ActionOutcome]:
        """Execute the executable actions in order."""
        outcomes = []
        for action in actions:
            if action.type == ActionType.CALL_FUNCTION:
                outcomes.append(await self._call_function(action, context))
            elif action.type == ActionType.CALL_WEBHOOK:
                outcomes.append(await self._call_webhook(action, context))
        return outcomes

    async def _call_function(
        self,
        action: FlowAction,
        context: Mapping[str, Any],
    ) -> ActionOutcome:
        function_name = action.payload.get("function_name", "")
        handler = self._function_handlers.get(function_name)
        if handler is None:
            logger.warning("function_not_registered", function=function_name, node_id=action.node_id)
            return ActionOutcome(action, success=False, error=f"Function not registered: {function_name}")

        try:
            result = await handler(context=dict(context), **action.payload.get("parameters", {}))
        except Exception as e:
            logger.error(
                "function_call_failed",
                function=function_name,
                node_id=action.node_id,
                error=str(e),
            )
            return ActionOutcome(action, success=False, error=str(e))

        return ActionOutcome(action, success=True, result=result)

    async def _call_webhook(
        self,
        action: FlowAction,
        context: Mapping[str, Any],
    ) -> ActionOutcome:
        if self._http_client is None:
            await self.start()

        url = action.payload.get("url", "")
        method = action.payload.get("method", "POST")
        if not url:
            return ActionOutcome(action, success=False, error="Webhook URL not set")

        request_kwargs: Dict[str, Any] = {"headers": action.payload.get("headers") or {}}
        if method != "GET":
            request_kwargs["json"] = {"node_id": action.node_id, "context": dict(context)}

        try:
            response = await self._http_client.request(method, url, **request_kwargs)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(
                "webhook_call_failed",
                url=url,
                method=method,
                node_id=action.node_id,
                error=str(e),
            )
            return ActionOutcome(action, success=False, error=str(e))

        if "application/json" in response.headers.get("content-type", ""):
            result: Any = response.json()
        else:
            result = response.text

        logger.debug("webhook_called", url=url, status_code=response.status_code)
        return ActionOutcome(action, success=True, result=result)
