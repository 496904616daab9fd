"""Unit tests for the action executor."""

import httpx
import pytest

from flowbot_core.flow.actions import ActionExecutor
from flowbot_core.flow.engine import ActionType, FlowAction


def webhook_action(url="https://example.test/hook", method="POST"):
    return FlowAction(ActionType.CALL_WEBHOOK, "hook", {"url": url, "method": method, "headers": {}})


class TestFunctions:
    """Tests for function actions."""

    @pytest.mark.asyncio
    async def test_unregistered_function(self):
        """Test unknown functions fail without raising."""
        executor = ActionExecutor(timeout_seconds=1)
        action = FlowAction(ActionType.CALL_FUNCTION, "fn", {"function_name": "missing", "parameters": {}})

        [outcome] = await executor.execute([action], {})

        assert not outcome.success
        assert "missing" in outcome.error

    @pytest.mark.asyncio
    async def test_handler_error(self):
        """Test handler exceptions become failed outcomes."""
        async def broken(context):
            raise ValueError("bad input")

        executor = ActionExecutor(timeout_seconds=1)
        executor.register_function("broken", broken)
        action = FlowAction(ActionType.CALL_FUNCTION, "fn", {"function_name": "broken", "parameters": {}})

        [outcome] = await executor.execute([action], {})

        assert outcome.error == "bad input"
        assert executor.functions == ["broken"]

    @pytest.mark.asyncio
    async def test_other_actions_skipped(self):
        """Test transport actions are not executed."""
        executor = ActionExecutor(timeout_seconds=1)
        actions = [
            FlowAction(ActionType.SEND_MESSAGE, "m", {"text": "hi"}),
            FlowAction(ActionType.SUSPEND, "m", {}),
        ]

        assert await executor.execute(actions, {}) == []


class TestWebhooks:
    """Tests for webhook actions."""

    @pytest.mark.asyncio
    async def test_get_has_no_body(self):
        """Test GET webhooks send no JSON body and return text."""
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, text="pong")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            executor = ActionExecutor(http_client=client, timeout_seconds=1)
            [outcome] = await executor.execute([webhook_action(method="GET")], {"a": 1})

        assert seen[0].method == "GET"
        assert seen[0].content == b""
        assert outcome.result == "pong"

    @pytest.mark.asyncio
    async def test_http_error(self):
        """Test error responses become failed outcomes."""
        def handler(request):
            return httpx.Response(500)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            executor = ActionExecutor(http_client=client, timeout_seconds=1)
            [outcome] = await executor.execute([webhook_action()], {})

        assert not outcome.success
        assert outcome.to_dict()["type"] == "call_webhook"

    @pytest.mark.asyncio
    async def test_missing_url(self):
        """Test webhooks without a URL are not sent."""
        executor = ActionExecutor(timeout_seconds=1)

        [outcome] = await executor.execute([webhook_action(url="")], {})

        assert outcome.error == "Webhook URL not set"
        await executor.stop()
