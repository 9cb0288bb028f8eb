"""Tests for notifier.py - Telegram delivery and message formatting."""

import json

import httpx
import pytest

from valwatch.errors import NotifierError, SpecificError
from valwatch.models import Notification, NotificationEvent
from valwatch.notifier import TelegramNotifier, format_message


class TelegramAPI:
    """Mock Bot API recording every request."""

    def __init__(self, send_ok=True, error=None):
        self.send_ok = send_ok
        self.error = error
        self.updates = []
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if self.error:
            raise self.error
        body = json.loads(request.content or b"{}")
        self.requests.append((request.url.path, body))
        if request.url.path.endswith("/getMe"):
            return httpx.Response(200, json={"ok": True, "result": {"username": "valwatch_bot"}})
        if request.url.path.endswith("/getUpdates"):
            pending = [u for u in self.updates if u["update_id"] >= body.get("offset", 0)]
            return httpx.Response(200, json={"ok": True, "result": pending})
        if self.send_ok:
            return httpx.Response(200, json={"ok": True, "result": {"message_id": 1}})
        return httpx.Response(403, json={"ok": False, "description": "Forbidden: bot was blocked by the user"})


def rpc_down(recipient="42", **data):
    return Notification(
        event=NotificationEvent.RPC_ENDPOINT_HEALTH,
        recipient=recipient,
        data=data or {"name": "main", "url": "https://rpc.example.com", "is_healthy": False},
    )


async def started(api):
    notifier = TelegramNotifier("123:abc", transport=httpx.MockTransport(api))
    await notifier.start()
    return notifier


class TestTelegramNotifier:
    @pytest.mark.asyncio
    async def test_start_checks_token(self):
        """Test start verifies the token with getMe."""
        api = TelegramAPI()
        notifier = await started(api)
        assert notifier.username == "valwatch_bot"
        assert api.requests[0][0] == "/bot123:abc/getMe"
        assert await notifier.ping() is True
        await notifier.stop()

    @pytest.mark.asyncio
    async def test_new_chats_from_updates(self):
        """Test chats that wrote to the bot are returned once and deduplicated."""
        api = TelegramAPI()
        api.updates = [
            {"update_id": 5, "message": {"chat": {"id": 100, "username": "alice"}, "text": "/start"}},
            {"update_id": 6, "message": {"chat": {"id": 100, "username": "alice"}, "text": "hi"}},
            {"update_id": 7, "my_chat_member": {"chat": {"id": -200, "title": "ops"}}},
            {"update_id": 8, "edited_message": {"chat": {"id": 300}}},
        ]
        notifier = await started(api)

        assert await notifier.get_new_chats() == [("100", "alice"), ("-200", None)]
        path, body = api.requests[-1]
        assert path == "/bot123:abc/getUpdates"
        assert body["offset"] == 0

        # acknowledged updates are not returned again
        assert await notifier.get_new_chats() == []
        assert api.requests[-1][1]["offset"] == 9
        await notifier.stop()

    @pytest.mark.asyncio
    async def test_ping_fails_when_api_unreachable(self):
        """Test ping returns False instead of raising when getMe fails."""
        api = TelegramAPI()
        notifier = await started(api)
        api.error = httpx.ConnectError("down")
        assert await notifier.ping() is False
        await notifier.stop()

    @pytest.mark.asyncio
    async def test_missing_token(self):
        """Test start fails without a token."""
        with pytest.raises(NotifierError):
            await TelegramNotifier("").start()

    @pytest.mark.asyncio
    async def test_send_message(self):
        """Test a notification is sent as an HTML message."""
        api = TelegramAPI()
        notifier = await started(api)

        result = await notifier.send_notification(rpc_down())

        assert result.sent_success is True
        path, body = api.requests[-1]
        assert path == "/bot123:abc/sendMessage"
        assert body["chat_id"] == 42
        assert body["parse_mode"] == "HTML"
        assert "main" in body["text"]
        await notifier.stop()

    @pytest.mark.asyncio
    async def test_rejected_message(self):
        """Test a rejected message is reported as not sent."""
        api = TelegramAPI()
        notifier = await started(api)
        api.send_ok = False

        result = await notifier.send_notification(rpc_down())
        assert result.sent_success is False
        await notifier.stop()

    @pytest.mark.asyncio
    async def test_transport_failure(self):
        """Test transport errors raise NotifierError."""
        api = TelegramAPI()
        notifier = await started(api)
        api.error = httpx.ConnectError("connection refused")

        with pytest.raises(NotifierError):
            await notifier.send_notification(rpc_down())
        assert await notifier.ping() is False
        await notifier.stop()

    @pytest.mark.asyncio
    async def test_invalid_recipient(self):
        """Test a non-numeric recipient raises SpecificError."""
        notifier = await started(TelegramAPI())
        with pytest.raises(SpecificError):
            await notifier.send_notification(rpc_down(recipient="not-a-chat"))
        await notifier.stop()

    @pytest.mark.asyncio
    async def test_send_before_start(self):
        """Test sending before start raises NotifierError."""
        notifier = TelegramNotifier("123:abc", transport=httpx.MockTransport(TelegramAPI()))
        with pytest.raises(NotifierError):
            await notifier.send_notification(rpc_down())


class TestFormatting:
    def test_values_are_escaped(self):
        """Test values are HTML escaped in messages."""
        text = format_message(rpc_down(name="<b>evil</b>", url="https://x.example.com?a=1&b=2", is_healthy=True))
        assert "&lt;b&gt;evil&lt;/b&gt;" in text
        assert "a=1&amp;b=2" in text

    def test_balance_in_axl(self):
        """Test balances are formatted in AXL."""
        notification = Notification(
            event=NotificationEvent.BROADCASTER_BALANCE_LOW,
            recipient="42",
            data={"address": "axelar1abc", "balance": 2_500_000, "threshold": 5_000_000},
        )
        text = format_message(notification)
        assert "2.500000 AXL" in text
        assert "5.000000 AXL" in text

    def test_uptime(self):
        """Test uptime messages show the percentage and level."""
        notification = Notification(
            event=NotificationEvent.UPTIME,
            recipient="42",
            data={"operator_address": "axelarvaloper1x", "moniker": "Val", "uptime": 92.5, "level": "medium", "threshold": 95},
        )
        text = format_message(notification)
        assert "MEDIUM" in text
        assert "92.50%" in text

    def test_malformed_data(self):
        """Test malformed data raises SpecificError."""
        notification = Notification(event=NotificationEvent.POLL_VOTE, recipient="42", data={"poll_id": "1"})
        with pytest.raises(SpecificError):
            format_message(notification)
