"""Telegram notifier: delivers outbox records through the Bot API."""

from __future__ import annotations

import html
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx

from valwatch.errors import NotifierError, SpecificError
from valwatch.models import Notification, NotificationEvent

logger = logging.getLogger(__name__)

UAXL_PER_AXL = 1_000_000


@dataclass(frozen=True)
class NotifierResult:
    sent_success: bool


def _e(value: Any) -> str:
    return html.escape(str(value))


def _format_uptime(data: dict) -> str:
    level = str(data["level"]).upper()
    lines = [
        f"<b>⚠️ Uptime {_e(level)}</b>" if level != "OK" else "<b>✅ Uptime recovered</b>",
        f"Validator: <b>{_e(data.get('moniker') or data['operator_address'])}</b>",
        f"Uptime: <code>{float(data['uptime']):.2f}%</code>",
    ]
    if data.get("threshold") is not None:
        lines.append(f"Threshold: <code>{float(data['threshold']):.2f}%</code>")
    return "\n".join(lines)


def _format_poll_vote(data: dict) -> str:
    vote = str(data["vote"]).lower()
    icon = {"yes": "✅", "no": "❌"}.get(vote, "⚪")
    return "\n".join(
        [
            f"<b>{icon} Poll vote: {_e(vote.upper())}</b>",
            f"Poll: <code>{_e(data['poll_id'])}</code>",
            f"Chain: {_e(data.get('chain') or 'unknown')}",
            f"Voter: <code>{_e(data['voter_address'])}</code>",
        ]
    )


def _format_rpc_health(data: dict) -> str:
    status = "✅ healthy" if data["is_healthy"] else "🔴 unreachable"
    return "\n".join(
        [
            f"<b>RPC endpoint {_e(data['name'])} is {status}</b>",
            f"URL: <code>{_e(data['url'])}</code>",
        ]
    )


def _format_chain_registration(data: dict) -> str:
    return "\n".join(
        [
            f"<b>EVM chain {_e(data['chain'])}</b>",
            f"Registration: {_e(data['status'])}",
        ]
    )


def _format_balance_low(data: dict) -> str:
    balance = int(data["balance"]) / UAXL_PER_AXL
    threshold = int(data["threshold"]) / UAXL_PER_AXL
    return "\n".join(
        [
            "<b>💸 Broadcaster balance low</b>",
            f"Address: <code>{_e(data['address'])}</code>",
            f"Balance: <code>{balance:,.6f} AXL</code>",
            f"Threshold: <code>{threshold:,.6f} AXL</code>",
        ]
    )


FORMATTERS: dict[NotificationEvent, Callable[[dict], str]] = {
    NotificationEvent.UPTIME: _format_uptime,
    NotificationEvent.POLL_VOTE: _format_poll_vote,
    NotificationEvent.RPC_ENDPOINT_HEALTH: _format_rpc_health,
    NotificationEvent.EVM_SUPPORTED_CHAIN_REGISTRATION: _format_chain_registration,
    NotificationEvent.BROADCASTER_BALANCE_LOW: _format_balance_low,
}


def format_message(notification: Notification) -> str:
    """Render a notification as Telegram HTML.

    Raises:
        SpecificError: the record's data does not fit its event
    """
    formatter = FORMATTERS.get(notification.event)
    if formatter is None:
        raise SpecificError(f"No message format for event {notification.event}")
    try:
        return formatter(notification.data)
    except (KeyError, TypeError, ValueError) as e:
        raise SpecificError(f"Malformed {notification.event.value} data in {notification.notification_id}: {e}") from e


class TelegramNotifier:
    """Sends messages with the Telegram Bot API and records chats that write to the bot.

    Chat commands are not handled.
    """

    def __init__(
        self,
        token: str,
        api_url: str = "https://api.telegram.org",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._token = token
        self._api_url = api_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._update_offset = 0
        self.username: Optional[str] = None

    async def start(self) -> None:
        """Open the HTTP client and verify the token with ``getMe``."""
        if not self._token:
            raise NotifierError("Telegram token is not configured")
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=f"{self._api_url}/bot{self._token}",
                timeout=self._timeout,
                transport=self._transport,
            )
        me = await self._call("getMe")
        self.username = (me or {}).get("username")
        logger.info(f"Telegram bot @{self.username} started")

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("Telegram bot stopped")

    async def ping(self) -> bool:
        try:
            await self._call("getMe")
            return True
        except NotifierError as e:
            logger.warning(f"Telegram ping failed: {e}")
            return False

    async def send_notification(self, notification: Notification) -> NotifierResult:
        """Deliver one notification.

        Raises:
            SpecificError: malformed data or recipient
            NotifierError: the request could not be made
        """
        try:
            chat_id = int(notification.recipient)
        except (TypeError, ValueError) as e:
            raise SpecificError(f"Invalid Telegram recipient {notification.recipient!r}") from e

        text = format_message(notification)
        response = await self._post(
            "sendMessage",
            {"chat_id": chat_id, "text": text, "parse_mode": "HTML", "disable_web_page_preview": True},
        )
        if not response.get("ok"):
            logger.warning(
                f"Telegram rejected {notification.notification_id} for {chat_id}: {response.get('description')}"
            )
            return NotifierResult(sent_success=False)

        logger.info(f"Message sent to user {chat_id}")
        return NotifierResult(sent_success=True)

    async def get_new_chats(self) -> list[tuple[str, Optional[str]]]:
        """Chats that messaged the bot since the last call, as ``(chat_id, username)``."""
        updates = await self._call(
            "getUpdates",
            {"offset": self._update_offset, "timeout": 0, "allowed_updates": ["message", "my_chat_member"]},
        )
        chats: dict[str, Optional[str]] = {}
        for update in updates or []:
            self._update_offset = max(self._update_offset, int(update.get("update_id", 0)) + 1)
            chat = (update.get("message") or update.get("my_chat_member") or {}).get("chat")
            if chat and "id" in chat:
                chats[str(chat["id"])] = chat.get("username")
        return list(chats.items())

    async def _call(self, method: str, payload: Optional[dict] = None) -> Any:
        response = await self._post(method, payload or {})
        if not response.get("ok"):
            raise NotifierError(f"Telegram {method} failed: {response.get('description')}")
        return response.get("result") or {}

    async def _post(self, method: str, payload: dict) -> dict:
        if self._client is None:
            raise NotifierError("Notifier not started. Call start() first.")
        try:
            response = await self._client.post(f"/{method}", json=payload)
            return response.json()
        except httpx.HTTPError as e:
            raise NotifierError(f"Telegram {method} request failed: {e}") from e
        except ValueError as e:
            raise NotifierError(f"Telegram {method} returned invalid JSON: {e}") from e
