"""Domain records shared by the checkers, the outbox and the notifier."""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

# Delivery attempts after the first one before a notification is left unsent
MAX_RETRIES = 3


class NotificationEvent(str, Enum):
    UPTIME = "uptime"
    POLL_VOTE = "poll_vote"
    RPC_ENDPOINT_HEALTH = "rpc_endpoint_health"
    EVM_SUPPORTED_CHAIN_REGISTRATION = "evm_supported_chain_registration"
    BROADCASTER_BALANCE_LOW = "broadcaster_balance_low"


class NotificationType(str, Enum):
    TELEGRAM = "telegram"


class UptimeLevel(str, Enum):
    """Severity of a validator's uptime, from healthy to worst."""

    OK = "ok"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass
class Notification:
    """A pending or delivered message in the outbox.

    ``sent`` only ever goes from False to True. ``retry_count`` never exceeds
    ``MAX_RETRIES``; a record that reaches it unsent is no longer retried.
    """

    event: NotificationEvent
    recipient: str
    data: dict[str, Any] = field(default_factory=dict)
    condition: str = ""
    type: NotificationType = NotificationType.TELEGRAM
    notification_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    sent: bool = False
    retry_count: int = 0
    created_at: float = field(default_factory=time.time)

    def to_row(self) -> dict[str, Any]:
        return {
            "notification_id": self.notification_id,
            "event": self.event.value,
            "data": json.dumps(self.data),
            "condition": self.condition,
            "type": self.type.value,
            "recipient": self.recipient,
            "sent": int(self.sent),
            "retry_count": self.retry_count,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_row(row: Any) -> "Notification":
        return Notification(
            notification_id=row["notification_id"],
            event=NotificationEvent(row["event"]),
            data=json.loads(row["data"]) if row["data"] else {},
            condition=row["condition"] or "",
            type=NotificationType(row["type"]),
            recipient=row["recipient"],
            sent=bool(row["sent"]),
            retry_count=row["retry_count"],
            created_at=row["created_at"],
        )


@dataclass
class DeliveryOutcome:
    """Result of one delivery attempt within a dispatch cycle."""

    notification_id: str
    success: bool
    error: Optional[BaseException] = None
