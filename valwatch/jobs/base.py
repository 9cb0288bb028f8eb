"""Shared plumbing for job processors."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from valwatch.chain import ChainQueryService
from valwatch.config import Settings
from valwatch.database import Database
from valwatch.models import Notification, NotificationEvent
from valwatch.notifier import TelegramNotifier
from valwatch.queue import JobOptions, JobProducer

logger = logging.getLogger(__name__)


@dataclass
class JobContext:
    """Collaborators handed to every job handler and producer function."""

    settings: Settings
    db: Database
    chain: ChainQueryService
    notifier: TelegramNotifier
    producer: JobProducer


async def add_recurring_job(ctx: JobContext, queue_name: str, every_seconds: float, **options: Any) -> str:
    """Seed the recurring schedule of ``queue_name``. Extra ``options`` go to ``JobOptions``."""
    return await ctx.producer.add_job(queue_name, {}, JobOptions.every(timedelta(seconds=every_seconds), **options))


async def notify_subscribers(
    db: Database,
    event: NotificationEvent,
    data: dict[str, Any],
    condition: str,
) -> int:
    """Write one outbox record per Telegram user. Returns how many were written."""
    users = await db.get_telegram_users()
    if not users:
        logger.info(f"No subscribers for {event.value} notification ({condition})")
        return 0

    for user in users:
        await db.create_notification(
            Notification(event=event, recipient=str(user["chat_id"]), data=data, condition=condition)
        )
    logger.info(f"Queued {len(users)} {event.value} notification(s) for {condition}")
    return len(users)
