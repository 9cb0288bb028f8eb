"""Broadcaster balance checker."""

from __future__ import annotations

import logging
from typing import Optional

from valwatch.jobs.base import JobContext, add_recurring_job, notify_subscribers
from valwatch.models import NotificationEvent
from valwatch.queue import Job

logger = logging.getLogger(__name__)

QUEUE_NAME = "broadcasterBalanceChecker"


async def handle(ctx: JobContext, job: Job) -> Optional[int]:
    """Notify subscribers when the broadcaster's uaxl balance is below the threshold."""
    address = ctx.settings.axelar_voter_address
    if not address:
        logger.warning("No broadcaster address configured, skipping balance check")
        return None

    balance = await ctx.chain.get_broadcaster_balance(address)
    threshold = ctx.settings.broadcaster_balance_threshold
    if balance >= threshold:
        logger.info(f"Broadcaster balance {balance} uaxl is above threshold {threshold}")
        return balance

    logger.warning(f"Broadcaster balance {balance} uaxl is below threshold {threshold}")
    await notify_subscribers(
        ctx.db,
        NotificationEvent.BROADCASTER_BALANCE_LOW,
        {"address": address, "balance": balance, "threshold": threshold},
        condition=f"broadcaster_balance_low:{address}",
    )
    return balance


async def add_broadcaster_balance_checker_job(ctx: JobContext) -> str:
    return await add_recurring_job(ctx, QUEUE_NAME, ctx.settings.broadcaster_balance_check_interval)
