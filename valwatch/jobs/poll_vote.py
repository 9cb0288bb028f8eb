"""Poll vote notifications for the configured voter."""

from __future__ import annotations

import logging
import time

from valwatch.jobs.base import JobContext, add_recurring_job, notify_subscribers
from valwatch.models import NotificationEvent
from valwatch.queue import Job

logger = logging.getLogger(__name__)

QUEUE_NAME = "pollVoteNotification"


async def handle(ctx: JobContext, job: Job) -> int:
    """Notify subscribers of the voter's recent votes not notified yet.

    Returns:
        Number of votes notified
    """
    voter = ctx.settings.axelar_voter_address
    if not voter:
        return 0

    since = time.time() - ctx.settings.last_x_hour_poll_vote_notification * 3600
    votes = await ctx.db.get_unnotified_poll_votes(voter, since)
    for vote in votes:
        await notify_subscribers(
            ctx.db,
            NotificationEvent.POLL_VOTE,
            {
                "poll_id": vote["poll_id"],
                "chain": vote["chain"],
                "vote": vote["vote"],
                "voter_address": voter,
            },
            condition=f"poll_vote:{vote['poll_id']}:{voter}",
        )
        await ctx.db.mark_poll_vote_notified(vote["poll_id"], voter)

    if votes:
        logger.info(f"Notified {len(votes)} poll vote(s) for {voter}")
    return len(votes)


async def add_poll_vote_notification_job(ctx: JobContext) -> str:
    return await add_recurring_job(ctx, QUEUE_NAME, ctx.settings.poll_vote_check_interval)
