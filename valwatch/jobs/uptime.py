"""Validator uptime checker."""

from __future__ import annotations

import logging
from typing import Optional

from valwatch.config import Settings
from valwatch.jobs.base import JobContext, add_recurring_job, notify_subscribers
from valwatch.models import NotificationEvent, UptimeLevel
from valwatch.queue import Job

logger = logging.getLogger(__name__)

QUEUE_NAME = "valUptimeChecker"


def uptime_level(uptime: float, settings: Settings) -> UptimeLevel:
    """Severity for an uptime percentage; HIGH is the worst."""
    if uptime < settings.uptime_threshold_high:
        return UptimeLevel.HIGH
    if uptime < settings.uptime_threshold_medium:
        return UptimeLevel.MEDIUM
    if uptime < settings.uptime_threshold_low:
        return UptimeLevel.LOW
    return UptimeLevel.OK


def _threshold_for(level: UptimeLevel, settings: Settings) -> float:
    return {
        UptimeLevel.HIGH: settings.uptime_threshold_high,
        UptimeLevel.MEDIUM: settings.uptime_threshold_medium,
    }.get(level, settings.uptime_threshold_low)


async def handle(ctx: JobContext, job: Job) -> Optional[UptimeLevel]:
    """Notify subscribers when the validator's uptime severity changes."""
    voter = ctx.settings.axelar_voter_address
    validator = await ctx.db.get_validator_by_voter(voter) if voter else None
    if validator is None:
        logger.warning(f"Validator for voter {voter or '(unset)'} not synced yet, skipping uptime check")
        return None

    consensus_address = ctx.settings.axelar_valcons_address or validator.get("consensus_address")
    if not consensus_address:
        logger.warning(f"No consensus address for {validator['operator_address']}, skipping uptime check")
        return None

    uptime = await ctx.chain.get_validator_uptime(consensus_address)
    level = uptime_level(uptime, ctx.settings)
    previous = UptimeLevel(validator["uptime_level"]) if validator.get("uptime_level") else UptimeLevel.OK

    await ctx.db.upsert_validator(
        validator["operator_address"],
        uptime=uptime,
        uptime_level=level.value,
        consensus_address=consensus_address,
    )

    if level == previous:
        logger.info(f"Uptime of {validator['operator_address']} is {uptime:.2f}% ({level.value})")
        return level

    await notify_subscribers(
        ctx.db,
        NotificationEvent.UPTIME,
        {
            "operator_address": validator["operator_address"],
            "moniker": validator.get("moniker"),
            "uptime": uptime,
            "level": level.value,
            "threshold": _threshold_for(level, ctx.settings),
        },
        condition=f"uptime:{validator['operator_address']}:{level.value}",
    )
    return level


async def add_val_uptime_checker_job(ctx: JobContext) -> str:
    return await add_recurring_job(ctx, QUEUE_NAME, ctx.settings.uptime_check_interval)
