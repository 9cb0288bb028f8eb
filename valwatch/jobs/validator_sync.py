"""Validator info sync."""

from __future__ import annotations

import logging
from typing import Optional

from valwatch.jobs.base import JobContext, add_recurring_job
from valwatch.queue import Job

logger = logging.getLogger(__name__)

QUEUE_NAME = "valAllInfoChecker"


async def _resolve_voter(ctx: JobContext, validators: list[dict], voter: str) -> Optional[str]:
    """Walk RegisterProxy txs until the validator that registered ``voter`` is found."""
    for validator in validators:
        operator = validator["operator_address"]
        existing = await ctx.db.get_validator(operator)
        if existing and existing.get("voter_address"):
            continue
        proxy = await ctx.chain.get_validator_voter_address(operator)
        if not proxy:
            continue
        await ctx.db.upsert_validator(operator, voter_address=proxy)
        if proxy == voter:
            logger.info(f"Voter {voter} belongs to validator {operator}")
            return operator
    logger.warning(f"No bonded validator registered voter {voter}")
    return None


async def _resolve_consensus_address(ctx: JobContext, validators: list[dict], operator: str) -> Optional[str]:
    """Consensus (valcons) address of ``operator``, from settings or the validator set."""
    if ctx.settings.axelar_valcons_address:
        return ctx.settings.axelar_valcons_address

    validator = next((v for v in validators if v["operator_address"] == operator), None)
    pubkey = ((validator or {}).get("consensus_pubkey") or {}).get("key")
    if not pubkey:
        logger.warning(f"No consensus pubkey for {operator}")
        return None

    address = (await ctx.chain.get_validator_set()).get(pubkey)
    if address is None:
        logger.warning(f"{operator} is not in the active validator set")
    return address


async def handle(ctx: JobContext, job: Job) -> int:
    """Refresh bonded validators and resolve the configured voter's validator.

    Returns:
        Number of validators synced
    """
    validators = await ctx.chain.get_validators()
    for validator in validators:
        await ctx.db.upsert_validator(
            validator["operator_address"],
            moniker=(validator.get("description") or {}).get("moniker"),
            status=validator.get("status"),
        )
    logger.info(f"Validator sync complete: {len(validators)} validators")

    voter = ctx.settings.axelar_voter_address
    if not voter:
        return len(validators)

    ours = await ctx.db.get_validator_by_voter(voter)
    operator = ours["operator_address"] if ours else await _resolve_voter(ctx, validators, voter)
    if operator is None or (ours and ours.get("consensus_address")):
        return len(validators)

    consensus_address = await _resolve_consensus_address(ctx, validators, operator)
    if consensus_address:
        await ctx.db.upsert_validator(operator, consensus_address=consensus_address)
        logger.info(f"Consensus address of {operator} is {consensus_address}")
    return len(validators)


async def add_val_all_info_checker_job(ctx: JobContext) -> str:
    return await add_recurring_job(ctx, QUEUE_NAME, ctx.settings.validator_sync_interval)
