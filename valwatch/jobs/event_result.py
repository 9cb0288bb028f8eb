"""Handler for event stream messages forwarded by the lifecycle."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from valwatch.events import CHAIN_MAINTAINER_EVENTS, POLL_STARTED_EVENTS, VOTED_EVENT
from valwatch.jobs.base import JobContext, notify_subscribers
from valwatch.models import NotificationEvent
from valwatch.queue import Job

logger = logging.getLogger(__name__)

QUEUE_NAME = "wsMessageResultHandler"

POLL_STATE_PENDING = "POLL_STATE_PENDING"


@dataclass
class ParsedPoll:
    poll_id: str
    chain: Optional[str]
    participants: list[str]


@dataclass
class ParsedVote:
    poll_id: str
    voter_address: str
    state: Optional[str]


@dataclass
class ParsedMaintainerChange:
    chain: str
    maintainer: str
    registered: bool


@dataclass
class ParsedMessage:
    tx_hash: Optional[str] = None
    tx_height: Optional[int] = None
    polls: list[ParsedPoll] = field(default_factory=list)
    votes: list[ParsedVote] = field(default_factory=list)
    maintainer_changes: list[ParsedMaintainerChange] = field(default_factory=list)


def _unquote(value: Any) -> Optional[str]:
    """Event attribute values arrive JSON-encoded on newer chains."""
    if value is None:
        return None
    text = str(value)
    if len(text) >= 2 and text[0] == text[-1] == '"':
        return text[1:-1]
    return text


def _first(events: dict, key: str) -> Optional[str]:
    values = events.get(key) or []
    return _unquote(values[0]) if values else None


def parse_message(raw: str) -> Optional[ParsedMessage]:
    """Parse a Tendermint subscription message. Returns None for acks and noise."""
    try:
        message = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring non-JSON event stream message: {str(raw)[:200]}")
        return None

    events = (message.get("result") or {}).get("events") or {}
    if not events:
        return None

    height = _first(events, "tx.height")
    parsed = ParsedMessage(
        tx_hash=_first(events, "tx.hash"),
        tx_height=int(height) if height and height.isdigit() else None,
    )

    for event in POLL_STARTED_EVENTS:
        chain = _first(events, f"{event}.chain")
        for raw_participants in events.get(f"{event}.participants") or []:
            try:
                info = json.loads(raw_participants)
            except (TypeError, ValueError):
                logger.warning(f"Malformed {event} participants: {raw_participants}")
                continue
            poll_id = info.get("poll_id")
            if poll_id is None:
                continue
            parsed.polls.append(ParsedPoll(str(poll_id), chain, list(info.get("participants") or [])))

    voters = events.get(f"{VOTED_EVENT}.voter") or []
    poll_ids = events.get(f"{VOTED_EVENT}.poll") or []
    states = events.get(f"{VOTED_EVENT}.state") or []
    for i, voter in enumerate(voters):
        if i >= len(poll_ids):
            break
        state = _unquote(states[i]) if i < len(states) else None
        parsed.votes.append(ParsedVote(_unquote(poll_ids[i]), _unquote(voter), state))

    for event in CHAIN_MAINTAINER_EVENTS:
        chains = events.get(f"{event}.chain") or []
        maintainers = events.get(f"{event}.maintainer") or []
        for chain, maintainer in zip(chains, maintainers):
            parsed.maintainer_changes.append(
                ParsedMaintainerChange(_unquote(chain), _unquote(maintainer), event.endswith("Registered"))
            )
    return parsed


async def handle(ctx: JobContext, job: Job) -> Optional[ParsedMessage]:
    """Record polls and the configured voter's votes, and report chain maintainer changes."""
    parsed = parse_message(job.payload.get("message", ""))
    if parsed is None:
        return None

    for poll in parsed.polls:
        await ctx.db.upsert_poll(
            poll.poll_id,
            chain=poll.chain,
            state=POLL_STATE_PENDING,
            participants=poll.participants,
            tx_hash=parsed.tx_hash,
            tx_height=parsed.tx_height,
        )
        logger.info(f"Poll {poll.poll_id} started on {poll.chain}")

    voter = ctx.settings.axelar_voter_address
    for vote in parsed.votes:
        if vote.voter_address != voter:
            continue
        poll = await ctx.db.get_poll(vote.poll_id)
        await ctx.db.upsert_poll_vote(
            vote.poll_id,
            vote.voter_address,
            vote="voted",
            chain=poll["chain"] if poll else None,
            tx_hash=parsed.tx_hash,
            tx_height=parsed.tx_height,
        )
        if vote.state:
            await ctx.db.upsert_poll(vote.poll_id, state=vote.state)
        logger.info(f"Recorded vote of {voter} on poll {vote.poll_id}")

    if parsed.maintainer_changes:
        validator = await ctx.db.get_validator_by_voter(voter) if voter else None
        operator = validator["operator_address"] if validator else None
        for change in parsed.maintainer_changes:
            if change.maintainer != operator:
                continue
            status = "registered" if change.registered else "deregistered"
            await notify_subscribers(
                ctx.db,
                NotificationEvent.EVM_SUPPORTED_CHAIN_REGISTRATION,
                {"chain": change.chain, "status": status, "operator_address": operator},
                condition=f"chain_registration:{change.chain}:{operator}:{status}",
            )
    return parsed


async def add_ws_message_result_handler_job(ctx: JobContext, message: str) -> str:
    return await ctx.producer.add_job(QUEUE_NAME, {"message": message})
