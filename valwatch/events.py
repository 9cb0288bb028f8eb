"""Websocket client for the chain's Tendermint event stream.

Subscribers get typed events over their own ``asyncio.Queue``:

    stream = EventStreamClient(urls, voter_address)
    events = stream.subscribe()
    await stream.connect()
    event = await events.get()
    if isinstance(event, MessageReceived):
        ...
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

import websockets
from websockets.exceptions import ConnectionClosed

from valwatch.retry import Backoff, RetryPolicy, retry

logger = logging.getLogger(__name__)

POLL_STARTED_EVENTS = [
    "axelar.evm.v1beta1.ConfirmDepositStarted",
    "axelar.evm.v1beta1.ConfirmTokenStarted",
    "axelar.evm.v1beta1.ConfirmGatewayTxStarted",
    "axelar.evm.v1beta1.ConfirmKeyTransferStarted",
]
VOTED_EVENT = "axelar.vote.v1beta1.Voted"
CHAIN_MAINTAINER_EVENTS = [
    "axelar.nexus.v1beta1.ChainMaintainerRegistered",
    "axelar.nexus.v1beta1.ChainMaintainerDeregistered",
]


@dataclass(frozen=True)
class Connected:
    url: str


@dataclass(frozen=True)
class MessageReceived:
    data: str


@dataclass(frozen=True)
class Disconnected:
    url: str
    reason: str = ""


@dataclass(frozen=True)
class StreamError:
    error: BaseException


StreamEvent = Union[Connected, MessageReceived, Disconnected, StreamError]

Connector = Callable[[str], Awaitable[Any]]


def subscription_queries(voter_address: str) -> list[str]:
    """Tendermint queries for poll starts, this voter's votes and chain maintainer changes."""
    queries = [f"tm.event='Tx' AND {event}.participants EXISTS" for event in POLL_STARTED_EVENTS]
    if voter_address:
        queries.append(f"tm.event='Tx' AND {VOTED_EVENT}.voter EXISTS")
    queries.extend(f"tm.event='Tx' AND {event}.chain EXISTS" for event in CHAIN_MAINTAINER_EVENTS)
    return queries


class EventStreamClient:
    """Keeps one websocket open, re-subscribing after every reconnect."""

    def __init__(
        self,
        urls: list[str],
        voter_address: str = "",
        *,
        reconnect_interval: float = 5.0,
        connector: Optional[Connector] = None,
        subscriber_queue_size: int = 1000,
    ):
        if not urls:
            raise ValueError("EventStreamClient needs at least one websocket URL")
        self._urls = list(urls)
        self._url_index = 0
        self._voter_address = voter_address
        self._reconnect_policy = RetryPolicy(max_attempts=None, backoff=Backoff.fixed(reconnect_interval))
        self._connector = connector or websockets.connect
        self._queue_size = subscriber_queue_size
        self._subscribers: list[asyncio.Queue] = []
        self._ws: Any = None
        self._reader: Optional[asyncio.Task] = None
        self._closing = False

    @property
    def url(self) -> str:
        return self._urls[self._url_index]

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def subscribe(self) -> asyncio.Queue:
        """Register a subscriber and return its event channel."""
        channel: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.append(channel)
        return channel

    def unsubscribe(self, channel: asyncio.Queue) -> None:
        if channel in self._subscribers:
            self._subscribers.remove(channel)

    def _publish(self, event: StreamEvent) -> None:
        for channel in self._subscribers:
            try:
                channel.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"Event subscriber is full, dropping {type(event).__name__}")

    async def connect(self) -> None:
        """Open the stream and start reading. Errors on the first connect propagate."""
        self._closing = False
        if self._ws is None:
            await self._open()
        if self._reader is None or self._reader.done():
            self._reader = asyncio.create_task(self._read_loop(), name="event-stream")

    async def _open(self) -> None:
        url = self.url
        try:
            ws = await self._connector(url)
        except Exception:
            # Next attempt tries the next URL
            self._url_index = (self._url_index + 1) % len(self._urls)
            raise
        for request_id, query in enumerate(subscription_queries(self._voter_address), start=1):
            await ws.send(
                json.dumps({"jsonrpc": "2.0", "method": "subscribe", "id": request_id, "params": {"query": query}})
            )
        self._ws = ws
        logger.info(f"Connected to event stream {url}")
        self._publish(Connected(url))

    async def _read_loop(self) -> None:
        while not self._closing:
            ws = self._ws
            try:
                async for message in ws:
                    if isinstance(message, bytes):
                        message = message.decode()
                    self._publish(MessageReceived(message))
                reason = "closed by server"
            except asyncio.CancelledError:
                raise
            except ConnectionClosed as e:
                reason = str(e)
            except Exception as e:
                logger.error(f"Event stream error: {e}")
                self._publish(StreamError(e))
                reason = str(e)

            self._ws = None
            if self._closing:
                return
            logger.warning(f"Disconnected from event stream {self.url}: {reason}")
            self._publish(Disconnected(self.url, reason))
            await retry(self._open, self._reconnect_policy, name="Event stream reconnect")

    async def close(self) -> None:
        self._closing = True
        reader, self._reader = self._reader, None
        if reader is not None and not reader.done():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
            logger.info("Event stream closed")
