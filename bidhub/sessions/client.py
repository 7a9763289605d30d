"""Client-side session with reconnect backoff and offline send buffering."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Protocol

import websockets
from websockets.exceptions import WebSocketException

from ..auction.errors import ClientInputError, ConnectionLost
from ..transport.codec import decode_message, dumps, loads

logger = logging.getLogger(__name__)

TRANSPORT_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException)


class Transport(Protocol):
    async def send(self, data: str) -> None: ...

    async def recv(self) -> str | bytes: ...

    async def close(self) -> None: ...


Connector = Callable[[str], Awaitable[Transport]]
MessageCallback = Callable[[dict[str, Any]], None]


async def websocket_connector(url: str) -> Transport:
    return await websockets.connect(url)


class ClientSession:
    """Keeps one logical connection to the auction server alive.

    Outbound messages written while the transport is down are kept in send
    order and flushed as soon as a connection is re-established. Inbound
    events missed during the gap are not fetched automatically; callers ask
    for them with ``request_replay``.
    """

    def __init__(
        self,
        url: str,
        *,
        connector: Connector = websocket_connector,
        base_delay_ms: int = 1000,
        max_attempts: int = 5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.url = url
        self._connector = connector
        self._base_delay = base_delay_ms / 1000
        self._max_attempts = max_attempts
        self._sleep = sleep
        self._transport: Transport | None = None
        self._buffer: Deque[str] = deque()
        self._callbacks: list[MessageCallback] = []
        self._closed = False
        self.attempts = 0
        self.delays: list[float] = []

    @property
    def connected(self) -> bool:
        return self._transport is not None

    @property
    def buffered(self) -> list[dict[str, Any]]:
        return [loads(frame) for frame in self._buffer]

    def on_message(self, callback: MessageCallback) -> None:
        self._callbacks.append(callback)

    async def connect(self) -> None:
        transport = await self._connector(self.url)
        self._transport = transport
        self.attempts = 0
        logger.info("connected to %s", self.url)
        await self._flush()

    async def _flush(self) -> None:
        """Write buffered frames in order; a failed write drops the transport and re-raises."""
        while self._buffer and self._transport is not None:
            try:
                await self._transport.send(self._buffer[0])
            except TRANSPORT_ERRORS as exc:
                logger.warning("flush to %s interrupted: %s", self.url, exc)
                self._transport = None
                raise
            self._buffer.popleft()

    async def send(self, kind: str, payload: dict[str, Any] | None = None) -> bool:
        """Send now if possible, otherwise buffer; returns True if written."""
        frame = dumps({"type": kind, "payload": payload or {}}).decode("utf-8")
        if self._transport is None:
            self._buffer.append(frame)
            return False
        try:
            await self._transport.send(frame)
        except TRANSPORT_ERRORS as exc:
            logger.warning("send to %s failed, buffering: %s", self.url, exc)
            self._transport = None
            self._buffer.append(frame)
            return False
        return True

    async def place_bid(self, auction_id: str, bid: dict[str, Any]) -> bool:
        return await self.send("new_bid", {"auctionId": auction_id, "bid": bid})

    async def request_replay(self, auction_id: str, after_seq: int = 0) -> bool:
        return await self.send("replay", {"auctionId": auction_id, "afterSeq": after_seq})

    async def reconnect(self) -> None:
        """Retry with delays base, 2*base, 4*base, ...; raise ConnectionLost when exhausted."""
        self._transport = None
        for attempt in range(self._max_attempts):
            delay = self._base_delay * (2 ** attempt)
            self.attempts = attempt + 1
            self.delays.append(delay)
            await self._sleep(delay)
            try:
                await self.connect()
                return
            except TRANSPORT_ERRORS as exc:
                logger.warning(
                    "reconnect %d/%d to %s failed: %s", attempt + 1, self._max_attempts, self.url, exc
                )
        logger.error("giving up on %s after %d attempts", self.url, self._max_attempts)
        raise ConnectionLost(self._max_attempts)

    async def run(self) -> None:
        """Receive until ``close``; reconnects on transport loss."""
        if self._transport is None:
            try:
                await self.connect()
            except TRANSPORT_ERRORS:
                await self.reconnect()
        while not self._closed:
            if self._transport is None:
                # a failed send dropped the transport
                await self.reconnect()
                continue
            try:
                raw = await self._transport.recv()
            except TRANSPORT_ERRORS as exc:
                if self._closed:
                    return
                logger.warning("lost connection to %s: %s", self.url, exc)
                await self.reconnect()
                continue
            self._dispatch(raw)

    def _dispatch(self, raw: str | bytes) -> None:
        try:
            kind, payload = decode_message(raw)
        except ClientInputError as exc:
            logger.warning("ignoring malformed frame from %s: %s", self.url, exc)
            return
        frame = loads(raw)
        frame["type"], frame["payload"] = kind, payload
        for callback in self._callbacks:
            callback(frame)

    async def close(self) -> None:
        self._closed = True
        if self._transport is not None:
            transport, self._transport = self._transport, None
            await transport.close()
