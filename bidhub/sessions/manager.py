"""Server-side websocket session lifecycle."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Protocol

from ..auction.registry import AuctionRegistry
from ..broadcast.dedupe import EventDeduper
from ..transport.codec import encode_message

logger = logging.getLogger(__name__)


class SocketLike(Protocol):
    async def accept(self) -> None: ...

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


class ServerSession:
    """One connected peer: a bounded outbound queue drained by its own task.

    Each session writes to its socket independently, so a slow or broken peer
    only ever stalls itself.
    """

    def __init__(self, websocket: SocketLike, *, queue_size: int = 256, dedupe_capacity: int = 1024) -> None:
        self.session_id = uuid.uuid4().hex
        self.websocket = websocket
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=queue_size)
        self._seen = EventDeduper(dedupe_capacity)
        self._sender: asyncio.Task | None = None
        self.closed = False
        self.delivered = 0

    def offer(self, message: str, event_id: str | None = None) -> bool:
        """Queue ``message``; returns False when the session can no longer keep up."""
        if self.closed:
            return False
        if event_id is not None and not self._seen.check_and_add(event_id):
            return True
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("session=%s outbound queue full, dropping peer", self.session_id)
            self.closed = True
            return False
        return True

    def start(self, on_failure) -> None:
        self._sender = asyncio.create_task(self._drain(on_failure))

    async def _drain(self, on_failure) -> None:
        while True:
            message = await self._queue.get()
            try:
                await self.websocket.send_text(message)
            except Exception as exc:
                logger.warning("session=%s delivery failed: %s", self.session_id, exc)
                self.closed = True
                await on_failure(self)
                return
            self.delivered += 1

    async def stop(self) -> None:
        self.closed = True
        if self._sender is None:
            return
        if self._sender is not asyncio.current_task():
            self._sender.cancel()
            try:
                await self._sender
            except asyncio.CancelledError:
                pass
        self._sender = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()


class SessionManager:
    def __init__(
        self,
        registry: AuctionRegistry,
        *,
        send_queue_size: int = 256,
    ) -> None:
        self._registry = registry
        self._queue_size = send_queue_size
        self._sessions: dict[str, ServerSession] = {}
        self._closing: set[asyncio.Task] = set()

    async def connect(self, websocket: SocketLike) -> ServerSession:
        """Accept the socket, then send ``connected`` and a full snapshot.

        The session is registered before the snapshot is read, so nothing
        committed afterwards can be missed; its sender only starts once the
        snapshot is on the wire, so no increment can overtake its base.
        """
        await websocket.accept()
        session = ServerSession(websocket, queue_size=self._queue_size)
        self._sessions[session.session_id] = session
        try:
            await websocket.send_text(
                encode_message("connected", {"message": "Connected to auction server"})
            )
            auctions = await self._registry.all()
            await websocket.send_text(
                encode_message(
                    "auctions_list",
                    {"auctions": {key: auction.to_snapshot() for key, auction in auctions.items()}},
                )
            )
        except Exception:
            self._sessions.pop(session.session_id, None)
            raise
        session.start(self._on_delivery_failure)
        logger.info("session=%s connected (%d active)", session.session_id, len(self._sessions))
        return session

    def broadcast(self, message: dict[str, Any], event_id: str | None = None) -> int:
        """Queue ``message`` for every session; returns how many accepted it."""
        frame = encode_message(message["type"], message.get("payload"), eventId=event_id)
        delivered = 0
        for session in list(self._sessions.values()):
            if session.offer(frame, event_id):
                delivered += 1
            else:
                self._drop(session)
        return delivered

    def send_to(self, session: ServerSession, kind: str, payload: dict[str, Any] | None = None) -> bool:
        accepted = session.offer(encode_message(kind, payload))
        if not accepted:
            self._drop(session)
        return accepted

    async def disconnect(self, session: ServerSession) -> None:
        self._sessions.pop(session.session_id, None)
        await session.stop()
        logger.info("session=%s disconnected (%d active)", session.session_id, len(self._sessions))

    async def close_all(self) -> None:
        for session in list(self._sessions.values()):
            await self.disconnect(session)

    def _drop(self, session: ServerSession) -> None:
        if self._sessions.pop(session.session_id, None) is not None:
            task = asyncio.get_running_loop().create_task(self._close_socket(session))
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)

    async def _close_socket(self, session: ServerSession) -> None:
        await session.stop()
        try:
            await session.websocket.close(code=1013)
        except Exception as exc:
            logger.debug("session=%s close failed: %s", session.session_id, exc)

    async def _on_delivery_failure(self, session: ServerSession) -> None:
        self._sessions.pop(session.session_id, None)

    def __len__(self) -> int:
        return len(self._sessions)
