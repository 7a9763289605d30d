"""Background worker draining the outbox."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from ..auction.errors import QueueProcessingError
from ..auction.models import Event
from .service import Outbox, QueueItem

logger = logging.getLogger(__name__)

Handler = Callable[[Event], Awaitable[None]]
AlertHook = Callable[[QueueItem, QueueProcessingError], None]


class OutboxWorker:
    """Hands each outbox item to ``handler``; failures are nacked, never dropped.

    An item that has failed ``max_attempts`` times stays pending and keeps
    being retried, but every further failure is raised to ``on_alert`` and
    logged as an error so an operator can step in.
    """

    def __init__(
        self,
        outbox: Outbox,
        handler: Handler,
        *,
        max_attempts: int = 5,
        poll_interval_ms: int = 50,
        on_alert: AlertHook | None = None,
    ) -> None:
        self._outbox = outbox
        self._handler = handler
        self._max_attempts = max_attempts
        self._poll_interval = poll_interval_ms / 1000
        self._on_alert = on_alert
        self._task: asyncio.Task | None = None
        self.processed = 0
        self.failures = 0

    async def run_once(self) -> bool:
        item = await self._outbox.dequeue_next()
        if item is None:
            return False
        try:
            await self._handler(item.event)
        except Exception as exc:
            self.failures += 1
            released = await self._outbox.nack(item)
            if released.attempts >= self._max_attempts:
                alert = QueueProcessingError(
                    f"outbox item {item.item_id} for auction {item.auction_id} "
                    f"failed {released.attempts} times"
                )
                alert.__cause__ = exc
                logger.error("%s", alert, exc_info=exc)
                if self._on_alert is not None:
                    self._on_alert(released, alert)
            return True
        try:
            await self._outbox.ack(item)
        except ValueError:
            # claim expired mid-handling; the item is redelivered
            logger.warning(
                "outbox item=%s auction=%s lost its claim before ack", item.item_id, item.auction_id
            )
            return True
        self.processed += 1
        return True

    async def drain(self, limit: int = 1000) -> int:
        """Process until nothing is claimable or ``limit`` items were handled."""
        handled = 0
        while handled < limit and await self.run_once():
            handled += 1
        return handled

    async def _loop(self) -> None:
        while True:
            failures = self.failures
            try:
                worked = await self.run_once()
            except Exception:
                # storage unavailable; retry after the poll interval
                logger.exception("outbox worker iteration failed")
                worked = False
            if not worked or self.failures != failures:
                await asyncio.sleep(self._poll_interval)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
