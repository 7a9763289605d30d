"""Delivery of committed events to local sessions and peer instances."""

from __future__ import annotations

import logging
from dataclasses import replace

from ..auction.models import Event
from ..sessions.manager import SessionManager
from .channels import PubSubChannel
from .dedupe import EventDeduper

logger = logging.getLogger(__name__)


class BroadcastFanout:
    """Local delivery plus cross-instance forwarding.

    ``publish`` is called by the admission pipeline while the auction lock is
    held, so per-auction delivery order equals commit order. ``forward`` is
    driven by the outbox worker and pushes the event onto the shared channel;
    peers receive it in ``on_remote`` and deliver it to their own sessions
    only. Events stamped with this instance's id, or already seen, are
    ignored there.
    """

    def __init__(
        self,
        sessions: SessionManager,
        channel: PubSubChannel,
        *,
        instance_id: str,
        dedupe_capacity: int = 10000,
    ) -> None:
        self._sessions = sessions
        self._channel = channel
        self.instance_id = instance_id
        self._seen = EventDeduper(dedupe_capacity)
        self.published = 0
        self.rebroadcast = 0

    async def start(self) -> None:
        await self._channel.subscribe(self.on_remote)

    async def close(self) -> None:
        await self._channel.close()

    def stamp(self, event: Event) -> Event:
        if event.origin:
            return event
        return replace(event, origin=self.instance_id)

    async def publish(self, event: Event) -> int:
        if not self._seen.check_and_add(event.event_id):
            logger.debug("event=%s already delivered, skipping", event.event_id)
            return 0
        self.published += 1
        return self._deliver(event)

    async def forward(self, event: Event) -> None:
        await self._channel.publish(self.stamp(event))

    async def on_remote(self, event: Event) -> None:
        if event.origin == self.instance_id:
            return
        if not self._seen.check_and_add(event.event_id):
            return
        self.rebroadcast += 1
        self._deliver(event)

    def _deliver(self, event: Event) -> int:
        delivered = self._sessions.broadcast(event.to_message(), event_id=event.event_id)
        logger.debug(
            "auction=%s event=%s kind=%s delivered to %d sessions",
            event.auction_id,
            event.event_id,
            event.kind.value,
            delivered,
        )
        return delivered
