"""At-least-once outbox that stages committed events for forwarding and replay."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from ..auction.models import Event
from ..storage import OutboxStorage
from ..transport.timestamps import format_timestamp, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueueItem:
    item_id: str
    auction_id: str
    seq: int
    event: Event
    enqueued_at: str
    state: str
    attempts: int = 0

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "QueueItem":
        return cls(
            item_id=record["item_id"],
            auction_id=record["auction_id"],
            seq=int(record["seq"]),
            event=Event.from_record(record["event"]),
            enqueued_at=record["enqueued_at"],
            state=record["state"],
            attempts=int(record.get("attempts", 0)),
        )


@dataclass
class Outbox:
    storage: OutboxStorage

    async def enqueue(self, event: Event) -> QueueItem:
        record = await self.storage.append(
            event.auction_id,
            event.to_record(),
            format_timestamp(utc_now()),
        )
        return QueueItem.from_record(record)

    async def dequeue_next(self) -> QueueItem | None:
        record = await self.storage.claim_next()
        if record is None:
            return None
        return QueueItem.from_record(record)

    async def ack(self, item: QueueItem) -> QueueItem:
        return QueueItem.from_record(await self.storage.mark_done(item.item_id))

    async def nack(self, item: QueueItem) -> QueueItem:
        released = QueueItem.from_record(await self.storage.release(item.item_id))
        logger.warning(
            "outbox item=%s auction=%s seq=%s returned to pending (attempts=%d)",
            released.item_id,
            released.auction_id,
            released.seq,
            released.attempts,
        )
        return released

    async def replay(self, auction_id: str, after_seq: int = 0) -> list[tuple[int, Event]]:
        records = await self.storage.events_for(auction_id, after_seq)
        ordered = sorted(records, key=lambda record: int(record["seq"]))
        return [(int(record["seq"]), Event.from_record(record["event"])) for record in ordered]

    async def counts(self) -> dict[str, int]:
        return await self.storage.counts()

    async def close(self) -> None:
        await self.storage.close()
