"""In-memory outbox backend."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import defaultdict
from copy import deepcopy
from typing import Any, Callable

logger = logging.getLogger(__name__)


class InMemoryStorage:
    """Single-process outbox; claims older than ``visibility_timeout_s`` go back to pending."""

    def __init__(
        self,
        *,
        visibility_timeout_s: float | None = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._items: dict[str, dict[str, Any]] = {}
        self._pending: list[str] = []
        self._streams: dict[str, list[str]] = defaultdict(list)
        self._in_flight: dict[str, str] = {}
        self._visibility_timeout = visibility_timeout_s
        self._clock = clock
        self._lock = asyncio.Lock()

    async def append(self, auction_id: str, event: dict[str, Any], enqueued_at: str) -> dict[str, Any]:
        async with self._lock:
            stream = self._streams[auction_id]
            item = {
                "item_id": uuid.uuid4().hex,
                "auction_id": auction_id,
                "seq": len(stream) + 1,
                "event": deepcopy(event),
                "enqueued_at": enqueued_at,
                "state": "pending",
                "attempts": 0,
            }
            self._items[item["item_id"]] = item
            self._pending.append(item["item_id"])
            stream.append(item["item_id"])
            return deepcopy(item)

    async def claim_next(self) -> dict[str, Any] | None:
        async with self._lock:
            self._reclaim_expired()
            for index, item_id in enumerate(self._pending):
                item = self._items[item_id]
                if item["auction_id"] in self._in_flight:
                    continue
                del self._pending[index]
                self._in_flight[item["auction_id"]] = item_id
                item["state"] = "in_flight"
                item["claimed_at"] = self._clock()
                return deepcopy(item)
            return None

    async def mark_done(self, item_id: str) -> dict[str, Any]:
        async with self._lock:
            item = self._claimed(item_id)
            item["state"] = "done"
            item.pop("claimed_at", None)
            del self._in_flight[item["auction_id"]]
            return deepcopy(item)

    async def release(self, item_id: str) -> dict[str, Any]:
        async with self._lock:
            item = self._claimed(item_id)
            self._requeue(item)
            return deepcopy(item)

    async def events_for(self, auction_id: str, after_seq: int = 0) -> list[dict[str, Any]]:
        async with self._lock:
            return [
                deepcopy(self._items[item_id])
                for item_id in self._streams.get(auction_id, [])
                if self._items[item_id]["seq"] > after_seq
            ]

    async def counts(self) -> dict[str, int]:
        async with self._lock:
            totals = {"pending": 0, "in_flight": 0, "done": 0}
            for item in self._items.values():
                totals[item["state"]] += 1
            return totals

    async def close(self) -> None:
        return None

    def _reclaim_expired(self) -> None:
        if self._visibility_timeout is None:
            return
        deadline = self._clock() - self._visibility_timeout
        for item_id in list(self._in_flight.values()):
            item = self._items[item_id]
            if item["claimed_at"] <= deadline:
                logger.warning(
                    "outbox item=%s auction=%s claim expired; returning to pending",
                    item_id,
                    item["auction_id"],
                )
                self._requeue(item)

    def _requeue(self, item: dict[str, Any]) -> None:
        # an auction has at most one claimed item, so the front keeps its order
        item["state"] = "pending"
        item["attempts"] += 1
        item.pop("claimed_at", None)
        del self._in_flight[item["auction_id"]]
        self._pending.insert(0, item["item_id"])

    def _claimed(self, item_id: str) -> dict[str, Any]:
        item = self._require(item_id)
        if item["state"] != "in_flight" or self._in_flight.get(item["auction_id"]) != item_id:
            raise ValueError(f"item {item_id} is not in flight")
        return item

    def _require(self, item_id: str) -> dict[str, Any]:
        try:
            return self._items[item_id]
        except KeyError as exc:
            raise KeyError(f"item {item_id} not found") from exc
