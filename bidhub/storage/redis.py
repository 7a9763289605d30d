"""Redis outbox backend using redis-py asyncio client.

Layout under ``prefix``:

* ``seq:{auction_id}``     INCR counter for per-auction sequence numbers
* ``item:{item_id}``       orjson-encoded queue item
* ``stream:{auction_id}``  sorted set of item ids scored by sequence
* ``pending``              list of pending item ids, oldest at the head
* ``in_flight``            hash of auction id -> claim (``item_id`` and ``claimed_at``)
* ``done``                 INCR counter of acknowledged items
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Callable

import orjson
from redis import asyncio as aioredis

logger = logging.getLogger(__name__)

# KEYS: in_flight, item, pending, done
# ARGV: auction_id, item_id, item_json, requeue flag
_SETTLE = """
local claim = redis.call('HGET', KEYS[1], ARGV[1])
if not claim or cjson.decode(claim).item_id ~= ARGV[2] then
    return 0
end
redis.call('HDEL', KEYS[1], ARGV[1])
redis.call('SET', KEYS[2], ARGV[3])
if ARGV[4] == '1' then
    redis.call('LPUSH', KEYS[3], ARGV[2])
else
    redis.call('INCR', KEYS[4])
end
return 1
"""

# KEYS: in_flight, item, pending
# ARGV: auction_id, expired claim, item_id, item_json
_RECLAIM = """
if redis.call('HGET', KEYS[1], ARGV[1]) ~= ARGV[2] then
    return 0
end
redis.call('HDEL', KEYS[1], ARGV[1])
redis.call('SET', KEYS[2], ARGV[4])
redis.call('LPUSH', KEYS[3], ARGV[3])
return 1
"""


def _text(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return value.decode()
    return str(value)


class RedisStorage:
    def __init__(
        self,
        *,
        url: str,
        prefix: str = "bidhub:outbox",
        scan_window: int = 100,
        visibility_timeout_s: float | None = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not url:
            raise ValueError("redis url missing")
        self._redis = aioredis.from_url(url)
        self._prefix = prefix.rstrip(":")
        self._scan_window = scan_window
        self._visibility_timeout = visibility_timeout_s
        self._clock = clock
        self._settle = self._redis.register_script(_SETTLE)
        self._reclaim = self._redis.register_script(_RECLAIM)

    def _key(self, *parts: str) -> str:
        return ":".join((self._prefix, *parts))

    async def _load(self, item_id: str) -> dict[str, Any]:
        raw = await self._redis.get(self._key("item", item_id))
        if raw is None:
            raise KeyError(item_id)
        return orjson.loads(raw)

    async def _save(self, item: dict[str, Any]) -> None:
        await self._redis.set(self._key("item", item["item_id"]), orjson.dumps(item))

    async def append(self, auction_id: str, event: dict[str, Any], enqueued_at: str) -> dict[str, Any]:
        seq = await self._redis.incr(self._key("seq", auction_id))
        item = {
            "item_id": uuid.uuid4().hex,
            "auction_id": auction_id,
            "seq": int(seq),
            "event": event,
            "enqueued_at": enqueued_at,
            "state": "pending",
            "attempts": 0,
        }
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.set(self._key("item", item["item_id"]), orjson.dumps(item))
            pipe.zadd(self._key("stream", auction_id), {item["item_id"]: item["seq"]})
            pipe.rpush(self._key("pending"), item["item_id"])
            await pipe.execute()
        return item

    async def claim_next(self) -> dict[str, Any] | None:
        await self._reclaim_expired()
        candidates = await self._redis.lrange(self._key("pending"), 0, self._scan_window - 1)
        for raw_id in candidates:
            item_id = _text(raw_id)
            item = await self._load(item_id)
            claimed_at = self._clock()
            claim = orjson.dumps({"item_id": item_id, "claimed_at": claimed_at})
            # HSETNX is the per-auction claim; zero means another worker holds it
            if not await self._redis.hsetnx(self._key("in_flight"), item["auction_id"], claim):
                continue
            removed = await self._redis.lrem(self._key("pending"), 1, item_id)
            if not removed:
                await self._redis.hdel(self._key("in_flight"), item["auction_id"])
                continue
            item["state"] = "in_flight"
            item["claimed_at"] = claimed_at
            await self._save(item)
            return item
        return None

    async def _reclaim_expired(self) -> None:
        if self._visibility_timeout is None:
            return
        claims = await self._redis.hgetall(self._key("in_flight"))
        deadline = self._clock() - self._visibility_timeout
        for raw_auction, raw_claim in claims.items():
            claim = orjson.loads(raw_claim)
            if claim["claimed_at"] > deadline:
                continue
            item = await self._load(claim["item_id"])
            item["state"] = "pending"
            item["attempts"] = int(item.get("attempts", 0)) + 1
            item.pop("claimed_at", None)
            auction_id = _text(raw_auction)
            reclaimed = await self._reclaim(
                keys=[self._key("in_flight"), self._key("item", item["item_id"]), self._key("pending")],
                args=[auction_id, raw_claim, item["item_id"], orjson.dumps(item)],
            )
            if reclaimed:
                logger.warning(
                    "outbox item=%s auction=%s claim expired; returning to pending",
                    item["item_id"],
                    auction_id,
                )

    async def _finish(self, item_id: str, *, requeue: bool) -> dict[str, Any]:
        item = await self._load(item_id)
        if item["state"] != "in_flight":
            raise ValueError(f"item {item_id} is not in flight")
        if requeue:
            item["state"] = "pending"
            item["attempts"] = int(item.get("attempts", 0)) + 1
        else:
            item["state"] = "done"
        item.pop("claimed_at", None)
        settled = await self._settle(
            keys=[
                self._key("in_flight"),
                self._key("item", item_id),
                self._key("pending"),
                self._key("done"),
            ],
            args=[item["auction_id"], item_id, orjson.dumps(item), "1" if requeue else "0"],
        )
        if not settled:
            raise ValueError(f"item {item_id} is not in flight")
        return item

    async def mark_done(self, item_id: str) -> dict[str, Any]:
        return await self._finish(item_id, requeue=False)

    async def release(self, item_id: str) -> dict[str, Any]:
        return await self._finish(item_id, requeue=True)

    async def events_for(self, auction_id: str, after_seq: int = 0) -> list[dict[str, Any]]:
        ids = await self._redis.zrangebyscore(
            self._key("stream", auction_id), f"({after_seq}", "+inf"
        )
        if not ids:
            return []
        values = await self._redis.mget([self._key("item", _text(item_id)) for item_id in ids])
        return [orjson.loads(value) for value in values if value]

    async def counts(self) -> dict[str, int]:
        pending = await self._redis.llen(self._key("pending"))
        in_flight = await self._redis.hlen(self._key("in_flight"))
        done = await self._redis.get(self._key("done"))
        return {"pending": int(pending), "in_flight": int(in_flight), "done": int(done or 0)}

    async def close(self) -> None:
        await self._redis.aclose()
