"""Postgres outbox backend leveraging asyncpg."""

from __future__ import annotations

import logging
import uuid
from typing import Any

import asyncpg
import orjson

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS outbox_sequences (
    auction_id TEXT PRIMARY KEY,
    seq BIGINT NOT NULL
);
CREATE TABLE IF NOT EXISTS outbox_items (
    auction_id TEXT NOT NULL,
    seq BIGINT NOT NULL,
    item_id TEXT NOT NULL UNIQUE,
    state TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    data JSONB NOT NULL,
    enqueued_at TEXT NOT NULL,
    claimed_at TIMESTAMPTZ,
    PRIMARY KEY (auction_id, seq)
);
ALTER TABLE outbox_items ADD COLUMN IF NOT EXISTS claimed_at TIMESTAMPTZ;
CREATE INDEX IF NOT EXISTS idx_outbox_items_state ON outbox_items (state, enqueued_at);
"""

_CLAIM = """
SELECT item_id FROM outbox_items o
WHERE o.state = 'pending'
  AND NOT EXISTS (
      SELECT 1 FROM outbox_items f
      WHERE f.auction_id = o.auction_id AND f.state = 'in_flight'
  )
  AND NOT EXISTS (
      SELECT 1 FROM outbox_items p
      WHERE p.auction_id = o.auction_id AND p.state = 'pending' AND p.seq < o.seq
  )
ORDER BY o.attempts DESC, o.enqueued_at, o.seq
LIMIT 1
FOR UPDATE SKIP LOCKED
"""

_RECLAIM = """
UPDATE outbox_items
SET state = 'pending', attempts = attempts + 1, claimed_at = NULL
WHERE state = 'in_flight'
  AND (claimed_at IS NULL OR claimed_at < now() - make_interval(secs => $1))
RETURNING item_id, auction_id
"""


class PostgresStorage:
    def __init__(
        self,
        *,
        dsn: str | None = None,
        visibility_timeout_s: float | None = 30.0,
        **connect_kwargs: Any,
    ) -> None:
        if not dsn and not connect_kwargs:
            raise ValueError("postgres connection details missing")
        self._dsn = dsn
        self._visibility_timeout = visibility_timeout_s
        self._connect_kwargs = connect_kwargs
        self._pool: asyncpg.Pool | None = None

    def _encode(self, payload: dict[str, Any]) -> str:
        return orjson.dumps(payload).decode()

    def _decode(self, value: Any) -> dict[str, Any]:
        if isinstance(value, (bytes, bytearray)):
            value = value.decode()
        if isinstance(value, str):
            return orjson.loads(value)
        return value

    def _row_to_item(self, row: asyncpg.Record) -> dict[str, Any]:
        return {
            "item_id": row["item_id"],
            "auction_id": row["auction_id"],
            "seq": int(row["seq"]),
            "event": self._decode(row["data"]),
            "enqueued_at": row["enqueued_at"],
            "state": row["state"],
            "attempts": int(row["attempts"]),
        }

    async def _ensure_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(dsn=self._dsn, **self._connect_kwargs)
            async with self._pool.acquire() as conn:
                await conn.execute(_SCHEMA)
        return self._pool

    async def append(self, auction_id: str, event: dict[str, Any], enqueued_at: str) -> dict[str, Any]:
        pool = await self._ensure_pool()
        item_id = uuid.uuid4().hex
        async with pool.acquire() as conn:
            async with conn.transaction():
                seq = await conn.fetchval(
                    """INSERT INTO outbox_sequences(auction_id, seq) VALUES($1, 1)
                       ON CONFLICT (auction_id)
                       DO UPDATE SET seq = outbox_sequences.seq + 1
                       RETURNING seq""",
                    auction_id,
                )
                row = await conn.fetchrow(
                    """INSERT INTO outbox_items(auction_id, seq, item_id, state, data, enqueued_at)
                       VALUES($1, $2, $3, 'pending', $4, $5)
                       RETURNING *""",
                    auction_id,
                    seq,
                    item_id,
                    self._encode(event),
                    enqueued_at,
                )
        return self._row_to_item(row)

    async def claim_next(self) -> dict[str, Any] | None:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                if self._visibility_timeout is not None:
                    for expired in await conn.fetch(_RECLAIM, float(self._visibility_timeout)):
                        logger.warning(
                            "outbox item=%s auction=%s claim expired; returning to pending",
                            expired["item_id"],
                            expired["auction_id"],
                        )
                item_id = await conn.fetchval(_CLAIM)
                if item_id is None:
                    return None
                row = await conn.fetchrow(
                    """UPDATE outbox_items SET state='in_flight', claimed_at=now()
                       WHERE item_id=$1 RETURNING *""",
                    item_id,
                )
        return self._row_to_item(row)

    async def mark_done(self, item_id: str) -> dict[str, Any]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """UPDATE outbox_items SET state='done', claimed_at=NULL
                   WHERE item_id=$1 AND state='in_flight' RETURNING *""",
                item_id,
            )
        if not row:
            raise ValueError(f"item {item_id} is not in flight")
        return self._row_to_item(row)

    async def release(self, item_id: str) -> dict[str, Any]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """UPDATE outbox_items SET state='pending', attempts=attempts + 1, claimed_at=NULL
                   WHERE item_id=$1 AND state='in_flight' RETURNING *""",
                item_id,
            )
        if not row:
            raise ValueError(f"item {item_id} is not in flight")
        return self._row_to_item(row)

    async def events_for(self, auction_id: str, after_seq: int = 0) -> list[dict[str, Any]]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """SELECT * FROM outbox_items WHERE auction_id=$1 AND seq > $2 ORDER BY seq""",
                auction_id,
                after_seq,
            )
        return [self._row_to_item(row) for row in rows]

    async def counts(self) -> dict[str, int]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch("SELECT state, COUNT(*) AS total FROM outbox_items GROUP BY state")
        totals = {"pending": 0, "in_flight": 0, "done": 0}
        totals.update({row["state"]: int(row["total"]) for row in rows})
        return totals

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
