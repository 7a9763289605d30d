"""Outbox storage backend factory."""

from __future__ import annotations

from typing import Any, Protocol

from ..config import ServerConfig
from .in_memory import InMemoryStorage
from .postgres import PostgresStorage
from .redis import RedisStorage


class OutboxStorage(Protocol):
    async def append(self, auction_id: str, event: dict[str, Any], enqueued_at: str) -> dict: ...

    async def claim_next(self) -> dict | None: ...

    async def mark_done(self, item_id: str) -> dict: ...

    async def release(self, item_id: str) -> dict: ...

    async def events_for(self, auction_id: str, after_seq: int = 0) -> list[dict]: ...

    async def counts(self) -> dict[str, int]: ...

    async def close(self) -> None: ...


def build_storage(config: ServerConfig) -> OutboxStorage:
    backend = config.outbox.backend
    options = dict(config.outbox.options)
    options.setdefault("visibility_timeout_s", config.outbox.visibility_timeout_s)
    if backend == "in_memory":
        return InMemoryStorage(visibility_timeout_s=options["visibility_timeout_s"])
    if backend == "redis":
        return RedisStorage(**options)
    if backend == "postgres":
        return PostgresStorage(**options)
    raise ValueError(f"unknown storage backend {backend}")
