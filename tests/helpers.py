"""Fakes and builders shared by the unit suite."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any


from bidhub.auction.gate import AlwaysAcceptGate
from bidhub.auction.pipeline import BidAdmissionPipeline
from bidhub.auction.registry import AuctionRegistry
from bidhub.broadcast.channels import LocalChannel
from bidhub.broadcast.fanout import BroadcastFanout
from bidhub.outbox.service import Outbox
from bidhub.sessions.manager import SessionManager
from bidhub.storage.in_memory import InMemoryStorage


def iso(delta: timedelta) -> str:
    return (datetime.now(timezone.utc) + delta).isoformat().replace("+00:00", "Z")


def auction_spec(auction_id: str = "A", **overrides: Any) -> dict[str, Any]:
    spec = {
        "id": auction_id,
        "title": "Vintage lamp",
        "description": "Brass desk lamp",
        "startingPrice": 1000,
        "minBidIncrement": 50,
        "startTime": iso(timedelta(hours=-1)),
        "endTime": iso(timedelta(hours=1)),
    }
    spec.update(overrides)
    return spec


async def settle(rounds: int = 10) -> None:
    """Let queued sender tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeSocket:
    def __init__(self, fail_after: int | None = None) -> None:
        self.sent: list[dict[str, Any]] = []
        self.accepted = False
        self.closed = False
        self._fail_after = fail_after

    async def accept(self) -> None:
        self.accepted = True

    async def send_text(self, data: str) -> None:
        if self._fail_after is not None and len(self.sent) >= self._fail_after:
            raise ConnectionResetError("peer went away")
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000) -> None:
        self.closed = True

    def kinds(self) -> list[str]:
        return [frame["type"] for frame in self.sent]


class ScriptedGate:
    """Gate returning pre-set decisions, then accepting."""

    def __init__(self, decisions: list[bool] | None = None) -> None:
        self._decisions = list(decisions or [])
        self.seen: list[Any] = []

    async def evaluate(self, bid) -> bool:
        self.seen.append(bid)
        await asyncio.sleep(0)
        if self._decisions:
            return self._decisions.pop(0)
        return True


@dataclass
class Harness:
    registry: AuctionRegistry
    sessions: SessionManager
    outbox: Outbox
    fanout: BroadcastFanout
    pipeline: BidAdmissionPipeline
    channel: LocalChannel


def build_harness(
    gate=None,
    *,
    channel: LocalChannel | None = None,
    instance_id: str = "node-a",
    enforce_increment: bool = True,
) -> Harness:
    registry = AuctionRegistry()
    sessions = SessionManager(registry, send_queue_size=64)
    outbox = Outbox(InMemoryStorage())
    channel = channel or LocalChannel()
    fanout = BroadcastFanout(sessions, channel, instance_id=instance_id)
    pipeline = BidAdmissionPipeline(
        registry,
        gate or AlwaysAcceptGate(),
        outbox,
        fanout,
        enforce_increment=enforce_increment,
    )
    return Harness(registry, sessions, outbox, fanout, pipeline, channel)
