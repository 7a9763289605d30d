"""Shared auction data structures."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from ..transport.timestamps import format_timestamp, utc_now


class AuctionStatus(str, Enum):
    UPCOMING = "upcoming"
    ACTIVE = "active"
    ENDED = "ended"


class BidStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class EventKind(str, Enum):
    AUCTION_CREATED = "auction_created"
    BID_ACCEPTED = "bid_accepted"
    BID_REJECTED = "bid_rejected"


@dataclass(frozen=True)
class Bid:
    id: str
    bidder_id: str
    amount: float
    timestamp: datetime
    bidder_name: str = ""
    status: BidStatus = BidStatus.PENDING

    @property
    def is_terminal(self) -> bool:
        return self.status is not BidStatus.PENDING

    def with_status(self, status: BidStatus) -> "Bid":
        if self.is_terminal:
            raise ValueError(f"bid {self.id} is already {self.status.value}")
        if status is BidStatus.PENDING:
            raise ValueError("bids cannot move back to pending")
        return replace(self, status=status)

    def to_snapshot(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.bidder_id,
            "username": self.bidder_name,
            "amount": self.amount,
            "timestamp": format_timestamp(self.timestamp),
            "status": self.status.value,
        }


@dataclass
class Auction:
    id: str
    title: str
    starting_price: float
    min_bid_increment: float
    description: str = ""
    image_url: str = ""
    seller: dict[str, Any] = field(default_factory=dict)
    category_id: str = ""
    start_time: datetime | None = None
    end_time: datetime | None = None
    current_price: float = 0.0
    bids: list[Bid] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    view_count: int = 0

    def status(self, now: datetime | None = None) -> AuctionStatus:
        now = now or utc_now()
        if self.start_time is not None and now < self.start_time:
            return AuctionStatus.UPCOMING
        if self.end_time is not None and now >= self.end_time:
            return AuctionStatus.ENDED
        return AuctionStatus.ACTIVE

    @property
    def highest_bidder(self) -> dict[str, str] | None:
        if not self.bids:
            return None
        top = self.bids[0]
        return {"id": top.bidder_id, "username": top.bidder_name}

    def to_snapshot(self, now: datetime | None = None) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "imageUrl": self.image_url,
            "seller": dict(self.seller),
            "categoryId": self.category_id,
            "startingPrice": self.starting_price,
            "currentPrice": self.current_price,
            "minBidIncrement": self.min_bid_increment,
            "startTime": format_timestamp(self.start_time),
            "endTime": format_timestamp(self.end_time),
            "status": self.status(now).value,
            "bids": [bid.to_snapshot() for bid in self.bids],
            "highestBidder": self.highest_bidder,
            "viewCount": self.view_count,
            "createdAt": format_timestamp(self.created_at),
        }


@dataclass(frozen=True)
class Event:
    kind: EventKind
    auction_id: str
    payload: dict[str, Any]
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    origin: str = ""

    def to_message(self) -> dict[str, Any]:
        return {"type": self.kind.value, "payload": self.payload, "eventId": self.event_id}

    def to_record(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "kind": self.kind.value,
            "auction_id": self.auction_id,
            "payload": self.payload,
            "origin": self.origin,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Event":
        return cls(
            kind=EventKind(record["kind"]),
            auction_id=record["auction_id"],
            payload=record.get("payload") or {},
            event_id=record["event_id"],
            origin=record.get("origin", ""),
        )
