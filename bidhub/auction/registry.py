"""Canonical in-memory auction state with per-auction serialization."""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from copy import deepcopy
from typing import Any, AsyncIterator, Mapping

from ..transport.timestamps import parse_optional
from .errors import AuctionConflict, AuctionNotFound, ClientInputError
from .models import Auction, Bid, BidStatus

logger = logging.getLogger(__name__)


def _positive(value: Any, name: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ClientInputError(f"{name} must be a number") from exc
    if number <= 0:
        raise ClientInputError(f"{name} must be positive")
    return number


def auction_from_spec(spec: Mapping[str, Any], *, default_increment: float = 1.0) -> Auction:
    """Build an Auction from the wire-format creation payload."""
    starting_price = _positive(spec.get("startingPrice"), "startingPrice")
    increment = spec.get("minBidIncrement")
    min_increment = (
        _positive(increment, "minBidIncrement") if increment is not None else default_increment
    )
    start_time = parse_optional(spec.get("startTime"))
    end_time = parse_optional(spec.get("endTime"))
    if start_time and end_time and end_time <= start_time:
        raise ClientInputError("endTime must be after startTime")
    seller = spec.get("seller")
    return Auction(
        id=str(spec.get("id") or f"auction-{uuid.uuid4()}"),
        title=str(spec.get("title") or ""),
        description=str(spec.get("description") or ""),
        image_url=str(spec.get("imageUrl") or ""),
        seller=dict(seller) if isinstance(seller, Mapping) else {},
        category_id=str(spec.get("categoryId") or ""),
        starting_price=starting_price,
        current_price=starting_price,
        min_bid_increment=min_increment,
        start_time=start_time,
        end_time=end_time,
    )


class AuctionRegistry:
    """Owns every Auction and Bid object.

    ``commit_bid`` is the only code path that touches ``current_price`` or
    ``bids``. Callers serialize work for one auction through ``lock_for``;
    the map lock below only guarantees that readers never see a bid half
    applied.
    """

    def __init__(self, *, default_increment: float = 1.0) -> None:
        self._auctions: dict[str, Auction] = {}
        self._key_locks: dict[str, asyncio.Lock] = {}
        self._lock = asyncio.Lock()
        self._default_increment = default_increment

    def lock_for(self, auction_id: str) -> asyncio.Lock:
        """Return the lock serializing work on ``auction_id``; unknown ids raise AuctionNotFound."""
        try:
            return self._key_locks[auction_id]
        except KeyError as exc:
            raise AuctionNotFound(auction_id) from exc

    @asynccontextmanager
    async def creating(self, spec: Mapping[str, Any]) -> AsyncIterator[Auction]:
        """Register a new auction and hold its lock until the block exits.

        The auction becomes visible together with its lock already taken, so
        work queued on it waits for whatever the block does first.
        """
        auction = auction_from_spec(spec, default_increment=self._default_increment)
        async with self._lock:
            if auction.id in self._auctions:
                raise AuctionConflict(auction.id)
            key_lock = asyncio.Lock()
            await key_lock.acquire()
            self._auctions[auction.id] = auction
            self._key_locks[auction.id] = key_lock
            logger.info("auction=%s created starting_price=%s", auction.id, auction.starting_price)
            created = deepcopy(auction)
        try:
            yield created
        finally:
            key_lock.release()

    async def create(self, spec: Mapping[str, Any]) -> Auction:
        async with self.creating(spec) as auction:
            return auction

    async def get(self, auction_id: str) -> Auction:
        async with self._lock:
            try:
                return deepcopy(self._auctions[auction_id])
            except KeyError as exc:
                raise AuctionNotFound(auction_id) from exc

    async def all(self) -> dict[str, Auction]:
        async with self._lock:
            return {key: deepcopy(value) for key, value in self._auctions.items()}

    async def commit_bid(self, auction_id: str, bid: Bid) -> Auction:
        if bid.status is not BidStatus.ACCEPTED:
            raise ValueError(f"only accepted bids can be committed, got {bid.status.value}")
        async with self._lock:
            auction = self._auctions.get(auction_id)
            if auction is None:
                raise AuctionNotFound(auction_id)
            if bid.amount <= auction.current_price:
                raise ValueError(
                    f"bid {bid.id} amount {bid.amount} does not raise price {auction.current_price}"
                )
            auction.bids.insert(0, bid)
            auction.current_price = bid.amount
            return deepcopy(auction)

    async def record_view(self, auction_id: str) -> int:
        async with self._lock:
            auction = self._auctions.get(auction_id)
            if auction is None:
                raise AuctionNotFound(auction_id)
            auction.view_count += 1
            return auction.view_count

    def __len__(self) -> int:
        return len(self._auctions)
