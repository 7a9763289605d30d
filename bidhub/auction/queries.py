"""Read-only query surface over auction snapshots."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from .pipeline import BidAdmissionPipeline
from .registry import AuctionRegistry


@dataclass
class AuctionFilters:
    status: str | None = None
    category: str | None = None
    min_price: float | None = None
    max_price: float | None = None
    search: str | None = None

    def matches(self, snapshot: Mapping[str, Any]) -> bool:
        if self.status and snapshot["status"] != self.status:
            return False
        if self.category and snapshot["categoryId"] != self.category:
            return False
        if self.min_price is not None and snapshot["currentPrice"] < self.min_price:
            return False
        if self.max_price is not None and snapshot["currentPrice"] > self.max_price:
            return False
        if self.search:
            needle = self.search.lower()
            haystack = f"{snapshot['title']} {snapshot['description']}".lower()
            if needle not in haystack:
                return False
        return True


@dataclass
class AuctionQueries:
    registry: AuctionRegistry
    pipeline: BidAdmissionPipeline

    async def list_auctions(self, filters: AuctionFilters | None = None) -> dict[str, dict[str, Any]]:
        auctions = await self.registry.all()
        snapshots = {key: auction.to_snapshot() for key, auction in auctions.items()}
        if filters is None:
            return snapshots
        return {key: value for key, value in snapshots.items() if filters.matches(value)}

    async def get_auction(self, auction_id: str, *, count_view: bool = False) -> dict[str, Any]:
        if count_view:
            await self.registry.record_view(auction_id)
        auction = await self.registry.get(auction_id)
        return auction.to_snapshot()

    async def get_bids(self, auction_id: str) -> list[dict[str, Any]]:
        auction = await self.registry.get(auction_id)
        return [bid.to_snapshot() for bid in auction.bids]

    async def create_auction(self, spec: Mapping[str, Any]) -> dict[str, Any]:
        auction = await self.pipeline.create_auction(spec)
        return auction.to_snapshot()
