"""Client-side auction view with provisional bids."""

from __future__ import annotations

import uuid
from copy import deepcopy
from typing import Any

from ..broadcast.dedupe import EventDeduper


class LocalView:
    """Two-phase view of the auctions a client is watching.

    Confirmed state only ever changes from server frames. Bids placed locally
    are kept apart as provisional entries and merged in ``auction()``; an
    authoritative ``bid_accepted`` or ``bid_rejected`` for the same bid id
    settles them.
    """

    def __init__(self, dedupe_capacity: int = 4096) -> None:
        self._confirmed: dict[str, dict[str, Any]] = {}
        self._provisional: dict[str, list[dict[str, Any]]] = {}
        self._seen = EventDeduper(dedupe_capacity)

    def apply(self, frame: dict[str, Any]) -> None:
        event_id = frame.get("eventId")
        if event_id and not self._seen.check_and_add(event_id):
            return
        kind = frame.get("type")
        payload = frame.get("payload") or {}
        if kind == "auctions_list":
            self.apply_snapshot(payload.get("auctions") or {})
        elif kind == "auction_created":
            auction = payload["auction"]
            self._confirmed[auction["id"]] = deepcopy(auction)
        elif kind == "bid_accepted":
            self._accept(payload["auctionId"], payload["bid"])
        elif kind == "bid_rejected":
            self._drop_provisional(payload["auctionId"], payload["bidId"])
        elif kind == "replay":
            for event in payload.get("events") or []:
                self.apply(event)

    def apply_snapshot(self, auctions: dict[str, dict[str, Any]]) -> None:
        self._confirmed = {key: deepcopy(value) for key, value in auctions.items()}
        for auction_id in list(self._provisional):
            confirmed_ids = {bid.get("id") for bid in self._confirmed.get(auction_id, {}).get("bids", [])}
            self._provisional[auction_id] = [
                bid for bid in self._provisional[auction_id] if bid.get("id") not in confirmed_ids
            ]

    def place_provisional(self, auction_id: str, bid: dict[str, Any]) -> dict[str, Any]:
        """Show ``bid`` as pending; send the returned entry so the server sees the same id."""
        if auction_id not in self._confirmed:
            raise KeyError(auction_id)
        entry = dict(bid, status="pending")
        if not entry.get("id"):
            entry["id"] = f"bid-{uuid.uuid4()}"
        self._provisional.setdefault(auction_id, []).insert(0, entry)
        return entry

    def _accept(self, auction_id: str, bid: dict[str, Any]) -> None:
        self._drop_provisional(auction_id, bid["id"])
        auction = self._confirmed.get(auction_id)
        if auction is None:
            return
        bids = auction.setdefault("bids", [])
        if any(existing.get("id") == bid["id"] for existing in bids):
            return
        bids.insert(0, deepcopy(bid))
        auction["currentPrice"] = bid["amount"]
        auction["highestBidder"] = {"id": bid.get("userId"), "username": bid.get("username")}

    def _drop_provisional(self, auction_id: str, bid_id: str) -> None:
        pending = self._provisional.get(auction_id)
        if pending:
            self._provisional[auction_id] = [bid for bid in pending if bid.get("id") != bid_id]

    def confirmed(self, auction_id: str) -> dict[str, Any]:
        return deepcopy(self._confirmed[auction_id])

    def pending(self, auction_id: str) -> list[dict[str, Any]]:
        return deepcopy(self._provisional.get(auction_id, []))

    def auction(self, auction_id: str) -> dict[str, Any]:
        """Confirmed state with provisional bids layered on top."""
        view = self.confirmed(auction_id)
        pending = self.pending(auction_id)
        if pending:
            view["bids"] = pending + view.get("bids", [])
            top = max(pending, key=lambda bid: bid["amount"])
            if top["amount"] > view["currentPrice"]:
                view["currentPrice"] = top["amount"]
                view["highestBidder"] = {"id": top.get("userId"), "username": top.get("username")}
        return view

    def auction_ids(self) -> list[str]:
        return sorted(self._confirmed)
