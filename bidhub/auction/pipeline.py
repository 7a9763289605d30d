"""Glue between validation, the acceptance gate, the registry, and broadcast."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Mapping

from ..broadcast.fanout import BroadcastFanout
from ..outbox.service import Outbox
from ..transport.timestamps import utc_now
from .errors import (
    AuctionNotActive,
    BelowIncrement,
    ClientInputError,
    PriceTooLow,
)
from .fsm import AdmissionState, AdmissionStep, transition
from .gate import AcceptanceGate
from .models import Auction, AuctionStatus, Bid, BidStatus, Event, EventKind
from .registry import AuctionRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AdmissionResult:
    auction_id: str
    bid: Bid
    state: AdmissionState
    event: Event
    auction: Auction | None = None

    @property
    def accepted(self) -> bool:
        return self.state is AdmissionState.COMMITTED


def bid_from_payload(payload: Mapping[str, Any]) -> Bid:
    raw_amount = payload.get("amount")
    if isinstance(raw_amount, bool):
        raise ClientInputError("bid amount must be a number")
    try:
        amount = float(raw_amount)
    except (TypeError, ValueError) as exc:
        raise ClientInputError("bid amount must be a number") from exc
    if amount <= 0:
        raise ClientInputError("bid amount must be positive")
    bidder_id = payload.get("userId") or payload.get("bidderId")
    if not bidder_id:
        raise ClientInputError("bid userId is required")
    return Bid(
        id=str(payload.get("id") or f"bid-{uuid.uuid4()}"),
        bidder_id=str(bidder_id),
        bidder_name=str(payload.get("username") or ""),
        amount=amount,
        timestamp=utc_now(),
    )


class BidAdmissionPipeline:
    """Serializes admission per auction and emits exactly one event per bid.

    Everything from validation to local publish happens under the auction's
    lock, so a bid is always validated against the price left by the bid
    committed before it, and events leave in commit order. Auctions never
    wait on each other.
    """

    def __init__(
        self,
        registry: AuctionRegistry,
        gate: AcceptanceGate,
        outbox: Outbox,
        fanout: BroadcastFanout,
        *,
        enforce_increment: bool = True,
    ) -> None:
        self._registry = registry
        self._gate = gate
        self._outbox = outbox
        self._fanout = fanout
        self._enforce_increment = enforce_increment
        self.accepted = 0
        self.rejected = 0

    async def create_auction(self, spec: Mapping[str, Any]) -> Auction:
        async with self._registry.creating(spec) as auction:
            event = self._fanout.stamp(
                Event(
                    kind=EventKind.AUCTION_CREATED,
                    auction_id=auction.id,
                    payload={"auction": auction.to_snapshot()},
                )
            )
            await self._emit(event)
        return auction

    async def submit(self, auction_id: str, payload: Mapping[str, Any]) -> AdmissionResult:
        candidate = bid_from_payload(payload)
        async with self._registry.lock_for(auction_id):
            state = AdmissionState.RECEIVED
            auction = await self._registry.get(auction_id)
            self._validate(auction, candidate)
            state = transition(state, AdmissionStep.VALIDATION_PASSED)

            approved = await self._gate.evaluate(candidate)
            state = transition(state, AdmissionStep.GATE_EVALUATED)

            if not approved:
                bid = candidate.with_status(BidStatus.REJECTED)
                state = transition(state, AdmissionStep.GATE_DECLINED)
                event = self._event(EventKind.BID_REJECTED, auction_id, bid)
                self.rejected += 1
                logger.info("auction=%s bid=%s amount=%s rejected by gate", auction_id, bid.id, bid.amount)
                await self._emit(event)
                return AdmissionResult(auction_id, bid, state, event)

            bid = candidate.with_status(BidStatus.ACCEPTED)
            committed = await self._registry.commit_bid(auction_id, bid)
            state = transition(state, AdmissionStep.COMMIT_APPLIED)
            event = self._event(EventKind.BID_ACCEPTED, auction_id, bid)
            self.accepted += 1
            logger.info("auction=%s bid=%s amount=%s committed", auction_id, bid.id, bid.amount)
            await self._emit(event)
            return AdmissionResult(auction_id, bid, state, event, committed)

    def _validate(self, auction: Auction, bid: Bid) -> None:
        status = auction.status()
        if status is not AuctionStatus.ACTIVE:
            raise AuctionNotActive(f"auction {auction.id} is {status.value}, not active")
        if any(existing.id == bid.id for existing in auction.bids):
            raise ClientInputError(f"bid {bid.id} was already submitted")
        if bid.amount <= auction.current_price:
            raise PriceTooLow(f"Bid must be higher than current price of {auction.current_price}")
        minimum = auction.current_price + auction.min_bid_increment
        if self._enforce_increment and bid.amount < minimum:
            raise BelowIncrement(
                f"Minimum bid increment is {auction.min_bid_increment}; bid at least {minimum}"
            )

    def _event(self, kind: EventKind, auction_id: str, bid: Bid) -> Event:
        payload: dict[str, Any] = {
            "auctionId": auction_id,
            "bidId": bid.id,
            "status": bid.status.value,
        }
        if kind is EventKind.BID_ACCEPTED:
            payload["bid"] = bid.to_snapshot()
        return self._fanout.stamp(Event(kind=kind, auction_id=auction_id, payload=payload))

    async def _emit(self, event: Event) -> None:
        try:
            await self._outbox.enqueue(event)
        except Exception:
            # the commit stands; local subscribers still get the event
            logger.exception(
                "auction=%s event=%s could not be staged in the outbox",
                event.auction_id,
                event.event_id,
            )
        await self._fanout.publish(event)
