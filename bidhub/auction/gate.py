"""Acceptance policies consulted before a validated bid is committed."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Protocol

from ..config import GateConfig
from .models import Bid

logger = logging.getLogger(__name__)


class AcceptanceGate(Protocol):
    async def evaluate(self, bid: Bid) -> bool: ...


class MajorityVoteGate:
    """Simulated quorum: each acceptor votes yes with ``accept_probability``.

    A stand-in for a real agreement protocol. The bid passes when strictly
    more than half of the acceptors vote yes.
    """

    def __init__(
        self,
        *,
        acceptors: int = 3,
        accept_probability: float = 0.8,
        vote_delay_ms: int = 0,
        rng: random.Random | None = None,
    ) -> None:
        if acceptors < 1:
            raise ValueError("at least one acceptor is required")
        if not 0.0 <= accept_probability <= 1.0:
            raise ValueError("accept_probability must be within [0, 1]")
        self._acceptors = acceptors
        self._probability = accept_probability
        self._vote_delay = vote_delay_ms / 1000
        self._rng = rng or random.Random()

    async def _vote(self) -> bool:
        if self._vote_delay:
            await asyncio.sleep(self._vote_delay)
        return self._rng.random() < self._probability

    async def evaluate(self, bid: Bid) -> bool:
        votes = await asyncio.gather(*(self._vote() for _ in range(self._acceptors)))
        accepted = sum(votes)
        logger.debug("bid=%s votes=%d/%d", bid.id, accepted, self._acceptors)
        return accepted > self._acceptors / 2


class AlwaysAcceptGate:
    async def evaluate(self, bid: Bid) -> bool:
        return True


def build_gate(config: GateConfig) -> AcceptanceGate:
    if config.policy == "majority":
        return MajorityVoteGate(
            acceptors=config.acceptors,
            accept_probability=config.accept_probability,
            vote_delay_ms=config.vote_delay_ms,
        )
    if config.policy == "always_accept":
        return AlwaysAcceptGate()
    raise ValueError(f"unknown gate policy {config.policy}")
