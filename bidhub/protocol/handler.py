"""Inbound websocket message dispatch."""

from __future__ import annotations

import logging
from typing import Any

from ..auction.errors import AuctionConflict, ClientInputError, DomainRejection
from ..auction.pipeline import BidAdmissionPipeline
from ..auction.queries import AuctionQueries
from ..outbox.service import Outbox
from ..sessions.manager import ServerSession, SessionManager
from ..transport.codec import decode_message
from ..validation.validator import SchemaRegistry

logger = logging.getLogger(__name__)


class MessageHandler:
    """Turns one inbound frame into registry work and replies.

    Failures caused by the frame itself, or by business rules, are answered
    with an ``error`` frame to the sender only and never close the socket.
    Outcomes every subscriber must see (``auction_created``, ``bid_accepted``,
    ``bid_rejected``) go out through the broadcast path, not from here.
    """

    def __init__(
        self,
        pipeline: BidAdmissionPipeline,
        queries: AuctionQueries,
        outbox: Outbox,
        sessions: SessionManager,
        schemas: SchemaRegistry,
    ) -> None:
        self._pipeline = pipeline
        self._queries = queries
        self._outbox = outbox
        self._sessions = sessions
        self._schemas = schemas
        self._routes = {
            "create_auction": self._create_auction,
            "new_bid": self._new_bid,
            "get_auctions": self._get_auctions,
            "replay": self._replay,
            "ping": self._ping,
        }

    async def handle(self, session: ServerSession, raw: str | bytes) -> None:
        try:
            kind, payload = decode_message(raw)
            route = self._routes.get(kind)
            if route is None:
                raise ClientInputError("Unknown message type")
            await route(session, payload)
        except (ClientInputError, DomainRejection, AuctionConflict) as exc:
            logger.info("session=%s request refused: %s", session.session_id, exc)
            self._sessions.send_to(session, "error", {"message": str(exc), "code": exc.code})

    async def _create_auction(self, session: ServerSession, payload: dict[str, Any]) -> None:
        self._schemas.validate("create_auction", payload)
        await self._queries.create_auction(payload["auction"])

    async def _new_bid(self, session: ServerSession, payload: dict[str, Any]) -> None:
        self._schemas.validate("new_bid", payload)
        await self._pipeline.submit(payload["auctionId"], payload["bid"])

    async def _get_auctions(self, session: ServerSession, payload: dict[str, Any]) -> None:
        auctions = await self._queries.list_auctions()
        self._sessions.send_to(session, "auctions_list", {"auctions": auctions})

    async def _replay(self, session: ServerSession, payload: dict[str, Any]) -> None:
        self._schemas.validate("replay", payload)
        auction_id = payload["auctionId"]
        # raises AuctionNotFound for unknown ids
        await self._queries.get_auction(auction_id)
        history = await self._outbox.replay(auction_id, int(payload.get("afterSeq", 0)))
        self._sessions.send_to(
            session,
            "replay",
            {
                "auctionId": auction_id,
                "events": [dict(event.to_message(), seq=seq) for seq, event in history],
            },
        )

    async def _ping(self, session: ServerSession, payload: dict[str, Any]) -> None:
        self._sessions.send_to(session, "pong", {})
