"""Operational stats endpoint."""

from __future__ import annotations

from collections import Counter
from typing import Any

from fastapi import APIRouter, Depends, Request

from ..auction.pipeline import BidAdmissionPipeline
from ..auction.registry import AuctionRegistry
from ..outbox.service import Outbox
from ..outbox.worker import OutboxWorker

router = APIRouter(prefix="/admin", tags=["admin"])


def _get_registry(request: Request) -> AuctionRegistry:
    return request.app.state.registry


def _get_pipeline(request: Request) -> BidAdmissionPipeline:
    return request.app.state.pipeline


def _get_outbox(request: Request) -> Outbox:
    return request.app.state.outbox


def _get_worker(request: Request) -> OutboxWorker:
    return request.app.state.outbox_worker


@router.get("/stats")
async def stats(
    request: Request,
    registry: AuctionRegistry = Depends(_get_registry),
    pipeline: BidAdmissionPipeline = Depends(_get_pipeline),
    outbox: Outbox = Depends(_get_outbox),
    worker: OutboxWorker = Depends(_get_worker),
) -> dict[str, Any]:
    auctions = await registry.all()
    status_distribution: Counter[str] = Counter()
    total_bids = 0
    for auction in auctions.values():
        status_distribution[auction.status().value] += 1
        total_bids += len(auction.bids)
    decided = pipeline.accepted + pipeline.rejected
    acceptance_rate = (pipeline.accepted / decided) if decided else 0.0
    return {
        "total_auctions": len(auctions),
        "total_accepted_bids": total_bids,
        "gate_accepted": pipeline.accepted,
        "gate_rejected": pipeline.rejected,
        "acceptance_rate": round(acceptance_rate, 4),
        "status_distribution": dict(status_distribution),
        "outbox": await outbox.counts(),
        "outbox_processed": worker.processed,
        "outbox_failures": worker.failures,
        "sessions": len(request.app.state.sessions),
    }
