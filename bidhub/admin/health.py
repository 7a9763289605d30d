"""Admin health endpoints."""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Request

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/health")
async def health(request: Request) -> dict[str, int | str | bool]:
    state = request.app.state
    start_time = getattr(state, "start_time", None)
    uptime = int((datetime.now(timezone.utc) - start_time).total_seconds()) if start_time else 0
    worker = state.outbox_worker
    return {
        "status": "healthy",
        "uptime_seconds": uptime,
        "version": request.app.version,
        "instance_id": state.fanout.instance_id,
        "sessions": len(state.sessions),
        "auctions": len(state.registry),
        "outbox_worker_running": worker.running,
    }
