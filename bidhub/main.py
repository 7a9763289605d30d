from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request, WebSocket, status
from fastapi.websockets import WebSocketDisconnect

from .admin import config as admin_config
from .admin import health as admin_health
from .admin import stats as admin_stats
from .auction.errors import AuctionConflict, AuctionNotFound, ClientInputError
from .auction.gate import build_gate
from .auction.pipeline import BidAdmissionPipeline
from .auction.queries import AuctionFilters, AuctionQueries
from .auction.registry import AuctionRegistry
from .broadcast.channels import build_channel
from .broadcast.fanout import BroadcastFanout
from .config import ServerConfig, get_server_config
from .outbox.service import Outbox
from .outbox.worker import OutboxWorker
from .protocol.handler import MessageHandler
from .sessions.manager import SessionManager
from .storage import build_storage
from .validation.validator import SchemaRegistry, get_schema_registry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    server_config = get_server_config()
    schema_registry = get_schema_registry()
    registry = AuctionRegistry(default_increment=server_config.auction.default_min_increment)
    sessions = SessionManager(registry, send_queue_size=server_config.session.send_queue_size)
    outbox = Outbox(build_storage(server_config))
    fanout = BroadcastFanout(
        sessions,
        build_channel(server_config.broadcast.channel),
        instance_id=server_config.broadcast.instance_id,
        dedupe_capacity=server_config.broadcast.dedupe_capacity,
    )
    pipeline = BidAdmissionPipeline(
        registry,
        build_gate(server_config.auction.gate),
        outbox,
        fanout,
        enforce_increment=server_config.auction.enforce_increment,
    )
    queries = AuctionQueries(registry=registry, pipeline=pipeline)
    worker = OutboxWorker(
        outbox,
        fanout.forward,
        max_attempts=server_config.outbox.max_attempts,
        poll_interval_ms=server_config.outbox.poll_interval_ms,
    )
    handler = MessageHandler(pipeline, queries, outbox, sessions, schema_registry)

    app.state.server_config = server_config
    app.state.schema_registry = schema_registry
    app.state.registry = registry
    app.state.sessions = sessions
    app.state.outbox = outbox
    app.state.fanout = fanout
    app.state.pipeline = pipeline
    app.state.queries = queries
    app.state.outbox_worker = worker
    app.state.message_handler = handler
    app.state.start_time = datetime.now(timezone.utc)

    await fanout.start()
    worker.start()
    try:
        yield
    finally:
        await worker.stop()
        await sessions.close_all()
        await fanout.close()
        await outbox.close()


app = FastAPI(
    title="bidhub",
    version="1.0.0",
    docs_url="/docs",
    lifespan=lifespan,
)

app.include_router(admin_health.router)
app.include_router(admin_stats.router)
app.include_router(admin_config.router)


# Dependency helpers ---------------------------------------------------------


def get_server_settings(request: Request) -> ServerConfig:
    return request.app.state.server_config


def get_schema_service(request: Request) -> SchemaRegistry:
    return request.app.state.schema_registry


def get_queries(request: Request) -> AuctionQueries:
    return request.app.state.queries


def get_outbox(request: Request) -> Outbox:
    return request.app.state.outbox


# Routes ---------------------------------------------------------------------


@app.get("/", tags=["meta"])
async def root(settings: ServerConfig = Depends(get_server_settings)) -> dict[str, Any]:
    return {
        "service": "bidhub",
        "version": app.version,
        "auction": {
            "enforce_increment": settings.auction.enforce_increment,
            "gate_policy": settings.auction.gate.policy,
        },
        "outbox_backend": settings.outbox.backend,
        "broadcast_channel": settings.broadcast.channel.get("backend", "local"),
    }


@app.get("/health", tags=["meta"])
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/auctions", tags=["auctions"])
async def list_auctions(
    status_filter: str | None = Query(None, alias="status"),
    category: str | None = None,
    min_price: float | None = None,
    max_price: float | None = None,
    search: str | None = None,
    queries: AuctionQueries = Depends(get_queries),
) -> dict[str, Any]:
    filters = AuctionFilters(
        status=status_filter,
        category=category,
        min_price=min_price,
        max_price=max_price,
        search=search,
    )
    return await queries.list_auctions(filters)


@app.post("/auctions", tags=["auctions"], status_code=status.HTTP_201_CREATED)
async def create_auction(
    payload: dict[str, Any] = Body(...),
    queries: AuctionQueries = Depends(get_queries),
    schemas: SchemaRegistry = Depends(get_schema_service),
) -> dict[str, Any]:
    try:
        schemas.validate("create_auction", {"auction": payload})
        return await queries.create_auction(payload)
    except AuctionConflict as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ClientInputError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@app.get("/auctions/{auction_id}", tags=["auctions"])
async def get_auction(auction_id: str, queries: AuctionQueries = Depends(get_queries)) -> dict[str, Any]:
    try:
        return await queries.get_auction(auction_id, count_view=True)
    except AuctionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/auctions/{auction_id}/bids", tags=["auctions"])
async def get_bids(auction_id: str, queries: AuctionQueries = Depends(get_queries)) -> list[dict[str, Any]]:
    try:
        return await queries.get_bids(auction_id)
    except AuctionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.get("/auctions/{auction_id}/events", tags=["auctions"])
async def get_events(
    auction_id: str,
    after_seq: int = Query(0, ge=0),
    queries: AuctionQueries = Depends(get_queries),
    outbox: Outbox = Depends(get_outbox),
) -> list[dict[str, Any]]:
    try:
        await queries.get_auction(auction_id)
    except AuctionNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    history = await outbox.replay(auction_id, after_seq)
    return [dict(event.to_message(), seq=seq) for seq, event in history]


@app.websocket("/ws")
async def auction_socket(websocket: WebSocket) -> None:
    sessions: SessionManager = websocket.app.state.sessions
    handler: MessageHandler = websocket.app.state.message_handler
    session = await sessions.connect(websocket)
    try:
        while True:
            raw = await websocket.receive_text()
            await handler.handle(session, raw)
    except WebSocketDisconnect:
        pass
    finally:
        await sessions.disconnect(session)


if __name__ == "__main__":
    import uvicorn

    listen = get_server_config().listen
    uvicorn.run(app, host=listen.get("host", "0.0.0.0"), port=int(listen.get("port", 4000)))
