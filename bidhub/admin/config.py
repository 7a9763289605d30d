"""Expose currently loaded server config for debugging."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from ..config import ServerConfig

router = APIRouter(prefix="/admin", tags=["admin"])


def _get_config(request: Request) -> ServerConfig:
    return request.app.state.server_config


@router.get("/config")
async def config(request: Request, config: ServerConfig = Depends(_get_config)) -> dict:
    gate = config.auction.gate
    channel = dict(config.broadcast.channel)
    # channel options may carry credentials in the url
    channel.pop("url", None)
    return {
        "version": request.app.version,
        "enforce_increment": config.auction.enforce_increment,
        "default_min_increment": config.auction.default_min_increment,
        "gate": {
            "policy": gate.policy,
            "acceptors": gate.acceptors,
            "accept_probability": gate.accept_probability,
        },
        "outbox_backend": config.outbox.backend,
        "outbox_max_attempts": config.outbox.max_attempts,
        "outbox_visibility_timeout_s": config.outbox.visibility_timeout_s,
        "broadcast_channel": channel,
        "instance_id": config.broadcast.instance_id,
        "reconnect": {
            "base_delay_ms": config.session.reconnect_base_delay_ms,
            "max_attempts": config.session.reconnect_max_attempts,
        },
    }
