"""Configuration helpers for the auction server."""

from __future__ import annotations

import os
import uuid
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping

import yaml

_DEFAULT_SERVER_CONFIG = Path(__file__).resolve().parent / "server.yaml"


@dataclass(frozen=True)
class GateConfig:
    policy: str
    acceptors: int
    accept_probability: float
    vote_delay_ms: int


@dataclass(frozen=True)
class AuctionConfig:
    enforce_increment: bool
    default_min_increment: float
    gate: GateConfig


@dataclass(frozen=True)
class OutboxConfig:
    backend: str
    options: Mapping[str, Any]
    max_attempts: int
    poll_interval_ms: int
    visibility_timeout_s: float | None


@dataclass(frozen=True)
class BroadcastConfig:
    channel: Mapping[str, Any]
    dedupe_capacity: int
    instance_id: str


@dataclass(frozen=True)
class SessionConfig:
    send_queue_size: int
    reconnect_base_delay_ms: int
    reconnect_max_attempts: int


@dataclass(frozen=True)
class ServerConfig:
    listen: Mapping[str, Any]
    auction: AuctionConfig
    outbox: OutboxConfig
    broadcast: BroadcastConfig
    session: SessionConfig


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(path)
    return yaml.safe_load(path.read_text()) or {}


def _optional_seconds(value: Any) -> float | None:
    if value is None:
        return None
    return float(value)


def parse_server_config(data: Mapping[str, Any]) -> ServerConfig:
    auction = data.get("auction", {})
    gate = auction.get("gate", {})
    outbox = data.get("outbox", {})
    broadcast = data.get("broadcast", {})
    session = data.get("session", {})
    return ServerConfig(
        listen=data.get("listen", {}),
        auction=AuctionConfig(
            enforce_increment=bool(auction.get("enforce_increment", True)),
            default_min_increment=float(auction.get("default_min_increment", 1)),
            gate=GateConfig(
                policy=str(gate.get("policy", "majority")),
                acceptors=int(gate.get("acceptors", 3)),
                accept_probability=float(gate.get("accept_probability", 0.8)),
                vote_delay_ms=int(gate.get("vote_delay_ms", 0)),
            ),
        ),
        outbox=OutboxConfig(
            backend=str(outbox.get("backend", "in_memory")),
            options=dict(outbox.get("options") or {}),
            max_attempts=int(outbox.get("max_attempts", 5)),
            poll_interval_ms=int(outbox.get("poll_interval_ms", 50)),
            visibility_timeout_s=_optional_seconds(outbox.get("visibility_timeout_s", 30)),
        ),
        broadcast=BroadcastConfig(
            channel=dict(broadcast.get("channel") or {"backend": "local"}),
            dedupe_capacity=int(broadcast.get("dedupe_capacity", 10000)),
            instance_id=str(broadcast.get("instance_id") or uuid.uuid4().hex),
        ),
        session=SessionConfig(
            send_queue_size=int(session.get("send_queue_size", 256)),
            reconnect_base_delay_ms=int(session.get("reconnect_base_delay_ms", 1000)),
            reconnect_max_attempts=int(session.get("reconnect_max_attempts", 5)),
        ),
    )


@lru_cache(maxsize=1)
def get_server_config() -> ServerConfig:
    path = Path(os.getenv("BIDHUB_CONFIG_PATH", _DEFAULT_SERVER_CONFIG))
    return parse_server_config(_load_yaml(path))
