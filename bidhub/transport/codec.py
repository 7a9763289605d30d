"""Wire framing for websocket messages and backend payloads."""

from __future__ import annotations

from typing import Any, Union

import orjson

from ..auction.errors import ClientInputError

_ORJSON_OPTIONS = orjson.OPT_NAIVE_UTC | orjson.OPT_NON_STR_KEYS


JsonType = Union[str, int, float, bool, None, list["JsonType"], dict[str, "JsonType"]]


def dumps(payload: Any) -> bytes:
    return orjson.dumps(payload, option=_ORJSON_OPTIONS)


def loads(raw: str | bytes | bytearray) -> Any:
    return orjson.loads(raw)


def encode_message(kind: str, payload: dict[str, Any] | None = None, **extra: Any) -> str:
    """Return the text frame ``{"type": kind, "payload": payload, ...}``."""
    frame: dict[str, Any] = {"type": kind, "payload": payload or {}}
    frame.update({key: value for key, value in extra.items() if value is not None})
    return dumps(frame).decode("utf-8")


def decode_message(raw: str | bytes | bytearray) -> tuple[str, dict[str, Any]]:
    """Parse a frame and return ``(kind, payload)``.

    Raises ClientInputError for anything that is not a JSON object carrying a
    string ``type``; the connection is expected to stay open.
    """
    try:
        data = orjson.loads(raw)
    except orjson.JSONDecodeError as exc:
        raise ClientInputError("message is not valid JSON") from exc
    if not isinstance(data, dict):
        raise ClientInputError("message must be a JSON object")
    kind = data.get("type")
    if not isinstance(kind, str) or not kind:
        raise ClientInputError("message type is required")
    payload = data.get("payload")
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ClientInputError("message payload must be an object")
    return kind, payload
