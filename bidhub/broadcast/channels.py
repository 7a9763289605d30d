"""Publish/subscribe channels used to forward events between server instances."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Mapping

import orjson
from redis import asyncio as aioredis

from ..auction.models import Event
from ..transport.codec import dumps

try:  # pragma: no cover - optional dependency
    from google.cloud import pubsub_v1
except Exception:  # pragma: no cover - fallback when library missing
    pubsub_v1 = None

logger = logging.getLogger(__name__)

RemoteHandler = Callable[[Event], Awaitable[None]]


class PubSubChannel:
    async def publish(self, event: Event) -> None:  # pragma: no cover - protocol
        raise NotImplementedError

    async def subscribe(self, handler: RemoteHandler) -> None:  # pragma: no cover - protocol
        raise NotImplementedError

    async def close(self) -> None:  # pragma: no cover - protocol
        raise NotImplementedError


class LocalChannel(PubSubChannel):
    """In-process channel; several fan-outs sharing one instance behave like peers."""

    def __init__(self) -> None:
        self._handlers: list[RemoteHandler] = []

    async def publish(self, event: Event) -> None:
        for handler in list(self._handlers):
            await handler(event)
        logger.debug("[local-pubsub] auction=%s event=%s delivered", event.auction_id, event.event_id)

    async def subscribe(self, handler: RemoteHandler) -> None:
        self._handlers.append(handler)

    async def close(self) -> None:
        self._handlers.clear()


class RedisChannel(PubSubChannel):
    """Redis pub/sub channel; a dropped subscription is re-established with backoff."""

    def __init__(
        self,
        *,
        url: str,
        name: str = "bidhub:events",
        retry_delay_s: float = 0.5,
        max_retry_delay_s: float = 30.0,
    ) -> None:
        if not url:
            raise ValueError("redis url missing")
        self._redis = aioredis.from_url(url)
        self._name = name
        self._retry_delay = retry_delay_s
        self._max_retry_delay = max_retry_delay_s
        self._pubsub = None
        self._listener: asyncio.Task | None = None

    @property
    def listening(self) -> bool:
        return self._listener is not None and not self._listener.done()

    async def publish(self, event: Event) -> None:
        await self._redis.publish(self._name, dumps(event.to_record()))

    async def subscribe(self, handler: RemoteHandler) -> None:
        self._pubsub = self._redis.pubsub()
        await self._pubsub.subscribe(self._name)
        self._listener = asyncio.create_task(self._listen(handler))

    async def _listen(self, handler: RemoteHandler) -> None:
        failures = 0
        while True:
            try:
                if self._pubsub is None:
                    self._pubsub = self._redis.pubsub()
                    await self._pubsub.subscribe(self._name)
                    logger.info("[redis-pubsub] resubscribed to %s", self._name)
                async for message in self._pubsub.listen():
                    failures = 0
                    if message["type"] != "message":
                        continue
                    await self._handle(handler, message)
                logger.warning("[redis-pubsub] subscription to %s ended", self._name)
            except Exception:
                logger.exception("[redis-pubsub] subscription to %s lost", self._name)
            delay = min(self._retry_delay * (2 ** failures), self._max_retry_delay)
            failures += 1
            await self._discard_pubsub()
            await asyncio.sleep(delay)

    async def _handle(self, handler: RemoteHandler, message: Mapping[str, Any]) -> None:
        try:
            await handler(Event.from_record(orjson.loads(message["data"])))
        except Exception:
            logger.exception("[redis-pubsub] failed to handle message on %s", self._name)

    async def _discard_pubsub(self) -> None:
        pubsub, self._pubsub = self._pubsub, None
        if pubsub is None:
            return
        try:
            await pubsub.aclose()
        except Exception:
            logger.debug("[redis-pubsub] closing stale subscription failed", exc_info=True)

    async def close(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._pubsub is not None:
            await self._pubsub.unsubscribe(self._name)
            await self._pubsub.aclose()
            self._pubsub = None
        await self._redis.aclose()


class GooglePubSubChannel(PubSubChannel):
    def __init__(self, options: Mapping[str, Any]) -> None:
        if pubsub_v1 is None:
            raise RuntimeError("google-cloud-pubsub is required for pubsub backend")
        self._project_id = options.get("project_id")
        if not self._project_id:
            raise ValueError("pubsub backend requires project_id")
        self._topic = options.get("topic", "bidhub-events")
        self._subscription = options.get("subscription")
        self._publisher = pubsub_v1.PublisherClient(
            publisher_options=pubsub_v1.types.PublisherOptions(enable_message_ordering=True)
        )
        self._subscriber = None
        self._future = None

    def _topic_path(self) -> str:
        if self._topic.startswith("projects/"):
            return self._topic
        return self._publisher.topic_path(self._project_id, self._topic)

    async def publish(self, event: Event) -> None:
        future = self._publisher.publish(
            self._topic_path(),
            dumps(event.to_record()),
            auction_id=event.auction_id,
            # ordering keys keep per-auction order on the subscriber side
            ordering_key=event.auction_id,
        )
        await asyncio.to_thread(future.result)

    async def subscribe(self, handler: RemoteHandler) -> None:
        if not self._subscription:
            raise ValueError("pubsub backend requires subscription to receive events")
        loop = asyncio.get_running_loop()
        self._subscriber = pubsub_v1.SubscriberClient()
        path = self._subscriber.subscription_path(self._project_id, self._subscription)

        def _callback(message) -> None:
            event = Event.from_record(orjson.loads(message.data))
            future = asyncio.run_coroutine_threadsafe(handler(event), loop)
            try:
                future.result()
            except Exception:
                logger.exception("[pubsub] failed to handle event %s", event.event_id)
                message.nack()
                return
            message.ack()

        self._future = self._subscriber.subscribe(path, callback=_callback)

    async def close(self) -> None:
        if self._future is not None:
            self._future.cancel()
            self._future = None
        if self._subscriber is not None:
            await asyncio.to_thread(self._subscriber.close)
            self._subscriber = None


def build_channel(options: Mapping[str, Any]) -> PubSubChannel:
    backend = options.get("backend", "local")
    if backend == "local":
        return LocalChannel()
    if backend == "redis":
        return RedisChannel(
            url=options.get("url", ""),
            name=options.get("name", "bidhub:events"),
            retry_delay_s=float(options.get("retry_delay_s", 0.5)),
            max_retry_delay_s=float(options.get("max_retry_delay_s", 30.0)),
        )
    if backend == "pubsub":
        return GooglePubSubChannel(options.get("pubsub", options))
    raise ValueError(f"unknown broadcast channel {backend}")
