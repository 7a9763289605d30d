"""Unit tests for the outbox, its storage backends, and the drain worker."""

from __future__ import annotations

from collections import defaultdict
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import orjson
import pytest

from bidhub.auction.errors import QueueProcessingError
from bidhub.auction.models import Event, EventKind
from bidhub.config import parse_server_config
from bidhub.outbox.service import Outbox
from bidhub.outbox.worker import OutboxWorker
from bidhub.storage import InMemoryStorage, build_storage
from bidhub.storage import redis as redis_backend


def event(auction_id: str, marker: int) -> Event:
    return Event(
        kind=EventKind.BID_ACCEPTED,
        auction_id=auction_id,
        payload={"auctionId": auction_id, "marker": marker},
        origin="node-a",
    )


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _b(value) -> bytes:
    return value if isinstance(value, bytes) else str(value).encode()


class FakePipeline:
    def __init__(self, redis: "FakeRedis") -> None:
        self._redis = redis
        self._calls: list = []

    async def __aenter__(self) -> "FakePipeline":
        return self

    async def __aexit__(self, *exc) -> None:
        return None

    def __getattr__(self, name: str):
        def record(*args, **kwargs):
            self._calls.append((name, args, kwargs))
            return self

        return record

    async def execute(self) -> list:
        calls, self._calls = self._calls, []
        return [await getattr(self._redis, name)(*args, **kwargs) for name, args, kwargs in calls]


class FakeScript:
    def __init__(self, redis: "FakeRedis", source: str) -> None:
        self._redis = redis
        self._source = source

    async def __call__(self, keys=None, args=None, client=None) -> int:
        if self._source == redis_backend._SETTLE:
            return self._redis.settle(keys, [_b(arg) for arg in args])
        if self._source == redis_backend._RECLAIM:
            return self._redis.reclaim(keys, [_b(arg) for arg in args])
        raise AssertionError("unexpected script")


class FakeRedis:
    """The slice of redis.asyncio.Redis the outbox backend uses; values come back as bytes."""

    def __init__(self) -> None:
        self.strings: dict[str, bytes] = {}
        self.lists: dict[str, list[bytes]] = defaultdict(list)
        self.hashes: dict[str, dict[bytes, bytes]] = defaultdict(dict)
        self.zsets: dict[str, dict[bytes, float]] = defaultdict(dict)
        self.closed = False

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    def register_script(self, source: str) -> FakeScript:
        return FakeScript(self, source)

    async def get(self, key):
        return self.strings.get(key)

    async def set(self, key, value):
        self.strings[key] = _b(value)
        return True

    async def mget(self, keys):
        return [self.strings.get(key) for key in keys]

    async def incr(self, key):
        value = int(self.strings.get(key, b"0")) + 1
        self.strings[key] = _b(value)
        return value

    async def rpush(self, key, value):
        self.lists[key].append(_b(value))
        return len(self.lists[key])

    async def lpush(self, key, value):
        self.lists[key].insert(0, _b(value))
        return len(self.lists[key])

    async def lrange(self, key, start, stop):
        return list(self.lists[key][start : stop + 1])

    async def lrem(self, key, count, value):
        if _b(value) in self.lists[key]:
            self.lists[key].remove(_b(value))
            return 1
        return 0

    async def llen(self, key):
        return len(self.lists[key])

    async def hsetnx(self, key, field, value):
        if _b(field) in self.hashes[key]:
            return 0
        self.hashes[key][_b(field)] = _b(value)
        return 1

    async def hgetall(self, key):
        return dict(self.hashes[key])

    async def hdel(self, key, field):
        return 1 if self.hashes[key].pop(_b(field), None) is not None else 0

    async def hlen(self, key):
        return len(self.hashes[key])

    async def zadd(self, key, mapping):
        for member, score in mapping.items():
            self.zsets[key][_b(member)] = score
        return len(mapping)

    async def zrangebyscore(self, key, low, high):
        floor = float(low.lstrip("("))
        members = sorted(self.zsets[key].items(), key=lambda pair: pair[1])
        return [member for member, score in members if score > floor]

    async def aclose(self):
        self.closed = True

    def settle(self, keys, args) -> int:
        in_flight, item_key, pending, done = keys
        auction_id, item_id, item_json, requeue = args
        claim = self.hashes[in_flight].get(auction_id)
        if claim is None or _b(orjson.loads(claim)["item_id"]) != item_id:
            return 0
        del self.hashes[in_flight][auction_id]
        self.strings[item_key] = item_json
        if requeue == b"1":
            self.lists[pending].insert(0, item_id)
        else:
            self.strings[done] = _b(int(self.strings.get(done, b"0")) + 1)
        return 1

    def reclaim(self, keys, args) -> int:
        in_flight, item_key, pending = keys
        auction_id, expired, item_id, item_json = args
        if self.hashes[in_flight].get(auction_id) != expired:
            return 0
        del self.hashes[in_flight][auction_id]
        self.strings[item_key] = item_json
        self.lists[pending].insert(0, item_id)
        return 1


@pytest.fixture
def outbox() -> Outbox:
    return Outbox(InMemoryStorage())


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def redis_outbox(monkeypatch, clock) -> Outbox:
    fake = FakeRedis()
    monkeypatch.setattr(redis_backend, "aioredis", SimpleNamespace(from_url=lambda url: fake))
    storage = redis_backend.RedisStorage(url="redis://test", visibility_timeout_s=10, clock=clock)
    return Outbox(storage)


class TestOutbox:
    """Test suite for Outbox over InMemoryStorage."""

    @pytest.mark.asyncio
    async def test_sequences_are_per_auction(self, outbox):
        """Test that each auction numbers its events from 1."""
        first = await outbox.enqueue(event("A", 1))
        other = await outbox.enqueue(event("B", 1))
        second = await outbox.enqueue(event("A", 2))
        assert (first.seq, second.seq, other.seq) == (1, 2, 1)
        assert first.state == "pending"

    @pytest.mark.asyncio
    async def test_one_item_in_flight_per_auction(self, outbox):
        """Test that an auction's next item waits until the current one settles."""
        await outbox.enqueue(event("A", 1))
        await outbox.enqueue(event("A", 2))
        await outbox.enqueue(event("B", 1))

        first = await outbox.dequeue_next()
        second = await outbox.dequeue_next()
        assert (first.auction_id, first.seq) == ("A", 1)
        assert (second.auction_id, second.seq) == ("B", 1)
        assert await outbox.dequeue_next() is None

        await outbox.ack(first)
        third = await outbox.dequeue_next()
        assert (third.auction_id, third.seq) == ("A", 2)

    @pytest.mark.asyncio
    async def test_nack_returns_item_to_front(self, outbox):
        """Test that a nacked item is retried before anything after it."""
        await outbox.enqueue(event("A", 1))
        await outbox.enqueue(event("A", 2))
        item = await outbox.dequeue_next()

        released = await outbox.nack(item)
        assert released.attempts == 1
        assert released.state == "pending"

        retry = await outbox.dequeue_next()
        assert retry.item_id == item.item_id
        assert retry.event.payload["marker"] == 1

    @pytest.mark.asyncio
    async def test_nack_requires_in_flight(self, outbox):
        """Test that only claimed items can be released."""
        item = await outbox.enqueue(event("A", 1))
        with pytest.raises(ValueError):
            await outbox.nack(item)

    @pytest.mark.asyncio
    async def test_replay_after_seq(self, outbox):
        """Test that replay returns events past a sequence number, in order."""
        for marker in range(1, 5):
            await outbox.enqueue(event("A", marker))
        await outbox.enqueue(event("B", 9))

        history = await outbox.replay("A", after_seq=2)
        assert [seq for seq, _ in history] == [3, 4]
        assert [item.payload["marker"] for _, item in history] == [3, 4]
        assert await outbox.replay("missing") == []

    @pytest.mark.asyncio
    async def test_replay_keeps_event_identity(self, outbox):
        """Test that replayed events carry their original id and origin."""
        original = event("A", 1)
        await outbox.enqueue(original)
        [(_, replayed)] = await outbox.replay("A")
        assert replayed == original

    @pytest.mark.asyncio
    async def test_counts(self, outbox):
        """Test that counts reflect item states."""
        await outbox.enqueue(event("A", 1))
        await outbox.enqueue(event("B", 1))
        item = await outbox.dequeue_next()
        await outbox.ack(item)
        await outbox.dequeue_next()
        assert await outbox.counts() == {"pending": 0, "in_flight": 1, "done": 1}

    @pytest.mark.asyncio
    async def test_ack_requires_in_flight(self, outbox):
        """Test that a repeated or premature ack cannot free another claimed item."""
        first = await outbox.enqueue(event("A", 1))
        await outbox.enqueue(event("A", 2))
        with pytest.raises(ValueError):
            await outbox.ack(first)

        claimed = await outbox.dequeue_next()
        await outbox.ack(claimed)
        second = await outbox.dequeue_next()
        with pytest.raises(ValueError):
            await outbox.ack(claimed)

        assert await outbox.dequeue_next() is None
        assert await outbox.counts() == {"pending": 0, "in_flight": 1, "done": 1}
        assert (await outbox.ack(second)).state == "done"


class TestClaimLease:
    """Test suite for reclaiming items whose worker went away."""

    @pytest.mark.asyncio
    async def test_expired_claim_returns_to_front(self, clock):
        """Test that an abandoned claim is redelivered before later items."""
        outbox = Outbox(InMemoryStorage(visibility_timeout_s=10, clock=clock))
        await outbox.enqueue(event("A", 1))
        await outbox.enqueue(event("A", 2))
        abandoned = await outbox.dequeue_next()

        clock.now += 5
        assert await outbox.dequeue_next() is None

        clock.now += 6
        retry = await outbox.dequeue_next()
        assert retry.item_id == abandoned.item_id
        assert retry.attempts == 1
        await outbox.ack(retry)

        following = await outbox.dequeue_next()
        assert following.event.payload["marker"] == 2

    @pytest.mark.asyncio
    async def test_lease_can_be_disabled(self, clock):
        """Test that without a visibility timeout claims are held until settled."""
        outbox = Outbox(InMemoryStorage(visibility_timeout_s=None, clock=clock))
        await outbox.enqueue(event("A", 1))
        await outbox.dequeue_next()
        clock.now += 10_000
        assert await outbox.dequeue_next() is None

    @pytest.mark.asyncio
    async def test_reclaimed_item_settles_once(self, clock):
        """Test that the late ack of a reclaimed and pending item is refused."""
        storage = InMemoryStorage(visibility_timeout_s=10, clock=clock)
        outbox = Outbox(storage)
        await outbox.enqueue(event("A", 1))
        await outbox.enqueue(event("B", 1))
        stale = await outbox.dequeue_next()

        clock.now += 11
        other = await outbox.dequeue_next()
        assert other.auction_id == "A"
        await outbox.nack(other)

        with pytest.raises(ValueError):
            await outbox.ack(stale)
        assert (await outbox.counts())["done"] == 0


class TestRedisStorage:
    """Test suite for RedisStorage against an in-process fake client."""

    @pytest.mark.asyncio
    async def test_counts_include_done(self, redis_outbox):
        """Test that counts report the same keys as the other backends."""
        await redis_outbox.enqueue(event("A", 1))
        await redis_outbox.enqueue(event("A", 2))
        await redis_outbox.ack(await redis_outbox.dequeue_next())
        assert await redis_outbox.counts() == {"pending": 1, "in_flight": 0, "done": 1}

    @pytest.mark.asyncio
    async def test_fifo_and_replay(self, redis_outbox):
        """Test that one item per auction is in flight and replay is ordered."""
        await redis_outbox.enqueue(event("A", 1))
        await redis_outbox.enqueue(event("A", 2))
        await redis_outbox.enqueue(event("B", 1))

        first = await redis_outbox.dequeue_next()
        second = await redis_outbox.dequeue_next()
        assert (first.auction_id, second.auction_id) == ("A", "B")
        assert await redis_outbox.dequeue_next() is None

        released = await redis_outbox.nack(first)
        assert released.attempts == 1
        retry = await redis_outbox.dequeue_next()
        assert retry.item_id == first.item_id

        history = await redis_outbox.replay("A", after_seq=1)
        assert [seq for seq, _ in history] == [2]

    @pytest.mark.asyncio
    async def test_expired_claim_is_reclaimed(self, redis_outbox, clock):
        """Test that a claim held past the visibility timeout is redelivered."""
        await redis_outbox.enqueue(event("A", 1))
        await redis_outbox.enqueue(event("A", 2))
        abandoned = await redis_outbox.dequeue_next()

        clock.now += 5
        assert await redis_outbox.dequeue_next() is None

        clock.now += 6
        retry = await redis_outbox.dequeue_next()
        assert retry.item_id == abandoned.item_id
        assert retry.attempts == 1
        assert await redis_outbox.counts() == {"pending": 1, "in_flight": 1, "done": 0}

    @pytest.mark.asyncio
    async def test_settle_requires_claim(self, redis_outbox):
        """Test that double acks and nacks of pending items are refused."""
        pending = await redis_outbox.enqueue(event("A", 1))
        with pytest.raises(ValueError):
            await redis_outbox.nack(pending)
        with pytest.raises(ValueError):
            await redis_outbox.ack(pending)

        claimed = await redis_outbox.dequeue_next()
        await redis_outbox.ack(claimed)
        with pytest.raises(ValueError):
            await redis_outbox.ack(claimed)
        assert (await redis_outbox.counts())["done"] == 1


class TestBuildStorage:
    """Test suite for outbox backend selection."""

    def test_in_memory_default(self):
        """Test that the default config selects the in-memory backend."""
        assert isinstance(build_storage(parse_server_config({})), InMemoryStorage)

    def test_unknown_backend(self):
        """Test that an unknown backend name raises."""
        config = parse_server_config({"outbox": {"backend": "carrier-pigeon"}})
        with pytest.raises(ValueError):
            build_storage(config)

    def test_visibility_timeout_reaches_backend(self, monkeypatch):
        """Test that the configured claim lease is handed to the backend."""
        storage = build_storage(parse_server_config({"outbox": {"visibility_timeout_s": 5}}))
        assert storage._visibility_timeout == 5.0
        disabled = build_storage(parse_server_config({"outbox": {"visibility_timeout_s": None}}))
        assert disabled._visibility_timeout is None

        monkeypatch.setattr(redis_backend, "aioredis", SimpleNamespace(from_url=lambda url: FakeRedis()))
        config = parse_server_config(
            {"outbox": {"backend": "redis", "options": {"url": "redis://test"}, "visibility_timeout_s": 7}}
        )
        assert build_storage(config)._visibility_timeout == 7.0


class TestOutboxWorker:
    """Test suite for OutboxWorker."""

    @pytest.mark.asyncio
    async def test_success_acks(self, outbox):
        """Test that handled items are acked and counted."""
        handler = AsyncMock()
        await outbox.enqueue(event("A", 1))
        await outbox.enqueue(event("A", 2))
        worker = OutboxWorker(outbox, handler)

        assert await worker.drain() == 2
        assert worker.processed == 2
        assert [call.args[0].payload["marker"] for call in handler.await_args_list] == [1, 2]
        assert await outbox.counts() == {"pending": 0, "in_flight": 0, "done": 2}

    @pytest.mark.asyncio
    async def test_failure_is_retried_in_order(self, outbox):
        """Test that a failed item is retried before later items of the same auction."""
        handler = AsyncMock(side_effect=[RuntimeError("channel down"), None, None])
        await outbox.enqueue(event("A", 1))
        await outbox.enqueue(event("A", 2))
        worker = OutboxWorker(outbox, handler)

        await worker.drain()

        markers = [call.args[0].payload["marker"] for call in handler.await_args_list]
        assert markers == [1, 1, 2]
        assert worker.failures == 1
        assert worker.processed == 2

    @pytest.mark.asyncio
    async def test_alert_after_max_attempts(self, outbox):
        """Test that exhausting retries raises an alert but keeps the item."""
        handler = AsyncMock(side_effect=RuntimeError("channel down"))
        on_alert = MagicMock()
        await outbox.enqueue(event("A", 1))
        worker = OutboxWorker(outbox, handler, max_attempts=2, on_alert=on_alert)

        await worker.run_once()
        on_alert.assert_not_called()
        await worker.run_once()

        on_alert.assert_called_once()
        item, alert = on_alert.call_args.args
        assert item.attempts == 2
        assert isinstance(alert, QueueProcessingError)
        assert (await outbox.counts())["pending"] == 1

    @pytest.mark.asyncio
    async def test_drain_is_bounded(self, outbox):
        """Test that drain stops at its limit when an item keeps failing."""
        handler = AsyncMock(side_effect=RuntimeError("channel down"))
        await outbox.enqueue(event("A", 1))
        worker = OutboxWorker(outbox, handler)
        assert await worker.drain(limit=3) == 3
        assert worker.failures == 3

    @pytest.mark.asyncio
    async def test_start_and_stop(self, outbox):
        """Test that the background loop can be started and stopped cleanly."""
        worker = OutboxWorker(outbox, AsyncMock(), poll_interval_ms=1)
        worker.start()
        assert worker.running
        await worker.stop()
        await worker.stop()

    @pytest.mark.asyncio
    async def test_lost_claim_on_ack_is_not_counted(self, outbox):
        """Test that an ack refused after the claim expired leaves the item for redelivery."""
        await outbox.enqueue(event("A", 1))
        outbox.ack = AsyncMock(side_effect=ValueError("item is not in flight"))
        worker = OutboxWorker(outbox, AsyncMock())

        assert await worker.run_once() is True
        assert worker.processed == 0
        assert worker.failures == 0
