"""Message-bus adapter.

Two backends share one narrow surface: ``publish`` returns once the bus owns
the message durably, ``receive``/``subscribe`` hand out a message plus a
:class:`Lease` that is extended, acked or nacked. Delivery is at-least-once:
a message whose lease runs out is handed out again with a higher
``redelivery_count``. Neither backend orders messages.
"""

import asyncio
import itertools
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError, ResponseError

from eventrelay.errors import BusError

logger = logging.getLogger(__name__)


@dataclass
class Message:
    id: str
    topic: str
    data: bytes
    published_at: datetime
    redelivery_count: int = 0
    ack_deadline: Optional[datetime] = None
    attributes: dict = field(default_factory=dict)


class Lease(ABC):
    """Handle on one hand-out of a message."""

    def __init__(self, message: Message):
        self.message = message
        self.settled = False

    @abstractmethod
    async def extend(self, seconds: float) -> None:
        """Push the ack deadline out."""

    @abstractmethod
    async def ack(self) -> None:
        """Finish the message; it will not be redelivered."""

    @abstractmethod
    async def nack(self) -> None:
        """Give the message back for immediate redelivery."""


Handler = Callable[[Message, Lease], Awaitable[None]]


class PullSubscription:
    """Cancel token for a running ``subscribe``."""

    def __init__(self, topic: str):
        self.topic = topic
        self._stopping = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @property
    def cancelled(self) -> bool:
        return self._stopping.is_set()

    def cancel(self) -> None:
        """Stop pulling new messages. Messages already in a handler finish."""
        self._stopping.set()

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for pullers to exit. Returns False if the timeout hit first."""
        if not self._tasks:
            return True
        _, pending = await asyncio.wait(self._tasks, timeout=timeout)
        return not pending

    async def abort(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)


class MessageBus(ABC):
    poll_timeout = 1.0

    @abstractmethod
    async def publish(self, topic: str, data: bytes, attributes: Optional[dict] = None) -> str:
        """Publish and return the message id. Raises BusError if not accepted."""

    @abstractmethod
    async def receive(self, topic: str, timeout: float = 0.0) -> Optional[tuple[Message, Lease]]:
        """Pull one message, waiting up to ``timeout`` seconds. None if idle."""

    async def close(self) -> None:
        pass

    def subscribe(self, topic: str, handler: Handler, concurrency: int = 1) -> PullSubscription:
        """Start ``concurrency`` pullers feeding ``handler``; returns the cancel token."""
        subscription = PullSubscription(topic)
        for i in range(concurrency):
            task = asyncio.create_task(
                self._pull_loop(topic, handler, subscription), name=f"pull:{topic}:{i}"
            )
            subscription._tasks.append(task)
        return subscription

    async def _pull_loop(self, topic: str, handler: Handler, subscription: PullSubscription) -> None:
        while not subscription.cancelled:
            try:
                received = await self.receive(topic, timeout=self.poll_timeout)
            except BusError as exc:
                logger.error(f"Pull from {topic} failed: {exc}")
                await asyncio.sleep(self.poll_timeout)
                continue
            if received is None:
                continue
            message, lease = received
            try:
                await handler(message, lease)
            except Exception:
                logger.exception(f"Handler failed for message {message.id} on {topic}")
                if not lease.settled:
                    try:
                        await lease.nack()
                    except BusError as exc:
                        logger.error(f"Nack of {message.id} failed: {exc}")


# ── In-memory loopback ───────────────────────────────────


@dataclass
class _Entry:
    message: Message
    receipt: int = 0
    deadline: float = 0.0


class _TopicState:
    def __init__(self):
        self.ready: deque[_Entry] = deque()
        self.inflight: dict[str, _Entry] = {}
        self.cond = asyncio.Condition()


class InMemoryBus(MessageBus):
    """Single-process bus with per-message visibility timeouts."""

    def __init__(self, lease_duration: float = 60.0):
        self.lease_duration = lease_duration
        self._topics: dict[str, _TopicState] = {}
        self._ids = itertools.count(1)
        self._receipts = itertools.count(1)
        self._closed = False

    def _state(self, topic: str) -> _TopicState:
        state = self._topics.get(topic)
        if state is None:
            state = self._topics[topic] = _TopicState()
        return state

    def pending(self, topic: str) -> int:
        """Messages not yet acked (ready plus in flight)."""
        state = self._state(topic)
        return len(state.ready) + len(state.inflight)

    async def publish(self, topic: str, data: bytes, attributes: Optional[dict] = None) -> str:
        if self._closed:
            raise BusError("Bus is closed")
        state = self._state(topic)
        message = Message(
            id=str(next(self._ids)),
            topic=topic,
            data=bytes(data),
            published_at=datetime.now(timezone.utc),
            attributes={k: str(v) for k, v in (attributes or {}).items()},
        )
        async with state.cond:
            state.ready.append(_Entry(message=message))
            state.cond.notify()
        return message.id

    def _expire(self, state: _TopicState) -> None:
        now = time.monotonic()
        for msg_id, entry in list(state.inflight.items()):
            if entry.deadline <= now:
                del state.inflight[msg_id]
                entry.message.redelivery_count += 1
                state.ready.append(entry)

    async def receive(self, topic: str, timeout: float = 0.0) -> Optional[tuple[Message, Lease]]:
        if self._closed:
            raise BusError("Bus is closed")
        state = self._state(topic)
        give_up_at = time.monotonic() + timeout
        async with state.cond:
            while True:
                self._expire(state)
                if state.ready:
                    return self._lease_out(topic, state, state.ready.popleft())
                now = time.monotonic()
                remaining = give_up_at - now
                if remaining <= 0:
                    return None
                if state.inflight:
                    next_expiry = min(e.deadline for e in state.inflight.values()) - now
                    remaining = min(remaining, max(next_expiry, 0) + 0.001)
                try:
                    await asyncio.wait_for(state.cond.wait(), remaining)
                except asyncio.TimeoutError:
                    pass

    def _lease_out(self, topic: str, state: _TopicState, entry: _Entry) -> tuple[Message, Lease]:
        entry.receipt = next(self._receipts)
        entry.deadline = time.monotonic() + self.lease_duration
        state.inflight[entry.message.id] = entry
        snapshot = replace(
            entry.message,
            attributes=dict(entry.message.attributes),
            ack_deadline=datetime.now(timezone.utc) + timedelta(seconds=self.lease_duration),
        )
        return snapshot, _InMemoryLease(self, topic, snapshot, entry.receipt)

    async def close(self) -> None:
        self._closed = True


class _InMemoryLease(Lease):
    def __init__(self, bus: InMemoryBus, topic: str, message: Message, receipt: int):
        super().__init__(message)
        self._bus = bus
        self._topic = topic
        self._receipt = receipt

    def _current(self, state: _TopicState) -> Optional[_Entry]:
        entry = state.inflight.get(self.message.id)
        if entry is None or entry.receipt != self._receipt:
            return None
        return entry

    async def extend(self, seconds: float) -> None:
        state = self._bus._state(self._topic)
        async with state.cond:
            entry = self._current(state)
            if entry is None or entry.deadline <= time.monotonic():
                raise BusError(f"Lease on message {self.message.id} has expired")
            entry.deadline = time.monotonic() + seconds
            self.message.ack_deadline = datetime.now(timezone.utc) + timedelta(seconds=seconds)

    async def ack(self) -> None:
        if self.settled:
            return
        state = self._bus._state(self._topic)
        async with state.cond:
            self.settled = True
            if self._current(state) is None:
                logger.warning(f"Ack for message {self.message.id} arrived after its lease expired")
                return
            del state.inflight[self.message.id]

    async def nack(self) -> None:
        if self.settled:
            return
        state = self._bus._state(self._topic)
        async with state.cond:
            self.settled = True
            entry = self._current(state)
            if entry is None:
                return
            del state.inflight[self.message.id]
            entry.message.redelivery_count += 1
            state.ready.append(entry)
            state.cond.notify()


# ── Redis Streams ────────────────────────────────────────


class RedisStreamBus(MessageBus):
    """Durable bus on Redis Streams with one consumer group per deployment.

    A message is owned by a consumer until acked. Entries idle longer than
    ``lease_duration`` are reclaimed with XAUTOCLAIM, and the stream's
    delivery counter becomes the redelivery count. Extending a lease resets
    its idle time, so each extension buys one more lease period.
    """

    def __init__(
        self,
        redis: Redis,
        group: str = "eventrelay",
        consumer: Optional[str] = None,
        lease_duration: float = 60.0,
        publish_timeout: float = 5.0,
        maxlen: Optional[int] = None,
    ):
        self._redis = redis
        self.group = group
        self.consumer = consumer or f"worker-{time.time_ns()}"
        self.lease_duration = lease_duration
        self.publish_timeout = publish_timeout
        self.maxlen = maxlen
        self._groups: set[str] = set()

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisStreamBus":
        return cls(Redis.from_url(url, decode_responses=False), **kwargs)

    @property
    def lease_ms(self) -> int:
        return max(1, int(self.lease_duration * 1000))

    async def _ensure_group(self, topic: str) -> None:
        if topic in self._groups:
            return
        try:
            await self._redis.xgroup_create(topic, self.group, id="0", mkstream=True)
        except ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise
        self._groups.add(topic)

    async def publish(self, topic: str, data: bytes, attributes: Optional[dict] = None) -> str:
        fields = {
            b"data": bytes(data),
            b"published_at": datetime.now(timezone.utc).isoformat().encode("ascii"),
        }
        for key, value in (attributes or {}).items():
            fields[f"attr:{key}".encode()] = str(value).encode("utf-8")
        try:
            await self._ensure_group(topic)
            msg_id = await asyncio.wait_for(
                self._redis.xadd(topic, fields, maxlen=self.maxlen, approximate=True),
                self.publish_timeout,
            )
        except (RedisError, asyncio.TimeoutError) as exc:
            raise BusError(f"Publish to {topic} failed: {exc!r}") from exc
        return _text(msg_id)

    async def receive(self, topic: str, timeout: float = 0.0) -> Optional[tuple[Message, Lease]]:
        try:
            await self._ensure_group(topic)
            claimed = await self._redis.xautoclaim(
                topic, self.group, self.consumer, min_idle_time=self.lease_ms, start_id="0-0", count=1
            )
            for msg_id, fields in claimed[1] if claimed else []:
                if not fields:
                    # Trimmed out of the stream while pending
                    await self._redis.xack(topic, self.group, msg_id)
                    continue
                count = await self._delivery_count(topic, msg_id)
                return self._lease(topic, msg_id, fields, max(count - 1, 1))
            # Redis 7 reports entries deleted while pending separately
            for msg_id in claimed[2] if claimed and len(claimed) > 2 else []:
                await self._redis.xack(topic, self.group, msg_id)

            block = int(timeout * 1000) if timeout > 0 else None
            response = await self._redis.xreadgroup(
                self.group, self.consumer, {topic: ">"}, count=1, block=block
            )
        except RedisError as exc:
            raise BusError(f"Pull from {topic} failed: {exc!r}") from exc

        for _stream, entries in _stream_entries(response):
            for msg_id, fields in entries:
                return self._lease(topic, msg_id, fields, 0)
        return None

    async def _delivery_count(self, topic: str, msg_id) -> int:
        pending = await self._redis.xpending_range(topic, self.group, min=msg_id, max=msg_id, count=1)
        if not pending:
            return 1
        return int(pending[0]["times_delivered"])

    def _lease(self, topic: str, msg_id, fields: dict, redelivery_count: int) -> tuple[Message, Lease]:
        attributes = {}
        for key, value in fields.items():
            key = _text(key)
            if key.startswith("attr:"):
                attributes[key[5:]] = _text(value)
        published_raw = fields.get(b"published_at")
        published_at = (
            datetime.fromisoformat(_text(published_raw)) if published_raw else datetime.now(timezone.utc)
        )
        message = Message(
            id=_text(msg_id),
            topic=topic,
            data=fields.get(b"data", b""),
            published_at=published_at,
            redelivery_count=redelivery_count,
            ack_deadline=datetime.now(timezone.utc) + timedelta(seconds=self.lease_duration),
            attributes=attributes,
        )
        return message, _RedisLease(self, topic, message)

    async def close(self) -> None:
        await self._redis.aclose()


class _RedisLease(Lease):
    def __init__(self, bus: RedisStreamBus, topic: str, message: Message):
        super().__init__(message)
        self._bus = bus
        self._topic = topic

    async def _claim(self, idle_ms: int) -> list:
        return await self._bus._redis.xclaim(
            self._topic,
            self._bus.group,
            self._bus.consumer,
            min_idle_time=0,
            message_ids=[self.message.id],
            idle=idle_ms,
            justid=True,
        )

    async def extend(self, seconds: float) -> None:
        try:
            claimed = await self._claim(0)
        except RedisError as exc:
            raise BusError(f"Lease extension for {self.message.id} failed: {exc!r}") from exc
        if not claimed:
            raise BusError(f"Lease on message {self.message.id} has expired")
        self.message.ack_deadline = datetime.now(timezone.utc) + timedelta(
            seconds=self._bus.lease_duration
        )

    async def ack(self) -> None:
        if self.settled:
            return
        try:
            await self._bus._redis.xack(self._topic, self._bus.group, self.message.id)
        except RedisError as exc:
            raise BusError(f"Ack of {self.message.id} failed: {exc!r}") from exc
        self.settled = True

    async def nack(self) -> None:
        if self.settled:
            return
        try:
            # Idle past the lease so the next XAUTOCLAIM picks it up
            await self._claim(self._bus.lease_ms + 1)
        except RedisError as exc:
            raise BusError(f"Nack of {self.message.id} failed: {exc!r}") from exc
        self.settled = True


def _text(value) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


def _stream_entries(response) -> list:
    # RESP2 shape: [[stream, [(id, fields), ...]], ...]
    return response or []


def create_bus(settings) -> MessageBus:
    if settings.bus_backend == "redis":
        return RedisStreamBus.from_url(
            settings.redis_url,
            group=settings.bus_consumer_group,
            lease_duration=settings.lease_duration,
            publish_timeout=settings.publish_timeout,
        )
    return InMemoryBus(lease_duration=settings.lease_duration)
