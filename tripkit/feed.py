"""
Change feed abstraction.

Supports an in-memory fan-out for tests/local runs and a Redis pub/sub
implementation for production. Record stores ``publish`` after every
committed write; views ``subscribe`` to one table and consume typed events.
Delivery is at-least-once with no ordering guarantee across rows.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from typing import AsyncIterator, Optional, Protocol

import redis
import redis.asyncio as aioredis
from redis import exceptions as redis_exceptions

from tripkit.errors import FeedPayloadError
from tripkit.events import ChangeEvent, parse_change, serialize_change

logger = logging.getLogger(__name__)


class Subscription(Protocol):
    def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        ...

    async def close(self) -> None:
        ...


class ChangeFeed(Protocol):
    """Minimal pub/sub interface over row changes."""

    def publish(self, event: ChangeEvent) -> None:
        ...

    async def subscribe(
        self, table: str, *, owner: Optional[str] = None
    ) -> Subscription:
        ...

    def close(self) -> None:
        ...


def _matches(event: ChangeEvent, table: str, owner: Optional[str]) -> bool:
    if event.table != table:
        return False
    return owner is None or event.owner is None or event.owner == owner


_CLOSED = object()


class InMemorySubscription:
    """One subscriber's queue, bound to the event loop that created it."""

    def __init__(self, feed: "InMemoryChangeFeed", table: str, owner: Optional[str]):
        self.table = table
        self.owner = owner
        self._feed = feed
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def deliver(self, event: ChangeEvent) -> None:
        # Publishers may run on worker threads (asyncio.to_thread).
        if self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._queue.put_nowait, event)

    def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ChangeEvent]:
        while True:
            event = await self._queue.get()
            if event is _CLOSED:
                return
            yield event

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._feed.remove(self)
        self._queue.put_nowait(_CLOSED)


class InMemoryChangeFeed:
    """Process-local fan-out to every matching subscription."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscriptions: list[InMemorySubscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, event: ChangeEvent) -> None:
        with self._lock:
            targets = [
                sub
                for sub in self._subscriptions
                if _matches(event, sub.table, sub.owner)
            ]
        for sub in targets:
            sub.deliver(event)

    async def subscribe(
        self, table: str, *, owner: Optional[str] = None
    ) -> InMemorySubscription:
        sub = InMemorySubscription(self, table, owner)
        with self._lock:
            self._subscriptions.append(sub)
        return sub

    def remove(self, sub: InMemorySubscription) -> None:
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

    def close(self) -> None:
        with self._lock:
            self._subscriptions.clear()


class RedisSubscription:
    def __init__(self, client: aioredis.Redis, pubsub, channel: str, table: str, owner: Optional[str]):
        self.channel = channel
        self.table = table
        self.owner = owner
        self._client = client
        self._pubsub = pubsub

    def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ChangeEvent]:
        async for message in self._pubsub.listen():
            if message.get("type") != "message":
                continue
            try:
                event = parse_change(json.loads(message["data"]))
            except (ValueError, FeedPayloadError) as exc:
                # json.JSONDecodeError is a ValueError.
                logger.warning("Dropping malformed feed message on %s: %s", self.channel, exc)
                continue
            if _matches(event, self.table, self.owner):
                yield event

    async def close(self) -> None:
        try:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
        finally:
            await self._client.aclose()


class RedisChangeFeed:
    """Redis-backed feed: one pub/sub channel per table."""

    def __init__(self, url: str, channel_prefix: str = "tripkit:changes"):
        self.url = url
        self.channel_prefix = channel_prefix
        self.client = redis.Redis.from_url(self.url)

    def channel_for(self, table: str) -> str:
        return f"{self.channel_prefix}:{table}"

    def publish(self, event: ChangeEvent) -> None:
        body = json.dumps(serialize_change(event), default=str)
        try:
            self.client.publish(self.channel_for(event.table), body)
        except redis_exceptions.ConnectionError:
            # Managed Redis drops idle connections; reconnect once and retry.
            self.client = redis.Redis.from_url(self.url)
            self.client.publish(self.channel_for(event.table), body)

    async def subscribe(
        self, table: str, *, owner: Optional[str] = None
    ) -> RedisSubscription:
        client = aioredis.from_url(self.url, decode_responses=True)
        pubsub = client.pubsub()
        channel = self.channel_for(table)
        await pubsub.subscribe(channel)
        return RedisSubscription(client, pubsub, channel, table, owner)

    def close(self) -> None:
        self.client.close()
