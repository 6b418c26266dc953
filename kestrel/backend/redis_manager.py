"""Kestrel — Signal Stream.

Emitted signals are appended to a Redis stream (one entry per signal,
fields: id, type, subject_id, data) so other services can tail them.
A local buffer mirrors every published signal and feeds in-process
subscribers whether or not Redis is connected.
"""

import asyncio
import json
import logging
from collections import OrderedDict
from typing import Optional

from backend.models import Signal, SignalType

logger = logging.getLogger("kestrel.redis")

STREAM_MAXLEN = 5000
_PAGE_SIZE = 200


class SignalBuffer:
    """Bounded, id-keyed buffer of signal payloads plus local subscriber queues."""

    def __init__(self, maxlen: int = STREAM_MAXLEN):
        self.maxlen = maxlen
        self._signals: OrderedDict[str, dict] = OrderedDict()
        self._subscribers: dict[asyncio.Queue, Optional[frozenset[str]]] = {}

    def __len__(self) -> int:
        return len(self._signals)

    def add(self, payload: dict) -> bool:
        """Store a payload; a signal id already buffered is ignored."""
        signal_id = payload["id"]
        if signal_id in self._signals:
            return False
        self._signals[signal_id] = payload
        while len(self._signals) > self.maxlen:
            self._signals.popitem(last=False)
        return True

    def fan_out(self, payload: dict):
        for q, types in self._subscribers.items():
            if types is not None and payload["type"] not in types:
                continue
            try:
                q.put_nowait(payload)
            except asyncio.QueueFull:
                logger.debug("Subscriber queue full, signal %s dropped for it", payload["id"])

    def subscribe(self, types: Optional[set[SignalType]] = None, maxsize: int = 500) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._subscribers[q] = frozenset(t.value for t in types) if types else None
        return q

    def unsubscribe(self, q: asyncio.Queue):
        self._subscribers.pop(q, None)

    def recent(self, count: int, signal_type: Optional[SignalType] = None) -> list[dict]:
        items = list(self._signals.values())
        if signal_type is not None:
            items = [p for p in items if p["type"] == signal_type.value]
        return items[-count:] if count > 0 else []


class SignalStream:
    """Publishes emitted signals to a Redis stream, mirrored locally."""

    def __init__(self, redis_url: str = "redis://localhost:6379", stream_key: str = "kestrel:signals",
                 use_redis: bool = False):
        self._redis_url = redis_url
        self._stream_key = stream_key
        self._use_redis = use_redis
        self._redis = None
        self.buffer = SignalBuffer()

    @property
    def redis_connected(self) -> bool:
        return self._redis is not None

    async def connect(self):
        if not self._use_redis:
            logger.info("Signal stream is local only (Redis disabled)")
            return
        try:
            import redis.asyncio as aioredis
            self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
            await self._redis.ping()
            logger.info("Streaming signals to Redis %s (%s)", self._redis_url, self._stream_key)
        except Exception as e:
            logger.warning("Redis unavailable (%s), signals stay local", e)
            self._redis = None

    async def publish_signals(self, signals: list[Signal]):
        """SignalEmitter subscriber: stream a batch of emitted signals."""
        payloads = [s.model_dump(mode="json") for s in signals]
        fresh = [p for p in payloads if self.buffer.add(p)]
        if not fresh:
            return

        if self._redis:
            try:
                async with self._redis.pipeline(transaction=False) as pipe:
                    for payload in fresh:
                        pipe.xadd(self._stream_key, self._entry(payload), maxlen=STREAM_MAXLEN, approximate=True)
                    await pipe.execute()
            except Exception as e:
                logger.error("Redis publish of %d signals failed: %s", len(fresh), e)

        for payload in fresh:
            self.buffer.fan_out(payload)

    async def publish_signal(self, signal: Signal):
        await self.publish_signals([signal])

    @staticmethod
    def _entry(payload: dict) -> dict:
        return {
            "id": payload["id"],
            "type": payload["type"],
            "subject_id": payload["subject_id"],
            "data": json.dumps(payload),
        }

    def subscribe(self, types: Optional[set[SignalType]] = None) -> asyncio.Queue:
        return self.buffer.subscribe(types)

    def unsubscribe(self, q: asyncio.Queue):
        self.buffer.unsubscribe(q)

    async def get_recent_signals(self, count: int = 200, signal_type: Optional[SignalType] = None) -> list[dict]:
        """Most recent signals, oldest first, optionally of one type."""
        if self._redis:
            try:
                return await self._read_redis(count, signal_type)
            except Exception as e:
                logger.warning("Redis read error, serving local signals: %s", e)
        return self.buffer.recent(count, signal_type)

    async def _read_redis(self, count: int, signal_type: Optional[SignalType]) -> list[dict]:
        found: list[dict] = []
        upper = "+"
        while len(found) < count:
            entries = await self._redis.xrevrange(self._stream_key, max=upper, count=_PAGE_SIZE)
            for _entry_id, fields in entries:
                if signal_type is None or fields.get("type") == signal_type.value:
                    found.append(json.loads(fields["data"]))
                    if len(found) == count:
                        break
            if len(entries) < _PAGE_SIZE:
                break
            upper = f"({entries[-1][0]}"
        found.reverse()
        return found

    async def close(self):
        if self._redis:
            await self._redis.aclose()
            self._redis = None
