import asyncio

from backend.models import SignalType
from backend.redis_manager import SignalStream
from backend.websocket_manager import ConnectionManager, envelope
from fusion_engine.signals import SignalEmitter


class FakeSocket:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def accept(self):
        pass

    async def send_text(self, payload):
        if self.fail:
            raise RuntimeError("closed")
        self.sent.append(payload)


def emitted(n=2):
    emitter = SignalEmitter()
    return [emitter.propose(SignalType.MILITARY_SURGE, f"theater-{i}", 3.0, 0.7) for i in range(n)]


def test_in_memory_stream_publishes_and_fans_out():
    async def run():
        stream = SignalStream(use_redis=False)
        await stream.connect()
        queue = stream.subscribe()
        signals = emitted()
        await stream.publish_signals(signals)
        recent = await stream.get_recent_signals(10)
        stream.unsubscribe(queue)
        await stream.close()
        return signals, recent, queue.qsize()

    signals, recent, queued = asyncio.run(run())
    assert [r["id"] for r in recent] == [s.id for s in signals]
    assert queued == 2


def test_unreachable_redis_falls_back_to_memory():
    async def run():
        stream = SignalStream(redis_url="redis://127.0.0.1:1", use_redis=True)
        await stream.connect()
        await stream.publish_signals(emitted(1))
        return await stream.get_recent_signals()

    assert len(asyncio.run(run())) == 1


class FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.queued = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def xadd(self, key, fields, **kwargs):
        self.queued.append(fields)
        return self

    async def execute(self):
        for fields in self.queued:
            self.redis.entries.append((f"{len(self.redis.entries)}-0", fields))
        return [True] * len(self.queued)


class FakeRedis:
    def __init__(self):
        self.entries = []

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def xrevrange(self, key, max="+", min="-", count=None):
        newest_first = list(reversed(self.entries))
        return newest_first[:count]

    async def aclose(self):
        pass


def test_redis_stream_still_feeds_local_subscribers():
    async def run():
        stream = SignalStream(use_redis=True)
        stream._redis = FakeRedis()
        queue = stream.subscribe({SignalType.MILITARY_SURGE})
        signals = emitted(3)
        await stream.publish_signals(signals)
        await stream.publish_signals(signals[:1])
        redis_entries = list(stream._redis.entries)
        recent = await stream.get_recent_signals(2, SignalType.MILITARY_SURGE)
        return signals, queue.qsize(), redis_entries, recent

    signals, queued, redis_entries, recent = asyncio.run(run())
    assert queued == 3
    assert len(redis_entries) == 3
    assert redis_entries[0][1]["type"] == "military_surge"
    assert [r["id"] for r in recent] == [s.id for s in signals[1:]]


def test_type_filtered_subscriber_skips_other_signals():
    async def run():
        stream = SignalStream(use_redis=False)
        queue = stream.subscribe({SignalType.GEO_CONVERGENCE})
        await stream.publish_signals(emitted(2))
        return queue.qsize(), await stream.get_recent_signals(10, SignalType.GEO_CONVERGENCE)

    assert asyncio.run(run()) == (0, [])


def test_broadcast_signals_drops_dead_sockets():
    async def run():
        manager = ConnectionManager()
        alive, dead = FakeSocket(), FakeSocket(fail=True)
        await manager.connect(alive)
        await manager.connect(dead)
        await manager.broadcast_signals(emitted())
        return manager, alive

    manager, alive = asyncio.run(run())
    assert manager.connection_count == 1
    assert '"action": "signals"' in alive.sent[0]


def test_envelope():
    message = envelope("scores", {"cii": []}, count=0)
    assert message["action"] == "scores"
    assert message["count"] == 0
    assert "timestamp" in message


def test_channel_subscription_filters_broadcasts():
    async def run():
        manager = ConnectionManager()
        scores_only, everything = FakeSocket(), FakeSocket()
        await manager.connect(scores_only)
        await manager.connect(everything)
        channels = manager.handle_client_message(scores_only, '{"subscribe": ["scores", "bogus"]}')
        manager.handle_client_message(everything, "not json")
        await manager.broadcast_signals(emitted(1))
        await manager.broadcast_scores({"cii": []})
        return channels, scores_only, everything

    channels, scores_only, everything = asyncio.run(run())
    assert channels == {"scores"}
    assert len(scores_only.sent) == 1
    assert '"action": "scores"' in scores_only.sent[0]
    assert len(everything.sent) == 2
