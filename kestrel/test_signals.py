import asyncio
from datetime import timedelta

import pytest

from backend.models import SignalType
from fusion_engine.signals import SIGNAL_CONTEXT, SignalEmitter


def test_every_signal_type_has_context():
    assert set(SIGNAL_CONTEXT) == set(SignalType)


def test_duplicate_suppressed_within_cooldown(clock):
    emitter = SignalEmitter(clock=clock)
    first = emitter.propose(SignalType.HOTSPOT_ESCALATION, "kyiv", 4.6, 0.8, title="Kyiv escalation")
    assert first is not None
    assert first.dedupe_key == "hotspot_escalation:kyiv:4.6"
    assert first.context == SIGNAL_CONTEXT[SignalType.HOTSPOT_ESCALATION]
    assert first.timestamp == clock()

    clock.advance(minutes=119)
    assert emitter.propose(SignalType.HOTSPOT_ESCALATION, "kyiv", 4.6, 0.8) is None
    assert emitter.propose(SignalType.HOTSPOT_ESCALATION, "kyiv", 4.9, 0.8) is None


def test_emits_again_after_cooldown(clock):
    emitter = SignalEmitter(clock=clock)
    assert emitter.propose(SignalType.HOTSPOT_ESCALATION, "kyiv", 4.6, 0.8)
    clock.advance(hours=2)
    again = emitter.propose(SignalType.HOTSPOT_ESCALATION, "kyiv", 4.6, 0.8)
    assert again is not None
    assert emitter.last_emitted(SignalType.HOTSPOT_ESCALATION, "kyiv") == clock()


def test_subjects_cool_down_independently(clock):
    emitter = SignalEmitter(clock=clock)
    assert emitter.propose(SignalType.MILITARY_SURGE, "eastern-europe:transport", 3.0, 0.7)
    assert emitter.propose(SignalType.MILITARY_SURGE, "middle-east:transport", 3.0, 0.7)
    assert emitter.is_cooling_down(SignalType.MILITARY_SURGE, "eastern-europe:transport")
    assert not emitter.is_cooling_down(SignalType.GEO_CONVERGENCE, "eastern-europe:transport")


def test_cooldowns_per_type(clock):
    emitter = SignalEmitter(
        cooldowns={SignalType.GEO_CONVERGENCE: timedelta(minutes=5)},
        default_cooldown=timedelta(minutes=10),
        clock=clock,
    )
    assert emitter.cooldown_for(SignalType.GEO_CONVERGENCE) == timedelta(minutes=5)
    assert emitter.cooldown_for(SignalType.HOTSPOT_ESCALATION) == timedelta(hours=2)
    assert emitter.cooldown_for(SignalType.VELOCITY_SPIKE) == timedelta(minutes=10)

    assert emitter.propose(SignalType.GEO_CONVERGENCE, "50.0,30.0", 79, 0.8)
    clock.advance(minutes=5)
    assert emitter.propose(SignalType.GEO_CONVERGENCE, "50.0,30.0", 79, 0.8)


def test_confidence_clamped(clock):
    emitter = SignalEmitter(clock=clock)
    signal = emitter.propose(SignalType.CONVERGENCE, "story-1", 10, 1.7)
    assert signal.confidence == 1.0


def test_publish_fans_out_and_isolates_failures(clock):
    emitter = SignalEmitter(clock=clock)
    received = []

    async def broken(signals):
        raise RuntimeError("subscriber down")

    async def collect(signals):
        received.extend(signals)

    emitter.subscribe(broken)
    emitter.subscribe(collect)
    signal = emitter.propose(SignalType.HOTSPOT_ESCALATION, "gaza", 4.7, 0.9)
    asyncio.run(emitter.publish([signal]))
    assert received == [signal]

    emitter.unsubscribe(collect)
    asyncio.run(emitter.publish([signal]))
    assert received == [signal]


def test_recent_history_bounded(clock):
    emitter = SignalEmitter(history_size=3, clock=clock)
    for i in range(5):
        emitter.propose(SignalType.KEYWORD_SPIKE, f"term-{i}", i, 0.5)
    assert [s.subject_id for s in emitter.recent()] == ["term-2", "term-3", "term-4"]
    assert [s.subject_id for s in emitter.recent(1)] == ["term-4"]


@pytest.mark.parametrize("signal_type", [SignalType.SILENT_DIVERGENCE, SignalType.EXPLAINED_MARKET_MOVE])
def test_market_signals_dedupe_by_identifier(clock, signal_type):
    emitter = SignalEmitter(clock=clock)
    signal = emitter.propose(signal_type, "brent", 2.3, 0.6)
    assert signal.dedupe_key == f"{signal_type.value}:brent"


def test_elapsed_cooldowns_are_forgotten(clock):
    emitter = SignalEmitter(clock=clock)
    assert emitter.propose(SignalType.GEO_CONVERGENCE, "50.4,30.5", 75, 0.8)
    clock.advance(minutes=10)
    assert emitter.propose(SignalType.GEO_CONVERGENCE, "50.5,30.5", 75, 0.8)
    assert emitter.propose(SignalType.HOTSPOT_ESCALATION, "kyiv", 4.6, 0.8)

    clock.advance(minutes=25)
    emitter.propose(SignalType.MILITARY_SURGE, "eastern-europe:transport", 3.0, 0.7)
    assert emitter.last_emitted(SignalType.GEO_CONVERGENCE, "50.4,30.5") is None
    assert emitter.last_emitted(SignalType.GEO_CONVERGENCE, "50.5,30.5") is not None
    assert emitter.last_emitted(SignalType.HOTSPOT_ESCALATION, "kyiv") is not None
    assert "geo_convergence:50.4,30.5:75" not in emitter._seen_keys
