import asyncio

from backend.config import Settings
from backend.models import (
    CIIComponentData, CountryFeed, EscalationInput, FeedSnapshot, HotspotFeed, MilitaryTrack, SignalType,
)
from fusion_engine.catalog import Catalog
from fusion_engine.engine import FusionEngine
from fusion_engine.offload import ComputeOffloadBridge


def make_engine(clock, bridge=None) -> FusionEngine:
    settings = Settings(offload_enabled=False, catalog_path=None)
    return FusionEngine(settings, catalog=Catalog(), bridge=bridge, clock=clock)


def snapshot(clock) -> FeedSnapshot:
    now = clock().isoformat()
    tracks = [
        MilitaryTrack(id=f"us{i}", category="transport", operator="US", lat=50.2, lon=22.1)
        for i in range(6)
    ]
    return FeedSnapshot(
        countries=[
            CountryFeed(code="UA", data=CIIComponentData(conflict_count=5, protest_count=3)),
            CountryFeed(code="XT", name="Testland", data=CIIComponentData(protest_count=10)),
        ],
        hotspots=[
            HotspotFeed(hotspot_id="kyiv", activity=EscalationInput(
                news_matches=10, breaking=True, cii_value=100, military_flights=10,
                geo_alert_types=10,
            )),
        ],
        events=[
            {"lat": 50.45, "lon": 30.52, "type": "protest", "timestamp": now},
            {"lat": 50.50, "lon": 30.60, "type": "outage", "timestamp": now},
            {"lat": 50.40, "lon": 30.40, "type": "military_flight", "timestamp": now},
            {"lat": 999, "lon": 30.40, "type": "broken", "timestamp": now},
        ],
        tracks={"eastern-europe": tracks},
    )


class FailingCIIBridge(ComputeOffloadBridge):
    def __init__(self):
        super().__init__(inline=True)

    async def calculate_cii(self, countries, tier, warmup_baseline_weight=0.6):
        return None


class BrokenConvergenceBridge(ComputeOffloadBridge):
    def __init__(self):
        super().__init__(inline=True)

    async def detect_convergence(self, events, threshold_km):
        raise RuntimeError("worker exploded")


def test_refresh_cycle_scores_and_emits(clock):
    engine = make_engine(clock)
    published = []

    async def subscriber(signals):
        published.extend(signals)

    engine.emitter.subscribe(subscriber)
    signals = asyncio.run(engine.refresh(snapshot(clock)))

    assert {s.code for s in engine.cii.current_scores()} == {"UA", "XT"}
    assert all(s.learning for s in engine.cii.current_scores())
    assert len(engine.clusters()) == 1

    types = sorted(s.type.value for s in signals)
    assert types == ["geo_convergence", "hotspot_escalation", "military_surge", "military_surge"]
    assert published == signals
    assert engine.last_cycle_at == clock()

    escalation = next(s for s in signals if s.type == SignalType.HOTSPOT_ESCALATION)
    assert escalation.subject_id == "kyiv"
    assert escalation.metadata["reason"] == "threshold_crossed"
    assert engine.catalog.hotspots["kyiv"].last_signal_at == clock()

    subjects = {s.subject_id for s in signals if s.type == SignalType.MILITARY_SURGE}
    assert subjects == {"eastern-europe:transport", "eastern-europe:foreign:US"}
    assert engine.surges[0].bases == {"rzeszow": 6}
    assert engine.foreign_presence[0].count == 6


def test_repeat_cycle_is_rate_limited(clock):
    engine = make_engine(clock)
    asyncio.run(engine.refresh(snapshot(clock)))
    clock.advance(minutes=10)
    assert asyncio.run(engine.refresh(snapshot(clock))) == []
    assert len(engine.escalation.samples("kyiv")) == 2


def test_failed_cii_batch_keeps_previous_scores(clock):
    engine = make_engine(clock)
    asyncio.run(engine.refresh(snapshot(clock)))
    before = engine.cii.current_value("XT")

    engine.bridge = FailingCIIBridge()
    clock.advance(minutes=10)
    feed = snapshot(clock)
    feed.countries[1].data = CIIComponentData(protest_count=50, conflict_count=40)
    asyncio.run(engine.refresh(feed))
    assert engine.cii.current_value("XT") == before


def test_failing_stage_does_not_block_others(clock):
    engine = make_engine(clock, bridge=BrokenConvergenceBridge())
    signals = asyncio.run(engine.refresh(snapshot(clock)))
    assert engine.clusters() == []
    assert engine.cii.current_value("UA") is not None
    assert SignalType.HOTSPOT_ESCALATION in {s.type for s in signals}


def test_escalation_input_filled_from_engine_state(clock):
    engine = make_engine(clock)
    asyncio.run(engine.refresh(snapshot(clock)))
    hotspot = engine.catalog.hotspots["kyiv"]

    filled = engine._escalation_input(hotspot, None)
    assert filled.cii_value == engine.cii.current_value("UA")
    assert filled.geo_alert_types == 3
    assert filled.geo_alert_score == engine.clusters()[0].score

    far = engine.catalog.hotspots["caracas"]
    assert engine._escalation_input(far, None).geo_alert_types == 0


def test_naive_event_timestamp_joins_cluster(clock):
    engine = make_engine(clock)
    feed = snapshot(clock)
    feed.events.append({"lat": 50.42, "lon": 30.50, "type": "cyber", "timestamp": "2025-01-01T11:30:00"})
    asyncio.run(engine.refresh(feed))
    clusters = engine.clusters()
    assert len(clusters) == 1
    assert "cyber" in clusters[0].types
