import pytest

from backend.models import MilitaryBase, MilitaryTrack, Theater
from fusion_engine.military_surge import (
    SurgeDetector, associate_bases, count_tracks, theater_posture,
)

THEATER = Theater(
    id="test-theater", name="Test Theater", country_code="XT",
    home_operators=["XT"],
    bases=[
        MilitaryBase(id="north", name="North Field", lat=50.0, lon=20.0),
        MilitaryBase(id="south", name="South Field", lat=45.0, lon=20.0),
    ],
)


def track(i, category="transport", operator="XT", lat=50.1, lon=20.1) -> MilitaryTrack:
    return MilitaryTrack(id=f"t{i}", category=category, operator=operator, lat=lat, lon=lon)


def test_surge_against_learned_baseline(clock):
    detector = SurgeDetector(clock=clock)
    assert detector.evaluate(THEATER, {"transport": 4}) == []

    clock.advance(hours=1)
    surges = detector.evaluate(THEATER, {"transport": 9})
    assert len(surges) == 1
    surge = surges[0]
    assert surge.category == "transport"
    assert surge.baseline == 4
    assert surge.multiple == pytest.approx(2.25)
    assert surge.confidence == pytest.approx(0.625)
    assert surge.posture == "elevated"


def test_sparse_baseline_floored_at_minimum(clock):
    detector = SurgeDetector(clock=clock)
    ref = detector.baseline(THEATER.id, "fighter")
    assert ref.samples == 0
    assert ref.floored
    assert ref.baseline == 1

    surges = detector.evaluate(THEATER, {"fighter": 4})
    assert [s.category for s in surges] == ["fighter"]
    assert surges[0].posture == "critical"


def test_absolute_minimum_count_required(clock):
    detector = SurgeDetector(clock=clock)
    # recon: 2 is double the floor of 1 but under the minimum of 3
    assert detector.evaluate(THEATER, {"recon": 2}) == []


def test_enough_samples_lifts_floor(clock):
    detector = SurgeDetector(clock=clock)
    for _ in range(6):
        detector.evaluate(THEATER, {"transport": 1})
        clock.advance(hours=1)
    ref = detector.baseline(THEATER.id, "transport")
    assert ref.samples == 6
    assert not ref.floored
    assert ref.baseline == 1


def test_quiet_theater_still_surges(clock):
    detector = SurgeDetector(clock=clock)
    for _ in range(6):
        assert detector.evaluate(THEATER, {"transport": 0}) == []
        clock.advance(hours=1)

    ref = detector.baseline(THEATER.id, "transport")
    assert ref.samples == 6
    assert ref.mean == 0
    assert ref.floored
    assert ref.baseline == 2

    surges = detector.evaluate(THEATER, {"transport": 12})
    assert len(surges) == 1
    assert surges[0].multiple == pytest.approx(6.0)
    assert surges[0].confidence == pytest.approx(0.95)


def test_history_sweep_drops_old_counts(clock):
    detector = SurgeDetector(clock=clock)
    detector.evaluate(THEATER, {"transport": 10})
    clock.advance(hours=73)
    detector.evaluate(THEATER, {"transport": 1})
    assert detector.history.values(THEATER.id) == [{"transport": 1, "fighter": 0, "recon": 0}]


def test_surge_associates_nearest_base(clock):
    detector = SurgeDetector(clock=clock)
    tracks = [track(i) for i in range(4)] + [track(10, lat=45.1, lon=20.1), track(11, lat=30.0, lon=0.0)]
    surges = detector.evaluate(THEATER, count_tracks(tracks), tracks)
    assert surges[0].bases == {"north": 4, "south": 1}


def test_associate_bases_radius():
    assoc = associate_bases([track(1), track(2, lat=47.5, lon=20.0)], THEATER.bases)
    assert assoc == {"north": ["t1"]}


def test_foreign_presence(clock):
    detector = SurgeDetector(clock=clock)
    tracks = [
        track(1, operator="XT"), track(2, operator="XT"), track(3, operator="XT"),
        track(4, operator="US"), track(5, operator="US"),
        track(6, operator="GB"),
    ]
    found = detector.detect_foreign_presence(THEATER, tracks)
    assert len(found) == 1
    assert found[0].operator == "US"
    assert found[0].count == 2
    assert found[0].confidence == pytest.approx(0.8)
    assert found[0].track_ids == ["t4", "t5"]


def test_posture_rules():
    assert theater_posture([], None) == "normal"
    assert theater_posture([], 72) == "elevated"
    assert theater_posture([], 90) == "critical"
