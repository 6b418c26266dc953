import pytest

from backend.models import EscalationComponents, EscalationInput, EscalationSample, EscalationTrend, Hotspot
from fusion_engine.hotspot_escalation import (
    DEFAULT_CII, MAX_HISTORY_POINTS, WEIGHTS, EscalationScorer, emission_reason, to_alert_scale,
)

HOTSPOT = Hotspot(id="test-spot", name="Test Spot", lat=10.0, lon=10.0, baseline_risk=50)

BUSY = EscalationInput(
    news_matches=2, news_velocity=2, breaking=True, cii_value=80,
    geo_alert_types=3, geo_alert_score=20, military_flights=2, military_vessels=2,
)
MAXED = EscalationInput(
    news_matches=10, breaking=True, cii_value=100,
    geo_alert_types=10, military_flights=10, military_vessels=10,
)


def sample(alert: float) -> EscalationSample:
    return EscalationSample(
        hotspot_id="x", combined=alert * 20, alert_score=alert, components=EscalationComponents(),
    )


def test_weights_sum_to_one():
    assert sum(WEIGHTS.values()) == pytest.approx(1.0)


def test_component_formulas(clock):
    scorer = EscalationScorer(clock=clock)
    result, _ = scorer.score(HOTSPOT, BUSY)
    assert result.components == EscalationComponents(news=70, cii=80, geo=50, military=50)
    # dynamic 64.5 → 50 * 0.3 + 64.5 * 0.7 = 60.15
    assert result.combined == pytest.approx(60.15)
    assert result.alert_score == pytest.approx(3.0075, abs=1e-3)


def test_missing_cii_defaults_to_30(clock):
    scorer = EscalationScorer(clock=clock)
    result, reason = scorer.score(HOTSPOT)
    assert result.components.cii == DEFAULT_CII
    assert result.combined == pytest.approx(20.25)
    assert reason is None


def test_alert_scale_bounds():
    assert to_alert_scale(0) == 0
    assert to_alert_scale(100) == 5
    assert to_alert_scale(130) == 5


def test_threshold_crossed_then_quiet(clock):
    spot = HOTSPOT.model_copy(update={"baseline_risk": 100})
    scorer = EscalationScorer(clock=clock)
    first, reason = scorer.score(spot, MAXED)
    assert first.alert_score == 5
    assert reason == "threshold_crossed"

    clock.advance(minutes=30)
    _, reason = scorer.score(spot, MAXED)
    assert reason is None


def test_rapid_increase(clock):
    scorer = EscalationScorer(clock=clock)
    scorer.score(HOTSPOT)
    clock.advance(minutes=30)
    result, reason = scorer.score(HOTSPOT, BUSY)
    assert result.alert_score < 4.5
    assert reason == "rapid_increase"


def test_emission_reason_rules():
    assert emission_reason(sample(4.6), None) == "threshold_crossed"
    assert emission_reason(sample(4.6), sample(4.4)) == "threshold_crossed"
    assert emission_reason(sample(4.8), sample(4.6)) is None
    assert emission_reason(sample(3.0), sample(2.4)) == "rapid_increase"
    assert emission_reason(sample(3.0), sample(2.7)) is None
    # below the emission floor nothing fires, however sharp the jump
    assert emission_reason(sample(1.9), sample(0.5)) is None


def test_trend_from_history_slope(clock):
    scorer = EscalationScorer(clock=clock)
    scorer.score(HOTSPOT)
    for matches in (2, 4, 6):
        clock.advance(hours=1)
        result, _ = scorer.score(HOTSPOT, EscalationInput(news_matches=matches))
    assert result.trend == EscalationTrend.ESCALATING
    assert result.slope > 0.1

    cooling = EscalationScorer(clock=clock)
    for matches in (6, 4, 2, 0):
        clock.advance(hours=1)
        result, _ = cooling.score(HOTSPOT, EscalationInput(news_matches=matches))
    assert result.trend == EscalationTrend.DE_ESCALATING
    assert result.slope < -0.1


def test_history_capped(clock):
    scorer = EscalationScorer(clock=clock)
    for _ in range(MAX_HISTORY_POINTS + 12):
        scorer.score(HOTSPOT)
        clock.advance(minutes=10)
    assert len(scorer.samples(HOTSPOT.id)) == MAX_HISTORY_POINTS
    assert scorer.latest(HOTSPOT.id).hotspot_id == HOTSPOT.id
