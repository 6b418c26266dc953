"""Kestrel — Hotspot Escalation Scorer.

Composite escalation score per authored hotspot, blending its static
baseline risk with live activity around it.

Dynamic sub-scores (each 0-100):
  news     = min(100, matches * 15 + velocity * 5 + (breaking ? 30 : 0))
  cii      = host country CII, or 30 when unavailable
  geo      = min(100, alertTypes * 10 + alertScore)
  military = min(100, flights * 10 + vessels * 15)

  dynamic  = news * 0.35 + cii * 0.25 + geo * 0.25 + military * 0.15
  combined = baseline * 0.3 + dynamic * 0.7

Signals use a 0-5 alert scale: alert = combined / 20.
A hotspot_escalation proposal is raised when the alert score reaches
4.5 from below (threshold_crossed) or jumps by 0.5 or more since the
previous sample (rapid_increase), provided alert >= 2. Cooldown is
enforced by the SignalEmitter.

History: ≤ 48 samples within a 24h window per hotspot. Trend is the
least-squares slope of the alert score in points per hour:
  > 0.1 escalating, < -0.1 de-escalating, else stable.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from backend.models import (
    EscalationComponents, EscalationInput, EscalationSample, EscalationTrend, Hotspot,
)
from fusion_engine.history import HistoryStore
from fusion_engine.normalizer import (
    clamp, geo_alert_score, linear_slope, military_activity_score, news_activity_score,
)

logger = logging.getLogger("kestrel.fusion")

# Weight configuration (must sum to 1.0)
WEIGHTS = {
    "news":     0.35,
    "cii":      0.25,
    "geo":      0.25,
    "military": 0.15,
}

BLEND_STATIC = 0.3
BLEND_DYNAMIC = 0.7

DEFAULT_CII = 30.0

# combined (0-100) → alert scale (0-5)
ALERT_SCALE_DIVISOR = 20.0

TREND_ESCALATING = 0.1
TREND_DE_ESCALATING = -0.1

CRITICAL_SCORE = 4.5
RAPID_INCREASE = 0.5
MINIMUM_EMIT_SCORE = 2.0

HISTORY_WINDOW = timedelta(hours=24)
MAX_HISTORY_POINTS = 48

OWNER = "escalation"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_alert_scale(combined: float) -> float:
    return clamp(combined / ALERT_SCALE_DIVISOR, 0.0, 5.0)


def escalation_trend(samples: list[EscalationSample]) -> tuple[EscalationTrend, float]:
    """Slope of the alert score (points/hour) over the retained samples."""
    if len(samples) < 2:
        return EscalationTrend.STABLE, 0.0
    origin = samples[0].timestamp
    points = [
        ((s.timestamp - origin).total_seconds() / 3600, s.alert_score)
        for s in samples
    ]
    slope = linear_slope(points)
    if slope > TREND_ESCALATING:
        return EscalationTrend.ESCALATING, slope
    if slope < TREND_DE_ESCALATING:
        return EscalationTrend.DE_ESCALATING, slope
    return EscalationTrend.STABLE, slope


def emission_reason(sample: EscalationSample, previous: Optional[EscalationSample]) -> Optional[str]:
    """Why this sample should raise a hotspot_escalation signal, if at all."""
    if sample.alert_score < MINIMUM_EMIT_SCORE:
        return None
    prev_alert = previous.alert_score if previous else None
    if sample.alert_score >= CRITICAL_SCORE and (prev_alert is None or prev_alert < CRITICAL_SCORE):
        return "threshold_crossed"
    if prev_alert is not None and sample.alert_score - prev_alert >= RAPID_INCREASE:
        return "rapid_increase"
    return None


def escalation_confidence(activity: EscalationInput, components: EscalationComponents) -> float:
    live = sum([
        components.news > 0,
        activity.cii_value is not None,
        components.geo > 0,
        components.military > 0,
    ])
    return min(0.95, 0.5 + 0.1 * live)


class EscalationScorer:
    """Scores hotspots and owns their escalation history."""

    def __init__(
        self,
        history: Optional[HistoryStore] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._clock = clock
        self.history: HistoryStore[EscalationSample] = history or HistoryStore(
            HISTORY_WINDOW, max_samples=MAX_HISTORY_POINTS, clock=clock, name="escalation"
        )

    def components(self, activity: EscalationInput) -> EscalationComponents:
        return EscalationComponents(
            news=news_activity_score(activity.news_matches, activity.news_velocity, activity.breaking),
            cii=clamp(activity.cii_value) if activity.cii_value is not None else DEFAULT_CII,
            geo=geo_alert_score(activity.geo_alert_types, activity.geo_alert_score),
            military=military_activity_score(activity.military_flights, activity.military_vessels),
        )

    def score(
        self,
        hotspot: Hotspot,
        activity: Optional[EscalationInput] = None,
    ) -> tuple[EscalationSample, Optional[str]]:
        """Score one hotspot, append to its history and report an emission reason."""
        activity = activity or EscalationInput()
        now = self._clock()
        components = self.components(activity)

        dynamic = sum(getattr(components, k) * w for k, w in WEIGHTS.items())
        combined = clamp(hotspot.baseline_risk * BLEND_STATIC + dynamic * BLEND_DYNAMIC)

        previous = self.history.latest(hotspot.id, now)
        prior = self.history.values(hotspot.id, now)
        draft = EscalationSample(
            hotspot_id=hotspot.id,
            timestamp=now,
            combined=round(combined, 2),
            alert_score=round(to_alert_scale(combined), 3),
            components=components,
        )

        # Trend includes the new sample, capped at the buffer size
        window = (prior + [draft])[-MAX_HISTORY_POINTS:]
        trend, slope = escalation_trend(window)
        sample = draft.model_copy(update={"trend": trend, "slope": round(slope, 4)})

        self.history.append(hotspot.id, sample, owner=OWNER, timestamp=now)
        reason = emission_reason(sample, previous.value if previous else None)
        if reason:
            logger.info(
                "[escalation] %s %s (alert %.2f, trend %s)",
                hotspot.id, reason, sample.alert_score, trend.value,
            )
        return sample, reason

    def latest(self, hotspot_id: str) -> Optional[EscalationSample]:
        latest = self.history.latest(hotspot_id)
        return latest.value if latest else None

    def samples(self, hotspot_id: str) -> list[EscalationSample]:
        return self.history.values(hotspot_id)
