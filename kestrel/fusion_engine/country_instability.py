"""Kestrel — Country Instability Index (CII).

Computes a 0-100 instability score per country from four weighted
components, blended with the country's authored baseline risk.

Component Weights:
  - Unrest       (protests, outages):                      25%
  - Conflict     (battles, explosions, civilian targeting): 30%
  - Security     (military flights + vessels):              20%
  - Information  (news volume, velocity, alerts):           25%

Final score:
    final = baseline * 0.4 + computed * 0.6 + boosts     (max 100)

Boosts: news urgency (+5/+3), focal-point criticality (+8/+4),
displacement outflow (+8/+4), climate stress (+15/+8) and hotspot
proximity (up to +10, fading linearly to zero at 150 km).

Two formula tiers share this interface:
  - precise: the full formula above (default, main context)
  - fast:    a flat approximation used for offloaded batch recomputes;
             no baseline blend, no boosts, no log dampening

For the first minutes after a country's first data load it is in
warmup: the blend leans on the baseline (0.6 / 0.4) and the trend
deadband is doubled until live samples accumulate.
"""

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from backend.models import (
    CIIComponentData, CIIComponents, CIIRequestCountry, CIIResult, CIIResultScore,
    CIIScore, Country, LearningState, ScoringTier,
)
from fusion_engine.catalog import Catalog
from fusion_engine.history import HistoryStore
from fusion_engine.normalizer import (
    capped, clamp, log_scaled_count, round_half_up, score_to_level, trend_from_delta,
    TREND_DEADBAND,
)

logger = logging.getLogger("kestrel.fusion")

# Weight configuration (must sum to 1.0)
WEIGHTS = {
    "unrest":      0.25,
    "conflict":    0.30,
    "security":    0.20,
    "information": 0.25,
}

FAST_WEIGHTS = {
    "unrest":      0.30,
    "conflict":    0.35,
    "security":    0.20,
    "information": 0.15,
}

BLEND_BASELINE = 0.4

# Event multiplier below this → media-saturated country, counts are log-dampened
HIGH_VOLUME_THRESHOLD = 0.7

HOTSPOT_PROXIMITY_KM = 150.0
HOTSPOT_BOOST_CAP = 10.0
HOTSPOT_BOOST_MULTIPLIER = 1.5

WARMUP_DURATION = timedelta(minutes=15)

OWNER = "cii"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─── Precise tier components ───────────────────────

def unrest_component(data: CIIComponentData, multiplier: float = 1.0) -> float:
    high_volume = multiplier < HIGH_VOLUME_THRESHOLD
    base_score = fatality_boost = severity_boost = 0.0

    if data.protest_count > 0:
        if high_volume:
            adjusted = log_scaled_count(data.protest_count, multiplier, 5)
        else:
            adjusted = data.protest_count * multiplier
        base_score = capped(adjusted * 8, 50)
        fatality_boost = capped(data.protest_fatalities * 5 * multiplier, 30)
        severity_boost = capped(data.high_severity_protests * 10 * multiplier, 20)

    total, major, partial = data.outage_total, data.outage_major, data.outage_partial
    if total + major + partial == 0 and data.outage_count > 0:
        partial = data.outage_count
    outage_boost = capped(total * 30 + major * 15 + partial * 5, 50)

    return min(100.0, base_score + fatality_boost + severity_boost + outage_boost)


def conflict_component(data: CIIComponentData, multiplier: float = 1.0) -> float:
    battles, explosions, civilians = data.battle_count, data.explosion_count, data.civilian_count
    if battles + explosions + civilians == 0 and data.conflict_count > 0:
        battles = data.conflict_count
    has_event_data = battles + explosions + civilians > 0

    event_score = capped((battles * 3 + explosions * 4 + civilians * 5) * multiplier, 50)
    fatality_score = capped(math.sqrt(max(0, data.conflict_fatalities)) * 5 * multiplier, 40)
    civilian_boost = capped(civilians * 3, 10)
    score = event_score + fatality_score + civilian_boost

    # HAPI aggregates stand in when no event-level data exists
    if not has_event_data:
        hapi = capped(
            (data.hapi_political_violence * 2 + data.hapi_civilian_targeting * 3) * multiplier, 60
        )
        score = max(score, hapi)

    return min(100.0, score)


def security_component(data: CIIComponentData) -> float:
    flights = capped(data.military_flight_count * 3, 50)
    vessels = capped(data.military_vessel_count * 5, 30)
    return min(100.0, flights + vessels)


def information_component(data: CIIComponentData, multiplier: float = 1.0) -> float:
    high_volume = multiplier < HIGH_VOLUME_THRESHOLD
    base_score = 0.0
    if data.news_event_count > 0:
        if high_volume:
            adjusted = log_scaled_count(data.news_event_count, multiplier, 3)
        else:
            adjusted = data.news_event_count * multiplier
        base_score = capped(adjusted * 5, 40)

    threshold = 5 if high_volume else 2
    velocity_boost = 0.0
    if data.news_velocity > threshold:
        velocity_boost = capped((data.news_velocity - threshold) * 10 * multiplier, 40)

    alert_boost = capped(20 * multiplier, 20) if data.has_alert else 0.0
    return min(100.0, base_score + velocity_boost + alert_boost)


def score_boosts(data: CIIComponentData) -> float:
    """Additive boosts applied after the baseline blend."""
    boost = 0.0

    if data.news_urgency >= 70:
        boost += 5
    elif data.news_urgency >= 50:
        boost += 3

    if data.focal_urgency == "critical":
        boost += 8
    elif data.focal_urgency == "elevated":
        boost += 4

    if data.displacement_outflow >= 1_000_000:
        boost += 8
    elif data.displacement_outflow >= 100_000:
        boost += 4

    if data.climate_stress >= 2:
        boost += 15
    elif data.climate_stress == 1:
        boost += 8

    hotspot_boost = 0.0
    for near in data.hotspot_proximity:
        if near.distance_km >= HOTSPOT_PROXIMITY_KM:
            continue
        falloff = 1 - near.distance_km / HOTSPOT_PROXIMITY_KM
        hotspot_boost += near.activity * HOTSPOT_BOOST_MULTIPLIER * falloff
    boost += min(HOTSPOT_BOOST_CAP, hotspot_boost)

    return boost


# ─── Fast tier ─────────────────────────────────────

def fast_components(data: CIIComponentData) -> CIIComponents:
    return CIIComponents(
        unrest=min(100.0, data.protest_count * 5 + data.outage_count * 10),
        conflict=min(
            100.0,
            data.conflict_count * 8
            + (30 if data.ucdp_active else 0)
            + data.hapi_severity * 10
            + data.displacement_outflow * 0.01,
        ),
        security=min(
            100.0,
            data.military_flight_count * 3 + data.military_vessel_count * 2 + data.climate_stress * 5,
        ),
        information=min(100.0, data.news_event_count * 2),
    )


def calculate_score(
    data: CIIComponentData,
    tier: ScoringTier = ScoringTier.PRECISE,
    baseline_risk: float = 15.0,
    event_multiplier: float = 1.0,
    baseline_weight: float = BLEND_BASELINE,
) -> tuple[float, CIIComponents]:
    """Pure CII computation shared by the main context and the offload worker.

    Returns (score, components); score is a 0-100 integer-valued float.
    """
    if tier == ScoringTier.FAST:
        components = fast_components(data)
        weights = FAST_WEIGHTS
        computed = sum(getattr(components, k) * w for k, w in weights.items())
        return clamp(round_half_up(computed)), components

    components = CIIComponents(
        unrest=unrest_component(data, event_multiplier),
        conflict=conflict_component(data, event_multiplier),
        security=security_component(data),
        information=information_component(data, event_multiplier),
    )
    computed = sum(getattr(components, k) * w for k, w in WEIGHTS.items())
    blended = baseline_risk * baseline_weight + computed * (1 - baseline_weight)
    final = clamp(blended + score_boosts(data))
    return clamp(round_half_up(final)), components


def score_request_batch(countries: list[CIIRequestCountry], tier: ScoringTier,
                        warmup_baseline_weight: float = 0.6) -> list[CIIResultScore]:
    """Score an offload batch. Runs inside the worker process."""
    scores = []
    for entry in countries:
        weight = warmup_baseline_weight if entry.learning else BLEND_BASELINE
        score, components = calculate_score(
            entry.data, tier, entry.baselineRisk, entry.eventMultiplier, weight
        )
        scores.append(CIIResultScore(
            code=entry.code,
            name=entry.name,
            score=score,
            level=score_to_level(score),
            components=components,
        ))
    return scores


class InstabilityScorer:
    """Owns every country's current/previous CII pair and its score history."""

    def __init__(
        self,
        catalog: Optional[Catalog] = None,
        history: Optional[HistoryStore] = None,
        clock: Callable[[], datetime] = _utcnow,
        warmup: timedelta = WARMUP_DURATION,
        warmup_baseline_weight: float = 0.6,
        warmup_deadband: float = TREND_DEADBAND * 2,
        tier: ScoringTier = ScoringTier.PRECISE,
    ):
        self.catalog = catalog or Catalog()
        self._clock = clock
        self.history = history or HistoryStore(timedelta(hours=24), clock=clock, name="cii")
        self.warmup = warmup
        self.warmup_baseline_weight = warmup_baseline_weight
        self.warmup_deadband = warmup_deadband
        self.tier = tier
        self.countries: dict[str, Country] = {}

    def country(self, code: str, name: Optional[str] = None) -> Country:
        """Get a country, creating it (and starting its warmup) on first data load."""
        country = self.countries.get(code)
        if country is None:
            ref_name, baseline, multiplier = self.catalog.country_reference(code, name)
            country = Country(
                code=code,
                name=name or ref_name,
                baseline_risk=baseline,
                event_multiplier=multiplier,
                warmup_started_at=self._clock(),
            )
            self.countries[code] = country
            logger.debug("[cii] Tracking %s (%s), warmup started", code, country.name)
        return country

    def is_learning(self, country: Country, now: Optional[datetime] = None) -> bool:
        now = now or self._clock()
        if country.learning_state == LearningState.ACTIVE:
            return False
        started = country.warmup_started_at or now
        if now - started >= self.warmup:
            country.learning_state = LearningState.ACTIVE
            logger.info("[cii] %s left warmup", country.code)
            return False
        return True

    def score(
        self,
        code: str,
        data: Optional[CIIComponentData],
        previous_score: Optional[float] = None,
        *,
        name: Optional[str] = None,
        tier: Optional[ScoringTier] = None,
    ) -> CIIScore:
        """Score one country on the main context and record the result."""
        country = self.country(code, name)
        tier = tier or self.tier
        learning = self.is_learning(country)
        weight = self.warmup_baseline_weight if learning else BLEND_BASELINE
        score, components = calculate_score(
            data or CIIComponentData(), tier, country.baseline_risk, country.event_multiplier, weight
        )
        return self.apply(code, score, components, tier, previous_score)

    def build_request(self, code: str, data: Optional[CIIComponentData],
                      name: Optional[str] = None) -> CIIRequestCountry:
        """Immutable snapshot of one country's inputs for an offloaded batch."""
        country = self.country(code, name)
        return CIIRequestCountry(
            code=code,
            name=country.name,
            data=data or CIIComponentData(),
            previousScore=country.current.score if country.current else None,
            baselineRisk=country.baseline_risk,
            eventMultiplier=country.event_multiplier,
            learning=self.is_learning(country),
        )

    def apply_batch(self, result: CIIResult, tier: ScoringTier) -> list[CIIScore]:
        """Merge an offloaded batch back on the main context."""
        applied = []
        for entry in result.scores:
            if entry.code not in self.countries:
                logger.warning("[cii] Batch result for unknown country %s dropped", entry.code)
                continue
            applied.append(self.apply(entry.code, entry.score, entry.components, tier))
        return applied

    def apply(
        self,
        code: str,
        score: float,
        components: CIIComponents,
        tier: ScoringTier,
        previous_score: Optional[float] = None,
    ) -> CIIScore:
        """Derive level/trend, rotate current→previous and write history."""
        country = self.country(code)
        now = self._clock()
        learning = self.is_learning(country, now)

        if previous_score is None and country.current is not None:
            previous_score = country.current.score
        deadband = self.warmup_deadband if learning else TREND_DEADBAND

        oldest = self.history.samples(code, now)
        change_24h = round(score - oldest[0].value, 1) if oldest else 0.0

        result = CIIScore(
            code=code,
            name=country.name,
            score=score,
            level=score_to_level(score),
            components=components,
            trend=trend_from_delta(score, previous_score, deadband),
            change_24h=change_24h,
            tier=tier,
            learning=learning,
            timestamp=now,
        )

        country.previous = country.current
        country.current = result
        self.history.append(code, score, owner=OWNER, timestamp=now)
        return result

    def current_scores(self) -> list[CIIScore]:
        scores = [c.current for c in self.countries.values() if c.current is not None]
        scores.sort(key=lambda s: s.score, reverse=True)
        return scores

    def current_value(self, code: Optional[str]) -> Optional[float]:
        if not code or code not in self.countries:
            return None
        current = self.countries[code].current
        return current.score if current else None
