"""Kestrel — Normalization Library.

Pure functions mapping raw counters to bounded component scores, plus the
small numeric helpers shared by every scorer. No state.
"""

import logging
import math
import random
import time

from backend.models import GeoEvent, SignalType, ThreatLevel, Trend

logger = logging.getLogger("kestrel.normalizer")

EARTH_RADIUS_KM = 6371.0

# CII level cutoffs (score >= cutoff)
LEVEL_CUTOFFS = (
    (81, ThreatLevel.CRITICAL),
    (66, ThreatLevel.HIGH),
    (51, ThreatLevel.ELEVATED),
    (31, ThreatLevel.NORMAL),
)

# Minimum score change to register a trend direction
TREND_DEADBAND = 5.0

# Market-style signals dedupe by identifier only, not by value
MARKET_SIGNAL_TYPES = {
    SignalType.SILENT_DIVERGENCE,
    SignalType.FLOW_PRICE_DIVERGENCE,
    SignalType.EXPLAINED_MARKET_MOVE,
}


def clamp(value: float, lo: float = 0.0, hi: float = 100.0) -> float:
    return max(lo, min(hi, value))


def round_half_up(value: float, digits: int = 0) -> float:
    """Round halves away from zero for positive values (15.5 → 16, 16.5 → 17)."""
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def capped(value: float, cap: float) -> float:
    """Cap a non-negative sub-term. Negative inputs contribute nothing."""
    return min(cap, max(0.0, value))


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in km."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def score_to_level(score: float) -> ThreatLevel:
    for cutoff, level in LEVEL_CUTOFFS:
        if score >= cutoff:
            return level
    return ThreatLevel.LOW


def trend_from_delta(current: float, previous: float | None, deadband: float = TREND_DEADBAND) -> Trend:
    """Compare against the previous score; moves smaller than the deadband are stable."""
    if previous is None:
        return Trend.STABLE
    delta = current - previous
    if delta >= deadband:
        return Trend.RISING
    if delta <= -deadband:
        return Trend.FALLING
    return Trend.STABLE


def linear_slope(points: list[tuple[float, float]]) -> float:
    """Least-squares slope of (x, y) points. Zero when x has no spread."""
    n = len(points)
    if n < 2:
        return 0.0
    mean_x = sum(x for x, _ in points) / n
    mean_y = sum(y for _, y in points) / n
    denom = sum((x - mean_x) ** 2 for x, _ in points)
    if denom == 0:
        return 0.0
    return sum((x - mean_x) * (y - mean_y) for x, y in points) / denom


def log_scaled_count(count: int, multiplier: float, scale: float) -> float:
    """Dampen event counts for high-volume countries: log2(n + 1) * m * scale."""
    return math.log2(max(0, count) + 1) * multiplier * scale


# ─── Escalation sub-scores ─────────────────────────

def news_activity_score(matches: int, velocity: float, breaking: bool) -> float:
    return min(100.0, max(0, matches) * 15 + max(0.0, velocity) * 5 + (30 if breaking else 0))


def geo_alert_score(alert_types: int, alert_score: float) -> float:
    return min(100.0, max(0, alert_types) * 10 + max(0.0, alert_score))


def military_activity_score(flights: int, vessels: int) -> float:
    return min(100.0, max(0, flights) * 10 + max(0, vessels) * 15)


# ─── Geo convergence ───────────────────────────────

def convergence_score(type_count: int, member_count: int) -> float:
    """score = min(100, types * 25 + min(25, (members - 1) * 2))"""
    return float(min(100, type_count * 25 + min(25, max(0, member_count - 1) * 2)))


# ─── Surge ─────────────────────────────────────────

def surge_confidence(multiple: float) -> float:
    return min(0.95, 0.6 + (multiple - 2) * 0.1)


def foreign_presence_confidence(count: int) -> float:
    return min(0.95, 0.7 + count * 0.05)


# ─── Signals ───────────────────────────────────────

def generate_signal_id() -> str:
    alphabet = "abcdefghijklmnopqrstuvwxyz0123456789"
    suffix = "".join(random.choice(alphabet) for _ in range(6))
    return f"sig-{int(time.time() * 1000)}-{suffix}"


def generate_dedupe_key(signal_type: SignalType, identifier: str, value: float) -> str:
    if signal_type in MARKET_SIGNAL_TYPES:
        return f"{signal_type.value}:{identifier}"
    rounded = round_half_up(value, 1)
    return f"{signal_type.value}:{identifier}:{rounded:g}"


# ─── Input validation ──────────────────────────────

def normalize_geo_event(raw: dict) -> GeoEvent:
    """Validate a raw ingestion event into a GeoEvent."""
    lat = raw.get("lat", raw.get("latitude"))
    lon = raw.get("lon", raw.get("longitude"))
    payload = {"lat": float(lat), "lon": float(lon), "type": str(raw["type"])}
    if raw.get("timestamp"):
        payload["timestamp"] = raw["timestamp"]
    return GeoEvent(**payload)


def normalize_geo_events(raw_events: list[dict]) -> list[GeoEvent]:
    """Normalize a batch of events, skipping invalid ones."""
    results = []
    for raw in raw_events:
        try:
            results.append(normalize_geo_event(raw))
        except Exception as e:
            logger.error("Failed to normalize event: %s, raw type: %s", e, raw.get("type"))
            continue
    return results
