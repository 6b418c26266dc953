"""Kestrel — Unified Scoring Schema & Data Models."""

from pydantic import AfterValidator, BaseModel, Field
from typing import Annotated, Optional, Any, Literal
from enum import Enum
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Feed timestamps without an offset are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


class ThreatLevel(str, Enum):
    """CII instability levels (cutoffs 31 / 51 / 66 / 81)."""
    LOW = "low"
    NORMAL = "normal"
    ELEVATED = "elevated"
    HIGH = "high"
    CRITICAL = "critical"


class Trend(str, Enum):
    RISING = "rising"
    FALLING = "falling"
    STABLE = "stable"


class EscalationTrend(str, Enum):
    ESCALATING = "escalating"
    DE_ESCALATING = "de-escalating"
    STABLE = "stable"


class LearningState(str, Enum):
    """Per-country learning state. Warmup covers the first minutes after first data load."""
    WARMUP = "warmup"
    ACTIVE = "active"


class ScoringTier(str, Enum):
    """CII formula tier: fast approximation (offload batch) or precise (full formula)."""
    FAST = "fast"
    PRECISE = "precise"


class SignalType(str, Enum):
    """Types of emitted intelligence signals."""
    PREDICTION_LEADS_NEWS = "prediction_leads_news"
    NEWS_LEADS_MARKETS = "news_leads_markets"
    SILENT_DIVERGENCE = "silent_divergence"
    VELOCITY_SPIKE = "velocity_spike"
    KEYWORD_SPIKE = "keyword_spike"
    CONVERGENCE = "convergence"
    TRIANGULATION = "triangulation"
    FLOW_DROP = "flow_drop"
    FLOW_PRICE_DIVERGENCE = "flow_price_divergence"
    GEO_CONVERGENCE = "geo_convergence"
    EXPLAINED_MARKET_MOVE = "explained_market_move"
    HOTSPOT_ESCALATION = "hotspot_escalation"
    SECTOR_CASCADE = "sector_cascade"
    MILITARY_SURGE = "military_surge"


# ─── Country Instability ──────────────────────────

class HotspotProximity(BaseModel):
    """An active hotspot near a country, with its escalation alert score (0-5)."""
    hotspot_id: str = ""
    distance_km: float = Field(ge=0)
    activity: float = Field(default=0.0, ge=0, le=5)


class CIIComponentData(BaseModel):
    """Raw counters feeding the CII. Every field defaults to zero contribution."""
    # Unrest
    protest_count: int = 0
    protest_fatalities: int = 0
    high_severity_protests: int = 0
    outage_count: int = 0
    outage_total: int = 0
    outage_major: int = 0
    outage_partial: int = 0
    # Conflict
    conflict_count: int = 0
    battle_count: int = 0
    explosion_count: int = 0
    civilian_count: int = 0
    conflict_fatalities: int = 0
    ucdp_active: bool = False
    hapi_severity: float = 0.0
    hapi_political_violence: int = 0
    hapi_civilian_targeting: int = 0
    # Security
    military_flight_count: int = 0
    military_vessel_count: int = 0
    climate_stress: int = Field(default=0, ge=0, le=2, description="0=none, 1=moderate, 2=extreme")
    # Information
    news_event_count: int = 0
    news_velocity: float = 0.0
    has_alert: bool = False
    news_urgency: float = 0.0
    # Boosts
    focal_urgency: Optional[Literal["critical", "elevated"]] = None
    displacement_outflow: int = 0
    hotspot_proximity: list[HotspotProximity] = Field(default_factory=list)


class CIIComponents(BaseModel):
    unrest: float = 0.0
    conflict: float = 0.0
    security: float = 0.0
    information: float = 0.0


class CIIScore(BaseModel):
    """Composite Country Instability Index score."""
    code: str
    name: str
    score: float = Field(ge=0, le=100)
    level: ThreatLevel
    components: CIIComponents
    trend: Trend = Trend.STABLE
    change_24h: float = 0.0
    tier: ScoringTier = ScoringTier.PRECISE
    learning: bool = False
    timestamp: datetime = Field(default_factory=utcnow)


class Country(BaseModel):
    """A scored country. Created on first data load, never deleted."""
    code: str
    name: str
    baseline_risk: float = Field(default=15.0, ge=0, le=100)
    event_multiplier: float = Field(default=1.0, gt=0)
    current: Optional[CIIScore] = None
    previous: Optional[CIIScore] = None
    learning_state: LearningState = LearningState.WARMUP
    warmup_started_at: Optional[datetime] = None


# ─── Hotspot Escalation ───────────────────────────

class Hotspot(BaseModel):
    """An authored geographic point of ongoing interest."""
    id: str
    name: str
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    baseline_risk: float = Field(default=30.0, ge=0, le=100)
    country_code: Optional[str] = None
    last_signal_at: Optional[datetime] = None


class EscalationInput(BaseModel):
    """Live activity around a hotspot for one scoring cycle."""
    news_matches: int = 0
    news_velocity: float = 0.0
    breaking: bool = False
    cii_value: Optional[float] = None
    geo_alert_types: int = 0
    geo_alert_score: float = 0.0
    military_flights: int = 0
    military_vessels: int = 0


class EscalationComponents(BaseModel):
    news: float = 0.0
    cii: float = 0.0
    geo: float = 0.0
    military: float = 0.0


class EscalationSample(BaseModel):
    """One escalation scoring result for a hotspot."""
    hotspot_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    combined: float = Field(ge=0, le=100)
    alert_score: float = Field(ge=0, le=5)
    components: EscalationComponents
    trend: EscalationTrend = EscalationTrend.STABLE
    slope: float = 0.0


# ─── Geo Convergence ──────────────────────────────

class GeoEvent(BaseModel):
    """A geo-tagged event supplied fresh for each detection pass."""
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    type: str
    timestamp: UtcDatetime = Field(default_factory=utcnow)


class ConvergenceCluster(BaseModel):
    """Co-located multi-domain activity around a seed event."""
    lat: float
    lon: float
    event_count: int
    type_count: int
    types: list[str]
    radius: float
    score: float = 0.0


# ─── Military Surge ───────────────────────────────

class MilitaryTrack(BaseModel):
    """A military aircraft or vessel position from the ingestion layer."""
    id: str
    category: Literal["transport", "fighter", "recon"]
    operator: str = ""
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    domain: Literal["air", "sea"] = "air"


class MilitaryBase(BaseModel):
    id: str
    name: str
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)


class Theater(BaseModel):
    """A military theater with its bases and home operators."""
    id: str
    name: str
    country_code: Optional[str] = None
    home_operators: list[str] = Field(default_factory=list)
    bases: list[MilitaryBase] = Field(default_factory=list)


class TheaterBaseline(BaseModel):
    """Learned baseline for one theater/category over the trailing window."""
    theater_id: str
    category: str
    samples: int
    mean: float
    baseline: float
    floored: bool = False


class SurgeResult(BaseModel):
    theater_id: str
    category: str
    current: int
    baseline: float
    multiple: float
    confidence: float = Field(ge=0, le=1)
    posture: Literal["normal", "elevated", "critical"] = "elevated"
    bases: dict[str, int] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


class ForeignPresence(BaseModel):
    theater_id: str
    operator: str
    count: int
    confidence: float = Field(ge=0, le=1)
    track_ids: list[str] = Field(default_factory=list)


# ─── Signals ──────────────────────────────────────

class SignalContext(BaseModel):
    why_it_matters: str
    actionable_insight: str
    confidence_note: str


class Signal(BaseModel):
    """An externally visible, deduplicated alert."""
    id: str
    type: SignalType
    subject_id: str
    title: str = ""
    description: str = ""
    score: float
    confidence: float = Field(ge=0, le=1)
    dedupe_key: str
    context: SignalContext
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)


# ─── Ingestion Snapshot ───────────────────────────

class CountryFeed(BaseModel):
    code: str
    name: Optional[str] = None
    data: CIIComponentData = Field(default_factory=CIIComponentData)


class HotspotFeed(BaseModel):
    hotspot_id: str
    activity: EscalationInput = Field(default_factory=EscalationInput)


class FeedSnapshot(BaseModel):
    """Everything the ingestion layer supplies on one refresh tick."""
    countries: list[CountryFeed] = Field(default_factory=list)
    hotspots: list[HotspotFeed] = Field(default_factory=list)
    events: list[dict[str, Any]] = Field(default_factory=list)
    tracks: dict[str, list[MilitaryTrack]] = Field(default_factory=dict)
    fetched_at: UtcDatetime = Field(default_factory=utcnow)


# ─── Offload Messages ─────────────────────────────

class ReadyMessage(BaseModel):
    type: Literal["ready"] = "ready"


class CIIRequestCountry(BaseModel):
    code: str
    name: str
    data: CIIComponentData
    previousScore: Optional[float] = None
    baselineRisk: float = 15.0
    eventMultiplier: float = 1.0
    learning: bool = False


class CIIRequest(BaseModel):
    type: Literal["calculate"] = "calculate"
    id: str
    tier: ScoringTier = ScoringTier.FAST
    warmupBaselineWeight: float = 0.6
    countries: list[CIIRequestCountry]


class CIIResultScore(BaseModel):
    code: str
    name: str
    score: float
    level: ThreatLevel
    components: CIIComponents


class CIIResult(BaseModel):
    type: Literal["cii-result"] = "cii-result"
    id: str
    scores: list[CIIResultScore]


class ConvergenceRequest(BaseModel):
    type: Literal["detect"] = "detect"
    id: str
    events: list[GeoEvent]
    thresholdKm: float = Field(gt=0)


class ConvergenceResultCluster(BaseModel):
    lat: float
    lon: float
    eventCount: int
    typeCount: int
    types: list[str]
    radius: float


class ConvergenceResult(BaseModel):
    type: Literal["convergence-result"] = "convergence-result"
    id: str
    clusters: list[ConvergenceResultCluster]
