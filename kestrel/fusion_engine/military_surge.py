"""Kestrel — Military Surge Detector.

Compares current military transit counts per theater and category
against a baseline learned from the trailing 48h.

Baseline:
  - mean of same-category counts over the last 48h
  - with fewer than 6 samples, or a learned mean of zero, floored at
    the category minimum (transport 2, fighter 1, recon 1)

Surge when current >= baseline * 2.0 AND current >= the category's
absolute minimum (transport 5, fighter 4, recon 3).
  confidence = min(0.95, 0.6 + (multiple - 2) * 0.1)

Foreign presence: ≥ 2 tracks from one operator outside the theater's
home operators. confidence = min(0.95, 0.7 + count * 0.05)

Detected tracks are associated with the nearest theater base within
150 km. History older than 72h is purged by an hourly sweep.
"""

import logging
from collections import Counter, defaultdict
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from backend.models import ForeignPresence, MilitaryBase, MilitaryTrack, SurgeResult, Theater, TheaterBaseline
from fusion_engine.history import HistoryStore
from fusion_engine.normalizer import foreign_presence_confidence, haversine_km, surge_confidence

logger = logging.getLogger("kestrel.fusion")

CATEGORIES = ("transport", "fighter", "recon")

SURGE_THRESHOLD = 2.0
BASELINE_WINDOW = timedelta(hours=48)
BASELINE_MIN_SAMPLES = 6
BASELINE_MINIMUMS = {"transport": 2, "fighter": 1, "recon": 1}
MIN_COUNTS = {"transport": 5, "fighter": 4, "recon": 3}

PROXIMITY_RADIUS_KM = 150.0
CLEANUP_INTERVAL = timedelta(hours=1)
MAX_HISTORY = timedelta(hours=72)

FOREIGN_MIN_COUNT = 2

# Host-country CII at or above these raises a theater's posture
CII_POSTURE_CRITICAL = 85
CII_POSTURE_ELEVATED = 70
CRITICAL_MULTIPLE = 3.0

OWNER = "surge"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def count_tracks(tracks: list[MilitaryTrack]) -> dict[str, int]:
    counts = Counter(t.category for t in tracks)
    return {c: counts.get(c, 0) for c in CATEGORIES}


def nearest_base(track: MilitaryTrack, bases: list[MilitaryBase],
                 radius_km: float = PROXIMITY_RADIUS_KM) -> Optional[MilitaryBase]:
    best, best_km = None, radius_km
    for base in bases:
        km = haversine_km(track.lat, track.lon, base.lat, base.lon)
        if km <= best_km:
            best, best_km = base, km
    return best


def associate_bases(tracks: list[MilitaryTrack], bases: list[MilitaryBase]) -> dict[str, list[str]]:
    """base id → ids of tracks whose nearest base (within 150 km) it is."""
    assoc: dict[str, list[str]] = defaultdict(list)
    for track in tracks:
        base = nearest_base(track, bases)
        if base is not None:
            assoc[base.id].append(track.id)
    return dict(assoc)


def theater_posture(surges: list[SurgeResult], cii: Optional[float]) -> str:
    if any(s.multiple >= CRITICAL_MULTIPLE for s in surges):
        posture = "critical"
    elif surges:
        posture = "elevated"
    else:
        posture = "normal"
    if cii is not None:
        if cii >= CII_POSTURE_CRITICAL:
            posture = "critical"
        elif cii >= CII_POSTURE_ELEVATED and posture == "normal":
            posture = "elevated"
    return posture


class SurgeDetector:
    """Learns per-theater baselines and flags surges above them."""

    def __init__(self, history: Optional[HistoryStore] = None, clock: Callable[[], datetime] = _utcnow):
        self._clock = clock
        self.history: HistoryStore[dict[str, int]] = history or HistoryStore(
            MAX_HISTORY, clock=clock, name="surge"
        )
        self._last_cleanup: datetime = clock()
        self.postures: dict[str, str] = {}

    def baseline(self, theater_id: str, category: str, now: Optional[datetime] = None) -> TheaterBaseline:
        now = now or self._clock()
        samples = self.history.since(theater_id, BASELINE_WINDOW, now)
        counts = [s.value.get(category, 0) for s in samples]
        mean = sum(counts) / len(counts) if counts else 0.0
        baseline, floored = mean, False
        minimum = BASELINE_MINIMUMS.get(category, 1)
        # A fully quiet theater has no learned scale to multiply
        if (len(counts) < BASELINE_MIN_SAMPLES and mean < minimum) or mean <= 0:
            baseline, floored = float(minimum), True
        return TheaterBaseline(
            theater_id=theater_id,
            category=category,
            samples=len(counts),
            mean=round(mean, 3),
            baseline=baseline,
            floored=floored,
        )

    def evaluate_category(self, theater: Theater, category: str, current: int,
                          now: Optional[datetime] = None) -> Optional[SurgeResult]:
        ref = self.baseline(theater.id, category, now)
        multiple = current / ref.baseline
        if multiple < SURGE_THRESHOLD or current < MIN_COUNTS.get(category, 1):
            return None
        return SurgeResult(
            theater_id=theater.id,
            category=category,
            current=current,
            baseline=ref.baseline,
            multiple=round(multiple, 3),
            confidence=round(surge_confidence(multiple), 3),
            posture="critical" if multiple >= CRITICAL_MULTIPLE else "elevated",
            timestamp=now or self._clock(),
        )

    def evaluate(
        self,
        theater: Theater,
        current_counts: dict[str, int],
        tracks: Optional[list[MilitaryTrack]] = None,
        cii: Optional[float] = None,
    ) -> list[SurgeResult]:
        """Check every category for a surge, then record the counts into history."""
        now = self._clock()
        self._sweep(now)

        surges = []
        for category in CATEGORIES:
            surge = self.evaluate_category(theater, category, current_counts.get(category, 0), now)
            if surge is None:
                continue
            if tracks:
                surge_tracks = [t for t in tracks if t.category == category]
                assoc = associate_bases(surge_tracks, theater.bases)
                surge.bases = {base_id: len(ids) for base_id, ids in assoc.items()}
            surges.append(surge)
            logger.info(
                "[surge] %s %s surge: %d vs baseline %.1f (x%.2f)",
                theater.id, category, surge.current, surge.baseline, surge.multiple,
            )

        posture = theater_posture(surges, cii)
        for surge in surges:
            surge.posture = posture
        self.postures[theater.id] = posture

        self.history.append(
            theater.id,
            {c: int(current_counts.get(c, 0)) for c in CATEGORIES},
            owner=OWNER,
            timestamp=now,
        )
        return surges

    def detect_foreign_presence(self, theater: Theater, tracks: list[MilitaryTrack]) -> list[ForeignPresence]:
        home = set(theater.home_operators)
        by_operator: dict[str, list[str]] = defaultdict(list)
        for track in tracks:
            if track.operator and track.operator not in home:
                by_operator[track.operator].append(track.id)

        results = [
            ForeignPresence(
                theater_id=theater.id,
                operator=operator,
                count=len(ids),
                confidence=round(foreign_presence_confidence(len(ids)), 3),
                track_ids=ids,
            )
            for operator, ids in by_operator.items()
            if len(ids) >= FOREIGN_MIN_COUNT
        ]
        results.sort(key=lambda r: r.count, reverse=True)
        return results

    def _sweep(self, now: datetime) -> None:
        if now - self._last_cleanup < CLEANUP_INTERVAL:
            return
        dropped = self.history.purge(now)
        self._last_cleanup = now
        logger.debug("[surge] Hourly sweep dropped %d samples", dropped)
